"""
Workbench: the per-session state container.

Holds the records, field lists, worksheets, dashboard layout, cross-filters,
preferences and history of one editing session, and runs the refresh cycle:
edit -> gateway round trip -> chart description -> SSE ``chart_ready``.

Mutating operations end with :meth:`Workbench.commit`, which records a
history snapshot when the persistent state actually changed. Refreshes
requested by edits are debounced when auto-update is on; otherwise the
session is marked dirty until :meth:`apply_manual_update`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from core.config import LOADING_DELAY, PREFS_PATH, UPDATE_DEBOUNCE
from core.formatting import NUMBER_FORMATS, PALETTES
from core.models import (
    AnalyticsRequest,
    BinRequest,
    ChartType,
    CrossFilter,
    FieldRef,
    FilterUpdateRequest,
    GroupRequest,
    InteractionStartRequest,
    LayoutItem,
    Preferences,
    SessionSnapshot,
    ShelfName,
    Worksheet,
)
from core.storage import (
    PreferenceStore,
    dump_workspace,
    load_preferences,
    parse_workspace,
    rows_to_csv,
    save_preferences,
)
from server.gateway import (
    ComputeGateway,
    GatewayError,
    StaleReplyError,
    WORKSHEET_CHANNEL,
    dashboard_channel,
)
from server.sse import (
    EVT_ANALYSIS_READY,
    EVT_CHART_READY,
    EVT_ERROR,
    EVT_HISTORY,
    EVT_LAYOUT_CHANGED,
    EVT_LOADING,
    EVT_STATE_CHANGED,
    EVT_WARNING,
    SSEChannel,
)
from skills import dashboard, shelves as shelf_ops
from skills.build_view import build_chart_option
from skills.classify import classify_fields, convert_field_type, has_field
from skills.history import HistoryManager
from skills.recommend import apply_shelf_update, is_analytics_panel_visible, suggest_chart_types
from skills.shelves import ShelfEditError

logger = logging.getLogger("uvicorn.error")

VIEW_MODES = ("worksheet", "dashboard")
EMPTY_TABLE: Dict[str, list] = {"headers": [], "rows": [], "cellStyles": []}


def new_worksheet(worksheet_id: int) -> Worksheet:
    return Worksheet(id=worksheet_id, name=f"Sheet {worksheet_id}")


class Workbench:
    def __init__(
        self,
        *,
        gateway: Optional[ComputeGateway] = None,
        prefs_store: Optional[PreferenceStore] = None,
        loading_delay: float = LOADING_DELAY,
        update_debounce: float = UPDATE_DEBOUNCE,
    ) -> None:
        self.gateway = gateway or ComputeGateway()
        self.prefs_store = prefs_store if prefs_store is not None else PreferenceStore(PREFS_PATH)
        self.prefs: Preferences = load_preferences(self.prefs_store)
        self.history = HistoryManager()
        self.interaction = dashboard.GridInteraction(on_end=self._on_interaction_end)

        self.loading_delay = loading_delay
        self.update_debounce = update_debounce

        self.records: List[Dict[str, Any]] = []
        self.file_name: Optional[str] = None
        self.dimensions: List[FieldRef] = []
        self.measures: List[FieldRef] = []
        self.calculated_fields: List[FieldRef] = []
        self.worksheets: List[Worksheet] = []
        self.active_worksheet_id: Optional[int] = None
        self.dashboard_layout: List[LayoutItem] = []
        self.dashboard_filters: Dict[int, CrossFilter] = {}
        self.active_filter: Optional[Tuple[int, str]] = None

        self.view_mode = "worksheet"
        self.is_dirty = False
        self.is_loading = False
        self.option: Dict[str, Any] = {}
        self.table_data: Dict[str, Any] = dict(EMPTY_TABLE)
        self.dashboard_options: Dict[int, Dict[str, Any]] = {}
        self.analysis: Dict[str, Any] = {"result": None, "error": ""}

        self._subscribers: List[SSEChannel] = []
        self._tasks: Set[asyncio.Task] = set()
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._loading_timer: Optional[asyncio.TimerHandle] = None
        self._loading_depth = 0

        self.reset()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self) -> SSEChannel:
        channel = SSEChannel()
        self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: SSEChannel) -> None:
        if channel in self._subscribers:
            self._subscribers.remove(channel)

    def publish(self, event: str, data: Any = None) -> None:
        for channel in list(self._subscribers):
            channel.emit_nowait(event, data)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def get_worksheet(self, worksheet_id: Optional[int]) -> Optional[Worksheet]:
        return next((w for w in self.worksheets if w.id == worksheet_id), None)

    @property
    def active_worksheet(self) -> Optional[Worksheet]:
        return self.get_worksheet(self.active_worksheet_id)

    def require_active(self) -> Worksheet:
        ws = self.active_worksheet
        if ws is None:
            raise ShelfEditError("No worksheet is active.")
        return ws

    @property
    def chart_configured(self) -> bool:
        ws = self.active_worksheet
        return ws is not None and bool(ws.shelves.columns or ws.shelves.rows)

    def find_field(self, name: str) -> FieldRef:
        field = next((f for f in [*self.dimensions, *self.measures] if f.name == name), None)
        if field is None:
            raise ShelfEditError(f"Unknown field '{name}'.")
        return field

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot.model_validate({
            "worksheets": [w.model_dump() for w in self.worksheets],
            "dashboard_layout": [item.model_dump() for item in self.dashboard_layout],
            "calculated_fields": [f.model_dump() for f in self.calculated_fields],
            "dimensions": [f.model_dump() for f in self.dimensions],
            "measures": [f.model_dump() for f in self.measures],
        })

    def state(self) -> Dict[str, Any]:
        """Everything the rendering surface needs to draw the workbench."""
        ws = self.active_worksheet
        active_filter = None
        if self.active_filter is not None:
            sheet = self.get_worksheet(self.active_filter[0])
            flt = shelf_ops.find_filter(sheet.shelves, self.active_filter[1]) if sheet else None
            active_filter = flt.dump() if flt else None
        return {
            "fileName": self.file_name,
            "recordCount": len(self.records),
            "dimensions": [f.dump() for f in self.dimensions],
            "measures": [f.dump() for f in self.measures],
            "calculatedFields": [f.dump() for f in self.calculated_fields],
            "worksheets": [w.dump() for w in self.worksheets],
            "activeWorksheetId": self.active_worksheet_id,
            "dashboardLayout": self._layout_dump(),
            "dashboardFilters": {str(k): v.dump() for k, v in self.dashboard_filters.items()},
            "activeFilter": active_filter,
            "viewMode": self.view_mode,
            "isDirty": self.is_dirty,
            "isLoading": self.is_loading,
            "canUndo": self.history.can_undo,
            "canRedo": self.history.can_redo,
            "suggestions": [s.model_dump(mode="json") for s in suggest_chart_types(ws.shelves if ws else None)],
            "analyticsPanelVisible": is_analytics_panel_visible(ws),
            "preferences": self.prefs.dump(),
            "option": self.option,
            "tableData": self.table_data,
            "analysis": self.analysis,
        }

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def commit(self) -> bool:
        """Record a history snapshot if the persistent state changed."""
        recorded = self.history.record(self.snapshot())
        if recorded:
            self.publish(EVT_HISTORY, {
                "cursor": self.history.cursor,
                "canUndo": self.history.can_undo,
                "canRedo": self.history.can_redo,
            })
        self.publish(EVT_STATE_CHANGED, {"activeWorksheetId": self.active_worksheet_id})
        return recorded

    def reset(self) -> None:
        """Clear data and worksheets, leaving a single empty "Sheet 1"."""
        self._cancel_debounce()
        self.records = []
        self.file_name = None
        self.dimensions = []
        self.measures = []
        self.calculated_fields = []
        self.dashboard_layout = []
        self.dashboard_filters.clear()
        self.dashboard_options.clear()
        self.worksheets = [new_worksheet(1)]
        self.active_worksheet_id = 1
        self.active_filter = None
        self.option = {}
        self.table_data = dict(EMPTY_TABLE)
        self.history.clear()
        self.commit()

    def load_records(self, records: List[Dict[str, Any]], file_name: Optional[str] = None) -> None:
        self.reset()
        self.records = list(records)
        self.file_name = file_name
        self.dimensions, self.measures = classify_fields(self.records)
        self.history.clear()
        self.commit()
        logger.info("Loaded %d records from %s", len(self.records), file_name or "<memory>")

    # ------------------------------------------------------------------
    # Loading indicator
    # ------------------------------------------------------------------

    def _set_loading(self, value: bool) -> None:
        if self.is_loading != value:
            self.is_loading = value
            self.publish(EVT_LOADING, {"isLoading": value})

    @contextmanager
    def _loading(self) -> Iterator[None]:
        """Show the indicator only if the enclosed work outlasts the delay."""
        self._loading_depth += 1
        if self._loading_timer is None and not self.is_loading:
            loop = asyncio.get_running_loop()
            self._loading_timer = loop.call_later(self.loading_delay, self._set_loading, True)
        try:
            yield
        finally:
            self._loading_depth -= 1
            if self._loading_depth == 0:
                if self._loading_timer is not None:
                    self._loading_timer.cancel()
                    self._loading_timer = None
                self._set_loading(False)

    # ------------------------------------------------------------------
    # Refresh cycle
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    def _fire_debounced(self) -> None:
        self._debounce = None
        self._spawn(self.update_visualization())

    def request_visualization_update(self) -> None:
        """Debounced refresh of the main view, or mark it dirty."""
        if not self.prefs.auto_update_enabled:
            self.is_dirty = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to refresh on; the next explicit update picks it up.
            self.is_dirty = True
            return
        self._cancel_debounce()
        self._debounce = loop.call_later(self.update_debounce, self._fire_debounced)

    def schedule_refresh(self) -> None:
        """Refresh the current view mode as soon as the loop is free."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.is_dirty = True
            return
        self._spawn(self.refresh())

    async def refresh(self) -> None:
        if self.view_mode == "dashboard":
            await self.render_dashboard()
        else:
            await self.update_visualization()

    async def wait_idle(self) -> None:
        """Await pending refreshes, including debounced ones."""
        if self._debounce is not None:
            self._cancel_debounce()
            self._spawn(self.update_visualization())
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def apply_manual_update(self) -> bool:
        if not self.is_dirty:
            return False
        self.is_dirty = False
        await self.update_visualization()
        return True

    def _cross_filters(self) -> List[CrossFilter]:
        return list(self.dashboard_filters.values())

    async def update_visualization(self) -> None:
        ws = self.active_worksheet
        if ws is None or not self.chart_configured:
            self.option = {}
            self.table_data = dict(EMPTY_TABLE)
            self.publish(EVT_CHART_READY, {"channel": WORKSHEET_CHANNEL, "option": {}, "tableData": self.table_data})
            return

        # Let pending state changes settle before sampling the worksheet.
        await asyncio.sleep(0)
        with self._loading():
            try:
                reply = await self.gateway.request_chart_data(
                    ws, self.records, self.measures, self._cross_filters(), WORKSHEET_CHANNEL,
                )
            except StaleReplyError:
                return
            except GatewayError as e:
                logger.warning("Visualization update failed: %s", e)
                self.publish(EVT_ERROR, {"message": f"Visualization update failed: {e}"})
                return

        ws.chart_data = reply["chartData"]
        payload = reply["payload"]
        chart_type = payload.get("chartType", ws.active_chart_type)
        if chart_type == ChartType.table.value:
            self.option = {}
            self.table_data = build_chart_option(chart_type, ws.chart_data, payload, shelves=ws.shelves, prefs=self.prefs)
        else:
            self.table_data = dict(EMPTY_TABLE)
            self.option = build_chart_option(
                chart_type, ws.chart_data, payload,
                shelves=ws.shelves, prefs=self.prefs, records=self.records,
            )
            if not self.option:
                self.publish(EVT_WARNING, {"message": f"{chart_type} needs more fields to draw.", "worksheetId": ws.id})
        logger.info("Chart built for worksheet %d (%s)", ws.id, chart_type)
        self.publish(EVT_CHART_READY, {
            "channel": WORKSHEET_CHANNEL,
            "worksheetId": ws.id,
            "theme": self.prefs.theme,
            "option": self.option,
            "tableData": self.table_data,
        })

    async def render_dashboard(self) -> None:
        """Rebuild every dashboard chart, one gateway round trip at a time."""
        await asyncio.sleep(0)
        with self._loading():
            for item in list(self.dashboard_layout):
                ws = self.get_worksheet(item.worksheet_id)
                if ws is None:
                    continue
                channel = dashboard_channel(ws.id)
                try:
                    reply = await self.gateway.request_chart_data(
                        ws, self.records, self.measures, self._cross_filters(), channel,
                    )
                except StaleReplyError:
                    continue
                except GatewayError as e:
                    logger.warning("Dashboard chart %d failed: %s", ws.id, e)
                    self.publish(EVT_ERROR, {"message": f"Dashboard render failed: {e}", "worksheetId": ws.id})
                    continue

                ws.chart_data = reply["chartData"]
                payload = reply["payload"]
                option = build_chart_option(
                    payload.get("chartType", ws.active_chart_type), ws.chart_data, payload,
                    shelves=ws.shelves, prefs=self.prefs, records=self.records,
                )
                self.dashboard_options[ws.id] = option
                self.publish(EVT_CHART_READY, {
                    "channel": channel,
                    "worksheetId": ws.id,
                    "theme": self.prefs.theme,
                    "option": option,
                })

    # ------------------------------------------------------------------
    # Worksheets
    # ------------------------------------------------------------------

    def add_worksheet(self) -> Worksheet:
        next_id = max((w.id for w in self.worksheets), default=0) + 1
        ws = new_worksheet(next_id)
        self.worksheets.append(ws)
        self.active_worksheet_id = ws.id
        logger.info("Worksheet %d added", ws.id)
        self.schedule_refresh()
        self.commit()
        return ws

    def remove_worksheet(self, worksheet_id: int) -> bool:
        index = next((i for i, w in enumerate(self.worksheets) if w.id == worksheet_id), None)
        if index is None:
            return False
        if self.active_worksheet_id == worksheet_id:
            if len(self.worksheets) > 1:
                successor = self.worksheets[index + 1] if index == 0 else self.worksheets[index - 1]
                self.active_worksheet_id = successor.id
            else:
                self.active_worksheet_id = None
        del self.worksheets[index]
        dashboard.remove_from_dashboard(self.dashboard_layout, worksheet_id)
        self.dashboard_filters.pop(worksheet_id, None)
        self.dashboard_options.pop(worksheet_id, None)
        if self.active_filter and self.active_filter[0] == worksheet_id:
            self.active_filter = None
        self.schedule_refresh()
        self.commit()
        return True

    def set_active_worksheet(self, worksheet_id: int) -> None:
        if self.get_worksheet(worksheet_id) is None:
            raise LookupError(f"Worksheet {worksheet_id} not found.")
        if worksheet_id != self.active_worksheet_id:
            self.active_worksheet_id = worksheet_id
            self.schedule_refresh()
            self.publish(EVT_STATE_CHANGED, {"activeWorksheetId": worksheet_id})

    def rename_worksheet(self, worksheet_id: int, name: str) -> Worksheet:
        ws = self.get_worksheet(worksheet_id)
        if ws is None:
            raise LookupError(f"Worksheet {worksheet_id} not found.")
        if name and name.strip():
            ws.name = name.strip()
        self.commit()
        return ws

    def set_chart_type(self, chart_type: str) -> None:
        ws = self.require_active()
        if ws.active_chart_type == chart_type:
            return
        ws.active_chart_type = chart_type
        if self.view_mode == "worksheet":
            self.request_visualization_update()
        self.commit()

    def set_analytics(self, update: AnalyticsRequest) -> None:
        ws = self.require_active()
        changes = update.model_dump(exclude_none=True)
        if "forecast_periods" in changes and changes["forecast_periods"] < 0:
            raise ShelfEditError("Forecast periods cannot be negative.")
        ws.analytics = ws.analytics.model_copy(update=changes)
        self.request_visualization_update()
        self.commit()

    # ------------------------------------------------------------------
    # Shelves
    # ------------------------------------------------------------------

    def _shelf_update(self, ws: Worksheet) -> None:
        apply_shelf_update(ws)
        self.request_visualization_update()
        self.commit()

    def assign_shelf(self, shelf: ShelfName, fields: List[FieldRef]) -> None:
        ws = self.require_active()
        shelf_ops.assign_shelf(ws.shelves, shelf, fields)
        self._shelf_update(ws)

    def remove_from_shelf(self, shelf: ShelfName, name: str) -> bool:
        ws = self.require_active()
        removed = shelf_ops.remove_from_shelf(ws.shelves, shelf, name)
        if shelf == ShelfName.filters and self.active_filter == (ws.id, name):
            self.active_filter = None
        self._shelf_update(ws)
        return removed

    def reset_view(self) -> None:
        ws = self.active_worksheet
        if ws is not None:
            shelf_ops.clear_shelves(ws.shelves)
        self.active_filter = None
        self.request_visualization_update()
        self.commit()

    def toggle_sort(self, name: str):
        ws = self.require_active()
        order = shelf_ops.toggle_sort(ws.shelves, name)
        self.request_visualization_update()
        self.commit()
        return order

    def drill_date(self, name: str, direction: str) -> bool:
        ws = self.require_active()
        field = shelf_ops.find_axis_field(ws.shelves, name)
        if field is None:
            raise ShelfEditError(f"Field '{name}' is not on columns or rows.")
        moved = shelf_ops.drill_date(field, direction)
        self.request_visualization_update()
        self.commit()
        return moved

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def edit_filter(self, name: str):
        ws = self.require_active()
        field = self.find_field(name)
        flt, created = shelf_ops.edit_filter(ws.shelves, field, self.records, self.measures)
        self.active_filter = (ws.id, flt.field)
        if created:
            self.request_visualization_update()
            self.commit()
        return flt

    def update_filter(self, update: FilterUpdateRequest):
        ws = self.require_active()
        flt = shelf_ops.update_filter(ws.shelves, update)
        self.active_filter = (ws.id, flt.field)
        self.request_visualization_update()
        self.commit()
        return flt

    def close_filter(self) -> None:
        self.active_filter = None

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def convert_field_type(self, name: str) -> FieldRef:
        field = self.find_field(name)
        self.dimensions, self.measures = convert_field_type(field, self.dimensions, self.measures)
        self.commit()
        return self.find_field(name)

    def group_field(self, request: GroupRequest) -> str:
        self.find_field(request.field)
        new_field = shelf_ops.group_values(
            self.records, request.field, request.selected_values, request.new_group_name,
        )
        if not any(d.name == new_field for d in self.dimensions):
            self.dimensions.append(FieldRef(name=new_field, type="dimension"))
        self.request_visualization_update()
        self.commit()
        return new_field

    def add_calculated_field(self, name: str, formula: str) -> FieldRef:
        known = [f.name for f in [*self.dimensions, *self.measures]]
        field = shelf_ops.make_calculated_field(name, formula, known)
        if has_field(field.name, self.dimensions, self.measures):
            raise ShelfEditError(f"A field named '{field.name}' already exists.")
        self.calculated_fields.append(field)
        self.measures.append(field.model_copy())
        self.commit()
        return field

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def set_view_mode(self, mode: str) -> None:
        if mode not in VIEW_MODES:
            raise ShelfEditError(f"Unknown view mode '{mode}'.")
        if mode != self.view_mode:
            self.view_mode = mode
            self.schedule_refresh()
            self.publish(EVT_STATE_CHANGED, {"viewMode": mode})

    def add_to_dashboard(self) -> LayoutItem:
        item = dashboard.add_to_dashboard(self.dashboard_layout, self.active_worksheet)
        if item is None:
            raise ShelfEditError("This sheet is already on the dashboard or no sheet is active.")
        self.commit()
        if self.view_mode != "dashboard":
            self.set_view_mode("dashboard")
        else:
            self.schedule_refresh()
        return item

    def remove_from_dashboard(self, worksheet_id: int) -> bool:
        removed = dashboard.remove_from_dashboard(self.dashboard_layout, worksheet_id)
        self.dashboard_options.pop(worksheet_id, None)
        if removed:
            self.publish(EVT_LAYOUT_CHANGED, self._layout_dump())
            self.commit()
        return removed

    def _layout_dump(self) -> List[Dict[str, Any]]:
        return [{**item.dump(), "style": dashboard.grid_item_style(item)} for item in self.dashboard_layout]

    def begin_interaction(self, request: InteractionStartRequest) -> bool:
        item = dashboard.find_item(self.dashboard_layout, request.worksheet_id)
        if item is None:
            raise LookupError(f"Worksheet {request.worksheet_id} is not on the dashboard.")
        if request.kind == "drag":
            return self.interaction.begin_drag(
                item, request.x, request.y, request.grid_width, request.on_resize_handle,
            )
        return self.interaction.begin_resize(item, request.x, request.y, request.grid_width)

    def pointer_move(self, x: float, y: float) -> None:
        self.interaction.pointer_move(x, y)

    def pointer_up(self) -> None:
        self.interaction.pointer_up()

    def _on_interaction_end(self) -> None:
        self.publish(EVT_LAYOUT_CHANGED, self._layout_dump())
        self.commit()

    async def dashboard_click(self, worksheet_id: int, value: Any) -> bool:
        """Toggle the cross-filter set by clicking *value* on a dashboard chart."""
        ws = self.get_worksheet(worksheet_id)
        if ws is None:
            raise LookupError(f"Worksheet {worksheet_id} not found.")
        if not dashboard.toggle_cross_filter(self.dashboard_filters, ws, value):
            return False
        await self.render_dashboard()
        return True

    # ------------------------------------------------------------------
    # History & workspace files
    # ------------------------------------------------------------------

    async def _restore(self, snapshot: SessionSnapshot) -> None:
        with self.history.restoring():
            self.worksheets = [w.model_copy(deep=True) for w in snapshot.worksheets]
            self.dashboard_layout = [item.model_copy() for item in snapshot.dashboard_layout]
            self.calculated_fields = [f.model_copy() for f in snapshot.calculated_fields]
            self.dimensions = [f.model_copy() for f in snapshot.dimensions]
            self.measures = [f.model_copy() for f in snapshot.measures]
            if self.active_worksheet is None:
                self.active_worksheet_id = self.worksheets[0].id if self.worksheets else None
            if self.active_filter and self.get_worksheet(self.active_filter[0]) is None:
                self.active_filter = None
            self.publish(EVT_STATE_CHANGED, {"activeWorksheetId": self.active_worksheet_id})
            await self.refresh()

    async def undo(self) -> bool:
        snapshot = self.history.undo()
        if snapshot is None:
            return False
        await self._restore(snapshot)
        self.publish(EVT_HISTORY, {"cursor": self.history.cursor, "canUndo": self.history.can_undo, "canRedo": self.history.can_redo})
        return True

    async def redo(self) -> bool:
        snapshot = self.history.redo()
        if snapshot is None:
            return False
        await self._restore(snapshot)
        self.publish(EVT_HISTORY, {"cursor": self.history.cursor, "canUndo": self.history.can_undo, "canRedo": self.history.can_redo})
        return True

    def save_workspace(self) -> str:
        return dump_workspace(self.snapshot(), self.prefs)

    async def load_workspace(self, content: str | bytes) -> None:
        """Replace the session layout with a saved workspace.

        A malformed file raises WorkspaceFileError before anything changes.
        """
        workspace = parse_workspace(content)
        self.prefs = self.prefs.model_copy(update={
            "active_palette": workspace.active_palette or "default",
            "active_number_format": workspace.active_number_format or "default",
            "auto_update_enabled": workspace.auto_update_enabled is not False,
        })
        save_preferences(self.prefs_store, self.prefs)
        await self._restore(workspace)
        self.commit()
        logger.info("Workspace loaded: %d worksheets", len(self.worksheets))

    def export_csv(self) -> Tuple[str, str]:
        ws = self.active_worksheet
        rows = ws.chart_data if ws is not None else None
        if not rows or not isinstance(rows, list):
            raise ShelfEditError("No data to export.")
        return f"{ws.name}-data.csv", rows_to_csv(rows)

    def export_chart(self) -> Dict[str, Any]:
        """Chart description plus the file name the renderer saves it under."""
        ws = self.active_worksheet
        if ws is None or not self.option:
            raise ShelfEditError("No chart to export.")
        return {
            "fileName": f"{ws.name or 'datacanvas-chart'}.png",
            "backgroundColor": "#fff" if self.prefs.theme == "light" else "#18181b",
            "pixelRatio": 2,
            "option": self.option,
        }

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def set_preferences(self, **changes: Any) -> Preferences:
        updated = Preferences.model_validate({**self.prefs.model_dump(), **changes})
        if updated.active_palette not in PALETTES:
            raise ValueError(f"Unknown palette '{updated.active_palette}'.")
        if updated.active_number_format not in NUMBER_FORMATS:
            raise ValueError(f"Unknown number format '{updated.active_number_format}'.")
        if updated == self.prefs:
            return self.prefs
        self.prefs = updated
        save_preferences(self.prefs_store, self.prefs)
        if self.prefs.auto_update_enabled and self.is_dirty:
            await self.apply_manual_update()
        else:
            await self.refresh()
        return self.prefs

    # ------------------------------------------------------------------
    # Analysis & binning
    # ------------------------------------------------------------------

    async def run_analysis(self, test_type: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self.analysis = {"result": None, "error": ""}
        with self._loading():
            try:
                reply = await self.gateway.run_analysis(test_type, self.records, params)
            except GatewayError as e:
                logger.warning("Analysis failed: %s", e)
                self.analysis["error"] = str(e)
                self.publish(EVT_ANALYSIS_READY, self.analysis)
                return self.analysis

        if test_type == "clustering":
            self.records = reply["records"]
            if not any(d.name == "Cluster" for d in self.dimensions):
                self.dimensions.append(FieldRef(name="Cluster", type="dimension"))
            self.analysis["result"] = {"type": "clustering", "message": 'A new "Cluster" dimension has been added.'}
            self.request_visualization_update()
            self.commit()
        else:
            self.analysis["result"] = reply["result"]
        self.publish(EVT_ANALYSIS_READY, self.analysis)
        return self.analysis

    async def bin_measure(self, request: BinRequest) -> FieldRef:
        bin_name = shelf_ops.check_bin_request(
            request.bin_name, request.measure, request.bin_size, self.dimensions, self.measures,
        )
        with self._loading():
            records = await self.gateway.run_binning(self.records, request.measure, request.bin_size, bin_name)
        field = FieldRef(name=bin_name, type="dimension")
        self.dimensions.append(field)
        self.records = records
        logger.info("Bin field %r created from %r", bin_name, request.measure)
        self.commit()
        return field
