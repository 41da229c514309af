"""
Workbench API routes, mounted as a sub-router on the main FastAPI app.

Every route resolves the caller's Workbench from the ``X-Session-Id`` header,
applies one operation and returns the resulting state. Chart descriptions
produced by background refreshes arrive on GET /api/events (SSE).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response, StreamingResponse

from core.models import (
    AnalysisRequest,
    AnalyticsRequest,
    BinRequest,
    CalculatedFieldRequest,
    ChartTypeRequest,
    CrossFilterRequest,
    DrillRequest,
    FieldNameRequest,
    FilterUpdateRequest,
    GroupRequest,
    InteractionStartRequest,
    PointerRequest,
    PreferencesRequest,
    RecordsRequest,
    RenameRequest,
    ShelfAssignRequest,
    ShelfItemRequest,
    ViewModeRequest,
)
from core.storage import WORKSPACE_FILENAME, get_session
from server.gateway import GatewayError
from server.orchestrator import Workbench
from server.sse import EVT_STATE_CHANGED, SSEEvent
from skills.recommend import suggest_chart_types

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["workbench"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _new_workbench() -> Workbench:
    return Workbench()


def _require_session_id(request: Request) -> str:
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    return sid


def workbench_for(request: Request) -> Workbench:
    return get_session(_require_session_id(request), _new_workbench)


@contextmanager
def _http_errors() -> Iterator[None]:
    """Map domain exceptions onto HTTP status codes."""
    try:
        yield
    except GatewayError as e:
        logger.warning("Compute request failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e)) from e
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e).strip("'\"")) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


# ---------------------------------------------------------------------------
# Session & data
# ---------------------------------------------------------------------------

@router.get("/state")
async def get_state(request: Request):
    return workbench_for(request).state()


@router.post("/data")
async def load_records(request: Request, body: RecordsRequest):
    """Load already-parsed records (CSV files go through /upload)."""
    wb = workbench_for(request)
    wb.load_records(body.records, body.file_name)
    return wb.state()


@router.post("/reset")
async def reset(request: Request):
    wb = workbench_for(request)
    wb.reset()
    return wb.state()


@router.post("/update")
async def apply_manual_update(request: Request):
    wb = workbench_for(request)
    with _http_errors():
        await wb.apply_manual_update()
    return wb.state()


@router.post("/view-mode")
async def set_view_mode(request: Request, body: ViewModeRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.set_view_mode(body.mode)
    return wb.state()


# ---------------------------------------------------------------------------
# Worksheets
# ---------------------------------------------------------------------------

@router.post("/worksheets")
async def add_worksheet(request: Request):
    wb = workbench_for(request)
    ws = wb.add_worksheet()
    return {"worksheet": ws.dump(), "state": wb.state()}


@router.delete("/worksheets/{worksheet_id}")
async def remove_worksheet(request: Request, worksheet_id: int):
    wb = workbench_for(request)
    if not wb.remove_worksheet(worksheet_id):
        raise HTTPException(status_code=404, detail=f"Worksheet {worksheet_id} not found.")
    return wb.state()


@router.post("/worksheets/{worksheet_id}/activate")
async def activate_worksheet(request: Request, worksheet_id: int):
    wb = workbench_for(request)
    with _http_errors():
        wb.set_active_worksheet(worksheet_id)
    return wb.state()


@router.patch("/worksheets/{worksheet_id}")
async def rename_worksheet(request: Request, worksheet_id: int, body: RenameRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.rename_worksheet(worksheet_id, body.name)
    return wb.state()


@router.post("/chart-type")
async def set_chart_type(request: Request, body: ChartTypeRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.set_chart_type(body.chart_type)
    return wb.state()


@router.get("/suggestions")
async def get_suggestions(request: Request):
    ws = workbench_for(request).active_worksheet
    return {"suggestions": [s.model_dump(mode="json") for s in suggest_chart_types(ws.shelves if ws else None)]}


@router.patch("/analytics")
async def set_analytics(request: Request, body: AnalyticsRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.set_analytics(body)
    return wb.state()


# ---------------------------------------------------------------------------
# Shelves, sorting, drilling, filters
# ---------------------------------------------------------------------------

@router.put("/shelves")
async def assign_shelf(request: Request, body: ShelfAssignRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.assign_shelf(body.shelf, body.fields)
    return wb.state()


@router.post("/shelves/remove")
async def remove_from_shelf(request: Request, body: ShelfItemRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.remove_from_shelf(body.shelf, body.name)
    return wb.state()


@router.post("/shelves/reset")
async def reset_view(request: Request):
    wb = workbench_for(request)
    wb.reset_view()
    return wb.state()


@router.post("/sort")
async def toggle_sort(request: Request, body: FieldNameRequest):
    wb = workbench_for(request)
    with _http_errors():
        order = wb.toggle_sort(body.name)
    return {"sort": order.value if order else None, "state": wb.state()}


@router.post("/drill")
async def drill_date(request: Request, body: DrillRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.drill_date(body.name, body.direction)
    return wb.state()


@router.post("/filters")
async def edit_filter(request: Request, body: FieldNameRequest):
    wb = workbench_for(request)
    with _http_errors():
        flt = wb.edit_filter(body.name)
    return {"filter": flt.dump(), "state": wb.state()}


@router.patch("/filters")
async def update_filter(request: Request, body: FilterUpdateRequest):
    wb = workbench_for(request)
    with _http_errors():
        flt = wb.update_filter(body)
    return {"filter": flt.dump(), "state": wb.state()}


@router.post("/filters/close")
async def close_filter(request: Request):
    wb = workbench_for(request)
    wb.close_filter()
    return wb.state()


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------

@router.post("/fields/convert")
async def convert_field(request: Request, body: FieldNameRequest):
    wb = workbench_for(request)
    with _http_errors():
        wb.convert_field_type(body.name)
    return wb.state()


@router.post("/fields/group")
async def group_field(request: Request, body: GroupRequest):
    wb = workbench_for(request)
    with _http_errors():
        name = wb.group_field(body)
    return {"field": name, "state": wb.state()}


@router.post("/fields/calculated")
async def add_calculated_field(request: Request, body: CalculatedFieldRequest):
    wb = workbench_for(request)
    with _http_errors():
        field = wb.add_calculated_field(body.name, body.formula)
    return {"field": field.dump(), "state": wb.state()}


@router.post("/fields/bin")
async def bin_measure(request: Request, body: BinRequest):
    wb = workbench_for(request)
    with _http_errors():
        field = await wb.bin_measure(body)
    return {"field": field.dump(), "state": wb.state()}


@router.post("/analysis")
async def run_analysis(request: Request, body: AnalysisRequest):
    wb = workbench_for(request)
    with _http_errors():
        analysis = await wb.run_analysis(body.test_type, body.params)
    return analysis


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

@router.post("/dashboard")
async def add_to_dashboard(request: Request):
    wb = workbench_for(request)
    with _http_errors():
        item = wb.add_to_dashboard()
    return {"item": item.dump(), "state": wb.state()}


@router.delete("/dashboard/{worksheet_id}")
async def remove_from_dashboard(request: Request, worksheet_id: int):
    wb = workbench_for(request)
    if not wb.remove_from_dashboard(worksheet_id):
        raise HTTPException(status_code=404, detail=f"Worksheet {worksheet_id} is not on the dashboard.")
    return wb.state()


@router.post("/dashboard/interaction")
async def begin_interaction(request: Request, body: InteractionStartRequest):
    wb = workbench_for(request)
    with _http_errors():
        started = wb.begin_interaction(body)
    return {"started": started}


@router.post("/dashboard/interaction/move")
async def pointer_move(request: Request, body: PointerRequest):
    wb = workbench_for(request)
    wb.pointer_move(body.x, body.y)
    return {"active": wb.interaction.active}


@router.post("/dashboard/interaction/end")
async def pointer_up(request: Request):
    wb = workbench_for(request)
    # The last coalesced move is applied before the gesture ends.
    wb.interaction.flush()
    wb.pointer_up()
    return wb.state()


@router.post("/dashboard/click")
async def dashboard_click(request: Request, body: CrossFilterRequest):
    wb = workbench_for(request)
    with _http_errors():
        changed = await wb.dashboard_click(body.worksheet_id, body.value)
    return {"changed": changed, "state": wb.state()}


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@router.post("/undo")
async def undo(request: Request):
    wb = workbench_for(request)
    with _http_errors():
        await wb.undo()
    return wb.state()


@router.post("/redo")
async def redo(request: Request):
    wb = workbench_for(request)
    with _http_errors():
        await wb.redo()
    return wb.state()


# ---------------------------------------------------------------------------
# Workspace files & exports
# ---------------------------------------------------------------------------

@router.get("/workspace")
async def save_workspace(request: Request):
    content = workbench_for(request).save_workspace()
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{WORKSPACE_FILENAME}"'},
    )


@router.post("/workspace")
async def load_workspace(request: Request, file: UploadFile = File(...)):
    wb = workbench_for(request)
    content = await file.read()
    with _http_errors():
        await wb.load_workspace(content)
    return wb.state()


@router.get("/export/csv")
async def export_csv(request: Request):
    wb = workbench_for(request)
    with _http_errors():
        filename, csv_text = wb.export_csv()
    return Response(
        content=csv_text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/export/chart")
async def export_chart(request: Request):
    wb = workbench_for(request)
    with _http_errors():
        return wb.export_chart()


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

@router.get("/preferences")
async def get_preferences(request: Request):
    return workbench_for(request).prefs.dump()


@router.patch("/preferences")
async def set_preferences(request: Request, body: PreferencesRequest):
    wb = workbench_for(request)
    with _http_errors():
        prefs = await wb.set_preferences(**body.model_dump(exclude_none=True))
    return prefs.dump()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@router.get("/events")
async def stream_events(
    request: Request,
    session_id: Optional[str] = Query(None, alias="session_id"),
):
    """
    SSE endpoint that streams Workbench events for one session.

    EventSource doesn't support custom headers, so session_id may be passed
    as a query parameter.
    """
    sid = session_id or request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing session_id query parameter.")

    wb = get_session(sid, _new_workbench)
    channel = wb.subscribe()

    async def _stream():
        yield SSEEvent(event=EVT_STATE_CHANGED, data=wb.state()).format()
        try:
            async for event_str in channel:
                if await request.is_disconnected():
                    break
                yield event_str
        finally:
            wb.unsubscribe(channel)

    return StreamingResponse(_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)
