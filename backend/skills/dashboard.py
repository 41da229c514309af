"""
Dashboard layout & cross-filter skill.

Layout items live on a 12-column grid with 10px gaps and 50px rows. Pointer
interactions are quantized to whole cells and applied at most once per frame.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, Dict, List, Optional, Tuple

from core.models import CrossFilter, FieldKind, LayoutItem, Worksheet

logger = logging.getLogger("uvicorn.error")

GRID_COLUMNS = 12
GRID_GAP = 10
ROW_HEIGHT = 50
MIN_SPAN = 2
FRAME_INTERVAL = 1 / 60


def measure_cells(grid_width: float) -> Tuple[float, float]:
    """``(cell_width, cell_height)`` in pixels for a grid of *grid_width*."""
    cell_width = (grid_width - (GRID_COLUMNS - 1) * GRID_GAP) / GRID_COLUMNS
    return cell_width, ROW_HEIGHT + GRID_GAP


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

def find_item(layout: List[LayoutItem], worksheet_id: int) -> Optional[LayoutItem]:
    return next((item for item in layout if item.worksheet_id == worksheet_id), None)


def add_to_dashboard(layout: List[LayoutItem], worksheet: Optional[Worksheet]) -> Optional[LayoutItem]:
    """Append *worksheet* below everything else; None when already placed."""
    if worksheet is None or find_item(layout, worksheet.id) is not None:
        return None
    y = max((item.y + item.h for item in layout), default=0)
    item = LayoutItem(i=str(worksheet.id), x=0, y=y, w=6, h=5, worksheet_id=worksheet.id)
    layout.append(item)
    logger.info("Worksheet %d added to dashboard at row %d", worksheet.id, y)
    return item


def remove_from_dashboard(layout: List[LayoutItem], worksheet_id: int) -> bool:
    item = find_item(layout, worksheet_id)
    if item is None:
        return False
    layout.remove(item)
    return True


def grid_item_style(item: LayoutItem) -> Dict[str, str]:
    return {
        "gridColumn": f"{item.x + 1} / span {item.w}",
        "gridRow": f"{item.y + 1} / span {item.h}",
    }


# ---------------------------------------------------------------------------
# Pointer interaction
# ---------------------------------------------------------------------------

class GridInteraction:
    """
    One drag or resize gesture on a layout item.

    Moves are throttled to one per frame: the first move schedules a frame
    and later moves only replace the pending position, which the frame
    applies. Without a running event loop the move is held until
    :meth:`flush`.
    """

    def __init__(self, on_end: Optional[Callable[[], None]] = None) -> None:
        self.on_end = on_end
        self.active = False
        self.kind: Optional[str] = None
        self.item: Optional[LayoutItem] = None
        self._start = (0.0, 0.0)
        self._initial = (0, 0)
        self._cell = (1.0, 1.0)
        self._pending: Optional[Tuple[float, float]] = None
        self._frame: Optional[asyncio.TimerHandle] = None

    def _begin(self, kind: str, item: LayoutItem, x: float, y: float, grid_width: float) -> None:
        self.active = True
        self.kind = kind
        self.item = item
        self._start = (x, y)
        self._initial = (item.x, item.y) if kind == "drag" else (item.w, item.h)
        self._cell = measure_cells(grid_width)

    def begin_drag(
        self, item: LayoutItem, x: float, y: float, grid_width: float, on_resize_handle: bool = False,
    ) -> bool:
        # Presses on the resize handle belong to begin_resize.
        if on_resize_handle:
            return False
        self._begin("drag", item, x, y, grid_width)
        return True

    def begin_resize(self, item: LayoutItem, x: float, y: float, grid_width: float) -> bool:
        self._begin("resize", item, x, y, grid_width)
        return True

    def pointer_move(self, x: float, y: float) -> None:
        if not self.active:
            return
        self._pending = (x, y)
        if self._frame is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._frame = loop.call_later(FRAME_INTERVAL, self.flush)

    def flush(self) -> None:
        """Apply the pending move, if any."""
        self._frame = None
        if not self.active or self._pending is None:
            return
        x, y = self._pending
        self._pending = None
        self._apply(x - self._start[0], y - self._start[1])

    def _apply(self, dx: float, dy: float) -> None:
        item = self.item
        cw, ch = self._cell
        steps_x, steps_y = _round_half_up(dx / cw), _round_half_up(dy / ch)
        if self.kind == "drag":
            item.x = max(0, min(self._initial[0] + steps_x, GRID_COLUMNS - item.w))
            item.y = max(0, self._initial[1] + steps_y)
        else:
            item.w = max(MIN_SPAN, min(self._initial[0] + steps_x, GRID_COLUMNS - item.x))
            item.h = max(MIN_SPAN, self._initial[1] + steps_y)

    def pointer_up(self) -> None:
        if not self.active:
            return
        self._cancel_frame()
        self._pending = None
        self.active = False
        self.kind = None
        self.item = None
        if self.on_end is not None:
            self.on_end()

    def _cancel_frame(self) -> None:
        if self._frame is not None:
            self._frame.cancel()
            self._frame = None


# ---------------------------------------------------------------------------
# Cross-filtering
# ---------------------------------------------------------------------------

def cross_filter_field(worksheet: Worksheet) -> Optional[str]:
    """The first dimension on the worksheet's columns drives its selections."""
    return next(
        (f.name for f in worksheet.shelves.columns if f.type == FieldKind.dimension), None,
    )


def toggle_cross_filter(filters: Dict[int, CrossFilter], worksheet: Worksheet, value) -> bool:
    """Select *value* on *worksheet*, or clear it when already selected.

    Returns False when the worksheet has no dimension to filter on.
    """
    field = cross_filter_field(worksheet)
    if field is None:
        return False
    current = filters.get(worksheet.id)
    if current is not None and current.value == value:
        del filters[worksheet.id]
    else:
        filters[worksheet.id] = CrossFilter(field=field, value=value, source_id=worksheet.id)
    return True
