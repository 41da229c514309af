"""
Server-Sent Events (SSE) infrastructure.

SSEEvent formats a single message; SSEChannel is the async queue one
subscriber reads from. A Workbench fans each published event out to every
subscribed channel.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel


class SSEEvent(BaseModel):
    """A single SSE message."""
    event: str
    data: Any = None
    id: Optional[str] = None

    def format(self) -> str:
        """Serialize to SSE wire format."""
        lines: list[str] = []
        if self.id:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.event}")

        if self.data is None:
            lines.append("data: {}")
        else:
            payload = self.data if isinstance(self.data, str) else json.dumps(self.data, default=str)
            lines.extend(f"data: {line}" for line in payload.split("\n"))

        return "\n".join(lines) + "\n\n"


class SSEChannel:
    """
    Async queue of events for one subscriber.

    Usage:
        channel = workbench.subscribe()

        # Producer (state container):
        channel.emit_nowait("chart_ready", {"channel": "worksheet", ...})

        # Consumer (SSE endpoint):
        async for event_str in channel:
            yield event_str
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[SSEEvent]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit_nowait(self, event: str, data: Any = None, event_id: Optional[str] = None) -> None:
        if self._closed:
            return
        self._queue.put_nowait(SSEEvent(event=event, data=data, id=event_id or uuid.uuid4().hex[:8]))

    async def emit(self, event: str, data: Any = None, event_id: Optional[str] = None) -> None:
        self.emit_nowait(event, data, event_id)

    async def close(self) -> None:
        """Signal the consumer that no more events will arrive."""
        self._closed = True
        await self._queue.put(None)  # sentinel

    def pending(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[str]:
        """Yield formatted SSE strings until the channel is closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event.format()


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

EVT_STATE_CHANGED = "state_changed"
EVT_CHART_READY = "chart_ready"
EVT_LOADING = "loading"
EVT_HISTORY = "history"
EVT_LAYOUT_CHANGED = "layout_changed"
EVT_ANALYSIS_READY = "analysis_ready"
EVT_WARNING = "warning"
EVT_ERROR = "error"
