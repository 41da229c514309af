"""
Background computation gateway.

Ships deep copies of session data to the compute engine running in a thread
pool and hands the reply back to the event loop. Every request carries a
correlation id; for chart data the gateway also remembers the latest id per
channel ("worksheet", "dashboard:<id>") so a superseded reply is rejected
instead of overwriting newer state.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

from core.config import GATEWAY_WORKERS
from core.models import CrossFilter, FieldRef, GatewayReply, RequestKind, Worksheet
from skills.compute import check_analysis_params, handle_message

logger = logging.getLogger("uvicorn.error")

_executor = ThreadPoolExecutor(max_workers=GATEWAY_WORKERS, thread_name_prefix="datacanvas-compute")

WORKSHEET_CHANNEL = "worksheet"


def dashboard_channel(worksheet_id: int) -> str:
    return f"dashboard:{worksheet_id}"


class GatewayError(RuntimeError):
    """The engine replied with an error or could not run the request."""


class StaleReplyError(GatewayError):
    """A newer request on the same channel was issued before this reply."""


class ComputeGateway:
    def __init__(self, executor: Optional[Executor] = None) -> None:
        self._executor = executor or _executor
        self._ids = itertools.count(1)
        self._latest: Dict[str, int] = {}

    def latest_request(self, channel: str) -> Optional[int]:
        return self._latest.get(channel)

    async def _submit(
        self,
        kind: RequestKind,
        message: Dict[str, Any],
        request_id: int,
        executor: Optional[Executor] = None,
    ) -> GatewayReply:
        loop = asyncio.get_running_loop()
        message = copy.deepcopy(message)
        try:
            result = await loop.run_in_executor(executor or self._executor, handle_message, kind, message)
        except Exception as e:
            logger.exception("Compute request %d (%s) failed", request_id, kind.value)
            return GatewayReply(request_id=request_id, kind=kind, error=str(e) or type(e).__name__)

        error = result.get("error") if isinstance(result, dict) else None
        return GatewayReply(request_id=request_id, kind=kind, result=result, error=error)

    # ------------------------------------------------------------------
    # Chart data
    # ------------------------------------------------------------------

    async def request_chart_data(
        self,
        worksheet: Worksheet,
        records: Sequence[Dict[str, Any]],
        measures: Sequence[FieldRef],
        dashboard_filters: Sequence[CrossFilter] = (),
        channel: str = WORKSHEET_CHANNEL,
    ) -> Dict[str, Any]:
        """Aggregate *records* for *worksheet*; returns ``{chartData, payload}``.

        Raises StaleReplyError when another request on *channel* was issued
        while this one was in flight.
        """
        request_id = next(self._ids)
        self._latest[channel] = request_id
        message = {
            "records": list(records),
            "config": worksheet.model_dump(by_alias=True, mode="json"),
            "measures": [m.model_dump(by_alias=True, mode="json") for m in measures],
            "dashboardFilters": [f.model_dump(by_alias=True, mode="json") for f in dashboard_filters],
        }
        reply = await self._submit(RequestKind.chart_data, message, request_id)

        if self._latest.get(channel) != reply.request_id:
            logger.debug(
                "Discarding stale reply %d on %s (latest %s)",
                reply.request_id, channel, self._latest.get(channel),
            )
            raise StaleReplyError(f"Reply {reply.request_id} superseded on {channel}")
        if reply.error:
            raise GatewayError(reply.error)
        return reply.result

    # ------------------------------------------------------------------
    # One-off jobs (dedicated single-worker executors)
    # ------------------------------------------------------------------

    async def _one_off(self, kind: RequestKind, message: Dict[str, Any]) -> Dict[str, Any]:
        request_id = next(self._ids)
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"datacanvas-{kind.value}") as pool:
            reply = await self._submit(kind, message, request_id, executor=pool)
        if reply.error:
            raise GatewayError(reply.error)
        return reply.result

    async def run_analysis(
        self, test_type: str, records: Sequence[Dict[str, Any]], params: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Returns ``{result}`` or, for clustering, ``{records}``."""
        params = check_analysis_params(test_type, params)
        return await self._one_off(
            RequestKind.analysis,
            {"testType": test_type, "records": list(records), "params": params},
        )

    async def run_binning(
        self, records: Sequence[Dict[str, Any]], measure: str, bin_size: float, bin_name: str,
    ) -> List[Dict[str, Any]]:
        result = await self._one_off(
            RequestKind.binning,
            {"records": list(records), "measure": measure, "binSize": bin_size, "binName": bin_name},
        )
        return result["records"]
