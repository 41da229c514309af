"""
Snapshot undo/redo history.

A linear list of session snapshots plus a cursor. Recording after an undo
discards the redo branch. While a snapshot is being restored, recording is
suppressed so the restore itself does not land in history.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from core.models import SessionSnapshot

logger = logging.getLogger("uvicorn.error")


class HistoryManager:
    def __init__(self) -> None:
        self._snapshots: List[SessionSnapshot] = []
        self._cursor = -1
        self._restoring = 0

    # -- state ---------------------------------------------------------------

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._snapshots) - 1

    @property
    def is_restoring(self) -> bool:
        return self._restoring > 0

    def __len__(self) -> int:
        return len(self._snapshots)

    # -- mutation ------------------------------------------------------------

    def record(self, snapshot: SessionSnapshot) -> bool:
        """Push a deep copy of *snapshot*; returns whether anything was recorded."""
        if self.is_restoring:
            return False
        if self._cursor >= 0 and self._snapshots[self._cursor] == snapshot:
            return False

        del self._snapshots[self._cursor + 1:]
        self._snapshots.append(snapshot.model_copy(deep=True))
        self._cursor = len(self._snapshots) - 1
        logger.debug("History snapshot %d recorded", self._cursor)
        return True

    def undo(self) -> Optional[SessionSnapshot]:
        if not self.can_undo:
            return None
        self._cursor -= 1
        return self._snapshots[self._cursor].model_copy(deep=True)

    def redo(self) -> Optional[SessionSnapshot]:
        if not self.can_redo:
            return None
        self._cursor += 1
        return self._snapshots[self._cursor].model_copy(deep=True)

    def clear(self) -> None:
        self._snapshots.clear()
        self._cursor = -1

    @contextmanager
    def restoring(self) -> Iterator[None]:
        """Suppress :meth:`record` for the duration of a restore."""
        self._restoring += 1
        try:
            yield
        finally:
            self._restoring -= 1
