"""
In-memory session store, preference store and workspace/CSV serialization.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
from pydantic import ValidationError

from core.models import Preferences, SessionSnapshot, WorkspaceFile

logger = logging.getLogger("uvicorn.error")


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

# session_id -> Workbench (server.orchestrator)
SESSIONS: Dict[str, Any] = {}


def get_session(session_id: str, factory: Callable[[], Any]) -> Any:
    if session_id not in SESSIONS:
        SESSIONS[session_id] = factory()
    return SESSIONS[session_id]


def drop_session(session_id: str) -> None:
    SESSIONS.pop(session_id, None)


# ---------------------------------------------------------------------------
# Preferences (individually keyed)
# ---------------------------------------------------------------------------

PREF_KEYS: Dict[str, str] = {
    "theme": "datacanvas-theme",
    "active_palette": "datacanvas-palette",
    "active_number_format": "datacanvas-format",
    "show_data_labels": "datacanvas-labels",
    "auto_update_enabled": "datacanvas-autoupdate",
}


class PreferenceStore:
    """Key-value store persisted as one JSON object.

    With ``path=None`` values only live in memory.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable preferences file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if self._values.get(key) == value:
                return
            self._values[key] = value
            if self.path:
                with open(self.path, "w", encoding="utf-8") as fh:
                    json.dump(self._values, fh, indent=2)


def load_preferences(store: PreferenceStore) -> Preferences:
    """Read every preference, falling back to its documented default."""
    defaults = Preferences()
    values = {
        attr: store.get(key, getattr(defaults, attr))
        for attr, key in PREF_KEYS.items()
    }
    try:
        return Preferences(**values)
    except ValidationError as e:
        logger.warning("Stored preferences invalid, using defaults: %s", e)
        return defaults


def save_preferences(store: PreferenceStore, prefs: Preferences) -> None:
    for attr, key in PREF_KEYS.items():
        store.set(key, getattr(prefs, attr))


# ---------------------------------------------------------------------------
# Workspace files
# ---------------------------------------------------------------------------

WORKSPACE_FILENAME = "workspace.datacanvas"


class WorkspaceFileError(ValueError):
    """Raised when a workspace file cannot be parsed or validated."""


def dump_workspace(snapshot: SessionSnapshot, prefs: Preferences) -> str:
    workspace = WorkspaceFile(
        **snapshot.model_dump(),
        active_palette=prefs.active_palette,
        active_number_format=prefs.active_number_format,
        auto_update_enabled=prefs.auto_update_enabled,
    )
    return json.dumps(workspace.dump(), indent=2)


def parse_workspace(content: str | bytes) -> WorkspaceFile:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise WorkspaceFileError(f"Workspace file is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise WorkspaceFileError("Workspace file must contain a JSON object.")
    try:
        return WorkspaceFile.model_validate(data)
    except ValidationError as e:
        raise WorkspaceFileError(f"Workspace file is malformed: {e.error_count()} error(s)") from e


# ---------------------------------------------------------------------------
# Tabular export
# ---------------------------------------------------------------------------

def rows_to_csv(rows: List[Dict[str, Any]]) -> str:
    return pd.DataFrame(rows).to_csv(index=False)
