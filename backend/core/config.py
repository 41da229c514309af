"""Runtime configuration.

Values come from the process environment (optionally seeded from a `.env`
file) so deployments can tune the engine without code changes.
"""

from __future__ import annotations

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _env_float(key: str, default: float) -> float:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# JSON file backing the individually keyed user preferences.
PREFS_PATH: str = _env("DATACANVAS_PREFS_PATH", os.path.join(os.getcwd(), ".datacanvas-prefs.json"))

# Seconds a gateway round trip may take before the loading indicator shows.
LOADING_DELAY: float = _env_float("DATACANVAS_LOADING_DELAY", 0.3)

# Seconds edits are coalesced before an automatic visualization refresh.
UPDATE_DEBOUNCE: float = _env_float("DATACANVAS_UPDATE_DEBOUNCE", 0.1)

# Worker threads of the shared chart-data executor.
GATEWAY_WORKERS: int = max(1, _env_int("DATACANVAS_GATEWAY_WORKERS", 2))

# Seconds allowed for fetching a CSV from a remote URL.
URL_FETCH_TIMEOUT: float = _env_float("DATACANVAS_URL_TIMEOUT", 30.0)


def cors_origins() -> List[str]:
    raw = _env("DATACANVAS_CORS_ORIGINS", "*") or "*"
    return [o.strip() for o in raw.split(",") if o.strip()]
