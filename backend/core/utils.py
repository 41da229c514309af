"""
Shared utility helpers.

Pure functions without I/O.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

import numpy as np
import pandas as pd


# ---------------------------------------------------------------------------
# Field-name heuristics
# ---------------------------------------------------------------------------

GEO_KEYWORDS = ("country", "nation", "region", "state", "province", "location")


def is_date_field(name: str) -> bool:
    """A field counts as a date when its name contains "date"."""
    return "date" in name.lower()


def is_geo_field(name: str) -> bool:
    lower = name.lower()
    return any(k in lower for k in GEO_KEYWORDS)


# Names in uploaded data that differ from the base world map.
COUNTRY_ALIASES: Dict[str, str] = {
    "United States": "United States of America",
    "England": "United Kingdom",
    "Russia": "Russian Federation",
    "South Korea": "Korea",
    "S. Korea": "Korea",
    "Vietnam": "Viet Nam",
}


def map_country_name(name: Any) -> Any:
    return COUNTRY_ALIASES.get(name, name) if isinstance(name, str) else name


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------

def is_numeric_value(value: Any) -> bool:
    """True for real numbers (bools excluded), matching a JS `typeof === 'number'`."""
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float, np.number))


def distinct(values: Iterable[Any]) -> List[Any]:
    """Unique values in first-seen order."""
    seen = set()
    out: List[Any] = []
    for v in values:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def sort_key(value: Any) -> str:
    """Lexicographic key; None sorts as the empty string."""
    return "" if value is None else str(value)


# ---------------------------------------------------------------------------
# DataFrame safety
# ---------------------------------------------------------------------------

def df_json_safe(df: pd.DataFrame) -> pd.DataFrame:
    """Replace +/-inf -> NaN, then NaN -> None so JSON serialization works."""
    if df.empty:
        return df
    tmp = df.replace([np.inf, -np.inf], np.nan)
    tmp = tmp.astype(object)
    return tmp.where(pd.notna(tmp), None)


def df_to_records_safe(df: pd.DataFrame) -> list[dict]:
    """Convert DataFrame to list of dicts with JSON-safe values."""
    records = df_json_safe(df).to_dict(orient="records")
    return [{k: _py_scalar(v) for k, v in r.items()} for r in records]


def _py_scalar(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


# ---------------------------------------------------------------------------
# Smart numeric parsing (currency, SI suffixes, percentages)
# ---------------------------------------------------------------------------

_SUFFIX_MAP = {
    "k": 1_000.0,
    "m": 1_000_000.0,
    "mm": 1_000_000.0,
    "b": 1_000_000_000.0,
    "bn": 1_000_000_000.0,
}


def smart_numeric_value(val) -> float:
    """Parse a single value that might be currency, SI-suffixed, or percentage."""
    if val is None or isinstance(val, bool):
        return np.nan
    if isinstance(val, (int, float, np.number)):
        return float(val)
    text = str(val).strip()
    if not text:
        return np.nan
    text = text.replace(",", "").replace("$", "").replace("€", "")
    if text.endswith("%"):
        inner = text[:-1].strip()
        try:
            return float(inner) / 100.0
        except ValueError:
            return np.nan
    lower = text.lower()
    if lower in {"n/a", "na", "nan", "none", "null", "-", "--", "—"}:
        return np.nan

    for suffix in sorted(_SUFFIX_MAP.keys(), key=len, reverse=True):
        if lower.endswith(suffix):
            num_part = text[: -len(suffix)]
            try:
                return float(num_part) * _SUFFIX_MAP[suffix]
            except ValueError:
                return np.nan

    try:
        return float(text)
    except ValueError:
        return np.nan


def smart_numeric_series(series: pd.Series) -> pd.Series:
    """Coerce a Series to numeric, parsing currency/SI/percent strings."""
    if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
        return pd.to_numeric(series, errors="coerce")
    converted = series.map(smart_numeric_value)
    return pd.to_numeric(converted, errors="coerce")
