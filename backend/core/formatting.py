"""
Number formatting and color palettes.

Every builder formats axis labels, tooltips and data labels through
format_number() so a chart never mixes two formats.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List

import numpy as np

PALETTES: Dict[str, List[str]] = {
    "default": ["#40a9ff", "#1890ff", "#096dd9", "#0050b3", "#003a8c",
                "#13c2c2", "#08979c", "#006d75", "#00474f"],
    "sunset": ["#f94144", "#f3722c", "#f8961e", "#f9c74f", "#43aa8b", "#577590", "#277da1"],
    "forest": ["#1b4332", "#2d6a4f", "#40916c", "#52b788", "#74c69d", "#95d5b2", "#b7e4c7"],
    "colorblindFriendly": ["#332288", "#88CCEE", "#44AA99", "#117733", "#999933",
                           "#DDCC77", "#CC6677", "#882255", "#AA4499"],
}

NUMBER_FORMATS: Dict[str, str] = {
    "default": "Default (1,234.5)",
    "usd": "USD ($1,234.50)",
    "eur": "EUR (€1,234.50)",
    "gbp": "GBP (£1,234.50)",
    "jpy": "JPY (¥1,234)",
    "percent": "Percent (12.3%)",
}


def palette(name: str) -> List[str]:
    return PALETTES.get(name, PALETTES["default"])


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
        return False
    return not math.isnan(float(value))


def _group(value: float, decimals: int, thousands: str = ",", point: str = ".") -> str:
    text = f"{abs(value):,.{decimals}f}"
    if thousands != "," or point != ".":
        text = text.replace(",", "\0").replace(".", point).replace("\0", thousands)
    return ("-" if value < 0 else "") + text


def _trim_decimals(text: str, point: str = ".") -> str:
    if point in text:
        text = text.rstrip("0").rstrip(point)
    return text


def format_number(value: Any, fmt: str = "default") -> Any:
    """Format *value* with one of the six number-format modes.

    Non-numeric input is returned unchanged.
    """
    if not _is_number(value):
        return value
    value = float(value)

    if fmt == "usd":
        return _signed("$", _group(abs(value), 2), value)
    if fmt == "eur":
        # de-DE convention: 1.234,50 €
        return f"{_group(value, 2, thousands='.', point=',')} €"
    if fmt == "gbp":
        return _signed("£", _group(abs(value), 2), value)
    if fmt == "jpy":
        return _signed("￥", _group(abs(round(value)), 0), value)
    if fmt == "percent":
        return f"{_group(value * 100, 1)}%"
    return _trim_decimals(_group(value, 1))


def _signed(symbol: str, body: str, value: float) -> str:
    return f"-{symbol}{body}" if value < 0 else f"{symbol}{body}"
