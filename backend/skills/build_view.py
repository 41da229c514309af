"""
View builder skill.

Takes the aggregated rows + payload metadata returned by the compute engine
and produces a chart description (an ECharts option dict) for the rendering
surface. Callbacks cannot cross the wire, so every number the renderer shows
as text (data labels, legend bounds) is pre-formatted here with the active
number format, and the format name travels along as ``numberFormat``.

Input contract (rows):
- bar/line/area/combo/pie/treemap/heatmap/map/scatter/table: list of flat
  aggregated rows.
- boxplot: {categories, boxplotData}.
- sankey: {nodes, links}.
- wordCloud: list of {name, value}.
- gantt: {startTime, categories, seriesData}.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from core.formatting import format_number, palette
from core.models import ChartPayload, ChartType, FieldKind, FieldRef, Preferences, Shelves
from core.utils import distinct, is_numeric_value, map_country_name, sort_key

logger = logging.getLogger("uvicorn.error")

_GRID = {"left": "3%", "right": "4%", "bottom": "3%", "containLabel": True}
_INTENSITY = ["#e0f3ff", "#69c0ff", "#003a8c"]


# ---------------------------------------------------------------------------
# Row ordering
# ---------------------------------------------------------------------------

def _sort_field(shelves: Optional[Shelves]) -> Optional[FieldRef]:
    if shelves is None:
        return None
    return next((f for f in shelves.axis_fields() if f.sort), None)


def sort_rows(rows: Any, payload: ChartPayload, shelves: Optional[Shelves] = None) -> Any:
    """Order rows for display; pre-shaped (non-list) data is returned as is.

    An explicit field sort wins. Missing values count as 0, measures compare
    numerically and everything else as text. Without one, non-scatter charts
    are ordered by their x-axis label.
    """
    if not isinstance(rows, list):
        return rows

    field = _sort_field(shelves)
    if field is not None:
        descending = field.sort == "desc"
        if field.type == FieldKind.measure:
            def key(row):
                value = row.get(field.name)
                return value if is_numeric_value(value) else 0
        else:
            def key(row):
                return str(row.get(field.name) or 0)
        return sorted(rows, key=key, reverse=descending)

    if payload.x_axis and payload.chart_type != ChartType.scatter.value:
        return sorted(rows, key=lambda r: sort_key(r.get(payload.x_axis)))
    return list(rows)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(prefs: Preferences) -> Callable[[Any], Any]:
    return lambda v: format_number(v, prefs.active_number_format)


def _series_data(values: Sequence[Any], prefs: Preferences) -> List[Any]:
    """Raw values, or value items carrying a formatted label when labels show."""
    if not prefs.show_data_labels:
        return list(values)
    fmt = _fmt(prefs)
    return [{"value": v, "label": {"formatter": str(fmt(v))}} for v in values]


def _label(prefs: Preferences) -> Dict[str, Any]:
    return {"show": prefs.show_data_labels, "position": "top"}


def _numbers(values: Sequence[Any]) -> List[float]:
    return [v for v in values if is_numeric_value(v)]


def _visual_map(values: Sequence[Any], prefs: Preferences, **extra) -> Dict[str, Any]:
    nums = _numbers(values)
    lo, hi = (min(nums), max(nums)) if nums else (0, 0)
    fmt = _fmt(prefs)
    return {
        "min": lo,
        "max": hi,
        "text": [str(fmt(hi)), str(fmt(lo))],
        "inRange": {"color": list(_INTENSITY)},
        "calculable": True,
        "orient": "horizontal",
        "left": "center",
        "bottom": "0%",
        **extra,
    }


def trend_line(values: Sequence[Any]) -> List[float]:
    """Least-squares fit over (index, value), evaluated at each index."""
    y = np.asarray([v if is_numeric_value(v) else 0 for v in values], dtype=float)
    x = np.arange(len(y), dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    return [float(slope * i + intercept) for i in x]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _bar_line_area(rows: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    chart_type, x_axis, color = payload.chart_type, payload.x_axis, payload.color
    if not x_axis or not payload.y_axes:
        return {}
    measure = payload.y_axes[0]
    series_type = "line" if chart_type == ChartType.area.value else chart_type

    categories = distinct(r.get(x_axis) for r in rows)
    legend = distinct(r.get(color) for r in rows) if color else []

    def lookup(cat, group=None):
        for r in rows:
            if r.get(x_axis) == cat and (color is None or r.get(color) == group):
                return r.get(measure) or 0
        return 0

    def make_series(name, values, stacked):
        series = {
            "name": name,
            "type": series_type,
            "emphasis": {"focus": "series"},
            "label": _label(prefs),
            "data": _series_data(values, prefs),
        }
        if stacked:
            series["stack"] = "total"
        if chart_type == ChartType.area.value:
            series["areaStyle"] = {}
        return series

    if legend:
        series = [make_series(g, [lookup(c, g) for c in categories], True) for g in legend]
    else:
        series = [make_series(measure, [lookup(c) for c in categories], False)]

    option: Dict[str, Any] = {
        "color": palette(prefs.active_palette),
        "tooltip": {"trigger": "axis", "axisPointer": {"type": "shadow"}},
        "legend": {"data": list(legend)},
        "xAxis": {"type": "category", "data": list(categories)},
        "yAxis": {"type": "value"},
        "series": series,
        "grid": dict(_GRID),
    }

    analytics = payload.analytics
    if chart_type != ChartType.line.value or analytics is None or not analytics.show_trend_line:
        return option

    if analytics.forecast_data and analytics.forecast_confidence:
        horizon = len(analytics.forecast_data)
        option["xAxis"]["data"] = [*categories, *(f"Forecast {i + 1}" for i in range(horizon))]
        option["series"].append({
            "name": "Forecast",
            "type": "line",
            "smooth": True,
            "symbol": "none",
            "lineStyle": {"type": "dashed", "width": 2},
            "data": [None] * len(categories) + [p.prediction for p in analytics.forecast_data],
        })
        option["series"].append({
            "name": "Confidence Interval",
            "type": "line",
            "smooth": True,
            "symbol": "none",
            "lineStyle": {"opacity": 0},
            "areaStyle": {"color": "rgba(59, 130, 246, 0.2)"},
            "data": [[None, None]] * len(categories)
            + [[band.lower, band.upper] for band in analytics.forecast_confidence],
            "markLine": {"data": [
                {"yAxis": "min", "name": "Min", "label": {"show": False}},
                {"yAxis": "max", "name": "Max", "label": {"show": False}},
            ]},
        })
        option["legend"]["data"].extend(["Forecast", "Confidence Interval"])
    elif len(rows) > 1 and not color:
        option["series"].append({
            "name": "Trend Line",
            "type": "line",
            "smooth": True,
            "symbol": "none",
            "lineStyle": {"type": "dashed", "width": 2},
            "data": trend_line([r.get(measure) for r in rows]),
        })
        option["legend"]["data"].append("Trend Line")
    return option


def _combo(rows: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    y_axes = payload.y_axes
    if len(y_axes) < 2 or not y_axes[0] or not y_axes[1]:
        return {}
    first, second = y_axes[0], y_axes[1]
    return {
        "color": palette(prefs.active_palette),
        "tooltip": {"trigger": "axis", "axisPointer": {"type": "cross"}},
        "legend": {"data": [first, second]},
        "xAxis": [{
            "type": "category",
            "data": distinct(r.get(payload.x_axis) for r in rows),
            "axisPointer": {"type": "shadow"},
        }],
        "yAxis": [
            {"type": "value", "name": first},
            {"type": "value", "name": second, "position": "right"},
        ],
        "series": [
            {
                "name": first, "type": "bar", "yAxisIndex": 0, "label": _label(prefs),
                "data": _series_data([r.get(first) or 0 for r in rows], prefs),
            },
            {
                "name": second, "type": "line", "yAxisIndex": 1, "label": _label(prefs),
                "data": _series_data([r.get(second) or 0 for r in rows], prefs),
            },
        ],
        "grid": dict(_GRID),
    }


def _pie(rows: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    if not payload.y_axes:
        return {}
    measure = payload.y_axes[0]
    return {
        "color": palette(prefs.active_palette),
        "tooltip": {"trigger": "item"},
        "series": [{
            "name": measure,
            "type": "pie",
            "radius": "60%",
            "data": [{"value": r.get(measure), "name": r.get(payload.x_axis)} for r in rows],
            "emphasis": {"itemStyle": {"shadowBlur": 10, "shadowOffsetX": 0, "shadowColor": "rgba(0,0,0,0.5)"}},
        }],
    }


def _treemap(rows: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    if not payload.y_axes:
        return {}
    measure = payload.y_axes[0]
    return {
        "color": palette(prefs.active_palette),
        "tooltip": {},
        "series": [{
            "type": "treemap",
            "data": [{"name": r.get(payload.x_axis), "value": r.get(measure)} for r in rows],
        }],
    }


def _heatmap(
    rows: List[Dict[str, Any]],
    payload: ChartPayload,
    prefs: Preferences,
    records: Sequence[Dict[str, Any]] = (),
    **_,
) -> Dict[str, Any]:
    hx, hy, hv = payload.heatmap_x, payload.heatmap_y, payload.heatmap_value
    if not hx or not hy or not hv:
        return {}

    # Axes come from the full record set so filtering never shifts them.
    x_data = sorted(distinct(r.get(hx) for r in records), key=sort_key)
    y_data = sorted(distinct(r.get(hy) for r in records), key=sort_key)
    x_index = {v: i for i, v in enumerate(x_data)}
    y_index = {v: i for i, v in enumerate(y_data)}

    cells = [
        [x_index[r.get(hx)], y_index[r.get(hy)], r.get(hv)]
        for r in rows
        if r.get(hx) in x_index and r.get(hy) in y_index
    ]
    return {
        "tooltip": {"position": "top"},
        "grid": {"height": "80%", "top": "10%"},
        "xAxis": {"type": "category", "data": x_data, "splitArea": {"show": True}},
        "yAxis": {"type": "category", "data": y_data, "splitArea": {"show": True}},
        "visualMap": _visual_map([c[2] for c in cells], prefs),
        "series": [{
            "name": "Heatmap Data",
            "type": "heatmap",
            "data": cells,
            "label": {"show": True},
            "emphasis": {"itemStyle": {"shadowBlur": 10, "shadowColor": "rgba(0,0,0,0.5)"}},
        }],
    }


def _scatter(rows: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    if not payload.x_axis or not payload.y_axes:
        return {}
    x, y = payload.x_axis, payload.y_axes[0]
    return {
        "color": palette(prefs.active_palette),
        "tooltip": {"trigger": "item"},
        "xAxis": {"type": "value", "name": x},
        "yAxis": {"type": "value", "name": y},
        "series": [{"symbolSize": 10, "type": "scatter", "data": [[r.get(x), r.get(y)] for r in rows]}],
        "grid": dict(_GRID),
    }


def _map(rows: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    geo, value = payload.geo_field, payload.value_field
    if not geo or not value:
        return {}
    return {
        "tooltip": {"trigger": "item"},
        "visualMap": _visual_map([r.get(value) for r in rows], prefs),
        "series": [{
            "name": "Map Data",
            "type": "map",
            "map": "world",
            "roam": True,
            "emphasis": {"label": {"show": True}, "itemStyle": {"areaColor": "#ee6666"}},
            "data": [{"name": map_country_name(r.get(geo)), "value": r.get(value)} for r in rows],
        }],
    }


def _boxplot(data: Dict[str, Any], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    if not isinstance(data, dict) or "boxplotData" not in data:
        return {}
    return {
        "color": palette(prefs.active_palette),
        "tooltip": {"trigger": "item", "axisPointer": {"type": "shadow"}},
        "grid": {"left": "10%", "right": "10%", "bottom": "15%"},
        "xAxis": {
            "type": "category",
            "data": data.get("categories", []),
            "boundaryGap": True,
            "nameGap": 30,
            "splitArea": {"show": False},
            "splitLine": {"show": False},
        },
        "yAxis": {
            "type": "value",
            "name": payload.y_axes[0] if payload.y_axes else None,
            "splitArea": {"show": True},
        },
        "series": [{"name": "BoxPlot", "type": "boxplot", "data": data["boxplotData"]}],
    }


def _sankey(data: Dict[str, Any], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    if not isinstance(data, dict) or "nodes" not in data:
        return {}
    return {
        "tooltip": {"trigger": "item", "triggerOn": "mousemove"},
        "series": [{
            "type": "sankey",
            "data": data["nodes"],
            "links": data.get("links", []),
            "emphasis": {"focus": "adjacency"},
            "lineStyle": {"color": "gradient", "curveness": 0.5},
        }],
    }


def _word_cloud(data: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    return {
        "tooltip": {"show": True},
        "series": [{
            "type": "wordCloud",
            "sizeRange": [12, 60],
            "rotationRange": [-90, 90],
            "rotationStep": 45,
            "gridSize": 8,
            "shape": "circle",
            "width": "80%",
            "height": "80%",
            # Colors are drawn per word by the renderer.
            "textStyle": {"color": "random"},
            "data": list(data or []),
        }],
    }


def _gantt(data: Dict[str, Any], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    if not isinstance(data, dict) or "seriesData" not in data:
        return {}
    return {
        "tooltip": {"trigger": "item"},
        "xAxis": {"type": "time", "min": data.get("startTime")},
        "yAxis": {"type": "category", "data": data.get("categories", []), "splitLine": {"show": True}},
        "series": [{
            "type": "custom",
            "renderItem": "ganttBar",
            "itemStyle": {"opacity": 0.8},
            "encode": {"x": [1, 2], "y": 0},
            "data": data["seriesData"],
        }],
    }


def _table(rows: List[Dict[str, Any]], payload: ChartPayload, prefs: Preferences, **_) -> Dict[str, Any]:
    if not rows:
        return {"headers": [], "rows": [], "cellStyles": []}
    headers = list(rows[0].keys())
    measures = [FieldRef(name=name, type=FieldKind.measure) for name in payload.y_axes]
    return {
        "headers": headers,
        "rows": rows,
        "cellStyles": [[table_cell_style(row.get(h), h, measures) for h in headers] for row in rows],
    }


_BUILDERS: Dict[ChartType, Callable[..., Dict[str, Any]]] = {
    ChartType.bar: _bar_line_area,
    ChartType.line: _bar_line_area,
    ChartType.area: _bar_line_area,
    ChartType.combo: _combo,
    ChartType.pie: _pie,
    ChartType.treemap: _treemap,
    ChartType.heatmap: _heatmap,
    ChartType.scatter: _scatter,
    ChartType.map: _map,
    ChartType.boxplot: _boxplot,
    ChartType.sankey: _sankey,
    ChartType.word_cloud: _word_cloud,
    ChartType.gantt: _gantt,
    ChartType.table: _table,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def build_chart_option(
    chart_type: str,
    rows: Any,
    payload: ChartPayload | Dict[str, Any],
    *,
    shelves: Optional[Shelves] = None,
    prefs: Optional[Preferences] = None,
    records: Sequence[Dict[str, Any]] = (),
) -> Dict[str, Any]:
    """
    Chart description for one worksheet.

    Returns ``{}`` for unknown chart types and for encodings that lack the
    bindings the chart type needs.
    """
    if not isinstance(payload, ChartPayload):
        payload = ChartPayload.model_validate(payload)
    prefs = prefs or Preferences()

    try:
        kind = ChartType(chart_type)
    except ValueError:
        logger.warning("Unknown chart type %r; nothing to draw", chart_type)
        return {}
    if payload.chart_type != kind.value:
        payload = payload.model_copy(update={"chart_type": kind.value})

    ordered = sort_rows(rows, payload, shelves)
    option = _BUILDERS[kind](ordered, payload, prefs, records=records)
    if not option:
        logger.warning("Chart %s is missing required bindings", kind.value)
        return {}
    if kind != ChartType.table:
        option["numberFormat"] = prefs.active_number_format
    return option


def table_cell_style(value: Any, header: str, measures: Sequence[FieldRef]) -> Dict[str, str]:
    """Color sign of measure cells: red below zero, green above."""
    if not is_numeric_value(value) or not any(m.name == header for m in measures):
        return {}
    if value < 0:
        return {"color": "#ee6666"}
    if value > 0:
        return {"color": "#3ba272"}
    return {}
