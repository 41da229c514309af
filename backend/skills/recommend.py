"""
Deterministic chart recommendation from shelf field roles.

suggest_chart_types() lists every chart type the current encoding supports.
apply_shelf_update() picks a default chart type after a shelf edit.
"""

from __future__ import annotations

from typing import List, Optional

from core.models import (
    ChartSuggestion,
    ChartType,
    DrillLevel,
    FieldKind,
    FieldRef,
    Shelves,
    Worksheet,
)
from core.utils import is_date_field, is_geo_field


# ---------------------------------------------------------------------------
# Suggestion catalogue
# ---------------------------------------------------------------------------

_TABLE = ChartSuggestion(name="Table", type=ChartType.table, icon="📇")
_BAR = ChartSuggestion(name="Bar Chart", type=ChartType.bar, icon="📊")
_LINE = ChartSuggestion(name="Line Chart", type=ChartType.line, icon="📈")
_AREA = ChartSuggestion(name="Area Chart", type=ChartType.area, icon="📉")
_TREEMAP = ChartSuggestion(name="Treemap", type=ChartType.treemap, icon="🟫")
_BOXPLOT = ChartSuggestion(name="Box Plot", type=ChartType.boxplot, icon="箱")
_MAP = ChartSuggestion(name="Map Chart", type=ChartType.map, icon="🗺️")
_COMBO = ChartSuggestion(name="Combo Chart", type=ChartType.combo, icon="⬱")
_SCATTER = ChartSuggestion(name="Scatter Plot", type=ChartType.scatter, icon="✨")
_SANKEY = ChartSuggestion(name="Sankey Diagram", type=ChartType.sankey, icon="🌊")
_GANTT = ChartSuggestion(name="Gantt Chart", type=ChartType.gantt, icon="📊")
_WORD_CLOUD = ChartSuggestion(name="Word Cloud", type=ChartType.word_cloud, icon="☁️")
_HEATMAP = ChartSuggestion(name="Heatmap", type=ChartType.heatmap, icon="🔥")
_PIE = ChartSuggestion(name="Pie Chart", type=ChartType.pie, icon="🥧")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _dimensions(fields: List[FieldRef]) -> List[FieldRef]:
    return [f for f in fields if f.type == FieldKind.dimension]


def _measures(fields: List[FieldRef]) -> List[FieldRef]:
    return [f for f in fields if f.type == FieldKind.measure]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def suggest_chart_types(shelves: Optional[Shelves]) -> List[ChartSuggestion]:
    """
    Chart types viable for the fields on columns, rows and color.

    Every rule is evaluated independently; the order of the returned list is
    the display order.
    """
    if shelves is None:
        return []

    fields = shelves.encoded_fields()
    dims = len(_dimensions(fields))
    measures = len(_measures(fields))
    suggestions: List[ChartSuggestion] = []

    if dims >= 1 and measures >= 1:
        suggestions.extend([_TABLE, _BAR, _LINE, _AREA, _TREEMAP, _BOXPLOT])

    if measures >= 1 and any(is_geo_field(f.name) for f in _dimensions(fields)):
        suggestions.append(_MAP)

    if measures >= 2:
        if len(_measures(shelves.rows)) == 2 and dims >= 1:
            suggestions.append(_COMBO)
        suggestions.append(_SCATTER)

    if dims >= 2 and measures >= 1:
        suggestions.append(_SANKEY)

    if dims >= 1 and sum(1 for f in fields if is_date_field(f.name)) >= 2:
        suggestions.append(_GANTT)

    if dims >= 1 and measures == 0:
        suggestions.append(_WORD_CLOUD)

    if dims >= 2 and measures >= 1:
        suggestions.append(_HEATMAP)

    if dims >= 1 and measures >= 1 and not any(s.type == ChartType.pie for s in suggestions):
        suggestions.append(_PIE)

    return [s.model_copy() for s in suggestions]


def default_chart_type(fields: List[FieldRef], current: str) -> str:
    """Chart type implied by the axis fields; *current* when nothing applies."""
    measure_count = len(_measures(fields))
    if measure_count >= 2:
        return ChartType.scatter.value
    if measure_count >= 1 and any(f.is_date for f in fields):
        return ChartType.line.value
    if measure_count >= 1 and _dimensions(fields):
        return ChartType.bar.value
    return current


def apply_shelf_update(worksheet: Worksheet) -> str:
    """
    Normalize date fields on columns/rows and re-pick the chart type.

    Date-named fields entering the axes are flagged ``is_date`` and start at
    the ``year`` drill level. Mutates *worksheet* and returns the chart type.
    """
    fields = worksheet.shelves.axis_fields()
    for f in fields:
        if is_date_field(f.name) and not f.is_date:
            f.is_date = True
            f.drill_level = DrillLevel.year

    worksheet.active_chart_type = default_chart_type(fields, worksheet.active_chart_type)
    return worksheet.active_chart_type


def is_analytics_panel_visible(worksheet: Optional[Worksheet]) -> bool:
    """Trend/forecast controls apply to line charts over a date column."""
    if worksheet is None:
        return False
    return (
        worksheet.active_chart_type == ChartType.line.value
        and any(f.is_date for f in worksheet.shelves.columns)
    )
