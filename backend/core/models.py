"""
Core Pydantic models for the DataCanvas engine.

All domain types live here so every module shares the same vocabulary.
Attribute names are snake_case; the serialized form (workspace files, API
payloads, SSE events) keeps the camelCase keys the rendering surface reads.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys and unset optionals dropped."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Fields & shelves
# ---------------------------------------------------------------------------

class FieldKind(str, Enum):
    dimension = "dimension"
    measure = "measure"


class DrillLevel(str, Enum):
    year = "year"
    quarter = "quarter"
    month = "month"


# Coarse to fine; drilling down moves right.
DATE_LEVELS: List[DrillLevel] = [DrillLevel.year, DrillLevel.quarter, DrillLevel.month]


class SortOrder(str, Enum):
    asc = "asc"
    desc = "desc"


class FieldRef(_CamelModel):
    name: str
    type: FieldKind
    is_date: Optional[bool] = None
    drill_level: Optional[DrillLevel] = None
    sort: Optional[SortOrder] = None
    is_calculated: Optional[bool] = None
    formula: Optional[str] = None


class RangeValues(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None


class ListFilter(_CamelModel):
    field: str
    filter_type: Literal["dimension"] = Field("dimension", alias="filter_type")
    mode: str = "list"                    # list | top | bottom
    n: int = 10
    by: str = ""
    values: List[Any] = Field(default_factory=list)
    unique_values: List[Any] = Field(default_factory=list)


class RangeFilter(_CamelModel):
    field: str
    filter_type: Literal["range"] = Field("range", alias="filter_type")
    values: RangeValues = Field(default_factory=RangeValues)


ShelfFilter = Annotated[Union[ListFilter, RangeFilter], Field(discriminator="filter_type")]


class ShelfName(str, Enum):
    columns = "columns"
    rows = "rows"
    color = "color"
    filters = "filters"


class Shelves(_CamelModel):
    columns: List[FieldRef] = Field(default_factory=list)
    rows: List[FieldRef] = Field(default_factory=list)
    color: List[FieldRef] = Field(default_factory=list)
    filters: List[ShelfFilter] = Field(default_factory=list)

    def axis_fields(self) -> List[FieldRef]:
        """Fields on columns and rows, in shelf order."""
        return [*self.columns, *self.rows]

    def encoded_fields(self) -> List[FieldRef]:
        """Fields on columns, rows and color."""
        return [*self.columns, *self.rows, *self.color]


# ---------------------------------------------------------------------------
# Worksheets & dashboard
# ---------------------------------------------------------------------------

class AnalyticsConfig(_CamelModel):
    show_trend_line: bool = False
    forecast_periods: int = 3
    model: str = "linear"


class Worksheet(_CamelModel):
    id: int = Field(gt=0)
    name: str
    shelves: Shelves = Field(default_factory=Shelves)
    active_chart_type: str = "bar"
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    # Cache of the last gateway reply; rebuilt on every refresh so it is
    # neither snapshotted nor saved.
    chart_data: Any = Field(default_factory=list, exclude=True)


class LayoutItem(_CamelModel):
    i: str
    x: int = 0
    y: int = 0
    w: int = 6
    h: int = 5
    worksheet_id: int


class CrossFilter(_CamelModel):
    field: str
    value: Any = None
    source_id: int


class SessionSnapshot(_CamelModel):
    worksheets: List[Worksheet] = Field(default_factory=list)
    dashboard_layout: List[LayoutItem] = Field(default_factory=list)
    calculated_fields: List[FieldRef] = Field(default_factory=list)
    dimensions: List[FieldRef] = Field(default_factory=list)
    measures: List[FieldRef] = Field(default_factory=list)


class WorkspaceFile(SessionSnapshot):
    active_palette: Optional[str] = None
    active_number_format: Optional[str] = None
    auto_update_enabled: Optional[bool] = None


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

class Preferences(_CamelModel):
    theme: Literal["light", "dark"] = "light"
    active_palette: str = "default"
    active_number_format: str = "default"
    show_data_labels: bool = False
    auto_update_enabled: bool = True


# ---------------------------------------------------------------------------
# Chart types & chart payloads
# ---------------------------------------------------------------------------

class ChartType(str, Enum):
    table = "table"
    bar = "bar"
    line = "line"
    area = "area"
    treemap = "treemap"
    boxplot = "boxplot"
    map = "map"
    combo = "combo"
    scatter = "scatter"
    sankey = "sankey"
    gantt = "gantt"
    word_cloud = "wordCloud"
    heatmap = "heatmap"
    pie = "pie"


class ChartSuggestion(BaseModel):
    name: str
    type: ChartType
    icon: str


class ForecastPoint(BaseModel):
    prediction: float


class ConfidenceBand(BaseModel):
    lower: float
    upper: float


class AnalyticsPayload(_CamelModel):
    show_trend_line: bool = False
    forecast_periods: int = 0
    model: str = "linear"
    forecast_data: Optional[List[ForecastPoint]] = None
    forecast_confidence: Optional[List[ConfidenceBand]] = None


class ChartPayload(_CamelModel):
    """Axis-binding metadata echoed back by the compute engine."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    chart_type: str
    x_axis: Optional[str] = None
    y_axes: List[str] = Field(default_factory=list)
    color: Optional[str] = None
    analytics: Optional[AnalyticsPayload] = None
    heatmap_x: Optional[str] = None
    heatmap_y: Optional[str] = None
    heatmap_value: Optional[str] = None
    geo_field: Optional[str] = None
    value_field: Optional[str] = None


# ---------------------------------------------------------------------------
# Gateway messages
# ---------------------------------------------------------------------------

class RequestKind(str, Enum):
    chart_data = "processDataForChart"
    analysis = "runAnalysis"
    binning = "runBinning"


class GatewayReply(BaseModel):
    request_id: int
    kind: RequestKind
    result: Any = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------

class ShelfAssignRequest(_CamelModel):
    shelf: ShelfName
    fields: List[FieldRef]


class ShelfItemRequest(_CamelModel):
    shelf: ShelfName
    name: str


class FieldNameRequest(_CamelModel):
    name: str


class DrillRequest(_CamelModel):
    name: str
    direction: Literal["up", "down"]


class ChartTypeRequest(_CamelModel):
    chart_type: str


class GroupRequest(_CamelModel):
    field: str
    selected_values: List[Any]
    new_group_name: str


class CalculatedFieldRequest(_CamelModel):
    name: str
    formula: str


class BinRequest(_CamelModel):
    measure: str
    bin_size: Optional[float] = None
    bin_name: str


class AnalysisRequest(_CamelModel):
    test_type: str
    params: Dict[str, Any] = Field(default_factory=dict)


class RenameRequest(_CamelModel):
    name: str


class AnalyticsRequest(_CamelModel):
    show_trend_line: Optional[bool] = None
    forecast_periods: Optional[int] = None
    model: Optional[str] = None


class PointerRequest(_CamelModel):
    x: float
    y: float


class InteractionStartRequest(_CamelModel):
    worksheet_id: int
    kind: Literal["drag", "resize"]
    x: float
    y: float
    grid_width: float
    on_resize_handle: bool = False


class CrossFilterRequest(_CamelModel):
    worksheet_id: int
    value: Any


class FilterUpdateRequest(_CamelModel):
    field: str
    values: Any = None
    mode: Optional[str] = None
    n: Optional[int] = None
    by: Optional[str] = None


class ViewModeRequest(_CamelModel):
    mode: Literal["worksheet", "dashboard"]


class PreferencesRequest(_CamelModel):
    theme: Optional[Literal["light", "dark"]] = None
    active_palette: Optional[str] = None
    active_number_format: Optional[str] = None
    show_data_labels: Optional[bool] = None
    auto_update_enabled: Optional[bool] = None


class RecordsRequest(_CamelModel):
    records: List[Dict[str, Any]]
    file_name: Optional[str] = None


class UrlRequest(_CamelModel):
    url: str
