"""
Compute engine: aggregation, statistics and binning.

Runs off the interactive loop (see server/gateway.py). Each handler takes the
plain-dict message payload and returns a plain-dict reply, so nothing here
shares state with the session that asked.

Chart data contract (reply["chartData"]):
- bar/line/area/table/pie/treemap/combo/map/heatmap: aggregated rows, one per
  distinct combination of the encoded dimensions, measures summed.
- scatter: aggregated rows when dimensions are encoded, else raw pairs.
- boxplot: {categories, boxplotData[[min, q1, median, q3, max], ...]}.
- sankey: {nodes[{name}], links[{source, target, value}]}.
- wordCloud: [{name, value}] value counts of the first dimension.
- gantt: {startTime, categories, seriesData[{name, value[lane, start, end]}]}.
"""

from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from core.models import (
    AnalyticsPayload,
    ChartPayload,
    ChartType,
    ConfidenceBand,
    CrossFilter,
    DATE_LEVELS,
    DrillLevel,
    FieldKind,
    FieldRef,
    ForecastPoint,
    ListFilter,
    RangeFilter,
    RequestKind,
    Worksheet,
)
from core.utils import (
    df_to_records_safe,
    distinct,
    is_date_field,
    is_geo_field,
    smart_numeric_series,
)
from skills.shelves import CALC_TERM

logger = logging.getLogger("uvicorn.error")

# z-value of a two-sided 95% interval
_Z95 = 1.96
ZSCORE_THRESHOLD = 3.0


class InvalidAnalysisParams(ValueError):
    """Raised before dispatch when analysis parameters are incomplete."""


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------

def _to_datetime(series: pd.Series) -> pd.Series:
    return pd.to_datetime(series.astype("string"), errors="coerce", format="mixed")


def drill_labels(series: pd.Series, level: DrillLevel) -> pd.Series:
    """Relabel date values at the given granularity; unparseable values stay."""
    dt = _to_datetime(series)
    if level == DrillLevel.year:
        labels = dt.dt.strftime("%Y")
    elif level == DrillLevel.quarter:
        labels = dt.dt.to_period("Q").dt.strftime("%Y-Q%q")
    else:
        labels = dt.dt.strftime("%Y-%m")
    return labels.where(dt.notna(), series)


def _apply_filters(df: pd.DataFrame, worksheet: Worksheet) -> pd.DataFrame:
    for flt in worksheet.shelves.filters:
        if flt.field not in df.columns:
            logger.debug("Filter on unknown field %r skipped", flt.field)
            continue
        if isinstance(flt, ListFilter):
            if flt.mode in ("top", "bottom") and flt.by in df.columns:
                totals = smart_numeric_series(df[flt.by]).groupby(df[flt.field]).sum()
                keep = totals.nlargest(flt.n) if flt.mode == "top" else totals.nsmallest(flt.n)
                df = df[df[flt.field].isin(keep.index)]
            else:
                df = df[df[flt.field].isin(flt.values)]
        elif isinstance(flt, RangeFilter):
            values = smart_numeric_series(df[flt.field])
            mask = pd.Series(True, index=df.index)
            if flt.values.min is not None:
                mask &= values >= flt.values.min
            if flt.values.max is not None:
                mask &= values <= flt.values.max
            df = df[mask]
    return df


def _apply_cross_filters(
    df: pd.DataFrame, worksheet_id: int, cross_filters: Sequence[CrossFilter],
) -> pd.DataFrame:
    """Keep rows matching every other chart's selection.

    Selections arrive as rendered category labels, so a date field also
    matches on any of its drilled labels.
    """
    for cf in cross_filters:
        if cf.source_id == worksheet_id or cf.field not in df.columns:
            continue
        column = df[cf.field]
        target = str(cf.value)
        mask = column.astype("string") == target
        if is_date_field(cf.field):
            for level in DATE_LEVELS:
                mask |= drill_labels(column, level).astype("string") == target
        df = df[mask.fillna(False)]
    return df


# ---------------------------------------------------------------------------
# Calculated fields & aggregation
# ---------------------------------------------------------------------------

_CALC_FUNCS: Dict[str, Callable[[pd.Series, pd.Series], float]] = {
    "SUM": lambda num, raw: num.sum(min_count=1),
    "AVG": lambda num, raw: num.mean(),
    "COUNT": lambda num, raw: float(raw.notna().sum()),
    "COUNTD": lambda num, raw: float(raw.nunique(dropna=True)),
    "MIN": lambda num, raw: num.min(),
    "MAX": lambda num, raw: num.max(),
    "MEDIAN": lambda num, raw: num.median(),
    "STDEV": lambda num, raw: num.std(),
    "VAR": lambda num, raw: num.var(),
}


def eval_formula(formula: str, frame: pd.DataFrame) -> float:
    """
    Evaluate a calculated-field formula over *frame*.

    Each ``FUNC([Field])`` term is aggregated first; the arithmetic between
    terms is then evaluated by pandas.
    """
    local: Dict[str, Any] = {}

    def _term(match) -> str:
        func, field = match.group(1), match.group(2)
        if field in frame.columns:
            raw = frame[field]
            value = _CALC_FUNCS[func](smart_numeric_series(raw), raw)
        else:
            value = np.nan
        name = f"calc_{len(local)}"
        local[name] = np.float64(value)
        return name

    expr = CALC_TERM.sub(_term, formula)
    with np.errstate(divide="ignore", invalid="ignore"):
        result = pd.eval(expr, local_dict=local, engine="python")
    return float(result)


def _aggregate(df: pd.DataFrame, dims: List[str], measures: List[FieldRef]) -> List[Dict[str, Any]]:
    plain = [m.name for m in measures if not m.is_calculated and m.name in df.columns]
    calc = [m for m in measures if m.is_calculated and m.formula]

    if not dims:
        if df.empty:
            return []
        row: Dict[str, Any] = {p: df[p].sum(min_count=1) for p in plain}
        for m in calc:
            row[m.name] = eval_formula(m.formula, df)
        return df_to_records_safe(pd.DataFrame([row]))

    rows: List[Dict[str, Any]] = []
    for key, group in df.groupby(dims, dropna=False, sort=False):
        key = key if isinstance(key, tuple) else (key,)
        row = dict(zip(dims, key))
        for p in plain:
            row[p] = group[p].sum(min_count=1)
        for m in calc:
            row[m.name] = eval_formula(m.formula, group)
        rows.append(row)
    if not rows:
        return []
    return df_to_records_safe(pd.DataFrame(rows))


# ---------------------------------------------------------------------------
# Forecast
# ---------------------------------------------------------------------------

def linear_forecast(values: Sequence[float], periods: int) -> Optional[Dict[str, List]]:
    """Least-squares line over (index, value) extended *periods* steps.

    The band is prediction ± 1.96 residual standard deviations.
    """
    y = np.asarray([v for v in values if v is not None], dtype=float)
    y = y[np.isfinite(y)]
    if len(y) < 2 or periods <= 0:
        return None
    x = np.arange(len(y), dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    residuals = y - (slope * x + intercept)
    spread = float(np.sqrt(np.sum(residuals ** 2) / (len(y) - 2))) if len(y) > 2 else 0.0

    future = np.arange(len(y), len(y) + periods, dtype=float)
    preds = slope * future + intercept
    return {
        "forecastData": [ForecastPoint(prediction=float(p)) for p in preds],
        "forecastConfidence": [
            ConfidenceBand(lower=float(p - _Z95 * spread), upper=float(p + _Z95 * spread))
            for p in preds
        ],
    }


# ---------------------------------------------------------------------------
# Pre-shaped structures
# ---------------------------------------------------------------------------

def _boxplot(df: pd.DataFrame, category: Optional[str], measure: str) -> Dict[str, Any]:
    values = smart_numeric_series(df[measure])
    groups = [("All", values)] if not category else [
        (str(name), values.loc[group.index])
        for name, group in df.groupby(category, dropna=False, sort=True)
    ]
    categories: List[str] = []
    data: List[List[float]] = []
    for name, series in groups:
        s = series.dropna()
        if s.empty:
            continue
        categories.append(name)
        data.append([
            float(s.min()),
            float(s.quantile(0.25)),
            float(s.median()),
            float(s.quantile(0.75)),
            float(s.max()),
        ])
    return {"categories": categories, "boxplotData": data}


def _sankey(df: pd.DataFrame, source: str, target: str, measure: str) -> Dict[str, Any]:
    work = df[[source, target]].copy()
    work["__value__"] = smart_numeric_series(df[measure])
    grouped = work.groupby([source, target], sort=False)["__value__"].sum().reset_index()

    sources = [str(v) for v in grouped[source]]
    source_names = set(sources)
    # A label present on both sides would make the flow cyclic.
    targets = [
        f"{v} ({target})" if str(v) in source_names else str(v)
        for v in grouped[target]
    ]
    nodes = [{"name": n} for n in distinct([*sources, *targets])]
    links = [
        {"source": s, "target": t, "value": float(v)}
        for s, t, v in zip(sources, targets, grouped["__value__"])
    ]
    return {"nodes": nodes, "links": links}


def _word_cloud(df: pd.DataFrame, dimension: str) -> List[Dict[str, Any]]:
    counts = df[dimension].dropna().astype(str).value_counts()
    return [{"name": name, "value": int(n)} for name, n in counts.items()]


def _gantt(df: pd.DataFrame, lane: str, start: str, end: str) -> Dict[str, Any]:
    starts = _to_datetime(df[start])
    ends = _to_datetime(df[end])
    valid = starts.notna() & ends.notna()
    if not valid.any():
        return {"startTime": None, "categories": [], "seriesData": []}

    epoch = pd.Timestamp(0)
    one_ms = pd.Timedelta(milliseconds=1)
    lanes = [str(v) for v in df.loc[valid, lane]]
    categories = distinct(lanes)
    series_data = [
        {
            "name": name,
            "value": [categories.index(name), int((s - epoch) // one_ms), int((e - epoch) // one_ms)],
        }
        for name, s, e in zip(lanes, starts[valid], ends[valid])
    ]
    return {
        "startTime": int((starts[valid].min() - epoch) // one_ms),
        "categories": categories,
        "seriesData": series_data,
    }


# ---------------------------------------------------------------------------
# Chart data
# ---------------------------------------------------------------------------

def _encoding(worksheet: Worksheet):
    shelves = worksheet.shelves
    dims = distinct(f.name for f in shelves.encoded_fields() if f.type == FieldKind.dimension)
    col_dims = [f.name for f in shelves.columns if f.type == FieldKind.dimension]
    row_dims = [f.name for f in shelves.rows if f.type == FieldKind.dimension]
    x_axis = (col_dims or row_dims or [None])[0]
    y_axes = distinct(
        f.name for f in [*shelves.rows, *shelves.columns] if f.type == FieldKind.measure
    )
    color = next((f.name for f in shelves.color if f.type == FieldKind.dimension), None)
    return dims, x_axis, y_axes, color


def process_chart_data(message: Dict[str, Any]) -> Dict[str, Any]:
    """Aggregate records for one worksheet; reply is ``{chartData, payload}``."""
    worksheet = Worksheet.model_validate(message["config"])
    measures = [FieldRef.model_validate(m) for m in message.get("measures", [])]
    cross_filters = [CrossFilter.model_validate(c) for c in message.get("dashboardFilters", [])]
    chart_type = worksheet.active_chart_type

    df = pd.DataFrame(message.get("records") or [])
    dims, x_axis, y_axes, color = _encoding(worksheet)
    payload = ChartPayload(chart_type=chart_type, x_axis=x_axis, y_axes=y_axes, color=color)

    if df.empty:
        return {"chartData": [], "payload": payload.dump()}

    df = _apply_filters(df, worksheet)
    df = _apply_cross_filters(df, worksheet.id, cross_filters)

    if chart_type != ChartType.gantt.value:
        for f in worksheet.shelves.encoded_fields():
            if f.drill_level and f.name in df.columns:
                df = df.assign(**{f.name: drill_labels(df[f.name], f.drill_level)})

    measure_lookup = {m.name: m for m in measures}
    used = [
        measure_lookup.get(name) or FieldRef(name=name, type=FieldKind.measure)
        for name in y_axes
    ]
    for m in used:
        if not m.is_calculated and m.name in df.columns:
            df = df.assign(**{m.name: smart_numeric_series(df[m.name])})

    data: Any
    if chart_type == ChartType.boxplot.value:
        data = _boxplot(df, x_axis, y_axes[0]) if y_axes and y_axes[0] in df.columns else {}
    elif chart_type == ChartType.sankey.value:
        data = _sankey(df, dims[0], dims[1], y_axes[0]) if len(dims) >= 2 and y_axes else {}
    elif chart_type == ChartType.word_cloud.value:
        data = _word_cloud(df, dims[0]) if dims else []
    elif chart_type == ChartType.gantt.value:
        date_fields = [f.name for f in worksheet.shelves.encoded_fields() if is_date_field(f.name)]
        lanes = [d for d in dims if not is_date_field(d)]
        data = (
            _gantt(df, lanes[0], date_fields[0], date_fields[1])
            if lanes and len(date_fields) >= 2 else {}
        )
    elif chart_type == ChartType.scatter.value:
        if len(y_axes) >= 2:
            payload.x_axis, payload.y_axes = y_axes[0], y_axes[1:2]
        if dims:
            data = _aggregate(df, dims, used)
        else:
            cols = [c for c in y_axes[:2] if c in df.columns]
            data = df_to_records_safe(df[cols].dropna()) if cols else []
    else:
        data = _aggregate(df, dims, used)
        if chart_type == ChartType.heatmap.value and len(dims) >= 2 and y_axes:
            payload.heatmap_x, payload.heatmap_y, payload.heatmap_value = dims[0], dims[1], y_axes[0]
        if chart_type == ChartType.map.value and dims and y_axes:
            payload.geo_field = next((d for d in dims if is_geo_field(d)), dims[0])
            payload.value_field = y_axes[0]

    payload.analytics = _analytics(worksheet, data, x_axis, y_axes, color)
    logger.debug("Chart data for worksheet %d (%s): %d rows", worksheet.id, chart_type, len(data))
    return {"chartData": data, "payload": payload.dump()}


def _analytics(
    worksheet: Worksheet, data: Any, x_axis: Optional[str], y_axes: List[str], color: Optional[str],
) -> AnalyticsPayload:
    cfg = worksheet.analytics
    analytics = AnalyticsPayload(
        show_trend_line=cfg.show_trend_line,
        forecast_periods=cfg.forecast_periods,
        model=cfg.model,
    )
    x_field = next((f for f in worksheet.shelves.columns if f.name == x_axis), None)
    if not (
        worksheet.active_chart_type == ChartType.line.value
        and cfg.show_trend_line
        and cfg.forecast_periods > 0
        and x_field is not None and x_field.is_date
        and y_axes and not color
        and isinstance(data, list)
    ):
        return analytics
    if cfg.model != "linear":
        logger.warning("Unsupported forecast model %r; no forecast produced", cfg.model)
        return analytics

    ordered = sorted(data, key=lambda r: str(r.get(x_axis)))
    forecast = linear_forecast([r.get(y_axes[0]) for r in ordered], cfg.forecast_periods)
    if forecast:
        analytics.forecast_data = forecast["forecastData"]
        analytics.forecast_confidence = forecast["forecastConfidence"]
    return analytics


# ---------------------------------------------------------------------------
# Statistical analysis
# ---------------------------------------------------------------------------

def check_analysis_params(test_type: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """Validate analysis parameters before anything is dispatched."""
    if test_type == "correlation":
        m1, m2 = params.get("measure1"), params.get("measure2")
        if not m1 or not m2:
            raise InvalidAnalysisParams("Please select two measures.")
        if m1 == m2:
            raise InvalidAnalysisParams("Please select two different measures.")
        return {"measure1": m1, "measure2": m2}
    if test_type == "ttest":
        if not params.get("measure") or not params.get("dimension"):
            raise InvalidAnalysisParams("Please select a measure and a dimension.")
        return {"measure": params["measure"], "dimension": params["dimension"]}
    if test_type == "zscore":
        if not params.get("measure"):
            raise InvalidAnalysisParams("Please select a measure.")
        return {"measure": params["measure"]}
    if test_type == "clustering":
        fields = list(params.get("fields") or [])
        try:
            k = int(params.get("k", 3))
        except (TypeError, ValueError) as e:
            raise InvalidAnalysisParams("Cluster count must be an integer.") from e
        if len(fields) < 2:
            raise InvalidAnalysisParams("Please select at least two measures to cluster.")
        if k < 2:
            raise InvalidAnalysisParams("Cluster count must be greater than one.")
        return {"k": k, "fields": fields}
    raise InvalidAnalysisParams("Invalid test type selected.")


def _correlation(df: pd.DataFrame, params: Dict[str, Any]) -> Dict[str, Any]:
    a = smart_numeric_series(df[params["measure1"]])
    b = smart_numeric_series(df[params["measure2"]])
    mask = a.notna() & b.notna()
    if mask.sum() < 3:
        raise ValueError("Not enough paired values for a correlation.")
    r = float(a[mask].corr(b[mask]))
    return {
        "type": "correlation",
        "measure1": params["measure1"],
        "measure2": params["measure2"],
        "coefficient": None if math.isnan(r) else round(r, 6),
        "n": int(mask.sum()),
    }


def _ttest(df: pd.DataFrame, params: Dict[str, Any]) -> Dict[str, Any]:
    from scipy import stats

    measure, dimension = params["measure"], params["dimension"]
    work = pd.DataFrame({"value": smart_numeric_series(df[measure]), "group": df[dimension]})
    work = work.dropna()
    counts = work["group"].value_counts().head(2)
    if len(counts) < 2:
        raise ValueError(f"'{dimension}' needs at least two groups for a t-test.")

    g1, g2 = counts.index[0], counts.index[1]
    s1 = work.loc[work["group"] == g1, "value"]
    s2 = work.loc[work["group"] == g2, "value"]
    if len(s1) < 2 or len(s2) < 2:
        raise ValueError("Each group needs at least two values for a t-test.")
    t_stat, p_value = stats.ttest_ind(s1, s2, equal_var=False)
    return {
        "type": "ttest",
        "groups": [
            {"name": str(g1), "mean": round(float(s1.mean()), 6), "n": int(len(s1))},
            {"name": str(g2), "mean": round(float(s2.mean()), 6), "n": int(len(s2))},
        ],
        "tStatistic": round(float(t_stat), 6),
        "pValue": round(float(p_value), 6),
        "significant": bool(p_value < 0.05),
    }


def _zscore(df: pd.DataFrame, params: Dict[str, Any]) -> Dict[str, Any]:
    values = smart_numeric_series(df[params["measure"]])
    valid = values.dropna()
    if len(valid) < 2:
        raise ValueError("Not enough values to compute z-scores.")
    mean, std = float(valid.mean()), float(valid.std(ddof=0))
    if std == 0:
        raise ValueError("All values are identical; z-scores are undefined.")
    z = (valid - mean) / std
    outliers = [
        {"index": int(i), "value": float(valid[i]), "zScore": round(float(z[i]), 4)}
        for i in z.index[z.abs() >= ZSCORE_THRESHOLD]
    ]
    return {
        "type": "zscore",
        "measure": params["measure"],
        "mean": round(mean, 6),
        "stdDev": round(std, 6),
        "threshold": ZSCORE_THRESHOLD,
        "outliers": outliers,
    }


def _clustering(records: List[Dict[str, Any]], df: pd.DataFrame, params: Dict[str, Any]) -> List[Dict[str, Any]]:
    from sklearn.cluster import KMeans
    from sklearn.preprocessing import StandardScaler

    fields, k = params["fields"], params["k"]
    X = df[fields].apply(smart_numeric_series)
    mask = X.notna().all(axis=1)
    if mask.sum() < k:
        raise ValueError(f"Need at least {k} complete rows to form {k} clusters.")

    scaled = StandardScaler().fit_transform(X[mask])
    labels = KMeans(n_clusters=k, random_state=42, n_init=10).fit_predict(scaled)
    assigned = dict(zip(X.index[mask], labels))
    for idx, record in enumerate(records):
        label = assigned.get(idx)
        record["Cluster"] = f"Cluster {int(label) + 1}" if label is not None else None
    return records


def run_analysis(message: Dict[str, Any]) -> Dict[str, Any]:
    """Reply ``{result}``, ``{records}`` (clustering) or ``{error}``."""
    test_type = message.get("testType", "")
    records = [dict(r) for r in message.get("records") or []]
    try:
        params = check_analysis_params(test_type, message.get("params") or {})
        df = pd.DataFrame(records)
        missing = [f for f in _param_fields(params) if f not in df.columns]
        if missing:
            raise ValueError(f"Unknown field(s): {', '.join(missing)}")
        if test_type == "clustering":
            return {"records": _clustering(records, df, params)}
        handler = {"correlation": _correlation, "ttest": _ttest, "zscore": _zscore}[test_type]
        return {"result": handler(df, params)}
    except ValueError as e:
        return {"error": str(e)}


def _param_fields(params: Dict[str, Any]) -> List[str]:
    names = [params.get(k) for k in ("measure1", "measure2", "measure", "dimension")]
    return [n for n in names if n] + list(params.get("fields") or [])


# ---------------------------------------------------------------------------
# Binning
# ---------------------------------------------------------------------------

# Absorbs float error at bin edges (0.3 / 0.1 == 2.9999999999999996).
_BIN_EPSILON = 1e-9


def _size_decimals(size: float) -> int:
    return max(0, -Decimal(str(size)).normalize().as_tuple().exponent)


def _bound(value: float, decimals: int) -> str:
    return np.format_float_positional(round(value, decimals) + 0.0, trim="-")


def bin_label(value: float, size: float) -> str:
    lo = math.floor(value / size + _BIN_EPSILON) * size
    decimals = _size_decimals(size)
    return f"{_bound(lo, decimals)} - {_bound(lo + size, decimals)}"


def run_binning(message: Dict[str, Any]) -> Dict[str, Any]:
    """Add a dimension labelling each record's bucket of *measure*."""
    records = [dict(r) for r in message.get("records") or []]
    measure = message.get("measure")
    bin_name = message.get("binName")
    try:
        size = float(message.get("binSize") or 0)
    except (TypeError, ValueError):
        size = 0.0
    if size <= 0:
        return {"error": "Bin size must be a positive number."}
    if not records or measure not in records[0]:
        return {"error": f"Measure '{measure}' not found in the data."}

    values = smart_numeric_series(pd.Series([r.get(measure) for r in records], dtype=object))
    for record, value in zip(records, values):
        record[bin_name] = None if pd.isna(value) else bin_label(float(value), size)
    return {"records": records}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

HANDLERS: Dict[RequestKind, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    RequestKind.chart_data: process_chart_data,
    RequestKind.analysis: run_analysis,
    RequestKind.binning: run_binning,
}


def handle_message(kind: RequestKind, message: Dict[str, Any]) -> Dict[str, Any]:
    return HANDLERS[kind](message)
