"""
Tests for chart description synthesis and number formatting.
"""

import pytest

from core.formatting import PALETTES, format_number, palette
from core.models import (
    AnalyticsPayload,
    ChartPayload,
    ConfidenceBand,
    FieldKind,
    FieldRef,
    ForecastPoint,
    Preferences,
    Shelves,
    SortOrder,
)
from skills.build_view import build_chart_option, sort_rows, table_cell_style, trend_line


def dim(name, **kw):
    return FieldRef(name=name, type=FieldKind.dimension, **kw)


def mea(name, **kw):
    return FieldRef(name=name, type=FieldKind.measure, **kw)


class TestFormatNumber:
    """Tests for number formatting modes and palettes."""

    @pytest.mark.parametrize("fmt,value,expected", [
        ("default", 1234.5, "1,234.5"),
        ("default", 10, "10"),
        ("default", -0.5, "-0.5"),
        ("usd", 1234.5, "$1,234.50"),
        ("usd", -3, "-$3.00"),
        ("eur", 1234.5, "1.234,50 €"),
        ("gbp", 1234.5, "£1,234.50"),
        ("jpy", 1234.4, "￥1,234"),
        ("percent", 0.123, "12.3%"),
    ])
    def test_modes(self, fmt, value, expected):
        """Each format mode renders grouping, symbol and decimals."""
        assert format_number(value, fmt) == expected

    @pytest.mark.parametrize("value", ["East", None, True, float("nan")])
    def test_non_numbers_pass_through(self, value):
        """Strings, None, booleans and NaN are returned unchanged."""
        result = format_number(value, "usd")
        if isinstance(value, float):
            assert result != result  # NaN
        else:
            assert result is value

    def test_unknown_palette_falls_back(self):
        """Unknown palette names use the default palette."""
        assert palette("nope") == PALETTES["default"]
        assert palette("sunset") == PALETTES["sunset"]


class TestSortRows:
    """Tests for row ordering before a chart is built."""

    ROWS = [
        {"Region": "West", "Sales": 20},
        {"Region": "East", "Sales": 10},
        {"Region": "North", "Sales": None},
    ]

    def test_default_orders_by_x_axis(self):
        """Without an explicit sort, rows follow the x-axis text."""
        payload = ChartPayload(chart_type="bar", x_axis="Region", y_axes=["Sales"])
        ordered = sort_rows(self.ROWS, payload)
        assert [r["Region"] for r in ordered] == ["East", "North", "West"]

    def test_scatter_keeps_order(self):
        """Scatter plots keep the incoming row order."""
        payload = ChartPayload(chart_type="scatter", x_axis="Region", y_axes=["Sales"])
        assert sort_rows(self.ROWS, payload) == self.ROWS

    def test_measure_sort_desc_missing_counts_as_zero(self):
        """A descending measure sort treats missing values as zero."""
        shelves = Shelves(columns=[dim("Region")], rows=[mea("Sales", sort=SortOrder.desc)])
        payload = ChartPayload(chart_type="bar", x_axis="Region", y_axes=["Sales"])
        ordered = sort_rows(self.ROWS, payload, shelves)
        assert [r["Region"] for r in ordered] == ["West", "East", "North"]

    def test_dimension_sort_asc(self):
        """An ascending dimension sort compares labels."""
        shelves = Shelves(columns=[dim("Region", sort=SortOrder.asc)], rows=[mea("Sales")])
        payload = ChartPayload(chart_type="bar", x_axis="Region", y_axes=["Sales"])
        ordered = sort_rows(self.ROWS, payload, shelves)
        assert [r["Region"] for r in ordered] == ["East", "North", "West"]

    def test_input_not_mutated(self):
        """Sorting returns a new list."""
        rows = list(self.ROWS)
        sort_rows(rows, ChartPayload(chart_type="bar", x_axis="Region"))
        assert rows == self.ROWS

    def test_pre_shaped_data_untouched(self):
        """Pre-shaped chart data is returned as is."""
        data = {"nodes": [], "links": []}
        assert sort_rows(data, ChartPayload(chart_type="sankey")) is data


class TestBarLineArea:
    """Tests for the bar, line and area builders."""

    def test_east_west_single_series(self):
        """Two regions give one bar series ordered by region."""
        rows = [{"Region": "West", "Sales": 20}, {"Region": "East", "Sales": 10}]
        payload = {"chartType": "bar", "xAxis": "Region", "yAxes": ["Sales"]}
        option = build_chart_option("bar", rows, payload)
        assert option["xAxis"]["data"] == ["East", "West"]
        assert len(option["series"]) == 1
        assert option["series"][0]["type"] == "bar"
        assert option["series"][0]["data"] == [10, 20]
        assert option["numberFormat"] == "default"

    def test_color_series_fill_missing_with_zero(self):
        """Each color value is a stacked series padded with zeros."""
        rows = [
            {"Region": "East", "Segment": "A", "Sales": 1},
            {"Region": "East", "Segment": "B", "Sales": 2},
            {"Region": "West", "Segment": "A", "Sales": 3},
        ]
        payload = ChartPayload(chart_type="bar", x_axis="Region", y_axes=["Sales"], color="Segment")
        option = build_chart_option("bar", rows, payload)
        assert option["legend"]["data"] == ["A", "B"]
        by_name = {s["name"]: s for s in option["series"]}
        assert by_name["A"]["data"] == [1, 3]
        assert by_name["B"]["data"] == [2, 0]
        assert by_name["A"]["stack"] == "total"

    def test_area_is_filled_line(self):
        """Area charts are line series with an area style."""
        rows = [{"x": "a", "y": 1}]
        option = build_chart_option("area", rows, ChartPayload(chart_type="area", x_axis="x", y_axes=["y"]))
        assert option["series"][0]["type"] == "line"
        assert option["series"][0]["areaStyle"] == {}

    def test_data_labels_carry_formatted_text(self):
        """Data labels show values in the active number format."""
        rows = [{"x": "a", "y": 1234.5}]
        prefs = Preferences(show_data_labels=True, active_number_format="usd")
        option = build_chart_option("bar", rows, ChartPayload(chart_type="bar", x_axis="x", y_axes=["y"]), prefs=prefs)
        point = option["series"][0]["data"][0]
        assert point["value"] == 1234.5
        assert point["label"]["formatter"] == "$1,234.50"
        assert option["series"][0]["label"]["show"] is True
        assert option["numberFormat"] == "usd"

    def test_palette_follows_preferences(self):
        """The option color list follows the active palette."""
        rows = [{"x": "a", "y": 1}]
        option = build_chart_option(
            "bar", rows, ChartPayload(chart_type="bar", x_axis="x", y_axes=["y"]),
            prefs=Preferences(active_palette="forest"),
        )
        assert option["color"] == PALETTES["forest"]

    def test_forecast_overlay(self):
        """Forecast and confidence band extend the axis and both join the legend."""
        rows = [{"Order Date": "2020", "Sales": 1}, {"Order Date": "2021", "Sales": 2}]
        analytics = AnalyticsPayload(
            show_trend_line=True,
            forecast_periods=2,
            forecast_data=[ForecastPoint(prediction=3), ForecastPoint(prediction=4)],
            forecast_confidence=[ConfidenceBand(lower=2, upper=4), ConfidenceBand(lower=3, upper=5)],
        )
        payload = ChartPayload(chart_type="line", x_axis="Order Date", y_axes=["Sales"], analytics=analytics)
        option = build_chart_option("line", rows, payload)

        assert option["xAxis"]["data"] == ["2020", "2021", "Forecast 1", "Forecast 2"]
        names = [s["name"] for s in option["series"]]
        assert names == ["Sales", "Forecast", "Confidence Interval"]
        forecast = option["series"][1]
        assert forecast["data"] == [None, None, 3, 4]
        assert forecast["lineStyle"]["type"] == "dashed"
        assert option["series"][2]["data"] == [[None, None], [None, None], [2, 4], [3, 5]]
        assert option["legend"]["data"] == ["Forecast", "Confidence Interval"]

    def test_local_trend_line(self):
        """Without a forecast, a least-squares trend line is drawn."""
        rows = [{"x": "a", "y": 1}, {"x": "b", "y": 3}, {"x": "c", "y": 5}]
        payload = ChartPayload(
            chart_type="line", x_axis="x", y_axes=["y"],
            analytics=AnalyticsPayload(show_trend_line=True),
        )
        option = build_chart_option("line", rows, payload)
        trend = option["series"][-1]
        assert trend["name"] == "Trend Line"
        assert trend["data"] == pytest.approx([1, 3, 5])
        assert "Trend Line" in option["legend"]["data"]

    def test_no_trend_line_with_color(self):
        """Color-split charts get no trend line."""
        rows = [{"x": "a", "c": "p", "y": 1}, {"x": "b", "c": "p", "y": 2}]
        payload = ChartPayload(
            chart_type="line", x_axis="x", y_axes=["y"], color="c",
            analytics=AnalyticsPayload(show_trend_line=True),
        )
        option = build_chart_option("line", rows, payload)
        assert all(s["name"] != "Trend Line" for s in option["series"])

    def test_trend_line_helper(self):
        """A flat series has a flat trend."""
        assert trend_line([2, 2, 2]) == pytest.approx([2, 2, 2])


class TestOtherBuilders:
    """Tests for the remaining chart builders."""

    def test_unknown_type_is_empty(self):
        """Unknown chart types build an empty description."""
        assert build_chart_option("barr", [{"x": 1}], {"chartType": "barr"}) == {}

    def test_combo_requires_two_measures(self):
        """Combo charts pair a bar and a line on two y axes."""
        rows = [{"x": "a", "m1": 1, "m2": 2}]
        assert build_chart_option("combo", rows, ChartPayload(chart_type="combo", x_axis="x", y_axes=["m1"])) == {}
        option = build_chart_option("combo", rows, ChartPayload(chart_type="combo", x_axis="x", y_axes=["m1", "m2"]))
        assert [s["type"] for s in option["series"]] == ["bar", "line"]
        assert option["yAxis"][1]["position"] == "right"
        assert option["series"][1]["yAxisIndex"] == 1

    def test_pie_and_treemap(self):
        """Pie and treemap data are name/value pairs."""
        rows = [{"Region": "East", "Sales": 10}]
        payload = ChartPayload(chart_type="pie", x_axis="Region", y_axes=["Sales"])
        pie = build_chart_option("pie", rows, payload)
        assert pie["series"][0]["data"] == [{"value": 10, "name": "East"}]
        tree = build_chart_option("treemap", rows, payload)
        assert tree["series"][0]["data"] == [{"name": "East", "value": 10}]

    def test_heatmap_axes_from_full_records(self):
        """Heatmap axes list every value in the unfiltered records."""
        records = [
            {"Region": "West", "Segment": "B"},
            {"Region": "East", "Segment": "A"},
            {"Region": "North", "Segment": "A"},
        ]
        rows = [
            {"Region": "West", "Segment": "B", "Sales": 5},
            {"Region": "East", "Segment": "A", "Sales": 2},
            {"Region": "South", "Segment": "A", "Sales": 9},
        ]
        payload = ChartPayload(
            chart_type="heatmap", heatmap_x="Region", heatmap_y="Segment", heatmap_value="Sales",
        )
        option = build_chart_option("heatmap", rows, payload, records=records)
        assert option["xAxis"]["data"] == ["East", "North", "West"]
        assert option["yAxis"]["data"] == ["A", "B"]
        assert option["series"][0]["data"] == [[2, 1, 5], [0, 0, 2]]
        assert option["visualMap"]["min"] == 2
        assert option["visualMap"]["max"] == 5

    def test_heatmap_needs_bindings(self):
        """A heatmap without bindings is empty."""
        assert build_chart_option("heatmap", [], ChartPayload(chart_type="heatmap")) == {}

    def test_scatter_pairs(self):
        """Scatter points are [x, y] pairs."""
        rows = [{"a": 1, "b": 2}, {"a": 3, "b": 4}]
        option = build_chart_option("scatter", rows, ChartPayload(chart_type="scatter", x_axis="a", y_axes=["b"]))
        assert option["series"][0]["data"] == [[1, 2], [3, 4]]

    def test_map_aliases_country_names(self):
        """Country names are mapped to the map's names."""
        rows = [{"Country": "United States", "Sales": 5}, {"Country": "France", "Sales": 1}]
        payload = ChartPayload(chart_type="map", geo_field="Country", value_field="Sales")
        option = build_chart_option("map", rows, payload)
        names = [d["name"] for d in option["series"][0]["data"]]
        assert names == ["United States of America", "France"]
        assert option["visualMap"]["min"] == 1 and option["visualMap"]["max"] == 5

    def test_pre_shaped_builders(self):
        """Box plot, sankey, word cloud and gantt consume shaped data."""
        box = build_chart_option(
            "boxplot", {"categories": ["A"], "boxplotData": [[1, 2, 3, 4, 5]]},
            ChartPayload(chart_type="boxplot", y_axes=["Sales"]),
        )
        assert box["series"][0]["data"] == [[1, 2, 3, 4, 5]]
        assert box["xAxis"]["data"] == ["A"]

        sankey = build_chart_option(
            "sankey", {"nodes": [{"name": "a"}, {"name": "b"}], "links": [{"source": "a", "target": "b", "value": 1}]},
            ChartPayload(chart_type="sankey"),
        )
        assert sankey["series"][0]["links"][0]["target"] == "b"

        cloud = build_chart_option("wordCloud", [{"name": "East", "value": 2}], ChartPayload(chart_type="wordCloud"))
        assert cloud["series"][0]["data"] == [{"name": "East", "value": 2}]
        assert cloud["series"][0]["textStyle"]["color"] == "random"

        gantt = build_chart_option(
            "gantt", {"startTime": 0, "categories": ["T1"], "seriesData": [{"name": "T1", "value": [0, 0, 10]}]},
            ChartPayload(chart_type="gantt"),
        )
        assert gantt["xAxis"] == {"type": "time", "min": 0}
        assert gantt["series"][0]["encode"] == {"x": [1, 2], "y": 0}

    def test_pre_shaped_builders_need_structure(self):
        """Shaped builders return empty when the structure is missing."""
        assert build_chart_option("sankey", [], ChartPayload(chart_type="sankey")) == {}
        assert build_chart_option("gantt", {}, ChartPayload(chart_type="gantt")) == {}

    def test_table_description(self):
        """Tables carry headers, rows and per-cell styles."""
        rows = [{"Region": "East", "Sales": 10}, {"Region": "West", "Sales": -2}]
        payload = ChartPayload(chart_type="table", x_axis="Region", y_axes=["Sales"])
        table = build_chart_option("table", rows, payload)
        assert table["headers"] == ["Region", "Sales"]
        assert table["rows"] == rows
        assert table["cellStyles"] == [[{}, {"color": "#3ba272"}], [{}, {"color": "#ee6666"}]]
        assert "numberFormat" not in table


class TestTableCellStyle:
    """Tests for table cell coloring."""

    MEASURES = [mea("Profit")]

    def test_signs(self):
        """Negative measures are red, positive green, zero plain."""
        assert table_cell_style(-1, "Profit", self.MEASURES) == {"color": "#ee6666"}
        assert table_cell_style(2, "Profit", self.MEASURES) == {"color": "#3ba272"}
        assert table_cell_style(0, "Profit", self.MEASURES) == {}

    def test_only_measure_numbers(self):
        """Dimensions and non-numbers get no style."""
        assert table_cell_style(-1, "Region", self.MEASURES) == {}
        assert table_cell_style("x", "Profit", self.MEASURES) == {}
