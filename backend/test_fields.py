"""
Tests for field handling: classification, chart recommendations and shelf edits.
"""

import pytest

from core.models import (
    ChartType,
    DrillLevel,
    FieldKind,
    FieldRef,
    FilterUpdateRequest,
    ListFilter,
    RangeFilter,
    ShelfName,
    Shelves,
    SortOrder,
    Worksheet,
)
from skills.classify import classify_fields, convert_field_type
from skills.recommend import apply_shelf_update, is_analytics_panel_visible, suggest_chart_types
from skills.shelves import (
    ShelfEditError,
    assign_shelf,
    check_bin_request,
    drill_date,
    edit_filter,
    group_values,
    make_calculated_field,
    remove_from_shelf,
    toggle_sort,
    update_filter,
)


def dim(name, **kw):
    return FieldRef(name=name, type=FieldKind.dimension, **kw)


def mea(name, **kw):
    return FieldRef(name=name, type=FieldKind.measure, **kw)


RECORDS = [
    {"Region": "West", "Order Date": "2021-03-04", "Sales": 20, "Profit": -5.5},
    {"Region": "East", "Order Date": "2021-07-19", "Sales": 10, "Profit": 3.0},
    {"Region": "East", "Order Date": "2022-01-02", "Sales": 15, "Profit": 1.0},
]


class TestClassifyFields:
    """Dimension/measure split from the first record."""

    def test_one_numeric_one_text(self):
        """A numeric column is a measure and a text column a dimension."""
        dims, measures = classify_fields([{"Region": "East", "Sales": 10}])
        assert [d.name for d in dims] == ["Region"]
        assert [m.name for m in measures] == ["Sales"]

    def test_stable_across_calls(self):
        """Classifying the same records twice gives the same split."""
        first = classify_fields(RECORDS)
        second = classify_fields(RECORDS)
        assert first == second

    def test_empty_input(self):
        """No records means no fields."""
        assert classify_fields([]) == ([], [])

    def test_bools_and_none_are_dimensions(self):
        """Booleans and missing values are not measures."""
        dims, measures = classify_fields([{"flag": True, "missing": None, "n": 1.5}])
        assert {d.name for d in dims} == {"flag", "missing"}
        assert [m.name for m in measures] == ["n"]

    def test_only_first_record_counts(self):
        """Later records do not change a column's kind."""
        dims, measures = classify_fields([{"a": "x"}, {"a": 5}])
        assert [d.name for d in dims] == ["a"]
        assert measures == []


class TestConvertFieldType:
    """Tests for moving a field between dimensions and measures."""

    def test_measure_to_dimension(self):
        """A converted measure is appended to the dimensions."""
        dims, measures = classify_fields(RECORDS)
        sales = next(m for m in measures if m.name == "Sales")
        new_dims, new_measures = convert_field_type(sales, dims, measures)
        assert "Sales" in [d.name for d in new_dims]
        assert "Sales" not in [m.name for m in new_measures]
        assert new_dims[-1].type == FieldKind.dimension

    def test_keeps_attributes_and_no_duplicates(self):
        """Conversion keeps formula attributes and never duplicates a field."""
        calc = mea("Margin", is_calculated=True, formula="SUM([Profit])")
        dims, measures = convert_field_type(calc, [], [calc])
        assert len(dims) == 1 and measures == []
        assert dims[0].formula == "SUM([Profit])"
        dims, measures = convert_field_type(dims[0], dims, measures)
        assert dims == [] and len(measures) == 1

    def test_inputs_not_mutated(self):
        """Conversion returns new lists."""
        dims, measures = [dim("Region")], [mea("Sales")]
        convert_field_type(measures[0], dims, measures)
        assert [d.name for d in dims] == ["Region"]
        assert [m.name for m in measures] == ["Sales"]


class TestSuggestions:
    """Chart-type suggestions per encoding."""

    @staticmethod
    def _types(shelves):
        return [s.type for s in suggest_chart_types(shelves)]

    def test_one_dimension_one_measure(self):
        """One dimension and one measure suggest the basic chart family."""
        types = self._types(Shelves(columns=[dim("Region")], rows=[mea("Sales")]))
        for expected in (ChartType.table, ChartType.bar, ChartType.line, ChartType.area,
                         ChartType.treemap, ChartType.boxplot):
            assert expected in types
        assert types.count(ChartType.pie) == 1
        for excluded in (ChartType.map, ChartType.scatter, ChartType.sankey, ChartType.gantt,
                         ChartType.word_cloud, ChartType.heatmap):
            assert excluded not in types

    def test_dimension_only_is_word_cloud(self):
        """A lone dimension suggests only a word cloud."""
        assert self._types(Shelves(columns=[dim("Region")])) == [ChartType.word_cloud]

    def test_no_shelves(self):
        """Without a worksheet nothing is suggested."""
        assert suggest_chart_types(None) == []

    def test_geo_field_adds_map(self):
        """A geographic dimension adds the map."""
        types = self._types(Shelves(columns=[dim("Country")], rows=[mea("Sales")]))
        assert ChartType.map in types

    def test_two_row_measures_add_combo_and_scatter(self):
        """Two measures on rows add combo and scatter."""
        types = self._types(Shelves(columns=[dim("Region")], rows=[mea("Sales"), mea("Profit")]))
        assert ChartType.combo in types
        assert ChartType.scatter in types
        assert types.index(ChartType.combo) < types.index(ChartType.scatter)

    def test_two_dimensions_add_sankey_and_heatmap(self):
        """Two dimensions add sankey and heatmap."""
        types = self._types(Shelves(columns=[dim("Region"), dim("Segment")], rows=[mea("Sales")]))
        assert ChartType.sankey in types
        assert ChartType.heatmap in types
        assert types[-1] == ChartType.pie

    def test_two_date_fields_add_gantt(self):
        """A lane plus two date fields add the gantt chart."""
        types = self._types(Shelves(columns=[dim("Task"), dim("Start Date"), dim("End Date")]))
        assert ChartType.gantt in types


class TestShelfUpdate:
    """Tests for the automatic chart type after a shelf edit."""

    def test_dimension_and_measure_picks_bar(self):
        """A dimension with a measure switches to a bar chart."""
        ws = Worksheet(id=1, name="Sheet 1", active_chart_type="pie")
        ws.shelves.columns = [dim("Region")]
        ws.shelves.rows = [mea("Sales")]
        assert apply_shelf_update(ws) == "bar"

    def test_date_field_picks_line_and_flags_year(self):
        """A date on columns picks a line chart drilled to years."""
        ws = Worksheet(id=1, name="Sheet 1")
        ws.shelves.columns = [dim("Order Date")]
        ws.shelves.rows = [mea("Sales")]
        assert apply_shelf_update(ws) == "line"
        field = ws.shelves.columns[0]
        assert field.is_date is True
        assert field.drill_level == DrillLevel.year
        assert is_analytics_panel_visible(ws)

    def test_two_measures_pick_scatter(self):
        """Measures on both axes pick a scatter plot."""
        ws = Worksheet(id=1, name="Sheet 1")
        ws.shelves.columns = [mea("Sales")]
        ws.shelves.rows = [mea("Profit")]
        assert apply_shelf_update(ws) == "scatter"

    def test_unchanged_without_measures(self):
        """Without measures the chart type is left alone."""
        ws = Worksheet(id=1, name="Sheet 1", active_chart_type="wordCloud")
        ws.shelves.columns = [dim("Region")]
        assert apply_shelf_update(ws) == "wordCloud"
        assert not is_analytics_panel_visible(ws)


class TestShelfMembership:
    """Tests for assigning fields to and removing them from shelves."""

    def test_assign_copies_fields(self):
        """Shelves hold copies, so shelf edits never touch the field list."""
        shelves = Shelves()
        region = dim("Region")
        assign_shelf(shelves, ShelfName.columns, [region])
        shelves.columns[0].sort = SortOrder.asc
        assert region.sort is None

    def test_assign_rejects_filters_and_duplicates(self):
        """Filters have their own editor and shelves hold each field once."""
        with pytest.raises(ShelfEditError):
            assign_shelf(Shelves(), ShelfName.filters, [dim("Region")])
        with pytest.raises(ShelfEditError):
            assign_shelf(Shelves(), ShelfName.rows, [mea("Sales"), mea("Sales")])

    def test_remove_filter_by_field(self):
        """Filters are removed by field name."""
        shelves = Shelves(filters=[RangeFilter(field="Sales")])
        assert remove_from_shelf(shelves, ShelfName.filters, "Sales") is True
        assert remove_from_shelf(shelves, ShelfName.filters, "Sales") is False


class TestToggleSort:
    """Tests for the sort cycle on axis fields."""

    def test_cycle(self):
        """Sorting cycles none, desc, asc, none."""
        shelves = Shelves(columns=[dim("Region")], rows=[mea("Sales")])
        assert toggle_sort(shelves, "Sales") == SortOrder.desc
        assert toggle_sort(shelves, "Sales") == SortOrder.asc
        assert toggle_sort(shelves, "Sales") is None
        assert toggle_sort(shelves, "Sales") == SortOrder.desc

    def test_exclusive_across_columns_and_rows(self):
        """Sorting one field clears the sort on every other axis field."""
        shelves = Shelves(columns=[dim("Region")], rows=[mea("Sales")])
        toggle_sort(shelves, "Sales")
        toggle_sort(shelves, "Region")
        assert shelves.rows[0].sort is None
        assert shelves.columns[0].sort == SortOrder.desc

    def test_unknown_field(self):
        """Fields that are not on an axis cannot be sorted."""
        with pytest.raises(ShelfEditError):
            toggle_sort(Shelves(), "Nope")


class TestDrillDate:
    """Tests for date drill up and down."""

    def test_down_then_up(self):
        """Drill moves through year, quarter and month and stops at the ends."""
        field = dim("Order Date", is_date=True, drill_level=DrillLevel.year)
        assert drill_date(field, "down") and field.drill_level == DrillLevel.quarter
        assert drill_date(field, "down") and field.drill_level == DrillLevel.month
        assert not drill_date(field, "down")
        assert drill_date(field, "up") and field.drill_level == DrillLevel.quarter

    def test_up_at_top_is_noop(self):
        """Drilling up from years changes nothing."""
        field = dim("Order Date", drill_level=DrillLevel.year)
        assert not drill_date(field, "up")
        assert field.drill_level == DrillLevel.year


class TestFilters:
    """Tests for creating and updating shelf filters."""

    def test_dimension_filter_starts_with_all_values(self):
        """A new dimension filter selects every value."""
        shelves = Shelves()
        flt, created = edit_filter(shelves, dim("Region"), RECORDS, [mea("Sales")])
        assert created
        assert isinstance(flt, ListFilter)
        assert flt.unique_values == ["East", "West"]
        assert flt.values == ["East", "West"]
        assert flt.by == "Sales"
        assert flt.mode == "list" and flt.n == 10

    def test_existing_filter_reused(self):
        """Editing an existing filter reuses it."""
        shelves = Shelves()
        first, _ = edit_filter(shelves, dim("Region"), RECORDS, [])
        again, created = edit_filter(shelves, dim("Region"), RECORDS, [])
        assert again is first and not created
        assert len(shelves.filters) == 1

    def test_measure_filter_is_range(self):
        """A measure filter is a range spanning the data."""
        flt, _ = edit_filter(Shelves(), mea("Profit"), RECORDS, [])
        assert isinstance(flt, RangeFilter)
        assert flt.values.min == -5.5
        assert flt.values.max == 3.0

    def test_update_list_and_range(self):
        """Updates set list values, top-N settings and range bounds."""
        shelves = Shelves()
        edit_filter(shelves, dim("Region"), RECORDS, [mea("Sales")])
        edit_filter(shelves, mea("Sales"), RECORDS, [])
        update_filter(shelves, FilterUpdateRequest(field="Region", values=["East"], mode="top", n=1))
        update_filter(shelves, FilterUpdateRequest(field="Sales", values={"min": 12}))
        region, sales = shelves.filters
        assert region.values == ["East"] and region.mode == "top" and region.n == 1
        assert sales.values.min == 12 and sales.values.max == 20

    def test_update_rejects_bad_mode(self):
        """Unknown list modes are rejected."""
        shelves = Shelves()
        edit_filter(shelves, dim("Region"), RECORDS, [])
        with pytest.raises(ShelfEditError):
            update_filter(shelves, FilterUpdateRequest(field="Region", mode="middle"))

    def test_filter_dump_keeps_wire_keys(self):
        """Filters serialize with the keys the view expects."""
        flt, _ = edit_filter(Shelves(), dim("Region"), RECORDS, [])
        dumped = flt.dump()
        assert dumped["filter_type"] == "dimension"
        assert "uniqueValues" in dumped


class TestGroupingAndCalculatedFields:
    """Tests for grouped, calculated and binned fields."""

    def test_group_values(self):
        """Grouping writes a new column that merges the chosen values."""
        records = [dict(r) for r in RECORDS]
        name = group_values(records, "Region", ["East"], "Eastern")
        assert name == "Region (Group)"
        assert [r[name] for r in records] == ["West", "Eastern", "Eastern"]

    def test_group_requires_name_and_values(self):
        """A group needs a name and at least one value."""
        with pytest.raises(ShelfEditError):
            group_values([], "Region", [], "G")
        with pytest.raises(ShelfEditError):
            group_values([], "Region", ["East"], "  ")

    def test_calculated_field(self):
        """A calculated field is a trimmed, flagged measure."""
        field = make_calculated_field(" Margin ", "SUM([Profit]) / SUM([Sales])")
        assert field.name == "Margin"
        assert field.type == FieldKind.measure
        assert field.is_calculated

    @pytest.mark.parametrize("name,formula", [
        ("", "SUM([Sales])"),
        ("Margin", ""),
        ("Margin", "[Profit] / [Sales]"),
        ("Margin", "TOTAL([Sales])"),
    ])
    def test_calculated_field_rejected(self, name, formula):
        """Missing names, missing formulas and unknown functions are rejected."""
        with pytest.raises(ShelfEditError):
            make_calculated_field(name, formula)

    @pytest.mark.parametrize("formula", [
        "SUM([Sales]) * Profit",
        "SUM([Sales]) +",
        "SUM([Sales]) / (SUM([Profit])",
    ])
    def test_calculated_field_formula_must_evaluate(self, formula):
        """Formulas that pandas cannot evaluate are rejected when the field is made."""
        with pytest.raises(ShelfEditError, match="Invalid formula"):
            make_calculated_field("Broken", formula, ["Sales", "Profit"])

    def test_calculated_field_with_known_fields(self):
        """Valid arithmetic over known fields is accepted."""
        field = make_calculated_field("Margin", "SUM([Profit]) / SUM([Sales]) * 100", ["Sales", "Profit"])
        assert field.formula == "SUM([Profit]) / SUM([Sales]) * 100"

    def test_bin_request_checks(self):
        """Bin requests need a free name and a positive size."""
        dims, measures = [dim("Region")], [mea("Sales")]
        assert check_bin_request(" Sales Bins ", "Sales", 5, dims, measures) == "Sales Bins"
        with pytest.raises(ShelfEditError):
            check_bin_request("Region", "Sales", 5, dims, measures)
        with pytest.raises(ShelfEditError):
            check_bin_request("Bins", "Sales", None, dims, measures)
        with pytest.raises(ShelfEditError):
            check_bin_request("Bins", "Sales", -1, dims, measures)
