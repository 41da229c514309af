"""
Shelf editing skill.

Pure operations on a worksheet's shelves and on the field lists: sort
toggling, date drilling, filter creation, grouping and calculated fields.
Callers own persistence (commit) and refresh.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from core.models import (
    DATE_LEVELS,
    FieldKind,
    FieldRef,
    FilterUpdateRequest,
    ListFilter,
    RangeFilter,
    RangeValues,
    ShelfName,
    Shelves,
    SortOrder,
)
from core.utils import distinct, is_numeric_value, sort_key


class ShelfEditError(ValueError):
    """Raised when an edit request is incomplete or inconsistent."""


Filter = Union[ListFilter, RangeFilter]


# ---------------------------------------------------------------------------
# Shelf membership
# ---------------------------------------------------------------------------

def assign_shelf(shelves: Shelves, shelf: ShelfName, fields: List[FieldRef]) -> None:
    """Replace the contents of a field shelf (columns, rows or color)."""
    if shelf == ShelfName.filters:
        raise ShelfEditError("Filters are added one field at a time.")
    names = [f.name for f in fields]
    if len(set(names)) != len(names):
        raise ShelfEditError(f"Duplicate fields on {shelf.value}: {names}")
    setattr(shelves, shelf.value, [f.model_copy(deep=True) for f in fields])


def remove_from_shelf(shelves: Shelves, shelf: ShelfName, name: str) -> bool:
    items = getattr(shelves, shelf.value)
    key = (lambda i: i.field) if shelf == ShelfName.filters else (lambda i: i.name)
    for idx, item in enumerate(items):
        if key(item) == name:
            del items[idx]
            return True
    return False


def clear_shelves(shelves: Shelves) -> None:
    shelves.columns = []
    shelves.rows = []
    shelves.color = []
    shelves.filters = []


def find_axis_field(shelves: Shelves, name: str) -> Optional[FieldRef]:
    return next((f for f in shelves.axis_fields() if f.name == name), None)


# ---------------------------------------------------------------------------
# Sorting & drilling
# ---------------------------------------------------------------------------

_NEXT_SORT = {None: SortOrder.desc, SortOrder.desc: SortOrder.asc, SortOrder.asc: None}


def toggle_sort(shelves: Shelves, name: str) -> Optional[SortOrder]:
    """
    Cycle a field's sort through none -> desc -> asc -> none.

    Any other field on columns/rows loses its sort, so at most one field
    carries one.
    """
    field = find_axis_field(shelves, name)
    if field is None:
        raise ShelfEditError(f"Field '{name}' is not on columns or rows.")
    for f in shelves.axis_fields():
        if f is not field:
            f.sort = None
    field.sort = _NEXT_SORT[field.sort]
    return field.sort


def drill_date(field: FieldRef, direction: str) -> bool:
    """Move a date field one level down (finer) or up (coarser)."""
    try:
        idx = DATE_LEVELS.index(field.drill_level)
    except ValueError:
        idx = -1
    if direction == "down" and idx < len(DATE_LEVELS) - 1:
        field.drill_level = DATE_LEVELS[idx + 1]
        return True
    if direction == "up" and idx > 0:
        field.drill_level = DATE_LEVELS[idx - 1]
        return True
    return False


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def find_filter(shelves: Shelves, field_name: str) -> Optional[Filter]:
    return next((f for f in shelves.filters if f.field == field_name), None)


def make_filter(
    field: FieldRef,
    records: Sequence[Dict[str, Any]],
    measures: Sequence[FieldRef],
) -> Filter:
    """New filter covering every value of *field* (nothing filtered out yet)."""
    if field.type == FieldKind.dimension:
        unique = sorted(distinct(r.get(field.name) for r in records), key=sort_key)
        return ListFilter(
            field=field.name,
            mode="list",
            n=10,
            by=measures[0].name if measures else "",
            values=list(unique),
            unique_values=unique,
        )

    values = [r.get(field.name) for r in records if is_numeric_value(r.get(field.name))]
    return RangeFilter(
        field=field.name,
        values=RangeValues(min=min(values) if values else None, max=max(values) if values else None),
    )


def edit_filter(
    shelves: Shelves,
    field: FieldRef,
    records: Sequence[Dict[str, Any]],
    measures: Sequence[FieldRef],
) -> Tuple[Filter, bool]:
    """Return the filter for *field*, creating it on first use.

    The boolean tells whether a new filter was added.
    """
    existing = find_filter(shelves, field.name)
    if existing is not None:
        return existing, False
    new_filter = make_filter(field, records, measures)
    shelves.filters.append(new_filter)
    return new_filter, True


def update_filter(shelves: Shelves, update: FilterUpdateRequest) -> Filter:
    target = find_filter(shelves, update.field)
    if target is None:
        raise ShelfEditError(f"No filter on '{update.field}'.")

    if isinstance(target, ListFilter):
        if update.values is not None:
            if not isinstance(update.values, list):
                raise ShelfEditError("List filter values must be a list.")
            target.values = list(update.values)
        if update.mode is not None:
            if update.mode not in ("list", "top", "bottom"):
                raise ShelfEditError(f"Unknown filter mode '{update.mode}'.")
            target.mode = update.mode
        if update.n is not None:
            target.n = update.n
        if update.by is not None:
            target.by = update.by
        return target

    if update.values is not None:
        if not isinstance(update.values, dict):
            raise ShelfEditError("Range filter values must be an object with min/max.")
        target.values = RangeValues(**{**target.values.model_dump(), **update.values})
    return target


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def group_field_name(field: str) -> str:
    return f"{field} (Group)"


def group_values(
    records: List[Dict[str, Any]],
    field: str,
    selected_values: Sequence[Any],
    group_name: str,
) -> str:
    """Add a derived ``"<field> (Group)"`` column merging *selected_values*.

    Mutates *records* in place and returns the new field name.
    """
    group_name = (group_name or "").strip()
    if not group_name or not selected_values:
        raise ShelfEditError("Please provide a group name and select values.")

    new_field = group_field_name(field)
    selected = list(selected_values)
    for record in records:
        value = record.get(field)
        record[new_field] = group_name if value in selected else value
    return new_field


# ---------------------------------------------------------------------------
# Calculated fields
# ---------------------------------------------------------------------------

CALC_FUNCTIONS = ("SUM", "AVG", "COUNT", "COUNTD", "MIN", "MAX", "MEDIAN", "STDEV", "VAR")

# FUNC([Field Name])
CALC_TERM = re.compile(r"\b(" + "|".join(CALC_FUNCTIONS) + r")\(\[(.*?)\]\)")


def make_calculated_field(name: str, formula: str, field_names: Sequence[str] = ()) -> FieldRef:
    """
    Build a calculated measure after a trial evaluation of *formula*.

    The trial runs over a one-row frame holding *field_names*, so parse errors
    and stray names are reported here instead of on every later refresh.
    """
    from skills.compute import eval_formula

    name = (name or "").strip()
    formula = (formula or "").strip()
    if not name or not formula:
        raise ShelfEditError("Please provide a name and a formula.")
    if not CALC_TERM.search(formula):
        raise ShelfEditError(
            f"Formula must contain at least one valid function, like: {', '.join(CALC_FUNCTIONS)}."
        )
    sample = pd.DataFrame({f: [1] for f in field_names}, index=[0])
    try:
        eval_formula(formula, sample)
    except (SyntaxError, NameError, TypeError, ValueError) as e:
        raise ShelfEditError(f"Invalid formula: {e}") from e
    return FieldRef(name=name, type=FieldKind.measure, is_calculated=True, formula=formula)


# ---------------------------------------------------------------------------
# Binning requests
# ---------------------------------------------------------------------------

def check_bin_request(
    bin_name: str,
    measure: str,
    bin_size: Optional[float],
    dimensions: Sequence[FieldRef],
    measures: Sequence[FieldRef],
) -> str:
    bin_name = (bin_name or "").strip()
    if not bin_name or not measure or not bin_size:
        raise ShelfEditError("Please fill in all binning fields.")
    if bin_size <= 0:
        raise ShelfEditError("Bin size must be positive.")
    if any(f.name == bin_name for f in [*dimensions, *measures]):
        raise ShelfEditError("Bin name already exists. Please choose a different name.")
    return bin_name
