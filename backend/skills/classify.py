"""
Field classification skill.

Splits freshly loaded records into dimensions and measures by looking at the
run-time type of each value in the first record. Derived fields (groups, bins,
clusters, calculated fields) are appended by their creators and never go
through this heuristic again.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Tuple

from core.models import FieldKind, FieldRef
from core.utils import is_numeric_value

logger = logging.getLogger("uvicorn.error")


def classify_fields(records: Sequence[Dict[str, Any]]) -> Tuple[List[FieldRef], List[FieldRef]]:
    """Return ``(dimensions, measures)`` for the given record set."""
    if not records:
        return [], []

    sample = records[0] or {}
    dimensions: List[FieldRef] = []
    measures: List[FieldRef] = []
    for name, value in sample.items():
        if is_numeric_value(value):
            measures.append(FieldRef(name=name, type=FieldKind.measure))
        else:
            dimensions.append(FieldRef(name=name, type=FieldKind.dimension))

    logger.info(
        "Classified %d fields: %d dimensions, %d measures",
        len(sample), len(dimensions), len(measures),
    )
    return dimensions, measures


def convert_field_type(
    field: FieldRef,
    dimensions: List[FieldRef],
    measures: List[FieldRef],
) -> Tuple[List[FieldRef], List[FieldRef]]:
    """Move *field* to the other list, keeping its other attributes.

    Returns new ``(dimensions, measures)`` lists; the inputs are not mutated.
    """
    if field.type == FieldKind.measure:
        measures = [m for m in measures if m.name != field.name]
        dimensions = [d for d in dimensions if d.name != field.name]
        dimensions.append(field.model_copy(update={"type": FieldKind.dimension}))
    else:
        dimensions = [d for d in dimensions if d.name != field.name]
        measures = [m for m in measures if m.name != field.name]
        measures.append(field.model_copy(update={"type": FieldKind.measure}))
    return dimensions, measures


def has_field(name: str, *field_lists: List[FieldRef]) -> bool:
    return any(f.name == name for fields in field_lists for f in fields)
