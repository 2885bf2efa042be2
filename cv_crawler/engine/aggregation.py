"""Shared aggregation helpers for report metrics."""

from __future__ import annotations

from typing import Any, Iterable, Mapping


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def weighted_average(items: Iterable[Any], value_field: str, weight_field: str, digits: int = 2) -> float:
    """Average ``value_field`` over ``items`` weighted by ``weight_field``.

    Items may be mappings or objects. Items with a missing value or a
    non-positive weight are ignored; an empty total yields 0.0.
    """

    total = 0.0
    weight_sum = 0.0
    for item in items:
        value = _field(item, value_field)
        weight = _field(item, weight_field)
        if value is None or not weight or weight <= 0:
            continue
        total += float(value) * float(weight)
        weight_sum += float(weight)
    return round(total / weight_sum, digits) if weight_sum else 0.0


def mean(values: Iterable[float | None], digits: int = 2) -> float:
    present = [float(value) for value in values if value is not None]
    return round(sum(present) / len(present), digits) if present else 0.0


def percentage(part: int | float, whole: int | float, digits: int = 2) -> float:
    return round(part / whole * 100, digits) if whole else 0.0


__all__ = ["mean", "percentage", "weighted_average"]
