from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Optional

from dynplan.core.errors import InvalidGroupingValue
from dynplan.core.model import GroupingValue


# Row-oriented fan-out is the fixed policy for anything with more than one
# dimension: a table of N rows always yields N elements, whatever its columns.

_SCALARS = (str, bytes, int, float, bool, complex)


def length(value: Any, *, name: Optional[str] = None) -> int:
    """Iteration length of a grouping value."""

    shape = _shape_of(value)
    if shape is not None:
        if len(shape) == 0:
            return 1
        return int(shape[0])

    if isinstance(value, _SCALARS):
        return 1

    if isinstance(value, Mapping):
        return _column_length(value, name)

    if isinstance(value, Sequence):
        return len(value)

    if value is None:
        raise _invalid(name, "None has no length")
    raise _invalid(name, f"value of type {type(value).__name__} has no defined length")


def take(value: Any, i: int) -> Any:
    """Element (or row) ``i`` of a grouping value."""

    if isinstance(value, _SCALARS):
        return value
    iloc = getattr(value, "iloc", None)
    if iloc is not None:
        return iloc[i : i + 1]
    if isinstance(value, Mapping):
        return {col: vals[i] for col, vals in value.items()}
    return value[i]


def element(value: Any, i: int) -> Any:
    """Plain element ``i``, used for partition keys and trace values.

    Unlike :func:`take`, pandas objects give back the bare cell or row rather
    than a one-row frame, so equal keys compare equal whatever their row labels.
    """

    iloc = getattr(value, "iloc", None)
    if iloc is not None:
        return iloc[i]
    return take(value, i)


def take_many(value: Any, positions: Sequence[int]) -> Any:
    """Sub-collection of the same kind holding ``positions`` in order."""

    if isinstance(value, _SCALARS):
        return value
    idx = list(positions)
    iloc = getattr(value, "iloc", None)
    if iloc is not None:
        return iloc[idx]
    if isinstance(value, Mapping):
        return {col: [vals[i] for i in idx] for col, vals in value.items()}
    if _shape_of(value) is not None:
        return value[idx]
    items = [value[i] for i in idx]
    if isinstance(value, tuple):
        return tuple(items)
    return items


def grouping_value(name: str, value: Any, element_ids: Optional[tuple[str, ...]] = None) -> GroupingValue:
    n = length(value, name=name)
    if element_ids is not None and len(element_ids) != n:
        raise _invalid(name, f"{len(element_ids)} sub-unit ids for a value of length {n}")
    return GroupingValue(name=name, value=value, length=n, element_ids=element_ids)


def _shape_of(value: Any) -> Optional[tuple[int, ...]]:
    shape = getattr(value, "shape", None)
    if isinstance(shape, tuple) and all(isinstance(d, int) for d in shape):
        return shape
    return None


def _column_length(value: Mapping[Any, Any], name: Optional[str]) -> int:
    if not value:
        return 0
    lengths: dict[str, int] = {}
    for col, vals in value.items():
        if isinstance(vals, _SCALARS) or not isinstance(vals, Sequence):
            raise _invalid(name, f"column {col!r} is not a sequence")
        lengths[str(col)] = len(vals)
    if len(set(lengths.values())) > 1:
        detail = ", ".join(f"{c}={n}" for c, n in lengths.items())
        raise _invalid(name, f"columns have unequal lengths ({detail})")
    return next(iter(lengths.values()))


def _invalid(name: Optional[str], message: str) -> InvalidGroupingValue:
    return InvalidGroupingValue(
        code="E_INVALID_GROUPING_VALUE",
        message=message,
        path=name,
    )
