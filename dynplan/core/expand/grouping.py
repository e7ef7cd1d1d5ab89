from __future__ import annotations

from itertools import product
from typing import Any, Optional, Sequence

from dynplan.core.errors import LengthMismatch, PipelineValidationError
from dynplan.core.expand.shape import element
from dynplan.core.fingerprint import canonical_json, freeze
from dynplan.core.model import Assignment, FanoutMode, GroupingValue


def resolve(
    mode: FanoutMode,
    values: Sequence[GroupingValue],
    by: Optional[Sequence[GroupingValue]] = None,
    *,
    node: Optional[str] = None,
) -> list[Assignment]:
    """Return the ordered per-sub-unit index assignments for one fan-out.

    - map: element i of every value feeds sub-unit i (lengths must agree).
    - cross: cartesian product, first-listed value slowest, last-listed fastest.
    - group: stable partition of the grouped values by the key value(s); buckets
      come out in first-appearance order. No key means a single bucket.

    Only shapes are looked at, plus the key values for group.
    """

    if mode == "map":
        return _resolve_map(values, node)
    if mode == "cross":
        return _resolve_cross(values)
    if mode == "group":
        return _resolve_group(values, list(by or []), node)
    raise PipelineValidationError(
        code="E_UNKNOWN_MODE",
        message=f"unknown fan-out mode: {mode} (choose one of: map, cross, group)",
        path=node,
    )


def partition(keys: Sequence[Any]) -> list[tuple[Any, tuple[int, ...]]]:
    """Stable partition of positions by key, buckets in first-appearance order.

    Keys are compared by content so unhashable rows (dicts, lists) work too.
    """

    buckets: dict[str, list[int]] = {}
    first_key: dict[str, Any] = {}
    for pos, key in enumerate(keys):
        k = canonical_json(key)
        if k not in buckets:
            buckets[k] = []
            first_key[k] = freeze(key)
        buckets[k].append(pos)
    return [(first_key[k], tuple(positions)) for k, positions in buckets.items()]


def _resolve_map(values: Sequence[GroupingValue], node: Optional[str]) -> list[Assignment]:
    _require_equal_lengths(values, node, what="map")
    n = values[0].length if values else 0
    return [Assignment(positions={v.name: i for v in values}) for i in range(n)]


def _resolve_cross(values: Sequence[GroupingValue]) -> list[Assignment]:
    if not values:
        return []
    names = [v.name for v in values]
    ranges = [range(v.length) for v in values]
    return [Assignment(positions=dict(zip(names, combo))) for combo in product(*ranges)]


def _resolve_group(
    values: Sequence[GroupingValue], by: list[GroupingValue], node: Optional[str]
) -> list[Assignment]:
    _require_equal_lengths(list(values) + by, node, what="group")
    n = values[0].length if values else (by[0].length if by else 0)

    if not by:
        everything = tuple(range(n))
        return [Assignment(positions={v.name: everything for v in values})]

    if len(by) == 1:
        keys = [element(by[0].value, i) for i in range(n)]
    else:
        keys = [tuple(element(b.value, i) for b in by) for i in range(n)]

    out: list[Assignment] = []
    for key, positions in partition(keys):
        assigned = {v.name: positions for v in values}
        for b in by:
            assigned.setdefault(b.name, positions)
        out.append(Assignment(positions=assigned, key=key))
    return out


def _require_equal_lengths(values: Sequence[GroupingValue], node: Optional[str], *, what: str) -> None:
    lengths = {v.name: v.length for v in values}
    if len(set(lengths.values())) <= 1:
        return
    detail = ", ".join(f"{name} (length {n})" for name, n in lengths.items())
    raise LengthMismatch(
        code="E_LENGTH_MISMATCH",
        message=f"{what} requires equal lengths, got: {detail}",
        path=node,
    )
