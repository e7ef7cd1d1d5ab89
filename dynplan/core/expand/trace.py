from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

from dynplan.core.errors import RetrievalError, TraceLengthMismatch
from dynplan.core.expand.shape import element
from dynplan.core.fingerprint import freeze
from dynplan.core.model import Assignment, GroupingValue, TraceRecord

if TYPE_CHECKING:
    from dynplan.core.io.store import BuildStore


def project(
    assignments: Sequence[Assignment],
    traced: Sequence[GroupingValue],
    *,
    keys: Sequence[str] = (),
    node: Optional[str] = None,
) -> list[Any]:
    """Project trace values onto sub-units, one entry per assignment.

    A traced name that takes part in the assignment follows the same positions
    as the grouping (a group key name yields the bucket key). Any other name is
    aligned by sub-unit index, so its length has to match the sub-unit count.
    With several names each entry is a tuple in trace-name order.
    """

    if not traced:
        return []

    columns: list[list[Any]] = []
    for tv in traced:
        columns.append(_project_one(assignments, tv, keys=keys, node=node))

    if len(columns) == 1:
        return columns[0]
    return [tuple(row) for row in zip(*columns)]


def records_for(node: str, names: Sequence[str], entries: Sequence[Any]) -> list[TraceRecord]:
    """Split projected entries into one TraceRecord per trace name."""
    if not names:
        return []
    if len(names) == 1:
        return [TraceRecord(trace_name=names[0], node=node, values=list(entries))]
    return [
        TraceRecord(trace_name=name, node=node, values=[e[i] for e in entries])
        for i, name in enumerate(names)
    ]


def lookup(
    store: "BuildStore",
    trace_name: str,
    node: str,
    indices: Optional[Sequence[int]] = None,
) -> list[Any]:
    """Read trace values for a node's sub-units.

    Without ``indices`` the active (within-cap) entries are returned in order.
    """

    record = store.trace(trace_name, node)
    plan = store.plan(node)
    if record is None or plan is None:
        raise RetrievalError(
            code="E_UNKNOWN_TRACE",
            message=f"no trace {trace_name!r} recorded for node {node!r}",
            path=node,
        )

    active = plan.active_count
    if indices is None:
        return list(record.values[:active])

    out: list[Any] = []
    for i in indices:
        if i < 0 or i >= active:
            raise RetrievalError(
                code="E_INDEX_OUT_OF_RANGE",
                message=f"index {i} is outside the active range 0..{active - 1}",
                path=node,
            )
        out.append(record.values[i])
    return out


def _project_one(
    assignments: Sequence[Assignment],
    tv: GroupingValue,
    *,
    keys: Sequence[str],
    node: Optional[str],
) -> list[Any]:
    participates = bool(assignments) and all(tv.name in a.positions for a in assignments)

    if participates:
        out: list[Any] = []
        for a in assignments:
            pos = a.positions[tv.name]
            if isinstance(pos, tuple):
                if tv.name in keys and pos:
                    # every member of a bucket shares the key value
                    out.append(freeze(element(tv.value, pos[0])))
                else:
                    out.append(tuple(freeze(element(tv.value, p)) for p in pos))
            else:
                out.append(freeze(element(tv.value, pos)))
        return out

    if tv.length != len(assignments):
        raise TraceLengthMismatch(
            code="E_TRACE_LENGTH_MISMATCH",
            message=(
                f"trace {tv.name!r} has length {tv.length} but the node expands "
                f"to {len(assignments)} sub-units"
            ),
            path=node,
        )
    return [freeze(element(tv.value, i)) for i in range(tv.length)]
