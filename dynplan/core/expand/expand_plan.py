"""Sub-unit expansion: turn a dynamic declaration plus live grouping values into a plan.

Expansion is pure. It never runs the node's command; it only decides how many
sub-units exist, which slice of each grouping value every sub-unit receives, the
trace entry for each, and a content-derived identity used for reuse across runs.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

import structlog

from dynplan.core.errors import UnknownGroupingVariable
from dynplan.core.expand import grouping, trace
from dynplan.core.expand.shape import grouping_value, take, take_many
from dynplan.core.fingerprint import fingerprint
from dynplan.core.model import Assignment, DynamicDeclaration, ExpansionPlan, GroupingValue, SubunitSpec


slog = structlog.get_logger(__name__)

# upstream node -> trace name -> active trace values of that node
UpstreamTraces = Mapping[str, Mapping[str, Sequence[Any]]]


def expand_node(
    node: str,
    declaration: DynamicDeclaration,
    available: Mapping[str, GroupingValue],
    *,
    node_fingerprint: str = "",
    cap: Optional[int] = None,
    upstream_traces: Optional[UpstreamTraces] = None,
) -> ExpansionPlan:
    """Return the ExpansionPlan for one dynamic node.

    ``available`` maps names to already materialized grouping values. Names in
    ``by``/``trace`` may also refer to a trace recorded on a dynamic upstream
    listed in ``over``; those resolve before plain values of the same name.

    Raises UnknownGroupingVariable, LengthMismatch, InvalidGroupingValue or
    TraceLengthMismatch. Nothing is persisted here.
    """

    traces = upstream_traces or {}
    over = [_require(node, name, available) for name in declaration.over]

    if declaration.mode == "group" and any(v.is_dynamic for v in over):
        from dynplan.core.expand.combine import combine

        plan = combine(
            node,
            declaration,
            over,
            available,
            node_fingerprint=node_fingerprint,
            cap=cap,
            upstream_traces=traces,
        )
    else:
        plan = _expand(node, declaration, over, available, node_fingerprint, cap, traces)

    slog.debug(
        "expansion_planned",
        node=node,
        mode=declaration.mode,
        subunits=len(plan.subunits),
        cap=cap,
    )
    return plan


def _expand(
    node: str,
    declaration: DynamicDeclaration,
    over: list[GroupingValue],
    available: Mapping[str, GroupingValue],
    node_fingerprint: str,
    cap: Optional[int],
    traces: UpstreamTraces,
) -> ExpansionPlan:
    by, by_aliases = resolve_names(node, declaration.by, over, available, traces)
    assignments = grouping.resolve(declaration.mode, over, by, node=node)

    traced, trace_aliases = resolve_names(node, declaration.trace, over, available, traces)
    assignments = with_aliases(assignments, {**by_aliases, **trace_aliases})
    entries = trace.project(assignments, traced, keys=declaration.by, node=node)

    sliced = list(over) + [v for v in by if v.name not in declaration.over]
    subunits: list[SubunitSpec] = []
    for index, a in enumerate(assignments):
        inputs: dict[str, Any] = {}
        depends_on: list[str] = []
        parts: dict[str, Any] = {}
        for v in sliced:
            pos = a.positions[v.name]
            if isinstance(pos, tuple):
                inputs[v.name] = take_many(v.value, pos)
                ids = [v.element_ids[p] for p in pos] if v.element_ids else []
            else:
                inputs[v.name] = take(v.value, pos)
                ids = [v.element_ids[pos]] if v.element_ids else []
            depends_on.extend(i for i in ids if i not in depends_on)
            if v.is_dynamic:
                # upstream identities already pin the content; results may be missing
                parts[v.name] = {"ids": ids}
            else:
                parts[v.name] = {"ids": ids, "value": fingerprint(inputs[v.name])}

        subunits.append(
            SubunitSpec(
                index=index,
                identity=subunit_identity(node, node_fingerprint, declaration.mode, index, parts),
                inputs=inputs,
                depends_on=tuple(depends_on),
                trace=entries[index] if entries else None,
            )
        )

    return ExpansionPlan(
        node=node,
        mode=declaration.mode,
        subunits=subunits,
        cap=cap,
        trace_names=declaration.trace,
    )


def subunit_identity(node: str, node_fingerprint: str, mode: str, index: int, parts: Any) -> str:
    digest = fingerprint(node, node_fingerprint, mode, index, parts)
    return f"{node}_{digest[:16]}"


def resolve_names(
    node: str,
    names: Sequence[str],
    over: Sequence[GroupingValue],
    available: Mapping[str, GroupingValue],
    traces: UpstreamTraces,
) -> tuple[list[GroupingValue], dict[str, str]]:
    """Resolve by/trace names to grouping values.

    Returns the values plus an alias map name -> upstream name for values that
    came from an upstream trace (they share that upstream's positions).
    """

    out: list[GroupingValue] = []
    aliases: dict[str, str] = {}
    for name in names:
        found = None
        for up in over:
            if up.is_dynamic and name in traces.get(up.name, {}):
                values = list(traces[up.name][name])
                found = grouping_value(name, values)
                aliases[name] = up.name
                break
        if found is None:
            found = _require(node, name, available)
        out.append(found)
    return out, aliases


def with_aliases(assignments: list[Assignment], aliases: Mapping[str, str]) -> list[Assignment]:
    if not aliases:
        return assignments
    out: list[Assignment] = []
    for a in assignments:
        positions = dict(a.positions)
        for name, upstream in aliases.items():
            if upstream in positions:
                positions.setdefault(name, positions[upstream])
        out.append(Assignment(positions=positions, key=a.key))
    return out


def _require(node: str, name: str, available: Mapping[str, GroupingValue]) -> GroupingValue:
    gv = available.get(name)
    if gv is None:
        raise UnknownGroupingVariable(
            code="E_UNKNOWN_GROUPING_VARIABLE",
            message=f"grouping variable {name!r} is not available",
            path=node,
        )
    return gv
