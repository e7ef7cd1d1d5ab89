"""Aggregation side of ``group`` when the grouped value is itself a dynamic node.

Bucket membership comes from the upstream node's trace: every upstream sub-unit
whose trace value equals a bucket key lands in that bucket, buckets in
first-appearance order. Each aggregate sub-unit depends on exactly the upstream
sub-unit identities of its bucket, and the bucket key can be traced again on
this node so a later ``group`` can regroup on it.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from dynplan.core.expand import grouping, trace
from dynplan.core.expand.expand_plan import (
    UpstreamTraces,
    resolve_names,
    subunit_identity,
    with_aliases,
)
from dynplan.core.expand.shape import take_many
from dynplan.core.fingerprint import canonical_json, fingerprint
from dynplan.core.model import DynamicDeclaration, ExpansionPlan, GroupingValue, SubunitSpec


def combine(
    node: str,
    declaration: DynamicDeclaration,
    over: Sequence[GroupingValue],
    available: Mapping[str, GroupingValue],
    *,
    node_fingerprint: str = "",
    cap: Optional[int] = None,
    upstream_traces: Optional[UpstreamTraces] = None,
) -> ExpansionPlan:
    traces = upstream_traces or {}
    by, by_aliases = resolve_names(node, declaration.by, over, available, traces)

    # Partition on trace values rather than raw elements: grouping.resolve only
    # ever reads the key values, the upstream results are carried by position.
    assignments = grouping.resolve("group", list(over), by, node=node)

    traced, trace_aliases = resolve_names(node, declaration.trace, over, available, traces)
    assignments = with_aliases(assignments, {**by_aliases, **trace_aliases})
    entries = trace.project(assignments, traced, keys=declaration.by, node=node)

    subunits: list[SubunitSpec] = []
    for index, a in enumerate(assignments):
        inputs: dict[str, Any] = {}
        members: list[str] = []
        for v in over:
            positions = a.positions[v.name]
            assert isinstance(positions, tuple)
            inputs[v.name] = take_many(v.value, positions)
            if v.element_ids is not None:
                members.extend(v.element_ids[p] for p in positions if v.element_ids[p] not in members)
        for b in by:
            if b.name not in inputs:
                positions = a.positions[b.name]
                assert isinstance(positions, tuple)
                inputs[b.name] = take_many(b.value, positions)

        static = {v.name: fingerprint(inputs[v.name]) for v in over if not v.is_dynamic}
        parts = {"members": members, "key": canonical_json(a.key), "values": static}
        subunits.append(
            SubunitSpec(
                index=index,
                identity=subunit_identity(node, node_fingerprint, "group", index, parts),
                inputs=inputs,
                depends_on=tuple(members),
                trace=entries[index] if entries else None,
            )
        )

    return ExpansionPlan(
        node=node,
        mode="group",
        subunits=subunits,
        cap=cap,
        trace_names=declaration.trace,
    )
