"""Minimal scheduler that drives the expansion engine end to end.

Nodes run one at a time in topological order. A static node is evaluated (or
reused when its inputs are unchanged); a dynamic node is expanded, reconciled
against the store, and its ``to_build`` sub-units are built on a thread pool
before anything downstream is expanded. Planning and building stay separate:
the build phase only ever consumes the plan, it never re-derives it.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog

from dynplan.core.commands import command_digest, command_ref_for
from dynplan.core.config import UpstreamFailurePolicy
from dynplan.core.errors import (
    ExpansionError,
    NonCanonicalValue,
    PlanError,
    RetrievalError,
    SubunitBuildFailure,
)
from dynplan.core.expand import trace as trace_tracker
from dynplan.core.expand.expand_plan import expand_node
from dynplan.core.expand.shape import grouping_value, take_many
from dynplan.core.fingerprint import fingerprint
from dynplan.core.io.store import BuildStore, ResultEntry
from dynplan.core.model import (
    DynamicDeclaration,
    ExpansionPlan,
    GroupingValue,
    NodeDecl,
    PipelineGraph,
    SubunitSpec,
)
from dynplan.core.reconcile.reconcile import reconcile
from dynplan.core.run.builder import build_subunits
from dynplan.core.run.report import NodeStatus, RunReport
from dynplan.core.validate.validate_pipeline import check_graph


slog = structlog.get_logger(__name__)

PARTIAL = "W_MEMBERS_SKIPPED"


class _Missing:
    """Placeholder for an upstream sub-unit that has no valid result."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


class Pipeline:
    """Declare nodes, run them, and read results and traces back."""

    def __init__(self, store: Optional[BuildStore] = None, *, schema_version: str = "0.1.0") -> None:
        self.store = store if store is not None else BuildStore()
        self.schema_version = schema_version
        self._decls: list[NodeDecl] = []
        self._graph: Optional[PipelineGraph] = None

    @staticmethod
    def from_graph(graph: PipelineGraph, store: Optional[BuildStore] = None) -> "Pipeline":
        p = Pipeline(store, schema_version=graph.schema_version)
        p._decls = [graph.nodes_by_name[n] for n in graph.nodes_by_name]
        p._graph = graph
        return p

    def value(self, name: str, value: Any) -> "Pipeline":
        self._add(NodeDecl(name=name, value=value, has_value=True))
        return self

    def target(
        self,
        name: str,
        command: Callable[..., Any],
        args: Sequence[str] = (),
        kwargs: Optional[Mapping[str, Any]] = None,
        dynamic: Optional[DynamicDeclaration] = None,
    ) -> "Pipeline":
        self._add(
            NodeDecl(
                name=name,
                command=command,
                command_ref=command_ref_for(command),
                args=tuple(args),
                kwargs=dict(kwargs or {}),
                dynamic=dynamic,
            )
        )
        return self

    def graph(self) -> PipelineGraph:
        """Validated graph; raises the first PipelineValidationError found."""
        if self._graph is None:
            graph, errors = check_graph(self._decls, schema_version=self.schema_version)
            if errors or graph is None:
                raise errors[0]
            self._graph = graph
        return self._graph

    def run(
        self,
        *,
        cap: Optional[int] = None,
        workers: int = 4,
        on_upstream_failure: UpstreamFailurePolicy = "fail",
        dry_run: bool = False,
    ) -> RunReport:
        if cap is not None and cap < 0:
            raise ValueError(f"cap must be non-negative, got {cap}")
        run = _Run(
            self.graph(),
            self.store,
            cap=cap,
            workers=workers,
            policy=on_upstream_failure,
            dry_run=dry_run,
        )
        return run.execute()

    def retrieve(self, node: str, indices: Optional[Sequence[int]] = None) -> Any:
        return retrieve(self.store, node, indices)

    def trace(self, trace_name: str, node: str, indices: Optional[Sequence[int]] = None) -> list[Any]:
        return trace_tracker.lookup(self.store, trace_name, node, indices)

    def subunits(self, node: str) -> list[str]:
        return subunits(self.store, node)

    def _add(self, decl: NodeDecl) -> None:
        self._decls.append(decl)
        self._graph = None


def retrieve(store: BuildStore, node: str, indices: Optional[Sequence[int]] = None) -> Any:
    """Results of a node: a static value, or the active sub-unit results in order.

    ``indices`` selects positions among the active (within-cap) sub-units.
    """

    plan = store.plan(node)
    if plan is None:
        static = store.static_entry(node)
        if static is None:
            raise RetrievalError(
                code="E_UNKNOWN_NODE", message=f"nothing recorded for node {node!r}", path=node
            )
        if indices is not None:
            raise RetrievalError(
                code="E_NOT_DYNAMIC", message=f"node {node!r} has no sub-units to index", path=node
            )
        entry = static[1]
        if not entry.ok:
            raise RetrievalError(
                code=entry.code or "E_NODE_FAILED", message=entry.error or "node failed", path=node
            )
        return entry.value

    active = plan.active()
    if indices is None:
        selected = active
    else:
        selected = []
        for i in indices:
            if i < 0 or i >= len(active):
                raise RetrievalError(
                    code="E_INDEX_OUT_OF_RANGE",
                    message=f"index {i} is outside the active range 0..{len(active) - 1}",
                    path=node,
                )
            selected.append(active[i])

    out: list[Any] = []
    for spec in selected:
        entry = store.result(node, spec.identity)
        if entry is None:
            raise RetrievalError(
                code="E_SUBUNIT_NOT_BUILT",
                message=f"sub-unit {spec.index} has not been built",
                path=f"{node}[{spec.index}]",
            )
        if not entry.ok:
            raise SubunitBuildFailure(
                code=entry.code or "E_SUBUNIT_BUILD_FAILED",
                message=entry.error or "build failed",
                path=f"{node}[{spec.index}]",
                identity=spec.identity,
            )
        out.append(entry.value)
    return out


def subunits(store: BuildStore, node: str) -> list[str]:
    plan = store.plan(node)
    if plan is None:
        raise RetrievalError(code="E_NOT_DYNAMIC", message=f"node {node!r} has no recorded plan", path=node)
    return [s.identity for s in plan.active()]


def node_fingerprint(decl: NodeDecl) -> str:
    dyn = decl.dynamic.to_dict() if decl.dynamic is not None else None
    code = command_digest(decl.command) if decl.command is not None else ""
    return fingerprint(decl.command_ref, code, list(decl.args), decl.kwargs, dyn)


class _Run:
    def __init__(
        self,
        graph: PipelineGraph,
        store: BuildStore,
        *,
        cap: Optional[int],
        workers: int,
        policy: UpstreamFailurePolicy,
        dry_run: bool,
    ) -> None:
        self.graph = graph
        self.store = store
        self.cap = cap
        self.workers = workers
        self.policy = policy
        self.dry_run = dry_run
        self.report = RunReport(cap=cap, dry_run=dry_run)
        # node -> static value, or the active sub-unit results of a dynamic node
        self.values: dict[str, Any] = {}
        self.element_ids: dict[str, tuple[str, ...]] = {}
        # node -> trace name -> trace values of its active sub-units
        self.traces: dict[str, dict[str, list[Any]]] = {}
        # node -> sub-unit count before the cap; nodes whose plan a cap may have cut
        self.full_lengths: dict[str, int] = {}
        self.truncated: set[str] = set()
        self.unavailable: set[str] = set()
        self.stopped: set[str] = set()

    def execute(self) -> RunReport:
        slog.info("run_started", nodes=len(self.graph.order), cap=self.cap, dry_run=self.dry_run)
        for name in self.graph.order:
            decl = self.graph.nodes_by_name[name]
            kind = "dynamic" if decl.dynamic is not None else "static"

            stopped = [d for d in self.graph.dependencies(name) if d in self.stopped]
            if stopped:
                self._stop(name, kind, stopped)
                continue

            if decl.dynamic is None:
                self._run_static(decl)
            else:
                self._run_dynamic(decl, decl.dynamic)

        if not self.dry_run:
            self.store.record_status(self.report.to_dict()["nodes"])
        slog.info("run_finished", ok=self.report.ok, failures=len(self.report.failures))
        return self.report

    def _stop(self, name: str, kind: Any, upstream: list[str]) -> None:
        self.stopped.add(name)
        if all(self.report.nodes[u].state in ("planned", "pending") for u in upstream):
            self.report.nodes[name] = NodeStatus(name=name, kind=kind, state="pending")
            return
        err = PlanError(
            code="E_UPSTREAM_ABORTED",
            message=f"not expanded: upstream {', '.join(upstream)} did not complete",
            path=name,
        )
        slog.warning("node_expansion_aborted", node=name, upstream=upstream)
        self.report.nodes[name] = NodeStatus(name=name, kind=kind, state="aborted", error=err)

    # static nodes

    def _run_static(self, decl: NodeDecl) -> None:
        name = decl.name
        try:
            args = [self._whole(a) for a in decl.args]
        except _UpstreamMissing as e:
            self._static_failed(decl, "E_UPSTREAM_FAILED", str(e))
            return

        try:
            if decl.has_value:
                input_fp = fingerprint("value", decl.value)
            else:
                input_fp = fingerprint(node_fingerprint(decl), [fingerprint(a) for a in args])
        except NonCanonicalValue as e:
            self._static_failed(decl, e.code, e.message)
            return

        cached = self.store.static_entry(name)
        if cached is not None and cached[0] == input_fp and cached[1].ok:
            self.values[name] = cached[1].value
            self.report.nodes[name] = NodeStatus(name=name, kind="static", state="reused")
            return

        if decl.has_value:
            value = decl.value
        else:
            assert decl.command is not None
            try:
                value = decl.command(*args, **decl.kwargs)
            except Exception as e:
                self._static_failed(decl, "E_NODE_FAILED", f"{type(e).__name__}: {e}", input_fp)
                return

        if not self.dry_run:
            self.store.record_static(name, input_fp, ResultEntry(ok=True, value=value))
        self.values[name] = value
        state = "planned" if self.dry_run else "built"
        self.report.nodes[name] = NodeStatus(name=name, kind="static", state=state)

    def _static_failed(self, decl: NodeDecl, code: str, message: str, input_fp: str = "") -> None:
        name = decl.name
        err = PlanError(code=code, message=message, path=name)
        slog.error("node_failed", node=name, code=code, error=message)
        if not self.dry_run:
            self.store.record_static(name, input_fp, ResultEntry(ok=False, error=message, code=code))
        self.stopped.add(name)
        self.report.nodes[name] = NodeStatus(name=name, kind="static", state="failed", error=err)

    # dynamic nodes

    def _run_dynamic(self, decl: NodeDecl, dyn: DynamicDeclaration) -> None:
        name = decl.name
        try:
            available = {
                ref: self._grouping(ref) for ref in dyn.references() if ref in self.graph.nodes_by_name
            }
            if dyn.mode != "cross":
                available = self._align_to_cap(dyn, available)
            plan = expand_node(
                name,
                dyn,
                available,
                node_fingerprint=node_fingerprint(decl),
                cap=self.cap,
                upstream_traces=self._upstream_traces(dyn),
            )
        except ExpansionError as e:
            slog.error("node_expansion_aborted", node=name, code=e.code, error=e.message)
            self.stopped.add(name)
            self.report.nodes[name] = NodeStatus(name=name, kind="dynamic", state="aborted", error=e)
            return

        upstream_capped = any(ref in self.truncated for ref in dyn.over + dyn.by)
        if upstream_capped or plan.active_count < len(plan.subunits):
            self.truncated.add(name)

        result = reconcile(
            self.store.plan(name),
            plan,
            self.cap,
            self._valid(name),
            upstream_capped=upstream_capped,
        )
        plan = replace(plan, held=tuple(result.held))
        status = NodeStatus(name=name, kind="dynamic", state="reused", reconciliation=result)
        self.report.nodes[name] = status
        slog.info("node_reconciled", node=name, cap=self.cap, **result.counts())

        if self.dry_run:
            if result.to_build:
                # downstream nodes cannot be expanded before these are built
                status.state = "planned"
                self.stopped.add(name)
                return
            self._materialize(name, plan, dyn.trace)
            return

        specs = [plan.subunits[i] for i in result.to_build]
        blocked: dict[str, list[str]] = {}
        partial: set[str] = set()
        for spec in specs:
            missing = [d for d in spec.depends_on if d in self.unavailable]
            if missing and dyn.mode == "group" and self.policy == "skip":
                partial.add(spec.identity)
                missing = []
            if self.policy == "fail":
                missing.extend(i for i in self._missing_whole_args(decl, spec) if i not in missing)
            if missing:
                blocked[spec.identity] = missing

        outcomes = build_subunits(name, specs, self._builder(decl), workers=self.workers, blocked=blocked)
        for o in outcomes:
            if o.ok:
                code = PARTIAL if o.identity in partial else None
                self.store.record_result(name, o.identity, ResultEntry(ok=True, value=o.value, code=code))
            else:
                assert o.failure is not None
                status.failures.append(o.failure)
                self.store.record_result(
                    name,
                    o.identity,
                    ResultEntry(ok=False, error=o.failure.message, code=o.failure.code),
                )

        entries = [s.trace for s in plan.subunits]
        self.store.record_plan(plan, trace_tracker.records_for(name, dyn.trace, entries))

        if status.failures:
            status.state = "failed"
        elif result.to_build:
            status.state = "built"
        self._materialize(name, plan, dyn.trace)

    def _valid(self, name: str) -> set[str]:
        # partial aggregates (members skipped) are rebuilt on every run
        out: set[str] = set()
        for identity in self.store.valid_identities(name):
            entry = self.store.result(name, identity)
            if entry is not None and entry.code != PARTIAL:
                out.add(identity)
        return out

    def _align_to_cap(
        self, dyn: DynamicDeclaration, available: dict[str, GroupingValue]
    ) -> dict[str, GroupingValue]:
        """Cut static values sized like a capped dynamic upstream down to its active prefix."""
        active_by_full: dict[int, int] = {}
        for ref in dyn.over + dyn.by:
            gv = available.get(ref)
            if gv is None or not gv.is_dynamic:
                continue
            full = self.full_lengths.get(ref, gv.length)
            if full > gv.length:
                active_by_full[full] = gv.length
        if not active_by_full:
            return available

        out = dict(available)
        for ref, gv in available.items():
            active = active_by_full.get(gv.length)
            if gv.is_dynamic or active is None:
                continue
            out[ref] = grouping_value(ref, take_many(gv.value, range(active)))
        return out

    def _missing_whole_args(self, decl: NodeDecl, spec: SubunitSpec) -> list[str]:
        """Upstream identities without a result among arguments passed whole to a sub-unit."""
        out: list[str] = []
        for a in decl.args:
            if a in spec.inputs or a not in self.element_ids:
                continue
            for identity, v in zip(self.element_ids[a], self.values[a]):
                if v is MISSING and identity not in out:
                    out.append(identity)
        return out

    def _materialize(self, name: str, plan: ExpansionPlan, trace_names: Sequence[str]) -> None:
        active = plan.active()
        values: list[Any] = []
        for spec in active:
            entry = self.store.result(name, spec.identity)
            if entry is not None and entry.ok:
                values.append(entry.value)
            else:
                values.append(MISSING)
                self.unavailable.add(spec.identity)
        self.values[name] = values
        self.element_ids[name] = tuple(s.identity for s in active)
        self.full_lengths[name] = len(plan.subunits)
        records = trace_tracker.records_for(name, trace_names, [s.trace for s in active])
        self.traces[name] = {r.trace_name: r.values for r in records}

    def _grouping(self, ref: str) -> GroupingValue:
        return grouping_value(ref, self.values[ref], element_ids=self.element_ids.get(ref))

    def _upstream_traces(self, dyn: DynamicDeclaration) -> dict[str, dict[str, list[Any]]]:
        return {up: self.traces[up] for up in dyn.over if self.traces.get(up)}

    def _builder(self, decl: NodeDecl) -> Callable[[SubunitSpec], Any]:
        command = decl.command
        assert command is not None

        def build(spec: SubunitSpec) -> Any:
            args = []
            for a in decl.args:
                if a in spec.inputs:
                    args.append(self._without_missing(spec.inputs[a]))
                else:
                    args.append(self._whole(a))
            return command(*args, **decl.kwargs)

        return build

    def _whole(self, ref: str) -> Any:
        """A node's entire value as an argument (all active results for a dynamic node)."""
        value = self.values[ref]
        if ref not in self.element_ids:
            return value
        if any(v is MISSING for v in value):
            if self.policy == "fail":
                raise _UpstreamMissing(f"{ref} has sub-units without a valid result")
            return [v for v in value if v is not MISSING]
        return value

    def _without_missing(self, value: Any) -> Any:
        if isinstance(value, list) and any(v is MISSING for v in value):
            return [v for v in value if v is not MISSING]
        return value


class _UpstreamMissing(Exception):
    pass
