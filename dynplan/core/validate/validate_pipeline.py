from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Optional, Sequence, cast

from dynplan.core.commands import CommandResolutionError, resolve_command
from dynplan.core.errors import PipelineValidationError
from dynplan.core.model import FANOUT_MODES, DynamicDeclaration, FanoutMode, NodeDecl, PipelineGraph


def _is_list_of_str(v: Any) -> bool:
    return isinstance(v, list) and all(isinstance(x, str) for x in v)


def _names(v: Any) -> Optional[tuple[str, ...]]:
    """by/trace accept a single name or a list of names."""
    if v is None:
        return ()
    if isinstance(v, str) and v.strip():
        return (v,)
    if _is_list_of_str(v):
        return tuple(v)
    return None


def validate_pipeline(pipeline: dict[str, Any]) -> tuple[Optional[PipelineGraph], list[PipelineValidationError]]:
    """Validate a loaded pipeline file and resolve its commands.

    Returns (graph, errors). Graph is None when errors exist.
    """

    file = cast(Optional[str], pipeline.get("__file__"))
    errors: list[PipelineValidationError] = []

    schema_version = pipeline.get("schema_version")
    if not isinstance(schema_version, str) or not schema_version.strip():
        errors.append(
            PipelineValidationError(
                code="E_REQUIRED_FIELD",
                message="schema_version is required and must be a non-empty string",
                file=file,
                path="schema_version",
            )
        )

    nodes = pipeline.get("nodes")
    if not isinstance(nodes, list):
        errors.append(
            PipelineValidationError(
                code="E_REQUIRED_FIELD",
                message="nodes is required and must be an array",
                file=file,
                path="nodes",
            )
        )
        return None, _sorted(errors)

    decls: list[NodeDecl] = []
    for i, raw in enumerate(nodes):
        decl = _parse_node(raw, f"nodes[{i}]", file, errors)
        if decl is not None:
            decls.append(decl)

    if errors:
        return None, _sorted(errors)

    return check_graph(decls, schema_version=cast(str, schema_version), file=file)


def check_graph(
    decls: Sequence[NodeDecl],
    *,
    schema_version: str = "0.1.0",
    file: Optional[str] = None,
) -> tuple[Optional[PipelineGraph], list[PipelineValidationError]]:
    """Structural checks shared by pipeline files and the Python API."""

    errors: list[PipelineValidationError] = []

    counts = Counter(d.name for d in decls)
    for name in sorted(n for n, c in counts.items() if c > 1):
        errors.append(
            PipelineValidationError(
                code="E_DUPLICATE_NAME",
                message=f"duplicate node name: {name} (count={counts[name]})",
                file=file,
                path=name,
            )
        )

    by_name: dict[str, NodeDecl] = {}
    for d in decls:
        by_name.setdefault(d.name, d)

    edges: list[tuple[str, str]] = []
    for d in by_name.values():
        errors.extend(_check_node(d, by_name, file))
        for ref in d.references():
            if ref in by_name and (d.name, ref) not in edges:
                edges.append((d.name, ref))

    deps: dict[str, list[str]] = {name: [] for name in by_name}
    for node, dep in edges:
        deps[node].append(dep)

    for name, msg in _detect_cycles(deps):
        errors.append(
            PipelineValidationError(
                code="E_CYCLE_DETECTED",
                message=msg,
                file=file,
                path=name,
            )
        )

    if errors:
        return None, _sorted(errors)

    return (
        PipelineGraph(
            schema_version=schema_version,
            nodes_by_name=by_name,
            edges=edges,
            order=_topological_order(list(by_name), deps),
        ),
        [],
    )


def _parse_node(
    raw: Any, node_path: str, file: Optional[str], errors: list[PipelineValidationError]
) -> Optional[NodeDecl]:
    def err(code: str, message: str, path: str) -> None:
        errors.append(PipelineValidationError(code=code, message=message, file=file, path=path))

    if not isinstance(raw, dict):
        err("E_INVALID_TYPE", "node must be an object", node_path)
        return None

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        err("E_REQUIRED_FIELD", "name is required and must be a non-empty string", f"{node_path}.name")
        return None

    has_value = "value" in raw
    command_ref = raw.get("command")
    if has_value and command_ref is not None:
        err("E_VALUE_AND_COMMAND", "a node takes either value or command, not both", node_path)
        return None
    if not has_value and command_ref is None:
        err("E_REQUIRED_FIELD", "a node needs a value or a command", node_path)
        return None

    command = None
    if command_ref is not None:
        if not isinstance(command_ref, str) or not command_ref.strip():
            err("E_INVALID_TYPE", "command must be a non-empty string", f"{node_path}.command")
            return None
        try:
            command = resolve_command(command_ref)
        except CommandResolutionError as e:
            err("E_UNKNOWN_COMMAND", str(e), f"{node_path}.command")
            return None

    args = raw.get("args", [])
    if not _is_list_of_str(args):
        err("E_INVALID_TYPE", "args must be an array of node names", f"{node_path}.args")
        return None

    kwargs = raw.get("kwargs", {})
    if not isinstance(kwargs, dict) or not all(isinstance(k, str) for k in kwargs):
        err("E_INVALID_TYPE", "kwargs must be a mapping of literal values", f"{node_path}.kwargs")
        return None

    dynamic = None
    raw_dynamic = raw.get("dynamic")
    if raw_dynamic is not None:
        dynamic = _parse_dynamic(raw_dynamic, f"{node_path}.dynamic", file, errors)
        if dynamic is None:
            return None

    return NodeDecl(
        name=name,
        command=command,
        command_ref=command_ref or "",
        args=tuple(args),
        kwargs=dict(kwargs),
        value=raw.get("value"),
        has_value=has_value,
        dynamic=dynamic,
    )


def _parse_dynamic(
    raw: Any, path: str, file: Optional[str], errors: list[PipelineValidationError]
) -> Optional[DynamicDeclaration]:
    if not isinstance(raw, dict):
        errors.append(
            PipelineValidationError(
                code="E_INVALID_TYPE", message="dynamic must be an object", file=file, path=path
            )
        )
        return None

    mode = raw.get("mode")
    if not isinstance(mode, str) or mode not in FANOUT_MODES:
        errors.append(
            PipelineValidationError(
                code="E_INVALID_ENUM",
                message=f"mode must be one of {list(FANOUT_MODES)}",
                file=file,
                path=f"{path}.mode",
            )
        )
        return None

    over = _names(raw.get("over"))
    by = _names(raw.get("by"))
    trace = _names(raw.get("trace"))
    for key, parsed in (("over", over), ("by", by), ("trace", trace)):
        if parsed is None:
            errors.append(
                PipelineValidationError(
                    code="E_INVALID_TYPE",
                    message=f"{key} must be a name or an array of names",
                    file=file,
                    path=f"{path}.{key}",
                )
            )
            return None

    return DynamicDeclaration(
        mode=cast(FanoutMode, mode),
        over=cast(tuple[str, ...], over),
        by=cast(tuple[str, ...], by),
        trace=cast(tuple[str, ...], trace),
    )


def _check_node(d: NodeDecl, by_name: dict[str, NodeDecl], file: Optional[str]) -> list[PipelineValidationError]:
    errors: list[PipelineValidationError] = []

    def err(code: str, message: str) -> None:
        errors.append(PipelineValidationError(code=code, message=message, file=file, path=d.name))

    if d.has_value and (d.command is not None or d.dynamic is not None):
        err("E_VALUE_AND_COMMAND", "a value node cannot have a command or a dynamic declaration")
    if not d.has_value and d.command is None:
        err("E_REQUIRED_FIELD", "a node needs a value or a command")

    for ref in d.args:
        if ref not in by_name:
            err("E_UNKNOWN_REFERENCE", f"args references unknown node: {ref}")

    dyn = d.dynamic
    if dyn is None:
        return errors

    if not dyn.over:
        err("E_EMPTY_OVER", f"{dyn.mode} needs at least one grouping value")
    if dyn.by and dyn.mode != "group":
        err("E_BY_REQUIRES_GROUP", f"by is only valid with mode=group, got mode={dyn.mode}")

    for ref in dyn.over:
        if ref not in by_name:
            err("E_UNKNOWN_REFERENCE", f"over references unknown node: {ref}")

    # by/trace may also name a trace recorded by a dynamic node in `over`.
    upstream_traces: set[str] = set()
    for ref in dyn.over:
        up = by_name.get(ref)
        if up is not None and up.dynamic is not None:
            upstream_traces.update(up.dynamic.trace)

    for key, names in (("by", dyn.by), ("trace", dyn.trace)):
        for ref in names:
            if ref not in by_name and ref not in upstream_traces:
                err("E_UNKNOWN_REFERENCE", f"{key} references unknown node or upstream trace: {ref}")

    return errors


def _topological_order(names: list[str], deps: dict[str, list[str]]) -> list[str]:
    """Kahn's algorithm, ties broken by declaration order."""
    remaining = {n: set(deps[n]) for n in names}
    order: list[str] = []
    while remaining:
        ready = [n for n in names if n in remaining and not remaining[n]]
        if not ready:  # pragma: no cover - cycles are rejected before this
            break
        nxt = ready[0]
        order.append(nxt)
        del remaining[nxt]
        for pending in remaining.values():
            pending.discard(nxt)
    return order


def _detect_cycles(id_to_deps: dict[str, list[str]]) -> list[tuple[str, str]]:
    WHITE, GRAY, BLACK = 0, 1, 2
    state: dict[str, int] = {nid: WHITE for nid in id_to_deps.keys()}
    stack: list[str] = []
    emitted: set[str] = set()
    out: list[tuple[str, str]] = []

    def dfs(u: str) -> None:
        state[u] = GRAY
        stack.append(u)
        for v in id_to_deps.get(u, []):
            if v not in state:
                continue
            if state[v] == GRAY:
                idx = stack.index(v)
                cycle = stack[idx:] + [v]
                key = "->".join(sorted(cycle[:-1]))
                if key not in emitted:
                    emitted.add(key)
                    out.append((u, "dependency cycle detected: " + " -> ".join(cycle)))
            elif state[v] == WHITE:
                dfs(v)
        stack.pop()
        state[u] = BLACK

    for nid in list(state.keys()):
        if state[nid] == WHITE:
            dfs(nid)

    return out


def _sorted(errors: Iterable[PipelineValidationError]) -> list[PipelineValidationError]:
    return sorted(
        list(errors),
        key=lambda e: (
            e.file or "",
            e.path or "",
            e.code,
        ),
    )
