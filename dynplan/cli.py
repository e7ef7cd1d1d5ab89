from __future__ import annotations

import json
from typing import Any

import typer

from dynplan.core.config import RunConfig, resolve_config
from dynplan.core.errors import ConfigError, PipelineLoadError, PipelineValidationError, PlanError, StoreError
from dynplan.core.expand import trace as trace_tracker
from dynplan.core.io.load_pipeline import load_pipeline
from dynplan.core.io.store import BuildStore
from dynplan.core.logging import configure_logging
from dynplan.core.model import PipelineGraph
from dynplan.core.run.pipeline import Pipeline, retrieve
from dynplan.core.run.report import RunReport
from dynplan.core.validate.validate_pipeline import validate_pipeline

app = typer.Typer(add_completion=False, no_args_is_help=True)

COUNT_KEYS = ("reused", "to_build", "retained_unbuilt", "dropped", "failed")


@app.callback()
def _callback(
    ctx: typer.Context,
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG|INFO|WARNING|ERROR"),
    log_json: bool = typer.Option(False, "--log-json", help="Render logs as JSON on stderr"),
) -> None:
    """Dynamic branching pipelines: expand, reconcile, build."""
    ctx.obj = {"log_level": log_level, "log_json": log_json or None}
    cfg = _resolve(ctx, None)
    configure_logging(json_output=cfg.log_json, level=cfg.log_level)


@app.command("validate")
def validate(
    path: str = typer.Argument(..., help="Path to a pipeline file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Validate a pipeline file and resolve its commands."""
    _check_format(format, "E_VALIDATE_UNKNOWN_FORMAT")

    def _to_item(e: PlanError) -> dict:
        source = "load" if isinstance(e, PipelineLoadError) else "validate"
        return {
            "code": e.code,
            "message": e.message,
            "file": e.file,
            "path": e.path,
            "severity": "error",
            "source": source,
        }

    def _emit_json(ok: bool, *, exit_code: int, errors: list[PlanError], summary: dict | None) -> None:
        payload = {
            "tool": "dynplan",
            "command": "validate",
            "ok": ok,
            "error_count": len(errors),
            "errors": [_to_item(e) for e in errors],
            "summary": summary,
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        raise typer.Exit(code=exit_code)

    try:
        pipeline = load_pipeline(path)
    except PipelineLoadError as e:
        if format == "json":
            _emit_json(False, exit_code=1, errors=[e], summary=None)
        _print_errors([e])
        raise typer.Exit(code=1)

    graph, errors = validate_pipeline(pipeline)
    if errors or graph is None:
        if format == "json":
            _emit_json(False, exit_code=2, errors=list(errors), summary=None)
        _print_errors(list(errors))
        raise typer.Exit(code=2)

    if format == "text":
        typer.echo(summarize_graph(graph))
        return

    _emit_json(True, exit_code=0, errors=[], summary=_summary(graph))


@app.command("plan")
def plan(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a pipeline file (.yaml/.yml/.json)"),
    cap: int | None = typer.Option(None, "--cap", help="Build at most this many sub-units per node"),
    store: str | None = typer.Option(None, "--store", help="Build store file"),
    config: str | None = typer.Option(None, "--config", help="YAML config file"),
    on_upstream_failure: str | None = typer.Option(None, "--on-upstream-failure", help="fail|skip"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Preview what a run would reuse and build, without building anything."""
    _check_format(format, "E_PLAN_UNKNOWN_FORMAT")
    cfg = _resolve(
        ctx, config, cap=cap, store=store, on_upstream_failure=on_upstream_failure
    )
    graph = _load_graph(path)
    build_store = _load_store(cfg.store)

    p = Pipeline.from_graph(graph, build_store)
    report = p.run(cap=cfg.cap, workers=cfg.workers, on_upstream_failure=cfg.on_upstream_failure, dry_run=True)
    _emit_report("plan", report, format)
    if report.errors:
        raise typer.Exit(code=2)


@app.command("run")
def run(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a pipeline file (.yaml/.yml/.json)"),
    cap: int | None = typer.Option(None, "--cap", help="Build at most this many sub-units per node"),
    workers: int | None = typer.Option(None, "--workers", help="Parallel sub-unit builds"),
    store: str | None = typer.Option(None, "--store", help="Build store file"),
    config: str | None = typer.Option(None, "--config", help="YAML config file"),
    on_upstream_failure: str | None = typer.Option(None, "--on-upstream-failure", help="fail|skip"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Expand, reconcile and build every node; results are saved to the store."""
    _check_format(format, "E_RUN_UNKNOWN_FORMAT")
    cfg = _resolve(
        ctx,
        config,
        cap=cap,
        workers=workers,
        store=store,
        on_upstream_failure=on_upstream_failure,
    )
    graph = _load_graph(path)
    build_store = _load_store(cfg.store)

    p = Pipeline.from_graph(graph, build_store)
    report = p.run(cap=cfg.cap, workers=cfg.workers, on_upstream_failure=cfg.on_upstream_failure)
    try:
        build_store.save(cfg.store)
    except StoreError as e:
        _print_errors([e])
        raise typer.Exit(code=2)

    _emit_report("run", report, format)
    if not report.ok:
        raise typer.Exit(code=2)


@app.command("show")
def show(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Node name"),
    index: list[int] | None = typer.Option(None, "--index", help="Active sub-unit index (repeatable)"),
    store: str | None = typer.Option(None, "--store", help="Build store file"),
    config: str | None = typer.Option(None, "--config", help="YAML config file"),
) -> None:
    """Print the stored result of a node (all active sub-units, or --index)."""
    cfg = _resolve(ctx, config, store=store)
    build_store = _load_store(cfg.store)
    try:
        value = retrieve(build_store, node, index or None)
    except PlanError as e:
        _print_errors([e])
        raise typer.Exit(code=2)
    typer.echo(json.dumps(value, indent=2, sort_keys=True))


@app.command("trace")
def trace(
    ctx: typer.Context,
    trace_name: str = typer.Argument(..., help="Trace name"),
    node: str = typer.Argument(..., help="Dynamic node name"),
    index: list[int] | None = typer.Option(None, "--index", help="Active sub-unit index (repeatable)"),
    store: str | None = typer.Option(None, "--store", help="Build store file"),
    config: str | None = typer.Option(None, "--config", help="YAML config file"),
) -> None:
    """Print which grouping values produced each sub-unit of a node."""
    cfg = _resolve(ctx, config, store=store)
    build_store = _load_store(cfg.store)
    try:
        values = trace_tracker.lookup(build_store, trace_name, node, index or None)
    except PlanError as e:
        _print_errors([e])
        raise typer.Exit(code=2)
    typer.echo(json.dumps(values, indent=2, sort_keys=True))


@app.command("status")
def status(
    ctx: typer.Context,
    store: str | None = typer.Option(None, "--store", help="Build store file"),
    config: str | None = typer.Option(None, "--config", help="YAML config file"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Show the per-node outcome of the last recorded run."""
    _check_format(format, "E_STATUS_UNKNOWN_FORMAT")
    cfg = _resolve(ctx, config, store=store)
    nodes = _load_store(cfg.store).status()

    if format == "json":
        payload = {"tool": "dynplan", "command": "status", "store": cfg.store, "nodes": nodes}
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    if not nodes:
        typer.echo(f"No run recorded in {cfg.store}")
        return

    from rich.console import Console
    from rich.table import Table

    table = Table(title=f"dynplan status ({cfg.store})")
    table.add_column("node")
    table.add_column("kind")
    table.add_column("state")
    for key in COUNT_KEYS:
        table.add_column(key.replace("_unbuilt", ""), justify="right")

    for name, s in nodes.items():
        counts = s.get("counts") or {}
        table.add_row(
            name,
            str(s.get("kind", "")),
            str(s.get("state", "")),
            *[str(counts[k]) if k in counts else "-" for k in COUNT_KEYS],
        )
    Console().print(table)


@app.command("clean")
def clean(
    ctx: typer.Context,
    store: str | None = typer.Option(None, "--store", help="Build store file"),
    config: str | None = typer.Option(None, "--config", help="YAML config file"),
) -> None:
    """Remove stored results that no recorded plan references any more."""
    cfg = _resolve(ctx, config, store=store)
    build_store = _load_store(cfg.store)
    removed = build_store.clean()
    try:
        build_store.save(cfg.store)
    except StoreError as e:
        _print_errors([e])
        raise typer.Exit(code=2)
    typer.echo(f"OK: removed {removed} stale result(s) from {cfg.store}")


def summarize_graph(graph: PipelineGraph) -> str:
    dynamic = [n for n in graph.order if graph.nodes_by_name[n].dynamic is not None]
    lines = [
        f"OK: schema_version={graph.schema_version} nodes={len(graph.order)} dynamic={len(dynamic)}",
        "Order:",
    ]
    for name in graph.order:
        d = graph.nodes_by_name[name]
        if d.dynamic is not None:
            extra = f" by={','.join(d.dynamic.by)}" if d.dynamic.by else ""
            lines.append(f"- {name} [{d.dynamic.mode} over={','.join(d.dynamic.over)}{extra}]")
        elif d.has_value:
            lines.append(f"- {name} [value]")
        else:
            lines.append(f"- {name} [{d.command_ref}]")
    return "\n".join(lines)


def _summary(graph: PipelineGraph) -> dict[str, Any]:
    modes: dict[str, int] = {}
    for d in graph.nodes_by_name.values():
        if d.dynamic is not None:
            modes[d.dynamic.mode] = modes.get(d.dynamic.mode, 0) + 1
    return {
        "node_count": len(graph.order),
        "mode_counts": modes,
        "order": list(graph.order),
    }


def _emit_report(command: str, report: RunReport, format: str) -> None:
    if format == "json":
        payload = {"tool": "dynplan", "command": command, **report.to_dict()}
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    cap = "unbounded" if report.cap is None else str(report.cap)
    typer.echo(f"{'Plan' if report.dry_run else 'Run'} (cap={cap})")
    for name, s in report.nodes.items():
        counts = s.counts()
        detail = " ".join(f"{k}={counts[k]}" for k in COUNT_KEYS if k in counts)
        typer.echo(f"- {name}: {s.state}" + (f" ({detail})" if detail else ""))

    problems: list[PlanError] = [*report.errors, *report.failures]
    if problems:
        _print_errors(problems)
    if report.ok:
        typer.echo("OK: plan complete" if report.dry_run else "OK: run complete")


def _resolve(ctx: typer.Context, config_file: str | None, **overrides: Any) -> RunConfig:
    merged = dict(ctx.obj or {})
    merged.update(overrides)
    try:
        cfg = resolve_config(config_file, overrides=merged)
    except ConfigError as e:
        _print_errors([e])
        raise typer.Exit(code=1 if e.code == "E_CONFIG_NOT_FOUND" else 2)
    if config_file:
        # the file may carry its own log settings
        configure_logging(json_output=cfg.log_json, level=cfg.log_level)
    return cfg


def _load_graph(path: str) -> PipelineGraph:
    try:
        pipeline = load_pipeline(path)
    except PipelineLoadError as e:
        _print_errors([e])
        raise typer.Exit(code=1)

    graph, errors = validate_pipeline(pipeline)
    if errors or graph is None:
        _print_errors(list(errors))
        raise typer.Exit(code=2)
    return graph


def _load_store(path: str) -> BuildStore:
    try:
        return BuildStore.load(path)
    except StoreError as e:
        _print_errors([e])
        raise typer.Exit(code=1)


def _check_format(format: str, code: str) -> None:
    if format not in ("text", "json"):
        err = PipelineValidationError(
            code=code,
            message=f"unknown format: {format} (choose one of: text, json)",
            file=None,
            path="format",
        )
        _print_errors([err])
        raise typer.Exit(code=2)


def _print_errors(errors: list[PlanError]) -> None:
    errors_sorted = sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))
    for e in errors_sorted:
        typer.echo(str(e), err=True)


def main() -> None:
    app(prog_name="dynplan")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()
