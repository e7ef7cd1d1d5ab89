from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog

from dynplan.core.errors import StoreError
from dynplan.core.model import ExpansionPlan, TraceRecord


slog = structlog.get_logger(__name__)

STORE_VERSION = 1


@dataclass(frozen=True)
class ResultEntry:
    ok: bool
    value: Any = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok, "value": self.value}
        if self.error is not None:
            out["error"] = self.error
        if self.code is not None:
            out["code"] = self.code
        return out

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "ResultEntry":
        return ResultEntry(
            ok=bool(raw.get("ok")),
            value=raw.get("value"),
            error=raw.get("error"),
            code=raw.get("code"),
        )


class BuildStore:
    """Run state of a pipeline, keyed by node and sub-unit identity.

    Holds, per dynamic node, the last recorded ExpansionPlan and its trace
    records; per (node, identity) the build outcome; per static node the input
    fingerprint its cached value was computed from; and the last run's status.

    Results of sub-units outside the current cap are kept on purpose. Only
    :meth:`clean` removes results, and only those no recorded plan references.
    """

    def __init__(self) -> None:
        self._plans: dict[str, ExpansionPlan] = {}
        self._results: dict[str, dict[str, ResultEntry]] = {}
        self._traces: dict[tuple[str, str], TraceRecord] = {}
        self._static: dict[str, tuple[str, ResultEntry]] = {}
        self._status: dict[str, dict[str, Any]] = {}

    # plans / traces

    def plan(self, node: str) -> Optional[ExpansionPlan]:
        return self._plans.get(node)

    def record_plan(self, plan: ExpansionPlan, traces: list[TraceRecord]) -> None:
        """Replace the node's plan and all of its trace records together."""
        self._plans[plan.node] = plan
        for key in [k for k in self._traces if k[1] == plan.node]:
            del self._traces[key]
        for rec in traces:
            self._traces[(rec.trace_name, rec.node)] = rec

    def trace(self, trace_name: str, node: str) -> Optional[TraceRecord]:
        return self._traces.get((trace_name, node))

    def trace_names(self, node: str) -> list[str]:
        return sorted(name for name, n in self._traces if n == node)

    def dynamic_nodes(self) -> list[str]:
        return sorted(self._plans)

    # results

    def result(self, node: str, identity: str) -> Optional[ResultEntry]:
        return self._results.get(node, {}).get(identity)

    def record_result(self, node: str, identity: str, entry: ResultEntry) -> None:
        self._results.setdefault(node, {})[identity] = entry

    def valid_identities(self, node: str) -> set[str]:
        return {i for i, e in self._results.get(node, {}).items() if e.ok}

    def static_entry(self, node: str) -> Optional[tuple[str, ResultEntry]]:
        return self._static.get(node)

    def record_static(self, node: str, input_fingerprint: str, entry: ResultEntry) -> None:
        self._static[node] = (input_fingerprint, entry)

    # status

    def status(self) -> dict[str, dict[str, Any]]:
        return dict(self._status)

    def record_status(self, status: dict[str, dict[str, Any]]) -> None:
        self._status = dict(status)

    def clean(self) -> int:
        """Drop results no recorded plan references or holds. Returns how many were removed."""
        removed = 0
        for node in list(self._results):
            plan = self._plans.get(node)
            keep = set(plan.identities) | set(plan.held) if plan is not None else set()
            entries = self._results[node]
            for identity in [i for i in entries if i not in keep]:
                del entries[identity]
                removed += 1
            if not entries:
                del self._results[node]
        slog.info("store_cleaned", removed=removed)
        return removed

    # persistence

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STORE_VERSION,
            "plans": {n: p.to_dict() for n, p in sorted(self._plans.items())},
            "traces": [r.to_dict() for _, r in sorted(self._traces.items())],
            "results": {
                n: {i: e.to_dict() for i, e in sorted(entries.items())}
                for n, entries in sorted(self._results.items())
            },
            "static": {
                n: {"fingerprint": fp, "entry": e.to_dict()} for n, (fp, e) in sorted(self._static.items())
            },
            "status": self._status,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "BuildStore":
        store = BuildStore()
        for node, p in (raw.get("plans") or {}).items():
            store._plans[node] = ExpansionPlan.from_dict(p)
        for t in raw.get("traces") or []:
            rec = TraceRecord.from_dict(t)
            store._traces[(rec.trace_name, rec.node)] = rec
        for node, entries in (raw.get("results") or {}).items():
            store._results[node] = {i: ResultEntry.from_dict(e) for i, e in entries.items()}
        for node, s in (raw.get("static") or {}).items():
            store._static[node] = (str(s["fingerprint"]), ResultEntry.from_dict(s["entry"]))
        store._status = dict(raw.get("status") or {})
        return store

    def save(self, path: str | Path) -> None:
        p = Path(path)
        if str(p.parent) not in (".", ""):
            p.parent.mkdir(parents=True, exist_ok=True)
        try:
            text = json.dumps(self.to_dict(), indent=2, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StoreError(
                code="E_STORE_UNSERIALIZABLE",
                message=f"store holds a value that is not JSON serializable: {e}",
                file=str(p),
            ) from e

        fd, tmp = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=str(p.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, p)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        slog.debug("store_saved", path=str(p), nodes=len(self._plans))

    @staticmethod
    def load(path: str | Path) -> "BuildStore":
        """Load a store file. A missing file is an empty store (first run)."""
        p = Path(path)
        if not p.exists():
            return BuildStore()
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
        except Exception as e:
            raise StoreError(code="E_STORE_READ", message=str(e), file=str(p)) from e
        if not isinstance(raw, dict):
            raise StoreError(
                code="E_STORE_INVALID",
                message="store file must hold a JSON object",
                file=str(p),
            )
        if raw.get("version") != STORE_VERSION:
            raise StoreError(
                code="E_STORE_VERSION",
                message=f"unsupported store version: {raw.get('version')!r}",
                file=str(p),
            )
        return BuildStore.from_dict(raw)
