from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from dynplan.core.errors import PlanError, SubunitBuildFailure
from dynplan.core.model import ReconciliationResult


NodeState = Literal["built", "reused", "failed", "aborted", "planned", "pending"]


@dataclass
class NodeStatus:
    name: str
    kind: Literal["static", "dynamic"]
    state: NodeState
    reconciliation: Optional[ReconciliationResult] = None
    failures: list[SubunitBuildFailure] = field(default_factory=list)
    error: Optional[PlanError] = None

    def counts(self) -> dict[str, int]:
        if self.reconciliation is None:
            return {}
        out = self.reconciliation.counts()
        out["failed"] = len(self.failures)
        return out

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "state": self.state}
        if self.reconciliation is not None:
            out["counts"] = self.counts()
        if self.failures:
            out["failures"] = [_error_item(f) for f in self.failures]
        if self.error is not None:
            out["error"] = _error_item(self.error)
        return out


@dataclass
class RunReport:
    cap: Optional[int]
    dry_run: bool = False
    nodes: dict[str, NodeStatus] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(s.state not in ("failed", "aborted") for s in self.nodes.values())

    @property
    def errors(self) -> list[PlanError]:
        """Declaration errors and upstream failures that stopped whole nodes."""
        return [s.error for s in self.nodes.values() if s.error is not None]

    @property
    def failures(self) -> list[SubunitBuildFailure]:
        out: list[SubunitBuildFailure] = []
        for s in self.nodes.values():
            out.extend(s.failures)
        return out

    def counts(self, node: str) -> dict[str, int]:
        return self.nodes[node].counts()

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "cap": self.cap,
            "dry_run": self.dry_run,
            "nodes": {name: s.to_dict() for name, s in self.nodes.items()},
        }


def _error_item(e: PlanError) -> dict[str, Any]:
    item: dict[str, Any] = {"code": e.code, "message": e.message, "path": e.path}
    identity = getattr(e, "identity", None)
    if identity is not None:
        item["identity"] = identity
    return item
