from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional, Union

from dynplan.core.fingerprint import freeze


FanoutMode = Literal["map", "cross", "group"]
FANOUT_MODES: tuple[str, ...] = ("map", "cross", "group")

# A single position for map/cross, an ordered tuple of positions for group.
Position = Union[int, tuple[int, ...]]


@dataclass(frozen=True)
class GroupingValue:
    name: str
    value: Any
    length: int
    # Identities of the producing sub-units when the value comes from a dynamic node.
    element_ids: Optional[tuple[str, ...]] = None

    @property
    def is_dynamic(self) -> bool:
        return self.element_ids is not None


@dataclass(frozen=True)
class DynamicDeclaration:
    mode: FanoutMode
    over: tuple[str, ...]
    by: tuple[str, ...] = ()
    trace: tuple[str, ...] = ()

    def references(self) -> list[str]:
        """All names this declaration reads, in declaration order, de-duplicated."""
        out: list[str] = []
        for name in self.over + self.by + self.trace:
            if name not in out:
                out.append(name)
        return out

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"mode": self.mode, "over": list(self.over)}
        if self.by:
            out["by"] = list(self.by)
        if self.trace:
            out["trace"] = list(self.trace)
        return out


@dataclass(frozen=True)
class NodeDecl:
    name: str
    command: Optional[Callable[..., Any]] = None
    # Stable text naming the command; part of the node fingerprint.
    command_ref: str = ""
    args: tuple[str, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    value: Any = None
    has_value: bool = False
    dynamic: Optional[DynamicDeclaration] = None

    def references(self) -> list[str]:
        out = list(self.args)
        if self.dynamic is not None:
            for name in self.dynamic.references():
                if name not in out:
                    out.append(name)
        return out


@dataclass(frozen=True)
class PipelineGraph:
    schema_version: str
    nodes_by_name: dict[str, NodeDecl]
    # (node, depends_on) pairs, node-to-node only
    edges: list[tuple[str, str]]
    order: list[str]

    def dependencies(self, name: str) -> list[str]:
        return [dep for n, dep in self.edges if n == name]


@dataclass(frozen=True)
class Assignment:
    """Which original grouping elements feed one sub-unit."""

    positions: dict[str, Position]
    key: Any = None


@dataclass(frozen=True)
class SubunitSpec:
    index: int
    identity: str
    inputs: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    depends_on: tuple[str, ...] = ()
    trace: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "identity": self.identity,
            "depends_on": list(self.depends_on),
            "trace": self.trace,
        }


@dataclass(frozen=True)
class ExpansionPlan:
    node: str
    mode: FanoutMode
    subunits: list[SubunitSpec]
    cap: Optional[int] = None
    trace_names: tuple[str, ...] = ()
    # Identities of earlier plans a capped upstream kept out of this one; still
    # reusable and never cleaned while held.
    held: tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.subunits)

    @property
    def identities(self) -> list[str]:
        return [s.identity for s in self.subunits]

    @property
    def active_count(self) -> int:
        if self.cap is None:
            return len(self.subunits)
        return min(self.cap, len(self.subunits))

    def active(self) -> list[SubunitSpec]:
        return self.subunits[: self.active_count]

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node,
            "mode": self.mode,
            "cap": self.cap,
            "trace_names": list(self.trace_names),
            "held": list(self.held),
            "subunits": [s.to_dict() for s in self.subunits],
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "ExpansionPlan":
        subunits = [
            SubunitSpec(
                index=int(s["index"]),
                identity=str(s["identity"]),
                depends_on=tuple(s.get("depends_on") or ()),
                trace=freeze(s.get("trace")),
            )
            for s in raw.get("subunits") or []
        ]
        return ExpansionPlan(
            node=str(raw["node"]),
            mode=raw["mode"],
            subunits=subunits,
            cap=raw.get("cap"),
            trace_names=tuple(raw.get("trace_names") or ()),
            held=tuple(raw.get("held") or ()),
        )


@dataclass(frozen=True)
class TraceRecord:
    trace_name: str
    node: str
    values: list[Any]

    def to_dict(self) -> dict[str, Any]:
        return {"trace_name": self.trace_name, "node": self.node, "values": list(self.values)}

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "TraceRecord":
        return TraceRecord(
            trace_name=str(raw["trace_name"]),
            node=str(raw["node"]),
            values=[freeze(v) for v in raw.get("values") or []],
        )


@dataclass(frozen=True)
class ReconciliationResult:
    node: str
    reused: list[int]
    to_build: list[int]
    retained_unbuilt: list[int]
    dropped: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "reused": len(self.reused),
            "to_build": len(self.to_build),
            "retained_unbuilt": len(self.retained_unbuilt),
            "dropped": len(self.dropped),
        }
