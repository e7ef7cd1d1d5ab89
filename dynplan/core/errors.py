from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PlanError(Exception):
    """Base error envelope. Prefer returning/printing these rather than raising raw exceptions."""

    code: str
    message: str
    file: Optional[str] = None
    path: Optional[str] = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.file:
            parts.append(self.file)
        if self.path:
            parts.append(self.path)
        loc = ":".join(parts) if parts else "<pipeline>"
        return f"{loc}: {self.code}: {self.message}"


class PipelineLoadError(PlanError):
    pass


class PipelineValidationError(PlanError):
    pass


class ConfigError(PlanError):
    pass


class StoreError(PlanError):
    pass


class RetrievalError(PlanError):
    pass


class ExpansionError(PlanError):
    """Declaration-level error raised while planning a dynamic node.

    These abort expansion of the node (and everything downstream of it) before
    any sub-unit identity is assigned. They are never retried.
    """


class InvalidGroupingValue(ExpansionError):
    pass


class LengthMismatch(ExpansionError):
    pass


class UnknownGroupingVariable(ExpansionError):
    pass


class TraceLengthMismatch(ExpansionError):
    pass


@dataclass(frozen=True)
class SubunitBuildFailure(PlanError):
    """A single sub-unit failed to build. Recorded against its identity only."""

    identity: Optional[str] = None


class NonCanonicalValue(ExpansionError):
    """A value has no stable encoding (NaN, infinity, or an opaque object)."""
