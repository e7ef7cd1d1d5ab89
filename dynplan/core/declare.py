from __future__ import annotations

from typing import Sequence, Union

from dynplan.core.model import DynamicDeclaration


Names = Union[str, Sequence[str], None]


def map_(*over: str, trace: Names = None) -> DynamicDeclaration:
    """One sub-unit per element; element i of every value goes to sub-unit i."""
    return DynamicDeclaration(mode="map", over=tuple(over), trace=_names(trace))


def cross(*over: str, trace: Names = None) -> DynamicDeclaration:
    """One sub-unit per combination; the first value varies slowest."""
    return DynamicDeclaration(mode="cross", over=tuple(over), trace=_names(trace))


def group(*over: str, by: Names = None, trace: Names = None) -> DynamicDeclaration:
    """One sub-unit per distinct ``by`` value (a single aggregate without ``by``)."""
    return DynamicDeclaration(mode="group", over=tuple(over), by=_names(by), trace=_names(trace))


def _names(v: Names) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        return (v,)
    return tuple(v)
