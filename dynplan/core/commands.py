"""Commands that pipeline files can refer to by name.

Anything not listed here may be given as an import path, ``package.module:function``.
"""
from __future__ import annotations

import hashlib
import importlib
from types import CodeType
from typing import Any, Callable, Iterable


def identity(x: Any) -> Any:
    return x


def paste(*parts: Any, sep: str = "") -> str:
    return sep.join(str(p) for p in parts)


def total(values: Iterable[Any]) -> Any:
    return sum(values)


def length(x: Any) -> int:
    return len(x)


def collect(*xs: Any) -> list[Any]:
    return list(xs)


def flatten(lists: Iterable[Iterable[Any]]) -> list[Any]:
    out: list[Any] = []
    for chunk in lists:
        out.extend(chunk)
    return out


def upper(s: str) -> str:
    return str(s).upper()


def multiply(x: Any, factor: Any = 2) -> Any:
    return x * factor


BUILTIN_COMMANDS: dict[str, Callable[..., Any]] = {
    "identity": identity,
    "paste": paste,
    "sum": total,
    "length": length,
    "collect": collect,
    "flatten": flatten,
    "upper": upper,
    "multiply": multiply,
}


class CommandResolutionError(ValueError):
    pass


def resolve_command(ref: str) -> Callable[..., Any]:
    """Return the callable for a command reference (builtin name or ``module:attr``)."""
    if ref in BUILTIN_COMMANDS:
        return BUILTIN_COMMANDS[ref]

    if ":" not in ref:
        raise CommandResolutionError(
            f"unknown command: {ref} (builtins: {', '.join(sorted(BUILTIN_COMMANDS))}; "
            "or use module:function)"
        )

    module_name, _, attr = ref.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise CommandResolutionError(f"cannot import module {module_name!r}: {e}") from e

    fn: Any = module
    for part in attr.split("."):
        fn = getattr(fn, part, None)
        if fn is None:
            raise CommandResolutionError(f"module {module_name!r} has no attribute {attr!r}")
    if not callable(fn):
        raise CommandResolutionError(f"{ref} is not callable")
    return fn


def command_ref_for(fn: Callable[..., Any]) -> str:
    """Stable reference text for a Python callable (used in node fingerprints)."""
    for name, builtin in BUILTIN_COMMANDS.items():
        if builtin is fn:
            return name
    module = getattr(fn, "__module__", None) or "<unknown>"
    qualname = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", repr(fn))
    return f"{module}:{qualname}"


def command_digest(fn: Callable[..., Any]) -> str:
    """Digest of a callable's bytecode and constants.

    Part of the node fingerprint, so editing a command's body (or swapping one
    lambda for another) invalidates the sub-units it built. Callables without
    Python bytecode (builtins, C functions) digest to "".
    """
    code = getattr(fn, "__code__", None)
    if code is None:
        return ""
    h = hashlib.sha256()
    _digest_code(code, h)
    return h.hexdigest()


def _digest_code(code: CodeType, h: Any) -> None:
    h.update(code.co_code)
    for const in code.co_consts:
        if isinstance(const, CodeType):
            _digest_code(const, h)
        elif isinstance(const, frozenset):
            h.update(repr(sorted(const, key=repr)).encode("utf-8"))
        else:
            h.update(repr(const).encode("utf-8"))
    h.update(repr(code.co_names).encode("utf-8"))
