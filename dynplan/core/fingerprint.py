"""Canonical JSON and fingerprints for sub-unit identity.

Two steps: normalize values to JSON-safe primitives, then serialize per RFC 8785
(``rfc8785`` package). The encoding only depends on content, never on process
state such as hash seeds or object addresses, so identities match across runs.

NaN and infinity are rejected rather than converted.
"""
from __future__ import annotations

import base64
import dataclasses
import hashlib
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import rfc8785

from dynplan.core.errors import NonCanonicalValue

# RFC 8785 numbers are IEEE doubles; larger ints are encoded as text.
_MAX_SAFE_INT = 2**53 - 1


def canonical_json(value: Any) -> str:
    """Stable text encoding used for fingerprints and partition keys.

    Tuples and lists encode the same way. Raises NonCanonicalValue for values
    with no content-based encoding.
    """

    try:
        return rfc8785.dumps(_normalize(value)).decode("utf-8")
    except ValueError as e:
        raise NonCanonicalValue(code="E_NON_CANONICAL_VALUE", message=str(e)) from e


def fingerprint(*parts: Any) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(canonical_json(p).encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()


def freeze(value: Any) -> Any:
    """Lists become tuples, recursively. Trace values are always stored frozen."""
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, int):
        if abs(value) > _MAX_SAFE_INT:
            return {"__int__": str(value)}
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"cannot fingerprint non-finite float {value}; use None for missing values")
        return float(value)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [_normalize(v) for v in value]
        return {"__set__": sorted(items, key=lambda v: rfc8785.dumps(v))}
    if isinstance(value, bytes):
        return {"__bytes__": base64.b64encode(value).decode("ascii")}
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"cannot fingerprint non-finite Decimal {value}")
        return {"__decimal__": str(value)}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {"__datetime__": value.astimezone(timezone.utc).isoformat()}
    if isinstance(value, date):
        return {"__date__": value.isoformat()}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {"__dataclass__": type(value).__qualname__, "fields": _normalize(dataclasses.asdict(value))}

    # pandas/numpy by duck typing: frames and series by content, arrays as
    # nested lists, numpy scalars as the matching Python scalar.
    shape = getattr(value, "shape", None)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict) and shape is not None:
        return {"__frame__": _normalize(to_dict())}
    tolist = getattr(value, "tolist", None)
    if callable(tolist) and shape is not None:
        if shape == ():
            return _normalize(tolist())
        return {"__array__": _normalize(tolist())}

    raise ValueError(f"cannot fingerprint value of type {type(value).__name__}")
