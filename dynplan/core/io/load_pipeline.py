from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from dynplan.core.errors import PipelineLoadError


YAML_SUFFIXES = {".yaml", ".yml"}


def load_pipeline(path: str) -> dict[str, Any]:
    """Load a YAML/JSON pipeline file.

    Returns a dict with keys: schema_version, nodes, __file__. A top-level
    ``defaults`` block is folded into the nodes here (``defaults.kwargs`` is
    merged under every command node's own kwargs), so the validator only ever
    sees plain nodes. Node shapes are not checked; the validator owns that.
    """

    p = Path(path)
    data = _read(p)

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict) or set(defaults) - {"kwargs"}:
        raise PipelineLoadError(
            code="E_INVALID_DEFAULTS",
            message="defaults must be a mapping with an optional 'kwargs' mapping",
            file=str(p),
            path="defaults",
        )
    default_kwargs = defaults.get("kwargs") or {}
    if not isinstance(default_kwargs, dict):
        raise PipelineLoadError(
            code="E_INVALID_DEFAULTS",
            message="defaults.kwargs must be a mapping",
            file=str(p),
            path="defaults.kwargs",
        )

    nodes = data.get("nodes")
    if default_kwargs and isinstance(nodes, list):
        nodes = [_with_default_kwargs(n, default_kwargs) for n in nodes]

    return {"schema_version": data.get("schema_version"), "nodes": nodes, "__file__": str(p)}


def _read(p: Path) -> dict[str, Any]:
    if not p.exists():
        raise PipelineLoadError(code="E_FILE_NOT_FOUND", message="file does not exist", file=str(p))

    suffix = p.suffix.lower()
    if suffix not in YAML_SUFFIXES and suffix != ".json":
        raise PipelineLoadError(
            code="E_UNSUPPORTED_FORMAT",
            message="supported formats are .yaml/.yml and .json",
            file=str(p),
        )

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:  # pragma: no cover
        raise PipelineLoadError(code="E_FILE_READ", message=str(e), file=str(p)) from e

    if suffix in YAML_SUFFIXES:
        try:
            data = yaml.safe_load(raw_text)
        except yaml.YAMLError as e:
            raise PipelineLoadError(code="E_YAML_PARSE", message=str(e), file=str(p)) from e
    else:
        try:
            data = json.loads(raw_text)
        except json.JSONDecodeError as e:
            raise PipelineLoadError(code="E_JSON_PARSE", message=str(e), file=str(p)) from e

    if not isinstance(data, dict):
        raise PipelineLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be a mapping/object",
            file=str(p),
        )
    return data


def _with_default_kwargs(node: Any, default_kwargs: dict[str, Any]) -> Any:
    # value nodes and malformed entries pass through for the validator
    if not isinstance(node, dict) or "command" not in node:
        return node
    own = node.get("kwargs", {})
    if not isinstance(own, dict):
        return node
    return {**node, "kwargs": {**default_kwargs, **own}}
