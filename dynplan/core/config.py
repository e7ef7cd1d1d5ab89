from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml

from dynplan.core.errors import ConfigError


UpstreamFailurePolicy = Literal["fail", "skip"]
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

DEFAULT_STORE = ".dynplan/store.json"


@dataclass(frozen=True)
class RunConfig:
    # None means unbounded
    cap: Optional[int] = None
    workers: int = 4
    store: str = DEFAULT_STORE
    on_upstream_failure: UpstreamFailurePolicy = "fail"
    log_level: str = "WARNING"
    log_json: bool = False


ENV_KEYS: dict[str, str] = {
    "cap": "DYNPLAN_CAP",
    "workers": "DYNPLAN_WORKERS",
    "store": "DYNPLAN_STORE",
    "on_upstream_failure": "DYNPLAN_ON_UPSTREAM_FAILURE",
    "log_level": "DYNPLAN_LOG_LEVEL",
}


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load settings from a YAML file.

    Format:
      cap: 10
      workers: 4
      store: .dynplan/store.json
      on_upstream_failure: fail
      log_level: INFO
      log_json: false

    Unknown keys are rejected. Returns the raw (unvalidated) mapping.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(code="E_CONFIG_NOT_FOUND", message="config file does not exist", file=str(p))
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(code="E_CONFIG_PARSE", message=str(e), file=str(p)) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(code="E_CONFIG_INVALID", message="config file must be a mapping", file=str(p))

    known = {f.name for f in fields(RunConfig)}
    for k in raw:
        if k not in known:
            raise ConfigError(
                code="E_CONFIG_UNKNOWN_KEY",
                message=f"unknown config key: {k} (choose from: {', '.join(sorted(known))})",
                file=str(p),
                path=str(k),
            )
    return dict(raw)


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    out: dict[str, Any] = {}
    for key, var in ENV_KEYS.items():
        v = (env.get(var, "") or "").strip()
        if v:
            out[key] = v
    return out


def resolve_config(
    config_file: Optional[str] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunConfig:
    """Build the effective RunConfig.

    Resolution order (later wins):
      1) defaults
      2) config file
      3) DYNPLAN_* environment variables
      4) explicit overrides (CLI options); None values are ignored
    """

    merged: dict[str, Any] = {}
    if config_file:
        merged.update(load_config_file(config_file))
    merged.update(env_overrides(environ))
    for k, v in (overrides or {}).items():
        if v is not None:
            merged[k] = v
    return replace(RunConfig(), **_coerce(merged, config_file))


def _coerce(raw: Mapping[str, Any], file: Optional[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}

    def bad(key: str, message: str) -> ConfigError:
        return ConfigError(code="E_CONFIG_INVALID", message=message, file=file, path=key)

    if "cap" in raw:
        cap = raw["cap"]
        if cap is None or (isinstance(cap, str) and cap.lower() in ("", "none", "unbounded")):
            out["cap"] = None
        else:
            out["cap"] = _as_int(cap, "cap", bad)
            if out["cap"] < 0:
                raise bad("cap", "cap must be a non-negative integer")

    if "workers" in raw:
        out["workers"] = _as_int(raw["workers"], "workers", bad)
        if out["workers"] < 1:
            raise bad("workers", "workers must be >= 1")

    if "store" in raw:
        store = raw["store"]
        if not isinstance(store, str) or not store.strip():
            raise bad("store", "store must be a non-empty path")
        out["store"] = store

    if "on_upstream_failure" in raw:
        policy = raw["on_upstream_failure"]
        if policy not in ("fail", "skip"):
            raise bad("on_upstream_failure", "on_upstream_failure must be one of: fail, skip")
        out["on_upstream_failure"] = policy

    if "log_level" in raw:
        level = str(raw["log_level"]).upper()
        if level not in LOG_LEVELS:
            raise bad("log_level", f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        out["log_level"] = level

    if "log_json" in raw:
        if not isinstance(raw["log_json"], bool):
            raise bad("log_json", "log_json must be true or false")
        out["log_json"] = raw["log_json"]

    return out


def _as_int(v: Any, key: str, bad: Any) -> int:
    if isinstance(v, bool):
        raise bad(key, f"{key} must be an integer")
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        try:
            return int(v.strip())
        except ValueError:
            pass
    raise bad(key, f"{key} must be an integer, got {v!r}")
