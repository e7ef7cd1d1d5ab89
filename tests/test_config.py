from pathlib import Path

from dynplan.core.config import RunConfig, env_overrides, resolve_config
from dynplan.core.errors import ConfigError


def test_defaults():
    cfg = resolve_config(environ={})
    assert cfg == RunConfig()
    assert cfg.cap is None
    assert cfg.on_upstream_failure == "fail"


def test_file_env_and_overrides_layer_in_order(tmp_path: Path):
    f = tmp_path / "dynplan.yaml"
    f.write_text("cap: 2\nworkers: 8\nstore: from-file.json\n", encoding="utf-8")

    cfg = resolve_config(str(f), environ={})
    assert (cfg.cap, cfg.workers, cfg.store) == (2, 8, "from-file.json")

    cfg = resolve_config(str(f), environ={"DYNPLAN_CAP": "5", "DYNPLAN_ON_UPSTREAM_FAILURE": "skip"})
    assert cfg.cap == 5
    assert cfg.on_upstream_failure == "skip"

    cfg = resolve_config(str(f), overrides={"cap": 1, "workers": None}, environ={"DYNPLAN_CAP": "5"})
    assert cfg.cap == 1
    assert cfg.workers == 8


def test_example_config_file():
    cfg = resolve_config("examples/dynplan.yaml", environ={})
    assert cfg.cap == 2
    assert cfg.workers == 2


def test_unbounded_cap_from_env():
    cfg = resolve_config(environ={"DYNPLAN_CAP": "unbounded"})
    assert cfg.cap is None


def test_env_overrides_ignores_blank_values():
    assert env_overrides({"DYNPLAN_STORE": "  ", "DYNPLAN_LOG_LEVEL": "debug"}) == {"log_level": "debug"}
    assert resolve_config(environ={"DYNPLAN_LOG_LEVEL": "debug"}).log_level == "DEBUG"


def test_invalid_values(tmp_path: Path):
    cases = [
        {"cap": -1},
        {"cap": "lots"},
        {"workers": 0},
        {"on_upstream_failure": "retry"},
        {"log_level": "LOUD"},
        {"log_json": "yes"},
        {"cap": True},
    ]
    for overrides in cases:
        try:
            resolve_config(overrides=overrides, environ={})
            assert False, f"expected ConfigError for {overrides}"
        except ConfigError as e:
            assert e.code == "E_CONFIG_INVALID"
            assert e.path == next(iter(overrides))


def test_config_file_errors(tmp_path: Path):
    unknown = tmp_path / "unknown.yaml"
    unknown.write_text("caps: 3\n", encoding="utf-8")
    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- 1\n", encoding="utf-8")
    broken = tmp_path / "broken.yaml"
    broken.write_text("cap: [\n", encoding="utf-8")

    for path, code in (
        (tmp_path / "missing.yaml", "E_CONFIG_NOT_FOUND"),
        (unknown, "E_CONFIG_UNKNOWN_KEY"),
        (not_mapping, "E_CONFIG_INVALID"),
        (broken, "E_CONFIG_PARSE"),
    ):
        try:
            resolve_config(str(path), environ={})
            assert False, "expected ConfigError"
        except ConfigError as e:
            assert e.code == code
