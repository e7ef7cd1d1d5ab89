import json
from pathlib import Path

from typer.testing import CliRunner

from dynplan.cli import app


runner = CliRunner()


def _run(store: Path, *extra: str, path: str = "examples/basic-pipeline.yaml"):
    return runner.invoke(app, ["run", path, "--store", str(store), *extra])


def test_cli_run_builds_then_reuses(tmp_path: Path):
    store = tmp_path / "store.json"

    r = _run(store)
    assert r.exit_code == 0, r.stdout + r.stderr
    assert "- pairs: built (reused=0 to_build=2 retained_unbuilt=0 dropped=0 failed=0)" in r.stdout
    assert "OK: run complete" in r.stdout
    assert store.exists()

    r = _run(store, "--format", "json")
    assert r.exit_code == 0
    payload = json.loads(r.stdout)
    assert payload["command"] == "run"
    assert payload["ok"] is True
    assert payload["nodes"]["combos"]["state"] == "reused"
    assert payload["nodes"]["combos"]["counts"]["reused"] == 4
    assert payload["nodes"]["numbers"] == {"kind": "static", "state": "reused"}


def test_cli_run_with_cap(tmp_path: Path):
    store = tmp_path / "store.json"
    r = _run(store, "--cap", "1", "--format", "json")
    assert r.exit_code == 0
    counts = json.loads(r.stdout)["nodes"]["combos"]["counts"]
    assert counts["to_build"] == 1
    assert counts["retained_unbuilt"] == 3

    r = _run(store, "--format", "json")
    counts = json.loads(r.stdout)["nodes"]["combos"]["counts"]
    assert counts["reused"] == 1
    assert counts["to_build"] == 3


def test_cli_run_with_config_file(tmp_path: Path):
    store = tmp_path / "store.json"
    r = _run(store, "--config", "examples/dynplan.yaml", "--format", "json")
    assert r.exit_code == 0
    payload = json.loads(r.stdout)
    assert payload["cap"] == 2


def test_cli_run_declaration_error_exits_2(tmp_path: Path):
    r = _run(tmp_path / "store.json", path="examples/invalid-length-mismatch.yaml")
    assert r.exit_code == 2
    assert "- pairs: aborted" in r.stdout
    assert "E_LENGTH_MISMATCH" in r.stderr
    assert "E_UPSTREAM_ABORTED" in r.stderr


def test_cli_run_validation_error_exits_2(tmp_path: Path):
    r = _run(tmp_path / "store.json", path="examples/invalid-unknown-ref.yaml")
    assert r.exit_code == 2
    assert "E_UNKNOWN_REFERENCE" in r.stderr


def test_cli_run_bad_config(tmp_path: Path):
    r = _run(tmp_path / "store.json", "--on-upstream-failure", "retry")
    assert r.exit_code == 2
    assert "E_CONFIG_INVALID" in r.stderr

    r = _run(tmp_path / "store.json", "--config", str(tmp_path / "missing.yaml"))
    assert r.exit_code == 1
    assert "E_CONFIG_NOT_FOUND" in r.stderr


def test_cli_run_env_cap(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("DYNPLAN_CAP", "1")
    r = _run(tmp_path / "store.json", "--format", "json")
    assert r.exit_code == 0
    assert json.loads(r.stdout)["cap"] == 1


def test_cli_plan_previews_without_saving(tmp_path: Path):
    store = tmp_path / "store.json"
    r = runner.invoke(app, ["plan", "examples/basic-pipeline.yaml", "--store", str(store)])
    assert r.exit_code == 0, r.stdout + r.stderr
    assert "Plan (cap=unbounded)" in r.stdout
    assert "- pairs: planned (reused=0 to_build=2" in r.stdout
    assert "- shouted: pending" in r.stdout
    assert not store.exists()

    _run(store)
    r = runner.invoke(app, ["plan", "examples/basic-pipeline.yaml", "--store", str(store), "--format", "json"])
    payload = json.loads(r.stdout)
    assert payload["dry_run"] is True
    assert payload["nodes"]["shouted"]["counts"]["reused"] == 4


def test_cli_group_pipeline(tmp_path: Path):
    store = tmp_path / "store.json"
    r = _run(store, path="examples/group-pipeline.yaml")
    assert r.exit_code == 0, r.stdout + r.stderr

    r = runner.invoke(app, ["show", "by_region", "--store", str(store)])
    assert json.loads(r.stdout) == [80, 140, 80]

    r = runner.invoke(app, ["trace", "region", "by_region", "--store", str(store)])
    assert json.loads(r.stdout) == ["north", "south", "east"]
