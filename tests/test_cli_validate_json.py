import json
from typer.testing import CliRunner

from dynplan.cli import app

runner = CliRunner()


def test_cli_validate_json_success():
    r = runner.invoke(app, ["validate", "examples/group-pipeline.yaml", "--format", "json"])
    assert r.exit_code == 0
    payload = json.loads(r.stdout)
    assert payload["command"] == "validate"
    assert payload["ok"] is True
    assert payload["error_count"] == 0
    assert payload["errors"] == []
    assert payload["summary"]["node_count"] == 5
    assert payload["summary"]["mode_counts"] == {"group": 2, "map": 1}
    assert payload["summary"]["order"][-1] == "by_region"


def test_cli_validate_json_failure_contains_codes():
    r = runner.invoke(app, ["validate", "examples/invalid-bad-mode.yaml", "--format", "json"])
    assert r.exit_code == 2
    payload = json.loads(r.stdout)
    assert payload["ok"] is False
    codes = {e["code"] for e in payload["errors"]}
    assert codes == {"E_INVALID_ENUM"}
    assert payload["errors"][0]["source"] == "validate"


def test_cli_validate_json_load_error():
    r = runner.invoke(app, ["validate", "examples/does-not-exist.yaml", "--format", "json"])
    assert r.exit_code == 1
    payload = json.loads(r.stdout)
    assert payload["errors"][0]["code"] == "E_FILE_NOT_FOUND"
    assert payload["errors"][0]["source"] == "load"
