import json

import structlog

from dynplan.core.logging import configure_logging


def test_json_logs_go_to_stderr(capsys):
    configure_logging(json_output=True, level="INFO")
    structlog.get_logger("dynplan.test").info("node_reconciled", node="t", reused=2)

    captured = capsys.readouterr()
    assert captured.out == ""
    record = json.loads(captured.err.strip().splitlines()[-1])
    assert record["event"] == "node_reconciled"
    assert record["node"] == "t"
    assert record["reused"] == 2
    assert record["level"] == "info"


def test_level_filters_records(capsys):
    configure_logging(level="ERROR")
    structlog.get_logger("dynplan.test").warning("subunit_build_failed", node="t")
    assert capsys.readouterr().err == ""
