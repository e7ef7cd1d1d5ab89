from dynplan.core.io.load_pipeline import load_pipeline
from dynplan.core.validate.validate_pipeline import validate_pipeline


def _codes(nodes, schema_version="0.1.0"):
    graph, errors = validate_pipeline({"schema_version": schema_version, "nodes": nodes})
    return graph, [e.code for e in errors]


def test_validate_happy_path():
    pipeline = load_pipeline("examples/basic-pipeline.yaml")
    graph, errors = validate_pipeline(pipeline)
    assert errors == []
    assert graph is not None
    assert graph.order == ["numbers", "letters", "pairs", "combos", "shouted", "everything"]
    assert graph.nodes_by_name["combos"].dynamic.mode == "cross"
    assert set(graph.dependencies("everything")) == {"pairs", "shouted"}


def test_validate_group_pipeline_resolves_upstream_traces():
    graph, errors = validate_pipeline(load_pipeline("examples/group-pipeline.yaml"))
    assert errors == []
    assert graph.nodes_by_name["by_region"].dynamic.by == ("region",)


def test_validate_unknown_reference():
    pipeline = load_pipeline("examples/invalid-unknown-ref.yaml")
    graph, errors = validate_pipeline(pipeline)
    assert graph is None
    assert any(e.code == "E_UNKNOWN_REFERENCE" for e in errors)
    assert all(e.file and e.file.endswith("invalid-unknown-ref.yaml") for e in errors)


def test_validate_bad_mode():
    graph, errors = validate_pipeline(load_pipeline("examples/invalid-bad-mode.yaml"))
    assert graph is None
    assert [e.code for e in errors] == ["E_INVALID_ENUM"]
    assert errors[0].path == "nodes[1].dynamic.mode"


def test_validate_missing_fields():
    graph, codes = _codes([{"value": 1}, {"name": "x"}], schema_version="")
    assert graph is None
    assert codes.count("E_REQUIRED_FIELD") == 3


def test_validate_value_and_command():
    _, codes = _codes([{"name": "x", "value": 1, "command": "identity"}])
    assert codes == ["E_VALUE_AND_COMMAND"]


def test_validate_unknown_command():
    _, codes = _codes([{"name": "x", "command": "no_such_builtin"}])
    assert codes == ["E_UNKNOWN_COMMAND"]
    _, codes = _codes([{"name": "x", "command": "no_such_module_xyz:fn"}])
    assert codes == ["E_UNKNOWN_COMMAND"]


def test_validate_import_path_command():
    graph, codes = _codes([{"name": "x", "value": [3, 1]}, {"name": "y", "command": "builtins:sorted", "args": ["x"]}])
    assert codes == []
    assert graph.nodes_by_name["y"].command is sorted


def test_validate_duplicate_names_and_cycles():
    _, codes = _codes([{"name": "a", "value": 1}, {"name": "a", "value": 2}])
    assert "E_DUPLICATE_NAME" in codes

    _, codes = _codes(
        [
            {"name": "a", "command": "identity", "args": ["b"]},
            {"name": "b", "command": "identity", "args": ["a"]},
        ]
    )
    assert "E_CYCLE_DETECTED" in codes


def test_validate_by_requires_group():
    _, codes = _codes(
        [
            {"name": "x", "value": [1, 2]},
            {"name": "k", "value": ["a", "b"]},
            {"name": "t", "command": "identity", "args": ["x"], "dynamic": {"mode": "map", "over": "x", "by": "k"}},
        ]
    )
    assert codes == ["E_BY_REQUIRES_GROUP"]


def test_validate_empty_over():
    _, codes = _codes([{"name": "t", "command": "collect", "dynamic": {"mode": "map", "over": []}}])
    assert codes == ["E_EMPTY_OVER"]


def test_validate_bad_shapes():
    _, codes = _codes(["not-a-node"])
    assert codes == ["E_INVALID_TYPE"]
    _, codes = _codes([{"name": "t", "command": "identity", "args": "x"}])
    assert codes == ["E_INVALID_TYPE"]
    _, codes = _codes([{"name": "t", "command": "identity", "dynamic": {"mode": "map", "over": 3}}])
    assert codes == ["E_INVALID_TYPE"]
