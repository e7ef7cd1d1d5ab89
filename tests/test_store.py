import json
from dataclasses import replace
from pathlib import Path

from dynplan.core.errors import StoreError
from dynplan.core.expand.trace import records_for
from dynplan.core.io.store import BuildStore, ResultEntry
from dynplan.core.model import ExpansionPlan, SubunitSpec


def _plan(node, n):
    subunits = [SubunitSpec(index=i, identity=f"{node}_{i}", depends_on=(), trace=i) for i in range(n)]
    return ExpansionPlan(node=node, mode="map", subunits=subunits, cap=None, trace_names=("i",))


def test_save_and_load(tmp_path: Path):
    store = BuildStore()
    plan = _plan("t", 2)
    store.record_plan(plan, records_for("t", ["i"], [0, 1]))
    store.record_result("t", "t_0", ResultEntry(ok=True, value=["x", 1]))
    store.record_result("t", "t_1", ResultEntry(ok=False, error="boom", code="E_SUBUNIT_BUILD_FAILED"))
    store.record_static("numbers", "fp", ResultEntry(ok=True, value=[1, 2]))
    store.record_status({"t": {"kind": "dynamic", "state": "failed"}})

    path = tmp_path / "nested" / "store.json"
    store.save(path)
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1

    loaded = BuildStore.load(path)
    assert loaded.plan("t").identities == ["t_0", "t_1"]
    assert loaded.trace("i", "t").values == [0, 1]
    assert loaded.result("t", "t_0").value == ["x", 1]
    assert loaded.valid_identities("t") == {"t_0"}
    assert loaded.result("t", "t_1").code == "E_SUBUNIT_BUILD_FAILED"
    assert loaded.static_entry("numbers")[0] == "fp"
    assert loaded.status()["t"]["state"] == "failed"


def test_missing_store_file_is_empty(tmp_path: Path):
    store = BuildStore.load(tmp_path / "nope.json")
    assert store.dynamic_nodes() == []
    assert store.status() == {}


def test_load_rejects_bad_files(tmp_path: Path):
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{not json", encoding="utf-8")
    wrong_version = tmp_path / "old.json"
    wrong_version.write_text(json.dumps({"version": 99}), encoding="utf-8")
    not_object = tmp_path / "list.json"
    not_object.write_text("[]", encoding="utf-8")

    for path, code in (
        (bad_json, "E_STORE_READ"),
        (wrong_version, "E_STORE_VERSION"),
        (not_object, "E_STORE_INVALID"),
    ):
        try:
            BuildStore.load(path)
            assert False, "expected StoreError"
        except StoreError as e:
            assert e.code == code
            assert e.file == str(path)


def test_unserializable_values_are_reported(tmp_path: Path):
    store = BuildStore()
    store.record_result("t", "t_0", ResultEntry(ok=True, value=object()))
    try:
        store.save(tmp_path / "store.json")
        assert False, "expected StoreError"
    except StoreError as e:
        assert e.code == "E_STORE_UNSERIALIZABLE"
    assert not (tmp_path / "store.json").exists()


def test_record_plan_replaces_traces():
    store = BuildStore()
    store.record_plan(_plan("t", 1), records_for("t", ["a", "b"], [(1, 2)]))
    assert store.trace_names("t") == ["a", "b"]
    store.record_plan(_plan("t", 1), records_for("t", ["a"], [1]))
    assert store.trace_names("t") == ["a"]


def test_clean_removes_only_unreferenced_results():
    store = BuildStore()
    store.record_plan(_plan("t", 1), [])
    store.record_result("t", "t_0", ResultEntry(ok=True, value=1))
    store.record_result("t", "t_old", ResultEntry(ok=True, value=2))
    store.record_result("gone", "gone_0", ResultEntry(ok=True, value=3))

    assert store.clean() == 2
    assert store.result("t", "t_0") is not None
    assert store.result("t", "t_old") is None
    assert store.result("gone", "gone_0") is None


def test_clean_keeps_held_results():
    store = BuildStore()
    store.record_plan(replace(_plan("t", 1), held=("t_hidden",)), [])
    store.record_result("t", "t_0", ResultEntry(ok=True, value=1))
    store.record_result("t", "t_hidden", ResultEntry(ok=True, value=2))

    assert store.clean() == 0
    assert store.result("t", "t_hidden").value == 2

    loaded = BuildStore.from_dict(json.loads(json.dumps(store.to_dict())))
    assert loaded.plan("t").held == ("t_hidden",)
