from dynplan.core.declare import cross, group, map_
from dynplan.core.errors import UnknownGroupingVariable
from dynplan.core.expand.expand_plan import expand_node
from dynplan.core.expand.shape import grouping_value


def _available(**values):
    return {name: grouping_value(name, v) for name, v in values.items()}


def test_map_plan_slices_and_traces():
    available = _available(numbers=[1, 2], letters=["a", "b"])
    plan = expand_node("pairs", map_("numbers", "letters", trace="letters"), available)

    assert len(plan) == 2
    assert [s.index for s in plan.subunits] == [0, 1]
    assert plan.subunits[1].inputs == {"numbers": 2, "letters": "b"}
    assert [s.trace for s in plan.subunits] == ["a", "b"]
    assert plan.trace_names == ("letters",)
    assert all(s.identity.startswith("pairs_") for s in plan.subunits)
    assert len(set(plan.identities)) == 2


def test_expansion_is_deterministic():
    available = _available(numbers=[1, 2], letters=["a", "b"])
    a = expand_node("combos", cross("numbers", "letters"), available, node_fingerprint="fp")
    b = expand_node("combos", cross("numbers", "letters"), available, node_fingerprint="fp")
    assert a.identities == b.identities
    assert len(a) == 4


def test_identity_depends_on_inputs_and_node_fingerprint():
    before = expand_node("t", map_("x"), _available(x=[1, 2]), node_fingerprint="fp")
    changed = expand_node("t", map_("x"), _available(x=[1, 3]), node_fingerprint="fp")
    assert before.identities[0] == changed.identities[0]
    assert before.identities[1] != changed.identities[1]

    other_command = expand_node("t", map_("x"), _available(x=[1, 2]), node_fingerprint="fp2")
    assert set(other_command.identities).isdisjoint(before.identities)


def test_growing_a_value_keeps_existing_identities():
    before = expand_node("t", map_("x"), _available(x=[1, 2]))
    after = expand_node("t", map_("x"), _available(x=[1, 2, 3]))
    assert after.identities[:2] == before.identities


def test_cap_is_recorded_but_does_not_shrink_the_plan():
    plan = expand_node("t", map_("x"), _available(x=[1, 2, 3]), cap=1)
    assert len(plan) == 3
    assert plan.active_count == 1
    assert [s.index for s in plan.active()] == [0]


def test_group_plan_over_static_values():
    available = _available(amounts=[10, 20, 30], region=["n", "s", "n"])
    plan = expand_node("totals", group("amounts", by="region", trace="region"), available)

    assert [s.inputs["amounts"] for s in plan.subunits] == [[10, 30], [20]]
    assert [s.trace for s in plan.subunits] == ["n", "s"]


def test_dynamic_upstream_ids_become_dependencies():
    up = grouping_value("up", ["r0", "r1"], element_ids=("up_a", "up_b"))
    plan = expand_node("down", map_("up"), {"up": up})
    assert [s.depends_on for s in plan.subunits] == [("up_a",), ("up_b",)]
    assert plan.subunits[0].inputs == {"up": "r0"}


def test_unknown_grouping_variable():
    try:
        expand_node("t", map_("missing"), _available(x=[1]))
        assert False, "expected UnknownGroupingVariable"
    except UnknownGroupingVariable as e:
        assert e.code == "E_UNKNOWN_GROUPING_VARIABLE"
        assert e.path == "t"


def test_empty_value_expands_to_nothing():
    plan = expand_node("t", map_("x"), _available(x=[]))
    assert len(plan) == 0
    assert plan.active() == []


def test_identity_over_a_dynamic_upstream_follows_its_ids_only():
    built = grouping_value("up", ["r0", "r1"], element_ids=("up_a", "up_b"))
    unbuilt = grouping_value("up", ["r0", object()], element_ids=("up_a", "up_b"))
    a = expand_node("down", map_("up"), {"up": built})
    b = expand_node("down", map_("up"), {"up": unbuilt})
    assert a.identities == b.identities
