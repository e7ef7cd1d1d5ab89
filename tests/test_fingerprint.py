import os
import subprocess
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from dynplan.core.errors import NonCanonicalValue
from dynplan.core.expand.expand_plan import subunit_identity
from dynplan.core.fingerprint import canonical_json, fingerprint


class _Scalar:
    """Looks like a numpy scalar: zero-dimensional, converts with tolist()."""

    shape = ()

    def __init__(self, v):
        self.v = v

    def tolist(self):
        return self.v


class _Grid:
    def __init__(self, rows):
        self.rows = rows
        self.shape = (len(rows), len(rows[0]))

    def tolist(self):
        return [list(r) for r in self.rows]


def test_canonical_json_sorts_keys_and_treats_tuples_as_lists():
    assert canonical_json({"b": 1, "a": (1, 2)}) == '{"a":[1,2],"b":1}'
    assert fingerprint([1, 2]) == fingerprint((1, 2))


def test_sets_encode_by_content():
    words = ["alpha", "beta", "gamma", "delta"]
    assert fingerprint(set(words)) == fingerprint(frozenset(reversed(words)))
    assert fingerprint({1, 2}) != fingerprint({1, 3})


def test_identity_of_a_set_is_stable_across_hash_seeds():
    root = str(Path(__file__).resolve().parents[1])
    script = (
        "from dynplan.core.expand.expand_plan import subunit_identity;"
        "print(subunit_identity('t', '', 'map', 0, {'x': {'alpha', 'beta', 'gamma', 'delta'}}))"
    )
    seen = set()
    for seed in ("0", "1", "2", "3"):
        env = dict(os.environ, PYTHONHASHSEED=seed, PYTHONPATH=root)
        out = subprocess.run([sys.executable, "-c", script], env=env, capture_output=True, text=True, check=True)
        seen.add(out.stdout.strip())
    assert seen == {subunit_identity("t", "", "map", 0, {"x": {"alpha", "beta", "gamma", "delta"}})}


def test_array_like_values_encode_as_python_values():
    assert fingerprint(_Scalar(3)) == fingerprint(3)
    assert fingerprint(_Scalar(1.5)) == fingerprint(1.5)
    assert canonical_json(_Grid([(1, 2), (3, 4)])) == '{"__array__":[[1,2],[3,4]]}'


def test_datetimes_decimals_and_big_ints():
    naive = datetime(2024, 1, 2, 3, 4, 5)
    assert fingerprint(naive) == fingerprint(naive.replace(tzinfo=timezone.utc))
    assert fingerprint(Decimal("1.10")) != fingerprint(Decimal("1.1"))
    assert canonical_json(2**60) == '{"__int__":"%d"}' % 2**60


def test_values_without_a_stable_encoding_are_rejected():
    for bad in (float("nan"), float("inf"), Decimal("NaN"), object()):
        try:
            fingerprint({"x": bad})
            assert False, "expected NonCanonicalValue"
        except NonCanonicalValue as e:
            assert e.code == "E_NON_CANONICAL_VALUE"
