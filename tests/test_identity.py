from __future__ import annotations

from mcpfleet.identity import find_container, find_record, ids_match, is_referenced
from mcpfleet.models import ConfiguredServer, ContainerInfo

FULL = "3f4e1c2a9b8d" + "0" * 52
SHORT = FULL[:12]


def test_ids_match_reflexive_and_symmetric():
    for a, b in [(FULL, SHORT), (SHORT, FULL), (FULL, FULL), ("abc", "abd")]:
        assert ids_match(a, a)
        assert ids_match(a, b) == ids_match(b, a)


def test_prefix_matches_either_way():
    assert ids_match(FULL, SHORT)
    assert ids_match(SHORT, FULL)
    assert not ids_match(SHORT, "ffffffffffff")


def test_empty_never_matches():
    assert not ids_match("", "")
    assert not ids_match("", FULL)
    assert not ids_match(FULL, "")


def test_short_record_id_references_full_runtime_id():
    records = [ConfiguredServer(id="c1", name="n", container_name="n", container_id=SHORT)]
    assert is_referenced(FULL, records)
    assert find_record(records, FULL).id == "c1"


def test_unlinked_record_references_nothing():
    records = [ConfiguredServer(id="c1", name="n", container_name="n")]
    assert not is_referenced(FULL, records)


def test_find_container():
    info = ContainerInfo(id=SHORT, name="n", image="i", status="running", state="running")
    assert find_container([info], FULL) is info
    assert find_container([info], "ffff") is None
