"""Tests for loading, saving and the tree session."""

import json
import os
import sys

import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from family_store import EntityStore, Member
from family_utils import build_family_forest, delete_member, forest_to_dicts
from persistence import (
    FamilyTreeSession,
    build_sample_store,
    load_store,
    normalize_store_data,
    save_store,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def data_path(tmp_path):
    """Location of a data file that does not exist yet."""
    return tmp_path / "family_tree_data.json"


@pytest.fixture
def unwritable_path(tmp_path):
    """A data path whose parent is a regular file, so saving always fails."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    return blocker / "family_tree_data.json"


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")


# ============================================================================
# Shape Normalization Tests
# ============================================================================

class TestNormalizeStoreData:
    """Tests for the accepted persisted shapes."""

    def test_canonical_shape(self):
        store = normalize_store_data({
            "members": {
                "1": {"id": 1, "name": "Alice", "gender": "female", "spouseId": 2, "parents": [], "children": []},
                "2": {"id": 2, "name": "Bob", "gender": "male", "spouseId": 1, "parents": [], "children": []},
            }
        })

        assert store.ids() == [1, 2]
        assert store.get(1).spouse_id == 2

    def test_canonical_shape_key_supplies_missing_id(self):
        store = normalize_store_data({"members": {"7": {"name": "Gus"}}})
        assert store.get(7).name == "Gus"

    def test_canonical_shape_keeps_counter(self):
        store = normalize_store_data({"members": {"1": {"id": 1, "name": "Alice"}}, "nextId": 10})
        assert store.allocate_id() == 10

    def test_bare_mapping_shape(self):
        store = normalize_store_data({
            "1": {"id": 1, "name": "Alice", "children": [2]},
            "2": {"id": 2, "name": "Carl", "parents": [1]},
        })

        assert store.ids() == [1, 2]
        assert store.get(2).parents == [1]

    def test_bare_mapping_detected_by_name_only(self):
        store = normalize_store_data({"x1": {"name": "Alice"}})
        assert store.get("x1").name == "Alice"

    def test_list_shape_assigns_missing_ids(self):
        store = normalize_store_data([
            {"id": 5, "name": "Alice"},
            {"name": "Bob"},
        ])

        assert 5 in store
        assert store.get(6).name == "Bob"

    def test_empty_canonical_store(self):
        store = normalize_store_data({"members": {}})
        assert len(store) == 0

    def test_unrecognized_shapes(self):
        assert normalize_store_data({"settings": {"theme": "dark"}}) is None
        assert normalize_store_data({}) is None
        assert normalize_store_data("members") is None
        assert normalize_store_data(42) is None
        assert normalize_store_data([1, 2, 3]) is None

    def test_invalid_member_record(self):
        assert normalize_store_data({"members": {"1": {"id": 1, "gender": "male"}}}) is None

    def test_odd_string_ids_are_kept(self):
        store = normalize_store_data([{"id": "--1", "name": "X"}, {"id": "²", "name": "Y"}])
        assert store.get("--1").name == "X"
        assert store.get("²").name == "Y"

    def test_non_scalar_ids_rejected(self):
        assert normalize_store_data([{"id": [1], "name": "X"}]) is None
        assert normalize_store_data([{"id": 1.5, "name": "X"}]) is None
        assert normalize_store_data({"members": {"1": {"id": {"n": 1}, "name": "X"}}}) is None


# ============================================================================
# Load / Save Tests
# ============================================================================

class TestLoadStore:
    """Tests for loading with fallback to the sample tree."""

    def test_missing_file_gives_sample(self, data_path):
        store = load_store(data_path)
        assert len(store) == 6
        assert store.get(1).name == "Alice (mother)"

    def test_invalid_json_gives_sample(self, data_path):
        data_path.write_text("{not json", encoding="utf-8")
        assert len(load_store(data_path)) == 6

    def test_unrecognized_shape_gives_sample(self, data_path):
        write_json(data_path, {"settings": {"theme": "dark"}})
        assert len(load_store(data_path)) == 6

    def test_legacy_list_file(self, data_path):
        write_json(data_path, [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}])
        store = load_store(data_path)
        assert store.ids() == [1, 2]

    def test_inconsistent_data_still_loads(self, data_path):
        write_json(data_path, {"members": {"1": {"id": 1, "name": "Alice", "spouseId": 9}}})
        store = load_store(data_path)
        assert store.get(1).spouse_id == 9

    def test_odd_string_id_file_loads(self, data_path):
        write_json(data_path, [{"id": "--1", "name": "X"}])
        store = load_store(data_path)
        assert store.ids() == ["--1"]

    def test_unusable_ids_give_sample(self, data_path):
        write_json(data_path, [{"id": ["--1"], "name": "X"}, {"id": 2, "name": "Y"}])
        store = load_store(data_path)
        assert len(store) == 6
        assert store.get(1).name == "Alice (mother)"

    def test_unusable_counter_is_ignored(self, data_path):
        write_json(data_path, {"members": {"1": {"id": 1, "name": "X"}}, "nextId": "x"})
        store = load_store(data_path)
        assert store.get(1).name == "X"
        assert store.allocate_id() == 2


class TestSaveStore:
    """Tests for saving and round trips."""

    def test_save_writes_canonical_shape(self, data_path):
        assert save_store(build_sample_store(), data_path) is True

        data = json.loads(data_path.read_text(encoding="utf-8"))
        assert set(data["members"]) == {"1", "2", "3", "4", "5", "6"}
        assert data["members"]["4"]["spouseId"] == 5

    def test_round_trip_keeps_forest(self, data_path):
        store = build_sample_store()
        save_store(store, data_path)
        loaded = load_store(data_path)

        assert forest_to_dicts(build_family_forest(loaded)) == forest_to_dicts(build_family_forest(store))

    def test_round_trip_keeps_counter(self, data_path):
        store = delete_member(build_sample_store(), 6)
        save_store(store, data_path)
        loaded = load_store(data_path)

        assert loaded.allocate_id() == 7

    def test_string_ids_round_trip(self, data_path):
        store = EntityStore([
            Member(id="a", name="Alice", spouse_id="b"),
            Member(id="b", name="Bob", spouse_id="a"),
        ])
        save_store(store, data_path)
        loaded = load_store(data_path)

        assert loaded.get("a").spouse_id == "b"

    def test_save_failure_is_reported(self, unwritable_path):
        assert save_store(build_sample_store(), unwritable_path) is False


# ============================================================================
# Session Tests
# ============================================================================

class TestFamilyTreeSession:
    """Tests for the per-process session that saves after each change."""

    def test_open_missing_file(self, data_path):
        session = FamilyTreeSession.open(data_path)
        assert len(session.store) == 6

    def test_add_saves(self, data_path):
        session = FamilyTreeSession.open(data_path)
        outcome = session.add_member({"name": "Carl", "gender": "male"}, {"type": "child", "targetId": 3})

        assert outcome.changed is True
        assert outcome.saved is True
        assert outcome.member.parents == [3]
        assert outcome.member.id in load_store(data_path)

    def test_noop_does_not_save(self, data_path):
        session = FamilyTreeSession.open(data_path)
        outcome = session.update_member(99, {"name": "Nobody"})

        assert outcome.changed is False
        assert outcome.saved is False
        assert outcome.member is None
        assert not data_path.exists()

    def test_delete_through_session(self, data_path):
        session = FamilyTreeSession.open(data_path)
        outcome = session.delete_member(2)

        assert outcome.changed is True
        assert 2 not in load_store(data_path)
        assert session.delete_member(2).changed is False

    def test_failed_save_keeps_memory_state(self, unwritable_path):
        session = FamilyTreeSession(build_sample_store(), unwritable_path)
        outcome = session.add_member({"name": "Carl", "gender": "male"})

        assert outcome.changed is True
        assert outcome.saved is False
        assert outcome.member.id in session.store

    def test_link_through_session(self, data_path):
        session = FamilyTreeSession.open(data_path)
        outcome = session.link_spouses(3, 6)

        assert outcome.member.spouse_id == 6
        assert load_store(data_path).get(6).spouse_id == 3

    def test_replace_store(self, data_path):
        session = FamilyTreeSession.open(data_path)
        outcome = session.replace_store(EntityStore([Member(id=1, name="Only")]))

        assert outcome.saved is True
        assert load_store(data_path).ids() == [1]
