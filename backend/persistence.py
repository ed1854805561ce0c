"""Loading and saving the family tree, and the per-process tree session."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from pydantic import ValidationError

from family_store import (
    Attachment,
    EntityStore,
    Member,
    MemberPayload,
    find_consistency_issues,
    normalize_member_id,
)
from family_utils import (
    add_member,
    delete_member,
    link_parent_child,
    link_spouses,
    update_member,
)

logger = logging.getLogger("treekeeper.persistence")

DEFAULT_DATA_FILE = "family_tree_data.json"

SAMPLE_MEMBERS = [
    {"id": 1, "name": "Alice (mother)", "gender": "female", "spouseId": 2, "parents": [], "children": [3, 4]},
    {"id": 2, "name": "Bob (father)", "gender": "male", "spouseId": 1, "parents": [], "children": [3, 4]},
    {"id": 3, "name": "Charlie", "gender": "male", "spouseId": None, "parents": [1, 2], "children": []},
    {"id": 4, "name": "Dina", "gender": "female", "spouseId": 5, "parents": [1, 2], "children": [6]},
    {"id": 5, "name": "Evan (spouse of Dina)", "gender": "male", "spouseId": 4, "parents": [], "children": [6]},
    {"id": 6, "name": "Fay", "gender": "female", "spouseId": None, "parents": [4, 5], "children": []},
]


def build_sample_store() -> EntityStore:
    """The built-in starter tree used when nothing usable is on disk."""
    return EntityStore(Member.model_validate(record) for record in SAMPLE_MEMBERS)


# ============================================================================
# Shape normalization
# ============================================================================

def _looks_like_member(value: Any) -> bool:
    return isinstance(value, Mapping) and ("id" in value or "name" in value)


def _has_usable_id(record: Mapping[str, Any]) -> bool:
    """A record id may be missing, or an int or string; anything else is corrupt."""
    value = record.get("id")
    return value is None or (isinstance(value, (int, str)) and not isinstance(value, bool))


def normalize_store_data(raw: Any) -> EntityStore | None:
    """
    Turn persisted data into a store. Accepted shapes:
    - {"members": {id: member, ...}} (canonical; "members" may also be a list)
    - {id: member, ...} without the wrapping key, detected by sampling the first value
    - [member, ...], keyed by each member's own id or a fresh id when missing

    Returns None when the shape is not recognized or a record is invalid.
    """
    next_id = None
    if isinstance(raw, Mapping) and "members" in raw:
        entries = raw["members"]
        next_id = raw.get("nextId")
        if not isinstance(next_id, int) or isinstance(next_id, bool):
            next_id = None
    elif isinstance(raw, Mapping) and raw:
        if not _looks_like_member(next(iter(raw.values()))):
            return None
        entries = raw
    elif isinstance(raw, list):
        entries = raw
    else:
        return None

    if isinstance(entries, Mapping):
        records = []
        for key, value in entries.items():
            if not isinstance(value, Mapping):
                return None
            record = dict(value)
            if _has_usable_id(record) and normalize_member_id(record.get("id")) is None:
                record["id"] = key
            records.append(record)
    elif isinstance(entries, list):
        if not all(isinstance(value, Mapping) for value in entries):
            return None
        records = [dict(value) for value in entries]
    else:
        return None

    bad_ids = [repr(r.get("id")) for r in records if not _has_usable_id(r)]
    if bad_ids:
        logger.warning(f"Persisted member records have unusable ids: {', '.join(bad_ids)}")
        return None

    try:
        with_ids = [Member.model_validate(r) for r in records if normalize_member_id(r.get("id")) is not None]
        without_ids = [MemberPayload.model_validate(r) for r in records if normalize_member_id(r.get("id")) is None]
    except ValidationError as e:
        logger.warning(f"Persisted member records are invalid: {e.error_count()} error(s)")
        return None

    seen = set()
    for member in with_ids:
        if member.id in seen:
            logger.warning(f"Duplicate member id {member.id} in persisted data, keeping the last one")
        seen.add(member.id)

    store = EntityStore(with_ids, next_id=next_id)
    for payload in without_ids:
        store.put(Member(id=store.allocate_id(), **payload.model_dump()))
    return store


# ============================================================================
# Load / Save
# ============================================================================

def load_store(path: str | Path) -> EntityStore:
    """
    Load the family tree from a JSON file. A missing file, unreadable JSON or
    an unrecognized shape falls back to the sample tree.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No family tree data at {path}, starting from the sample tree")
        return build_sample_store()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read family tree data from {path}: {e}. Using the sample tree")
        return build_sample_store()

    store = normalize_store_data(raw)
    if store is None:
        logger.warning(f"Unrecognized family tree data in {path}, using the sample tree")
        return build_sample_store()

    issues = find_consistency_issues(store)
    if issues:
        logger.warning(f"Loaded family tree has {len(issues)} consistency issue(s)")
        for issue in issues:
            logger.debug(f"  {issue}")

    logger.info(f"Loaded {len(store)} members from {path}")
    return store


def save_store(store: EntityStore, path: str | Path) -> bool:
    """
    Write the store to a JSON file, replacing the old file atomically.
    Failures are logged and reported as False, never raised.
    """
    path = Path(path)
    temp_path = None
    try:
        content = json.dumps(store.to_dict(), indent=2, ensure_ascii=False)
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".tmp", dir=path.parent, delete=False, encoding="utf-8"
        ) as f:
            f.write(content)
            temp_path = f.name
        os.replace(temp_path, path)
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save family tree to {path}: {e}")
        if temp_path and os.path.exists(temp_path):
            os.unlink(temp_path)
        return False

    logger.debug(f"Saved {len(store)} members to {path}")
    return True


# ============================================================================
# Session
# ============================================================================

@dataclass
class MutationOutcome:
    """What a session mutation did: whether the store changed and was saved."""
    changed: bool
    saved: bool
    member: Member | None = None


class FamilyTreeSession:
    """
    Owns the current store for one process and the file it is saved to.
    Every mutation replaces the store and then saves; a failed save keeps the
    new in-memory store.
    """

    def __init__(self, store: EntityStore, data_path: str | Path):
        self.store = store
        self.data_path = Path(data_path)

    @classmethod
    def open(cls, data_path: str | Path) -> "FamilyTreeSession":
        return cls(load_store(data_path), data_path)

    def save(self) -> bool:
        return save_store(self.store, self.data_path)

    def _commit(self, new_store: EntityStore, member_id: Any = None) -> MutationOutcome:
        if new_store is self.store:
            member = self.store.get(member_id) if member_id is not None else None
            return MutationOutcome(changed=False, saved=False, member=member)

        self.store = new_store
        saved = self.save()
        if not saved:
            logger.warning("Continuing with the in-memory family tree after a failed save")
        member = new_store.get(member_id) if member_id is not None else None
        return MutationOutcome(changed=True, saved=saved, member=member)

    def add_member(
        self,
        payload: MemberPayload | Mapping[str, Any],
        attachment: Attachment | Mapping[str, Any] | None = None,
    ) -> MutationOutcome:
        new_store, new_id = add_member(self.store, payload, attachment)
        return self._commit(new_store, new_id)

    def update_member(self, member_id: Any, patch: Mapping[str, Any]) -> MutationOutcome:
        return self._commit(update_member(self.store, member_id, patch), member_id)

    def delete_member(self, member_id: Any) -> MutationOutcome:
        return self._commit(delete_member(self.store, member_id))

    def link_spouses(self, first_id: Any, second_id: Any) -> MutationOutcome:
        return self._commit(link_spouses(self.store, first_id, second_id), first_id)

    def link_parent_child(self, parent_id: Any, child_id: Any) -> MutationOutcome:
        return self._commit(link_parent_child(self.store, parent_id, child_id), child_id)

    def replace_store(self, store: EntityStore) -> MutationOutcome:
        return self._commit(store)
