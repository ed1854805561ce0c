"""Family graph mutations, relationship queries and tree materialization."""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Mapping

from family_store import (
    FIELD_NAMES,
    RELATIONSHIP_FIELDS,
    Attachment,
    AttachmentType,
    EntityStore,
    Member,
    MemberId,
    MemberPayload,
    RelationshipError,
    member_id_sort_key,
    normalize_member_id,
)

logger = logging.getLogger("treekeeper.family_utils")


# ============================================================================
# Helpers
# ============================================================================

def _payload_fields(payload: MemberPayload | Mapping[str, Any]) -> dict[str, Any]:
    """Reduce a payload to descriptive fields keyed by Python field name."""
    if isinstance(payload, MemberPayload):
        raw = payload.model_dump()
    else:
        raw = {FIELD_NAMES.get(key, key): value for key, value in payload.items()}
    return {key: value for key, value in raw.items() if key in MemberPayload.model_fields}


def _coerce_attachment(attachment: Attachment | Mapping[str, Any] | None) -> Attachment:
    if attachment is None:
        return Attachment()
    if isinstance(attachment, Attachment):
        return attachment
    return Attachment.model_validate(attachment)


def _set_spouses(store: EntityStore, first_id: MemberId, second_id: MemberId) -> None:
    """Marry two members in place, unlinking any previous spouse of either."""
    for member_id, partner_id in ((first_id, second_id), (second_id, first_id)):
        member = store.get(member_id)
        previous = store.get(member.spouse_id) if member.spouse_id is not None else None
        if previous is not None and previous.id != partner_id and previous.spouse_id == member_id:
            logger.info(f"Unlinking previous spouse {previous.id} from {member_id}")
            previous.spouse_id = None
        member.spouse_id = partner_id


def _lookup_spouse(store: EntityStore, member: Member) -> Member | None:
    if member.spouse_id is None or member.spouse_id == member.id:
        return None
    return store.get(member.spouse_id)


# ============================================================================
# Graph Mutations
# ============================================================================

def add_member(
    store: EntityStore,
    payload: MemberPayload | Mapping[str, Any],
    attachment: Attachment | Mapping[str, Any] | None = None,
) -> tuple[EntityStore, MemberId]:
    """
    Add a new member, optionally linked as spouse or child of an existing one.

    Args:
        store: Current entity store (left untouched)
        payload: name, gender and optional descriptive fields
        attachment: {"type": "root"|"spouse"|"child", "targetId": ...}

    Returns:
        (new store, id of the new member)

    Raises:
        pydantic.ValidationError: blank name or unknown gender

    An attachment whose target does not exist is skipped and the member is
    created as an unlinked root.
    """
    details = MemberPayload.model_validate(_payload_fields(payload))
    attachment = _coerce_attachment(attachment)

    new_store = store.copy()
    new_id = new_store.allocate_id()
    member = Member(id=new_id, **details.model_dump())
    new_store.put(member)

    target = new_store.get(attachment.target_id) if attachment.target_id is not None else None

    if attachment.type == AttachmentType.ROOT:
        pass
    elif target is None or target.id == new_id:
        logger.warning(
            f"Attachment target {attachment.target_id!r} not found, adding {member.name} as a root member"
        )
    elif attachment.type == AttachmentType.SPOUSE:
        _set_spouses(new_store, new_id, target.id)
    elif attachment.type == AttachmentType.CHILD:
        spouse = _lookup_spouse(new_store, target)
        member.parents = [target.id] if spouse is None else [target.id, spouse.id]
        for parent_id in member.parents:
            parent = new_store.get(parent_id)
            if new_id not in parent.children:
                parent.children.append(new_id)

    logger.info(f"Added member {member.name} ({new_id}) as {attachment.type}")
    return new_store, new_id


def update_member(store: EntityStore, member_id: Any, patch: Mapping[str, Any]) -> EntityStore:
    """
    Overwrite descriptive fields of one member. Fields missing from the patch
    are kept. The id and relationship links are never changed by this path.

    Returns the same store object when the member does not exist or the patch
    carries nothing to apply.

    Raises:
        pydantic.ValidationError: the patch blanks the name or sets an unknown gender
    """
    member = store.get(member_id)
    if member is None:
        logger.debug(f"Update ignored, member {member_id!r} not found")
        return store

    changes = {}
    for key, value in patch.items():
        name = FIELD_NAMES.get(key)
        if name is None or name == "id":
            continue
        if name in RELATIONSHIP_FIELDS:
            logger.warning(f"Ignoring relationship field '{key}' in update of member {member.id}")
            continue
        changes[name] = value

    if not changes:
        return store

    updated = Member.model_validate({**member.model_dump(), **changes})
    new_store = store.copy()
    new_store.put(updated)
    logger.info(f"Updated member {updated.id}: {', '.join(sorted(changes))}")
    return new_store


def delete_member(store: EntityStore, member_id: Any) -> EntityStore:
    """
    Remove a member and every reference to it. Unknown ids are a no-op, so
    deleting twice is the same as deleting once.
    """
    member = store.get(member_id)
    if member is None:
        logger.debug(f"Delete ignored, member {member_id!r} not found")
        return store

    target_id = member.id
    new_store = store.copy()
    for other in new_store.all():
        if other.spouse_id == target_id:
            other.spouse_id = None
        if target_id in other.parents:
            other.parents = [p for p in other.parents if p != target_id]
        if target_id in other.children:
            other.children = [c for c in other.children if c != target_id]
    new_store.discard(target_id)

    logger.info(f"Deleted member {member.name} ({target_id})")
    return new_store


def link_spouses(store: EntityStore, first_id: Any, second_id: Any) -> EntityStore:
    """Marry two existing members. Previous spouses are unlinked on both sides."""
    first = store.get(first_id)
    second = store.get(second_id)
    if first is None:
        raise RelationshipError(f"Member not found: {first_id!r}")
    if second is None:
        raise RelationshipError(f"Member not found: {second_id!r}")
    if first.id == second.id:
        raise RelationshipError(f"{first.name} cannot be their own spouse")

    if first.spouse_id == second.id and second.spouse_id == first.id:
        return store

    new_store = store.copy()
    _set_spouses(new_store, first.id, second.id)
    logger.info(f"Linked spouses {first.id} and {second.id}")
    return new_store


def link_parent_child(store: EntityStore, parent_id: Any, child_id: Any) -> EntityStore:
    """Record an existing member as parent of another existing member."""
    parent = store.get(parent_id)
    child = store.get(child_id)
    if parent is None:
        raise RelationshipError(f"Parent not found: {parent_id!r}")
    if child is None:
        raise RelationshipError(f"Child not found: {child_id!r}")
    if parent.id == child.id:
        raise RelationshipError(f"{parent.name} cannot be their own parent")

    if parent.id in child.parents and child.id in parent.children:
        return store
    if parent.id not in child.parents and len(child.parents) >= 2:
        raise RelationshipError(f"{child.name} already has two parents")
    if detect_circular_ancestry(store, child.id, parent.id):
        raise RelationshipError(
            f"Cannot add relationship: would create circular ancestry. "
            f"{parent.name} is a descendant of {child.name}."
        )

    new_store = store.copy()
    new_parent = new_store.get(parent.id)
    new_child = new_store.get(child.id)
    if new_parent.id not in new_child.parents:
        new_child.parents.append(new_parent.id)
    if new_child.id not in new_parent.children:
        new_parent.children.append(new_child.id)

    logger.info(f"Linked parent {parent.id} to child {child.id}")
    return new_store


# ============================================================================
# Relationship Queries
# ============================================================================

def get_parents(store: EntityStore, member_id: Any) -> list[Member]:
    member = store.get(member_id)
    if member is None:
        return []
    return [store.get(p) for p in member.parents if p in store]


def get_children(store: EntityStore, member_id: Any) -> list[Member]:
    member = store.get(member_id)
    if member is None:
        return []
    return [store.get(c) for c in member.children if c in store]


def get_spouse(store: EntityStore, member_id: Any) -> Member | None:
    member = store.get(member_id)
    if member is None:
        return None
    return _lookup_spouse(store, member)


def get_siblings(store: EntityStore, member_id: Any) -> list[Member]:
    """Members sharing at least one parent, excluding the member itself."""
    member = store.get(member_id)
    if member is None:
        return []

    siblings = []
    seen = {member.id}
    for parent in get_parents(store, member.id):
        for child in get_children(store, parent.id):
            if child.id not in seen:
                seen.add(child.id)
                siblings.append(child)
    return siblings


def get_ancestors(store: EntityStore, member_id: Any) -> list[Member]:
    """All ancestors, nearest generation first."""
    return _walk(store, member_id, lambda m: m.parents)


def get_descendants(store: EntityStore, member_id: Any) -> list[Member]:
    """All descendants, nearest generation first."""
    return _walk(store, member_id, lambda m: m.children)


def _walk(store: EntityStore, member_id: Any, next_ids) -> list[Member]:
    start = store.get(member_id)
    if start is None:
        return []

    found = []
    visited = {start.id}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for related_id in next_ids(current):
            related = store.get(related_id)
            if related is None or related.id in visited:
                continue
            visited.add(related.id)
            found.append(related)
            queue.append(related)
    return found


def detect_circular_ancestry(store: EntityStore, person_id: Any, potential_parent_id: Any) -> bool:
    """
    Check if adding potential_parent as parent of person would create circular ancestry.
    Returns True if circular relationship detected.
    """
    person_id = normalize_member_id(person_id)
    potential_parent_id = normalize_member_id(potential_parent_id)
    if person_id == potential_parent_id:
        return True
    return any(a.id == person_id for a in get_ancestors(store, potential_parent_id))


def get_relatives(store: EntityStore, member_id: Any) -> dict[str, Any] | None:
    """Immediate family of one member as wire dicts."""
    member = store.get(member_id)
    if member is None:
        return None

    spouse = get_spouse(store, member.id)
    return {
        "member": member.to_dict(),
        "spouse": spouse.to_dict() if spouse else None,
        "parents": [p.to_dict() for p in get_parents(store, member.id)],
        "children": [c.to_dict() for c in get_children(store, member.id)],
        "siblings": [s.to_dict() for s in get_siblings(store, member.id)],
    }


# ============================================================================
# Tree Materialization
# ============================================================================

@dataclass
class FamilyNode:
    """A member, the spouse drawn beside them, and the children below."""
    member: Member
    spouse: Member | None = None
    children: list["FamilyNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "member": self.member.to_dict(),
            "spouse": self.spouse.to_dict() if self.spouse else None,
            "children": [child.to_dict() for child in self.children],
        }


def is_canonical_root(store: EntityStore, member: Member) -> bool:
    """
    A member starts a tree when they have no parents and either no spouse, or
    a parentless spouse with a higher id. The lower id of a parentless couple
    anchors the couple so it is drawn once.
    """
    if member.parents:
        return False
    spouse = store.get(member.spouse_id) if member.spouse_id is not None else None
    if spouse is None:
        return True
    if spouse.parents:
        return False
    return member_id_sort_key(member.id) <= member_id_sort_key(spouse.id)


def find_canonical_roots(store: EntityStore) -> list[Member]:
    return [member for member in store.all() if is_canonical_root(store, member)]


def _index_children(store: EntityStore) -> dict[MemberId, list[Member]]:
    """parent id -> members naming that parent, in store order."""
    index: dict[MemberId, list[Member]] = {}
    for member in store.all():
        for parent_id in member.parents:
            index.setdefault(parent_id, []).append(member)
    return index


def build_family_node(
    store: EntityStore,
    member: Member,
    visited: set[MemberId] | None = None,
    max_depth: int | None = None,
    children_by_parent: dict[MemberId, list[Member]] | None = None,
) -> FamilyNode:
    """
    Recursively assemble the node for a member and their descendants.

    Children are the members naming this member as a parent. The spouse is
    drawn alongside and never expanded, so a couple's children hang under the
    member who owns the node. Each member is expanded at most once per
    ``visited`` set, which keeps shared children single and stops on cycles.
    ``children_by_parent`` lets callers building many nodes share one index.
    """
    if visited is None:
        visited = set()
    if children_by_parent is None:
        children_by_parent = _index_children(store)

    def build_node(current: Member, depth: int) -> FamilyNode:
        visited.add(current.id)
        node = FamilyNode(member=current, spouse=_lookup_spouse(store, current))

        if max_depth is not None and depth >= max_depth:
            return node

        for child in children_by_parent.get(current.id, []):
            if child.id in visited:
                continue
            node.children.append(build_node(child, depth + 1))
        return node

    return build_node(member, 0)


def build_family_forest(store: EntityStore) -> list[FamilyNode]:
    """
    Materialize the whole store as a list of root trees.

    Members with no path from a canonical root are left out; an inconsistent
    store never raises.
    """
    visited: set[MemberId] = set()
    children_by_parent = _index_children(store)
    forest = []
    for root in find_canonical_roots(store):
        if root.id in visited:
            continue
        forest.append(build_family_node(store, root, visited, children_by_parent=children_by_parent))
    logger.debug(f"Materialized {len(forest)} root tree(s) covering {len(visited)} of {len(store)} members")
    return forest


def forest_to_dicts(forest: list[FamilyNode]) -> list[dict[str, Any]]:
    return [node.to_dict() for node in forest]


def build_descendant_tree(store: EntityStore, member_id: Any, max_depth: int = 10) -> dict[str, Any] | None:
    """
    Build the tree below one member, down to max_depth generations.
    Returns None when the member does not exist.
    """
    member = store.get(member_id)
    if member is None:
        return None
    return build_family_node(store, member, max_depth=max_depth).to_dict()
