"""Member records and the in-memory entity store for a family tree.

The store is a plain id -> Member mapping. It owns id allocation and knows how
to check the relationship invariants, but every write to the relationship
fields goes through the graph mutations in ``family_utils``.
"""

import re
from enum import Enum
from typing import Any, Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field, field_validator


MemberId = int | str

_INTEGER_ID = re.compile(r"-?\d+", re.ASCII)


def normalize_member_id(value: Any) -> MemberId | None:
    """
    Coerce an id to its canonical form: ASCII digit strings become ints, other
    strings are kept stripped. Values that are neither int nor str give None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if _INTEGER_ID.fullmatch(text):
        try:
            return int(text)
        except ValueError:
            # past the interpreter's int conversion limit
            return text
    return text


def member_id_sort_key(member_id: MemberId) -> tuple[int, Any]:
    """Ordering for ids: integers numerically, then strings lexicographically."""
    if isinstance(member_id, int):
        return (0, member_id)
    return (1, str(member_id))


def _normalize_id_list(values: Any) -> list[MemberId]:
    if values is None:
        return []
    if isinstance(values, (str, int)):
        values = [values]
    ids = []
    for value in values:
        member_id = normalize_member_id(value)
        if member_id is not None and member_id not in ids:
            ids.append(member_id)
    return ids


# ============================================================================
# Models
# ============================================================================

class Gender(str, Enum):
    """Display-only gender of a member."""
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


GENDER_ALIASES = {
    "m": Gender.MALE,
    "f": Gender.FEMALE,
    "u": Gender.OTHER,
    "": Gender.OTHER,
}


class MemberPayload(BaseModel):
    """The descriptive part of a member, as supplied when adding or editing."""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, description="Display name, never blank.")
    gender: Gender = Field(default=Gender.OTHER, description="male, female or other.")
    image_url: str | None = Field(default=None, alias="imageUrl")
    social_media: str | None = Field(default=None, alias="socialMedia")
    description: str = ""
    dob: str | None = Field(default=None, description="Date of birth, ISO format preferred.")
    dod: str | None = Field(default=None, description="Date of death, ISO format preferred.")

    @field_validator("gender", mode="before")
    @classmethod
    def _coerce_gender(cls, value: Any) -> Any:
        if value is None:
            return Gender.OTHER
        if isinstance(value, str):
            lowered = value.strip().lower()
            return GENDER_ALIASES.get(lowered, lowered)
        return value

    @field_validator("description", mode="before")
    @classmethod
    def _coerce_description(cls, value: Any) -> Any:
        return "" if value is None else value


class Member(MemberPayload):
    """One person in the tree, including relationship links."""

    id: MemberId
    spouse_id: MemberId | None = Field(default=None, alias="spouseId")
    parents: list[MemberId] = Field(default_factory=list)
    children: list[MemberId] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        member_id = normalize_member_id(value)
        if member_id is None:
            raise ValueError("member id must be a non-empty string or integer")
        return member_id

    @field_validator("spouse_id", mode="before")
    @classmethod
    def _coerce_spouse_id(cls, value: Any) -> Any:
        return normalize_member_id(value)

    @field_validator("parents", "children", mode="before")
    @classmethod
    def _coerce_links(cls, value: Any) -> Any:
        return _normalize_id_list(value)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the camelCase keys used on the wire and on disk."""
        return self.model_dump(mode="json", by_alias=True)


# Wire names (camelCase) and Python names both map to the Python field name.
FIELD_NAMES: dict[str, str] = {}
for _name, _info in Member.model_fields.items():
    FIELD_NAMES[_name] = _name
    if _info.alias:
        FIELD_NAMES[_info.alias] = _name

RELATIONSHIP_FIELDS = frozenset({"spouse_id", "parents", "children"})


class AttachmentType(str, Enum):
    """How a newly added member is linked into the tree."""
    ROOT = "root"
    SPOUSE = "spouse"
    CHILD = "child"


class Attachment(BaseModel):
    """Requested relationship for a new member."""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    type: AttachmentType = AttachmentType.ROOT
    target_id: MemberId | None = Field(default=None, alias="targetId")

    @field_validator("target_id", mode="before")
    @classmethod
    def _coerce_target(cls, value: Any) -> Any:
        return normalize_member_id(value)


class RelationshipError(ValueError):
    """Raised when an explicit link between existing members is rejected."""


# ============================================================================
# Entity Store
# ============================================================================

class EntityStore:
    """Mapping of member id to Member with a store-owned id counter."""

    def __init__(self, members: Iterable[Member] = (), next_id: int | None = None):
        self._members: dict[MemberId, Member] = {}
        for member in members:
            self._members[member.id] = member
        highest = max((i for i in self._members if isinstance(i, int)), default=0)
        self._next_id = max(next_id or 1, highest + 1)

    def __contains__(self, member_id: object) -> bool:
        return normalize_member_id(member_id) in self._members

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[Member]:
        return iter(list(self._members.values()))

    def __repr__(self) -> str:
        return f"EntityStore({len(self._members)} members, next_id={self._next_id})"

    @property
    def next_id(self) -> int:
        return self._next_id

    def get(self, member_id: Any) -> Member | None:
        return self._members.get(normalize_member_id(member_id))

    def all(self) -> list[Member]:
        return list(self._members.values())

    def ids(self) -> list[MemberId]:
        return list(self._members)

    def allocate_id(self) -> int:
        """Hand out a fresh integer id; never repeats within this store lineage."""
        new_id = self._next_id
        while new_id in self._members:
            new_id += 1
        self._next_id = new_id + 1
        return new_id

    def put(self, member: Member) -> None:
        self._members[member.id] = member

    def discard(self, member_id: Any) -> None:
        self._members.pop(normalize_member_id(member_id), None)

    def copy(self) -> "EntityStore":
        """Deep copy; the counter travels with the copy."""
        return EntityStore(
            (member.model_copy(deep=True) for member in self._members.values()),
            next_id=self._next_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "members": {str(member_id): member.to_dict() for member_id, member in self._members.items()},
            "nextId": self._next_id,
        }


# ============================================================================
# Invariant checks
# ============================================================================

def find_consistency_issues(store: EntityStore) -> list[str]:
    """
    Check the store for broken relationship invariants:
    - dangling spouse/parent/child references
    - one-sided spouse links
    - parent/child links missing their inverse
    - members linked to themselves
    - more than two parents, death recorded before birth

    Returns a list of warning messages; an empty list means the store is consistent.
    """
    issues: list[str] = []

    for member in store.all():
        label = f"{member.name} ({member.id})"

        if member.spouse_id is not None:
            spouse = store.get(member.spouse_id)
            if member.spouse_id == member.id:
                issues.append(f"{label} is recorded as their own spouse")
            elif spouse is None:
                issues.append(f"{label} references missing spouse {member.spouse_id}")
            elif spouse.spouse_id != member.id:
                issues.append(f"{label} lists {spouse.name} ({spouse.id}) as spouse, but not the other way round")

        if len(member.parents) > 2:
            issues.append(f"{label} has {len(member.parents)} parents")

        for parent_id in member.parents:
            parent = store.get(parent_id)
            if parent_id == member.id:
                issues.append(f"{label} is recorded as their own parent")
            elif parent is None:
                issues.append(f"{label} references missing parent {parent_id}")
            elif member.id not in parent.children:
                issues.append(f"{label} lists parent {parent.name} ({parent.id}) who does not list them as a child")

        for child_id in member.children:
            child = store.get(child_id)
            if child_id == member.id:
                issues.append(f"{label} is recorded as their own child")
            elif child is None:
                issues.append(f"{label} references missing child {child_id}")
            elif member.id not in child.parents:
                issues.append(f"{label} lists child {child.name} ({child.id}) who does not list them as a parent")

        # ISO dates compare correctly as strings
        if member.dob and member.dod and member.dod < member.dob:
            issues.append(f"{label} died before being born")

    return issues
