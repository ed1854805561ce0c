"""GEDCOM import and export for the family tree store."""

import logging
import os
import tempfile
from datetime import datetime

from gedcom.element.element import Element
from gedcom.element.family import FamilyElement
from gedcom.element.individual import IndividualElement
from gedcom.parser import Parser

from family_store import EntityStore, Gender, Member, MemberId, member_id_sort_key

logger = logging.getLogger("treekeeper.gedcom_io")

GEDCOM_MONTHS = ["JAN", "FEB", "MAR", "APR", "MAY", "JUN",
                 "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]

SEX_BY_GENDER = {Gender.MALE: "M", Gender.FEMALE: "F", Gender.OTHER: "U"}
GENDER_BY_SEX = {"M": Gender.MALE, "F": Gender.FEMALE}


# ============================================================================
# Dates
# ============================================================================

def to_gedcom_date(value: str | None) -> str | None:
    """Convert an ISO date (1850-03-15) to GEDCOM form (15 MAR 1850)."""
    if not value:
        return None
    try:
        parsed = datetime.strptime(value.strip(), "%Y-%m-%d")
    except ValueError:
        return value.strip().upper()
    return f"{parsed.day} {GEDCOM_MONTHS[parsed.month - 1]} {parsed.year}"


def from_gedcom_date(value: str | None) -> str | None:
    """Convert a GEDCOM date (15 MAR 1850) to ISO form; other dates pass through."""
    if not value or not value.strip():
        return None
    parts = value.strip().upper().split()
    if len(parts) == 3 and parts[0].isdigit() and parts[1] in GEDCOM_MONTHS and parts[2].isdigit():
        try:
            return datetime(int(parts[2]), GEDCOM_MONTHS.index(parts[1]) + 1, int(parts[0])).date().isoformat()
        except ValueError:
            pass
    return value.strip()


# ============================================================================
# Export
# ============================================================================

def _collect_families(store: EntityStore) -> list[dict]:
    """
    Group members into GEDCOM families: one per couple, plus one per parent
    set that is not a couple (single parents, unmarried pairs).
    """
    families: dict[tuple, dict] = {}

    for member in store.all():
        spouse = store.get(member.spouse_id) if member.spouse_id is not None else None
        if spouse is not None and spouse.id != member.id and spouse.spouse_id == member.id:
            key = tuple(sorted((member.id, spouse.id), key=member_id_sort_key))
            families.setdefault(key, {"parents": key, "children": []})

    for member in store.all():
        parent_ids = [p for p in member.parents if p in store]
        if not parent_ids:
            continue
        key = tuple(sorted(parent_ids, key=member_id_sort_key))
        family = families.setdefault(key, {"parents": key, "children": []})
        family["children"].append(member.id)

    return list(families.values())


def _parent_roles(store: EntityStore, parent_ids: tuple) -> list[tuple[str, MemberId]]:
    """Assign HUSB/WIFE roles, preferring gender and falling back to order."""
    parents = [store.get(p) for p in parent_ids]
    if len(parents) == 1:
        role = "WIFE" if parents[0].gender == Gender.FEMALE else "HUSB"
        return [(role, parents[0].id)]

    first, second = parents[0], parents[1]
    if first.gender == Gender.FEMALE and second.gender != Gender.FEMALE:
        first, second = second, first
    return [("HUSB", first.id), ("WIFE", second.id)]


def _header() -> Element:
    head = Element(level=0, pointer='', tag='HEAD', value='')
    head.add_child_element(Element(level=1, pointer='', tag='SOUR', value='TREEKEEPER'))
    gedc = Element(level=1, pointer='', tag='GEDC', value='')
    head.add_child_element(gedc)
    gedc.add_child_element(Element(level=2, pointer='', tag='VERS', value='5.5.1'))
    gedc.add_child_element(Element(level=2, pointer='', tag='FORM', value='LINEAGE-LINKED'))
    head.add_child_element(Element(level=1, pointer='', tag='CHAR', value='UTF-8'))
    return head


def _event(tag: str, date: str | None) -> Element | None:
    gedcom_date = to_gedcom_date(date)
    if not gedcom_date:
        return None
    event = Element(level=1, pointer='', tag=tag, value='')
    event.add_child_element(Element(level=2, pointer='', tag='DATE', value=gedcom_date))
    return event


def _gedcom_name(name: str) -> str:
    parts = name.rsplit(" ", 1)
    if len(parts) == 1:
        return name
    return f"{parts[0]} /{parts[1]}/"


def export_gedcom_content(store: EntityStore) -> str:
    """Export the store as GEDCOM 5.5.1 text."""
    pointers = {member.id: f"@I{index}@" for index, member in enumerate(store.all(), start=1)}
    families = _collect_families(store)
    family_pointers = [f"@F{index}@" for index in range(1, len(families) + 1)]

    records = [_header()]

    for member in store.all():
        indi = IndividualElement(level=0, pointer=pointers[member.id], tag='INDI', value='')
        indi.add_child_element(Element(level=1, pointer='', tag='NAME', value=_gedcom_name(member.name)))
        indi.add_child_element(Element(level=1, pointer='', tag='SEX', value=SEX_BY_GENDER[Gender(member.gender)]))

        for tag, date in (("BIRT", member.dob), ("DEAT", member.dod)):
            event = _event(tag, date)
            if event is not None:
                indi.add_child_element(event)

        if member.description:
            indi.add_child_element(Element(level=1, pointer='', tag='NOTE', value=member.description))

        for family, family_pointer in zip(families, family_pointers):
            if member.id in family["parents"]:
                indi.add_child_element(Element(level=1, pointer='', tag='FAMS', value=family_pointer))
            if member.id in family["children"]:
                indi.add_child_element(Element(level=1, pointer='', tag='FAMC', value=family_pointer))

        records.append(indi)

    for family, family_pointer in zip(families, family_pointers):
        fam = FamilyElement(level=0, pointer=family_pointer, tag='FAM', value='')
        for role, parent_id in _parent_roles(store, family["parents"]):
            fam.add_child_element(Element(level=1, pointer='', tag=role, value=pointers[parent_id]))
        for child_id in family["children"]:
            fam.add_child_element(Element(level=1, pointer='', tag='CHIL', value=pointers[child_id]))
        records.append(fam)

    records.append(Element(level=0, pointer='', tag='TRLR', value=''))

    lines = []

    def element_to_lines(element, level=0):
        """Recursively convert an element to GEDCOM lines."""
        pointer = element.get_pointer() or ""
        tag = element.get_tag()
        value = element.get_value() or ""

        if pointer:
            line = f"{level} {pointer} {tag}"
        else:
            line = f"{level} {tag}"

        if value:
            line += f" {value}"

        lines.append(line)

        for child in element.get_child_elements():
            element_to_lines(child, level + 1)

    for record in records:
        element_to_lines(record, 0)

    logger.info(f"Exported {len(pointers)} individuals and {len(families)} families to GEDCOM")
    return "\n".join(lines) + "\n"


# ============================================================================
# Import
# ============================================================================

def parse_gedcom_content(content: str) -> Parser:
    """Parse GEDCOM content from a string."""
    # python-gedcom only parses from a file path
    with tempfile.NamedTemporaryFile(mode='w', suffix='.ged', delete=False, encoding='utf-8') as f:
        f.write(content)
        temp_path = f.name

    try:
        parser = Parser()
        parser.parse_file(temp_path, strict=False)
        return parser
    finally:
        os.unlink(temp_path)


def _member_from_individual(individual: IndividualElement, member_id: int) -> Member:
    first_name, last_name = individual.get_name()
    name = f"{first_name} {last_name}".strip() or individual.get_pointer().strip('@')

    birth_data = individual.get_birth_data()
    death_data = individual.get_death_data()

    notes = []
    for child in individual.get_child_elements():
        if child.get_tag() == "NOTE":
            note = child.get_multi_line_value()
            if note:
                notes.append(note)

    return Member(
        id=member_id,
        name=name,
        gender=GENDER_BY_SEX.get((individual.get_gender() or "").upper(), Gender.OTHER),
        dob=from_gedcom_date(birth_data[0] if birth_data else None),
        dod=from_gedcom_date(death_data[0] if death_data else None),
        description="\n".join(notes),
    )


def import_gedcom_content(content: str) -> EntityStore:
    """
    Build a store from GEDCOM text. Every INDI becomes a member with a fresh id.
    The first family listing a person as partner gives their spouse link;
    CHIL entries give parent/child links (at most two parents per child).

    Raises:
        ValueError: the content holds no individuals
    """
    parser = parse_gedcom_content(content)
    elements = parser.get_root_child_elements()

    store = EntityStore()
    ids: dict[str, MemberId] = {}
    for element in elements:
        if isinstance(element, IndividualElement):
            member = _member_from_individual(element, store.allocate_id())
            store.put(member)
            ids[element.get_pointer()] = member.id

    if not ids:
        raise ValueError("No individuals found in GEDCOM content")

    def family_member_ids(family: FamilyElement, role: str) -> list[MemberId]:
        found = []
        for individual in parser.get_family_members(family, role):
            if isinstance(individual, IndividualElement) and individual.get_pointer() in ids:
                member_id = ids[individual.get_pointer()]
                if member_id not in found:
                    found.append(member_id)
        return found

    family_count = 0
    for element in elements:
        if not isinstance(element, FamilyElement):
            continue
        family_count += 1

        partners = family_member_ids(element, "HUSB") + family_member_ids(element, "WIFE")
        partners = list(dict.fromkeys(partners))[:2]
        if len(partners) == 2:
            first, second = store.get(partners[0]), store.get(partners[1])
            if first.spouse_id is None and second.spouse_id is None:
                first.spouse_id = second.id
                second.spouse_id = first.id

        for child_id in family_member_ids(element, "CHIL"):
            child = store.get(child_id)
            for parent_id in partners:
                if parent_id == child_id or parent_id in child.parents or len(child.parents) >= 2:
                    continue
                child.parents.append(parent_id)
                store.get(parent_id).children.append(child_id)

    logger.info(f"Imported {len(ids)} individuals and {family_count} families from GEDCOM")
    return store
