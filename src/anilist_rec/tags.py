"""
Catalog records and the feature tags extracted from them.

A feature tag is the modeling unit of the recommender: every genre, studio,
staff credit and the classification of a title become one tag each. Tags are
rendered to stable string keys ("Genre: Action", "Staff: Director: Watanabe,
Shinichiro") so they can be persisted and compared across runs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class TagClass(Enum):
    GENRE = "Genre"
    STUDIO = "Studio"
    STAFF = "Staff"
    CLASSIFICATION = "Classification"


class MainStudioPolicy(Enum):
    """How a record's main studio is turned into tags."""
    PLAIN = "plain"          # only "Studio: X"
    DUPLICATE = "duplicate"  # "Studio: X" and "Studio: X (main)"
    EXTRA_TAG = "extra"      # only "Studio: X (main)"


@dataclass(frozen=True)
class StudioCredit:
    name: str
    is_main: bool = False


@dataclass(frozen=True)
class StaffCredit:
    last_name: str = ""
    first_name: str = ""
    role: str | None = None

    @property
    def display_name(self) -> str | None:
        if self.last_name and self.first_name:
            return f"{self.last_name}, {self.first_name}"
        return self.last_name or self.first_name or None


@dataclass(frozen=True)
class CatalogRecord:
    """One title as returned by the catalog. Never mutated after construction."""
    id: int
    title: str = ""
    title_english: str = ""
    genres: tuple[str, ...] = ()
    studios: tuple[StudioCredit, ...] = ()
    staff: tuple[StaffCredit, ...] = ()
    classification: str = ""
    average_score: float | None = None
    total_episodes: int | None = None

    @property
    def display_title(self) -> str:
        if self.title_english and self.title_english != self.title:
            return f"{self.title} ({self.title_english})"
        return self.title

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "CatalogRecord":
        """Build a record from an AniList ``anime/{id}/page`` payload."""
        studios = tuple(
            StudioCredit(name=s.get('studio_name') or "", is_main=bool(s.get('main_studio')))
            for s in payload.get('studio') or []
        )
        staff = tuple(
            StaffCredit(
                last_name=s.get('name_last') or "",
                first_name=s.get('name_first') or "",
                role=s.get('role'),
            )
            for s in payload.get('staff') or []
        )
        avg = payload.get('average_score')
        return cls(
            id=int(payload['id']),
            title=payload.get('title_romaji') or "",
            title_english=payload.get('title_english') or "",
            genres=tuple(g for g in payload.get('genres') or [] if g is not None),
            studios=studios,
            staff=staff,
            classification=payload.get('classification') or "",
            average_score=float(avg) if avg is not None else None,
            total_episodes=payload.get('total_episodes'),
        )


@dataclass(frozen=True, eq=False)
class FeatureTag:
    """
    A single labeled attribute of a title.

    Equality and hashing go through the rendered key, so a tag parsed back
    from storage is interchangeable with a freshly extracted one.
    """
    tag_class: TagClass | None
    value: str
    role: str | None = None
    prefix: str = field(default="", repr=False)

    @property
    def key(self) -> str:
        prefix = self.tag_class.value if self.tag_class else self.prefix
        if self.role:
            return f"{prefix}: {self.role}: {self.value}"
        return f"{prefix}: {self.value}"

    @property
    def prior_key(self) -> str:
        """Key into the prior table: the class prefix, or "Staff: <Role>"."""
        if self.tag_class is TagClass.STAFF and self.role:
            return f"{TagClass.STAFF.value}: {self.role}"
        return self.tag_class.value if self.tag_class else self.prefix

    def __str__(self) -> str:
        return self.key

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FeatureTag):
            return self.key == other.key
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.key)

    @classmethod
    def parse(cls, key: str) -> "FeatureTag":
        """Inverse of ``key``. Unknown prefixes are kept with no tag class."""
        prefix, _, rest = key.partition(": ")
        try:
            tag_class = TagClass(prefix)
        except ValueError:
            return cls(None, rest, prefix=prefix)

        if tag_class is TagClass.STAFF and ": " in rest:
            role, _, name = rest.partition(": ")
            return cls(tag_class, name, role=role)
        return cls(tag_class, rest)


def simplify_role(role: str) -> str:
    """
    Strip parenthetical qualifiers from a staff role.

    "Key Animation (ep 3)" -> "Key Animation", "A (B (C)) D" -> "A D".
    Unbalanced input is handled by treating the end of the string as the
    closing paren.
    """
    while True:
        start = role.find('(')
        if start < 0:
            return role.strip()

        depth = 0
        end = start
        while end < len(role):
            if role[end] == '(':
                depth += 1
            elif role[end] == ')':
                depth -= 1
                if depth == 0:
                    break
            end += 1

        role = role[:start].strip() + ' ' + role[end + 1:].strip()


def _staff_tags(credit: StaffCredit) -> list[FeatureTag]:
    name = credit.display_name
    if name is None:
        return []

    roles = [r.strip() for r in simplify_role(credit.role or "").split(',')]
    return [
        FeatureTag(TagClass.STAFF, name, role=r or None)
        for r in roles
    ]


def _studio_tags(studio: StudioCredit, policy: MainStudioPolicy) -> list[FeatureTag]:
    plain = FeatureTag(TagClass.STUDIO, studio.name)
    if not studio.is_main or policy is MainStudioPolicy.PLAIN:
        return [plain]

    main = FeatureTag(TagClass.STUDIO, f"{studio.name} (main)")
    if policy is MainStudioPolicy.DUPLICATE:
        return [plain, main]
    return [main]


def expand_tags(record: CatalogRecord, policy: MainStudioPolicy) -> list[FeatureTag]:
    """
    Extract the ordered feature tags of a record.

    Order is genres, studios, staff, then exactly one classification tag.
    Duplicates are kept.
    """
    tags = [FeatureTag(TagClass.GENRE, g) for g in record.genres]
    for studio in record.studios:
        tags.extend(_studio_tags(studio, policy))
    for credit in record.staff:
        tags.extend(_staff_tags(credit))
    tags.append(FeatureTag(TagClass.CLASSIFICATION, record.classification))
    return tags
