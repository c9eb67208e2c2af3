"""Typed rows exchanged with the store.

Query results are mapped into these dataclasses with psycopg's ``class_row``
so nothing past the store boundary handles raw tuples.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime


class MatchingMethod(str, enum.Enum):
    """How a record was attached to its identity group."""

    CODE_EXACT = "code_exact"
    CODE_NORMALIZED = "code_normalized"
    TITLE_PERFORMER_HIGH = "title_performer_high"
    TITLE_PERFORMER_MEDIUM = "title_performer_medium"
    TITLE_PERFORMER_LOW = "title_performer_low"
    TITLE_ONLY_STRICT = "title_only_strict"
    TITLE_ONLY_RELAXED = "title_only_relaxed"
    NEW_GROUP = "new_group"


@dataclass
class CandidateRecord:
    """One source's view of a product, as ingestion left it."""

    id: int
    normalized_product_id: str
    maker_product_code: str | None
    title: str
    normalized_title: str | None
    release_date: date | None
    duration: int | None
    asp_name: str
    performers: list[str] = field(default_factory=list)


@dataclass
class MatchResult:
    """Outcome of one matching attempt. Never persisted."""

    product_id: int
    confidence_score: int
    matching_method: MatchingMethod
    group_id: int | None = None
    asp_name: str | None = None
    title_similarity: float | None = None
    matched_performer_count: int | None = None


@dataclass
class GroupInfo:
    id: int
    master_product_id: int | None
    canonical_product_code: str | None
    member_count: int


@dataclass
class GroupMember:
    product_id: int
    asp_name: str
    confidence_score: int
    matching_method: str
    is_master: bool


@dataclass
class MemberScoreRow:
    """Inputs to master selection for one group member."""

    product_id: int
    asp_name: str
    image_count: int
    review_count: int
    created_at: datetime


@dataclass
class TitleCandidate:
    """A record whose normalized title is trigram-similar to the query."""

    product_id: int
    group_id: int | None
    asp_name: str
    similarity: float
    release_date: date | None
    duration: int | None
    performers: list[str] = field(default_factory=list)


@dataclass
class CodeCandidate:
    product_id: int
    group_id: int | None
    asp_name: str
    maker_product_code: str


@dataclass
class PerformerRow:
    id: int
    name: str
    release_count: int


@dataclass
class LookupHit:
    """A performer name found in the external lookup table for a code."""

    code: str
    performer_name: str
    source: str


@dataclass
class GroupStats:
    total_groups: int
    total_grouped_products: int
    avg_members_per_group: float
    by_method: dict[str, int] = field(default_factory=dict)
