"""Matching thresholds and source tables.

``MatchingConfig`` is immutable; derive variants with ``dataclasses.replace``
and pass them explicitly to every matcher call.
"""

from __future__ import annotations

from dataclasses import dataclass

SOURCE_PRIORITIES = {
    "FANZA": 100,
    "MGS": 80,
    "SOKMIL": 60,
    "B10F": 50,
    "DUGA": 40,
    "FC2": 30,
    "Japanska": 20,
    "Caribbean": 20,
    "TokyoHot": 20,
    "1pondo": 20,
    "Heyzo": 20,
}
"""Master-selection weight per source; the primary aggregator ranks highest."""

UNKNOWN_SOURCE_PRIORITY = 10

TITLE_MATCH_EXCLUDED_SOURCES = frozenset({"fc2", "duga"})
"""Sources that reuse identical titles for unrelated videos (lower-cased)."""


def source_priority(source: str) -> int:
    """Return the master-selection weight for a source name."""
    return SOURCE_PRIORITIES.get(source, UNKNOWN_SOURCE_PRIORITY)


def is_title_match_excluded(source: str) -> bool:
    """Return True if records from this source must never be matched on title."""
    return source.lower() in TITLE_MATCH_EXCLUDED_SOURCES


@dataclass(frozen=True)
class MatchingConfig:
    """Confidence table and thresholds for one resolution run."""

    auto_merge_threshold: int = 80
    review_threshold: int = 60

    code_exact: int = 100
    code_normalized: int = 95
    title_performer_high: int = 90
    title_performer_medium: int = 80
    title_performer_low: int = 70
    title_only_strict: int = 65
    title_only_relaxed: int = 60

    min_title_similarity: float = 0.6
    max_title_candidates: int = 20
    max_duration_diff_minutes: int = 5
    recent_code_window: int = 500

    fuzzy_name_similarity: float = 0.85
    fuzzy_name_min_length: int = 3


DEFAULT_MATCHING_CONFIG = MatchingConfig()
