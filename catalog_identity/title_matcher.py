"""Fuzzy title matching backed by pg_trgm, refined by performer overlap."""

from __future__ import annotations

import logging

import psycopg
from psycopg.rows import class_row

from catalog_identity.config import (
    DEFAULT_MATCHING_CONFIG,
    TITLE_MATCH_EXCLUDED_SOURCES,
    MatchingConfig,
    is_title_match_excluded,
)
from catalog_identity.models import CandidateRecord, MatchingMethod, MatchResult, TitleCandidate
from catalog_identity.normalize import normalize_performer_name, normalize_title

logger = logging.getLogger(__name__)


def count_matched_performers(left: list[str], right: list[str]) -> int:
    """Count performers present in both lists after normalization.

    Set intersection on normalized names, never substring matching.
    """
    a = {normalize_performer_name(name) for name in left} - {""}
    b = {normalize_performer_name(name) for name in right} - {""}
    return len(a & b)


def evaluate_candidate(
    record: CandidateRecord,
    candidate: TitleCandidate,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> MatchResult | None:
    """Apply the title rules to one candidate; the first satisfied rule wins."""
    sim = candidate.similarity
    matched = count_matched_performers(record.performers, candidate.performers)
    candidate_total = len({normalize_performer_name(n) for n in candidate.performers} - {""})

    method = None
    score = 0
    if sim >= 0.8 and candidate_total > 0 and matched == candidate_total:
        method, score = MatchingMethod.TITLE_PERFORMER_HIGH, config.title_performer_high
    elif sim >= 0.7 and matched >= 2:
        method, score = MatchingMethod.TITLE_PERFORMER_MEDIUM, config.title_performer_medium
    elif sim >= config.min_title_similarity and matched >= 1:
        method, score = MatchingMethod.TITLE_PERFORMER_LOW, config.title_performer_low
    elif (
        sim >= 0.9
        and record.duration is not None
        and candidate.duration is not None
        and abs(record.duration - candidate.duration) <= config.max_duration_diff_minutes
    ):
        method, score = MatchingMethod.TITLE_ONLY_STRICT, config.title_only_strict
    elif (
        sim >= 0.85
        and record.release_date is not None
        and record.release_date == candidate.release_date
    ):
        method, score = MatchingMethod.TITLE_ONLY_RELAXED, config.title_only_relaxed

    if method is None:
        return None
    return MatchResult(
        product_id=candidate.product_id,
        group_id=candidate.group_id,
        confidence_score=score,
        matching_method=method,
        asp_name=candidate.asp_name,
        title_similarity=sim,
        matched_performer_count=matched,
    )


def find_title_candidates(
    conn: psycopg.Connection,
    record: CandidateRecord,
    normalized: str,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> list[TitleCandidate]:
    """Return records with a trigram-similar normalized title, most similar first."""
    with conn.cursor(row_factory=class_row(TitleCandidate)) as cur:
        cur.execute(
            """
            SELECT p.id AS product_id,
                   m.group_id,
                   ps.asp_name,
                   similarity(p.normalized_title, %(title)s) AS similarity,
                   p.release_date,
                   p.duration,
                   COALESCE(
                       (
                           SELECT array_agg(perf.name ORDER BY perf.name)
                           FROM product_performers pp
                           JOIN performers perf ON perf.id = pp.performer_id
                           WHERE pp.product_id = p.id
                       ),
                       '{}'::text[]
                   ) AS performers
            FROM products p
            JOIN LATERAL (
                SELECT asp_name FROM product_sources
                WHERE product_id = p.id
                ORDER BY id
                LIMIT 1
            ) ps ON true
            LEFT JOIN identity_group_members m ON m.product_id = p.id
            WHERE p.id <> %(id)s
              AND ps.asp_name <> %(source)s
              AND lower(ps.asp_name) <> ALL(%(excluded)s)
              AND p.normalized_title IS NOT NULL
              AND similarity(p.normalized_title, %(title)s) >= %(floor)s
            ORDER BY similarity DESC, p.id
            LIMIT %(cap)s
            """,
            {
                "title": normalized,
                "id": record.id,
                "source": record.asp_name,
                "excluded": sorted(TITLE_MATCH_EXCLUDED_SOURCES),
                "floor": config.min_title_similarity,
                "cap": config.max_title_candidates,
            },
        )
        return cur.fetchall()


def find_match_by_title(
    conn: psycopg.Connection,
    record: CandidateRecord,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> MatchResult | None:
    """Find the best title/performer match for a record.

    Candidates arrive sorted by similarity, so the first candidate satisfying
    any rule is returned (greedy, not a global optimum).
    """
    if is_title_match_excluded(record.asp_name):
        return None
    normalized = record.normalized_title or normalize_title(record.title)
    if not normalized:
        return None

    for candidate in find_title_candidates(conn, record, normalized, config):
        result = evaluate_candidate(record, candidate, config)
        if result is not None:
            logger.debug(
                "Record %d: title match with %d (similarity %.2f, %s)",
                record.id,
                candidate.product_id,
                candidate.similarity,
                result.matching_method.value,
            )
            return result
    return None
