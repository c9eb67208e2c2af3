"""Product-code matching against existing records and groups.

Roughly a third of sources never expose a maker code, so a missing code is
the common case and simply yields no match.
"""

from __future__ import annotations

import logging

import psycopg
from psycopg.rows import class_row

from catalog_identity.config import DEFAULT_MATCHING_CONFIG, MatchingConfig
from catalog_identity.models import CandidateRecord, CodeCandidate, MatchingMethod, MatchResult
from catalog_identity.normalize import extract_and_normalize_code, normalize_product_code

logger = logging.getLogger(__name__)


def _find_exact_code(conn: psycopg.Connection, record: CandidateRecord) -> CodeCandidate | None:
    with conn.cursor(row_factory=class_row(CodeCandidate)) as cur:
        cur.execute(
            """
            SELECT p.id AS product_id, m.group_id, ps.asp_name, p.maker_product_code
            FROM products p
            JOIN product_sources ps ON ps.product_id = p.id
            LEFT JOIN identity_group_members m ON m.product_id = p.id
            WHERE p.maker_product_code = %s
              AND p.id <> %s
            ORDER BY (m.group_id IS NULL), p.id
            LIMIT 1
            """,
            (record.maker_product_code, record.id),
        )
        return cur.fetchone()


def _find_group_by_canonical_code(
    conn: psycopg.Connection, code: str, exclude_product_id: int
) -> CodeCandidate | None:
    with conn.cursor(row_factory=class_row(CodeCandidate)) as cur:
        cur.execute(
            """
            SELECT m.product_id, g.id AS group_id, m.asp_name,
                   g.canonical_product_code AS maker_product_code
            FROM identity_groups g
            JOIN identity_group_members m ON m.group_id = g.id
            WHERE g.canonical_product_code = %s
              AND m.product_id <> %s
            ORDER BY (m.product_id = g.master_product_id) DESC, g.id, m.product_id
            LIMIT 1
            """,
            (code, exclude_product_id),
        )
        return cur.fetchone()


def _scan_recent_codes(
    conn: psycopg.Connection, code: str, record_id: int, window: int
) -> CodeCandidate | None:
    """Compare normalized codes across the most recent *window* coded records.

    Older records are deliberately out of reach of this path.
    """
    with conn.cursor(row_factory=class_row(CodeCandidate)) as cur:
        cur.execute(
            """
            SELECT p.id AS product_id, m.group_id, ps.asp_name, p.maker_product_code
            FROM products p
            JOIN product_sources ps ON ps.product_id = p.id
            LEFT JOIN identity_group_members m ON m.product_id = p.id
            WHERE p.maker_product_code IS NOT NULL
              AND p.id <> %s
            ORDER BY p.created_at DESC, p.id DESC
            LIMIT %s
            """,
            (record_id, window),
        )
        for candidate in cur:
            if normalize_product_code(candidate.maker_product_code) == code:
                return candidate
    return None


def find_match_by_product_code(
    conn: psycopg.Connection,
    record: CandidateRecord,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> MatchResult | None:
    """Find an existing record or group carrying the same product code.

    Returns:
        A ``code_exact`` match when another record has the identical maker
        code, a ``code_normalized`` match when normalized codes agree, or
        None.
    """
    if record.maker_product_code:
        hit = _find_exact_code(conn, record)
        if hit is not None:
            return MatchResult(
                product_id=hit.product_id,
                group_id=hit.group_id,
                confidence_score=config.code_exact,
                matching_method=MatchingMethod.CODE_EXACT,
                asp_name=hit.asp_name,
            )

    code = extract_and_normalize_code(
        record.maker_product_code, record.normalized_product_id, record.title
    )
    if code is None:
        return None

    hit = _find_group_by_canonical_code(conn, code, record.id)
    if hit is None:
        hit = _scan_recent_codes(conn, code, record.id, config.recent_code_window)
    if hit is None:
        return None

    logger.debug("Record %d: normalized code %s matched record %d", record.id, code, hit.product_id)
    return MatchResult(
        product_id=hit.product_id,
        group_id=hit.group_id,
        confidence_score=config.code_normalized,
        matching_method=MatchingMethod.CODE_NORMALIZED,
        asp_name=hit.asp_name,
    )
