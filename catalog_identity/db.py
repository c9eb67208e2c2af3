"""Connection helpers and candidate-record queries."""

from __future__ import annotations

import logging
import time

import psycopg
from psycopg.rows import class_row

from catalog_identity.models import CandidateRecord

logger = logging.getLogger(__name__)

# Maximum seconds to wait for Postgres to become ready.
PG_CONNECT_TIMEOUT = 30

# Shared select list; performer names are aggregated per record.
CANDIDATE_COLUMNS = """
    p.id,
    p.normalized_product_id,
    p.maker_product_code,
    p.title,
    p.normalized_title,
    p.release_date,
    p.duration,
    ps.asp_name,
    COALESCE(
        (
            SELECT array_agg(perf.name ORDER BY perf.name)
            FROM product_performers pp
            JOIN performers perf ON perf.id = pp.performer_id
            WHERE pp.product_id = p.id
        ),
        '{}'::text[]
    ) AS performers
"""

# One source row per product; the lowest id wins when a product has several.
CANDIDATE_FROM = """
    FROM products p
    JOIN LATERAL (
        SELECT asp_name FROM product_sources
        WHERE product_id = p.id
        ORDER BY id
        LIMIT 1
    ) ps ON true
"""


def connect(db_url: str) -> psycopg.Connection:
    """Open an autocommit connection; callers group writes with ``conn.transaction()``."""
    return psycopg.connect(db_url, autocommit=True)


def wait_for_postgres(db_url: str, timeout: float = PG_CONNECT_TIMEOUT) -> None:
    """Poll Postgres until a connection succeeds.

    Raises:
        psycopg.OperationalError: if the database is still unreachable after
            *timeout* seconds.
    """
    logger.info("Waiting for PostgreSQL at %s ...", db_url)
    deadline = time.monotonic() + timeout
    delay = 0.5
    while True:
        try:
            conn = psycopg.connect(db_url, connect_timeout=5)
            conn.close()
            logger.info("PostgreSQL is ready.")
            return
        except psycopg.OperationalError:
            if time.monotonic() >= deadline:
                logger.error("Timed out waiting for PostgreSQL after %ds", timeout)
                raise
            time.sleep(delay)
            delay = min(delay * 2, 3)


def _source_filter(target_sources: list[str] | None) -> tuple[str, list]:
    if not target_sources:
        return "", []
    return " AND ps.asp_name = ANY(%s)", [list(target_sources)]


def fetch_record(conn: psycopg.Connection, record_id: int) -> CandidateRecord | None:
    """Load one record in matching form, or None if it has no source row."""
    with conn.cursor(row_factory=class_row(CandidateRecord)) as cur:
        cur.execute(
            f"SELECT {CANDIDATE_COLUMNS} {CANDIDATE_FROM} WHERE p.id = %s",
            (record_id,),
        )
        return cur.fetchone()


def fetch_ungrouped_records(
    conn: psycopg.Connection,
    limit: int,
    offset: int = 0,
    target_sources: list[str] | None = None,
) -> list[CandidateRecord]:
    """Return records that belong to no identity group, ordered by id."""
    source_sql, source_params = _source_filter(target_sources)
    with conn.cursor(row_factory=class_row(CandidateRecord)) as cur:
        cur.execute(
            f"""
            SELECT {CANDIDATE_COLUMNS} {CANDIDATE_FROM}
            WHERE NOT EXISTS (
                SELECT 1 FROM identity_group_members m WHERE m.product_id = p.id
            ){source_sql}
            ORDER BY p.id
            LIMIT %s OFFSET %s
            """,
            (*source_params, limit, offset),
        )
        return cur.fetchall()


def fetch_recent_records(
    conn: psycopg.Connection,
    hours: int,
    limit: int,
    offset: int = 0,
    target_sources: list[str] | None = None,
) -> list[CandidateRecord]:
    """Return ungrouped records created in the last *hours*, newest first."""
    source_sql, source_params = _source_filter(target_sources)
    with conn.cursor(row_factory=class_row(CandidateRecord)) as cur:
        cur.execute(
            f"""
            SELECT {CANDIDATE_COLUMNS} {CANDIDATE_FROM}
            WHERE NOT EXISTS (
                SELECT 1 FROM identity_group_members m WHERE m.product_id = p.id
            )
              AND p.created_at >= now() - make_interval(hours => %s){source_sql}
            ORDER BY p.created_at DESC, p.id DESC
            LIMIT %s OFFSET %s
            """,
            (hours, *source_params, limit, offset),
        )
        return cur.fetchall()


def count_ungrouped_records(
    conn: psycopg.Connection, target_sources: list[str] | None = None
) -> int:
    """Return how many records still belong to no identity group."""
    source_sql, source_params = _source_filter(target_sources)
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT count(*) {CANDIDATE_FROM}
            WHERE NOT EXISTS (
                SELECT 1 FROM identity_group_members m WHERE m.product_id = p.id
            ){source_sql}
            """,
            source_params,
        )
        return int(cur.fetchone()[0])
