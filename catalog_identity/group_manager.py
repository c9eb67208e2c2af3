"""Identity group lifecycle: create, extend, merge, split, and master selection.

Every mutation runs inside ``conn.transaction()`` and ends by recomputing the
group's master from its current members, so master choice never depends on
the order in which members arrived.
"""

from __future__ import annotations

import logging

import psycopg
from psycopg.rows import class_row

from catalog_identity.config import source_priority
from catalog_identity.models import (
    CandidateRecord,
    GroupInfo,
    GroupMember,
    GroupStats,
    MatchingMethod,
    MemberScoreRow,
)
from catalog_identity.normalize import extract_and_normalize_code

logger = logging.getLogger(__name__)

MAX_IMAGE_BONUS = 20
MAX_REVIEW_BONUS = 30


def member_score(row: MemberScoreRow) -> int:
    """Master-selection score for one member."""
    return (
        source_priority(row.asp_name)
        + min(row.image_count * 2, MAX_IMAGE_BONUS)
        + min(row.review_count * 5, MAX_REVIEW_BONUS)
    )


def select_master(rows: list[MemberScoreRow]) -> int | None:
    """Pick the representative member of a group.

    Highest score wins; ties go to the earliest created record, then the
    lowest id. Returns None for an empty member list.
    """
    if not rows:
        return None
    best = min(rows, key=lambda r: (-member_score(r), r.created_at, r.product_id))
    return best.product_id


def _fetch_score_rows(conn: psycopg.Connection, group_id: int) -> list[MemberScoreRow]:
    with conn.cursor(row_factory=class_row(MemberScoreRow)) as cur:
        cur.execute(
            """
            SELECT m.product_id,
                   m.asp_name,
                   (SELECT count(*) FROM product_images i WHERE i.product_id = m.product_id)::int
                       AS image_count,
                   (SELECT count(*) FROM product_reviews r WHERE r.product_id = m.product_id)::int
                       AS review_count,
                   p.created_at
            FROM identity_group_members m
            JOIN products p ON p.id = m.product_id
            WHERE m.group_id = %s
            """,
            (group_id,),
        )
        return cur.fetchall()


def recompute_master(conn: psycopg.Connection, group_id: int) -> int | None:
    """Re-derive and store the master of a group from its current members."""
    master_id = select_master(_fetch_score_rows(conn, group_id))
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE identity_groups SET master_product_id = %s, updated_at = now()"
            " WHERE id = %s AND master_product_id IS DISTINCT FROM %s",
            (master_id, group_id, master_id),
        )
    return master_id


def create_group(
    conn: psycopg.Connection,
    record: CandidateRecord,
    method: MatchingMethod = MatchingMethod.NEW_GROUP,
) -> int:
    """Create a group holding *record* as its only member and return its id.

    The canonical code is derived from the record and may be None.
    """
    code = extract_and_normalize_code(
        record.maker_product_code, record.normalized_product_id, record.title
    )
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO identity_groups (master_product_id, canonical_product_code)"
                " VALUES (%s, %s) RETURNING id",
                (record.id, code),
            )
            group_id = cur.fetchone()[0]
            cur.execute(
                "INSERT INTO identity_group_members"
                " (group_id, product_id, confidence_score, matching_method, asp_name)"
                " VALUES (%s, %s, 100, %s, %s)",
                (group_id, record.id, method.value, record.asp_name),
            )
    logger.debug("Created group %d for record %d (code %s)", group_id, record.id, code)
    return group_id


def add_to_group(
    conn: psycopg.Connection,
    group_id: int,
    product_id: int,
    asp_name: str,
    confidence_score: int,
    method: MatchingMethod,
) -> bool:
    """Add a record to a group and recompute the master.

    Returns:
        True if a membership row was written. False when the record is already
        in this group, or already belongs to another group (membership is
        single-group; use ``merge_groups`` to combine).
    """
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO identity_group_members"
                " (group_id, product_id, confidence_score, matching_method, asp_name)"
                " VALUES (%s, %s, %s, %s, %s)"
                " ON CONFLICT (product_id) DO NOTHING",
                (group_id, product_id, confidence_score, method.value, asp_name),
            )
            inserted = cur.rowcount == 1
        if not inserted:
            existing = get_product_group(conn, product_id)
            if existing is not None and existing.id != group_id:
                logger.warning(
                    "Record %d already belongs to group %d; not adding to group %d",
                    product_id,
                    existing.id,
                    group_id,
                )
            return False
        recompute_master(conn, group_id)
    return True


def get_product_group(conn: psycopg.Connection, product_id: int) -> GroupInfo | None:
    """Return the group a record belongs to, or None."""
    with conn.cursor(row_factory=class_row(GroupInfo)) as cur:
        cur.execute(
            """
            SELECT g.id, g.master_product_id, g.canonical_product_code,
                   (SELECT count(*) FROM identity_group_members x WHERE x.group_id = g.id)::int
                       AS member_count
            FROM identity_group_members m
            JOIN identity_groups g ON g.id = m.group_id
            WHERE m.product_id = %s
            """,
            (product_id,),
        )
        return cur.fetchone()


def merge_groups(conn: psycopg.Connection, target_id: int, source_id: int) -> int:
    """Move every member of *source_id* into *target_id* and delete the source.

    Atomic: memberships never point at a deleted group. The target inherits
    the source's canonical code when it has none. Returns the number of
    members moved; merging a group into itself moves nothing.
    """
    if target_id == source_id:
        return 0
    with conn.transaction():
        with conn.cursor() as cur:
            # Lock in id order so concurrent merges cannot deadlock.
            cur.execute(
                "SELECT id FROM identity_groups WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
                ([target_id, source_id],),
            )
            locked = {row[0] for row in cur.fetchall()}
            if locked != {target_id, source_id}:
                logger.warning(
                    "Cannot merge group %d into %d: group missing", source_id, target_id
                )
                return 0
            cur.execute(
                "UPDATE identity_group_members SET group_id = %s WHERE group_id = %s",
                (target_id, source_id),
            )
            moved = cur.rowcount
            cur.execute(
                """
                UPDATE identity_groups t
                SET canonical_product_code = s.canonical_product_code
                FROM identity_groups s
                WHERE t.id = %s AND s.id = %s
                  AND t.canonical_product_code IS NULL
                  AND s.canonical_product_code IS NOT NULL
                """,
                (target_id, source_id),
            )
            cur.execute("DELETE FROM identity_groups WHERE id = %s", (source_id,))
        recompute_master(conn, target_id)
    logger.info("Merged group %d into %d (%d members moved)", source_id, target_id, moved)
    return moved


def remove_from_group(conn: psycopg.Connection, product_id: int) -> bool:
    """Remove a record from its group, deleting the group if it empties.

    Returns True if the record was in a group.
    """
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM identity_group_members WHERE product_id = %s RETURNING group_id",
                (product_id,),
            )
            row = cur.fetchone()
            if row is None:
                return False
            group_id = row[0]
            cur.execute(
                "SELECT EXISTS (SELECT 1 FROM identity_group_members WHERE group_id = %s)",
                (group_id,),
            )
            if not cur.fetchone()[0]:
                cur.execute("DELETE FROM identity_groups WHERE id = %s", (group_id,))
                logger.debug("Deleted empty group %d", group_id)
                return True
        recompute_master(conn, group_id)
    return True


def get_group_members(conn: psycopg.Connection, group_id: int) -> list[GroupMember]:
    """Return members with the master first, then by confidence descending."""
    with conn.cursor(row_factory=class_row(GroupMember)) as cur:
        cur.execute(
            """
            SELECT m.product_id, m.asp_name, m.confidence_score, m.matching_method,
                   (m.product_id = g.master_product_id) IS TRUE AS is_master
            FROM identity_group_members m
            JOIN identity_groups g ON g.id = m.group_id
            WHERE m.group_id = %s
            ORDER BY is_master DESC, m.confidence_score DESC, m.product_id
            """,
            (group_id,),
        )
        return cur.fetchall()


def get_group_stats(conn: psycopg.Connection) -> GroupStats:
    """Summarize grouping coverage across the whole store."""
    with conn.cursor() as cur:
        cur.execute("SELECT count(*) FROM identity_groups")
        total_groups = cur.fetchone()[0]
        cur.execute(
            "SELECT matching_method, count(*) FROM identity_group_members"
            " GROUP BY matching_method ORDER BY matching_method"
        )
        by_method = {method: count for method, count in cur.fetchall()}
    total_members = sum(by_method.values())
    avg = round(total_members / total_groups, 2) if total_groups else 0.0
    return GroupStats(
        total_groups=total_groups,
        total_grouped_products=total_members,
        avg_members_per_group=avg,
        by_method=by_method,
    )


def find_split_code_groups(conn: psycopg.Connection) -> list[list[int]]:
    """Return id lists (ascending) of groups that share a canonical code."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT array_agg(id ORDER BY id)
            FROM identity_groups
            WHERE canonical_product_code IS NOT NULL
            GROUP BY canonical_product_code
            HAVING count(*) > 1
            ORDER BY min(id)
            """
        )
        return [list(row[0]) for row in cur.fetchall()]
