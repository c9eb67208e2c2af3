"""Database introspection for inferring run state.

When --resume is used but no state file exists, these functions inspect the
database to infer which batch phases have no work left.
"""

from __future__ import annotations

import psycopg

from catalog_identity.run_state import RunState


def _exists(db_url: str, sql: str) -> bool:
    conn = psycopg.connect(db_url)
    with conn.cursor() as cur:
        cur.execute(f"SELECT EXISTS ({sql})")
        result = cur.fetchone()[0]
    conn.close()
    return result


def has_ungrouped_records(db_url: str) -> bool:
    """Return True if any record with a source row belongs to no identity group."""
    return _exists(
        db_url,
        "SELECT 1 FROM products p"
        " JOIN product_sources ps ON ps.product_id = p.id"
        " WHERE NOT EXISTS ("
        "   SELECT 1 FROM identity_group_members m WHERE m.product_id = p.id"
        " )",
    )


def has_linkable_records(db_url: str) -> bool:
    """Return True if an unlinked record's maker code appears in the lookup table."""
    return _exists(
        db_url,
        "SELECT 1 FROM products p"
        " JOIN performer_lookup l ON l.product_code_normalized ="
        "   upper(regexp_replace(p.maker_product_code, '[-_\\s]', '', 'g'))"
        " WHERE p.maker_product_code IS NOT NULL"
        "   AND NOT EXISTS ("
        "     SELECT 1 FROM product_performers pp WHERE pp.product_id = p.id"
        "   )",
    )


def has_unpropagated_groups(db_url: str) -> bool:
    """Return True if a group mixes members with and without performer links."""
    return _exists(
        db_url,
        "SELECT 1 FROM identity_group_members m"
        " LEFT JOIN product_performers pp ON pp.product_id = m.product_id"
        " GROUP BY m.group_id"
        " HAVING bool_or(pp.product_id IS NULL) AND bool_or(pp.product_id IS NOT NULL)",
    )


def infer_run_state(db_url: str) -> RunState:
    """Infer run state from database contents.

    Useful when --resume is used but no state file exists. Phases whose work
    set is empty are marked completed, in order, stopping at the first one
    that still has work.

    Phases that cannot be inferred (the dedup and merge phases, debut-year
    backfill, stat resync) are left as pending since they are safe to re-run.
    """
    state = RunState(db_url=db_url)

    if has_ungrouped_records(db_url):
        return state
    state.mark_completed("resolve_identities")

    if has_linkable_records(db_url):
        return state
    state.mark_completed("link_from_lookup")

    if has_unpropagated_groups(db_url):
        return state
    state.mark_completed("propagate_links")

    return state
