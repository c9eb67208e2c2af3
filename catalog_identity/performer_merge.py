"""Transactional merge of one performer into another."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psycopg

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    links_moved: int = 0
    links_dropped: int = 0
    aliases_added: int = 0
    aliases_moved: int = 0
    merged: bool = False


def merge_performers(
    conn: psycopg.Connection, loser_id: int, winner_id: int, alias_source: str
) -> MergeOutcome:
    """Fold *loser_id* into *winner_id* and delete the loser.

    Product links and aliases move to the winner, skipping pairs the winner
    already has; the loser's own name becomes an alias of the winner. All
    steps run in one transaction. Merging a performer into itself, or a loser
    that no longer exists, changes nothing.

    Args:
        conn: Store connection.
        loser_id: Performer to remove.
        winner_id: Performer that absorbs the loser.
        alias_source: Provenance tag written on the alias created from the
            loser's name (e.g. ``"dedup_key"``).

    Returns:
        Counts of what moved, with ``merged`` True only when the loser row was
        deleted.
    """
    outcome = MergeOutcome()
    if loser_id == winner_id:
        return outcome

    with conn.transaction():
        with conn.cursor() as cur:
            # Lock both rows in id order so concurrent merges cannot deadlock.
            cur.execute(
                "SELECT id, name FROM performers WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
                ([loser_id, winner_id],),
            )
            names = dict(cur.fetchall())
            if loser_id not in names or winner_id not in names:
                logger.debug(
                    "Skipping merge %d -> %d: performer no longer exists", loser_id, winner_id
                )
                return outcome

            cur.execute(
                """
                UPDATE product_performers pp
                SET performer_id = %(winner)s
                WHERE pp.performer_id = %(loser)s
                  AND NOT EXISTS (
                      SELECT 1 FROM product_performers w
                      WHERE w.product_id = pp.product_id AND w.performer_id = %(winner)s
                  )
                """,
                {"winner": winner_id, "loser": loser_id},
            )
            outcome.links_moved = cur.rowcount

            cur.execute("DELETE FROM product_performers WHERE performer_id = %s", (loser_id,))
            outcome.links_dropped = cur.rowcount

            cur.execute(
                "INSERT INTO performer_aliases (performer_id, alias_name, source)"
                " VALUES (%s, %s, %s)"
                " ON CONFLICT (performer_id, alias_name) DO NOTHING",
                (winner_id, names[loser_id], alias_source),
            )
            outcome.aliases_added = cur.rowcount

            cur.execute(
                """
                UPDATE performer_aliases a
                SET performer_id = %(winner)s
                WHERE a.performer_id = %(loser)s
                  AND NOT EXISTS (
                      SELECT 1 FROM performer_aliases w
                      WHERE w.performer_id = %(winner)s AND w.alias_name = a.alias_name
                  )
                """,
                {"winner": winner_id, "loser": loser_id},
            )
            outcome.aliases_moved = cur.rowcount

            cur.execute("DELETE FROM performer_aliases WHERE performer_id = %s", (loser_id,))
            cur.execute("DELETE FROM performers WHERE id = %s", (loser_id,))
            outcome.merged = cur.rowcount == 1

    logger.info(
        "Merged performer %d (%s) into %d (%s): %d links moved, %d aliases moved",
        loser_id,
        names[loser_id],
        winner_id,
        names[winner_id],
        outcome.links_moved,
        outcome.aliases_moved,
    )
    return outcome
