"""Performer phases of the batch: link, propagate, dedup, and stat resync.

Each phase takes a connection and the run's ``RunContext`` and returns its
``PhaseStats``. Phases are idempotent: inserts use ``ON CONFLICT DO NOTHING``,
merges re-check existence under lock, and resyncs only write rows whose
computed value differs. When the run's change set is non-empty a phase only
looks at the ids it names; otherwise it scans everything.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Callable, Iterable

import psycopg
from psycopg.rows import class_row
from rapidfuzz import fuzz, process

from catalog_identity.models import LookupHit, PerformerRow
from catalog_identity.normalize import (
    generate_code_variants,
    generate_normalized_key,
    is_fake_performer_name,
    is_valid_performer_name,
    kanji_spelling,
    lookup_key,
    normalize_performer_name,
)
from catalog_identity.performer_merge import MergeOutcome, merge_performers
from catalog_identity.stats import ErrorBudget, PhaseStats, RunContext

logger = logging.getLogger(__name__)

# Per-run caps when no --limit is given.
LOOKUP_PRODUCT_LIMIT = 5000
FAKE_NAME_LIMIT = 500

# Plausible range for a debut year.
MIN_DEBUT_YEAR = 1950

ALIAS_SOURCE_KEY = "dedup_key"
ALIAS_SOURCE_FUZZY = "dedup_fuzzy"
ALIAS_SOURCE_FAKE = "fake_name"


def _run_units(
    conn: psycopg.Connection,
    ctx: RunContext,
    stats: PhaseStats,
    units: Iterable,
    handle: Callable,
    label: str,
    on_commit: Callable | None = None,
) -> None:
    """Apply *handle* to each unit inside its own transaction.

    When *on_commit* is given it receives the value *handle* returned, once
    that unit's transaction has committed; a unit that fails leaves no trace
    in the run's counters. Stops when the time budget runs out or after too
    many consecutive failures. Transient store errors propagate to the caller.
    """
    budget = ErrorBudget(ctx.max_consecutive_errors)
    for index, unit in enumerate(units):
        if ctx.deadline.expired():
            logger.warning("%s: time budget exhausted", label)
            stats.timed_out = True
            return
        try:
            with conn.transaction():
                result = handle(unit)
        except psycopg.OperationalError:
            raise
        except Exception:
            logger.exception("%s: unit %d failed", label, index)
            stats.errors += 1
            if budget.failure():
                logger.error("%s: aborting after %d consecutive errors", label, budget.consecutive)
                stats.aborted = True
                return
            continue
        budget.success()
        if on_commit is not None:
            on_commit(result)


def _chunks(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), max(size, 1))]


def _scoped_performer_ids(conn: psycopg.Connection, ctx: RunContext) -> set[int] | None:
    """Performers touched this run, directly or through a touched product.

    Returns None when nothing was touched, meaning "scan everything".
    """
    changes = ctx.changes
    if not changes:
        return None
    ids = set(changes.performer_ids)
    if changes.product_ids:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT DISTINCT performer_id FROM product_performers WHERE product_id = ANY(%s)",
                (sorted(changes.product_ids),),
            )
            ids.update(row[0] for row in cur.fetchall())
    return ids - changes.merged_performer_ids


def _scoped_product_ids(conn: psycopg.Connection, ctx: RunContext) -> set[int] | None:
    changes = ctx.changes
    if not changes:
        return None
    ids = set(changes.product_ids)
    if changes.performer_ids:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT DISTINCT product_id FROM product_performers WHERE performer_id = ANY(%s)",
                (sorted(changes.performer_ids),),
            )
            ids.update(row[0] for row in cur.fetchall())
    return ids


def _fetch_linked_performers(conn: psycopg.Connection) -> list[PerformerRow]:
    with conn.cursor(row_factory=class_row(PerformerRow)) as cur:
        cur.execute(
            """
            SELECT pf.id, pf.name, pf.release_count
            FROM performers pf
            WHERE EXISTS (SELECT 1 FROM product_performers pp WHERE pp.performer_id = pf.id)
            ORDER BY pf.id
            """
        )
        return cur.fetchall()


def _fetch_lookup_hits(conn: psycopg.Connection, keys: Iterable[str]) -> dict[str, list[LookupHit]]:
    """Batch-search the lookup table; results keyed by normalized code."""
    keys = sorted(set(keys))
    hits: dict[str, list[LookupHit]] = defaultdict(list)
    if not keys:
        return hits
    with conn.cursor(row_factory=class_row(LookupHit)) as cur:
        cur.execute(
            """
            SELECT product_code_normalized AS code, performer_name, source
            FROM performer_lookup
            WHERE product_code_normalized = ANY(%s)
            ORDER BY product_code_normalized, source, performer_name
            """,
            (keys,),
        )
        for hit in cur:
            hits[hit.code].append(hit)
    return hits


def _upsert_performers(conn: psycopg.Connection, names: list[str]) -> dict[str, int]:
    """Insert missing performers by name and return ``{name: id}`` for all of them."""
    if not names:
        return {}
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO performers (name)
            SELECT DISTINCT unnest(%s::text[])
            ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
            RETURNING name, id
            """,
            (names,),
        )
        return dict(cur.fetchall())


def _insert_links(conn: psycopg.Connection, pairs: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Insert (product_id, performer_id) links, returning only the new ones."""
    if not pairs:
        return []
    product_ids, performer_ids = zip(*pairs)
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO product_performers (product_id, performer_id)
            SELECT * FROM unnest(%s::int[], %s::int[])
            ON CONFLICT DO NOTHING
            RETURNING product_id, performer_id
            """,
            (list(product_ids), list(performer_ids)),
        )
        return cur.fetchall()


# ---------------------------------------------------------------------------
# Phase 1: link unlinked products from the lookup table
# ---------------------------------------------------------------------------


def link_from_lookup(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Link products that have no performers to names found in the lookup table."""
    stats = PhaseStats()
    scope = sorted(ctx.changes.product_ids) if ctx.changes.product_ids else None
    limit = ctx.limit or LOOKUP_PRODUCT_LIMIT
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT p.id, p.normalized_product_id,
                   COALESCE(p.maker_product_code, min(ps.original_product_id))
            FROM products p
            LEFT JOIN product_sources ps ON ps.product_id = p.id
            WHERE NOT EXISTS (SELECT 1 FROM product_performers pp WHERE pp.product_id = p.id)
              AND (%(scope)s::int[] IS NULL OR p.id = ANY(%(scope)s::int[]))
            GROUP BY p.id
            ORDER BY p.id DESC
            LIMIT %(limit)s
            """,
            {"scope": scope, "limit": limit},
        )
        products = cur.fetchall()
    logger.info("Products without performers: %d", len(products))

    def handle(chunk: list[tuple[int, str, str | None]]) -> None:
        keys_by_product = {
            product_id: [lookup_key(v) for v in generate_code_variants(normalized_id, code)]
            for product_id, normalized_id, code in chunk
        }
        hits = _fetch_lookup_hits(conn, (k for keys in keys_by_product.values() for k in keys))
        wanted: dict[int, list[str]] = {}
        for product_id, keys in keys_by_product.items():
            names = [hit.performer_name.strip() for key in keys for hit in hits.get(key, [])]
            valid = [n for n in dict.fromkeys(names) if is_valid_performer_name(n)]
            stats.details["invalid_names"] += len(set(names)) - len(valid)
            if valid:
                wanted[product_id] = valid
        stats.processed += len(chunk)
        stats.details["lookup_hits"] += len(wanted)
        if not wanted:
            return
        ids = _upsert_performers(conn, sorted({n for names in wanted.values() for n in names}))
        pairs = [(pid, ids[name]) for pid, names in wanted.items() for name in names]
        created = _insert_links(conn, pairs)
        stats.created += len(created)
        stats.skipped += len(pairs) - len(created)
        ctx.changes.touch_products(pid for pid, _ in created)
        ctx.changes.touch_performers(perf for _, perf in created)

    _run_units(conn, ctx, stats, _chunks(products, ctx.batch_size), handle, "link_from_lookup")
    return stats


# ---------------------------------------------------------------------------
# Phase 2: cross-source propagation
# ---------------------------------------------------------------------------

PROPAGATE_BY_GROUP_SQL = """
    WITH linked AS (
        SELECT DISTINCT m.group_id, pp.performer_id
        FROM identity_group_members m
        JOIN product_performers pp ON pp.product_id = m.product_id
    ),
    targets AS (
        SELECT m.group_id, m.product_id
        FROM identity_group_members m
        WHERE NOT EXISTS (
            SELECT 1 FROM product_performers pp WHERE pp.product_id = m.product_id
        )
          AND (
              %(scope)s::int[] IS NULL
              OR m.group_id IN (
                  SELECT group_id FROM identity_group_members
                  WHERE product_id = ANY(%(scope)s::int[])
              )
          )
    )
    INSERT INTO product_performers (product_id, performer_id)
    SELECT DISTINCT t.product_id, l.performer_id
    FROM targets t
    JOIN linked l ON l.group_id = t.group_id
    ON CONFLICT DO NOTHING
    RETURNING product_id, performer_id
"""

PROPAGATE_BY_CODE_SQL = """
    WITH linked AS (
        SELECT DISTINCT p.maker_product_code AS code, pp.performer_id
        FROM products p
        JOIN product_performers pp ON pp.product_id = p.id
        WHERE p.maker_product_code IS NOT NULL
    ),
    targets AS (
        SELECT p.id, p.maker_product_code AS code
        FROM products p
        WHERE p.maker_product_code IS NOT NULL
          AND NOT EXISTS (SELECT 1 FROM product_performers pp WHERE pp.product_id = p.id)
          AND (
              %(scope)s::int[] IS NULL
              OR p.maker_product_code IN (
                  SELECT maker_product_code FROM products WHERE id = ANY(%(scope)s::int[])
              )
          )
    )
    INSERT INTO product_performers (product_id, performer_id)
    SELECT DISTINCT t.id, l.performer_id
    FROM targets t
    JOIN linked l ON l.code = t.code
    ON CONFLICT DO NOTHING
    RETURNING product_id, performer_id
"""


def propagate_links(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Copy performer links onto unlinked records that are known to be the same release.

    The group pass covers members of one identity group; the code pass covers
    records sharing a maker code that have not been grouped together yet.
    """
    stats = PhaseStats()
    scope = sorted(ctx.changes.product_ids) if ctx.changes.product_ids else None

    def handle(unit: tuple[str, str]) -> None:
        label, sql = unit
        with conn.cursor() as cur:
            cur.execute(sql, {"scope": scope})
            rows = cur.fetchall()
        products = {pid for pid, _ in rows}
        stats.processed += len(products)
        stats.created += len(rows)
        stats.details[f"{label}_links"] += len(rows)
        ctx.changes.touch_products(products)
        ctx.changes.touch_performers(perf for _, perf in rows)

    passes = [("group", PROPAGATE_BY_GROUP_SQL), ("code", PROPAGATE_BY_CODE_SQL)]
    _run_units(conn, ctx, stats, passes, handle, "propagate_links")
    return stats


# ---------------------------------------------------------------------------
# Phases 3-5: performer dedup
# ---------------------------------------------------------------------------


def pick_primary(rows: list[PerformerRow]) -> PerformerRow:
    """The performer that survives a merge: most releases, then lowest id."""
    return min(rows, key=lambda r: (-r.release_count, r.id))


def group_by_normalized_key(rows: list[PerformerRow]) -> dict[str, list[PerformerRow]]:
    """Bucket performers by normalization key, keeping only buckets of two or more.

    A reading shared by differently written kanji names ("佐藤愛", "佐藤藍")
    is split by kanji spelling. Kana-only and Latin members of such a bucket
    could belong to any of the spellings and are left out.
    """
    buckets: dict[str, list[PerformerRow]] = defaultdict(list)
    for row in rows:
        key = generate_normalized_key(row.name)
        if key:
            buckets[key].append(row)

    result: dict[str, list[PerformerRow]] = {}
    for key, members in buckets.items():
        spellings: dict[str, list[PerformerRow]] = defaultdict(list)
        for row in members:
            spelling = kanji_spelling(row.name)
            if spelling is not None:
                spellings[spelling].append(row)
        if len(spellings) <= 1:
            split = {key: members}
        else:
            split = {f"{key}:{spelling}": group for spelling, group in spellings.items()}
        result.update((k, group) for k, group in split.items() if len(group) > 1)
    return result


Merge = tuple[PerformerRow, PerformerRow, MergeOutcome]


def _merge(
    conn: psycopg.Connection, loser: PerformerRow, winner: PerformerRow, alias_source: str
) -> Merge:
    return loser, winner, merge_performers(conn, loser.id, winner.id, alias_source)


def _record_merges(ctx: RunContext, stats: PhaseStats, merges: Iterable[Merge]) -> None:
    for loser, winner, outcome in merges:
        if outcome.merged:
            stats.merged += 1
            stats.details["links_moved"] += outcome.links_moved
            stats.details["aliases_added"] += outcome.aliases_added
            ctx.changes.record_merge(loser.id, winner.id)
            winner.release_count += outcome.links_moved
        else:
            stats.skipped += 1


def dedup_by_key(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Merge linked performers whose names share a normalization key."""
    stats = PhaseStats()
    scope = _scoped_performer_ids(conn, ctx)
    buckets = group_by_normalized_key(_fetch_linked_performers(conn))
    if scope is not None:
        buckets = {
            key: rows for key, rows in buckets.items() if any(r.id in scope for r in rows)
        }
    logger.info("Normalization-key buckets with duplicates: %d", len(buckets))

    def handle(rows: list[PerformerRow]) -> list[Merge]:
        stats.processed += len(rows)
        primary = pick_primary(rows)
        return [_merge(conn, row, primary, ALIAS_SOURCE_KEY) for row in rows if row is not primary]

    def on_commit(merges: list[Merge]) -> None:
        _record_merges(ctx, stats, merges)

    _run_units(conn, ctx, stats, list(buckets.values()), handle, "dedup_by_key", on_commit)
    return stats


def find_fuzzy_pairs(
    rows: list[PerformerRow],
    threshold: float,
    min_length: int,
    query_ids: set[int] | None = None,
) -> list[tuple[PerformerRow, PerformerRow, float]]:
    """Find performer pairs whose normalized names are similar above *threshold*.

    Names are compared only within the same first character. When *query_ids*
    is given, only pairs involving at least one of those performers are
    returned. Pairs come back most similar first.
    """
    blocks: dict[str, list[tuple[str, PerformerRow]]] = defaultdict(list)
    for row in rows:
        name = normalize_performer_name(row.name)
        if len(name) >= min_length:
            blocks[name[0]].append((name, row))

    cutoff = threshold * 100
    seen: set[tuple[int, int]] = set()
    pairs = []
    for block in blocks.values():
        names = [name for name, _ in block]
        for name, row in block:
            if query_ids is not None and row.id not in query_ids:
                continue
            for _, score, idx in process.extract(
                name, names, scorer=fuzz.ratio, score_cutoff=cutoff, limit=None
            ):
                other = block[idx][1]
                if other.id == row.id or score <= cutoff:
                    continue
                key = (min(row.id, other.id), max(row.id, other.id))
                if key in seen:
                    continue
                seen.add(key)
                pairs.append((row, other, score / 100))
    pairs.sort(key=lambda p: (-p[2], min(p[0].id, p[1].id), max(p[0].id, p[1].id)))
    return pairs


def dedup_fuzzy(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Merge linked performers whose names are near-identical strings."""
    stats = PhaseStats()
    scope = _scoped_performer_ids(conn, ctx)
    merged = ctx.changes.merged_performer_ids
    rows = [r for r in _fetch_linked_performers(conn) if r.id not in merged]
    pairs = find_fuzzy_pairs(
        rows, ctx.config.fuzzy_name_similarity, ctx.config.fuzzy_name_min_length, scope
    )
    logger.info("Fuzzy name pairs above %.2f: %d", ctx.config.fuzzy_name_similarity, len(pairs))

    def handle(pair: tuple[PerformerRow, PerformerRow, float]) -> list[Merge]:
        left, right, similarity = pair
        stats.processed += 1
        merged = ctx.changes.merged_performer_ids
        if left.id in merged or right.id in merged:
            stats.skipped += 1
            return []
        winner = pick_primary([left, right])
        loser = right if winner is left else left
        logger.debug(
            "Fuzzy merge %r -> %r (similarity %.2f)", loser.name, winner.name, similarity
        )
        return [_merge(conn, loser, winner, ALIAS_SOURCE_FUZZY)]

    def on_commit(merges: list[Merge]) -> None:
        _record_merges(ctx, stats, merges)

    _run_units(conn, ctx, stats, pairs, handle, "dedup_fuzzy", on_commit)
    return stats


def _fetch_fake_candidates(conn: psycopg.Connection, ctx: RunContext) -> list[tuple]:
    """Linked placeholder performers with one of their products, its code and its source."""
    scope = _scoped_performer_ids(conn, ctx)
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT DISTINCT ON (pf.id)
                   pf.id, pf.name, p.id, p.normalized_product_id,
                   COALESCE(p.maker_product_code, ps.original_product_id),
                   ps.asp_name
            FROM performers pf
            JOIN product_performers pp ON pp.performer_id = pf.id
            JOIN products p ON p.id = pp.product_id
            LEFT JOIN product_sources ps ON ps.product_id = p.id
            WHERE (%s::int[] IS NULL OR pf.id = ANY(%s::int[]))
            ORDER BY pf.id, p.id, ps.id
            """,
            (None if scope is None else sorted(scope),) * 2,
        )
        rows = cur.fetchall()
    limit = ctx.limit or FAKE_NAME_LIMIT
    fakes = [row for row in rows if is_fake_performer_name(row[1])]
    return fakes[:limit]


def _linked_names(conn: psycopg.Connection, product_id: int) -> set[str]:
    """Normalized names of every performer linked to a product."""
    with conn.cursor() as cur:
        cur.execute(
            "SELECT pf.name FROM product_performers pp"
            " JOIN performers pf ON pf.id = pp.performer_id"
            " WHERE pp.product_id = %s",
            (product_id,),
        )
        return {normalize_performer_name(row[0]) for row in cur.fetchall()}


def _same_code_performers(
    conn: psycopg.Connection,
    product_id: int,
    source: str | None,
    variants: list[str],
) -> list[PerformerRow]:
    """Performers on other listings of the same code from the same source.

    Performers already linked to *product_id* are excluded: the placeholder
    stands for someone the product does not credit yet.
    """
    keys = sorted({lookup_key(v) for v in variants})
    with conn.cursor(row_factory=class_row(PerformerRow)) as cur:
        cur.execute(
            """
            SELECT DISTINCT pf.id, pf.name, pf.release_count
            FROM products p
            JOIN product_sources ps ON ps.product_id = p.id
            JOIN product_performers pp ON pp.product_id = p.id
            JOIN performers pf ON pf.id = pp.performer_id
            WHERE p.id <> %(product)s
              AND ps.asp_name = %(source)s
              AND NOT EXISTS (
                  SELECT 1 FROM product_performers own
                  WHERE own.product_id = %(product)s AND own.performer_id = pf.id
              )
              AND (
                  upper(regexp_replace(p.maker_product_code, %(strip)s, '', 'g')) = ANY(%(keys)s)
                  OR upper(regexp_replace(ps.original_product_id, %(strip)s, '', 'g'))
                      = ANY(%(keys)s)
              )
            ORDER BY pf.release_count DESC, pf.id
            """,
            {"product": product_id, "source": source, "keys": keys, "strip": r"[-_\s]"},
        )
        return [row for row in cur.fetchall() if not is_fake_performer_name(row.name)]


def merge_fake_names(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Merge placeholder performers into the real performer once one can be found.

    The real name comes from the lookup table first, then from other listings
    of the same code by the same source. Names the placeholder's product
    already credits are ruled out. A placeholder is merged only when exactly
    one candidate remains; with none or several it is left alone.
    """
    stats = PhaseStats()
    fakes = _fetch_fake_candidates(conn, ctx)
    logger.info("Placeholder performers to resolve: %d", len(fakes))
    variants_by_fake = {
        row[0]: generate_code_variants(row[3], row[4]) for row in fakes
    }
    hits = _fetch_lookup_hits(
        conn, (lookup_key(v) for variants in variants_by_fake.values() for v in variants)
    )

    def skip(fake_name: str, reason: str) -> tuple[list[Merge], None]:
        logger.debug("Placeholder %r left alone: %s", fake_name, reason)
        stats.skipped += 1
        stats.details[reason] += 1
        return [], None

    def handle(row: tuple) -> tuple[list[Merge], str | None]:
        fake_id, fake_name, product_id, _, _, source = row
        stats.processed += 1
        if fake_id in ctx.changes.merged_performer_ids:
            stats.skipped += 1
            return [], None
        credited = _linked_names(conn, product_id)
        variants = variants_by_fake[fake_id]
        names = [
            hit.performer_name.strip()
            for key in dict.fromkeys(lookup_key(v) for v in variants)
            for hit in hits.get(key, [])
        ]
        spellings: dict[str, str] = {}
        for n in names:
            if is_valid_performer_name(n):
                spellings.setdefault(normalize_performer_name(n), n)
        names = [n for key, n in spellings.items() if key not in credited]
        if len(names) > 1:
            return skip(fake_name, "ambiguous")
        if names:
            real_id = _upsert_performers(conn, names)[names[0]]
            real = PerformerRow(id=real_id, name=names[0], release_count=0)
            found = "found_in_lookup"
        else:
            candidates = []
            if variants:
                candidates = _same_code_performers(conn, product_id, source, variants)
            if not candidates:
                return skip(fake_name, "not_found")
            if len(candidates) > 1:
                return skip(fake_name, "ambiguous")
            real = candidates[0]
            found = "found_by_code"
        fake = PerformerRow(id=fake_id, name=fake_name, release_count=0)
        return [_merge(conn, fake, real, ALIAS_SOURCE_FAKE)], found

    def on_commit(result: tuple[list[Merge], str | None]) -> None:
        merges, found = result
        if found is not None:
            stats.details[found] += 1
        _record_merges(ctx, stats, merges)

    _run_units(conn, ctx, stats, fakes, handle, "merge_fake_names", on_commit)
    return stats


# ---------------------------------------------------------------------------
# Phases 6-8: backfill and stat resync
# ---------------------------------------------------------------------------


def backfill_debut_year(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Set a missing debut year to the earliest release year among linked products."""
    stats = PhaseStats()

    def handle(_unit: None) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE performers pf
                SET debut_year = sub.year
                FROM (
                    SELECT pp.performer_id, min(extract(year FROM p.release_date))::int AS year
                    FROM product_performers pp
                    JOIN products p ON p.id = pp.product_id
                    WHERE p.release_date IS NOT NULL
                      AND extract(year FROM p.release_date) BETWEEN %s AND %s
                    GROUP BY pp.performer_id
                ) sub
                WHERE pf.id = sub.performer_id
                  AND pf.debut_year IS NULL
                """,
                (MIN_DEBUT_YEAR, date.today().year),
            )
            stats.processed = cur.rowcount

    _run_units(conn, ctx, stats, [None], handle, "backfill_debut_year")
    stats.details["debut_years_set"] = stats.processed
    return stats


RESYNC_PERFORMERS_SQL = """
    WITH computed AS (
        SELECT pf.id,
               count(p.id)::int AS release_count,
               max(p.release_date) AS latest_release_date
        FROM performers pf
        LEFT JOIN product_performers pp ON pp.performer_id = pf.id
        LEFT JOIN products p ON p.id = pp.product_id
        WHERE (%(scope)s::int[] IS NULL OR pf.id = ANY(%(scope)s::int[]))
        GROUP BY pf.id
    )
    UPDATE performers pf
    SET release_count = c.release_count,
        latest_release_date = c.latest_release_date
    FROM computed c
    WHERE pf.id = c.id
      AND (
          pf.release_count IS DISTINCT FROM c.release_count
          OR pf.latest_release_date IS DISTINCT FROM c.latest_release_date
      )
"""

RESYNC_PRODUCTS_SQL = """
    WITH computed AS (
        SELECT p.id,
               (SELECT count(*) FROM product_performers pp WHERE pp.product_id = p.id)::int
                   AS performer_count,
               EXISTS (SELECT 1 FROM product_videos v WHERE v.product_id = p.id) AS has_video,
               EXISTS (
                   SELECT 1 FROM product_sales s WHERE s.product_id = p.id AND s.is_active
               ) AS has_active_sale,
               LEAST(
                   (SELECT min(ps.price) FROM product_sources ps WHERE ps.product_id = p.id),
                   (SELECT min(s.sale_price) FROM product_sales s
                    WHERE s.product_id = p.id AND s.is_active)
               ) AS min_price,
               (SELECT max(r.rating) FROM product_reviews r WHERE r.product_id = p.id)
                   AS best_rating,
               (SELECT count(*) FROM product_reviews r WHERE r.product_id = p.id)::int
                   AS total_reviews
        FROM products p
        WHERE (%(scope)s::int[] IS NULL OR p.id = ANY(%(scope)s::int[]))
    )
    UPDATE products p
    SET performer_count = c.performer_count,
        has_video = c.has_video,
        has_active_sale = c.has_active_sale,
        min_price = c.min_price,
        best_rating = c.best_rating,
        total_reviews = c.total_reviews,
        updated_at = now()
    FROM computed c
    WHERE p.id = c.id
      AND (
          p.performer_count IS DISTINCT FROM c.performer_count
          OR p.has_video IS DISTINCT FROM c.has_video
          OR p.has_active_sale IS DISTINCT FROM c.has_active_sale
          OR p.min_price IS DISTINCT FROM c.min_price
          OR p.best_rating IS DISTINCT FROM c.best_rating
          OR p.total_reviews IS DISTINCT FROM c.total_reviews
      )
"""


def _resync(
    conn: psycopg.Connection, ctx: RunContext, sql: str, scope: set[int] | None, label: str
) -> PhaseStats:
    stats = PhaseStats()
    if scope is not None and not scope:
        return stats
    params = {"scope": None if scope is None else sorted(scope)}

    def handle(_unit: None) -> None:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            stats.processed = cur.rowcount

    _run_units(conn, ctx, stats, [None], handle, label)
    stats.details["rows_updated"] = stats.processed
    logger.info(
        "%s: %d rows updated (%s)",
        label,
        stats.processed,
        "full pass" if scope is None else f"{len(scope)} in scope",
    )
    return stats


def resync_performer_stats(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Recompute performer release counts and latest release dates."""
    return _resync(
        conn, ctx, RESYNC_PERFORMERS_SQL, _scoped_performer_ids(conn, ctx), "resync_performer_stats"
    )


def resync_product_stats(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Recompute the denormalized product columns."""
    return _resync(
        conn, ctx, RESYNC_PRODUCTS_SQL, _scoped_product_ids(conn, ctx), "resync_product_stats"
    )
