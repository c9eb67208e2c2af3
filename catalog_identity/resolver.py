"""Resolution of ungrouped records into identity groups.

For each record the code matcher runs first; the title matcher only runs
when the code result does not clear the auto-merge threshold. The accepted
match then decides whether the record extends an existing group or starts a
new one.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

import psycopg
from psycopg.errors import TransactionRollback, UniqueViolation

from catalog_identity import db, group_manager
from catalog_identity.code_matcher import find_match_by_product_code
from catalog_identity.config import DEFAULT_MATCHING_CONFIG, MatchingConfig
from catalog_identity.models import CandidateRecord, MatchingMethod, MatchResult
from catalog_identity.normalize import extract_and_normalize_code
from catalog_identity.stats import ErrorBudget, PhaseStats, RunContext
from catalog_identity.title_matcher import find_match_by_title

logger = logging.getLogger(__name__)

# Incremental runs look at records ingested within this many hours.
INCREMENTAL_WINDOW_HOURS = 24


@dataclass
class Resolution:
    """What happened to one record."""

    action: str  # "created", "added" or "skipped"
    group_id: int | None
    match: MatchResult | None = None


def choose_match(
    code_match: MatchResult | None,
    title_match: MatchResult | None,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> MatchResult | None:
    """Pick the accepted match from the two matcher results.

    A code match clearing the auto-merge threshold always wins. Otherwise a
    title match clearing the review threshold is taken unless the code match
    scores at least as high; ties go to the code match.
    """
    if code_match is not None and code_match.confidence_score >= config.auto_merge_threshold:
        return code_match
    if title_match is not None and title_match.confidence_score >= config.review_threshold:
        if code_match is not None and code_match.confidence_score >= title_match.confidence_score:
            return code_match
        return title_match
    if code_match is not None and code_match.confidence_score >= config.review_threshold:
        return code_match
    return None


def find_match(
    conn: psycopg.Connection,
    record: CandidateRecord,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> MatchResult | None:
    """Run the matchers in priority order and return the accepted match, if any."""
    code_match = find_match_by_product_code(conn, record, config)
    if code_match is not None and code_match.confidence_score >= config.auto_merge_threshold:
        return code_match
    title_match = find_match_by_title(conn, record, config)
    return choose_match(code_match, title_match, config)


def process_record(
    conn: psycopg.Connection,
    record: CandidateRecord,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> Resolution:
    """Resolve one record into a group inside a single transaction.

    Records that already belong to a group are skipped without re-matching.
    """
    with conn.transaction():
        existing = group_manager.get_product_group(conn, record.id)
        if existing is not None:
            logger.debug("Record %d: skipped, already in group %d", record.id, existing.id)
            return Resolution("skipped", existing.id)

        match = find_match(conn, record, config)
        if match is None:
            group_id = group_manager.create_group(conn, record)
            logger.debug("Record %d: created group %d (no match)", record.id, group_id)
            return Resolution("created", group_id)

        group_id = match.group_id
        if group_id is None:
            matched_group = group_manager.get_product_group(conn, match.product_id)
            if matched_group is not None:
                group_id = matched_group.id

        if group_id is None:
            # Neither record is grouped yet: start a group holding both.
            group_id = group_manager.create_group(conn, record, MatchingMethod.NEW_GROUP)
            action = "created"
            added = group_manager.add_to_group(
                conn,
                group_id,
                match.product_id,
                match.asp_name,
                match.confidence_score,
                match.matching_method,
            )
            if not added:
                # Another worker grouped the matched record meanwhile: join its group.
                current = group_manager.get_product_group(conn, match.product_id)
                if current is not None and current.id != group_id:
                    group_manager.merge_groups(conn, current.id, group_id)
                    group_id = current.id
                    action = "added"
        else:
            added = group_manager.add_to_group(
                conn,
                group_id,
                record.id,
                record.asp_name,
                match.confidence_score,
                match.matching_method,
            )
            if not added:
                current = group_manager.get_product_group(conn, record.id)
                current_id = current.id if current is not None else group_id
                logger.debug(
                    "Record %d: skipped, grouped concurrently into group %d",
                    record.id,
                    current_id,
                )
                return Resolution("skipped", current_id)
            action = "added"

    logger.debug(
        "Record %d: %s group %d via %s (confidence %d, matched record %d)",
        record.id,
        action,
        group_id,
        match.matching_method.value,
        match.confidence_score,
        match.product_id,
    )
    return Resolution(action, group_id, match)


def _record_outcome(stats: PhaseStats, resolution: Resolution) -> None:
    stats.processed += 1
    if resolution.action == "skipped":
        stats.skipped += 1
        return
    if resolution.action == "created":
        stats.created += 1
    else:
        stats.merged += 1
    method = resolution.match.matching_method if resolution.match else MatchingMethod.NEW_GROUP
    stats.details[method.value] += 1


def _process_with_retry(
    conn: psycopg.Connection, record: CandidateRecord, config: MatchingConfig
) -> Resolution:
    # Workers pairing the same two records can deadlock; the aborted side retries once.
    try:
        return process_record(conn, record, config)
    except TransactionRollback as exc:
        logger.debug("Record %d: %s; retrying", record.id, exc)
        return process_record(conn, record, config)


def resolve_records(
    conn: psycopg.Connection,
    records: list[CandidateRecord],
    config: MatchingConfig,
    max_consecutive_errors: int,
) -> PhaseStats:
    """Resolve records one by one on a single connection.

    Unexpected per-record failures are logged and counted; the record's
    transaction is rolled back and the loop continues. Transient store errors
    propagate so the caller can retry the phase.
    """
    stats = PhaseStats()
    budget = ErrorBudget(max_consecutive_errors)
    for record in records:
        try:
            resolution = _process_with_retry(conn, record, config)
        except UniqueViolation:
            # Another worker grouped this record first.
            logger.debug("Record %d: grouped concurrently, skipping", record.id)
            stats.processed += 1
            stats.skipped += 1
            budget.success()
            continue
        except psycopg.OperationalError:
            raise
        except Exception:
            logger.exception("Failed to resolve record %d", record.id)
            stats.processed += 1
            stats.errors += 1
            if budget.failure():
                logger.error(
                    "Aborting resolution after %d consecutive errors", budget.consecutive
                )
                stats.aborted = True
                break
            continue
        budget.success()
        _record_outcome(stats, resolution)
    return stats


def partition_records(records: list[CandidateRecord], workers: int) -> list[list[CandidateRecord]]:
    """Split records across workers, keeping records with the same code together."""
    partitions: list[list[CandidateRecord]] = [[] for _ in range(workers)]
    slots: dict[str, int] = {}
    for record in records:
        code = extract_and_normalize_code(
            record.maker_product_code, record.normalized_product_id, record.title
        )
        key = code or f"record:{record.id}"
        if key not in slots:
            slots[key] = len(slots) % workers
        partitions[slots[key]].append(record)
    return [p for p in partitions if p]


def _resolve_partition(
    db_url: str, records: list[CandidateRecord], config: MatchingConfig, max_errors: int
) -> PhaseStats:
    conn = db.connect(db_url)
    try:
        return resolve_records(conn, records, config, max_errors)
    finally:
        conn.close()


def resolve_batch(
    conn: psycopg.Connection, records: list[CandidateRecord], ctx: RunContext
) -> PhaseStats:
    """Resolve one fetched batch, fanning out to a worker pool when configured.

    Each worker uses its own connection. Records sharing a product code go to
    the same worker; groups split across workers are repaired afterwards by
    ``consolidate_code_groups``.
    """
    if ctx.workers <= 1 or ctx.db_url is None or len(records) < 2:
        return resolve_records(conn, records, ctx.config, ctx.max_consecutive_errors)

    stats = PhaseStats()
    partitions = partition_records(records, ctx.workers)
    with ThreadPoolExecutor(max_workers=len(partitions)) as executor:
        futures = [
            executor.submit(
                _resolve_partition, ctx.db_url, part, ctx.config, ctx.max_consecutive_errors
            )
            for part in partitions
        ]
        for future in as_completed(futures):
            stats.absorb(future.result())
    return stats


def consolidate_code_groups(conn: psycopg.Connection, ctx: RunContext) -> int:
    """Merge groups that share a canonical code into the lowest group id.

    Returns the number of groups merged away.
    """
    merged = 0
    for group_ids in group_manager.find_split_code_groups(conn):
        if ctx.deadline.expired():
            break
        target, *sources = group_ids
        for source in sources:
            group_manager.merge_groups(conn, target, source)
            merged += 1
    if merged:
        logger.info("Consolidated %d groups sharing a product code", merged)
    return merged


def _fetch_batch(
    conn: psycopg.Connection, ctx: RunContext, size: int, offset: int
) -> list[CandidateRecord]:
    if ctx.mode == "incremental":
        return db.fetch_recent_records(
            conn, INCREMENTAL_WINDOW_HOURS, size, offset, ctx.target_sources
        )
    return db.fetch_ungrouped_records(conn, size, offset, ctx.target_sources)


def resolve_identities(conn: psycopg.Connection, ctx: RunContext) -> PhaseStats:
    """Resolution phase: group every ungrouped record, batch by batch.

    Full mode walks all ungrouped records; incremental mode handles one batch
    of recently ingested ones. Processed records leave the ungrouped set, so
    the offset only advances past records that failed and remain ungrouped.
    """
    stats = PhaseStats()
    before = group_manager.get_group_stats(conn)
    logger.info(
        "Group stats before resolution: %d groups, %d grouped records, %.2f avg members",
        before.total_groups,
        before.total_grouped_products,
        before.avg_members_per_group,
    )
    pending = db.count_ungrouped_records(conn, ctx.target_sources)
    logger.info("Ungrouped records: %d", pending)

    offset = 0
    while True:
        if ctx.deadline.expired():
            logger.warning("Time budget exhausted during resolution")
            stats.timed_out = True
            break
        size = ctx.batch_size
        if ctx.limit is not None:
            size = min(size, ctx.limit - stats.processed)
        if size <= 0:
            break
        records = _fetch_batch(conn, ctx, size, offset)
        if not records:
            break

        batch = resolve_batch(conn, records, ctx)
        stats.absorb(batch)
        ctx.changes.touch_products(r.id for r in records)
        offset += batch.errors
        logger.info(
            "Resolved batch of %d: %d created, %d added, %d skipped, %d errors",
            len(records),
            batch.created,
            batch.merged,
            batch.skipped,
            batch.errors,
        )
        if batch.aborted or ctx.mode == "incremental" or len(records) < size:
            break

    if not stats.aborted:
        stats.details["groups_consolidated"] += consolidate_code_groups(conn, ctx)

    after = group_manager.get_group_stats(conn)
    logger.info(
        "Group stats after resolution: %d groups (+%d), %d grouped records (+%d)",
        after.total_groups,
        after.total_groups - before.total_groups,
        after.total_grouped_products,
        after.total_grouped_products - before.total_grouped_products,
    )
    return stats
