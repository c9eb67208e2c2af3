"""Batch entry point: runs the phases in order under one time budget.

``run_batch`` never raises. Every outcome, including connection failures and
aborted phases, comes back as a ``RunResult`` carrying whatever statistics
were gathered before the run stopped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import psycopg

from catalog_identity import db, performer_pipeline, resolver
from catalog_identity.config import DEFAULT_MATCHING_CONFIG, MatchingConfig
from catalog_identity.run_state import MERGE_PHASES, RunState
from catalog_identity.stats import Deadline, PhaseStats, RunContext

logger = logging.getLogger(__name__)

# Retries per phase on transient store errors, with doubling backoff.
PHASE_RETRIES = 2
RETRY_BACKOFF = 0.5

PHASES: list[tuple[str, Callable[[psycopg.Connection, RunContext], PhaseStats]]] = [
    ("resolve_identities", resolver.resolve_identities),
    ("link_from_lookup", performer_pipeline.link_from_lookup),
    ("propagate_links", performer_pipeline.propagate_links),
    ("dedup_by_key", performer_pipeline.dedup_by_key),
    ("dedup_fuzzy", performer_pipeline.dedup_fuzzy),
    ("merge_fake_names", performer_pipeline.merge_fake_names),
    ("backfill_debut_year", performer_pipeline.backfill_debut_year),
    ("resync_performer_stats", performer_pipeline.resync_performer_stats),
    ("resync_product_stats", performer_pipeline.resync_product_stats),
]


@dataclass
class BatchOptions:
    """What one invocation should do."""

    mode: str = "full"
    limit: int | None = None
    target_sources: list[str] | None = None
    dry_run: bool = False
    skip_merge: bool = False
    batch_size: int = 500
    workers: int = 1
    time_budget: float | None = 300
    max_consecutive_errors: int = 10
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG


@dataclass
class RunResult:
    success: bool
    dry_run: bool
    phases: dict[str, PhaseStats] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    resume_from: str | None = None
    duration_seconds: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "error": self.error,
            "dry_run": self.dry_run,
            "duration_seconds": round(self.duration_seconds, 3),
            "completed": self.completed,
            "skipped": self.skipped,
            "resume_from": self.resume_from,
            "phases": {name: stats.to_dict() for name, stats in self.phases.items()},
        }


class PhaseFailed(Exception):
    """A phase stopped early and the run must not continue past it."""


def _run_with_retry(
    conn: psycopg.Connection,
    db_url: str,
    name: str,
    func: Callable[[psycopg.Connection, RunContext], PhaseStats],
    ctx: RunContext,
    retries: int,
) -> tuple[psycopg.Connection, PhaseStats]:
    """Run one phase, retrying it from the start on transient store errors.

    Returns the connection to keep using, which is a fresh one if the
    original broke.
    """
    delay = RETRY_BACKOFF
    attempt = 0
    while True:
        try:
            return conn, func(conn, ctx)
        except psycopg.OperationalError as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                "%s: transient store error (%s); retry %d/%d in %.1fs",
                name,
                exc,
                attempt,
                retries,
                delay,
            )
            time.sleep(delay)
            delay *= 2
            if conn.closed or conn.broken:
                conn.close()
                conn = db.connect(db_url)


def _run_phases(
    conn: psycopg.Connection,
    db_url: str,
    options: BatchOptions,
    state: RunState,
    phases: dict[str, PhaseStats],
    save_state: Callable[[], None],
) -> psycopg.Connection:
    ctx = RunContext(
        config=options.config,
        deadline=Deadline(options.time_budget),
        db_url=db_url,
        mode=options.mode,
        limit=options.limit,
        target_sources=options.target_sources,
        batch_size=options.batch_size,
        workers=1 if options.dry_run else options.workers,
        max_consecutive_errors=options.max_consecutive_errors,
    )
    # A dry run lives in one outer transaction; a broken connection loses it.
    retries = 0 if options.dry_run else PHASE_RETRIES

    for name, func in PHASES:
        if options.skip_merge and name in MERGE_PHASES:
            logger.info("Skipping %s (--skip-merge)", name)
            state.mark_skipped(name)
            continue
        if state.is_completed(name):
            logger.info("Skipping %s (already completed)", name)
            continue
        if ctx.deadline.expired():
            logger.warning("Time budget exhausted before %s", name)
            break

        logger.info("Phase: %s", name)
        start = time.monotonic()
        try:
            conn, stats = _run_with_retry(conn, db_url, name, func, ctx, retries)
        except Exception as exc:
            state.mark_failed(name, str(exc))
            save_state()
            raise PhaseFailed(f"{name} failed: {exc}") from exc
        stats.elapsed = time.monotonic() - start
        phases[name] = stats
        logger.info(
            "  %s: processed=%d merged=%d created=%d skipped=%d errors=%d (%.1fs)",
            name,
            stats.processed,
            stats.merged,
            stats.created,
            stats.skipped,
            stats.errors,
            stats.elapsed,
        )

        if stats.aborted:
            state.mark_failed(name, "aborted after consecutive errors")
            save_state()
            raise PhaseFailed(
                f"{name} aborted after {options.max_consecutive_errors} consecutive errors"
            )
        if stats.timed_out:
            state.mark_failed(name, "time budget exhausted")
            save_state()
            logger.warning("Stopping after %s: time budget exhausted", name)
            break
        state.mark_completed(name)
        save_state()
    return conn


def run_batch(
    db_url: str,
    options: BatchOptions | None = None,
    state: RunState | None = None,
    state_file: Path | None = None,
) -> RunResult:
    """Run every phase once and report per-phase statistics.

    Args:
        db_url: PostgreSQL connection URL.
        options: Run options; defaults to a full live run.
        state: Phase state from a previous run (``--resume``); completed
            phases are skipped.
        state_file: Where to save phase state after each phase. Never
            written during a dry run.

    Returns:
        The run's result. ``success`` is False when a phase aborted or the
        store could not be reached; ``resume_from`` names the first phase that
        did not complete.
    """
    options = options or BatchOptions()
    state = state or RunState(db_url=db_url, mode=options.mode)
    phases: dict[str, PhaseStats] = {}
    error = None
    start = time.monotonic()

    def save_state() -> None:
        if state_file is not None and not options.dry_run:
            state.save(state_file)

    logger.info(
        "Batch run: mode=%s dry_run=%s limit=%s sources=%s",
        options.mode,
        options.dry_run,
        options.limit,
        ",".join(options.target_sources) if options.target_sources else "all",
    )

    conn = None
    try:
        conn = db.connect(db_url)
        if options.dry_run:
            with conn.transaction(force_rollback=True):
                conn = _run_phases(conn, db_url, options, state, phases, save_state)
            logger.info("Dry run: all changes rolled back")
        else:
            conn = _run_phases(conn, db_url, options, state, phases, save_state)
    except PhaseFailed as exc:
        logger.error("%s", exc)
        error = str(exc)
    except Exception as exc:
        logger.exception("Batch run failed")
        error = str(exc)
    finally:
        if conn is not None:
            conn.close()

    duration = time.monotonic() - start
    result = RunResult(
        success=error is None,
        dry_run=options.dry_run,
        phases=phases,
        completed=state.completed_phases(),
        skipped=state.skipped_phases(),
        resume_from=state.resume_from(),
        duration_seconds=duration,
        error=error,
    )
    logger.info(
        "Batch %s in %.1fs (completed: %s)",
        "succeeded" if result.success else "failed",
        duration,
        ", ".join(result.completed) or "none",
    )
    return result
