#!/usr/bin/env python3
"""Run the identity resolution and performer dedup batch.

Resolves ungrouped product records into identity groups, then links,
propagates, deduplicates and resyncs performers.

  Full run over every ungrouped record:
    python scripts/run_batch.py --mode full [--database-url <url>]

  Incremental run over records ingested in the last 24 hours:
    python scripts/run_batch.py --mode incremental --limit 1000

  Preview without writing anything:
    python scripts/run_batch.py --mode full --dry-run

  Resume an interrupted full run:
    python scripts/run_batch.py --mode full --resume [--state-file <path>]

The result is printed to stdout as JSON. The exit status is 0 when the run
succeeded and 1 otherwise.

Environment variables:
    DATABASE_URL  Default database URL when --database-url is not specified.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path

import psycopg

sys.path.insert(0, str(Path(__file__).parent.parent))
from catalog_identity.batch import BatchOptions, RunResult, run_batch
from catalog_identity.config import DEFAULT_MATCHING_CONFIG, MatchingConfig
from catalog_identity.db import wait_for_postgres
from catalog_identity.run_state import PHASE_NAMES, RunState

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--mode",
        choices=["full", "incremental"],
        default="incremental",
        help="full: every ungrouped record; incremental: recently ingested records "
        "(default: incremental).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        metavar="N",
        help="Maximum records to resolve; also caps the lookup-link and "
        "placeholder-merge phases.",
    )
    parser.add_argument(
        "--sources",
        type=str,
        default=None,
        metavar="LIST",
        help="Comma-separated source names to resolve (e.g. FANZA,MGS). Default: all.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Run every phase and report statistics, then roll back all changes.",
    )
    parser.add_argument(
        "--skip-merge",
        action="store_true",
        default=False,
        help="Skip the performer dedup and placeholder-merge phases.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=500,
        metavar="N",
        help="Records fetched per resolution batch (default: 500).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        metavar="N",
        help="Resolution worker connections (default: 1; forced to 1 with --dry-run).",
    )
    parser.add_argument(
        "--time-budget",
        type=float,
        default=300,
        metavar="SECONDS",
        help="Wall-clock budget for the whole run (default: 300).",
    )
    parser.add_argument(
        "--max-consecutive-errors",
        type=int,
        default=10,
        metavar="N",
        help="Abort a phase after this many consecutive failures (default: 10).",
    )
    parser.add_argument(
        "--auto-merge-threshold",
        type=int,
        default=DEFAULT_MATCHING_CONFIG.auto_merge_threshold,
        metavar="SCORE",
        help="Confidence at which a code match is accepted outright "
        f"(default: {DEFAULT_MATCHING_CONFIG.auto_merge_threshold}).",
    )
    parser.add_argument(
        "--review-threshold",
        type=int,
        default=DEFAULT_MATCHING_CONFIG.review_threshold,
        metavar="SCORE",
        help="Minimum confidence for any match to be accepted "
        f"(default: {DEFAULT_MATCHING_CONFIG.review_threshold}).",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=os.environ.get("DATABASE_URL", "postgresql://localhost:5432/catalog"),
        help="PostgreSQL connection URL "
        "(default: DATABASE_URL env var or postgresql://localhost:5432/catalog).",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        default=False,
        help="Resume a previously interrupted full run. "
        "Skips phases that have already completed.",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        default=Path(".batch_state.json"),
        metavar="FILE",
        help="Path to the run state file for tracking/resuming progress "
        "(default: .batch_state.json).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Log every resolution decision.",
    )

    args = parser.parse_args(argv)

    if args.resume and args.mode != "full":
        parser.error("--resume is only valid with --mode full")
    if args.review_threshold > args.auto_merge_threshold:
        parser.error("--review-threshold must not exceed --auto-merge-threshold")
    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be at least 1")

    return args


def build_options(args: argparse.Namespace) -> BatchOptions:
    """Translate parsed arguments into batch options."""
    config: MatchingConfig = dataclasses.replace(
        DEFAULT_MATCHING_CONFIG,
        auto_merge_threshold=args.auto_merge_threshold,
        review_threshold=args.review_threshold,
    )
    sources = [s.strip() for s in args.sources.split(",") if s.strip()] if args.sources else None
    return BatchOptions(
        mode=args.mode,
        limit=args.limit,
        target_sources=sources,
        dry_run=args.dry_run,
        skip_merge=args.skip_merge,
        batch_size=args.batch_size,
        workers=args.workers,
        time_budget=args.time_budget,
        max_consecutive_errors=args.max_consecutive_errors,
        config=config,
    )


def _load_or_create_state(args: argparse.Namespace) -> RunState | None:
    """Load existing state for --resume, or create fresh state.

    When --resume is set and no state file exists, infers state from the
    database contents. Incremental runs keep no state.
    """
    if args.mode != "full":
        return None
    state_file = args.state_file

    if args.resume and state_file.exists():
        logger.info("Loading run state from %s", state_file)
        state = RunState.load(state_file)
        state.validate_resume(db_url=args.database_url)
        return state

    if args.resume and not state_file.exists():
        logger.info("No state file found; inferring state from database")
        from catalog_identity.db_introspect import infer_run_state

        state = infer_run_state(args.database_url)
        completed = [p for p in PHASE_NAMES if state.is_completed(p)]
        if completed:
            logger.info("  Inferred completed phases: %s", ", ".join(completed))
        else:
            logger.info("  No completed phases detected; starting from scratch")
        return state

    return RunState(db_url=args.database_url, mode=args.mode)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    options = build_options(args)
    state = None
    try:
        wait_for_postgres(args.database_url)
        state = _load_or_create_state(args)
    except (psycopg.OperationalError, ValueError) as exc:
        logger.error("Cannot start batch: %s", exc)
        result = RunResult(success=False, dry_run=options.dry_run, error=str(exc))
    else:
        state_file = args.state_file if state is not None else None
        result = run_batch(args.database_url, options, state=state, state_file=state_file)

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
