"""Per-phase statistics and the state one run threads through its phases."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field

from catalog_identity.config import MatchingConfig


@dataclass
class PhaseStats:
    """Counters returned by every phase, including aborted ones."""

    processed: int = 0
    merged: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    aborted: bool = False
    timed_out: bool = False
    elapsed: float = 0.0
    details: Counter = field(default_factory=Counter)

    def absorb(self, other: PhaseStats) -> None:
        """Add another partial result (one batch or one worker) into this one."""
        self.processed += other.processed
        self.merged += other.merged
        self.created += other.created
        self.skipped += other.skipped
        self.errors += other.errors
        self.aborted = self.aborted or other.aborted
        self.timed_out = self.timed_out or other.timed_out
        self.details.update(other.details)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "merged": self.merged,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "aborted": self.aborted,
            "timed_out": self.timed_out,
            "elapsed": round(self.elapsed, 3),
            "details": dict(sorted(self.details.items())),
        }


@dataclass
class ChangeSet:
    """Ids touched by earlier phases of the same run.

    Later phases restrict themselves to these ids when the set is non-empty
    and fall back to a full scan otherwise.
    """

    product_ids: set[int] = field(default_factory=set)
    performer_ids: set[int] = field(default_factory=set)
    merged_performer_ids: set[int] = field(default_factory=set)

    def touch_products(self, ids) -> None:
        self.product_ids.update(ids)

    def touch_performers(self, ids) -> None:
        self.performer_ids.update(ids)

    def record_merge(self, loser_id: int, winner_id: int) -> None:
        self.performer_ids.discard(loser_id)
        self.performer_ids.add(winner_id)
        self.merged_performer_ids.add(loser_id)

    def __bool__(self) -> bool:
        return bool(self.product_ids or self.performer_ids)


class Deadline:
    """Wall-clock budget for one run, measured with ``time.monotonic()``."""

    def __init__(self, budget_seconds: float | None) -> None:
        self.start = time.monotonic()
        self.budget = budget_seconds

    def elapsed(self) -> float:
        return time.monotonic() - self.start

    def expired(self) -> bool:
        return self.budget is not None and self.elapsed() >= self.budget


class ErrorBudget:
    """Counts consecutive per-record failures; any success resets the run."""

    def __init__(self, max_consecutive: int) -> None:
        self.max_consecutive = max_consecutive
        self.consecutive = 0

    def success(self) -> None:
        self.consecutive = 0

    def failure(self) -> bool:
        """Record a failure; return True once the cap is reached."""
        self.consecutive += 1
        return self.max_consecutive > 0 and self.consecutive >= self.max_consecutive


@dataclass
class RunContext:
    """Settings and accumulators threaded through every phase of one run."""

    config: MatchingConfig
    deadline: Deadline
    changes: ChangeSet = field(default_factory=ChangeSet)
    db_url: str | None = None
    mode: str = "full"
    limit: int | None = None
    target_sources: list[str] | None = None
    batch_size: int = 500
    workers: int = 1
    max_consecutive_errors: int = 10
