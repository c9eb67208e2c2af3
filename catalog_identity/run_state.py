"""Phase state tracking for resumable batch runs.

Tracks phase completion in a JSON state file so that a failed or timed-out
full run can be resumed from the first phase that did not finish.
"""

from __future__ import annotations

import json
from pathlib import Path

VERSION = 1

PHASE_NAMES = [
    "resolve_identities",
    "link_from_lookup",
    "propagate_links",
    "dedup_by_key",
    "dedup_fuzzy",
    "merge_fake_names",
    "backfill_debut_year",
    "resync_performer_stats",
    "resync_product_stats",
]

MERGE_PHASES = frozenset({"dedup_by_key", "dedup_fuzzy", "merge_fake_names"})

PENDING = "pending"
COMPLETED = "completed"
SKIPPED = "skipped"
FAILED = "failed"


class RunState:
    """Track batch phase status."""

    def __init__(self, db_url: str, mode: str = "full") -> None:
        self.db_url = db_url
        self.mode = mode
        self._phases: dict[str, dict] = {name: {"status": PENDING} for name in PHASE_NAMES}

    def is_completed(self, phase: str) -> bool:
        """Return True if the phase has been completed."""
        return self._phases[phase]["status"] == COMPLETED

    def mark_completed(self, phase: str) -> None:
        self._phases[phase] = {"status": COMPLETED}

    def mark_skipped(self, phase: str) -> None:
        self._phases[phase] = {"status": SKIPPED}

    def mark_failed(self, phase: str, error: str) -> None:
        """Mark a phase as failed with an error message."""
        self._phases[phase] = {"status": FAILED, "error": error}

    def phase_status(self, phase: str) -> str:
        return self._phases[phase]["status"]

    def phase_error(self, phase: str) -> str | None:
        """Return the error message for a failed phase, or None."""
        return self._phases[phase].get("error")

    def completed_phases(self) -> list[str]:
        return [name for name in PHASE_NAMES if self.is_completed(name)]

    def skipped_phases(self) -> list[str]:
        return [name for name in PHASE_NAMES if self.phase_status(name) == SKIPPED]

    def resume_from(self) -> str | None:
        """Return the first phase that neither completed nor was skipped."""
        for name in PHASE_NAMES:
            if self.phase_status(name) not in (COMPLETED, SKIPPED):
                return name
        return None

    def validate_resume(self, db_url: str) -> None:
        """Raise ValueError if db_url doesn't match this state."""
        if self.db_url != db_url:
            raise ValueError(f"database_url mismatch: state has {self.db_url!r}, got {db_url!r}")

    def save(self, path: Path) -> None:
        """Write state to a JSON file atomically (write .tmp, then rename)."""
        data = {
            "version": VERSION,
            "database_url": self.db_url,
            "mode": self.mode,
            "phases": self._phases,
        }
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2) + "\n")
        tmp_path.rename(path)

    @classmethod
    def load(cls, path: Path) -> RunState:
        """Load state from a JSON file.

        Phases missing from the file are treated as pending; unknown phase
        names are ignored.
        """
        data = json.loads(path.read_text())
        version = data.get("version")
        if version != VERSION:
            raise ValueError(f"Unsupported state file version {version} (expected {VERSION})")

        state = cls(db_url=data["database_url"], mode=data.get("mode", "full"))
        for name, entry in data.get("phases", {}).items():
            if name in state._phases:
                state._phases[name] = entry
        return state
