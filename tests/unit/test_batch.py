"""Unit tests for catalog_identity/batch.py phase orchestration.

The phase functions and the connection are replaced with mocks; these tests
cover ordering, skipping, retries, and how stop conditions map onto the
run result.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from catalog_identity.batch import BatchOptions, run_batch
from catalog_identity.run_state import MERGE_PHASES, PHASE_NAMES, RunState
from catalog_identity.stats import PhaseStats

DB_URL = "postgresql://localhost/test"


class FakePhase:
    """Records calls and returns scripted results (stats or exceptions)."""

    def __init__(self, name: str, calls: list, results: list | None = None) -> None:
        self.name = name
        self.calls = calls
        self.results = list(results or [])
        self.contexts = []

    def __call__(self, conn, ctx):
        self.calls.append(self.name)
        self.contexts.append(ctx)
        result = self.results.pop(0) if self.results else PhaseStats(processed=1)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture()
def conn():
    mock = MagicMock()
    mock.closed = False
    mock.broken = False
    with patch("catalog_identity.batch.db.connect", return_value=mock):
        yield mock


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("catalog_identity.batch.time.sleep") as sleep:
        yield sleep


def _install(calls: list, scripted: dict | None = None) -> dict[str, FakePhase]:
    scripted = scripted or {}
    return {name: FakePhase(name, calls, scripted.get(name)) for name in PHASE_NAMES}


def _run(phases: dict[str, FakePhase], **kwargs):
    with patch("catalog_identity.batch.PHASES", list(phases.items())):
        return run_batch(DB_URL, **kwargs)


class TestPhaseOrdering:
    def test_runs_every_phase_in_order(self, conn) -> None:
        calls = []
        result = _run(_install(calls))
        assert result.success is True
        assert calls == PHASE_NAMES
        assert result.phases["link_from_lookup"].processed == 1
        assert result.completed == PHASE_NAMES
        assert result.resume_from is None
        conn.close.assert_called_once()

    def test_skip_merge(self, conn) -> None:
        calls = []
        result = _run(_install(calls), options=BatchOptions(skip_merge=True))
        assert not set(calls) & MERGE_PHASES
        assert result.skipped == ["dedup_by_key", "dedup_fuzzy", "merge_fake_names"]
        assert result.success is True
        assert result.resume_from is None

    def test_completed_phases_skipped_on_resume(self, conn) -> None:
        calls = []
        state = RunState(db_url=DB_URL)
        state.mark_completed("resolve_identities")
        state.mark_completed("link_from_lookup")
        _run(_install(calls), state=state)
        assert calls[0] == "propagate_links"

    def test_phases_share_one_change_set(self, conn) -> None:
        calls = []
        phases = _install(calls)
        _run(phases)
        first = phases["resolve_identities"].contexts[0]
        last = phases["resync_product_stats"].contexts[0]
        assert first.changes is last.changes


class TestStopConditions:
    def test_aborted_phase_fails_run(self, conn) -> None:
        calls = []
        phases = _install(calls, {"link_from_lookup": [PhaseStats(errors=10, aborted=True)]})
        result = _run(phases)
        assert result.success is False
        assert "link_from_lookup" in result.error
        assert calls == ["resolve_identities", "link_from_lookup"]
        assert result.resume_from == "link_from_lookup"
        assert result.phases["link_from_lookup"].errors == 10

    def test_timeout_stops_but_succeeds(self, conn) -> None:
        calls = []
        phases = _install(calls, {"resolve_identities": [PhaseStats(timed_out=True)]})
        result = _run(phases)
        assert result.success is True
        assert calls == ["resolve_identities"]
        assert result.resume_from == "resolve_identities"
        assert result.completed == []

    def test_expired_budget_runs_nothing(self, conn) -> None:
        calls = []
        result = _run(_install(calls), options=BatchOptions(time_budget=0))
        assert calls == []
        assert result.success is True
        assert result.resume_from == "resolve_identities"

    def test_unexpected_exception_fails_run(self, conn) -> None:
        calls = []
        phases = _install(calls, {"dedup_by_key": [KeyError("bad row")]})
        result = _run(phases)
        assert result.success is False
        assert "dedup_by_key" in result.error
        assert "merge_fake_names" not in calls

    def test_connect_failure_returns_result(self) -> None:
        with patch(
            "catalog_identity.batch.db.connect",
            side_effect=psycopg.OperationalError("refused"),
        ):
            result = run_batch(DB_URL)
        assert result.success is False
        assert "refused" in result.error
        assert result.phases == {}


class TestRetries:
    def test_transient_error_retried(self, conn, no_sleep) -> None:
        calls = []
        phases = _install(
            calls,
            {"link_from_lookup": [psycopg.OperationalError("reset"), PhaseStats(created=2)]},
        )
        result = _run(phases)
        assert result.success is True
        assert calls.count("link_from_lookup") == 2
        assert result.phases["link_from_lookup"].created == 2
        no_sleep.assert_called_once_with(0.5)

    def test_retries_exhausted(self, conn, no_sleep) -> None:
        calls = []
        error = psycopg.OperationalError("reset")
        phases = _install(calls, {"link_from_lookup": [error, error, error]})
        result = _run(phases)
        assert result.success is False
        assert calls.count("link_from_lookup") == 3
        assert [c.args[0] for c in no_sleep.call_args_list] == [0.5, 1.0]

    def test_broken_connection_replaced(self, conn) -> None:
        calls = []
        conn.broken = True
        fresh = MagicMock(closed=False, broken=False)
        phases = _install(
            calls, {"resolve_identities": [psycopg.OperationalError("reset"), PhaseStats()]}
        )
        with patch("catalog_identity.batch.db.connect", side_effect=[conn, fresh]):
            result = _run(phases)
        assert result.success is True
        conn.close.assert_called()
        fresh.close.assert_called_once()


class TestDryRun:
    def test_wraps_run_in_rolled_back_transaction(self, conn) -> None:
        calls = []
        result = _run(_install(calls), options=BatchOptions(dry_run=True, workers=4))
        assert result.dry_run is True
        conn.transaction.assert_called_once_with(force_rollback=True)

    def test_single_worker(self, conn) -> None:
        calls = []
        phases = _install(calls)
        _run(phases, options=BatchOptions(dry_run=True, workers=4))
        assert phases["resolve_identities"].contexts[0].workers == 1

    def test_no_retries(self, conn, no_sleep) -> None:
        calls = []
        phases = _install(calls, {"resolve_identities": [psycopg.OperationalError("reset")]})
        result = _run(phases, options=BatchOptions(dry_run=True))
        assert result.success is False
        assert calls == ["resolve_identities"]
        no_sleep.assert_not_called()

    def test_state_file_not_written(self, conn, tmp_path) -> None:
        state_file = tmp_path / "state.json"
        _run(_install([]), options=BatchOptions(dry_run=True), state_file=state_file)
        assert not state_file.exists()


class TestStateFile:
    def test_saved_after_run(self, conn, tmp_path) -> None:
        state_file = tmp_path / "state.json"
        _run(_install([]), state_file=state_file)
        data = json.loads(state_file.read_text())
        assert data["phases"]["resync_product_stats"]["status"] == "completed"

    def test_failure_recorded(self, conn, tmp_path) -> None:
        state_file = tmp_path / "state.json"
        phases = _install([], {"dedup_by_key": [PhaseStats(aborted=True)]})
        _run(phases, state_file=state_file)
        data = json.loads(state_file.read_text())
        assert data["phases"]["dedup_by_key"]["status"] == "failed"
        assert data["phases"]["merge_fake_names"]["status"] == "pending"


class TestRunResult:
    def test_to_dict_is_json_serializable(self, conn) -> None:
        result = _run(_install([]))
        data = json.loads(json.dumps(result.to_dict()))
        assert data["success"] is True
        assert data["phases"]["resolve_identities"]["processed"] == 1
        assert data["resume_from"] is None
