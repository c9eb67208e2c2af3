"""Unit tests for scripts/run_batch.py: argument parsing, options, and exit status."""

from __future__ import annotations

import importlib.util
import json
from pathlib import Path
from unittest.mock import patch

import psycopg
import pytest

from catalog_identity.batch import RunResult
from catalog_identity.run_state import RunState

# Load run_batch as a module (it's a script, not a package).
_spec = importlib.util.spec_from_file_location(
    "run_batch",
    Path(__file__).parent.parent.parent / "scripts" / "run_batch.py",
)
run_batch = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(run_batch)

DB_URL = "postgresql://localhost/test"


class TestArgParsing:
    """Defaults and validation."""

    def test_defaults(self) -> None:
        args = run_batch.parse_args(["--database-url", DB_URL])
        assert args.mode == "incremental"
        assert args.limit is None
        assert args.dry_run is False
        assert args.skip_merge is False
        assert args.batch_size == 500
        assert args.workers == 1
        assert args.resume is False
        assert args.state_file == Path(".batch_state.json")

    def test_all_flags(self) -> None:
        args = run_batch.parse_args(
            [
                "--mode",
                "full",
                "--limit",
                "100",
                "--sources",
                "FANZA, MGS",
                "--dry-run",
                "--skip-merge",
                "--batch-size",
                "50",
                "--workers",
                "4",
                "--time-budget",
                "60",
                "--auto-merge-threshold",
                "90",
                "--review-threshold",
                "70",
            ]
        )
        assert args.mode == "full"
        assert args.limit == 100
        assert args.dry_run is True
        assert args.workers == 4
        assert args.time_budget == 60.0

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(SystemExit):
            run_batch.parse_args(["--mode", "everything"])

    def test_resume_requires_full_mode(self) -> None:
        with pytest.raises(SystemExit):
            run_batch.parse_args(["--resume"])

    def test_review_above_auto_merge_rejected(self) -> None:
        with pytest.raises(SystemExit):
            run_batch.parse_args(["--review-threshold", "90", "--auto-merge-threshold", "80"])

    @pytest.mark.parametrize("flag", ["--batch-size", "--workers", "--limit"])
    def test_non_positive_counts_rejected(self, flag) -> None:
        with pytest.raises(SystemExit):
            run_batch.parse_args([flag, "0"])


class TestBuildOptions:
    def test_options_from_args(self) -> None:
        args = run_batch.parse_args(
            [
                "--mode",
                "full",
                "--sources",
                "FANZA, MGS,",
                "--review-threshold",
                "70",
                "--workers",
                "3",
            ]
        )
        options = run_batch.build_options(args)
        assert options.mode == "full"
        assert options.target_sources == ["FANZA", "MGS"]
        assert options.workers == 3
        assert options.config.review_threshold == 70
        assert options.config.auto_merge_threshold == 80

    def test_no_sources_means_all(self) -> None:
        options = run_batch.build_options(run_batch.parse_args([]))
        assert options.target_sources is None


class TestLoadOrCreateState:
    def test_incremental_keeps_no_state(self, tmp_path) -> None:
        args = run_batch.parse_args(["--database-url", DB_URL])
        assert run_batch._load_or_create_state(args) is None

    def test_fresh_state_for_full_run(self, tmp_path) -> None:
        args = run_batch.parse_args(
            ["--mode", "full", "--database-url", DB_URL, "--state-file", str(tmp_path / "s.json")]
        )
        state = run_batch._load_or_create_state(args)
        assert state.completed_phases() == []

    def test_resume_loads_state_file(self, tmp_path) -> None:
        state_file = tmp_path / "s.json"
        saved = RunState(db_url=DB_URL)
        saved.mark_completed("resolve_identities")
        saved.save(state_file)
        args = run_batch.parse_args(
            ["--mode", "full", "--resume", "--database-url", DB_URL]
            + ["--state-file", str(state_file)]
        )
        state = run_batch._load_or_create_state(args)
        assert state.is_completed("resolve_identities")

    def test_resume_with_other_database_rejected(self, tmp_path) -> None:
        state_file = tmp_path / "s.json"
        RunState(db_url="postgresql://elsewhere/db").save(state_file)
        args = run_batch.parse_args(
            ["--mode", "full", "--resume", "--database-url", DB_URL]
            + ["--state-file", str(state_file)]
        )
        with pytest.raises(ValueError):
            run_batch._load_or_create_state(args)

    def test_resume_without_file_infers_state(self, tmp_path) -> None:
        inferred = RunState(db_url=DB_URL)
        inferred.mark_completed("resolve_identities")
        args = run_batch.parse_args(
            [
                "--mode",
                "full",
                "--resume",
                "--database-url",
                DB_URL,
                "--state-file",
                str(tmp_path / "missing.json"),
            ]
        )
        with patch(
            "catalog_identity.db_introspect.infer_run_state", return_value=inferred
        ) as infer:
            state = run_batch._load_or_create_state(args)
        infer.assert_called_once_with(DB_URL)
        assert state is inferred


class TestMain:
    """main() prints the result as JSON and maps success onto the exit status."""

    def test_success(self, capsys) -> None:
        result = RunResult(success=True, dry_run=False, completed=["resolve_identities"])
        with patch.object(run_batch, "wait_for_postgres"), patch.object(
            run_batch, "run_batch", return_value=result
        ) as run:
            code = run_batch.main(["--database-url", DB_URL])
        assert code == 0
        run.assert_called_once()
        assert run.call_args.kwargs["state"] is None
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["completed"] == ["resolve_identities"]

    def test_failure_exit_status(self, capsys) -> None:
        result = RunResult(success=False, dry_run=False, error="dedup_by_key aborted")
        with patch.object(run_batch, "wait_for_postgres"), patch.object(
            run_batch, "run_batch", return_value=result
        ):
            code = run_batch.main(["--database-url", DB_URL])
        assert code == 1
        assert json.loads(capsys.readouterr().out)["error"] == "dedup_by_key aborted"

    def test_unreachable_database(self, capsys) -> None:
        with patch.object(
            run_batch, "wait_for_postgres", side_effect=psycopg.OperationalError("refused")
        ), patch.object(run_batch, "run_batch") as run:
            code = run_batch.main(["--database-url", DB_URL, "--dry-run"])
        assert code == 1
        run.assert_not_called()
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is False
        assert output["dry_run"] is True

    def test_full_run_passes_state_file(self, tmp_path, capsys) -> None:
        state_file = tmp_path / "state.json"
        with patch.object(run_batch, "wait_for_postgres"), patch.object(
            run_batch, "run_batch", return_value=RunResult(success=True, dry_run=False)
        ) as run:
            run_batch.main(
                ["--mode", "full", "--database-url", DB_URL, "--state-file", str(state_file)]
            )
        assert run.call_args.kwargs["state_file"] == state_file
        assert isinstance(run.call_args.kwargs["state"], RunState)
