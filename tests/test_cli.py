"""
Tests for the rail-cli operator commands.

Offline commands run for real; database and broker commands have their async
bodies patched so no service is needed.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from railyard.ingest.jobs import BatchResult, JobState, JobStatus
from tests.helpers import wagon_update
from tools import rail_cli
from tools.rail_cli import EXIT_FAILED, EXIT_INVALID, EXIT_OK, cli


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(rail_cli, "configure_logging", lambda settings=None: None)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestNormalize:
    def test_prints_canonical_index(self, runner):
        result = runner.invoke(cli, ["normalize", "7478/6980/35"])
        assert result.exit_code == EXIT_OK
        assert result.output.strip() == "7478 035 6980"

    def test_invalid_index(self, runner):
        result = runner.invoke(cli, ["normalize", "7478"])
        assert result.exit_code == EXIT_INVALID
        assert "at least 2 numeric parts" in result.output


class TestStats:
    def test_prints_statistics(self, runner, tmp_path):
        path = tmp_path / "wagons.csv"
        path.write_text("TrainIndex\n7478-035-6980\n7478/6980/35\nbad\n", encoding="utf-8")

        result = runner.invoke(cli, ["stats", "--file", str(path)])

        assert result.exit_code == EXIT_OK
        assert "Total records:   3" in result.output
        assert "Valid indexes:   2" in result.output
        assert "7478: 2 trains" in result.output
        assert "7478-035-6980 -> 7478 035 6980" in result.output
        assert "'bad'" in result.output

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["stats", "--file", str(tmp_path / "nope.csv")])
        assert result.exit_code == EXIT_INVALID
        assert "not found" in result.output


class TestImport:
    def _status(self, state: JobState) -> JobStatus:
        result = BatchResult(
            "job-1",
            state,
            "Successfully processed 2 records, 1 errors",
            processed_records=3,
            valid_records=2,
            invalid_records=1,
            errors=("Row 3: Wagon number is required",),
        )
        return JobStatus(
            job_id="job-1",
            status=state,
            progress=100,
            message=result.message,
            completed_at=datetime.now(timezone.utc),
            result=result,
        )

    def test_completed_job(self, runner, tmp_path, monkeypatch):
        path = tmp_path / "wagons.csv"
        path.write_text("TrainIndex\n", encoding="utf-8")
        seen = []

        async def fake_run_import(file_path):
            seen.append(file_path)
            return self._status(JobState.COMPLETED)

        monkeypatch.setattr(rail_cli, "_run_import", fake_run_import)

        result = runner.invoke(cli, ["import", "--file", str(path)])

        assert result.exit_code == EXIT_OK
        assert seen == [path]
        assert "Job job-1: Completed" in result.output
        assert "Invalid:    1" in result.output
        assert "- Row 3: Wagon number is required" in result.output

    def test_failed_job_exits_nonzero(self, runner, tmp_path, monkeypatch):
        path = tmp_path / "wagons.csv"
        path.write_text("", encoding="utf-8")

        async def fake_run_import(file_path):
            return self._status(JobState.FAILED)

        monkeypatch.setattr(rail_cli, "_run_import", fake_run_import)

        result = runner.invoke(cli, ["import", "--file", str(path)])
        assert result.exit_code == EXIT_FAILED

    def test_database_unavailable(self, runner, tmp_path, monkeypatch):
        path = tmp_path / "wagons.csv"
        path.write_text("TrainIndex\n", encoding="utf-8")

        async def fake_run_import(file_path):
            raise RuntimeError("Failed to initialize database pool")

        monkeypatch.setattr(rail_cli, "_run_import", fake_run_import)

        result = runner.invoke(cli, ["import", "--file", str(path)])
        assert result.exit_code == EXIT_FAILED
        assert "Import failed: Failed to initialize database pool" in result.output

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["import", "--file", str(tmp_path / "nope.csv")])
        assert result.exit_code == EXIT_INVALID


class TestInitDb:
    def test_success(self, runner, monkeypatch):
        async def fake_init():
            return None

        monkeypatch.setattr(rail_cli, "_init_db", fake_init)
        result = runner.invoke(cli, ["init-db"])
        assert result.exit_code == EXIT_OK
        assert "Schema applied" in result.output

    def test_failure(self, runner, monkeypatch):
        async def fake_init():
            raise RuntimeError("FATAL: Missing required environment variable: RAILYARD_DB_URL")

        monkeypatch.setattr(rail_cli, "_init_db", fake_init)
        result = runner.invoke(cli, ["init-db"])
        assert result.exit_code == EXIT_FAILED
        assert "RAILYARD_DB_URL" in result.output


class TestBrokerCommands:
    def test_setup_queues(self, runner, monkeypatch):
        calls = []

        async def fake_with_broker(action, payload=None):
            calls.append(action)

        monkeypatch.setattr(rail_cli, "_with_broker", fake_with_broker)
        result = runner.invoke(cli, ["setup-queues"])
        assert result.exit_code == EXIT_OK
        assert calls == ["setup"]

    def test_setup_queues_failure(self, runner, monkeypatch):
        async def fake_with_broker(action, payload=None):
            raise ConnectionError("broker unreachable")

        monkeypatch.setattr(rail_cli, "_with_broker", fake_with_broker)
        result = runner.invoke(cli, ["setup-queues"])
        assert result.exit_code == EXIT_FAILED
        assert "broker unreachable" in result.output

    def test_publish_from_file(self, runner, tmp_path, monkeypatch):
        sent = []

        async def fake_with_broker(action, payload=None):
            sent.append((action, payload))
            return "m-1"

        monkeypatch.setattr(rail_cli, "_with_broker", fake_with_broker)
        path = tmp_path / "update.json"
        path.write_text(json.dumps(wagon_update()), encoding="utf-8")

        result = runner.invoke(cli, ["publish", "--file", str(path)])

        assert result.exit_code == EXIT_OK
        assert "Published evt-0001 as message m-1" in result.output
        [(action, payload)] = sent
        assert action == "publish"
        assert payload["eventId"] == "evt-0001"
        assert payload["weight"] == "61500.50"

    def test_publish_from_stdin(self, runner, monkeypatch):
        async def fake_with_broker(action, payload=None):
            return "m-2"

        monkeypatch.setattr(rail_cli, "_with_broker", fake_with_broker)
        result = runner.invoke(cli, ["publish"], input=json.dumps(wagon_update()))
        assert result.exit_code == EXIT_OK
        assert "m-2" in result.output

    @pytest.mark.parametrize("body", ["not json", json.dumps(wagon_update(load_flag=5))])
    def test_publish_rejects_invalid_update(self, runner, monkeypatch, body):
        async def fake_with_broker(action, payload=None):
            raise AssertionError("must not publish")

        monkeypatch.setattr(rail_cli, "_with_broker", fake_with_broker)
        result = runner.invoke(cli, ["publish"], input=body)
        assert result.exit_code == EXIT_INVALID
        assert "Invalid wagon update" in result.output

    @pytest.mark.asyncio
    async def test_unsupported_broker_action_raises_and_closes(self, monkeypatch):
        broker = MagicMock()
        broker.close = AsyncMock()
        broker.publish = AsyncMock()
        monkeypatch.setattr(rail_cli, "get_settings", lambda: object())
        monkeypatch.setattr(rail_cli, "BrokerSettings", MagicMock())
        monkeypatch.setattr(rail_cli, "BrokerConnection", lambda settings: broker)

        with pytest.raises(ValueError, match="Unsupported broker action: purge"):
            await rail_cli._with_broker("purge")

        broker.publish.assert_not_awaited()
        broker.close.assert_awaited_once()
