"""Tests for CLI commands"""

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from cli.client.base import OrchestratorError
from cli.main import app
from cli.utils.config_manager import ConfigManager


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def mock_client():
    """Mock API client usable as a context manager"""
    client = MagicMock()
    client.__enter__.return_value = client
    client.__exit__.return_value = None
    return client


def job_dict(**overrides):
    job = {
        "id": "3f6c1a52-6a1e-4f61-9f8e-2f0d5a1c9b11",
        "type": "import",
        "status": "pending",
        "priority": 5,
        "attempts": 0,
        "max_attempts": 3,
        "processed_items": 0,
        "failed_items": 0,
        "total_items": None,
        "progress_percentage": None,
        "payload": {},
        "result": None,
        "last_error": None,
        "next_retry_at": None,
        "created_at": "2026-10-17T09:00:00+00:00",
        "updated_at": "2026-10-17T09:00:00+00:00",
    }
    job.update(overrides)
    return job


def batch_response(processed_rows, total_rows=120, complete=False):
    return {
        "job_id": "8b0e6f1c-2d3a-4e5f-9a0b-1c2d3e4f5a6b",
        "batch": {
            "processed": 50,
            "imported": 50,
            "updated": 0,
            "skipped": 0,
            "skipped_claimed": 0,
            "pending_image_count": 0,
            "errors": [],
        },
        "job": {
            "status": "completed" if complete else "processing",
            "total_rows": total_rows,
            "processed_rows": processed_rows,
            "is_complete": complete,
        },
    }


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "Job Orchestrator CLI" in result.stdout

    @patch("cli.main.OrchestratorClient")
    def test_status_success(self, mock_client_class, runner, mock_client):
        mock_client.health_check.return_value = {
            "ok": True,
            "version": "1.0.0",
            "environment": "development",
            "database": {"connected": True, "response_time_ms": 1.2},
            "queue": {"queue_depth": 3, "stuck_jobs_count": 0, "dispatcher_configured": True},
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Healthy" in result.stdout

    @patch("cli.main.OrchestratorClient")
    def test_status_failure(self, mock_client_class, runner, mock_client):
        mock_client.health_check.side_effect = OrchestratorError("Connection failed")
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestJobsCommands:
    """Test jobs commands"""

    @patch("cli.commands.jobs.OrchestratorClient")
    def test_list_jobs(self, mock_client_class, runner, mock_client):
        mock_client.list_jobs.return_value = {"jobs": [job_dict()], "total": 1}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "list", "--status", "pending"])

        assert result.exit_code == 0
        assert "Showing" in result.stdout
        mock_client.list_jobs.assert_called_once_with(
            status=["pending"], type=None, limit=20, offset=0
        )

    @patch("cli.commands.jobs.OrchestratorClient")
    def test_list_jobs_empty(self, mock_client_class, runner, mock_client):
        mock_client.list_jobs.return_value = {"jobs": [], "total": 0}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "list"])
        assert result.exit_code == 0
        assert "No jobs found" in result.stdout

    @patch("cli.commands.jobs.OrchestratorClient")
    def test_create_job(self, mock_client_class, runner, mock_client):
        mock_client.create_job.return_value = job_dict()
        mock_client_class.return_value = mock_client

        result = runner.invoke(
            app,
            ["jobs", "create", "import", "--payload", json.dumps({"file": "a"}), "--priority", "2"],
        )

        assert result.exit_code == 0
        mock_client.create_job.assert_called_once_with(
            "import", {"file": "a"}, priority=2, scheduled_for=None, total_items=None
        )

    def test_create_job_invalid_payload(self, runner):
        result = runner.invoke(app, ["jobs", "create", "import", "--payload", "{not json"])
        assert result.exit_code == 1
        assert "Invalid JSON payload" in result.stdout

    @patch("cli.commands.jobs.OrchestratorClient")
    def test_create_job_conflict(self, mock_client_class, runner, mock_client):
        mock_client.create_job.side_effect = OrchestratorError("busy", status_code=409)
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "create", "import"])

        assert result.exit_code == 1
        assert "already pending or processing" in result.stdout

    @patch("cli.commands.jobs.OrchestratorClient")
    def test_cancel_job(self, mock_client_class, runner, mock_client):
        mock_client.cancel_job.return_value = job_dict(status="cancelled")
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "cancel", "abc"])

        assert result.exit_code == 0
        mock_client.cancel_job.assert_called_once_with("abc")

    @patch("cli.commands.jobs.OrchestratorClient")
    def test_retry_job_error(self, mock_client_class, runner, mock_client):
        mock_client.retry_job.side_effect = OrchestratorError("not failed", status_code=409)
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "retry", "abc"])
        assert result.exit_code == 1


class TestImportsCommands:
    """Test imports commands"""

    @patch("cli.commands.imports.OrchestratorClient")
    def test_create_import_from_file(self, mock_client_class, runner, mock_client, tmp_path):
        rows_file = tmp_path / "contractors.json"
        rows_file.write_text(json.dumps([{"place_id": "a"}, {"place_id": "b"}]))
        mock_client.create_import.return_value = {"id": "job-1", "total_rows": 2}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["imports", "create", str(rows_file), "--kind", "contractor_import"])

        assert result.exit_code == 0
        mock_client.create_import.assert_called_once_with(
            [{"place_id": "a"}, {"place_id": "b"}],
            kind="contractor_import",
            filename="contractors.json",
        )

    def test_create_import_rejects_non_array(self, runner, tmp_path):
        rows_file = tmp_path / "bad.json"
        rows_file.write_text(json.dumps({"place_id": "a"}))

        result = runner.invoke(app, ["imports", "create", str(rows_file)])
        assert result.exit_code == 1
        assert "array of objects" in result.stdout

    @patch("cli.commands.imports.OrchestratorClient")
    def test_run_drives_import_to_completion(self, mock_client_class, runner, mock_client):
        mock_client.process_import.side_effect = [
            batch_response(50),
            batch_response(100),
            batch_response(120, complete=True),
        ]
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["imports", "run", "job-1", "--batch-size", "50"])

        assert result.exit_code == 0
        assert mock_client.process_import.call_count == 3
        assert "Import complete" in result.stdout

    @patch("cli.commands.imports.OrchestratorClient")
    def test_run_stops_on_conflict(self, mock_client_class, runner, mock_client):
        mock_client.process_import.side_effect = [
            batch_response(50),
            OrchestratorError("advanced by another request", status_code=409),
        ]
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["imports", "run", "job-1"])

        assert result.exit_code == 1
        assert "Another client" in result.stdout

    @patch("cli.commands.imports.OrchestratorClient")
    def test_process_single_batch(self, mock_client_class, runner, mock_client):
        mock_client.process_import.return_value = batch_response(50)
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["imports", "process", "job-1", "-b", "25"])

        assert result.exit_code == 0
        mock_client.process_import.assert_called_once_with("job-1", 25)


class TestDispatcherCommands:
    """Test dispatcher commands"""

    @patch("cli.commands.dispatcher.OrchestratorClient")
    def test_tick(self, mock_client_class, runner, mock_client):
        mock_client.dispatch_tick.return_value = {
            "configured": True,
            "reaped": 1,
            "dispatched_job_id": "job-9",
            "dispatched_job_type": "import",
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["dispatcher", "tick"])

        assert result.exit_code == 0
        assert "Dispatched import job job-9" in result.stdout
        assert "Reaped 1" in result.stdout

    @patch("cli.commands.dispatcher.time.sleep")
    @patch("cli.commands.dispatcher.OrchestratorClient")
    def test_run_loops_until_max_ticks(self, mock_client_class, mock_sleep, runner, mock_client):
        mock_client.dispatch_tick.return_value = {"configured": True, "reaped": 0}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["dispatcher", "run", "--interval", "5", "--max-ticks", "3"])

        assert result.exit_code == 0
        assert mock_client.dispatch_tick.call_count == 3
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(5)

    @patch("cli.commands.dispatcher.time.sleep")
    @patch("cli.commands.dispatcher.OrchestratorClient")
    def test_run_exits_on_auth_failure(self, mock_client_class, mock_sleep, runner, mock_client):
        mock_client.dispatch_tick.side_effect = OrchestratorError("bad secret", status_code=401)
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["dispatcher", "run", "--max-ticks", "3"])

        assert result.exit_code == 1
        assert mock_client.dispatch_tick.call_count == 1


class TestConfigCommands:
    """Test config commands"""

    @pytest.fixture
    def temp_config(self, tmp_path):
        manager = ConfigManager(config_dir=tmp_path)
        with patch("cli.commands.config.config", manager):
            yield manager

    def test_set_and_get(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "api.base_url", "http://jobs.local:8080"])
        assert result.exit_code == 0
        assert temp_config.get("api.base_url") == "http://jobs.local:8080"

        result = runner.invoke(app, ["config", "get", "api.base_url"])
        assert "http://jobs.local:8080" in result.stdout

    def test_set_rejects_bad_url(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "api.base_url", "jobs.local"])
        assert result.exit_code == 1

    def test_numeric_values_stored_as_int(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "dispatcher.interval_s", "30"])
        assert result.exit_code == 0
        assert temp_config.get("dispatcher.interval_s") == 30

    def test_secret_is_masked(self, runner, temp_config):
        runner.invoke(app, ["config", "set", "api.runner_secret", "s3cr3t"])

        result = runner.invoke(app, ["config", "get", "api.runner_secret"])
        assert "s3cr3t" not in result.stdout
        assert temp_config.get("api.runner_secret") == "s3cr3t"

    def test_reset(self, runner, temp_config):
        temp_config.set("imports.batch_size", 10)
        result = runner.invoke(app, ["config", "reset", "--yes"])
        assert result.exit_code == 0
        assert temp_config.get("imports.batch_size") == 50
