"""
Tests for the command line interface.

Each test runs against its own SQLite file and a YAML config with no
providers, so nothing reaches a real API.
"""

import os
import re
import shutil
import tempfile
from unittest.mock import patch

import yaml
from typer.testing import CliRunner

from ai_orchestrator.cli.main import app
from ai_orchestrator.orchestrator import Orchestrator
from ai_orchestrator.storage.repository import DeadLetterRepository

runner = CliRunner()

JOB_ID = re.compile(r"job_[0-9a-f]+")


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "cli.db")
        self.config_path = os.path.join(self.temp_dir, "orchestrator.yaml")
        self.write_config({
            "database": {"path": self.db_path},
            "providers": {},
            "templates": {"summary": {"user_prompt": "Summarize {topic}"}},
        })

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def write_config(self, config):
        with open(self.config_path, "w") as f:
            yaml.safe_dump(config, f)

    def invoke(self, *args):
        return runner.invoke(app, ["--config", self.config_path, *args])

    def enqueue(self, *args):
        result = self.invoke("enqueue", "--template", "summary", "--var", "topic=cats", *args)
        assert result.exit_code == 0, result.output
        return JOB_ID.search(result.output).group(0)

    def test_no_command_prints_hint(self):
        result = self.invoke()

        assert result.exit_code == 0
        assert "Use --help" in result.output

    def test_init(self):
        result = self.invoke("init")

        assert result.exit_code == 0
        assert "Database initialized" in result.output
        assert os.path.exists(self.db_path)

    def test_invalid_config(self):
        self.write_config({"database": {"path": self.db_path}, "queues": {}})

        result = self.invoke("status")

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_missing_config_file(self):
        result = runner.invoke(app, ["--config", os.path.join(self.temp_dir, "missing.yaml"), "status"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_commands_stop_the_orchestrator(self):
        with patch.object(Orchestrator, "stop") as stop:
            result = self.invoke("status")
            assert result.exit_code == 0
            assert stop.call_count == 1

            result = self.invoke("cancel", "job_missing")
            assert result.exit_code == 1
            assert stop.call_count == 2

    def test_enqueue_and_inspect(self):
        job_id = self.enqueue("--content-id", "article-1", "--priority", "high")

        result = self.invoke("job", job_id)
        assert result.exit_code == 0
        assert "Status: waiting (0%)" in result.output
        assert "Provider: auto" in result.output

        result = self.invoke("status")
        assert result.exit_code == 0
        assert "waiting" in result.output

    def test_enqueue_rejected_over_cost_limit(self):
        result = self.invoke("enqueue", "--template", "summary", "--cost-limit", "0.001")

        assert result.exit_code == 1
        assert "Rejected (COST_LIMIT_EXCEEDED)" in result.output

    def test_enqueue_unknown_provider(self):
        result = self.invoke("enqueue", "--template", "summary", "--provider", "nowhere")

        assert result.exit_code == 1
        assert "UNKNOWN_PROVIDER" in result.output

    def test_enqueue_bad_variable(self):
        result = self.invoke("enqueue", "--template", "summary", "--var", "topic")

        assert result.exit_code != 0

    def test_unknown_job(self):
        result = self.invoke("job", "job_missing")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_cancel(self):
        job_id = self.enqueue()

        result = self.invoke("cancel", job_id)
        assert result.exit_code == 0
        assert "Cancellation accepted" in result.output

        result = self.invoke("cancel", job_id)
        assert result.exit_code == 1
        assert "cannot be cancelled" in result.output

    def test_pause_and_resume(self):
        assert self.invoke("pause").exit_code == 0
        assert "Queue is paused" in self.invoke("status").output

        assert self.invoke("resume").exit_code == 0
        assert "Queue is paused" not in self.invoke("status").output

    def test_batch(self):
        batch_file = os.path.join(self.temp_dir, "batch.yaml")
        with open(batch_file, "w") as f:
            yaml.safe_dump([
                {"template_id": "summary", "variables": {"topic": "cats"}, "content_id": "c1"},
                {"template_id": "summary", "variables": {"topic": "dogs"}, "content_id": "c2"},
            ], f)

        result = self.invoke("batch", batch_file, "--parallel-limit", "2")

        assert result.exit_code == 0
        assert "Enqueued batch batch_" in result.output
        assert "with 2 jobs" in result.output

    def test_batch_rejects_unknown_keys(self):
        batch_file = os.path.join(self.temp_dir, "batch.yaml")
        with open(batch_file, "w") as f:
            yaml.safe_dump([{"template_id": "summary", "colour": "blue"}], f)

        result = self.invoke("batch", batch_file)

        assert result.exit_code == 1
        assert "Invalid request at index 0" in result.output

    def test_clean_refuses_non_terminal_state(self):
        result = self.invoke("clean", "--state", "pending")

        assert result.exit_code == 1
        assert "Only terminal jobs can be cleaned" in result.output

    def test_clean(self):
        result = self.invoke("clean", "--state", "failed", "--grace", "0")

        assert result.exit_code == 0
        assert "Removed 0 failed jobs" in result.output

    def test_worker_drain_dead_letters_unknown_template(self):
        self.invoke("enqueue", "--template", "missing")

        result = self.invoke("worker", "--drain")
        assert result.exit_code == 0
        assert "Processed 1 units of work" in result.output

        result = self.invoke("dlq", "stats")
        assert result.exit_code == 0
        assert "Total: 1" in result.output
        assert "malformed_template: 1" in result.output

        entry = DeadLetterRepository(self.db_path).list_entries()[0]
        result = self.invoke("dlq", "retry", entry.id)
        assert result.exit_code == 1
        assert "NON_RETRYABLE" in result.output

        result = self.invoke("dlq", "resolve", entry.id, "--method", "abandoned", "--notes", "template removed")
        assert result.exit_code == 0
        assert "resolved via abandoned" in result.output

        result = self.invoke("dlq", "resolve", entry.id, "--method", "abandoned")
        assert result.exit_code == 1

    def test_dlq_list_empty(self):
        result = self.invoke("dlq", "list")

        assert result.exit_code == 0
        assert "No dead-letter entries" in result.output

    def test_dlq_retry_unknown_entry(self):
        result = self.invoke("dlq", "retry", "dlq_missing")

        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output

    def test_cost_commands_without_usage(self):
        result = self.invoke("cost", "report", "--timeframe", "week")
        assert result.exit_code == 0
        assert "Total cost: $0.0000" in result.output

        result = self.invoke("cost", "alerts")
        assert result.exit_code == 0
        assert "No active cost alerts" in result.output

        result = self.invoke("cost", "recommend")
        assert result.exit_code == 0
        assert "No recommendations" in result.output

    def test_cost_ack_unknown_alert(self):
        result = self.invoke("cost", "ack", "alert_missing")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_providers_without_registrations(self):
        result = self.invoke("providers")

        assert result.exit_code == 1
        assert "No providers registered" in result.output
