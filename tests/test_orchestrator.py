"""
Tests for the orchestrator facade: provider registration from configuration,
periodic maintenance and the worker lifecycle.
"""

import os
import shutil
import tempfile
import threading
import time
from unittest.mock import patch

import pytest

from ai_orchestrator.config.loader import DeadLetterConfig, ProviderConfig, QueueConfig
from ai_orchestrator.core.queue import JobRequest
from ai_orchestrator.orchestrator import build_registry, Orchestrator
from ai_orchestrator.providers.base import ProviderKind
from ai_orchestrator.storage.models import JobState

from fakes import FakeAdapter, FakeClock, InlineScheduler, make_config, make_orchestrator, payload


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        threading.Event().wait(0.02)
    return predicate()


class TestBuildRegistry:
    """Test adapter registration from provider configuration."""

    def test_providers_without_keys_are_skipped(self, monkeypatch, tmp_path):
        monkeypatch.delenv("TEST_OPENAI_KEY", raising=False)
        monkeypatch.setenv("TEST_ANTHROPIC_KEY", "sk-ant-test")
        config = make_config(str(tmp_path / "test.db"))
        config.providers.update({
            "openai": ProviderConfig(kind=ProviderKind.OPENAI, api_key_env="TEST_OPENAI_KEY"),
            "claude": ProviderConfig(
                kind=ProviderKind.ANTHROPIC,
                api_key_env="TEST_ANTHROPIC_KEY",
                model="claude-3-haiku-20240307",
                requests_per_minute=5,
            ),
        })

        with patch("ai_orchestrator.providers.anthropic_adapter.Anthropic") as mock_anthropic:
            registry = build_registry(config)

        assert registry.names() == ["claude"]
        adapter = registry.get_provider("claude")
        assert adapter.model == "claude-3-haiku-20240307"
        assert adapter.rate_limits.requests_per_minute == 5
        assert mock_anthropic.call_args.kwargs["api_key"] == "sk-ant-test"

    def test_pricing_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
        config = make_config(str(tmp_path / "test.db"))
        config.providers["local"] = ProviderConfig(
            kind=ProviderKind.OPENAI,
            api_key_env="TEST_OPENAI_KEY",
            base_url="http://localhost:8080/v1",
            cost_per_input_token=0.000001,
            cost_per_output_token=0.000002,
        )

        with patch("ai_orchestrator.providers.openai_adapter.OpenAI"):
            registry = build_registry(config)

        capabilities = registry.get_provider("local").get_capabilities()
        assert capabilities.cost_per_input_token == pytest.approx(0.000001)
        assert capabilities.cost_per_output_token == pytest.approx(0.000002)


class OrchestratorTestCase:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.clock = FakeClock()
        self.scheduler = InlineScheduler()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)


class TestMaintenance(OrchestratorTestCase):
    """Test periodic task registration."""

    def test_registers_periodic_tasks(self):
        orchestrator = make_orchestrator(self.db_path, [FakeAdapter("alpha")], self.clock, self.scheduler)

        orchestrator.start_maintenance()
        orchestrator.start_maintenance()

        assert [(name, interval) for name, interval, _ in self.scheduler.periodic] == [
            ("queue-clean", 3600),
            ("dlq-auto-retry", 3600),
            ("dlq-cleanup", 21600),
            ("cost-check", 900),
            ("alert-cleanup", 3600),
        ]

    def test_auto_retry_can_be_disabled(self):
        orchestrator = make_orchestrator(
            self.db_path, [FakeAdapter("alpha")], self.clock, self.scheduler,
            dead_letter=DeadLetterConfig(auto_retry_enabled=False),
        )

        orchestrator.start_maintenance()

        assert "dlq-auto-retry" not in [name for name, _, _ in self.scheduler.periodic]

    def test_periodic_callbacks_run(self):
        orchestrator = make_orchestrator(self.db_path, [FakeAdapter("alpha")], self.clock, self.scheduler)
        orchestrator.start_maintenance()

        callbacks = {name: callback for name, _, callback in self.scheduler.periodic}

        assert callbacks["queue-clean"]() == {"completed": 0, "cancelled": 0, "failed": 0}
        assert callbacks["cost-check"]() == []
        assert callbacks["alert-cleanup"]() == 0


class TestLifecycle(OrchestratorTestCase):
    """Test starting and stopping the worker threads."""

    def test_start_recovers_stalled_jobs_and_runs_them(self):
        previous = make_orchestrator(self.db_path, [FakeAdapter("alpha")], self.clock, self.scheduler)
        job_id = previous.queue.enqueue(JobRequest(payload_ref=payload()))
        assert previous.queue.claim_next().id == job_id

        adapter = FakeAdapter("alpha", responder=lambda request: "Cats are great")
        orchestrator = make_orchestrator(
            self.db_path, [adapter], self.clock, self.scheduler,
            queue=QueueConfig(worker_concurrency=2, poll_interval=0.05),
        )
        orchestrator.start()
        try:
            assert wait_for(lambda: orchestrator.queue.get_status(job_id).job.state is JobState.COMPLETED)
        finally:
            orchestrator.stop(timeout=5.0)

        job = orchestrator.queue.get_status(job_id).job
        assert job.result["content"] == "Cats are great"
        assert adapter.calls[0].user_prompt == "Summarize cats"
        assert orchestrator.workers.running is False
        assert self.scheduler.stopped is True

    def test_context_manager_stops_everything(self):
        adapter = FakeAdapter("alpha")
        with make_orchestrator(self.db_path, [adapter], self.clock, self.scheduler) as orchestrator:
            orchestrator.start()
            assert orchestrator.workers.running is True

        assert orchestrator.workers.running is False
        assert self.scheduler.stopped is True
        assert adapter.is_configured is False

    def test_default_registry_comes_from_config(self):
        orchestrator = Orchestrator(make_config(self.db_path), scheduler=self.scheduler, clock=self.clock)

        assert orchestrator.registry.names() == []
        assert os.path.exists(self.db_path)
