"""
Tests for the dead-letter subsystem.

Tests quarantine, manual and automatic retry, resolution races, pattern
detection, cleanup and statistics.
"""

import os
import random
import shutil
import sqlite3
import tempfile
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from ai_orchestrator.config.loader import DeadLetterConfig, PatternThresholds
from ai_orchestrator.core import events
from ai_orchestrator.core.dead_letter import RetryErrorCode, RetryOptions
from ai_orchestrator.storage.models import (
    FailureCategory,
    Job,
    JobKind,
    JobState,
    PayloadRef,
    ResolutionMethod,
    RetryAttempt,
)

from fakes import FakeAdapter, FakeClock, InlineScheduler, make_orchestrator, payload, START


class DeadLetterTestCase:
    """Orchestrator with two providers and an inline scheduler."""

    sections = {}

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.scheduler = InlineScheduler()
        self.orchestrator = make_orchestrator(
            os.path.join(self.temp_dir, "test.db"),
            [FakeAdapter("alpha"), FakeAdapter("beta")],
            self.clock,
            scheduler=self.scheduler,
            **self.sections,
        )
        self.dlq = self.orchestrator.dead_letter
        self.dlq.rng = random.Random(0)
        self.events = []
        for name in (
            events.DEAD_LETTER_ENTRY_ADDED,
            events.DEAD_LETTER_ENTRY_RESOLVED,
            events.DEAD_LETTER_PATTERN_DETECTED,
        ):
            self.orchestrator.bus.subscribe(name, lambda data, name=name: self.events.append((name, data)))
        self._sequence = 0

    def teardown_method(self):
        self.orchestrator.stop()
        shutil.rmtree(self.temp_dir)

    def failed_job(self, provider_id="alpha", **kwargs):
        self._sequence += 1
        return Job(
            id=f"job_failed_{self._sequence}",
            payload_ref=payload(content_id=f"content-{self._sequence}"),
            priority=5,
            provider_id=provider_id,
            requester_id="tester",
            cost_estimate=kwargs.pop("cost_estimate", 0.01),
            state=JobState.FAILED,
            **kwargs,
        )

    def add(self, reason="Connection reset by peer", **kwargs):
        return self.dlq.add_entry(self.failed_job(**kwargs), reason, stack_trace="Traceback ...")

    def emitted(self, name):
        return [data for event, data in self.events if event == name]


class TestAddEntry(DeadLetterTestCase):
    """Test quarantining failed jobs."""

    def test_entry_fields(self):
        history = [
            RetryAttempt(attempt_at=START - timedelta(minutes=2), error="timeout", provider_id="alpha"),
            RetryAttempt(attempt_at=START - timedelta(minutes=1), error="timeout", provider_id="alpha"),
        ]
        job = self.failed_job()

        entry = self.dlq.add_entry(job, "Request timed out", "Traceback ...", history)

        assert entry.id.startswith("dlq_")
        assert entry.failure_category is FailureCategory.PROVIDER_TIMEOUT
        assert entry.failure_count == 3
        assert entry.first_failure_at == START - timedelta(minutes=2)
        assert entry.last_failure_at == START
        assert entry.resolution is None
        assert self.dlq.get_entry(entry.id).retry_attempts == history
        added = self.emitted(events.DEAD_LETTER_ENTRY_ADDED)
        assert added[0]["job_id"] == job.id
        assert added[0]["failure_category"] == "provider_timeout"

    def test_second_add_for_same_job_is_ignored(self):
        job = self.failed_job()

        first = self.dlq.add_entry(job, "Connection reset")
        second = self.dlq.add_entry(job, "Connection reset again")

        assert second.id == first.id
        assert len(self.dlq.get_entries()) == 1
        assert len(self.emitted(events.DEAD_LETTER_ENTRY_ADDED)) == 1

    def test_concurrent_adds_create_one_entry(self):
        job = self.failed_job()
        threads = [
            threading.Thread(target=self.dlq.add_entry, args=(job, "Connection reset"))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(self.dlq.get_entries()) == 1
        assert len(self.emitted(events.DEAD_LETTER_ENTRY_ADDED)) == 1


class TestManualRetry(DeadLetterTestCase):
    """Test retrying entries by hand."""

    def test_retry_creates_delayed_retry_job(self):
        entry = self.add()

        result = self.dlq.retry(entry.id, RetryOptions(resolved_by="ops", notes="provider is back"))

        assert result.success is True
        job = self.orchestrator.queue.jobs.get(result.new_job_id)
        assert job.kind is JobKind.RETRY
        assert job.state is JobState.PENDING
        assert job.provider_id == "alpha"
        assert job.available_at == START + timedelta(seconds=5)
        assert self.orchestrator.queue.get_status(job.id).status == "delayed"

        resolution = self.dlq.get_entry(entry.id).resolution
        assert resolution.method is ResolutionMethod.MANUAL_RETRY
        assert resolution.resolved_by == "ops"
        assert resolution.notes == "provider is back"
        assert self.emitted(events.DEAD_LETTER_ENTRY_RESOLVED)[0]["resolution_method"] == "manual_retry"

    def test_retried_job_runs(self):
        entry = self.add()
        result = self.dlq.retry(entry.id)
        self.clock.advance(5)

        assert self.orchestrator.workers.run_once() is True
        assert self.orchestrator.queue.jobs.get(result.new_job_id).state is JobState.COMPLETED

    def test_second_retry_is_refused(self):
        entry = self.add()
        self.dlq.retry(entry.id)

        result = self.dlq.retry(entry.id)

        assert result.success is False
        assert result.code is RetryErrorCode.ALREADY_RESOLVED

    def test_unknown_entry(self):
        result = self.dlq.retry("dlq_missing")

        assert result.code is RetryErrorCode.NOT_FOUND
        assert result.error == "Dead-letter entry not found"

    def test_non_retryable_category(self):
        entry = self.add("Invalid API key")

        result = self.dlq.retry(entry.id)

        assert result.code is RetryErrorCode.NON_RETRYABLE
        assert self.dlq.get_entry(entry.id).resolution is None

    def test_unknown_category_can_be_retried_manually(self):
        entry = self.add("Something odd happened")

        assert self.dlq.retry(entry.id).success is True

    def test_modified_job_data(self):
        entry = self.add()

        result = self.dlq.retry(entry.id, RetryOptions(modified_job_data={
            "variables": {"topic": "dogs"},
            "priority": 10,
            "timeout_ms": 1000,
        }))

        job = self.orchestrator.queue.jobs.get(result.new_job_id)
        assert job.payload_ref.variables == {"topic": "dogs"}
        assert job.payload_ref.content_id == entry.original_job.payload_ref.content_id
        assert job.priority == 10
        assert job.timeout_ms == 1000

    def test_unknown_modified_field_is_rejected(self):
        entry = self.add()

        with pytest.raises(ValueError, match="Cannot modify job fields"):
            self.dlq.retry(entry.id, RetryOptions(modified_job_data={"state": "completed"}))

        assert self.dlq.get_entry(entry.id).resolution is None

    def test_force_different_provider(self):
        entry = self.add(provider_id="alpha")

        result = self.dlq.retry(entry.id, RetryOptions(force_different_provider=True))

        assert self.orchestrator.queue.jobs.get(result.new_job_id).provider_id == "beta"

    def test_enqueue_failure_reopens_entry(self):
        entry = self.add()

        with patch.object(
            self.orchestrator.queue, "enqueue_job", side_effect=sqlite3.OperationalError("database is locked"),
        ):
            result = self.dlq.retry(entry.id)

        assert result.code is RetryErrorCode.ENQUEUE_FAILED
        assert "database is locked" in result.error
        assert self.dlq.get_entry(entry.id).resolution is None
        assert self.dlq.retry(entry.id).success is True

    def test_concurrent_retries_have_one_winner(self):
        entry = self.add()
        results = []

        def retry():
            results.append(self.dlq.retry(entry.id))

        threads = [threading.Thread(target=retry) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for result in results if result.success) == 1
        assert {result.code for result in results if not result.success} <= {RetryErrorCode.ALREADY_RESOLVED}
        retry_jobs = [
            job for job in self.orchestrator.queue.list_jobs() if job.kind is JobKind.RETRY
        ]
        assert len(retry_jobs) == 1


class TestCostThreshold(DeadLetterTestCase):
    """Test the retry cost threshold."""

    sections = {"dead_letter": DeadLetterConfig(retry_cost_threshold=0.005)}

    def test_expensive_entry_is_refused(self):
        entry = self.add()

        result = self.dlq.retry(entry.id)

        assert result.code is RetryErrorCode.COST_THRESHOLD_EXCEEDED
        assert self.dlq.get_entry(entry.id).resolution is None


class TestResolve(DeadLetterTestCase):
    """Test closing entries without a retry."""

    def test_resolve_once(self):
        entry = self.add()

        assert self.dlq.resolve(entry.id, ResolutionMethod.ABANDONED, "ops", "not needed") is True
        assert self.dlq.resolve(entry.id, ResolutionMethod.DATA_FIX, "ops") is False

        resolution = self.dlq.get_entry(entry.id).resolution
        assert resolution.method is ResolutionMethod.ABANDONED
        assert self.dlq.retry(entry.id).code is RetryErrorCode.ALREADY_RESOLVED
        assert len(self.emitted(events.DEAD_LETTER_ENTRY_RESOLVED)) == 1

    def test_resolve_unknown_entry(self):
        assert self.dlq.resolve("dlq_missing", ResolutionMethod.ABANDONED, "ops") is False


class TestPatterns(DeadLetterTestCase):
    """Test failure pattern detection."""

    sections = {"dead_letter": DeadLetterConfig(patterns=PatternThresholds(provider=2))}

    def test_provider_pattern(self):
        self.add(provider_id="alpha")
        assert self.emitted(events.DEAD_LETTER_PATTERN_DETECTED) == []

        self.add(provider_id="alpha")

        patterns = self.emitted(events.DEAD_LETTER_PATTERN_DETECTED)
        assert len(patterns) == 1
        assert patterns[0]["type"] == "provider_multiple_failures"
        assert patterns[0]["key"] == "alpha"
        assert patterns[0]["count"] == 2
        assert patterns[0]["timeframe"] == "24h"

    def test_entries_outside_window_do_not_count(self):
        self.add(provider_id="alpha")
        self.clock.advance(hours=25)

        self.add(provider_id="alpha")

        assert self.emitted(events.DEAD_LETTER_PATTERN_DETECTED) == []

    def test_template_pattern(self):
        for provider_id in ("alpha", "beta", None):
            self.add(provider_id=provider_id)

        types = [pattern["type"] for pattern in self.emitted(events.DEAD_LETTER_PATTERN_DETECTED)]
        assert "template_multiple_failures" in types

    def test_agent_counts_when_payload_has_no_template(self):
        for provider_id in ("alpha", "beta", None):
            job = self.failed_job(provider_id=provider_id)
            job.payload_ref = PayloadRef(agent_id="writer", content_id=job.id)
            self.dlq.add_entry(job, "Connection reset by peer")

        patterns = [
            pattern for pattern in self.emitted(events.DEAD_LETTER_PATTERN_DETECTED)
            if pattern["type"] == "template_multiple_failures"
        ]
        assert [(pattern["key"], pattern["count"]) for pattern in patterns] == [("writer", 3)]


class TestAutoRetry(DeadLetterTestCase):
    """Test the periodic auto-retry sweep."""

    def test_cooled_down_entries_are_retried(self):
        retryable = self.add("Connection reset", provider_id="alpha")
        fatal = self.add("Invalid API key")

        assert self.dlq.sweep_auto_retries() == 0

        self.clock.advance(minutes=61)
        assert self.dlq.sweep_auto_retries() == 1

        assert len(self.scheduler.delays) == 1
        assert 0 <= self.scheduler.delays[0] <= 300
        resolution = self.dlq.get_entry(retryable.id).resolution
        assert resolution.resolved_by == "auto-retry"
        assert self.dlq.get_entry(fatal.id).resolution is None
        retry_jobs = [job for job in self.orchestrator.queue.list_jobs() if job.kind is JobKind.RETRY]
        assert [job.provider_id for job in retry_jobs] == ["beta"]

    def test_unknown_errors_are_not_auto_retried(self):
        self.add("Something odd happened")
        self.clock.advance(hours=2)

        assert self.dlq.sweep_auto_retries() == 0


class TestAutoRetryDisabled(DeadLetterTestCase):

    sections = {"dead_letter": DeadLetterConfig(auto_retry_enabled=False)}

    def test_sweep_does_nothing(self):
        self.add()
        self.clock.advance(hours=2)

        assert self.dlq.sweep_auto_retries() == 0


class TestQueries(DeadLetterTestCase):
    """Test cleanup, listing and statistics."""

    def test_cleanup_resolved(self):
        resolved = self.add()
        kept = self.add()
        self.dlq.resolve(resolved.id, ResolutionMethod.ABANDONED, "ops")

        self.clock.advance(days=29)
        assert self.dlq.cleanup_resolved() == 0
        self.clock.advance(days=2)
        assert self.dlq.cleanup_resolved() == 1

        assert self.dlq.get_entry(resolved.id) is None
        assert self.dlq.get_entry(kept.id) is not None

    def test_filters(self):
        network = self.add("Connection reset", provider_id="alpha")
        self.clock.advance(1)
        auth = self.add("Invalid API key", provider_id="beta")
        self.dlq.resolve(auth.id, ResolutionMethod.PROVIDER_FIX, "ops")

        assert [e.id for e in self.dlq.get_entries()] == [auth.id, network.id]
        assert [e.id for e in self.dlq.get_entries(resolved=False)] == [network.id]
        assert [e.id for e in self.dlq.get_entries(category=FailureCategory.INVALID_API_KEY)] == [auth.id]
        assert [e.id for e in self.dlq.get_entries(provider_id="alpha")] == [network.id]
        assert [e.id for e in self.dlq.get_entries(content_id=network.original_job.payload_ref.content_id)] == [
            network.id,
        ]
        assert [e.id for e in self.dlq.get_entries(limit=1, offset=1)] == [network.id]
        assert len(self.dlq.get_entries(requester_id="tester")) == 2

    def test_stats(self):
        first = self.add("Connection reset", provider_id="alpha")
        self.add("Connection reset", provider_id="alpha")
        self.add("Invalid API key", provider_id=None)
        self.clock.advance(hours=2)
        self.dlq.resolve(first.id, ResolutionMethod.ABANDONED, "ops")

        stats = self.dlq.get_stats()

        assert stats.total_entries == 3
        assert stats.unresolved == 2
        assert stats.resolved == 1
        assert stats.abandoned == 1
        assert stats.by_category == {"network_error": 2, "invalid_api_key": 1}
        assert stats.by_provider == {"alpha": 2, "unknown": 1}
        assert stats.resolution_methods == {"abandoned": 1}
        assert stats.average_hours_to_resolution == 2.0
        assert stats.oldest_unresolved == START
