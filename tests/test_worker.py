"""
Tests for job execution.

Runs jobs and batches through the processor against scripted providers:
retries, dead-lettering, cancellation, provider rotation and batch windows.
"""

import os
import shutil
import tempfile
import threading
from datetime import timedelta

from ai_orchestrator.config.loader import QueueConfig, RetryConfig, TemplateConfig
from ai_orchestrator.core import events
from ai_orchestrator.core.queue import BatchOptions, EnqueueOptions, JobRequest
from ai_orchestrator.core.worker import JobProcessor, Outcome
from ai_orchestrator.orchestrator import Orchestrator
from ai_orchestrator.providers.base import ModelPricing
from ai_orchestrator.storage.models import (
    BatchState,
    FailureCategory,
    Job,
    JobState,
    PayloadRef,
    Priority,
)

from fakes import (
    FakeAdapter,
    FakeClock,
    InlineScheduler,
    make_config,
    make_orchestrator,
    make_registry,
    payload,
    START,
)


class Gauge:
    """Tracks how many provider calls run at the same time."""

    def __init__(self):
        self.current = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __enter__(self):
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)

    def __exit__(self, *exc_info):
        with self._lock:
            self.current -= 1


class WorkerTestCase:
    """Orchestrator on a temporary database with a manual clock."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.clock = FakeClock()
        self.sleeps = []
        self.events = []
        self.orchestrator = None

    def teardown_method(self):
        if self.orchestrator is not None:
            self.orchestrator.stop()
        shutil.rmtree(self.temp_dir)

    def build(self, *adapters, **sections):
        self.orchestrator = make_orchestrator(
            self.db_path, adapters, self.clock, sleeps=self.sleeps, **sections,
        )
        for name in (events.JOB_PROGRESS, events.JOB_FAILED, events.JOB_COMPLETED, events.BATCH_COMPLETED):
            self.orchestrator.bus.subscribe(name, lambda data, name=name: self.events.append((name, data)))
        return self.orchestrator

    def emitted(self, name):
        return [data for event, data in self.events if event == name]

    def enqueue(self, topic="cats", priority=Priority.NORMAL, **options):
        return self.orchestrator.queue.enqueue(
            JobRequest(payload(topic)), priority=priority, options=EnqueueOptions(**options),
        )

    def job(self, job_id):
        return self.orchestrator.queue.jobs.get(job_id)


class TestSingleJobs(WorkerTestCase):
    """Test execution of standalone jobs."""

    def test_job_completes_and_is_recorded(self):
        alpha = FakeAdapter("alpha", cost=0.02)
        orchestrator = self.build(alpha)
        job_id = self.enqueue(priority=Priority.URGENT)

        assert orchestrator.workers.run_once() is True

        job = self.job(job_id)
        assert job.state is JobState.COMPLETED
        assert job.progress == 100
        assert job.provider_id == "alpha"
        assert job.result["content"] == "ok"
        assert job.result["usage"]["total_tokens"] == 15
        assert alpha.calls[0].user_prompt == "Summarize cats"
        assert alpha.calls[0].system_prompt == "You are a careful editor."

        report = orchestrator.cost_monitor.report()
        assert report.totals.cost == 0.02
        assert report.totals.jobs == 1
        assert self.emitted(events.JOB_COMPLETED)[0]["cost"] == 0.02
        assert orchestrator.workers.run_once() is False

    def test_progress_sequence(self):
        self.build(FakeAdapter("alpha"))
        self.enqueue()

        self.orchestrator.workers.run_once()

        steps = [(data["step"], data["progress"]) for data in self.emitted(events.JOB_PROGRESS)]
        assert steps == [("initializing", 0), ("preparing", 20), ("generating", 70), ("completed", 100)]

    def test_recoverable_failure_is_retried_with_backoff(self):
        alpha = FakeAdapter("alpha", script=[RuntimeError("Connection reset by peer")])
        orchestrator = self.build(alpha)
        job_id = self.enqueue()

        orchestrator.workers.run_once()

        job = self.job(job_id)
        assert job.state is JobState.PENDING
        assert job.retry_count == 1
        assert job.available_at == START + timedelta(seconds=2)
        assert orchestrator.workers.run_once() is False

        self.clock.advance(2)
        assert orchestrator.workers.run_once() is True
        assert self.job(job_id).state is JobState.COMPLETED
        assert len(alpha.calls) == 2

    def test_retries_exhausted_moves_job_to_dead_letter(self):
        """Four rate-limit failures with three retries end in one dead-letter entry."""
        alpha = FakeAdapter("alpha", script=[RuntimeError("rate limit exceeded") for _ in range(4)])
        orchestrator = self.build(alpha)
        job_id = self.enqueue(max_retries=3)

        for _ in range(4):
            assert orchestrator.workers.run_once() is True
            self.clock.advance(60)
        assert orchestrator.workers.run_once() is False

        assert len(alpha.calls) == 4
        assert self.job(job_id).state is JobState.FAILED
        entries = orchestrator.dead_letter.get_entries()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.original_job.id == job_id
        assert entry.failure_category is FailureCategory.RATE_LIMIT_EXCEEDED
        assert entry.failure_count == 4
        assert len(entry.retry_attempts) == 3
        assert [data["will_retry"] for data in self.emitted(events.JOB_FAILED)] == [True, True, True, False]
        assert orchestrator.cost_monitor.report().totals.requests == 4

    def test_fatal_error_skips_retries(self):
        alpha = FakeAdapter("alpha", script=[RuntimeError("Invalid API key")])
        orchestrator = self.build(alpha)
        job_id = self.enqueue()

        orchestrator.workers.run_once()

        assert self.job(job_id).state is JobState.FAILED
        entry = orchestrator.dead_letter.get_entries()[0]
        assert entry.failure_category is FailureCategory.INVALID_API_KEY
        assert entry.failure_count == 1
        assert "Invalid API key" in entry.stack_trace
        assert len(alpha.calls) == 1

    def test_unknown_template_is_dead_lettered(self):
        alpha = FakeAdapter("alpha")
        orchestrator = self.build(alpha)
        job_id = orchestrator.queue.enqueue(JobRequest(payload(template_id="missing")))

        orchestrator.workers.run_once()

        entry = orchestrator.dead_letter.get_entries()[0]
        assert entry.failure_category is FailureCategory.MALFORMED_TEMPLATE
        assert entry.failure_reason == "Template 'missing' not found"
        assert self.job(job_id).state is JobState.FAILED
        assert alpha.calls == []

    def test_missing_variable_is_dead_lettered(self):
        orchestrator = self.build(FakeAdapter("alpha"))
        orchestrator.queue.enqueue(JobRequest(PayloadRef(template_id="summary")))

        orchestrator.workers.run_once()

        entry = orchestrator.dead_letter.get_entries()[0]
        assert entry.failure_category is FailureCategory.MALFORMED_TEMPLATE
        assert "topic" in entry.failure_reason

    def test_cost_is_checked_again_before_execution(self):
        alpha = FakeAdapter("alpha")
        orchestrator = self.build(alpha)
        orchestrator.queue.enqueue_job(Job(
            id="job_pricey", payload_ref=payload(), priority=5, cost_estimate=5.0, cost_limit=1.0,
        ))

        orchestrator.workers.run_once()

        assert self.job("job_pricey").state is JobState.FAILED
        assert "exceeds limit" in orchestrator.dead_letter.get_entries()[0].failure_reason
        assert alpha.calls == []

    def test_cancel_during_execution(self):
        alpha = FakeAdapter("alpha")
        orchestrator = self.build(alpha)
        cancelled = []
        orchestrator.bus.subscribe(events.JOB_CANCELLED, cancelled.append)
        job_id = self.enqueue()

        def cancel_when_preparing(data):
            if data["progress"] == 20:
                orchestrator.queue.cancel(data["job_id"])

        orchestrator.bus.subscribe(events.JOB_PROGRESS, cancel_when_preparing)
        job = orchestrator.queue.claim_next()

        result = orchestrator.processor.process(job)

        assert result.outcome is Outcome.CANCELLED
        assert self.job(job_id).state is JobState.CANCELLED
        assert cancelled == [{"job_id": job_id, "batch_id": None, "was_active": True}]
        assert alpha.calls == []
        assert orchestrator.dead_letter.get_entries() == []

    def test_cancel_during_provider_call_stops_retries(self):
        def cancel_then_fail(request):
            assert self.orchestrator.queue.cancel(job_id) is True
            raise RuntimeError("Connection reset by peer")

        alpha = FakeAdapter("alpha", script=[cancel_then_fail])
        orchestrator = self.build(alpha)
        job_id = self.enqueue()

        orchestrator.workers.run_once()
        self.clock.advance(seconds=60)
        orchestrator.workers.run_once()

        assert self.job(job_id).state is JobState.CANCELLED
        assert len(alpha.calls) == 1
        assert orchestrator.dead_letter.get_entries() == []

    def test_timeout_starts_when_the_call_runs(self):
        orchestrator = self.build(FakeAdapter("alpha"))
        processor = JobProcessor(
            orchestrator.queue, orchestrator.registry, orchestrator.resolver, orchestrator.dead_letter,
            max_calls=1,
        )
        gate = threading.Event()
        processor._calls.submit(gate.wait)
        release = threading.Timer(0.3, gate.set)
        release.start()
        job_id = self.enqueue(timeout_ms=200, max_retries=0)

        try:
            result = processor.process(orchestrator.queue.claim_next())
        finally:
            release.cancel()
            gate.set()
            processor.shutdown()

        assert result.outcome is Outcome.COMPLETED
        assert self.job(job_id).state is JobState.COMPLETED

    def test_provider_timeout(self):
        def slow(request):
            threading.Event().wait(0.5)
            return "late"

        orchestrator = self.build(FakeAdapter("alpha", responder=slow))
        job_id = self.enqueue(timeout_ms=50, max_retries=0)

        orchestrator.workers.run_once()

        entry = orchestrator.dead_letter.get_entries()[0]
        assert entry.failure_category is FailureCategory.PROVIDER_TIMEOUT
        assert self.job(job_id).state is JobState.FAILED


class TestProviderSelection(WorkerTestCase):
    """Test provider choice across attempts."""

    def test_failed_provider_is_rotated_out(self):
        alpha = FakeAdapter("alpha", script=[RuntimeError("Connection reset")], pricing=ModelPricing(0.5, 1.0))
        beta = FakeAdapter("beta")
        orchestrator = self.build(alpha, beta)
        job_id = self.enqueue()

        orchestrator.workers.run_once()
        assert self.job(job_id).excluded_providers == ["alpha"]
        self.clock.advance(2)
        orchestrator.workers.run_once()

        job = self.job(job_id)
        assert job.state is JobState.COMPLETED
        assert job.provider_id == "beta"
        assert job.result["provider_id"] == "beta"
        assert (len(alpha.calls), len(beta.calls)) == (1, 1)

    def test_rotation_can_be_disabled(self):
        alpha = FakeAdapter("alpha", script=[RuntimeError("Connection reset")], pricing=ModelPricing(0.5, 1.0))
        beta = FakeAdapter("beta")
        orchestrator = self.build(alpha, beta, queue=QueueConfig(retry=RetryConfig(provider_rotation=False)))
        job_id = self.enqueue()

        orchestrator.workers.run_once()
        self.clock.advance(2)
        orchestrator.workers.run_once()

        assert self.job(job_id).provider_id == "alpha"
        assert (len(alpha.calls), len(beta.calls)) == (2, 0)

    def test_single_provider_is_reused_after_failure(self):
        alpha = FakeAdapter("alpha", script=[RuntimeError("Model is overloaded")])
        orchestrator = self.build(alpha)
        job_id = self.enqueue()

        orchestrator.workers.run_once()
        self.clock.advance(2)
        orchestrator.workers.run_once()

        assert self.job(job_id).state is JobState.COMPLETED
        assert len(alpha.calls) == 2

    def test_template_compatible_providers_are_preferred(self):
        alpha = FakeAdapter("alpha", pricing=ModelPricing(0.5, 1.0))
        beta = FakeAdapter("beta")
        templates = {"summary": TemplateConfig(user_prompt="Summarize {topic}", compatible_providers=("beta",))}
        orchestrator = self.build(alpha, beta, templates=templates)
        job_id = self.enqueue()

        orchestrator.workers.run_once()

        assert self.job(job_id).provider_id == "beta"
        assert alpha.calls == []

    def test_pinned_provider(self):
        alpha = FakeAdapter("alpha", pricing=ModelPricing(0.5, 1.0))
        beta = FakeAdapter("beta")
        orchestrator = self.build(alpha, beta)
        job_id = orchestrator.queue.enqueue(JobRequest(payload(), provider_id="beta"))

        orchestrator.workers.run_once()

        assert self.job(job_id).result["provider_id"] == "beta"


class TestBatches(WorkerTestCase):
    """Test batch windows, partial failure and fail-fast."""

    def enqueue_batch(self, topics, **options):
        return self.orchestrator.queue.enqueue_batch(
            [JobRequest(payload(topic)) for topic in topics], options=BatchOptions(**options),
        )

    def test_partial_failure_in_windows(self):
        gauge = Gauge()

        def respond(request):
            with gauge:
                threading.Event().wait(0.05)
            if "bad" in request.user_prompt:
                raise RuntimeError("Invalid API key")
            return "ok"

        orchestrator = self.build(FakeAdapter("alpha", responder=respond))
        receipt = self.enqueue_batch(["a", "b", "bad", "d", "e"], parallel_limit=2)

        assert orchestrator.workers.run_once() is True

        counts = orchestrator.queue.batch_member_counts(receipt.batch_id)
        assert counts[JobState.COMPLETED] == 4
        assert counts[JobState.FAILED] == 1
        assert gauge.peak <= 2
        assert self.sleeps == [1.0, 1.0]
        assert orchestrator.queue.get_batch(receipt.batch_id).state is BatchState.COMPLETED
        summary = self.emitted(events.BATCH_COMPLETED)[0]
        assert summary["completed_jobs"] == 4
        assert summary["failed_jobs"] == 1
        assert len(orchestrator.dead_letter.get_entries()) == 1

    def test_fail_fast_cancels_remaining_members(self):
        alpha = FakeAdapter("alpha", script=[RuntimeError("Invalid API key")])
        orchestrator = self.build(alpha)
        receipt = self.enqueue_batch(["a", "b", "c", "d"], parallel_limit=1, fail_fast=True)

        orchestrator.workers.run_once()

        counts = orchestrator.queue.batch_member_counts(receipt.batch_id)
        assert counts[JobState.FAILED] == 1
        assert counts[JobState.CANCELLED] == 3
        assert len(alpha.calls) == 1
        summary = self.emitted(events.BATCH_COMPLETED)[0]
        assert summary["failed_jobs"] == 4
        assert summary["cancelled_jobs"] == 3
        assert summary["completed_jobs"] == 0

    def test_member_retry_waits_inside_batch(self):
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            self.clock.advance(seconds)

        alpha = FakeAdapter("alpha", script=[RuntimeError("Connection reset")])
        self.orchestrator = Orchestrator(
            make_config(self.db_path),
            registry=make_registry(alpha),
            scheduler=InlineScheduler(),
            clock=self.clock,
            sleep=sleep,
        )
        receipt = self.enqueue_batch(["a"])

        self.orchestrator.workers.run_once()

        member = self.orchestrator.queue.list_jobs(batch_id=receipt.batch_id)[0]
        assert member.state is JobState.COMPLETED
        assert member.retry_count == 1
        assert sleeps == [1.0, 1.0]

    def test_stopping_processor_hands_batch_back(self):
        orchestrator = self.build(FakeAdapter("alpha"))
        receipt = self.enqueue_batch(["a", "b", "c", "d", "e"], parallel_limit=2)
        batch = orchestrator.queue.claim_next_work()
        orchestrator.processor.stop_event.set()

        assert orchestrator.processor.process_batch(batch) is False

        assert orchestrator.queue.get_batch(receipt.batch_id).state is BatchState.PENDING
        assert orchestrator.queue.batch_member_counts(receipt.batch_id)[JobState.COMPLETED] == 2
        assert self.emitted(events.BATCH_COMPLETED) == []


class TestWorkerPool(WorkerTestCase):
    """Test synchronous draining."""

    def test_drain_processes_everything_runnable(self):
        orchestrator = self.build(FakeAdapter("alpha"))
        for topic in ("a", "b", "c"):
            self.enqueue(topic)
        self.enqueue("later", delay=60)

        assert orchestrator.workers.drain() == 3
        assert orchestrator.queue.get_stats().delayed == 1

    def test_stats(self):
        orchestrator = self.build(FakeAdapter("alpha"))
        self.enqueue()

        stats = orchestrator.workers.stats()

        assert stats["running"] is False
        assert stats["queue"]["waiting"] == 1
