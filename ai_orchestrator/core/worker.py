"""
Worker pool and job processor.

A processor executes one claimed job per call: it validates cost, resolves
the payload, picks a provider, calls it under a timeout and then either
completes the job, schedules a retry or hands the job to the dead-letter
subsystem. The pool runs processors on worker threads.
"""

import logging
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from ..config.loader import QueueConfig
from ..providers.base import GenerationRequest, GenerationResponse, Modality, ProviderAdapter
from ..providers.registry import ProviderRegistry, SelectionCriteria
from ..storage.models import Batch, Job, JobState, RetryAttempt
from . import events
from .classification import classify_error
from .errors import CostLimitExceeded, JobCancelled, NoEligibleProvider, ProviderTimeout
from .queue import JobQueue
from .templates import PayloadResolver, ResolvedPayload

logger = logging.getLogger(__name__)

STEP_INITIALIZING = ("initializing", 0, "Starting content generation")
STEP_PREPARING = ("preparing", 20, "Preparing generation context")
STEP_GENERATING = ("generating", 70, "Generating content")
STEP_COMPLETED = ("completed", 100, "Generation completed")


class Outcome(Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"
    # Another caller changed the job first; nothing was written.
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class AttemptResult:
    job_id: str
    outcome: Outcome
    cost: float = 0.0
    tokens: int = 0
    error: Optional[str] = None


class DeadLetterSink(Protocol):
    def add_entry(
        self,
        job: Job,
        failure_reason: str,
        stack_trace: Optional[str] = None,
        retry_history: Sequence[RetryAttempt] = (),
    ) -> Any:
        ...


class JobProcessor:
    """Executes claimed jobs against the provider registry."""

    def __init__(
        self,
        queue: JobQueue,
        registry: ProviderRegistry,
        resolver: PayloadResolver,
        dead_letter: DeadLetterSink,
        bus: Optional[events.EventBus] = None,
        config: Optional[QueueConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_calls: Optional[int] = None,
    ):
        self.queue = queue
        self.registry = registry
        self.resolver = resolver
        self.dead_letter = dead_letter
        self.bus = bus or queue.bus
        self.config = config or queue.config
        self.sleep = sleep
        self.stop_event = threading.Event()
        # One slot per job that can be in flight at once.
        max_calls = max_calls or self.config.worker_concurrency * self.config.default_parallel_limit
        self._calls = ThreadPoolExecutor(max_workers=max_calls, thread_name_prefix="provider-call")

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.queue.clock

    def shutdown(self) -> None:
        self._calls.shutdown(wait=False)

    def process(self, job: Job) -> AttemptResult:
        """Run one attempt of an active job.

        Never raises for execution errors: every failure ends as a scheduled
        retry or a dead-letter entry.
        """
        started = time.monotonic()
        provider_id = job.provider_id
        cost = 0.0
        tokens = 0
        try:
            self._checkpoint(job, STEP_INITIALIZING, cost, tokens)
            if job.cost_estimate > job.cost_limit:
                raise CostLimitExceeded(job.cost_estimate, job.cost_limit)

            self._checkpoint(job, STEP_PREPARING, cost, tokens)
            payload = self.resolver.resolve(job.payload_ref)
            adapter = self._select_provider(job, payload)
            provider_id = adapter.name
            job.provider_id = provider_id

            step, progress, message = STEP_GENERATING
            self._checkpoint(job, (step, progress, f"{message} with {provider_id}"), cost, tokens)
            response = self._invoke(adapter, payload.to_request(), job.timeout_ms)
        except JobCancelled:
            if self.queue.mark_cancelled(job):
                return AttemptResult(job.id, Outcome.CANCELLED)
            return AttemptResult(job.id, Outcome.SUPERSEDED)
        except Exception as e:
            return self._handle_failure(job, e, provider_id, started)

        return self._handle_success(job, response, started)

    def _checkpoint(self, job: Job, step: tuple, cost: float, tokens: int) -> None:
        if self.queue.is_cancel_requested(job.id):
            raise JobCancelled(job.id)
        name, progress, message = step
        self.queue.record_progress(job.id, progress)
        self._emit_progress(job, name, progress, message, cost, tokens)

    def _emit_progress(
        self, job: Job, step: str, progress: int, message: str, cost: float, tokens: int,
    ) -> None:
        self.bus.emit(events.JOB_PROGRESS, {
            "job_id": job.id,
            "batch_id": job.batch_id,
            "step": step,
            "progress": progress,
            "message": message,
            "current_cost": cost,
            "tokens_used": tokens,
        })

    def _select_provider(self, job: Job, payload: ResolvedPayload) -> ProviderAdapter:
        """Choose the adapter for this attempt.

        Order: pinned provider, then the payload's compatible providers, then
        the cheapest eligible provider. Excluded providers are skipped while
        any alternative exists.
        """
        excluded = set(job.excluded_providers)
        candidates = ([job.provider_id] if job.provider_id else []) + list(payload.compatible_providers)
        registered = [name for name in candidates if self.registry.has_provider(name)]
        allowed = [name for name in registered if name not in excluded]

        if allowed:
            primary = allowed[0]
        else:
            criteria = SelectionCriteria(
                max_tokens=payload.max_tokens,
                requires_images=payload.modality is Modality.IMAGE,
                preferred_providers=tuple(registered),
                exclude=tuple(excluded),
            )
            try:
                primary = self.registry.get_optimal_provider(criteria).name
            except NoEligibleProvider:
                if not excluded:
                    raise
                # Every alternative has been tried; allow a repeat.
                primary = self.registry.get_optimal_provider(
                    SelectionCriteria(
                        max_tokens=payload.max_tokens,
                        requires_images=payload.modality is Modality.IMAGE,
                        preferred_providers=tuple(registered),
                    )
                ).name
        return self.registry.get_provider_with_failover(primary, exclude=tuple(excluded - {primary}))

    def _invoke(self, adapter: ProviderAdapter, request: GenerationRequest, timeout_ms: int) -> GenerationResponse:
        """Call the provider, timing out ``timeout_ms`` after the call starts.

        Time spent waiting for a free call slot does not count.
        """
        running = threading.Event()

        def call() -> GenerationResponse:
            running.set()
            return adapter.generate_content(request)

        future = self._calls.submit(call)
        running.wait()
        try:
            return future.result(timeout=timeout_ms / 1000)
        except FutureTimeout:
            raise ProviderTimeout(timeout_ms, provider_id=adapter.name)

    def _handle_success(self, job: Job, response: GenerationResponse, started: float) -> AttemptResult:
        processing_ms = int((time.monotonic() - started) * 1000)
        usage = {
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        }
        result = {
            "content": response.content,
            "model": response.model,
            "provider_id": response.provider_id,
            "finish_reason": response.finish_reason,
            "image_url": response.image_url,
            "usage": usage,
            "cost": response.cost,
            "processing_time_ms": processing_ms,
        }
        if not self.queue.mark_completed(job, result):
            logger.warning("Job %s changed state during execution; result discarded", job.id)
            return AttemptResult(job.id, Outcome.SUPERSEDED)

        step, progress, message = STEP_COMPLETED
        self._emit_progress(job, step, progress, message, response.cost, response.usage.total_tokens)
        logger.info(
            "Job %s completed on %s: $%.6f, %d tokens, %dms",
            job.id, response.provider_id, response.cost, response.usage.total_tokens, processing_ms,
        )
        self.bus.emit(events.JOB_COMPLETED, {
            "job_id": job.id,
            "batch_id": job.batch_id,
            "result": result,
            "usage": usage,
            "cost": response.cost,
            "provider_id": response.provider_id,
            "agent_id": job.payload_ref.agent_id,
            "template_id": job.payload_ref.template_id,
            "content_id": job.payload_ref.content_id,
            "processing_time_ms": processing_ms,
            "retry_count": job.retry_count,
        })
        return AttemptResult(
            job.id, Outcome.COMPLETED, cost=response.cost, tokens=response.usage.total_tokens,
        )

    def _handle_failure(
        self,
        job: Job,
        error: Exception,
        provider_id: Optional[str],
        started: float,
    ) -> AttemptResult:
        category, recoverable = classify_error(error)
        message = str(error) or type(error).__name__
        processing_ms = int((time.monotonic() - started) * 1000)
        will_retry = recoverable and job.retry_count < job.max_retries

        logger.warning(
            "Job %s attempt %d failed on %s [%s, %s]: %s",
            job.id, job.retry_count + 1, provider_id or "no provider", category.value,
            "recoverable" if recoverable else "fatal", message,
        )
        self.bus.emit(events.JOB_FAILED, {
            "job_id": job.id,
            "batch_id": job.batch_id,
            "error": message,
            "category": category.value,
            "recoverable": recoverable,
            "will_retry": will_retry,
            "provider_id": provider_id,
            "agent_id": job.payload_ref.agent_id,
            "template_id": job.payload_ref.template_id,
            "content_id": job.payload_ref.content_id,
            "retry_count": job.retry_count,
            "processing_time_ms": processing_ms,
            "cost": 0.0,
        })

        if will_retry and self.queue.is_cancel_requested(job.id):
            if self.queue.mark_cancelled(job):
                return AttemptResult(job.id, Outcome.CANCELLED, error=message)
            return AttemptResult(job.id, Outcome.SUPERSEDED, error=message)

        if will_retry:
            delay = self.config.retry.backoff_seconds(job.retry_count)
            exclude = provider_id if self.config.retry.provider_rotation else None
            if self.queue.schedule_retry(job, message, delay, exclude_provider=exclude):
                logger.info(
                    "Job %s retry %d/%d scheduled in %.1fs",
                    job.id, job.retry_count, job.max_retries, delay,
                )
                return AttemptResult(job.id, Outcome.RETRY_SCHEDULED, error=message)
            return AttemptResult(job.id, Outcome.SUPERSEDED, error=message)

        stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        if not self.queue.mark_failed(job, message):
            return AttemptResult(job.id, Outcome.SUPERSEDED, error=message)
        logger.warning("Job %s moved to dead-letter after %d attempts", job.id, job.retry_count + 1)
        self.dead_letter.add_entry(job, message, stack_trace, job.retry_history)
        return AttemptResult(job.id, Outcome.DEAD_LETTERED, error=message)

    def process_batch(self, batch: Batch) -> bool:
        """Run a claimed batch until every member is terminal.

        Members are claimed in windows of ``parallel_limit`` and each window
        runs concurrently, with ``inter_chunk_delay`` between windows.

        Returns:
            True if the batch finished, False if it was handed back because
            the processor is stopping
        """
        started = time.monotonic()
        total_cost = 0.0
        total_tokens = 0
        aborted = False
        window_size = max(1, batch.parallel_limit)

        with ThreadPoolExecutor(max_workers=window_size, thread_name_prefix=f"{batch.id}-") as executor:
            while True:
                window: List[Job] = []
                if not aborted:
                    while len(window) < window_size:
                        member = self.queue.claim_batch_member(batch.id)
                        if member is None:
                            break
                        window.append(member)

                for result in executor.map(self.process, window):
                    total_cost += result.cost
                    total_tokens += result.tokens
                    if result.outcome is Outcome.DEAD_LETTERED and batch.fail_fast and not aborted:
                        aborted = True
                        self._abort_batch(batch)

                counts = self.queue.batch_member_counts(batch.id)
                outstanding = counts[JobState.PENDING] + counts[JobState.ACTIVE] + counts[JobState.PAUSED]
                if outstanding == 0:
                    break
                if self.stop_event.is_set():
                    self.queue.reopen_batch(batch.id)
                    logger.info("Batch %s handed back with %d jobs outstanding", batch.id, outstanding)
                    return False
                if window:
                    if self.config.inter_chunk_delay > 0:
                        self.sleep(self.config.inter_chunk_delay)
                else:
                    self.sleep(self._wait_for_members(batch.id))

        self._finish_batch(batch, started, total_cost, total_tokens)
        return True

    def _wait_for_members(self, batch_id: str) -> float:
        next_at = self.queue.next_batch_availability(batch_id)
        if next_at is None:
            return self.config.poll_interval
        return max((next_at - self.clock()).total_seconds(), self.config.poll_interval)

    def _abort_batch(self, batch: Batch) -> None:
        cancelled = 0
        for member in self.queue.list_jobs(state=JobState.PENDING, batch_id=batch.id):
            if self.queue.cancel(member.id):
                cancelled += 1
        for member in self.queue.list_jobs(state=JobState.PAUSED, batch_id=batch.id):
            if self.queue.cancel(member.id):
                cancelled += 1
        logger.warning("Batch %s failed fast; cancelled %d remaining jobs", batch.id, cancelled)

    def _finish_batch(self, batch: Batch, started: float, total_cost: float, total_tokens: int) -> None:
        counts = self.queue.batch_member_counts(batch.id)
        completed = counts[JobState.COMPLETED]
        failed = counts[JobState.FAILED] + counts[JobState.CANCELLED]
        if not self.queue.complete_batch(batch.id):
            return
        processing_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Batch %s completed: %d succeeded, %d failed, $%.4f",
            batch.id, completed, failed, total_cost,
        )
        self.bus.emit(events.BATCH_COMPLETED, {
            "batch_id": batch.id,
            "total_jobs": batch.total_jobs,
            "completed_jobs": completed,
            "failed_jobs": failed,
            "cancelled_jobs": counts[JobState.CANCELLED],
            "total_cost": total_cost,
            "total_tokens": total_tokens,
            "processing_time_ms": processing_ms,
        })


class WorkerPool:
    """Fixed-size pool of worker threads polling the queue.

    Each claimed unit (a single job or a whole batch) is owned by exactly one
    worker until it finishes.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency or queue.config.worker_concurrency
        self.poll_interval = poll_interval if poll_interval is not None else queue.config.poll_interval
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def run_once(self) -> bool:
        """Claim and process one unit of work.

        Returns:
            False if nothing was runnable
        """
        work = self.queue.claim_next_work()
        if work is None:
            return False
        if isinstance(work, Batch):
            self.processor.process_batch(work)
        else:
            self.processor.process(work)
        return True

    def drain(self, timeout: Optional[float] = None) -> int:
        """Process work until nothing is runnable or ``timeout`` passes.

        Returns:
            Number of units processed
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        processed = 0
        while deadline is None or time.monotonic() < deadline:
            if not self.run_once():
                break
            processed += 1
        return processed

    def start(self) -> None:
        if self.running:
            return
        self.processor.stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"worker-{index}", daemon=True)
            for index in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d workers", self.concurrency)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal workers to stop and wait for in-flight work."""
        self.processor.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Workers stopped")

    def _loop(self) -> None:
        stop = self.processor.stop_event
        while not stop.is_set():
            try:
                worked = self.run_once()
            except Exception:
                logger.exception("Worker loop error")
                worked = False
            if not worked:
                stop.wait(self.poll_interval)

    def stats(self) -> Dict[str, Any]:
        return {
            "workers": self.concurrency,
            "running": self.running,
            "queue": self.queue.get_stats().to_dict(),
        }
