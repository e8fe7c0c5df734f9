"""
Job queue.

Admission control (cost gate, rate-limit gate) and scheduling state for
generation jobs. Workers claim jobs through this class; they never touch the
job store directly.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..config.loader import QueueConfig, RateLimitPolicy
from ..providers.registry import ProviderRegistry
from ..storage.models import (
    Batch,
    Job,
    JobKind,
    JobState,
    PayloadRef,
    Priority,
    RetryAttempt,
    TERMINAL_STATES,
)
from ..storage.repository import JobRepository
from . import events
from .errors import BatchSizeExceeded, CostLimitExceeded, RateLimited, UnknownProvider
from .events import EventBus
from .pricing import estimate_job_cost
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_RATE_KEY = "default"
PAUSED_FLAG = "paused"


@dataclass(frozen=True)
class JobRequest:
    """What a caller asks the queue to generate."""
    payload_ref: PayloadRef
    provider_id: Optional[str] = None


@dataclass(frozen=True)
class EnqueueOptions:
    delay: float = 0.0
    cost_limit: Optional[float] = None
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None


@dataclass(frozen=True)
class BatchOptions:
    parallel_limit: Optional[int] = None
    fail_fast: bool = False
    cost_limit: Optional[float] = None
    timeout_ms: Optional[int] = None
    delay: float = 0.0


@dataclass(frozen=True)
class BatchReceipt:
    batch_id: str
    job_ids: List[str]
    total_estimated_cost: float


@dataclass(frozen=True)
class JobStatus:
    """Read-only view of a job for status queries."""
    id: str
    status: str
    progress: int
    job: Job
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    cancelled: int = 0
    paused: int = 0
    is_paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return dict(vars(self))


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:16]}"


def new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex[:16]}"


class JobQueue:
    """Priority queue of generation jobs backed by the job store.

    Jobs are served highest priority weight first and FIFO within a weight.
    Batch admission is serialised by an admission lock so concurrent callers
    never interleave their running cost totals.
    """

    def __init__(
        self,
        jobs: JobRepository,
        config: Optional[QueueConfig] = None,
        registry: Optional[ProviderRegistry] = None,
        bus: Optional[EventBus] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.jobs = jobs
        self.config = config or QueueConfig()
        self.registry = registry
        self.bus = bus or EventBus()
        limits = self.config.rate_limits
        self.rate_limiter = rate_limiter or RateLimiter(
            provider_limits=limits.providers,
            default_limit=limits.default_per_minute,
            global_limit=limits.global_per_minute,
            window_seconds=limits.window_seconds,
        )
        self.clock = clock
        self._admission_lock = threading.Lock()

    # Admission

    def estimate_cost(self, provider_id: Optional[str] = None) -> float:
        """Coarse, conservative cost estimate for one job.

        A pinned, registered provider is priced from its per-token costs.
        Without a pin the most expensive registered provider is assumed.
        """
        if self.registry is not None:
            if provider_id is not None and self.registry.has_provider(provider_id):
                names = [provider_id]
            elif provider_id is None:
                names = self.registry.names()
            else:
                names = []
            estimates = []
            for name in names:
                capabilities = self.registry.get_provider(name).get_capabilities()
                estimates.append(estimate_job_cost(
                    capabilities.cost_per_input_token,
                    capabilities.cost_per_output_token,
                ))
            if estimates:
                return max(estimates)
        return estimate_job_cost(provider_id=provider_id)

    def enqueue(
        self,
        request: JobRequest,
        priority: Priority = Priority.NORMAL,
        requester_id: Optional[str] = None,
        options: Optional[EnqueueOptions] = None,
    ) -> str:
        """Admit a single job.

        Returns:
            The new job id

        Raises:
            UnknownProvider: If the pinned provider is not registered
            CostLimitExceeded: If the estimate is above the cost limit
            RateLimited: If the window is full and the policy is ``reject``
        """
        options = options or EnqueueOptions()
        self._check_provider(request.provider_id)
        cost_limit = options.cost_limit if options.cost_limit is not None else self.config.default_cost_limit
        estimate = self.estimate_cost(request.provider_id)
        if estimate > cost_limit:
            logger.warning(
                "Rejected job for %s: estimated cost $%.2f exceeds limit $%.2f",
                request.payload_ref.content_id or "unknown content", estimate, cost_limit,
            )
            raise CostLimitExceeded(estimate, cost_limit)

        now = self.clock()
        rate_key = request.provider_id or DEFAULT_RATE_KEY
        available_at = self._rate_limit_gate(
            rate_key,
            now,
            now + timedelta(seconds=options.delay),
        )
        job = Job(
            id=new_job_id(),
            payload_ref=request.payload_ref,
            priority=self.config.weight_of(priority),
            kind=JobKind.SINGLE,
            provider_id=request.provider_id,
            max_retries=(
                options.max_retries if options.max_retries is not None
                else self.config.retry.max_retries
            ),
            requester_id=requester_id,
            cost_estimate=estimate,
            cost_limit=cost_limit,
            timeout_ms=options.timeout_ms or self.config.default_timeout_ms,
            created_at=now,
            available_at=available_at,
            rate_key=rate_key,
            rate_slot=available_at,
        )
        self.jobs.add(job)
        logger.info("Enqueued job %s with priority %s", job.id, priority.value)
        self._emit_enqueued(job, now)
        return job.id

    def enqueue_batch(
        self,
        requests: Sequence[JobRequest],
        priority: Priority = Priority.NORMAL,
        requester_id: Optional[str] = None,
        options: Optional[BatchOptions] = None,
    ) -> BatchReceipt:
        """Admit a batch atomically: either every member is stored or none.

        Raises:
            ValueError: If ``requests`` is empty
            BatchSizeExceeded: If there are more requests than ``max_batch_size``
            CostLimitExceeded: If the running estimate passes the batch or job limit
            UnknownProvider: If a pinned provider is not registered
        """
        options = options or BatchOptions()
        if not requests:
            raise ValueError("Batch must contain at least one request")
        if len(requests) > self.config.max_batch_size:
            raise BatchSizeExceeded(len(requests), self.config.max_batch_size)

        with self._admission_lock:
            now = self.clock()
            batch_id = new_batch_id()
            weight = self.config.weight_of(priority)
            job_limit = self.config.default_cost_limit
            available_at = now + timedelta(seconds=options.delay)
            running_total = Decimal("0")
            members: List[Job] = []

            for request in requests:
                self._check_provider(request.provider_id)
                estimate = self.estimate_cost(request.provider_id)
                if estimate > job_limit:
                    raise CostLimitExceeded(estimate, job_limit)
                running_total += Decimal(str(estimate))
                if options.cost_limit is not None and running_total > Decimal(str(options.cost_limit)):
                    logger.warning(
                        "Rejected batch of %d jobs: running estimate $%s exceeds limit $%.2f",
                        len(requests), running_total, options.cost_limit,
                    )
                    raise CostLimitExceeded(float(running_total), options.cost_limit)
                members.append(Job(
                    id=new_job_id(),
                    payload_ref=request.payload_ref,
                    priority=weight,
                    kind=JobKind.BATCH_MEMBER,
                    provider_id=request.provider_id,
                    max_retries=self.config.retry.max_retries,
                    batch_id=batch_id,
                    requester_id=requester_id,
                    cost_estimate=estimate,
                    cost_limit=job_limit,
                    timeout_ms=options.timeout_ms or self.config.default_timeout_ms,
                    created_at=now,
                    available_at=available_at,
                ))

            batch = Batch(
                id=batch_id,
                priority=weight,
                total_jobs=len(members),
                parallel_limit=options.parallel_limit or self.config.default_parallel_limit,
                fail_fast=options.fail_fast,
                requester_id=requester_id,
                total_estimated_cost=float(running_total),
                created_at=now,
            )
            self.jobs.add_many(members, batch=batch)

        receipt = BatchReceipt(
            batch_id=batch_id,
            job_ids=[job.id for job in members],
            total_estimated_cost=float(running_total),
        )
        logger.info("Enqueued batch %s with %d jobs", batch_id, len(members))
        self.bus.emit(events.BATCH_ENQUEUED, {
            "batch_id": batch_id,
            "job_ids": receipt.job_ids,
            "total_jobs": len(members),
            "total_estimated_cost": receipt.total_estimated_cost,
            "priority": weight,
            "requester_id": requester_id,
        })
        return receipt

    def enqueue_job(self, job: Job, delay: float = 0.0) -> str:
        """Admit a pre-built job without the cost gate (dead-letter retries)."""
        now = self.clock()
        job.state = JobState.PENDING
        job.created_at = now
        job.available_at = now + timedelta(seconds=delay)
        job.started_at = None
        job.finished_at = None
        job.progress = 0
        job.cancel_requested = False
        job.rate_key = None
        job.rate_slot = None
        self.jobs.add(job)
        logger.info("Enqueued %s job %s", job.kind.value, job.id)
        self._emit_enqueued(job, now)
        return job.id

    def _check_provider(self, provider_id: Optional[str]) -> None:
        if provider_id and self.registry is not None and not self.registry.has_provider(provider_id):
            raise UnknownProvider(provider_id)

    def _rate_limit_gate(self, key: str, now: datetime, earliest: datetime) -> datetime:
        if self.config.rate_limits.policy is RateLimitPolicy.REJECT and earliest <= now:
            reserved, slot = self.rate_limiter.try_reserve(key, now)
            if not reserved:
                retry_after_ms = int((slot - now).total_seconds() * 1000)
                logger.warning("Rejected job for %s: rate limit reached", key)
                raise RateLimited(key, retry_after_ms)
            return slot
        slot = self.rate_limiter.reserve(key, now, not_before=earliest)
        if slot > earliest:
            logger.info("Rate limit reached for %s, delaying job until %s", key, slot.isoformat())
        return slot

    def _emit_enqueued(self, job: Job, now: datetime) -> None:
        self.bus.emit(events.JOB_ENQUEUED, {
            "job_id": job.id,
            "kind": job.kind.value,
            "priority": job.priority,
            "provider_id": job.provider_id,
            "cost_estimate": job.cost_estimate,
            "requester_id": job.requester_id,
            "batch_id": job.batch_id,
            "delayed": job.available_at is not None and job.available_at > now,
        })

    # Queries

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = self.jobs.get(job_id)
        if job is None:
            return None
        if job.state is JobState.PENDING:
            delayed = job.available_at is not None and job.available_at > self.clock()
            status = "delayed" if delayed else "waiting"
        else:
            status = job.state.value
        return JobStatus(
            id=job.id,
            status=status,
            progress=job.progress,
            job=job,
            error=job.last_error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )

    def get_stats(self) -> QueueStats:
        counts = self.jobs.count_by_state(self.clock())
        return QueueStats(
            waiting=counts["waiting"],
            active=counts[JobState.ACTIVE.value],
            completed=counts[JobState.COMPLETED.value],
            failed=counts[JobState.FAILED.value],
            delayed=counts["delayed"],
            cancelled=counts[JobState.CANCELLED.value],
            paused=counts[JobState.PAUSED.value],
            is_paused=self.is_paused(),
        )

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        return self.jobs.get_batch(batch_id)

    def list_jobs(
        self,
        state: Optional[JobState] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        return self.jobs.list_jobs(state=state, batch_id=batch_id, limit=limit)

    # Control

    def is_paused(self) -> bool:
        return self.jobs.get_flag(PAUSED_FLAG) == "1"

    def pause(self) -> None:
        """Stop handing out work. Admission continues."""
        self.jobs.set_flag(PAUSED_FLAG, "1")
        logger.info("Queue paused")

    def resume(self) -> None:
        self.jobs.set_flag(PAUSED_FLAG, "0")
        logger.info("Queue resumed")

    def pause_job(self, job_id: str) -> bool:
        """Hold a pending job so it is skipped by claims."""
        return self._transition(job_id, JobState.PENDING, JobState.PAUSED)

    def resume_job(self, job_id: str) -> bool:
        return self._transition(job_id, JobState.PAUSED, JobState.PENDING)

    def _transition(self, job_id: str, source: JobState, target: JobState) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.state is not source:
            return False
        job.state = target
        return self.jobs.update(job, expected_state=source)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job.

        A pending or paused job is cancelled outright. An active job gets its
        cancellation flag set and stops at its next progress checkpoint.

        Returns:
            True if the job was cancelled or flagged
        """
        job = self.jobs.get(job_id)
        if job is None:
            return False

        if job.state in (JobState.PENDING, JobState.PAUSED):
            previous = job.state
            job.state = JobState.CANCELLED
            job.finished_at = self.clock()
            if self.jobs.update(job, expected_state=previous):
                self._release_rate_limit(job)
                logger.info("Cancelled pending job %s", job_id)
                self.bus.emit(events.JOB_CANCELLED, {
                    "job_id": job_id,
                    "batch_id": job.batch_id,
                    "was_active": False,
                })
                return True
            job = self.jobs.get(job_id)

        if job is not None and job.state is JobState.ACTIVE:
            flagged = self.jobs.request_cancel(job_id)
            if flagged:
                logger.info("Cancellation requested for active job %s", job_id)
            return flagged
        return False

    def clean(
        self,
        grace: float,
        limit: int = 1000,
        state: JobState = JobState.COMPLETED,
    ) -> int:
        """Delete up to ``limit`` terminal jobs finished more than ``grace`` seconds ago.

        Raises:
            ValueError: If ``state`` is not terminal
        """
        if state not in TERMINAL_STATES:
            raise ValueError(f"Only terminal jobs can be cleaned, got '{state.value}'")
        cutoff = self.clock() - timedelta(seconds=grace)
        removed = self.jobs.delete_terminal(state, cutoff, limit)
        if removed:
            logger.info("Cleaned %d %s jobs", removed, state.value)
        return removed

    def run_maintenance(self) -> Dict[str, int]:
        """Periodic hygiene of finished jobs."""
        completed_grace = self.config.completed_retention_hours * 3600
        failed_grace = self.config.failed_retention_days * 86400
        return {
            JobState.COMPLETED.value: self.clean(
                completed_grace, self.config.completed_clean_limit, JobState.COMPLETED,
            ),
            JobState.CANCELLED.value: self.clean(
                completed_grace, self.config.completed_clean_limit, JobState.CANCELLED,
            ),
            JobState.FAILED.value: self.clean(
                failed_grace, self.config.failed_clean_limit, JobState.FAILED,
            ),
        }

    def requeue_stalled(self) -> int:
        requeued = self.jobs.requeue_stalled(self.clock())
        if requeued:
            logger.warning("Requeued %d jobs left active by a previous run", requeued)
        return requeued

    # Worker-facing operations

    def claim_next(self) -> Optional[Job]:
        """Claim the best runnable job outside any batch."""
        if self.is_paused():
            return None
        return self.jobs.claim_next(self.clock())

    def claim_next_batch(self) -> Optional[Batch]:
        if self.is_paused():
            return None
        return self.jobs.claim_next_batch()

    def claim_next_work(self) -> Optional[Union[Job, Batch]]:
        """Claim whichever single job or batch has the higher priority."""
        if self.is_paused():
            return None
        return self.jobs.claim_next_work(self.clock())

    def claim_batch_member(self, batch_id: str) -> Optional[Job]:
        if self.is_paused():
            return None
        return self.jobs.claim_next(self.clock(), batch_id=batch_id)

    def next_batch_availability(self, batch_id: str) -> Optional[datetime]:
        return self.jobs.next_batch_availability(batch_id)

    def batch_member_counts(self, batch_id: str) -> Dict[JobState, int]:
        return self.jobs.batch_member_counts(batch_id)

    def complete_batch(self, batch_id: str) -> bool:
        return self.jobs.complete_batch(batch_id, self.clock())

    def reopen_batch(self, batch_id: str) -> None:
        """Hand an unfinished batch back so another worker can pick it up."""
        self.jobs.reopen_batch(batch_id)

    def record_progress(self, job_id: str, progress: int) -> None:
        self.jobs.set_progress(job_id, progress)

    def is_cancel_requested(self, job_id: str) -> bool:
        return self.jobs.is_cancel_requested(job_id)

    def mark_completed(self, job: Job, result: Dict[str, Any]) -> bool:
        job.state = JobState.COMPLETED
        job.progress = 100
        job.result = result
        job.finished_at = self.clock()
        return self.jobs.update(job, expected_state=JobState.ACTIVE)

    def schedule_retry(
        self,
        job: Job,
        error: str,
        delay_seconds: float,
        exclude_provider: Optional[str] = None,
    ) -> bool:
        """Put an active job back in the queue after a recoverable failure."""
        now = self.clock()
        job.retry_history = list(job.retry_history) + [
            RetryAttempt(attempt_at=now, error=error, provider_id=job.provider_id)
        ]
        job.retry_count += 1
        job.state = JobState.PENDING
        job.available_at = now + timedelta(seconds=delay_seconds)
        job.started_at = None
        job.progress = 0
        job.last_error = error
        if exclude_provider and exclude_provider not in job.excluded_providers:
            job.excluded_providers = list(job.excluded_providers) + [exclude_provider]
        return self.jobs.update(job, expected_state=JobState.ACTIVE)

    def mark_failed(self, job: Job, error: str) -> bool:
        """Move an active job to ``failed``.

        Returns:
            True only for the caller whose update won, which then owns the
            dead-letter handoff
        """
        job.state = JobState.FAILED
        job.last_error = error
        job.finished_at = self.clock()
        return self.jobs.update(job, expected_state=JobState.ACTIVE)

    def mark_cancelled(self, job: Job) -> bool:
        job.state = JobState.CANCELLED
        job.finished_at = self.clock()
        if not self.jobs.update(job, expected_state=JobState.ACTIVE):
            return False
        self._release_rate_limit(job)
        logger.info("Job %s cancelled during execution", job.id)
        self.bus.emit(events.JOB_CANCELLED, {
            "job_id": job.id,
            "batch_id": job.batch_id,
            "was_active": True,
        })
        return True

    def _release_rate_limit(self, job: Job) -> None:
        if job.rate_key is not None and job.rate_slot is not None:
            self.rate_limiter.release(job.rate_key, job.rate_slot)
