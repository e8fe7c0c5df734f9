"""
Dead-letter subsystem.

Quarantines permanently failed jobs, supports manual and automatic retry,
tracks resolution and looks for failure patterns across recent entries.
"""

import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Sequence

from ..config.loader import DeadLetterConfig
from ..providers.registry import ProviderRegistry
from ..storage.models import (
    DeadLetterEntry,
    FailureCategory,
    Job,
    JobKind,
    Resolution,
    ResolutionMethod,
    RetryAttempt,
)
from ..storage.repository import DeadLetterRepository
from . import events
from .classification import categorize_failure
from .errors import MalformedTemplate
from .queue import JobQueue, new_job_id
from .scheduling import Scheduler
from .templates import PayloadResolver

logger = logging.getLogger(__name__)

PATTERN_PROVIDER = "provider_multiple_failures"
PATTERN_TEMPLATE = "template_multiple_failures"
PATTERN_CATEGORY = "error_pattern_spike"

# Fields of the original job a retry may override.
MODIFIABLE_FIELDS = frozenset({
    "provider_id", "priority", "max_retries", "timeout_ms", "cost_limit",
    "content_id", "agent_id", "template_id", "variables",
})


class RetryErrorCode(Enum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    NON_RETRYABLE = "NON_RETRYABLE"
    COST_THRESHOLD_EXCEEDED = "COST_THRESHOLD_EXCEEDED"
    ENQUEUE_FAILED = "ENQUEUE_FAILED"


@dataclass(frozen=True)
class RetryOptions:
    modified_job_data: Dict[str, Any] = field(default_factory=dict)
    force_different_provider: bool = False
    resolved_by: str = "system"
    notes: Optional[str] = None


@dataclass(frozen=True)
class RetryResult:
    success: bool
    new_job_id: Optional[str] = None
    error: Optional[str] = None
    code: Optional[RetryErrorCode] = None


@dataclass
class DeadLetterStats:
    total_entries: int = 0
    unresolved: int = 0
    resolved: int = 0
    abandoned: int = 0
    by_category: Dict[str, int] = field(default_factory=dict)
    by_provider: Dict[str, int] = field(default_factory=dict)
    resolution_methods: Dict[str, int] = field(default_factory=dict)
    average_hours_to_resolution: float = 0.0
    oldest_unresolved: Optional[datetime] = None


class DeadLetterQueue:
    """Terminal store and retry controller for permanently failed jobs.

    Resolution is first-writer-wins: it is claimed with a compare-and-set in
    the store, so concurrent ``retry`` or ``resolve`` calls on one entry
    produce exactly one winner.
    """

    def __init__(
        self,
        repository: DeadLetterRepository,
        queue: JobQueue,
        registry: Optional[ProviderRegistry] = None,
        bus: Optional[events.EventBus] = None,
        config: Optional[DeadLetterConfig] = None,
        scheduler: Optional[Scheduler] = None,
        resolver: Optional[PayloadResolver] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.queue = queue
        self.registry = registry
        self.bus = bus or queue.bus
        self.config = config or DeadLetterConfig()
        self.scheduler = scheduler or Scheduler()
        self.resolver = resolver
        self.rng = rng or random.Random()

    @property
    def clock(self):
        return self.queue.clock

    def add_entry(
        self,
        job: Job,
        failure_reason: str,
        stack_trace: Optional[str] = None,
        retry_history: Sequence[RetryAttempt] = (),
    ) -> DeadLetterEntry:
        """Quarantine a failed job.

        A second call for the same job id returns the existing entry and
        emits nothing.
        """
        now = self.clock()
        history = list(retry_history)
        entry = DeadLetterEntry(
            id=f"dlq_{uuid.uuid4().hex[:16]}",
            original_job=job,
            failure_reason=failure_reason,
            failure_category=categorize_failure(failure_reason),
            failure_count=len(history) + 1,
            first_failure_at=history[0].attempt_at if history else now,
            last_failure_at=now,
            retry_attempts=history,
            stack_trace=stack_trace,
        )
        if not self.repository.add(entry):
            logger.info("Job %s already has a dead-letter entry", job.id)
            return self.repository.get_by_job(job.id)

        logger.warning(
            "Job %s added to dead-letter as %s [%s]: %s",
            job.id, entry.id, entry.failure_category.value, failure_reason,
        )
        self.bus.emit(events.DEAD_LETTER_ENTRY_ADDED, {
            "entry_id": entry.id,
            "job_id": job.id,
            "content_id": job.payload_ref.content_id,
            "provider_id": job.provider_id,
            "template_id": job.payload_ref.template_id,
            "failure_reason": failure_reason,
            "failure_category": entry.failure_category.value,
            "failure_count": entry.failure_count,
        })
        self.analyze_failure_pattern(entry)
        return entry

    def retry(self, entry_id: str, options: Optional[RetryOptions] = None) -> RetryResult:
        """Re-admit a dead-lettered job as a fresh ``retry`` job.

        Refusals come back as a failed ``RetryResult`` with a code; they are
        never raised.
        """
        options = options or RetryOptions()
        entry = self.repository.get(entry_id)
        if entry is None:
            return RetryResult(False, error="Dead-letter entry not found", code=RetryErrorCode.NOT_FOUND)
        if entry.is_resolved:
            return RetryResult(False, error="Entry already resolved", code=RetryErrorCode.ALREADY_RESOLVED)
        if entry.failure_category in self.config.non_retryable_categories:
            return RetryResult(False, error="Non-retryable error type", code=RetryErrorCode.NON_RETRYABLE)
        if entry.original_job.cost_estimate > self.config.retry_cost_threshold:
            return RetryResult(
                False,
                error="Cost threshold exceeded for retry",
                code=RetryErrorCode.COST_THRESHOLD_EXCEEDED,
            )

        job = self._build_retry_job(entry, options)
        resolution = Resolution(
            resolved_at=self.clock(),
            resolved_by=options.resolved_by,
            method=ResolutionMethod.MANUAL_RETRY,
            notes=options.notes,
        )
        if not self.repository.claim_resolution(entry_id, resolution):
            return RetryResult(False, error="Entry already resolved", code=RetryErrorCode.ALREADY_RESOLVED)

        try:
            self.queue.enqueue_job(job, delay=self.config.manual_retry_delay)
        except Exception as e:
            self.repository.clear_resolution(entry_id)
            logger.error("Failed to retry dead-letter entry %s: %s", entry_id, e)
            return RetryResult(False, error=str(e), code=RetryErrorCode.ENQUEUE_FAILED)

        logger.info("Dead-letter entry %s retried as job %s", entry_id, job.id)
        self._emit_resolved(entry, resolution)
        return RetryResult(True, new_job_id=job.id)

    def _build_retry_job(self, entry: DeadLetterEntry, options: RetryOptions) -> Job:
        changes = dict(options.modified_job_data)
        unknown = set(changes) - MODIFIABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot modify job fields: {sorted(unknown)}")

        original = entry.original_job
        payload_ref = original.payload_ref
        payload_changes = {
            key: changes.pop(key) for key in ("content_id", "agent_id", "template_id") if key in changes
        }
        if "variables" in changes:
            payload_changes["variables"] = {**payload_ref.variables, **changes.pop("variables")}
        if payload_changes:
            payload_ref = replace(payload_ref, **payload_changes)

        provider_id = changes.pop("provider_id", original.provider_id)
        if options.force_different_provider and self.registry is not None:
            provider_id = self.registry.get_alternative_provider(
                provider_id, self._compatible_providers(entry),
            ) or provider_id

        return Job(
            id=new_job_id(),
            payload_ref=payload_ref,
            priority=changes.get("priority", original.priority),
            kind=JobKind.RETRY,
            provider_id=provider_id,
            max_retries=changes.get("max_retries", original.max_retries),
            requester_id=original.requester_id,
            cost_estimate=original.cost_estimate,
            cost_limit=changes.get("cost_limit", original.cost_limit),
            timeout_ms=changes.get("timeout_ms", original.timeout_ms),
        )

    def _compatible_providers(self, entry: DeadLetterEntry) -> Optional[List[str]]:
        if self.resolver is None:
            return None
        try:
            compatible = self.resolver.resolve(entry.original_job.payload_ref).compatible_providers
        except MalformedTemplate:
            return None
        return list(compatible) or None

    def resolve(
        self,
        entry_id: str,
        method: ResolutionMethod,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> bool:
        """Close an entry without retrying it.

        Returns:
            True for the first caller only
        """
        entry = self.repository.get(entry_id)
        if entry is None:
            return False
        resolution = Resolution(
            resolved_at=self.clock(),
            resolved_by=resolved_by,
            method=method,
            notes=notes,
        )
        if not self.repository.claim_resolution(entry_id, resolution):
            return False
        logger.info("Dead-letter entry %s resolved via %s", entry_id, method.value)
        self._emit_resolved(entry, resolution)
        return True

    def _emit_resolved(self, entry: DeadLetterEntry, resolution: Resolution) -> None:
        self.bus.emit(events.DEAD_LETTER_ENTRY_RESOLVED, {
            "entry_id": entry.id,
            "job_id": entry.original_job.id,
            "content_id": entry.original_job.payload_ref.content_id,
            "resolution_method": resolution.method.value,
            "resolved_by": resolution.resolved_by,
        })

    def analyze_failure_pattern(self, entry: DeadLetterEntry) -> List[Dict[str, Any]]:
        """Emit a pattern event for every threshold the recent entries reach.

        Advisory: errors are logged and an empty list is returned.
        """
        thresholds = self.config.patterns
        try:
            since = self.clock() - timedelta(hours=thresholds.window_hours)
            recent = self.repository.list_entries(since=since)
            timeframe = f"{thresholds.window_hours:g}h"
            checks = [
                (
                    PATTERN_PROVIDER, entry.provider_id, thresholds.provider,
                    lambda e: e.provider_id == entry.provider_id,
                    "Consider temporarily disabling this provider",
                ),
                (
                    PATTERN_TEMPLATE, entry.template_ref, thresholds.template,
                    lambda e: e.template_ref == entry.template_ref,
                    "Review template configuration and variables",
                ),
                (
                    PATTERN_CATEGORY, entry.failure_category.value, thresholds.category,
                    lambda e: e.failure_category is entry.failure_category,
                    f"Investigate root cause of {entry.failure_category.value} errors",
                ),
            ]
            detected = []
            for pattern_type, key, threshold, matches, recommendation in checks:
                if key is None:
                    continue
                count = sum(1 for e in recent if matches(e))
                if count >= threshold:
                    pattern = {
                        "type": pattern_type,
                        "key": key,
                        "count": count,
                        "timeframe": timeframe,
                        "recommendation": recommendation,
                    }
                    logger.warning("Failure pattern %s for %s: %d in %s", pattern_type, key, count, timeframe)
                    self.bus.emit(events.DEAD_LETTER_PATTERN_DETECTED, pattern)
                    detected.append(pattern)
            return detected
        except Exception as e:
            logger.warning("Failed to analyze failure pattern: %s", e)
            return []

    def is_retryable(self, entry: DeadLetterEntry) -> bool:
        return entry.failure_category in self.config.retryable_categories

    def sweep_auto_retries(self) -> int:
        """Schedule jittered retries for cooled-down, retryable entries.

        Returns:
            Number of retries scheduled
        """
        if not self.config.auto_retry_enabled:
            return 0
        cutoff = self.clock() - timedelta(minutes=self.config.cooling_period_minutes)
        candidates = [
            entry for entry in self.repository.list_entries(resolved=False)
            if self.is_retryable(entry) and entry.last_failure_at < cutoff
        ]
        for entry in candidates:
            delay = self.rng.uniform(0, self.config.max_jitter_seconds)
            self.scheduler.call_later(delay, partial(self._auto_retry, entry.id))
        if candidates:
            logger.info("Scheduled %d auto-retries", len(candidates))
        return len(candidates)

    def _auto_retry(self, entry_id: str) -> None:
        result = self.retry(entry_id, RetryOptions(
            force_different_provider=True,
            resolved_by="auto-retry",
            notes="Automatic retry after cooling period",
        ))
        if result.success:
            logger.info("Auto-retried dead-letter entry %s as job %s", entry_id, result.new_job_id)
        else:
            logger.warning("Auto-retry failed for dead-letter entry %s: %s", entry_id, result.error)

    def cleanup_resolved(self) -> int:
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        removed = self.repository.delete_resolved_before(cutoff)
        if removed:
            logger.info("Cleaned up %d old resolved dead-letter entries", removed)
        return removed

    def get_entry(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return self.repository.get(entry_id)

    def get_entries(
        self,
        resolved: Optional[bool] = None,
        category: Optional[FailureCategory] = None,
        provider_id: Optional[str] = None,
        content_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[DeadLetterEntry]:
        """Entries matching every given filter, most recent failure first."""
        if offset and limit is None:
            limit = 50
        return self.repository.list_entries(
            resolved=resolved,
            category=category,
            provider_id=provider_id,
            content_id=content_id,
            requester_id=requester_id,
            limit=limit,
            offset=offset,
        )

    def get_stats(self) -> DeadLetterStats:
        entries = self.repository.list_entries()
        stats = DeadLetterStats(total_entries=len(entries))
        resolution_hours = []
        for entry in entries:
            category = entry.failure_category.value
            stats.by_category[category] = stats.by_category.get(category, 0) + 1
            provider = entry.provider_id or "unknown"
            stats.by_provider[provider] = stats.by_provider.get(provider, 0) + 1
            if entry.resolution is None:
                stats.unresolved += 1
                if stats.oldest_unresolved is None or entry.first_failure_at < stats.oldest_unresolved:
                    stats.oldest_unresolved = entry.first_failure_at
                continue
            stats.resolved += 1
            method = entry.resolution.method
            if method is ResolutionMethod.ABANDONED:
                stats.abandoned += 1
            stats.resolution_methods[method.value] = stats.resolution_methods.get(method.value, 0) + 1
            elapsed = entry.resolution.resolved_at - entry.first_failure_at
            resolution_hours.append(elapsed.total_seconds() / 3600)
        if resolution_hours:
            stats.average_hours_to_resolution = round(sum(resolution_hours) / len(resolution_hours), 2)
        return stats
