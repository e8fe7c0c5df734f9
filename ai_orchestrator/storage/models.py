"""
Data models for storage layer.

Defines the records owned by the job store, the dead-letter store, the cost
ledger and the alert store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class JobState(Enum):
    """Lifecycle states of a generation job."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class JobKind(Enum):
    """How a job entered the queue."""
    SINGLE = "single"
    BATCH_MEMBER = "batch_member"
    RETRY = "retry"


class Priority(Enum):
    """Scheduling bands, highest first. Weights come from the queue config."""
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class BatchState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class FailureCategory(Enum):
    """Fixed classification of permanent failure reasons."""
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PROVIDER_TIMEOUT = "provider_timeout"
    INVALID_API_KEY = "invalid_api_key"
    CONTENT_POLICY_VIOLATION = "content_policy_violation"
    NETWORK_ERROR = "network_error"
    PROVIDER_OVERLOADED = "provider_overloaded"
    MALFORMED_TEMPLATE = "malformed_template"
    UNKNOWN_ERROR = "unknown_error"


class ResolutionMethod(Enum):
    MANUAL_RETRY = "manual_retry"
    DATA_FIX = "data_fix"
    PROVIDER_FIX = "provider_fix"
    ABANDONED = "abandoned"


class AlertType(Enum):
    DAILY_LIMIT = "daily_limit"
    MONTHLY_LIMIT = "monthly_limit"
    JOB_COST_SPIKE = "job_cost_spike"
    PROVIDER_QUOTA = "provider_quota"
    BUDGET_THRESHOLD = "budget_threshold"


class AlertSeverity(Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class PayloadRef:
    """Reference to the content, agent and template a job generates for.

    The core never interprets these values; it only groups by them for
    reporting and failure pattern analysis.
    """
    content_id: Optional[str] = None
    agent_id: Optional[str] = None
    template_id: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "agent_id": self.agent_id,
            "template_id": self.template_id,
            "variables": dict(self.variables),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PayloadRef":
        return cls(
            content_id=data.get("content_id"),
            agent_id=data.get("agent_id"),
            template_id=data.get("template_id"),
            variables=dict(data.get("variables") or {}),
        )


@dataclass(frozen=True)
class RetryAttempt:
    """One failed attempt that was followed by a retry."""
    attempt_at: datetime
    error: str
    provider_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_at": self.attempt_at.isoformat(),
            "error": self.error,
            "provider_id": self.provider_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryAttempt":
        return cls(
            attempt_at=datetime.fromisoformat(data["attempt_at"]),
            error=data["error"],
            provider_id=data.get("provider_id"),
        )


@dataclass
class Job:
    """Unit of schedulable generation work.

    Owned by the job store while pending and by exactly one worker while
    active.
    """
    id: str
    payload_ref: PayloadRef
    priority: int
    kind: JobKind = JobKind.SINGLE
    provider_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    batch_id: Optional[str] = None
    requester_id: Optional[str] = None
    cost_estimate: float = 0.0
    cost_limit: float = 10.0
    timeout_ms: int = 300000
    state: JobState = JobState.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    available_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False
    progress: int = 0
    retry_history: List[RetryAttempt] = field(default_factory=list)
    excluded_providers: List[str] = field(default_factory=list)
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    # Rate-limit reservation taken at admission, released on cancellation.
    rate_key: Optional[str] = None
    rate_slot: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialize the full job, used for dead-letter snapshots."""
        return {
            "id": self.id,
            "payload_ref": self.payload_ref.to_dict(),
            "priority": self.priority,
            "kind": self.kind.value,
            "provider_id": self.provider_id,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "batch_id": self.batch_id,
            "requester_id": self.requester_id,
            "cost_estimate": self.cost_estimate,
            "cost_limit": self.cost_limit,
            "timeout_ms": self.timeout_ms,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "available_at": _iso(self.available_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "cancel_requested": self.cancel_requested,
            "progress": self.progress,
            "retry_history": [attempt.to_dict() for attempt in self.retry_history],
            "excluded_providers": list(self.excluded_providers),
            "last_error": self.last_error,
            "result": self.result,
            "rate_key": self.rate_key,
            "rate_slot": _iso(self.rate_slot),
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            payload_ref=PayloadRef.from_dict(data["payload_ref"]),
            priority=data["priority"],
            kind=JobKind(data["kind"]),
            provider_id=data.get("provider_id"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            batch_id=data.get("batch_id"),
            requester_id=data.get("requester_id"),
            cost_estimate=data.get("cost_estimate", 0.0),
            cost_limit=data.get("cost_limit", 10.0),
            timeout_ms=data.get("timeout_ms", 300000),
            state=JobState(data.get("state", "pending")),
            created_at=datetime.fromisoformat(data["created_at"]),
            available_at=_parse(data.get("available_at")),
            started_at=_parse(data.get("started_at")),
            finished_at=_parse(data.get("finished_at")),
            cancel_requested=bool(data.get("cancel_requested", False)),
            progress=data.get("progress", 0),
            retry_history=[RetryAttempt.from_dict(a) for a in data.get("retry_history", [])],
            excluded_providers=list(data.get("excluded_providers", [])),
            last_error=data.get("last_error"),
            result=data.get("result"),
            rate_key=data.get("rate_key"),
            rate_slot=_parse(data.get("rate_slot")),
        )


@dataclass
class Batch:
    """Group of batch-member jobs admitted together."""
    id: str
    priority: int
    total_jobs: int
    parallel_limit: int = 10
    fail_fast: bool = False
    requester_id: Optional[str] = None
    total_estimated_cost: float = 0.0
    state: BatchState = BatchState.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Resolution:
    """Auditable record of how a dead-letter entry was closed."""
    resolved_at: datetime
    resolved_by: str
    method: ResolutionMethod
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved_at": self.resolved_at.isoformat(),
            "resolved_by": self.resolved_by,
            "method": self.method.value,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resolution":
        return cls(
            resolved_at=datetime.fromisoformat(data["resolved_at"]),
            resolved_by=data["resolved_by"],
            method=ResolutionMethod(data["method"]),
            notes=data.get("notes"),
        )


@dataclass
class DeadLetterEntry:
    """Terminal record of a permanently failed job."""
    id: str
    original_job: Job
    failure_reason: str
    failure_category: FailureCategory
    failure_count: int
    first_failure_at: datetime
    last_failure_at: datetime
    retry_attempts: List[RetryAttempt] = field(default_factory=list)
    stack_trace: Optional[str] = None
    resolution: Optional[Resolution] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None

    @property
    def provider_id(self) -> Optional[str]:
        return self.original_job.provider_id

    @property
    def template_id(self) -> Optional[str]:
        return self.original_job.payload_ref.template_id

    @property
    def template_ref(self) -> Optional[str]:
        """Template id, or the agent id for payloads without a template."""
        payload_ref = self.original_job.payload_ref
        return payload_ref.template_id or payload_ref.agent_id


@dataclass(frozen=True)
class UsageLogEntry:
    """Immutable record of one execution attempt for financial tracking.

    Append-only rows that form the cost ledger. Once written, these records
    must never be modified.
    """
    timestamp: datetime
    job_id: str
    cost: float
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    success: bool = True
    provider_id: Optional[str] = None
    agent_id: Optional[str] = None
    template_id: Optional[str] = None
    content_id: Optional[str] = None
    error_message: Optional[str] = None
    processing_time_ms: int = 0
    retry_count: int = 0
    quality_score: Optional[float] = None


@dataclass(frozen=True)
class AlertDetails:
    current: float
    limit: float
    timeframe: str
    provider: Optional[str] = None


@dataclass
class CostAlert:
    """Budget threshold breach notice."""
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    details: AlertDetails
    triggered_at: datetime
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
