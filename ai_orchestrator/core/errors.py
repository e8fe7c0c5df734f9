"""
Error types raised by the orchestrator.

Each error carries a stable ``code`` so callers (CLI, services) can branch on
it without parsing messages.
"""

from typing import Optional

from ..storage.models import FailureCategory


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    code = "ORCHESTRATOR_ERROR"


class CostLimitExceeded(OrchestratorError):
    """Estimated cost is above the caller's limit."""
    code = "COST_LIMIT_EXCEEDED"

    def __init__(self, estimate: float, limit: float):
        self.estimate = estimate
        self.limit = limit
        super().__init__(
            f"Estimated cost ${estimate:.2f} exceeds limit ${limit:.2f}"
        )


class BatchSizeExceeded(OrchestratorError):
    code = "BATCH_SIZE_EXCEEDED"

    def __init__(self, size: int, maximum: int):
        self.size = size
        self.maximum = maximum
        super().__init__(f"Batch size {size} exceeds maximum of {maximum}")


class UnknownProvider(OrchestratorError):
    code = "UNKNOWN_PROVIDER"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Provider '{name}' not found")


class NoEligibleProvider(OrchestratorError):
    code = "NO_ELIGIBLE_PROVIDER"

    def __init__(self, message: str = "No providers match the specified criteria"):
        super().__init__(message)


class RateLimited(OrchestratorError):
    """Admission refused by the rate-limit gate under the ``reject`` policy."""
    code = "RATE_LIMITED"

    def __init__(self, scope: str, retry_after_ms: int):
        self.scope = scope
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Rate limit reached for {scope}, retry after {retry_after_ms}ms"
        )


class NoHealthyFallback(OrchestratorError):
    code = "NO_HEALTHY_FALLBACK"

    def __init__(self, primary: str):
        self.primary = primary
        super().__init__(f"No healthy fallback providers available for '{primary}'")


class ProviderError(OrchestratorError):
    """Failure reported by a provider adapter.

    Attributes:
        category: Classified failure category
        recoverable: Whether a retry may succeed
        provider_id: Adapter name, when known
    """
    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        category: FailureCategory = FailureCategory.UNKNOWN_ERROR,
        recoverable: bool = False,
        provider_id: Optional[str] = None,
    ):
        self.category = category
        self.recoverable = recoverable
        self.provider_id = provider_id
        super().__init__(message)


class ProviderTimeout(ProviderError):
    code = "PROVIDER_TIMEOUT"

    def __init__(self, timeout_ms: Optional[int] = None, provider_id: Optional[str] = None):
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Provider call timed out after {timeout_ms}ms" if timeout_ms else "Provider call timed out",
            category=FailureCategory.PROVIDER_TIMEOUT,
            recoverable=True,
            provider_id=provider_id,
        )


class MalformedTemplate(OrchestratorError):
    """Template is missing or a variable could not be substituted."""
    code = "MALFORMED_TEMPLATE"


class JobCancelled(OrchestratorError):
    """Raised inside a worker when a cancellation flag is observed."""
    code = "JOB_CANCELLED"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was cancelled")
