"""
Provider adapter interface.

Every AI backend is wrapped by a ``ProviderAdapter`` subclass. The base class
owns the behavior shared by all backends (usage counters, rate-limit window,
health snapshot, batching) so subclasses only translate requests into SDK
calls and SDK errors into ``ProviderError``.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Iterator, List, Optional, Tuple

from ..core.classification import categorize_failure, is_quota_exhausted, RECOVERABLE_CATEGORIES
from ..core.errors import ProviderError
from ..core.pricing import calculate_cost
from ..core.token_counter import EMPTY_USAGE, TokenUsage
from ..storage.models import FailureCategory

logger = logging.getLogger(__name__)


class ProviderKind(Enum):
    """Closed set of supported backends."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class Modality(Enum):
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int
    requests_per_hour: int
    tokens_per_minute: int
    tokens_per_day: int


@dataclass(frozen=True)
class ProviderHealth:
    """Result of the most recent health check."""
    is_healthy: bool = True
    last_checked_at: Optional[datetime] = None
    response_time_ms: Optional[float] = None
    recent_error_count: int = 0


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capability and cost snapshot of one backend."""
    name: str
    kind: ProviderKind
    supported_models: Tuple[str, ...]
    max_tokens: int
    supports_streaming: bool
    supports_batching: bool
    supports_images: bool
    cost_per_input_token: float
    cost_per_output_token: float
    rate_limits: RateLimits


@dataclass
class ProviderUsage:
    """Cumulative usage counters, mutated under the adapter lock."""
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0
    errors: int = 0
    total_response_time_ms: float = 0.0
    last_used_at: Optional[datetime] = None


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token prices for one model."""
    input_per_million: float
    output_per_million: float

    @property
    def cost_per_input_token(self) -> float:
        return self.input_per_million / 1_000_000

    @property
    def cost_per_output_token(self) -> float:
        return self.output_per_million / 1_000_000


@dataclass(frozen=True)
class GenerationRequest:
    """Rendered request handed to an adapter."""
    user_prompt: str
    system_prompt: Optional[str] = None
    max_tokens: int = 1024
    temperature: Optional[float] = None
    modality: Modality = Modality.TEXT
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResponse:
    content: str
    usage: TokenUsage
    cost: float
    model: str
    provider_id: str
    response_time_ms: float
    finish_reason: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class StreamChunk:
    content: str
    done: bool = False
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class BatchRequest:
    requests: Tuple[GenerationRequest, ...]
    concurrency: int = 10
    inter_chunk_delay: float = 1.0


@dataclass(frozen=True)
class BatchItemError:
    index: int
    error: str


@dataclass(frozen=True)
class BatchResponse:
    """Per-item results in request order; failed items are ``None``."""
    responses: Tuple[Optional[GenerationResponse], ...]
    errors: Tuple[BatchItemError, ...]
    total_cost: float
    total_usage: TokenUsage


@dataclass(frozen=True)
class HealthCheckResult:
    is_healthy: bool
    response_time_ms: float
    error: Optional[str] = None


@dataclass(frozen=True)
class RateLimitStatus:
    can_proceed: bool
    retry_after_ms: Optional[int] = None
    remaining_requests: Optional[int] = None


def error_from_status(
    status_code: Optional[int],
    message: str,
    provider_id: Optional[str] = None,
) -> ProviderError:
    """Translate an HTTP status reported by an SDK into a ProviderError."""
    if status_code in (401, 403):
        return ProviderError(message, FailureCategory.INVALID_API_KEY, False, provider_id)
    if status_code == 429:
        return ProviderError(
            message,
            FailureCategory.RATE_LIMIT_EXCEEDED,
            not is_quota_exhausted(message),
            provider_id,
        )
    if status_code == 408:
        return ProviderError(message, FailureCategory.PROVIDER_TIMEOUT, True, provider_id)
    if status_code == 404:
        return ProviderError(message, FailureCategory.UNKNOWN_ERROR, False, provider_id)
    if status_code in (400, 422):
        return ProviderError(message, categorize_failure(message), False, provider_id)
    if status_code is not None and status_code >= 500:
        return ProviderError(message, FailureCategory.PROVIDER_OVERLOADED, True, provider_id)

    category = categorize_failure(message)
    recoverable = category in RECOVERABLE_CATEGORIES and not is_quota_exhausted(message)
    return ProviderError(message, category, recoverable, provider_id)


class ProviderAdapter(ABC):
    """Uniform wrapper around one AI backend.

    Subclasses implement the ``_``-prefixed hooks. Public methods are safe to
    call from several worker threads at once.
    """

    kind: ProviderKind
    default_model: str
    model_pricing: Dict[str, ModelPricing] = {}
    model_max_tokens: Dict[str, int] = {}
    default_rate_limits: RateLimits
    supports_streaming = True
    supports_batching = True
    supports_images = False

    def __init__(self, name: Optional[str] = None):
        self.name = name or self.kind.value
        self.model = self.default_model
        self.api_key: Optional[str] = None
        self.base_url: Optional[str] = None
        self.default_params: Dict[str, Any] = {}
        self.rate_limits = self.default_rate_limits
        self.pricing_override: Optional[ModelPricing] = None
        self.health = ProviderHealth()
        self.client: Any = None
        self._usage = ProviderUsage()
        self._request_times: Deque[float] = deque()
        self._lock = threading.Lock()

    def configure(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        default_params: Optional[Dict[str, Any]] = None,
        pricing: Optional[ModelPricing] = None,
        rate_limits: Optional[RateLimits] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Set credentials and defaults, then build the SDK client.

        Raises:
            ValueError: If api_key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError(f"api_key is required to configure provider '{self.name}'")
        self.api_key = api_key
        self.model = model or self.default_model
        self.base_url = base_url
        self.default_params = dict(default_params or {})
        if pricing is not None:
            self.pricing_override = pricing
        if rate_limits is not None:
            self.rate_limits = rate_limits
        self.client = self._build_client(timeout)
        logger.info("Configured %s adapter with model %s", self.name, self.model)

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    @property
    def pricing(self) -> ModelPricing:
        if self.pricing_override is not None:
            return self.pricing_override
        return self.model_pricing.get(self.model, next(iter(self.model_pricing.values())))

    def get_capabilities(self) -> ProviderCapabilities:
        pricing = self.pricing
        return ProviderCapabilities(
            name=self.name,
            kind=self.kind,
            supported_models=tuple(self.model_pricing),
            max_tokens=self.model_max_tokens.get(self.model, 4096),
            supports_streaming=self.supports_streaming,
            supports_batching=self.supports_batching,
            supports_images=self.supports_images,
            cost_per_input_token=pricing.cost_per_input_token,
            cost_per_output_token=pricing.cost_per_output_token,
            rate_limits=self.rate_limits,
        )

    def calculate_cost(self, usage: TokenUsage) -> float:
        pricing = self.pricing
        return calculate_cost(usage, pricing.cost_per_input_token, pricing.cost_per_output_token)

    def generate_content(self, request: GenerationRequest) -> GenerationResponse:
        """Run one generation and update usage counters.

        Raises:
            ProviderError: Translated SDK failure
        """
        self._ensure_configured()
        self._note_request()
        started = time.monotonic()
        try:
            response = self._generate(request)
        except ProviderError:
            self._record_error()
            raise
        except Exception as e:
            self._record_error()
            raise self._translate_error(e) from e
        elapsed_ms = (time.monotonic() - started) * 1000
        response = GenerationResponse(
            content=response.content,
            usage=response.usage,
            cost=response.cost,
            model=response.model,
            provider_id=self.name,
            response_time_ms=elapsed_ms,
            finish_reason=response.finish_reason,
            image_url=response.image_url,
        )
        self._record_success(response.usage, response.cost, elapsed_ms)
        return response

    def generate_content_stream(self, request: GenerationRequest) -> Iterator[StreamChunk]:
        """Yield content pieces; the final chunk has ``done=True`` and usage."""
        self._ensure_configured()
        if request.modality is Modality.IMAGE:
            raise ProviderError(
                f"Provider '{self.name}' cannot stream image generations",
                FailureCategory.UNKNOWN_ERROR,
                False,
                self.name,
            )
        self._note_request()
        started = time.monotonic()
        usage = EMPTY_USAGE
        try:
            for piece in self._stream(request):
                if isinstance(piece, TokenUsage):
                    usage = piece
                    continue
                yield StreamChunk(content=piece)
        except ProviderError:
            self._record_error()
            raise
        except Exception as e:
            self._record_error()
            raise self._translate_error(e) from e
        elapsed_ms = (time.monotonic() - started) * 1000
        self._record_success(usage, self.calculate_cost(usage), elapsed_ms)
        yield StreamChunk(content="", done=True, usage=usage)

    def generate_batch(self, batch_request: BatchRequest) -> BatchResponse:
        """Run requests in windows of ``concurrency``, pausing between windows.

        Per-item failures are collected instead of aborting the batch.
        """
        requests = list(batch_request.requests)
        responses: List[Optional[GenerationResponse]] = [None] * len(requests)
        errors: List[BatchItemError] = []
        window = max(1, batch_request.concurrency)

        with ThreadPoolExecutor(max_workers=window) as executor:
            for start in range(0, len(requests), window):
                chunk = list(enumerate(requests[start:start + window], start))
                futures = [(i, executor.submit(self.generate_content, req)) for i, req in chunk]
                for index, future in futures:
                    try:
                        responses[index] = future.result()
                    except ProviderError as e:
                        errors.append(BatchItemError(index=index, error=str(e)))
                if start + window < len(requests) and batch_request.inter_chunk_delay > 0:
                    time.sleep(batch_request.inter_chunk_delay)

        total_usage = EMPTY_USAGE
        total_cost = 0.0
        for response in responses:
            if response is not None:
                total_usage = total_usage + response.usage
                total_cost += response.cost
        return BatchResponse(
            responses=tuple(responses),
            errors=tuple(errors),
            total_cost=total_cost,
            total_usage=total_usage,
        )

    def health_check(self) -> HealthCheckResult:
        """Ping the backend and refresh the health snapshot. Never raises."""
        started = time.monotonic()
        try:
            self._ensure_configured()
            self._ping()
        except Exception as e:
            elapsed_ms = (time.monotonic() - started) * 1000
            self._update_health(False, elapsed_ms)
            return HealthCheckResult(is_healthy=False, response_time_ms=elapsed_ms, error=str(e))
        elapsed_ms = (time.monotonic() - started) * 1000
        self._update_health(True, elapsed_ms)
        return HealthCheckResult(is_healthy=True, response_time_ms=elapsed_ms)

    def check_rate_limit(self) -> RateLimitStatus:
        """Sliding one-minute window over requests sent by this adapter."""
        now = time.monotonic()
        with self._lock:
            self._trim_request_times(now)
            used = len(self._request_times)
            limit = self.rate_limits.requests_per_minute
            if used < limit:
                return RateLimitStatus(can_proceed=True, remaining_requests=limit - used)
            retry_after_ms = int((self._request_times[0] + 60 - now) * 1000)
            return RateLimitStatus(
                can_proceed=False,
                retry_after_ms=max(retry_after_ms, 0),
                remaining_requests=0,
            )

    def get_usage(self) -> ProviderUsage:
        with self._lock:
            return ProviderUsage(**vars(self._usage))

    def get_metrics(self) -> Dict[str, Any]:
        usage = self.get_usage()
        attempts = usage.requests + usage.errors
        return {
            "provider": self.name,
            "model": self.model,
            "total_requests": usage.requests,
            "total_tokens": usage.tokens,
            "total_cost": usage.cost,
            "error_count": usage.errors,
            "error_rate": usage.errors / attempts if attempts else 0.0,
            "average_response_time_ms": (
                usage.total_response_time_ms / usage.requests if usage.requests else 0.0
            ),
            "last_used_at": usage.last_used_at,
            "is_healthy": self.health.is_healthy,
        }

    def cleanup(self) -> None:
        """Release the SDK client."""
        client, self.client = self.client, None
        close = getattr(client, "close", None)
        if callable(close):
            close()
        logger.info("Cleaned up %s adapter", self.name)

    def _ensure_configured(self) -> None:
        if not self.is_configured:
            raise ProviderError(
                f"Provider '{self.name}' is not configured",
                FailureCategory.INVALID_API_KEY,
                False,
                self.name,
            )

    def _note_request(self) -> None:
        now = time.monotonic()
        with self._lock:
            self._trim_request_times(now)
            self._request_times.append(now)

    def _trim_request_times(self, now: float) -> None:
        while self._request_times and self._request_times[0] <= now - 60:
            self._request_times.popleft()

    def _record_success(self, usage: TokenUsage, cost: float, elapsed_ms: float) -> None:
        with self._lock:
            self._usage.requests += 1
            self._usage.tokens += usage.total_tokens
            self._usage.cost += cost
            self._usage.total_response_time_ms += elapsed_ms
            self._usage.last_used_at = datetime.now()

    def _record_error(self) -> None:
        with self._lock:
            self._usage.errors += 1
            self._usage.last_used_at = datetime.now()
            self.health = ProviderHealth(
                is_healthy=self.health.is_healthy,
                last_checked_at=self.health.last_checked_at,
                response_time_ms=self.health.response_time_ms,
                recent_error_count=self.health.recent_error_count + 1,
            )

    def _update_health(self, healthy: bool, elapsed_ms: float) -> None:
        with self._lock:
            self.health = ProviderHealth(
                is_healthy=healthy,
                last_checked_at=datetime.now(),
                response_time_ms=elapsed_ms,
                recent_error_count=0 if healthy else self.health.recent_error_count + 1,
            )

    @abstractmethod
    def _build_client(self, timeout: Optional[float]) -> Any:
        """Create the SDK client from the configured credentials."""

    @abstractmethod
    def _generate(self, request: GenerationRequest) -> GenerationResponse:
        """Perform the SDK call. ``provider_id`` and timing are filled in by the caller."""

    @abstractmethod
    def _stream(self, request: GenerationRequest) -> Iterator[Any]:
        """Yield text pieces, then a single ``TokenUsage``."""

    @abstractmethod
    def _ping(self) -> None:
        """Cheapest call proving credentials and connectivity work."""

    @abstractmethod
    def _translate_error(self, error: Exception) -> ProviderError:
        """Map an SDK exception onto a ProviderError."""
