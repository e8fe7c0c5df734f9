"""
Provider registry.

Holds the configured adapters by name and implements provider selection:
explicit lookup, cheapest eligible, healthy-fastest and failover.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Type

from ..core.errors import NoEligibleProvider, NoHealthyFallback, UnknownProvider
from .anthropic_adapter import AnthropicAdapter
from .base import HealthCheckResult, ProviderAdapter, ProviderKind
from .openai_adapter import OpenAIAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: Dict[ProviderKind, Type[ProviderAdapter]] = {
    ProviderKind.OPENAI: OpenAIAdapter,
    ProviderKind.ANTHROPIC: AnthropicAdapter,
}

DEFAULT_HEALTH_TIMEOUT_SECONDS = 10.0


def create_adapter(kind: ProviderKind, name: Optional[str] = None) -> ProviderAdapter:
    """Instantiate the adapter class for a provider kind."""
    return ADAPTER_CLASSES[kind](name=name)


@dataclass(frozen=True)
class SelectionCriteria:
    """Requirements a provider must meet to be chosen."""
    max_tokens: Optional[int] = None
    requires_streaming: bool = False
    requires_images: bool = False
    preferred_providers: Sequence[str] = ()
    exclude: Sequence[str] = ()


class ProviderRegistry:
    """Name to adapter map with selection policies.

    Registration order is preserved and used as the tie-break wherever
    providers are otherwise equal.
    """

    def __init__(self, health_timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS):
        self.health_timeout = health_timeout
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._lock = threading.Lock()

    def register(self, name: str, adapter: ProviderAdapter) -> None:
        adapter.name = name
        with self._lock:
            self._adapters[name] = adapter
        logger.info("Registered provider %s (%s)", name, adapter.kind.value)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._adapters)

    def _snapshot(self) -> Dict[str, ProviderAdapter]:
        with self._lock:
            return dict(self._adapters)

    def get_provider(self, name: str) -> ProviderAdapter:
        """Exact lookup.

        Raises:
            UnknownProvider: If no adapter is registered under ``name``
        """
        with self._lock:
            adapter = self._adapters.get(name)
        if adapter is None:
            raise UnknownProvider(name)
        return adapter

    def has_provider(self, name: str) -> bool:
        with self._lock:
            return name in self._adapters

    def get_optimal_provider(self, criteria: Optional[SelectionCriteria] = None) -> ProviderAdapter:
        """Pick a provider meeting ``criteria``.

        The first eligible provider in ``preferred_providers`` wins; otherwise
        the eligible provider with the lowest combined per-token cost.

        Raises:
            NoEligibleProvider: If no registered provider qualifies
        """
        criteria = criteria or SelectionCriteria()
        eligible: Dict[str, ProviderAdapter] = {}
        for name, adapter in self._snapshot().items():
            if name in criteria.exclude:
                continue
            capabilities = adapter.get_capabilities()
            if criteria.max_tokens and capabilities.max_tokens < criteria.max_tokens:
                continue
            if criteria.requires_streaming and not capabilities.supports_streaming:
                continue
            if criteria.requires_images and not capabilities.supports_images:
                continue
            eligible[name] = adapter

        if not eligible:
            raise NoEligibleProvider()

        for name in criteria.preferred_providers:
            if name in eligible:
                return eligible[name]

        def combined_cost(adapter: ProviderAdapter) -> float:
            capabilities = adapter.get_capabilities()
            return capabilities.cost_per_input_token + capabilities.cost_per_output_token

        return min(eligible.values(), key=combined_cost)

    def check_health(self) -> Dict[str, HealthCheckResult]:
        """Run every adapter's health check concurrently.

        A check that raises or does not finish within ``health_timeout``
        counts as unhealthy; this never raises.
        """
        adapters = self._snapshot()
        results: Dict[str, HealthCheckResult] = {}
        if not adapters:
            return results

        executor = ThreadPoolExecutor(max_workers=len(adapters))
        try:
            futures = {executor.submit(adapter.health_check): name for name, adapter in adapters.items()}
            done, _ = wait(futures, timeout=self.health_timeout)
            for future, name in futures.items():
                if future not in done:
                    results[name] = HealthCheckResult(
                        is_healthy=False,
                        response_time_ms=self.health_timeout * 1000,
                        error="Health check timed out",
                    )
                    continue
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.warning("Health check for %s failed: %s", name, e)
                    results[name] = HealthCheckResult(is_healthy=False, response_time_ms=0.0, error=str(e))
        finally:
            executor.shutdown(wait=False)
        return results

    def get_healthy_providers(self) -> List[ProviderAdapter]:
        """Healthy adapters, fastest first."""
        adapters = self._snapshot()
        results = self.check_health()
        healthy = [
            (result.response_time_ms, index, adapters[name])
            for index, (name, result) in enumerate(results.items())
            if result.is_healthy
        ]
        healthy.sort(key=lambda item: (item[0], item[1]))
        return [adapter for _, _, adapter in healthy]

    def get_provider_with_failover(
        self,
        primary: str,
        exclude: Sequence[str] = (),
    ) -> ProviderAdapter:
        """Return ``primary`` if it can take a request, else the fastest healthy alternative.

        Raises:
            UnknownProvider: If ``primary`` is not registered
            NoHealthyFallback: If the primary is unusable and no alternative is healthy
        """
        adapter = self.get_provider(primary)
        try:
            status = adapter.check_rate_limit()
            if status.can_proceed and adapter.health.is_healthy:
                return adapter
            reason = "rate limit reached" if not status.can_proceed else "marked unhealthy"
        except Exception as e:
            reason = str(e)

        logger.warning("Provider %s unavailable (%s), looking for fallback", primary, reason)
        skipped = {primary, *exclude}
        for candidate in self.get_healthy_providers():
            if candidate.name not in skipped:
                logger.info("Failing over from %s to %s", primary, candidate.name)
                return candidate
        raise NoHealthyFallback(primary)

    def get_alternative_provider(
        self,
        current: Optional[str],
        candidates: Optional[Sequence[str]] = None,
    ) -> Optional[str]:
        """First registered provider other than ``current``, honoring candidate order."""
        registered = self.names()
        for name in candidates or registered:
            if name != current and name in registered:
                return name
        return None

    def get_provider_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider metrics; one failing adapter does not fail the call."""
        stats: Dict[str, Dict[str, Any]] = {}
        for name, adapter in self._snapshot().items():
            try:
                stats[name] = adapter.get_metrics()
            except Exception as e:
                logger.warning("Could not read metrics for %s: %s", name, e)
                stats[name] = {"error": str(e)}
        return stats

    def configure_provider(self, name: str, api_key: str, **options: Any) -> None:
        self.get_provider(name).configure(api_key, **options)

    def cleanup(self) -> None:
        for name, adapter in self._snapshot().items():
            try:
                adapter.cleanup()
            except Exception:
                logger.exception("Cleanup of provider %s failed", name)
