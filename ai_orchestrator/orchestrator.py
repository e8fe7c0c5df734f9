"""
Orchestrator facade.

Builds every component from one configuration, connects them through a
shared event bus and runs periodic maintenance.
"""

import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from .config.loader import OrchestratorConfig, default_config
from .core.cost_monitor import CostMonitor
from .core.dead_letter import DeadLetterQueue
from .core.events import EventBus
from .core.queue import JobQueue
from .core.scheduling import Scheduler
from .core.templates import PayloadResolver, TemplateCatalog
from .core.worker import JobProcessor, WorkerPool
from .providers.base import ModelPricing
from .providers.registry import create_adapter, ProviderRegistry
from .storage.repository import (
    AlertRepository,
    DeadLetterRepository,
    initialize_schema,
    JobRepository,
    UsageLedger,
)

logger = logging.getLogger(__name__)

ALERT_CLEANUP_INTERVAL_SECONDS = 3600


def build_registry(config: OrchestratorConfig) -> ProviderRegistry:
    """Register an adapter for every configured provider whose API key is set.

    Providers without a key in the environment are skipped with a warning so
    one missing credential does not block the others.
    """
    registry = ProviderRegistry()
    for name, provider in config.providers.items():
        api_key = provider.api_key()
        if not api_key:
            logger.warning("Skipping provider %s: $%s is not set", name, provider.api_key_env)
            continue
        adapter = create_adapter(provider.kind, name)
        pricing = None
        if provider.cost_per_input_token is not None:
            pricing = ModelPricing(
                input_per_million=provider.cost_per_input_token * 1_000_000,
                output_per_million=provider.cost_per_output_token * 1_000_000,
            )
        rate_limits = None
        if provider.requests_per_minute is not None:
            rate_limits = replace(adapter.rate_limits, requests_per_minute=provider.requests_per_minute)
        adapter.configure(
            api_key,
            model=provider.model,
            base_url=provider.base_url,
            pricing=pricing,
            rate_limits=rate_limits,
            timeout=provider.timeout_seconds,
        )
        registry.register(name, adapter)
    return registry


class Orchestrator:
    """Owns the queue, workers, dead-letter subsystem and cost monitor.

    Usage:
        with Orchestrator(load_config("orchestrator.yaml")) as orchestrator:
            orchestrator.queue.enqueue(request)
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        registry: Optional[ProviderRegistry] = None,
        resolver: Optional[PayloadResolver] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or default_config()
        db_path = self.config.database_path
        initialize_schema(db_path)

        self.bus = EventBus()
        self.registry = registry if registry is not None else build_registry(self.config)
        self.resolver = resolver or TemplateCatalog(self.config.templates)
        self.scheduler = scheduler or Scheduler()

        self.queue = JobQueue(
            JobRepository(db_path),
            config=self.config.queue,
            registry=self.registry,
            bus=self.bus,
            clock=clock,
        )
        self.dead_letter = DeadLetterQueue(
            DeadLetterRepository(db_path),
            self.queue,
            registry=self.registry,
            bus=self.bus,
            config=self.config.dead_letter,
            scheduler=self.scheduler,
            resolver=self.resolver,
        )
        self.cost_monitor = CostMonitor(
            UsageLedger(db_path),
            AlertRepository(db_path),
            config=self.config.budget,
            bus=self.bus,
            clock=clock,
        )
        self.cost_monitor.attach(self.bus)
        self.processor = JobProcessor(
            self.queue,
            self.registry,
            self.resolver,
            self.dead_letter,
            bus=self.bus,
            config=self.config.queue,
            sleep=sleep,
        )
        self.workers = WorkerPool(self.queue, self.processor)
        self._maintenance_started = False

    def start_maintenance(self) -> None:
        """Schedule queue hygiene, dead-letter sweeps and budget checks."""
        if self._maintenance_started:
            return
        queue_config = self.config.queue
        dlq_config = self.config.dead_letter
        budget = self.config.budget
        every = self.scheduler.every
        every(queue_config.clean_interval_minutes * 60, self.queue.run_maintenance, "queue-clean")
        if dlq_config.auto_retry_enabled:
            every(
                dlq_config.auto_retry_interval_minutes * 60,
                self.dead_letter.sweep_auto_retries,
                "dlq-auto-retry",
            )
        every(dlq_config.cleanup_interval_hours * 3600, self.dead_letter.cleanup_resolved, "dlq-cleanup")
        every(budget.check_interval_minutes * 60, self.cost_monitor.evaluate_thresholds, "cost-check")
        every(ALERT_CLEANUP_INTERVAL_SECONDS, self.cost_monitor.cleanup_alerts, "alert-cleanup")
        self._maintenance_started = True
        logger.info("Periodic maintenance started")

    def start(self) -> None:
        """Recover jobs left active by a previous run, then start workers."""
        self.queue.requeue_stalled()
        self.start_maintenance()
        self.workers.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.workers.stop(timeout)
        self.scheduler.stop()
        self.processor.shutdown()
        self.registry.cleanup()

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
