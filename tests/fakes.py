"""
Test doubles shared by the test modules.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ai_orchestrator.config.loader import OrchestratorConfig, TemplateConfig
from ai_orchestrator.core.token_counter import TokenUsage
from ai_orchestrator.orchestrator import Orchestrator
from ai_orchestrator.providers.base import (
    error_from_status,
    GenerationRequest,
    GenerationResponse,
    ModelPricing,
    ProviderAdapter,
    ProviderKind,
    RateLimits,
)
from ai_orchestrator.providers.registry import ProviderRegistry
from ai_orchestrator.storage.models import PayloadRef

START = datetime(2024, 6, 15, 12, 0, 0)

TEMPLATES = {
    "summary": TemplateConfig(
        user_prompt="Summarize {topic}",
        system_prompt="You are a careful editor.",
    ),
}


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class InlineScheduler:
    """Runs delayed callbacks immediately and only records periodic ones."""

    def __init__(self):
        self.delays: List[float] = []
        self.periodic = []
        self.stopped = False

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.delays.append(delay_seconds)
        callback()

    def every(self, interval_seconds: float, callback: Callable[[], None], name: str = "") -> None:
        self.periodic.append((name, interval_seconds, callback))

    def stop(self) -> None:
        self.stopped = True


class FakeAdapter(ProviderAdapter):
    """Scripted provider.

    Each call consumes the next script item: a string is returned as content,
    an exception is raised and a callable is called with the request. Once
    the script is used up ``responder`` (or a plain "ok") answers.
    """

    kind = ProviderKind.OPENAI
    default_model = "fake-model"
    model_pricing = {"fake-model": ModelPricing(input_per_million=1.0, output_per_million=2.0)}
    model_max_tokens = {"fake-model": 8192}
    default_rate_limits = RateLimits(
        requests_per_minute=10000,
        requests_per_hour=100000,
        tokens_per_minute=1000000,
        tokens_per_day=10000000,
    )
    supports_images = False

    def __init__(
        self,
        name: Optional[str] = None,
        script=(),
        responder: Optional[Callable[[GenerationRequest], str]] = None,
        cost: Optional[float] = None,
        pricing: Optional[ModelPricing] = None,
    ):
        super().__init__(name)
        self.script = list(script)
        self.responder = responder
        self.fixed_cost = cost
        self.ping_error: Optional[Exception] = None
        self.ping_delay = 0.0
        self.calls: List[GenerationRequest] = []
        self._script_lock = threading.Lock()
        if pricing is not None:
            self.pricing_override = pricing

    def _build_client(self, timeout):
        return object()

    def _next(self, request: GenerationRequest) -> str:
        with self._script_lock:
            self.calls.append(request)
            item = self.script.pop(0) if self.script else (self.responder or "ok")
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    def _generate(self, request):
        content = self._next(request)
        usage = TokenUsage(prompt_tokens=10, completion_tokens=5)
        return GenerationResponse(
            content=content,
            usage=usage,
            cost=self.fixed_cost if self.fixed_cost is not None else self.calculate_cost(usage),
            model=self.model,
            provider_id=self.name,
            response_time_ms=0.0,
            finish_reason="stop",
        )

    def _stream(self, request):
        for word in self._next(request).split(" "):
            yield word
        yield TokenUsage(prompt_tokens=10, completion_tokens=5)

    def _ping(self):
        if self.ping_delay:
            threading.Event().wait(self.ping_delay)
        if self.ping_error is not None:
            raise self.ping_error

    def _translate_error(self, error):
        return error_from_status(None, str(error), self.name)


def make_registry(*adapters: FakeAdapter) -> ProviderRegistry:
    registry = ProviderRegistry()
    for adapter in adapters:
        adapter.configure("test-key")
        registry.register(adapter.name, adapter)
    return registry


def make_config(db_path: str, **sections) -> OrchestratorConfig:
    templates = sections.pop("templates", TEMPLATES)
    return OrchestratorConfig(database_path=db_path, providers={}, templates=templates, **sections)


def make_orchestrator(db_path, adapters, clock, scheduler=None, sleeps=None, **sections) -> Orchestrator:
    """Orchestrator wired to fakes; ``sleeps`` collects processor sleeps."""
    sleep = sleeps.append if sleeps is not None else (lambda seconds: None)
    return Orchestrator(
        make_config(db_path, **sections),
        registry=make_registry(*adapters),
        scheduler=scheduler or InlineScheduler(),
        clock=clock,
        sleep=sleep,
    )


def payload(topic: str = "cats", template_id: str = "summary", **kwargs) -> PayloadRef:
    return PayloadRef(template_id=template_id, variables={"topic": topic}, **kwargs)
