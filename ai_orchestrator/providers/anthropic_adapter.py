"""
Anthropic provider adapter.

Wraps the official Anthropic SDK messages API. Image generation is not
offered by the backend and is rejected as a fatal error.
"""

from typing import Any, Dict, Iterator, Optional

import anthropic
from anthropic import Anthropic

from ..core.errors import ProviderError, ProviderTimeout
from ..core.token_counter import TokenUsage
from ..storage.models import FailureCategory
from .base import (
    error_from_status,
    GenerationRequest,
    GenerationResponse,
    Modality,
    ModelPricing,
    ProviderAdapter,
    ProviderKind,
    RateLimits,
)


class AnthropicAdapter(ProviderAdapter):
    """Adapter for Claude models."""

    kind = ProviderKind.ANTHROPIC
    default_model = "claude-3-5-haiku-20241022"
    model_pricing = {
        "claude-3-5-haiku-20241022": ModelPricing(input_per_million=0.80, output_per_million=4.00),
        "claude-3-5-sonnet-20241022": ModelPricing(input_per_million=3.00, output_per_million=15.00),
        "claude-3-opus-20240229": ModelPricing(input_per_million=15.00, output_per_million=75.00),
        "claude-3-haiku-20240307": ModelPricing(input_per_million=0.25, output_per_million=1.25),
    }
    model_max_tokens = {
        "claude-3-5-haiku-20241022": 8192,
        "claude-3-5-sonnet-20241022": 8192,
        "claude-3-opus-20240229": 4096,
        "claude-3-haiku-20240307": 4096,
    }
    default_rate_limits = RateLimits(
        requests_per_minute=50,
        requests_per_hour=1000,
        tokens_per_minute=40000,
        tokens_per_day=1000000,
    )
    supports_batching = False
    supports_images = False

    def _build_client(self, timeout: Optional[float]) -> Anthropic:
        kwargs: Dict[str, Any] = {"api_key": self.api_key}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        if timeout is not None:
            kwargs["timeout"] = timeout
        return Anthropic(**kwargs)

    def _message_params(self, request: GenerationRequest) -> Dict[str, Any]:
        params = dict(self.default_params)
        params.update(request.extra)
        params["model"] = self.model
        params["max_tokens"] = request.max_tokens
        params["messages"] = [{"role": "user", "content": request.user_prompt}]
        if request.system_prompt:
            params["system"] = request.system_prompt
        if request.temperature is not None:
            params["temperature"] = request.temperature
        return params

    def _generate(self, request: GenerationRequest) -> GenerationResponse:
        if request.modality is Modality.IMAGE:
            raise ProviderError(
                f"Provider '{self.name}' does not support image generation",
                FailureCategory.UNKNOWN_ERROR,
                False,
                self.name,
            )

        response = self.client.messages.create(**self._message_params(request))

        token_usage = TokenUsage(
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return GenerationResponse(
            content=text,
            usage=token_usage,
            cost=self.calculate_cost(token_usage),
            model=response.model,
            provider_id=self.name,
            response_time_ms=0.0,
            finish_reason=response.stop_reason,
        )

    def _stream(self, request: GenerationRequest) -> Iterator[Any]:
        with self.client.messages.stream(**self._message_params(request)) as stream:
            for text in stream.text_stream:
                yield text
            final = stream.get_final_message()
        yield TokenUsage(
            prompt_tokens=final.usage.input_tokens,
            completion_tokens=final.usage.output_tokens,
        )

    def _ping(self) -> None:
        self.client.models.list(limit=1)

    def _translate_error(self, error: Exception) -> ProviderError:
        if isinstance(error, anthropic.APITimeoutError):
            return ProviderTimeout(provider_id=self.name)
        if isinstance(error, anthropic.APIConnectionError):
            return ProviderError(
                f"Network error talking to Anthropic: {error}",
                FailureCategory.NETWORK_ERROR,
                True,
                self.name,
            )
        if isinstance(error, anthropic.APIStatusError):
            return error_from_status(error.status_code, str(error), self.name)
        return error_from_status(None, str(error), self.name)
