"""
OpenAI provider adapter.

Wraps the official OpenAI SDK: chat completions for text, streaming chat
completions, and image generation.
"""

from typing import Any, Dict, Iterator, List, Optional

import openai
from openai import OpenAI

from ..core.errors import ProviderError, ProviderTimeout
from ..core.token_counter import EMPTY_USAGE, TokenUsage
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

IMAGE_MODEL = "gpt-image-1"
DEFAULT_IMAGE_COST = 0.04


class OpenAIAdapter(ProviderAdapter):
    """Adapter for OpenAI chat and image models."""

    kind = ProviderKind.OPENAI
    default_model = "gpt-4o-mini"
    model_pricing = {
        "gpt-4o-mini": ModelPricing(input_per_million=0.15, output_per_million=0.60),
        "gpt-4o": ModelPricing(input_per_million=5.00, output_per_million=15.00),
        "gpt-4-turbo": ModelPricing(input_per_million=10.00, output_per_million=30.00),
        "gpt-3.5-turbo": ModelPricing(input_per_million=0.50, output_per_million=1.50),
    }
    model_max_tokens = {
        "gpt-4o-mini": 128000,
        "gpt-4o": 128000,
        "gpt-4-turbo": 128000,
        "gpt-3.5-turbo": 16385,
    }
    default_rate_limits = RateLimits(
        requests_per_minute=500,
        requests_per_hour=10000,
        tokens_per_minute=30000,
        tokens_per_day=1000000,
    )
    supports_images = True

    def _build_client(self, timeout: Optional[float]) -> OpenAI:
        kwargs: Dict[str, Any] = {"api_key": self.api_key}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        if timeout is not None:
            kwargs["timeout"] = timeout
        return OpenAI(**kwargs)

    def _messages(self, request: GenerationRequest) -> List[Dict[str, str]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.user_prompt})
        return messages

    def _completion_params(self, request: GenerationRequest) -> Dict[str, Any]:
        params = dict(self.default_params)
        params.update(request.extra)
        params["model"] = self.model
        params["messages"] = self._messages(request)
        params["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            params["temperature"] = request.temperature
        return params

    def _generate(self, request: GenerationRequest) -> GenerationResponse:
        if request.modality is Modality.IMAGE:
            return self._generate_image(request)

        response = self.client.chat.completions.create(**self._completion_params(request))

        usage = response.usage
        if not usage:
            raise ProviderError(
                "OpenAI response missing usage information",
                FailureCategory.UNKNOWN_ERROR,
                False,
                self.name,
            )
        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        choice = response.choices[0]
        return GenerationResponse(
            content=choice.message.content or "",
            usage=token_usage,
            cost=self.calculate_cost(token_usage),
            model=response.model,
            provider_id=self.name,
            response_time_ms=0.0,
            finish_reason=choice.finish_reason,
        )

    def _generate_image(self, request: GenerationRequest) -> GenerationResponse:
        response = self.client.images.generate(
            model=IMAGE_MODEL,
            prompt=request.user_prompt,
            size=request.extra.get("size", "1024x1024"),
            quality=request.extra.get("quality", "medium"),
            n=1,
        )
        image = response.data[0]
        usage = getattr(response, "usage", None)
        token_usage = (
            TokenUsage(prompt_tokens=usage.input_tokens, completion_tokens=usage.output_tokens)
            if usage
            else EMPTY_USAGE
        )
        return GenerationResponse(
            content=image.b64_json or "",
            usage=token_usage,
            cost=float(request.extra.get("image_cost", DEFAULT_IMAGE_COST)),
            model=IMAGE_MODEL,
            provider_id=self.name,
            response_time_ms=0.0,
            finish_reason="stop",
            image_url=image.url,
        )

    def _stream(self, request: GenerationRequest) -> Iterator[Any]:
        params = self._completion_params(request)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}
        usage = EMPTY_USAGE
        for chunk in self.client.chat.completions.create(**params):
            if chunk.usage:
                usage = TokenUsage(
                    prompt_tokens=chunk.usage.prompt_tokens,
                    completion_tokens=chunk.usage.completion_tokens,
                )
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content
        yield usage

    def _ping(self) -> None:
        self.client.models.list()

    def _translate_error(self, error: Exception) -> ProviderError:
        if isinstance(error, openai.APITimeoutError):
            return ProviderTimeout(provider_id=self.name)
        if isinstance(error, openai.APIConnectionError):
            return ProviderError(
                f"Network error talking to OpenAI: {error}",
                FailureCategory.NETWORK_ERROR,
                True,
                self.name,
            )
        if isinstance(error, openai.APIStatusError):
            message = str(error)
            code = getattr(error, "code", None)
            if code == "insufficient_quota":
                message = f"insufficient_quota: {message}"
            return error_from_status(error.status_code, message, self.name)
        return error_from_status(None, str(error), self.name)
