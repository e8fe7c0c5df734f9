"""
Provider adapters for AI Orchestrator.

Wraps each supported AI backend behind one capability-aware interface.
"""

from .anthropic_adapter import AnthropicAdapter
from .base import (
    GenerationRequest,
    GenerationResponse,
    Modality,
    ProviderAdapter,
    ProviderKind,
)
from .openai_adapter import OpenAIAdapter
from .registry import create_adapter, ProviderRegistry, SelectionCriteria

__all__ = [
    "AnthropicAdapter",
    "create_adapter",
    "GenerationRequest",
    "GenerationResponse",
    "Modality",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderKind",
    "ProviderRegistry",
    "SelectionCriteria",
]
