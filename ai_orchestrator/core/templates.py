"""
Payload resolution.

Turns a job's opaque payload reference into a rendered prompt plus the
settings needed to pick a provider.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from ..providers.base import GenerationRequest, Modality
from ..storage.models import PayloadRef
from .errors import MalformedTemplate


@dataclass(frozen=True)
class ResolvedPayload:
    """Everything a worker needs to call a provider for one job."""
    user_prompt: str
    system_prompt: Optional[str] = None
    compatible_providers: Tuple[str, ...] = ()
    max_tokens: int = 1024
    temperature: Optional[float] = None
    modality: Modality = Modality.TEXT
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            user_prompt=self.user_prompt,
            system_prompt=self.system_prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            modality=self.modality,
            extra=dict(self.extras),
        )


class PayloadResolver(Protocol):
    def resolve(self, payload_ref: PayloadRef) -> ResolvedPayload:
        ...


class TemplateCatalog:
    """Resolves payloads against templates loaded from configuration.

    Prompts use ``str.format`` placeholders filled from the payload's
    variables.
    """

    def __init__(self, templates: Mapping[str, Any]):
        self.templates = dict(templates)

    def resolve(self, payload_ref: PayloadRef) -> ResolvedPayload:
        """Render the template named by ``payload_ref.template_id``.

        Raises:
            MalformedTemplate: If the template is unknown or a variable is missing
        """
        template_id = payload_ref.template_id
        if not template_id:
            raise MalformedTemplate("Payload has no template_id")
        template = self.templates.get(template_id)
        if template is None:
            raise MalformedTemplate(f"Template '{template_id}' not found")

        variables = dict(payload_ref.variables)
        return ResolvedPayload(
            user_prompt=_render(template.user_prompt, variables, template_id),
            system_prompt=(
                _render(template.system_prompt, variables, template_id)
                if template.system_prompt
                else None
            ),
            compatible_providers=tuple(template.compatible_providers),
            max_tokens=template.max_tokens,
            temperature=template.temperature,
            modality=template.modality,
        )


def _render(text: str, variables: Dict[str, str], template_id: str) -> str:
    try:
        return text.format(**variables)
    except KeyError as e:
        raise MalformedTemplate(
            f"Missing template variable {e} for template '{template_id}'"
        ) from e
    except (IndexError, ValueError) as e:
        raise MalformedTemplate(f"Invalid template '{template_id}': {e}") from e
