"""
Configuration management and loading.

Handles orchestrator settings from a YAML file. API keys are never read from
the file; each provider names the environment variable that holds its key.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

from ..providers.base import Modality, ProviderKind
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import FailureCategory, Priority

CONFIG_ENV_VAR = "AI_ORCHESTRATOR_CONFIG"


class RateLimitPolicy(Enum):
    """What admission does when a rate-limit window is full."""
    DELAY = "delay"
    REJECT = "reject"


def _require_positive(value: float, name: str) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff for recoverable execution errors. Delays are in seconds."""
    max_retries: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    provider_rotation: bool = True

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        _require_positive(self.base_delay, "base_delay")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def backoff_seconds(self, retry_count: int) -> float:
        return min(self.base_delay * (2 ** retry_count), self.max_delay)


@dataclass(frozen=True)
class RateLimitConfig:
    """Requests per window, per provider and across all providers."""
    providers: Dict[str, int] = field(default_factory=lambda: {"openai": 60, "anthropic": 50})
    default_per_minute: int = 30
    global_per_minute: int = 200
    window_seconds: float = 60.0
    policy: RateLimitPolicy = RateLimitPolicy.DELAY

    def __post_init__(self):
        for name, limit in self.providers.items():
            _require_positive(limit, f"rate limit for '{name}'")
        _require_positive(self.default_per_minute, "default_per_minute")
        _require_positive(self.global_per_minute, "global_per_minute")
        _require_positive(self.window_seconds, "window_seconds")


DEFAULT_PRIORITIES = {
    Priority.URGENT.value: 10,
    Priority.HIGH.value: 7,
    Priority.NORMAL.value: 5,
    Priority.LOW.value: 1,
}


@dataclass(frozen=True)
class QueueConfig:
    priorities: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PRIORITIES))
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    max_batch_size: int = 100
    default_cost_limit: float = 10.0
    default_timeout_ms: int = 300000
    default_parallel_limit: int = 10
    worker_concurrency: int = 4
    poll_interval: float = 1.0
    inter_chunk_delay: float = 1.0
    clean_interval_minutes: float = 60.0
    completed_retention_hours: float = 24.0
    completed_clean_limit: int = 50
    failed_retention_days: float = 7.0
    failed_clean_limit: int = 100

    def __post_init__(self):
        missing = {p.value for p in Priority} - set(self.priorities)
        if missing:
            raise ValueError(f"Missing priority weights: {sorted(missing)}")
        weights = [self.priorities[p.value] for p in Priority]
        if weights != sorted(weights, reverse=True) or len(set(weights)) != len(weights):
            raise ValueError("priority weights must be strictly decreasing from urgent to low")
        for name in (
            "max_batch_size", "default_cost_limit", "default_timeout_ms",
            "default_parallel_limit", "worker_concurrency", "poll_interval",
            "clean_interval_minutes", "completed_retention_hours",
            "completed_clean_limit", "failed_retention_days", "failed_clean_limit",
        ):
            _require_positive(getattr(self, name), name)
        if self.inter_chunk_delay < 0:
            raise ValueError("inter_chunk_delay must be >= 0")

    def weight_of(self, priority: Priority) -> int:
        return self.priorities[priority.value]


@dataclass(frozen=True)
class PatternThresholds:
    """Dead-letter counts within the window that trigger a pattern event."""
    provider: int = 5
    template: int = 3
    category: int = 10
    window_hours: float = 24.0

    def __post_init__(self):
        for name in ("provider", "template", "category", "window_hours"):
            _require_positive(getattr(self, name), f"patterns.{name}")


DEFAULT_RETRYABLE = frozenset({
    FailureCategory.RATE_LIMIT_EXCEEDED,
    FailureCategory.PROVIDER_TIMEOUT,
    FailureCategory.NETWORK_ERROR,
    FailureCategory.PROVIDER_OVERLOADED,
})

DEFAULT_NON_RETRYABLE = frozenset({
    FailureCategory.INVALID_API_KEY,
    FailureCategory.CONTENT_POLICY_VIOLATION,
    FailureCategory.MALFORMED_TEMPLATE,
})


@dataclass(frozen=True)
class DeadLetterConfig:
    retryable_categories: FrozenSet[FailureCategory] = DEFAULT_RETRYABLE
    non_retryable_categories: FrozenSet[FailureCategory] = DEFAULT_NON_RETRYABLE
    retry_cost_threshold: float = 2.0
    manual_retry_delay: float = 5.0
    auto_retry_enabled: bool = True
    auto_retry_interval_minutes: float = 60.0
    cooling_period_minutes: float = 60.0
    max_jitter_seconds: float = 300.0
    retention_days: float = 30.0
    cleanup_interval_hours: float = 6.0
    patterns: PatternThresholds = field(default_factory=PatternThresholds)

    def __post_init__(self):
        overlap = self.retryable_categories & self.non_retryable_categories
        if overlap:
            raise ValueError(
                f"Categories cannot be both retryable and non-retryable: "
                f"{sorted(c.value for c in overlap)}"
            )
        for name in (
            "retry_cost_threshold", "auto_retry_interval_minutes",
            "cooling_period_minutes", "retention_days", "cleanup_interval_hours",
        ):
            _require_positive(getattr(self, name), name)
        if self.max_jitter_seconds < 0 or self.manual_retry_delay < 0:
            raise ValueError("max_jitter_seconds and manual_retry_delay must be >= 0")


@dataclass(frozen=True)
class ProviderLimitConfig:
    daily: float
    monthly: float

    def __post_init__(self):
        _require_positive(self.daily, "provider daily limit")
        _require_positive(self.monthly, "provider monthly limit")


@dataclass(frozen=True)
class BudgetConfig:
    """Budget limits for cost control."""
    daily: float = 100.0
    monthly: float = 2000.0
    warning_percent: float = 80.0
    critical_percent: float = 95.0
    provider_limits: Dict[str, ProviderLimitConfig] = field(default_factory=lambda: {
        "openai": ProviderLimitConfig(daily=60.0, monthly=1200.0),
        "anthropic": ProviderLimitConfig(daily=40.0, monthly=800.0),
    })
    max_cost_per_job: float = 5.0
    alert_cooldown_minutes: float = 60.0
    alert_retention_hours: float = 24.0
    check_interval_minutes: float = 15.0

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.daily <= 0:
            raise ValueError("daily budget must be > 0")
        if self.monthly <= 0:
            raise ValueError("monthly budget must be > 0")
        if not 0 < self.warning_percent < self.critical_percent <= 100:
            raise ValueError("thresholds must satisfy 0 < warning_percent < critical_percent <= 100")
        for name in (
            "max_cost_per_job", "alert_cooldown_minutes",
            "alert_retention_hours", "check_interval_minutes",
        ):
            _require_positive(getattr(self, name), name)


@dataclass(frozen=True)
class ProviderConfig:
    """One backend to register. The API key is looked up in ``api_key_env``."""
    kind: ProviderKind
    api_key_env: str
    model: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: float = 60.0
    cost_per_input_token: Optional[float] = None
    cost_per_output_token: Optional[float] = None
    requests_per_minute: Optional[int] = None

    def __post_init__(self):
        if not self.api_key_env:
            raise ValueError("api_key_env cannot be empty")
        _require_positive(self.timeout_seconds, "timeout_seconds")
        if (self.cost_per_input_token is None) != (self.cost_per_output_token is None):
            raise ValueError("cost_per_input_token and cost_per_output_token must be set together")

    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


@dataclass(frozen=True)
class TemplateConfig:
    user_prompt: str
    system_prompt: Optional[str] = None
    compatible_providers: Tuple[str, ...] = ()
    max_tokens: int = 1024
    temperature: Optional[float] = None
    modality: Modality = Modality.TEXT

    def __post_init__(self):
        if not self.user_prompt:
            raise ValueError("user_prompt cannot be empty")
        _require_positive(self.max_tokens, "max_tokens")
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")


@dataclass(frozen=True)
class OrchestratorConfig:
    """Complete orchestrator configuration."""
    database_path: str = DEFAULT_DB_PATH
    queue: QueueConfig = field(default_factory=QueueConfig)
    dead_letter: DeadLetterConfig = field(default_factory=DeadLetterConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    templates: Dict[str, TemplateConfig] = field(default_factory=dict)


def default_providers() -> Dict[str, ProviderConfig]:
    return {
        "openai": ProviderConfig(kind=ProviderKind.OPENAI, api_key_env="OPENAI_API_KEY"),
        "anthropic": ProviderConfig(kind=ProviderKind.ANTHROPIC, api_key_env="ANTHROPIC_API_KEY"),
    }


def default_config() -> OrchestratorConfig:
    """Configuration used when no YAML file is given."""
    return OrchestratorConfig(providers=default_providers())


def load_config(path: str) -> OrchestratorConfig:
    """Load and validate orchestrator configuration from YAML file.

    Every section is optional and falls back to its defaults, but unknown
    keys anywhere are rejected so typos cannot silently disable a limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated OrchestratorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Orchestrator config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _check_keys(
        raw_config,
        {'database', 'queue', 'dead_letter', 'budget', 'providers', 'templates'},
        "configuration",
    )

    database = _section(raw_config, 'database')
    _check_keys(database, {'path'}, "database")

    providers_data = raw_config.get('providers')
    if providers_data is None:
        providers = default_providers()
    else:
        if not isinstance(providers_data, dict):
            raise ValueError("'providers' must be a dictionary")
        providers = {
            name: _parse_provider(data, f"providers.{name}")
            for name, data in providers_data.items()
        }

    templates_data = raw_config.get('templates') or {}
    if not isinstance(templates_data, dict):
        raise ValueError("'templates' must be a dictionary")
    templates = {
        template_id: _parse_template(data, f"templates.{template_id}", providers)
        for template_id, data in templates_data.items()
    }

    return OrchestratorConfig(
        database_path=str(database.get('path', DEFAULT_DB_PATH)),
        queue=_parse_queue(_section(raw_config, 'queue')),
        dead_letter=_parse_dead_letter(_section(raw_config, 'dead_letter')),
        budget=_parse_budget(_section(raw_config, 'budget')),
        providers=providers,
        templates=templates,
    )


def _section(data: Dict, name: str) -> Dict:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return value


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str) -> Optional[float]:
    if key not in data:
        return None
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _flag(data: Dict, key: str, path: str) -> Optional[bool]:
    if key not in data:
        return None
    if not isinstance(data[key], bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return data[key]


def _fields(data: Dict, path: str, numbers=(), flags=()) -> Dict[str, Any]:
    """Collect present numeric and boolean fields, leaving defaults for the rest."""
    values: Dict[str, Any] = {}
    for key in numbers:
        value = _number(data, key, path)
        if value is not None:
            values[key] = value
    for key in flags:
        value = _flag(data, key, path)
        if value is not None:
            values[key] = value
    return values


def _parse_queue(data: Dict) -> QueueConfig:
    numbers = (
        'max_batch_size', 'default_cost_limit', 'default_timeout_ms',
        'default_parallel_limit', 'worker_concurrency', 'poll_interval',
        'inter_chunk_delay', 'clean_interval_minutes', 'completed_retention_hours',
        'completed_clean_limit', 'failed_retention_days', 'failed_clean_limit',
    )
    _check_keys(data, set(numbers) | {'priorities', 'rate_limits', 'retry'}, "queue")
    values = _fields(data, "queue", numbers=numbers)
    for key in ('max_batch_size', 'default_timeout_ms', 'default_parallel_limit',
                'worker_concurrency', 'completed_clean_limit', 'failed_clean_limit'):
        if key in values:
            values[key] = int(values[key])

    if 'priorities' in data:
        priorities = data['priorities']
        if not isinstance(priorities, dict):
            raise ValueError("'priorities' in queue must be a dictionary")
        _check_keys(priorities, {p.value for p in Priority}, "queue.priorities")
        merged = dict(DEFAULT_PRIORITIES)
        for name in priorities:
            merged[name] = int(_number(priorities, name, "queue.priorities"))
        values['priorities'] = merged

    values['rate_limits'] = _parse_rate_limits(_section(data, 'rate_limits'))
    values['retry'] = _parse_retry(_section(data, 'retry'))
    return QueueConfig(**values)


def _parse_rate_limits(data: Dict) -> RateLimitConfig:
    numbers = ('default_per_minute', 'global_per_minute', 'window_seconds')
    _check_keys(data, set(numbers) | {'providers', 'policy'}, "queue.rate_limits")
    values = _fields(data, "queue.rate_limits", numbers=numbers)
    for key in ('default_per_minute', 'global_per_minute'):
        if key in values:
            values[key] = int(values[key])

    if 'providers' in data:
        providers = data['providers']
        if not isinstance(providers, dict):
            raise ValueError("'providers' in queue.rate_limits must be a dictionary")
        values['providers'] = {
            name: int(_number(providers, name, "queue.rate_limits.providers"))
            for name in providers
        }

    if 'policy' in data:
        try:
            values['policy'] = RateLimitPolicy(str(data['policy']).lower())
        except ValueError:
            valid = [policy.value for policy in RateLimitPolicy]
            raise ValueError(f"'policy' in queue.rate_limits must be one of: {valid}")
    return RateLimitConfig(**values)


def _parse_retry(data: Dict) -> RetryConfig:
    numbers = ('max_retries', 'base_delay', 'max_delay')
    _check_keys(data, set(numbers) | {'provider_rotation'}, "queue.retry")
    values = _fields(data, "queue.retry", numbers=numbers, flags=('provider_rotation',))
    if 'max_retries' in values:
        values['max_retries'] = int(values['max_retries'])
    return RetryConfig(**values)


def _parse_categories(values: Any, path: str) -> FrozenSet[FailureCategory]:
    if not isinstance(values, list):
        raise ValueError(f"'{path}' must be a list")
    try:
        return frozenset(FailureCategory(str(value).lower()) for value in values)
    except ValueError:
        valid = [category.value for category in FailureCategory]
        raise ValueError(f"'{path}' entries must be one of: {valid}")


def _parse_dead_letter(data: Dict) -> DeadLetterConfig:
    numbers = (
        'retry_cost_threshold', 'manual_retry_delay', 'auto_retry_interval_minutes',
        'cooling_period_minutes', 'max_jitter_seconds', 'retention_days',
        'cleanup_interval_hours',
    )
    allowed = set(numbers) | {
        'auto_retry_enabled', 'retryable_categories', 'non_retryable_categories', 'patterns',
    }
    _check_keys(data, allowed, "dead_letter")
    values = _fields(data, "dead_letter", numbers=numbers, flags=('auto_retry_enabled',))

    for key in ('retryable_categories', 'non_retryable_categories'):
        if key in data:
            values[key] = _parse_categories(data[key], f"dead_letter.{key}")

    patterns = _section(data, 'patterns')
    pattern_numbers = ('provider', 'template', 'category', 'window_hours')
    _check_keys(patterns, set(pattern_numbers), "dead_letter.patterns")
    pattern_values = _fields(patterns, "dead_letter.patterns", numbers=pattern_numbers)
    for key in ('provider', 'template', 'category'):
        if key in pattern_values:
            pattern_values[key] = int(pattern_values[key])
    values['patterns'] = PatternThresholds(**pattern_values)
    return DeadLetterConfig(**values)


def _parse_budget(data: Dict) -> BudgetConfig:
    numbers = (
        'daily', 'monthly', 'warning_percent', 'critical_percent', 'max_cost_per_job',
        'alert_cooldown_minutes', 'alert_retention_hours', 'check_interval_minutes',
    )
    _check_keys(data, set(numbers) | {'provider_limits'}, "budget")
    values = _fields(data, "budget", numbers=numbers)

    if 'provider_limits' in data:
        limits = data['provider_limits']
        if not isinstance(limits, dict):
            raise ValueError("'provider_limits' in budget must be a dictionary")
        parsed = {}
        for name, limit_data in limits.items():
            path = f"budget.provider_limits.{name}"
            if not isinstance(limit_data, dict):
                raise ValueError(f"'{path}' must be a dictionary")
            _check_keys(limit_data, {'daily', 'monthly'}, path)
            if 'daily' not in limit_data or 'monthly' not in limit_data:
                raise ValueError(f"Missing required 'daily' or 'monthly' in {path}")
            parsed[name] = ProviderLimitConfig(
                daily=float(_number(limit_data, 'daily', path)),
                monthly=float(_number(limit_data, 'monthly', path)),
            )
        values['provider_limits'] = parsed
    return BudgetConfig(**values)


def _parse_provider(data: Dict, path: str) -> ProviderConfig:
    """Parse and validate one provider entry.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    numbers = ('timeout_seconds', 'cost_per_input_token', 'cost_per_output_token',
               'requests_per_minute')
    _check_keys(data, set(numbers) | {'kind', 'model', 'api_key_env', 'base_url'}, path)

    if 'kind' not in data:
        raise ValueError(f"Missing required 'kind' in {path}")
    try:
        kind = ProviderKind(str(data['kind']).lower())
    except ValueError:
        valid = [kind.value for kind in ProviderKind]
        raise ValueError(f"'kind' in {path} must be one of: {valid}")

    values = _fields(data, path, numbers=numbers)
    if 'requests_per_minute' in values:
        values['requests_per_minute'] = int(values['requests_per_minute'])
    return ProviderConfig(
        kind=kind,
        api_key_env=str(data.get('api_key_env', f"{kind.value.upper()}_API_KEY")),
        model=data.get('model'),
        base_url=data.get('base_url'),
        **values,
    )


def _parse_template(data: Dict, path: str, providers: Dict[str, ProviderConfig]) -> TemplateConfig:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(
        data,
        {'user_prompt', 'system_prompt', 'compatible_providers', 'max_tokens',
         'temperature', 'modality'},
        path,
    )
    if 'user_prompt' not in data:
        raise ValueError(f"Missing required 'user_prompt' in {path}")

    compatible = data.get('compatible_providers', [])
    if not isinstance(compatible, list):
        raise ValueError(f"'compatible_providers' in {path} must be a list")
    unknown = set(compatible) - set(providers)
    if unknown:
        raise ValueError(f"Unknown providers in {path}: {unknown}")

    try:
        modality = Modality(str(data.get('modality', 'text')).lower())
    except ValueError:
        valid = [modality.value for modality in Modality]
        raise ValueError(f"'modality' in {path} must be one of: {valid}")

    values = _fields(data, path, numbers=('max_tokens', 'temperature'))
    if 'max_tokens' in values:
        values['max_tokens'] = int(values['max_tokens'])
    return TemplateConfig(
        user_prompt=str(data['user_prompt']),
        system_prompt=data.get('system_prompt'),
        compatible_providers=tuple(compatible),
        modality=modality,
        **values,
    )
