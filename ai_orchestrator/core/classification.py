"""
Failure classification.

Maps free-text failure reasons onto the fixed set of failure categories and
decides whether an execution error is worth retrying.
"""

from typing import FrozenSet, Tuple

from ..storage.models import FailureCategory
from .errors import CostLimitExceeded, MalformedTemplate, ProviderError

# Checked in order; the first matching row wins.
CATEGORY_KEYWORDS: Tuple[Tuple[Tuple[str, ...], FailureCategory], ...] = (
    (("rate limit", "quota"), FailureCategory.RATE_LIMIT_EXCEEDED),
    (("timeout", "time out", "timed out"), FailureCategory.PROVIDER_TIMEOUT),
    (("api key", "unauthorized"), FailureCategory.INVALID_API_KEY),
    (("policy", "violation"), FailureCategory.CONTENT_POLICY_VIOLATION),
    (("network", "connection"), FailureCategory.NETWORK_ERROR),
    (("overload", "capacity"), FailureCategory.PROVIDER_OVERLOADED),
    (("template", "variable"), FailureCategory.MALFORMED_TEMPLATE),
)

RECOVERABLE_CATEGORIES: FrozenSet[FailureCategory] = frozenset({
    FailureCategory.RATE_LIMIT_EXCEEDED,
    FailureCategory.PROVIDER_TIMEOUT,
    FailureCategory.NETWORK_ERROR,
    FailureCategory.PROVIDER_OVERLOADED,
    FailureCategory.UNKNOWN_ERROR,
})

QUOTA_EXHAUSTED_MARKERS = (
    "insufficient_quota",
    "exceeded your current quota",
    "quota exhausted",
    "quota exceeded",
)


def categorize_failure(reason: str) -> FailureCategory:
    """Derive a failure category from a failure reason.

    Args:
        reason: Free-text error message

    Returns:
        The first category whose keywords appear in the reason, or
        ``UNKNOWN_ERROR``
    """
    text = (reason or "").lower()
    for keywords, category in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return FailureCategory.UNKNOWN_ERROR


def is_quota_exhausted(reason: str) -> bool:
    """True when the account is out of credit rather than momentarily throttled."""
    text = (reason or "").lower()
    return any(marker in text for marker in QUOTA_EXHAUSTED_MARKERS)


def classify_error(error: BaseException) -> Tuple[FailureCategory, bool]:
    """Classify an execution error.

    Returns:
        Tuple of (category, recoverable)
    """
    if isinstance(error, ProviderError):
        return error.category, error.recoverable
    if isinstance(error, MalformedTemplate):
        return FailureCategory.MALFORMED_TEMPLATE, False
    if isinstance(error, CostLimitExceeded):
        return FailureCategory.UNKNOWN_ERROR, False

    message = str(error)
    category = categorize_failure(message)
    if is_quota_exhausted(message):
        return category, False
    return category, category in RECOVERABLE_CATEGORIES
