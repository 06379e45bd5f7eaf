"""
Failure classification.

Separates infrastructure pressure (throttling, exhausted identities, full
quotas, timeouts) from functional defects so that a run under load is not
reported as a product bug. Unknown failures default to INFRA_PRESSURE.
"""

from __future__ import annotations

from enum import Enum

import aiohttp

from requestgov.governance.backoff import RateLimitSignal, RotationExhaustedError


class FailureCategory(str, Enum):
    """Category attached to a failed context."""

    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    SECURITY_DEFECT = "SECURITY_DEFECT"
    LOCALIZATION_DEFECT = "LOCALIZATION_DEFECT"
    DATA_INTEGRITY_DEFECT = "DATA_INTEGRITY_DEFECT"
    INFRA_PRESSURE = "INFRA_PRESSURE"


# Checked in order; the first category with a matching keyword wins.
_KEYWORDS: tuple[tuple[FailureCategory, tuple[str, ...]], ...] = (
    (
        FailureCategory.INFRA_PRESSURE,
        (
            "infra_pressure",
            "rate limit",
            "rate_limit",
            "429",
            "throttl",
            "not authenticated",
            "all identities exhausted",
            "timeout",
            "timed out",
            "econnrefused",
            "connection refused",
            "health check failed",
            "capacity unavailable",
            "item limit",
            "limit reached after retry",
        ),
    ),
    (
        FailureCategory.DATA_INTEGRITY_DEFECT,
        ("could not find", "not found", "not visible", "stale", "invalid response structure"),
    ),
    (
        FailureCategory.SECURITY_DEFECT,
        ("403", "cross-user", "unauthorized", "injection", "xss", "unsanitized"),
    ),
    (
        FailureCategory.LOCALIZATION_DEFECT,
        ("locali", "arabic", "accept-language", "i18n", "translation"),
    ),
    (
        FailureCategory.BUSINESS_RULE_VIOLATION,
        ("business rule", "default item", "default address", "validation"),
    ),
)


def classify_failure(message: str) -> FailureCategory:
    """Classify a failure from its message text."""
    lowered = message.lower()
    for category, keywords in _KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return FailureCategory.INFRA_PRESSURE


def classify_exception(exc: BaseException) -> FailureCategory:
    """Classify an exception, using its type before falling back to its text."""
    if isinstance(
        exc,
        (RotationExhaustedError, RateLimitSignal, aiohttp.ClientConnectionError, TimeoutError),
    ):
        return FailureCategory.INFRA_PRESSURE
    return classify_failure(str(exc))
