"""Deterministic provider failure classification for usage telemetry."""

from __future__ import annotations

from dataclasses import dataclass

from taskplane.orchestrator.models import FailureClass

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "exceeded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid x-api-key",
    "authentication",
    "401",
    "403",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "502",
    "503",
    "504",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "dns",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_log_details(self, *, provider: str, model: str | None) -> dict[str, object]:
        """Serialize classifier diagnostics for the operational log."""

        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "model": model,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(
    *,
    provider: str,
    message: str,
    status_code: int | None = None,
    transport_error: bool = False,
) -> ProviderFailureClassification:
    """Classify a non-timeout provider failure from its message and HTTP status."""

    haystack = message.lower()
    if status_code is not None:
        haystack = f"{status_code}\n{haystack}"

    rules: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE),
        ("rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS, FailureClass.BACKEND_TRANSIENT),
    )
    for rule, patterns, failure_class in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ProviderFailureClassification(
                failure_class=failure_class,
                reason_code=f"{provider}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or transport_error:
        return ProviderFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{provider}_backend_transient",
            matched_rule=(
                "transport_error" if transport_error and pattern is None else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{provider}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
