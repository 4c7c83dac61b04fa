"""Deterministic model-call failure classification for the executor retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

MODEL_FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Why one model call or job attempt failed."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    TRANSIENT_NETWORK = "transient_network"
    SERVER_ERROR = "server_error"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    MODEL_NOT_AVAILABLE = "model_not_available"
    MALFORMED_REPLY = "malformed_reply"
    CONTRACT = "contract"
    UNKNOWN = "unknown"


_NON_RETRYABLE: frozenset[FailureClass] = frozenset(
    {
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.BILLING_OR_QUOTA,
        FailureClass.MODEL_NOT_AVAILABLE,
        FailureClass.CONTRACT,
    },
)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "insufficient credits",
    "billing",
    "payment required",
    "credits",
    "quota exceeded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid_api_key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "does not exist",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "please retry",
    "try again later",
    "overloaded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "name resolution",
    "dns",
)

_AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})
_BILLING_STATUS_CODES: frozenset[int] = frozenset({402})
_MODEL_STATUS_CODES: frozenset[int] = frozenset({404})
_RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429})
_TIMEOUT_STATUS_CODES: frozenset[int] = frozenset({408, 504, 524})
_SERVER_ERROR_MIN_STATUS = 500


@dataclass(slots=True)
class ModelFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and metrics."""

        return {
            "classifier_version": MODEL_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def is_retryable(failure_class: FailureClass) -> bool:
    """Return True when a failure of this class should be retried."""

    return failure_class not in _NON_RETRYABLE


def classify_failure(  # noqa: PLR0911
    *,
    status_code: int | None,
    body: str,
    timed_out: bool = False,
) -> ModelFailureClassification:
    """Classify a failed model call from its HTTP status and response body."""

    if timed_out or (status_code is not None and status_code in _TIMEOUT_STATUS_CODES):
        return ModelFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="model_timeout",
            matched_rule="timeout",
            matched_pattern=None,
        )

    if status_code is not None:
        by_status = _classify_status(status_code)
        if by_status is not None:
            return by_status

    haystack = body.lower()
    for patterns, failure_class, rule in (
        (_BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA, "billing_or_quota"),
        (_ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH, "access_or_auth"),
        (_MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE, "model_not_available"),
        (_RATE_LIMIT_PATTERNS, FailureClass.RATE_LIMIT, "rate_limit"),
        (_GENERIC_TRANSIENT_PATTERNS, FailureClass.TRANSIENT_NETWORK, "generic_transient"),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ModelFailureClassification(
                failure_class=failure_class,
                reason_code=f"model_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if status_code is None:
        return ModelFailureClassification(
            failure_class=FailureClass.TRANSIENT_NETWORK,
            reason_code="model_transport_error",
            matched_rule="no_response",
            matched_pattern=None,
        )

    return ModelFailureClassification(
        failure_class=FailureClass.UNKNOWN,
        reason_code="model_unknown_failure",
        matched_rule="fallback_retryable",
        matched_pattern=None,
    )


def _classify_status(status_code: int) -> ModelFailureClassification | None:
    for codes, failure_class, rule in (
        (_AUTH_STATUS_CODES, FailureClass.ACCESS_OR_AUTH, "access_or_auth"),
        (_BILLING_STATUS_CODES, FailureClass.BILLING_OR_QUOTA, "billing_or_quota"),
        (_MODEL_STATUS_CODES, FailureClass.MODEL_NOT_AVAILABLE, "model_not_available"),
        (_RATE_LIMIT_STATUS_CODES, FailureClass.RATE_LIMIT, "rate_limit"),
    ):
        if status_code in codes:
            return ModelFailureClassification(
                failure_class=failure_class,
                reason_code=f"http_{status_code}",
                matched_rule=rule,
                matched_pattern=None,
            )
    if status_code >= _SERVER_ERROR_MIN_STATUS:
        return ModelFailureClassification(
            failure_class=FailureClass.SERVER_ERROR,
            reason_code=f"http_{status_code}",
            matched_rule="server_error",
            matched_pattern=None,
        )
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
