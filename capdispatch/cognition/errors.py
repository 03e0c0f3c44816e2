"""Provider error taxonomy and user-facing turn failures.

Provider adapters normalize vendor exceptions into :class:`ProviderError`
subclasses carrying a ``retryable`` flag. The retry wrapper only retries
transient errors; once retries are exhausted the orchestrator classifies the
terminal error into a :class:`TurnFailureCategory` and raises
:class:`TurnError`, so callers never see a raw vendor exception.
"""

from __future__ import annotations

import asyncio
import enum


class ProviderError(RuntimeError):
    """Base normalized provider error."""

    code: str = "provider_error"
    default_retryable: bool = False

    def __init__(
        self,
        detail: str,
        *,
        retryable: bool | None = None,
        http_status: int | None = None,
    ) -> None:
        self.detail = detail
        self.retryable = self.default_retryable if retryable is None else retryable
        self.http_status = http_status
        parts = [f"code={self.code}", f"retryable={str(self.retryable).lower()}"]
        if http_status is not None:
            parts.append(f"http_status={http_status}")
        parts.append(f"detail={detail}")
        super().__init__(" ".join(parts))


class ProviderRateLimitError(ProviderError):
    """Provider rate-limit responses (retryable)."""

    code = "rate_limit"
    default_retryable = True


class ProviderOverloadedError(ProviderError):
    """Provider reports it is overloaded (retryable)."""

    code = "overloaded"
    default_retryable = True


class ProviderServiceError(ProviderError):
    """Transient 5xx service failure (retryable)."""

    code = "service"
    default_retryable = True


class ProviderConnectionError(ProviderError):
    """Transport/network failure before a response arrived (retryable)."""

    code = "connection"
    default_retryable = True


class ProviderTimeoutError(ProviderError):
    """Request exceeded its deadline (retryable)."""

    code = "timeout"
    default_retryable = True


class ProviderUnavailableError(ProviderError):
    """Requested model does not exist or is not served."""

    code = "model_unavailable"


class ProviderConfigurationError(ProviderError):
    """Bad credentials or malformed request; retrying cannot help."""

    code = "configuration"


class ProviderResponseError(ProviderError):
    """Provider response could not be normalized."""

    code = "response_invalid"


def is_transient_error(error: BaseException) -> bool:
    """Return True when *error* is expected to succeed on retry."""
    if isinstance(error, ProviderError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


# ---------------------------------------------------------------------------
# User-facing classification
# ---------------------------------------------------------------------------


class TurnFailureCategory(str, enum.Enum):
    MODEL_UNAVAILABLE = "model_unavailable"
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[TurnFailureCategory, str] = {
    TurnFailureCategory.MODEL_UNAVAILABLE: (
        "The AI model is temporarily unavailable. Please try again."
    ),
    TurnFailureCategory.RATE_LIMITED: (
        "Too many requests. Wait a few seconds and try again."
    ),
    TurnFailureCategory.OVERLOADED: (
        "The AI service is overloaded. Please try again in a few minutes."
    ),
    TurnFailureCategory.UNKNOWN: (
        "Something went wrong while generating the answer. Please try again."
    ),
}


def classify_provider_error(error: BaseException) -> TurnFailureCategory:
    """Map a terminal provider error to a user-facing category."""
    if isinstance(error, ProviderUnavailableError):
        return TurnFailureCategory.MODEL_UNAVAILABLE
    if isinstance(error, ProviderRateLimitError):
        return TurnFailureCategory.RATE_LIMITED
    if isinstance(error, (ProviderOverloadedError, ProviderServiceError)):
        return TurnFailureCategory.OVERLOADED
    return TurnFailureCategory.UNKNOWN


class TurnError(RuntimeError):
    """A turn could not produce an answer because the provider failed.

    Attributes:
        category: Classified failure category
        user_message: Message safe to show the end user
    """

    def __init__(self, category: TurnFailureCategory, detail: str = "") -> None:
        self.category = category
        self.user_message = USER_MESSAGES[category]
        self.detail = detail
        super().__init__(f"{category.value}: {detail}" if detail else category.value)

    @classmethod
    def from_exception(cls, error: BaseException) -> TurnError:
        return cls(classify_provider_error(error), str(error) or type(error).__name__)
