"""Typed exceptions a skill may raise instead of building a failure by hand.

Skills should prefer returning :func:`~capdispatch.skills.result.failure`.
Deeply nested helpers (API clients, parsers) can raise one of these instead;
the registry converts them to a :class:`~capdispatch.skills.result.Failure`
of the matching kind at its boundary via :func:`exception_to_result`.
"""

from __future__ import annotations

import asyncio
from typing import Any

from .result import Failure, SkillError, SkillErrorKind, failure


class SkillExecutionError(Exception):
    """Base class for errors raised inside skill code.

    Args:
        kind: Failure kind reported to the model
        message: Human-readable message
        details: Optional structured details
        retryable: Whether the operation can be retried
    """

    kind: SkillErrorKind = SkillErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        kind: SkillErrorKind | None = None,
        details: Any = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.details = details
        self.retryable = retryable

    def to_error(self) -> SkillError:
        return SkillError(
            kind=self.kind,
            message=self.message,
            details=self.details,
            retryable=self.retryable,
        )

    def to_result(self) -> Failure:
        return Failure(error=self.to_error())


class AuthenticationError(SkillExecutionError):
    """Integration credentials missing or rejected."""

    kind = SkillErrorKind.AUTH

    def __init__(self, integration: str, details: Any = None) -> None:
        super().__init__(
            f"{integration} credentials not configured or invalid",
            details=details,
        )
        self.integration = integration


class SkillValidationError(SkillExecutionError):
    """Input passed schema validation but is semantically invalid."""

    kind = SkillErrorKind.VALIDATION


class UpstreamError(SkillExecutionError):
    """External API (ERP, marketplace, ...) call failed."""

    kind = SkillErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, details=details, retryable=retryable)
        self.status_code = status_code


class NotFoundError(SkillExecutionError):
    kind = SkillErrorKind.NOT_FOUND

    def __init__(self, resource: str, identifier: str | int) -> None:
        super().__init__(
            f"{resource} with ID {identifier} not found",
            details={"resource": resource, "identifier": identifier},
        )


class RateLimitError(SkillExecutionError):
    kind = SkillErrorKind.RATE_LIMIT

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, details={"retry_after": retry_after}, retryable=True)
        self.retry_after = retry_after


def exception_to_result(exc: BaseException) -> Failure:
    """Convert an exception escaping a skill into a structured failure.

    Typed :class:`SkillExecutionError` instances keep their kind, a timeout
    maps to ``upstream``, and anything else is ``internal`` carrying the
    exception message.
    """
    if isinstance(exc, SkillExecutionError):
        return exc.to_result()
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return failure(
            SkillErrorKind.UPSTREAM,
            str(exc) or "Operation timed out",
            retryable=True,
        )
    message = str(exc) or type(exc).__name__
    return failure(
        SkillErrorKind.INTERNAL,
        message,
        details={"exception": type(exc).__name__},
    )
