"""Result envelope returned by every skill.

A skill never raises for an expected failure mode. It returns either a
:class:`Success` carrying its data or a :class:`Failure` carrying a typed
:class:`SkillError`. Consumers switch on ``result.ok`` (or ``isinstance``);
``Success`` has no ``error`` attribute and ``Failure`` has no ``data``
attribute, so reading the wrong branch is an ``AttributeError`` rather than a
silent ``None``.

Usage:
    from capdispatch.skills.result import success, failure, SkillErrorKind

    async def execute(self, params, context):
        rows = await fetch(params.period)
        if not rows:
            return failure(SkillErrorKind.NOT_FOUND, f"No data for {params.period}")
        return success({"total": sum(rows)})
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Literal, TypeVar, Union

from pydantic_core import to_jsonable_python

T = TypeVar("T")


class SkillErrorKind(str, Enum):
    """Closed set of failure kinds a skill may report.

    Attributes:
        AUTH: Missing or invalid credentials for the tenant's integration
        VALIDATION: Input did not match the skill's schema
        NOT_FOUND: Requested resource (or capability) does not exist
        UPSTREAM: External collaborator failed or timed out
        RATE_LIMIT: External collaborator throttled the request
        INTERNAL: Unexpected error inside the skill
    """
    AUTH = "auth"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UPSTREAM = "upstream"
    RATE_LIMIT = "rate_limit"
    INTERNAL = "internal"


class ResultAccessError(RuntimeError):
    """Raised when a failure is unwrapped as if it were a success.

    This is a programmer error, never a business failure.
    """


@dataclass(frozen=True)
class SkillError:
    """Typed error carried by a :class:`Failure`.

    Attributes:
        kind: Failure kind from the closed enumeration
        message: Human-readable message, shown to the model
        details: Optional structured details (field errors, ids, ...)
        retryable: Whether repeating the call could succeed
    """
    kind: SkillErrorKind
    message: str
    details: Any = None
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details is not None:
            data["details"] = to_jsonable_python(self.details, fallback=str)
        if self.retryable:
            data["retryable"] = True
        return data


@dataclass(frozen=True)
class Success(Generic[T]):
    """Successful skill outcome.

    Attributes:
        data: The skill's output
        metadata: Optional execution metadata (``execution_ms``, ``cached``,
            ``source``)
    """
    data: T
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> Literal[True]:
        return True

    def unwrap(self) -> T:
        return self.data

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe representation used as a function-result payload."""
        return {"ok": True, "data": to_jsonable_python(self.data, fallback=str)}


@dataclass(frozen=True)
class Failure:
    """Failed skill outcome."""
    error: SkillError

    @property
    def ok(self) -> Literal[False]:
        return False

    def unwrap(self) -> Any:
        raise ResultAccessError(
            f"Cannot unwrap a failed result ({self.error.kind.value}): {self.error.message}"
        )

    def to_payload(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error.to_dict()}


Result = Union[Success[T], Failure]
"""Either a :class:`Success` or a :class:`Failure`; exactly one branch."""


def success(data: T, **metadata: Any) -> Success[T]:
    """Create a success result."""
    return Success(data=data, metadata=dict(metadata))


def failure(
    kind: SkillErrorKind | str,
    message: str,
    details: Any = None,
    retryable: bool = False,
) -> Failure:
    """Create a failure result.

    Raises:
        ValueError: If *kind* is not one of :class:`SkillErrorKind`
    """
    return Failure(
        error=SkillError(
            kind=SkillErrorKind(kind),
            message=message,
            details=details,
            retryable=retryable,
        )
    )


def auth_error(integration: str) -> Failure:
    """Failure for an integration whose credentials are not configured."""
    return failure(
        SkillErrorKind.AUTH,
        f"{integration} credentials not configured for this tenant",
    )


def is_success(result: Result[Any]) -> bool:
    return isinstance(result, Success)


def is_failure(result: Result[Any]) -> bool:
    return isinstance(result, Failure)
