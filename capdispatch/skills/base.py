"""
Base skill abstractions for the capability-dispatch runtime.

A skill is a named, described, schema-validated capability the model can call
while answering a question. Skills are deterministic functions over a
tenant's data: no model calls happen inside them.

Key concepts:
- SkillContext: Tenant-scoped bag of credentials passed to every execution
- Skill: Abstract base class every skill inherits from
- FunctionSkill / skill(): Build a skill from a plain async function
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from .result import Result, SkillErrorKind, failure, success

InputT = TypeVar("InputT", bound=BaseModel)
OutputT = TypeVar("OutputT")

SKILL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


class EmptyInput(BaseModel):
    """Input schema for skills that take no arguments."""

    model_config = ConfigDict(extra="forbid")


@dataclass(frozen=True)
class SkillContext:
    """Context passed to every skill execution.

    Carries the identity of the tenant and user on whose behalf the turn
    runs, plus the already-decrypted credentials of the tenant's enabled
    integrations. The dispatch loop passes it through untouched; it is
    never persisted and never shared across tenants.

    Attributes:
        tenant_id: Unique identifier for the tenant
        user_id: Unique identifier for the requesting user
        credentials: Mapping of integration name to credential object
        locale: User locale used by skills for formatting
        metadata: Additional caller-defined data
        timestamp: When the context was created (UTC)

    Example:
        context = SkillContext(
            tenant_id="tenant_42",
            user_id="ana@example.com",
            credentials={"odoo": OdooCredentials(...)},
        )
    """
    tenant_id: str
    user_id: str
    credentials: Mapping[str, Any] = field(default_factory=dict)
    locale: str = "es-AR"
    metadata: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def credential(self, integration: str) -> Any | None:
        """Return credentials for *integration*, or None if not configured."""
        return self.credentials.get(integration)


def format_validation_errors(exc: ValidationError) -> list[dict[str, str]]:
    """Flatten a pydantic ValidationError into ``[{field, message}]``."""
    fields: list[dict[str, str]] = []
    for err in exc.errors(include_url=False):
        loc = ".".join(str(part) for part in err.get("loc", ())) or "(root)"
        fields.append({"field": loc, "message": err.get("msg", "invalid value")})
    return fields


class Skill(ABC, Generic[InputT, OutputT]):
    """Abstract base class for all skills.

    Subclasses must implement :meth:`execute` and should override the
    class-level attributes to define the skill's identity.

    Class Attributes:
        name: Unique identifier (snake_case), used as the function name
        description: Tells the model when to call this skill; include
            example phrases that should trigger it
        tool: Parent integration category (odoo, meli, memory, ...)
        input_schema: Pydantic model validating the call arguments
        tags: Optional tags for filtering
        priority: Preference when several skills could answer (higher wins)

    Example:
        class TotalInput(BaseModel):
            period: str = Field(description="Month as YYYY-MM")

        class GetTotal(Skill[TotalInput, dict]):
            name = "get_total"
            description = "Total sales for a month. Use for 'how much did we sell'."
            tool = "odoo"
            input_schema = TotalInput

            async def execute(self, params, context):
                return success({"total": 500})
    """

    name: str = "base_skill"
    description: str = "Base skill"
    tool: str = "general"
    input_schema: type[BaseModel] = EmptyInput
    tags: tuple[str, ...] = ()
    priority: int = 0

    @abstractmethod
    async def execute(self, params: InputT, context: SkillContext) -> Result[OutputT]:
        """Run the skill with already-validated input.

        Must return a Result for every expected failure mode (missing
        credentials, nothing found, upstream errors). Raising is reserved
        for programmer errors; the registry converts anything raised into
        an ``internal`` failure.
        """
        ...

    def validate(self, raw_args: Any) -> Result[InputT]:
        """Validate raw call arguments against :attr:`input_schema`.

        Validation is strict: values are never coerced across types
        (``"5"`` is not an integer). Arguments arrive as JSON from the
        provider, so validation runs in JSON mode where enums and dates
        are accepted from their string form.
        """
        if raw_args is None:
            raw_args = {}
        if not isinstance(raw_args, Mapping):
            return failure(
                SkillErrorKind.VALIDATION,
                f"Invalid input for '{self.name}': expected an object, "
                f"got {type(raw_args).__name__}",
            )
        try:
            payload = json.dumps(dict(raw_args))
        except (TypeError, ValueError) as exc:
            return failure(
                SkillErrorKind.VALIDATION,
                f"Invalid input for '{self.name}': arguments are not JSON-serialisable ({exc})",
            )
        try:
            params = self.input_schema.model_validate_json(payload, strict=True)
        except ValidationError as exc:
            fields = format_validation_errors(exc)
            summary = "; ".join(f"{f['field']}: {f['message']}" for f in fields)
            return failure(
                SkillErrorKind.VALIDATION,
                f"Invalid input for '{self.name}': {summary}",
                details=fields,
            )
        return success(params)

    def get_info(self) -> dict[str, Any]:
        """Get skill metadata for listings and UI display."""
        return {
            "name": self.name,
            "description": self.description,
            "tool": self.tool,
            "tags": list(self.tags),
            "priority": self.priority,
            "input_schema": self.input_schema.__name__,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} tool={self.tool!r}>"


SkillFunction = Callable[[Any, SkillContext], Coroutine[Any, Any, Result[Any]]]
"""Async function ``(params, context) -> Result`` wrapped by :class:`FunctionSkill`."""


class FunctionSkill(Skill[Any, Any]):
    """Skill backed by a plain async function.

    Example:
        get_total = FunctionSkill(
            fn=fetch_total,
            name="get_total",
            description="Total sales for a month",
            input_schema=TotalInput,
            tool="odoo",
        )
    """

    def __init__(
        self,
        fn: SkillFunction,
        *,
        name: str,
        description: str,
        input_schema: type[BaseModel] = EmptyInput,
        tool: str = "general",
        tags: Iterable[str] | None = None,
        priority: int = 0,
    ) -> None:
        self._fn = fn
        self.name = name
        self.description = description
        self.input_schema = input_schema
        self.tool = tool
        self.tags = tuple(tags or ())
        self.priority = priority

    async def execute(self, params: Any, context: SkillContext) -> Result[Any]:
        return await self._fn(params, context)


def skill(
    *,
    name: str | None = None,
    description: str | None = None,
    input_schema: type[BaseModel] = EmptyInput,
    tool: str = "general",
    tags: Iterable[str] | None = None,
    priority: int = 0,
) -> Callable[[SkillFunction], FunctionSkill]:
    """Decorator turning an async function into a :class:`FunctionSkill`.

    The function name and docstring are used when *name* / *description*
    are omitted.

    Example:
        @skill(input_schema=TotalInput, tool="odoo")
        async def get_total(params: TotalInput, context: SkillContext):
            '''Total sales for a month.'''
            return success({"total": 500})
    """

    def decorator(fn: SkillFunction) -> FunctionSkill:
        doc = (fn.__doc__ or "").strip()
        return FunctionSkill(
            fn,
            name=name or fn.__name__,
            description=description or doc or f"Execute {fn.__name__}",
            input_schema=input_schema,
            tool=tool,
            tags=tags,
            priority=priority,
        )

    return decorator
