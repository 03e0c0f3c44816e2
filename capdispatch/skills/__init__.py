"""
Skill contract and capability registry.

Core Components:
- Skill: Abstract base class for all skill implementations
- FunctionSkill / skill: Build skills from plain async functions
- SkillRegistry: Palette of skills for a conversation, executes calls by name
- to_provider_schema: Translate input schemas to provider parameter schemas

Key Types:
- SkillContext: Tenant-scoped context passed to every execution
- Result / Success / Failure: Envelope every skill returns
- SkillErrorKind: Closed set of failure kinds
- FunctionDeclaration: Provider-facing projection of a skill

Usage:
    from pydantic import BaseModel
    from capdispatch.skills import Skill, SkillRegistry, SkillContext, success

    class TotalInput(BaseModel):
        period: str

    class GetTotal(Skill[TotalInput, dict]):
        name = "get_total"
        description = "Total sales for a month"
        input_schema = TotalInput

        async def execute(self, params, context):
            return success({"total": 500})

    registry = SkillRegistry([GetTotal()])
    result = await registry.execute(
        "get_total", {"period": "2024-01"}, SkillContext(tenant_id="t1", user_id="u1")
    )
"""

from .base import (
    EmptyInput,
    FunctionSkill,
    Skill,
    SkillContext,
    SkillFunction,
    skill,
)
from .errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitError,
    SkillExecutionError,
    SkillValidationError,
    UpstreamError,
    exception_to_result,
)
from .registry import SkillRegistrationError, SkillRegistry
from .result import (
    Failure,
    Result,
    ResultAccessError,
    SkillError,
    SkillErrorKind,
    Success,
    auth_error,
    failure,
    is_failure,
    is_success,
    success,
)
from .schema import FunctionDeclaration, function_declaration_for, to_provider_schema

__all__ = [
    # Base classes and types
    "EmptyInput",
    "FunctionSkill",
    "Skill",
    "SkillContext",
    "SkillFunction",
    "skill",
    # Results
    "Failure",
    "Result",
    "ResultAccessError",
    "SkillError",
    "SkillErrorKind",
    "Success",
    "auth_error",
    "failure",
    "is_failure",
    "is_success",
    "success",
    # Errors
    "AuthenticationError",
    "NotFoundError",
    "RateLimitError",
    "SkillExecutionError",
    "SkillValidationError",
    "UpstreamError",
    "exception_to_result",
    # Registry
    "SkillRegistrationError",
    "SkillRegistry",
    # Schema
    "FunctionDeclaration",
    "function_declaration_for",
    "to_provider_schema",
]
