"""
Capability registry: the palette of skills available to a conversation.

The registry holds the skills a turn may call, exposes them as provider
function declarations, and executes a call by name. Execution is the single
boundary where untrusted skill code is turned into a structured value:
unknown names, invalid arguments, raised exceptions and deadlines all come
back as a :class:`~capdispatch.skills.result.Failure`, never as an exception.

Usage:
    from capdispatch.skills.registry import SkillRegistry

    registry = SkillRegistry([GetTotal(), SearchCustomers()])
    declarations = registry.to_function_declarations()
    result = await registry.execute("get_total", {"period": "2024-01"}, context)

A registry is built once at session setup and treated as read-only while a
turn runs, so concurrent calls within a step can share it. Never share one
instance across tenants.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator
from typing import Any

from .base import SKILL_NAME_PATTERN, Skill, SkillContext
from .errors import exception_to_result
from .result import Failure, Result, SkillErrorKind, Success, failure
from .schema import FunctionDeclaration, function_declaration_for

logger = logging.getLogger(__name__)


class SkillRegistrationError(ValueError):
    """Raised at setup time when a skill cannot be registered."""


class SkillRegistry:
    """Registry of skills keyed by name, in registration order.

    Attributes:
        _skills: Mapping of skill names to skill instances
        _by_tool: Index mapping tool categories to skill names
        _declarations: Cached function declarations, reset on registration

    Example:
        registry = SkillRegistry()
        registry.register(GetTotal())

        if "get_total" in registry:
            result = await registry.execute("get_total", {"period": "2024-01"}, ctx)
    """

    def __init__(self, skills: Iterable[Skill[Any, Any]] = ()) -> None:
        self._skills: dict[str, Skill[Any, Any]] = {}
        self._by_tool: dict[str, list[str]] = {}
        self._declarations: list[FunctionDeclaration] | None = None
        # Calls that outlived their deadline keep running; hold a reference
        # so they are not garbage collected mid-flight.
        self._detached: set[asyncio.Task[Any]] = set()
        self.register_many(skills)

    def register(self, skill: Skill[Any, Any]) -> None:
        """Register a skill.

        Raises:
            SkillRegistrationError: If the name is invalid or already registered
        """
        if not isinstance(skill.name, str) or not SKILL_NAME_PATTERN.match(skill.name):
            raise SkillRegistrationError(
                f"Invalid skill name {skill.name!r}: must match {SKILL_NAME_PATTERN.pattern}"
            )
        if skill.name in self._skills:
            raise SkillRegistrationError(f"Skill '{skill.name}' already registered")

        self._skills[skill.name] = skill
        self._by_tool.setdefault(skill.tool, []).append(skill.name)
        self._declarations = None
        logger.debug("Registered skill %s (tool=%s)", skill.name, skill.tool)

    def register_many(self, skills: Iterable[Skill[Any, Any]]) -> None:
        for skill in skills:
            self.register(skill)

    def get(self, name: str) -> Skill[Any, Any] | None:
        return self._skills.get(name)

    def get_by_tool(self, tool: str) -> list[Skill[Any, Any]]:
        """Get all skills belonging to a tool category."""
        return [self._skills[name] for name in self._by_tool.get(tool, [])]

    def list_names(self) -> list[str]:
        return list(self._skills.keys())

    def list_tools(self) -> list[str]:
        return [tool for tool, names in self._by_tool.items() if names]

    def list_all(self) -> list[dict[str, Any]]:
        """List all registered skills with metadata (see Skill.get_info)."""
        return [skill.get_info() for skill in self._skills.values()]

    def filtered(
        self,
        *,
        enabled_tools: Iterable[str] | None = None,
        required_tags: Iterable[str] | None = None,
    ) -> SkillRegistry:
        """Return a new registry holding only the matching skills.

        Used to narrow a catalog down to the palette of one tenant's agent:
        only skills whose tool is enabled, and (when given) that carry at
        least one of the required tags. Registration order is preserved.
        """
        tools = set(enabled_tools) if enabled_tools is not None else None
        tags = set(required_tags) if required_tags is not None else None

        selected = []
        for skill in self._skills.values():
            if tools is not None and skill.tool not in tools:
                continue
            if tags is not None and not tags.intersection(skill.tags):
                continue
            selected.append(skill)
        return SkillRegistry(selected)

    def to_function_declarations(self) -> list[FunctionDeclaration]:
        """Function declarations for the provider, one per skill, in order."""
        if self._declarations is None:
            self._declarations = [
                function_declaration_for(skill) for skill in self._skills.values()
            ]
        return list(self._declarations)

    def describe(self) -> str:
        """Render a markdown list of available skills grouped by tool.

        Useful for injecting a capability overview into a system prompt.
        """
        lines = ["## Available Skills", ""]
        for tool in self.list_tools():
            lines.append(f"### {tool.upper()}")
            for skill in self.get_by_tool(tool):
                lines.append(f"- **{skill.name}**: {skill.description}")
            lines.append("")
        return "\n".join(lines)

    async def execute(
        self,
        name: str,
        raw_args: Any,
        context: SkillContext,
        *,
        timeout: float | None = None,
    ) -> Result[Any]:
        """Execute a skill by name. Never raises for skill-side failures.

        1. Unknown name -> ``not_found`` failure listing available skills.
        2. Arguments failing schema validation -> ``validation`` failure;
           the skill is not invoked.
        3. Exceptions raised by the skill -> ``internal`` failure (or the
           kind carried by a SkillExecutionError).
        4. Exceeding *timeout* seconds -> ``upstream`` failure. The skill
           is not cancelled; it finishes in the background.

        Args:
            name: Skill name requested by the provider
            raw_args: Unvalidated arguments from the provider
            context: Tenant-scoped execution context
            timeout: Optional deadline in seconds

        Returns:
            The skill's Result, or a Failure produced at this boundary
        """
        skill = self._skills.get(name)
        if skill is None:
            available = ", ".join(self._skills) or "none"
            return failure(
                SkillErrorKind.NOT_FOUND,
                f"Skill '{name}' is not available. Available skills: {available}",
            )

        validated = skill.validate(raw_args)
        if isinstance(validated, Failure):
            logger.debug("Rejected arguments for %s: %s", name, validated.error.message)
            return validated

        task = asyncio.ensure_future(self._invoke(skill, validated.data, context))
        if timeout is None:
            return await task

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()

        logger.warning("Skill %s exceeded %.1fs deadline; leaving it to finish", name, timeout)
        self._detached.add(task)
        task.add_done_callback(self._on_detached_done(name))
        return failure(
            SkillErrorKind.UPSTREAM,
            f"Skill '{name}' timed out after {timeout:g}s",
            retryable=True,
        )

    async def _invoke(
        self, skill: Skill[Any, Any], params: Any, context: SkillContext
    ) -> Result[Any]:
        try:
            result = await skill.execute(params, context)
        except Exception as exc:
            logger.warning("Skill %s raised %s", skill.name, type(exc).__name__, exc_info=True)
            return exception_to_result(exc)

        if not isinstance(result, (Success, Failure)):
            return failure(
                SkillErrorKind.INTERNAL,
                f"Skill '{skill.name}' returned {type(result).__name__} instead of a Result",
            )
        return result

    def _on_detached_done(self, name: str):
        def _done(task: asyncio.Task[Any]) -> None:
            self._detached.discard(task)
            if task.cancelled():
                logger.info("Detached call to %s was cancelled", name)
                return
            result = task.result()
            logger.info(
                "Detached call to %s finished late (ok=%s)", name, result.ok
            )

        return _done

    def __len__(self) -> int:
        return len(self._skills)

    def __contains__(self, name: object) -> bool:
        return name in self._skills

    def __iter__(self) -> Iterator[Skill[Any, Any]]:
        return iter(self._skills.values())
