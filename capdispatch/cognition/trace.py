"""Usage and trace accumulation for a single conversation turn.

Every executed function call becomes an immutable :class:`ToolCallRecord`.
Token usage and reasoning text are summed across all provider requests of the
turn. The finished :class:`ConversationTurnTrace` is handed to the caller,
who owns it from then on.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic_core import to_jsonable_python

from capdispatch.cognition.provider import Usage
from capdispatch.skills.result import Result


@dataclass(frozen=True)
class ToolCallRecord:
    """One executed function call. Never mutated after creation."""

    name: str
    args: dict[str, Any]
    result: Result[Any]
    duration_ms: float
    step: int
    call_id: str
    started_at: datetime
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.result.ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "call_id": self.call_id,
            "step": self.step,
            "args": to_jsonable_python(self.args, fallback=str),
            "result": self.result.to_payload(),
            "duration_ms": round(self.duration_ms, 2),
            "error": self.error,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class TurnUsage:
    """Token usage summed over every provider request in the turn."""

    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int | None = None
    provider_requests: int = 0

    def add(self, usage: Usage) -> None:
        self.provider_requests += 1
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.total_tokens += usage.total_tokens or (usage.input_tokens + usage.output_tokens)
        if usage.reasoning_tokens is not None:
            self.reasoning_tokens = (self.reasoning_tokens or 0) + usage.reasoning_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "reasoning_tokens": self.reasoning_tokens,
            "provider_requests": self.provider_requests,
        }


@dataclass
class ConversationTurnTrace:
    """Outcome of one turn: the answer plus everything it took to get there."""

    final_text: str
    thinking_summary: str | None = None
    usage: TurnUsage = field(default_factory=TurnUsage)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    steps: int = 0
    forced_finalization: bool = False
    fallback_used: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_text": self.final_text,
            "thinking_summary": self.thinking_summary,
            "usage": self.usage.to_dict(),
            "tool_calls": [record.to_dict() for record in self.tool_calls],
            "steps": self.steps,
            "forced_finalization": self.forced_finalization,
            "fallback_used": self.fallback_used,
        }


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


class ToolStatus(str, enum.Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ToolEvent:
    """Progress notification emitted around each function call."""

    name: str
    call_id: str
    status: ToolStatus
    duration_ms: float | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


class TraceAccumulator:
    """Collects records, usage and reasoning while a turn runs."""

    def __init__(self) -> None:
        self.usage = TurnUsage()
        self.tool_calls: list[ToolCallRecord] = []
        self._thoughts: list[str] = []
        self.steps = 0

    def add_usage(self, usage: Usage) -> None:
        self.usage.add(usage)

    def add_reasoning(self, text: str) -> None:
        if text and text.strip():
            self._thoughts.append(text.strip())

    def record_call(
        self,
        *,
        name: str,
        args: Any,
        result: Result[Any],
        duration_ms: float,
        started_at: datetime,
        step: int,
        call_id: str,
    ) -> ToolCallRecord:
        """Append a record for a finished call."""
        record = ToolCallRecord(
            name=name,
            args=dict(args) if isinstance(args, Mapping) else {"value": args},
            result=result,
            duration_ms=duration_ms,
            step=step,
            call_id=call_id,
            started_at=started_at,
            error=None if result.ok else result.error.message,
        )
        self.tool_calls.append(record)
        return record

    @property
    def thinking_summary(self) -> str | None:
        return "\n\n".join(self._thoughts) or None

    def finish(
        self,
        final_text: str,
        *,
        forced_finalization: bool = False,
        fallback_used: bool = False,
    ) -> ConversationTurnTrace:
        return ConversationTurnTrace(
            final_text=final_text,
            thinking_summary=self.thinking_summary,
            usage=self.usage,
            tool_calls=list(self.tool_calls),
            steps=self.steps,
            forced_finalization=forced_finalization,
            fallback_used=fallback_used,
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
