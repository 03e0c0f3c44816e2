"""Dispatch loop -- drive a provider through function calls to a final answer.

The :class:`Orchestrator` runs one conversation turn as a bounded state
machine::

    REQUEST --no calls, text--> DONE
       |
       +--function calls--> execute all concurrently --> REQUEST
       |
       +--budget spent / empty--> FORCE_TEXT --> DONE (text or fallback)

At most ``max_steps`` requests are made with function calling enabled. If
every one of them asked for more calls, one final request is made with
function calling disabled and a configurable instruction asking the model to
answer with what it has. If that request fails after its own retries, the
classified :class:`~capdispatch.cognition.errors.TurnError` propagates. If it
succeeds without text, the configured fallback text is returned, so a turn
always ends with a non-empty answer or a classified error.

Skill failures never abort the turn: they are folded back into the
transcript as structured results the model can reason about.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from capdispatch.cognition.errors import ProviderTimeoutError, TurnError
from capdispatch.cognition.provider import (
    FunctionCall,
    FunctionResult,
    Provider,
    ProviderResponse,
    TranscriptEntry,
)
from capdispatch.cognition.reasoning import ReasoningConfig, ReasoningLevel
from capdispatch.cognition.retry import RetryPolicy, with_retry
from capdispatch.cognition.sanitizer import truncate_repetition_loop
from capdispatch.cognition.trace import (
    ConversationTurnTrace,
    ToolEvent,
    ToolStatus,
    TraceAccumulator,
    utcnow,
)
from capdispatch.config.settings import (
    DEFAULT_FALLBACK_TEXT,
    DEFAULT_FORCE_TEXT_INSTRUCTION,
)
from capdispatch.skills.base import SkillContext
from capdispatch.skills.errors import exception_to_result
from capdispatch.skills.registry import SkillRegistry
from capdispatch.skills.result import Result
from capdispatch.skills.schema import FunctionDeclaration
from capdispatch.telemetry.otel import DispatchTracer

logger = logging.getLogger(__name__)

ToolEventCallback = Callable[[ToolEvent], None]
ReasoningCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class DispatchConfig:
    """Configuration for the :class:`Orchestrator`.

    Parameters
    ----------
    max_steps:
        Maximum provider requests with function calling enabled.
    reasoning_level / include_thoughts:
        Reasoning effort passed to the provider on every request. With
        ``include_thoughts`` off, reasoning text stays out of the trace and the
        ``on_reasoning`` callback but is still replayed to the provider.
    retry:
        Backoff for regular requests.
    force_text_retry:
        Backoff for the final forced-text request.
    request_timeout:
        Seconds before a single provider request is abandoned (retried as
        transient). ``None`` disables the deadline.
    skill_timeout:
        Seconds before a single skill call is reported as ``upstream``
        failure. ``None`` disables the deadline.
    system_prompt:
        Optional system instruction sent with every request.
    force_text_instruction:
        Instruction appended before the forced-text request.
    fallback_text:
        Answer returned when the model produces no usable text at all.
    sanitize_output:
        Run the repetition-loop sanitizer on the final text.
    model:
        Model name, recorded on spans only.
    """

    max_steps: int = 5
    reasoning_level: ReasoningLevel = ReasoningLevel.MEDIUM
    include_thoughts: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    force_text_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=2, initial_delay=1.0, max_delay=4.0)
    )
    request_timeout: float | None = 60.0
    skill_timeout: float | None = 30.0
    system_prompt: str | None = None
    force_text_instruction: str = DEFAULT_FORCE_TEXT_INSTRUCTION
    fallback_text: str = DEFAULT_FALLBACK_TEXT
    sanitize_output: bool = True
    model: str = ""

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if not self.fallback_text.strip():
            raise ValueError("fallback_text must not be blank")
        self.reasoning_level = ReasoningLevel(self.reasoning_level)

    @property
    def reasoning(self) -> ReasoningConfig:
        return ReasoningConfig(level=self.reasoning_level, include_thoughts=self.include_thoughts)

    @classmethod
    def from_settings(cls) -> DispatchConfig:
        from capdispatch.config.settings import settings

        return cls(
            max_steps=settings.DISPATCH_MAX_STEPS,
            reasoning_level=ReasoningLevel(settings.DISPATCH_REASONING_LEVEL),
            include_thoughts=settings.DISPATCH_INCLUDE_THOUGHTS,
            retry=RetryPolicy(
                max_attempts=settings.RETRY_MAX_ATTEMPTS,
                initial_delay=settings.RETRY_INITIAL_DELAY,
                max_delay=settings.RETRY_MAX_DELAY,
            ),
            request_timeout=settings.PROVIDER_REQUEST_TIMEOUT,
            skill_timeout=settings.SKILL_TIMEOUT,
            system_prompt=settings.DISPATCH_SYSTEM_PROMPT or None,
            force_text_instruction=settings.DISPATCH_FORCE_TEXT_INSTRUCTION,
            fallback_text=settings.DISPATCH_FALLBACK_TEXT,
            model=settings.DISPATCH_MODEL,
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Run conversation turns against a provider and a skill registry.

    Parameters
    ----------
    provider:
        Any object implementing :class:`~capdispatch.cognition.provider.Provider`.
    config:
        Loop configuration. Uses defaults when *None*.
    tracer:
        Span factory; defaults to the globally configured OTel provider.
    sleep:
        Awaitable used for retry backoff, injectable for tests.
    on_tool_event:
        Optional callback notified when a call starts and finishes.
    on_reasoning:
        Optional callback receiving reasoning text as it arrives.
    """

    def __init__(
        self,
        provider: Provider,
        config: DispatchConfig | None = None,
        *,
        tracer: DispatchTracer | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_tool_event: ToolEventCallback | None = None,
        on_reasoning: ReasoningCallback | None = None,
    ) -> None:
        self._provider = provider
        self._config = config or DispatchConfig()
        self._tracer = tracer or DispatchTracer()
        self._sleep = sleep
        self._on_tool_event = on_tool_event
        self._on_reasoning = on_reasoning

    @property
    def config(self) -> DispatchConfig:
        return self._config

    # -- public API ---------------------------------------------------------

    async def run_turn(
        self,
        transcript: Sequence[TranscriptEntry],
        registry: SkillRegistry,
        context: SkillContext,
    ) -> ConversationTurnTrace:
        """Run one turn and return its trace.

        The caller's *transcript* is not modified; the turn works on a copy.

        Raises:
            TurnError: The provider failed after retries, or fatally
            asyncio.CancelledError: The turn was cancelled. Skill calls
                already in flight keep running to completion.
        """
        cfg = self._config
        entries = list(transcript)
        declarations = registry.to_function_declarations()
        acc = TraceAccumulator()

        logger.info(
            "Turn started: tenant=%s skills=%d max_steps=%d",
            context.tenant_id,
            len(declarations),
            cfg.max_steps,
        )

        with self._tracer.turn_span(cfg.model, cfg.max_steps, context.tenant_id) as span:
            result = await self._loop(entries, declarations, registry, context, acc)
            span.set_attribute("gen_ai.usage.input_tokens", acc.usage.input_tokens)
            span.set_attribute("gen_ai.usage.output_tokens", acc.usage.output_tokens)
            span.set_attribute("dispatch.tool_calls", len(result.tool_calls))
            span.set_attribute("dispatch.forced_finalization", result.forced_finalization)

        logger.info(
            "Turn finished: steps=%d calls=%d tokens=%d forced=%s fallback=%s",
            result.steps,
            len(result.tool_calls),
            result.usage.total_tokens,
            result.forced_finalization,
            result.fallback_used,
        )
        return result

    # -- state machine ------------------------------------------------------

    async def _loop(
        self,
        entries: list[TranscriptEntry],
        declarations: list[FunctionDeclaration],
        registry: SkillRegistry,
        context: SkillContext,
        acc: TraceAccumulator,
    ) -> ConversationTurnTrace:
        cfg = self._config

        for step in range(1, cfg.max_steps + 1):
            acc.steps = step
            response = await self._request(
                entries, declarations, step, allow_function_calls=True, policy=cfg.retry
            )
            self._absorb(response, acc)

            if not response.has_function_calls:
                text = response.text.strip()
                if text:
                    return self._finish(acc, text)
                logger.warning("Step %d returned neither text nor calls; forcing an answer", step)
                break

            calls = [
                call if call.id else dataclasses.replace(call, id=f"call_{step}_{index}")
                for index, call in enumerate(response.function_calls)
            ]
            logger.debug("Step %d requested %s", step, ", ".join(c.name for c in calls))
            entries.append(
                TranscriptEntry.model(
                    response.text,
                    reasoning=response.reasoning_parts,
                    function_calls=calls,
                )
            )
            results = await self._execute_calls(calls, registry, context, step, acc)
            entries.append(TranscriptEntry.function(results))
        else:
            logger.warning("Step budget of %d exhausted; forcing an answer", cfg.max_steps)

        return await self._force_text(entries, declarations, acc)

    async def _force_text(
        self,
        entries: list[TranscriptEntry],
        declarations: list[FunctionDeclaration],
        acc: TraceAccumulator,
    ) -> ConversationTurnTrace:
        cfg = self._config
        entries.append(TranscriptEntry.user(cfg.force_text_instruction))
        step = acc.steps + 1

        response = await self._request(
            entries,
            declarations,
            step,
            allow_function_calls=False,
            policy=cfg.force_text_retry,
        )

        self._absorb(response, acc)
        text = response.text.strip()
        if response.has_function_calls:
            logger.warning("Provider requested calls with functions disabled; ignoring them")
        if not text:
            logger.warning("Forced answer was empty; using fallback")
            return self._finish(acc, cfg.fallback_text, forced=True, fallback=True)
        return self._finish(acc, text, forced=True)

    def _finish(
        self,
        acc: TraceAccumulator,
        text: str,
        *,
        forced: bool = False,
        fallback: bool = False,
    ) -> ConversationTurnTrace:
        if self._config.sanitize_output and not fallback:
            text = truncate_repetition_loop(text)
        return acc.finish(text, forced_finalization=forced, fallback_used=fallback)

    # -- provider requests --------------------------------------------------

    async def _request(
        self,
        entries: list[TranscriptEntry],
        declarations: list[FunctionDeclaration],
        step: int,
        *,
        allow_function_calls: bool,
        policy: RetryPolicy,
    ) -> ProviderResponse:
        cfg = self._config
        snapshot = tuple(entries)

        async def attempt() -> ProviderResponse:
            with self._tracer.provider_request_span(step, allow_function_calls) as span:
                call = self._provider.generate(
                    snapshot,
                    declarations,
                    cfg.reasoning,
                    system=cfg.system_prompt,
                    allow_function_calls=allow_function_calls,
                )
                if cfg.request_timeout is None:
                    response = await call
                else:
                    try:
                        response = await asyncio.wait_for(call, cfg.request_timeout)
                    except asyncio.TimeoutError as exc:
                        raise ProviderTimeoutError(
                            f"Provider request exceeded {cfg.request_timeout:g}s"
                        ) from exc
                span.set_attribute("gen_ai.usage.input_tokens", response.usage.input_tokens)
                span.set_attribute("gen_ai.usage.output_tokens", response.usage.output_tokens)
                span.set_attribute("dispatch.function_calls", len(response.function_calls))
                return response

        try:
            return await with_retry(attempt, policy=policy, sleep=self._sleep)
        except Exception as exc:
            error = TurnError.from_exception(exc)
            logger.error(
                "Provider request failed at step %d: %s (%s)",
                step,
                error.category.value,
                exc,
            )
            raise error from exc

    def _absorb(self, response: ProviderResponse, acc: TraceAccumulator) -> None:
        acc.add_usage(response.usage)
        if not self._config.include_thoughts:
            return
        for part in response.reasoning_parts:
            acc.add_reasoning(part.text)
            if self._on_reasoning is not None and part.text:
                self._notify(self._on_reasoning, part.text)

    # -- function calls -----------------------------------------------------

    async def _execute_calls(
        self,
        calls: list[FunctionCall],
        registry: SkillRegistry,
        context: SkillContext,
        step: int,
        acc: TraceAccumulator,
    ) -> list[FunctionResult]:
        """Run every call of a step concurrently and record each outcome.

        The batch is shielded: cancelling the turn leaves in-flight calls
        running. Records and results keep the order the calls were requested.
        """

        async def run_one(call: FunctionCall) -> tuple[Result[Any], float, datetime]:
            call_id = call.id or ""
            started = time.perf_counter()
            started_at = utcnow()
            self._emit(ToolEvent(call.name, call_id, ToolStatus.RUNNING))
            with self._tracer.skill_span(call.name, call_id, step) as span:
                result = await registry.execute(
                    call.name, call.args, context, timeout=self._config.skill_timeout
                )
                span.set_attribute("dispatch.skill.ok", result.ok)
            return result, (time.perf_counter() - started) * 1000, started_at

        batch = asyncio.gather(*(run_one(call) for call in calls), return_exceptions=True)
        outcomes = await asyncio.shield(batch)

        results: list[FunctionResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Call to %s failed outside the registry", call.name, exc_info=outcome)
                result: Result[Any] = exception_to_result(outcome)
                duration_ms, started_at = 0.0, utcnow()
            else:
                result, duration_ms, started_at = outcome

            record = acc.record_call(
                name=call.name,
                args=call.args,
                result=result,
                duration_ms=duration_ms,
                started_at=started_at,
                step=step,
                call_id=call.id or "",
            )
            self._emit(
                ToolEvent(
                    call.name,
                    record.call_id,
                    ToolStatus.DONE if result.ok else ToolStatus.ERROR,
                    duration_ms=record.duration_ms,
                    error=record.error,
                )
            )
            results.append(
                FunctionResult(
                    name=call.name,
                    response=result.to_payload(),
                    call_id=call.id,
                    is_error=not result.ok,
                )
            )
        return results

    # -- callbacks ----------------------------------------------------------

    def _emit(self, event: ToolEvent) -> None:
        if self._on_tool_event is not None:
            self._notify(self._on_tool_event, event)

    @staticmethod
    def _notify(callback: Callable[[Any], None], payload: Any) -> None:
        try:
            callback(payload)
        except Exception:
            logger.exception("Progress callback %r failed", callback)


async def run_turn(
    provider: Provider,
    transcript: Sequence[TranscriptEntry],
    registry: SkillRegistry,
    context: SkillContext,
    config: DispatchConfig | None = None,
) -> ConversationTurnTrace:
    """Convenience wrapper: run one turn with a fresh :class:`Orchestrator`."""
    return await Orchestrator(provider, config).run_turn(transcript, registry, context)
