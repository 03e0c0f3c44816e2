"""Tests for capdispatch.cognition.orchestrator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest
from pydantic import BaseModel

from capdispatch.cognition.errors import (
    ProviderOverloadedError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    TurnError,
    TurnFailureCategory,
)
from capdispatch.cognition.orchestrator import DispatchConfig, Orchestrator, run_turn
from capdispatch.cognition.provider import (
    FunctionCall,
    ProviderResponse,
    ReasoningPart,
    Role,
    TranscriptEntry,
    Usage,
)
from capdispatch.cognition.reasoning import ReasoningConfig, ReasoningLevel
from capdispatch.cognition.retry import RetryPolicy
from capdispatch.cognition.trace import ToolStatus
from capdispatch.skills import (
    FunctionSkill,
    SkillContext,
    SkillErrorKind,
    SkillRegistry,
    failure,
    skill,
    success,
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class Request:
    transcript: list[TranscriptEntry]
    functions: list[Any]
    reasoning: ReasoningConfig
    system: str | None
    allow_function_calls: bool


class ScriptedProvider:
    """Returns scripted responses in order; exceptions in the script are raised."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests: list[Request] = []

    async def generate(self, transcript, functions, reasoning, *, system=None,
                       allow_function_calls=True):
        self.requests.append(
            Request(list(transcript), list(functions), reasoning, system, allow_function_calls)
        )
        item = self.script.pop(0) if self.script else ProviderResponse()
        if isinstance(item, BaseException):
            raise item
        return item


class AlwaysCallsProvider:
    """Requests a function call on every request and never emits text."""

    def __init__(self, forced_text: str = ""):
        self.forced_text = forced_text
        self.requests: list[Request] = []

    async def generate(self, transcript, functions, reasoning, *, system=None,
                       allow_function_calls=True):
        self.requests.append(
            Request(list(transcript), list(functions), reasoning, system, allow_function_calls)
        )
        if not allow_function_calls:
            return ProviderResponse(text_parts=(self.forced_text,) if self.forced_text else ())
        return calls(("get_total", {"period": "2024-01"}))


class SleepyProvider:
    async def generate(self, *args, **kwargs):
        await asyncio.sleep(10)
        return ProviderResponse(text_parts=("too late",))


def text(value: str, **usage) -> ProviderResponse:
    return ProviderResponse(text_parts=(value,), usage=Usage(**usage))


def calls(*pairs, ids=None) -> ProviderResponse:
    ids = ids or [None] * len(pairs)
    return ProviderResponse(
        function_calls=tuple(
            FunctionCall(name=name, args=args, id=call_id)
            for (name, args), call_id in zip(pairs, ids)
        )
    )


class PeriodInput(BaseModel):
    period: str


@pytest.fixture
def context() -> SkillContext:
    return SkillContext(tenant_id="tenant_1", user_id="ana@example.com")


@pytest.fixture
def registry() -> SkillRegistry:
    @skill(input_schema=PeriodInput, tool="odoo")
    async def get_total(params: PeriodInput, context: SkillContext):
        """Total sales for a month."""
        return success({"total": 500})

    @skill(input_schema=PeriodInput, tool="odoo")
    async def broken(params: PeriodInput, context: SkillContext):
        """Always raises."""
        raise RuntimeError("ERP connection reset")

    @skill(input_schema=PeriodInput, tool="odoo")
    async def missing(params: PeriodInput, context: SkillContext):
        """Business failure."""
        return failure(SkillErrorKind.NOT_FOUND, f"No data for {params.period}")

    return SkillRegistry([get_total, broken, missing])


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make(provider, **config) -> Orchestrator:
    return Orchestrator(provider, DispatchConfig(**config), sleep=FakeSleep())


USER = [TranscriptEntry.user("How much did we sell in January?")]


# ---------------------------------------------------------------------------
# DispatchConfig
# ---------------------------------------------------------------------------


class TestDispatchConfig:
    def test_defaults(self):
        cfg = DispatchConfig()
        assert cfg.max_steps == 5
        assert cfg.reasoning_level is ReasoningLevel.MEDIUM
        assert cfg.retry == RetryPolicy()
        assert cfg.force_text_retry.max_attempts == 2
        assert cfg.request_timeout == 60.0
        assert cfg.skill_timeout == 30.0
        assert cfg.fallback_text.strip()
        assert cfg.force_text_instruction.strip()

    def test_reasoning_config(self):
        cfg = DispatchConfig(reasoning_level="high", include_thoughts=False)
        assert cfg.reasoning == ReasoningConfig(ReasoningLevel.HIGH, include_thoughts=False)

    def test_invalid_max_steps(self):
        with pytest.raises(ValueError):
            DispatchConfig(max_steps=0)

    def test_blank_fallback_rejected(self):
        with pytest.raises(ValueError):
            DispatchConfig(fallback_text="   ")

    def test_from_settings(self, monkeypatch):
        import importlib

        settings_module = importlib.import_module("capdispatch.config.settings")
        Settings = settings_module.Settings

        monkeypatch.setattr(
            settings_module,
            "settings",
            Settings(
                DISPATCH_MAX_STEPS=7,
                DISPATCH_REASONING_LEVEL="low",
                RETRY_MAX_ATTEMPTS=4,
                SKILL_TIMEOUT=5,
                DISPATCH_FALLBACK_TEXT="Sorry.",
                DISPATCH_MODEL="claude-test",
            ),
        )
        cfg = DispatchConfig.from_settings()
        assert cfg.max_steps == 7
        assert cfg.reasoning_level is ReasoningLevel.LOW
        assert cfg.retry.max_attempts == 4
        assert cfg.skill_timeout == 5
        assert cfg.fallback_text == "Sorry."
        assert cfg.model == "claude-test"


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_get_total_scenario(self, context):
        @skill(input_schema=PeriodInput)
        async def get_total(params: PeriodInput, context: SkillContext):
            """Total sales for a period."""
            return success({"total": 500})

        provider = ScriptedProvider(
            calls(("get_total", {"period": "2024-01"})),
            text("Total: 500"),
        )
        trace = await make(provider).run_turn(USER, SkillRegistry([get_total]), context)

        assert trace.final_text == "Total: 500"
        assert len(trace.tool_calls) == 1
        record = trace.tool_calls[0]
        assert record.name == "get_total"
        assert record.args == {"period": "2024-01"}
        assert record.result.to_payload() == {"ok": True, "data": {"total": 500}}
        assert record.error is None
        assert trace.steps == 2
        assert not trace.forced_finalization
        assert not trace.fallback_used

        # Second request sees the model's call and the function result
        second = provider.requests[1].transcript
        assert [e.role for e in second] == [Role.USER, Role.MODEL, Role.FUNCTION]
        result = second[2].function_results[0]
        assert result.name == "get_total"
        assert result.response == {"ok": True, "data": {"total": 500}}
        assert result.call_id == second[1].function_calls[0].id

    @pytest.mark.asyncio
    async def test_direct_text_answer(self, registry, context):
        provider = ScriptedProvider(text("  Hello!  "))
        trace = await make(provider).run_turn(USER, registry, context)
        assert trace.final_text == "Hello!"
        assert trace.tool_calls == []
        assert trace.steps == 1
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_declarations_and_settings_passed(self, registry, context):
        provider = ScriptedProvider(text("ok"))
        await make(
            provider, system_prompt="Be brief.", reasoning_level=ReasoningLevel.LOW
        ).run_turn(USER, registry, context)
        request = provider.requests[0]
        assert [f.name for f in request.functions] == ["get_total", "broken", "missing"]
        assert request.system == "Be brief."
        assert request.reasoning.level is ReasoningLevel.LOW
        assert request.allow_function_calls is True

    @pytest.mark.asyncio
    async def test_caller_transcript_not_mutated(self, registry, context):
        history = list(USER)
        provider = ScriptedProvider(calls(("get_total", {"period": "2024-01"})), text("done"))
        await make(provider).run_turn(history, registry, context)
        assert history == USER

    @pytest.mark.asyncio
    async def test_module_level_run_turn(self, registry, context):
        trace = await run_turn(ScriptedProvider(text("hi")), USER, registry, context)
        assert trace.final_text == "hi"

    @pytest.mark.asyncio
    async def test_usage_summed_across_requests(self, registry, context):
        first = calls(("get_total", {"period": "2024-01"}))
        first = ProviderResponse(
            function_calls=first.function_calls,
            usage=Usage(input_tokens=100, output_tokens=10, total_tokens=110),
        )
        provider = ScriptedProvider(
            first, text("done", input_tokens=150, output_tokens=20, total_tokens=170)
        )
        trace = await make(provider).run_turn(USER, registry, context)
        assert trace.usage.total_tokens == 280
        assert trace.usage.provider_requests == 2


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


class TestTermination:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_steps", [1, 2, 5])
    async def test_always_calling_provider_hits_fallback(self, registry, context, max_steps):
        provider = AlwaysCallsProvider()
        trace = await make(provider, max_steps=max_steps, fallback_text="No answer.").run_turn(
            USER, registry, context
        )

        assert len(provider.requests) == max_steps + 1
        assert [r.allow_function_calls for r in provider.requests] == (
            [True] * max_steps + [False]
        )
        assert trace.final_text == "No answer."
        assert trace.forced_finalization
        assert trace.fallback_used
        assert len(trace.tool_calls) == max_steps

    @pytest.mark.asyncio
    async def test_forced_request_carries_instruction(self, registry, context):
        provider = AlwaysCallsProvider(forced_text="Total so far: 500")
        trace = await make(
            provider, max_steps=2, force_text_instruction="Answer now."
        ).run_turn(USER, registry, context)

        final = provider.requests[-1]
        assert final.transcript[-1].role is Role.USER
        assert final.transcript[-1].text == "Answer now."
        assert final.functions, "declarations stay available for the history"
        assert trace.final_text == "Total so far: 500"
        assert trace.forced_finalization
        assert not trace.fallback_used

    @pytest.mark.asyncio
    async def test_empty_response_goes_to_forced_finalization(self, registry, context):
        provider = ScriptedProvider(ProviderResponse(), text("Recovered answer"))
        trace = await make(provider, max_steps=5).run_turn(USER, registry, context)
        assert len(provider.requests) == 2
        assert provider.requests[1].allow_function_calls is False
        assert trace.final_text == "Recovered answer"
        assert trace.forced_finalization

    @pytest.mark.asyncio
    async def test_whitespace_only_text_counts_as_empty(self, registry, context):
        provider = ScriptedProvider(text("   \n"), text("   "))
        trace = await make(provider, fallback_text="Fallback.").run_turn(
            USER, registry, context
        )
        assert trace.final_text == "Fallback."
        assert trace.fallback_used

    @pytest.mark.asyncio
    async def test_calls_ignored_when_functions_disabled(self, registry, context):
        provider = ScriptedProvider(
            calls(("get_total", {"period": "2024-01"})),
            calls(("get_total", {"period": "2024-02"})),
        )
        trace = await make(provider, max_steps=1).run_turn(USER, registry, context)
        assert len(provider.requests) == 2
        assert len(trace.tool_calls) == 1
        assert trace.fallback_used

    @pytest.mark.asyncio
    async def test_forced_request_transient_failure_raises(self, registry, context):
        provider = ScriptedProvider(
            calls(("get_total", {"period": "2024-01"})),
            ProviderRateLimitError("429"),
            ProviderRateLimitError("429"),
        )
        with pytest.raises(TurnError) as excinfo:
            await make(provider, max_steps=1, fallback_text="Later.").run_turn(
                USER, registry, context
            )
        assert excinfo.value.category is TurnFailureCategory.RATE_LIMITED
        assert isinstance(excinfo.value.__cause__, ProviderRateLimitError)
        # one regular request plus two forced attempts
        assert len(provider.requests) == 3
        assert provider.requests[-1].allow_function_calls is False

    @pytest.mark.asyncio
    async def test_forced_request_fatal_failure_raises(self, registry, context):
        provider = ScriptedProvider(
            calls(("get_total", {"period": "2024-01"})),
            ProviderUnavailableError("model retired"),
        )
        with pytest.raises(TurnError) as excinfo:
            await make(provider, max_steps=1).run_turn(USER, registry, context)
        assert excinfo.value.category is TurnFailureCategory.MODEL_UNAVAILABLE
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_final_text_never_empty(self, registry, context):
        for script in ([ProviderResponse()], [text("")], [calls(("nope", {}))]):
            trace = await make(ScriptedProvider(*script), max_steps=1).run_turn(
                USER, registry, context
            )
            assert trace.final_text.strip()


# ---------------------------------------------------------------------------
# Function calls
# ---------------------------------------------------------------------------


class TestFunctionCalls:
    @pytest.mark.asyncio
    async def test_one_failing_call_does_not_affect_sibling(self, registry, context):
        provider = ScriptedProvider(
            calls(
                ("broken", {"period": "2024-01"}),
                ("get_total", {"period": "2024-01"}),
            ),
            text("Total: 500 (orders unavailable)"),
        )
        trace = await make(provider).run_turn(USER, registry, context)

        assert [r.name for r in trace.tool_calls] == ["broken", "get_total"]
        broken, total = trace.tool_calls
        assert not broken.ok
        assert broken.result.error.kind is SkillErrorKind.INTERNAL
        assert "ERP connection reset" in broken.error
        assert total.ok

        results = provider.requests[1].transcript[-1].function_results
        assert [r.name for r in results] == ["broken", "get_total"]
        assert results[0].is_error
        assert results[1].response == {"ok": True, "data": {"total": 500}}

    @pytest.mark.asyncio
    async def test_calls_in_a_step_run_concurrently(self, context):
        a_started, b_started = asyncio.Event(), asyncio.Event()

        @skill(input_schema=PeriodInput)
        async def first(params, context):
            """Waits for its sibling."""
            a_started.set()
            await asyncio.wait_for(b_started.wait(), timeout=2)
            return success("a")

        @skill(input_schema=PeriodInput)
        async def second(params, context):
            """Waits for its sibling."""
            b_started.set()
            await asyncio.wait_for(a_started.wait(), timeout=2)
            return success("b")

        provider = ScriptedProvider(
            calls(("first", {"period": "x"}), ("second", {"period": "x"})),
            text("both done"),
        )
        trace = await make(provider).run_turn(USER, SkillRegistry([first, second]), context)
        assert all(record.ok for record in trace.tool_calls)

    @pytest.mark.asyncio
    async def test_validation_failure_folded_into_transcript(self, registry, context):
        provider = ScriptedProvider(calls(("get_total", {"period": 2024})), text("Sorry"))
        trace = await make(provider).run_turn(USER, registry, context)
        record = trace.tool_calls[0]
        assert record.result.error.kind is SkillErrorKind.VALIDATION
        payload = provider.requests[1].transcript[-1].function_results[0].response
        assert payload["ok"] is False
        assert payload["error"]["kind"] == "validation"

    @pytest.mark.asyncio
    async def test_unknown_skill_folded_into_transcript(self, registry, context):
        provider = ScriptedProvider(calls(("delete_everything", {})), text("Can't do that"))
        trace = await make(provider).run_turn(USER, registry, context)
        assert trace.tool_calls[0].result.error.kind is SkillErrorKind.NOT_FOUND
        assert trace.final_text == "Can't do that"

    @pytest.mark.asyncio
    async def test_business_failure_recorded(self, registry, context):
        provider = ScriptedProvider(calls(("missing", {"period": "1999-01"})), text("No data"))
        trace = await make(provider).run_turn(USER, registry, context)
        assert trace.tool_calls[0].error == "No data for 1999-01"

    @pytest.mark.asyncio
    async def test_missing_call_ids_synthesized(self, registry, context):
        provider = ScriptedProvider(
            calls(
                ("get_total", {"period": "2024-01"}),
                ("get_total", {"period": "2024-02"}),
                ids=[None, "provided"],
            ),
            text("done"),
        )
        trace = await make(provider).run_turn(USER, registry, context)
        assert [r.call_id for r in trace.tool_calls] == ["call_1_0", "provided"]
        model_entry = provider.requests[1].transcript[1]
        assert [c.id for c in model_entry.function_calls] == ["call_1_0", "provided"]

    @pytest.mark.asyncio
    async def test_skill_timeout_reported_as_upstream(self, context):
        @skill(input_schema=PeriodInput)
        async def slow(params, context):
            """Too slow."""
            await asyncio.sleep(0.05)
            return success("late")

        provider = ScriptedProvider(calls(("slow", {"period": "x"})), text("ERP is slow"))
        trace = await make(provider, skill_timeout=0.01).run_turn(
            USER, SkillRegistry([slow]), context
        )
        assert trace.tool_calls[0].result.error.kind is SkillErrorKind.UPSTREAM
        assert trace.final_text == "ERP is slow"

    @pytest.mark.asyncio
    async def test_records_carry_step_numbers(self, registry, context):
        provider = ScriptedProvider(
            calls(("get_total", {"period": "2024-01"})),
            calls(("get_total", {"period": "2023-01"})),
            text("Up 10%"),
        )
        trace = await make(provider).run_turn(USER, registry, context)
        assert [r.step for r in trace.tool_calls] == [1, 2]


# ---------------------------------------------------------------------------
# Reasoning and sanitizing
# ---------------------------------------------------------------------------


class TestReasoningAndOutput:
    @pytest.mark.asyncio
    async def test_reasoning_kept_out_of_answer(self, registry, context):
        seen = []
        provider = ScriptedProvider(
            ProviderResponse(
                reasoning_parts=(ReasoningPart("I should fetch the total.", signature="s1"),),
                function_calls=(FunctionCall("get_total", {"period": "2024-01"}),),
            ),
            ProviderResponse(
                reasoning_parts=(ReasoningPart("The total is 500."),),
                text_parts=("Total: 500",),
            ),
        )
        orch = Orchestrator(provider, on_reasoning=seen.append, sleep=FakeSleep())
        trace = await orch.run_turn(USER, registry, context)

        assert trace.final_text == "Total: 500"
        assert trace.thinking_summary == "I should fetch the total.\n\nThe total is 500."
        assert seen == ["I should fetch the total.", "The total is 500."]
        # Signed reasoning replayed with the model entry
        assert provider.requests[1].transcript[1].reasoning[0].signature == "s1"

    @pytest.mark.asyncio
    async def test_hidden_thoughts_still_replayed(self, registry, context):
        seen = []
        provider = ScriptedProvider(
            ProviderResponse(
                reasoning_parts=(ReasoningPart("I should fetch the total.", signature="s1"),),
                function_calls=(FunctionCall("get_total", {"period": "2024-01"}),),
            ),
            text("Total: 500"),
        )
        orch = Orchestrator(
            provider,
            DispatchConfig(include_thoughts=False),
            on_reasoning=seen.append,
            sleep=FakeSleep(),
        )
        trace = await orch.run_turn(USER, registry, context)

        assert trace.final_text == "Total: 500"
        assert trace.thinking_summary is None
        assert seen == []
        replayed = provider.requests[1].transcript[1].reasoning[0]
        assert replayed == ReasoningPart("I should fetch the total.", signature="s1")

    @pytest.mark.asyncio
    async def test_repetition_loop_truncated(self, registry, context):
        loop = "Let me know if you need a breakdown by product category or region."
        body = " ".join(
            ["Sales were strong across every channel we track this month."] * 6 + [loop] * 5
        )
        trace = await make(ScriptedProvider(text(body))).run_turn(USER, registry, context)
        assert trace.final_text.count(loop) == 2

    @pytest.mark.asyncio
    async def test_sanitizer_can_be_disabled(self, registry, context):
        loop = "Let me know if you need a breakdown by product category or region."
        body = " ".join(
            ["Sales were strong across every channel we track this month."] * 6 + [loop] * 5
        )
        trace = await make(ScriptedProvider(text(body)), sanitize_output=False).run_turn(
            USER, registry, context
        )
        assert trace.final_text == body


# ---------------------------------------------------------------------------
# Provider failures
# ---------------------------------------------------------------------------


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, registry, context):
        sleep = FakeSleep()
        provider = ScriptedProvider(
            ProviderOverloadedError("529"), ProviderRateLimitError("429"), text("fine")
        )
        orch = Orchestrator(provider, DispatchConfig(), sleep=sleep)
        trace = await orch.run_turn(USER, registry, context)
        assert trace.final_text == "fine"
        assert len(provider.requests) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_classified(self, registry, context):
        provider = ScriptedProvider(*[ProviderRateLimitError("429")] * 3)
        with pytest.raises(TurnError) as excinfo:
            await make(provider).run_turn(USER, registry, context)
        assert excinfo.value.category is TurnFailureCategory.RATE_LIMITED
        assert isinstance(excinfo.value.__cause__, ProviderRateLimitError)
        assert len(provider.requests) == 3

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, registry, context):
        provider = ScriptedProvider(ProviderUnavailableError("model gone"))
        with pytest.raises(TurnError) as excinfo:
            await make(provider).run_turn(USER, registry, context)
        assert excinfo.value.category is TurnFailureCategory.MODEL_UNAVAILABLE
        assert excinfo.value.user_message
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_classified_unknown(self, registry, context):
        provider = ScriptedProvider(KeyError("candidates"))
        with pytest.raises(TurnError) as excinfo:
            await make(provider).run_turn(USER, registry, context)
        assert excinfo.value.category is TurnFailureCategory.UNKNOWN

    @pytest.mark.asyncio
    async def test_request_timeout(self, registry, context):
        orch = make(
            SleepyProvider(), request_timeout=0.01, retry=RetryPolicy(max_attempts=1)
        )
        with pytest.raises(TurnError) as excinfo:
            await orch.run_turn(USER, registry, context)
        assert isinstance(excinfo.value.__cause__, ProviderTimeoutError)


# ---------------------------------------------------------------------------
# Callbacks and cancellation
# ---------------------------------------------------------------------------


class TestCallbacksAndCancellation:
    @pytest.mark.asyncio
    async def test_tool_events(self, registry, context):
        events = []
        provider = ScriptedProvider(
            calls(("get_total", {"period": "2024-01"}), ("broken", {"period": "2024-01"})),
            text("done"),
        )
        orch = Orchestrator(provider, on_tool_event=events.append, sleep=FakeSleep())
        await orch.run_turn(USER, registry, context)

        running = [e for e in events if e.status is ToolStatus.RUNNING]
        finished = {e.name: e for e in events if e.status is not ToolStatus.RUNNING}
        assert {e.name for e in running} == {"get_total", "broken"}
        assert finished["get_total"].status is ToolStatus.DONE
        assert finished["broken"].status is ToolStatus.ERROR
        assert finished["broken"].error
        assert finished["get_total"].duration_ms is not None

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_turn(self, registry, context):
        def explode(_):
            raise RuntimeError("UI disconnected")

        provider = ScriptedProvider(
            ProviderResponse(
                reasoning_parts=(ReasoningPart("hmm"),),
                function_calls=(FunctionCall("get_total", {"period": "2024-01"}),),
            ),
            text("done"),
        )
        orch = Orchestrator(
            provider, on_tool_event=explode, on_reasoning=explode, sleep=FakeSleep()
        )
        trace = await orch.run_turn(USER, registry, context)
        assert trace.final_text == "done"

    @pytest.mark.asyncio
    async def test_cancel_leaves_in_flight_calls_running(self, context):
        started, release, finished = asyncio.Event(), asyncio.Event(), asyncio.Event()

        async def slow_write(params, context):
            started.set()
            await release.wait()
            finished.set()
            return success("written")

        registry = SkillRegistry(
            [FunctionSkill(slow_write, name="slow_write", description="Slow", input_schema=PeriodInput)]
        )
        provider = ScriptedProvider(calls(("slow_write", {"period": "x"})), text("never"))
        task = asyncio.create_task(make(provider).run_turn(USER, registry, context))

        await asyncio.wait_for(started.wait(), timeout=2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        await asyncio.wait_for(finished.wait(), timeout=2)
        assert len(provider.requests) == 1


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


class TestTracing:
    @pytest.mark.asyncio
    async def test_turn_request_and_skill_spans(self, registry, context):
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import SimpleSpanProcessor
        from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
            InMemorySpanExporter,
        )

        from capdispatch.telemetry import DispatchTracer

        exporter = InMemorySpanExporter()
        tracer_provider = TracerProvider()
        tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))
        tracer = DispatchTracer(tracer_provider=tracer_provider)

        provider = ScriptedProvider(
            calls(("get_total", {"period": "2024-01"})),
            text("Total: 500", input_tokens=10, output_tokens=5),
        )
        orch = Orchestrator(
            provider, DispatchConfig(model="claude-test"), tracer=tracer, sleep=FakeSleep()
        )
        await orch.run_turn(USER, registry, context)

        spans = {span.name: span for span in exporter.get_finished_spans()}
        assert set(spans) == {"dispatch.turn", "dispatch.provider_request", "dispatch.skill.get_total"}
        turn = spans["dispatch.turn"]
        assert turn.attributes["gen_ai.request.model"] == "claude-test"
        assert turn.attributes["dispatch.tenant_id"] == "tenant_1"
        assert turn.attributes["dispatch.tool_calls"] == 1
        skill_span = spans["dispatch.skill.get_total"]
        assert skill_span.attributes["dispatch.skill.ok"] is True
        assert skill_span.parent.span_id == turn.context.span_id
        requests = [s for s in exporter.get_finished_spans() if s.name == "dispatch.provider_request"]
        assert len(requests) == 2
