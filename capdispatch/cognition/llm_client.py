"""Anthropic provider adapter for the dispatch loop.

Implements :class:`~capdispatch.cognition.provider.Provider` on top of the
async Anthropic Messages API:

- transcript entries become Messages API content blocks (thinking blocks
  replayed with their signatures, ``tool_use`` / ``tool_result`` pairs,
  consecutive same-role messages merged);
- function declarations become ``tools``;
- the reasoning level becomes an extended-thinking token budget;
- SDK exceptions are normalized into the provider error taxonomy.

SDK-level retries are disabled; the dispatch loop's retry wrapper is the
only retry layer.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from capdispatch.cognition.errors import (
    ProviderConfigurationError,
    ProviderConnectionError,
    ProviderError,
    ProviderOverloadedError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from capdispatch.cognition.provider import (
    FunctionCall,
    ProviderResponse,
    ReasoningPart,
    Role,
    TranscriptEntry,
    Usage,
)
from capdispatch.cognition.reasoning import ReasoningConfig
from capdispatch.config.settings import settings
from capdispatch.skills.schema import FunctionDeclaration

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def map_anthropic_error(exc: Exception) -> ProviderError:
    """Normalize an Anthropic SDK exception into a :class:`ProviderError`."""
    if isinstance(exc, anthropic.APITimeoutError):
        return ProviderTimeoutError(str(exc) or "Request timed out")
    if isinstance(exc, anthropic.APIConnectionError):
        return ProviderConnectionError(str(exc) or "Connection error")
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        detail = _error_detail(exc)
        if status == 429:
            return ProviderRateLimitError(detail, http_status=status)
        if status in (503, 529):
            return ProviderOverloadedError(detail, http_status=status)
        if status >= 500:
            return ProviderServiceError(detail, http_status=status)
        if status == 404:
            return ProviderUnavailableError(detail, http_status=status)
        return ProviderConfigurationError(detail, http_status=status)
    return ProviderError(str(exc) or type(exc).__name__)


def _error_detail(exc: anthropic.APIStatusError) -> str:
    body = exc.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return exc.message or str(exc)


# ---------------------------------------------------------------------------
# Request mapping
# ---------------------------------------------------------------------------


def to_anthropic_messages(transcript: Sequence[TranscriptEntry]) -> list[dict[str, Any]]:
    """Convert transcript entries into Messages API ``messages``.

    Function results travel in ``user`` messages as ``tool_result`` blocks.
    Adjacent messages with the same role are merged, since the API requires
    alternating roles.
    """
    messages: list[dict[str, Any]] = []
    for entry in transcript:
        role = "assistant" if entry.role is Role.MODEL else "user"
        blocks = _entry_blocks(entry)
        if not blocks:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})
    return messages


def _entry_blocks(entry: TranscriptEntry) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []

    if entry.role is Role.MODEL:
        for part in entry.reasoning:
            if part.redacted:
                blocks.append({"type": "redacted_thinking", "data": part.redacted})
            elif part.signature:
                blocks.append(
                    {"type": "thinking", "thinking": part.text, "signature": part.signature}
                )
            # Unsigned reasoning cannot be replayed

    if entry.text:
        blocks.append({"type": "text", "text": entry.text})

    for call in entry.function_calls:
        blocks.append(
            {"type": "tool_use", "id": call.id, "name": call.name, "input": call.args}
        )

    for result in entry.function_results:
        blocks.append(
            {
                "type": "tool_result",
                "tool_use_id": result.call_id,
                "content": json.dumps(result.response, ensure_ascii=False, default=str),
                "is_error": result.is_error,
            }
        )
    return blocks


def to_anthropic_tools(functions: Sequence[FunctionDeclaration]) -> list[dict[str, Any]]:
    return [
        {"name": fn.name, "description": fn.description, "input_schema": fn.parameters}
        for fn in functions
    ]


# ---------------------------------------------------------------------------
# Response mapping
# ---------------------------------------------------------------------------


def from_anthropic_message(message: Any) -> ProviderResponse:
    """Normalize a Messages API response.

    Thinking text is always kept: signed blocks must go back to the API
    verbatim on the next request.

    Raises:
        ProviderResponseError: If a content block cannot be interpreted
    """
    text_parts: list[str] = []
    reasoning: list[ReasoningPart] = []
    calls: list[FunctionCall] = []

    try:
        for block in message.content:
            kind = block.type
            if kind == "text":
                text_parts.append(block.text)
            elif kind == "thinking":
                reasoning.append(ReasoningPart(text=block.thinking, signature=block.signature))
            elif kind == "redacted_thinking":
                reasoning.append(ReasoningPart(text="", redacted=block.data))
            elif kind == "tool_use":
                args = block.input if isinstance(block.input, dict) else {}
                calls.append(FunctionCall(name=block.name, args=dict(args), id=block.id))
            else:
                logger.debug("Ignoring content block of type %s", kind)

        input_tokens = message.usage.input_tokens or 0
        output_tokens = message.usage.output_tokens or 0
    except AttributeError as exc:
        raise ProviderResponseError(f"Unexpected response shape: {exc}") from exc

    return ProviderResponse(
        text_parts=tuple(text_parts),
        reasoning_parts=tuple(reasoning),
        function_calls=tuple(calls),
        usage=Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        ),
        stop_reason=message.stop_reason,
    )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """Async Anthropic provider with extended thinking and tool use.

    Parameters
    ----------
    api_key:
        Anthropic API key. Falls back to ``settings.ANTHROPIC_API_KEY``.
    model:
        Model ID. Falls back to ``settings.DISPATCH_MODEL``.
    max_output_tokens:
        Answer token budget, excluding the thinking budget.
    client:
        Preconfigured ``AsyncAnthropic`` client (mainly for tests).
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        max_output_tokens: int | None = None,
        client: AsyncAnthropic | None = None,
    ) -> None:
        self.model = model or settings.DISPATCH_MODEL
        self.max_output_tokens = max_output_tokens or settings.DISPATCH_MAX_OUTPUT_TOKENS

        if client is not None:
            self._client = client
            return

        api_key = api_key or settings.ANTHROPIC_API_KEY
        if not api_key:
            raise ProviderConfigurationError(
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY in environment."
            )
        self._client = AsyncAnthropic(api_key=api_key, max_retries=0)

    def build_request(
        self,
        transcript: Sequence[TranscriptEntry],
        functions: Sequence[FunctionDeclaration],
        reasoning: ReasoningConfig,
        *,
        system: str | None = None,
        allow_function_calls: bool = True,
    ) -> dict[str, Any]:
        """Assemble keyword arguments for ``messages.create``."""
        budget = reasoning.budget_tokens
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_output_tokens + budget,
            "messages": to_anthropic_messages(transcript),
            "thinking": {"type": "enabled", "budget_tokens": budget},
        }
        if system:
            request["system"] = system
        if functions:
            # Tools stay declared even when calls are disabled: earlier
            # tool_use blocks in the history must reference known tools.
            request["tools"] = to_anthropic_tools(functions)
            request["tool_choice"] = {"type": "auto" if allow_function_calls else "none"}
        return request

    async def generate(
        self,
        transcript: Sequence[TranscriptEntry],
        functions: Sequence[FunctionDeclaration],
        reasoning: ReasoningConfig,
        *,
        system: str | None = None,
        allow_function_calls: bool = True,
    ) -> ProviderResponse:
        request = self.build_request(
            transcript,
            functions,
            reasoning,
            system=system,
            allow_function_calls=allow_function_calls,
        )
        logger.debug(
            "Anthropic request: model=%s messages=%d tools=%d thinking=%d",
            self.model,
            len(request["messages"]),
            len(request.get("tools", [])),
            request["thinking"]["budget_tokens"],
        )

        try:
            message = await self._client.messages.create(**request)
        except anthropic.APIError as exc:
            raise map_anthropic_error(exc) from exc

        response = from_anthropic_message(message)
        logger.debug(
            "Anthropic response: stop=%s calls=%d in=%d out=%d",
            response.stop_reason,
            len(response.function_calls),
            response.usage.input_tokens,
            response.usage.output_tokens,
        )
        return response


# Convenience factory
def create_provider() -> AnthropicProvider:
    """Create a configured AnthropicProvider instance.

    Uses settings from environment/config automatically.
    """
    return AnthropicProvider(
        api_key=settings.ANTHROPIC_API_KEY,
        model=settings.DISPATCH_MODEL,
        max_output_tokens=settings.DISPATCH_MAX_OUTPUT_TOKENS,
    )
