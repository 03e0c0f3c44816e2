"""Provider boundary: transcript entries, responses and the Provider protocol.

The dispatch loop depends only on the shapes defined here, never on a vendor
SDK. A provider receives the running transcript plus the palette of function
declarations and returns text, reasoning and/or function-call requests.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from capdispatch.cognition.reasoning import ReasoningConfig
from capdispatch.skills.schema import FunctionDeclaration


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


class Role(str, enum.Enum):
    USER = "user"
    MODEL = "model"
    FUNCTION = "function"


@dataclass(frozen=True)
class FunctionCall:
    """A provider's request to invoke a named skill."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class FunctionResult:
    """Outcome of one function call, fed back to the provider."""

    name: str
    response: dict[str, Any]
    call_id: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class ReasoningPart:
    """A piece of latent reasoning exposed by the provider.

    ``signature`` / ``redacted`` are opaque provider tokens that must be
    replayed verbatim on the next request; they are never shown to users.
    """

    text: str
    signature: str | None = None
    redacted: str | None = None


@dataclass(frozen=True)
class TranscriptEntry:
    """One role-tagged entry of the turn's transcript."""

    role: Role
    text: str = ""
    reasoning: tuple[ReasoningPart, ...] = ()
    function_calls: tuple[FunctionCall, ...] = ()
    function_results: tuple[FunctionResult, ...] = ()

    @classmethod
    def user(cls, text: str) -> TranscriptEntry:
        return cls(role=Role.USER, text=text)

    @classmethod
    def model(
        cls,
        text: str = "",
        *,
        reasoning: Iterable[ReasoningPart] = (),
        function_calls: Iterable[FunctionCall] = (),
    ) -> TranscriptEntry:
        return cls(
            role=Role.MODEL,
            text=text,
            reasoning=tuple(reasoning),
            function_calls=tuple(function_calls),
        )

    @classmethod
    def function(cls, results: Iterable[FunctionResult]) -> TranscriptEntry:
        return cls(role=Role.FUNCTION, function_results=tuple(results))


_ROLE_ALIASES = {
    "user": Role.USER,
    "assistant": Role.MODEL,
    "model": Role.MODEL,
}


def transcript_from_messages(messages: Iterable[Mapping[str, Any]]) -> list[TranscriptEntry]:
    """Convert caller chat history into transcript entries.

    Accepts ``[{"role": "user" | "assistant", "content": "..."}]``; the
    ``assistant`` role maps to :attr:`Role.MODEL`. Entries with other roles
    (e.g. ``system``) are rejected, the system prompt is configured
    separately.

    Raises:
        ValueError: On an unknown role
    """
    entries: list[TranscriptEntry] = []
    for message in messages:
        role = _ROLE_ALIASES.get(str(message.get("role", "")).lower())
        if role is None:
            raise ValueError(f"Unsupported message role: {message.get('role')!r}")
        entries.append(TranscriptEntry(role=role, text=str(message.get("content") or "")))
    return entries


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Usage:
    """Token usage reported for a single provider request."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int | None = None


@dataclass(frozen=True)
class ProviderResponse:
    """Normalized provider output for one request."""

    text_parts: tuple[str, ...] = ()
    reasoning_parts: tuple[ReasoningPart, ...] = ()
    function_calls: tuple[FunctionCall, ...] = ()
    usage: Usage = field(default_factory=Usage)
    stop_reason: str | None = None

    @property
    def text(self) -> str:
        """Concatenated non-reasoning text."""
        return "".join(self.text_parts)

    @property
    def has_function_calls(self) -> bool:
        return bool(self.function_calls)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Provider(Protocol):
    """Protocol implemented by concrete model adapters."""

    async def generate(
        self,
        transcript: Sequence[TranscriptEntry],
        functions: Sequence[FunctionDeclaration],
        reasoning: ReasoningConfig,
        *,
        system: str | None = None,
        allow_function_calls: bool = True,
    ) -> ProviderResponse:
        """Send one request and return the normalized response.

        Raises a :class:`~capdispatch.cognition.errors.ProviderError` (or a
        builtin ``ConnectionError`` / ``TimeoutError``) on failure.
        """
        ...
