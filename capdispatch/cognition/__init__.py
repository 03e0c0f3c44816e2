"""Cognition package: provider boundary, retry, dispatch loop, and tracing."""

from __future__ import annotations

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
    TurnError,
    TurnFailureCategory,
    classify_provider_error,
    is_transient_error,
)
from capdispatch.cognition.orchestrator import (
    DispatchConfig,
    Orchestrator,
    run_turn,
)
from capdispatch.cognition.provider import (
    FunctionCall,
    FunctionResult,
    Provider,
    ProviderResponse,
    ReasoningPart,
    Role,
    TranscriptEntry,
    Usage,
    transcript_from_messages,
)
from capdispatch.cognition.reasoning import (
    ReasoningConfig,
    ReasoningLevel,
    budget_for,
)
from capdispatch.cognition.retry import RetryPolicy, with_retry
from capdispatch.cognition.sanitizer import truncate_repetition_loop
from capdispatch.cognition.trace import (
    ConversationTurnTrace,
    ToolCallRecord,
    ToolEvent,
    ToolStatus,
    TraceAccumulator,
    TurnUsage,
)

__all__ = [
    # Provider boundary
    "FunctionCall",
    "FunctionResult",
    "Provider",
    "ProviderResponse",
    "ReasoningPart",
    "Role",
    "TranscriptEntry",
    "Usage",
    "transcript_from_messages",
    # Reasoning
    "ReasoningConfig",
    "ReasoningLevel",
    "budget_for",
    # Errors
    "ProviderConfigurationError",
    "ProviderConnectionError",
    "ProviderError",
    "ProviderOverloadedError",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "TurnError",
    "TurnFailureCategory",
    "classify_provider_error",
    "is_transient_error",
    # Retry
    "RetryPolicy",
    "with_retry",
    # Orchestration
    "DispatchConfig",
    "Orchestrator",
    "run_turn",
    # Output and trace
    "truncate_repetition_loop",
    "ConversationTurnTrace",
    "ToolCallRecord",
    "ToolEvent",
    "ToolStatus",
    "TraceAccumulator",
    "TurnUsage",
]
