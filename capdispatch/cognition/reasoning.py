"""Reasoning effort levels and their token budgets.

Maps the provider-independent effort knob (minimal / low / medium / high) to
the thinking-token budget a provider reserves for latent reasoning.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------


class ReasoningLevel(str, enum.Enum):
    """Abstract reasoning effort, independent of any provider."""

    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Level -> thinking budget (tokens)
# ---------------------------------------------------------------------------

THINKING_BUDGETS: dict[ReasoningLevel, int] = {
    ReasoningLevel.MINIMAL: 1024,
    ReasoningLevel.LOW: 2048,
    ReasoningLevel.MEDIUM: 8192,
    ReasoningLevel.HIGH: 24576,
}

_DEFAULT_BUDGET = THINKING_BUDGETS[ReasoningLevel.MEDIUM]


@dataclass(frozen=True)
class ReasoningConfig:
    """Reasoning settings passed to the provider on every request.

    Parameters
    ----------
    level:
        Effort level.
    include_thoughts:
        Surface thought text in the turn trace. Providers keep it regardless
        so signed reasoning can be replayed.
    """

    level: ReasoningLevel = ReasoningLevel.MEDIUM
    include_thoughts: bool = True

    @property
    def budget_tokens(self) -> int:
        return budget_for(self.level)


def budget_for(level: ReasoningLevel | str) -> int:
    """Return the thinking-token budget for *level*.

    Unknown level strings fall back to the medium budget.
    """
    try:
        return THINKING_BUDGETS[ReasoningLevel(level)]
    except ValueError:
        logger.warning("Unknown reasoning level %r; using medium budget", level)
        return _DEFAULT_BUDGET
