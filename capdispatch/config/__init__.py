"""capdispatch configuration -- environment-driven settings."""

from .settings import (
    DEFAULT_FALLBACK_TEXT,
    DEFAULT_FORCE_TEXT_INSTRUCTION,
    DEFAULT_SYSTEM_PROMPT,
    Settings,
    settings,
)

__all__ = [
    "DEFAULT_FALLBACK_TEXT",
    "DEFAULT_FORCE_TEXT_INSTRUCTION",
    "DEFAULT_SYSTEM_PROMPT",
    "Settings",
    "settings",
]
