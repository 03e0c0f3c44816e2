"""capdispatch configuration via environment / .env file."""

from __future__ import annotations

from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are a business assistant. Use the available functions to look up "
    "data before answering. Never invent figures: if a function fails, say so "
    "plainly. Answer concisely in the user's language."
)

DEFAULT_FORCE_TEXT_INSTRUCTION = (
    "You have used all available function calls for this question. Do not "
    "request any more functions. Answer now using only the information "
    "already gathered above."
)

DEFAULT_FALLBACK_TEXT = (
    "I could not put together a complete answer with the information I "
    "gathered. Please try rephrasing the question or narrowing it down."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Provider ---
    ANTHROPIC_API_KEY: str = ""
    DISPATCH_MODEL: str = "claude-sonnet-4-20250514"
    DISPATCH_MAX_OUTPUT_TOKENS: int = 4096
    PROVIDER_REQUEST_TIMEOUT: float = 60.0

    # --- Dispatch loop ---
    DISPATCH_MAX_STEPS: int = 5
    DISPATCH_REASONING_LEVEL: Literal["minimal", "low", "medium", "high"] = "medium"
    DISPATCH_INCLUDE_THOUGHTS: bool = True
    DISPATCH_SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT
    DISPATCH_FORCE_TEXT_INSTRUCTION: str = DEFAULT_FORCE_TEXT_INSTRUCTION
    DISPATCH_FALLBACK_TEXT: str = DEFAULT_FALLBACK_TEXT
    SKILL_TIMEOUT: float = 30.0

    # --- Retry ---
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 8.0

    # --- Observability ---
    OTEL_EXPORTER_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "capdispatch"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @field_validator("DISPATCH_FALLBACK_TEXT")
    @classmethod
    def _fallback_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("DISPATCH_FALLBACK_TEXT must not be blank")
        return v

    @model_validator(mode="after")
    def _check_bounds(self) -> "Settings":
        if self.DISPATCH_MAX_STEPS < 1:
            raise ValueError("DISPATCH_MAX_STEPS must be >= 1")
        if self.RETRY_MAX_ATTEMPTS < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be >= 1")
        if self.RETRY_MAX_DELAY < self.RETRY_INITIAL_DELAY:
            raise ValueError("RETRY_MAX_DELAY must be >= RETRY_INITIAL_DELAY")
        return self


settings = Settings()
