"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Validates required settings on import and fails
fast if critical vars are missing outside of tests.
"""

VERSION = "0.1.0"

import sys

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Required var names, checked after instantiation (not during), so tests
# that leave them blank still work.
# ---------------------------------------------------------------------------
_REQUIRED_VARS: list[str] = [
    "DATABASE_URL",
    "GITHUB_WEBHOOK_SECRET",
]


class Settings(BaseSettings):
    """Application settings sourced from environment / ``.env`` file.

    Required vars (must be set in production, may be blank in test):
      DATABASE_URL, GITHUB_WEBHOOK_SECRET
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- required in production (default empty so tests don't fail) --
    DATABASE_URL: str = ""
    GITHUB_WEBHOOK_SECRET: str = ""

    # -- optional with sensible defaults --
    FRONTEND_URL: str = "http://localhost:5173"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # "postgres" persists tasks through asyncpg; "memory" keeps them in
    # process (local experiments, no database needed).
    TASK_STORE: str = "postgres"

    # -- remote repository API --
    GITHUB_API_BASE: str = "https://api.github.com"
    GITHUB_WEB_BASE: str = "https://github.com"
    GITHUB_TIMEOUT_SECS: float = 30.0
    # Token used for tasks created by webhook triggers (no user session).
    GITHUB_SERVICE_TOKEN: str = ""

    # -------------------------------------------------------------------------
    # LLM provider.  The planner and the step synthesizer are separate roles
    # so a cheaper model can plan while a stronger one writes code.
    # -------------------------------------------------------------------------
    LLM_PROVIDER: str = "anthropic"  # "anthropic" | "openai" | "ollama"
    ANTHROPIC_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    OLLAMA_ENDPOINT: str = "http://localhost:11434"
    LLM_PLANNER_MODEL: str = ""
    LLM_SYNTHESIZER_MODEL: str = ""
    LLM_MAX_TOKENS: int = Field(default=8192, ge=256)

    # -------------------------------------------------------------------------
    # FORCE_MODEL: hard override for ALL model calls.
    #
    # When set, both the planner and the synthesizer use exactly this model,
    # regardless of per-role settings.  Leave blank to disable.
    # -------------------------------------------------------------------------
    FORCE_MODEL: str = ""

    @model_validator(mode="after")
    def _apply_force_model(self) -> "Settings":
        """If FORCE_MODEL is set, overwrite every per-role model with it."""
        if self.FORCE_MODEL:
            self.LLM_PLANNER_MODEL = self.FORCE_MODEL
            self.LLM_SYNTHESIZER_MODEL = self.FORCE_MODEL
        return self

    # Prompt caps: file content is truncated to these many characters
    # before being sent to the planner / synthesizer.
    PLANNER_FILE_CHAR_LIMIT: int = Field(default=8000, ge=0)
    STEP_FILE_CHAR_LIMIT: int = Field(default=10000, ge=0)

    # Commit message = "<prefix>: <plan summary or instruction>"
    COMMIT_MESSAGE_PREFIX: str = "AutoDidact"
    COMMIT_MESSAGE_MAX_CHARS: int = Field(default=120, ge=10)

    # Context snippets (recent knowledge nodes) handed to the AI calls.
    KNOWLEDGE_CONTEXT_LIMIT: int = Field(default=8, ge=0)

    # Webhook-triggered tasks carry at most this many changed files.
    WEBHOOK_MAX_FILES: int = Field(default=10, ge=0)


settings = Settings()

# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------
# Provider default per role, used when no explicit model is configured.
_PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "anthropic": {
        "planner":     "claude-sonnet-4-5",
        "synthesizer": "claude-sonnet-4-5",
    },
    "openai": {
        "planner":     "gpt-4o",
        "synthesizer": "gpt-4o",
    },
    "ollama": {
        "planner":     "phi4",
        "synthesizer": "phi4",
    },
}


def get_model_for_role(role: str) -> str:
    """Return the resolved model ID for an AI role.

    Resolution order:
      1. FORCE_MODEL (absolute override)
      2. Per-role env var (LLM_PLANNER_MODEL / LLM_SYNTHESIZER_MODEL)
      3. Provider default

    Args:
        role: "planner" | "synthesizer"
    """
    if settings.FORCE_MODEL:
        return settings.FORCE_MODEL

    override_attr = {
        "planner":     "LLM_PLANNER_MODEL",
        "synthesizer": "LLM_SYNTHESIZER_MODEL",
    }.get(role)
    if override_attr:
        override = getattr(settings, override_attr, "")
        if override:
            return override
    defaults = _PROVIDER_DEFAULTS.get(settings.LLM_PROVIDER, _PROVIDER_DEFAULTS["anthropic"])
    return defaults.get(role, defaults["planner"])


# Validate at import time, but only when NOT running under pytest.
if "pytest" not in sys.modules:
    _missing = [v for v in _REQUIRED_VARS if not getattr(settings, v)]
    if settings.TASK_STORE == "memory" and "DATABASE_URL" in _missing:
        _missing.remove("DATABASE_URL")
    if _missing:
        print(
            f"[config] FATAL: missing required environment variables: "
            f"{', '.join(_missing)}",
            file=sys.stderr,
        )
        sys.exit(1)
