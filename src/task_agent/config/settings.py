"""Application settings."""

from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


@dataclass(frozen=True)
class EngineConfig:
    """Budgets and pacing for one agent run invocation.

    Defaults keep an invocation well under a 5 minute host limit. Tests build
    this directly with tiny budgets and zero delays.
    """

    max_elapsed_ms: int = 240_000
    max_steps_per_run: int = 3
    max_plan_steps: int = 7
    plan_tool_budget: int = 10
    step_tool_budget: int = 10
    final_tool_budget: int = 4
    max_tool_iterations: int = 12
    context_summary_chars: int = 1800
    profile_excerpt_chars: int = 1200
    min_step_chars: int = 10
    min_final_chars: int = 40
    step_delay_s: float = 0.4
    chunk_delay_s: float = 0.05
    chunk_chars: int = 700
    max_chunks: int = 12
    stream_final_output: bool = True
    stream_flush_chars: int = 160
    stream_flush_interval_s: float = 0.75
    temperature: float = 0.3
    plan_max_tokens: int = 900
    step_max_tokens: int = 1800
    final_max_tokens: int = 2400


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "task-agent"
    app_env: str = "dev"
    app_debug: bool = False
    database_url: str = ""
    app_base_url: str = ""
    scheduler_workers: int = Field(default=4, ge=1)

    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    google_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    default_openrouter_model: str = "google/gemini-2.5-flash"
    default_anthropic_model: str = "claude-sonnet-4-5"
    default_google_model: str = "gemini-2.5-flash"
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.5, ge=0.0)
    http_timeout_s: float = Field(default=20.0, ge=0.5)

    google_oauth_client_id: str = ""
    google_oauth_client_secret: str = ""
    google_token_url: str = "https://oauth2.googleapis.com/token"

    max_elapsed_ms: int = Field(default=240_000, ge=1)
    max_steps_per_run: int = Field(default=3, ge=1)
    max_plan_steps: int = Field(default=7, ge=1, le=10)
    plan_tool_budget: int = Field(default=10, ge=0)
    step_tool_budget: int = Field(default=10, ge=0)
    final_tool_budget: int = Field(default=4, ge=0)
    context_summary_chars: int = Field(default=1800, ge=200)
    step_delay_s: float = Field(default=0.4, ge=0.0)
    chunk_delay_s: float = Field(default=0.05, ge=0.0)
    stream_final_output: bool = True

    model_config = SettingsConfigDict(
        env_prefix="TASK_AGENT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            max_elapsed_ms=self.max_elapsed_ms,
            max_steps_per_run=self.max_steps_per_run,
            max_plan_steps=self.max_plan_steps,
            plan_tool_budget=self.plan_tool_budget,
            step_tool_budget=self.step_tool_budget,
            final_tool_budget=self.final_tool_budget,
            context_summary_chars=self.context_summary_chars,
            step_delay_s=self.step_delay_s,
            chunk_delay_s=self.chunk_delay_s,
            stream_final_output=self.stream_final_output,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
