"""Configuration management for code-iterator."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from code_iterator.errors import ConfigurationError

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant who responds in only Python code. "
    "Produce code in response to user input. "
    "MAKE SURE you include the code inside a Markdown code block, e.g. ```python print('hello world') ```"
)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CODE_ITERATOR_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # LLM collaborator
    api_key: str | None = Field(None, description="Bearer token for the LLM provider")
    api_base: str = Field("https://api.openai.com/v1", description="Base URL of the chat completions API")
    model: str = Field("gpt-3.5-turbo", description="Chat model name")
    system_prompt: str = Field(DEFAULT_SYSTEM_PROMPT, description="Fixed system instruction sent with every prompt")
    llm_timeout_seconds: float = Field(10.0, gt=0, description="Budget for one completion call")

    # Execution collaborator
    run_timeout_seconds: float = Field(15.0, gt=0, description="Budget for one sandboxed run")
    sandbox_command: list[str] = Field(
        default_factory=list,
        description="Command that speaks the run protocol on stdin/stdout; empty uses the bundled runner",
    )

    # HTTP/WebSocket surface
    host: str = Field("127.0.0.1", description="Bind host")
    port: int = Field(8080, description="Bind port")
    ws_path: str = Field("/", description="WebSocket path")
    ui_dir: Path | None = Field(None, description="Optional directory of built UI assets served at /")
    http_reply_timeout_seconds: float = Field(
        30.0, gt=0, description="How long an HTTP call waits for the loop; above the completion and run budgets combined"
    )

    # Behavior
    push_errors: bool = Field(False, description="Push {'Error': message} frames when a request fails")

    # Logging
    log_level: str = Field("INFO", description="Log level")
    log_profile: Literal["default", "rich"] = Field("default", description="Log output profile")

    @field_validator("api_base")
    @classmethod
    def _strip_api_base(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def completions_url(self) -> str:
        return f"{self.api_base}/chat/completions"


def load_settings(**overrides: Any) -> Settings:
    """Load settings from the environment, applying non-None overrides.

    Raises:
        ConfigurationError: a value from the environment or the overrides is invalid.
    """

    updates = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**updates)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid settings: {exc.error_count()} error(s)\n{exc}") from exc
