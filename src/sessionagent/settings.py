from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"

    backend_timeout_seconds: float = 60.0
    backend_max_attempts: int = 3
    backend_backoff_base_seconds: float = 1.0
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 60.0

    redis_url: str = "redis://localhost:6379/0"
    session_key_prefix: str = "session:"
    max_history_messages: int = 200

    max_message_size: int = 100_000
    max_turns: int = 8
    token_budget: int = 50_000
    chunk_flush_interval_seconds: float = 0.05
    tool_result_max_chars: int = 1500

    tool_timeout_seconds: float = 15.0
    tool_max_retries: int = 1
    tool_retry_backoff_seconds: float = 0.6

    cors_origins: str = "*"

    # Semicolon separated, e.g. "python servers/search.py;node fs-server.js"
    mcp_server_cmds: str | None = None

    agent_system_prompt: str = (
        "You are an autonomous assistant with tool-use capabilities. Your goal "
        "is to help users by breaking down complex tasks and using the "
        "available tools when needed.\n\n"
        " Response strategy\n"
        " - For simple questions, answer directly without tools.\n"
        " - For complex tasks, use tools iteratively to gather information.\n"
        " - When you have enough information, give a complete final answer.\n\n"
        " Tool usage\n"
        " - Use tools for current information, calculations or file analysis.\n"
        " - After tool results arrive, decide whether more information is "
        "needed or the answer can be given.\n"
        " - Do not call tools for questions you can answer yourself.\n\n"
        "Explain your reasoning briefly and keep final answers clear and "
        "actionable."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
