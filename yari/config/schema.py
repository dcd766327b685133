"""Configuration schema using Pydantic."""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentConfig(BaseModel):
    """Step loop configuration."""
    model: str = "openrouter/openai/gpt-5"
    wrapup_model: str | None = "openrouter/openai/gpt-4o-mini"  # Used from wrapup_step on
    max_steps: int = Field(10, ge=1)
    max_tokens: int = 4096
    temperature: float = 0.7
    model_timeout: float = 120.0  # Seconds per model call
    tool_timeout: float = 60.0  # Seconds per tool call
    terminal_tool: str = "final_answer"
    context_max_messages: int = Field(30, ge=1)  # Window kicks in above this many messages
    context_keep_recent: int = Field(20, ge=1)  # Messages kept once windowed
    wrapup_step: int = 7


class ProvidersConfig(BaseModel):
    """Model provider configuration."""
    api_key: str = ""
    api_base: str | None = "https://openrouter.ai/api/v1"
    extra_headers: dict[str, str] | None = None
    fallbacks: list[str] = Field(default_factory=list)


class ToolsConfig(BaseModel):
    """Built-in tool configuration."""
    tavily_api_key: str = ""
    openai_api_key: str = ""  # Image generation
    search_max_results: int = 5


class BrokerConfig(BaseModel):
    """External session broker configuration."""
    db_path: str = "~/.yari/sessions.db"
    session_ttl_ms: int = 24 * 60 * 60 * 1000
    sweep_interval_s: float = 3600.0
    client_name: str = "yari"
    scope: str = "mcp:tools"
    request_timeout: float = 30.0
    callback_host: str = "localhost"
    callback_port: int = 8765


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file_enabled: bool = True
    file_path: str = "~/.yari/logs/yari.log"
    rotation: str = "10 MB"
    retention: str = "7 days"


class Config(BaseSettings):
    """Root configuration for yari."""

    model_config = SettingsConfigDict(env_prefix="YARI_", env_nested_delimiter="__")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
