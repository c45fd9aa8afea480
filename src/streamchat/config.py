"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3457
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class ProviderConfig(BaseModel):
    backend: str = "anthropic"  # "anthropic" | "gateway"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    system_prompt: str = ""
    mode_prompts: dict[str, str] = Field(default_factory=dict)  # appended per conversation mode
    temperature: float = 0.7
    tools: list[str] = Field(default_factory=list)


class AnthropicConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    max_retries: int = 2


class GatewayConfig(BaseModel):
    """An Anthropic-compatible ``/v1/messages`` endpoint reached over plain HTTP."""

    base_url: str = "http://127.0.0.1:3456"
    api_key: Optional[str] = None


class StreamConfig(BaseModel):
    request_timeout: float = 300.0  # per outbound provider call, seconds
    tool_timeout: float = 60.0
    heartbeat_interval: float = 15.0
    replay_buffer_size: int = 4096
    subscriber_queue_size: int = 512
    retention_seconds: float = 30.0  # replay buffer kept after session-end
    idle_timeout: float = 900.0  # registry entries older than this are swept
    sweep_interval: float = 30.0


class StorageConfig(BaseModel):
    db_path: str = "./data/streamchat.db"
    cache_ttl: float = 300.0  # idle conversations are dropped from memory after this


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    server: ServerConfig = Field(default_factory=ServerConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: Optional[AnthropicConfig] = None
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced by other values, e.g. ${data_dir}/streamchat.db
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
