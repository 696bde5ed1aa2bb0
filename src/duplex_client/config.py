"""Configuration schema for the voice/chat client.

Defines Pydantic models for loading and validating client configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class BackoffConfig(BaseModel):
    """Exponential backoff shape shared by credential and reconnect retries."""

    base_delay_s: float = Field(default=0.5, gt=0, description="Delay before the first retry")
    factor: float = Field(default=2.0, ge=1.0, description="Multiplier applied per attempt")
    max_delay_s: float = Field(default=8.0, gt=0, description="Cap on any single delay")
    jitter_s: float = Field(
        default=0.25, ge=0, description="Random jitter added/subtracted per delay"
    )
    max_attempts: int = Field(default=5, ge=1, le=20, description="Attempts before giving up")

    @model_validator(mode="after")
    def validate_delays(self) -> "BackoffConfig":
        """Ensure the cap is not below the base delay."""
        if self.max_delay_s < self.base_delay_s:
            raise ValueError(
                f"max_delay_s ({self.max_delay_s}) must be >= base_delay_s ({self.base_delay_s})"
            )
        return self


class CredentialConfig(BaseModel):
    """Access-token endpoint configuration."""

    token_url: str = Field(
        default="http://localhost:8000/session-connect",
        description="HTTP endpoint returning a room access token",
    )
    provider: str = Field(default="elevenlabs", description="Voice provider query parameter")
    voice_id: str = Field(default="EXAVITQu4vr4xnSDxMaL", description="Voice id query parameter")
    refresh_buffer_s: float = Field(
        default=60.0,
        ge=0,
        description="Refresh the credential this long before it expires",
    )
    request_timeout_s: float = Field(
        default=10.0, gt=0, le=120, description="Timeout for a single token request"
    )
    retry: BackoffConfig = Field(default_factory=BackoffConfig)

    @field_validator("token_url")
    @classmethod
    def validate_token_url(cls, v: str) -> str:
        """Token endpoint must be an HTTP(S) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"token_url must start with http:// or https://, got '{v}'")
        return v


class ConnectionConfig(BaseModel):
    """Transport connection configuration."""

    server_url: str | None = Field(
        default=None,
        description="LiveKit server URL used when the credential carries none",
    )
    reconnect: BackoffConfig = Field(default_factory=BackoffConfig)
    reconnect_budget_s: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Cumulative time allowed for reconnection before giving up",
    )
    data_topic: str = Field(default="chat", description="Data channel topic for chat traffic")

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str | None) -> str | None:
        """LiveKit URLs are websocket or http URLs."""
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://", "http://", "https://")):
            raise ValueError(f"server_url must be a ws(s):// or http(s):// URL, got '{v}'")
        return v


class ChatConfig(BaseModel):
    """Reliable chat delivery configuration."""

    max_attempts: int = Field(default=3, ge=1, le=10, description="Send attempts per message")
    message_timeout_s: float = Field(
        default=5.0, gt=0, description="Default per-attempt send timeout"
    )
    retry_base_delay_s: float = Field(default=1.0, gt=0, description="First retry delay")
    retry_max_delay_s: float = Field(default=10.0, gt=0, description="Retry delay cap")
    delivery_confirmation_timeout_s: float = Field(
        default=3.0,
        gt=0,
        description="Assume delivered after this long without a receipt",
    )
    delivered_cleanup_delay_s: float = Field(
        default=5.0, ge=0, description="Grace period before a delivered entry is purged"
    )
    failed_cleanup_delay_s: float = Field(
        default=30.0, ge=0, description="Grace period before a terminally failed entry is purged"
    )
    max_history_size: int = Field(default=100, ge=1, le=10000, description="History bound")
    typing_timeout_s: float = Field(
        default=3.0, gt=0, description="Inactivity before typing resets to false"
    )
    max_message_length: int = Field(
        default=1000, ge=1, le=65536, description="Maximum outbound text length"
    )

    @model_validator(mode="after")
    def validate_retry_delays(self) -> "ChatConfig":
        """Retry cap must not be below the base delay."""
        if self.retry_max_delay_s < self.retry_base_delay_s:
            raise ValueError("retry_max_delay_s must be >= retry_base_delay_s")
        return self


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply TOKEN_URL, VOICE_PROVIDER, VOICE_ID, LIVEKIT_URL and LOG_LEVEL."""
    # Credential endpoint overrides
    if token_url := os.getenv("TOKEN_URL"):
        data.setdefault("credentials", {})["token_url"] = token_url

    if provider := os.getenv("VOICE_PROVIDER"):
        data.setdefault("credentials", {})["provider"] = provider

    if voice_id := os.getenv("VOICE_ID"):
        data.setdefault("credentials", {})["voice_id"] = voice_id

    # LiveKit override
    if livekit_url := os.getenv("LIVEKIT_URL"):
        data.setdefault("connection", {})["server_url"] = livekit_url

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data


class ClientConfig(BaseModel):
    """Root client configuration."""

    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    default_room: str = Field(default="default-room", description="Room used when none given")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ClientConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))
