"""
Runtime configuration sourced from environment variables.

Every setting can be overridden with a TOOLBRIDGE_ prefixed variable, e.g.
TOOLBRIDGE_SERVER_ENDPOINT=tcp://tools.internal:5057 or
TOOLBRIDGE_MAX_RECONNECT_ATTEMPTS=5.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_SCHEMES = ("tcp", "stdio", "http", "https")


@dataclass(frozen=True)
class ReconnectPolicy:
    """Connection timing shared by the transport and the session."""
    connection_timeout: float = 10.0
    max_reconnect_attempts: int = 3
    reconnect_delay: float = 2.0

    def __post_init__(self):
        if self.connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay must be >= 0")


class BridgeSettings(BaseSettings):
    """Client-side settings for toolbridge."""

    server_endpoint: str = "tcp://127.0.0.1:5057"

    # Transport
    connection_timeout_seconds: float = Field(default=10, gt=0)
    max_reconnect_attempts: int = Field(default=3, ge=0)
    reconnect_delay_seconds: float = Field(default=2, ge=0)

    # Handshake identity
    client_name: str = "MCPClient"
    client_version: str = "1.0.0"

    # Dispatch loop
    max_dispatch_iterations: int = Field(default=8, ge=1)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_")

    @field_validator("server_endpoint")
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        scheme = value.split(":", 1)[0].lower()
        if scheme not in SUPPORTED_SCHEMES:
            raise ValueError(
                f"Unsupported endpoint scheme '{scheme}'. "
                f"Expected one of: {', '.join(SUPPORTED_SCHEMES)}"
            )
        return value

    @property
    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            connection_timeout=self.connection_timeout_seconds,
            max_reconnect_attempts=self.max_reconnect_attempts,
            reconnect_delay=self.reconnect_delay_seconds,
        )


@lru_cache(maxsize=1)
def get_settings() -> BridgeSettings:
    """Load settings once per process."""
    return BridgeSettings()
