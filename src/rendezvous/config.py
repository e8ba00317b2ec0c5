"""Configuration schema for the rendezvous relay.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_PORT = 4000


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=DEFAULT_PORT, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=1000, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=2**16, ge=1024, description="Maximum size of one inbound frame"
    )
    ping_interval_s: float | None = Field(
        default=20.0,
        gt=0,
        description="Keepalive ping interval; dead connections are disconnected (None disables)",
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class HealthConfig(BaseModel):
    """Operational HTTP endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve /health, /liveness and /stats")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int | None = Field(
        default=None,
        ge=1024,
        le=65535,
        description="Bind port (defaults to the WebSocket port + 1)",
    )


class CorsConfig(BaseModel):
    """Cross-origin access configuration.

    The defaults allow any origin and are only suitable for non-production use.
    """

    allowed_origins: list[str] = Field(
        default_factory=lambda: ["*"], description="Allowed origins, or ['*'] for any"
    )
    allowed_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST"], description="Allowed HTTP methods"
    )

    @field_validator("allowed_origins")
    @classmethod
    def validate_origins(cls, v: list[str]) -> list[str]:
        """Validate that the origin list is non-empty and wildcard is used alone."""
        if not v:
            raise ValueError("CORS allowed_origins must not be empty")
        if "*" in v and len(v) > 1:
            raise ValueError("CORS allowed_origins wildcard '*' cannot be combined with origins")
        return v

    @field_validator("allowed_methods")
    @classmethod
    def validate_methods(cls, v: list[str]) -> list[str]:
        """Normalize method names to upper case."""
        return [method.upper() for method in v]

    @property
    def allow_any_origin(self) -> bool:
        """Whether every origin is accepted."""
        return self.allowed_origins == ["*"]


class MatchingConfig(BaseModel):
    """Pairing and relay policy."""

    enforce_signal_partner: bool = Field(
        default=False,
        description="Only relay signals addressed to the sender's current partner",
    )


class RendezvousConfig(BaseModel):
    """Root relay configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @model_validator(mode="after")
    def validate_health_port(self) -> "RendezvousConfig":
        """Validate that the health port is bindable and distinct from the WebSocket port."""
        if not self.health.enabled:
            return self
        if self.health_port > 65535:
            raise ValueError(
                f"health port {self.health_port} is out of range; "
                "set health.port (HEALTH_PORT) or use a lower WebSocket port"
            )
        if self.health_port == self.transport.websocket.port:
            raise ValueError(
                f"health port {self.health_port} must differ from the WebSocket port"
            )
        return self

    @property
    def health_port(self) -> int:
        """Port for the operational HTTP endpoints."""
        if self.health.port is not None:
            return self.health.port
        return self.transport.websocket.port + 1

    @classmethod
    def from_yaml(cls, path: Path) -> "RendezvousConfig":
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
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RendezvousConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment variable overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides to raw configuration data."""
    websocket = data.setdefault("transport", {}).setdefault("websocket", {})

    if port := os.getenv("PORT"):
        websocket["port"] = port

    if host := os.getenv("HOST"):
        websocket["host"] = host

    if health_port := os.getenv("HEALTH_PORT"):
        data.setdefault("health", {})["port"] = health_port

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    if enforce := os.getenv("ENFORCE_SIGNAL_PARTNER"):
        data.setdefault("matching", {})["enforce_signal_partner"] = enforce.lower() in (
            "true",
            "1",
            "yes",
        )

    return data
