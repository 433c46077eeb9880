"""Configuration types with environment variable support.

Gateway settings can be configured via environment variables with the
VLESSGATE_ prefix. Example: VLESSGATE_MAX_SESSIONS=256 sets the admission
ceiling to 256 concurrent relay sessions.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_CHUNK_SIZE = 65535


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Flattened configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return flatten_config(data)


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


def canonical_uuid(value: str) -> str:
    try:
        return str(UUID(value))
    except (ValueError, AttributeError, TypeError) as e:
        raise ValueError(f"Invalid UUID: {value!r}") from e


class GatewayConfig(BaseSettings):
    """Gateway server configuration.

    Passed explicitly to GatewayServer; nothing in the relay path reads
    the process environment directly.
    """

    model_config = SettingsConfigDict(
        env_prefix="VLESSGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    uuid: str = Field(
        description="Expected client identity (canonical UUID string).",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Listen address.",
    )
    port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        description="Listen port. 0 picks a free port.",
    )
    tunnel_path: str = Field(
        default="/",
        description="Request path that accepts tunnel upgrades.",
    )
    max_sessions: int = Field(
        default=1024,
        ge=1,
        description="Admission ceiling: maximum concurrent relay sessions.",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Destination connect timeout (seconds).",
    )
    handshake_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the upgrade request head and the first tunnel frame (seconds).",
    )
    read_chunk_size: int = Field(
        default=16384,
        ge=1,
        le=MAX_CHUNK_SIZE,
        description="Maximum bytes read from the destination per relayed frame.",
    )
    max_request_head: int = Field(
        default=8192,
        ge=256,
        description="Maximum size of the HTTP request head (bytes).",
    )
    response_header: bool = Field(
        default=False,
        description="Send the two-byte [version, 0] tunnel response before destination bytes.",
    )
    public_host: str | None = Field(
        default=None,
        description="Host used in the client config text. Defaults to the request Host header.",
    )
    admin_user: str | None = Field(
        default=None,
        description="Username for /stats and /metrics. Requires admin_password.",
    )
    admin_password: str | None = Field(
        default=None,
        description="Password for /stats and /metrics. Requires admin_user.",
    )

    @field_validator("uuid")
    @classmethod
    def _validate_uuid(cls, value: str) -> str:
        return canonical_uuid(value)

    @field_validator("tunnel_path")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        if not value.startswith("/"):
            value = f"/{value}"
        return value

    @property
    def identity(self) -> bytes:
        """Expected identity as the 16 raw bytes carried in the tunnel header."""
        return UUID(self.uuid).bytes

    @property
    def admin_enabled(self) -> bool:
        return bool(self.admin_user and self.admin_password)


class ClientConfig(BaseModel):
    """Local forwarding client configuration."""

    server_url: str = "ws://127.0.0.1:8080/"
    uuid: str
    target_host: str
    target_port: int = Field(ge=1, le=65535)
    local_host: str = "127.0.0.1"
    local_port: int = Field(default=1080, ge=0, le=65535)
    connect_timeout: float = 10.0
    chunk_size: int = Field(default=16384, ge=1, le=MAX_CHUNK_SIZE)
    expect_response_header: bool = False

    @field_validator("uuid")
    @classmethod
    def _validate_uuid(cls, value: str) -> str:
        return canonical_uuid(value)

    @property
    def identity(self) -> bytes:
        return UUID(self.uuid).bytes
