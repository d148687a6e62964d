"""Configuration types with environment variable support.

All settings can be configured via environment variables with the TUNNELRELAY_ prefix.
Example: TUNNELRELAY_TUNNEL_TTL_MINUTES=15 keeps tunnels alive for 15 minutes.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SUB_CHANNEL = "main"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

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
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


class RelayConfig(BaseSettings):
    """Relay engine configuration.

    Durations are expressed in minutes to match the operator-facing surface;
    the ``*_seconds`` properties convert them for the asyncio loops.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUNNELRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    tunnel_ttl_minutes: float = Field(
        default=5.0,
        gt=0,
        description="Tunnels older than this are removed by the expiry sweeper.",
    )
    expiry_interval_minutes: float = Field(
        default=10.0,
        gt=0,
        description="How often the expiry sweeper runs.",
    )
    rate_limit_rpm: float = Field(
        default=100.0,
        gt=0,
        description="Token refill rate per key (requests per minute).",
    )
    rate_limit_burst: int = Field(
        default=10,
        ge=1,
        description="Token bucket capacity per key.",
    )
    rate_limit_cleanup_minutes: float = Field(
        default=60.0,
        gt=0,
        description="Idle limiter entries older than this are evicted, checked on the same interval.",
    )
    sink_buffer_size: int = Field(
        default=16,
        ge=1,
        description="Pending updates buffered per subscriber before the oldest is dropped.",
    )
    tunnel_id_length: int = Field(
        default=6,
        ge=1,
        description="Length of randomly generated tunnel ids.",
    )

    @property
    def tunnel_ttl_seconds(self) -> float:
        return self.tunnel_ttl_minutes * 60.0

    @property
    def expiry_interval_seconds(self) -> float:
        return self.expiry_interval_minutes * 60.0

    @property
    def rate_limit_cleanup_seconds(self) -> float:
        return self.rate_limit_cleanup_minutes * 60.0


class ServerConfig(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TUNNELRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bind: str = Field(
        default="0.0.0.0:2427",
        description="HTTP bind address (host:port).",
    )
    static_dir: str = Field(
        default="web",
        description="Directory holding index.html and LICENSE.txt.",
    )
    sse_heartbeat_interval: float = Field(
        default=15.0,
        gt=0,
        description="SSE heartbeat interval (seconds). Also bounds disconnect detection.",
    )
    max_body_size: int = Field(
        default=1024 * 1024,
        description="Maximum HTTP request body size (bytes). Default 1MB.",
    )
    cors_allow_origin: str = Field(
        default="*",
        description="Value of the Access-Control-Allow-Origin header.",
    )


class TunnelRelayConfig(BaseModel):
    """Master configuration combining relay and server settings.

    Example:
        config = get_config()
        print(config.relay.tunnel_ttl_minutes)
        print(config.server.bind)
    """

    relay: RelayConfig = Field(default_factory=RelayConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> TunnelRelayConfig:
        """Build a configuration from a file with ``relay`` and ``server`` sections.

        Values from the file take precedence over environment variables.
        """
        data = load_config_from_file(path)
        return cls(
            relay=RelayConfig(**(data.get("relay") or {})),
            server=ServerConfig(**(data.get("server") or {})),
        )

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "relay": self.relay.model_dump(),
            "server": self.server.model_dump(),
        }


_config: TunnelRelayConfig | None = None


def get_config() -> TunnelRelayConfig:
    """Get the global configuration instance.

    Returns a cached instance that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = TunnelRelayConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    Useful for testing.
    """
    global _config
    _config = None
