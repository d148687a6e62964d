"""Core."""

from .config import (
    DEFAULT_SUB_CHANNEL,
    RelayConfig,
    ServerConfig,
    TunnelRelayConfig,
    clear_config,
    get_config,
    load_config_from_file,
)
from .errors import (
    ErrorCode,
    InternalError,
    RateLimitedError,
    RelayError,
    TunnelNotFoundError,
    UnauthorizedError,
    ValidationError,
)

__all__ = [
    # Config
    "DEFAULT_SUB_CHANNEL",
    "RelayConfig",
    "ServerConfig",
    "TunnelRelayConfig",
    "clear_config",
    "get_config",
    "load_config_from_file",
    # Errors
    "ErrorCode",
    "RelayError",
    "ValidationError",
    "TunnelNotFoundError",
    "UnauthorizedError",
    "RateLimitedError",
    "InternalError",
]
