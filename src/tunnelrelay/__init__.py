"""tunnelrelay - ephemeral in-memory tunnels with polling and live SSE streams."""

from tunnelrelay.core.config import RelayConfig, ServerConfig, TunnelRelayConfig, get_config
from tunnelrelay.core.errors import (
    RateLimitedError,
    RelayError,
    TunnelNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from tunnelrelay.relay.engine import TunnelRelay

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "TunnelRelay",
    "RelayConfig",
    "ServerConfig",
    "TunnelRelayConfig",
    "get_config",
    "RelayError",
    "ValidationError",
    "TunnelNotFoundError",
    "UnauthorizedError",
    "RateLimitedError",
]
