"""Security module for the tunnel relay.

This module provides:
- Token bucket rate limiting (per caller and per tunnel)
- Per-tunnel delete tokens
"""

from tunnelrelay.security.ratelimit import (
    AdmissionControl,
    AdmissionResult,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    TokenBucket,
    create_rate_limiter,
)
from tunnelrelay.security.tokens import AuthResult, check_auth_token, generate_auth_token

__all__ = [
    # Rate Limiting
    "AdmissionControl",
    "AdmissionResult",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "TokenBucket",
    "create_rate_limiter",
    # Tunnel tokens
    "AuthResult",
    "check_auth_token",
    "generate_auth_token",
]
