from __future__ import annotations

import secrets
from dataclasses import dataclass

TOKEN_BYTES = 24


@dataclass
class AuthResult:
    allowed: bool
    reason: str


def generate_auth_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def check_auth_token(expected: str, supplied: str | None) -> AuthResult:
    if not supplied:
        return AuthResult(allowed=False, reason="Missing tunnel token")

    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        return AuthResult(allowed=False, reason="Invalid tunnel token")

    return AuthResult(allowed=True, reason="Authenticated")
