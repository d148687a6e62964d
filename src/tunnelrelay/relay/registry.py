"""Tunnel registry: the in-memory store of tunnels and their sub-channel values."""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from time import monotonic

import structlog

from tunnelrelay.core.errors import TunnelNotFoundError, UnauthorizedError
from tunnelrelay.security.tokens import check_auth_token, generate_auth_token

logger = structlog.get_logger()

# Uppercase without I and O, digits without 0, and punctuation.
TUNNEL_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ123456789!@#$%&*_-+=;:,.<>/?"


def generate_tunnel_id(length: int = 6) -> str:
    """Draw ``length`` characters uniformly from the tunnel id alphabet.

    Ids are not checked for uniqueness; a collision overwrites the older tunnel.
    """
    return "".join(secrets.choice(TUNNEL_ID_ALPHABET) for _ in range(length))


@dataclass
class Tunnel:
    """A named container of sub-channel content."""

    id: str
    auth_token: str = field(repr=False)
    created_at: float = 0.0
    last_activity: float = 0.0
    sub_channels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CreatedTunnel:
    """Returned to the creator of a tunnel; the token authorizes deletion."""

    id: str
    auth_token: str = field(repr=False)
    replaced: bool = False


class TunnelRegistry:
    """Mapping of tunnel id to tunnel state behind a single lock.

    No ``Tunnel`` object escapes the registry; readers get copies of the
    values they ask for.
    """

    def __init__(self, id_length: int = 6, clock: Callable[[], float] = monotonic) -> None:
        self._id_length = id_length
        self._clock = clock
        self._tunnels: dict[str, Tunnel] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tunnels)

    async def create(self, tunnel_id: str | None = None) -> CreatedTunnel:
        """Register a tunnel with no content, replacing any tunnel with the same id."""
        if not tunnel_id:
            tunnel_id = generate_tunnel_id(self._id_length)

        token = generate_auth_token()
        async with self._lock:
            now = self._clock()
            replaced = tunnel_id in self._tunnels
            self._tunnels[tunnel_id] = Tunnel(
                id=tunnel_id,
                auth_token=token,
                created_at=now,
                last_activity=now,
            )

        return CreatedTunnel(id=tunnel_id, auth_token=token, replaced=replaced)

    async def exists(self, tunnel_id: str) -> bool:
        async with self._lock:
            return tunnel_id in self._tunnels

    async def get(self, tunnel_id: str, sub_channel: str) -> str | None:
        """Current content of a sub-channel.

        Returns:
            The content, or None when the sub-channel was never written.

        Raises:
            TunnelNotFoundError: If the tunnel does not exist.
        """
        async with self._lock:
            tunnel = self._tunnels.get(tunnel_id)
            if tunnel is None:
                raise TunnelNotFoundError(tunnel_id)
            tunnel.last_activity = self._clock()
            return tunnel.sub_channels.get(sub_channel)

    async def put(self, tunnel_id: str, sub_channel: str, content: str) -> str:
        """Overwrite a sub-channel's content and return the stored value."""
        async with self._lock:
            tunnel = self._tunnels.get(tunnel_id)
            if tunnel is None:
                raise TunnelNotFoundError(tunnel_id)
            tunnel.sub_channels[sub_channel] = content
            tunnel.last_activity = self._clock()
            return content

    async def delete(self, tunnel_id: str, auth_token: str | None) -> None:
        """Remove a tunnel if ``auth_token`` matches the one issued at creation.

        Raises:
            TunnelNotFoundError: If the tunnel does not exist.
            UnauthorizedError: If the token does not match.
        """
        async with self._lock:
            tunnel = self._tunnels.get(tunnel_id)
            if tunnel is None:
                raise TunnelNotFoundError(tunnel_id)
            auth = check_auth_token(tunnel.auth_token, auth_token)
            if not auth.allowed:
                logger.warning("Tunnel delete rejected", tunnel_id=tunnel_id, reason=auth.reason)
                raise UnauthorizedError(auth.reason)
            del self._tunnels[tunnel_id]

    async def expire(self, ttl: float) -> list[str]:
        """Remove every tunnel whose age is at least ``ttl`` seconds.

        Returns:
            Ids of the removed tunnels.
        """
        async with self._lock:
            now = self._clock()
            expired = [
                tunnel_id
                for tunnel_id, tunnel in self._tunnels.items()
                if now - tunnel.created_at >= ttl
            ]
            for tunnel_id in expired:
                del self._tunnels[tunnel_id]
        return expired

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            return {
                "tunnels": len(self._tunnels),
                "sub_channels": sum(len(t.sub_channels) for t in self._tunnels.values()),
            }
