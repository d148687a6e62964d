"""Tunnel relay engine."""

from .engine import TunnelRelay
from .expiry import ExpirySweeper
from .registry import (
    TUNNEL_ID_ALPHABET,
    CreatedTunnel,
    Tunnel,
    TunnelRegistry,
    generate_tunnel_id,
)
from .subscribers import Sink, SubscriberRegistry

__all__ = [
    "TunnelRelay",
    "ExpirySweeper",
    "TUNNEL_ID_ALPHABET",
    "CreatedTunnel",
    "Tunnel",
    "TunnelRegistry",
    "generate_tunnel_id",
    "Sink",
    "SubscriberRegistry",
]
