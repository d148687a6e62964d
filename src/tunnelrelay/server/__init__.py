"""HTTP server around the tunnel relay."""

from .relay import RelayServer, format_sse, request_fields, resolve_caller_key

__all__ = ["RelayServer", "format_sse", "request_fields", "resolve_caller_key"]
