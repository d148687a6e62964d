"""HTTP relay server: aiohttp routes around the tunnel relay engine.

Owns everything transport-specific: method dispatch, query/JSON parsing and
field alias normalization, CORS, admission control per request, SSE framing,
and static files.
"""

from __future__ import annotations

import contextlib
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog
from aiohttp import web

from tunnelrelay.core.config import ServerConfig, get_config
from tunnelrelay.core.errors import (
    InternalError,
    RateLimitedError,
    RelayError,
    ValidationError,
)
from tunnelrelay.observability.metrics import (
    ACTIVE_SUBSCRIBERS,
    ACTIVE_TUNNELS,
    HTTP_REQUESTS,
    generate_metrics,
    get_content_type,
)
from tunnelrelay.relay.engine import TunnelRelay

logger = structlog.get_logger()

API_PREFIX = "/api/v3/tunnel"
FORWARDED_FOR_HEADER = "X-Forwarded-For"

# Canonical field name -> accepted spellings, in priority order.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "ID"),
    "subChannel": ("subChannel", "subchannel"),
    "content": ("content",),
    "token": ("token", "auth"),
}

_FIELDS_KEY: web.RequestKey[dict[str, str]] = web.RequestKey("tunnelrelay_fields")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _normalize_fields(raw: dict[str, str]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for canonical, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            value = raw.get(alias)
            if value:
                fields[canonical] = value
                break
    return fields


async def request_fields(request: web.Request) -> dict[str, str]:
    """Normalized request fields from the query string (GET) or JSON body.

    Raises:
        ValidationError: If the body is not a JSON object of strings.
    """
    cached = request.get(_FIELDS_KEY)
    if cached is not None:
        return cached

    if request.method == "GET" or not request.body_exists:
        raw = dict(request.query)
    else:
        try:
            raw = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Failed to parse the request body") from e
        if not isinstance(raw, dict) or not all(
            isinstance(v, str) for v in raw.values()
        ):
            raise ValidationError("Failed to parse the request body")

    fields = _normalize_fields(raw)
    request[_FIELDS_KEY] = fields
    return fields


def resolve_caller_key(request: web.Request) -> str:
    """Caller identity for rate limiting.

    The first X-Forwarded-For entry wins when present; the chain is not validated.
    """
    forwarded_for = request.headers.get(FORWARDED_FOR_HEADER, "")
    first = forwarded_for.split(",", 1)[0].strip()
    if first:
        return first
    return request.remote or "unknown"


def format_sse(content: str) -> bytes:
    """Frame content as one SSE event, one ``data:`` line per content line."""
    lines = content.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return ("".join(f"data: {line}\n" for line in lines) + "\n").encode()


def _cors_headers(config: ServerConfig) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": config.cors_allow_origin,
        "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }


def _route_name(request: web.Request) -> str:
    route = request.match_info.route
    resource = route.resource if route is not None else None
    return resource.canonical if resource is not None else "unmatched"


SERVER_KEY: web.AppKey[RelayServer] = web.AppKey("relay_server")


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Add CORS headers and answer preflight requests directly."""
    headers = _cors_headers(request.app[SERVER_KEY].config)
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=headers)

    try:
        response = await handler(request)
    except web.HTTPException as ex:
        ex.headers.update(headers)
        raise

    # Streamed responses carry their headers from prepare().
    if not response.prepared:
        response.headers.update(headers)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Map relay errors to JSON responses and count requests by route and status."""
    route = _route_name(request)
    try:
        response = await handler(request)
    except web.HTTPException as ex:
        HTTP_REQUESTS.labels(route=route, status=str(ex.status)).inc()
        raise
    except RateLimitedError as e:
        response = web.json_response(
            e.to_dict(),
            status=e.status,
            headers={"Retry-After": str(int(e.retry_after) + 1)},
        )
    except RelayError as e:
        logger.info(
            "Request failed",
            path=request.path,
            code=e.code.name,
            error=e.message,
        )
        response = web.json_response(e.to_dict(), status=e.status)
    except Exception:
        logger.exception("Unhandled error", path=request.path, method=request.method)
        error = InternalError()
        response = web.json_response(error.to_dict(), status=error.status)

    HTTP_REQUESTS.labels(route=route, status=str(response.status)).inc()
    return response


@web.middleware
async def rate_limit_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Caller gate then tunnel gate, for the tunnel API routes only."""
    if not request.path.startswith(API_PREFIX + "/"):
        return await handler(request)

    tunnel_id: str | None = None
    with contextlib.suppress(ValidationError):
        tunnel_id = (await request_fields(request)).get("id")

    relay = request.app[SERVER_KEY].relay
    result = await relay.check_rate_limit(resolve_caller_key(request), tunnel_id)
    if not result.allowed:
        raise RateLimitedError(result.scope or "caller", result.retry_after)

    return await handler(request)


class RelayServer:
    """aiohttp server exposing a ``TunnelRelay`` over HTTP and SSE."""

    def __init__(self, config: ServerConfig, relay: TunnelRelay | None = None) -> None:
        self.config = config
        self.relay = relay or TunnelRelay(get_config().relay)
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        """Create the aiohttp application; the relay starts and stops with it."""
        app = web.Application(
            client_max_size=self.config.max_body_size,
            middlewares=[cors_middleware, error_middleware, rate_limit_middleware],
        )
        app[SERVER_KEY] = self

        app.router.add_get("/", self._handle_home)
        app.router.add_get("/LICENSE", self._handle_license)
        app.router.add_get("/health", self._handle_health_check)
        app.router.add_get("/stats", self._handle_stats)
        app.router.add_get("/metrics", self._handle_metrics)

        for method in ("GET", "POST"):
            app.router.add_route(method, f"{API_PREFIX}/create", self._handle_create)
            app.router.add_route(method, f"{API_PREFIX}/get", self._handle_get)
            app.router.add_route(method, f"{API_PREFIX}/send", self._handle_send)
            app.router.add_route(method, f"{API_PREFIX}/stream", self._handle_stream)
        for method in ("POST", "DELETE"):
            app.router.add_route(method, f"{API_PREFIX}/delete", self._handle_delete)

        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        await self.relay.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.relay.stop()

    def _parse_bind(self, bind: str) -> tuple[str, int]:
        """Parse bind address into host and port."""
        if ":" in bind:
            host, port = bind.rsplit(":", 1)
            return host, int(port)
        return "0.0.0.0", int(bind)

    def runner_options(self) -> dict[str, Any]:
        """Keyword arguments for the aiohttp runner serving this app."""
        # Cancel stream handlers as soon as the client goes away.
        return {"handler_cancellation": True}

    async def start(self) -> None:
        """Start serving on the configured bind address."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app, **self.runner_options())
        await self._runner.setup()

        host, port = self._parse_bind(self.config.bind)
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("Relay server started", host=host, port=port)

    async def stop(self) -> None:
        logger.info("Stopping relay server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay server stopped")

    def _static_file(self, name: str) -> web.FileResponse:
        path = Path(self.config.static_dir) / name
        if not path.is_file():
            raise web.HTTPNotFound(text="Not found")
        return web.FileResponse(path)

    async def _handle_home(self, request: web.Request) -> web.StreamResponse:
        logger.debug("Serving home page")
        return self._static_file("index.html")

    async def _handle_license(self, request: web.Request) -> web.StreamResponse:
        logger.debug("Serving LICENSE file")
        return self._static_file("LICENSE.txt")

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def _handle_stats(self, request: web.Request) -> web.Response:
        """Aggregate counts only; tunnel ids are never listed."""
        return web.json_response(await self.relay.stats())

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        ACTIVE_TUNNELS.set(len(self.relay.tunnels))
        ACTIVE_SUBSCRIBERS.set(self.relay.subscribers.subscriber_count())
        return web.Response(
            body=generate_metrics(),
            headers={"Content-Type": get_content_type()},
        )

    async def _handle_create(self, request: web.Request) -> web.Response:
        fields = await request_fields(request)
        requested_id = fields.get("id")
        if request.method == "POST" and not requested_id:
            raise ValidationError("The request body must contain a valid 'id' field")

        created = await self.relay.create_tunnel(requested_id)
        return web.json_response({"id": created.id, "token": created.auth_token})

    async def _handle_get(self, request: web.Request) -> web.Response:
        fields = await request_fields(request)
        content = await self.relay.get(fields.get("id", ""), fields.get("subChannel"))
        if content is None:
            return web.Response(status=200)
        return web.json_response({"content": content})

    async def _handle_send(self, request: web.Request) -> web.Response:
        fields = await request_fields(request)
        await self.relay.send(
            fields.get("id", ""),
            fields.get("subChannel"),
            fields.get("content", ""),
        )
        return web.Response(status=200)

    async def _handle_delete(self, request: web.Request) -> web.Response:
        fields = await request_fields(request)
        await self.relay.delete(fields.get("id", ""), fields.get("token"))
        return web.Response(status=200)

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Push every update of a sub-channel to the client as SSE events.

        The subscription ends when the client disconnects or the tunnel is
        deleted, expired or recreated. Heartbeat comments keep proxies from
        timing out and surface dead connections on write.
        """
        fields = await request_fields(request)

        async with self.relay.subscribe(fields.get("id", ""), fields.get("subChannel")) as sink:
            response = web.StreamResponse(
                status=200,
                headers={
                    "Content-Type": "text/event-stream",
                    "Cache-Control": "no-cache, no-transform",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",
                    **_cors_headers(self.config),
                },
            )
            await response.prepare(request)

            try:
                while True:
                    try:
                        content = await sink.get(timeout=self.config.sse_heartbeat_interval)
                    except TimeoutError:
                        await response.write(b":heartbeat\n\n")
                        continue
                    if content is None:
                        break
                    await response.write(format_sse(content))
                await response.write_eof()
            except ConnectionResetError as e:
                logger.debug("Stream client went away", sink_id=sink.id, error=str(e))

        return response
