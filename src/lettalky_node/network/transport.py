"""Transport layer — the JSON-over-HTTP face of the discovery service.

Runs a small aiohttp server. Handlers only translate between HTTP and
the service: bodies and query strings in, camelCase JSON out, with
timestamps rendered as epoch milliseconds for the browser client.
"""

from __future__ import annotations

import logging
import math
import platform
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from aiohttp import hdrs, web

from lettalky_node.network.discovery import DiscoveryService, NearbyPeer
from lettalky_node.network.errors import InvalidRequest, RegistryError
from lettalky_node.network.ratelimit import RateLimitConfig, RateLimiter

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

MAX_BODY_SIZE = 2 * 1024 * 1024

TOO_MANY_REQUESTS = "Too many requests from this IP, please try again later."
TOO_MANY_REGISTRATIONS = "Too many registration attempts, please wait a minute."

# The served client loads PeerJS from unpkg and talks WebRTC signaling
# over websockets to arbitrary hosts.
CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com https://cdnjs.cloudflare.com",
    "font-src 'self' https://fonts.gstatic.com https://cdnjs.cloudflare.com",
    "script-src 'self' https://unpkg.com",
    "connect-src 'self' wss: ws: *",
    "img-src 'self' data: blob:",
    "base-uri 'self'",
    "form-action 'self'",
    "frame-ancestors 'self'",
    "object-src 'none'",
    "script-src-attr 'none'",
])

SECURITY_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

CORS_ALLOW_METHODS = "GET,HEAD,PUT,PATCH,POST,DELETE"

_RATE_LIMIT_KEY = "lettalky_rate_limit"


def _ms(ts: float) -> int:
    return int(ts * 1000)


def _error_response(message: str, code: str, status: int) -> web.Response:
    return web.json_response({"error": message, "code": code}, status=status)


def _static_handler(static_dir: Path) -> Handler:
    """Serve the browser client; unknown paths fall back to index.html."""

    async def handle(request: web.Request) -> web.StreamResponse:
        target = (static_dir / request.match_info["path"]).resolve()
        if not target.is_relative_to(static_dir) or not target.is_file():
            target = static_dir / "index.html"
            if not target.is_file():
                raise web.HTTPNotFound()
        return web.FileResponse(target)

    return handle


def render_peer(peer: NearbyPeer) -> dict[str, Any]:
    return {
        "peerId": peer.peer_id,
        "username": peer.username,
        "avatar": peer.avatar,
        "location": peer.location.to_dict(),
        "distance": peer.distance,
        "lastSeen": _ms(peer.last_seen),
        "isActive": peer.is_active,
        "status": peer.status,
        "joinedAt": _ms(peer.joined_at),
    }


class Transport:
    """HTTP server exposing register / peers / heartbeat / status / health.

    Rate limits are applied per client address before any handler runs;
    RegistryError raised by the service becomes a JSON error response.
    """

    def __init__(
        self,
        service: DiscoveryService,
        host: str = "0.0.0.0",
        port: int = 3000,
        rate_limits: RateLimitConfig | None = None,
        client_max_size: int = MAX_BODY_SIZE,
        static_dir: str | Path | None = None,
    ) -> None:
        self.service = service
        self.host = host
        self.port = port
        limits = rate_limits or RateLimitConfig()
        self.request_limiter = RateLimiter(limits.max_requests, limits.window_seconds)
        self.register_limiter = RateLimiter(
            limits.max_registrations, limits.registration_window_seconds,
        )
        self._started = time.monotonic()
        self._runner: web.AppRunner | None = None

        self._app = web.Application(
            client_max_size=client_max_size,
            middlewares=[
                self._error_middleware,
                self._rate_limit_middleware,
                self._cors_preflight_middleware,
            ],
        )
        self._app.on_response_prepare.append(self._on_response_prepare)

        # Register routes
        self._app.router.add_post("/register", self._handle_register)
        self._app.router.add_get("/peers", self._handle_peers)
        self._app.router.add_post("/heartbeat", self._handle_heartbeat)
        self._app.router.add_post("/status", self._handle_status)
        self._app.router.add_get("/health", self._handle_health)
        if static_dir:
            self._app.router.add_get(
                "/{path:.*}", _static_handler(Path(static_dir).resolve()),
            )

    @property
    def app(self) -> web.Application:
        return self._app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Transport listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Gracefully shut down transport."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Transport stopped")

    def cleanup_limits(self) -> int:
        """Drop idle rate-limit buckets. Returns how many were removed."""
        return self.request_limiter.cleanup() + self.register_limiter.cleanup()

    # ── Middleware ───────────────────────────────────────────────

    @web.middleware
    async def _error_middleware(
        self, request: web.Request, handler: Handler,
    ) -> web.StreamResponse:
        try:
            return await handler(request)
        except RegistryError as e:
            logger.debug("%s %s rejected: %s", request.method, request.path, e.code)
            return _error_response(e.message, e.code, e.http_status)
        except web.HTTPException:
            raise
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            return _error_response("Internal server error", "InternalError", 500)

    @web.middleware
    async def _rate_limit_middleware(
        self, request: web.Request, handler: Handler,
    ) -> web.StreamResponse:
        client = request.remote or "unknown"
        allowed = self.request_limiter.allow(client)
        request[_RATE_LIMIT_KEY] = (self.request_limiter, client)
        if not allowed:
            return self._too_many(self.request_limiter, client, TOO_MANY_REQUESTS)
        if request.method == "POST" and request.path == "/register":
            allowed = self.register_limiter.allow(client)
            request[_RATE_LIMIT_KEY] = (self.register_limiter, client)
            if not allowed:
                return self._too_many(self.register_limiter, client, TOO_MANY_REGISTRATIONS)
        return await handler(request)

    @staticmethod
    def _too_many(limiter: RateLimiter, client: str, message: str) -> web.Response:
        logger.debug("Rate limit hit for %s", client)
        resp = _error_response(message, "RateLimited", 429)
        resp.headers["Retry-After"] = str(math.ceil(limiter.retry_after(client)) or 1)
        return resp

    @web.middleware
    async def _cors_preflight_middleware(
        self, request: web.Request, handler: Handler,
    ) -> web.StreamResponse:
        if (
            request.method == hdrs.METH_OPTIONS
            and hdrs.ORIGIN in request.headers
            and hdrs.ACCESS_CONTROL_REQUEST_METHOD in request.headers
        ):
            resp = web.Response(status=204)
            resp.headers[hdrs.ACCESS_CONTROL_ALLOW_METHODS] = CORS_ALLOW_METHODS
            requested = request.headers.get(hdrs.ACCESS_CONTROL_REQUEST_HEADERS)
            if requested:
                resp.headers[hdrs.ACCESS_CONTROL_ALLOW_HEADERS] = requested
            return resp
        return await handler(request)

    async def _on_response_prepare(
        self, request: web.Request, response: web.StreamResponse,
    ) -> None:
        """Security, CORS and RateLimit-* headers on every response."""
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)

        # Any origin is allowed, with credentials, by echoing it back
        origin = request.headers.get(hdrs.ORIGIN)
        if origin:
            response.headers[hdrs.ACCESS_CONTROL_ALLOW_ORIGIN] = origin
            response.headers[hdrs.ACCESS_CONTROL_ALLOW_CREDENTIALS] = "true"
            vary = response.headers.get(hdrs.VARY)
            response.headers[hdrs.VARY] = f"{vary}, Origin" if vary else "Origin"

        state = request.get(_RATE_LIMIT_KEY)
        if state is not None:
            limiter, client = state
            response.headers["RateLimit-Limit"] = str(limiter.max_requests)
            response.headers["RateLimit-Remaining"] = str(limiter.remaining(client))
            response.headers["RateLimit-Reset"] = str(math.ceil(limiter.reset_after(client)))

    # ── Handlers ─────────────────────────────────────────────────

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        try:
            data = await request.json()
        except ValueError:
            raise InvalidRequest("Invalid JSON body") from None
        if not isinstance(data, dict):
            raise InvalidRequest()
        return data

    async def _handle_register(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        result = self.service.register(
            data.get("peerId"),
            data.get("username"),
            data.get("avatar"),
            data.get("location"),
            ip=request.remote or "",
            user_agent=request.headers.get("User-Agent"),
        )
        return web.json_response({
            "success": True,
            "peersCount": result.peers_count,
            "message": "Successfully registered with LetTalky",
            "serverTime": _ms(result.server_time),
        })

    async def _handle_peers(self, request: web.Request) -> web.Response:
        result = self.service.discover(
            request.query.get("peerId"), request.query.get("range"),
        )
        return web.json_response({
            "peers": [render_peer(p) for p in result.peers],
            "total": result.total,
            "searchRange": result.search_range,
            "timestamp": _ms(result.timestamp),
            "serverStats": {
                "totalUsers": result.total_users,
                "activeUsers": result.active_users,
            },
        })

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        server_time = self.service.heartbeat(data.get("peerId"), data.get("activity"))
        return web.json_response({
            "success": True,
            "serverTime": _ms(server_time),
            "status": "heartbeat_received",
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        status = self.service.set_status(data.get("peerId"), data.get("status"))
        return web.json_response({
            "success": True,
            "message": f"Status updated to {status.value}",
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        report = self.service.health()
        return web.json_response({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server": {
                "uptime": round(time.monotonic() - self._started, 3),
                "version": platform.python_version(),
            },
            "users": {
                "total": report.total_users,
                "active": report.active_users,
                "totalConnections": report.total_connections,
            },
        })
