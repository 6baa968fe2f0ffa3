"""HTTP-level tests for lettalky_node.network.transport.Transport."""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from lettalky_node.network.discovery import DiscoveryService
from lettalky_node.network.ratelimit import RateLimitConfig
from lettalky_node.network.transport import Transport

from conftest import FakeClock, north_of

PEER_A = "peer-aaaaaaaa-1"
PEER_B = "peer-bbbbbbbb-2"


# ── Helpers ──────────────────────────────────────────────────────

def make_transport(clock: FakeClock | None = None, **kwargs) -> Transport:
    service = DiscoveryService(clock=clock or FakeClock())
    return Transport(service, host="127.0.0.1", port=0, **kwargs)


def registration(peer_id: str = PEER_A, username: str = "alice", meters: float = 0.0) -> dict:
    return {
        "peerId": peer_id,
        "username": username,
        "avatar": "🦊",
        "location": {"latitude": north_of(40.0, meters), "longitude": -73.0},
    }


# ── Register ─────────────────────────────────────────────────────

class TestRegisterRoute:
    @pytest.mark.asyncio
    async def test_success(self):
        clock = FakeClock(1_700_000_000.5)
        async with TestClient(TestServer(make_transport(clock).app)) as client:
            resp = await client.post(
                "/register", json=registration(), headers={"User-Agent": "pytest"},
            )
            assert resp.status == 200
            data = await resp.json()
            assert data["success"] is True
            assert data["peersCount"] == 1
            assert data["serverTime"] == 1_700_000_000_500

    @pytest.mark.asyncio
    async def test_validation_error(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            body = registration()
            body["peerId"] = "short"
            resp = await client.post("/register", json=body)
            assert resp.status == 400
            data = await resp.json()
            assert data["code"] == "InvalidPeerId"
            assert data["error"] == "Invalid peer ID format"

    @pytest.mark.asyncio
    async def test_username_conflict(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            await client.post("/register", json=registration(PEER_A, "Alice"))
            resp = await client.post("/register", json=registration(PEER_B, "alice", 10))
            assert resp.status == 409
            assert (await resp.json())["code"] == "UsernameTaken"

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.post(
                "/register", data="{not json", headers={"Content-Type": "application/json"},
            )
            assert resp.status == 400
            assert (await resp.json())["code"] == "InvalidRequest"

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.post("/register", json=["peerId"])
            assert resp.status == 400
            assert (await resp.json())["code"] == "InvalidRequest"


# ── Discovery ────────────────────────────────────────────────────

class TestPeersRoute:
    @pytest.mark.asyncio
    async def test_lists_nearby(self):
        clock = FakeClock()
        async with TestClient(TestServer(make_transport(clock).app)) as client:
            await client.post("/register", json=registration(PEER_A, "alice"))
            await client.post("/register", json=registration(PEER_B, "bob", 200))
            resp = await client.get("/peers", params={"peerId": PEER_A, "range": "1000"})
            assert resp.status == 200
            data = await resp.json()
            assert data["total"] == 1
            assert data["searchRange"] == 1000
            assert data["serverStats"] == {"totalUsers": 2, "activeUsers": 2}
            peer = data["peers"][0]
            assert peer["peerId"] == PEER_B
            assert peer["username"] == "bob"
            assert peer["distance"] == 200
            assert peer["isActive"] is True
            assert peer["status"] == "online"
            assert peer["location"]["accuracy"] == 1000
            assert peer["joinedAt"] == int(clock.now * 1000)

    @pytest.mark.asyncio
    async def test_range_clamped(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            await client.post("/register", json=registration())
            resp = await client.get("/peers", params={"peerId": PEER_A, "range": "999999"})
            assert (await resp.json())["searchRange"] == 50000

    @pytest.mark.asyncio
    async def test_missing_peer_id(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.get("/peers")
            assert resp.status == 400
            assert (await resp.json())["code"] == "MissingPeerId"

    @pytest.mark.asyncio
    async def test_unknown_peer(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.get("/peers", params={"peerId": PEER_A})
            assert resp.status == 404
            assert (await resp.json())["code"] == "PeerNotFound"


# ── Heartbeat / status / health ──────────────────────────────────

class TestLivenessRoutes:
    @pytest.mark.asyncio
    async def test_heartbeat(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            await client.post("/register", json=registration())
            resp = await client.post("/heartbeat", json={"peerId": PEER_A, "activity": "active"})
            assert resp.status == 200
            data = await resp.json()
            assert data["success"] is True
            assert data["status"] == "heartbeat_received"

    @pytest.mark.asyncio
    async def test_heartbeat_unknown(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.post("/heartbeat", json={"peerId": PEER_A})
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_heartbeat_non_string_peer_id(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            await client.post("/register", json=registration())
            resp = await client.post("/heartbeat", json={"peerId": ["xxxxxxxxxxxx"]})
            assert resp.status == 404
            assert (await resp.json())["code"] == "PeerNotFound"

    @pytest.mark.asyncio
    async def test_status_non_string_peer_id(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            await client.post("/register", json=registration())
            resp = await client.post("/status", json={"peerId": {"a": 1}, "status": "away"})
            assert resp.status == 404
            assert (await resp.json())["code"] == "PeerNotFound"

    @pytest.mark.asyncio
    async def test_status(self):
        transport = make_transport()
        async with TestClient(TestServer(transport.app)) as client:
            await client.post("/register", json=registration())
            resp = await client.post("/status", json={"peerId": PEER_A, "status": "busy"})
            assert resp.status == 200
            assert (await resp.json())["message"] == "Status updated to busy"
            assert transport.service.store.get(PEER_A).status.value == "busy"

    @pytest.mark.asyncio
    async def test_status_invalid(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            await client.post("/register", json=registration())
            resp = await client.post("/status", json={"peerId": PEER_A, "status": "asleep"})
            assert resp.status == 400
            assert (await resp.json())["code"] == "InvalidStatus"

    @pytest.mark.asyncio
    async def test_health(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            await client.post("/register", json=registration())
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "healthy"
            assert data["users"] == {"total": 1, "active": 1, "totalConnections": 1}
            assert data["server"]["uptime"] >= 0


# ── Cross-cutting ────────────────────────────────────────────────

class TestMiddleware:
    @pytest.mark.asyncio
    async def test_registration_rate_limit(self):
        transport = make_transport(rate_limits=RateLimitConfig(max_registrations=2))
        async with TestClient(TestServer(transport.app)) as client:
            for _ in range(2):
                resp = await client.post("/register", json=registration())
                assert resp.status == 200
            resp = await client.post("/register", json=registration())
            assert resp.status == 429
            assert "registration attempts" in (await resp.json())["error"]
            assert int(resp.headers["Retry-After"]) >= 1
            # other routes still have budget
            resp = await client.get("/health")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_general_rate_limit(self):
        transport = make_transport(rate_limits=RateLimitConfig(max_requests=3))
        async with TestClient(TestServer(transport.app)) as client:
            for _ in range(3):
                assert (await client.get("/health")).status == 200
            resp = await client.get("/health")
            assert resp.status == 429
            assert (await resp.json())["code"] == "RateLimited"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self, monkeypatch):
        transport = make_transport()

        def boom():
            raise RuntimeError("kaboom")

        monkeypatch.setattr(transport.service, "health", boom)
        async with TestClient(TestServer(transport.app)) as client:
            resp = await client.get("/health")
            assert resp.status == 500
            assert (await resp.json())["error"] == "Internal server error"

    @pytest.mark.asyncio
    async def test_unknown_route_without_static(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.get("/nowhere")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_body_size_limit(self):
        transport = make_transport(client_max_size=1024)
        async with TestClient(TestServer(transport.app)) as client:
            body = registration()
            body["padding"] = "x" * 4096
            resp = await client.post("/register", json=body)
            assert resp.status == 413


class TestResponseHeaders:
    @pytest.mark.asyncio
    async def test_security_headers(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            for resp in [
                await client.get("/health"),
                await client.get("/peers"),      # 400 from the service
                await client.get("/nowhere"),    # 404 from the router
            ]:
                csp = resp.headers["Content-Security-Policy"]
                assert "default-src 'self'" in csp
                assert "script-src 'self' https://unpkg.com" in csp
                assert "connect-src 'self' wss: ws: *" in csp
                assert resp.headers["X-Content-Type-Options"] == "nosniff"
                assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"
                assert resp.headers["Referrer-Policy"] == "no-referrer"

    @pytest.mark.asyncio
    async def test_cors_reflects_origin(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.get("/health", headers={"Origin": "https://chat.example"})
            assert resp.headers["Access-Control-Allow-Origin"] == "https://chat.example"
            assert resp.headers["Access-Control-Allow-Credentials"] == "true"
            assert "Origin" in resp.headers["Vary"]

            resp = await client.get("/health")
            assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_cors_preflight(self):
        async with TestClient(TestServer(make_transport().app)) as client:
            resp = await client.options("/register", headers={
                "Origin": "https://chat.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            })
            assert resp.status == 204
            assert "POST" in resp.headers["Access-Control-Allow-Methods"].split(",")
            assert resp.headers["Access-Control-Allow-Headers"] == "content-type"
            assert resp.headers["Access-Control-Allow-Origin"] == "https://chat.example"

    @pytest.mark.asyncio
    async def test_rate_limit_headers(self):
        transport = make_transport(rate_limits=RateLimitConfig(max_requests=3))
        async with TestClient(TestServer(transport.app)) as client:
            remaining = []
            for _ in range(3):
                resp = await client.get("/health")
                assert resp.headers["RateLimit-Limit"] == "3"
                remaining.append(resp.headers["RateLimit-Remaining"])
            assert remaining == ["2", "1", "0"]
            assert 0 < int(resp.headers["RateLimit-Reset"]) <= 900

            resp = await client.get("/health")
            assert resp.status == 429
            assert resp.headers["RateLimit-Remaining"] == "0"
            assert int(resp.headers["Retry-After"]) >= 1

    @pytest.mark.asyncio
    async def test_registration_rate_limit_headers(self):
        transport = make_transport(rate_limits=RateLimitConfig(max_registrations=2))
        async with TestClient(TestServer(transport.app)) as client:
            resp = await client.post("/register", json=registration())
            assert resp.headers["RateLimit-Limit"] == "2"
            assert resp.headers["RateLimit-Remaining"] == "1"


class TestStaticClient:
    @pytest.mark.asyncio
    async def test_serves_files_and_falls_back(self, tmp_path):
        (tmp_path / "index.html").write_text("<html>LetTalky</html>")
        (tmp_path / "app.js").write_text("console.log('hi');")
        transport = make_transport(static_dir=tmp_path)
        async with TestClient(TestServer(transport.app)) as client:
            resp = await client.get("/app.js")
            assert resp.status == 200
            assert "console.log" in await resp.text()

            resp = await client.get("/chat/room")
            assert resp.status == 200
            assert "LetTalky" in await resp.text()

            # API routes take precedence over the catch-all
            resp = await client.get("/health")
            assert (await resp.json())["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_missing_index_is_404(self, tmp_path):
        (tmp_path / "app.js").write_text("console.log('hi');")
        transport = make_transport(static_dir=tmp_path)
        async with TestClient(TestServer(transport.app)) as client:
            assert (await client.get("/app.js")).status == 200
            resp = await client.get("/chat/room")
            assert resp.status == 404
            assert resp.headers["X-Content-Type-Options"] == "nosniff"
