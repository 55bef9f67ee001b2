"""HTTP API: per-page client contexts driving the reconciler."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from ..models import AuthUser
from ..orchestrator import CLIENT_COOKIE, TradeMindOrchestrator
from .fakes import FakeBackend, FakeLogger

CONFIG = {
    "TRADEMIND_PORT": "0",
    "PROFILE_RETRY_BASE_MS": "0",
    "TRADEMIND_TZ": "Asia/Kolkata",
    "CLIENT_IDLE_SEC": "3600",
}


class SharedDatabase:
    """One set of tables and accounts behind every page's backend client."""

    def __init__(self):
        self.template = FakeBackend()
        self.backends = []
        self.client_ids = []
        # Sessions a persistent store would hand back, by client id
        self.sessions = {}
        self.template.add_account("asha@example.com", "pw", AuthUser("u1", "asha@example.com",
                                                                    {"full_name": "Asha"}))
        self.template.add_account("admin@example.com", "pw", AuthUser("a1", "admin@example.com",
                                                                     {"full_name": "Ops"}))

    def backend_for(self, client_id):
        backend = FakeBackend(session=self.sessions.get(client_id))
        backend.tables = self.template.tables
        backend.accounts = self.template.accounts
        self.backends.append(backend)
        self.client_ids.append(client_id)
        return backend


@asynccontextmanager
async def api(db=None, **overrides):
    db = db or SharedDatabase()
    orchestrator = TradeMindOrchestrator({**CONFIG, **overrides}, FakeLogger(), backend_factory=db.backend_for)
    server = TestServer(orchestrator.create_app())
    clients = []

    async def page():
        client = TestClient(server)
        await client.start_server()
        clients.append(client)
        return client

    try:
        yield orchestrator, db, page
    finally:
        for client in clients:
            await client.close()


async def body(resp):
    return await resp.json()


class TestState:
    @pytest.mark.asyncio
    async def test_health(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            resp = await client.get("/health")
            assert resp.status == 200
            assert (await body(resp))["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_first_visit_gets_cookie_and_login_screen(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            resp = await client.get("/api/state")
            assert CLIENT_COOKIE in resp.cookies
            data = (await body(resp))["data"]
            assert data["screen"] == "login"
            assert data["loading"] is False
            assert data["version"] > 0

            # Same page, same context
            await client.get("/api/state")
            assert len(orchestrator._clients) == 1

    @pytest.mark.asyncio
    async def test_auth_view_and_bad_view(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            data = (await body(await client.post("/api/state/auth-view")))["data"]
            assert data["screen"] == "signup"

            resp = await client.post("/api/state/view", json={"view": "portfolio"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_a_500(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            await client.get("/api/state")
            ctx = next(iter(orchestrator._clients.values()))
            ctx.reconciler.flush = AsyncMock(side_effect=RuntimeError("worker gone"))

            resp = await client.get("/api/state")
            assert resp.status == 500
            assert await body(resp) == {"success": False, "error": "worker gone"}

    @pytest.mark.asyncio
    async def test_options_preflight(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            resp = await client.options("/api/state", headers={"Origin": "http://127.0.0.1:5173"})
            assert resp.status == 204
            assert resp.headers["Access-Control-Allow-Origin"] == "http://127.0.0.1:5173"
            assert not orchestrator._clients


class TestJourney:
    @pytest.mark.asyncio
    async def test_signup_to_approval_to_journal(self):
        async with api() as (orchestrator, db, page):
            trader = await page()

            resp = await trader.post("/api/auth/login", json={"email": "asha@example.com", "password": "bad"})
            assert resp.status == 401
            assert (await body(resp))["error"] == "Invalid login credentials"

            resp = await trader.post("/api/auth/login", json={"email": "asha@example.com", "password": "pw"})
            state = (await body(resp))["data"]
            assert state["user"]["status"] == "PENDING"
            assert state["screen"] == "payment"

            assert (await trader.get("/api/trades")).status == 403

            resp = await trader.post("/api/payment", json={})
            assert resp.status == 400

            resp = await trader.post("/api/payment", json={"transactionId": "UPI-123"})
            assert (await body(resp))["data"]["screen"] == "pending_approval"

            # Admin approves from another page
            admin = await page()
            resp = await admin.post("/api/auth/login", json={"email": "admin@example.com", "password": "pw"})
            assert (await body(resp))["data"]["screen"] == "app"

            listing = await body(await admin.get("/api/admin/users"))
            assert listing["stats"]["pending"] == 1
            assert listing["stats"]["revenue"] == 1999

            resp = await admin.post("/api/admin/users/u1/status", json={"status": "REJECTED"})
            assert resp.status == 400
            resp = await admin.post("/api/admin/users/u1/status", json={"status": "ACTIVE"})
            assert resp.status == 200

            # The trader's gate only moves when the page asks
            state = (await body(await trader.get("/api/state")))["data"]
            assert state["screen"] == "pending_approval"
            state = (await body(await trader.post("/api/state/refresh")))["data"]
            assert state["screen"] == "app"
            assert "admin" not in [n["view"] for n in state["navigation"]]

            assert (await trader.get("/api/admin/users")).status == 403

            resp = await trader.post("/api/trades", json={
                "instrument": "NIFTY", "side": "BUY", "qty": 50,
                "entryPrice": 100, "exitPrice": 110, "stopLoss": 95, "target": 110,
                "timestamp": "2024-05-06T04:00:00Z",
            })
            assert (await body(resp))["data"]["riskReward"] == 2.0

            trades = await body(await trader.get("/api/trades"))
            assert trades["count"] == 1
            dashboard = (await body(await trader.get("/api/analytics/dashboard")))["data"]
            assert dashboard["stats"]["netProfit"] == 500
            assert (await trader.get("/api/analytics/heatmap")).status == 404

            risk = (await body(await trader.get("/api/risk")))["data"]
            assert risk == {"max_risk_per_trade": 1, "max_daily_loss": 5, "max_trades_per_day": 3}
            await trader.put("/api/risk", json={"max_risk_per_trade": 2})
            risk = (await body(await trader.get("/api/risk")))["data"]
            assert risk["max_risk_per_trade"] == 2

            resp = await trader.post("/api/strategies", json={"name": "ORB", "timeframe": "5m"})
            assert resp.status == 200
            strategies = (await body(await trader.get("/api/strategies")))["data"]
            assert [s["name"] for s in strategies] == ["ORB"]
            resp = await trader.delete(f"/api/strategies/{strategies[0]['id']}")
            assert resp.status == 200

            state = (await body(await trader.post("/api/auth/logout")))["data"]
            assert state["user"] is None
            assert state["screen"] == "login"


class TestTeardown:
    @pytest.mark.asyncio
    async def test_delete_client_releases_subscription(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            await client.get("/api/state")
            backend = db.backends[0]
            assert backend.subscriber_count == 1

            resp = await client.delete("/api/client")
            assert resp.status == 200
            assert backend.subscriber_count == 0
            assert backend.closed is True
            assert orchestrator._clients == {}

    @pytest.mark.asyncio
    async def test_idle_clients_are_swept(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            await client.get("/api/state")
            orchestrator.client_idle_sec = -1
            assert await orchestrator.sweep_idle_clients() == 1
            assert db.backends[0].subscriber_count == 0


def active_profile(db, user_id="u1", email="asha@example.com"):
    db.template.rows("profiles").append({
        "id": user_id, "name": "Asha", "email": email, "role": "USER", "status": "ACTIVE",
    })


def cookie(client_id):
    return {"Cookie": f"{CLIENT_COOKIE}={client_id}"}


class TestClientIds:
    @pytest.mark.asyncio
    async def test_stored_session_survives_a_restart(self):
        db = SharedDatabase()
        active_profile(db)

        async with api(db) as (orchestrator, _, page):
            client = await page()
            resp = await client.post("/api/auth/login", json={"email": "asha@example.com", "password": "pw"})
            client_id = resp.cookies[CLIENT_COOKIE].value
            assert (await body(resp))["data"]["screen"] == "app"
            db.sessions[client_id] = db.backends[0].session

        async with api(db) as (orchestrator, _, page):
            client = await page()
            resp = await client.get("/api/state", headers=cookie(client_id))
            state = (await body(resp))["data"]
            assert db.client_ids[-1] == client_id
            assert state["user"]["id"] == "u1"
            assert state["screen"] == "app"
            assert CLIENT_COOKIE not in resp.cookies

    @pytest.mark.asyncio
    async def test_unknown_cookie_id_is_reopened_on_any_route(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            resp = await client.get("/api/trades", headers=cookie("persisted-page-id"))
            assert resp.status == 403
            assert db.client_ids == ["persisted-page-id"]
            assert "persisted-page-id" in orchestrator._clients

    @pytest.mark.asyncio
    async def test_malformed_cookie_gets_a_fresh_id(self):
        async with api() as (orchestrator, db, page):
            client = await page()
            resp = await client.get("/api/state", headers=cookie("x"))
            assert resp.status == 200
            assert db.client_ids[0] != "x"
            assert resp.cookies[CLIENT_COOKIE].value == db.client_ids[0]


class TestClientLimits:
    @pytest.mark.parametrize("method, path", [
        ("GET", "/api/trades"),
        ("POST", "/api/payment"),
        ("POST", "/api/state/refresh"),
        ("GET", "/api/admin/users"),
    ])
    @pytest.mark.asyncio
    async def test_cookieless_request_outside_entry_routes_opens_nothing(self, method, path):
        async with api() as (orchestrator, db, page):
            client = await page()
            resp = await client.request(method, path)
            assert resp.status == 401
            assert CLIENT_COOKIE not in resp.cookies
            assert orchestrator._clients == {}
            assert db.backends == []

    @pytest.mark.asyncio
    async def test_least_recently_seen_is_evicted_at_the_cap(self):
        async with api(MAX_CLIENTS="2") as (orchestrator, db, page):
            for _ in range(3):
                client = await page()
                assert (await client.get("/api/state")).status == 200

            assert len(orchestrator._clients) == 2
            assert db.client_ids[0] not in orchestrator._clients
            assert db.backends[0].closed is True
            assert db.backends[0].subscriber_count == 0


class TestTrades:
    async def login(self, page, db):
        active_profile(db)
        client = await page()
        resp = await client.post("/api/auth/login", json={"email": "asha@example.com", "password": "pw"})
        assert (await body(resp))["data"]["screen"] == "app"
        return client

    @pytest.mark.asyncio
    async def test_numeric_strings_are_accepted(self):
        async with api() as (orchestrator, db, page):
            client = await self.login(page, db)
            resp = await client.post("/api/trades", json={
                "instrument": "NIFTY", "side": "BUY", "qty": "50",
                "entryPrice": "100", "exitPrice": "110", "stopLoss": "95", "target": "110",
            })
            assert resp.status == 200
            trade = (await body(resp))["data"]
            assert trade["riskReward"] == 2.0
            assert trade["qty"] == 50

    @pytest.mark.parametrize("field", ["qty", "entryPrice", "stopLoss", "target"])
    @pytest.mark.asyncio
    async def test_non_numeric_field_is_a_400(self, field):
        async with api() as (orchestrator, db, page):
            client = await self.login(page, db)
            payload = {"instrument": "NIFTY", "side": "BUY", "qty": 50,
                       "entryPrice": 100, "exitPrice": 110, "stopLoss": 95, "target": 110}
            payload[field] = "abc"
            resp = await client.post("/api/trades", json=payload)
            assert resp.status == 400
            assert (await body(resp))["error"].startswith("Invalid trade")
            assert (await body(await client.get("/api/trades")))["count"] == 0
