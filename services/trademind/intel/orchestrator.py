# services/trademind/intel/orchestrator.py
"""API server for the TradeMind journal.

Each browser page owns a client context (cookie `tm_client`): its own
backend client, repository and reconciler. The page polls /api/state and
calls the callbacks; teardown (DELETE /api/client or idle expiry) releases
the auth subscription.
"""

import asyncio
import json
import re
import time
import uuid
from functools import wraps
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from .accounts import AdminConsole, PaymentForm, submit_payment
from .analytics import JournalAnalytics, risk_reward
from .auth_flow import AuthFlows
from .backend import BackendPort, SupabaseBackend
from .events import EventBus, StateChanged
from .gate import Screen
from .models import RiskRules, Strategy, Trade, UserStatus
from .policy import AccountPolicy
from .reconciler import SessionReconciler
from .session_store import build_session_store
from .store import ProfileRepository, error_message

CLIENT_COOKIE = 'tm_client'
CLIENT_ID_RE = re.compile(r'^[A-Za-z0-9_-]{8,64}$')

# Requests that may open a context for a page without a cookie
CLIENT_ENTRY_ROUTES = {
    ('GET', '/api/state'),
    ('POST', '/api/state/auth-view'),
    ('POST', '/api/auth/login'),
    ('POST', '/api/auth/signup'),
}


class ClientContext:
    """Everything one page needs; torn down exactly once."""

    def __init__(self, client_id: str, backend: BackendPort, repository: ProfileRepository,
                 reconciler: SessionReconciler, flows: AuthFlows, admin: AdminConsole,
                 bus: EventBus):
        self.client_id = client_id
        self.backend = backend
        self.repository = repository
        self.reconciler = reconciler
        self.flows = flows
        self.admin = admin
        self.bus = bus
        self.version = 0
        self.last_seen = time.monotonic()
        self.is_new = True
        self._closed = False

    async def on_state_changed(self, event: StateChanged) -> None:
        self.version += 1

    def snapshot(self) -> Dict[str, Any]:
        return {**self.reconciler.state.to_dict(), 'version': self.version}

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.reconciler.close()
        await self.backend.close()


def require_app(handler):
    """Only clients that passed the access gate reach the journal routes."""
    @wraps(handler)
    async def wrapper(self, request: web.Request) -> web.Response:
        state = request['client'].reconciler.state
        if state.screen != Screen.APP:
            return self._error_response(f'Access denied ({state.screen.value})', 403, request)
        request['user'] = state.current_user
        return await handler(self, request)
    return wrapper


def require_admin(handler):
    @wraps(handler)
    async def wrapper(self, request: web.Request) -> web.Response:
        user = request['client'].reconciler.state.current_user
        if not user or not user.is_admin:
            return self._error_response('Admin access required', 403, request)
        request['user'] = user
        return await handler(self, request)
    return wrapper


class TradeMindOrchestrator:
    """REST API server for the TradeMind journal."""

    def __init__(self, config: Dict[str, Any], logger,
                 backend_factory: Optional[Callable[[str], BackendPort]] = None):
        self.config = config
        self.logger = logger
        self.port = int(config.get('TRADEMIND_PORT', 3010))
        self.client_idle_sec = int(config.get('CLIENT_IDLE_SEC', 3600))
        self.max_clients = max(1, int(config.get('MAX_CLIENTS', 1000)))
        self.analytics = JournalAnalytics.from_config(config)
        self.policy = AccountPolicy.from_config(config)
        self._backend_factory = backend_factory or self._default_backend
        self._clients: Dict[str, ClientContext] = {}

    ALLOWED_ORIGINS = [
        'http://localhost:5173',
        'http://127.0.0.1:5173',
    ]

    def _default_backend(self, client_id: str) -> BackendPort:
        store = build_session_store(self.config, client_id)
        return SupabaseBackend.from_config(self.config, self.logger.child('backend'), store)

    # ==================== Client contexts ====================

    async def _create_client(self, client_id: str) -> ClientContext:
        backend = self._backend_factory(client_id)
        repository = ProfileRepository(backend, self.logger.child('store'), self.policy)
        bus = EventBus(self.logger)
        reconciler = SessionReconciler.from_config(
            self.config, backend, repository, self.logger.child('reconciler'), bus=bus)
        ctx = ClientContext(
            client_id, backend, repository, reconciler,
            AuthFlows(backend, repository, self.logger.child('auth')),
            AdminConsole(repository, self.logger.child('admin')),
            bus,
        )
        bus.subscribe(StateChanged, ctx.on_state_changed)
        self._clients[client_id] = ctx
        await reconciler.start()
        self.logger.info(f"client {client_id[:8]} started", emoji="🪟")
        return ctx

    async def _get_client(self, request: web.Request) -> Optional[ClientContext]:
        """Context for the page's cookie, or None if this request may not open one.

        A well-formed cookie id not held in memory (service restart, idle
        sweep) is reopened under the same id so a persisted session is found.
        """
        client_id = request.cookies.get(CLIENT_COOKIE)
        if client_id and not CLIENT_ID_RE.match(client_id):
            client_id = None

        ctx = self._clients.get(client_id) if client_id else None
        if ctx is not None:
            ctx.is_new = False
        elif client_id:
            await self._make_room()
            ctx = await self._create_client(client_id)
            ctx.is_new = False
        elif (request.method, request.path) in CLIENT_ENTRY_ROUTES:
            await self._make_room()
            ctx = await self._create_client(uuid.uuid4().hex)
        else:
            return None
        ctx.last_seen = time.monotonic()
        return ctx

    async def _make_room(self) -> None:
        if len(self._clients) < self.max_clients:
            return
        await self.sweep_idle_clients()
        while len(self._clients) >= self.max_clients:
            oldest = min(self._clients.values(), key=lambda c: c.last_seen)
            self.logger.warn(f"client limit {self.max_clients} reached, evicting {oldest.client_id[:8]}")
            await self.close_client(oldest.client_id)

    async def close_client(self, client_id: str) -> None:
        ctx = self._clients.pop(client_id, None)
        if ctx:
            await ctx.close()
            self.logger.info(f"client {client_id[:8]} closed", emoji="🚪")

    async def sweep_idle_clients(self) -> int:
        now = time.monotonic()
        stale = [cid for cid, ctx in self._clients.items()
                 if now - ctx.last_seen > self.client_idle_sec]
        for cid in stale:
            await self.close_client(cid)
        return len(stale)

    async def close_all(self, app: web.Application = None) -> None:
        for cid in list(self._clients):
            await self.close_client(cid)

    # ==================== Responses ====================

    def _get_cors_origin(self, request: web.Request) -> str:
        origin = request.headers.get('Origin', '')
        if origin in self.ALLOWED_ORIGINS:
            return origin
        return self.ALLOWED_ORIGINS[0]

    def _cors_headers(self, request: Optional[web.Request]) -> Dict[str, str]:
        origin = self._get_cors_origin(request) if request else self.ALLOWED_ORIGINS[0]
        return {
            'Access-Control-Allow-Origin': origin,
            'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type, Authorization',
            'Access-Control-Allow-Credentials': 'true',
        }

    def _json_response(self, data: Any, status: int = 200,
                       request: web.Request = None) -> web.Response:
        return web.Response(
            text=json.dumps(data, default=str),
            status=status,
            content_type='application/json',
            headers=self._cors_headers(request),
        )

    def _error_response(self, message: str, status: int = 400,
                        request: web.Request = None, **extra) -> web.Response:
        return self._json_response({'success': False, 'error': message, **extra}, status, request)

    def _ok(self, request: web.Request, data: Any = None, **extra) -> web.Response:
        return self._json_response({'success': True, 'data': data, **extra}, request=request)

    async def handle_options(self, request: web.Request) -> web.Response:
        return web.Response(status=204, headers=self._cors_headers(request))

    @web.middleware
    async def client_middleware(self, request: web.Request, handler):
        """Attach the page's client context; issue the cookie for new pages."""
        if request.method == 'OPTIONS' or not request.path.startswith('/api/'):
            return await handler(request)

        try:
            ctx = await self._get_client(request)
        except Exception as e:
            self.logger.error(f"client setup failed: {e}")
            return self._error_response(str(e), 500, request)
        if ctx is None:
            return self._error_response('No client session; load /api/state first', 401, request)

        request['client'] = ctx
        try:
            response = await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            self.logger.error(f"{request.method} {request.path} failed: {e}")
            response = self._error_response(str(e), 500, request)
        if ctx.is_new:
            response.set_cookie(CLIENT_COOKIE, ctx.client_id, httponly=True, samesite='Lax')
        return response

    async def _body(self, request: web.Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            return {}
        return body if isinstance(body, dict) else {}

    # ==================== Health / state ====================

    async def health_check(self, request: web.Request) -> web.Response:
        """GET /health"""
        return self._json_response({
            'success': True,
            'service': 'trademind',
            'status': 'healthy',
            'clients': len(self._clients),
        }, request=request)

    async def get_state(self, request: web.Request) -> web.Response:
        """GET /api/state - resolved user, flags, screen and navigation."""
        ctx = request['client']
        await ctx.reconciler.flush()
        return self._ok(request, ctx.snapshot())

    async def retry_connection(self, request: web.Request) -> web.Response:
        """POST /api/state/retry - re-run initialization from scratch."""
        ctx = request['client']
        await ctx.reconciler.retry_connection()
        return self._ok(request, ctx.snapshot())

    async def refresh_state(self, request: web.Request) -> web.Response:
        """POST /api/state/refresh - re-resolve the current user (e.g. awaiting approval)."""
        ctx = request['client']
        await ctx.reconciler.refresh()
        return self._ok(request, ctx.snapshot())

    async def switch_auth_view(self, request: web.Request) -> web.Response:
        """POST /api/state/auth-view - toggle login/signup."""
        ctx = request['client']
        await ctx.reconciler.switch_auth_view()
        return self._ok(request, ctx.snapshot())

    async def set_active_view(self, request: web.Request) -> web.Response:
        """POST /api/state/view - {"view": "analysis"}"""
        ctx = request['client']
        body = await self._body(request)
        try:
            await ctx.reconciler.set_active_view(body.get('view'))
        except ValueError:
            return self._error_response(f"Unknown view: {body.get('view')}", 400, request)
        return self._ok(request, ctx.snapshot())

    async def close_client_route(self, request: web.Request) -> web.Response:
        """DELETE /api/client - page unload."""
        ctx = request['client']
        await self.close_client(ctx.client_id)
        response = self._ok(request)
        response.del_cookie(CLIENT_COOKIE)
        return response

    # ==================== Auth ====================

    async def login(self, request: web.Request) -> web.Response:
        """POST /api/auth/login"""
        ctx = request['client']
        body = await self._body(request)
        if not body.get('email') or not body.get('password'):
            return self._error_response('Email and password are required', 400, request)

        outcome = await ctx.flows.login(body['email'], body['password'])
        if outcome.user is None:
            return self._error_response(
                outcome.error, 401, request,
                showFix=outcome.show_fix, fixSteps=outcome.fix_steps)

        await ctx.reconciler.accept_user(outcome.user)
        return self._ok(request, ctx.snapshot())

    async def signup(self, request: web.Request) -> web.Response:
        """POST /api/auth/signup"""
        ctx = request['client']
        body = await self._body(request)
        for key in ('name', 'email', 'password'):
            if not body.get(key):
                return self._error_response(f'Missing required field: {key}', 400, request)

        outcome = await ctx.flows.signup(body)
        if outcome.error:
            return self._error_response(outcome.error, 400, request)
        if outcome.user:
            await ctx.reconciler.accept_user(outcome.user)
        return self._ok(request, ctx.snapshot(),
                        confirmationRequired=outcome.confirmation_required)

    async def logout(self, request: web.Request) -> web.Response:
        """POST /api/auth/logout"""
        ctx = request['client']
        await ctx.reconciler.logout()
        return self._ok(request, ctx.snapshot())

    # ==================== Payment ====================

    async def submit_payment_route(self, request: web.Request) -> web.Response:
        """POST /api/payment - attach payment proof, then refresh gate state."""
        ctx = request['client']
        user = ctx.reconciler.state.current_user
        if user is None:
            return self._error_response('Authentication required', 401, request)

        form = PaymentForm.from_dict(await self._body(request))
        result = await submit_payment(ctx.repository, user, form)
        if result.error:
            return self._error_response(
                error_message(result, 'Error submitting payment proof. Please try again.'),
                400, request)

        await ctx.reconciler.refresh()
        return self._ok(request, ctx.snapshot())

    # ==================== Trades ====================

    @require_app
    async def list_trades(self, request: web.Request) -> web.Response:
        """GET /api/trades"""
        trades = await request['client'].repository.get_trades(request['user'].id)
        return self._ok(request, [t.to_dict() for t in trades], count=len(trades))

    @require_app
    async def create_trade(self, request: web.Request) -> web.Response:
        """POST /api/trades"""
        body = await self._body(request)
        try:
            trade = Trade.from_dict({**body, 'userId': request['user'].id})
            trade.risk_reward = risk_reward(trade.entry_price, trade.stop_loss, trade.target)
        except (ValueError, TypeError) as e:
            return self._error_response(f'Invalid trade: {e}', 400, request)

        result = await request['client'].repository.save_trade(trade)
        if result.error:
            return self._error_response(error_message(result, 'Error saving trade'), 400, request)
        return self._ok(request, trade.to_dict())

    # ==================== Strategies ====================

    @require_app
    async def list_strategies(self, request: web.Request) -> web.Response:
        """GET /api/strategies"""
        strategies = await request['client'].repository.get_strategies(request['user'].id)
        return self._ok(request, [s.to_dict() for s in strategies])

    @require_app
    async def create_strategy(self, request: web.Request) -> web.Response:
        """POST /api/strategies"""
        body = await self._body(request)
        if not body.get('name'):
            return self._error_response('Strategy name is required', 400, request)

        strategy = Strategy.from_dict({**body, 'userId': request['user'].id})
        result = await request['client'].repository.save_strategy(strategy)
        if result.error:
            return self._error_response(error_message(result, 'Error saving strategy'), 400, request)
        return self._ok(request, strategy.to_dict())

    @require_app
    async def delete_strategy(self, request: web.Request) -> web.Response:
        """DELETE /api/strategies/{id}"""
        result = await request['client'].repository.delete_strategy(request.match_info['id'])
        if result.error:
            return self._error_response(error_message(result, 'Error deleting strategy'), 400, request)
        return self._ok(request)

    # ==================== Risk ====================

    @require_app
    async def get_risk(self, request: web.Request) -> web.Response:
        """GET /api/risk - stored rules, or the defaults."""
        result = await request['client'].repository.get_risk_rules(request['user'].id)
        rules = result.data or RiskRules()
        return self._ok(request, rules.to_dict())

    @require_app
    async def save_risk(self, request: web.Request) -> web.Response:
        """PUT /api/risk"""
        body = await self._body(request)
        try:
            rules = RiskRules(
                max_risk_per_trade=float(body.get('max_risk_per_trade', 1)),
                max_daily_loss=float(body.get('max_daily_loss', 5)),
                max_trades_per_day=int(body.get('max_trades_per_day', 3)),
            )
        except (TypeError, ValueError):
            return self._error_response('Invalid risk rules', 400, request)

        result = await request['client'].repository.save_risk_rules(request['user'].id, rules)
        if result.error:
            return self._error_response(error_message(result, 'Error updating risk rules'), 400, request)
        return self._ok(request, rules.to_dict())

    # ==================== Analytics ====================

    @require_app
    async def get_analytics(self, request: web.Request) -> web.Response:
        """GET /api/analytics/{kind} - dashboard | analysis | calendar | strategies"""
        kind = request.match_info['kind']
        trades = await request['client'].repository.get_trades(request['user'].id)

        if kind == 'dashboard':
            data = self.analytics.dashboard(trades)
        elif kind == 'analysis':
            data = self.analytics.analysis(trades)
        elif kind == 'calendar':
            data = self.analytics.daily_pnl(trades)
        elif kind == 'strategies':
            data = self.analytics.strategy_breakdown(trades)
        else:
            return self._error_response(f'Unknown analytics view: {kind}', 404, request)
        return self._ok(request, data)

    # ==================== Admin ====================

    @require_admin
    async def list_users(self, request: web.Request) -> web.Response:
        """GET /api/admin/users"""
        admin = request['client'].admin
        users = await admin.list_users()
        return self._ok(request, [u.to_dict() for u in users], stats=admin.stats(users))

    @require_admin
    async def change_user_status(self, request: web.Request) -> web.Response:
        """POST /api/admin/users/{id}/status - {"status": "ACTIVE"|"REJECTED", "reason": ...}"""
        ctx = request['client']
        body = await self._body(request)
        try:
            status = UserStatus(body.get('status'))
        except ValueError:
            return self._error_response(f"Invalid status: {body.get('status')}", 400, request)

        result = await ctx.admin.change_status(
            request['user'], request.match_info['id'], status, body.get('reason'))
        if result.error:
            return self._error_response(result.error.message, result.error.status or 400, request)

        # The reviewed account may be the admin's own
        await ctx.reconciler.refresh()
        return self._ok(request, ctx.snapshot())

    # ==================== App ====================

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self.client_middleware])
        app.router.add_route('OPTIONS', '/{tail:.*}', self.handle_options)
        app.router.add_get('/health', self.health_check)

        # Reconciler state + callbacks
        app.router.add_get('/api/state', self.get_state)
        app.router.add_post('/api/state/retry', self.retry_connection)
        app.router.add_post('/api/state/refresh', self.refresh_state)
        app.router.add_post('/api/state/auth-view', self.switch_auth_view)
        app.router.add_post('/api/state/view', self.set_active_view)
        app.router.add_delete('/api/client', self.close_client_route)

        # Auth
        app.router.add_post('/api/auth/login', self.login)
        app.router.add_post('/api/auth/signup', self.signup)
        app.router.add_post('/api/auth/logout', self.logout)

        app.router.add_post('/api/payment', self.submit_payment_route)

        # Journal
        app.router.add_get('/api/trades', self.list_trades)
        app.router.add_post('/api/trades', self.create_trade)
        app.router.add_get('/api/strategies', self.list_strategies)
        app.router.add_post('/api/strategies', self.create_strategy)
        app.router.add_delete('/api/strategies/{id}', self.delete_strategy)
        app.router.add_get('/api/risk', self.get_risk)
        app.router.add_put('/api/risk', self.save_risk)
        app.router.add_get('/api/analytics/{kind}', self.get_analytics)

        # Admin
        app.router.add_get('/api/admin/users', self.list_users)
        app.router.add_post('/api/admin/users/{id}/status', self.change_user_status)

        app.on_cleanup.append(self.close_all)
        return app

    async def start(self) -> web.AppRunner:
        """Start the API server and return the runner for cleanup."""
        app = self.create_app()
        runner = web.AppRunner(app)
        await runner.setup()

        site = web.TCPSite(runner, '0.0.0.0', self.port)
        await site.start()

        self.logger.ok(f"TradeMind API running on port {self.port}", emoji="📒")
        return runner


async def run(config: Dict[str, Any], logger) -> None:
    """Entry point for orchestrator."""
    orchestrator = TradeMindOrchestrator(config, logger)
    runner = await orchestrator.start()
    sweep_every = int(config.get('CLIENT_SWEEP_SEC', 60))

    try:
        while True:
            await asyncio.sleep(sweep_every)
            closed = await orchestrator.sweep_idle_clients()
            if closed:
                logger.info(f"closed {closed} idle client(s)", emoji="🧹")
    except asyncio.CancelledError:
        logger.info("Orchestrator cancelled", emoji="🛑")
    finally:
        logger.info("Shutting down API server", emoji="🛑")
        await runner.cleanup()
