# services/trademind/intel/backend.py
"""
Backend Port - the hosted backend as seen by TradeMind.

Everything that persists lives behind this port: auth (sessions, sign in,
sign up, sign out, auth-state notifications) and table access. The port is
abstract so the reconciliation core and repository can be exercised with
fakes; SupabaseBackend is the production adapter speaking the GoTrue
(/auth/v1) and PostgREST (/rest/v1) HTTP APIs.

Like the JavaScript client it replaces, table and auth calls never raise
for backend-reported failures: they return a BackendResult whose `error`
is set. Transport failures are reported the same way, flagged with
`transport=True`.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .errors import BackendError, FAILED_TO_FETCH
from .models import AuthUser, Session
from .session_store import SessionStore, MemorySessionStore


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


AuthHandler = Callable[[AuthEvent, Optional[Session]], Any]


@dataclass
class BackendResult:
    """Outcome of a backend call: data on success, error otherwise."""
    data: Any = None
    error: Optional[BackendError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SignUpResult:
    user: Optional[AuthUser] = None
    session: Optional[Session] = None
    error: Optional[BackendError] = None

    @property
    def confirmation_required(self) -> bool:
        return self.user is not None and self.session is None


class Subscription:
    """Handle returned by on_auth_state_change."""

    def __init__(self, owner: "AuthEventEmitter", handler: AuthHandler):
        self._owner = owner
        self._handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._owner._remove_handler(self._handler)
            self.active = False


class AuthEventEmitter:
    """Holds auth-state handlers and fans events out to them."""

    def __init__(self):
        self._handlers: List[AuthHandler] = []
        self._pending: set = set()

    def on_auth_state_change(self, handler: AuthHandler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove_handler(self, handler: AuthHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for handler in list(self._handlers):
            result = handler(event, session)
            if inspect.isawaitable(result):
                # Keep a reference so the task is not garbage collected
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)


class BackendPort(AuthEventEmitter, ABC):
    """Abstract interface for the hosted backend."""

    # ---------------- Auth ----------------

    @abstractmethod
    async def get_session(self) -> BackendResult:
        """Current session (data=Session or None)."""

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> BackendResult:
        """Password sign in (data=AuthUser). Emits SIGNED_IN on success."""

    @abstractmethod
    async def sign_up(self, email: str, password: str,
                      metadata: Optional[Dict[str, Any]] = None) -> SignUpResult:
        """Create an auth identity. No session in the result means the email
        must be confirmed first."""

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop the session. Emits SIGNED_OUT."""

    @abstractmethod
    async def get_user(self) -> BackendResult:
        """Authenticated identity (data=AuthUser or None)."""

    # ---------------- Tables ----------------

    @abstractmethod
    async def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     columns: str = "*", order: Optional[str] = None,
                     descending: bool = False) -> BackendResult:
        """Rows matching equality filters (data=list of dicts)."""

    @abstractmethod
    async def insert(self, table: str, rows: List[dict]) -> BackendResult:
        pass

    @abstractmethod
    async def upsert(self, table: str, rows: List[dict], on_conflict: str) -> BackendResult:
        pass

    @abstractmethod
    async def update(self, table: str, values: dict, filters: Dict[str, Any]) -> BackendResult:
        pass

    @abstractmethod
    async def delete(self, table: str, filters: Dict[str, Any]) -> BackendResult:
        pass

    async def select_one(self, table: str, filters: Dict[str, Any],
                         columns: str = "*") -> BackendResult:
        """Zero or one row (data=dict or None); more than one is an error."""
        result = await self.select(table, filters, columns=columns)
        if result.error:
            return result
        rows = result.data or []
        if len(rows) > 1:
            return BackendResult(error=BackendError(
                "JSON object requested, multiple (or no) rows returned", code="PGRST116"))
        return BackendResult(data=rows[0] if rows else None)

    async def close(self) -> None:
        """Release network resources."""


class SupabaseBackend(BackendPort):
    """aiohttp adapter for a Supabase project."""

    def __init__(self, url: str, anon_key: str, logger,
                 store: Optional[SessionStore] = None,
                 http: Optional[aiohttp.ClientSession] = None):
        super().__init__()
        self.url = url.rstrip('/')
        self.anon_key = anon_key
        self.logger = logger
        self.store = store or MemorySessionStore()
        self._http = http
        self._owns_http = http is None

    @classmethod
    def from_config(cls, config: Dict[str, Any], logger,
                    store: Optional[SessionStore] = None) -> 'SupabaseBackend':
        url = config.get('SUPABASE_URL', '')
        key = config.get('SUPABASE_ANON_KEY', '')
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be configured")
        return cls(url, key, logger, store=store)

    # -------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            # No total timeout: a hang shows up as elapsed retry delays
            self._http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        try:
            if self._http is not None and self._owns_http and not self._http.closed:
                await self._http.close()
        finally:
            await self.store.close()

    async def _headers(self, authed: bool = True, extra: Optional[dict] = None) -> dict:
        headers = {
            'apikey': self.anon_key,
            'Content-Type': 'application/json',
        }
        token = self.anon_key
        if authed:
            session = await self._current_session()
            if session:
                token = session.access_token
        headers['Authorization'] = f'Bearer {token}'
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, path: str, *, params: Optional[dict] = None,
                       json_body: Any = None, headers: Optional[dict] = None) -> BackendResult:
        try:
            async with self._client().request(
                method, f"{self.url}{path}", params=params, json=json_body, headers=headers
            ) as resp:
                body = None
                if resp.status != 204:
                    text = await resp.text()
                    if text:
                        try:
                            body = await resp.json(content_type=None)
                        except ValueError:
                            body = text
                if resp.status >= 400:
                    return BackendResult(error=self._error_from_body(body, resp.status))
                return BackendResult(data=body)
        except aiohttp.ClientConnectionError as e:
            self.logger.warn(f"{method} {path} transport failure: {e}")
            return BackendResult(error=BackendError(
                f"TypeError: {FAILED_TO_FETCH} ({e})", transport=True))

    @staticmethod
    def _error_from_body(body: Any, status: int) -> BackendError:
        if isinstance(body, dict):
            message = (body.get('message') or body.get('error_description')
                       or body.get('msg') or body.get('error') or f"HTTP {status}")
            code = body.get('code') or body.get('error_code')
            return BackendError(str(message), code=str(code) if code else None, status=status)
        return BackendError(str(body or f"HTTP {status}"), status=status)

    # -------------------------------------------------
    # Sessions
    # -------------------------------------------------

    async def _current_session(self) -> Optional[Session]:
        return await self.store.load()

    async def _save_session(self, session: Session) -> None:
        await self.store.save(session)

    async def _refresh(self, session: Session) -> BackendResult:
        result = await self._request(
            'POST', '/auth/v1/token',
            params={'grant_type': 'refresh_token'},
            json_body={'refresh_token': session.refresh_token},
            headers=await self._headers(authed=False),
        )
        if result.error:
            return result
        fresh = Session.from_token_response(result.data)
        await self._save_session(fresh)
        self.logger.debug(f"session refreshed for {fresh.user.id}")
        self._emit(AuthEvent.TOKEN_REFRESHED, fresh)
        return BackendResult(data=fresh)

    async def get_session(self) -> BackendResult:
        session = await self._current_session()
        if session is None:
            return BackendResult(data=None)
        if not session.is_expired():
            return BackendResult(data=session)

        if not session.refresh_token:
            await self.store.clear()
            return BackendResult(data=None)

        result = await self._refresh(session)
        if result.error and not result.error.transport:
            # Refresh token rejected: the session is gone
            await self.store.clear()
            self._emit(AuthEvent.SIGNED_OUT, None)
        return result

    async def sign_in_with_password(self, email: str, password: str) -> BackendResult:
        result = await self._request(
            'POST', '/auth/v1/token',
            params={'grant_type': 'password'},
            json_body={'email': email, 'password': password},
            headers=await self._headers(authed=False),
        )
        if result.error:
            return result
        session = Session.from_token_response(result.data)
        await self._save_session(session)
        self._emit(AuthEvent.SIGNED_IN, session)
        return BackendResult(data=session.user)

    async def sign_up(self, email: str, password: str,
                      metadata: Optional[Dict[str, Any]] = None) -> SignUpResult:
        result = await self._request(
            'POST', '/auth/v1/signup',
            json_body={'email': email, 'password': password, 'data': metadata or {}},
            headers=await self._headers(authed=False),
        )
        if result.error:
            return SignUpResult(error=result.error)

        body = result.data or {}
        if body.get('access_token'):
            session = Session.from_token_response(body)
            await self._save_session(session)
            self._emit(AuthEvent.SIGNED_IN, session)
            return SignUpResult(user=session.user, session=session)

        # Email confirmation pending: the body is the bare user object
        user_obj = body.get('user') or body
        return SignUpResult(user=AuthUser.from_dict(user_obj) if user_obj.get('id') else None)

    async def sign_out(self) -> None:
        session = await self._current_session()
        if session:
            result = await self._request(
                'POST', '/auth/v1/logout',
                headers=await self._headers(),
            )
            if result.error:
                self.logger.warn(f"remote sign out failed: {result.error.message}")
        await self.store.clear()
        self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_user(self) -> BackendResult:
        session = await self._current_session()
        if session is None:
            return BackendResult(data=None)
        result = await self._request('GET', '/auth/v1/user', headers=await self._headers())
        if result.error:
            return result
        return BackendResult(data=AuthUser.from_dict(result.data))

    # -------------------------------------------------
    # Tables (PostgREST)
    # -------------------------------------------------

    @staticmethod
    def _filter_params(filters: Optional[Dict[str, Any]]) -> dict:
        return {col: f"eq.{value}" for col, value in (filters or {}).items()}

    async def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     columns: str = "*", order: Optional[str] = None,
                     descending: bool = False) -> BackendResult:
        params = {'select': columns, **self._filter_params(filters)}
        if order:
            params['order'] = f"{order}.{'desc' if descending else 'asc'}"
        result = await self._request('GET', f'/rest/v1/{table}', params=params,
                                     headers=await self._headers())
        if result.ok and result.data is None:
            result.data = []
        return result

    async def insert(self, table: str, rows: List[dict]) -> BackendResult:
        return await self._request(
            'POST', f'/rest/v1/{table}', json_body=rows,
            headers=await self._headers(extra={'Prefer': 'return=representation'}),
        )

    async def upsert(self, table: str, rows: List[dict], on_conflict: str) -> BackendResult:
        return await self._request(
            'POST', f'/rest/v1/{table}', json_body=rows,
            params={'on_conflict': on_conflict},
            headers=await self._headers(
                extra={'Prefer': 'resolution=merge-duplicates,return=representation'}),
        )

    async def update(self, table: str, values: dict, filters: Dict[str, Any]) -> BackendResult:
        return await self._request(
            'PATCH', f'/rest/v1/{table}', json_body=values,
            params=self._filter_params(filters),
            headers=await self._headers(extra={'Prefer': 'return=representation'}),
        )

    async def delete(self, table: str, filters: Dict[str, Any]) -> BackendResult:
        return await self._request(
            'DELETE', f'/rest/v1/{table}',
            params=self._filter_params(filters),
            headers=await self._headers(),
        )
