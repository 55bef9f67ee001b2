# services/trademind/intel/reconciler.py
"""
Session reconciliation core.

Turns "is there an authenticated session" into a fully populated profile
(or None), recovers from transient backend failures, and feeds the access
gate.

Every state write goes through a single worker task draining one asyncio
queue: startup initialization, auth-state notifications from the backend
client, caller-triggered refreshes and view callbacks are applied strictly
in arrival order. Each job reads from the backend and then replaces the
state snapshot wholesale, and a StateChanged event is published after
every write.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional

from .backend import AuthEvent, BackendPort, Subscription
from .errors import (
    ErrorKind, ProfileError, RECURSION_FIX_STEPS, as_profile_error, classify,
)
from .events import ConnectionLost, EventBus, PolicyErrorDetected, StateChanged
from .gate import (
    AuthView, DEFAULT_VIEW, Screen, View, decide_screen, effective_view, navigation_for,
)
from .models import Session, User
from .store import ProfileRepository

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_SEC = 0.5

# Events that carry a (possibly new) identity to resolve
RESOLVING_EVENTS = {AuthEvent.SIGNED_IN, AuthEvent.USER_UPDATED}


@dataclass(frozen=True)
class ReconcilerState:
    current_user: Optional[User] = None
    loading: bool = True
    connection_error: bool = False
    policy_error: Optional[str] = None
    auth_view: AuthView = AuthView.LOGIN
    active_view: View = DEFAULT_VIEW

    @property
    def screen(self) -> Screen:
        return decide_screen(self)

    @property
    def visible_view(self) -> View:
        return effective_view(self.current_user, self.active_view)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user': self.current_user.to_dict() if self.current_user else None,
            'loading': self.loading,
            'connectionError': self.connection_error,
            'policyError': self.policy_error,
            'fixSteps': RECURSION_FIX_STEPS if self.policy_error else [],
            'authView': self.auth_view.value,
            'activeView': self.visible_view.value,
            'screen': self.screen.value,
            'navigation': navigation_for(self.current_user),
        }


class SessionReconciler:
    """Single-writer owner of the resolved user for one client context."""

    def __init__(self, backend: BackendPort, repository: ProfileRepository, logger,
                 bus: Optional[EventBus] = None,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 retry_base: float = DEFAULT_RETRY_BASE_SEC,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.backend = backend
        self.repository = repository
        self.logger = logger
        self.bus = bus or EventBus(logger)
        self.max_attempts = max_attempts
        self.retry_base = retry_base
        self._sleep = sleep

        self._state = ReconcilerState()
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._closed = False

    @classmethod
    def from_config(cls, config: Dict[str, Any], backend: BackendPort,
                    repository: ProfileRepository, logger,
                    bus: Optional[EventBus] = None) -> 'SessionReconciler':
        return cls(
            backend, repository, logger, bus=bus,
            max_attempts=int(config.get('PROFILE_FETCH_ATTEMPTS', DEFAULT_MAX_ATTEMPTS)),
            retry_base=int(config.get('PROFILE_RETRY_BASE_MS', 500)) / 1000.0,
        )

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._closed

    # -------------------------------------------------
    # Lifecycle
    # -------------------------------------------------

    async def start(self) -> ReconcilerState:
        """Start the worker, subscribe to auth changes, run the first pass."""
        if self._closed:
            raise RuntimeError("reconciler already closed")
        if self._worker is None:
            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(self._drain(), name="reconciler-worker")
            self._subscription = self.backend.on_auth_state_change(self.on_auth_state_change)
        return await self.initialize()

    async def close(self) -> None:
        """Release the auth subscription (exactly once) and stop the worker."""
        if self._closed:
            return
        self._closed = True

        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)

        # Jobs that never ran
        while self._queue is not None and not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()

        self.logger.debug("reconciler closed")

    async def _drain(self) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                result = await job()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    def _submit(self, job: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        if self._closed or self._queue is None:
            raise RuntimeError("reconciler is not running")
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        return future

    async def _set(self, reason: str, **changes) -> None:
        self._state = replace(self._state, **changes)
        await self.bus.publish(StateChanged(reason=reason, state=self._state))

    # -------------------------------------------------
    # Profile resolution
    # -------------------------------------------------

    async def resolve_profile(self, user_id: str,
                              max_attempts: Optional[int] = None) -> Optional[User]:
        """
        Fetch the profile for `user_id`, retrying with a linear backoff.

        Attempt i (0-based) that yields nothing is followed by a wait of
        retry_base * (i + 1). Connection and recursion failures abort at
        once and propagate. Returns None when every attempt came back empty.
        """
        attempts = max_attempts or self.max_attempts
        for i in range(attempts):
            try:
                profile = await self.repository.get_profile(user_id)
                if profile:
                    return profile
            except ProfileError:
                raise
            except Exception as e:
                typed = as_profile_error(e)
                if typed:
                    raise typed from e
                self.logger.warn(f"profile attempt {i + 1}/{attempts} for {user_id} failed: {e}")

            delay = self.retry_base * (i + 1)
            self.logger.debug(f"no profile for {user_id} yet, retrying in {delay:.1f}s")
            await self._sleep(delay)

        self.logger.warn(f"profile for {user_id} not found after {attempts} attempts")
        return None

    async def _handle_gate_error(self, during: str, err: Exception) -> None:
        kind = classify(err)
        if kind == ErrorKind.CONNECTION:
            self.logger.error(f"{during}: backend unreachable ({err})", emoji="📡")
            await self._set(during, connection_error=True)
            await self.bus.publish(ConnectionLost(during=during, message=str(err)))
        elif kind == ErrorKind.RECURSION:
            self.logger.error(f"{during}: security policy recursion ({err})", emoji="🔁")
            await self._set(during, policy_error=str(err))
            await self.bus.publish(PolicyErrorDetected(during=during, message=str(err)))
        else:
            self.logger.error(f"{during} error: {err}")

    # -------------------------------------------------
    # Jobs (run on the worker only)
    # -------------------------------------------------

    async def _do_initialize(self) -> ReconcilerState:
        await self._set('initialize', loading=True, connection_error=False, policy_error=None)
        try:
            result = await self.backend.get_session()
            if result.error:
                if classify(result.error) != ErrorKind.OTHER:
                    raise result.error
                self.logger.warn(f"session lookup failed: {result.error.message}")

            session: Optional[Session] = result.data if result.ok else None
            if session and session.user:
                profile = await self.resolve_profile(session.user.id)
                await self._set('initialize', current_user=profile)
            else:
                await self._set('initialize', current_user=None)
        except Exception as e:
            if classify(e) == ErrorKind.RECURSION:
                await self._set('initialize', current_user=None)
            await self._handle_gate_error('initialize', e)
        finally:
            await self._set('initialize', loading=False)
        return self._state

    async def _do_auth_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        reason = f"auth:{event.value}"
        try:
            if event in RESOLVING_EVENTS and session and session.user:
                profile = await self.resolve_profile(session.user.id)
                await self._set(reason, current_user=profile, policy_error=None)
            elif event == AuthEvent.SIGNED_OUT:
                await self._set(reason, current_user=None, active_view=DEFAULT_VIEW)
        except Exception as e:
            await self._handle_gate_error(reason, e)

    async def _do_refresh(self) -> Optional[User]:
        user = self._state.current_user
        if user is None:
            return None
        try:
            profile = await self.resolve_profile(user.id)
            await self._set('refresh', current_user=profile)
        except Exception as e:
            await self._handle_gate_error('refresh', e)
        return self._state.current_user

    # -------------------------------------------------
    # Entry points
    # -------------------------------------------------

    async def initialize(self) -> ReconcilerState:
        return await self._submit(self._do_initialize)

    async def retry_connection(self) -> ReconcilerState:
        """Start over after the connection-error screen."""
        return await self.initialize()

    def on_auth_state_change(self, event, session: Optional[Session]) -> None:
        """Backend subscription handler. Queues the change and returns."""
        if self._closed:
            return
        try:
            event = AuthEvent(event)
        except ValueError:
            self.logger.debug(f"ignoring unknown auth event {event!r}")
            return
        if event not in RESOLVING_EVENTS and event != AuthEvent.SIGNED_OUT:
            return
        self._submit(lambda: self._do_auth_change(event, session))

    async def refresh(self) -> Optional[User]:
        """Re-resolve the current user after an action that changes gate state."""
        return await self._submit(self._do_refresh)

    async def accept_user(self, user: User) -> None:
        """Install a profile produced by the login or signup flow."""
        async def job():
            await self._set('accept', current_user=user, policy_error=None)
        await self._submit(job)

    async def report_error(self, during: str, err: Exception) -> None:
        """Route a gate-worthy error raised outside the worker (e.g. login)."""
        await self._submit(lambda: self._handle_gate_error(during, err))

    async def switch_auth_view(self) -> AuthView:
        async def job():
            flipped = AuthView.SIGNUP if self._state.auth_view == AuthView.LOGIN else AuthView.LOGIN
            await self._set('auth_view', auth_view=flipped)
            return flipped
        return await self._submit(job)

    async def set_active_view(self, view) -> View:
        view = View(view)

        async def job():
            await self._set('view', active_view=view)
            return self._state.visible_view
        return await self._submit(job)

    async def flush(self) -> ReconcilerState:
        """Wait until every job queued so far has been applied."""
        async def barrier():
            return self._state
        return await self._submit(barrier)

    async def logout(self) -> ReconcilerState:
        await self.backend.sign_out()
        # SIGNED_OUT was queued by the backend
        return await self.flush()
