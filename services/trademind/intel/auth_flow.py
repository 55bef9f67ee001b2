# services/trademind/intel/auth_flow.py
"""Login and signup flows behind the auth screens."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .backend import BackendPort
from .errors import (
    BackendConnectionError, ErrorKind, FAILED_TO_FETCH, ProfileError,
    RecursionPolicyError, RECURSION_FIX_STEPS,
)
from .models import AuthUser, User
from .store import ProfileRepository, registration_from_form

RECURSION_MESSAGE = "DATABASE ERROR: Infinite recursion in security policies detected."
NETWORK_MESSAGE = "Network Error: Failed to reach Supabase. Check your connection or ad-blocker."
PROFILE_MISSING_MESSAGE = "Authentication successful, but could not load your profile."
INVALID_LOGIN_MESSAGE = "Invalid email or password"
SIGNUP_FAILED_MESSAGE = "Error creating account."
DEFAULT_TRADER_NAME = "Trader"


@dataclass
class LoginOutcome:
    user: Optional[User] = None
    error: Optional[str] = None
    show_fix: bool = False
    fix_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user': self.user.to_dict() if self.user else None,
            'error': self.error,
            'showFix': self.show_fix,
            'fixSteps': self.fix_steps,
        }


@dataclass
class SignupOutcome:
    user: Optional[User] = None
    confirmation_required: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user': self.user.to_dict() if self.user else None,
            'confirmationRequired': self.confirmation_required,
            'error': self.error,
        }


class AuthFlows:
    """Sign in / sign up and make sure a profile row exists afterwards."""

    def __init__(self, backend: BackendPort, repository: ProfileRepository, logger):
        self.backend = backend
        self.repository = repository
        self.logger = logger

    async def _sync_profile(self, auth_user: AuthUser, email: str) -> Optional[User]:
        profile = None
        try:
            profile = await self.repository.get_profile(auth_user.id)
        except ProfileError as e:
            if e.kind == ErrorKind.RECURSION:
                raise
            self.logger.warn(f"profile lookup after sign in failed: {e}")

        if profile is None:
            self.logger.warn(f"profile synchronization needed for {auth_user.id}")
            name = auth_user.user_metadata.get('full_name') or DEFAULT_TRADER_NAME
            created = await self.repository.create_profile(
                auth_user.id, name, auth_user.email or email)
            if created.error:
                raise created.error
            profile = await self.repository.get_profile(auth_user.id)
        return profile

    async def login(self, email: str, password: str) -> LoginOutcome:
        try:
            result = await self.backend.sign_in_with_password(email, password)
            if result.error:
                raise result.error

            auth_user: Optional[AuthUser] = result.data
            if auth_user is None:
                return LoginOutcome(error=INVALID_LOGIN_MESSAGE)

            profile = await self._sync_profile(auth_user, email)
            if profile is None:
                return LoginOutcome(error=PROFILE_MISSING_MESSAGE)

            self.logger.ok(f"{email} signed in")
            return LoginOutcome(user=profile)
        except Exception as e:
            return self._login_failure(e)

    def _login_failure(self, err: Exception) -> LoginOutcome:
        msg = getattr(err, 'message', None) or str(err)
        self.logger.warn(f"login failed: {msg}")

        if isinstance(err, RecursionPolicyError) or "recursion" in msg.lower():
            return LoginOutcome(error=RECURSION_MESSAGE, show_fix=True,
                                fix_steps=list(RECURSION_FIX_STEPS))
        if FAILED_TO_FETCH in msg or isinstance(err, BackendConnectionError):
            return LoginOutcome(error=NETWORK_MESSAGE)
        return LoginOutcome(error=msg or INVALID_LOGIN_MESSAGE)

    async def signup(self, form: Dict[str, Any]) -> SignupOutcome:
        """
        Two-step signup form: name/email/password, then mobile, experience,
        market and capital.

        The profile row itself is created by a database trigger on the
        backend; only the registration answers are written here.
        """
        try:
            result = await self.backend.sign_up(
                form['email'], form['password'], {'full_name': form.get('name', '')})
            if result.error:
                raise result.error
            if result.user is None:
                return SignupOutcome(error=SIGNUP_FAILED_MESSAGE)

            saved = await self.repository.save_registration_details(
                result.user.id, registration_from_form(form))
            if saved.error:
                self.logger.warn(f"registration details failed to save: {saved.error.message}")

            if result.session is None:
                self.logger.info(f"{form['email']} signed up, confirmation required")
                return SignupOutcome(confirmation_required=True)

            profile = await self.repository.get_profile(result.user.id)
            return SignupOutcome(user=profile)
        except Exception as e:
            msg = getattr(e, 'message', None) or str(e)
            self.logger.warn(f"signup failed: {msg}")
            return SignupOutcome(error=msg or SIGNUP_FAILED_MESSAGE)
