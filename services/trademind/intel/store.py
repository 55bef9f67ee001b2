# services/trademind/intel/store.py
"""Profile repository: shapes backend rows into journal models.

get_profile() and create_profile() are the only calls whose failures are
classified; everything else is a plain pass-through returning a
BackendResult (or an empty/default value for reads).
"""

from typing import Any, Dict, List, Optional

from .backend import BackendPort, BackendResult
from .errors import (
    BackendError, ErrorKind, ProfileError, as_profile_error, classify,
)
from .models import (
    AdminAction, PaymentDetails, RegistrationDetails, RiskRules, Strategy,
    Trade, User, UserStatus, utc_now_iso,
)
from .policy import AccountPolicy


class ProfileRepository:
    """Typed access to profiles, registrations, trades, strategies and risk rules."""

    def __init__(self, backend: BackendPort, logger, policy: Optional[AccountPolicy] = None):
        self.backend = backend
        self.logger = logger
        self.policy = policy or AccountPolicy()

    # ==================== Profiles ====================

    async def get_profile(self, user_id: str) -> Optional[User]:
        """
        Fetch a profile with its registration details.

        Returns None when the row does not exist or on an unclassified
        failure. Raises RecursionPolicyError / BackendConnectionError for
        failures that must reach a gate.
        """
        try:
            result = await self.backend.select_one('profiles', {'id': user_id})
            if result.error:
                self.logger.error(f"profile fetch failed for {user_id}: {result.error.message}")
                typed = as_profile_error(result.error)
                if typed:
                    raise typed
                return None

            if not result.data:
                return None

            reg = await self.backend.select_one('registration_details', {'user_id': user_id})
            if reg.error:
                self.logger.warn(f"registration details fetch failed: {reg.error.message}")

            return User.from_row(result.data, reg.data if reg.ok else None)
        except ProfileError:
            raise
        except Exception as e:
            if classify(e) == ErrorKind.CONNECTION:
                typed = as_profile_error(e)
                raise typed from e
            self.logger.error(f"unexpected exception in get_profile: {e}")
            return None

    async def create_profile(self, user_id: str, name: str, email: str) -> BackendResult:
        """Upsert the profile row for a freshly authenticated identity."""
        role, status = self.policy.initial_account(email)
        result = await self.backend.upsert('profiles', [{
            'id': user_id,
            'name': name,
            'email': email,
            'role': role.value,
            'status': status.value,
            'updated_at': utc_now_iso(),
        }], on_conflict='id')

        if result.error:
            typed = as_profile_error(result.error)
            if typed:
                raise typed
            return result

        rows = result.data or []
        row = rows[0] if isinstance(rows, list) and rows else None
        self.logger.info(f"profile created for {user_id} (role={role.value}, status={status.value})")
        return BackendResult(data=User.from_row(row) if row else None)

    async def get_all_profiles(self) -> List[User]:
        result = await self.backend.select('profiles', columns='*, registration_details(*)')
        if result.error:
            self.logger.error(f"error fetching all profiles: {result.error.message}")
            return []

        users = []
        for row in result.data or []:
            regs = row.pop('registration_details', None) or []
            if isinstance(regs, dict):
                regs = [regs]
            users.append(User.from_row(row, regs[0] if regs else None))
        return users

    async def update_profile_status(self, user_id: str, status: UserStatus, admin_id: str,
                                    reason: Optional[str] = None) -> BackendResult:
        result = await self.backend.update('profiles', {'status': status.value}, {'id': user_id})
        if result.error:
            return BackendResult(error=result.error)

        action = AdminAction.APPROVE if status == UserStatus.ACTIVE else AdminAction.REJECT
        log = await self.backend.insert('admin_logs', [{
            'user_id': user_id,
            'admin_id': admin_id,
            'action': action.value,
            'reason': reason,
        }])
        if log.error:
            self.logger.warn(f"could not log admin action: {log.error.message}")
        return BackendResult()

    async def save_registration_details(self, user_id: str,
                                        details: RegistrationDetails) -> BackendResult:
        result = await self.backend.upsert(
            'registration_details', [details.to_row(user_id)], on_conflict='user_id')
        return BackendResult(error=result.error)

    async def submit_payment_proof(self, user_id: str, payment: PaymentDetails) -> BackendResult:
        """Attach payment proof; resubmission puts the account back in the queue."""
        result = await self.backend.update('profiles', {
            'payment_details': payment.to_dict(),
            'status': UserStatus.PENDING.value,
        }, {'id': user_id})
        return BackendResult(error=result.error)

    # ==================== Risk rules ====================

    async def get_risk_rules(self, user_id: str) -> BackendResult:
        result = await self.backend.select_one('risk_management', {'user_id': user_id})
        if result.error:
            return result
        return BackendResult(data=RiskRules.from_row(result.data) if result.data else None)

    async def save_risk_rules(self, user_id: str, rules: RiskRules) -> BackendResult:
        result = await self.backend.upsert('risk_management', [{
            'user_id': user_id,
            **rules.to_dict(),
            'updated_at': utc_now_iso(),
        }], on_conflict='user_id')
        return BackendResult(error=result.error)

    # ==================== Trades ====================

    async def get_trades(self, user_id: str) -> List[Trade]:
        """Trades newest first; empty on any failure."""
        result = await self.backend.select(
            'trades', {'user_id': user_id}, order='timestamp', descending=True)
        if result.error:
            self.logger.warn(f"trade fetch failed for {user_id}: {result.error.message}")
            return []
        return [Trade.from_row(row) for row in result.data or []]

    async def save_trade(self, trade: Trade) -> BackendResult:
        return await self.backend.insert('trades', [trade.to_row()])

    # ==================== Strategies ====================

    async def get_strategies(self, user_id: str) -> List[Strategy]:
        result = await self.backend.select('strategies', {'user_id': user_id})
        if result.error:
            self.logger.warn(f"strategy fetch failed for {user_id}: {result.error.message}")
            return []
        return [Strategy.from_row(row) for row in result.data or []]

    async def save_strategy(self, strategy: Strategy) -> BackendResult:
        return await self.backend.insert('strategies', [strategy.to_row()])

    async def delete_strategy(self, strategy_id: str) -> BackendResult:
        result = await self.backend.delete('strategies', {'id': strategy_id})
        return BackendResult(error=result.error)


def error_message(result: BackendResult, default: str) -> Optional[str]:
    """Form-level text for a failed pass-through call."""
    if result.error is None:
        return None
    err: BackendError = result.error
    return err.message or default


def registration_from_form(form: Dict[str, Any]) -> RegistrationDetails:
    """Signup form fields (experience/market/capital) to RegistrationDetails."""
    return RegistrationDetails(
        mobile=form.get('mobile', ''),
        trading_experience=form.get('experience', 'Beginner'),
        preferred_market=form.get('market', 'Indices'),
        capital_size=form.get('capital', '10k - 50k'),
    )
