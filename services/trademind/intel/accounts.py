# services/trademind/intel/accounts.py
"""Payment proof submission and admin review.

Both change gate state, so callers refresh the reconciler afterwards; the
core never polls.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .backend import BackendResult
from .errors import BackendError
from .models import PaymentDetails, User, UserStatus, utc_now_iso
from .store import ProfileRepository

DEFAULT_FEE = 1999
PLACEHOLDER_SCREENSHOT = "https://picsum.photos/400/600"


@dataclass
class PaymentForm:
    transaction_id: str
    amount: float = DEFAULT_FEE
    screenshot_url: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'PaymentForm':
        return cls(
            transaction_id=str(d.get('transactionId', '')).strip(),
            amount=d.get('amount', DEFAULT_FEE),
            screenshot_url=d.get('screenshot') or d.get('screenshotUrl'),
        )

    def to_payment(self) -> PaymentDetails:
        return PaymentDetails(
            transaction_id=self.transaction_id,
            amount=self.amount,
            date=utc_now_iso(),
            screenshot_url=self.screenshot_url or PLACEHOLDER_SCREENSHOT,
        )


async def submit_payment(repository: ProfileRepository, user: User,
                         form: PaymentForm) -> BackendResult:
    if not form.transaction_id:
        return BackendResult(error=BackendError("Transaction ID is required"))
    return await repository.submit_payment_proof(user.id, form.to_payment())


class AdminConsole:
    """User review for admins: platform stats and approve/reject."""

    def __init__(self, repository: ProfileRepository, logger):
        self.repository = repository
        self.logger = logger

    async def list_users(self) -> List[User]:
        return await self.repository.get_all_profiles()

    @staticmethod
    def stats(users: List[User]) -> Dict[str, Any]:
        return {
            'total': len(users),
            'pending': sum(1 for u in users if u.status == UserStatus.PENDING),
            'active': sum(1 for u in users if u.status == UserStatus.ACTIVE),
            'revenue': sum(u.payment_details.amount or 0 for u in users if u.payment_details),
        }

    async def change_status(self, admin: User, user_id: str, status: UserStatus,
                            reason: Optional[str] = None) -> BackendResult:
        if not admin.is_admin:
            return BackendResult(error=BackendError("Admin access required", status=403))
        if status == UserStatus.REJECTED and not (reason or '').strip():
            return BackendResult(error=BackendError("Please provide a rejection reason"))

        result = await self.repository.update_profile_status(
            user_id, status, admin.id,
            reason if status == UserStatus.REJECTED else None)
        if result.ok:
            self.logger.info(f"{admin.email} set {user_id} to {status.value}", emoji="🛂")
        return result
