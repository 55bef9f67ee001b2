# services/trademind/intel/policy.py
"""Account policy applied when a profile row is first created."""

from typing import Callable, Dict, Any, Tuple

from .models import UserRole, UserStatus

ADMIN_EMAIL_MARKER = "admin"


def email_contains_admin(email: str) -> bool:
    """Development bootstrap: any address containing 'admin' becomes an admin."""
    return ADMIN_EMAIL_MARKER in (email or "").lower()


def never_admin(email: str) -> bool:
    return False


class AccountPolicy:
    """Decides the initial role and status of a new profile."""

    def __init__(self, is_admin_email: Callable[[str], bool] = email_contains_admin):
        self.is_admin_email = is_admin_email

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'AccountPolicy':
        enabled = str(config.get('AUTO_ADMIN_BY_EMAIL', 'true')).lower() == 'true'
        return cls(email_contains_admin if enabled else never_admin)

    def initial_role(self, email: str) -> UserRole:
        return UserRole.ADMIN if self.is_admin_email(email) else UserRole.USER

    def initial_status(self, role: UserRole) -> UserStatus:
        return UserStatus.ACTIVE if role == UserRole.ADMIN else UserStatus.PENDING

    def initial_account(self, email: str) -> Tuple[UserRole, UserStatus]:
        role = self.initial_role(email)
        return role, self.initial_status(role)
