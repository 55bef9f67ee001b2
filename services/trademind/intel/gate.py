# services/trademind/intel/gate.py
"""Which top-level screen a client should render.

Pure functions of the reconciler state; nothing here touches the backend.
"""

from enum import Enum
from typing import List, Optional, TYPE_CHECKING

from .models import User, UserStatus

if TYPE_CHECKING:
    from .reconciler import ReconcilerState


class Screen(str, Enum):
    CONNECTION_ERROR = "connection_error"
    LOADING = "loading"
    LOGIN = "login"
    SIGNUP = "signup"
    PAYMENT = "payment"
    PENDING_APPROVAL = "pending_approval"
    APP = "app"


class AuthView(str, Enum):
    LOGIN = "login"
    SIGNUP = "signup"


class View(str, Enum):
    DASHBOARD = "dashboard"
    ENTRY = "entry"
    ANALYSIS = "analysis"
    CALENDAR = "calendar"
    STRATEGIES = "strategies"
    RISK = "risk"
    ADMIN = "admin"


DEFAULT_VIEW = View.DASHBOARD

# Sidebar order
NAVIGATION = [
    (View.DASHBOARD, "Dashboard"),
    (View.ENTRY, "Log Trade"),
    (View.ANALYSIS, "Analysis"),
    (View.CALENDAR, "Calendar"),
    (View.STRATEGIES, "Strategies"),
    (View.RISK, "Risk Management"),
    (View.ADMIN, "Admin Panel"),
]

ADMIN_ONLY_VIEWS = {View.ADMIN}


def access_screen(user: User) -> Screen:
    """
    Gate for a resolved user.

    The payment wall is checked before the approval wall, so a REJECTED
    user without fresh payment proof is sent back to Payment.
    """
    if user.is_admin:
        return Screen.APP
    if user.payment_details is None and user.status != UserStatus.ACTIVE:
        return Screen.PAYMENT
    if user.status in (UserStatus.PENDING, UserStatus.REJECTED):
        return Screen.PENDING_APPROVAL
    return Screen.APP


def decide_screen(state: "ReconcilerState") -> Screen:
    if state.connection_error:
        return Screen.CONNECTION_ERROR
    if state.loading:
        return Screen.LOADING
    if state.current_user is None:
        return Screen.LOGIN if state.auth_view == AuthView.LOGIN else Screen.SIGNUP
    return access_screen(state.current_user)


def effective_view(user: Optional[User], view: View) -> View:
    """Admin-only views fall back to the dashboard for everyone else."""
    if view in ADMIN_ONLY_VIEWS and not (user and user.is_admin):
        return DEFAULT_VIEW
    return view


def navigation_for(user: Optional[User]) -> List[dict]:
    is_admin = bool(user and user.is_admin)
    return [
        {'view': view.value, 'label': label}
        for view, label in NAVIGATION
        if is_admin or view not in ADMIN_ONLY_VIEWS
    ]
