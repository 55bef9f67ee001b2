# services/trademind/intel/errors.py
"""Error kinds and classification.

The hosted backend reports failures as free text. Classification happens
once, at the repository boundary, and the result travels as an exception
type carrying an ErrorKind so that callers never re-parse messages.
"""

from enum import Enum
from typing import Optional

import aiohttp


class ErrorKind(str, Enum):
    RECURSION = "RECURSION_ERROR"
    CONNECTION = "CONNECTION_ERROR"
    OTHER = "OTHER"


# Case-insensitive substrings. Recursion markers are checked first, so a
# message mentioning both "policy" and "fetch" classifies as RECURSION.
RECURSION_MARKERS = ("recursion", "infinite loop", "policy")
CONNECTION_MARKERS = ("fetch", "network", "failed to fetch")

FAILED_TO_FETCH = "Failed to fetch"

RECURSION_FIX_STEPS = [
    "Go to your Supabase Dashboard",
    "Open the SQL Editor",
    "Run the code in SUPABASE_FIX.sql",
    "To enable Admin Panel: update role to 'ADMIN' for your email address in the profiles table.",
]


class BackendError(Exception):
    """An error reported by the hosted backend (or by the transport to it)."""

    def __init__(self, message: str, code: Optional[str] = None,
                 status: Optional[int] = None, transport: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.transport = transport

    def to_dict(self) -> dict:
        return {'message': self.message, 'code': self.code, 'status': self.status}


class ProfileError(Exception):
    """Base for errors that must reach a gate instead of being swallowed."""
    kind = ErrorKind.OTHER

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.kind.value)


class RecursionPolicyError(ProfileError):
    """Authorization policies on the backend are evaluating in a loop."""
    kind = ErrorKind.RECURSION


class BackendConnectionError(ProfileError):
    """The backend could not be reached."""
    kind = ErrorKind.CONNECTION


def classify_message(message: Optional[str]) -> ErrorKind:
    msg = (message or "").lower()
    if any(marker in msg for marker in RECURSION_MARKERS):
        return ErrorKind.RECURSION
    if any(marker in msg for marker in CONNECTION_MARKERS):
        return ErrorKind.CONNECTION
    return ErrorKind.OTHER


def classify(err: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind."""
    if isinstance(err, ProfileError):
        return err.kind
    if isinstance(err, BackendError) and err.transport:
        return ErrorKind.CONNECTION
    if isinstance(err, (aiohttp.ClientConnectionError, ConnectionError)):
        return ErrorKind.CONNECTION
    return classify_message(getattr(err, "message", None) or str(err))


def as_profile_error(err: BaseException) -> Optional[ProfileError]:
    """Typed equivalent of `err`, or None when it is not gate-worthy."""
    kind = classify(err)
    if kind == ErrorKind.RECURSION:
        return RecursionPolicyError(str(err))
    if kind == ErrorKind.CONNECTION:
        return BackendConnectionError(str(err))
    return None
