"""
Session Errors — typed failure taxonomy for login and provisioning.

Every error carries a short ``reason`` code so the UI layer can render an
actionable message without string-matching exception text.
"""
from typing import Optional


class SessionError(Exception):
    """Base class for all session and provisioning failures."""

    reason: str = "session_error"

    def __init__(self, message: str = "", *, reason: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if reason is not None:
            self.reason = reason

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} reason={self.reason} message={self.message!r}>"


class KeyStorageError(SessionError):
    """Durable key storage is unavailable or holds an unreadable record."""

    reason = "key_storage"


class EntropyUnavailableError(KeyStorageError):
    """No cryptographically secure random source is available."""

    reason = "entropy_unavailable"


class SignatureError(SessionError):
    """The wallet refused or failed to sign; the user must retry explicitly."""

    reason = "signature_rejected"


class AccountNotFoundError(SessionError):
    """The backend has no account for the given key.

    Not a failure on its own: it routes the session into provisioning.
    """

    reason = "account_not_found"


class TransientNetworkError(SessionError):
    """A retryable network or backend failure."""

    reason = "network"

    def __init__(
        self,
        message: str = "",
        *,
        status: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, reason=reason)
        self.status = status


class ApprovalRequestError(SessionError):
    """The allowance approval request was rejected."""

    reason = "approval_rejected"


class FundingRequestError(SessionError):
    """The funding request was rejected. Never resubmitted automatically."""

    reason = "funding_rejected"


class ProvisioningTimeoutError(SessionError):
    """Bounded polling ended before the expected state became visible."""

    reason = "provisioning_timeout"

    def __init__(self, message: str = "", *, attempts: int = 0, reason: Optional[str] = None):
        super().__init__(message, reason=reason)
        self.attempts = attempts


class SessionCancelledError(SessionError):
    """A logout overtook the login or refresh that was in flight."""

    reason = "cancelled"


class ProvisioningCancelledError(SessionCancelledError):
    """The provisioning attempt was cancelled by logout or a newer attempt."""

    reason = "provisioning_cancelled"


class SessionBusyError(SessionError):
    """A login or refresh is already in flight on this session manager."""

    reason = "busy"
