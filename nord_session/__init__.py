"""Nord Session.

Session keys, login and account provisioning for Nord trading clients.
"""
from .version import __version__
from .conf import SessionConfig
from .data import (
    AccountInfo,
    Balance,
    Order,
    ProvisioningAttempt,
    ProvisioningState,
    ProvisioningStatus,
    SessionIdentity,
    SessionKey,
    SessionPhase,
)
from .exceptions import (
    AccountNotFoundError,
    ApprovalRequestError,
    EntropyUnavailableError,
    FundingRequestError,
    KeyStorageError,
    ProvisioningCancelledError,
    ProvisioningTimeoutError,
    SessionBusyError,
    SessionCancelledError,
    SessionError,
    SignatureError,
    TransientNetworkError,
)
from .backend import AccountDirectory, ProvisioningGateway, SessionGateway
from .client import NordHttpClient
from .provisioning import ProvisioningCoordinator
from .manager import SessionManager
from .vault import KeyVault

__all__ = (
    "__version__",
    "SessionConfig",
    "AccountInfo",
    "Balance",
    "Order",
    "ProvisioningAttempt",
    "ProvisioningState",
    "ProvisioningStatus",
    "SessionIdentity",
    "SessionKey",
    "SessionPhase",
    "AccountNotFoundError",
    "ApprovalRequestError",
    "EntropyUnavailableError",
    "FundingRequestError",
    "KeyStorageError",
    "ProvisioningCancelledError",
    "ProvisioningTimeoutError",
    "SessionBusyError",
    "SessionCancelledError",
    "SessionError",
    "SignatureError",
    "TransientNetworkError",
    "AccountDirectory",
    "ProvisioningGateway",
    "SessionGateway",
    "NordHttpClient",
    "ProvisioningCoordinator",
    "SessionManager",
    "KeyVault",
)
