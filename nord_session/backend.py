"""
Collaborator interfaces consumed by the session core.

Implementations must raise ``TransientNetworkError`` for retryable failures.
``NordHttpClient`` in ``nord_session.client`` implements all three against
the Nord web server and faucet; tests use in-memory stubs.
"""
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Sequence, Union

from .data import AccountInfo

# Signs with the wallet (may prompt a human). EVM wallets return a hex string.
WalletSignFn = Callable[[bytes], Awaitable[Union[bytes, str]]]

SessionSignFn = Callable[[bytes], bytes]


class AccountDirectory(ABC):
    """Read-only account lookups."""

    @abstractmethod
    async def probe_account(self, public_key: bytes) -> Optional[list[int]]:
        """Account ids linked to ``public_key``, or None when there is none yet."""

    @abstractmethod
    async def fetch_account_info(self, account_ids: Sequence[int]) -> AccountInfo:
        """Balances and orders of the given accounts."""


class ProvisioningGateway(ABC):
    """Chain-side actions that create an account for a new session key."""

    @abstractmethod
    async def get_allowance(self, wallet_address: str) -> int:
        """Current token allowance granted to the Nord contract."""

    @abstractmethod
    async def approve(self, wallet_address: str) -> Optional[str]:
        """Request an allowance approval. Returns a tx reference for logging.

        Raises:
            ApprovalRequestError: The request was rejected.
        """

    @abstractmethod
    async def fund(self, public_key: bytes, amount: int, precision: int) -> Optional[str]:
        """Request the one-time deposit that materializes the account.

        Raises:
            FundingRequestError: The request was rejected.
        """


class SessionGateway(ABC):
    """Session key binding and session issuance."""

    @abstractmethod
    async def bind_session_key(
        self, wallet_address: str, public_key: bytes, signature: Union[bytes, str]
    ) -> None:
        """Present the session key with the wallet's signature over it."""

    @abstractmethod
    async def create_session(self, public_key: bytes, sign: SessionSignFn) -> int:
        """Open a session for ``public_key``; returns the session id.

        Raises:
            AccountNotFoundError: No account is linked to the key.
        """
