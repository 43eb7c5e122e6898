"""
Shared stubs and fixtures.

Stub collaborators count every call so tests can assert which side
effects happened and how often.
"""
import asyncio
from typing import Optional

import pytest

from nord_session.backend import (
    AccountDirectory,
    ProvisioningGateway,
    SessionGateway,
)
from nord_session.conf import SessionConfig
from nord_session.data import AccountInfo, Balance
from nord_session.manager import SessionManager
from nord_session.provisioning import ProvisioningCoordinator
from nord_session.vault import KeyVault, MemoryKeyStore


class StubGateway(ProvisioningGateway):
    """Allowance, approve and fund with call counters.

    After ``approve`` the allowance becomes visible once ``settle_after``
    further reads have happened.
    """

    def __init__(self, allowance: int = 0, granted: int = 1_000, settle_after: int = 0):
        self.allowance = allowance
        self.granted = granted
        self.settle_after = settle_after
        self.allowance_calls = 0
        self.approve_calls: list[str] = []
        self.fund_calls: list[tuple[bytes, int, int]] = []
        self.approve_error: Optional[Exception] = None
        self.fund_error: Optional[Exception] = None
        self.allowance_error: Optional[Exception] = None
        self._reads_since_approve: Optional[int] = None

    async def get_allowance(self, wallet_address: str) -> int:
        self.allowance_calls += 1
        if self.allowance_error is not None:
            raise self.allowance_error
        if self._reads_since_approve is not None:
            self._reads_since_approve += 1
            if self._reads_since_approve > self.settle_after:
                self.allowance = self.granted
        return self.allowance

    async def approve(self, wallet_address: str) -> Optional[str]:
        self.approve_calls.append(wallet_address)
        if self.approve_error is not None:
            raise self.approve_error
        self._reads_since_approve = 0
        return "0xapprove"

    async def fund(self, public_key: bytes, amount: int, precision: int) -> Optional[str]:
        self.fund_calls.append((public_key, amount, precision))
        if self.fund_error is not None:
            raise self.fund_error
        return "0xfund"


class StubDirectory(AccountDirectory):
    """Replays ``responses`` for probes; the last entry repeats.

    Entries are account id lists, None (not found) or exceptions to raise.
    """

    def __init__(self, responses=None):
        self.responses = list(responses) if responses is not None else [None]
        self.probe_calls = 0
        self.probed_keys: list[bytes] = []
        self.info_calls: list[list[int]] = []
        self.info_errors: list[Exception] = []

    async def probe_account(self, public_key: bytes) -> Optional[list[int]]:
        index = min(self.probe_calls, len(self.responses) - 1)
        self.probe_calls += 1
        self.probed_keys.append(public_key)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return list(response) if response else None

    async def fetch_account_info(self, account_ids) -> AccountInfo:
        self.info_calls.append(list(account_ids))
        if self.info_errors:
            raise self.info_errors.pop(0)
        return AccountInfo(balances=[Balance(token_id=0, token="USDC", amount=10.0)])


class StubSessions(SessionGateway):
    def __init__(self):
        self.bind_calls: list[tuple[str, bytes, object]] = []
        self.create_calls = 0
        self.create_errors: list[Exception] = []
        self.next_session_id = 1

    async def bind_session_key(self, wallet_address, public_key, signature) -> None:
        self.bind_calls.append((wallet_address, public_key, signature))

    async def create_session(self, public_key, sign) -> int:
        self.create_calls += 1
        if self.create_errors:
            raise self.create_errors.pop(0)
        assert len(sign(b"challenge")) == 64
        session_id = self.next_session_id
        self.next_session_id += 1
        return session_id


class WalletSigner:
    """Wallet connector stand-in that counts prompts."""

    def __init__(self, error: Optional[Exception] = None):
        self.calls: list[bytes] = []
        self.error = error

    async def __call__(self, message: bytes) -> str:
        self.calls.append(message)
        if self.error is not None:
            raise self.error
        return "0x" + "ab" * 65


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.002)


@pytest.fixture
def config():
    return SessionConfig(
        poll_interval=0.01,
        poll_max_attempts=5,
        poll_timeout=2.0,
        settlement_interval=0.0,
        settlement_max_attempts=3,
        funding_amount=1_000,
        funding_precision=6,
    )


@pytest.fixture
def store():
    return MemoryKeyStore()


@pytest.fixture
def vault(store, config):
    return KeyVault(store, config)


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def directory():
    return StubDirectory()


@pytest.fixture
def sessions():
    return StubSessions()


@pytest.fixture
def coordinator(gateway, directory, config):
    return ProvisioningCoordinator(gateway, directory, config)


@pytest.fixture
def manager(vault, directory, sessions, coordinator):
    return SessionManager(vault, directory, sessions, coordinator)


@pytest.fixture
def wallet():
    return WalletSigner()
