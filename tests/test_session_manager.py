"""
Tests for SessionManager: login, toggle, provisioning hand-off, refresh
and logout.
"""
import asyncio

import pytest

from nord_session.conf import SessionConfig
from nord_session.data import SessionPhase
from nord_session.exceptions import (
    AccountNotFoundError,
    FundingRequestError,
    KeyStorageError,
    ProvisioningTimeoutError,
    SessionBusyError,
    SessionCancelledError,
    SessionError,
    SignatureError,
    TransientNetworkError,
)
from nord_session.manager import SessionManager
from nord_session.provisioning import ProvisioningCoordinator
from nord_session.vault import KeyVault, MemoryKeyStore

from conftest import StubDirectory, StubGateway, StubSessions, WalletSigner, wait_for


class BrokenStore(MemoryKeyStore):
    async def load(self, slot):
        raise KeyStorageError("storage disabled")

    async def delete(self, slot):
        raise KeyStorageError("storage disabled")


def build(config, directory, gateway=None, sessions=None, store=None):
    gateway = gateway or StubGateway()
    sessions = sessions or StubSessions()
    vault = KeyVault(store if store is not None else MemoryKeyStore(), config)
    coordinator = ProvisioningCoordinator(gateway, directory, config)
    return SessionManager(vault, directory, sessions, coordinator)


# --- End-to-end scenarios ---

class TestLoginScenarios:

    @pytest.mark.asyncio
    async def test_new_wallet_is_provisioned(self, config, store, vault, gateway, sessions, wallet):
        directory = StubDirectory([None, [101]])
        coordinator = ProvisioningCoordinator(gateway, directory, config)
        manager = SessionManager(vault, directory, sessions, coordinator)
        assert not await vault.exists("0xabc")

        identity = await manager.login("0xabc", wallet)

        assert await vault.exists("0xabc")
        key = await vault.get_or_create("0xabc")
        assert gateway.approve_calls == ["0xabc"]
        assert len(gateway.fund_calls) == 1
        assert gateway.fund_calls[0][0] == key.public_key
        assert directory.probe_calls == 2
        assert manager.phase is SessionPhase.ACTIVE
        assert identity.account_ids == [101]
        assert identity.session_public_key == key.public_key
        assert identity.session_id == 1
        assert identity.account_info.balances[0].token == "USDC"
        assert wallet.calls == [key.public_key]

    @pytest.mark.asyncio
    async def test_known_wallet_skips_provisioning(self, config, vault, gateway, sessions, wallet):
        stored = await vault.get_or_create("0xdef")
        directory = StubDirectory([[202]])
        coordinator = ProvisioningCoordinator(gateway, directory, config)
        manager = SessionManager(vault, directory, sessions, coordinator)

        identity = await manager.login("0xdef", wallet)

        assert gateway.approve_calls == []
        assert gateway.fund_calls == []
        assert directory.probe_calls == 1
        assert identity.phase is SessionPhase.ACTIVE
        assert identity.account_ids == [202]
        assert identity.session_public_key == stored.public_key
        assert manager.session_key.public_key == stored.public_key

    @pytest.mark.asyncio
    async def test_address_is_normalized(self, config, wallet):
        directory = StubDirectory([[1]])
        manager = build(config, directory)
        identity = await manager.login("  0xDEF ", wallet)
        assert identity.wallet_address == "0xdef"


# --- Toggle and logout ---

class TestToggle:

    @pytest.mark.asyncio
    async def test_second_login_logs_out(self, config, store, wallet):
        directory = StubDirectory([[202]])
        gateway = StubGateway()
        manager = build(config, directory, gateway=gateway, store=store)
        await manager.login("0xdef", wallet)

        assert await manager.login("0xdef", wallet) is None
        assert manager.phase is SessionPhase.LOGGED_OUT
        assert manager.identity is None
        assert len(store) == 0
        assert gateway.approve_calls == [] and gateway.fund_calls == []
        assert directory.probe_calls == 1

    @pytest.mark.asyncio
    async def test_other_wallet_replaces_identity(self, config, store, wallet):
        directory = StubDirectory([[1]])
        manager = build(config, directory, store=store)
        await manager.login("0xaaa", wallet)
        identity = await manager.login("0xbbb", wallet)
        assert identity.wallet_address == "0xbbb"
        assert manager.phase is SessionPhase.ACTIVE
        assert list(store._records) == [config.key_slot("0xbbb")]

    @pytest.mark.asyncio
    async def test_logout_from_any_state(self, config):
        manager = build(config, StubDirectory())
        await manager.logout()
        assert manager.phase is SessionPhase.LOGGED_OUT

    @pytest.mark.asyncio
    async def test_logout_survives_storage_failure(self, config, wallet):
        manager = build(config, StubDirectory([[1]]), store=BrokenStore())
        with pytest.raises(KeyStorageError):
            await manager.login("0xabc", wallet)
        assert manager.phase is SessionPhase.ERROR
        await manager.logout()
        assert manager.phase is SessionPhase.LOGGED_OUT
        assert isinstance(manager.last_error, KeyStorageError)

    @pytest.mark.asyncio
    async def test_logout_during_polling_stops_probes(self, wallet):
        config = SessionConfig(poll_interval=0.005, poll_max_attempts=10_000, poll_timeout=60.0,
                               settlement_interval=0.0)
        directory = StubDirectory([None])
        store = MemoryKeyStore()
        manager = build(config, directory, store=store)
        login = asyncio.ensure_future(manager.login("0xabc", wallet))
        await wait_for(lambda: directory.probe_calls >= 3)
        assert manager.phase is SessionPhase.PROVISIONING

        await manager.logout()
        seen = directory.probe_calls
        await asyncio.sleep(0.03)

        assert directory.probe_calls == seen
        with pytest.raises(SessionCancelledError):
            await login
        assert manager.phase is SessionPhase.LOGGED_OUT
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_logout_while_wallet_prompt_is_pending(self, config, store, sessions):
        answered = asyncio.Event()

        async def unanswered_prompt(message):
            await answered.wait()
            return "0xsig"

        directory = StubDirectory([[1]])
        manager = build(config, directory, sessions=sessions, store=store)
        login = asyncio.ensure_future(manager.login("0xabc", unanswered_prompt))
        await wait_for(lambda: len(store) == 1)
        assert manager.phase is SessionPhase.AUTHENTICATING

        await asyncio.wait_for(manager.logout(), 0.5)

        with pytest.raises(SessionCancelledError):
            await login
        assert manager.phase is SessionPhase.LOGGED_OUT
        assert not manager.busy
        assert len(store) == 0
        assert sessions.bind_calls == []
        assert directory.probe_calls == 0

    @pytest.mark.asyncio
    async def test_fresh_login_after_logout_during_polling(self, wallet):
        config = SessionConfig(poll_interval=0.005, poll_max_attempts=10_000, poll_timeout=60.0,
                               settlement_interval=0.0)
        directory = StubDirectory([None])
        manager = build(config, directory)
        login = asyncio.ensure_future(manager.login("0xabc", wallet))
        await wait_for(lambda: directory.probe_calls >= 2)
        await manager.logout()
        with pytest.raises(SessionCancelledError):
            await login

        directory.responses = [[7]]
        identity = await manager.login("0xabc", wallet)
        assert identity.phase is SessionPhase.ACTIVE
        assert identity.account_ids == [7]


# --- Failures ---

class TestLoginFailures:

    @pytest.mark.asyncio
    async def test_wallet_rejects_signature(self, config, sessions):
        directory = StubDirectory([[1]])
        manager = build(config, directory, sessions=sessions)
        signer = WalletSigner(error=RuntimeError("user rejected"))

        with pytest.raises(SignatureError):
            await manager.login("0xabc", signer)
        assert len(signer.calls) == 1
        assert sessions.bind_calls == []
        assert directory.probe_calls == 0
        assert manager.phase is SessionPhase.ERROR
        assert manager.snapshot()["error"]["reason"] == "signature_rejected"

    @pytest.mark.asyncio
    async def test_empty_signature(self, config):
        manager = build(config, StubDirectory([[1]]))

        async def blank(message):
            return ""

        with pytest.raises(SignatureError):
            await manager.login("0xabc", blank)

    @pytest.mark.asyncio
    async def test_probe_network_error_returns_to_logged_out(self, config, wallet):
        manager = build(config, StubDirectory([TransientNetworkError("down")]))
        with pytest.raises(TransientNetworkError):
            await manager.login("0xabc", wallet)
        assert manager.phase is SessionPhase.LOGGED_OUT
        assert isinstance(manager.last_error, TransientNetworkError)

    @pytest.mark.asyncio
    async def test_provisioning_timeout_sets_error(self, config, wallet):
        directory = StubDirectory([None])
        manager = build(config, directory)
        with pytest.raises(ProvisioningTimeoutError):
            await manager.login("0xabc", wallet)
        assert manager.phase is SessionPhase.ERROR
        assert manager.snapshot()["error"]["reason"] == "provisioning_timeout"
        assert manager.identity.session_id is None

    @pytest.mark.asyncio
    async def test_funding_rejected_sets_error(self, config, wallet):
        gateway = StubGateway()
        gateway.fund_error = FundingRequestError("faucet empty")
        manager = build(config, StubDirectory([None]), gateway=gateway)
        with pytest.raises(FundingRequestError):
            await manager.login("0xabc", wallet)
        assert manager.phase is SessionPhase.ERROR
        assert len(gateway.fund_calls) == 1

    @pytest.mark.asyncio
    async def test_retry_after_timeout_starts_fresh(self, config, wallet):
        directory = StubDirectory([None])
        gateway = StubGateway()
        manager = build(config, directory, gateway=gateway)
        with pytest.raises(ProvisioningTimeoutError):
            await manager.login("0xabc", wallet)

        directory.responses = [None, [11]]
        directory.probe_calls = 0
        identity = await manager.login("0xabc", wallet)
        assert identity.account_ids == [11]
        assert len(gateway.fund_calls) == 1
        assert len(gateway.approve_calls) == 1

    @pytest.mark.asyncio
    async def test_overlapping_login_is_rejected(self, wallet):
        config = SessionConfig(poll_interval=0.005, poll_max_attempts=10_000, poll_timeout=60.0,
                               settlement_interval=0.0)
        directory = StubDirectory([None])
        manager = build(config, directory)
        first = asyncio.ensure_future(manager.login("0xabc", wallet))
        await wait_for(lambda: directory.probe_calls >= 1)

        assert manager.busy
        with pytest.raises(SessionBusyError):
            await manager.login("0xabc", wallet)
        with pytest.raises(SessionBusyError):
            await manager.refresh_session()

        await manager.logout()
        with pytest.raises(SessionCancelledError):
            await first


# --- Refresh ---

class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_issues_new_session(self, config, sessions, wallet):
        directory = StubDirectory([[5]])
        manager = build(config, directory, sessions=sessions)
        first = await manager.login("0xabc", wallet)

        refreshed = await manager.refresh_session(first.session_public_key)
        assert refreshed.session_id == first.session_id + 1
        assert refreshed.phase is SessionPhase.ACTIVE
        assert len(directory.info_calls) == 2
        assert len(wallet.calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_network_error_keeps_phase(self, config, sessions, wallet):
        manager = build(config, StubDirectory([[5]]), sessions=sessions)
        first = await manager.login("0xabc", wallet)
        sessions.create_errors = [TransientNetworkError("503", status=503)]

        with pytest.raises(TransientNetworkError):
            await manager.refresh_session()
        assert manager.phase is SessionPhase.ACTIVE
        assert manager.identity.session_id == first.session_id

    @pytest.mark.asyncio
    async def test_refresh_not_found_reprovisions(self, config, sessions, wallet):
        directory = StubDirectory([[5]])
        gateway = StubGateway()
        manager = build(config, directory, gateway=gateway, sessions=sessions)
        await manager.login("0xabc", wallet)

        sessions.create_errors = [AccountNotFoundError("gone")]
        directory.responses = [[6]]
        identity = await manager.refresh_session()

        assert len(gateway.fund_calls) == 1
        assert identity.account_ids == [6]
        assert identity.phase is SessionPhase.ACTIVE

    @pytest.mark.asyncio
    async def test_refresh_missing_account_info_reprovisions(self, config, sessions, wallet):
        directory = StubDirectory([[5]])
        gateway = StubGateway()
        manager = build(config, directory, gateway=gateway, sessions=sessions)
        await manager.login("0xabc", wallet)

        directory.info_errors = [AccountNotFoundError("gone")]
        directory.responses = [[6]]
        identity = await manager.refresh_session()

        assert identity.phase is SessionPhase.ACTIVE
        assert identity.account_ids == [6]
        assert len(gateway.fund_calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        SignatureError("session signature rejected"),
        SessionError("session creation failed", reason="session_rejected"),
    ])
    async def test_refresh_rejection_sets_error(self, config, sessions, wallet, error):
        manager = build(config, StubDirectory([[5]]), sessions=sessions)
        await manager.login("0xabc", wallet)
        sessions.create_errors = [error]

        with pytest.raises(type(error)):
            await manager.refresh_session()
        assert manager.phase is SessionPhase.ERROR
        assert manager.last_error is error
        assert manager.snapshot()["error"]["reason"] == error.reason
        assert manager.identity.session_id is None
        assert manager.session_key is None

    @pytest.mark.asyncio
    async def test_refresh_needs_a_bound_key(self, config, sessions):
        gateway = StubGateway()
        manager = build(config, StubDirectory([None]), gateway=gateway, sessions=sessions)
        with pytest.raises(SignatureError):
            await manager.login("0xabc", WalletSigner(error=RuntimeError("rejected")))

        with pytest.raises(SessionError) as exc:
            await manager.refresh_session()
        assert exc.value.reason == "not_logged_in"
        assert sessions.bind_calls == []
        assert sessions.create_calls == 0
        assert gateway.fund_calls == []
        assert manager.phase is SessionPhase.ERROR

    @pytest.mark.asyncio
    async def test_refresh_after_failed_provisioning(self, config, sessions, wallet):
        directory = StubDirectory([None])
        manager = build(config, directory, sessions=sessions)
        with pytest.raises(ProvisioningTimeoutError):
            await manager.login("0xabc", wallet)

        directory.responses = [[8]]
        identity = await manager.refresh_session()
        assert identity.phase is SessionPhase.ACTIVE
        assert identity.account_ids == [8]
        assert len(sessions.bind_calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_requires_login(self, config):
        manager = build(config, StubDirectory())
        with pytest.raises(SessionError) as exc:
            await manager.refresh_session()
        assert exc.value.reason == "not_logged_in"

    @pytest.mark.asyncio
    async def test_refresh_rejects_foreign_key(self, config, wallet):
        manager = build(config, StubDirectory([[1]]))
        await manager.login("0xabc", wallet)
        with pytest.raises(SessionError) as exc:
            await manager.refresh_session(b"\x00" * 32)
        assert exc.value.reason == "key_mismatch"


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_snapshot_logged_out(self, manager):
        snap = manager.snapshot()
        assert snap["phase"] == "logged_out"
        assert snap["account_ids"] == []
        assert snap["error"] is None

    @pytest.mark.asyncio
    async def test_snapshot_active(self, config, wallet):
        manager = build(config, StubDirectory([[3]]))
        await manager.login("0xabc", wallet)
        snap = manager.snapshot()
        assert snap["phase"] == "active"
        assert snap["account_ids"] == [3]
        assert len(snap["session_public_key"]) == 64
        assert snap["account_info"]["balances"][0]["tokenId"] == 0
        assert manager.identity is not manager.identity
