"""
SessionManager — owns the session phase and drives one login cycle.

    LOGGED_OUT → AUTHENTICATING → {ACTIVE | PROVISIONING} → ACTIVE
    ACTIVE → LOGGED_OUT on logout, any → ERROR on unrecoverable failure

Construct one manager per client and hand it to every consumer; the UI
calls ``login``, ``logout`` and ``refresh_session`` and reads ``phase`` or
``snapshot()``. Nothing else touches the KeyVault or the coordinator.
"""
import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Optional, Sequence, Union

from .backend import AccountDirectory, SessionGateway, WalletSignFn
from .conf import SessionConfig, normalize_address
from .data import AccountInfo, SessionIdentity, SessionKey, SessionPhase, short_hex
from .exceptions import (
    AccountNotFoundError,
    KeyStorageError,
    SessionBusyError,
    SessionCancelledError,
    SessionError,
    SignatureError,
    TransientNetworkError,
)
from .client import NordHttpClient
from .provisioning import ProvisioningCoordinator
from .tasks import PollHandle
from .vault import KeyVault, KeyStore, SealConfig
from .vault.storage import key_store_from_path

logger = logging.getLogger("nord.session")


class SessionManager:
    """Explicit state machine for the session of one client.

    ``login`` and ``refresh_session`` never overlap: a second call while one
    is running raises ``SessionBusyError``. ``logout`` is always accepted;
    it cancels the running call (including a pending wallet prompt) and any
    provisioning, then resets the identity.
    """

    def __init__(
        self,
        vault: KeyVault,
        directory: AccountDirectory,
        sessions: SessionGateway,
        coordinator: ProvisioningCoordinator,
    ):
        self._vault = vault
        self._directory = directory
        self._sessions = sessions
        self._coordinator = coordinator
        self._identity: Optional[SessionIdentity] = None
        # set only once the wallet signature was accepted by bind_session_key
        self._session_key: Optional[SessionKey] = None
        self._last_error: Optional[Exception] = None
        self._lock = asyncio.Lock()
        self._operation: Optional[PollHandle] = None
        # bumped by logout so a login that resumes afterwards aborts
        self._generation = 0

    @classmethod
    def from_client(
        cls,
        client: NordHttpClient,
        config: Optional[SessionConfig] = None,
        store: Optional[KeyStore] = None,
        seal: Optional[SealConfig] = None,
    ) -> "SessionManager":
        """Wire a manager around one client that serves every collaborator.

        Without an explicit ``store`` the seed goes to ``key_store_dir``
        (or memory when unset); ``seal`` defaults to ``SealConfig.from_env()``.
        """
        config = config or SessionConfig()
        vault = KeyVault(
            store or key_store_from_path(config.key_store_dir),
            config,
            seal if seal is not None else SealConfig.from_env(),
        )
        coordinator = ProvisioningCoordinator(client, client, config)
        return cls(vault, client, client, coordinator)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        if self._identity is None:
            return SessionPhase.LOGGED_OUT
        return self._identity.phase

    @property
    def identity(self) -> Optional[SessionIdentity]:
        """A copy of the current identity, safe to hand to renderers."""
        if self._identity is None:
            return None
        return dataclasses.replace(self._identity, account_ids=list(self._identity.account_ids))

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def session_key(self) -> Optional[SessionKey]:
        """Signing capability for order requests; None unless ACTIVE."""
        if self.phase is SessionPhase.ACTIVE:
            return self._session_key
        return None

    def snapshot(self) -> dict[str, Any]:
        if self._identity is None:
            error = self._last_error
            return {
                "wallet_address": None,
                "phase": SessionPhase.LOGGED_OUT.value,
                "session_public_key": None,
                "session_id": None,
                "account_ids": [],
                "account_info": None,
                "error": (
                    {"reason": getattr(error, "reason", "error"), "message": str(error)}
                    if error is not None else None
                ),
            }
        return self._identity.to_dict()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self, wallet_address: str, wallet_sign_fn: WalletSignFn
    ) -> Optional[SessionIdentity]:
        """Log the wallet in, provisioning an account when it has none.

        Calling it while already ACTIVE for the same wallet logs out
        instead and returns None.

        Raises:
            SessionBusyError: Another login or refresh is running.
            KeyStorageError, SignatureError, TransientNetworkError,
            ApprovalRequestError, FundingRequestError,
            ProvisioningTimeoutError, SessionCancelledError: the attempt
                failed; ``phase`` and ``last_error`` describe why.
        """
        wallet = normalize_address(wallet_address)
        if self._lock.locked():
            raise SessionBusyError(f"Cannot log in {wallet}: another session call is running")
        async with self._lock:
            current = self._identity
            if current is not None and current.phase is SessionPhase.ACTIVE:
                if current.wallet_address == wallet:
                    logger.info("Login while active for %s: logging out", wallet)
                    await self._logout_locked()
                    return None
                logger.info(
                    "Switching wallet %s -> %s: logging out the previous identity",
                    current.wallet_address, wallet,
                )
                await self._logout_locked()

            identity = SessionIdentity(wallet_address=wallet, phase=SessionPhase.AUTHENTICATING)
            self._identity = identity
            self._session_key = None
            generation = self._generation
            logger.info("Login started for %s", wallet)
            await self._guarded(
                identity,
                self._authenticate(identity, wallet_sign_fn, generation),
                f"login:{wallet}",
            )
            logger.info(
                "Login complete for %s: session=%s accounts=%s",
                wallet, identity.session_id, identity.account_ids,
            )
            return self.identity

    async def _authenticate(
        self, identity: SessionIdentity, wallet_sign_fn: WalletSignFn, generation: int
    ) -> None:
        wallet = identity.wallet_address
        key = await self._vault.get_or_create(wallet)
        self._ensure_current(generation)
        identity.session_public_key = key.public_key

        signature = await self._wallet_signature(wallet_sign_fn, key.public_key)
        self._ensure_current(generation)
        await self._sessions.bind_session_key(wallet, key.public_key, signature)
        self._ensure_current(generation)
        self._session_key = key

        account_ids = await self._directory.probe_account(key.public_key)
        self._ensure_current(generation)
        if not account_ids:
            logger.info("No account for %s (%s): provisioning", wallet, short_hex(key.public_key))
            await self._provision_and_establish(identity, key, generation)
            return

        await self._establish(identity, key, account_ids, generation)

    async def _wallet_signature(
        self, wallet_sign_fn: WalletSignFn, public_key: bytes
    ) -> Union[bytes, str]:
        """Ask the wallet to sign the session public key, exactly once."""
        try:
            signature = await wallet_sign_fn(public_key)
        except SignatureError:
            raise
        except Exception as err:
            raise SignatureError(f"Wallet did not sign the session key: {err}") from err
        if not signature:
            raise SignatureError("Wallet returned an empty signature")
        return signature

    async def _provision_and_establish(
        self, identity: SessionIdentity, key: SessionKey, generation: int
    ) -> None:
        identity.phase = SessionPhase.PROVISIONING
        identity.session_id = None
        account_ids = await self._coordinator.provision(identity.wallet_address, key.public_key)
        self._ensure_current(generation)
        await self._establish(identity, key, account_ids, generation)

    async def _establish(
        self,
        identity: SessionIdentity,
        key: SessionKey,
        account_ids: Sequence[int],
        generation: int,
    ) -> None:
        identity.account_ids = list(account_ids)
        identity.account_info = await self._directory.fetch_account_info(identity.account_ids)
        self._ensure_current(generation)
        identity.session_id = await self._sessions.create_session(key.public_key, key.sign)
        self._ensure_current(generation)
        identity.phase = SessionPhase.ACTIVE
        identity.last_error = None
        self._last_error = None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_session(self, public_key: Optional[bytes] = None) -> SessionIdentity:
        """Re-authenticate the bound session key and reload account info.

        Only a key the wallet signed for during login can be refreshed. A
        backend answer of "no account" re-enters provisioning. A
        ``TransientNetworkError`` is raised with the phase left unchanged so
        the caller can retry; any other failure sets ERROR.
        """
        if self._lock.locked():
            raise SessionBusyError("Cannot refresh: another session call is running")
        async with self._lock:
            identity = self._identity
            key = self._session_key
            if identity is None or key is None:
                raise SessionError("No bound session key to refresh", reason="not_logged_in")
            if public_key is not None and public_key != key.public_key:
                raise SessionError(
                    f"Session key {short_hex(public_key)} is not the bound key "
                    f"{short_hex(key.public_key)}",
                    reason="key_mismatch",
                )
            generation = self._generation
            wallet = identity.wallet_address
            try:
                reloaded = await self._run_operation(
                    self._reload(identity, key, generation), f"refresh:{wallet}",
                )
            except TransientNetworkError as err:
                identity.last_error = err
                self._last_error = err
                logger.warning("Session refresh for %s failed, retryable: %s", wallet, err)
                raise
            except AccountNotFoundError:
                reloaded = None
            except asyncio.CancelledError:
                self._fail(identity, None, SessionPhase.LOGGED_OUT)
                raise
            except SessionCancelledError as err:
                self._fail(identity, err, SessionPhase.LOGGED_OUT)
                raise
            except Exception as err:
                self._fail(identity, err, SessionPhase.ERROR)
                raise

            if reloaded is None:
                logger.info("Refresh found no account for %s: provisioning", wallet)
                await self._guarded(
                    identity,
                    self._provision_and_establish(identity, key, generation),
                    f"reprovision:{wallet}",
                )
                return self.identity

            session_id, account_ids, account_info = reloaded
            identity.account_ids = account_ids
            identity.account_info = account_info
            identity.session_id = session_id
            identity.phase = SessionPhase.ACTIVE
            identity.last_error = None
            self._last_error = None
            logger.info("Session refreshed for %s: session=%s", wallet, session_id)
            return self.identity

    async def _reload(
        self, identity: SessionIdentity, key: SessionKey, generation: int
    ) -> Optional[tuple[int, list[int], AccountInfo]]:
        """New session id plus fresh account info, or None without an account."""
        session_id = await self._sessions.create_session(key.public_key, key.sign)
        self._ensure_current(generation)
        account_ids = identity.account_ids or await self._directory.probe_account(key.public_key)
        self._ensure_current(generation)
        if not account_ids:
            return None
        account_info = await self._directory.fetch_account_info(list(account_ids))
        self._ensure_current(generation)
        return session_id, list(account_ids), account_info

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def logout(self) -> None:
        """Cancel the running call and provisioning, forget the session key,
        reset the identity.

        Safe from every phase; storage failures are logged, not raised.
        """
        self._generation += 1
        if self._operation is not None:
            self._operation.cancel()
        await self._coordinator.cancel_all()
        async with self._lock:
            await self._logout_locked()

    async def _logout_locked(self) -> None:
        self._generation += 1
        identity = self._identity
        self._identity = None
        self._session_key = None
        if identity is None:
            return
        await self._coordinator.cancel(identity.wallet_address)
        identity.reset()
        try:
            await self._vault.clear(identity.wallet_address)
        except KeyStorageError as err:
            self._last_error = err
            logger.error("Could not clear session key for %s: %s", identity.wallet_address, err)
        logger.info("Logged out %s", identity.wallet_address)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run_operation(self, coro: Awaitable[Any], name: str) -> Any:
        """Run ``coro`` as a task that ``logout`` can cancel.

        A wallet prompt may never be answered, so the work of a login or
        refresh must stay interruptible while the lock is held.
        """
        handle = PollHandle(coro, name=name)
        self._operation = handle
        try:
            return await handle.wait()
        except asyncio.CancelledError:
            if handle.revoked:
                raise SessionCancelledError(f"{name} was cancelled by logout") from None
            raise
        finally:
            if self._operation is handle:
                self._operation = None

    async def _guarded(self, identity: SessionIdentity, coro: Awaitable[Any], name: str) -> None:
        """Run a login step and map its failure onto the identity phase."""
        try:
            await self._run_operation(coro, name)
        except asyncio.CancelledError:
            self._fail(identity, None, SessionPhase.LOGGED_OUT)
            raise
        except (TransientNetworkError, SessionCancelledError) as err:
            self._fail(identity, err, SessionPhase.LOGGED_OUT)
            raise
        except Exception as err:
            self._fail(identity, err, SessionPhase.ERROR)
            raise

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise SessionCancelledError("Logged out while the session call was running")

    def _fail(
        self,
        identity: SessionIdentity,
        error: Optional[Exception],
        phase: SessionPhase,
    ) -> None:
        identity.session_id = None
        identity.last_error = error
        if self._identity is identity:
            identity.phase = phase
            self._last_error = error
        if error is not None:
            logger.warning(
                "Session for %s -> %s (%s): %s",
                identity.wallet_address, phase.value,
                getattr(error, "reason", type(error).__name__), error,
            )
