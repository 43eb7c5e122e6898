"""
ProvisioningCoordinator — turns "wallet has no account" into "wallet has a
confirmed account".

Sequence per attempt:
    IDLE → APPROVING_ALLOWANCE → AWAITING_APPROVE_SETTLEMENT → FUNDING
         → POLLING_FOR_ACCOUNT → SUCCEEDED | TIMED_OUT | FAILED | CANCELLED

An existing allowance skips the approve call. Settlement and account
discovery share ``poll_until``. Each attempt runs inside a ``PollHandle``,
and at most one attempt per wallet runs at any time.
"""
import asyncio
import logging
import random
from typing import Optional

from .backend import AccountDirectory, ProvisioningGateway
from .conf import SessionConfig, normalize_address
from .data import (
    ProvisioningAttempt,
    ProvisioningState,
    ProvisioningStatus,
    short_hex,
)
from .exceptions import (
    ApprovalRequestError,
    FundingRequestError,
    ProvisioningCancelledError,
    ProvisioningTimeoutError,
    TransientNetworkError,
)
from .tasks import PollHandle, Sleep, poll_until

logger = logging.getLogger("nord.provisioning")


class ProvisioningCoordinator:
    """Drives approve, settle, fund and poll for wallets without an account.

    The record of funded public keys lives in process memory only. Seeds
    kept in a ``FileKeyStore`` or ``RedisKeyStore`` outlive it, so after a
    restart a key whose funding outcome was unknown can be funded again.
    Share one coordinator for the lifetime of the client.
    """

    def __init__(
        self,
        gateway: ProvisioningGateway,
        directory: AccountDirectory,
        config: Optional[SessionConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._gateway = gateway
        self._directory = directory
        self._config = config or SessionConfig()
        self._rng = rng or random.SystemRandom()
        self._sleep = sleep
        self._attempts: dict[str, ProvisioningAttempt] = {}
        self._handles: dict[str, PollHandle] = {}
        self._history: dict[str, ProvisioningAttempt] = {}
        # public keys whose funding request went out; never funded twice
        self._funded: set[bytes] = set()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def active(self, wallet_address: str) -> Optional[ProvisioningAttempt]:
        return self._attempts.get(normalize_address(wallet_address))

    def last_attempt(self, wallet_address: str) -> Optional[ProvisioningAttempt]:
        """Running attempt if any, else the most recent finished one."""
        wallet = normalize_address(wallet_address)
        return self._attempts.get(wallet) or self._history.get(wallet)

    @property
    def running(self) -> int:
        return sum(1 for handle in self._handles.values() if not handle.done)

    def was_funded(self, public_key: bytes) -> bool:
        return public_key in self._funded

    def funding_amount(self) -> int:
        """Configured amount with up to ``funding_jitter`` upward noise."""
        jitter = self._rng.uniform(1.0, 1.0 + self._config.funding_jitter)
        return round(jitter * self._config.funding_amount)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def provision(self, wallet_address: str, public_key: bytes) -> list[int]:
        """Create and confirm an account for ``public_key``.

        A call for a wallet that already has a running attempt with the same
        key joins it; with a different key the old attempt is cancelled.

        Returns:
            The account ids discovered for the key.

        Raises:
            ApprovalRequestError, FundingRequestError, TransientNetworkError:
                The attempt failed.
            ProvisioningTimeoutError: Settlement or account polling ran out.
            ProvisioningCancelledError: ``cancel()`` stopped the attempt.
        """
        wallet = normalize_address(wallet_address)
        current = self._attempts.get(wallet)
        handle = self._handles.get(wallet)
        if current is not None and handle is not None and not handle.done:
            if current.target_public_key == public_key:
                logger.info(
                    "Joining running provisioning for %s (%s)",
                    wallet, short_hex(public_key),
                )
                return await self._wait(handle, join=True)
            logger.info(
                "Replacing provisioning for %s: key %s -> %s",
                wallet, short_hex(current.target_public_key), short_hex(public_key),
            )
            await self.cancel(wallet)

        attempt = ProvisioningAttempt(wallet_address=wallet, target_public_key=public_key)
        handle = PollHandle(self._run(attempt), name=f"provision:{wallet}")
        self._attempts[wallet] = attempt
        self._handles[wallet] = handle
        logger.info("Provisioning started for %s (%s)", wallet, short_hex(public_key))
        return await self._wait(handle)

    async def cancel(self, wallet_address: str) -> bool:
        """Stop the running attempt of a wallet. Returns False if none ran."""
        wallet = normalize_address(wallet_address)
        handle = self._handles.get(wallet)
        attempt = self._attempts.get(wallet)
        if handle is None or handle.done:
            return False
        self._release(wallet, attempt)
        await handle.stop()
        if attempt is not None and attempt.active:
            # cancelled before its first step ran
            attempt.finish(ProvisioningStatus.CANCELLED, ProvisioningState.CANCELLED)
        logger.info("Provisioning cancelled for %s", wallet)
        return True

    async def cancel_all(self) -> int:
        wallets = [w for w, h in self._handles.items() if not h.done]
        for wallet in wallets:
            await self.cancel(wallet)
        return len(wallets)

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    async def _wait(self, handle: PollHandle, join: bool = False) -> list[int]:
        try:
            if join:
                return await handle.join()
            return await handle.wait()
        except asyncio.CancelledError:
            if handle.revoked:
                raise ProvisioningCancelledError(
                    f"Provisioning {handle.name} was cancelled"
                ) from None
            raise

    def _release(self, wallet: str, attempt: Optional[ProvisioningAttempt]) -> None:
        if attempt is None or self._attempts.get(wallet) is not attempt:
            return
        del self._attempts[wallet]
        self._handles.pop(wallet, None)
        self._history[wallet] = attempt

    async def _run(self, attempt: ProvisioningAttempt) -> list[int]:
        wallet = attempt.wallet_address
        try:
            await self._ensure_allowance(attempt)
            await self._fund(attempt)
            account_ids = await self._poll_account(attempt)
        except asyncio.CancelledError:
            attempt.finish(ProvisioningStatus.CANCELLED, ProvisioningState.CANCELLED)
            raise
        except ProvisioningTimeoutError as err:
            attempt.finish(ProvisioningStatus.TIMED_OUT, ProvisioningState.TIMED_OUT, err)
            logger.warning(
                "Provisioning timed out for %s in %s: %s",
                wallet, attempt.state.value, err,
            )
            raise
        except Exception as err:
            attempt.finish(ProvisioningStatus.FAILED, ProvisioningState.FAILED, err)
            logger.error("Provisioning failed for %s: %s", wallet, err)
            raise
        finally:
            self._release(wallet, attempt)
        attempt.account_ids = list(account_ids)
        attempt.finish(ProvisioningStatus.SUCCEEDED, ProvisioningState.SUCCEEDED)
        logger.info(
            "Provisioning succeeded for %s: accounts=%s after %d poll(s)",
            wallet, attempt.account_ids, attempt.poll_count,
        )
        return attempt.account_ids

    async def _ensure_allowance(self, attempt: ProvisioningAttempt) -> None:
        wallet = attempt.wallet_address
        attempt.state = ProvisioningState.APPROVING_ALLOWANCE
        allowance = await self._gateway.get_allowance(wallet)
        if allowance > 0:
            logger.info("Allowance already set for %s, skipping approve", wallet)
            return

        attempt.approve_invoked = True
        try:
            attempt.approve_tx = await self._gateway.approve(wallet)
        except TransientNetworkError as err:
            # outcome unknown; the caller decides whether to retry
            raise ApprovalRequestError(
                f"Approve request for {wallet} did not complete: {err}",
                reason="approval_outcome_unknown",
            ) from err
        logger.info("Approve submitted for %s: tx=%s", wallet, attempt.approve_tx)

        attempt.state = ProvisioningState.AWAITING_APPROVE_SETTLEMENT

        async def allowance_visible() -> Optional[int]:
            value = await self._gateway.get_allowance(wallet)
            return value if value > 0 else None

        try:
            await poll_until(
                allowance_visible,
                interval=self._config.settlement_interval,
                max_attempts=self._config.settlement_max_attempts,
                label=f"allowance settlement for {wallet}",
                sleep=self._sleep,
            )
        except ProvisioningTimeoutError as err:
            raise ProvisioningTimeoutError(
                f"Allowance for {wallet} not visible after {err.attempts} check(s)",
                attempts=err.attempts,
                reason="approval_settlement_timeout",
            ) from err

    async def _fund(self, attempt: ProvisioningAttempt) -> None:
        public_key = attempt.target_public_key
        attempt.state = ProvisioningState.FUNDING
        if public_key in self._funded:
            logger.info(
                "Key %s was already funded, polling without a new deposit",
                short_hex(public_key),
            )
            return

        amount = self.funding_amount()
        attempt.funding_amount = amount
        attempt.fund_invoked = True
        try:
            attempt.fund_tx = await self._gateway.fund(
                public_key, amount, self._config.funding_precision,
            )
        except TransientNetworkError as err:
            # the deposit may have gone out; treat the key as funded
            self._funded.add(public_key)
            raise FundingRequestError(
                f"Funding request for {short_hex(public_key)} did not complete: {err}",
                reason="funding_outcome_unknown",
            ) from err
        self._funded.add(public_key)
        logger.info(
            "Funding submitted for %s: amount=%d precision=%d tx=%s",
            short_hex(public_key), amount, self._config.funding_precision, attempt.fund_tx,
        )

    async def _poll_account(self, attempt: ProvisioningAttempt) -> list[int]:
        attempt.state = ProvisioningState.POLLING_FOR_ACCOUNT

        async def account_visible() -> Optional[list[int]]:
            account_ids = await self._directory.probe_account(attempt.target_public_key)
            return list(account_ids) if account_ids else None

        def count(n: int) -> None:
            attempt.poll_count = n

        return await poll_until(
            account_visible,
            interval=self._config.poll_interval,
            max_attempts=self._config.poll_max_attempts,
            timeout=self._config.poll_timeout,
            label=f"account discovery for {attempt.wallet_address}",
            on_attempt=count,
            sleep=self._sleep,
        )
