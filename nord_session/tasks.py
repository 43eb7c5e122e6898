"""
Cancellable polling.

``poll_until`` is the single bounded-retry loop used for both allowance
settlement and account discovery. ``PollHandle`` owns the asyncio task that
runs it, so stopping a poll is one ``cancel()`` call on the handle.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import ProvisioningTimeoutError, TransientNetworkError

logger = logging.getLogger("nord.provisioning")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    *,
    interval: float,
    max_attempts: int,
    timeout: Optional[float] = None,
    label: str = "poll",
    on_attempt: Optional[Callable[[int], None]] = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Call ``check`` every ``interval`` seconds until it returns non-None.

    Each attempt waits first, then checks. ``TransientNetworkError`` from
    ``check`` counts as an attempt but does not stop the loop; any other
    exception propagates.

    Raises:
        ProvisioningTimeoutError: ``max_attempts`` or ``timeout`` exhausted.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    attempts = 0
    while attempts < max_attempts:
        delay = interval
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            delay = min(interval, remaining)
        await sleep(delay)
        attempts += 1
        if on_attempt is not None:
            on_attempt(attempts)
        try:
            result = await check()
        except TransientNetworkError as err:
            logger.warning(
                "%s attempt %d/%d hit a network error: %s",
                label, attempts, max_attempts, err,
            )
            continue
        if result is not None:
            logger.debug("%s satisfied after %d attempt(s)", label, attempts)
            return result
        logger.debug("%s attempt %d/%d: not yet", label, attempts, max_attempts)
    raise ProvisioningTimeoutError(
        f"{label} gave up after {attempts} attempt(s)", attempts=attempts,
    )


class PollHandle:
    """Handle over a running background coroutine.

    ``cancel()`` stops it at its next suspension point; ``wait()`` returns
    its result or raises its exception.
    """

    def __init__(self, coro: Awaitable[T], name: Optional[str] = None):
        self._name = name or "poll"
        self._revoked = False
        self._task: asyncio.Task = asyncio.ensure_future(coro)

    @property
    def name(self) -> str:
        return self._name

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    @property
    def revoked(self) -> bool:
        """True when the owner stopped the task through this handle."""
        return self._revoked

    def cancel(self) -> bool:
        """Request cancellation. Returns False if already finished."""
        if self._task.done():
            return False
        logger.debug("Cancelling %s", self._name)
        self._revoked = True
        return self._task.cancel()

    async def stop(self) -> None:
        """Cancel and wait until the task has actually finished."""
        self.cancel()
        await asyncio.wait({self._task})

    async def wait(self) -> Any:
        return await self._task

    async def join(self) -> Any:
        """Wait without propagating cancellation of the caller into the task."""
        return await asyncio.shield(self._task)

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else ("done" if self.done else "running")
        return f"<PollHandle {self._name} {state}>"
