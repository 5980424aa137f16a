"""Cancellation tokens, hard deadlines and the client-abort latch."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from .errors import HardTimeoutError


LOGGER = logging.getLogger("snaprun.deadlines")

T = TypeVar("T")

DEFAULT_GRACE_MS = 5_000
CLIENT_ABORTED = "client_aborted"


class CancelToken:
    """One-shot cancellation signal passed down through every layer of a run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "cancelled"


async def with_hard_timeout(
    awaitable: Awaitable[T],
    timeout_ms: int,
    on_timeout: Optional[Callable[[], Awaitable[Any]]] = None,
    token: Optional[CancelToken] = None,
    grace_ms: int = DEFAULT_GRACE_MS,
) -> T:
    """
    Race *awaitable* against a deadline of *timeout_ms*.

    When the deadline fires first, *token* is cancelled so the executor can kill its
    process, *on_timeout* runs, and the wrapped task gets *grace_ms* to settle before it
    is cancelled outright. ``HardTimeoutError`` is raised in every deadline case; any
    result that arrived during the grace period travels on it as ``partial``.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task in done:
        return task.result()

    LOGGER.warning("Hard timeout of %sms fired", timeout_ms)
    if token is not None:
        token.cancel(f"hard_timeout_{timeout_ms}ms")
    if on_timeout is not None:
        try:
            await on_timeout()
        except Exception:  # noqa: BLE001 - timeout callbacks are best-effort
            LOGGER.exception("on_timeout callback failed")

    partial = None
    done, _ = await asyncio.wait({task}, timeout=grace_ms / 1000)
    if task in done:
        if not task.cancelled() and task.exception() is None:
            partial = task.result()
    else:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001 - result is abandoned either way
            LOGGER.debug("Abandoned task raised after cancellation", exc_info=True)
    raise HardTimeoutError(timeout_ms, partial=partial)


class AbortLatch:
    """
    Watches the caller's connection while a request is being served.

    A disconnect cancels *token*. ``aborted`` only reports true when cancellation was
    observed and no response has been completed yet.
    """

    def __init__(
        self,
        is_disconnected: Callable[[], Awaitable[bool]],
        token: Optional[CancelToken] = None,
        poll_interval: float = 0.5,
    ) -> None:
        self._is_disconnected = is_disconnected
        self.token = token or CancelToken()
        self._poll_interval = poll_interval
        self._disconnected = False
        self._responded = False

    @property
    def aborted(self) -> bool:
        return self._disconnected and not self._responded

    def mark_responded(self) -> None:
        self._responded = True

    async def _poll(self) -> None:
        while not self._responded:
            try:
                disconnected = await self._is_disconnected()
            except Exception:  # noqa: BLE001 - a broken disconnect check must not fail the request
                LOGGER.debug("Disconnect check failed; no longer watching", exc_info=True)
                return
            if disconnected:
                self._disconnected = True
                self.token.cancel(CLIENT_ABORTED)
                return
            await asyncio.sleep(self._poll_interval)

    @asynccontextmanager
    async def watch(self) -> AsyncIterator["AbortLatch"]:
        poller = asyncio.ensure_future(self._poll())
        try:
            yield self
        finally:
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
