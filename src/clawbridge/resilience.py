"""Keeps a long-lived polling connection alive across transient network faults.

Isolated network blips are counted and ignored.  A burst of
:data:`ERROR_THRESHOLD` network errors, each within :data:`ERROR_WINDOW`
seconds of the previous one, triggers a hard restart of the transport
(stop, settle, start) instead of trusting the transport library's own
reconnect logic.  At most one restart runs at a time, and a failed restart
is retried once per :data:`RETRY_DELAY` through a cancellable task, never
synchronously.

Lifecycle: one :class:`ResilientPoller` per transport per process.
:meth:`ResilientPoller.stop` is the only teardown path; it cancels a pending
retry before stopping the transport so a late retry can't bring polling
back.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import socket
import time
from collections.abc import Callable
from typing import Protocol

from telegram.error import BadRequest, InvalidToken, NetworkError

log = logging.getLogger(__name__)

ERROR_THRESHOLD = 5
ERROR_WINDOW = 60.0  # seconds
SETTLE_DELAY = 2.0  # seconds between stopping and starting the transport
RETRY_DELAY = 5.0  # seconds before retrying a failed restart

# Error codes reported by HTTP clients on network failures; EFATAL is the
# polling library's own "transport is dead" code.
NETWORK_ERROR_MARKERS = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ECONNREFUSED",
    "EFATAL",
)


class ConnectionState(enum.Enum):
    CONNECTED = "connected"
    ERROR_ACCUMULATING = "error_accumulating"
    RESTARTING = "restarting"
    FATAL = "fatal"


def is_network_error(exc: BaseException) -> bool:
    """Return ``True`` if *exc* is a transient network failure.

    ``BadRequest`` subclasses ``NetworkError`` in python-telegram-bot but is
    an API error, so it is excluded explicitly.
    """
    if isinstance(exc, BadRequest):
        return False
    if isinstance(exc, (NetworkError, ConnectionError, TimeoutError, socket.gaierror)):
        return True
    text = str(exc)
    return any(marker in text for marker in NETWORK_ERROR_MARKERS)


class PollingTransport(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class ResilientPoller:
    def __init__(
        self,
        transport: PollingTransport,
        *,
        error_threshold: int = ERROR_THRESHOLD,
        error_window: float = ERROR_WINDOW,
        settle_delay: float = SETTLE_DELAY,
        retry_delay: float = RETRY_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.error_threshold = error_threshold
        self.error_window = error_window
        self.settle_delay = settle_delay
        self.retry_delay = retry_delay
        self._clock = clock

        self.state = ConnectionState.CONNECTED
        self.error_count = 0
        self.last_error_at: float | None = None
        self.restart_count = 0

        self._restarting = False
        self._stopped = False
        self._restart_task: asyncio.Task[bool] | None = None
        self._retry_task: asyncio.Task[None] | None = None

    def _reset(self) -> None:
        self.error_count = 0
        self.last_error_at = None
        self.state = ConnectionState.CONNECTED

    async def start(self) -> None:
        self._stopped = False
        await self.transport.start()
        self._reset()

    async def stop(self) -> None:
        self._stopped = True
        current = asyncio.current_task()
        for task in (self._retry_task, self._restart_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._retry_task = None
        self._restart_task = None
        await self.transport.stop()

    def on_polling_error(self, exc: BaseException) -> asyncio.Task[bool] | None:
        """Classify a polling failure and restart the transport if needed.

        Synchronous so it can be handed to a polling library as its error
        callback.  Returns the restart task when this failure started one.
        """
        if self.state is ConnectionState.FATAL:
            log.debug("Ignoring polling error in fatal state: %s", exc)
            return None

        if isinstance(exc, InvalidToken):
            self.state = ConnectionState.FATAL
            log.error("Polling rejected the bot token, not recovering: %s", exc)
            return None

        if not is_network_error(exc):
            log.error("Polling error (not network related): %s", exc)
            return None

        now = self._clock()
        if self.last_error_at is not None and now - self.last_error_at > self.error_window:
            self.error_count = 0
        self.error_count += 1
        self.last_error_at = now
        log.warning(
            "Polling network error %d/%d: %s",
            self.error_count,
            self.error_threshold,
            exc,
        )

        if self.error_count < self.error_threshold:
            if self.state is ConnectionState.CONNECTED:
                self.state = ConnectionState.ERROR_ACCUMULATING
            return None
        return self.request_restart()

    def request_restart(self) -> asyncio.Task[bool] | None:
        if self._stopped:
            return None
        if self._restarting or (
            self._restart_task is not None and not self._restart_task.done()
        ):
            log.info("Polling restart already in progress")
            return None
        self._restart_task = asyncio.get_running_loop().create_task(self.restart())
        return self._restart_task

    async def restart(self) -> bool:
        """Stop the transport, wait, start it again.  Returns ``True`` on success."""
        if self._restarting:
            log.info("Polling restart already in progress")
            return False
        if self._stopped or self.state is ConnectionState.FATAL:
            return False

        self._restarting = True
        self.state = ConnectionState.RESTARTING
        log.warning("Restarting polling after %d network errors", self.error_count)
        try:
            await self.transport.stop()
            await asyncio.sleep(self.settle_delay)
            if self._stopped:
                return False
            await self.transport.start()
        except InvalidToken as exc:
            self.state = ConnectionState.FATAL
            log.error("Polling rejected the bot token, not recovering: %s", exc)
            return False
        except Exception:
            log.exception(
                "Polling restart failed, retrying in %.0f seconds", self.retry_delay
            )
            self._reset()
            self._schedule_retry()
            return False
        finally:
            self._restarting = False

        self._reset()
        self.restart_count += 1
        log.info("Polling restarted")
        return True

    def _schedule_retry(self) -> None:
        if self._stopped:
            return
        pending = self._retry_task
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            return
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_later())

    async def _retry_later(self) -> None:
        await asyncio.sleep(self.retry_delay)
        await self.restart()
