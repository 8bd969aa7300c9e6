"""Tests for the polling connection resilience state machine."""

from __future__ import annotations

import asyncio
import socket

import pytest
from telegram.error import BadRequest, InvalidToken, NetworkError, RetryAfter, TimedOut

from clawbridge.resilience import ConnectionState, ResilientPoller, is_network_error


class FakeTransport:
    def __init__(
        self, fail_starts: int = 0, start_error: Exception | None = None
    ) -> None:
        self.calls: list[str] = []
        self.fail_starts = fail_starts
        self.start_error = start_error or NetworkError("still offline")

    @property
    def starts(self) -> int:
        return self.calls.count("start")

    async def start(self) -> None:
        self.calls.append("start")
        if self.fail_starts:
            self.fail_starts -= 1
            raise self.start_error

    async def stop(self) -> None:
        self.calls.append("stop")
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _poller(transport: FakeTransport, clock: FakeClock | None = None, **kwargs):
    kwargs.setdefault("settle_delay", 0)
    kwargs.setdefault("retry_delay", 0.01)
    return ResilientPoller(transport, clock=clock or FakeClock(), **kwargs)


@pytest.mark.parametrize(
    "exc",
    [
        NetworkError("httpx.ConnectError: connection lost"),
        TimedOut(),
        ConnectionResetError(),
        ConnectionRefusedError(),
        TimeoutError(),
        socket.gaierror(-2, "Name or service not known"),
        RuntimeError("EFATAL: socket hang up"),
        RuntimeError("connect ECONNREFUSED 1.2.3.4:443"),
        RuntimeError("getaddrinfo ENOTFOUND api.telegram.org"),
        RuntimeError("read ECONNRESET"),
        RuntimeError("ETIMEDOUT"),
    ],
)
def test_network_errors_are_classified(exc: BaseException) -> None:
    assert is_network_error(exc)


@pytest.mark.parametrize(
    "exc",
    [
        BadRequest("Bad Request: chat not found"),
        RetryAfter(30),
        ValueError("unexpected payload"),
    ],
)
def test_other_errors_are_not_network(exc: BaseException) -> None:
    assert not is_network_error(exc)


def test_five_network_errors_trigger_one_restart() -> None:
    async def scenario() -> tuple[FakeTransport, ResilientPoller, list]:
        transport = FakeTransport()
        poller = _poller(transport)
        results = [poller.on_polling_error(NetworkError("ECONNRESET")) for _ in range(5)]
        assert results[:4] == [None] * 4
        assert results[4] is not None
        # a sixth error while the restart is pending doesn't start another
        assert poller.on_polling_error(NetworkError("ECONNRESET")) is None
        assert await results[4] is True
        return transport, poller, results

    transport, poller, _ = asyncio.run(scenario())

    assert transport.calls == ["stop", "start"]
    assert poller.restart_count == 1
    assert poller.state is ConnectionState.CONNECTED
    assert poller.error_count == 0
    assert poller.last_error_at is None


def test_errors_accumulate_below_threshold() -> None:
    async def scenario() -> ResilientPoller:
        poller = _poller(FakeTransport())
        for _ in range(3):
            poller.on_polling_error(TimedOut())
        return poller

    poller = asyncio.run(scenario())

    assert poller.state is ConnectionState.ERROR_ACCUMULATING
    assert poller.error_count == 3


def test_window_expiry_resets_counter() -> None:
    async def scenario() -> tuple[FakeTransport, ResilientPoller]:
        clock = FakeClock()
        transport = FakeTransport()
        poller = _poller(transport, clock)
        for _ in range(4):
            assert poller.on_polling_error(NetworkError("ETIMEDOUT")) is None
            clock.now += 1
        clock.now += 61
        assert poller.on_polling_error(NetworkError("ETIMEDOUT")) is None
        return transport, poller

    transport, poller = asyncio.run(scenario())

    assert transport.calls == []
    assert poller.error_count == 1


def test_errors_spread_within_window_still_restart() -> None:
    async def scenario() -> FakeTransport:
        clock = FakeClock()
        transport = FakeTransport()
        poller = _poller(transport, clock)
        task = None
        for _ in range(5):
            task = poller.on_polling_error(NetworkError("ECONNRESET"))
            clock.now += 50
        assert task is not None
        await task
        return transport

    assert asyncio.run(scenario()).starts == 1


def test_non_network_errors_do_not_count() -> None:
    async def scenario() -> ResilientPoller:
        poller = _poller(FakeTransport())
        poller.on_polling_error(NetworkError("ECONNRESET"))
        poller.on_polling_error(BadRequest("Bad Request: message text is empty"))
        poller.on_polling_error(ValueError("boom"))
        return poller

    poller = asyncio.run(scenario())

    assert poller.error_count == 1
    assert poller.state is ConnectionState.ERROR_ACCUMULATING


def test_invalid_token_is_fatal() -> None:
    async def scenario() -> tuple[FakeTransport, ResilientPoller]:
        transport = FakeTransport()
        poller = _poller(transport)
        poller.on_polling_error(InvalidToken())
        for _ in range(10):
            assert poller.on_polling_error(NetworkError("ECONNRESET")) is None
        return transport, poller

    transport, poller = asyncio.run(scenario())

    assert poller.state is ConnectionState.FATAL
    assert transport.calls == []


def test_rejected_token_during_restart_is_fatal() -> None:
    async def scenario() -> tuple[FakeTransport, ResilientPoller, bool, bool]:
        transport = FakeTransport(fail_starts=1, start_error=InvalidToken())
        poller = _poller(transport)
        first = await poller.restart()
        await asyncio.sleep(0.05)
        second = await poller.restart()
        return transport, poller, first, second

    transport, poller, first, second = asyncio.run(scenario())

    assert first is False
    assert second is False
    assert poller.state is ConnectionState.FATAL
    # no deferred retry and no further restart attempts
    assert transport.calls == ["stop", "start"]


def test_concurrent_restarts_run_once() -> None:
    async def scenario() -> tuple[FakeTransport, list[bool]]:
        transport = FakeTransport()
        poller = _poller(transport)
        results = await asyncio.gather(poller.restart(), poller.restart())
        return transport, results

    transport, results = asyncio.run(scenario())

    assert sorted(results) == [False, True]
    assert transport.calls == ["stop", "start"]


def test_failed_restart_schedules_deferred_retry() -> None:
    async def scenario() -> tuple[FakeTransport, ResilientPoller, bool]:
        transport = FakeTransport(fail_starts=1)
        poller = _poller(transport)
        for _ in range(4):
            poller.on_polling_error(NetworkError("ECONNRESET"))
        first = await poller.restart()
        assert poller.state is ConnectionState.CONNECTED
        assert poller.error_count == 0
        await asyncio.sleep(0.1)
        return transport, poller, first

    transport, poller, first = asyncio.run(scenario())

    assert first is False
    assert transport.calls == ["stop", "start", "stop", "start"]
    assert poller.restart_count == 1


def test_stop_cancels_pending_retry() -> None:
    async def scenario() -> FakeTransport:
        transport = FakeTransport(fail_starts=1)
        poller = _poller(transport, retry_delay=0.05)
        await poller.restart()
        await poller.stop()
        await asyncio.sleep(0.1)
        # late errors can't bring polling back either
        for _ in range(5):
            assert poller.on_polling_error(NetworkError("ECONNRESET")) is None
        return transport

    transport = asyncio.run(scenario())

    # restart: stop + failed start, then shutdown's stop; no retry ran
    assert transport.calls == ["stop", "start", "stop"]


def test_start_resets_state() -> None:
    async def scenario() -> ResilientPoller:
        transport = FakeTransport()
        poller = _poller(transport)
        poller.on_polling_error(NetworkError("ECONNRESET"))
        await poller.start()
        return poller

    poller = asyncio.run(scenario())

    assert poller.error_count == 0
    assert poller.state is ConnectionState.CONNECTED
