"""Tests for the server supervisor.

Drives Supervisor.run against an in-process server double; signals are
delivered to this process with os.kill.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Callable, Generator
from unittest.mock import MagicMock, patch

import pytest

from scep_bridge.server.supervisor import (
    DrainTimeoutError,
    ListenerError,
    ServerState,
    Supervisor,
    TaskOutcome,
    TerminationSignal,
)

TASK_NAMES = ["accept loop", "shutdown watcher", "signal watcher"]

# --- Fixtures ---


class FakeServer:
    """Server double honoring should_exit and force_exit like uvicorn."""

    def __init__(self, *, exit_code: int | None = None, stubborn: bool = False) -> None:
        self.should_exit = False
        self.force_exit = False
        self.exit_code = exit_code
        self.stubborn = stubborn
        self.serving = False

    async def serve(self) -> None:
        if self.exit_code is not None:
            raise SystemExit(self.exit_code)
        self.serving = True
        while not self.should_exit:
            await asyncio.sleep(0.01)
        # A stubborn server has requests that never finish on their own.
        while self.stubborn and not self.force_exit:
            await asyncio.sleep(0.01)
        self.serving = False


@pytest.fixture(autouse=True)
def quiet_logs() -> Generator[MagicMock, None, None]:
    """Silence supervisor audit records."""
    with (
        patch("scep_bridge.server.supervisor.log_shutdown"),
        patch("scep_bridge.server.supervisor.log_terminated") as mock_terminated,
    ):
        yield mock_terminated


def _run(
    server: FakeServer,
    *,
    after: float = 0.05,
    action: Callable[[Supervisor], object] | None = None,
    **kwargs: object,
) -> tuple[Supervisor, list[TaskOutcome]]:
    """Run a supervisor over server, calling action(supervisor) after a delay."""

    async def scenario() -> tuple[Supervisor, list[TaskOutcome]]:
        supervisor = Supervisor(server, **kwargs)
        if action is not None:
            asyncio.get_running_loop().call_later(after, action, supervisor)
        outcomes = await asyncio.wait_for(supervisor.run(), timeout=5)
        return supervisor, outcomes

    return asyncio.run(scenario())


# --- Termination Tests ---


class TestSupervisor:
    """Tests for first-to-finish supervision."""

    def test_shutdown_request(self) -> None:
        """An explicit shutdown drains the server and every task ends cleanly."""
        server = FakeServer()

        supervisor, outcomes = _run(server, action=lambda s: s.shutdown("test over"))

        assert [o.name for o in outcomes] == TASK_NAMES
        assert all(o.ok for o in outcomes)
        assert server.should_exit is True
        assert server.force_exit is False
        assert supervisor.state is ServerState.STOPPED

    def test_signal_stops_server(self) -> None:
        """A configured signal unwinds all three tasks."""
        server = FakeServer()

        _, outcomes = _run(
            server,
            action=lambda _s: os.kill(os.getpid(), signal.SIGUSR1),
            signals=(signal.SIGUSR1,),
        )

        accept, shutdown, signal_watcher = outcomes
        assert accept.ok
        assert shutdown.ok
        assert isinstance(signal_watcher.error, TerminationSignal)
        assert signal_watcher.error.signum == signal.SIGUSR1
        assert str(signal_watcher) == "signal watcher: TerminationSignal: received signal SIGUSR1"
        assert server.should_exit is True

    def test_signal_handlers_removed(self) -> None:
        """Handlers are uninstalled once the supervisor stops."""

        async def scenario() -> bool:
            supervisor = Supervisor(FakeServer(), signals=(signal.SIGUSR2,))
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, supervisor.shutdown)
            await supervisor.run()
            return loop.remove_signal_handler(signal.SIGUSR2)

        assert asyncio.run(scenario()) is False

    def test_listener_failure(self) -> None:
        """A server that cannot start ends supervision with a listener error."""
        server = FakeServer(exit_code=1)

        supervisor, outcomes = _run(server)

        accept, shutdown, signal_watcher = outcomes
        assert isinstance(accept.error, ListenerError)
        assert "status 1" in str(accept.error)
        assert shutdown.ok
        assert signal_watcher.ok
        assert supervisor.state is ServerState.STOPPED

    def test_drain_timeout_forces_exit(self) -> None:
        """Requests outliving the grace period are cut off."""
        server = FakeServer(stubborn=True)

        _, outcomes = _run(server, action=lambda s: s.shutdown(), grace_period=0.1)

        accept, shutdown, _ = outcomes
        assert accept.ok
        assert isinstance(shutdown.error, DrainTimeoutError)
        assert server.force_exit is True
        assert server.serving is False

    def test_terminated_logged(self, quiet_logs: MagicMock) -> None:
        """The outcome of every task is logged once."""
        _, outcomes = _run(FakeServer(), action=lambda s: s.shutdown())

        quiet_logs.assert_called_once_with(outcomes=outcomes)

    def test_shutdown_reason_kept_from_first_request(self) -> None:
        """Later shutdown calls do not replace the first reason."""
        with patch("scep_bridge.server.supervisor.log_shutdown") as mock_shutdown:

            def twice(supervisor: Supervisor) -> None:
                supervisor.shutdown("first")
                supervisor.shutdown("second")

            _run(FakeServer(), action=twice)

        mock_shutdown.assert_called_once_with(reason="first")

    def test_initial_state(self) -> None:
        """A new supervisor has not started."""
        assert Supervisor(FakeServer()).state is ServerState.IDLE


class TestTaskOutcome:
    """Tests for outcome reporting."""

    def test_done(self) -> None:
        assert str(TaskOutcome("accept loop")) == "accept loop: done"
        assert TaskOutcome("accept loop").ok

    def test_error(self) -> None:
        outcome = TaskOutcome("shutdown watcher", DrainTimeoutError("too slow"))

        assert not outcome.ok
        assert str(outcome) == "shutdown watcher: DrainTimeoutError: too slow"
