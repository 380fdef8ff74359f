"""Server supervisor.

Runs the HTTP server as three supervised tasks: the accept loop, a shutdown
watcher and a signal watcher. Whichever finishes first stops the other two
through a shared event; the outcome of every task is gathered and logged.

States: idle -> running -> draining -> stopped.
"""

from __future__ import annotations

import asyncio
import enum
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from scep_bridge.audit.logger import log_shutdown, log_terminated

if TYPE_CHECKING:
    from collections.abc import Iterable

DEFAULT_GRACE_PERIOD = 30.0


class ServerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class HTTPServer(Protocol):
    """The parts of uvicorn.Server the supervisor drives."""

    should_exit: bool
    force_exit: bool

    async def serve(self) -> None:
        ...


class TerminationSignal(Exception):
    """A termination signal was received."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__(f"received signal {signal.Signals(signum).name}")


class ListenerError(Exception):
    """The accept loop exited abnormally (e.g. the address could not be bound)."""


class DrainTimeoutError(Exception):
    """In-flight requests did not finish within the grace period."""


@dataclass(frozen=True)
class TaskOutcome:
    """How one supervised task concluded."""

    name: str
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __str__(self) -> str:
        if self.error is None:
            return f"{self.name}: done"
        return f"{self.name}: {type(self.error).__name__}: {self.error}"


class Supervisor:
    """Runs a server until it stops, is shut down, or a signal arrives."""

    def __init__(
        self,
        server: HTTPServer,
        *,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        signals: Iterable[int] = (signal.SIGTERM,),
    ) -> None:
        """Initialize the supervisor.

        Args:
            server: Server to run; uvicorn.Server or compatible.
            grace_period: Seconds in-flight requests get after shutdown starts.
            signals: Signals that trigger shutdown.
        """
        self._server = server
        self._grace_period = grace_period
        self._signals = tuple(signals)
        self._stop = asyncio.Event()
        self._reason = "listener closed"
        self.state = ServerState.IDLE

    def shutdown(self, reason: str = "shutdown requested") -> None:
        """Start an orderly shutdown. Call from the event loop thread."""
        if not self._stop.is_set():
            self._reason = reason
            self._stop.set()

    async def run(self) -> list[TaskOutcome]:
        """Serve until the first supervised task finishes, then unwind.

        Returns:
            One outcome per task: accept loop, shutdown watcher, signal watcher.
        """
        self.state = ServerState.RUNNING
        serving = asyncio.create_task(self._accept_loop(), name="accept loop")
        tasks = [
            serving,
            asyncio.create_task(self._shutdown_watcher(serving), name="shutdown watcher"),
            asyncio.create_task(self._signal_watcher(), name="signal watcher"),
        ]

        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        self._stop.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        self.state = ServerState.STOPPED
        outcomes = [
            TaskOutcome(task.get_name(), result if isinstance(result, BaseException) else None)
            for task, result in zip(tasks, results, strict=True)
        ]
        log_terminated(outcomes=outcomes)
        return outcomes

    async def _accept_loop(self) -> None:
        try:
            await self._server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind.
            msg = f"listener exited with status {e.code}"
            raise ListenerError(msg) from e

    async def _shutdown_watcher(self, serving: asyncio.Task[None]) -> None:
        await self._stop.wait()
        self.state = ServerState.DRAINING
        log_shutdown(reason=self._reason)

        self._server.should_exit = True
        done, _ = await asyncio.wait({serving}, timeout=self._grace_period)
        if not done:
            self._server.force_exit = True
            msg = f"connections still open after {self._grace_period:g}s, closing them"
            raise DrainTimeoutError(msg)

    async def _signal_watcher(self) -> None:
        loop = asyncio.get_running_loop()
        received: asyncio.Future[int] = loop.create_future()

        def deliver(signum: int) -> None:
            if not received.done():
                received.set_result(signum)

        for signum in self._signals:
            loop.add_signal_handler(signum, deliver, signum)
        stopped = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({received, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for signum in self._signals:
                loop.remove_signal_handler(signum)
            stopped.cancel()

        if received.done():
            signum = received.result()
            self.shutdown(reason=f"received {signal.Signals(signum).name}")
            raise TerminationSignal(signum)
