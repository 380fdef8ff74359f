"""HTTP transport for the SCEP endpoint.

Builds the uvicorn server that hosts the application with fixed timeouts:

- request headers must arrive within 30 s of the connection opening or of
  the first byte of a later request;
- idle (keep-alive) connections close after 120 s;
- the request body must arrive within 60 s of the request starting;
- each response write must complete within 60 s;
- in-flight requests get 30 s to finish on shutdown.

uvicorn covers idle and shutdown timeouts itself. The header timeout is
enforced by HeaderTimeoutH11Protocol; read and write timeouts by
TransportTimeoutMiddleware.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from functools import partial
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import h11
import uvicorn
from uvicorn.protocols.http.h11_impl import H11Protocol

from scep_bridge.audit.logger import log_debug
from scep_bridge.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Generator

    from starlette.types import ASGIApp, Message, Receive, Scope, Send
    from uvicorn.server import ServerState

HEADER_TIMEOUT = 30.0
READ_TIMEOUT = 60.0
WRITE_TIMEOUT = 60.0
IDLE_TIMEOUT = 120
SHUTDOWN_GRACE_PERIOD = 30


class TransportTimeoutMiddleware:
    """ASGI middleware bounding request reads and response writes.

    The whole request body is read before the application runs; a client
    that does not deliver it within the read timeout gets 408 and the
    application is never called.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        read_timeout: float = READ_TIMEOUT,
        write_timeout: float = WRITE_TIMEOUT,
    ) -> None:
        self.app = app
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            buffered = await asyncio.wait_for(_read_request(receive), self.read_timeout)
        except TimeoutError:
            log_debug("request read timed out", path=scope.get("path", ""), timeout=self.read_timeout)
            await _send_status(send, HTTPStatus.REQUEST_TIMEOUT)
            return

        pending = deque(buffered)

        async def replay() -> Message:
            if pending:
                return pending.popleft()
            return await receive()

        async def timed_send(message: Message) -> None:
            await asyncio.wait_for(send(message), self.write_timeout)

        await self.app(scope, replay, timed_send)


async def _read_request(receive: Receive) -> list[Message]:
    messages: list[Message] = []
    while True:
        message = await receive()
        messages.append(message)
        if message["type"] == "http.disconnect":
            return messages
        if message["type"] == "http.request" and not message.get("more_body", False):
            return messages


async def _send_status(send: Send, status: HTTPStatus) -> None:
    body = status.phrase.encode("ascii")
    await send(
        {
            "type": "http.response.start",
            "status": status.value,
            "headers": [
                (b"content-type", b"text/plain; charset=utf-8"),
                (b"content-length", str(len(body)).encode("ascii")),
                (b"connection", b"close"),
            ],
        },
    )
    await send({"type": "http.response.body", "body": body})


class HeaderTimeoutH11Protocol(H11Protocol):
    """h11 connection that closes if request headers arrive too slowly.

    The timer runs from the moment the connection opens, and again from the
    first byte of every later request on a kept-alive connection. It is
    cancelled as soon as h11 has parsed a complete request head. Waiting for
    the next request between responses is governed by the keep-alive timeout.
    """

    def __init__(
        self,
        config: uvicorn.Config,
        server_state: ServerState,
        app_state: dict[str, Any],
        _loop: asyncio.AbstractEventLoop | None = None,
        *,
        header_timeout: float = HEADER_TIMEOUT,
    ) -> None:
        super().__init__(config, server_state, app_state, _loop)
        self.header_timeout = header_timeout
        self._header_timer: asyncio.TimerHandle | None = None

    def connection_made(self, transport: asyncio.Transport) -> None:
        super().connection_made(transport)
        self._start_header_timer()

    def connection_lost(self, exc: Exception | None) -> None:
        self._cancel_header_timer()
        super().connection_lost(exc)

    def data_received(self, data: bytes) -> None:
        if self._header_timer is None and self.conn.their_state is h11.IDLE:
            self._start_header_timer()
        super().data_received(data)
        if self.conn.their_state is not h11.IDLE:
            self._cancel_header_timer()

    def on_response_complete(self) -> None:
        super().on_response_complete()
        # Pipelined bytes of the next request are already buffered.
        if self.conn.their_state is h11.IDLE and self.conn.trailing_data[0]:
            self._start_header_timer()

    def _start_header_timer(self) -> None:
        self._cancel_header_timer()
        self._header_timer = self.loop.call_later(self.header_timeout, self._header_timeout_expired)

    def _cancel_header_timer(self) -> None:
        if self._header_timer is not None:
            self._header_timer.cancel()
            self._header_timer = None

    def _header_timeout_expired(self) -> None:
        self._header_timer = None
        if self.conn.their_state is h11.IDLE and not self.transport.is_closing():
            log_debug("request header read timed out", timeout=self.header_timeout)
            self.transport.close()


class SupervisedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to its supervisor."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Generator[None, None, None]:
        yield


def parse_listen_address(listen: str) -> tuple[str, int]:
    """Split a host:port listen address.

    IPv6 hosts may be bracketed; an empty host listens on all interfaces.

    Raises:
        ConfigurationError: If the port is missing or not a valid number.
    """
    host, sep, port_text = listen.rpartition(":")
    if not sep:
        raise ConfigurationError.invalid_config(field="listen", reason=f"missing port in {listen!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigurationError.invalid_config(field="listen", reason=f"invalid port in {listen!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigurationError.invalid_config(field="listen", reason=f"port out of range in {listen!r}")

    host = host.removeprefix("[").removesuffix("]")
    return host or "0.0.0.0", port  # noqa: S104 - empty host means all interfaces


def build_http_server(
    app: ASGIApp,
    listen: str,
    *,
    header_timeout: float = HEADER_TIMEOUT,
    read_timeout: float = READ_TIMEOUT,
    write_timeout: float = WRITE_TIMEOUT,
    idle_timeout: int = IDLE_TIMEOUT,
    grace_period: int = SHUTDOWN_GRACE_PERIOD,
) -> SupervisedServer:
    """Build the uvicorn server for app, bound to listen.

    Args:
        app: ASGI application to serve.
        listen: host:port address.
        header_timeout: Seconds allowed to receive the request headers.
        read_timeout: Seconds allowed to receive a request body.
        write_timeout: Seconds allowed per response write.
        idle_timeout: Seconds an idle keep-alive connection stays open.
        grace_period: Seconds in-flight requests get on shutdown.

    Returns:
        A server ready for Supervisor.

    Raises:
        ConfigurationError: If listen is not a valid address.
    """
    host, port = parse_listen_address(listen)
    config = uvicorn.Config(
        TransportTimeoutMiddleware(app, read_timeout=read_timeout, write_timeout=write_timeout),
        host=host,
        port=port,
        http=partial(HeaderTimeoutH11Protocol, header_timeout=header_timeout),
        timeout_keep_alive=idle_timeout,
        timeout_graceful_shutdown=grace_period,
        log_config=None,
        server_header=False,
    )
    return SupervisedServer(config)
