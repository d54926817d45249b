"""Loopback HTTP listener for the OAuth redirect.

The listener binds a fixed localhost port for the lifetime of a single
authorization attempt. It:
- Serves one route, the callback path, and answers with a plain-text
  ``authorized`` or ``unauthorized`` body
- Hands callback requests to a per-attempt handler one at a time
- Stops accepting connections as soon as the handler reports a terminal
  outcome, so a replayed callback gets a connection failure
- Fails fast with PortUnavailable if the port is still held by an
  earlier attempt
"""

import asyncio
import errno
import logging
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Awaitable, Callable
from urllib.parse import parse_qs, urlparse

from .errors import ListenerBindFailed, PortUnavailable
from .state import CALLBACK_PATH

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"

AUTHORIZED_BODY = "authorized"
UNAUTHORIZED_BODY = "unauthorized"

# Seconds to wait for a client to send its request line and headers.
# Browsers open speculative connections that never send anything.
REQUEST_READ_TIMEOUT = 10.0

# Seconds to let in-flight responses finish after the listening socket closes
SHUTDOWN_GRACE = 5.0

MAX_HEADER_LINES = 100

# Windows reports WSAEADDRINUSE instead of EADDRINUSE
_ADDR_IN_USE = {errno.EADDRINUSE, 10048}


class ListenerState(Enum):
    """Whether the callback port is currently bound."""

    DOWN = "down"
    UP = "up"


@dataclass(frozen=True)
class CallbackRequest:
    """Query parameters of one redirect to the callback route.

    Attributes:
        code: Authorization code, if present
        state: Echoed CSRF token, if present
        error: Provider error code, if authorization failed
        error_description: Human-readable provider error
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_well_formed(self) -> bool:
        """A usable callback has both a code and a state."""
        return bool(self.code) and bool(self.state)

    def __repr__(self) -> str:
        return (
            f"CallbackRequest(code={'<present>' if self.code else None}, "
            f"state={'<present>' if self.state else None}, error={self.error!r})"
        )


@dataclass(frozen=True)
class CallbackResponse:
    """What the handler decided for one callback.

    Attributes:
        authorized: Whether the browser sees ``authorized``
        terminal: Whether the attempt is over and the listener must shut down
    """

    authorized: bool
    terminal: bool

    @property
    def body(self) -> str:
        return AUTHORIZED_BODY if self.authorized else UNAUTHORIZED_BODY


CallbackHandler = Callable[[CallbackRequest], Awaitable[CallbackResponse]]


def parse_callback_request(target: str) -> CallbackRequest:
    """Parse the request target of a callback into a CallbackRequest.

    Repeated parameters use their first value; blank values count as absent.
    """
    params = parse_qs(urlparse(target).query)

    def first(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackRequest(
        code=first("code"),
        state=first("state"),
        error=first("error"),
        error_description=first("error_description"),
    )


class ShutdownSignal:
    """Single-use shutdown signal guarded by a lock.

    ``take`` is the only consuming operation. The first call fires the
    signal and returns True; every later or concurrent call returns False.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._event = asyncio.Event()
        self._taken = False

    async def take(self) -> bool:
        async with self._lock:
            if self._taken:
                return False
            self._taken = True
            self._event.set()
            return True

    @property
    def is_sent(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ListenerHandle:
    """Handle to a bound listener, used to request and await shutdown.

    Each binding owns its handler and request lock, so a slow callback
    from an earlier attempt never delays the next one.
    """

    def __init__(self, server: asyncio.Server, host: str, port: int, on_request: CallbackHandler):
        self.host = host
        self.port = port
        self.on_request = on_request
        self.request_lock = asyncio.Lock()
        self._server = server
        self._signal = ShutdownSignal()
        self._down = asyncio.Event()
        self._serve_task = asyncio.create_task(self._serve())

    @property
    def state(self) -> ListenerState:
        return ListenerState.DOWN if self._down.is_set() else ListenerState.UP

    @property
    def is_up(self) -> bool:
        return self.state is ListenerState.UP

    @property
    def accepting(self) -> bool:
        """False once shutdown has been requested."""
        return not self._signal.is_sent

    async def stop(self) -> bool:
        """Request shutdown. Safe to call any number of times.

        Returns:
            True if this call sent the shutdown signal, False if it was
            already sent
        """
        if not await self._signal.take():
            logger.debug(f"Callback listener on port {self.port} already shutting down")
            return False

        logger.info(f"Shutting down callback listener on port {self.port}")
        # Closing the listening socket right away refuses any new connection
        self._server.close()
        return True

    async def wait_closed(self) -> None:
        """Wait until the listener is fully down."""
        await asyncio.shield(self._serve_task)

    async def _serve(self) -> None:
        try:
            await self._signal.wait()
        finally:
            self._server.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=SHUTDOWN_GRACE)
            except TimeoutError:
                logger.debug("Callback listener closed with connections still open")
            self._down.set()
            logger.debug(f"Callback listener on port {self.port} is down")


class CallbackListener:
    """Ephemeral HTTP endpoint for the OAuth redirect.

    One listener can serve successive attempts, but at most one binding
    is live at a time.

    Usage:
        listener = CallbackListener()
        handle = await listener.bind_and_serve(7777, handler)
        ...
        await handle.stop()
        await handle.wait_closed()
    """

    def __init__(self, host: str = DEFAULT_HOST, path: str = CALLBACK_PATH):
        """Initialize the listener.

        Args:
            host: Loopback address to bind
            path: URL path of the callback route
        """
        self.host = host
        self.path = path

        self._handle: ListenerHandle | None = None

    @property
    def state(self) -> ListenerState:
        if self._handle is None:
            return ListenerState.DOWN
        return self._handle.state

    @property
    def handle(self) -> ListenerHandle | None:
        return self._handle

    async def bind_and_serve(self, port: int, on_request: CallbackHandler) -> ListenerHandle:
        """Bind ``port`` and start serving the callback route.

        Args:
            port: Loopback port to bind
            on_request: Coroutine deciding the response for each callback

        Returns:
            ListenerHandle for shutdown

        Raises:
            PortUnavailable: If the port is already bound
            ListenerBindFailed: If this listener is already up or binding
                fails for another reason
        """
        if self._handle is not None and self._handle.is_up:
            raise ListenerBindFailed("Callback listener is already running")

        handle: ListenerHandle | None = None

        async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self._handle_connection(handle, reader, writer)

        try:
            server = await asyncio.start_server(on_connection, self.host, port)
        except OSError as e:
            if e.errno in _ADDR_IN_USE:
                raise PortUnavailable(self.host, port) from e
            raise ListenerBindFailed(f"Could not bind callback listener on {self.host}:{port}: {e}") from e

        handle = ListenerHandle(server, self.host, port, on_request)
        self._handle = handle
        logger.info(f"Callback listener up on http://{self.host}:{port}{self.path}")
        return self._handle

    async def _handle_connection(
        self,
        handle: ListenerHandle | None,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one inbound HTTP connection."""
        try:
            parts = await asyncio.wait_for(self._read_request(reader), REQUEST_READ_TIMEOUT)
            if not parts:
                return

            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            if urlparse(target).path == "/favicon.ico":
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "")
                return

            if method != "GET":
                await self._send_response(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            if urlparse(target).path != self.path:
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            response = await self._dispatch(handle, parse_callback_request(target))
            status = HTTPStatus.OK if response.authorized else HTTPStatus.UNAUTHORIZED
            await self._send_response(writer, status, response.body)

        except TimeoutError:
            logger.debug("Callback connection sent no request in time")
        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")
            try:
                await self._send_response(
                    writer, HTTPStatus.INTERNAL_SERVER_ERROR, UNAUTHORIZED_BODY
                )
            except Exception:
                pass

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _dispatch(self, handle: ListenerHandle | None, request: CallbackRequest) -> CallbackResponse:
        """Run the binding's handler for one callback, one request at a time."""
        if handle is None:
            return CallbackResponse(authorized=False, terminal=False)

        async with handle.request_lock:
            if not handle.accepting:
                logger.debug("Callback arrived after shutdown was requested; not processing")
                return CallbackResponse(authorized=False, terminal=False)

            response = await handle.on_request(request)

            if response.terminal:
                await handle.stop()
            return response

    async def _read_request(self, reader: asyncio.StreamReader) -> list[str]:
        """Read the request line, drain the headers, return the line's parts."""
        request_line = await reader.readline()
        if not request_line:
            return []

        # e.g. "GET /oauth/callback?code=xxx&state=yyy HTTP/1.1"
        parts = request_line.decode("utf-8", errors="replace").strip().split(" ")

        for _ in range(MAX_HEADER_LINES):
            header_line = await reader.readline()
            if header_line in (b"\r\n", b"\n", b""):
                break

        return parts

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Cache-Control: no-store\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()
