"""Tests for the loopback callback listener."""

import asyncio
import socket

import pytest

from conftest import callback_target, send_request
from loopback_oauth.oauth import callback as callback_module
from loopback_oauth.oauth.callback import (
    CallbackListener,
    CallbackRequest,
    CallbackResponse,
    ListenerState,
    ShutdownSignal,
    parse_callback_request,
)
from loopback_oauth.oauth.errors import ListenerBindFailed, PortUnavailable


class RecordingHandler:
    """Callback handler that records requests and returns canned responses."""

    def __init__(self, *responses: CallbackResponse):
        self.requests: list[CallbackRequest] = []
        self._responses = list(responses)

    async def __call__(self, request: CallbackRequest) -> CallbackResponse:
        self.requests.append(request)
        if self._responses:
            return self._responses.pop(0)
        return CallbackResponse(authorized=False, terminal=False)


ACCEPT = CallbackResponse(authorized=True, terminal=True)
RETRY = CallbackResponse(authorized=False, terminal=False)


class TestParseCallbackRequest:
    """Tests for parse_callback_request function."""

    def test_parse_success_callback(self) -> None:
        result = parse_callback_request("/oauth/callback?code=abc123&state=xyz789")

        assert result.code == "abc123"
        assert result.state == "xyz789"
        assert result.error is None
        assert result.is_well_formed()

    def test_parse_error_callback(self) -> None:
        result = parse_callback_request(
            "/oauth/callback?error=access_denied&error_description=User+denied+access&state=xyz"
        )

        assert result.code is None
        assert result.error == "access_denied"
        assert result.error_description == "User denied access"
        assert not result.is_well_formed()

    def test_parse_empty_params(self) -> None:
        result = parse_callback_request("/oauth/callback")

        assert result == CallbackRequest()
        assert not result.is_well_formed()

    def test_blank_values_are_absent(self) -> None:
        result = parse_callback_request("/oauth/callback?code=&state=")
        assert result.code is None
        assert result.state is None

    def test_multiple_values_takes_first(self) -> None:
        assert parse_callback_request("/oauth/callback?code=first&code=second").code == "first"

    def test_repr_hides_code(self) -> None:
        assert "secretcode" not in repr(CallbackRequest(code="secretcode", state="s"))


class TestShutdownSignal:
    """Tests for the single-use shutdown signal."""

    @pytest.mark.asyncio
    async def test_take_once(self) -> None:
        signal = ShutdownSignal()

        assert not signal.is_sent
        assert await signal.take() is True
        assert signal.is_sent
        assert await signal.take() is False

    @pytest.mark.asyncio
    async def test_concurrent_take_sends_exactly_once(self) -> None:
        signal = ShutdownSignal()

        results = await asyncio.gather(*(signal.take() for _ in range(10)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_wait_returns_after_take(self) -> None:
        signal = ShutdownSignal()
        waiter = asyncio.create_task(signal.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        await signal.take()
        await asyncio.wait_for(waiter, timeout=1)


class TestCallbackListener:
    """Tests for CallbackListener."""

    @pytest.mark.asyncio
    async def test_bind_and_stop(self, free_port: int) -> None:
        listener = CallbackListener()
        assert listener.state is ListenerState.DOWN

        handle = await listener.bind_and_serve(free_port, RecordingHandler())
        assert listener.state is ListenerState.UP
        assert handle.port == free_port

        assert await handle.stop() is True
        await handle.wait_closed()
        assert listener.state is ListenerState.DOWN

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, free_port: int) -> None:
        listener = CallbackListener()
        handle = await listener.bind_and_serve(free_port, RecordingHandler())

        results = await asyncio.gather(handle.stop(), handle.stop())
        assert sorted(results) == [False, True]

        # Stopping an already stopped listener is a no-op
        await handle.wait_closed()
        assert await handle.stop() is False

    @pytest.mark.asyncio
    async def test_port_unavailable(self, free_port: int) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", free_port))
            blocker.listen()

            with pytest.raises(PortUnavailable) as exc_info:
                await CallbackListener().bind_and_serve(free_port, RecordingHandler())

        assert exc_info.value.port == free_port
        assert isinstance(exc_info.value, ListenerBindFailed)

    @pytest.mark.asyncio
    async def test_second_bind_while_up_fails(self, free_port: int) -> None:
        listener = CallbackListener()
        handle = await listener.bind_and_serve(free_port, RecordingHandler())
        try:
            with pytest.raises(ListenerBindFailed):
                await listener.bind_and_serve(free_port, RecordingHandler())
        finally:
            await handle.stop()
            await handle.wait_closed()

    @pytest.mark.asyncio
    async def test_rebind_after_shutdown(self, free_port: int) -> None:
        listener = CallbackListener()
        handle = await listener.bind_and_serve(free_port, RecordingHandler())
        await handle.stop()
        await handle.wait_closed()

        handle = await listener.bind_and_serve(free_port, RecordingHandler())
        assert listener.state is ListenerState.UP
        await handle.stop()
        await handle.wait_closed()

    @pytest.mark.asyncio
    async def test_terminal_response_shuts_down(self, free_port: int) -> None:
        handler = RecordingHandler(ACCEPT)
        listener = CallbackListener()
        handle = await listener.bind_and_serve(free_port, handler)

        status, body = await send_request(free_port, callback_target("abc", "xyz"))
        await handle.wait_closed()

        assert status == 200
        assert body == "authorized"
        assert handler.requests == [CallbackRequest(code="abc", state="xyz")]
        assert listener.state is ListenerState.DOWN

        # A replayed callback cannot connect any more
        with pytest.raises(OSError):
            await send_request(free_port, callback_target("abc", "xyz"))

    @pytest.mark.asyncio
    async def test_non_terminal_response_keeps_serving(self, free_port: int) -> None:
        handler = RecordingHandler(RETRY, ACCEPT)
        listener = CallbackListener()
        handle = await listener.bind_and_serve(free_port, handler)

        status, body = await send_request(free_port, callback_target(state="xyz"))
        assert status == 401
        assert body == "unauthorized"
        assert listener.state is ListenerState.UP

        _, body = await send_request(free_port, callback_target("abc", "xyz"))
        await handle.wait_closed()

        assert body == "authorized"
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_favicon_and_wrong_path_ignored(self, free_port: int) -> None:
        handler = RecordingHandler()
        handle = await CallbackListener().bind_and_serve(free_port, handler)
        try:
            status, _ = await send_request(free_port, "/favicon.ico")
            assert status == 404

            status, _ = await send_request(free_port, "/wrong?code=abc&state=xyz")
            assert status == 404

            assert handler.requests == []
        finally:
            await handle.stop()
            await handle.wait_closed()

    @pytest.mark.asyncio
    async def test_post_rejected(self, free_port: int) -> None:
        handler = RecordingHandler()
        handle = await CallbackListener().bind_and_serve(free_port, handler)
        try:
            status, _ = await send_request(free_port, callback_target("abc", "xyz"), method="POST")
            assert status == 405
            assert handler.requests == []
        finally:
            await handle.stop()
            await handle.wait_closed()

    @pytest.mark.asyncio
    async def test_garbage_request_line(self, free_port: int) -> None:
        handle = await CallbackListener().bind_and_serve(free_port, RecordingHandler())
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", free_port)
            writer.write(b"garbage\r\n\r\n")
            await writer.drain()
            response = await reader.read()
            writer.close()
            await writer.wait_closed()

            assert b"400" in response
        finally:
            await handle.stop()
            await handle.wait_closed()

    @pytest.mark.asyncio
    async def test_plain_text_response_headers(self, free_port: int) -> None:
        handle = await CallbackListener().bind_and_serve(free_port, RecordingHandler(ACCEPT))

        reader, writer = await asyncio.open_connection("127.0.0.1", free_port)
        writer.write(f"GET {callback_target('abc', 'xyz')} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
        await writer.drain()
        response = (await reader.read()).decode()
        writer.close()
        await writer.wait_closed()
        await handle.wait_closed()

        assert "Content-Type: text/plain" in response
        assert "Cache-Control: no-store" in response
        assert "X-Content-Type-Options: nosniff" in response

    @pytest.mark.asyncio
    async def test_concurrent_callbacks_processed_once(self, free_port: int) -> None:
        """Two racing callbacks: the first is processed, the second is not."""
        gate = asyncio.Event()
        calls: list[CallbackRequest] = []

        async def slow_handler(request: CallbackRequest) -> CallbackResponse:
            calls.append(request)
            await gate.wait()
            return ACCEPT

        handle = await CallbackListener().bind_and_serve(free_port, slow_handler)

        first = asyncio.create_task(send_request(free_port, callback_target("one", "xyz")))
        while not calls:
            await asyncio.sleep(0.01)
        second = asyncio.create_task(send_request(free_port, callback_target("two", "xyz")))
        await asyncio.sleep(0.1)
        gate.set()

        results = await asyncio.gather(first, second, return_exceptions=True)
        await handle.wait_closed()

        assert len(calls) == 1
        assert results[0] == (200, "authorized")
        # The second request either saw the post-shutdown rejection or no connection
        assert results[1] == (401, "unauthorized") or isinstance(results[1], OSError)

    @pytest.mark.asyncio
    async def test_stale_callback_does_not_block_next_binding(self, free_port: int, monkeypatch) -> None:
        """A callback still running on a closed binding never delays the next one."""
        monkeypatch.setattr(callback_module, "SHUTDOWN_GRACE", 0.1)
        gate = asyncio.Event()
        calls: list[CallbackRequest] = []

        async def stuck_handler(request: CallbackRequest) -> CallbackResponse:
            calls.append(request)
            await gate.wait()
            return ACCEPT

        listener = CallbackListener()
        old = await listener.bind_and_serve(free_port, stuck_handler)
        stale = asyncio.create_task(send_request(free_port, callback_target("old", "xyz")))
        while not calls:
            await asyncio.sleep(0.01)
        await old.stop()
        await old.wait_closed()

        handler = RecordingHandler(ACCEPT)
        new = await listener.bind_and_serve(free_port, handler)
        result = await asyncio.wait_for(send_request(free_port, callback_target("new", "xyz")), timeout=2)
        await new.wait_closed()

        assert result == (200, "authorized")
        assert handler.requests == [CallbackRequest(code="new", state="xyz")]

        gate.set()
        await asyncio.gather(stale, return_exceptions=True)
