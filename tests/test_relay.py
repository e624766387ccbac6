"""
Tests for RealtimeRelay over a real aiohttp websocket.

Tests cover:
- Frame dispatch (input / resize / ping / unknown / malformed)
- Lazy shell creation from input and resize
- Binding law (last writer or resizer receives output)
- Output fan-out, UTF-8 reassembly and disconnect on channel close
- Liveness sweep
"""
import asyncio

import pytest
from aiohttp import WSMsgType, web

from navigator_terminal.app import RELAY_KEY, setup_terminal
from navigator_terminal.conf import TerminalConfig

from .conftest import wait_until


def build_app(registry, config=None):
    app = web.Application()
    setup_terminal(app, registry=registry, config=config)
    return app


@pytest.fixture
async def client(make_client, registry, session):
    return await make_client(build_app(registry))


@pytest.fixture
def relay(client):
    return client.server.app[RELAY_KEY]


async def expect_silence(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await ws.receive(timeout=timeout)


class TestDispatch:
    """Tests for frame dispatch and error replies."""

    async def test_ping_pong(self, client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "ping", "sessionId": "s1"})
        assert await ws.receive_json(timeout=1) == {"type": "pong", "sessionId": "s1"}
        await ws.close()

    async def test_unknown_type_keeps_socket_open(self, client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "launch", "sessionId": "s1"})
        assert await ws.receive_json(timeout=1) == {
            "type": "error", "sessionId": "s1", "error": "Unknown message type",
        }
        await ws.send_json({"type": "ping", "sessionId": "s1"})
        assert (await ws.receive_json(timeout=1))["type"] == "pong"
        await ws.close()

    async def test_malformed_json(self, client):
        ws = await client.ws_connect("/ws")
        await ws.send_str("{not json")
        reply = await ws.receive_json(timeout=1)
        assert reply["type"] == "error"
        assert reply["error"] == "Invalid message format"
        await ws.close()

    async def test_input_missing_data(self, client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1"})
        reply = await ws.receive_json(timeout=1)
        assert reply == {
            "type": "error", "sessionId": "s1", "error": "Invalid message format",
        }
        await ws.close()

    async def test_input_unknown_session(self, client, relay):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "zz", "data": "ls\n"})
        assert await ws.receive_json(timeout=1) == {
            "type": "error", "sessionId": "zz", "error": "Session not found",
        }
        assert relay.bound_socket("zz") is None
        await ws.close()


class TestShellCreation:
    """Tests for lazy shell creation from frames."""

    async def test_input_creates_shell_then_delivers(
        self, client, session, fake_client, config
    ):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "ls\n"})
        await wait_until(lambda: fake_client.channels and fake_client.channels[0].sent)
        raw = fake_client.channels[0]
        assert bytes(raw.sent) == b"ls\n"
        assert (raw.width, raw.height) == (config.default_cols, config.default_rows)
        await ws.close()

    async def test_resize_creates_shell_with_size(self, client, session, fake_client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "resize", "sessionId": "s1", "cols": 120, "rows": 40})
        await wait_until(lambda: session.channel is not None)
        assert (fake_client.channels[0].width, fake_client.channels[0].height) == (120, 40)
        await ws.close()

    async def test_resize_existing_shell(self, client, session, fake_client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "a"})
        await wait_until(lambda: session.channel is not None)
        await ws.send_json({"type": "resize", "sessionId": "s1", "cols": 90, "rows": 33})
        await wait_until(lambda: fake_client.channels[0].width == 90)
        assert fake_client.invocations == 1
        await ws.close()

    async def test_resize_failure_is_silent(self, client, session, fake_client):
        fake_client.fail = True
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "resize", "sessionId": "s1", "cols": 80, "rows": 24})
        await ws.send_json({"type": "ping", "sessionId": "s1"})
        # frames are handled in order: no error frame precedes the pong
        assert (await ws.receive_json(timeout=1))["type"] == "pong"
        assert session.channel is None
        await ws.close()

    async def test_resize_unknown_session_is_silent(self, client, relay):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "resize", "sessionId": "zz", "cols": 80, "rows": 24})
        await ws.send_json({"type": "ping", "sessionId": "zz"})
        assert (await ws.receive_json(timeout=1))["type"] == "pong"
        assert relay.bound_socket("zz") is None
        await ws.close()

    async def test_input_shell_failure_reports_error(self, client, session, fake_client):
        fake_client.fail = True
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "ls\n"})
        assert await ws.receive_json(timeout=1) == {
            "type": "error", "sessionId": "s1", "error": "Failed to create shell",
        }
        assert not ws.closed
        await ws.close()

    async def test_rejected_input_reports_error(self, client, session, fake_client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "resize", "sessionId": "s1", "cols": 80, "rows": 24})
        await wait_until(lambda: session.channel is not None)
        fake_client.channels[0].reject_writes = True
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "ls\n"})
        assert await ws.receive_json(timeout=1) == {
            "type": "error", "sessionId": "s1", "error": "Failed to send input",
        }
        await ws.close()


class TestFanOut:
    """Tests for output routing and bindings."""

    @pytest.mark.parametrize("frame", [
        {"type": "input", "sessionId": "s1", "data": "ls\n"},
        {"type": "resize", "sessionId": "s1", "cols": 100, "rows": 30},
    ])
    async def test_output_waiting_at_shell_open_is_relayed(
        self, client, session, fake_client, frame
    ):
        fake_client.banner = b"welcome$ "
        ws = await client.ws_connect("/ws")
        await ws.send_json(frame)
        assert await ws.receive_json(timeout=1) == {
            "type": "output", "sessionId": "s1", "data": "welcome$ ",
        }
        await ws.close()

    async def test_output_reaches_bound_socket(self, client, session, fake_client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "ls\n"})
        await wait_until(lambda: session.channel is not None)
        fake_client.channels[0].feed(b"file.txt\r\n")
        assert await ws.receive_json(timeout=1) == {
            "type": "output", "sessionId": "s1", "data": "file.txt\r\n",
        }
        await ws.close()

    async def test_last_resizer_wins(self, client, relay, session, fake_client):
        ws_a = await client.ws_connect("/ws")
        ws_b = await client.ws_connect("/ws")
        await ws_a.send_json({"type": "input", "sessionId": "s1", "data": "ls\n"})
        await wait_until(lambda: fake_client.channels and fake_client.channels[0].sent)
        await ws_b.send_json({"type": "resize", "sessionId": "s1", "cols": 80, "rows": 25})
        await wait_until(lambda: fake_client.channels[0].height == 25)
        fake_client.channels[0].feed(b"for b")
        assert (await ws_b.receive_json(timeout=1))["data"] == "for b"
        await expect_silence(ws_a)
        await ws_a.close()
        await ws_b.close()

    async def test_output_without_binding_is_dropped(
        self, client, relay, session, fake_client
    ):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "ls\n"})
        await wait_until(lambda: session.channel is not None)
        await ws.close()
        await wait_until(lambda: relay.bound_socket("s1") is None)
        fake_client.channels[0].feed(b"lost")
        await asyncio.sleep(0.05)
        late = await client.ws_connect("/ws")
        await late.send_json({"type": "resize", "sessionId": "s1", "cols": 80, "rows": 24})
        await late.send_json({"type": "ping", "sessionId": "s1"})
        # nothing was buffered for the new binding
        assert (await late.receive_json(timeout=1))["type"] == "pong"
        assert relay.bound_socket("s1") is not None
        await late.close()

    async def test_split_utf8_is_reassembled(self, client, session, fake_client):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "x"})
        await wait_until(lambda: session.channel is not None)
        encoded = "é".encode("utf-8")
        fake_client.channels[0].feed(encoded[:1])
        await asyncio.sleep(0.05)
        fake_client.channels[0].feed(encoded[1:])
        assert (await ws.receive_json(timeout=1))["data"] == "é"
        await ws.close()

    async def test_channel_close_sends_disconnect(
        self, client, relay, session, fake_client
    ):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "exit\n"})
        await wait_until(lambda: session.channel is not None)
        fake_client.channels[0].remote_close()
        assert await ws.receive_json(timeout=1) == {
            "type": "disconnect", "sessionId": "s1",
        }
        assert relay.bound_socket("s1") is None
        # next input re-creates the shell and wires it again
        await ws.send_json({"type": "input", "sessionId": "s1", "data": "ls\n"})
        await wait_until(lambda: len(fake_client.channels) == 2)
        fake_client.channels[1].feed(b"again")
        assert (await ws.receive_json(timeout=1))["data"] == "again"
        await ws.close()

    async def test_socket_close_clears_binding(self, client, relay, session):
        ws = await client.ws_connect("/ws")
        await ws.send_json({"type": "resize", "sessionId": "s1", "cols": 80, "rows": 24})
        await wait_until(lambda: relay.bound_socket("s1") is not None)
        await ws.close()
        await wait_until(lambda: relay.bound_socket("s1") is None)
        await wait_until(lambda: not relay.clients)

    async def test_broadcast(self, client, relay):
        from navigator_terminal.relay import DisconnectFrame

        ws = await client.ws_connect("/ws")
        await wait_until(lambda: relay.clients)
        relay.broadcast(DisconnectFrame(session_id="all"))
        assert (await ws.receive_json(timeout=1))["sessionId"] == "all"
        await ws.close()


class TestLiveness:
    """Tests for the ping sweep."""

    @pytest.fixture
    async def fast_client(self, make_client, registry, session):
        config = TerminalConfig(ping_interval=0.1, close_timeout=0.5)
        return await make_client(build_app(registry, config))

    async def test_unresponsive_socket_is_terminated(self, fast_client):
        ws = await fast_client.ws_connect("/ws", autoping=False)
        closed = False
        deadline = asyncio.get_running_loop().time() + 1.0
        while asyncio.get_running_loop().time() < deadline:
            msg = await ws.receive(timeout=1.0)
            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.CLOSING):
                closed = True
                break
            assert msg.type == WSMsgType.PING
        assert closed
        relay = fast_client.server.app[RELAY_KEY]
        await wait_until(lambda: not relay.clients)

    async def test_responsive_socket_survives(self, fast_client):
        ws = await fast_client.ws_connect("/ws")
        deadline = asyncio.get_running_loop().time() + 0.5
        while asyncio.get_running_loop().time() < deadline:
            try:
                await ws.receive(timeout=0.05)
            except asyncio.TimeoutError:
                pass
        assert not ws.closed
        relay = fast_client.server.app[RELAY_KEY]
        assert len(relay.clients) == 1
        await ws.close()
