"""
Shared fixtures.

paramiko is replaced by in-process fakes. ``FakeChannel.fileno()`` is one
end of a real socketpair that becomes readable while data is buffered or
after EOF, which is how a paramiko channel's pollable pipe behaves, so the
event-loop reader in ShellChannel runs unmodified.
"""
import io
import time
import socket
import asyncio

import paramiko
import pytest
from aiohttp.test_utils import TestClient, TestServer

from navigator_terminal.conf import TerminalConfig
from navigator_terminal.session import SessionRegistry, TerminalSession
from navigator_terminal.vault import CredentialVault, VaultConfig


class FakeChannel:
    def __init__(self, term: str, width: int, height: int):
        self._rsock, self._wsock = socket.socketpair()
        self._rsock.setblocking(False)
        self._buffer = bytearray()
        self._signalled = False
        self._eof = False
        self.term = term
        self.width = width
        self.height = height
        self.timeout = None
        self.sent = bytearray()
        self.closed = False
        self.reject_writes = False
        # bytes the remote window accepts; None is unlimited
        self.window = None

    def fileno(self) -> int:
        return self._rsock.fileno()

    def settimeout(self, timeout):
        self.timeout = timeout

    def _signal(self):
        if not self._signalled:
            self._wsock.send(b"*")
            self._signalled = True

    def _clear(self):
        if self._signalled:
            try:
                self._rsock.recv(1)
            except BlockingIOError:
                pass
            self._signalled = False

    def feed(self, data: bytes):
        """Simulate remote output."""
        self._buffer += data
        self._signal()

    def remote_close(self):
        self._eof = True
        self._signal()

    def recv(self, nbytes: int) -> bytes:
        if self._buffer:
            chunk = bytes(self._buffer[:nbytes])
            del self._buffer[:nbytes]
            if not self._buffer and not self._eof:
                self._clear()
            return chunk
        if self._eof:
            return b""
        raise socket.timeout()

    def send(self, data: bytes) -> int:
        if self.closed or self.reject_writes:
            raise OSError("Socket is closed")
        size = len(data) if self.window is None else min(len(data), self.window)
        if size == 0:
            raise socket.timeout()
        self.sent += data[:size]
        if self.window is not None:
            self.window -= size
        return size

    def resize_pty(self, width: int, height: int):
        self.width = width
        self.height = height

    def close(self):
        self.closed = True
        self.remote_close()

    def dispose(self):
        self._rsock.close()
        self._wsock.close()


class FakeTransport:
    def __init__(self):
        self.active = True

    def is_active(self) -> bool:
        return self.active


class FakeClient:
    """Stands in for paramiko.SSHClient."""

    def __init__(self):
        self.transport = FakeTransport()
        self.channels: list[FakeChannel] = []
        self.invocations = 0
        self.open_delay = 0.0
        self.fail = False
        self.closed = False
        self.commands: dict[str, str] = {}
        # output already waiting when the shell opens
        self.banner = b""

    def invoke_shell(self, term="vt100", width=80, height=24):
        self.invocations += 1
        if self.open_delay:
            time.sleep(self.open_delay)
        if self.fail:
            raise paramiko.SSHException("Channel open failed")
        channel = FakeChannel(term, width, height)
        if self.banner:
            channel.feed(self.banner)
        self.channels.append(channel)
        return channel

    def exec_command(self, command, timeout=None):
        if command not in self.commands:
            raise paramiko.SSHException(f"exec rejected: {command}")
        stdout = io.BytesIO(self.commands[command].encode("utf-8"))
        return io.BytesIO(), stdout, io.BytesIO()

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True
        self.transport.active = False

    def dispose(self):
        for channel in self.channels:
            channel.dispose()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll predicate on the loop until it is truthy or fail."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


# --- Session fixtures ---

@pytest.fixture
def fake_client():
    client = FakeClient()
    yield client
    client.dispose()


@pytest.fixture
def config():
    return TerminalConfig()


@pytest.fixture
def registry(config):
    return SessionRegistry(config)


@pytest.fixture
def session(registry, fake_client):
    return registry.register(
        TerminalSession(fake_client, id="s1", host="h", username="u")
    )


@pytest.fixture
async def make_client():
    """Start aiohttp test servers, closed at teardown."""
    clients = []

    async def factory(app):
        client = TestClient(TestServer(app))
        await client.start_server()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


# --- Vault fixtures ---

@pytest.fixture
def vault_config(tmp_path):
    data = tmp_path / "data"
    return VaultConfig(
        key_path=data / ".encryption_key",
        store_path=data / "credentials.json",
        connections_path=data / "connections.json",
    )


@pytest.fixture
async def vault(vault_config):
    store = await CredentialVault.load(vault_config)
    yield store
    await store.close()
