"""
Shell Channel — event-driven wrapper over a paramiko interactive channel.

paramiko exposes a pollable ``fileno()`` on every channel; it becomes
readable whenever data is buffered or the channel closes. The wrapper
registers it with the event loop, reads non-blocking and fans chunks out to
its output listeners. An empty read means the channel is closed.

Writes are non-blocking too. Bytes the remote window cannot take yet are
queued and sent in order as the window reopens; paramiko has no pollable
descriptor for send readiness, so the queue is retried on a short timer.
"""
import socket
import asyncio
import logging
from typing import Any, Callable, Optional

import paramiko

logger = logging.getLogger("navigator.terminal")

OutputListener = Callable[[bytes], None]
CloseListener = Callable[["ShellChannel"], None]

_CHANNEL_ERRORS = (OSError, EOFError, paramiko.SSHException)

# seconds between attempts while the remote window is full
_SEND_RETRY_DELAY = 0.01


class ShellChannel:
    """Interactive pty channel owned by exactly one session."""

    def __init__(
        self,
        channel: paramiko.Channel,
        session_id: str,
        cols: int,
        rows: int,
        read_size: int = 32768,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._channel = channel
        self.session_id = session_id
        self.cols = cols
        self.rows = rows
        self._read_size = read_size
        self._loop = loop or asyncio.get_running_loop()
        self._output_listeners: list[OutputListener] = []
        self._close_listeners: list[CloseListener] = []
        self._fd: Optional[int] = None
        self._outbox = bytearray()
        self._drainer: Optional[asyncio.Task] = None
        self._closed = False

    def __repr__(self) -> str:
        return (
            f'<ShellChannel [{self.session_id}] {self.cols}x{self.rows} '
            f'closed={self._closed}>'
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def on_output(self, callback: OutputListener) -> None:
        self._output_listeners.append(callback)

    def on_close(self, callback: CloseListener) -> None:
        self._close_listeners.append(callback)

    def start(self) -> None:
        """Start delivering output events from the event loop."""
        self._channel.settimeout(0.0)
        self._fd = self._channel.fileno()
        self._loop.add_reader(self._fd, self._on_readable)

    def _emit(self, listeners: list, *args: Any) -> None:
        for callback in list(listeners):
            try:
                callback(*args)
            except Exception:
                logger.exception(
                    "Listener error on channel for session %s", self.session_id
                )

    def _on_readable(self) -> None:
        try:
            data = self._channel.recv(self._read_size)
        except socket.timeout:
            return
        except _CHANNEL_ERRORS as err:
            logger.debug("Channel read failed for %s: %s", self.session_id, err)
            data = b""
        if not data:
            self._finish()
            return
        self._emit(self._output_listeners, data)

    def write(self, data: bytes) -> bool:
        """Send input to the remote shell.

        Returns:
            True once every byte is sent or queued behind earlier input;
            False if the channel is closed or refused the write before any
            of ``data`` went out.
        """
        if self._closed:
            return False
        if not self._outbox:
            try:
                sent = self._send(data)
            except _CHANNEL_ERRORS as err:
                logger.warning("Write rejected on session %s: %s", self.session_id, err)
                return False
            data = data[sent:]
            if not data:
                return True
        self._outbox += data
        if self._drainer is None:
            self._drainer = self._loop.create_task(self._drain())
        return True

    def _send(self, data: bytes) -> int:
        try:
            return self._channel.send(data)
        except socket.timeout:
            # window full
            return 0

    async def _drain(self) -> None:
        try:
            while self._outbox and not self._closed:
                try:
                    sent = self._send(bytes(self._outbox))
                except _CHANNEL_ERRORS as err:
                    logger.warning(
                        "Write failed on session %s, %d byte(s) dropped: %s",
                        self.session_id, len(self._outbox), err,
                    )
                    self._outbox.clear()
                    return
                if sent:
                    del self._outbox[:sent]
                else:
                    await asyncio.sleep(_SEND_RETRY_DELAY)
        finally:
            self._drainer = None

    @property
    def pending_input(self) -> int:
        """Input bytes still waiting for the remote window."""
        return len(self._outbox)

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        try:
            self._channel.resize_pty(width=cols, height=rows)
        except _CHANNEL_ERRORS as err:
            logger.warning("Resize rejected on session %s: %s", self.session_id, err)
            return
        self.cols, self.rows = cols, rows

    def close(self) -> None:
        """Close from our side; close listeners fire once."""
        if self._closed:
            return
        try:
            self._channel.close()
        except _CHANNEL_ERRORS as err:
            logger.debug("Channel close error for %s: %s", self.session_id, err)
        self._finish()

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._fd is not None:
            self._loop.remove_reader(self._fd)
            self._fd = None
        if self._drainer is not None:
            self._drainer.cancel()
        self._outbox.clear()
        logger.debug("Shell channel closed for session %s", self.session_id)
        self._emit(self._close_listeners, self)
        self._output_listeners.clear()
        self._close_listeners.clear()
