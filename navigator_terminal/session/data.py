import uuid
import logging
from typing import Optional, Any
from datetime import datetime, timezone

import paramiko

logger = logging.getLogger("navigator.terminal")


class TerminalSession:
    """One remote SSH connection and its (at most one) interactive shell.

    The session owns the paramiko client exclusively. The shell channel is
    created lazily by the registry; websocket clients never own a session,
    they only get bound to its id by the relay.
    """

    def __init__(
        self,
        client: paramiko.SSHClient,
        id: Optional[str] = None,
        host: Optional[str] = None,
        username: Optional[str] = None,
    ) -> None:
        self._id_ = id or uuid.uuid4().hex
        self._client = client
        self.host = host
        self.username = username
        self.channel: Optional[Any] = None  # ShellChannel
        self._created = datetime.now(timezone.utc)
        self._last_active = self._created

    def __repr__(self) -> str:
        return (
            f'<SSH-Session [{self._id_}, created:{self.created.isoformat()}] '
            f'{self.username}@{self.host} shell={self.channel is not None}>'
        )

    # --- Properties ---

    @property
    def session_id(self) -> str:
        return self._id_

    @property
    def client(self) -> paramiko.SSHClient:
        return self._client

    @property
    def created(self) -> datetime:
        return self._created

    @property
    def last_active(self) -> datetime:
        return self._last_active

    @property
    def connected(self) -> bool:
        """True while the underlying SSH transport is active."""
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def touch(self) -> None:
        self._last_active = datetime.now(timezone.utc)

    # --- Blocking primitives, run in an executor ---

    def open_shell(self, cols: int, rows: int, term: str) -> paramiko.Channel:
        """Request a pty-backed interactive shell channel."""
        return self._client.invoke_shell(term=term, width=cols, height=rows)

    def exec(self, command: str, timeout: Optional[float] = None) -> str:
        """Run a command on its own exec channel and return stdout."""
        _, stdout, _ = self._client.exec_command(command, timeout=timeout)
        return stdout.read().decode("utf-8", errors="replace").strip()

    def close(self) -> None:
        try:
            self._client.close()
        except Exception as err:  # paramiko raises a variety on teardown
            logger.warning("Error closing SSH client for %s: %s", self._id_, err)
