"""
Session Registry — owns every live SSH session and its shell channel.

All state lives on the event loop thread; blocking paramiko calls run in
the default executor and their results are applied back on the loop, so
the session map needs no locking.
"""
import io
import asyncio
import logging
from contextlib import suppress
from typing import Callable, Optional

import paramiko

from ..conf import TerminalConfig
from ..exceptions import ChannelError, ConnectError, SessionNotFound
from ..vault.models import Credential
from .channel import ShellChannel
from .data import TerminalSession

logger = logging.getLogger("navigator.terminal")

_SSH_ERRORS = (paramiko.SSHException, OSError, EOFError)

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

ShellListener = Callable[[ShellChannel], None]


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key of any supported type.

    Raises:
        paramiko.SSHException: If no key class accepts the text.
    """
    for key_cls in _KEY_CLASSES:
        try:
            return key_cls.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException("Unsupported private key format")


class SessionRegistry:
    """Registry of live sessions with lazy, idempotent shell creation.

    Example:
        >>> registry = SessionRegistry()
        >>> session = await registry.connect(credential)
        >>> shell = await registry.create_shell(session.session_id, 120, 40)
        >>> registry.send_input(session.session_id, b"ls\\n")
    """

    def __init__(self, config: Optional[TerminalConfig] = None):
        self._config = config or TerminalConfig()
        self._sessions: dict[str, TerminalSession] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._shell_listeners: list[ShellListener] = []

    @property
    def config(self) -> TerminalConfig:
        return self._config

    def on_shell_opened(self, callback: ShellListener) -> None:
        """Call ``callback(shell)`` for every new shell before it is read.

        Listeners attach their output and close handlers here, so the first
        bytes of a shell (banner, prompt) are never read unobserved.
        """
        self._shell_listeners.append(callback)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # ------------------------------------------------------------------
    # Lookup / registration
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[TerminalSession]:
        """Pure lookup; None when the session does not exist."""
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> TerminalSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def sessions(self) -> list[TerminalSession]:
        return list(self._sessions.values())

    def register(self, session: TerminalSession) -> TerminalSession:
        """Add a session whose connection was opened elsewhere."""
        if session.session_id in self._sessions:
            raise ValueError(f"Session already registered: {session.session_id}")
        self._sessions[session.session_id] = session
        logger.info("Session registered: %r", session)
        return session

    async def connect(
        self,
        credential: Credential,
        session_id: Optional[str] = None,
    ) -> TerminalSession:
        """Open an SSH connection and register it as a new session.

        Args:
            credential: Plaintext credential, usually from the vault.
            session_id: Optional id; a random one is generated otherwise.

        Raises:
            ConnectError: If the connection or authentication fails.
        """
        def _connect() -> paramiko.SSHClient:
            client = paramiko.SSHClient()
            with suppress(OSError):  # system host keys may not exist
                client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            pkey = None
            if credential.auth_type == "key" and credential.private_key:
                pkey = load_private_key(credential.private_key, credential.passphrase)
            try:
                client.connect(
                    hostname=credential.host,
                    port=credential.port,
                    username=credential.username,
                    password=credential.password,
                    pkey=pkey,
                    timeout=self._config.connect_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except BaseException:
                client.close()
                raise
            return client

        loop = asyncio.get_running_loop()
        try:
            client = await loop.run_in_executor(None, _connect)
        except _SSH_ERRORS as err:
            logger.warning(
                "SSH connection to %s@%s:%s failed: %s",
                credential.username, credential.host, credential.port, err,
            )
            raise ConnectError(f"SSH connection failed: {err}") from err
        session = TerminalSession(
            client,
            id=session_id,
            host=credential.host,
            username=credential.username,
        )
        return self.register(session)

    # ------------------------------------------------------------------
    # Shell channel
    # ------------------------------------------------------------------

    async def create_shell(
        self,
        session_id: str,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> ShellChannel:
        """Return the session's shell, opening it on first use.

        Concurrent callers for one session share a single open request and
        all get the same channel.

        Raises:
            SessionNotFound: Unknown session id.
            ChannelError: The connection rejected the channel request; the
                session stays registered without a shell.
        """
        session = self._require(session_id)
        if session.channel is not None and not session.channel.closed:
            return session.channel
        pending = self._pending.get(session_id)
        if pending is None:
            pending = asyncio.ensure_future(
                self._open_shell(
                    session,
                    cols or self._config.default_cols,
                    rows or self._config.default_rows,
                )
            )
            self._pending[session_id] = pending
            pending.add_done_callback(
                lambda fut: self._forget_pending(session_id, fut)
            )
        return await asyncio.shield(pending)

    def _forget_pending(self, session_id: str, fut: asyncio.Future) -> None:
        if self._pending.get(session_id) is fut:
            del self._pending[session_id]
        if not fut.cancelled():
            # retrieved here so an abandoned failure is not reported as unhandled
            fut.exception()

    async def _open_shell(
        self,
        session: TerminalSession,
        cols: int,
        rows: int,
    ) -> ShellChannel:
        session_id = session.session_id
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(
                None, session.open_shell, cols, rows, self._config.term,
            )
        except _SSH_ERRORS as err:
            logger.warning("Failed to open shell for session %s: %s", session_id, err)
            raise ChannelError(f"Failed to create shell: {err}") from err
        if self._sessions.get(session_id) is not session:
            with suppress(*_SSH_ERRORS):
                raw.close()
            raise ChannelError(f"Session {session_id} closed while opening shell")
        shell = ShellChannel(
            raw, session_id, cols, rows,
            read_size=self._config.read_size,
            loop=loop,
        )
        shell.on_close(self._on_channel_closed)
        session.channel = shell
        for callback in list(self._shell_listeners):
            try:
                callback(shell)
            except Exception:
                logger.exception("Shell listener error for session %s", session_id)
        shell.start()
        session.touch()
        logger.info("Shell opened for session %s (%dx%d)", session_id, cols, rows)
        return shell

    def _on_channel_closed(self, shell: ShellChannel) -> None:
        session = self._sessions.get(shell.session_id)
        if session is None:
            return
        if session.channel is shell:
            session.channel = None
        if not session.connected:
            # remote end is gone with the channel: the session goes too
            del self._sessions[session.session_id]
            logger.info("Connection closed for session %s", session.session_id)
            asyncio.get_running_loop().run_in_executor(None, session.close)

    def send_input(self, session_id: str, data: bytes) -> bool:
        """Write to the session's shell.

        Returns:
            False when there is no open shell or the write was rejected.
        """
        session = self._sessions.get(session_id)
        if session is None or session.channel is None:
            return False
        if not session.channel.write(data):
            return False
        session.touch()
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Resize the session's pty; no-op when it has no shell yet."""
        session = self._sessions.get(session_id)
        if session is None or session.channel is None:
            return
        session.channel.resize(cols, rows)
        session.touch()

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    async def exec_command(
        self,
        session_id: str,
        command: str,
        timeout: Optional[float] = None,
    ) -> str:
        """Run a command on a separate exec channel of the session.

        Returns:
            Stripped stdout of the command.

        Raises:
            SessionNotFound: Unknown session id.
            ChannelError: The exec request or read failed.
        """
        session = self._require(session_id)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, session.exec, command, timeout)
        except _SSH_ERRORS as err:
            raise ChannelError(f"Command failed on session {session_id}: {err}") from err

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self, session_id: str) -> bool:
        """Terminate a session: close its shell and its connection."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session.channel is not None:
            session.channel.close()
            session.channel = None
        await asyncio.get_running_loop().run_in_executor(None, session.close)
        logger.info("Session closed: %s", session_id)
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)
