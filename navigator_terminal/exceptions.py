"""Navigator Terminal exceptions.

Errors are always local to one session, socket or stored record;
nothing here is meant to abort unrelated work.
"""


class TerminalError(Exception):
    """Base class for navigator_terminal errors."""


class SessionNotFound(TerminalError, KeyError):
    """The requested session id is not registered."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")

    def __str__(self) -> str:
        return self.args[0]


class ChannelError(TerminalError):
    """The remote connection rejected a channel open, exec or write."""


class DecryptionError(TerminalError):
    """A stored secret failed authentication or could not be parsed."""


class PersistError(TerminalError):
    """Writing a collection to stable storage failed."""


class ConnectError(TerminalError):
    """Opening the SSH connection for a new session failed."""
