"""Navigator Terminal.

Websocket relay between browser terminals and remote SSH shells, with an
encrypted vault for saved connections.
"""
from .version import __version__
from .conf import TerminalConfig
from .exceptions import (
    TerminalError,
    SessionNotFound,
    ChannelError,
    ConnectError,
    DecryptionError,
    PersistError,
)
from .session import SessionRegistry, TerminalSession, ShellChannel
from .relay import RealtimeRelay
from .vault import CredentialVault, VaultConfig, Credential, SavedConnectionInfo
from .app import create_app, setup_terminal, setup_vault

__all__ = [
    "__version__",
    "TerminalConfig",
    "TerminalError",
    "SessionNotFound",
    "ChannelError",
    "ConnectError",
    "DecryptionError",
    "PersistError",
    "SessionRegistry",
    "TerminalSession",
    "ShellChannel",
    "RealtimeRelay",
    "CredentialVault",
    "VaultConfig",
    "Credential",
    "SavedConnectionInfo",
    "create_app",
    "setup_terminal",
    "setup_vault",
]
