from .data import TerminalSession
from .channel import ShellChannel
from .registry import SessionRegistry, load_private_key

__all__ = [
    "TerminalSession",
    "ShellChannel",
    "SessionRegistry",
    "load_private_key",
]
