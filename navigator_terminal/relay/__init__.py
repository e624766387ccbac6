from .handler import RealtimeRelay, ClientSocket
from .frames import (
    ClientFrame,
    ServerFrame,
    InputFrame,
    ResizeFrame,
    PingFrame,
    OutputFrame,
    ErrorFrame,
    DisconnectFrame,
    PongFrame,
    FrameError,
    parse_client_frame,
)

__all__ = [
    "RealtimeRelay",
    "ClientSocket",
    "ClientFrame",
    "ServerFrame",
    "InputFrame",
    "ResizeFrame",
    "PingFrame",
    "OutputFrame",
    "ErrorFrame",
    "DisconnectFrame",
    "PongFrame",
    "FrameError",
    "parse_client_frame",
]
