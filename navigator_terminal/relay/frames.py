"""
Relay frames — JSON messages exchanged over the terminal websocket.

Client -> server: ``input``, ``resize``, ``ping``.
Server -> client: ``output``, ``error``, ``disconnect``, ``pong``.

Each frame is a model tagged by ``type``; inbound frames are parsed into
exactly one of the client variants or rejected.
"""
from typing import Annotated, Literal, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

UNKNOWN_TYPE = "Unknown message type"
INVALID_FORMAT = "Invalid message format"


class Frame(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def dumps(self) -> str:
        """Serialize with camelCase keys."""
        return orjson.dumps(self.model_dump(by_alias=True)).decode("utf-8")


# --- Client frames ---

class InputFrame(Frame):
    type: Literal["input"] = "input"
    session_id: str = Field(min_length=1)
    data: str = Field(min_length=1)


class ResizeFrame(Frame):
    type: Literal["resize"] = "resize"
    session_id: str = Field(min_length=1)
    cols: int = Field(ge=1, le=1000)
    rows: int = Field(ge=1, le=1000)


class PingFrame(Frame):
    type: Literal["ping"] = "ping"
    session_id: str = ""


ClientFrame = Annotated[
    Union[InputFrame, ResizeFrame, PingFrame],
    Field(discriminator="type"),
]

_client_frame = TypeAdapter(ClientFrame)

_CLIENT_TYPES = frozenset({"input", "resize", "ping"})


# --- Server frames ---

class OutputFrame(Frame):
    type: Literal["output"] = "output"
    session_id: str
    data: str


class ErrorFrame(Frame):
    type: Literal["error"] = "error"
    session_id: str = ""
    error: str


class DisconnectFrame(Frame):
    type: Literal["disconnect"] = "disconnect"
    session_id: str


class PongFrame(Frame):
    type: Literal["pong"] = "pong"
    session_id: str = ""


ServerFrame = Union[OutputFrame, ErrorFrame, DisconnectFrame, PongFrame]


class FrameError(ValueError):
    """An inbound frame could not be accepted.

    ``session_id`` is echoed back when it could be read from the payload.
    """

    def __init__(self, message: str, session_id: str = ""):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


def parse_client_frame(raw: Union[str, bytes]) -> Union[InputFrame, ResizeFrame, PingFrame]:
    """Parse one inbound websocket message.

    Raises:
        FrameError: With ``UNKNOWN_TYPE`` for a missing or unsupported
            ``type`` and ``INVALID_FORMAT`` for anything else malformed.
    """
    try:
        payload = orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise FrameError(INVALID_FORMAT) from err
    if not isinstance(payload, dict):
        raise FrameError(INVALID_FORMAT)
    session_id = payload.get("sessionId")
    session_id = session_id if isinstance(session_id, str) else ""
    frame_type = payload.get("type")
    if not isinstance(frame_type, str) or frame_type not in _CLIENT_TYPES:
        raise FrameError(UNKNOWN_TYPE, session_id)
    try:
        return _client_frame.validate_python(payload)
    except ValidationError as err:
        raise FrameError(INVALID_FORMAT, session_id) from err
