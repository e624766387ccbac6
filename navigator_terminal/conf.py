"""
Terminal Configuration — Relay and shell settings.

Reads overrides from environment variables:
    TERMINAL_WS_PATH, TERMINAL_PING_INTERVAL, TERMINAL_DEFAULT_COLS,
    TERMINAL_DEFAULT_ROWS, TERMINAL_TERM, TERMINAL_READ_SIZE,
    TERMINAL_CONNECT_TIMEOUT, TERMINAL_CLOSE_TIMEOUT,
    TERMINAL_HOST, TERMINAL_PORT
"""
import os
import logging

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("navigator.terminal")

_ENV_PREFIX = "TERMINAL_"


class TerminalConfig(BaseModel):
    """Validated relay / shell configuration."""

    ws_path: str = Field(default="/ws")
    ping_interval: float = Field(default=30.0, gt=0)
    default_cols: int = Field(default=80, ge=1, le=1000)
    default_rows: int = Field(default=24, ge=1, le=1000)
    term: str = Field(default="xterm-256color")
    read_size: int = Field(default=32768, ge=1024)
    connect_timeout: float = Field(default=10.0, gt=0)
    close_timeout: float = Field(default=5.0, gt=0)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000, ge=1, le=65535)

    @field_validator("ws_path")
    @classmethod
    def validate_ws_path(cls, v: str) -> str:
        """Websocket path must be absolute."""
        if not v.startswith("/"):
            raise ValueError(f"ws_path must start with '/': {v}")
        return v

    @classmethod
    def from_env(cls) -> "TerminalConfig":
        """Create TerminalConfig from TERMINAL_* environment variables.

        Unset variables keep their defaults.

        Returns:
            Populated TerminalConfig instance.
        """
        values = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        config = cls(**values)
        logger.debug(
            "Terminal config: ws_path=%s ping_interval=%s",
            config.ws_path, config.ping_interval,
        )
        return config
