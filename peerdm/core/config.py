"""
Configuration for peerdm nodes.

Defaults can be overridden by PEERDM_* environment variables, optionally
loaded from a .env file.
"""

import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator


# Protocol identifier negotiated on top of the transport
DIRECT_MESSAGE_PROTOCOL = "/universal-connectivity/dm/1.0.0"

CLIENT_VERSION = "0.0.1"

ENV_PREFIX = "PEERDM_"


class NodeConfig(BaseModel):
    """Validated, immutable node configuration."""

    model_config = ConfigDict(frozen=True)

    # Network
    host: str = "127.0.0.1"
    port: int = Field(default=9100, ge=0, le=65535)

    # Protocol
    client_version: str = CLIENT_VERSION
    protocol_id: str = DIRECT_MESSAGE_PROTOCOL
    max_message_size: int = Field(default=1024 * 1024, gt=0)  # 1 MiB

    # Timeouts (seconds)
    dial_timeout: float = Field(default=5.0, gt=0)
    upgrade_timeout: float = Field(default=2.0, gt=0)
    upgrade_poll_interval: float = Field(default=0.1, gt=0)
    handshake_timeout: float = Field(default=10.0, gt=0)
    read_timeout: Optional[float] = Field(default=None, gt=0)

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @field_validator("protocol_id")
    @classmethod
    def _protocol_id_is_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("protocol_id must start with '/'")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return value


def load_config(env_file: Optional[Union[str, Path]] = None, **overrides) -> NodeConfig:
    """
    Load configuration from the environment.

    Args:
        env_file: Optional .env file to load before reading PEERDM_* variables
        overrides: Explicit values that win over the environment

    Returns:
        NodeConfig instance
    """
    if env_file:
        load_dotenv(env_file, override=False)

    values = {}
    for name in NodeConfig.model_fields:
        raw = os.environ.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw

    values.update({k: v for k, v in overrides.items() if v is not None})
    return NodeConfig(**values)
