"""
Environment-based settings for the relay.

Values are read from the process environment (optionally populated from a
``.env`` file at startup) and validated with pydantic, so that a bad value
fails loudly when the server boots rather than in the middle of a call.
"""

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from agent_relay.config.constants import (
    AUDIO_BUFFER_POLICY_DROP,
    DEFAULT_AUDIO_BUFFER_MAX_CHUNKS,
    DEFAULT_UPSTREAM_API_URL,
    DEFAULT_UPSTREAM_WS_URL,
    MAX_FRAME_SIZE,
    UPSTREAM_CONNECT_TIMEOUT,
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


class RelaySettings(BaseModel):
    """Validated runtime configuration for the relay."""

    agent_id: Optional[str] = Field(None, description="Default upstream agent identifier")
    api_key: Optional[str] = Field(None, description="Upstream API key; enables signed-URL mode")
    upstream_ws_url: str = Field(DEFAULT_UPSTREAM_WS_URL, description="Direct-mode WebSocket base URL")
    upstream_api_url: str = Field(DEFAULT_UPSTREAM_API_URL, description="Signed-URL endpoint base URL")
    connect_timeout: float = Field(UPSTREAM_CONNECT_TIMEOUT, gt=0)
    max_frame_size: int = Field(MAX_FRAME_SIZE, gt=0)
    frame_delay_ms: float = Field(0.0, ge=0, description="Pause between frames of one split")
    audio_buffer_policy: Literal["drop", "queue"] = AUDIO_BUFFER_POLICY_DROP
    audio_buffer_max_chunks: int = Field(DEFAULT_AUDIO_BUFFER_MAX_CHUNKS, ge=0)
    passthrough_metadata: bool = False
    discard_audio_on_interruption: bool = True
    ami_url: str = "http://127.0.0.1:6006"
    tools_dir: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = Field(6035, gt=0, lt=65536)

    @field_validator("agent_id", "api_key", "tools_dir")
    def empty_to_none(cls, v):
        """Treat blank environment values as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @property
    def uses_signed_url(self) -> bool:
        return bool(self.api_key)

    @property
    def frame_delay(self) -> float:
        return self.frame_delay_ms / 1000.0


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def load_settings() -> RelaySettings:
    """
    Build RelaySettings from the current environment.

    Returns:
        RelaySettings: validated settings

    Raises:
        pydantic.ValidationError: if any variable holds an invalid value
    """
    return RelaySettings(
        agent_id=os.getenv("ELEVENLABS_AGENT_ID"),
        api_key=os.getenv("ELEVENLABS_API_KEY"),
        upstream_ws_url=os.getenv("ELEVENLABS_WS_URL", DEFAULT_UPSTREAM_WS_URL),
        upstream_api_url=os.getenv("ELEVENLABS_API_URL", DEFAULT_UPSTREAM_API_URL),
        connect_timeout=os.getenv("UPSTREAM_CONNECT_TIMEOUT", UPSTREAM_CONNECT_TIMEOUT),
        max_frame_size=os.getenv("MAX_FRAME_SIZE", MAX_FRAME_SIZE),
        frame_delay_ms=os.getenv("FRAME_DELAY_MS", "0"),
        audio_buffer_policy=os.getenv("AUDIO_BUFFER_POLICY", AUDIO_BUFFER_POLICY_DROP).lower(),
        audio_buffer_max_chunks=os.getenv("AUDIO_BUFFER_MAX_CHUNKS", DEFAULT_AUDIO_BUFFER_MAX_CHUNKS),
        passthrough_metadata=_env_flag("PASSTHROUGH_METADATA", False),
        discard_audio_on_interruption=_env_flag("DISCARD_AUDIO_ON_INTERRUPTION", True),
        ami_url=os.getenv("AMI_URL", "http://127.0.0.1:6006"),
        tools_dir=os.getenv("TOOLS_DIR"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=os.getenv("PORT", "6035"),
    )
