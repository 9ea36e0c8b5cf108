"""
Pydantic models for the upstream conversational-agent protocol.

Raw upstream payloads are JSON objects with a ``type`` discriminator and a
nested ``<type>_event`` object. They are parsed once into an immutable
UpstreamEvent and consumed exactly once by the session bridge.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_relay.config.constants import UPSTREAM_PONG, UPSTREAM_TOOL_RESULT


class UpstreamEventKind(str, Enum):
    """Variants of an upstream event after parsing."""

    SESSION_METADATA = "session-metadata"
    TRANSCRIPT = "transcript"
    AUDIO_CHUNK = "audio-chunk"
    INTERRUPTION = "interruption"
    AGENT_CORRECTION = "agent-correction"
    PING = "ping"
    TOOL_CALL = "tool-call"
    TOOL_RESPONSE_ACK = "tool-response-ack"
    UNKNOWN = "unknown"


class UpstreamEvent(BaseModel):
    """An upstream event, immutable once parsed."""

    model_config = ConfigDict(frozen=True)

    kind: UpstreamEventKind
    raw_type: str
    role: Optional[str] = None
    text: Optional[str] = None
    audio: Optional[bytes] = None
    event_id: Optional[Any] = None
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UserAudioChunk(BaseModel):
    """Envelope for client audio sent upstream."""

    user_audio_chunk: str


class UpstreamPong(BaseModel):
    """Reply to an upstream ping, echoing its event id."""

    type: str = UPSTREAM_PONG
    event_id: Any


class ClientToolResult(BaseModel):
    """Result of a client tool invocation, sent back upstream."""

    type: str = UPSTREAM_TOOL_RESULT
    tool_call_id: str
    result: Any
    is_error: bool = False


class SignedUrlResponse(BaseModel):
    """Body returned by the signed-URL credential exchange."""

    signed_url: str
