"""
Pydantic models for the downstream session protocol.

This module defines structured data models for all incoming and outgoing messages
exchanged with downstream clients (browser, telephony gateway or generic caller),
providing type validation and JSON serialization.
"""

import base64
import binascii
import time
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class BaseMessage(BaseModel):
    """Base model for all downstream messages."""

    type: str = Field(..., description="Message type identifier")

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


# Incoming messages
class InitMessage(BaseMessage):
    """Model for the init message that starts the upstream session."""

    type: Literal["init"]
    sessionId: Optional[str] = Field(None, description="Caller-supplied session identifier")

    @field_validator("sessionId")
    def validate_session_id(cls, v):
        """Treat a blank session id as absent."""
        if v is not None and not v.strip():
            return None
        return v


class AudioChunkMessage(BaseMessage):
    """Model for an audio message carrying base64 encoded PCM from the client."""

    type: Literal["audio"]
    audio: str = Field(..., description="Base64-encoded audio data")

    @field_validator("audio")
    def validate_audio(cls, v):
        """Validate that audio is valid base64."""
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 encoded audio data")
        return v

    def audio_bytes(self) -> bytes:
        return base64.b64decode(self.audio)


class PingMessage(BaseMessage):
    """Model for a keep-alive ping from the client."""

    type: Literal["ping"]


# Outgoing messages
class ConnectedMessage(BaseMessage):
    """Sent once the upstream session is open."""

    type: Literal["connected"] = "connected"
    sessionId: str
    agentId: str


class TranscriptMessage(BaseMessage):
    """A user or agent transcript line."""

    type: Literal["transcript"] = "transcript"
    role: Literal["user", "agent"]
    text: str


class AudioFrameMessage(BaseMessage):
    """One bounded-size audio frame for playback."""

    type: Literal["audio"] = "audio"
    audio: str = Field(..., description="Base64-encoded audio frame")

    @classmethod
    def from_bytes(cls, frame: bytes) -> "AudioFrameMessage":
        return cls(audio=base64.b64encode(frame).decode("ascii"))


class InterruptionMessage(BaseMessage):
    """Tells the client to stop playback; a new agent response is coming."""

    type: Literal["interruption"] = "interruption"


class UpstreamDisconnectedMessage(BaseMessage):
    """Sent when the upstream agent connection closes."""

    type: Literal["upstream_disconnected"] = "upstream_disconnected"


class ErrorMessage(BaseMessage):
    """Sent before closing on a fault, or when a client message is rejected."""

    type: Literal["error"] = "error"
    message: str


class PongMessage(BaseMessage):
    """Reply to a client ping."""

    type: Literal["pong"] = "pong"
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


class ConversationInitiatedMessage(BaseMessage):
    """Session metadata forwarded in pass-through mode."""

    type: Literal["conversation_initiated"] = "conversation_initiated"
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Union type for all possible incoming messages
IncomingMessage = Union[InitMessage, AudioChunkMessage, PingMessage]

# Union type for all possible outgoing messages
OutgoingMessage = Union[
    ConnectedMessage,
    TranscriptMessage,
    AudioFrameMessage,
    InterruptionMessage,
    UpstreamDisconnectedMessage,
    ErrorMessage,
    PongMessage,
    ConversationInitiatedMessage,
]
