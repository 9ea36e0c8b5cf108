"""
Message translation between the downstream session protocol and the upstream agent protocol.

Every function in this module is pure: it takes a parsed payload and returns the
payload(s) to send, leaving all I/O and state changes to the SessionBridge.
"""

import base64
import binascii
import json
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from agent_relay.bot.exceptions import MalformedMessage
from agent_relay.config.constants import (
    MESSAGE_TYPE_AUDIO,
    MESSAGE_TYPE_INIT,
    MESSAGE_TYPE_PING,
    SUPPORTED_AUDIO_FORMAT,
    UPSTREAM_AGENT_CORRECTION,
    UPSTREAM_AGENT_RESPONSE,
    UPSTREAM_AUDIO,
    UPSTREAM_INTERRUPTION,
    UPSTREAM_PING,
    UPSTREAM_SESSION_METADATA,
    UPSTREAM_TOOL_CALL,
    UPSTREAM_TOOL_RESPONSE_ACK,
    UPSTREAM_USER_TRANSCRIPT,
)
from agent_relay.models.message_schemas import (
    AudioChunkMessage,
    BaseMessage,
    ConversationInitiatedMessage,
    IncomingMessage,
    InitMessage,
    InterruptionMessage,
    PingMessage,
    PongMessage,
    TranscriptMessage,
)
from agent_relay.models.upstream_schemas import (
    ClientToolResult,
    UpstreamEvent,
    UpstreamEventKind,
    UpstreamPong,
    UserAudioChunk,
)

_DOWNSTREAM_MODELS = {
    MESSAGE_TYPE_INIT: InitMessage,
    MESSAGE_TYPE_AUDIO: AudioChunkMessage,
    MESSAGE_TYPE_PING: PingMessage,
}


def _load_json(raw: Union[str, bytes], source: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessage(source, f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedMessage(source, "Message is not a JSON object")
    return data


def _decode_audio(encoded: Optional[str]) -> bytes:
    if not encoded:
        return b""
    try:
        return base64.b64decode(encoded)
    except (binascii.Error, ValueError) as e:
        raise MalformedMessage("upstream", f"Invalid base64 audio: {e}")


def parse_upstream_event(raw: Union[str, bytes]) -> UpstreamEvent:
    """
    Parse a raw upstream payload into an UpstreamEvent.

    Args:
        raw: The JSON text received over the upstream connection

    Returns:
        UpstreamEvent: the parsed, immutable event; unrecognised types map to UNKNOWN

    Raises:
        MalformedMessage: if the payload is not a JSON object with a ``type`` field
    """
    data = _load_json(raw, "upstream")
    message_type = data.get("type")
    if not message_type:
        raise MalformedMessage("upstream", "Missing message type")
    try:
        return _build_upstream_event(message_type, data)
    except ValidationError as e:
        raise MalformedMessage("upstream", f"Invalid {message_type} message: {e}")


def _build_upstream_event(message_type: str, data: Dict[str, Any]) -> UpstreamEvent:
    if message_type == UPSTREAM_USER_TRANSCRIPT:
        event = data.get("user_transcription_event") or {}
        return UpstreamEvent(
            kind=UpstreamEventKind.TRANSCRIPT,
            raw_type=message_type,
            role="user",
            text=event.get("user_transcript") or "",
        )
    if message_type == UPSTREAM_AGENT_RESPONSE:
        event = data.get("agent_response_event") or {}
        return UpstreamEvent(
            kind=UpstreamEventKind.TRANSCRIPT,
            raw_type=message_type,
            role="agent",
            text=event.get("agent_response") or "",
        )
    if message_type == UPSTREAM_AGENT_CORRECTION:
        event = data.get("agent_response_correction_event") or {}
        return UpstreamEvent(
            kind=UpstreamEventKind.AGENT_CORRECTION,
            raw_type=message_type,
            text=event.get("corrected_agent_response") or event.get("agent_response"),
        )
    if message_type == UPSTREAM_AUDIO:
        event = data.get("audio_event") or {}
        return UpstreamEvent(
            kind=UpstreamEventKind.AUDIO_CHUNK,
            raw_type=message_type,
            audio=_decode_audio(event.get("audio_base_64")),
            event_id=event.get("event_id"),
        )
    if message_type == UPSTREAM_INTERRUPTION:
        return UpstreamEvent(kind=UpstreamEventKind.INTERRUPTION, raw_type=message_type)
    if message_type == UPSTREAM_PING:
        event = data.get("ping_event") or {}
        return UpstreamEvent(
            kind=UpstreamEventKind.PING,
            raw_type=message_type,
            event_id=event.get("event_id"),
        )
    if message_type == UPSTREAM_TOOL_CALL:
        event = data.get("client_tool_call") or {}
        tool_call_id = event.get("tool_call_id")
        if not event.get("tool_name") or not tool_call_id:
            raise MalformedMessage("upstream", "client_tool_call without tool_name or tool_call_id")
        parameters = event.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise MalformedMessage("upstream", "client_tool_call parameters must be an object")
        return UpstreamEvent(
            kind=UpstreamEventKind.TOOL_CALL,
            raw_type=message_type,
            tool_name=event["tool_name"],
            tool_call_id=str(tool_call_id),
            parameters=parameters,
        )
    if message_type == UPSTREAM_SESSION_METADATA:
        return UpstreamEvent(
            kind=UpstreamEventKind.SESSION_METADATA,
            raw_type=message_type,
            metadata=data.get("conversation_initiation_metadata_event") or {},
        )
    if message_type == UPSTREAM_TOOL_RESPONSE_ACK:
        return UpstreamEvent(
            kind=UpstreamEventKind.TOOL_RESPONSE_ACK,
            raw_type=message_type,
            metadata=data.get("agent_tool_response") or {},
        )
    return UpstreamEvent(kind=UpstreamEventKind.UNKNOWN, raw_type=message_type, metadata=data)


def parse_downstream_message(raw: Union[str, bytes]) -> IncomingMessage:
    """
    Parse and validate a JSON message from the downstream client.

    Raises:
        MalformedMessage: on invalid JSON, a missing/unknown type, or failed validation
    """
    data = _load_json(raw, "downstream")
    message_type = data.get("type")
    if not message_type:
        raise MalformedMessage("downstream", "Missing message type")
    model = _DOWNSTREAM_MODELS.get(message_type)
    if model is None:
        raise MalformedMessage("downstream", f"Unknown message type: {message_type}")
    try:
        return model(**data)
    except ValidationError as e:
        raise MalformedMessage("downstream", f"Invalid {message_type} message: {e}")


def upstream_to_downstream(event: UpstreamEvent, passthrough: bool = False) -> List[BaseMessage]:
    """
    Translate an upstream event into the downstream messages it produces.

    Audio, pings and tool calls are not translated here: audio goes through the
    AudioFramer, pings are answered upstream and tool calls go to the ToolDispatcher.
    """
    if event.kind == UpstreamEventKind.TRANSCRIPT:
        return [TranscriptMessage(role=event.role, text=event.text or "")]
    if event.kind in (UpstreamEventKind.AGENT_CORRECTION, UpstreamEventKind.INTERRUPTION):
        return [InterruptionMessage()]
    if event.kind == UpstreamEventKind.SESSION_METADATA and passthrough:
        return [ConversationInitiatedMessage(metadata=event.metadata)]
    return []


def check_audio_formats(metadata: Dict[str, Any]) -> List[str]:
    """
    Compare the negotiated audio formats against the supported PCM contract.

    Returns:
        A list of human-readable warnings, empty when both formats match
    """
    warnings = []
    for key in ("user_input_audio_format", "agent_output_audio_format"):
        advertised = metadata.get(key)
        if advertised is not None and advertised != SUPPORTED_AUDIO_FORMAT:
            warnings.append(
                f"{key} is {advertised!r}, relay expects {SUPPORTED_AUDIO_FORMAT!r}; audio will not play correctly"
            )
    return warnings


def pong_for(event: UpstreamEvent) -> Dict[str, Any]:
    """Build the upstream pong for a ping event."""
    return UpstreamPong(event_id=event.event_id).model_dump()


def user_audio_envelope(chunk: bytes) -> Dict[str, Any]:
    """Wrap client audio bytes in the upstream's expected envelope."""
    return UserAudioChunk(user_audio_chunk=base64.b64encode(chunk).decode("ascii")).model_dump()


def tool_result_envelope(tool_call_id: str, result: Any, is_error: bool) -> Dict[str, Any]:
    """Build the client_tool_result payload sent back upstream."""
    return ClientToolResult(tool_call_id=tool_call_id, result=result, is_error=is_error).model_dump()


def downstream_pong() -> PongMessage:
    """Build the local reply to a downstream ping."""
    return PongMessage()
