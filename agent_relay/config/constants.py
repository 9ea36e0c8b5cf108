"""
Constants and configuration values used throughout the relay.

This module defines constants that are used across different parts of the application,
providing a centralized location for protocol names, audio format contracts and
default limits so that both sides of the bridge agree on them.
"""

# Logger name used throughout the application
LOGGER_NAME = "agent_relay"

# Upstream (ElevenLabs Conversational AI) endpoints
DEFAULT_UPSTREAM_WS_URL = "wss://api.elevenlabs.io/v1/convai/conversation"
DEFAULT_UPSTREAM_API_URL = "https://api.elevenlabs.io"
SIGNED_URL_PATH = "/v1/convai/conversation/get-signed-url"
API_KEY_HEADER = "xi-api-key"

# Audio format contract: 16 kHz linear PCM on both sides
SUPPORTED_AUDIO_FORMAT = "pcm_16000"

# Framing and timing defaults
MAX_FRAME_SIZE = 8000  # bytes per downstream audio frame
DEFAULT_FRAME_DELAY = 0.0  # seconds between frames of one split
UPSTREAM_CONNECT_TIMEOUT = 10.0  # seconds
CREDENTIAL_REQUEST_TIMEOUT = 10.0  # seconds
TOOL_REQUEST_TIMEOUT = 10.0  # seconds
DEFAULT_AUDIO_BUFFER_MAX_CHUNKS = 50

# Awaiting-upstream audio policies
AUDIO_BUFFER_POLICY_DROP = "drop"
AUDIO_BUFFER_POLICY_QUEUE = "queue"

# Downstream message types accepted from clients
MESSAGE_TYPE_INIT = "init"
MESSAGE_TYPE_AUDIO = "audio"
MESSAGE_TYPE_PING = "ping"

# Upstream event types (relay <-> agent)
UPSTREAM_SESSION_METADATA = "conversation_initiation_metadata"
UPSTREAM_USER_TRANSCRIPT = "user_transcript"
UPSTREAM_AGENT_RESPONSE = "agent_response"
UPSTREAM_AGENT_CORRECTION = "agent_response_correction"
UPSTREAM_AUDIO = "audio"
UPSTREAM_INTERRUPTION = "interruption"
UPSTREAM_PING = "ping"
UPSTREAM_PONG = "pong"
UPSTREAM_TOOL_CALL = "client_tool_call"
UPSTREAM_TOOL_RESULT = "client_tool_result"
UPSTREAM_TOOL_RESPONSE_ACK = "agent_tool_response"

# Request headers accepted on the downstream WebSocket
HEADER_AGENT_ID = "x-agent-id"
HEADER_SESSION_ID = "x-uuid"
