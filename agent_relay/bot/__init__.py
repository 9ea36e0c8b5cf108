"""
Core relay components.

Key components:
- UpstreamSessionClient: owns one upstream agent WebSocket per session and
  reports opened/message/closed/errored signals.
- translator: pure mapping between upstream events and downstream messages.
- AudioFramer: bounded-size audio framing with an ordered, optionally paced outlet.
- ToolDispatcher: runs client tool calls and builds error-tagged results.
- SessionBridge: the per-session state machine wiring everything together.
"""

from agent_relay.bot.audio_framer import AudioFramer
from agent_relay.bot.session_bridge import SessionBridge
from agent_relay.bot.tool_dispatcher import ToolDispatcher, ToolInvocation, ToolResult
from agent_relay.bot.upstream_client import CredentialMode, UpstreamSessionClient

__all__ = [
    "AudioFramer",
    "CredentialMode",
    "SessionBridge",
    "ToolDispatcher",
    "ToolInvocation",
    "ToolResult",
    "UpstreamSessionClient",
]
