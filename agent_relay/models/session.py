"""
Per-session state for the relay.

A Session lives for the duration of one downstream connection. It is owned by
the SessionBridge; the upstream client and the audio framer only ever see it
through the bridge while an operation is running.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionStatus(str, Enum):
    """Lifecycle states of a bridged session."""

    CREATED = "created"
    AWAITING_UPSTREAM = "awaiting-upstream"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


# Allowed forward transitions; CLOSING is reachable from every live state.
_TRANSITIONS = {
    SessionStatus.CREATED: {SessionStatus.AWAITING_UPSTREAM, SessionStatus.CLOSING},
    SessionStatus.AWAITING_UPSTREAM: {SessionStatus.ACTIVE, SessionStatus.CLOSING},
    SessionStatus.ACTIVE: {SessionStatus.CLOSING},
    SessionStatus.CLOSING: {SessionStatus.CLOSED},
    SessionStatus.CLOSED: set(),
}


class InvalidTransition(Exception):
    """Raised when a session is moved to a state not reachable from its current one."""


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Session:
    """State of one bridged session."""

    session_id: str
    agent_id: Optional[str] = None
    downstream: Any = None
    upstream: Any = None
    framer: Any = None
    status: SessionStatus = SessionStatus.CREATED
    created_at: float = field(default_factory=time.time)
    early_audio: List[bytes] = field(default_factory=list)
    audio_chunks_in: int = 0
    audio_chunks_dropped: int = 0
    tool_calls: int = 0

    @property
    def is_live(self) -> bool:
        return self.status in (
            SessionStatus.CREATED,
            SessionStatus.AWAITING_UPSTREAM,
            SessionStatus.ACTIVE,
        )

    def transition(self, target: SessionStatus) -> None:
        """Move to ``target``, enforcing the lifecycle order."""
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Session {self.session_id}: {self.status.value} -> {target.value} not allowed"
            )
        self.status = target

    def describe(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "status": self.status.value,
            "age_seconds": round(time.time() - self.created_at, 1),
            "audio_chunks_in": self.audio_chunks_in,
            "audio_chunks_dropped": self.audio_chunks_dropped,
            "tool_calls": self.tool_calls,
        }
