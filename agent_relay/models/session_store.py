"""
Session registry for the relay.

This module provides the SessionStore class which tracks live bridged sessions
keyed by session id. Entries are inserted when a downstream connection is
accepted and removed when the session reaches its closed state; each entry is
mutated only by the pump task that owns it.
"""

from typing import Dict, Optional

from agent_relay.models.session import Session


class DuplicateSession(Exception):
    """Raised when a session id is already registered."""


class SessionStore:
    """
    Registry of live sessions, keyed by session id.

    The store is injected into the SessionBridge rather than kept as a
    module-level global, so tests and multiple bridges can hold independent
    registries.
    """

    def __init__(self):
        """Initialize an empty session registry."""
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        """
        Register a new session.

        Args:
            session: The session to register

        Raises:
            DuplicateSession: if a live session already uses the same id
        """
        if session.session_id in self._sessions:
            raise DuplicateSession(f"Session already registered: {session.session_id}")
        self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Optional[Session]:
        """Remove and return a session; removing an unknown id is a no-op."""
        return self._sessions.pop(session_id, None)

    def rename(self, old_id: str, new_id: str) -> Session:
        """
        Re-register a session under a caller-supplied id.

        Raises:
            KeyError: if ``old_id`` is not registered
            DuplicateSession: if ``new_id`` is already taken
        """
        if new_id in self._sessions:
            raise DuplicateSession(f"Session already registered: {new_id}")
        session = self._sessions.pop(old_id)
        session.session_id = new_id
        self._sessions[new_id] = session
        return session

    def all(self) -> Dict[str, Session]:
        """Return a snapshot of all registered sessions."""
        return dict(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
