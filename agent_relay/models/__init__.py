"""
Session state and protocol schemas.

Key components:
- session: Session dataclass and SessionStatus lifecycle.
- session_store: SessionStore registry keyed by session id.
- message_schemas: pydantic models for the downstream client protocol.
- upstream_schemas: pydantic models for the upstream agent protocol.
"""

from agent_relay.models.session import Session, SessionStatus
from agent_relay.models.session_store import SessionStore
