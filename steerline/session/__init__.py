"""Per-conversation session state, persistence and registry."""

from steerline.session.identity import SessionIdentity, parse_session_key
from steerline.session.registry import SessionRegistry
from steerline.session.session import KillResult, Session
from steerline.session.state import ActivityState, QueryState
from steerline.session.store import SessionRecord, SessionStore

__all__ = [
    "ActivityState",
    "KillResult",
    "QueryState",
    "Session",
    "SessionIdentity",
    "SessionRecord",
    "SessionRegistry",
    "SessionStore",
    "parse_session_key",
]
