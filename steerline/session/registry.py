"""Process-wide map from conversation identity to Session."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from steerline.config import Config, get_config
from steerline.logging import get_logger
from steerline.provider import Provider
from steerline.session.identity import SessionIdentity
from steerline.session.session import KillResult, Session
from steerline.session.store import SessionStore

log = get_logger(__name__)


@dataclass(frozen=True)
class RegistryStats:
    total_sessions: int
    processing_sessions: int
    total_input_tokens: int
    total_output_tokens: int
    total_queries: int


def _is_evictable(session: Session) -> bool:
    """Idle, with nothing buffered or waiting on the user."""
    return not (
        session.is_running
        or session.has_steering_messages()
        or session.recovery.has_pending()
        or session.choice_state is not None
        or session.pending_direct_input is not None
    )


class SessionRegistry:
    """Owns every live Session.

    :meth:`get_or_create` never awaits between lookup and insert, so two
    concurrent first messages for one conversation always share a Session.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        store: SessionStore | None = None,
        config: Config | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or get_config()
        self.provider = provider
        self.store = store if store is not None else SessionStore(self.config.resolved_sessions_dir())
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: SessionIdentity) -> bool:
        return identity.session_key in self._sessions

    def sessions(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, identity: SessionIdentity) -> Session | None:
        return self._sessions.get(identity.session_key)

    def create(self, identity: SessionIdentity) -> Session:
        return Session(
            identity,
            self.provider,
            store=self.store,
            config=self.config,
            clock=self._clock,
        )

    def get_or_create(self, identity: SessionIdentity) -> Session:
        key = identity.session_key
        session = self._sessions.get(key)
        if session is not None:
            return session
        session = self.create(identity)
        self._sessions[key] = session
        if self.restore(session):
            log.info("Loaded session", session_key=key)
        else:
            log.info("Created new session", session_key=key)
        return session

    def restore(self, session: Session) -> bool:
        record = self.store.load(session.identity)
        if record is None:
            return False
        session.restore_from_record(record)
        return True

    def persist(self, identity: SessionIdentity) -> bool:
        session = self._sessions.get(identity.session_key)
        if session is None:
            return False
        return session.persist()

    def persist_all(self) -> int:
        saved = 0
        for session in self.sessions():
            if session.persist():
                saved += 1
        log.info("Persisted sessions", saved=saved, total=len(self._sessions))
        return saved

    def load_all(self) -> int:
        """Register every canonically stored session."""
        loaded = 0
        for identity in self.store.list_identities():
            if identity.session_key in self._sessions:
                continue
            self.get_or_create(identity)
            loaded += 1
        return loaded

    async def kill(self, identity: SessionIdentity) -> KillResult:
        """Reset the session in place and drop its persisted record."""
        session = self._sessions.get(identity.session_key)
        result = KillResult(count=0)
        if session is not None:
            result = await session.kill()
        self.store.delete(identity)
        log.info("Killed session", session_key=identity.session_key, lost=result.count)
        return result

    def cleanup(self, now: float | None = None) -> list[str]:
        """Drop expired idle sessions, then the least recently used past the cap."""
        current = self._clock() if now is None else now
        ttl_seconds = self.config.session.ttl_hours * 3600
        evicted: list[str] = []

        for key, session in list(self._sessions.items()):
            if not _is_evictable(session):
                continue
            if current - session.last_activity > ttl_seconds:
                session.persist()
                del self._sessions[key]
                evicted.append(key)

        max_sessions = self.config.session.max_sessions
        if len(self._sessions) > max_sessions:
            idle = sorted(
                (s for s in self._sessions.values() if _is_evictable(s)),
                key=lambda s: s.last_activity,
            )
            for session in idle[: len(self._sessions) - max_sessions]:
                session.persist()
                del self._sessions[session.session_key]
                evicted.append(session.session_key)

        if evicted:
            log.info("Evicted sessions", count=len(evicted), remaining=len(self._sessions))
        return evicted

    def stats(self) -> RegistryStats:
        sessions = list(self._sessions.values())
        return RegistryStats(
            total_sessions=len(sessions),
            processing_sessions=sum(1 for s in sessions if s.is_running),
            total_input_tokens=sum(s.total_input_tokens for s in sessions),
            total_output_tokens=sum(s.total_output_tokens for s in sessions),
            total_queries=sum(s.total_queries for s in sessions),
        )
