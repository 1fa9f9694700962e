"""Provider (agent) boundary: query input, typed stream events, abstract provider."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from steerline.session.identity import SessionIdentity


@dataclass(frozen=True)
class QueryInput:
    """Everything a provider needs to start one query."""

    query_id: str
    identity: SessionIdentity
    prompt: str
    model: str | None = None
    working_dir: str = ""
    resume_session_id: str | None = None


@dataclass
class QueryHandle:
    query_id: str
    provider_session_id: str | None = None


@dataclass(frozen=True)
class ResumeResult:
    provider_session_id: str
    resumed: bool


@dataclass(frozen=True)
class SessionStarted:
    provider_session_id: str
    resumed: bool = False
    type: Literal["session-started"] = "session-started"
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TextDelta:
    delta: str
    type: Literal["text-delta"] = "text-delta"
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ToolInvoked:
    tool_name: str
    phase: Literal["start", "end"] = "start"
    type: Literal["tool-invoked"] = "tool-invoked"
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RateLimited:
    status_code: int | None = 429
    reset_at: float | None = None
    message: str = "rate limit"
    type: Literal["rate-limited"] = "rate-limited"
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Done:
    reason: Literal["completed", "aborted", "failed"] = "completed"
    error_message: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    context_tokens: int | None = None
    context_window: int | None = None
    type: Literal["done"] = "done"
    timestamp: float = field(default_factory=time.time)


ProviderEvent = SessionStarted | TextDelta | ToolInvoked | RateLimited | Done


class Provider(ABC):
    """Abstract agent provider.

    A provider streams typed events for a query. Mid-execution input is
    delivered through :meth:`inject`; providers that cannot accept it return
    False and the session keeps the message buffered for the next turn.
    """

    @abstractmethod
    async def start_query(self, query: QueryInput) -> QueryHandle:
        pass

    @abstractmethod
    def stream_events(self, handle: QueryHandle) -> AsyncIterator[ProviderEvent]:
        pass

    @abstractmethod
    async def abort_query(self, handle: QueryHandle) -> None:
        pass

    @abstractmethod
    async def resume_session(self, identity: SessionIdentity, provider_session_id: str) -> ResumeResult:
        pass

    async def inject(self, handle: QueryHandle, text: str) -> bool:
        del handle, text
        return False
