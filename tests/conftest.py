import asyncio
import itertools
from collections import deque
from pathlib import Path

import pytest

from steerline.channel import Channel, DeliveryReceipt, InboundMessage, ReactionPayload, StatusPayload, TextPayload
from steerline.config import (
    Config,
    HistoryConfig,
    RecoveryConfig,
    SessionConfig,
    SteeringConfig,
    set_config,
)
from steerline.provider import Done, Provider, QueryHandle, QueryInput, ResumeResult, TextDelta
from steerline.session import SessionIdentity


class ScriptedProvider(Provider):
    """Plays back one script per query.

    A script step is a provider event (yielded), an exception (raised), an
    ``asyncio.Event`` (waited on; an abort cuts the wait short), or a plain
    callable (invoked, e.g. ``started.set``).
    """

    def __init__(self, *scripts, accept_inject: bool = False):
        self.scripts = deque(list(s) for s in scripts)
        self.queries: list[QueryInput] = []
        self.injected: list[str] = []
        self.aborted: list[str] = []
        self.accept_inject = accept_inject
        self._aborts: dict[str, asyncio.Event] = {}

    def add(self, *steps) -> None:
        self.scripts.append(list(steps))

    @property
    def prompts(self) -> list[str]:
        return [q.prompt for q in self.queries]

    async def start_query(self, query: QueryInput) -> QueryHandle:
        self.queries.append(query)
        self._aborts[query.query_id] = asyncio.Event()
        return QueryHandle(query_id=query.query_id)

    async def stream_events(self, handle: QueryHandle):
        steps = self.scripts.popleft() if self.scripts else [TextDelta(delta="ok"), Done()]
        abort = self._aborts[handle.query_id]
        for step in steps:
            if abort.is_set():
                yield Done(reason="aborted")
                return
            if isinstance(step, asyncio.Event):
                waiter = asyncio.ensure_future(step.wait())
                aborter = asyncio.ensure_future(abort.wait())
                await asyncio.wait({waiter, aborter}, return_when=asyncio.FIRST_COMPLETED)
                waiter.cancel()
                aborter.cancel()
                if abort.is_set():
                    yield Done(reason="aborted")
                    return
                continue
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                step()
                continue
            yield step

    async def abort_query(self, handle: QueryHandle) -> None:
        self.aborted.append(handle.query_id)
        event = self._aborts.get(handle.query_id)
        if event is not None:
            event.set()

    async def resume_session(self, identity, provider_session_id: str) -> ResumeResult:
        return ResumeResult(provider_session_id=provider_session_id, resumed=True)

    async def inject(self, handle: QueryHandle, text: str) -> bool:
        if self.accept_inject:
            self.injected.append(text)
        return self.accept_inject


class RecordingChannel(Channel):
    def __init__(self):
        self.sent: list = []
        self.deleted: list[tuple[int, int]] = []
        self.answered: list[str] = []
        self.closed = False
        self._ids = itertools.count(9000)

    def normalize_inbound(self, raw):
        return raw

    async def deliver_outbound(self, payload) -> DeliveryReceipt:
        self.sent.append(payload)
        return DeliveryReceipt(message_id=next(self._ids))

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        self.deleted.append((chat_id, message_id))
        return True

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        self.answered.append(callback_id)

    async def close(self) -> None:
        self.closed = True

    @property
    def notices(self) -> list[str]:
        return [p.text for p in self.sent if isinstance(p, StatusPayload)]

    @property
    def texts(self) -> list[str]:
        return [p.text for p in self.sent if isinstance(p, TextPayload)]

    @property
    def reactions(self) -> list[tuple[int, str]]:
        return [(p.message_id, p.reaction) for p in self.sent if isinstance(p, ReactionPayload)]


@pytest.fixture
def config(tmp_path: Path) -> Config:
    cfg = Config(
        session=SessionConfig(
            sessions_dir=str(tmp_path / "sessions"),
            stop_wait_seconds=1.0,
            interrupt_wait_seconds=1.0,
            steering_idle_wait_seconds=0.2,
        ),
        steering=SteeringConfig(settle_seconds=0.0),
        history=HistoryConfig(path=str(tmp_path / "history.db")),
        recovery=RecoveryConfig(pending_steering_path=str(tmp_path / "pending.json")),
    )
    set_config(cfg)
    return cfg


@pytest.fixture
def identity() -> SessionIdentity:
    return SessionIdentity.create(42)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def make_inbound(identity):
    counter = itertools.count(1)

    def _make(
        text: str = "",
        *,
        message_id: int | None = None,
        timestamp_ms: int | None = None,
        callback_data: str | None = None,
        callback_id: str | None = None,
        thread_id: int | None = None,
    ) -> InboundMessage:
        n = next(counter)
        return InboundMessage(
            identity=identity,
            chat_id=42,
            text=text,
            message_id=message_id if message_id is not None else 100 + n,
            timestamp_ms=timestamp_ms if timestamp_ms is not None else 1_000 * n,
            thread_id=thread_id,
            user_id=7,
            is_interrupt=text.lstrip().startswith("!"),
            callback_data=callback_data,
            callback_id=callback_id,
        )

    return _make
