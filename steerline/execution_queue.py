"""Per-conversation FIFO lanes for inbound handling."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from steerline.exceptions import LaneClearedError
from steerline.logging import get_logger

if TYPE_CHECKING:
    from steerline.channel import InboundMessage
    from steerline.session import Session, SessionIdentity

log = get_logger(__name__)

T = TypeVar("T")


def sequentialize_key(inbound: InboundMessage, session: Session | None = None) -> str | None:
    """Lane key for an inbound message, or None when it must bypass the lanes.

    Commands, interrupts, button presses and anything addressed to a session
    that is already processing are handled immediately so they can reach the
    running query.
    """
    if inbound.is_callback or inbound.is_command or inbound.is_interrupt:
        return None
    if session is not None and session.is_processing:
        return None
    return lane_key(inbound.identity)


def lane_key(identity: SessionIdentity) -> str:
    return f"chat:{identity.session_key}"


@dataclass
class LaneEntry:
    task: Callable[[], Awaitable[object]]
    future: asyncio.Future[object]
    enqueued_at_ms: int
    warn_after_ms: int


@dataclass
class LaneState:
    lane: str
    queue: deque[LaneEntry] = field(default_factory=deque)
    active_task_ids: set[int] = field(default_factory=set)
    draining: bool = False


class ConversationSequencer:
    """Runs at most one task per lane, in arrival order."""

    def __init__(self) -> None:
        self._lanes: dict[str, LaneState] = {}
        self._next_task_id = 1
        self._tasks: set[asyncio.Task[None]] = set()

    def _lane(self, lane: str) -> LaneState:
        state = self._lanes.get(lane)
        if state is None:
            state = LaneState(lane=lane)
            self._lanes[lane] = state
        return state

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_drain(self, lane: str) -> None:
        state = self._lane(lane)
        if state.draining:
            return
        state.draining = True
        self._spawn(self._drain(lane))

    async def _run(self, state: LaneState, entry: LaneEntry, task_id: int) -> None:
        loop = asyncio.get_running_loop()
        started_ms = int(loop.time() * 1000)
        try:
            result = await entry.task()
        except Exception as e:
            state.active_task_ids.discard(task_id)
            log.error(
                "Lane task failed",
                lane=state.lane,
                duration_ms=int(loop.time() * 1000) - started_ms,
                error=str(e),
            )
            self._schedule_drain(state.lane)
            if not entry.future.done():
                entry.future.set_exception(e)
            return
        state.active_task_ids.discard(task_id)
        log.debug(
            "Lane task complete",
            lane=state.lane,
            duration_ms=int(loop.time() * 1000) - started_ms,
            queued=len(state.queue),
        )
        self._schedule_drain(state.lane)
        if not entry.future.done():
            entry.future.set_result(result)

    async def _drain(self, lane: str) -> None:
        state = self._lane(lane)
        loop = asyncio.get_running_loop()
        while state.queue and not state.active_task_ids:
            entry = state.queue.popleft()
            waited_ms = int(loop.time() * 1000) - entry.enqueued_at_ms
            if waited_ms >= entry.warn_after_ms:
                log.warning("Lane wait exceeded", lane=lane, waited_ms=waited_ms, queued_ahead=len(state.queue))
            task_id = self._next_task_id
            self._next_task_id += 1
            state.active_task_ids.add(task_id)
            self._spawn(self._run(state, entry, task_id))
        state.draining = False

    async def enqueue(
        self,
        lane: str,
        task: Callable[[], Awaitable[T]],
        *,
        warn_after_ms: int = 2_000,
    ) -> T:
        cleaned = lane.strip()
        if not cleaned:
            raise ValueError("Lane key is required")
        state = self._lane(cleaned)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[object] = loop.create_future()
        state.queue.append(
            LaneEntry(
                task=task,
                future=future,
                enqueued_at_ms=int(loop.time() * 1000),
                warn_after_ms=max(0, int(warn_after_ms)),
            )
        )
        self._schedule_drain(cleaned)
        return await future  # type: ignore[return-value]

    async def dispatch(
        self,
        inbound: InboundMessage,
        session: Session | None,
        handler: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``handler`` in the message's lane, or directly when it bypasses."""
        key = sequentialize_key(inbound, session)
        if key is None:
            return await handler()
        return await self.enqueue(key, handler)

    def queue_size(self, lane: str) -> int:
        state = self._lanes.get(lane.strip())
        if state is None:
            return 0
        return len(state.queue) + len(state.active_task_ids)

    def clear_lane(self, lane: str) -> int:
        cleaned = lane.strip()
        state = self._lanes.get(cleaned)
        if state is None:
            return 0
        removed = len(state.queue)
        while state.queue:
            entry = state.queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(LaneClearedError(cleaned))
        if removed:
            log.info("Lane cleared", lane=cleaned, removed=removed)
        return removed

    def cancel_all(self) -> list[asyncio.Task[None]]:
        """Reject queued entries and cancel running lane tasks; returns the cancelled tasks."""
        for lane in list(self._lanes):
            self.clear_lane(lane)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        return tasks

    def active_task_count(self) -> int:
        return sum(len(s.active_task_ids) for s in self._lanes.values())

    async def wait_for_active_tasks(self, timeout_seconds: float) -> bool:
        """Wait for tasks running now to finish; False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_seconds)
        started = {task_id for s in self._lanes.values() for task_id in s.active_task_ids}
        while started:
            live = {task_id for s in self._lanes.values() for task_id in s.active_task_ids}
            if not started & live:
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True
