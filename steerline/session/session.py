"""Per-conversation session: query lifecycle, steering, choices, recovery."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from steerline.choice_flow import ChoiceState, DirectInputState
from steerline.chat_history import ChatTurn
from steerline.config import Config, get_config
from steerline.exceptions import ProviderAPIError, QueryAbortedError, QueryCancelledError
from steerline.logging import get_logger
from steerline.provider import (
    Done,
    Provider,
    ProviderEvent,
    QueryHandle,
    QueryInput,
    RateLimited,
    SessionStarted,
    TextDelta,
    ToolInvoked,
)
from steerline.rate_limit import RateLimitFallback, is_abort_error
from steerline.recovery import (
    RecoveryManager,
    RecoveryPolicy,
    format_history_context,
    format_recovery_context,
)
from steerline.session.identity import SessionIdentity
from steerline.session.state import ActivityState, QueryState, SessionStateMachine
from steerline.session.store import SessionRecord, SessionStore
from steerline.steering import SteeringBuffer, SteeringMessage, format_steering

log = get_logger(__name__)

EventCallback = Callable[[ProviderEvent], Awaitable[None]]

PREVIOUS_STEERING_HEADER = (
    "[MESSAGES SENT DURING PREVIOUS EXECUTION - user sent these while you were working]"
)
PREVIOUS_STEERING_FOOTER = "[END PREVIOUS MESSAGES]"
NEW_MESSAGE_HEADER = "[NEW MESSAGE]"
INJECTED_HEADER = "[USER SENT MESSAGE DURING EXECUTION]"
INJECTED_FOOTER = "[END USER MESSAGE]"
NO_RESPONSE_TEXT = "No response from the agent."


@dataclass(frozen=True)
class KillResult:
    count: int
    messages: list[SteeringMessage] = field(default_factory=list)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _date_prefix() -> str:
    now = datetime.now().astimezone()
    return f"[Current date/time: {now.strftime('%A, %B %d, %Y %H:%M %Z')}]\n\n"


class Session:
    """The control plane for one conversation.

    All state changes go through methods on this class. Async work that
    outlives a :meth:`kill` captures :attr:`generation` first and checks
    :meth:`is_guard_current` before touching session state.
    """

    def __init__(
        self,
        identity: SessionIdentity,
        provider: Provider,
        *,
        store: SessionStore | None = None,
        config: Config | None = None,
        clock: Callable[[], float] = time.time,
    ):
        cfg = config or get_config()
        self.identity = identity
        self.provider = provider
        self.store = store
        self.config = cfg
        self._clock = clock

        self._state = SessionStateMachine(session_key=identity.session_key)
        self.steering = SteeringBuffer(cfg.steering.max_messages)
        self.recovery = RecoveryManager()
        self.rate_limit = RateLimitFallback(
            cfg.rate_limit.fallback_model,
            failure_threshold=cfg.rate_limit.failure_threshold,
            cooldown_seconds=cfg.rate_limit.cooldown_seconds,
            utilization_threshold=cfg.rate_limit.utilization_threshold,
        )

        self.choice_state: ChoiceState | None = None
        self.pending_direct_input: DirectInputState | None = None

        self.provider_session_id: str | None = None
        self.working_dir = cfg.session.working_dir
        self.context_window_usage: dict[str, int] | None = None
        self.context_window_size = cfg.context.window_size
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_queries = 0
        self.session_start_time: str | None = None
        self.last_message: str | None = None
        self.next_query_context: str | None = None
        self.last_activity = clock()
        self.current_tool: str | None = None

        self._handle: QueryHandle | None = None
        self._lease_active = False
        self._lease_started_at: float | None = None

        self._warned_thresholds: set[float] = set()
        self._pending_context_warnings: list[float] = []
        self._save_required = False
        self._limit_warned = False
        self._recently_restored = False
        self._messages_since_restore = 0

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def session_key(self) -> str:
        return self.identity.session_key

    @property
    def query_state(self) -> QueryState:
        return self._state.query_state

    @property
    def activity_state(self) -> ActivityState:
        return self._state.activity_state

    @property
    def generation(self) -> int:
        return self._state.generation

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def is_processing(self) -> bool:
        return self._state.is_processing

    @property
    def stop_requested(self) -> bool:
        return self._state.stop_requested

    @property
    def is_interrupting(self) -> bool:
        return self._state.interrupting

    def is_guard_current(self, generation: int) -> bool:
        return generation == self._state.generation

    def set_activity(self, state: ActivityState, reason: str = "") -> None:
        self._state.transition_activity(state, reason)

    # ------------------------------------------------------------------
    # Steering
    # ------------------------------------------------------------------

    def add_steering(self, content: str, message_id: int) -> bool:
        """Buffer a message for the running query. Returns True on eviction."""
        return self.steering.push(content, message_id, self.current_tool)

    def has_steering_messages(self) -> bool:
        return self.steering.has_pending()

    def steering_count(self) -> int:
        return self.steering.count()

    def extract_steering(self) -> list[SteeringMessage]:
        return self.steering.extract()

    def restore_steering(self, messages: list[SteeringMessage]) -> int:
        return self.steering.restore(messages)

    # ------------------------------------------------------------------
    # Interrupt flags
    # ------------------------------------------------------------------

    def mark_interrupt(self) -> None:
        self._state.mark_interrupt()

    def consume_interrupt_flag(self) -> bool:
        return self._state.consume_interrupt_flag()

    def begin_interrupt(self) -> bool:
        return self._state.begin_interrupt()

    def end_interrupt(self) -> None:
        self._state.end_interrupt()

    def clear_stop_requested(self) -> None:
        self._state.clear_stop_requested()

    # ------------------------------------------------------------------
    # Choices
    # ------------------------------------------------------------------

    def set_choice(self, choice_state: ChoiceState) -> None:
        self.choice_state = choice_state
        self.pending_direct_input = None
        self.set_activity(ActivityState.WAITING, "choice pending")

    def update_choice(self, choice_state: ChoiceState) -> None:
        self.choice_state = choice_state

    def clear_choice(self) -> None:
        self.choice_state = None
        self.pending_direct_input = None

    def set_pending_direct_input(self, state: DirectInputState) -> None:
        self.pending_direct_input = state

    def take_direct_input(self) -> DirectInputState | None:
        state = self.pending_direct_input
        self.pending_direct_input = None
        return state

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def open_recovery(
        self,
        messages: list[SteeringMessage],
        prompt_message_id: int | None = None,
        chat_id: int | str | None = None,
    ) -> None:
        self.recovery.open(messages, prompt_message_id=prompt_message_id, chat_id=chat_id)

    def apply_recovery(
        self,
        policy: RecoveryPolicy,
        history: list[ChatTurn] | None = None,
    ) -> list[SteeringMessage] | None:
        """Resolve the open recovery set with ``policy``; None when nothing was open."""
        messages = self.recovery.resolve()
        if messages is None:
            return None

        if policy == RecoveryPolicy.RESEND:
            self.steering.restore(messages)
        elif policy in (RecoveryPolicy.CONTEXT, RecoveryPolicy.CONTEXT_HISTORY):
            context = format_recovery_context(messages)
            if policy == RecoveryPolicy.CONTEXT_HISTORY and history:
                context = f"{context}\n\n{format_history_context(history)}"
            if self.next_query_context:
                context = f"{self.next_query_context}\n\n{context}"
            self.next_query_context = context

        log.info(
            "Recovery resolved",
            session_key=self.session_key,
            policy=policy.value,
            count=len(messages),
        )
        return messages

    # ------------------------------------------------------------------
    # Processing lease
    # ------------------------------------------------------------------

    def start_processing(self) -> Callable[[], None]:
        """Mark the session busy until the returned release callback runs.

        Releasing never touches the steering buffer; whatever is still
        buffered is prepended to the next query.
        """
        self._state.start_processing()
        lease_generation = self.generation
        self._lease_active = True
        self._lease_started_at = self._clock()
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            if not self.is_guard_current(lease_generation):
                log.debug("Ignoring stale processing release", session_key=self.session_key)
                return
            previous = self.query_state
            self._lease_active = False
            self._lease_started_at = None
            self._state.release()
            # A stop that arrived while preparing ends with the lease.
            self._state.clear_flags()
            log.debug(
                "Processing released",
                session_key=self.session_key,
                from_state=previous.value,
                steering=self.steering.count(),
            )
            if self.steering.has_pending():
                log.info(
                    "Keeping unconsumed steering for next query",
                    session_key=self.session_key,
                    count=self.steering.count(),
                )

        return release

    def release_if_stuck(self, now: float | None = None) -> bool:
        """Force-release a processing lease held past the configured timeout."""
        if not self._lease_active or self._lease_started_at is None:
            return False
        current = self._clock() if now is None else now
        timeout = self.config.session.processing_timeout_seconds
        if current - self._lease_started_at < timeout or not self.is_processing:
            return False
        log.error(
            "Processing stuck, auto-releasing",
            session_key=self.session_key,
            held_seconds=round(current - self._lease_started_at, 1),
        )
        self._lease_active = False
        self._lease_started_at = None
        self._state.release()
        self._state.clear_flags()
        self._state.finish_activity()
        return True

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _compose_prompt(self, message: str, is_new_session: bool) -> tuple[str, list[SteeringMessage]]:
        prompt = message
        folded = self.steering.extract()
        pending = format_steering(folded)
        if pending:
            prompt = (
                f"{PREVIOUS_STEERING_HEADER}\n{pending}\n{PREVIOUS_STEERING_FOOTER}\n\n"
                f"{NEW_MESSAGE_HEADER}\n{prompt}"
            )
        if self.next_query_context:
            prompt = f"{self.next_query_context}\n\n{prompt}"
            self.next_query_context = None
        if is_new_session:
            prompt = _date_prefix() + prompt
        return prompt, folded

    async def send_message_streaming(
        self,
        message: str,
        on_event: EventCallback | None = None,
    ) -> str:
        """Run one provider query and return the accumulated response text."""
        query_generation = self.generation
        is_new_session = self.provider_session_id is None

        self.rate_limit.observe_usage(self._clock())

        if self._state.stop_requested:
            self._state.clear_stop_requested()
            log.info("Query cancelled before start", session_key=self.session_key)
            raise QueryCancelledError()

        prompt, folded = self._compose_prompt(message, is_new_session)
        query = QueryInput(
            query_id=uuid.uuid4().hex,
            identity=self.identity,
            prompt=prompt,
            model=self.rate_limit.model_override,
            working_dir=self.working_dir,
            resume_session_id=self.provider_session_id,
        )

        self._state.start_query()
        self.set_activity(ActivityState.WORKING, "query dispatched")
        self.current_tool = None

        chunks: list[str] = []
        completed = False
        rate_limited: RateLimited | None = None
        try:
            handle = await self.provider.start_query(query)
            if not self.is_guard_current(query_generation):
                await self.provider.abort_query(handle)
                raise QueryAbortedError()
            self._handle = handle
            if self._state.stop_requested:
                await self.provider.abort_query(handle)

            async for event in self.provider.stream_events(handle):
                if not self.is_guard_current(query_generation):
                    log.debug("Ignoring event from stale query", session_key=self.session_key)
                    raise QueryAbortedError()
                if on_event is not None:
                    await on_event(event)
                if isinstance(event, SessionStarted):
                    self._on_session_started(event)
                elif isinstance(event, TextDelta):
                    chunks.append(event.delta)
                elif isinstance(event, ToolInvoked):
                    await self._on_tool_invoked(event, handle)
                elif isinstance(event, RateLimited):
                    rate_limited = event
                    log.warning("Provider rate limited", session_key=self.session_key, status=event.status_code)
                elif isinstance(event, Done):
                    if event.reason == "aborted":
                        raise QueryAbortedError()
                    if event.reason == "failed":
                        status = rate_limited.status_code if rate_limited else None
                        raise ProviderAPIError(
                            event.error_message or (rate_limited.message if rate_limited else "query failed"),
                            status_code=status,
                        )
                    completed = True
                    self._accumulate_usage(event)
                    break
        except asyncio.CancelledError:
            log.warning("Query task cancelled", session_key=self.session_key, folded=len(folded))
            if folded and self.is_guard_current(query_generation):
                self.steering.restore(folded)
            raise
        except Exception as e:
            expected = is_abort_error(e) and (
                completed or self._state.stop_requested or not self.is_guard_current(query_generation)
            )
            if not expected:
                log.error("Query failed", session_key=self.session_key, error=str(e))
                if folded and self.is_guard_current(query_generation):
                    self.steering.restore(folded)
                raise
            log.warning("Suppressed expected abort", session_key=self.session_key, completed=completed)
        finally:
            if self.is_guard_current(query_generation):
                self._state.complete_query(lease_held=self._lease_active)
                self._state.finish_activity()
                self._handle = None
                self.current_tool = None

        if not self.is_guard_current(query_generation):
            raise QueryAbortedError()

        self.last_activity = self._clock()
        if self.steering.has_pending():
            log.info(
                "Steering not delivered during query",
                session_key=self.session_key,
                count=self.steering.count(),
            )
        self.persist()
        return "".join(chunks) or NO_RESPONSE_TEXT

    def _on_session_started(self, event: SessionStarted) -> None:
        if self.provider_session_id:
            return
        self.provider_session_id = event.provider_session_id
        log.info(
            "Provider session started",
            session_key=self.session_key,
            provider_session_id=event.provider_session_id[:8],
            resumed=event.resumed,
        )
        self.persist()

    async def _on_tool_invoked(self, event: ToolInvoked, handle: QueryHandle) -> None:
        if event.phase == "start":
            self.current_tool = event.tool_name
            return
        self.current_tool = None
        if not self.steering.has_pending():
            return
        messages = self.steering.extract()
        text = format_steering(messages)
        delivered = await self.provider.inject(handle, f"{INJECTED_HEADER}\n{text}\n{INJECTED_FOOTER}")
        if delivered:
            log.info(
                "Injected steering after tool",
                session_key=self.session_key,
                tool=event.tool_name,
                count=len(messages),
            )
        else:
            self.steering.restore(messages)

    async def stop(self) -> Literal["stopped", "pending"] | bool:
        """Abort the running query, or cancel one that is still being prepared."""
        if self.query_state in (QueryState.RUNNING, QueryState.ABORTING):
            # Only the first stop signals the provider; later callers just wait.
            if self.query_state == QueryState.RUNNING:
                self._state.request_stop()
                handle = self._handle
                if handle is not None:
                    await self.provider.abort_query(handle)
                log.info("Stop requested, aborting current query", session_key=self.session_key)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.session.stop_wait_seconds
            while self.query_state != QueryState.IDLE and loop.time() < deadline:
                await asyncio.sleep(0.05)

            if self.query_state == QueryState.IDLE:
                log.info("Stop completed", session_key=self.session_key)
            else:
                log.warning("Stop timeout, query still winding down", session_key=self.session_key)
            return "stopped"

        if self.query_state == QueryState.PREPARING:
            self._state.request_stop()
            log.info("Stop requested before query start", session_key=self.session_key)
            return "pending"

        return False

    async def kill(self) -> KillResult:
        """Reset the session; buffered steering is returned for recovery."""
        generation = self._state.bump_generation()
        handle = self._handle
        self._handle = None
        if handle is not None:
            try:
                await self.provider.abort_query(handle)
            except Exception as e:
                log.warning("Abort during kill failed", session_key=self.session_key, error=str(e))

        lost = self.steering.extract()
        if lost:
            log.warning("Extracted steering during kill", session_key=self.session_key, count=len(lost))

        self._state.release()
        self._state.finish_activity()
        self._state.clear_stop_requested()
        self._state.consume_interrupt_flag()
        self._lease_active = False
        self._lease_started_at = None

        self.provider_session_id = None
        self.session_start_time = None
        self.context_window_usage = None
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_queries = 0
        self.next_query_context = None
        self.current_tool = None
        self.clear_choice()
        self.rate_limit.clear_override()
        self._reset_context_flags()
        log.info("Session cleared", session_key=self.session_key, generation=generation)
        return KillResult(count=len(lost), messages=lost)

    # ------------------------------------------------------------------
    # Context accounting
    # ------------------------------------------------------------------

    @property
    def current_context_tokens(self) -> int:
        if self.context_window_usage:
            total = sum(int(v) for v in self.context_window_usage.values())
            if total > 0:
                return total
        return self.total_input_tokens

    def _reset_context_flags(self) -> None:
        self._warned_thresholds.clear()
        self._pending_context_warnings.clear()
        self._save_required = False
        self._limit_warned = False
        self._recently_restored = False
        self._messages_since_restore = 0

    def mark_restored(self) -> None:
        self._reset_context_flags()
        self._recently_restored = True
        log.info(
            "Context restored, threshold checks paused",
            session_key=self.session_key,
            cooldown_messages=self.config.context.restore_cooldown_messages,
        )

    def _accumulate_usage(self, done: Done) -> None:
        if self.session_start_time is None:
            self.session_start_time = _utcnow_iso()
        self.total_input_tokens += done.input_tokens
        self.total_output_tokens += done.output_tokens
        self.total_queries += 1
        if done.context_tokens is not None:
            self.context_window_usage = {"input_tokens": int(done.context_tokens)}
        if done.context_window:
            self.context_window_size = int(done.context_window)

        cfg = self.config.context
        if self._recently_restored:
            self._messages_since_restore += 1
            if self._messages_since_restore >= cfg.restore_cooldown_messages:
                self._reset_context_flags()

        limit = self.context_window_size or cfg.window_size
        current = self.current_context_tokens

        # Compaction drops usage back under the lowest band.
        if self._limit_warned and current < limit * 0.8:
            self._limit_warned = False

        if self._recently_restored:
            return

        for threshold in sorted(cfg.warn_thresholds):
            if current >= int(limit * threshold) and threshold not in self._warned_thresholds:
                self._warned_thresholds.add(threshold)
                self._pending_context_warnings.append(threshold)
                log.warning(
                    "Context threshold reached",
                    session_key=self.session_key,
                    threshold=threshold,
                    tokens=current,
                    limit=limit,
                )

        if current >= limit * cfg.save_threshold and not self._limit_warned:
            self._limit_warned = True
            self._save_required = True
            log.warning("Context limit approaching, save required", session_key=self.session_key, tokens=current)

    def pop_context_warnings(self) -> list[float]:
        warnings = list(self._pending_context_warnings)
        self._pending_context_warnings.clear()
        return warnings

    def consume_save_required(self) -> bool:
        required = self._save_required
        self._save_required = False
        return required

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_record(self) -> SessionRecord | None:
        if not self.provider_session_id:
            return None
        return SessionRecord(
            session_id=self.provider_session_id,
            working_dir=self.working_dir,
            context_window_usage=self.context_window_usage,
            context_window_size=self.context_window_size,
            total_input_tokens=self.total_input_tokens,
            total_output_tokens=self.total_output_tokens,
            total_queries=self.total_queries,
            session_start_time=self.session_start_time,
        )

    def persist(self) -> bool:
        record = self.to_record()
        if record is None or self.store is None:
            return False
        return self.store.save(self.identity, record)

    def restore_from_record(self, record: SessionRecord) -> None:
        """Load persisted accounting; buffered steering is left alone."""
        self.provider_session_id = record.session_id
        self.working_dir = record.working_dir or self.working_dir
        self.total_input_tokens = record.total_input_tokens
        self.total_output_tokens = record.total_output_tokens
        self.total_queries = record.total_queries
        self.session_start_time = record.session_start_time
        self.context_window_usage = record.context_window_usage
        if record.context_window_size > 0:
            self.context_window_size = record.context_window_size
        self.last_activity = self._clock()
        self.mark_restored()
        log.info("Session restored", session_key=self.session_key, queries=record.total_queries)

    def status_lines(self) -> list[str]:
        lines = [
            f"Session: {self.session_key}",
            f"Query: {self.query_state.value} / activity: {self.activity_state.value}",
            f"Queued messages: {self.steering.count()}",
            f"Queries: {self.total_queries} (in {self.total_input_tokens}, out {self.total_output_tokens})",
        ]
        if self.context_window_size:
            pct = 100.0 * self.current_context_tokens / self.context_window_size
            lines.append(f"Context: {self.current_context_tokens}/{self.context_window_size} ({pct:.1f}%)")
        if self.rate_limit.model_override:
            lines.append(f"Fallback model: {self.rate_limit.model_override}")
        if self.recovery.has_pending():
            lines.append("Recovery pending")
        return lines
