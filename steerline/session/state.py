"""Explicit query/activity state machine for a session."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from steerline.exceptions import IllegalTransitionError
from steerline.logging import get_logger

log = get_logger(__name__)


class QueryState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    RUNNING = "running"
    ABORTING = "aborting"


class ActivityState(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    WAITING = "waiting"


# Every state may drop back to idle (completion, kill, forced release).
QUERY_TRANSITIONS: dict[QueryState, frozenset[QueryState]] = {
    QueryState.IDLE: frozenset({QueryState.PREPARING, QueryState.RUNNING}),
    QueryState.PREPARING: frozenset({QueryState.RUNNING, QueryState.IDLE}),
    QueryState.RUNNING: frozenset({QueryState.PREPARING, QueryState.ABORTING, QueryState.IDLE}),
    QueryState.ABORTING: frozenset({QueryState.PREPARING, QueryState.IDLE}),
}

ACTIVITY_TRANSITIONS: dict[ActivityState, frozenset[ActivityState]] = {
    ActivityState.IDLE: frozenset({ActivityState.WORKING, ActivityState.WAITING}),
    ActivityState.WORKING: frozenset({ActivityState.WAITING, ActivityState.IDLE}),
    ActivityState.WAITING: frozenset({ActivityState.WORKING, ActivityState.IDLE}),
}


@dataclass
class SessionStateMachine:
    """Holds the two session enums plus the stop/interrupt flags.

    State only changes through the methods below; each change is checked
    against the transition tables and logged.
    """

    session_key: str = ""
    query_state: QueryState = QueryState.IDLE
    activity_state: ActivityState = ActivityState.IDLE
    stop_requested: bool = False
    interrupted_by_new_message: bool = False
    interrupting: bool = False
    generation: int = 0

    def transition_query(self, target: QueryState, reason: str = "") -> None:
        current = self.query_state
        if current == target:
            return
        if target not in QUERY_TRANSITIONS[current]:
            raise IllegalTransitionError("query", current.value, target.value)
        self.query_state = target
        log.debug(
            "Query state transition",
            session_key=self.session_key,
            from_state=current.value,
            to_state=target.value,
            reason=reason,
            generation=self.generation,
        )

    def transition_activity(self, target: ActivityState, reason: str = "") -> None:
        current = self.activity_state
        if current == target:
            return
        if target not in ACTIVITY_TRANSITIONS[current]:
            raise IllegalTransitionError("activity", current.value, target.value)
        self.activity_state = target
        log.debug(
            "Activity state transition",
            session_key=self.session_key,
            from_state=current.value,
            to_state=target.value,
            reason=reason,
        )

    # -- query lifecycle ---------------------------------------------------

    def start_processing(self) -> None:
        """Take the processing lease; only an idle session can be leased.

        RUNNING -> PREPARING stays legal for :meth:`complete_query` under a
        held lease, so the idle check lives here rather than in the table.
        """
        if self.query_state != QueryState.IDLE:
            raise IllegalTransitionError("query", self.query_state.value, QueryState.PREPARING.value)
        self.transition_query(QueryState.PREPARING, "start_processing")

    def start_query(self) -> None:
        self.transition_query(QueryState.RUNNING, "start_query")
        self.stop_requested = False

    def complete_query(self, lease_held: bool) -> None:
        """Query stream ended; stay in preparing while a processing lease is held."""
        target = QueryState.PREPARING if lease_held else QueryState.IDLE
        self.transition_query(target, "complete_query")

    def release(self) -> None:
        self.transition_query(QueryState.IDLE, "release")

    def request_stop(self) -> QueryState:
        """Record a stop request; returns the state the request was made in."""
        current = self.query_state
        if current == QueryState.RUNNING:
            self.stop_requested = True
            self.transition_query(QueryState.ABORTING, "stop")
        elif current == QueryState.PREPARING:
            self.stop_requested = True
        return current

    def clear_stop_requested(self) -> None:
        self.stop_requested = False

    def clear_flags(self) -> None:
        """Drop stop/interrupt flags left over from a finished lease."""
        self.stop_requested = False
        self.interrupted_by_new_message = False

    # -- interrupts --------------------------------------------------------

    def mark_interrupt(self) -> None:
        self.interrupted_by_new_message = True

    def consume_interrupt_flag(self) -> bool:
        if not self.interrupted_by_new_message:
            return False
        self.interrupted_by_new_message = False
        self.stop_requested = False
        return True

    def begin_interrupt(self) -> bool:
        if self.interrupting:
            return False
        self.interrupting = True
        return True

    def end_interrupt(self) -> None:
        self.interrupting = False

    # -- reset -------------------------------------------------------------

    def bump_generation(self) -> int:
        self.generation += 1
        return self.generation

    def finish_activity(self) -> None:
        if self.activity_state != ActivityState.IDLE:
            self.transition_activity(ActivityState.IDLE, "query finished")

    @property
    def is_running(self) -> bool:
        return self.query_state != QueryState.IDLE

    @property
    def is_processing(self) -> bool:
        return self.query_state in (QueryState.PREPARING, QueryState.RUNNING)
