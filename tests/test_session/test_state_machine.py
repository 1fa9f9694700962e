import pytest

from steerline.exceptions import IllegalTransitionError
from steerline.session.state import ActivityState, QueryState, SessionStateMachine


def test_prepare_run_complete_with_lease():
    machine = SessionStateMachine()

    machine.start_processing()
    assert machine.is_processing and machine.is_running

    machine.start_query()
    assert machine.query_state == QueryState.RUNNING

    machine.complete_query(lease_held=True)
    assert machine.query_state == QueryState.PREPARING

    machine.release()
    assert not machine.is_running


def test_complete_without_lease_goes_idle():
    machine = SessionStateMachine()
    machine.start_query()

    machine.complete_query(lease_held=False)

    assert machine.query_state == QueryState.IDLE


def test_stop_while_running_enters_aborting():
    machine = SessionStateMachine()
    machine.start_query()

    previous = machine.request_stop()

    assert previous == QueryState.RUNNING
    assert machine.query_state == QueryState.ABORTING
    assert machine.stop_requested
    assert machine.is_running and not machine.is_processing


def test_stop_while_preparing_only_sets_flag():
    machine = SessionStateMachine()
    machine.start_processing()

    assert machine.request_stop() == QueryState.PREPARING
    assert machine.stop_requested
    assert machine.query_state == QueryState.PREPARING


def test_start_query_clears_stale_stop():
    machine = SessionStateMachine(stop_requested=True)

    machine.start_query()

    assert not machine.stop_requested


def test_illegal_transition_raises():
    machine = SessionStateMachine()

    with pytest.raises(IllegalTransitionError) as exc:
        machine.transition_query(QueryState.ABORTING)
    assert (exc.value.current, exc.value.target) == ("idle", "aborting")


def test_interrupt_flag_is_consumed_once_and_clears_stop():
    machine = SessionStateMachine()
    machine.mark_interrupt()
    machine.stop_requested = True

    assert machine.consume_interrupt_flag()
    assert not machine.stop_requested
    assert not machine.consume_interrupt_flag()


def test_only_one_interrupt_at_a_time():
    machine = SessionStateMachine()

    assert machine.begin_interrupt()
    assert not machine.begin_interrupt()
    machine.end_interrupt()
    assert machine.begin_interrupt()


def test_activity_transitions():
    machine = SessionStateMachine()
    machine.transition_activity(ActivityState.WORKING)
    machine.transition_activity(ActivityState.WAITING)

    machine.finish_activity()

    assert machine.activity_state == ActivityState.IDLE


def test_lease_requires_idle_session():
    machine = SessionStateMachine()
    machine.start_processing()

    with pytest.raises(IllegalTransitionError):
        machine.start_processing()

    machine.start_query()
    with pytest.raises(IllegalTransitionError) as exc:
        machine.start_processing()
    assert (exc.value.current, exc.value.target) == ("running", "preparing")
    assert machine.query_state == QueryState.RUNNING
