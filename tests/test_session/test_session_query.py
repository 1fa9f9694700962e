import asyncio

import pytest

from steerline.exceptions import ProviderAPIError, QueryAbortedError, QueryCancelledError
from steerline.provider import Done, RateLimited, SessionStarted, TextDelta, ToolInvoked
from steerline.session import QueryState, Session, SessionStore
from steerline.session.session import (
    INJECTED_HEADER,
    NEW_MESSAGE_HEADER,
    NO_RESPONSE_TEXT,
    PREVIOUS_STEERING_HEADER,
)
from steerline.session.store import SessionRecord


def _session(identity, provider, config, tmp_path) -> Session:
    return Session(identity, provider, store=SessionStore(tmp_path / "store"), config=config)


@pytest.mark.asyncio
async def test_buffered_steering_is_folded_into_next_prompt(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider()
    session = _session(identity, provider, config, tmp_path)
    session.add_steering("first", 1)
    session.add_steering("second", 2)

    response = await session.send_message_streaming("new question")

    assert response == "ok"
    prompt = provider.prompts[0]
    assert prompt.startswith("[Current date/time:")
    assert PREVIOUS_STEERING_HEADER in prompt
    assert prompt.index("first") < prompt.index("second") < prompt.index(NEW_MESSAGE_HEADER)
    assert prompt.endswith("new question")
    assert not session.has_steering_messages()


@pytest.mark.asyncio
async def test_steering_is_consumed_only_once(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider()
    session = _session(identity, provider, config, tmp_path)
    session.add_steering("only once", 1)

    await session.send_message_streaming("a")
    await session.send_message_streaming("b")

    assert "only once" in provider.prompts[0]
    assert "only once" not in provider.prompts[1]


@pytest.mark.asyncio
async def test_failed_query_restores_folded_steering(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider([RuntimeError("boom")])
    session = _session(identity, provider, config, tmp_path)
    session.add_steering("keep me", 1)

    with pytest.raises(RuntimeError):
        await session.send_message_streaming("go")

    assert session.steering_count() == 1
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_steering_injected_after_tool_call(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider(accept_inject=True)
    session = _session(identity, provider, config, tmp_path)
    provider.add(
        ToolInvoked(tool_name="Bash", phase="start"),
        lambda: session.add_steering("use the other file", 5),
        ToolInvoked(tool_name="Bash", phase="end"),
        TextDelta(delta="done"),
        Done(),
    )

    await session.send_message_streaming("work")

    assert len(provider.injected) == 1
    assert provider.injected[0].startswith(INJECTED_HEADER)
    assert "(during Bash)" in provider.injected[0]
    assert not session.has_steering_messages()


@pytest.mark.asyncio
async def test_refused_injection_keeps_message_for_next_query(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider()
    session = _session(identity, provider, config, tmp_path)
    provider.add(
        ToolInvoked(tool_name="Read", phase="start"),
        lambda: session.add_steering("late note", 5),
        ToolInvoked(tool_name="Read", phase="end"),
        Done(),
    )

    response = await session.send_message_streaming("work")
    await session.send_message_streaming("next")

    assert response == NO_RESPONSE_TEXT
    assert provider.injected == []
    assert "late note" in provider.prompts[1]


@pytest.mark.asyncio
async def test_stop_aborts_running_query(identity, config, scripted_provider, tmp_path):
    started = asyncio.Event()
    gate = asyncio.Event()
    provider = scripted_provider([TextDelta(delta="partial"), started.set, gate])
    session = _session(identity, provider, config, tmp_path)

    task = asyncio.create_task(session.send_message_streaming("long job"))
    await started.wait()

    assert await session.stop() == "stopped"
    assert await task == "partial"
    assert session.query_state == QueryState.IDLE
    assert len(provider.aborted) == 1


@pytest.mark.asyncio
async def test_stop_before_query_start_cancels_it(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider()
    session = _session(identity, provider, config, tmp_path)
    release = session.start_processing()

    assert await session.stop() == "pending"
    with pytest.raises(QueryCancelledError):
        await session.send_message_streaming("never sent")

    assert provider.queries == []
    assert not session.stop_requested
    release()
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_stop_while_preparing_ends_with_the_lease(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider()
    session = _session(identity, provider, config, tmp_path)
    release = session.start_processing()

    assert await session.stop() == "pending"
    release()

    assert not session.stop_requested
    assert await session.send_message_streaming("next") == "ok"
    assert len(provider.queries) == 1


@pytest.mark.asyncio
async def test_cancelled_query_restores_folded_steering(identity, config, scripted_provider, tmp_path):
    started = asyncio.Event()
    provider = scripted_provider([started.set, asyncio.Event()])
    session = _session(identity, provider, config, tmp_path)
    session.add_steering("keep me", 1)

    task = asyncio.create_task(session.send_message_streaming("go"))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert session.steering_count() == 1
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_stop_when_idle_reports_nothing(identity, config, scripted_provider, tmp_path):
    session = _session(identity, scripted_provider(), config, tmp_path)

    assert await session.stop() is False


@pytest.mark.asyncio
async def test_kill_invalidates_running_query(identity, config, scripted_provider, tmp_path):
    started = asyncio.Event()
    gate = asyncio.Event()
    provider = scripted_provider([started.set, gate])
    session = _session(identity, provider, config, tmp_path)
    release = session.start_processing()

    task = asyncio.create_task(session.send_message_streaming("job"))
    await started.wait()
    session.add_steering("stranded", 3)
    result = await session.kill()

    with pytest.raises(QueryAbortedError):
        await task
    assert result.count == 1
    assert result.messages[0].content == "stranded"
    assert session.query_state == QueryState.IDLE
    release()
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_completion_under_lease_stays_preparing(identity, config, scripted_provider, tmp_path):
    session = _session(identity, scripted_provider(), config, tmp_path)
    release = session.start_processing()

    await session.send_message_streaming("hi")

    assert session.query_state == QueryState.PREPARING
    release()
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_provider_session_is_persisted_and_resumed(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider(
        [SessionStarted(provider_session_id="prov-123"), TextDelta(delta="hello"), Done(input_tokens=5)],
    )
    session = _session(identity, provider, config, tmp_path)

    await session.send_message_streaming("one")
    await session.send_message_streaming("two")

    assert session.store.exists(identity)
    assert provider.queries[1].resume_session_id == "prov-123"
    assert not provider.prompts[1].startswith("[Current date/time:")
    assert session.total_queries == 2


@pytest.mark.asyncio
async def test_failed_stream_after_rate_limit_carries_status(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider([RateLimited(status_code=429, message="slow down"), Done(reason="failed")])
    session = _session(identity, provider, config, tmp_path)

    with pytest.raises(ProviderAPIError) as exc:
        await session.send_message_streaming("hi")

    assert exc.value.status_code == 429


@pytest.mark.asyncio
async def test_context_thresholds_warn_once_and_request_save(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider(
        [Done(context_tokens=150_000, context_window=200_000)],
        [Done(context_tokens=185_000, context_window=200_000)],
        [Done(context_tokens=186_000, context_window=200_000)],
    )
    session = _session(identity, provider, config, tmp_path)

    await session.send_message_streaming("a")
    assert session.pop_context_warnings() == [0.70]
    assert not session.consume_save_required()

    await session.send_message_streaming("b")
    assert session.pop_context_warnings() == [0.85]
    assert session.consume_save_required()
    assert not session.consume_save_required()

    await session.send_message_streaming("c")
    assert session.pop_context_warnings() == []
    assert not session.consume_save_required()


def test_stale_lease_release_is_ignored_after_kill(identity, config, scripted_provider, tmp_path):
    session = _session(identity, scripted_provider(), config, tmp_path)
    release = session.start_processing()
    session._state.bump_generation()
    session._state.release()
    fresh = session.start_processing()

    release()

    assert session.is_processing
    fresh()
    assert not session.is_running


def test_stuck_lease_is_force_released(identity, config, scripted_provider, tmp_path):
    session = _session(identity, scripted_provider(), config, tmp_path)
    session.start_processing()
    started = session._lease_started_at

    assert not session.release_if_stuck(now=started + 10)
    assert session.release_if_stuck(now=started + config.session.processing_timeout_seconds + 1)
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_restored_session_pauses_context_thresholds(identity, config, scripted_provider, tmp_path):
    provider = scripted_provider([Done(context_tokens=190_000, context_window=200_000)])
    session = _session(identity, provider, config, tmp_path)
    session.restore_from_record(SessionRecord(session_id="prov-9", total_queries=4))

    await session.send_message_streaming("after restart")

    assert provider.queries[0].resume_session_id == "prov-9"
    assert session.pop_context_warnings() == []
    assert not session.consume_save_required()
