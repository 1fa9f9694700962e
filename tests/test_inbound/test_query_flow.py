import pytest

from steerline.channel import ChoicePayload, Outbox, Reaction
from steerline.exceptions import ProviderAPIError
from steerline.provider import Done, TextDelta
from steerline.query_flow import AUTO_CONTINUE_HEADER, FlowDeps, ReplyTarget, run_query_flow
from steerline.rate_limit import TierUsage, UsageWindow
from steerline.session import QueryState, Session

TARGET = ReplyTarget(chat_id=42, message_id=11)


async def _no_sleep(_seconds: float) -> None:
    return None


class _Usage:
    def __init__(self, usage: TierUsage | None):
        self.usage = usage

    async def fetch_usage(self) -> TierUsage | None:
        return self.usage


def _deps(channel, config, usage_source=None) -> FlowDeps:
    return FlowDeps(outbox=Outbox(channel), config=config, usage_source=usage_source, sleep=_no_sleep)


@pytest.mark.asyncio
async def test_plain_query_reacts_and_replies(identity, config, channel, scripted_provider):
    session = Session(identity, scripted_provider(), config=config)

    response = await run_query_flow(session, "hi", _deps(channel, config), TARGET)

    assert response == "ok"
    assert channel.texts == ["ok"]
    assert channel.reactions == [(11, Reaction.PROCESSING), (11, Reaction.COMPLETE)]
    assert session.query_state == QueryState.IDLE
    assert session.last_message == "hi"


@pytest.mark.asyncio
async def test_auto_continue_stops_after_round_limit(identity, config, channel, scripted_provider):
    provider = scripted_provider()
    session = Session(identity, provider, config=config)
    for n in range(7):
        provider.add(lambda n=n: session.add_steering(f"follow-up {n}", 100 + n), Done())

    await run_query_flow(session, "start", _deps(channel, config), TARGET)

    max_rounds = config.steering.max_auto_continue_rounds
    assert len(provider.queries) == 1 + max_rounds
    assert all(AUTO_CONTINUE_HEADER in p for p in provider.prompts[1:])
    assert channel.notices[-1] == "1 message(s) still queued. Send any message to continue."
    assert session.steering_count() == 1
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_failed_follow_up_keeps_messages(identity, config, channel, scripted_provider):
    provider = scripted_provider()
    session = Session(identity, provider, config=config)
    provider.add(lambda: session.add_steering("follow-up", 100), Done())
    provider.add(RuntimeError("network down"))

    await run_query_flow(session, "start", _deps(channel, config), TARGET)

    assert channel.notices == ["Follow-up failed: network down"]
    assert session.steering_count() == 1


@pytest.mark.asyncio
async def test_crash_is_retried_once_on_fresh_session(identity, config, channel, scripted_provider):
    provider = scripted_provider([RuntimeError("agent process exited with code 1")])
    session = Session(identity, provider, config=config)
    session.provider_session_id = "old"

    response = await run_query_flow(session, "build it", _deps(channel, config), TARGET)

    assert response == "ok"
    assert channel.notices == ["Agent crashed. Starting a fresh session and retrying..."]
    assert provider.queries[0].resume_session_id == "old"
    assert provider.queries[1].resume_session_id is None
    assert provider.prompts[1].endswith("build it")
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_second_crash_gives_up(identity, config, channel, scripted_provider):
    crash = RuntimeError("agent process exited with code 1")
    provider = scripted_provider([crash], [crash])
    session = Session(identity, provider, config=config)

    assert await run_query_flow(session, "build it", _deps(channel, config), TARGET) is None

    assert channel.notices[-1].startswith("Agent crashed again:")
    assert session.query_state == QueryState.IDLE


@pytest.mark.asyncio
async def test_rate_limit_retries_on_fallback_model(identity, config, channel, scripted_provider):
    provider = scripted_provider([ProviderAPIError("rate limit", status_code=429)])
    session = Session(identity, provider, config=config)
    usage = _Usage(TierUsage(seven_day_sonnet=UsageWindow(utilization=0.1)))

    response = await run_query_flow(session, "hi", _deps(channel, config, usage), TARGET)

    fallback = config.rate_limit.fallback_model
    assert response == "ok"
    assert channel.notices == [f"Rate limit reached. Retrying with {fallback}."]
    assert provider.queries[1].model == fallback


@pytest.mark.asyncio
async def test_rate_limit_without_usage_is_reported(identity, config, channel, scripted_provider):
    provider = scripted_provider([ProviderAPIError("429 too many requests", status_code=429)])
    session = Session(identity, provider, config=config)

    assert await run_query_flow(session, "hi", _deps(channel, config), TARGET) is None

    assert channel.notices[0].startswith("Rate limit reached.\nUsage unavailable.")
    assert len(provider.queries) == 1


@pytest.mark.asyncio
async def test_generic_error_clears_queue_and_reports(identity, config, channel, scripted_provider):
    provider = scripted_provider()
    session = Session(identity, provider, config=config)
    provider.add(lambda: session.add_steering("queued", 100), RuntimeError("bad request"))

    assert await run_query_flow(session, "hi", _deps(channel, config), TARGET) is None

    assert channel.notices == [
        "1 queued message(s) were cleared because of the error.",
        "Error: bad request",
    ]
    assert (11, Reaction.ERROR) in channel.reactions
    assert session.steering_count() == 0


@pytest.mark.asyncio
async def test_choice_in_reply_is_attached_to_session(identity, config, channel, scripted_provider):
    reply = 'Options below {"type": "user_choice", "question": "Color?", "choices": ["Red", "Blue"]}'
    session = Session(identity, scripted_provider([TextDelta(delta=reply), Done()]), config=config)

    await run_query_flow(session, "pick", _deps(channel, config), TARGET)

    keyboard = [p for p in channel.sent if isinstance(p, ChoicePayload)]
    assert len(keyboard) == 1
    assert channel.texts == ["Options below"]
    assert session.choice_state is not None
    assert session.choice_state.message_ids
    assert len(session.choice_state.form_id) == 8


@pytest.mark.asyncio
async def test_context_warnings_are_announced(identity, config, channel, scripted_provider):
    provider = scripted_provider([TextDelta(delta="big"), Done(context_tokens=185_000, context_window=200_000)])
    session = Session(identity, provider, config=config)

    await run_query_flow(session, "hi", _deps(channel, config), TARGET)

    assert channel.notices == [
        "Context window 70% full.",
        "Context window 85% full.",
        "Context window nearly full. Session saved; consider /new soon.",
    ]
