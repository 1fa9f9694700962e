import pytest

from steerline.channel import Outbox
from steerline.chat_history import ChatHistory
from steerline.query_flow import FlowDeps, ReplyTarget, run_query_flow
from steerline.session import Session


@pytest.mark.asyncio
async def test_recent_returns_oldest_first(tmp_path):
    history = ChatHistory(tmp_path / "history.db")
    try:
        for idx in range(5):
            await history.append("k", "user", f"m{idx}")
        await history.append("other", "user", "elsewhere")
        await history.append("k", "user", "   ")

        turns = await history.recent("k", limit=3)

        assert [t.content for t in turns] == ["m2", "m3", "m4"]
    finally:
        await history.close()


@pytest.mark.asyncio
async def test_clear_removes_only_one_session(tmp_path):
    history = ChatHistory(tmp_path / "history.db")
    try:
        await history.append("a", "user", "x")
        await history.append("b", "user", "y")

        assert await history.clear("a") == 1
        assert await history.recent("a") == []
        assert len(await history.recent("b")) == 1
    finally:
        await history.close()


@pytest.mark.asyncio
async def test_query_flow_records_both_turns(identity, config, channel, scripted_provider, tmp_path):
    history = ChatHistory(tmp_path / "history.db")
    session = Session(identity, scripted_provider(), config=config)
    deps = FlowDeps(outbox=Outbox(channel), config=config, history=history)
    try:
        await run_query_flow(session, "question", deps, ReplyTarget(chat_id=42, message_id=1))

        turns = await history.recent(identity.session_key)
        assert [(t.role, t.content) for t in turns] == [("user", "question"), ("assistant", "ok")]
    finally:
        await history.close()
