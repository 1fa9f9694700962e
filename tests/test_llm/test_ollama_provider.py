import json

import httpx
import pytest

from steerline.exceptions import ProviderAPIError
from steerline.llm import OllamaProvider, create_provider
from steerline.provider import Done, QueryInput, RateLimited, SessionStarted, TextDelta
from steerline.session import SessionIdentity


def _stream_body(*parts: str, prompt_tokens: int = 12, completion_tokens: int = 3) -> bytes:
    lines = [json.dumps({"message": {"content": part}, "done": False}) for part in parts]
    lines.append(json.dumps({"done": True, "prompt_eval_count": prompt_tokens, "eval_count": completion_tokens}))
    return ("\n".join(lines) + "\n").encode()


def _provider(handler) -> OllamaProvider:
    provider = OllamaProvider(model="llama3.2", base_url="http://ollama.test", system_prompt="be brief")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return provider


def _query(prompt: str, resume: str | None = None) -> QueryInput:
    return QueryInput(
        query_id=f"q-{prompt}",
        identity=SessionIdentity.create(42),
        prompt=prompt,
        resume_session_id=resume,
    )


async def _collect(provider: OllamaProvider, query: QueryInput) -> list:
    handle = await provider.start_query(query)
    return [event async for event in provider.stream_events(handle)]


def test_create_provider_supports_ollama():
    provider = create_provider(provider="ollama", model="llama3.2", base_url="http://localhost:11434")
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        create_provider(provider="cohere", model="command-r")


@pytest.mark.asyncio
async def test_stream_yields_typed_events_and_keeps_transcript():
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, content=_stream_body("Hel", "lo"))

    provider = _provider(handler)
    try:
        events = await _collect(provider, _query("hi"))
        session_id = events[0].provider_session_id
        await _collect(provider, _query("again", resume=session_id))
    finally:
        await provider.close()

    assert isinstance(events[0], SessionStarted)
    assert [e.delta for e in events if isinstance(e, TextDelta)] == ["Hel", "lo"]
    done = events[-1]
    assert isinstance(done, Done)
    assert done.reason == "completed"
    assert (done.input_tokens, done.output_tokens) == (12, 3)

    second = requests[1]["messages"]
    assert second[0] == {"role": "system", "content": "be brief"}
    assert [m["content"] for m in second[1:]] == ["hi", "Hello", "again"]


@pytest.mark.asyncio
async def test_rate_limit_response_becomes_event():
    provider = _provider(lambda request: httpx.Response(429, content=b"slow down"))
    try:
        events = await _collect(provider, _query("hi"))
    finally:
        await provider.close()

    assert isinstance(events[1], RateLimited)
    assert events[-1].reason == "failed"


@pytest.mark.asyncio
async def test_server_error_raises():
    provider = _provider(lambda request: httpx.Response(500, content=b"broken"))
    try:
        with pytest.raises(ProviderAPIError) as exc:
            await _collect(provider, _query("hi"))
    finally:
        await provider.close()

    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_abort_ends_stream():
    provider = _provider(lambda request: httpx.Response(200, content=_stream_body("a", "b", "c")))
    try:
        handle = await provider.start_query(_query("hi"))
        events = []
        async for event in provider.stream_events(handle):
            events.append(event)
            if isinstance(event, TextDelta):
                await provider.abort_query(handle)
    finally:
        await provider.close()

    assert events[-1] == Done(reason="aborted", timestamp=events[-1].timestamp)
    assert len([e for e in events if isinstance(e, TextDelta)]) == 1
