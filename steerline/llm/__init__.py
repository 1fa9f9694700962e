"""Ollama provider - direct HTTP calls to Ollama API."""

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from steerline.exceptions import ProviderAPIError, ProviderError
from steerline.logging import get_logger
from steerline.provider import (
    Done,
    Provider,
    ProviderEvent,
    QueryHandle,
    QueryInput,
    RateLimited,
    ResumeResult,
    SessionStarted,
    TextDelta,
)
from steerline.session.identity import SessionIdentity

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
OLLAMA_CONTEXT_TOKENS = 65536


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class _Conversation:
    messages: list[Message] = field(default_factory=list)


@dataclass
class _ActiveQuery:
    query: QueryInput
    provider_session_id: str
    resumed: bool
    cancel: asyncio.Event = field(default_factory=asyncio.Event)


class OllamaProvider(Provider):
    """Streams chat completions from Ollama.

    Ollama is stateless, so each provider session id maps to an in-memory
    transcript that is replayed on every query. A restart loses transcripts;
    :meth:`resume_session` then starts a fresh one under the same id.
    """

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        system_prompt: str = "",
    ):
        self.model = model
        self.base_url = (base_url or OLLAMA_NATIVE_BASE_URL).rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.system_prompt = system_prompt
        self._conversations: dict[str, _Conversation] = {}
        self._active: dict[str, _ActiveQuery] = {}

        self.client = httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        if self.system_prompt:
            result.append({"role": "system", "content": self.system_prompt})
        for msg in messages:
            if msg.role in ("system", "user", "assistant"):
                result.append({"role": msg.role, "content": msg.content or ""})
        return result

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def resume_session(self, identity: SessionIdentity, provider_session_id: str) -> ResumeResult:
        resumed = provider_session_id in self._conversations
        if not resumed:
            self._conversations[provider_session_id] = _Conversation()
        log.debug("Resume session", session_key=identity.session_key, resumed=resumed)
        return ResumeResult(provider_session_id=provider_session_id, resumed=resumed)

    async def start_query(self, query: QueryInput) -> QueryHandle:
        if query.resume_session_id:
            result = await self.resume_session(query.identity, query.resume_session_id)
            session_id, resumed = result.provider_session_id, result.resumed
        else:
            session_id, resumed = uuid.uuid4().hex, False
            self._conversations[session_id] = _Conversation()
        self._active[query.query_id] = _ActiveQuery(query=query, provider_session_id=session_id, resumed=resumed)
        return QueryHandle(query_id=query.query_id, provider_session_id=session_id)

    async def abort_query(self, handle: QueryHandle) -> None:
        active = self._active.get(handle.query_id)
        if active is not None:
            active.cancel.set()

    async def stream_events(self, handle: QueryHandle) -> AsyncIterator[ProviderEvent]:
        """Stream a completion as provider events."""
        active = self._active.get(handle.query_id)
        if active is None:
            raise ProviderError(f"Unknown query: {handle.query_id}")
        conversation = self._conversations.setdefault(active.provider_session_id, _Conversation())
        conversation.messages.append(Message(role="user", content=active.query.prompt))

        yield SessionStarted(provider_session_id=active.provider_session_id, resumed=active.resumed)

        body: dict[str, Any] = {
            "model": active.query.model or self.model,
            "messages": self._convert_messages(conversation.messages),
            "stream": True,
            "options": {
                "num_ctx": OLLAMA_CONTEXT_TOKENS,
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }
        url = f"{self.base_url}/api/chat"
        accumulated = ""
        prompt_tokens = 0
        completion_tokens = 0
        try:
            log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if response.status_code == 429:
                    yield RateLimited(status_code=429, message=(await response.aread()).decode(errors="replace"))
                    yield Done(reason="failed", error_message="Ollama API error 429: rate limit")
                    return
                if not response.is_success:
                    error_text = (await response.aread()).decode(errors="replace")
                    raise ProviderAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if active.cancel.is_set():
                        yield Done(reason="aborted")
                        return
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    content = chunk.get("message", {}).get("content")
                    if content:
                        accumulated += content
                        yield TextDelta(delta=content)
                    if chunk.get("done"):
                        prompt_tokens = int(chunk.get("prompt_eval_count", 0) or 0)
                        completion_tokens = int(chunk.get("eval_count", 0) or 0)
                        break
        except httpx.HTTPError as e:
            raise ProviderAPIError(f"Ollama streaming error: {e}")
        finally:
            self._active.pop(handle.query_id, None)

        conversation.messages.append(Message(role="assistant", content=accumulated))
        yield Done(
            reason="completed",
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            context_tokens=prompt_tokens + completion_tokens,
            context_window=OLLAMA_CONTEXT_TOKENS,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    system_prompt: str = "",
) -> Provider:
    """Create an agent provider.

    Args:
        provider: Provider name (only "ollama" is built in)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        system_prompt: Optional system prompt prepended to every transcript

    Returns:
        Configured Provider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            system_prompt=system_prompt,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a Provider instance.")
