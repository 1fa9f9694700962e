"""Application wiring: registry, dispatcher, Telegram polling, lifecycle."""

from __future__ import annotations

import asyncio
from pathlib import Path

from steerline.channel import InboundMessage
from steerline.chat_history import ChatHistory
from steerline.config import Config, get_config
from steerline.exceptions import ChannelBoundaryError, ConfigurationError, LaneClearedError
from steerline.execution_queue import ConversationSequencer
from steerline.inbound import InboundDispatcher
from steerline.llm import create_provider
from steerline.logging import get_logger
from steerline.provider import Provider
from steerline.rate_limit import UsageSource
from steerline.session import SessionRegistry, SessionStore
from steerline.shutdown import install_signal_handlers, restore_pending_steering, save_pending_steering
from steerline.telegram_bridge import TelegramChannel, TelegramUpdate, UserRateLimiter

log = get_logger(__name__)

TELEGRAM_COMMANDS: list[tuple[str, str]] = [
    ("new", "Start a fresh session"),
    ("stop", "Stop the current task"),
    ("status", "Show session status"),
    ("retry", "Resend the last message"),
    ("help", "Show help"),
]

CLEANUP_INTERVAL_SECONDS = 600.0


class SteerlineApp:
    """Owns the long-lived objects and background loops of one bot process."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        provider: Provider | None = None,
        channel: TelegramChannel | None = None,
        usage_source: UsageSource | None = None,
    ):
        self.config = config or get_config()
        cfg = self.config
        self.provider = provider or create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            system_prompt=cfg.model.system_prompt,
        )
        self.channel = channel or TelegramChannel(
            token=cfg.telegram.bot_token,
            api_base_url=cfg.telegram.api_base_url,
            allowed_users=cfg.telegram.allowed_users,
            tenant=cfg.session.default_tenant,
            rate_limiter=UserRateLimiter(
                max_messages=cfg.telegram.rate_limit_messages,
                window_seconds=cfg.telegram.rate_limit_window_seconds,
            ),
        )
        self.history = ChatHistory(cfg.history.path) if cfg.history.enabled else None
        self.registry = SessionRegistry(
            self.provider,
            store=SessionStore(cfg.resolved_sessions_dir()),
            config=cfg,
        )
        self.sequencer = ConversationSequencer()
        self.dispatcher = InboundDispatcher(
            self.registry,
            self.channel,
            config=cfg,
            history=self.history,
            usage_source=usage_source,
            sequencer=self.sequencer,
        )
        self.offset: int | None = None
        self._stopping = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending_steering_path(self) -> Path:
        return Path(self.config.recovery.pending_steering_path).expanduser()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def route(self, inbound: InboundMessage) -> None:
        """Hand an inbound message to the dispatcher through its lane."""
        session = self.registry.get(inbound.identity)
        try:
            await self.sequencer.dispatch(inbound, session, lambda: self.dispatcher.handle(inbound))
        except LaneClearedError:
            log.info("Dropped queued message after lane clear", session_key=inbound.identity.session_key)

    async def handle_update(self, update: TelegramUpdate) -> None:
        try:
            inbound = self.channel.normalize_inbound(update)
        except ChannelBoundaryError as e:
            log.info("Inbound refused", code=e.code, error=str(e), update_id=update.update_id)
            chat_id = _chat_id_of(update)
            if chat_id and e.code != "invalid_payload":
                await self.dispatcher.outbox.notice(chat_id, self.channel.notice_for(e))
            return
        await self.route(inbound)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def poll_loop(self) -> None:
        """Background Telegram polling and message dispatch."""
        timeout = max(1, int(self.config.telegram.poll_timeout_seconds))
        while not self._stopping.is_set():
            try:
                updates = await self.channel.get_updates(offset=self.offset, timeout=timeout)
                for update in updates:
                    next_offset = int(update.update_id) + 1
                    self.offset = next_offset if self.offset is None else max(self.offset, next_offset)
                    self._spawn(self.handle_update(update))
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error("Telegram poll error", error=str(e))
                await asyncio.sleep(2.0)

    async def cleanup_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=CLEANUP_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                self.registry.cleanup()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> None:
        loaded = self.registry.load_all()
        restored = restore_pending_steering(self.registry, self.pending_steering_path)
        log.info("Startup complete", sessions=loaded, restored_steering=restored)
        try:
            await self.channel.set_my_commands(TELEGRAM_COMMANDS)
        except Exception as e:
            log.warning("Telegram command registration failed", error=str(e))

    def request_stop(self) -> None:
        if not self._stopping.is_set():
            log.info("Shutdown requested")
            self._stopping.set()

    async def shutdown(self) -> None:
        drained = await self.sequencer.wait_for_active_tasks(self.config.session.stop_wait_seconds)
        if not drained:
            log.warning("Shutdown with tasks still running", active=self.sequencer.active_task_count())
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        tasks += self.sequencer.cancel_all()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Flows are gone; whatever they left buffered is final.
        save_pending_steering(self.registry, self.pending_steering_path)
        self.registry.persist_all()
        if self.history is not None:
            await self.history.close()
        await self.channel.close()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
        log.info("Shutdown complete")

    async def run(self) -> None:
        if not self.config.telegram.enabled:
            raise ConfigurationError("Telegram channel is disabled; set telegram.enabled")
        if not self.channel.enabled:
            raise ConfigurationError("Telegram bot_token is not configured")
        install_signal_handlers(asyncio.get_running_loop(), self.request_stop)
        await self.startup()
        poll = asyncio.create_task(self.poll_loop())
        cleanup = asyncio.create_task(self.cleanup_loop())
        try:
            await self._stopping.wait()
        finally:
            for task in (poll, cleanup):
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            await self.shutdown()


def _chat_id_of(update: TelegramUpdate) -> int | None:
    source = update.message
    if source is None and update.callback_query is not None:
        source = update.callback_query.get("message")
    if not isinstance(source, dict):
        return None
    chat = source.get("chat")
    if not isinstance(chat, dict):
        return None
    return int(chat.get("id", 0)) or None
