"""
Channel Listeners.

Long-polling loops that pull updates from channels without webhooks and
hand each one to the orchestrator on its own task.

Key Features:
- One poller per active Telegram channel with polling enabled
- Offset tracking so each update is fetched once
- Exponential backoff while the Bot API is unreachable
- An apology is sent to the chat when handling an update fails
- Graceful shutdown that waits briefly for in-flight updates
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from ..domain.entities import Channel, ChannelType, OutboundMessage
from ..domain.ports import IChannelRepository, ISecretStore
from ..domain.schemas import TelegramChannelConfig
from ..exceptions import RelayError, UnsupportedPayloadError
from .telegram import TelegramAdapter

if TYPE_CHECKING:
    from ..orchestrator.orchestrator import ConversationOrchestrator

logger = logging.getLogger(__name__)

APOLOGY_TEXT = "Sorry, something went wrong while processing your message. Please try again."


class TelegramPoller:
    """getUpdates loop for one Telegram channel.

    Usage:
        poller = TelegramPoller(channel, telegram_adapter, orchestrator, secret_store)
        await poller.start()
        ...
        await poller.stop()

    Attributes:
        poll_timeout: Long-poll timeout passed to getUpdates (seconds)
        retry_base_delay: First delay after a failed poll (seconds)
        max_retry_delay: Upper bound for the poll backoff (seconds)
    """

    def __init__(
        self,
        channel: Channel,
        adapter: TelegramAdapter,
        orchestrator: ConversationOrchestrator,
        secrets: ISecretStore,
        poll_timeout: int = 30,
        retry_base_delay: float = 1.0,
        max_retry_delay: float = 60.0,
    ):
        self.channel = channel
        self.adapter = adapter
        self.orchestrator = orchestrator
        self.secrets = secrets
        self.poll_timeout = poll_timeout
        self.retry_base_delay = retry_base_delay
        self.max_retry_delay = max_retry_delay

        self.offset: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start polling in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Started Telegram polling for channel {self.channel.id}")

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop polling and wait for in-flight updates.

        Args:
            timeout: Maximum time to wait for in-flight updates
        """
        if not self._running:
            return
        self._running = False

        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight updates...")
            done, pending = await asyncio.wait(self._inflight, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info(f"Stopped Telegram polling for channel {self.channel.id}")

    async def poll_once(self) -> int:
        """Fetch one batch of updates and dispatch each.

        Returns:
            Number of updates dispatched
        """
        config = self.channel.config.with_decrypted_secrets(self.secrets.decrypt)
        updates = await self.adapter.get_updates(config, self.offset, self.poll_timeout)
        for update in updates:
            update_id = update.get("update_id")
            if update_id is not None:
                self.offset = update_id + 1
            self._dispatch(update)
        return len(updates)

    async def _poll_loop(self) -> None:
        delay = self.retry_base_delay
        while self._running:
            try:
                await self.poll_once()
                delay = self.retry_base_delay
            except RelayError as e:
                logger.error(
                    f"Polling failed for channel {self.channel.id}: {e.message}. "
                    f"Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)

    def _dispatch(self, update: dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self.handle_update(update))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Hand one update to the orchestrator, apologising on failure."""
        try:
            result = await self.orchestrator.handle_event(
                self.channel.tenant_id, self.channel.id, update
            )
            logger.debug(f"Update {update.get('update_id')}: {result.outcome.value}")
        except UnsupportedPayloadError as e:
            logger.debug(f"Skipping update {update.get('update_id')}: {e.message}")
        except Exception as e:
            logger.error(
                f"Failed to handle update {update.get('update_id')} "
                f"on channel {self.channel.id}: {e}",
                exc_info=True,
            )
            await self._send_apology(update)

    async def _send_apology(self, update: dict[str, Any]) -> None:
        message = self.adapter.extract_message(update)
        chat_id = ((message or {}).get("chat") or {}).get("id")
        if chat_id is None:
            return
        try:
            config = self.channel.config.with_decrypted_secrets(self.secrets.decrypt)
            await self.adapter.send_message(config, str(chat_id), OutboundMessage(text=APOLOGY_TEXT))
        except RelayError as e:
            logger.warning(f"Could not send apology to chat {chat_id}: {e.message}")


class ListenerRegistry:
    """Owns the pollers for every active polling channel.

    Usage:
        listeners = ListenerRegistry(channel_repo, telegram_adapter, orchestrator, secrets)
        await listeners.start()
        ...
        await listeners.stop_all()
    """

    def __init__(
        self,
        channels: IChannelRepository,
        telegram: TelegramAdapter,
        orchestrator: ConversationOrchestrator,
        secrets: ISecretStore,
        poll_timeout: int = 30,
    ):
        self.channels = channels
        self.telegram = telegram
        self.orchestrator = orchestrator
        self.secrets = secrets
        self.poll_timeout = poll_timeout
        self._pollers: dict[str, TelegramPoller] = {}

    @property
    def pollers(self) -> list[TelegramPoller]:
        return list(self._pollers.values())

    async def start(self) -> int:
        """Start a poller for each active Telegram channel with polling enabled.

        Returns:
            Number of pollers running
        """
        for channel in await self.channels.list_active():
            if channel.type != ChannelType.TELEGRAM:
                continue
            if not isinstance(channel.config, TelegramChannelConfig) or not channel.config.polling:
                continue
            key = f"{channel.tenant_id}:{channel.id}"
            if key in self._pollers:
                continue
            poller = TelegramPoller(
                channel, self.telegram, self.orchestrator, self.secrets, self.poll_timeout
            )
            await poller.start()
            self._pollers[key] = poller

        logger.info(f"{len(self._pollers)} channel listener(s) running")
        return len(self._pollers)

    async def stop_all(self) -> None:
        """Stop every poller."""
        await asyncio.gather(
            *(poller.stop() for poller in self._pollers.values()), return_exceptions=True
        )
        self._pollers.clear()
        logger.info("All channel listeners stopped")
