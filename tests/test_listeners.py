"""Tests for Telegram polling and the listener registry."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentrelay.channels import ListenerRegistry, TelegramPoller
from agentrelay.channels.listeners import APOLOGY_TEXT
from agentrelay.domain import Channel
from agentrelay.domain.schemas import TelegramChannelConfig, WebChannelConfig
from agentrelay.exceptions import ProviderError
from agentrelay.orchestrator import IncomingOutcome
from agentrelay.persistence import InMemoryChannelRepository

TENANT_ID = "tenant-1"


@pytest.fixture
def poller(channel, telegram_adapter, orchestrator, secrets):
    return TelegramPoller(channel, telegram_adapter, orchestrator, secrets, poll_timeout=0)


async def _drain(poller: TelegramPoller) -> None:
    await asyncio.gather(*list(poller._inflight))


class TestTelegramPoller:
    """getUpdates batches are dispatched to the orchestrator."""

    @pytest.mark.asyncio
    async def test_poll_once_dispatches_and_advances_offset(
        self, poller, telegram_recorder, make_update, repos
    ):
        telegram_recorder.results["getUpdates"] = [make_update("one"), make_update("two")]

        dispatched = await poller.poll_once()
        await _drain(poller)

        assert dispatched == 2
        assert poller.offset == 3
        assert len(telegram_recorder.sent()) == 2
        assert telegram_recorder.sent("getUpdates") == [{"timeout": 0}]

    @pytest.mark.asyncio
    async def test_next_poll_sends_offset(self, poller, telegram_recorder, make_update):
        telegram_recorder.results["getUpdates"] = [make_update()]
        await poller.poll_once()
        await _drain(poller)

        telegram_recorder.results["getUpdates"] = []
        await poller.poll_once()

        assert telegram_recorder.sent("getUpdates")[-1] == {"timeout": 0, "offset": 2}

    @pytest.mark.asyncio
    async def test_failure_sends_apology(self, poller, telegram_recorder, provider, make_update):
        provider.generate_completion.side_effect = ProviderError("bad request", provider="openai")

        await poller.handle_update(make_update("Hello", chat_id=555))

        assert telegram_recorder.sent() == [{"chat_id": "555", "text": APOLOGY_TEXT}]

    @pytest.mark.asyncio
    async def test_unsupported_update_is_skipped_quietly(self, poller, telegram_recorder):
        await poller.handle_update({"update_id": 9, "poll": {"id": "p"}})

        assert telegram_recorder.sent() == []

    @pytest.mark.asyncio
    async def test_handled_update_reaches_orchestrator(self, channel, telegram_adapter, secrets):
        orchestrator = MagicMock()
        orchestrator.handle_event = AsyncMock(return_value=MagicMock(outcome=IncomingOutcome.REPLIED))
        poller = TelegramPoller(channel, telegram_adapter, orchestrator, secrets)
        update = {"update_id": 1, "message": {"message_id": 1, "chat": {"id": 1}}}

        await poller.handle_update(update)

        orchestrator.handle_event.assert_awaited_once_with(TENANT_ID, channel.id, update)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, poller, telegram_recorder):
        telegram_recorder.fail_methods["getUpdates"] = (502, "Bad Gateway")

        await poller.start()
        assert poller.is_running
        await asyncio.sleep(0.01)
        await poller.stop()

        assert not poller.is_running
        assert telegram_recorder.sent("getUpdates")


class TestListenerRegistry:
    """Pollers start only for active Telegram channels with polling on."""

    @pytest.mark.asyncio
    async def test_start_only_polling_telegram_channels(
        self, channel, telegram_adapter, telegram_recorder, orchestrator, secrets
    ):
        telegram_recorder.fail_methods["getUpdates"] = (502, "Bad Gateway")
        webhook = Channel(
            tenant_id=TENANT_ID,
            name="hooked",
            config=TelegramChannelConfig(bot_token=secrets.encrypt("1:x"), polling=False),
        )
        web = Channel(tenant_id=TENANT_ID, name="site", config=WebChannelConfig())
        inactive = Channel(
            tenant_id=TENANT_ID,
            name="off",
            config=TelegramChannelConfig(bot_token=secrets.encrypt("2:y")),
            is_active=False,
        )
        listeners = ListenerRegistry(
            InMemoryChannelRepository([channel, webhook, web, inactive]),
            telegram_adapter,
            orchestrator,
            secrets,
            poll_timeout=0,
        )

        try:
            assert await listeners.start() == 1
            assert [p.channel.id for p in listeners.pollers] == [channel.id]
            assert await listeners.start() == 1
        finally:
            await listeners.stop_all()

        assert listeners.pollers == []
