"""Process entrypoint: wires repositories, registries and the orchestrator.

Architecture:
    - Settings come from the environment (a local .env is loaded first)
    - DATABASE_URL selects asyncpg repositories; without it everything
      lives in memory
    - One shared httpx client backs the Telegram adapter, the completion
      provider and the media processor
    - Tool servers and channel listeners are started after wiring and
      stopped on SIGTERM/SIGINT

Environment Variables:
    DATABASE_URL, ENCRYPTION_KEY, MCP_SERVERS, DEFAULT_CONTEXT_LIMIT,
    PROVIDER_MAX_ATTEMPTS, PROVIDER_TIMEOUT, RESPONSE_DEADLINE,
    TELEGRAM_POLL_TIMEOUT, OPENAI_API_KEY, OPENAI_TRANSCRIPTION_MODEL,
    LOG_LEVEL

Example:
    ENCRYPTION_KEY=... DATABASE_URL=postgresql://... python -m agentrelay
"""
from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from dotenv import load_dotenv

from .channels import ChannelRegistry, ListenerRegistry, TelegramAdapter
from .config import Settings
from .media import MediaProcessor
from .orchestrator import ContextBuilder, ConversationOrchestrator, OrchestratorConfig
from .persistence import (
    InMemoryAgentRepository,
    InMemoryChannelRepository,
    InMemoryConversationRepository,
    InMemoryMessageRepository,
    PostgresAgentRepository,
    PostgresChannelRepository,
    PostgresConversationRepository,
    PostgresMessageRepository,
    create_pool,
    ensure_schema,
)
from .providers import CompletionProviderConfig, OpenAIProvider, ProviderFactory
from .security import EncryptionService
from .tools import ToolAdapter, ToolServerRegistry

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Everything a running process owns."""

    settings: Settings
    orchestrator: ConversationOrchestrator
    tool_registry: ToolServerRegistry
    listeners: ListenerRegistry
    http_client: httpx.AsyncClient
    db_pool: Optional[Any] = None

    async def start(self) -> None:
        connected = await self.tool_registry.start()
        logger.info(f"{connected} tool server(s) connected")
        await self.listeners.start()

    async def stop(self) -> None:
        logger.info("Shutting down...")
        await self.listeners.stop_all()
        await self.tool_registry.stop_all()
        await self.http_client.aclose()
        if self.db_pool is not None:
            await self.db_pool.close()
        logger.info("Shutdown complete")


async def build_application(settings: Settings) -> Application:
    """Construct every component from settings.

    Raises:
        ConfigurationError: If the encryption key is missing or invalid
    """
    secrets = EncryptionService(settings.encryption_key)

    db_pool = None
    if settings.database_url:
        db_pool = await create_pool(settings.database_url)
        await ensure_schema(db_pool)
        channels = PostgresChannelRepository(db_pool)
        conversations = PostgresConversationRepository(db_pool)
        messages = PostgresMessageRepository(db_pool)
        agents = PostgresAgentRepository(db_pool)
        logger.info("Using PostgreSQL repositories")
    else:
        channels = InMemoryChannelRepository()
        conversations = InMemoryConversationRepository()
        messages = InMemoryMessageRepository()
        agents = InMemoryAgentRepository()
        logger.warning("DATABASE_URL not set - conversations are kept in memory only")

    http_client = httpx.AsyncClient(timeout=settings.provider_timeout)
    telegram = TelegramAdapter(http_client)

    tool_registry = ToolServerRegistry(settings.tool_servers)
    media = MediaProcessor(
        telegram,
        http_client,
        transcription_api_key=settings.transcription_api_key,
        transcription_model=settings.transcription_model,
    )

    orchestrator = ConversationOrchestrator(
        channels=channels,
        conversations=conversations,
        messages=messages,
        agents=agents,
        channel_registry=ChannelRegistry([telegram]),
        providers=ProviderFactory(
            [
                OpenAIProvider(
                    CompletionProviderConfig(timeout=settings.provider_timeout), http_client
                )
            ]
        ),
        secrets=secrets,
        context_builder=ContextBuilder(messages, media),
        tool_adapter=ToolAdapter(tool_registry),
        config=OrchestratorConfig(
            default_context_limit=settings.default_context_limit,
            provider_max_attempts=settings.provider_max_attempts,
            response_deadline=settings.response_deadline,
        ),
    )

    listeners = ListenerRegistry(
        channels, telegram, orchestrator, secrets, poll_timeout=settings.telegram_poll_timeout
    )

    return Application(
        settings=settings,
        orchestrator=orchestrator,
        tool_registry=tool_registry,
        listeners=listeners,
        http_client=http_client,
        db_pool=db_pool,
    )


async def run(settings: Settings) -> None:
    """Run until SIGTERM/SIGINT."""
    app = await build_application(settings)

    shutdown_event = asyncio.Event()

    def handle_shutdown(signum: signal.Signals) -> None:
        logger.info(f"Received signal {signum.name}, initiating shutdown...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, handle_shutdown, signum)

    try:
        await app.start()
        await shutdown_event.wait()
    finally:
        await app.stop()


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
