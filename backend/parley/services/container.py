"""
Service container - wires the store, managers and ticker from settings.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..config.settings import Settings
from ..core.commands import SessionCommands
from ..core.lifecycle import SessionLifecycleManager
from ..core.message_log import MessageLog
from ..core.scheduler import SessionTicker
from ..core.session_query import SessionQuery
from ..core.title_generator import TitleGenerator
from ..llm import LLMTextGenerator, TextGenerator, UnconfiguredTextGenerator, create_llm_provider
from ..storage import LocalStorage, SessionStore, StorageInterface

logger = logging.getLogger(__name__)


def build_text_generator(config: Settings) -> TextGenerator:
    """Create the text generator for the configured LLM provider."""
    provider = create_llm_provider(
        provider=config.llm_provider,
        api_key=config.llm_api_key,
        model=config.llm_model,
        base_url=config.llm_base_url,
        default_temperature=config.llm_temperature,
        timeout=config.llm_timeout,
    )
    if provider is None:
        logger.warning(
            f"LLM provider '{config.llm_provider}' is not configured; title generation is disabled"
        )
        return UnconfiguredTextGenerator(f"LLM provider '{config.llm_provider}' is not configured")
    return LLMTextGenerator(provider, temperature=config.llm_temperature,
                            log_calls=config.log_llm_calls)


@dataclass
class SessionServices:
    """Everything the API layer needs, built once per application."""
    store: SessionStore
    message_log: MessageLog
    lifecycle: SessionLifecycleManager
    titles: TitleGenerator
    query: SessionQuery
    commands: SessionCommands
    ticker: SessionTicker

    @classmethod
    def build(
        cls,
        config: Settings,
        storage: Optional[StorageInterface] = None,
        generator: Optional[TextGenerator] = None
    ) -> "SessionServices":
        if storage is None:
            if config.storage_type != "local":
                raise ValueError(f"Unsupported storage type: {config.storage_type}")
            storage = LocalStorage(config.local_storage_path)

        store = SessionStore(storage)
        message_log = MessageLog(store)
        lifecycle = SessionLifecycleManager(
            store, message_log, inactivity_timeout=config.inactivity_timeout_seconds
        )
        titles = TitleGenerator(
            store,
            generator or build_text_generator(config),
            min_messages=config.title_min_messages,
            context_messages=config.title_context_messages,
            max_title_length=config.title_max_length,
            temperature=config.llm_temperature,
        )
        query = SessionQuery(store)
        return cls(
            store=store,
            message_log=message_log,
            lifecycle=lifecycle,
            titles=titles,
            query=query,
            commands=SessionCommands(store, query, titles),
            ticker=SessionTicker(lifecycle, titles, interval_seconds=config.tick_interval_seconds),
        )

    async def start(self, run_ticker: bool = True) -> None:
        await self.store.load()
        if run_ticker:
            await self.ticker.start()

    async def stop(self) -> None:
        await self.ticker.stop()
