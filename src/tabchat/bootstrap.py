from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from tabchat.app_config import AppConfig, RuntimeEnv, load_json_config, parse_app_config, resolve_runtime_env
from tabchat.coordinator import BackendCoordinator, LocalChannel, ProviderFactory
from tabchat.logging_config import setup_logging
from tabchat.models import ChatSession
from tabchat.provider import create_provider
from tabchat.session_rewinder import ChatSelection, SessionRewinder
from tabchat.session_store import ChatSessionStore
from tabchat.storage import InMemoryStore, KeyValueStore, SqliteStore
from tabchat.stream_controller import StreamController
from tabchat.token_ledger import Encoder, TokenLedger
from tabchat.transport import ChunkChannel, Transport


@dataclass
class ChatRuntime:
    config: AppConfig
    env: RuntimeEnv
    store: KeyValueStore
    ledger: TokenLedger
    sessions: ChatSessionStore
    chunks: ChunkChannel
    coordinator: BackendCoordinator
    channel: LocalChannel
    transport: Transport
    controller: StreamController
    log_descriptions: list[str]

    def selection(self, platform_id: str | None = None, model_id: str | None = None) -> ChatSelection:
        platform_id = platform_id or self.config.platform_id
        model_id = model_id or self.config.model_id
        return ChatSelection(
            platform_id=platform_id,
            model_id=model_id,
            has_credentials=self.env.has_credentials(platform_id),
            model_config=self.config.model_config(platform_id, model_id),
            thinking_enabled=self.config.thinking_enabled,
        )

    def open_chat(
        self,
        session_id: str | None = None,
        *,
        on_update: Callable[[ChatSession], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> SessionRewinder:
        """Load ``session_id`` (or start a new session) and return its rewinder."""
        session = self.sessions.load_session(session_id) if session_id else None
        if session is None:
            session = self.sessions.create_session(
                self.config.platform_id,
                self.config.model_id,
                session_id=session_id,
            )
        elif not self.ledger.get_token_statistics(session.id).is_calculated and session.messages:
            self.ledger.recalculate_statistics(session.id, session.messages, self.config.system_prompt)

        self.controller.set_listeners(on_update=on_update, on_error=on_error)
        return SessionRewinder(
            session,
            self.sessions,
            self.controller,
            selection=self.selection(session.metadata.platform_id, session.metadata.model_id),
            system_prompt=self.config.system_prompt,
            on_update=on_update,
            on_error=on_error,
        )

    async def close(self) -> None:
        await self.coordinator.shutdown()
        self.channel.invalidate()
        if isinstance(self.store, SqliteStore):
            self.store.close()


def _create_store(app: AppConfig) -> KeyValueStore:
    if app.store_backend == "sqlite":
        db_path = Path(app.store_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        return SqliteStore(str(db_path))
    return InMemoryStore(quota_bytes=app.store_quota_bytes)


def bootstrap_runtime(
    app: AppConfig | None = None,
    env: RuntimeEnv | None = None,
    *,
    provider_factory: ProviderFactory = create_provider,
    encode: Encoder | None = None,
    configure_logging: bool = True,
) -> ChatRuntime:
    if app is None or env is None:
        load_dotenv()
    if app is None:
        app = parse_app_config(load_json_config())
    if env is None:
        env = resolve_runtime_env()

    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers) if configure_logging else []

    store = _create_store(app)
    ledger = TokenLedger(store, encoding_name=app.tokenizer_encoding, encode=encode)
    sessions = ChatSessionStore(store, ledger, max_messages=app.max_messages_per_session)

    chunks = ChunkChannel()
    coordinator = BackendCoordinator(
        chunks,
        env.api_keys,
        provider_factory=provider_factory,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
    )
    channel = LocalChannel(coordinator)
    transport = Transport(
        channel,
        max_retries=app.transport_max_retries,
        base_delay=app.transport_retry_base_delay_ms / 1000,
    )
    controller = StreamController(
        transport,
        chunks,
        sessions,
        flush_interval=app.flush_interval_ms / 1000,
    )

    logger.info(
        f"Runtime ready: platform={app.platform_id}, model={app.model_id}, "
        f"store={app.store_backend}, logging={', '.join(log_descriptions) or 'unchanged'}"
    )
    return ChatRuntime(
        config=app,
        env=env,
        store=store,
        ledger=ledger,
        sessions=sessions,
        chunks=chunks,
        coordinator=coordinator,
        channel=channel,
        transport=transport,
        controller=controller,
        log_descriptions=log_descriptions,
    )
