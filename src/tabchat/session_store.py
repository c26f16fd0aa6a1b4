from __future__ import annotations

from uuid import uuid4

from loguru import logger

from tabchat.models import (
    AssistantMessage,
    ChatMessage,
    ChatSession,
    LedgerBaseline,
    ModelConfig,
    SessionMetadata,
    TokenStatistics,
    TurnOutcome,
    UserMessage,
    utc_now,
)
from tabchat.storage import KeyValueStore, StorageError
from tabchat.token_ledger import TokenLedger

SESSION_KEY_PREFIX = "chat_session:"


class ChatSessionStore:
    def __init__(self, store: KeyValueStore, ledger: TokenLedger, *, max_messages: int = 200):
        self._store = store
        self._ledger = ledger
        self._max_messages = max(1, max_messages)

    @property
    def ledger(self) -> TokenLedger:
        return self._ledger

    def create_session(
        self,
        platform_id: str | None,
        model_id: str | None,
        *,
        session_id: str | None = None,
        initial_url: str | None = None,
        initial_title: str | None = None,
    ) -> ChatSession:
        if session_id is not None and not session_id.strip():
            raise ValueError("session_id must not be blank")
        sid = session_id or str(uuid4())
        now = utc_now()
        session = ChatSession(
            metadata=SessionMetadata(
                id=sid,
                platform_id=platform_id,
                model_id=model_id,
                created_at=now,
                last_activity_at=now,
                initial_url=initial_url,
                initial_title=initial_title,
            )
        )
        self._store.set(self._key(sid), session.to_record())
        logger.info(f"Chat session created: id={sid}, platform={platform_id}, model={model_id}")
        return session

    def get_session_metadata(self, session_id: str) -> SessionMetadata | None:
        record = self._store.get(self._key(session_id))
        if not isinstance(record, dict) or "metadata" not in record:
            return None
        return SessionMetadata.from_dict(record["metadata"])

    def list_sessions(self, *, limit: int = 50) -> list[SessionMetadata]:
        sessions: list[SessionMetadata] = []
        for key in self._store.keys(SESSION_KEY_PREFIX):
            metadata = self.get_session_metadata(key[len(SESSION_KEY_PREFIX):])
            if metadata is not None:
                sessions.append(metadata)
        sessions.sort(key=lambda m: (m.last_activity_at, m.created_at), reverse=True)
        return sessions[: max(1, limit)]

    def load_session(self, session_id: str) -> ChatSession | None:
        record = self._store.get(self._key(session_id))
        if not isinstance(record, dict) or "metadata" not in record:
            return None
        return ChatSession.from_record(record)

    def load_messages(self, session_id: str) -> list[ChatMessage]:
        session = self.load_session(session_id)
        return session.messages if session is not None else []

    def save(
        self,
        session: ChatSession,
        model_config: ModelConfig | None = None,
        *,
        baseline: LedgerBaseline | None = None,
        outcome: TurnOutcome | None = None,
        system_prompt: str | None = None,
        thinking_enabled: bool = False,
    ) -> TokenStatistics | None:
        """Persist the whole session.

        With ``outcome`` set, the turn is accounted by the ledger and the reply to
        the last prompt is stamped with its cost and input size. The statistics
        are written only after the session record; if that second write fails
        the previous session record is put back, so a failed save leaves both
        records as they were.
        """
        stats: TokenStatistics | None = None
        if outcome is not None:
            stats = self._ledger.calculate_and_update_statistics(
                session.id,
                session.messages,
                model_config,
                baseline=baseline,
                outcome=outcome,
                system_prompt=system_prompt,
                thinking_enabled=thinking_enabled,
                persist=False,
            )
            if outcome is not TurnOutcome.ERROR:
                reply = _reply_to_last_prompt(session.messages)
                if reply is not None:
                    reply.api_cost = stats.last_api_call_cost
                    reply.input_tokens = stats.input_tokens_in_last_api_call

        session.metadata.last_activity_at = utc_now()
        record = session.to_record()
        if len(record["messages"]) > self._max_messages:
            dropped = len(record["messages"]) - self._max_messages
            record["messages"] = record["messages"][-self._max_messages:]
            logger.debug(f"Session {session.id}: dropped {dropped} oldest messages from persisted history")
        key = self._key(session.id)
        previous = self._store.get(key)
        self._store.set(key, record)
        if stats is None:
            return stats

        try:
            self._ledger.save_token_statistics(session.id, stats)
        except StorageError:
            logger.error(f"Session {session.id}: token statistics not saved, restoring previous session record")
            if previous is None:
                self._store.remove(key)
            else:
                self._store.set(key, previous)
            raise
        return stats

    def delete_session(self, session_id: str) -> None:
        self._store.remove(self._key(session_id))
        self._ledger.clear_token_statistics(session_id)
        logger.info(f"Chat session deleted: id={session_id}")

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"


def _reply_to_last_prompt(messages: list[ChatMessage]) -> AssistantMessage | None:
    for message in reversed(messages):
        if isinstance(message, AssistantMessage):
            return message
        if isinstance(message, UserMessage):
            return None
    return None
