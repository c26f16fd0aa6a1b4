from tabchat.models import AssistantMessage, TurnOutcome, UserMessage
from tabchat.storage import KeyValueStore, SqliteStore
from tests.storage.base import SqliteStoreTestCase, rate_card


class SqliteStoreTests(SqliteStoreTestCase):
    def test_satisfies_protocol(self) -> None:
        self.assertIsInstance(self._store, KeyValueStore)

    def test_set_overwrites_whole_value(self) -> None:
        self._store.set("k", {"a": 1, "b": 2})
        self._store.set("k", {"a": 3})
        self.assertEqual({"a": 3}, self._store.get("k"))

    def test_keys_prefix_is_literal(self) -> None:
        self._store.set("chat_session:1", 1)
        self._store.set("chat_session_other", 2)
        self._store.set("chat_session:2", 3)
        self.assertEqual(["chat_session:1", "chat_session:2"], self._store.keys("chat_session:"))

    def test_session_survives_reopen(self) -> None:
        session = self._sessions.create_session("anthropic", "test-model", session_id="persisted")
        session.messages.append(UserMessage(id="u1", content="hello there"))
        session.messages.append(AssistantMessage(id="a1", content="general kenobi"))
        self._sessions.save(session, rate_card(), outcome=TurnOutcome.COMPLETED)
        self._store.close()

        self._store = SqliteStore(str(self._tmp_dir / "store.db"))
        reopened = self._store.get("chat_session:persisted")
        self.assertEqual(["u1", "a1"], [m["id"] for m in reopened["messages"]])
        self.assertIn("persisted", self._store.get("global_chat_token_stats"))

    def test_remove_deletes_key(self) -> None:
        self._store.set("k", 1)
        self._store.remove("k")
        self.assertIsNone(self._store.get("k"))
