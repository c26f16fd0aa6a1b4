import asyncio

from tabchat.models import AssistantMessage, SystemMessage, TokenStatistics, UserMessage
from tabchat.session_rewinder import (
    NO_CREDENTIALS_MESSAGE,
    NO_MODEL_MESSAGE,
    NO_PLATFORM_MESSAGE,
    PORT_CLOSED_MESSAGE,
    ChatSelection,
    SessionRewinder,
    build_history,
)
from tabchat.token_ledger import GLOBAL_STATS_KEY
from tabchat.transport import ChannelClosedError
from tests.base import StreamTestCase
from tests.storage.base import rate_card


class RewinderTestCase(StreamTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._session = self._sessions.create_session("anthropic", "test-model")
        self._rewinder = SessionRewinder(
            self._session,
            self._sessions,
            self._controller,
            selection=ChatSelection(
                platform_id="anthropic",
                model_id="test-model",
                has_credentials=True,
                model_config=rate_card(1.0, 2.0),
            ),
        )

    def _seed(self, messages: list, accumulated_cost: float, output_tokens: int) -> None:
        self._session.messages.extend(messages)
        self._sessions.save(self._session)
        self._store.set(
            GLOBAL_STATS_KEY,
            {
                self._session.id: TokenStatistics(
                    output_tokens=output_tokens, accumulated_cost=accumulated_cost, is_calculated=True
                ).to_dict()
            },
        )

    async def _finish(self, **chunk_data) -> None:
        self._channel.push(self._controller.stream_id, done=True, **chunk_data)
        await self._controller.wait()

    def _last_request(self) -> dict:
        return [r for r in self._channel.requests if r["action"] == "processContent"][-1]


class SendTests(RewinderTestCase):
    def test_send_appends_prompt_and_placeholder(self) -> None:
        async def scenario() -> bool:
            sent = await self._rewinder.send("  hi there  ")
            self.assertEqual(["user", "assistant"], [m.role for m in self._session.messages])
            self.assertTrue(self._session.messages[1].is_streaming)
            self.assertEqual(2, self._session.messages[0].input_tokens)
            await self._finish(fullContent="hello")
            return sent

        self.assertTrue(asyncio.run(scenario()))
        request = self._last_request()
        self.assertEqual("hi there", request["prompt"])
        self.assertEqual([], request["conversationHistory"])
        self.assertEqual(self._session.id, request["sessionId"])
        self.assertEqual("hello", self._session.messages[1].content)

    def test_history_excludes_prompt_and_system_messages(self) -> None:
        self._seed(
            [
                UserMessage(id="u1", content="first"),
                AssistantMessage(id="a1", content="reply"),
                SystemMessage(id="s1", content="Error: boom"),
            ],
            accumulated_cost=0.0,
            output_tokens=0,
        )

        async def scenario() -> None:
            await self._rewinder.send("second")
            await self._finish(fullContent="ok")

        asyncio.run(scenario())
        history = self._last_request()["conversationHistory"]
        self.assertEqual([("user", "first"), ("assistant", "reply")], [(h["role"], h["content"]) for h in history])

    def test_blank_send_is_ignored(self) -> None:
        self.assertFalse(asyncio.run(self._rewinder.send("   ")))
        self.assertEqual([], self._session.messages)
        self.assertEqual([], self._channel.requests)

    def test_missing_selection_explains_with_system_message(self) -> None:
        cases = [
            (ChatSelection(model_id="m", has_credentials=True), NO_PLATFORM_MESSAGE),
            (ChatSelection(platform_id="p", has_credentials=True), NO_MODEL_MESSAGE),
            (ChatSelection(platform_id="p", model_id="m"), NO_CREDENTIALS_MESSAGE),
        ]
        for selection, expected in cases:
            self._rewinder.selection = selection
            self.assertFalse(asyncio.run(self._rewinder.send("hello")))
            last = self._session.messages[-1]
            self.assertIsInstance(last, SystemMessage)
            self.assertEqual(expected, last.content)
        self.assertEqual([], self._channel.requests)
        self.assertEqual(3, len(self._sessions.load_messages(self._session.id)))

    def test_send_refused_while_streaming(self) -> None:
        async def scenario() -> bool:
            await self._rewinder.send("first")
            refused = await self._rewinder.send("second")
            await self._finish()
            return refused

        self.assertFalse(asyncio.run(scenario()))
        self.assertEqual(1, self._channel.actions.count("processContent"))

    def test_transport_failure_appends_port_closed_notice(self) -> None:
        self._channel.fail_with = ChannelClosedError("no receiver")
        self.assertFalse(asyncio.run(self._rewinder.send("hello")))

        self.assertEqual(["user", "system"], [m.role for m in self._session.messages])
        self.assertEqual(PORT_CLOSED_MESSAGE, self._session.messages[1].content)
        persisted = self._sessions.load_messages(self._session.id)
        self.assertEqual(PORT_CLOSED_MESSAGE, persisted[1].content)

    def test_rejected_call_appends_error_text(self) -> None:
        self._channel.reject_with = "No API credentials configured for platform 'anthropic'"
        asyncio.run(self._rewinder.send("hello"))
        self.assertEqual(
            "Error: No API credentials configured for platform 'anthropic'",
            self._session.messages[-1].content,
        )
        self.assertFalse(self._controller.is_busy)


class RerunTests(RewinderTestCase):
    def test_rerun_discards_cost_of_dropped_turn(self) -> None:
        self._seed(
            [
                UserMessage(id="u1", content="Hi"),
                AssistantMessage(id="a1", content="Hello", output_tokens=1, api_cost=0.002),
            ],
            accumulated_cost=0.002,
            output_tokens=1,
        )

        async def scenario() -> bool:
            started = await self._rewinder.rerun("u1")
            self.assertEqual("u1", self._session.messages[0].id)
            self.assertEqual(2, len(self._session.messages))
            self.assertTrue(self._session.messages[1].is_streaming)
            self.assertIsNone(self._rewinder.rollback)
            await self._finish(fullContent="Hey there")
            return started

        self.assertTrue(asyncio.run(scenario()))
        self.assertEqual([], self._last_request()["conversationHistory"])
        self.assertEqual("Hi", self._last_request()["prompt"])

        stats = self._ledger.get_token_statistics(self._session.id)
        self.assertAlmostEqual((1 * 1.0 + 2 * 2.0) / 1_000_000, stats.accumulated_cost)
        self.assertEqual(2, stats.output_tokens)

    def test_rerun_mid_conversation_keeps_earlier_cost(self) -> None:
        self._seed(
            [
                UserMessage(id="u1", content="a"),
                AssistantMessage(id="a1", content="b", output_tokens=1, api_cost=0.1),
                UserMessage(id="u2", content="c"),
                AssistantMessage(id="a2", content="d", output_tokens=1, api_cost=0.2),
                UserMessage(id="u3", content="e"),
                AssistantMessage(id="a3", content="f", output_tokens=1, api_cost=0.4),
            ],
            accumulated_cost=0.7,
            output_tokens=3,
        )

        async def scenario() -> None:
            await self._rewinder.rerun("u2")
            self.assertEqual(["u1", "a1", "u2"], [m.id for m in self._session.messages[:3]])
            self.assertEqual(4, len(self._session.messages))
            await self._finish(fullContent="g")

        asyncio.run(scenario())
        history = self._last_request()["conversationHistory"]
        self.assertEqual(["a", "b"], [h["content"] for h in history])

        stats = self._ledger.get_token_statistics(self._session.id)
        turn_cost = (3 * 1.0 + 1 * 2.0) / 1_000_000
        self.assertAlmostEqual(0.1 + turn_cost, stats.accumulated_cost)
        self.assertEqual(1 + 1, stats.output_tokens)

    def test_rerun_of_non_user_message_is_ignored(self) -> None:
        self._seed([UserMessage(id="u1", content="a"), AssistantMessage(id="a1", content="b")], 0.0, 0)
        self.assertFalse(asyncio.run(self._rewinder.rerun("a1")))
        self.assertFalse(asyncio.run(self._rewinder.rerun("missing")))
        self.assertEqual(["u1", "a1"], [m.id for m in self._session.messages])
        self.assertEqual([], self._channel.requests)

    def test_rerun_requires_credentials(self) -> None:
        self._seed([UserMessage(id="u1", content="a")], 0.0, 0)
        self._rewinder.selection = ChatSelection(platform_id="anthropic", model_id="test-model")
        self.assertFalse(asyncio.run(self._rewinder.rerun("u1")))
        self.assertEqual(["u1"], [m.id for m in self._session.messages])

    def test_failed_rerun_keeps_truncation_and_clears_rollback(self) -> None:
        self._seed(
            [
                UserMessage(id="u1", content="Hi"),
                AssistantMessage(id="a1", content="Hello", output_tokens=1, api_cost=0.002),
            ],
            accumulated_cost=0.002,
            output_tokens=1,
        )
        self._channel.fail_with = ChannelClosedError("no receiver")

        self.assertFalse(asyncio.run(self._rewinder.rerun("u1")))

        persisted = self._sessions.load_messages(self._session.id)
        self.assertEqual(["user", "system"], [m.role for m in persisted])
        self.assertEqual(PORT_CLOSED_MESSAGE, persisted[1].content)
        self.assertIsNone(self._rewinder.rollback)
        stats = self._ledger.get_token_statistics(self._session.id)
        self.assertEqual(0.0, stats.accumulated_cost)
        self.assertEqual(0, stats.output_tokens)

    def test_send_after_failed_rerun_uses_recorded_totals(self) -> None:
        self._seed(
            [
                UserMessage(id="u1", content="Hi"),
                AssistantMessage(id="a1", content="Hello", output_tokens=1, api_cost=0.002),
            ],
            accumulated_cost=0.002,
            output_tokens=1,
        )
        self._channel.fail_with = ChannelClosedError("no receiver")
        asyncio.run(self._rewinder.rerun("u1"))
        self._channel.fail_with = None

        async def scenario() -> None:
            await self._rewinder.send("again")
            await self._finish(fullContent="fine")

        asyncio.run(scenario())
        stats = self._ledger.get_token_statistics(self._session.id)
        self.assertEqual(1, stats.output_tokens)


class EditAndRerunTests(RewinderTestCase):
    def test_whitespace_edit_is_noop(self) -> None:
        self._seed([UserMessage(id="u1", content="Hi"), AssistantMessage(id="a1", content="Hello")], 0.0, 0)
        self.assertFalse(asyncio.run(self._rewinder.edit_and_rerun("u1", "  ")))
        self.assertEqual(["u1", "a1"], [m.id for m in self._session.messages])
        self.assertEqual("Hi", self._session.messages[0].content)
        self.assertEqual([], self._channel.requests)

    def test_edit_replaces_prompt_and_reestimates(self) -> None:
        self._seed(
            [UserMessage(id="u1", content="Hi", input_tokens=1), AssistantMessage(id="a1", content="Hello")],
            0.0,
            0,
        )

        async def scenario() -> bool:
            started = await self._rewinder.edit_and_rerun("u1", "  tell me more please ")
            prompt = self._session.messages[0]
            self.assertEqual("tell me more please", prompt.content)
            self.assertEqual(4, prompt.input_tokens)
            await self._finish(fullContent="sure")
            return started

        self.assertTrue(asyncio.run(scenario()))
        self.assertEqual("tell me more please", self._last_request()["prompt"])
        self.assertEqual(["user", "assistant"], [m.role for m in self._session.messages])


class RerunAssistantTests(RewinderTestCase):
    def test_reruns_preceding_prompt(self) -> None:
        self._seed(
            [
                UserMessage(id="u1", content="Hi"),
                AssistantMessage(id="a1", content="Hello", output_tokens=1, api_cost=0.002),
                UserMessage(id="u2", content="more"),
            ],
            accumulated_cost=0.002,
            output_tokens=1,
        )

        async def scenario() -> bool:
            started = await self._rewinder.rerun_assistant_message("a1")
            self.assertEqual("u1", self._session.messages[0].id)
            self.assertEqual(2, len(self._session.messages))
            await self._finish(fullContent="Hey")
            return started

        self.assertTrue(asyncio.run(scenario()))
        self.assertEqual("Hi", self._last_request()["prompt"])

    def test_malformed_structure_is_rejected(self) -> None:
        self._seed(
            [SystemMessage(id="s1", content="note"), AssistantMessage(id="a1", content="orphan")],
            0.0,
            0,
        )
        self.assertFalse(asyncio.run(self._rewinder.rerun_assistant_message("a1")))
        self.assertFalse(asyncio.run(self._rewinder.rerun_assistant_message("s1")))
        self.assertEqual(["s1", "a1"], [m.id for m in self._session.messages])
        self.assertEqual([], self._channel.requests)


class ClearChatTests(RewinderTestCase):
    def test_clear_empties_session_and_statistics(self) -> None:
        self._seed([UserMessage(id="u1", content="a"), AssistantMessage(id="a1", content="b")], 0.5, 1)
        self.assertTrue(self._rewinder.clear_chat())
        self.assertEqual([], self._session.messages)
        self.assertEqual([], self._sessions.load_messages(self._session.id))
        self.assertFalse(self._ledger.get_token_statistics(self._session.id).is_calculated)

    def test_clear_refused_while_streaming(self) -> None:
        async def scenario() -> bool:
            await self._rewinder.send("hello")
            refused = self._rewinder.clear_chat()
            await self._finish()
            return refused

        self.assertFalse(asyncio.run(scenario()))
        self.assertEqual(2, len(self._session.messages))


class BuildHistoryTests(RewinderTestCase):
    def test_skips_streaming_placeholder(self) -> None:
        history = build_history(
            [
                UserMessage(id="u1", content="a"),
                AssistantMessage(id="a1", content="", is_streaming=True),
            ]
        )
        self.assertEqual(["a"], [h["content"] for h in history])
        self.assertIn("timestamp", history[0])
