import unittest

from tabchat.models import (
    AssistantMessage,
    StreamChunk,
    SystemMessage,
    message_from_dict,
    message_to_dict,
)


class MessageRecordTests(unittest.TestCase):
    def test_assistant_record_uses_camel_case_keys(self) -> None:
        record = message_to_dict(
            AssistantMessage(id="a1", content="hi", output_tokens=3, api_cost=0.01, model_id="m")
        )
        self.assertEqual("assistant", record["role"])
        self.assertEqual(3, record["outputTokens"])
        self.assertEqual(0.01, record["apiCost"])
        self.assertEqual("m", record["modelId"])

    def test_missing_optional_counts_stay_unset(self) -> None:
        message = message_from_dict({"role": "assistant", "id": "a1", "content": "x"})
        self.assertIsInstance(message, AssistantMessage)
        self.assertIsNone(message.output_tokens)
        self.assertIsNone(message.api_cost)
        self.assertFalse(message.is_streaming)

    def test_system_record(self) -> None:
        message = message_from_dict({"role": "system", "id": "s1", "content": "Error: boom"})
        self.assertIsInstance(message, SystemMessage)
        self.assertFalse(message.is_streaming)

    def test_unknown_role_raises(self) -> None:
        with self.assertRaises(ValueError):
            message_from_dict({"role": "tool", "content": "x"})


class StreamChunkTests(unittest.TestCase):
    def test_text_chunk_is_not_terminal(self) -> None:
        chunk = StreamChunk.from_payload({"streamId": "s", "chunkData": {"chunk": "ab", "done": False}})
        self.assertEqual("ab", chunk.chunk)
        self.assertFalse(chunk.is_terminal)

    def test_error_chunk_is_terminal(self) -> None:
        chunk = StreamChunk.from_payload({"streamId": "s", "chunkData": {"error": "rate limited", "done": True}})
        self.assertEqual("rate limited", chunk.error)
        self.assertTrue(chunk.is_terminal)

    def test_cancelled_requires_literal_true(self) -> None:
        chunk = StreamChunk.from_payload({"streamId": "s", "chunkData": {"done": True, "cancelled": "yes"}})
        self.assertFalse(chunk.cancelled)

    def test_missing_chunk_data_raises(self) -> None:
        with self.assertRaises(ValueError):
            StreamChunk.from_payload({"streamId": "s"})


if __name__ == "__main__":
    unittest.main()
