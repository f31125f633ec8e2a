import json
import unittest

from iano_chat.collection import MessageCollection
from iano_chat.event_interpreter import EventInterpreter, ProtocolVariant, StreamAction, StreamState
from iano_chat.models import MessageContent, MessageRole, MessageStatus, TextBlock
from iano_chat.sse_decoder import SseRecord


def _created(message_id: str, role: str = "assistant", **extra) -> SseRecord:
    payload = {"id": message_id, "session_id": "s1", "type": role, "content": ""}
    payload.update(extra)
    return SseRecord("message_created", payload)


def _text(text: str) -> SseRecord:
    return SseRecord("content_block", {"type": "text", "text": text})


def _tool(call_id: str, name: str, arguments: str = "{}") -> SseRecord:
    return SseRecord("content_block", {"type": "tool_call", "tool_call": {"id": call_id, "name": name, "arguments": arguments}})


class _InterpreterTestCase(unittest.TestCase):
    variant = ProtocolVariant.RICH

    def setUp(self) -> None:
        self.collection = MessageCollection()
        self.state = StreamState(session_id="s1", user_text="hi", variant=self.variant)
        self.interpreter = EventInterpreter(self.collection, self.state)

    def apply_all(self, records: list[SseRecord]) -> list[StreamAction]:
        return [self.interpreter.apply(record) for record in records]

    def assistant_messages(self):
        return [m for m in self.collection.values() if m.role is MessageRole.ASSISTANT]


class RichProtocolTests(_InterpreterTestCase):
    def test_hello_scenario(self) -> None:
        self.apply_all(
            [
                _created("u1", "user", content=MessageContent.from_text("hi").to_json()),
                _created("a1"),
                _text("Hel"),
                _text("lo"),
                SseRecord("message_completed", {"status": "completed"}),
            ]
        )

        assistant = self.collection.get("a1")
        self.assertEqual("Hello", assistant.content.text)
        self.assertEqual((TextBlock("Hello"),), assistant.content.blocks)
        self.assertIs(MessageStatus.COMPLETED, assistant.status)
        self.assertEqual("hi", self.collection.get("u1").content.text)
        self.assertIs(MessageStatus.COMPLETED, self.collection.get("u1").status)

    def test_text_always_matches_blocks_after_each_event(self) -> None:
        snapshots = []
        self.collection.subscribe(
            lambda change: snapshots.append(self.collection.get(change.message_id)) if change.message_id else None
        )

        self.apply_all([_created("a1"), _text("a"), _tool("t1", "grep"), _text("b"), _text("c")])

        for message in snapshots:
            joined = "".join(b.text for b in message.content.blocks if isinstance(b, TextBlock))
            self.assertEqual(joined, message.content.text)
        final = self.collection.get("a1").content
        self.assertEqual("abc", final.text)
        self.assertEqual(["grep"], [c.name for c in final.tool_calls])
        self.assertEqual(3, len(final.blocks))

    def test_message_created_is_idempotent(self) -> None:
        self.apply_all([_created("a1"), _text("Hi"), _created("a1"), _created("a1")])

        self.assertEqual(1, len(self.collection))
        self.assertEqual("Hi", self.collection.get("a1").content.text)

    def test_repeated_created_keeps_buffer_and_continues(self) -> None:
        self.apply_all([_created("a1"), _text("Hel"), _created("a1"), _text("lo")])

        self.assertEqual("Hello", self.collection.get("a1").content.text)

    def test_seeds_buffer_from_created_content(self) -> None:
        seeded = MessageContent.from_text("pre").to_json()
        self.apply_all([_created("a1", content=seeded), _text("fix")])

        self.assertEqual("prefix", self.collection.get("a1").content.text)

    def test_unparseable_seed_content_starts_empty(self) -> None:
        self.apply_all([_created("a1", content="{broken"), _text("!")])

        self.assertEqual("!", self.collection.get("a1").content.text)

    def test_completed_status_is_terminal(self) -> None:
        self.apply_all(
            [
                _created("a1"),
                _text("done"),
                SseRecord("message_completed", {"status": "completed"}),
                _text(" more"),
                SseRecord("message_completed", {"status": "failed"}),
            ]
        )

        message = self.collection.get("a1")
        self.assertIs(MessageStatus.COMPLETED, message.status)
        self.assertEqual("done", message.content.text)

    def test_message_completed_content_replaces_wholesale(self) -> None:
        final = json.dumps({"text": "final answer"})
        self.apply_all([_created("a1"), _text("draft"), SseRecord("message_completed", {"status": "completed", "content": final})])

        self.assertEqual("final answer", self.collection.get("a1").content.text)

    def test_content_without_target_is_ignored(self) -> None:
        self.apply_all([_text("orphan"), _tool("t1", "x")])

        self.assertEqual(0, len(self.collection))

    def test_new_assistant_target_completes_previous(self) -> None:
        self.apply_all([_created("a1"), _text("first"), _created("a2"), _text("second")])

        self.assertIs(MessageStatus.COMPLETED, self.collection.get("a1").status)
        self.assertEqual("first", self.collection.get("a1").content.text)
        self.assertEqual("second", self.collection.get("a2").content.text)
        self.assertEqual("a2", self.state.target_id)

    def test_rate_limited_scenario(self) -> None:
        actions = self.apply_all(
            [
                _created("a1"),
                SseRecord("error", {"error": "rate limited"}),
            ]
        )

        self.assertEqual([StreamAction.CONTINUE, StreamAction.STOP], actions)
        self.assertEqual("rate limited", self.state.error_message)
        self.assertIs(MessageStatus.FAILED, self.collection.get("a1").status)

    def test_cancelled_state_blocks_further_events(self) -> None:
        self.apply_all([_created("a1"), _text("a")])
        self.state.cancelled = True

        action = self.interpreter.apply(_text("b"))

        self.assertIs(StreamAction.STOP, action)
        self.assertEqual("a", self.collection.get("a1").content.text)

    def test_unknown_events_and_non_object_payloads_are_ignored(self) -> None:
        actions = self.apply_all([_created("a1"), SseRecord("ping", {}), SseRecord("content_block", ["x"])])

        self.assertEqual([StreamAction.CONTINUE] * 3, actions)
        self.assertEqual("", self.collection.get("a1").content.text)


class LegacyProtocolTests(_InterpreterTestCase):
    variant = ProtocolVariant.LEGACY

    def setUp(self) -> None:
        super().setUp()
        self.interpreter.begin_legacy_exchange()

    def test_begin_creates_user_message_and_placeholder(self) -> None:
        self.interpreter.begin_legacy_exchange()

        messages = self.collection.values()
        self.assertEqual([MessageRole.USER, MessageRole.ASSISTANT], [m.role for m in messages])
        self.assertEqual("hi", messages[0].content.text)
        self.assertIs(MessageStatus.STREAMING, messages[1].status)
        self.assertEqual(messages[1].id, self.state.target_id)

    def test_assembles_text_and_tool_calls(self) -> None:
        self.apply_all(
            [
                SseRecord("message", {"content": "Let me "}),
                SseRecord("message", {"content": "check."}),
                SseRecord("tool_call", {"id": "t1", "name": "read_file", "arguments": '{"path": "a"}'}),
                SseRecord("message", {"content": " Done."}),
                SseRecord("done", {}),
            ]
        )

        assistant = self.assistant_messages()[0]
        self.assertEqual("Let me check. Done.", assistant.content.text)
        self.assertEqual("read_file", assistant.content.tool_calls[0].name)
        self.assertIs(MessageStatus.COMPLETED, assistant.status)

    def test_bare_tool_call_on_default_event(self) -> None:
        self.interpreter.apply(SseRecord("message", {"id": "t9", "name": "ls", "arguments": "{}"}))

        self.assertEqual(["ls"], [c.name for c in self.assistant_messages()[0].content.tool_calls])

    def test_error_in_message_event_fails_target(self) -> None:
        actions = self.apply_all(
            [
                SseRecord("message", {"content": "partial"}),
                SseRecord("message", {"error": "boom"}),
            ]
        )

        assistant = self.assistant_messages()[0]
        self.assertEqual(StreamAction.STOP, actions[-1])
        self.assertEqual("boom", self.state.error_message)
        self.assertIs(MessageStatus.FAILED, assistant.status)
        self.assertEqual("partial", assistant.content.text)

    def test_events_after_done_are_ignored(self) -> None:
        self.apply_all([SseRecord("message", {"content": "a"}), SseRecord("done", {}), SseRecord("message", {"content": "b"})])

        self.assertEqual("a", self.assistant_messages()[0].content.text)


class AutoDetectionTests(_InterpreterTestCase):
    variant = ProtocolVariant.AUTO

    def test_locks_onto_rich_without_placeholder(self) -> None:
        self.apply_all([_created("a1"), _text("x")])

        self.assertIs(ProtocolVariant.RICH, self.state.variant)
        self.assertEqual(["a1"], [m.id for m in self.collection.values()])

    def test_locks_onto_legacy_and_creates_exchange(self) -> None:
        self.apply_all([SseRecord("message", {"content": "hey"}), SseRecord("done", {})])

        self.assertIs(ProtocolVariant.LEGACY, self.state.variant)
        self.assertEqual(2, len(self.collection))
        assistant = self.assistant_messages()[0]
        self.assertEqual("hey", assistant.content.text)
        self.assertIs(MessageStatus.COMPLETED, assistant.status)

    def test_events_before_detection_are_ignored(self) -> None:
        self.apply_all([SseRecord("", {"content": "?"}), SseRecord("heartbeat", {})])

        self.assertIs(ProtocolVariant.AUTO, self.state.variant)
        self.assertEqual(0, len(self.collection))

    def test_error_before_detection_stops(self) -> None:
        action = self.interpreter.apply(SseRecord("error", {"error": "no agent"}))

        self.assertIs(StreamAction.STOP, action)
        self.assertEqual("no agent", self.state.error_message)


class ProtocolVariantTests(unittest.TestCase):
    def test_parse(self) -> None:
        self.assertIs(ProtocolVariant.RICH, ProtocolVariant.parse(" Rich "))
        self.assertIs(ProtocolVariant.AUTO, ProtocolVariant.parse(None))
        with self.assertRaises(ValueError):
            ProtocolVariant.parse("grpc")

    def test_default_event(self) -> None:
        self.assertEqual("", ProtocolVariant.RICH.default_event)
        self.assertEqual("message", ProtocolVariant.LEGACY.default_event)
        self.assertEqual("message", ProtocolVariant.AUTO.default_event)


if __name__ == "__main__":
    unittest.main()
