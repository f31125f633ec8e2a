import io
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

from iano_chat.console import Spinner, StreamRenderer, format_tool_call
from iano_chat.message_store import MessageStore
from iano_chat.models import Message, MessageContent, MessageRole, MessageStatus, TextBlock, ToolCall, ToolCallBlock


def _make_store() -> MessageStore:
    sessions = SimpleNamespace(current_session_id="s1", current_agent_id="default")
    return MessageStore(MagicMock(), sessions)


def _content(*blocks) -> MessageContent:
    return MessageContent.from_blocks(list(blocks))


class StreamRendererTests(unittest.TestCase):
    def test_prints_only_new_text(self) -> None:
        store = _make_store()
        out = io.StringIO()
        renderer = StreamRenderer(store, stream=out, prefix="assistant> ")
        renderer.start(spinner=False)

        store.add_message(Message(id="a1", session_id="s1", role=MessageRole.ASSISTANT, status=MessageStatus.STREAMING))
        store.update_message("a1", content=_content(TextBlock("Hel")))
        store.update_message("a1", content=_content(TextBlock("Hello")))
        renderer.stop()

        self.assertEqual("assistant> Hello", out.getvalue())

    def test_tool_calls_render_between_text(self) -> None:
        store = _make_store()
        out = io.StringIO()
        renderer = StreamRenderer(store, stream=out, prefix="")
        renderer.start(spinner=False)
        call = ToolCall("t1", "read_file", '{"path": "a"}')

        store.add_message(Message(id="a1", session_id="s1", role=MessageRole.ASSISTANT, status=MessageStatus.STREAMING))
        store.update_message("a1", content=_content(TextBlock("Checking")))
        store.update_message("a1", content=_content(TextBlock("Checking"), ToolCallBlock(call)))
        store.update_message("a1", content=_content(TextBlock("Checking"), ToolCallBlock(call), TextBlock("Done")))
        renderer.stop()

        self.assertEqual('Checking\n[tool: read_file({"path": "a"})]\nDone', out.getvalue())

    def test_ignores_user_messages_and_earlier_history(self) -> None:
        store = _make_store()
        store.add_message(
            Message(id="old", session_id="s1", role=MessageRole.ASSISTANT, content=MessageContent.from_text("before"))
        )
        out = io.StringIO()
        renderer = StreamRenderer(store, stream=out, prefix="")
        renderer.start(spinner=False)

        store.add_message(Message(id="u1", session_id="s1", role=MessageRole.USER, content=MessageContent.from_text("hi")))
        store.update_message("old", feedback_rating="like")
        renderer.stop()

        self.assertEqual("", out.getvalue())

    def test_stops_listening_after_stop(self) -> None:
        store = _make_store()
        out = io.StringIO()
        renderer = StreamRenderer(store, stream=out, prefix="")
        renderer.start(spinner=False)
        renderer.stop()
        store.add_message(
            Message(id="a1", session_id="s1", role=MessageRole.ASSISTANT, content=MessageContent.from_text("late"))
        )

        self.assertNotIn("late", out.getvalue())

    def test_format_tool_call(self) -> None:
        self.assertEqual("[tool: ls({})]", format_tool_call("ls", "{}"))


class SpinnerTests(unittest.TestCase):
    def test_start_and_stop_clear_the_line(self) -> None:
        out = io.StringIO()
        spinner = Spinner(prefix="> ", stream=out)

        spinner.start()
        spinner.stop()
        written = out.getvalue()
        spinner.stop()

        self.assertTrue(written.endswith("\r> "))
        self.assertEqual(written, out.getvalue())

    def test_stop_without_start_is_a_noop(self) -> None:
        out = io.StringIO()

        Spinner(stream=out).stop()

        self.assertEqual("", out.getvalue())


if __name__ == "__main__":
    unittest.main()
