from __future__ import annotations

import sys
import threading
from typing import TextIO

from iano_chat.collection import StoreChange
from iano_chat.message_store import MessageStore
from iano_chat.models import MessageRole, TextBlock, ToolCallBlock

_SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


class Spinner:
    """Thread-based spinner that renders on the current line using \\r."""

    def __init__(self, prefix: str = "", label: str = " Thinking...", stream: TextIO | None = None):
        self._prefix = prefix
        self._label = label
        self._stream = stream or sys.stdout
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._frame_width = 1 + len(label)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._stop.is_set() or self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        clear = self._prefix + " " * self._frame_width
        self._stream.write("\r" + clear + "\r" + self._prefix)
        self._stream.flush()

    def _run(self) -> None:
        i = 0
        try:
            while not self._stop.is_set():
                frame = _SPINNER_FRAMES[i % len(_SPINNER_FRAMES)] + self._label
                self._stream.write("\r" + self._prefix + frame)
                self._stream.flush()
                self._stop.wait(0.08)
                i += 1
        except (UnicodeEncodeError, OSError):
            pass  # terminal can't draw the frames


def format_tool_call(name: str, arguments: str) -> str:
    return f"[tool: {name}({arguments})]"


class StreamRenderer:
    """Prints assistant output incrementally as the store changes.

    Tracks how far into each message's block list it has already written,
    so every store notification only emits the new tail.
    """

    def __init__(self, store: MessageStore, *, stream: TextIO | None = None, prefix: str = "assistant> "):
        self._store = store
        self._stream = stream or sys.stdout
        self._prefix = prefix
        self._progress: dict[str, tuple[int, int]] = {}
        self._spinner: Spinner | None = None
        self._unsubscribe = None
        self._wrote_any = False

    def __enter__(self) -> StreamRenderer:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self, *, spinner: bool = True) -> None:
        # Messages already present belong to earlier turns.
        self._progress = {
            message.id: _end_of(message.content.blocks) for message in self._store.messages
        }
        self._wrote_any = False
        if spinner:
            self._spinner = Spinner(prefix=self._prefix, stream=self._stream)
            self._spinner.start()
        self._unsubscribe = self._store.subscribe(self._on_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None

    def _begin_output(self) -> None:
        if self._wrote_any:
            return
        self._wrote_any = True
        if self._spinner is not None:
            # Stopping the spinner leaves the cursor just after the prefix.
            self._spinner.stop()
            self._spinner = None
        else:
            self._stream.write(self._prefix)

    def _on_change(self, change: StoreChange) -> None:
        if change.kind not in ("added", "updated") or change.message_id is None:
            return
        message = self._store.get_message(change.message_id)
        if message is None or message.role is not MessageRole.ASSISTANT:
            return

        block_index, char_index = self._progress.get(message.id, (0, 0))
        blocks = message.content.blocks
        pieces: list[str] = []
        while block_index < len(blocks):
            block = blocks[block_index]
            if isinstance(block, TextBlock):
                pieces.append(block.text[char_index:])
                if block_index == len(blocks) - 1:
                    char_index = len(block.text)
                    break
            elif isinstance(block, ToolCallBlock):
                call = block.tool_call
                pieces.append(f"\n{format_tool_call(call.name, call.arguments)}\n")
            block_index += 1
            char_index = 0
        self._progress[message.id] = (block_index, char_index)

        output = "".join(pieces)
        if not output:
            return
        self._begin_output()
        self._stream.write(output)
        self._stream.flush()


def _end_of(blocks) -> tuple[int, int]:
    if not blocks:
        return (0, 0)
    last = blocks[-1]
    if isinstance(last, TextBlock):
        return (len(blocks) - 1, len(last.text))
    return (len(blocks), 0)
