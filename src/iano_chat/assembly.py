from __future__ import annotations

from iano_chat.models import ContentBlock, MessageContent, TextBlock, ToolCall, ToolCallBlock


class MessageAssemblyBuffer:
    """Accumulates the ordered content blocks of one streaming message."""

    def __init__(self, content: MessageContent | None = None):
        self._blocks: list[ContentBlock] = list(content.blocks) if content else []

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        return tuple(self._blocks)

    @property
    def is_empty(self) -> bool:
        return not self._blocks

    def append_text(self, text: str) -> None:
        if not text:
            return
        if self._blocks and isinstance(self._blocks[-1], TextBlock):
            self._blocks[-1] = TextBlock(text=self._blocks[-1].text + text)
        else:
            self._blocks.append(TextBlock(text=text))

    def append_tool_call(self, tool_call: ToolCall) -> None:
        self._blocks.append(ToolCallBlock(tool_call=tool_call))

    def replace(self, content: MessageContent) -> None:
        self._blocks = list(content.blocks)

    def snapshot(self) -> MessageContent:
        return MessageContent.from_blocks(self._blocks)
