from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from loguru import logger


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.STREAMING


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def new_client_id(suffix: str) -> str:
    return f"{time.time_ns() // 1_000_000}_{uuid4().hex[:8]}_{suffix}"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict) -> ToolCall:
        # Stored content may use the OpenAI shape: {id, type, function: {name, arguments}}
        function = data.get("function")
        if isinstance(function, dict):
            name = function.get("name", "")
            arguments = function.get("arguments", "")
        else:
            name = data.get("name", "")
            arguments = data.get("arguments", "")
        if arguments is None:
            arguments = ""
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(id=str(data.get("id") or ""), name=str(name or ""), arguments=arguments)


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_dict(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolCallBlock:
    tool_call: ToolCall

    def to_dict(self) -> dict:
        return {"type": "tool_call", "tool_call": self.tool_call.to_dict()}


ContentBlock = Union[TextBlock, ToolCallBlock]


def block_from_dict(data: Any) -> ContentBlock | None:
    if not isinstance(data, dict):
        return None
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=str(data.get("text", "")))
    if block_type == "tool_call" and isinstance(data.get("tool_call"), dict):
        return ToolCallBlock(tool_call=ToolCall.from_dict(data["tool_call"]))
    return None


@dataclass(frozen=True)
class MessageContent:
    """Immutable snapshot of a message body.

    ``text`` and ``tool_calls`` are derived from ``blocks``; build instances
    with :meth:`from_blocks` so the derived fields cannot drift.
    """

    blocks: tuple[ContentBlock, ...] = ()
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()

    @classmethod
    def from_blocks(cls, blocks: list[ContentBlock] | tuple[ContentBlock, ...]) -> MessageContent:
        blocks = tuple(blocks)
        text = "".join(b.text for b in blocks if isinstance(b, TextBlock))
        tool_calls = tuple(b.tool_call for b in blocks if isinstance(b, ToolCallBlock))
        return cls(blocks=blocks, text=text, tool_calls=tool_calls)

    @classmethod
    def from_text(cls, text: str) -> MessageContent:
        if not text:
            return cls()
        return cls.from_blocks([TextBlock(text=text)])

    def to_dict(self) -> dict:
        return {
            "blocks": [b.to_dict() for b in self.blocks],
            "text": self.text,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict) -> MessageContent:
        raw_blocks = data.get("blocks")
        if isinstance(raw_blocks, list) and raw_blocks:
            blocks = [b for b in (block_from_dict(item) for item in raw_blocks) if b is not None]
            return cls.from_blocks(blocks)

        # Older payloads only carry the flattened fields.
        blocks = []
        text = data.get("text") or ""
        if text:
            blocks.append(TextBlock(text=str(text)))
        for raw in data.get("tool_calls") or []:
            if isinstance(raw, dict):
                blocks.append(ToolCallBlock(tool_call=ToolCall.from_dict(raw)))
        return cls.from_blocks(blocks)

    @classmethod
    def parse(cls, raw: Any, *, plain_text_fallback: bool = True) -> MessageContent:
        """Parse wire content, which may be a JSON string, a dict or plain text.

        Unparseable strings are treated as plain text unless
        ``plain_text_fallback`` is off, in which case they yield empty content.
        """
        if raw is None or raw == "":
            return cls()
        if isinstance(raw, MessageContent):
            return raw
        if isinstance(raw, dict):
            return cls.from_dict(raw)
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return cls.from_text(raw) if plain_text_fallback else cls()
            if isinstance(parsed, dict):
                return cls.from_dict(parsed)
            if isinstance(parsed, str):
                return cls.from_text(parsed)
            return cls.from_text(raw)
        logger.debug(f"Unsupported message content type: {type(raw).__name__}")
        return cls()


@dataclass
class Message:
    id: str
    session_id: str
    role: MessageRole
    status: MessageStatus = MessageStatus.COMPLETED
    created_at: str = field(default_factory=utc_now)
    content: MessageContent = field(default_factory=MessageContent)
    feedback_rating: str | None = None
    feedback_comment: str | None = None
    feedback_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "session_id": self.session_id,
            "type": self.role.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "content": self.content.to_json(),
        }
        if self.feedback_rating is not None:
            data["feedback_rating"] = self.feedback_rating
            data["feedback_comment"] = self.feedback_comment
            data["feedback_at"] = self.feedback_at
        return data

    @classmethod
    def from_dict(
        cls,
        data: dict,
        *,
        default_session_id: str = "",
        default_status: MessageStatus | None = None,
    ) -> Message:
        role = _parse_role(data.get("type") or data.get("role"))
        if default_status is None:
            default_status = MessageStatus.STREAMING if role is MessageRole.ASSISTANT else MessageStatus.COMPLETED
        session_id = data.get("session_id")
        return cls(
            id=str(data.get("id") or ""),
            session_id=str(session_id) if session_id not in (None, "") else str(default_session_id),
            role=role,
            status=parse_status(data.get("status"), default_status),
            created_at=str(data.get("created_at") or utc_now()),
            content=MessageContent.parse(data.get("content")),
            feedback_rating=data.get("feedback_rating"),
            feedback_comment=data.get("feedback_comment"),
            feedback_at=data.get("feedback_at"),
        )


def _parse_role(value: Any) -> MessageRole:
    try:
        return MessageRole(str(value).strip().lower())
    except ValueError:
        return MessageRole.ASSISTANT


def parse_status(value: Any, default: MessageStatus) -> MessageStatus:
    if value is None or value == "":
        return default
    if isinstance(value, MessageStatus):
        return value
    try:
        return MessageStatus(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unknown message status {value!r}; using {default.value}")
        return default
