from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from iano_chat.assembly import MessageAssemblyBuffer
from iano_chat.collection import MessageCollection
from iano_chat.models import (
    Message,
    MessageContent,
    MessageRole,
    MessageStatus,
    ToolCall,
    new_client_id,
    parse_status,
)
from iano_chat.sse_decoder import LEGACY_DEFAULT_EVENT, RICH_DEFAULT_EVENT, SseRecord

RICH_EVENTS = frozenset({"message_created", "content_block", "message_completed"})
LEGACY_EVENTS = frozenset({"message", "tool_call", "done"})


class ProtocolVariant(str, Enum):
    RICH = "rich"
    LEGACY = "legacy"
    AUTO = "auto"

    @property
    def default_event(self) -> str:
        if self is ProtocolVariant.RICH:
            return RICH_DEFAULT_EVENT
        return LEGACY_DEFAULT_EVENT

    @classmethod
    def parse(cls, value: str | None) -> ProtocolVariant:
        try:
            return cls(str(value or "auto").strip().lower())
        except ValueError:
            raise ValueError(f"Unknown protocol: {value!r}. Supported: 'auto', 'rich', 'legacy'") from None


class StreamAction(Enum):
    CONTINUE = "continue"
    STOP = "stop"


@dataclass
class StreamState:
    """Everything one user send accumulates; survives reconnection attempts."""

    session_id: str
    user_text: str
    variant: ProtocolVariant
    buffer: MessageAssemblyBuffer = field(default_factory=MessageAssemblyBuffer)
    target_id: str | None = None
    error_message: str | None = None
    cancelled: bool = False
    legacy_started: bool = False


class EventInterpreter:
    def __init__(self, collection: MessageCollection, state: StreamState) -> None:
        self._collection = collection
        self._state = state

    @property
    def state(self) -> StreamState:
        return self._state

    def begin_legacy_exchange(self) -> None:
        """Create the optimistic user message and assistant placeholder.

        The legacy protocol never announces messages, so the client owns
        both ids. Runs at most once per send.
        """
        state = self._state
        if state.legacy_started:
            return
        state.legacy_started = True
        self._collection.insert_if_absent(
            Message(
                id=new_client_id("user"),
                session_id=state.session_id,
                role=MessageRole.USER,
                status=MessageStatus.COMPLETED,
                content=MessageContent.from_text(state.user_text),
            )
        )
        assistant_id = new_client_id("assistant")
        self._collection.insert_if_absent(
            Message(
                id=assistant_id,
                session_id=state.session_id,
                role=MessageRole.ASSISTANT,
                status=MessageStatus.STREAMING,
            )
        )
        state.target_id = assistant_id
        state.buffer = MessageAssemblyBuffer()

    def apply(self, record: SseRecord) -> StreamAction:
        if self._state.cancelled:
            return StreamAction.STOP

        payload = record.data
        if not isinstance(payload, dict):
            logger.trace(f"Ignoring non-object payload for {record.event_type!r}")
            return StreamAction.CONTINUE

        event_type = record.event_type
        if event_type == "error":
            return self._on_error(payload)

        variant = self._resolve_variant(event_type)
        if variant is ProtocolVariant.RICH:
            self._apply_rich(event_type, payload)
        elif variant is ProtocolVariant.LEGACY:
            return self._apply_legacy(event_type, payload)
        else:
            logger.trace(f"Ignoring {event_type!r} before protocol detection")
        return StreamAction.CONTINUE

    def finalize(self, status: MessageStatus) -> None:
        """Move the active target to ``status`` unless it is already terminal."""
        target_id = self._state.target_id
        if target_id is None:
            return
        message = self._collection.get(target_id)
        if message is not None and not message.is_terminal:
            self._collection.set_status(target_id, status)

    # -- protocol detection --

    def _resolve_variant(self, event_type: str) -> ProtocolVariant:
        state = self._state
        if state.variant is ProtocolVariant.AUTO:
            if event_type in RICH_EVENTS:
                state.variant = ProtocolVariant.RICH
                logger.debug("Detected rich stream protocol")
            elif event_type in LEGACY_EVENTS:
                state.variant = ProtocolVariant.LEGACY
                logger.debug("Detected legacy stream protocol")
                self.begin_legacy_exchange()
        return state.variant

    # -- rich protocol --

    def _apply_rich(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == "message_created":
            self._on_message_created(payload)
        elif event_type == "content_block":
            self._on_content_block(payload)
        elif event_type == "message_completed":
            self._on_message_completed(payload)
        else:
            logger.trace(f"Ignoring unknown event {event_type!r}")

    def _on_message_created(self, payload: dict[str, Any]) -> None:
        if not payload.get("id"):
            logger.debug("message_created without id; ignoring")
            return
        message = Message.from_dict(payload, default_session_id=self._state.session_id)
        # A seed that is not valid JSON starts the message empty.
        message = dataclasses.replace(
            message, content=MessageContent.parse(payload.get("content"), plain_text_fallback=False)
        )
        inserted = self._collection.insert_if_absent(message)
        if not inserted:
            logger.debug(f"message_created for known message {message.id}")

        if message.role is not MessageRole.ASSISTANT:
            return

        state = self._state
        if state.target_id == message.id:
            # Replayed after a reconnect: keep what has already been assembled.
            if state.buffer.is_empty:
                state.buffer.replace(message.content)
            return

        if state.target_id is not None:
            self.finalize(MessageStatus.COMPLETED)
        state.target_id = message.id
        state.buffer = MessageAssemblyBuffer(message.content)

    def _on_content_block(self, payload: dict[str, Any]) -> None:
        if not self._target_is_open():
            return
        block_type = payload.get("type")
        if block_type == "text":
            text = payload.get("text")
            if not text:
                return
            self._state.buffer.append_text(str(text))
        elif block_type == "tool_call":
            raw = payload.get("tool_call")
            if not isinstance(raw, dict):
                return
            self._state.buffer.append_tool_call(ToolCall.from_dict(raw))
        else:
            logger.trace(f"Ignoring content_block of type {block_type!r}")
            return
        self._publish()

    def _on_message_completed(self, payload: dict[str, Any]) -> None:
        if not self._target_is_open():
            return
        target_id = self._state.target_id
        updates: dict[str, Any] = {"status": parse_status(payload.get("status"), MessageStatus.COMPLETED)}
        if payload.get("content"):
            content = MessageContent.parse(payload["content"])
            self._state.buffer.replace(content)
            updates["content"] = content
        self._collection.update(target_id, **updates)

    # -- legacy protocol --

    def _apply_legacy(self, event_type: str, payload: dict[str, Any]) -> StreamAction:
        if event_type == "done":
            self.finalize(MessageStatus.COMPLETED)
            return StreamAction.CONTINUE
        if self._target_is_open():
            changed = False
            if event_type == "message" and payload.get("content"):
                self._state.buffer.append_text(str(payload["content"]))
                changed = True
            # Older servers send tool calls as bare data lines.
            if event_type in ("message", "tool_call") and payload.get("id") and payload.get("name"):
                self._state.buffer.append_tool_call(ToolCall.from_dict(payload))
                changed = True
            if changed:
                self._publish()

        if payload.get("error"):
            return self._on_error(payload)
        return StreamAction.CONTINUE

    # -- shared --

    def _on_error(self, payload: dict[str, Any]) -> StreamAction:
        message = str(payload.get("error") or "Stream error")
        logger.error(f"Stream error event: {message}")
        self._state.error_message = message
        self.finalize(MessageStatus.FAILED)
        return StreamAction.STOP

    def _target_is_open(self) -> bool:
        target_id = self._state.target_id
        if target_id is None:
            return False
        message = self._collection.get(target_id)
        return message is not None and not message.is_terminal

    def _publish(self) -> None:
        self._collection.set_content(self._state.target_id, self._state.buffer.snapshot())
