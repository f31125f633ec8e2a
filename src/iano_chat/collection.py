from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from iano_chat.models import Message, MessageContent, MessageStatus

_IMMUTABLE_FIELDS = {"id", "session_id"}
_LOCKED_WHEN_TERMINAL = {"status", "content"}
_MESSAGE_FIELDS = {f.name for f in dataclasses.fields(Message)}


@dataclass(frozen=True)
class StoreChange:
    kind: str
    message_id: str | None = None


Listener = Callable[[StoreChange], None]


class MessageCollection:
    """Insertion-ordered messages keyed by id, shared by all sessions.

    Status is monotonic: once a message is completed or failed, its status
    and content are frozen. Every accepted mutation is announced to the
    subscribed listeners.
    """

    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._listeners: list[Listener] = []

    def __contains__(self, message_id: object) -> bool:
        return str(message_id) in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(str(message_id))

    def values(self) -> list[Message]:
        return list(self._messages.values())

    def for_session(self, session_id: str | None) -> list[Message]:
        if session_id is None:
            return []
        key = str(session_id)
        return [m for m in self._messages.values() if m.session_id == key]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as ex:
                logger.error(f"Store listener failed on {change.kind}: {ex}")

    def insert_if_absent(self, message: Message) -> bool:
        if message.id in self._messages:
            return False
        self._messages[message.id] = message
        self.notify(StoreChange("added", message.id))
        return True

    def upsert(self, message: Message) -> None:
        existing = self._messages.get(message.id)
        if existing is None:
            self.insert_if_absent(message)
            return
        updates = {
            name: getattr(message, name)
            for name in _MESSAGE_FIELDS - _IMMUTABLE_FIELDS
        }
        self.update(message.id, **updates)

    def update(self, message_id: str, **updates: Any) -> bool:
        message = self._messages.get(str(message_id))
        if message is None:
            return False

        for name in sorted(set(updates) - _MESSAGE_FIELDS):
            logger.warning(f"Ignoring unknown field {name} on message {message.id}")
            updates.pop(name)

        for name in _IMMUTABLE_FIELDS & set(updates):
            if updates[name] != getattr(message, name):
                logger.warning(f"Ignoring change of {name} on message {message.id}")
            updates.pop(name)

        if message.is_terminal:
            for name in _LOCKED_WHEN_TERMINAL & set(updates):
                if updates[name] != getattr(message, name):
                    logger.debug(f"Message {message.id} is {message.status.value}; ignoring {name} update")
                updates.pop(name)

        if "status" in updates and not isinstance(updates["status"], MessageStatus):
            updates["status"] = MessageStatus(updates["status"])
        if "content" in updates and not isinstance(updates["content"], MessageContent):
            updates["content"] = MessageContent.parse(updates["content"])

        changed = {k: v for k, v in updates.items() if getattr(message, k) != v}
        if not changed:
            return False

        # Swap in a new object so readers holding the old one see a consistent snapshot.
        self._messages[message.id] = dataclasses.replace(message, **changed)
        self.notify(StoreChange("updated", message.id))
        return True

    def set_content(self, message_id: str, content: MessageContent) -> bool:
        return self.update(message_id, content=content)

    def set_status(self, message_id: str, status: MessageStatus) -> bool:
        return self.update(message_id, status=status)

    def remove(self, message_id: str) -> bool:
        if self._messages.pop(str(message_id), None) is None:
            return False
        self.notify(StoreChange("removed", str(message_id)))
        return True

    def remove_session(self, session_id: str) -> int:
        doomed = [m.id for m in self.for_session(session_id)]
        for message_id in doomed:
            del self._messages[message_id]
        if doomed:
            self.notify(StoreChange("session_cleared"))
        return len(doomed)

    def replace_session(self, session_id: str, messages: Iterable[Message]) -> None:
        key = str(session_id)
        kept = {mid: m for mid, m in self._messages.items() if m.session_id != key}
        for message in messages:
            if message.id in kept:
                logger.warning(f"Message {message.id} belongs to another session; skipping")
                continue
            kept[message.id] = message
        self._messages = kept
        self.notify(StoreChange("session_loaded"))
