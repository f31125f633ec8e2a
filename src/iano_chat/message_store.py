from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from iano_chat.api_client import ChatApiClient
from iano_chat.collection import Listener, MessageCollection, StoreChange
from iano_chat.errors import ChatBusyError, ChatClientError, ProtocolError, StreamAbortedError
from iano_chat.event_interpreter import EventInterpreter, ProtocolVariant, StreamAction, StreamState
from iano_chat.models import (
    ConnectionStatus,
    Message,
    MessageContent,
    MessageRole,
    MessageStatus,
    new_client_id,
)
from iano_chat.reconnect import ReconnectState, build_retrying
from iano_chat.sessions import SessionProvider
from iano_chat.sse_decoder import SseFrameDecoder, SseRecord


class MessageStore:
    """Observable message state plus the send/cancel/fetch operations.

    All state lives on the event loop thread. At most one streaming send is
    in flight; a second one is rejected with :class:`ChatBusyError`.
    """

    def __init__(
        self,
        api: ChatApiClient,
        sessions: SessionProvider,
        *,
        protocol: ProtocolVariant = ProtocolVariant.AUTO,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        jitter: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._api = api
        self._sessions = sessions
        self._protocol = protocol
        self._sleep = sleep
        self._collection = MessageCollection()
        self._reconnect_defaults = ReconnectState(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )
        self._reconnect = dataclasses.replace(self._reconnect_defaults)
        self._is_loading = False
        self._error: str | None = None
        self._error_is_transient = False
        self._connection_status = ConnectionStatus.DISCONNECTED
        self._stream_task: asyncio.Task | None = None
        self._stream_state: StreamState | None = None
        self._interpreter: EventInterpreter | None = None

    # -- observable state --

    @property
    def messages(self) -> list[Message]:
        return self._collection.values()

    @property
    def current_messages(self) -> list[Message]:
        return self._collection.for_session(self._sessions.current_session_id)

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._connection_status

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._reconnect

    @property
    def protocol(self) -> ProtocolVariant:
        return self._protocol

    def get_message(self, message_id: str) -> Message | None:
        return self._collection.get(message_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._collection.subscribe(listener)

    # -- plain mutations --

    def add_message(self, message: Message | dict) -> Message:
        if isinstance(message, dict):
            data = dict(message)
            if not data.get("id"):
                data["id"] = new_client_id("message")
            message = Message.from_dict(
                data,
                default_session_id=self._sessions.current_session_id or "",
                default_status=MessageStatus.COMPLETED,
            )
        self._collection.upsert(message)
        return self._collection.get(message.id)

    def update_message(self, message_id: str, **updates: Any) -> bool:
        return self._collection.update(message_id, **updates)

    def clear_current_session(self) -> None:
        session_id = self._sessions.current_session_id
        if session_id is None:
            return
        removed = self._collection.remove_session(session_id)
        logger.debug(f"Cleared {removed} message(s) from session {session_id}")

    def set_error(self, message: str | None) -> None:
        self._error = message
        self._error_is_transient = False
        self._collection.notify(StoreChange("error"))

    def clear_error(self) -> None:
        self.set_error(None)

    def reset_reconnect_count(self) -> None:
        self._reconnect.reset()
        self._set_connection_status(ConnectionStatus.CONNECTED)

    # -- remote operations --

    async def fetch_messages_by_session(self, session_id: str) -> None:
        try:
            raw_messages = await self._api.get_session_messages(str(session_id))
        except ChatClientError as ex:
            logger.error(f"Failed to fetch messages for session {session_id}: {ex}")
            self.set_error(str(ex))
            return

        messages = [
            Message.from_dict(
                item,
                default_session_id=str(session_id),
                default_status=MessageStatus.COMPLETED,
            )
            for item in raw_messages
            if isinstance(item, dict) and item.get("id")
        ]
        self._collection.replace_session(str(session_id), messages)
        logger.debug(f"Loaded {len(messages)} message(s) for session {session_id}")

    async def send_feedback(self, message_id: str, rating: str, comment: str = "") -> bool:
        try:
            data = await self._api.post_feedback(message_id, rating, comment)
        except ChatClientError as ex:
            logger.error(f"Failed to send feedback: {ex}")
            return False
        self._collection.update(
            message_id,
            feedback_rating=data.get("feedback_rating"),
            feedback_comment=data.get("feedback_comment"),
            feedback_at=data.get("feedback_at"),
        )
        return True

    async def send_message_non_streaming(self, content: str) -> None:
        if self._is_loading:
            raise ChatBusyError("A message is already being sent")

        state = self._claim(content)
        try:
            session_id = await self._ensure_session()
            if state.cancelled:
                return
            self._collection.insert_if_absent(
                Message(
                    id=new_client_id("user"),
                    session_id=session_id,
                    role=MessageRole.USER,
                    content=MessageContent.from_text(content),
                )
            )
            data = await self._api.chat(
                {
                    "session_id": session_id,
                    "agent_id": self._sessions.current_agent_id,
                    "message": content,
                }
            )
            if state.cancelled:
                return
            self._collection.insert_if_absent(
                Message(
                    id=new_client_id("assistant"),
                    session_id=session_id,
                    role=MessageRole.ASSISTANT,
                    content=MessageContent.from_text(str(data.get("content") or "")),
                )
            )
        except ChatClientError as ex:
            if not state.cancelled:
                logger.error(f"Chat request failed: {ex}")
                self.set_error(str(ex))
        finally:
            if self._stream_state is state:
                self._set_loading(False)

    async def send_message(self, content: str, directory: str | None = None) -> None:
        if self._is_loading:
            raise ChatBusyError("A message is already streaming")

        state = self._claim(content)
        try:
            session_id = await self._ensure_session()
        except ChatClientError as ex:
            if not state.cancelled:
                logger.error(f"Failed to create session: {ex}")
                self.set_error(str(ex))
                self._set_loading(False)
            return
        if state.cancelled:
            logger.info("Send cancelled before the stream opened")
            return

        state.session_id = session_id
        reconnect = dataclasses.replace(self._reconnect_defaults, retry_count=0)
        interpreter = EventInterpreter(self._collection, state)
        self._reconnect = reconnect
        self._interpreter = interpreter

        if state.variant is ProtocolVariant.LEGACY:
            interpreter.begin_legacy_exchange()

        payload: dict[str, Any] = {
            "session_id": session_id,
            "agent_id": self._sessions.current_agent_id,
            "message": content,
        }
        if directory:
            payload["work_dir"] = directory

        with logger.contextualize(session=session_id):
            task = asyncio.create_task(self._stream_chat(payload, interpreter, reconnect))
        self._stream_task = task
        try:
            await task
        except asyncio.CancelledError:
            if not state.cancelled:
                raise
            # Cancelled before the task got to run its own handler.
            self._finish_cancelled(interpreter)
        finally:
            if self._stream_task is task:
                self._stream_task = None

    def cancel_streaming(self) -> None:
        state = self._stream_state
        if state is not None:
            state.cancelled = True
        if self._interpreter is not None:
            self._interpreter.finalize(MessageStatus.FAILED)
        self._reconnect.suppress()

        task = self._stream_task
        if task is not None and not task.done():
            logger.info("Cancelling in-flight stream")
            task.cancel()

        if self._error_is_transient:
            self.clear_error()
        self._set_connection_status(ConnectionStatus.DISCONNECTED)
        self._set_loading(False)

    def disconnect(self) -> None:
        self.cancel_streaming()

    # -- streaming internals --

    async def _stream_chat(
        self,
        payload: dict[str, Any],
        interpreter: EventInterpreter,
        reconnect: ReconnectState,
    ) -> None:
        state = interpreter.state
        self._set_connection_status(ConnectionStatus.CONNECTING)
        retrying = build_retrying(
            reconnect,
            on_reconnect=lambda reconnect_state, exc, wait: self._on_reconnect(state, reconnect_state),
            sleep=self._sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    await self._run_attempt(payload, interpreter)
        except asyncio.CancelledError:
            self._finish_cancelled(interpreter)
            if not state.cancelled:
                raise
            return
        except StreamAbortedError:
            self._finish_cancelled(interpreter)
            return
        except ChatClientError as ex:
            logger.error(f"Stream failed: {ex}")
            self._finish_failed(interpreter, str(ex))
            return
        except Exception as ex:
            logger.exception("Unexpected error while streaming")
            self._finish_failed(interpreter, str(ex) or type(ex).__name__)
            raise

        if state.cancelled:
            self._finish_cancelled(interpreter)
        else:
            interpreter.finalize(MessageStatus.COMPLETED)
            if self._stream_state is state:
                self._set_connection_status(ConnectionStatus.CONNECTED)
                self._set_loading(False)
            logger.debug(f"Stream finished for session {state.session_id}")

    async def _run_attempt(self, payload: dict[str, Any], interpreter: EventInterpreter) -> None:
        state = interpreter.state
        decoder = SseFrameDecoder(state.variant.default_event)
        async with self._api.stream_chat(payload) as chunks:
            if self._stream_state is state:
                self._set_connection_status(ConnectionStatus.CONNECTED)
                if self._error_is_transient:
                    self.clear_error()
            async for chunk in chunks:
                for record in decoder.feed(chunk):
                    if self._apply(interpreter, record):
                        return
            for record in decoder.flush():
                if self._apply(interpreter, record):
                    return

    def _apply(self, interpreter: EventInterpreter, record: SseRecord) -> bool:
        """Apply one record. Returns True when reading should stop cleanly."""
        if interpreter.apply(record) is StreamAction.CONTINUE:
            return False
        state = interpreter.state
        if state.cancelled:
            raise StreamAbortedError("Stream cancelled")
        if state.error_message is not None:
            raise ProtocolError(state.error_message)
        return True

    def _on_reconnect(self, state: StreamState, reconnect: ReconnectState) -> None:
        if self._stream_state is not state:
            return
        self._set_connection_status(ConnectionStatus.RECONNECTING)
        self.set_error(reconnect.progress_message())
        self._error_is_transient = True

    def _finish_cancelled(self, interpreter: EventInterpreter) -> None:
        interpreter.finalize(MessageStatus.FAILED)
        if self._stream_state is interpreter.state:
            self._set_connection_status(ConnectionStatus.DISCONNECTED)
            self._set_loading(False)

    def _finish_failed(self, interpreter: EventInterpreter, message: str) -> None:
        interpreter.finalize(MessageStatus.FAILED)
        if self._stream_state is interpreter.state:
            self.set_error(message)
            self._set_connection_status(ConnectionStatus.DISCONNECTED)
            self._set_loading(False)

    def _claim(self, content: str) -> StreamState:
        # Must run before the first await: cancel_streaming flags this state from here on.
        state = StreamState(session_id="", user_text=content, variant=self._protocol)
        self._stream_state = state
        self._interpreter = None
        self._set_loading(True)
        self.clear_error()
        return state

    async def _ensure_session(self) -> str:
        session_id = self._sessions.current_session_id
        if session_id:
            return str(session_id)
        return str(await self._sessions.create_session())

    def _set_loading(self, loading: bool) -> None:
        if self._is_loading != loading:
            self._is_loading = loading
            self._collection.notify(StoreChange("loading"))

    def _set_connection_status(self, status: ConnectionStatus) -> None:
        if self._connection_status is not status:
            logger.debug(f"Connection status: {self._connection_status.value} -> {status.value}")
            self._connection_status = status
            self._collection.notify(StoreChange("connection"))
