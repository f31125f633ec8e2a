from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_new: Callable[[], Awaitable[None]],
        on_history: Callable[[], Awaitable[None]],
        on_clear: Callable[[], Awaitable[None]],
        on_feedback: Callable[[str], Awaitable[None]],
        on_sync: Callable[[str], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_new = on_new
        self._on_history = on_history
        self._on_clear = on_clear
        self._on_feedback = on_feedback
        self._on_sync = on_sync
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True
        if trimmed == "/new":
            await self._on_new()
            return True
        if trimmed == "/history":
            await self._on_history()
            return True
        if trimmed == "/clear":
            await self._on_clear()
            return True
        if trimmed.startswith("/feedback"):
            await self._on_feedback(trimmed)
            return True
        if trimmed.startswith("/sync"):
            await self._on_sync(trimmed)
            return True

        self._on_unknown(trimmed)
        return True
