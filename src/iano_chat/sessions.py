from __future__ import annotations

from typing import Protocol, runtime_checkable

from loguru import logger

from iano_chat.api_client import ChatApiClient

DEFAULT_SESSION_TITLE = "New session"


@runtime_checkable
class SessionProvider(Protocol):
    """What the message store needs from the session/agent collaborators."""

    @property
    def current_session_id(self) -> str | None: ...

    @property
    def current_agent_id(self) -> str: ...

    async def create_session(self, title: str | None = None) -> str: ...


class RemoteSessionContext:
    """Tracks the active session and agent, creating sessions on the backend."""

    def __init__(
        self,
        api: ChatApiClient,
        *,
        agent_id: str = "default",
        session_id: str | None = None,
    ) -> None:
        self._api = api
        self._agent_id = agent_id
        self._session_id = session_id
        self._sessions: list[dict] = []

    @property
    def current_session_id(self) -> str | None:
        return self._session_id

    @property
    def current_agent_id(self) -> str:
        return self._agent_id

    @property
    def sessions(self) -> list[dict]:
        return list(self._sessions)

    def set_current_session(self, session_id: str | None) -> None:
        self._session_id = session_id

    def set_current_agent(self, agent_id: str) -> None:
        self._agent_id = agent_id

    async def create_session(self, title: str | None = None) -> str:
        session = await self._api.create_session(title or DEFAULT_SESSION_TITLE)
        self._sessions.insert(0, session)
        self._session_id = str(session["id"])
        logger.info(f"Created session {self._session_id} ({session.get('title', '')!r})")
        return self._session_id
