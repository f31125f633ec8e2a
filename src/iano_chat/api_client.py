from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from loguru import logger

from iano_chat.errors import ApiError, HttpStatusError, classify_transport_error

_DEFAULT_TIMEOUT_SECONDS = 60.0
_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


class ChatApiClient:
    """Thin async wrapper over the agent backend's HTTP surface.

    Every httpx failure leaving this class is translated into the client's
    own error types, so callers never inspect httpx exceptions directly.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=_HEADERS,
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ChatApiClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @asynccontextmanager
    async def stream_chat(self, payload: dict[str, Any]) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open ``POST /chat/stream`` and yield the raw body chunks.

        Errors raised while the body is consumed inside the ``async with``
        block are classified on the way out as well.
        """
        logger.debug(
            f"Stream request: session_id={payload.get('session_id')}, "
            f"agent_id={payload.get('agent_id')}, chars={len(payload.get('message', ''))}"
        )
        try:
            async with self._client.stream(
                "POST",
                "/chat/stream",
                json=payload,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise HttpStatusError(response.status_code, body)
                yield response.aiter_bytes()
        except httpx.HTTPError as ex:
            raise classify_transport_error(ex) from ex

    async def chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request_json("POST", "/chat", json=payload, default_error="Chat failed")
        result = data.get("data")
        if not result:
            raise ApiError(data.get("message") or "Chat failed", data.get("code"))
        return result

    async def get_session_messages(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request_json(
            "GET",
            "/messages/session",
            params={"session_id": session_id},
            default_error="Failed to load messages",
        )
        return list(data.get("data") or [])

    async def post_feedback(self, message_id: str, rating: str, comment: str = "") -> dict[str, Any]:
        data = await self._request_json(
            "POST",
            f"/messages/{message_id}/feedback",
            json={"rating": rating, "comment": comment},
            default_error="Feedback failed",
        )
        result = data.get("data")
        if not result:
            raise ApiError(data.get("message") or "Feedback failed", data.get("code"))
        return result

    async def create_session(self, title: str) -> dict[str, Any]:
        data = await self._request_json(
            "POST",
            "/sessions",
            json={"title": title},
            default_error="Failed to create session",
        )
        result = data.get("data")
        if not isinstance(result, dict) or "id" not in result:
            raise ApiError(data.get("message") or "Failed to create session", data.get("code"))
        return result

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        default_error: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as ex:
            raise classify_transport_error(ex) from ex

        try:
            data = response.json()
        except ValueError:
            raise HttpStatusError(response.status_code, response.text) from None

        if not isinstance(data, dict):
            raise ApiError(default_error)
        if data.get("code") != 200:
            raise ApiError(data.get("message") or default_error, data.get("code"))
        return data
