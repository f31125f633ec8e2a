from __future__ import annotations

from dataclasses import dataclass

from iano_chat.api_client import ChatApiClient
from iano_chat.app_config import AppConfig
from iano_chat.logging_config import setup_logging, sinks_from_config
from iano_chat.message_store import MessageStore
from iano_chat.sessions import RemoteSessionContext


@dataclass
class AppRuntime:
    api: ChatApiClient
    sessions: RemoteSessionContext
    store: MessageStore
    log_descriptions: list[str]

    async def close(self) -> None:
        if self.store.is_loading:
            self.store.cancel_streaming()
        await self.api.aclose()


def bootstrap_runtime(app: AppConfig) -> AppRuntime:
    log_descriptions = setup_logging(sinks_from_config(app))

    api = ChatApiClient(app.api_base, timeout=app.request_timeout_seconds)
    sessions = RemoteSessionContext(api, agent_id=app.agent_id, session_id=app.session_id)
    store = MessageStore(
        api,
        sessions,
        protocol=app.protocol,
        max_retries=app.max_retries,
        base_delay=app.base_delay_seconds,
        max_delay=app.max_delay_seconds,
        jitter=app.jitter_seconds,
    )

    return AppRuntime(
        api=api,
        sessions=sessions,
        store=store,
        log_descriptions=log_descriptions,
    )
