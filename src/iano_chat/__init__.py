from iano_chat.api_client import ChatApiClient
from iano_chat.event_interpreter import ProtocolVariant
from iano_chat.message_store import MessageStore
from iano_chat.models import ConnectionStatus, Message, MessageContent, MessageRole, MessageStatus, ToolCall
from iano_chat.sessions import RemoteSessionContext, SessionProvider

__all__ = [
    "ChatApiClient",
    "ConnectionStatus",
    "Message",
    "MessageContent",
    "MessageRole",
    "MessageStatus",
    "MessageStore",
    "ProtocolVariant",
    "RemoteSessionContext",
    "SessionProvider",
    "ToolCall",
]
