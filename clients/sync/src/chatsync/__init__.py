"""Real-time conversation synchronization for the chat client."""

from .api import ChatApi
from .config import ClientConfig, load_client_config_from_env
from .controller import ConversationController, ConversationListController
from .errors import ApiError, ChannelError, ChatError, NotConnectedError, ProtocolError
from .feed import MessageFeed
from .models import Conversation, ConversationWithUser, Message, SenderSummary, User
from .realtime import Channel, RealtimeClient
from .typing_indicator import TypingAggregator, TypingNotifier

__all__ = [
    "ApiError",
    "Channel",
    "ChannelError",
    "ChatApi",
    "ChatError",
    "ClientConfig",
    "Conversation",
    "ConversationController",
    "ConversationListController",
    "ConversationWithUser",
    "Message",
    "MessageFeed",
    "NotConnectedError",
    "ProtocolError",
    "RealtimeClient",
    "SenderSummary",
    "TypingAggregator",
    "TypingNotifier",
    "User",
    "load_client_config_from_env",
]
