"""Development stand-in for the managed chat backend."""

from .cursors import ReadCursorStore
from .hub import Subscription, SubscriptionHub
from .presence import Presence, PresenceConfig
from .server import main
from .store import ChatStore, Conversation, Message, User
from .ws_transport import RUNTIME_KEY, create_app

__all__ = [
    "ChatStore",
    "Conversation",
    "Message",
    "Presence",
    "PresenceConfig",
    "ReadCursorStore",
    "RUNTIME_KEY",
    "Subscription",
    "SubscriptionHub",
    "User",
    "create_app",
    "main",
]
