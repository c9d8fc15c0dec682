from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

VALID_STATUSES = ("online", "away", "offline")
MAX_TEXT_LENGTH = 4000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class User:
    id: str
    email: str
    name: str
    avatar_url: str | None
    status: str
    created_at: int
    updated_at: int

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "avatar_url": self.avatar_url,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "avatar_url": self.avatar_url}


@dataclass
class Conversation:
    id: str
    creator_id: str
    participant_id: str
    created_at: int
    updated_at: int

    @property
    def members(self) -> Tuple[str, str]:
        return (self.creator_id, self.participant_id)

    def other(self, user_id: str) -> str:
        return self.participant_id if self.creator_id == user_id else self.creator_id

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "participant_id": self.participant_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Message:
    """An immutable message row; ``seq`` is monotonic per conversation from 1."""

    id: str
    conversation_id: str
    seq: int
    sender_id: str
    text: str
    client_id: str | None
    created_at: int
    updated_at: int

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "seq": self.seq,
            "sender_id": self.sender_id,
            "text": self.text,
            "client_id": self.client_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class _ConversationLog:
    messages: List[Message] = field(default_factory=list)
    by_client_id: Dict[str, Message] = field(default_factory=dict)


class ChatStore:
    """In-memory durable-store stand-in for users, conversations and messages."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._users: Dict[str, User] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._pairs: Dict[frozenset, str] = {}
        self._logs: Dict[str, _ConversationLog] = {}

    # users

    def create_user(self, user_id: str, email: str, name: str, avatar_url: str | None = None) -> User:
        if user_id in self._users:
            raise ValueError("user already exists")
        now_ms = self._now()
        user = User(
            id=user_id,
            email=email,
            name=name,
            avatar_url=avatar_url,
            status="online",
            created_at=now_ms,
            updated_at=now_ms,
        )
        self._users[user_id] = user
        return user

    def ensure_user(self, user_id: str, email: str, name: str, avatar_url: str | None = None) -> tuple[User, bool]:
        existing = self._users.get(user_id)
        if existing is not None:
            return existing, False
        return self.create_user(user_id, email, name, avatar_url), True

    def get_user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise LookupError("unknown user")
        return user

    def list_users(self, exclude_user_id: str | None = None) -> list[User]:
        users = [user for user in self._users.values() if user.id != exclude_user_id]
        users.sort(key=lambda user: (user.name.lower(), user.id))
        return users

    def update_status(self, user_id: str, status: str) -> User:
        if status not in VALID_STATUSES:
            raise ValueError("status must be one of online, away, offline")
        user = self.get_user(user_id)
        user.status = status
        user.updated_at = self._now()
        return user

    def update_profile(self, user_id: str, *, name: str | None = None, avatar_url: str | None = None) -> User:
        user = self.get_user(user_id)
        if name is not None:
            if not name.strip():
                raise ValueError("name must not be empty")
            user.name = name.strip()
        if avatar_url is not None:
            user.avatar_url = avatar_url
        user.updated_at = self._now()
        return user

    # conversations

    def get_or_create_conversation(self, user_id: str, participant_id: str) -> tuple[Conversation, bool]:
        """Return the conversation for the unordered pair, creating it if needed."""

        if user_id == participant_id:
            raise ValueError("cannot start a conversation with yourself")
        self.get_user(user_id)
        self.get_user(participant_id)
        pair = frozenset((user_id, participant_id))
        conv_id = self._pairs.get(pair)
        if conv_id is not None:
            return self._conversations[conv_id], False

        now_ms = self._now()
        conversation = Conversation(
            id=f"c_{secrets.token_hex(8)}",
            creator_id=user_id,
            participant_id=participant_id,
            created_at=now_ms,
            updated_at=now_ms,
        )
        self._conversations[conversation.id] = conversation
        self._pairs[pair] = conversation.id
        self._logs[conversation.id] = _ConversationLog()
        return conversation, True

    def get_conversation(self, conv_id: str) -> Conversation:
        conversation = self._conversations.get(conv_id)
        if conversation is None:
            raise LookupError("unknown conversation")
        return conversation

    def require_member(self, conv_id: str, user_id: str) -> Conversation:
        conversation = self.get_conversation(conv_id)
        if user_id not in conversation.members:
            raise PermissionError("forbidden")
        return conversation

    def list_conversations(self, user_id: str) -> list[Conversation]:
        conversations = [conv for conv in self._conversations.values() if user_id in conv.members]
        conversations.sort(key=lambda conv: (-conv.updated_at, conv.id))
        return conversations

    # messages

    def insert_message(
        self,
        conv_id: str,
        sender_id: str,
        text: str,
        client_id: str | None = None,
    ) -> tuple[Message, bool]:
        """Append a message or return the existing one for the idempotency key.

        The key is ``(conv_id, client_id)``; messages without a ``client_id``
        are never deduplicated. The conversation's ``updated_at`` is bumped on
        every new message.
        """

        conversation = self.require_member(conv_id, sender_id)
        log = self._logs[conv_id]
        if client_id is not None and client_id in log.by_client_id:
            return log.by_client_id[client_id], False
        if not text or not text.strip():
            raise ValueError("text must not be empty")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValueError("text too long")

        now_ms = self._now()
        message = Message(
            id=f"m_{secrets.token_hex(8)}",
            conversation_id=conv_id,
            seq=len(log.messages) + 1,
            sender_id=sender_id,
            text=text,
            client_id=client_id,
            created_at=now_ms,
            updated_at=now_ms,
        )
        log.messages.append(message)
        if client_id is not None:
            log.by_client_id[client_id] = message
        conversation.updated_at = max(conversation.updated_at, now_ms)
        return message, True

    def list_messages(self, conv_id: str, after_seq: int = 0, limit: int | None = None) -> list[Message]:
        """Return messages with ``seq`` greater than ``after_seq`` in ascending order."""

        if after_seq < 0:
            raise ValueError("after_seq must be non-negative")
        self.get_conversation(conv_id)
        messages = self._logs[conv_id].messages
        slice_end = None if limit is None else after_seq + max(limit, 0)
        return list(messages[after_seq:slice_end])

    def last_message(self, conv_id: str) -> Message | None:
        messages = self._logs[conv_id].messages
        return messages[-1] if messages else None

    def latest_seq(self, conv_id: str) -> int:
        return len(self._logs[conv_id].messages)

    def count_unread(self, conv_id: str, user_id: str, after_seq: int) -> int:
        messages = self._logs[conv_id].messages[after_seq:]
        return sum(1 for message in messages if message.sender_id != user_id)
