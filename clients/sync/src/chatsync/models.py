"""Rows exchanged with the chat backend."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import ProtocolError

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

USER_STATUSES = ("online", "away", "offline")


def _require(row: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    value = row.get(key)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ProtocolError(f"row field {key!r} missing or malformed")
    return value


def _optional(row: Mapping[str, Any], key: str, kind: type) -> Any:
    value = row.get(key)
    if value is None:
        return None
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ProtocolError(f"row field {key!r} malformed")
    return value


@dataclass(frozen=True)
class SenderSummary:
    id: str
    name: str
    avatar_url: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SenderSummary":
        return cls(
            id=_require(row, "id", str),
            name=_optional(row, "name", str) or "Unknown",
            avatar_url=_optional(row, "avatar_url", str),
        )


@dataclass(frozen=True)
class User:
    id: str
    email: str
    name: str
    status: str
    created_at: int
    updated_at: int
    avatar_url: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        if not isinstance(row, Mapping):
            raise ProtocolError("user row must be an object")
        status = _require(row, "status", str)
        if status not in USER_STATUSES:
            raise ProtocolError(f"unknown user status {status!r}")
        return cls(
            id=_require(row, "id", str),
            email=_optional(row, "email", str) or "",
            name=_require(row, "name", str),
            status=status,
            created_at=_require(row, "created_at", int),
            updated_at=_require(row, "updated_at", int),
            avatar_url=_optional(row, "avatar_url", str),
        )

    def summary(self) -> SenderSummary:
        return SenderSummary(id=self.id, name=self.name, avatar_url=self.avatar_url)


@dataclass(frozen=True)
class Conversation:
    id: str
    creator_id: str
    participant_id: str
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Conversation":
        if not isinstance(row, Mapping):
            raise ProtocolError("conversation row must be an object")
        return cls(
            id=_require(row, "id", str),
            creator_id=_require(row, "creator_id", str),
            participant_id=_require(row, "participant_id", str),
            created_at=_require(row, "created_at", int),
            updated_at=_require(row, "updated_at", int),
        )

    def other_user_id(self, user_id: str) -> str:
        return self.participant_id if self.creator_id == user_id else self.creator_id


@dataclass(frozen=True)
class Message:
    """A message as the client sees it.

    Server rows carry ``seq``; optimistic rows have ``seq=None`` and a
    temporary id until the server confirms them.
    """

    id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: int
    updated_at: int
    seq: int | None = None
    client_id: str | None = None
    sender: SenderSummary | None = None
    status: str = STATUS_SENT

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        if not isinstance(row, Mapping):
            raise ProtocolError("message row must be an object")
        created_at = _require(row, "created_at", int)
        sender_row = row.get("sender")
        return cls(
            id=_require(row, "id", str),
            conversation_id=_require(row, "conversation_id", str),
            sender_id=_require(row, "sender_id", str),
            text=_require(row, "text", str),
            created_at=created_at,
            updated_at=_optional(row, "updated_at", int) or created_at,
            seq=_optional(row, "seq", int),
            client_id=_optional(row, "client_id", str),
            sender=SenderSummary.from_row(sender_row) if isinstance(sender_row, Mapping) else None,
        )

    @property
    def is_confirmed(self) -> bool:
        return self.status == STATUS_SENT

    def with_status(self, status: str) -> "Message":
        return dataclasses.replace(self, status=status)


@dataclass(frozen=True)
class ConversationWithUser:
    conversation: Conversation
    other_user: User | None
    last_message: Message | None
    unread_count: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ConversationWithUser":
        if not isinstance(row, Mapping):
            raise ProtocolError("conversation row must be an object")
        other_row = row.get("other_user")
        last_row = row.get("last_message")
        unread = row.get("unread_count", 0)
        if not isinstance(unread, int) or isinstance(unread, bool) or unread < 0:
            raise ProtocolError("unread_count must be a non-negative integer")
        return cls(
            conversation=Conversation.from_row(row),
            other_user=User.from_row(other_row) if other_row is not None else None,
            last_message=Message.from_row(last_row) if last_row is not None else None,
            unread_count=unread,
        )

    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def updated_at(self) -> int:
        return self.conversation.updated_at
