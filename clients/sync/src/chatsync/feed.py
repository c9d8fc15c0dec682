"""Per-conversation message list merging optimistic, confirmed and pushed rows."""

from __future__ import annotations

import dataclasses
import logging
import secrets
import time
from typing import Callable, Dict, Iterable, Iterator, List

from .models import STATUS_FAILED, STATUS_PENDING, STATUS_SENT, Message, SenderSummary

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"

Listener = Callable[[List[Message]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_client_id() -> str:
    return secrets.token_hex(8)


class MessageFeed:
    """One consistent, deduplicated, ordered message list for a conversation.

    Confirmed rows are keyed by server id and ordered by ``seq``. Local rows
    (pending or failed) are keyed by ``client_id`` and always trail the
    confirmed ones in creation order. A server row carrying a ``client_id``
    that matches a local row replaces it, whichever of the send response or
    the realtime push arrives first.
    """

    def __init__(
        self,
        conversation_id: str,
        *,
        now_func: Callable[[], int] = _now_ms,
        client_id_func: Callable[[], str] = _new_client_id,
    ) -> None:
        self.conversation_id = conversation_id
        self._now = now_func
        self._new_client_id = client_id_func
        self._confirmed: Dict[str, Message] = {}
        self._confirmed_by_client_id: Dict[str, str] = {}
        self._local: Dict[str, Message] = {}
        self._listeners: List[Listener] = []
        self._snapshot: List[Message] = []
        self._seqs: set[int] = set()
        self._contiguous_seq = 0

    def __len__(self) -> int:
        return len(self._snapshot)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._snapshot))

    def messages(self) -> List[Message]:
        return list(self._snapshot)

    def get(self, message_id: str) -> Message | None:
        if message_id in self._confirmed:
            return self._confirmed[message_id]
        if message_id.startswith(TEMP_ID_PREFIX):
            return self._local.get(message_id[len(TEMP_ID_PREFIX) :])
        return None

    def local(self, client_id: str) -> Message | None:
        return self._local.get(client_id)

    def pending(self) -> List[Message]:
        return [message for message in self._local.values() if message.status == STATUS_PENDING]

    def failed(self) -> List[Message]:
        return [message for message in self._local.values() if message.status == STATUS_FAILED]

    @property
    def last_seq(self) -> int:
        seqs = [message.seq for message in self._confirmed.values() if message.seq is not None]
        return max(seqs, default=0)

    @property
    def contiguous_seq(self) -> int:
        """Highest seq with every lower seq present; catch-up resumes after it."""

        return self._contiguous_seq

    def by_client_id(self, client_id: str) -> Message | None:
        """The local entry for ``client_id``, or the confirmed row that replaced it."""

        local = self._local.get(client_id)
        if local is not None:
            return local
        message_id = self._confirmed_by_client_id.get(client_id)
        return None if message_id is None else self._confirmed.get(message_id)

    def on_change(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_optimistic(self, text: str, sender_id: str, sender: SenderSummary | None = None) -> Message:
        """Add a pending message the user just sent and return it."""

        client_id = self._new_client_id()
        while client_id in self._local or client_id in self._confirmed_by_client_id:
            client_id = self._new_client_id()
        now_ms = self._now()
        message = Message(
            id=f"{TEMP_ID_PREFIX}{client_id}",
            conversation_id=self.conversation_id,
            sender_id=sender_id,
            text=text,
            created_at=now_ms,
            updated_at=now_ms,
            client_id=client_id,
            sender=sender or SenderSummary(id=sender_id, name="You"),
            status=STATUS_PENDING,
        )
        self._local[client_id] = message
        self._refresh()
        return message

    def confirm(self, client_id: str, message: Message) -> Message:
        """Replace the local entry for ``client_id`` with the server row."""

        if message.conversation_id != self.conversation_id:
            raise ValueError("message belongs to another conversation")
        local = self._local.pop(client_id, None)
        if message.client_id is None:
            message = dataclasses.replace(message, client_id=client_id)
        if message.sender is None and local is not None:
            message = dataclasses.replace(message, sender=local.sender)
        self._insert_confirmed(message)
        self._refresh()
        return self._confirmed.get(message.id, message)

    def fail(self, client_id: str) -> Message | None:
        """Mark a pending entry failed; returns ``None`` if it was already confirmed."""

        local = self._local.get(client_id)
        if local is None:
            return None
        failed = local.with_status(STATUS_FAILED)
        self._local[client_id] = failed
        self._refresh()
        return failed

    def retry(self, client_id: str) -> Message:
        local = self._local.get(client_id)
        if local is None or local.status != STATUS_FAILED:
            raise KeyError(client_id)
        pending = local.with_status(STATUS_PENDING)
        self._local[client_id] = pending
        self._refresh()
        return pending

    def discard(self, client_id: str) -> bool:
        if self._local.pop(client_id, None) is None:
            return False
        self._refresh()
        return True

    def apply_remote(self, message: Message) -> bool:
        """Merge a pushed row; returns whether the visible list changed."""

        if message.conversation_id != self.conversation_id:
            logger.debug("ignoring message %s for conversation %s", message.id, message.conversation_id)
            return False
        before = self._snapshot
        self._insert_confirmed(message)
        self._refresh()
        return self._snapshot != before

    def load(self, history: Iterable[Message]) -> int:
        """Merge fetched server history; returns how many new rows were added."""

        added = 0
        for message in history:
            if message.conversation_id != self.conversation_id:
                continue
            if message.id not in self._confirmed and self._insert_confirmed(message):
                added += 1
        self._refresh()
        return added

    def _insert_confirmed(self, message: Message) -> bool:
        if message.status != STATUS_SENT:
            message = message.with_status(STATUS_SENT)
        if message.client_id is not None:
            known_id = self._confirmed_by_client_id.get(message.client_id)
            if known_id is not None and known_id != message.id:
                logger.warning("dropping row %s: client_id already confirmed as %s", message.id, known_id)
                return False
            local = self._local.pop(message.client_id, None)
            if local is not None and message.sender is None:
                message = dataclasses.replace(message, sender=local.sender)
        existing = self._confirmed.get(message.id)
        if existing is not None:
            if message.sender is None and existing.sender is not None:
                message = dataclasses.replace(message, sender=existing.sender)
            if existing == message:
                return False
        self._confirmed[message.id] = message
        if message.client_id is not None:
            self._confirmed_by_client_id[message.client_id] = message.id
        if message.seq is not None:
            self._seqs.add(message.seq)
            while self._contiguous_seq + 1 in self._seqs:
                self._contiguous_seq += 1
        return True

    def _ordered_confirmed(self) -> List[Message]:
        confirmed = list(self._confirmed.values())
        if all(message.seq is not None for message in confirmed):
            confirmed.sort(key=lambda message: message.seq)
        else:
            confirmed.sort(key=lambda message: (message.created_at, message.id))
        return confirmed

    def _refresh(self) -> None:
        snapshot = self._ordered_confirmed() + list(self._local.values())
        if snapshot == self._snapshot:
            return
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(list(snapshot))
            except Exception:
                logger.exception("message feed listener failed")
