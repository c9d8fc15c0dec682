"""Per-screen controllers wiring the API, realtime channels, feed and typing state."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

import aiohttp

from .api import ChatApi
from .config import ClientConfig
from .errors import ApiError, ChatError, ProtocolError
from .feed import MessageFeed
from .models import ConversationWithUser, Message, User
from .realtime import Channel, RealtimeClient
from .typing_indicator import TypingAggregator, TypingNotifier

logger = logging.getLogger(__name__)

SEND_ERRORS = (ChatError, aiohttp.ClientError, asyncio.TimeoutError)


class ConversationController:
    """Drives one open message thread."""

    def __init__(
        self,
        api: ChatApi,
        realtime: RealtimeClient,
        conversation_id: str,
        current_user_id: str,
        *,
        config: ClientConfig | None = None,
    ) -> None:
        self._api = api
        self._realtime = realtime
        self._config = config or ClientConfig()
        self.conversation_id = conversation_id
        self.current_user_id = current_user_id
        self.current_user: User | None = None
        self.feed = MessageFeed(conversation_id)
        self.typing = TypingAggregator(current_user_id)
        self.draft = ""
        self.is_loading = False
        self._messages_channel: Channel | None = None
        self._typing_channel: Channel | None = None
        self._notifier: TypingNotifier | None = None
        self._buffer: Optional[List[Message]] = None
        self._remove_reconnect: Callable[[], None] | None = None

    @property
    def messages(self) -> List[Message]:
        return self.feed.messages()

    @property
    def typing_users(self) -> List[str]:
        return self.typing.typing_users()

    @property
    def typing_label(self) -> str:
        return self.typing.label()

    async def open(self) -> None:
        try:
            self.current_user = await self._api.get_user_by_id(self.current_user_id)
        except SEND_ERRORS as exc:
            logger.debug("could not load current user profile: %s", exc)

        self.is_loading = True
        self._buffer = []
        channel = self._realtime.channel(f"messages:{self.conversation_id}")
        channel.on("message.insert", self._on_insert)
        self._messages_channel = channel
        try:
            await channel.subscribe()
            history = await self._fetch_after(0)
        finally:
            buffered, self._buffer = self._buffer, None
            self.is_loading = False
        self.feed.load(history)
        for message in buffered:
            self.feed.apply_remote(message)

        typing_channel = self._realtime.channel(f"typing:{self.conversation_id}")
        typing_channel.on("presence.sync", lambda body: self.typing.sync(body.get("state") or {}))
        typing_channel.on(
            "presence.join",
            lambda body: self.typing.join(str(body.get("key")), body.get("new_presences") or []),
        )
        typing_channel.on(
            "presence.leave",
            lambda body: self.typing.leave(str(body.get("key")), body.get("left_presences") or []),
        )
        await typing_channel.subscribe()
        self._typing_channel = typing_channel
        self._notifier = TypingNotifier(
            typing_channel,
            idle_s=self._config.typing_idle_s,
            ttl_s=self._config.typing_ttl_s,
        )
        self._remove_reconnect = self._realtime.on_reconnect(self.catch_up)

    def _on_insert(self, body: dict) -> None:
        try:
            message = Message.from_row(body.get("message") or {})
        except ProtocolError as exc:
            logger.warning("dropping malformed message push: %s", exc)
            return
        if self._buffer is not None:
            self._buffer.append(message)
            return
        self.feed.apply_remote(message)

    def input_changed(self, text: str) -> None:
        self.draft = text
        if self._notifier is None:
            return
        if text.strip():
            self._notifier.keystroke()
        else:
            self._notifier.stop()

    async def send(self, text: str) -> Message | None:
        """Send ``text`` optimistically; returns the confirmed or failed entry."""

        if not text.strip():
            return None
        if self._notifier is not None:
            self._notifier.stop()
        sender = self.current_user.summary() if self.current_user is not None else None
        local = self.feed.add_optimistic(text, self.current_user_id, sender)
        self.draft = ""
        return await self._deliver(local)

    async def retry(self, client_id: str) -> Message | None:
        local = self.feed.retry(client_id)
        return await self._deliver(local)

    async def _deliver(self, local: Message) -> Message | None:
        client_id = local.client_id
        assert client_id is not None
        try:
            row = await self._api.send_message(self.conversation_id, local.text, client_id=client_id)
        except SEND_ERRORS as exc:
            logger.warning("sending message %s failed: %s", client_id, exc)
            failed = self.feed.fail(client_id)
            if failed is None:
                # The push already confirmed it; the server has the row.
                return self.feed.by_client_id(client_id)
            if not self.draft:
                self.draft = local.text
            return failed
        return self.feed.confirm(client_id, row)

    async def mark_read(self) -> int:
        seq = self.feed.last_seq
        if seq == 0:
            return 0
        return await self._api.mark_read(self.conversation_id, seq)

    async def catch_up(self) -> int:
        """Fetch rows missed while the realtime connection was down.

        Resumes after the contiguous seq rather than the highest one, so a
        push that lands on the rejoined channel before catch-up runs does not
        hide the gap below it.
        """

        try:
            rows = await self._fetch_after(self.feed.contiguous_seq)
        except SEND_ERRORS as exc:
            logger.warning("catch-up for %s failed: %s", self.conversation_id, exc)
            return 0
        return self.feed.load(rows)

    async def _fetch_after(self, after_seq: int) -> List[Message]:
        page_size = self._config.history_page_size
        rows: List[Message] = []
        while True:
            page = await self._api.get_messages(self.conversation_id, after_seq=after_seq, limit=page_size)
            rows.extend(page)
            seqs = [message.seq for message in page if message.seq is not None]
            if len(page) < page_size or not seqs:
                return rows
            after_seq = max(seqs)

    async def close(self) -> None:
        if self._remove_reconnect is not None:
            self._remove_reconnect()
            self._remove_reconnect = None
        if self._notifier is not None:
            await self._notifier.aclose()
            self._notifier = None
        for channel in (self._typing_channel, self._messages_channel):
            if channel is None:
                continue
            try:
                await channel.unsubscribe()
            except (ChatError, asyncio.TimeoutError) as exc:
                logger.debug("unsubscribe from %s failed: %s", channel.topic, exc)
        self._typing_channel = self._messages_channel = None
        self.typing.clear()


class ConversationListController:
    """Keeps the conversation sidebar current."""

    def __init__(self, api: ChatApi, realtime: RealtimeClient, current_user_id: str) -> None:
        self._api = api
        self._realtime = realtime
        self.current_user_id = current_user_id
        self.conversations: List[ConversationWithUser] = []
        self._channel: Channel | None = None
        self._reload_task: asyncio.Task | None = None
        self._dirty = False
        self._listeners: List[Callable[[List[ConversationWithUser]], None]] = []
        self._remove_reconnect: Callable[[], None] | None = None

    def on_change(self, listener: Callable[[List[ConversationWithUser]], None]) -> None:
        self._listeners.append(listener)

    async def open(self) -> None:
        channel = self._realtime.channel(f"conversations:{self.current_user_id}")
        channel.on("conversation.update", lambda _body: self._schedule_reload())
        await channel.subscribe()
        self._channel = channel
        self._remove_reconnect = self._realtime.on_reconnect(self._schedule_reload)
        await self.reload()

    async def reload(self) -> List[ConversationWithUser]:
        self.conversations = await self._api.get_conversations()
        for listener in list(self._listeners):
            try:
                listener(list(self.conversations))
            except Exception:
                logger.exception("conversation list listener failed")
        return self.conversations

    def filter(self, query: str) -> List[ConversationWithUser]:
        needle = query.strip().lower()
        return [
            conversation
            for conversation in self.conversations
            if conversation.other_user is not None and needle in conversation.other_user.name.lower()
        ]

    async def settle(self) -> None:
        while self._reload_task is not None and not self._reload_task.done():
            await self._reload_task

    def _schedule_reload(self) -> None:
        if self._reload_task is not None and not self._reload_task.done():
            self._dirty = True
            return
        self._reload_task = asyncio.create_task(self._reload_loop())

    async def _reload_loop(self) -> None:
        while True:
            self._dirty = False
            try:
                await self.reload()
            except (ApiError, ProtocolError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("reloading conversations failed: %s", exc)
            if not self._dirty:
                return

    async def close(self) -> None:
        if self._remove_reconnect is not None:
            self._remove_reconnect()
            self._remove_reconnect = None
        if self._reload_task is not None:
            self._reload_task.cancel()
            await asyncio.gather(self._reload_task, return_exceptions=True)
            self._reload_task = None
        if self._channel is not None:
            try:
                await self._channel.unsubscribe()
            except (ChatError, asyncio.TimeoutError) as exc:
                logger.debug("unsubscribe from %s failed: %s", self._channel.topic, exc)
            self._channel = None
