"""Websocket client for the realtime channel broker."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp
from aiohttp import WSMsgType

from .errors import ChannelError, ChatError, NotConnectedError

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset(
    {
        "message.insert",
        "conversation.update",
        "presence.sync",
        "presence.join",
        "presence.leave",
    }
)

Handler = Callable[[dict], None]
ReconnectListener = Callable[[], Optional[Awaitable[None]]]


class Channel:
    """A single topic on the shared realtime connection."""

    def __init__(self, client: "RealtimeClient", topic: str) -> None:
        self.topic = topic
        self._client = client
        self._handlers: Dict[str, List[Handler]] = {}
        self._presence: Dict[str, List[dict]] = {}
        self._tracked: tuple[dict, int | None] | None = None
        self.joined = False

    def on(self, event: str, callback: Handler) -> "Channel":
        if event not in EVENT_TYPES:
            raise ValueError(f"unknown channel event: {event}")
        self._handlers.setdefault(event, []).append(callback)
        return self

    async def subscribe(self) -> "Channel":
        await self._client._join(self)
        return self

    async def unsubscribe(self) -> None:
        await self._client._leave(self)

    async def track(self, meta: dict, ttl_seconds: int | None = None) -> int:
        """Publish ``meta`` under this connection's presence key."""

        if not self.joined:
            raise NotConnectedError(f"channel {self.topic} is not joined")
        self._tracked = (dict(meta), ttl_seconds)
        return await self._send_track()

    async def untrack(self) -> None:
        self._tracked = None
        if not self.joined:
            return
        await self._client.request("presence.untrack", {"topic": self.topic})

    def presence_state(self) -> Dict[str, List[dict]]:
        return {key: [dict(meta) for meta in metas] for key, metas in self._presence.items()}

    async def _send_track(self) -> int:
        assert self._tracked is not None
        meta, ttl_seconds = self._tracked
        body: Dict[str, Any] = {"topic": self.topic, "meta": meta}
        if ttl_seconds is not None:
            body["ttl_seconds"] = ttl_seconds
        reply = await self._client.request("presence.track", body)
        return int(reply.get("body", {}).get("expires_at", 0))

    async def _rejoin(self) -> None:
        self._presence = {}
        await self._client.request("channel.join", {"topic": self.topic})
        if self._tracked is not None:
            await self._send_track()

    def _dispatch(self, event: str, body: dict) -> None:
        if event == "presence.sync":
            state = body.get("state")
            self._presence = {
                key: [dict(meta) for meta in metas if isinstance(meta, dict)]
                for key, metas in (state.items() if isinstance(state, dict) else [])
                if isinstance(metas, list)
            }
        elif event == "presence.join":
            key = body.get("key")
            new = [meta for meta in body.get("new_presences") or [] if isinstance(meta, dict)]
            if isinstance(key, str):
                refs = {meta.get("presence_ref") for meta in new}
                kept = [meta for meta in self._presence.get(key, []) if meta.get("presence_ref") not in refs]
                self._presence[key] = kept + [dict(meta) for meta in new]
        elif event == "presence.leave":
            key = body.get("key")
            left = body.get("left_presences") or []
            if isinstance(key, str) and key in self._presence:
                refs = {meta.get("presence_ref") for meta in left if isinstance(meta, dict)}
                remaining = [meta for meta in self._presence[key] if meta.get("presence_ref") not in refs]
                if remaining:
                    self._presence[key] = remaining
                else:
                    self._presence.pop(key, None)

        for handler in list(self._handlers.get(event, [])):
            try:
                handler(body)
            except Exception:
                logger.exception("handler for %s on %s failed", event, self.topic)


class RealtimeClient:
    """Multiplexes channels over one websocket and keeps it alive.

    After an unexpected disconnect the client reconnects with capped
    exponential backoff, rejoins every joined channel, re-tracks presence and
    then notifies reconnect listeners so callers can catch up on missed rows.
    """

    def __init__(
        self,
        http: aiohttp.ClientSession,
        ws_url: str,
        session_token: str,
        *,
        request_timeout_s: float = 10.0,
        heartbeat_s: float = 25.0,
        reconnect_max_s: float = 30.0,
    ) -> None:
        self._http = http
        self._ws_url = ws_url
        self._session_token = session_token
        self._request_timeout_s = request_timeout_s
        self._heartbeat_s = heartbeat_s
        self._reconnect_max_s = reconnect_max_s
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._channels: Dict[str, Channel] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_listeners: List[ReconnectListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self.user_id: str | None = None
        self.connection_id: str | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def channel(self, topic: str) -> Channel:
        channel = self._channels.get(topic)
        if channel is None:
            channel = Channel(self, topic)
            self._channels[topic] = channel
        return channel

    def on_reconnect(self, listener: ReconnectListener) -> Callable[[], None]:
        self._reconnect_listeners.append(listener)

        def remove() -> None:
            if listener in self._reconnect_listeners:
                self._reconnect_listeners.remove(listener)

        return remove

    async def connect(self) -> None:
        self._closing = False
        await self._open()

    async def close(self) -> None:
        self._closing = True
        for task in (self._reconnect_task, self._heartbeat_task):
            if task is not None:
                task.cancel()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        tasks = [task for task in (self._reconnect_task, self._heartbeat_task, self._reader_task) if task is not None]
        tasks.extend(self._tasks)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_task = self._heartbeat_task = self._reader_task = None
        self._fail_pending(NotConnectedError("connection closed"))
        for channel in self._channels.values():
            channel.joined = False

    async def request(self, frame_type: str, body: dict) -> dict:
        """Send a frame and wait for the reply carrying the same id."""

        ws = self._ws
        if ws is None or ws.closed:
            raise NotConnectedError("realtime connection is not open")
        request_id = f"r{next(self._ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
            return await asyncio.wait_for(future, self._request_timeout_s)
        finally:
            self._pending.pop(request_id, None)

    async def _open(self) -> None:
        ws = await self._http.ws_connect(self._ws_url)
        try:
            await ws.send_json(
                {"v": 1, "t": "session.start", "id": "start", "body": {"session_token": self._session_token}}
            )
            ready = await asyncio.wait_for(ws.receive_json(), self._request_timeout_s)
        except (TypeError, ValueError) as exc:
            await ws.close()
            raise ChannelError("handshake_failed", str(exc)) from exc
        except BaseException:
            await ws.close()
            raise
        if not isinstance(ready, dict) or ready.get("t") != "session.ready":
            await ws.close()
            body = ready.get("body", {}) if isinstance(ready, dict) else {}
            raise ChannelError(str(body.get("code", "handshake_failed")), str(body.get("message", "")))

        body = ready.get("body") or {}
        self.user_id = body.get("user_id")
        self.connection_id = body.get("connection_id")
        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat(ws))
        logger.debug("realtime connection %s open", self.connection_id)

    async def _join(self, channel: Channel) -> None:
        self._channels[channel.topic] = channel
        await self.request("channel.join", {"topic": channel.topic})
        channel.joined = True
        logger.debug("subscribed to %s", channel.topic)

    async def _leave(self, channel: Channel) -> None:
        was_joined = channel.joined
        channel.joined = False
        channel._tracked = None
        self._channels.pop(channel.topic, None)
        if was_joined and self.connected:
            await self.request("channel.leave", {"topic": channel.topic})
        logger.debug("unsubscribed from %s", channel.topic)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping malformed realtime frame")
                        continue
                    if isinstance(frame, dict):
                        self._handle_frame(ws, frame)
                elif msg.type == WSMsgType.ERROR:
                    break
        finally:
            if self._ws is ws:
                self._fail_pending(NotConnectedError("connection lost"))
                if self._heartbeat_task is not None:
                    self._heartbeat_task.cancel()
        reconnecting = self._reconnect_task is not None and not self._reconnect_task.done()
        if not self._closing and self._ws is ws and not reconnecting:
            logger.warning("realtime connection lost, reconnecting")
            self._reconnect_task = asyncio.create_task(self._reconnect())

    def _handle_frame(self, ws: aiohttp.ClientWebSocketResponse, frame: dict) -> None:
        frame_type = frame.get("t")
        request_id = frame.get("id")
        body = frame.get("body") or {}

        if request_id is not None and request_id in self._pending:
            future = self._pending[request_id]
            if not future.done():
                if frame_type == "error":
                    future.set_exception(ChannelError(str(body.get("code")), str(body.get("message"))))
                else:
                    # Events queued right behind the join reply belong to the channel.
                    if frame_type == "channel.joined" and body.get("topic") in self._channels:
                        self._channels[body["topic"]].joined = True
                    future.set_result(frame)
            return
        if frame_type == "ping":
            self._spawn(ws.send_json({"v": 1, "t": "pong", "id": request_id}))
            return
        if frame_type == "error":
            logger.warning("realtime error frame: %s", body)
            return
        if frame_type in EVENT_TYPES:
            channel = self._channels.get(body.get("topic"))
            if channel is not None and channel.joined:
                channel._dispatch(frame_type, body)

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while not ws.closed:
                await asyncio.sleep(self._heartbeat_s)
                try:
                    await self.request("ping", {})
                except (asyncio.TimeoutError, ChatError, ConnectionError):
                    logger.warning("realtime heartbeat missed, closing connection")
                    await ws.close()
                    return
        except asyncio.CancelledError:
            return

    async def _reconnect(self) -> None:
        delay = 0.5
        while not self._closing:
            await asyncio.sleep(delay)
            try:
                await self._open()
                for channel in list(self._channels.values()):
                    if channel.joined:
                        await channel._rejoin()
            except (aiohttp.ClientError, asyncio.TimeoutError, ChatError, ConnectionError) as exc:
                logger.warning("realtime reconnect failed: %s", exc)
                if self._ws is not None and not self._ws.closed:
                    await self._ws.close()
                delay = min(delay * 2, self._reconnect_max_s)
                continue
            logger.info("realtime connection restored")
            for listener in list(self._reconnect_listeners):
                try:
                    result = listener()
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("reconnect listener failed")
            if self.connected or self._closing:
                return
            # The socket dropped while listeners ran; its read loop left the retry here.
            logger.warning("realtime connection lost during reconnect, retrying")
            delay = 0.5

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("realtime background send failed: %s", exc)

    def _fail_pending(self, exc: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
