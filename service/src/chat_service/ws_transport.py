from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Dict, List

from aiohttp import WSMsgType, web

from .config import ServiceConfig
from .cursors import ReadCursorStore
from .hub import Subscription, SubscriptionHub
from .presence import LimitExceeded, Presence, RateLimitExceeded
from .sessions import Session, SessionStore
from .store import ChatStore, Conversation, Message

logger = logging.getLogger(__name__)

AVATAR_URL_TEMPLATE = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"
DEFAULT_TRACK_TTL_S = 10
MAX_MESSAGE_PAGE = 1000


class Runtime:
    def __init__(
        self,
        *,
        store: ChatStore,
        cursors: ReadCursorStore,
        hub: SubscriptionHub,
        sessions: SessionStore,
        presence: Presence,
    ) -> None:
        self.store = store
        self.cursors = cursors
        self.hub = hub
        self.sessions = sessions
        self.presence = presence

    def message_row(self, message: Message) -> dict:
        row = message.to_row()
        try:
            row["sender"] = self.store.get_user(message.sender_id).summary()
        except LookupError:
            row["sender"] = None
        return row

    def conversation_row(self, conversation: Conversation, user_id: str) -> dict:
        row = conversation.to_row()
        other_id = conversation.other(user_id)
        try:
            row["other_user"] = self.store.get_user(other_id).to_row()
        except LookupError:
            row["other_user"] = None
        last_message = self.store.last_message(conversation.id)
        row["last_message"] = None if last_message is None else self.message_row(last_message)
        last_read = self.cursors.last_read(user_id, conversation.id)
        row["unread_count"] = self.store.count_unread(conversation.id, user_id, last_read)
        return row

    def publish_conversation_update(self, conversation: Conversation) -> None:
        for user_id in conversation.members:
            self.hub.broadcast(
                f"conversations:{user_id}",
                {
                    "v": 1,
                    "t": "conversation.update",
                    "body": {"topic": f"conversations:{user_id}", "conversation": conversation.to_row()},
                },
            )


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _forbidden(message: str = "forbidden") -> web.Response:
    return _error("forbidden", message, 403)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get(session_token)


async def _json_body(request: web.Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _store_error(exc: Exception) -> web.Response:
    if isinstance(exc, PermissionError):
        return _forbidden(str(exc) or "forbidden")
    if isinstance(exc, LookupError):
        return _not_found(str(exc.args[0]) if exc.args else "not found")
    return _invalid_request(str(exc))


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")

    user_id = body.get("user_id")
    email = body.get("email") or ""
    name = body.get("name") or user_id
    if not isinstance(user_id, str) or not user_id or not isinstance(email, str) or not isinstance(name, str):
        return _invalid_request("user_id required")

    user, created = runtime.store.ensure_user(
        user_id,
        email,
        name,
        AVATAR_URL_TEMPLATE.format(seed=email or user_id),
    )
    if created:
        logger.info("created profile for %s", user_id)
    session = runtime.sessions.create(user_id)
    return web.json_response(
        {
            "session_token": session.session_token,
            "expires_at": session.expires_at_ms,
            "user": user.to_row(),
        }
    )


async def handle_users_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    users = runtime.store.list_users(exclude_user_id=session.user_id)
    return web.json_response({"users": [user.to_row() for user in users]})


async def handle_user_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        user = runtime.store.get_user(request.match_info["user_id"])
    except LookupError as exc:
        return _store_error(exc)
    return web.json_response({"user": user.to_row()})


async def handle_user_status(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    status = body.get("status")
    if not isinstance(status, str):
        return _invalid_request("status required")
    try:
        user = runtime.store.update_status(session.user_id, status)
    except (LookupError, ValueError) as exc:
        return _store_error(exc)
    return web.json_response({"user": user.to_row()})


async def handle_user_profile(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    name = body.get("name")
    avatar_url = body.get("avatar_url")
    if (name is not None and not isinstance(name, str)) or (avatar_url is not None and not isinstance(avatar_url, str)):
        return _invalid_request("name and avatar_url must be strings")
    try:
        user = runtime.store.update_profile(session.user_id, name=name, avatar_url=avatar_url)
    except (LookupError, ValueError) as exc:
        return _store_error(exc)
    return web.json_response({"user": user.to_row()})


async def handle_conversations_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    conversations = runtime.store.list_conversations(session.user_id)
    rows = [runtime.conversation_row(conversation, session.user_id) for conversation in conversations]
    return web.json_response({"conversations": rows})


async def handle_conversation_open(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    participant_id = body.get("participant_id")
    if not isinstance(participant_id, str) or not participant_id:
        return _invalid_request("participant_id required")
    try:
        conversation, created = runtime.store.get_or_create_conversation(session.user_id, participant_id)
    except (LookupError, ValueError) as exc:
        return _store_error(exc)
    if created:
        runtime.publish_conversation_update(conversation)
    return web.json_response({"conversation": conversation.to_row(), "created": created})


def _parse_query_int(request: web.Request, name: str, default: int | None) -> int | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    parsed = int(raw)
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    conv_id = request.match_info["conv_id"]
    try:
        after_seq = _parse_query_int(request, "after_seq", 0)
        limit = _parse_query_int(request, "limit", MAX_MESSAGE_PAGE)
    except ValueError:
        return _invalid_request("after_seq and limit must be non-negative integers")
    try:
        runtime.store.require_member(conv_id, session.user_id)
        messages = runtime.store.list_messages(conv_id, after_seq, min(limit, MAX_MESSAGE_PAGE))
    except (LookupError, PermissionError, ValueError) as exc:
        return _store_error(exc)
    return web.json_response({"messages": [runtime.message_row(message) for message in messages]})


async def handle_message_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    conv_id = request.match_info["conv_id"]
    text = body.get("text")
    client_id = body.get("client_id")
    if not isinstance(text, str) or (client_id is not None and not isinstance(client_id, str)):
        return _invalid_request("text required")
    try:
        message, created = runtime.store.insert_message(conv_id, session.user_id, text, client_id)
    except (LookupError, PermissionError, ValueError) as exc:
        return _store_error(exc)

    row = runtime.message_row(message)
    if created:
        topic = f"messages:{conv_id}"
        runtime.hub.broadcast(topic, {"v": 1, "t": "message.insert", "body": {"topic": topic, "message": row}})
        runtime.publish_conversation_update(runtime.store.get_conversation(conv_id))
    return web.json_response({"message": row, "created": created})


async def handle_mark_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    conv_id = request.match_info["conv_id"]
    seq = body.get("seq")
    if not isinstance(seq, int) or isinstance(seq, bool) or seq < 0:
        return _invalid_request("seq must be a non-negative integer")
    try:
        runtime.store.require_member(conv_id, session.user_id)
    except (LookupError, PermissionError) as exc:
        return _store_error(exc)
    seq = min(seq, runtime.store.latest_seq(conv_id))
    last_read = runtime.cursors.mark_read(session.user_id, conv_id, seq)
    return web.json_response({"last_read": last_read})


def create_app(
    config: ServiceConfig | None = None,
    *,
    store: ChatStore | None = None,
    presence: Presence | None = None,
    start_presence_sweeper: bool = True,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    config = config or ServiceConfig()
    hub = SubscriptionHub()
    presence = presence or Presence(config.presence_config())
    presence.bind(hub.broadcast)
    runtime = Runtime(
        store=store or ChatStore(),
        cursors=ReadCursorStore(),
        hub=hub,
        sessions=SessionStore(config.session_ttl_ms),
        presence=presence,
    )
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": config.ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_get("/v1/users", handle_users_list)
    app.router.add_post("/v1/users/me/status", handle_user_status)
    app.router.add_post("/v1/users/me/profile", handle_user_profile)
    app.router.add_get("/v1/users/{user_id}", handle_user_get)
    app.router.add_get("/v1/conversations", handle_conversations_list)
    app.router.add_post("/v1/conversations", handle_conversation_open)
    app.router.add_get("/v1/conversations/{conv_id}/messages", handle_messages_list)
    app.router.add_post("/v1/conversations/{conv_id}/messages", handle_message_send)
    app.router.add_post("/v1/conversations/{conv_id}/read", handle_mark_read)
    app.router.add_get("/v1/ws", websocket_handler)

    async def start_presence(_: web.Application) -> None:
        if start_presence_sweeper:
            presence.start_sweeper()

    async def stop_presence(_: web.Application) -> None:
        await presence.stop_sweeper()

    app.on_startup.append(start_presence)
    app.on_cleanup.append(stop_presence)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _authorize_topic(runtime: Runtime, user_id: str, topic: str) -> dict[str, Any] | None:
    """Return an error frame when ``user_id`` may not join ``topic``."""

    kind, _, ident = topic.partition(":")
    if not ident:
        return _error_frame("invalid_request", "unknown topic")
    if kind in ("messages", "typing"):
        try:
            runtime.store.require_member(ident, user_id)
        except PermissionError:
            return _error_frame("forbidden", "not a member of this conversation")
        except LookupError:
            return _error_frame("not_found", "unknown conversation")
        return None
    if kind == "conversations":
        if ident != user_id:
            return _error_frame("forbidden", "cannot watch another user's conversations")
        return None
    return _error_frame("invalid_request", "unknown topic")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    connection_id = f"conn_{secrets.token_hex(8)}"
    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, Subscription] = {}
    session: Session | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws

        body = payload.get("body") or {}
        if payload.get("t") != "session.start":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws
        session_token = body.get("session_token")
        session = runtime.sessions.get(session_token) if isinstance(session_token, str) else None
        if session is None:
            await ws.send_json(_error_frame("unauthorized", "invalid session_token", request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        user_id = session.user_id
        enqueue(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {"user_id": user_id, "connection_id": connection_id},
            }
        )
        logger.debug("websocket session %s ready for %s", connection_id, user_id)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "malformed frame"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}
                topic = body.get("topic")

                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "pong":
                    continue
                elif frame_type == "channel.join":
                    if not isinstance(topic, str):
                        enqueue(_error_frame("invalid_request", "topic required", request_id=request_id))
                        continue
                    denied = _authorize_topic(runtime, user_id, topic)
                    if denied is not None:
                        denied["id"] = request_id
                        enqueue(denied)
                        continue
                    if topic not in subscriptions:
                        subscriptions[topic] = runtime.hub.subscribe(connection_id, topic, enqueue)
                    enqueue({"v": 1, "t": "channel.joined", "id": request_id, "body": {"topic": topic}})
                    if topic.startswith("typing:"):
                        enqueue(
                            {
                                "v": 1,
                                "t": "presence.sync",
                                "body": {"topic": topic, "state": runtime.presence.state(topic)},
                            }
                        )
                elif frame_type == "channel.leave":
                    if not isinstance(topic, str):
                        enqueue(_error_frame("invalid_request", "topic required", request_id=request_id))
                        continue
                    subscription = subscriptions.pop(topic, None)
                    if subscription is not None:
                        runtime.hub.unsubscribe(subscription)
                    runtime.presence.untrack(topic, connection_id)
                    enqueue({"v": 1, "t": "channel.left", "id": request_id, "body": {"topic": topic}})
                elif frame_type == "presence.track":
                    meta = body.get("meta")
                    ttl_seconds = body.get("ttl_seconds", DEFAULT_TRACK_TTL_S)
                    if not isinstance(topic, str) or not isinstance(meta, dict) or not isinstance(ttl_seconds, int):
                        enqueue(_error_frame("invalid_request", "topic and meta required", request_id=request_id))
                        continue
                    if topic not in subscriptions or not topic.startswith("typing:"):
                        enqueue(_error_frame("invalid_request", "join a presence topic first", request_id=request_id))
                        continue
                    meta = dict(meta)
                    meta["user_id"] = user_id
                    try:
                        expires_at = runtime.presence.track(topic, connection_id, meta, ttl_seconds)
                    except RateLimitExceeded as exc:
                        enqueue(_error_frame("rate_limited", str(exc), request_id=request_id))
                        continue
                    except LimitExceeded as exc:
                        enqueue(_error_frame("limit_exceeded", str(exc), request_id=request_id))
                        continue
                    enqueue(
                        {
                            "v": 1,
                            "t": "presence.tracked",
                            "id": request_id,
                            "body": {"topic": topic, "expires_at": expires_at},
                        }
                    )
                elif frame_type == "presence.untrack":
                    if not isinstance(topic, str):
                        enqueue(_error_frame("invalid_request", "topic required", request_id=request_id))
                        continue
                    runtime.presence.untrack(topic, connection_id)
                    enqueue({"v": 1, "t": "presence.untracked", "id": request_id, "body": {"topic": topic}})
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            runtime.hub.unsubscribe(subscription)
        runtime.presence.untrack_all(connection_id)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)
        logger.debug("websocket session %s closed", connection_id)

    return ws
