"""Command line client for the chat backend."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, TextIO

import aiohttp

from .api import ChatApi
from .config import ClientConfig, load_client_config_from_env
from .controller import ConversationController
from .errors import ChatError
from .models import Message
from .realtime import RealtimeClient


def _message_line(message: Message) -> dict[str, Any]:
    row = asdict(message)
    row["t"] = "message"
    return row


def _emit(output: TextIO, payload: dict[str, Any]) -> None:
    output.write(json.dumps(payload, sort_keys=True) + "\n")
    output.flush()


async def _watch(api: ChatApi, config: ClientConfig, args: argparse.Namespace, user_id: str, output: TextIO) -> None:
    realtime = RealtimeClient(
        api.http,
        config.ws_url,
        api.session_token or "",
        request_timeout_s=config.request_timeout_s,
        heartbeat_s=config.heartbeat_s,
        reconnect_max_s=config.reconnect_max_s,
    )
    await realtime.connect()
    controller = ConversationController(api, realtime, args.conversation_id, user_id, config=config)
    done = asyncio.Event()
    seen: set[str] = set()
    emitted = 0

    def on_messages(messages: list[Message]) -> None:
        nonlocal emitted
        for message in messages:
            if message.id in seen or not message.is_confirmed:
                continue
            seen.add(message.id)
            _emit(output, _message_line(message))
            emitted += 1
            if args.max_events is not None and emitted >= args.max_events:
                done.set()

    def on_typing(users: list[str]) -> None:
        _emit(output, {"t": "typing", "users": users, "label": controller.typing.label()})

    controller.feed.on_change(on_messages)
    controller.typing.on_change(on_typing)
    try:
        await controller.open()
        if args.max_events is not None and emitted >= args.max_events:
            return
        await done.wait()
    finally:
        await controller.close()
        await realtime.close()


async def _run(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    async with aiohttp.ClientSession() as http:
        api = ChatApi(http, config.base_url, request_timeout_s=config.request_timeout_s)
        me = await api.start_session(args.user, name=args.name, email=args.email)

        if args.command == "conversations":
            for conversation in await api.get_conversations():
                _emit(
                    output,
                    {
                        "t": "conversation",
                        "id": conversation.id,
                        "other_user": conversation.other_user.name if conversation.other_user else None,
                        "last_message": conversation.last_message.text if conversation.last_message else None,
                        "unread_count": conversation.unread_count,
                    },
                )
        elif args.command == "users":
            for user in await api.get_all_users():
                _emit(output, {"t": "user", **asdict(user)})
        elif args.command == "open":
            conversation = await api.get_or_create_conversation(args.participant_id)
            _emit(output, {"t": "conversation", **asdict(conversation)})
        elif args.command == "history":
            for message in await api.get_messages(args.conversation_id, after_seq=args.after_seq):
                _emit(output, _message_line(message))
        elif args.command == "send":
            message = await api.send_message(args.conversation_id, args.text)
            _emit(output, _message_line(message))
        elif args.command == "status":
            user = await api.update_user_status(args.status)
            _emit(output, {"t": "user", **asdict(user)})
        elif args.command == "watch":
            await _watch(api, config, args, me.id, output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat sync client")
    parser.add_argument("--base-url", default=None, help="Backend base URL (defaults to CHATSYNC_BASE_URL)")
    parser.add_argument("--user", required=True, help="User id to act as")
    parser.add_argument("--name", default=None, help="Display name used when the profile is created")
    parser.add_argument("--email", default=None, help="Email used when the profile is created")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("conversations", help="List conversations")
    subparsers.add_parser("users", help="List other users")

    open_parser = subparsers.add_parser("open", help="Get or create a conversation with a user")
    open_parser.add_argument("participant_id")

    history_parser = subparsers.add_parser("history", help="Print messages of a conversation")
    history_parser.add_argument("conversation_id")
    history_parser.add_argument("--after-seq", type=int, default=0)

    send_parser = subparsers.add_parser("send", help="Send a message")
    send_parser.add_argument("conversation_id")
    send_parser.add_argument("text")

    status_parser = subparsers.add_parser("status", help="Update your status")
    status_parser.add_argument("status", choices=["online", "away", "offline"])

    watch_parser = subparsers.add_parser("watch", help="Stream messages and typing indicators")
    watch_parser.add_argument("conversation_id")
    watch_parser.add_argument("--max-events", type=int, default=None, help="Exit after this many messages")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")

    config = load_client_config_from_env()
    if args.base_url:
        config = dataclasses.replace(config, base_url=args.base_url.rstrip("/"))
    try:
        return asyncio.run(_run(args, config, output or sys.stdout))
    except (ChatError, aiohttp.ClientError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
