"""Presence-based typing indicators."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

logger = logging.getLogger(__name__)

Listener = Callable[[List[str]], None]


def _same_presence(left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    left_ref = left.get("presence_ref")
    right_ref = right.get("presence_ref")
    if left_ref is not None or right_ref is not None:
        return left_ref == right_ref
    return dict(left) == dict(right)


class TypingAggregator:
    """Aggregates a typing topic's presence state into the set of typing users.

    ``sync`` replaces the whole state; ``join`` and ``leave`` patch a single
    presence key. The current user is never reported.
    """

    def __init__(self, current_user_id: str) -> None:
        self.current_user_id = current_user_id
        self._state: Dict[str, List[dict]] = {}
        self._typing: List[str] = []
        self._listeners: List[Listener] = []

    def on_change(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def typing_users(self) -> List[str]:
        return list(self._typing)

    def label(self) -> str:
        count = len(self._typing)
        if count == 0:
            return ""
        if count == 1:
            return "Someone is typing..."
        return f"{count} people are typing..."

    def sync(self, state: Mapping[str, Any]) -> None:
        self._state = {}
        for key, metas in state.items():
            if isinstance(metas, list):
                kept = [dict(meta) for meta in metas if isinstance(meta, Mapping)]
                if kept:
                    self._state[key] = kept
        self._recompute()

    def join(self, key: str, new_presences: List[Mapping[str, Any]]) -> None:
        metas = [meta for meta in self._state.get(key, [])]
        for presence in new_presences:
            if not isinstance(presence, Mapping):
                continue
            metas = [meta for meta in metas if not _same_presence(meta, presence)]
            metas.append(dict(presence))
        if metas:
            self._state[key] = metas
        self._recompute()

    def leave(self, key: str, left_presences: List[Mapping[str, Any]]) -> None:
        metas = self._state.get(key)
        if metas is None:
            return
        remaining = [
            meta
            for meta in metas
            if not any(isinstance(left, Mapping) and _same_presence(meta, left) for left in left_presences)
        ]
        if remaining:
            self._state[key] = remaining
        else:
            self._state.pop(key, None)
        self._recompute()

    def clear(self) -> None:
        self._state = {}
        self._recompute()

    def _recompute(self) -> None:
        users: Set[str] = set()
        for metas in self._state.values():
            for meta in metas:
                user_id = meta.get("user_id")
                if not isinstance(user_id, str) or user_id == self.current_user_id:
                    continue
                if meta.get("is_typing") is True:
                    users.add(user_id)
        typing = sorted(users)
        if typing == self._typing:
            return
        self._typing = typing
        for listener in list(self._listeners):
            try:
                listener(list(typing))
            except Exception:
                logger.exception("typing listener failed")


class TypingNotifier:
    """Tracks the local user's typing state on a presence channel.

    Every keystroke (re)arms an idle timer; the presence meta is untracked
    when the timer fires or when :meth:`stop` is called. The meta is
    re-tracked once half its TTL has passed so it does not expire mid-burst.
    """

    def __init__(self, channel, *, idle_s: float = 3.0, ttl_s: int = 10) -> None:
        self._channel = channel
        self._idle_s = idle_s
        self._ttl_s = ttl_s
        self._typing = False
        self._last_track: float | None = None
        self._idle_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_typing(self) -> bool:
        return self._typing

    def keystroke(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if not self._typing or self._last_track is None or now - self._last_track >= self._ttl_s / 2:
            self._typing = True
            self._last_track = now
            self._spawn(self._channel.track({"is_typing": True}, ttl_seconds=self._ttl_s))
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        self._idle_handle = loop.call_later(self._idle_s, self.stop)

    def stop(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        if not self._typing:
            return
        self._typing = False
        self._last_track = None
        self._spawn(self._channel.untrack())

    async def aclose(self) -> None:
        self.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

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
            logger.warning("typing presence update failed: %s", exc)
