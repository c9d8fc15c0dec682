from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Callable, Dict

from .store import _now_ms


@dataclass
class PresenceConfig:
    max_ttl_seconds: int = 60
    min_ttl_seconds: int = 1
    max_keys_per_topic: int = 256
    tracks_per_min: int = 120
    sweeper_interval_seconds: float = 1.0


@dataclass
class Track:
    meta: dict
    expires_at_ms: int


class RateLimitExceeded(Exception):
    pass


class LimitExceeded(Exception):
    pass


class FixedWindowRateLimiter:
    def __init__(self, limit: int, window_ms: int = 60_000) -> None:
        self.limit = limit
        self.window_ms = window_ms
        self._windows: Dict[str, tuple[int, int]] = {}

    def allow(self, key: str, now_ms: int) -> bool:
        window_start, count = self._windows.get(key, (now_ms, 0))
        if now_ms - window_start >= self.window_ms:
            window_start, count = now_ms, 0
        count += 1
        self._windows[key] = (window_start, count)
        return count <= self.limit

    def forget(self, key: str) -> None:
        self._windows.pop(key, None)


Publisher = Callable[[str, dict], None]


def _presence_frame(frame_type: str, topic: str, body: dict) -> dict:
    return {"v": 1, "t": frame_type, "body": {"topic": topic, **body}}


class Presence:
    """Ephemeral per-topic presence state with TTL leases.

    Each presence key (one per connection) holds at most one meta per topic.
    State changes are published as ``presence.join`` / ``presence.leave``
    frames on the topic itself.
    """

    def __init__(
        self,
        config: PresenceConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
        publish: Publisher | None = None,
    ) -> None:
        self.config = config or PresenceConfig()
        self._now = now_func
        self._publish = publish
        self._topics: Dict[str, Dict[str, Track]] = {}
        self._track_rate = FixedWindowRateLimiter(self.config.tracks_per_min)
        self._sweeper_task: asyncio.Task | None = None

    def bind(self, publish: Publisher) -> None:
        self._publish = publish

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.sweeper_interval_seconds)
                self.expire()
        except asyncio.CancelledError:
            return

    def _clamp_ttl(self, ttl_seconds: int) -> int:
        return max(self.config.min_ttl_seconds, min(self.config.max_ttl_seconds, ttl_seconds))

    def _emit(self, frame_type: str, topic: str, body: dict) -> None:
        if self._publish is not None:
            self._publish(topic, _presence_frame(frame_type, topic, body))

    def track(self, topic: str, key: str, meta: dict, ttl_seconds: int) -> int:
        now_ms = self._now()
        if not self._track_rate.allow(key, now_ms):
            raise RateLimitExceeded("presence tracks exceeded")

        tracks = self._topics.setdefault(topic, {})
        prior = tracks.get(key)
        if prior is None and len(tracks) >= self.config.max_keys_per_topic:
            raise LimitExceeded("topic presence cap reached")

        expires_at_ms = now_ms + self._clamp_ttl(ttl_seconds) * 1000
        if prior is not None and prior.expires_at_ms > now_ms and _same_meta(prior.meta, meta):
            prior.expires_at_ms = expires_at_ms
            return expires_at_ms

        stored = dict(meta)
        stored["presence_ref"] = secrets.token_hex(6)
        tracks[key] = Track(meta=stored, expires_at_ms=expires_at_ms)
        if prior is not None:
            self._emit("presence.leave", topic, {"key": key, "left_presences": [prior.meta]})
        self._emit("presence.join", topic, {"key": key, "new_presences": [stored]})
        return expires_at_ms

    def untrack(self, topic: str, key: str) -> bool:
        tracks = self._topics.get(topic)
        if not tracks or key not in tracks:
            return False
        track = tracks.pop(key)
        if not tracks:
            self._topics.pop(topic, None)
        self._emit("presence.leave", topic, {"key": key, "left_presences": [track.meta]})
        return True

    def untrack_all(self, key: str) -> None:
        for topic in [topic for topic, tracks in self._topics.items() if key in tracks]:
            self.untrack(topic, key)
        self._track_rate.forget(key)

    def state(self, topic: str) -> Dict[str, list[dict]]:
        now_ms = self._now()
        tracks = self._topics.get(topic, {})
        return {key: [dict(track.meta)] for key, track in tracks.items() if track.expires_at_ms > now_ms}

    def expire(self) -> None:
        now_ms = self._now()
        expired: list[tuple[str, str]] = []
        for topic, tracks in self._topics.items():
            for key, track in tracks.items():
                if track.expires_at_ms <= now_ms:
                    expired.append((topic, key))
        for topic, key in expired:
            self.untrack(topic, key)


def _same_meta(stored: dict, meta: dict) -> bool:
    return {k: v for k, v in stored.items() if k != "presence_ref"} == meta
