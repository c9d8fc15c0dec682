from __future__ import annotations

import os
from dataclasses import dataclass

from .presence import PresenceConfig


@dataclass(frozen=True)
class ServiceConfig:
    session_ttl_s: int = 3600
    presence_max_ttl_s: int = 60
    presence_min_ttl_s: int = 1
    tracks_per_min: int = 120
    ping_interval_s: int = 30

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000

    def presence_config(self) -> PresenceConfig:
        return PresenceConfig(
            max_ttl_seconds=self.presence_max_ttl_s,
            min_ttl_seconds=self.presence_min_ttl_s,
            tracks_per_min=self.tracks_per_min,
        )


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_service_config_from_env() -> ServiceConfig:
    min_ttl_s = _parse_positive_int("CHAT_SERVICE_PRESENCE_MIN_TTL_S", 1)
    max_ttl_s = _parse_positive_int("CHAT_SERVICE_PRESENCE_MAX_TTL_S", 60)
    if max_ttl_s < min_ttl_s:
        raise ValueError("CHAT_SERVICE_PRESENCE_MAX_TTL_S must not be below CHAT_SERVICE_PRESENCE_MIN_TTL_S")
    return ServiceConfig(
        session_ttl_s=_parse_positive_int("CHAT_SERVICE_SESSION_TTL_S", 3600),
        presence_max_ttl_s=max_ttl_s,
        presence_min_ttl_s=min_ttl_s,
        tracks_per_min=_parse_positive_int("CHAT_SERVICE_TRACKS_PER_MIN", 120),
        ping_interval_s=_parse_positive_int("CHAT_SERVICE_PING_INTERVAL_S", 30),
    )
