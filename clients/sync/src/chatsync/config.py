from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_BASE_URL = "http://127.0.0.1:8080"
# The service never returns more rows than this per page.
MAX_HISTORY_PAGE_SIZE = 1000


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    typing_idle_s: float = 3.0
    typing_ttl_s: int = 10
    request_timeout_s: float = 10.0
    heartbeat_s: float = 25.0
    reconnect_max_s: float = 30.0
    history_page_size: int = 500

    @property
    def ws_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/v1/ws"


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


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


def _parse_page_size(name: str, default: int) -> int:
    parsed = _parse_positive_int(name, default)
    if parsed > MAX_HISTORY_PAGE_SIZE:
        raise ValueError(f"{name} must be at most {MAX_HISTORY_PAGE_SIZE}")
    return parsed


def _parse_url(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if not raw.startswith(("http://", "https://")):
        raise ValueError(f"{name} must be an http(s) URL")
    return raw.rstrip("/")


def load_client_config_from_env() -> ClientConfig:
    return ClientConfig(
        base_url=_parse_url("CHATSYNC_BASE_URL", DEFAULT_BASE_URL),
        typing_idle_s=_parse_positive_float("CHATSYNC_TYPING_IDLE_S", 3.0),
        typing_ttl_s=_parse_positive_int("CHATSYNC_TYPING_TTL_S", 10),
        request_timeout_s=_parse_positive_float("CHATSYNC_REQUEST_TIMEOUT_S", 10.0),
        heartbeat_s=_parse_positive_float("CHATSYNC_HEARTBEAT_S", 25.0),
        reconnect_max_s=_parse_positive_float("CHATSYNC_RECONNECT_MAX_S", 30.0),
        history_page_size=_parse_page_size("CHATSYNC_HISTORY_PAGE_SIZE", 500),
    )
