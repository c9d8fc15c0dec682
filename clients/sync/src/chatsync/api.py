"""aiohttp client for the chat backend's CRUD endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from .errors import ApiError, NotConnectedError, ProtocolError
from .models import USER_STATUSES, Conversation, ConversationWithUser, Message, User


class ChatApi:
    def __init__(
        self,
        http: aiohttp.ClientSession,
        base_url: str,
        session_token: str | None = None,
        *,
        request_timeout_s: float = 10.0,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._session_token = session_token
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)

    @property
    def http(self) -> aiohttp.ClientSession:
        return self._http

    @property
    def session_token(self) -> str | None:
        return self._session_token

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        auth: bool = True,
    ) -> Dict[str, Any]:
        headers: Dict[str, str] = {}
        if auth:
            if self._session_token is None:
                raise NotConnectedError("no session; call start_session first")
            headers["Authorization"] = f"Bearer {self._session_token}"
        async with self._http.request(
            method,
            self._url(path),
            json=json,
            params=params,
            headers=headers,
            timeout=self._timeout,
        ) as response:
            try:
                payload = await response.json(content_type=None)
            except ValueError:
                payload = None
            if response.status >= 400:
                if not isinstance(payload, dict):
                    payload = {}
                raise ApiError(
                    response.status,
                    str(payload.get("code", "http_error")),
                    str(payload.get("message", response.reason or "")),
                )
        if not isinstance(payload, dict):
            raise ProtocolError(f"{method} {path} returned a non-object body")
        return payload

    @staticmethod
    def _list(payload: Dict[str, Any], key: str) -> List[Any]:
        rows = payload.get(key)
        if not isinstance(rows, list):
            raise ProtocolError(f"response field {key!r} must be a list")
        return rows

    async def start_session(self, user_id: str, *, name: str | None = None, email: str | None = None) -> User:
        """Exchange an identity for a session token; creates the profile on first use."""

        body: Dict[str, Any] = {"user_id": user_id}
        if name is not None:
            body["name"] = name
        if email is not None:
            body["email"] = email
        payload = await self._request("POST", "/v1/session/start", json=body, auth=False)
        token = payload.get("session_token")
        if not isinstance(token, str):
            raise ProtocolError("session_token missing")
        self._session_token = token
        return User.from_row(payload.get("user") or {})

    async def get_conversations(self) -> List[ConversationWithUser]:
        payload = await self._request("GET", "/v1/conversations")
        return [ConversationWithUser.from_row(row) for row in self._list(payload, "conversations")]

    async def get_or_create_conversation(self, participant_id: str) -> Conversation:
        payload = await self._request("POST", "/v1/conversations", json={"participant_id": participant_id})
        return Conversation.from_row(payload.get("conversation") or {})

    async def get_messages(self, conversation_id: str, *, after_seq: int = 0, limit: int | None = None) -> List[Message]:
        params = {"after_seq": str(after_seq)}
        if limit is not None:
            params["limit"] = str(limit)
        payload = await self._request(
            "GET",
            f"/v1/conversations/{quote(conversation_id, safe='')}/messages",
            params=params,
        )
        return [Message.from_row(row) for row in self._list(payload, "messages")]

    async def send_message(self, conversation_id: str, text: str, *, client_id: str | None = None) -> Message:
        body: Dict[str, Any] = {"text": text}
        if client_id is not None:
            body["client_id"] = client_id
        payload = await self._request(
            "POST",
            f"/v1/conversations/{quote(conversation_id, safe='')}/messages",
            json=body,
        )
        return Message.from_row(payload.get("message") or {})

    async def mark_read(self, conversation_id: str, seq: int) -> int:
        payload = await self._request(
            "POST",
            f"/v1/conversations/{quote(conversation_id, safe='')}/read",
            json={"seq": seq},
        )
        last_read = payload.get("last_read")
        if not isinstance(last_read, int):
            raise ProtocolError("last_read missing")
        return last_read

    async def get_all_users(self) -> List[User]:
        payload = await self._request("GET", "/v1/users")
        return [User.from_row(row) for row in self._list(payload, "users")]

    async def get_user_by_id(self, user_id: str) -> User:
        payload = await self._request("GET", f"/v1/users/{quote(user_id, safe='')}")
        return User.from_row(payload.get("user") or {})

    async def update_user_status(self, status: str) -> User:
        if status not in USER_STATUSES:
            raise ValueError("status must be one of online, away, offline")
        payload = await self._request("POST", "/v1/users/me/status", json={"status": status})
        return User.from_row(payload.get("user") or {})

    async def update_profile(self, *, name: str | None = None, avatar_url: str | None = None) -> User:
        body: Dict[str, Any] = {}
        if name is not None:
            body["name"] = name
        if avatar_url is not None:
            body["avatar_url"] = avatar_url
        payload = await self._request("POST", "/v1/users/me/profile", json=body)
        return User.from_row(payload.get("user") or {})
