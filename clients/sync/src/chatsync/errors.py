from __future__ import annotations


class ChatError(Exception):
    """Base class for client-side chat failures."""


class ProtocolError(ChatError):
    """A row or frame from the backend did not have the expected shape."""


class NotConnectedError(ChatError):
    pass


class ApiError(ChatError):
    def __init__(self, status: int, code: str, message: str) -> None:
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")


class ChannelError(ChatError):
    """The realtime broker rejected a channel request."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")
