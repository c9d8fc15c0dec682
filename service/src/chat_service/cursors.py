from __future__ import annotations

from typing import Dict, Tuple


class ReadCursorStore:
    """Tracks the last read message ``seq`` per user per conversation."""

    def __init__(self) -> None:
        self._positions: Dict[Tuple[str, str], int] = {}

    def mark_read(self, user_id: str, conv_id: str, seq: int) -> int:
        """Advance the read cursor to ``seq``, keeping monotonicity."""

        if seq < 0:
            raise ValueError("read cursor must be non-negative")
        key = (user_id, conv_id)
        current = self._positions.get(key, 0)
        last_read = max(current, seq)
        self._positions[key] = last_read
        return last_read

    def last_read(self, user_id: str, conv_id: str) -> int:
        return self._positions.get((user_id, conv_id), 0)
