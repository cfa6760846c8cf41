"""Lock levels shared by the connection and the filesystem front end."""

from __future__ import annotations

from enum import IntEnum


class LockKind(IntEnum):
    """File lock levels, ordered from weakest to strongest."""

    NONE = 0
    SHARED = 1
    RESERVED = 2
    PENDING = 3
    EXCLUSIVE = 4

    def level(self) -> int:
        """Numeric strength of the lock."""
        return int(self)