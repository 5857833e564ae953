"""Opaque handle table for sessions.

Slots are reused after release. Each slot carries a generation counter that
is bumped on release, so a handle kept after its session was released never
resolves to whichever session later occupies the same slot.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from .errors import InvalidHandleError
from .session import Session


@dataclass(frozen=True)
class Handle:
    index: int
    generation: int

    def __str__(self) -> str:
        return f"llama{self.index}.{self.generation}"


class SessionTable:
    def __init__(self) -> None:
        self._slots: list[Session | None] = []
        self._generations: list[int] = []
        self._free: list[int] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for s in self._slots if s is not None)

    def add(self, session: Session) -> Handle:
        with self._lock:
            if self._free:
                index = self._free.pop()
                self._slots[index] = session
            else:
                index = len(self._slots)
                self._slots.append(session)
                self._generations.append(0)
            return Handle(index, self._generations[index])

    def get(self, handle: Handle) -> Session:
        with self._lock:
            session = self._lookup(handle)
        if session is None:
            raise InvalidHandleError(f"Invalid llama handle: {handle}")
        return session

    def remove(self, handle: Handle) -> Session:
        """Detach the session behind ``handle`` and invalidate the handle."""
        with self._lock:
            session = self._lookup(handle)
            if session is None:
                raise InvalidHandleError(f"Invalid llama handle: {handle}")
            self._slots[handle.index] = None
            self._generations[handle.index] += 1
            self._free.append(handle.index)
        return session

    def sessions(self) -> list[Session]:
        with self._lock:
            return [s for s in self._slots if s is not None]

    def _lookup(self, handle: Handle) -> Session | None:
        if not isinstance(handle, Handle):
            return None
        if not 0 <= handle.index < len(self._slots):
            return None
        if self._generations[handle.index] != handle.generation:
            return None
        return self._slots[handle.index]
