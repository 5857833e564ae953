"""Boundary-safe streaming of generated text.

Generated pieces are raw bytes: a multi-byte UTF-8 character may be split
across two tokens, and an end-of-turn tag such as ``<end_of_turn>`` may be
produced as ordinary text a few characters at a time. :class:`StreamBuffer`
holds back a short tail of pending bytes so that neither a partial character
nor the first characters of a tag ever reach the caller.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable

from .errors import SinkError

DEFAULT_END_MARKERS: tuple[str, ...] = (
    "<end_of_turn>",
    "<start_of_turn>",
    "<|im_end|>",
    "<|eot_id|>",
    "<|endoftext|>",
)

# Bytes always held back after a flush so a marker starting near the tail
# is still whole when it is scanned.
FLUSH_MARGIN = 20

_GUARD_PREFIX = re.compile(rb"^[^A-Za-z0-9]*[A-Za-z0-9]+")

Sink = Callable[[str], object]


def utf8_char_length(first_byte: int) -> int:
    """Return the encoded length of the character starting with ``first_byte``.

    Continuation bytes and invalid lead bytes count as a single byte.
    """
    if first_byte & 0x80 == 0x00:
        return 1
    if first_byte & 0xE0 == 0xC0:
        return 2
    if first_byte & 0xF0 == 0xE0:
        return 3
    if first_byte & 0xF8 == 0xF0:
        return 4
    return 1


def last_utf8_boundary(data: bytes | bytearray, limit: int | None = None) -> int:
    """Return the largest offset <= ``limit`` that ends on a complete character."""
    if limit is None or limit > len(data):
        limit = len(data)
    pos = 0
    while pos < limit:
        char_len = utf8_char_length(data[pos])
        if pos + char_len > limit:
            break
        pos += char_len
    return pos


def guard_prefixes(markers: Iterable[str]) -> tuple[bytes, ...]:
    """Leading fragment of each marker that identifies a truncated marker.

    ``<end_of_turn>`` gives ``<end`` and ``<|im_end|>`` gives ``<|im``.
    """
    prefixes = []
    for marker in markers:
        encoded = marker.encode("utf-8")
        match = _GUARD_PREFIX.match(encoded)
        prefix = match.group(0) if match else encoded
        if prefix and prefix not in prefixes:
            prefixes.append(prefix)
    return tuple(prefixes)


class StreamBuffer:
    """Pending-text buffer for one generation call.

    Args:
        markers: Literal end-of-turn strings to detect in the generated text.
        sink: Optional callback receiving each emitted fragment in order.
        margin: Minimum number of bytes retained after a flush. Raised to
            the longest marker length when a marker is longer.
    """

    def __init__(
        self,
        markers: Iterable[str] = DEFAULT_END_MARKERS,
        sink: Sink | None = None,
        *,
        margin: int = FLUSH_MARGIN,
    ) -> None:
        markers = tuple(m for m in markers if m)
        self.markers = tuple(m.encode("utf-8") for m in markers)
        self.guards = guard_prefixes(markers)
        self.margin = max([margin, *(len(m) for m in self.markers)])
        self.sink = sink
        self.fragments: list[str] = []
        self.marker_found: bytes | None = None
        self._pending = bytearray()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def text(self) -> str:
        """Concatenation of every fragment emitted so far."""
        return "".join(self.fragments)

    def feed(self, piece: bytes) -> bool:
        """Append a decoded piece; return True when an end marker completed.

        On a marker the text before it is emitted and the buffer is emptied.
        Otherwise everything but the retained tail is emitted.
        """
        self._pending += piece

        hit = self._find_marker()
        if hit is not None:
            index, marker = hit
            self.marker_found = marker
            before = self._pending[:index]
            self._pending.clear()
            self._emit(before[: last_utf8_boundary(before)])
            return True

        if len(self._pending) > self.margin:
            cut = last_utf8_boundary(self._pending, len(self._pending) - self.margin)
            if cut > 0:
                head = bytes(self._pending[:cut])
                del self._pending[:cut]
                self._emit(head)
        return False

    def finish(self) -> None:
        """Emit the retained tail unless it may hold the start of a marker."""
        if not self._pending:
            return
        tail = bytes(self._pending)
        self._pending.clear()
        if any(guard in tail for guard in self.guards):
            logging.debug(f"Dropping final fragment with truncated marker: {tail!r}")
            return
        self._emit(tail[: last_utf8_boundary(tail)])

    def discard(self) -> None:
        """Forget pending bytes without emitting them."""
        self._pending.clear()

    def _find_marker(self) -> tuple[int, bytes] | None:
        best: tuple[int, bytes] | None = None
        for marker in self.markers:
            index = self._pending.find(marker)
            if index != -1 and (best is None or index < best[0]):
                best = (index, marker)
        return best

    def _emit(self, data: bytes | bytearray) -> None:
        if not data:
            return
        fragment = bytes(data).decode("utf-8", errors="replace")
        if self.sink is not None:
            try:
                self.sink(fragment)
            except Exception as e:
                raise SinkError(f"Stream callback failed: {e}") from e
        self.fragments.append(fragment)
