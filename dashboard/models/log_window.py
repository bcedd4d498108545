"""Partially loaded, gap-aware representation of a run's log.

A LogWindow is an ordered list of parts. Each part is either fetched
bytes (Text) or an unfetched byte range (Gap). Concatenating the byte
ranges of all parts always reconstructs [0, log_len) exactly, and there is
at most one Gap: logs are fetched head-first and tail-first, so the middle
is the only region that can be missing.

Text holds raw bytes rather than str. Byte offsets are what the service
speaks, and a fetch boundary can land inside a multi-byte UTF-8 sequence.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union


@dataclass(frozen=True)
class Text:
    """Fetched log bytes."""

    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Gap:
    """Unfetched byte range [start, end) of the log."""

    start: int
    end: int

    def __post_init__(self):
        if not 0 <= self.start < self.end:
            raise ValueError(f"Invalid gap [{self.start}, {self.end})")

    @property
    def size(self) -> int:
        return self.end - self.start


Part = Union[Text, Gap]


class LogWindow:
    """Mutable window over a log. Owned by a single WindowedLogStore."""

    def __init__(self, parts: Optional[List[Part]] = None):
        self._parts: List[Part] = []
        for part in parts or []:
            self._push(part)
        self._check()

    @classmethod
    def whole(cls, data: bytes) -> "LogWindow":
        return cls([Text(data)] if data else [])

    @classmethod
    def head_and_tail(cls, head: bytes, tail: bytes, log_len: int) -> "LogWindow":
        """Window with the first and last bytes fetched and a gap between."""
        parts: List[Part] = [Text(head)]
        if len(head) < log_len - len(tail):
            parts.append(Gap(len(head), log_len - len(tail)))
        parts.append(Text(tail))
        window = cls(parts)
        if window.log_len != log_len:
            raise ValueError(f"Head and tail overlap: {len(head)} + {len(tail)} > {log_len}")
        return window

    @property
    def parts(self) -> Tuple[Part, ...]:
        return tuple(self._parts)

    @property
    def log_len(self) -> int:
        return sum(part.size for part in self._parts)

    @property
    def gap(self) -> Optional[Gap]:
        for part in self._parts:
            if isinstance(part, Gap):
                return part
        return None

    @property
    def is_complete(self) -> bool:
        return self.gap is None

    def spans(self) -> Iterator[Tuple[int, Part]]:
        """Yield (byte offset, part) pairs in log order."""
        offset = 0
        for part in self._parts:
            yield offset, part
            offset += part.size

    def materialized(self) -> bytes:
        """All fetched bytes in order, gaps skipped."""
        return b"".join(part.data for part in self._parts if isinstance(part, Text))

    def append(self, data: bytes) -> int:
        """Append live tail bytes. Returns the new log_len."""
        if data:
            self._push(Text(data))
        return self.log_len

    def splice(self, gap: Gap, from_end: bool, data: bytes) -> bool:
        """Fill part of `gap` with fetched bytes.

        `gap` is the gap as it was when the fetch was issued. If the current
        gap no longer has the same bounds the read is stale and nothing is
        applied; returns False in that case.
        """
        current = self.gap
        if current is None or (current.start, current.end) != (gap.start, gap.end):
            return False
        if len(data) > gap.size:
            raise ValueError(f"{len(data)} bytes do not fit in gap [{gap.start}, {gap.end})")
        if not data:
            return True

        index = self._parts.index(current)
        if len(data) == gap.size:
            replacement: List[Part] = [Text(data)]
        elif from_end:
            replacement = [Gap(gap.start, gap.end - len(data)), Text(data)]
        else:
            replacement = [Text(data), Gap(gap.start + len(data), gap.end)]

        rest = self._parts[index + 1:]
        del self._parts[index:]
        for part in replacement + rest:
            self._push(part)
        self._check()
        return True

    def replace(self, other: "LogWindow") -> None:
        """Swap in a freshly loaded window (resync after a snapshot)."""
        self._parts = list(other._parts)

    def _push(self, part: Part) -> None:
        if part.size == 0:
            return
        if isinstance(part, Text) and self._parts and isinstance(self._parts[-1], Text):
            self._parts[-1] = Text(self._parts[-1].data + part.data)
        else:
            self._parts.append(part)

    def _check(self) -> None:
        if sum(1 for part in self._parts if isinstance(part, Gap)) > 1:
            raise ValueError("A log window can hold at most one gap")
        offset = 0
        for part in self._parts:
            if isinstance(part, Gap) and part.start != offset:
                raise ValueError(f"Gap [{part.start}, {part.end}) does not start at offset {offset}")
            offset += part.size

    def __repr__(self) -> str:
        desc = ", ".join(
            f"Text({part.size})" if isinstance(part, Text) else f"Gap({part.start}, {part.end})"
            for part in self._parts
        )
        return f"LogWindow([{desc}])"
