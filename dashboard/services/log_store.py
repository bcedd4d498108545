"""Windowed retrieval of arbitrarily large run logs.

A log is never fetched in one piece unless it is small. Large logs load
as their first and last CHUNK bytes with a single gap in between, and the
consumer grows the loaded region on request with expand(). Live output is
appended at the tail as it arrives.

No operation mutates the window until every fetch it needs has succeeded,
so a failed fetch leaves the store exactly as it was.
"""

import logging
from typing import Optional, Union

from config import settings
from errors import DataValidationError, SessionClosedError, TransportError
from models.job import Run
from models.log_window import Gap, LogWindow
from services.cancellation import CancelScope
from services.job_service_client import JobServiceClient

logger = logging.getLogger(__name__)


class WindowedLogStore:
    """Owns the LogWindow of one run and every fetch that grows it."""

    def __init__(
        self,
        client: JobServiceClient,
        run: Run,
        chunk_size: Optional[int] = None,
        scope: Optional[CancelScope] = None,
    ):
        self.client = client
        self.run = run
        self.chunk_size = chunk_size or settings.log_chunk_size
        self.scope = scope
        self.loaded = False
        self.closed = False
        # Bytes up to here were read from the service; anything past it came from appends
        self.confirmed_len = 0

    @property
    def window(self) -> LogWindow:
        return self.run.log_window

    def seek_offset(self) -> int:
        """Byte offset just past the materialized tail.

        The next live fetch starts here so already-held bytes are never
        downloaded twice.
        """
        return self.window.log_len

    async def _fetch(self, seek: int, limit: int) -> bytes:
        if not self.run.log_url:
            raise DataValidationError(f"Run {self.run.id} has no log_url", field="log_url")
        data = await self.client.get_log(self.run.log_url, seek=seek, limit=limit, scope=self.scope)
        if len(data) != limit:
            raise TransportError(
                f"Short log read for run {self.run.id}: wanted {limit} bytes at {seek}, got {len(data)}",
                retryable=True,
            )
        return data

    async def load(self, log_len: Optional[int] = None) -> LogWindow:
        """Initial load, and reload after a resync.

        Logs shorter than 3 x CHUNK are fetched whole (or taken from the
        run's inline `log` when it is complete). Longer ones get the first
        and last CHUNK bytes with a gap between.
        """
        self._check_open()
        log_len = self.run.log_len if log_len is None else log_len
        chunk = self.chunk_size

        if log_len == 0:
            fresh = LogWindow()
        elif log_len < 3 * chunk:
            inline = self.run.inline_log.encode("utf-8") if self.run.inline_log is not None else None
            if inline is not None and len(inline) == log_len:
                data = inline
            else:
                data = await self._fetch(0, log_len)
            fresh = LogWindow.whole(data)
        else:
            head = await self._fetch(0, chunk)
            tail = await self._fetch(log_len - chunk, chunk)
            fresh = LogWindow.head_and_tail(head, tail, log_len)

        self.window.replace(fresh)
        self.run.log_len = log_len
        self.confirmed_len = log_len
        self.loaded = True
        logger.debug(f"Loaded log of run {self.run.id}: {self.window!r}")
        return self.window

    def append(self, chunk: Union[str, bytes]) -> int:
        """Append live output at the tail. Returns the new log_len."""
        self._check_open()
        data = chunk.encode("utf-8") if isinstance(chunk, str) else chunk
        self.window.append(data)
        self.run.log_len = max(self.run.log_len, self.window.log_len)
        return self.window.log_len

    async def catch_up(self) -> int:
        """Read whatever the service holds past seek_offset() and append it.

        Used once the event subscription is open, so output written while
        the initial load was in flight is not lost. Reads CHUNK-sized pieces
        until a short one. Returns the number of bytes added.
        """
        self._check_open()
        if not self.run.log_url:
            logger.debug(f"Run {self.run.id} has no log_url; nothing to catch up")
            return 0

        start = offset = self.seek_offset()
        pieces = []
        while True:
            data = await self.client.get_log(
                self.run.log_url, seek=offset, limit=self.chunk_size, scope=self.scope
            )
            pieces.append(data)
            offset += len(data)
            if len(data) < self.chunk_size:
                break

        for piece in pieces:
            self.window.append(piece)
        self.run.log_len = max(self.run.log_len, self.window.log_len)
        self.confirmed_len = self.window.log_len
        if offset > start:
            logger.info(f"Caught up {offset - start} log bytes for run {self.run.id}")
        return offset - start

    async def expand(self, gap: Gap, from_end: bool = False, size: Optional[int] = None) -> bool:
        """Fetch up to `size` bytes (at most CHUNK) into `gap`.

        Reads from the gap's start, or from its end when `from_end` is set.
        Returns False when the read went stale: the gap's bounds changed
        while the fetch was in flight (an interleaved expand on the same
        gap), in which case the fetched bytes are discarded.
        """
        self._check_open()
        size = min(size or self.chunk_size, self.chunk_size, gap.size)
        if size <= 0:
            raise ValueError(f"Nothing to expand in {gap}")
        seek = gap.end - size if from_end else gap.start

        data = await self._fetch(seek, size)

        if not self.window.splice(gap, from_end, data):
            logger.debug(
                f"Discarding stale read of run {self.run.id} [{seek}, {seek + size}): "
                f"gap is now {self.window.gap}"
            )
            return False
        return True

    async def reconcile(self, final_len: int) -> None:
        """Bring the window to exactly `final_len` bytes once a run has ended.

        Appends and length reports travel on different topics, so the two
        only have to agree once the run is finished. When nothing but bytes
        read from the service is held, the missing tail is fetched from
        seek_offset() in CHUNK-sized requests. Appends carry no offset, so
        once any are held a short window cannot say where its hole is, and a
        window longer than the final length saw duplicates. Both are
        reloaded.
        """
        self._check_open()
        held = self.seek_offset()
        if held == final_len:
            self.run.log_len = final_len
            self.confirmed_len = final_len
            return

        if held < final_len and held == self.confirmed_len:
            pieces = []
            offset = held
            while offset < final_len:
                size = min(self.chunk_size, final_len - offset)
                pieces.append(await self._fetch(offset, size))
                offset += size
            for piece in pieces:
                self.window.append(piece)
            self.run.log_len = final_len
            self.confirmed_len = final_len
            logger.info(f"Fetched {final_len - held} missing log bytes for run {self.run.id}")
            return

        if held > final_len:
            logger.warning(
                f"Run {self.run.id} log holds {held} bytes but the service reports {final_len}; reloading"
            )
        else:
            logger.info(
                f"Run {self.run.id} log is {final_len - held} bytes short after live appends; reloading"
            )
        await self.load(final_len)

    def close(self) -> None:
        """Stop all further retrieval (run deleted or session torn down)."""
        self.closed = True

    def _check_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"Log of run {self.run.id} is closed", resource=self.run.id)
