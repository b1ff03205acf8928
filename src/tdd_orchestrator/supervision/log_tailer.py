"""
Durable log tailing.

A :class:`LogTailer` follows one append-only log file and hands every complete
line to its extractor. Reading resumes from a persisted :class:`StreamCursor`
so that a restarted orchestrator neither skips nor invents signals:

- Partial trailing data is buffered until its newline arrives.
- :meth:`LogTailer.commit` stores the *safe* position, which never passes the
  start of a multi-line block the extractor has not finished. Replaying from
  a committed cursor therefore reproduces the same ``(epoch, offset)`` keys
  and the same sequence numbers for every signal after it.
- A file that shrinks below the cursor, or is replaced (new inode), starts a
  new epoch at offset 0. Sequence numbers keep increasing across epochs.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from tdd_orchestrator.domain.models import StreamCursor
from tdd_orchestrator.domain.signals import Signal
from tdd_orchestrator.supervision.extractors import SignalExtractor, extractor_for_stream
from tdd_orchestrator.utils.concurrency import CancellationToken, sleep_or_cancel

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

DEFAULT_MAX_READ_BYTES: Final[int] = 1_048_576
DEFAULT_POLL_INTERVAL_SECONDS: Final[float] = 0.25


class CursorStore(Protocol):
    def get(self, stream_id: str) -> StreamCursor | None: ...

    def save(self, cursor: StreamCursor) -> StreamCursor: ...


class MemoryCursorStore:
    """In-process cursor store; persistence lives in ``CursorRepo``."""

    def __init__(self) -> None:
        self._cursors: dict[str, StreamCursor] = {}

    def get(self, stream_id: str) -> StreamCursor | None:
        return self._cursors.get(stream_id)

    def save(self, cursor: StreamCursor) -> StreamCursor:
        self._cursors[cursor.stream_id] = cursor
        return cursor


class LogTailer:
    def __init__(
        self,
        stream_id: str,
        path: Path | str,
        extractor: SignalExtractor | None = None,
        cursor_store: CursorStore | None = None,
        *,
        max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
        logger: Any | None = None,
    ) -> None:
        if max_read_bytes <= 0:
            raise ValueError("max_read_bytes must be > 0")
        self._stream_id = stream_id
        self._path = Path(path)
        self._extractor = extractor if extractor is not None else extractor_for_stream(stream_id)
        self._store = cursor_store if cursor_store is not None else MemoryCursorStore()
        self._max_read_bytes = max_read_bytes
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        cursor = self._store.get(stream_id)
        if cursor is None:
            cursor = StreamCursor(stream_id=stream_id, path=self._path.as_posix())
        self._epoch = cursor.epoch
        self._read_offset = cursor.offset
        self._line_start = cursor.offset
        self._sequence = cursor.sequence
        self._inode = cursor.inode
        self._size = cursor.size
        self._buffer = b""
        # (offset, sequence) of signals emitted since the last commit.
        self._emitted: list[tuple[int, int]] = []

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def path(self) -> Path:
        return self._path

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def next_sequence(self) -> int:
        return self._sequence

    @property
    def dropped_lines(self) -> int:
        return self._extractor.dropped_lines

    def poll(self) -> list[Signal]:
        """Read newly appended bytes and return the signals they complete."""

        try:
            stat = os.stat(self._path)
        except FileNotFoundError:
            return []

        if self._rotated(stat.st_ino, stat.st_size):
            self._start_epoch(reason="rotated" if self._inode != stat.st_ino else "truncated")
        self._inode = stat.st_ino
        self._size = stat.st_size
        if stat.st_size <= self._read_offset:
            return []

        with open(self._path, "rb") as handle:
            handle.seek(self._read_offset)
            chunk = handle.read(self._max_read_bytes)
        self._read_offset += len(chunk)
        self._buffer += chunk

        signals: list[Signal] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw_line = self._buffer[: newline + 1]
            self._buffer = self._buffer[newline + 1 :]
            line_offset = self._line_start
            self._line_start += len(raw_line)
            text = raw_line.decode("utf-8", errors="replace")
            for payload in self._extractor.feed(text, offset=line_offset):
                signals.append(
                    Signal(
                        stream_id=self._stream_id,
                        epoch=self._epoch,
                        offset=line_offset,
                        sequence=self._sequence,
                        payload=payload,
                    )
                )
                self._emitted.append((line_offset, self._sequence))
                self._sequence += 1
        return signals

    def commit(self) -> StreamCursor:
        """Persist the furthest position from which replay loses nothing."""

        safe_offset = self._line_start
        pending = self._extractor.pending_start
        if pending is not None:
            safe_offset = min(safe_offset, pending)
        safe_sequence = self._sequence
        for offset, sequence in self._emitted:
            if offset >= safe_offset:
                safe_sequence = sequence
                break
        self._emitted = [item for item in self._emitted if item[0] >= safe_offset]

        cursor = StreamCursor(
            stream_id=self._stream_id,
            path=self._path.as_posix(),
            epoch=self._epoch,
            offset=safe_offset,
            sequence=safe_sequence,
            inode=self._inode,
            size=self._size,
        )
        return self._store.save(cursor)

    def advance_epoch(self) -> int:
        """Start a new epoch without moving the read position (process restart)."""

        self._epoch += 1
        self._extractor.reset()
        self._emitted = []
        self._logger.info(
            "log_stream_epoch_advanced", stream_id=self._stream_id, epoch=self._epoch
        )
        self.commit()
        return self._epoch

    async def follow(
        self,
        sink: asyncio.Queue[Signal] | Callable[[Signal], Awaitable[None]],
        *,
        token: CancellationToken,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Poll until ``token`` is cancelled, pushing signals into ``sink``."""

        while not token.is_cancelled:
            for signal in self.poll():
                if isinstance(sink, asyncio.Queue):
                    await sink.put(signal)
                else:
                    await sink(signal)
            if await sleep_or_cancel(poll_interval_seconds, token):
                break

    def _rotated(self, inode: int, size: int) -> bool:
        if self._inode is not None and inode != self._inode:
            return True
        return size < self._read_offset

    def _start_epoch(self, *, reason: str) -> None:
        previous = self._epoch
        self._epoch += 1
        self._read_offset = 0
        self._line_start = 0
        self._buffer = b""
        self._emitted = []
        self._extractor.reset()
        self._logger.info(
            "log_stream_rotated",
            stream_id=self._stream_id,
            reason=reason,
            previous_epoch=previous,
            epoch=self._epoch,
        )


__all__ = [
    "DEFAULT_MAX_READ_BYTES",
    "DEFAULT_POLL_INTERVAL_SECONDS",
    "CursorStore",
    "LogTailer",
    "MemoryCursorStore",
]
