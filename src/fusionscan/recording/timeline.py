# src/fusionscan/recording/timeline.py
"""
Timeline recording: a length-prefixed binary stream of captured frames.

Stream layout, all integers little-endian:
    repeat:
        <I body_len>
        body:
            <I time_ms>        offset from the first recorded frame
            <I color_len>      number of colour bytes
            <I depth_count>    number of uint16 depth samples
            color bytes
            depth samples (<u2)
"""
from __future__ import annotations

import logging
import struct
import threading
from collections import deque
from dataclasses import dataclass
from typing import BinaryIO, Iterator

import numpy as np

from ..system.frames import Frame, FrameGeometry, FrameSource

logger = logging.getLogger(__name__)

_LEN = struct.Struct("<I")
_HEADER = struct.Struct("<III")
UINT32_MAX = 0xFFFFFFFF


@dataclass
class TimelineRecord:
    time_ms: int
    color: bytes
    depth: np.ndarray  # flat uint16


def encode_record(time_ms: int, color: bytes, depth: np.ndarray) -> bytes:
    if not 0 <= int(time_ms) <= UINT32_MAX:
        raise ValueError(f"time_ms out of uint32 range: {time_ms}")
    depth_le = np.ascontiguousarray(depth, dtype="<u2").reshape(-1)
    body = _HEADER.pack(int(time_ms), len(color), int(depth_le.size)) + bytes(color) + depth_le.tobytes()
    return _LEN.pack(len(body)) + body


def decode_record(body: bytes) -> TimelineRecord:
    if len(body) < _HEADER.size:
        raise ValueError("Record body shorter than its header")
    time_ms, color_len, depth_count = _HEADER.unpack_from(body, 0)
    expected = _HEADER.size + color_len + 2 * depth_count
    if len(body) != expected:
        raise ValueError(f"Record body is {len(body)} bytes, header describes {expected}")
    off = _HEADER.size
    color = bytes(body[off:off + color_len])
    depth = np.frombuffer(body, dtype="<u2", count=depth_count, offset=off + color_len).astype(np.uint16)
    return TimelineRecord(int(time_ms), color, depth)


def _read_exact(f: BinaryIO, n: int) -> bytes:
    data = f.read(n)
    if len(data) != n:
        raise ValueError(f"Truncated timeline stream: wanted {n} bytes, got {len(data)}")
    return data


def iter_records(path: str) -> Iterator[TimelineRecord]:
    with open(path, "rb") as f:
        while True:
            head = f.read(_LEN.size)
            if not head:
                return
            if len(head) != _LEN.size:
                raise ValueError("Truncated timeline stream: partial length prefix")
            (body_len,) = _LEN.unpack(head)
            yield decode_record(_read_exact(f, body_len))


class TimelineRecorder:
    """
    Background writer for the timeline stream.

    append() is called from the pipeline thread and only enqueues owned copies;
    the writer thread wakes on each enqueue and drains everything queued.
    close() stops the thread after the queue is empty and closes the file.
    """

    def __init__(self, path: str, *, start: bool = True):
        self.path = path
        self._queue: deque[tuple[int, bytes, np.ndarray]] = deque()
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name="timeline-writer")
        self._first_ts: int | None = None
        self._file = open(path, "wb")
        self.records_written = 0
        self.error: BaseException | None = None
        if start:
            self.start()

    def start(self) -> None:
        self._thread.start()

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def append(self, frame: Frame) -> None:
        if self._stop.is_set():
            raise RuntimeError("TimelineRecorder is closed")
        if self.error is not None:
            # writer is gone; nothing would drain the queue
            raise RuntimeError(f"Timeline writer failed: {self.error}") from self.error
        ts = int(frame.timestamp_ms)
        if self._first_ts is None:
            self._first_ts = ts
        offset = min(max(0, ts - self._first_ts), UINT32_MAX)
        item = (offset, frame.color_data, frame.depth_data.copy())
        with self._cond:
            self._queue.append(item)
            self._cond.notify()

    def _drain(self) -> list[tuple[int, bytes, np.ndarray]]:
        with self._cond:
            while not self._queue and not self._stop.is_set():
                self._cond.wait()
            items = list(self._queue)
            self._queue.clear()
        return items

    def _run(self) -> None:
        try:
            while True:
                items = self._drain()
                for time_ms, color, depth in items:
                    self._file.write(encode_record(time_ms, color, depth))
                    self.records_written += 1
                if items:
                    self._file.flush()
                if self._stop.is_set() and self.pending == 0:
                    break
        except (OSError, ValueError) as ex:
            self.error = ex
            with self._cond:
                self._queue.clear()
            logger.exception("Timeline writer failed; recording stopped")

    def close(self, timeout: float | None = None) -> None:
        if self._file.closed:
            return
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
        elif self._thread.ident is None:
            # never started: write out what was queued
            self._run()
        self._file.close()
        logger.info("Timeline closed: %d record(s) in %s", self.records_written, self.path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class TimelineSource(FrameSource):
    """Replays a recorded timeline. Records that do not fit the geometry come out with their own shape."""

    def __init__(self, path: str, geometry: FrameGeometry):
        self.path = path
        self.geometry = geometry
        self._it: Iterator[TimelineRecord] | None = None
        self._exhausted = False

    def open(self) -> "TimelineSource":
        self._it = iter_records(self.path)
        self._exhausted = False
        return self

    def close(self) -> None:
        if self._it is not None:
            self._it.close()
        self._it = None

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def acquire(self) -> Frame | None:
        if self._it is None:
            self.open()
        try:
            rec = next(self._it)
        except StopIteration:
            self._exhausted = True
            return None

        g = self.geometry
        color = np.frombuffer(rec.color, dtype=np.uint8)
        if color.size == 4 * g.color_width * g.color_height:
            color = color.reshape(g.color_shape)
        else:
            color = color[: color.size // 4 * 4].reshape(1, -1, 4)
        depth = rec.depth
        if depth.size == g.depth_width * g.depth_height:
            depth = depth.reshape(g.depth_shape)
        else:
            depth = depth.reshape(1, -1)
        return Frame(color=color.copy(), depth=depth.copy(), timestamp_ms=rec.time_ms)
