"""A shared slot that hands the latest captured frame to any number of readers."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

log = logging.getLogger(__name__)

BUFFER_LOCK_MAX_CALLBACKS = 10
DEFAULT_BUFFER_LOCK_TIMEOUT = 16  # ms, roughly 60fps
DEFAULT_BUFFER_LOCK_GET_TIMEOUT = 2000  # ms

CheckStreaming = Callable[["BufferLock"], bool]
NotifyBuffer = Callable[["BufferLock", Any], None]
WriteFn = Callable[["BufferLock", Any, int], int]


def _now_us() -> int:
    return time.monotonic_ns() // 1000


class BufferLock:
    """Holds a reference to the most recent buffer and wakes waiting readers."""

    def __init__(self, name: str, timeout_ms: int = 0, frame_interval_ms: int = 0) -> None:
        self.name = name
        self.buf_list: Any = None
        self.check_streaming: list[CheckStreaming] = []
        self.notify_buffer: list[NotifyBuffer] = []
        self.buf: Any = None
        self.buf_time_us = 0
        self.counter = 0
        self.refs = 0
        self.dropped = 0
        self.timeout_us = max(timeout_ms, DEFAULT_BUFFER_LOCK_TIMEOUT) * 1000
        self.frame_interval_ms = frame_interval_ms
        self._cond = threading.Condition(threading.RLock())

    def __repr__(self) -> str:
        return f"BufferLock({self.name!r}, frames={self.counter}, refs={self.refs})"

    def is_used(self) -> bool:
        with self._cond:
            return self.refs != 0

    def use(self, ref: int) -> None:
        with self._cond:
            self.refs += ref

    def needs_buffer(self) -> bool:
        """Drop a stale buffer and report whether anyone wants new frames."""
        now = _now_us()
        with self._cond:
            if self.timeout_us > 0 and now - self.buf_time_us > self.timeout_us:
                if self.buf is not None:
                    self.buf.consumed(self.name)
                self.buf = None
            if self.refs > 0:
                return True
            return any(check(self) for check in self.check_streaming)

    def _set_buffer(self, buf: Any, now: int) -> None:
        if self.buf is not None:
            self.buf.consumed(self.name)
        buf.use()
        previous_time_us = self.buf_time_us
        self.buf = buf
        self.buf_time_us = now
        self.counter += 1

        log.debug(
            "%s: Captured buffer %s (refs=%d), frame=%d/%d, processing_ms=%.1f, frame_ms=%.1f",
            self.name, buf.name, buf.mmap_reflinks, self.counter, self.dropped,
            (now - buf.captured_time_us) / 1000.0, (now - previous_time_us) / 1000.0,
        )
        self._cond.notify_all()

        for notify in self.notify_buffer:
            notify(self, buf)

    def capture(self, buf: Any) -> None:
        """Offer a new buffer; None releases the one held."""
        now = _now_us()
        with self._cond:
            if buf is None:
                if self.buf is not None:
                    self.buf.consumed(self.name)
                self.buf = None
                self.buf_time_us = now
            elif buf.flags.is_keyframe:
                self._set_buffer(buf, now)
            elif now - self.buf_time_us >= self.frame_interval_ms * 1000:
                self._set_buffer(buf, now)
            else:
                self.dropped += 1
                log.debug(
                    "%s: Dropped buffer %s (refs=%d), frame=%d/%d, frame_ms=%.1f",
                    self.name, buf.name, buf.mmap_reflinks, self.counter, self.dropped,
                    (now - buf.captured_time_us) / 1000.0,
                )

    def get(self, timeout_ms: int = 0, counter: int = 0) -> tuple[Any, int]:
        """Return (buffer, counter) newer than counter, waiting once if needed.

        The buffer is None when nothing arrived in time; the caller must
        release a returned buffer with its consumed() method.
        """
        timeout_ms = timeout_ms or DEFAULT_BUFFER_LOCK_GET_TIMEOUT
        with self._cond:
            if counter == self.counter or self.buf is None:
                if not self._cond.wait(timeout_ms / 1000.0):
                    return None, counter
            buf = self.buf
            if buf is not None:
                buf.use()
            return buf, self.counter

    def write_loop(self, nframes: int, timeout_ms: int, fn: WriteFn) -> int:
        """Feed frames to fn(lock, buf, frame) until nframes or timeout_ms is reached.

        fn returns a positive value for a written frame, zero for a skipped
        one and a negative value to stop with an error.  The result is the
        number of frames written, negated when the loop ended with an error.
        """
        counter = 0
        frames = 0
        start = _now_us()
        deadline_us = start + DEFAULT_BUFFER_LOCK_GET_TIMEOUT * 1000
        frame_stop_us = start + timeout_ms * 1000

        self.use(1)
        try:
            while nframes == 0 or frames < nframes:
                if timeout_ms and frame_stop_us < _now_us():
                    break

                buf, counter = self.get(0, counter)
                if buf is None:
                    return -frames

                try:
                    ret = fn(self, buf, frames)
                finally:
                    buf.consumed("write-loop")

                if ret > 0:
                    frames += 1
                elif ret < 0:
                    return -frames
                elif not frames and deadline_us < _now_us():
                    log.debug("%s: Deadline getting frame elapsed.", self.name)
                    return -frames
            return frames
        finally:
            self.use(-1)

    def register_check_streaming(self, check_streaming: CheckStreaming) -> bool:
        with self._cond:
            if len(self.check_streaming) >= BUFFER_LOCK_MAX_CALLBACKS:
                return False
            self.check_streaming.append(check_streaming)
            return True

    def register_notify_buffer(self, notify_buffer: NotifyBuffer) -> bool:
        with self._cond:
            if len(self.notify_buffer) >= BUFFER_LOCK_MAX_CALLBACKS:
                return False
            self.notify_buffer.append(notify_buffer)
            return True