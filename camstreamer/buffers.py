"""Frame buffers, buffer lists and their reference-counted queueing."""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from camstreamer.formats import PIX_FMT_H264, fourcc_to_string
from camstreamer.hardware import HardwareError

log = logging.getLogger(__name__)

MAX_BUFFER_QUEUE = 4

_buffer_lock = threading.Lock()


def _monotonic_us() -> int:
    return time.monotonic_ns() // 1000


class BufferType(enum.IntEnum):
    DEFAULT = 0
    RAW = 1
    IMAGE = 2
    VIDEO = 3


@dataclass
class BufferFormat:
    width: int = 0
    height: int = 0
    format: int = 0
    bytesperline: int = 0
    sizeimage: int = 0
    nbufs: int = 0
    interval_us: int = 0
    type: BufferType = BufferType.DEFAULT


@dataclass
class BufferStats:
    frames: int = 0
    dropped: int = 0


@dataclass
class BufferFlags:
    is_keyed: bool = False
    is_keyframe: bool = False
    is_last: bool = False


class BufferError(Exception):
    """A buffer or buffer list operation failed."""


class Buffer:
    """One frame buffer owned by a buffer list."""

    def __init__(self, name: str, buf_list: BufferList, index: int) -> None:
        self.name = name
        self.buf_list = buf_list
        self.index = index
        self.data: Any = None
        self.used = 0
        self.length = 0
        self.dma_fd = -1
        self.flags = BufferFlags()
        self.hw_data: Any = None
        self.mmap_reflinks = 1
        self.dma_source: Buffer | None = None
        self.enqueued = False
        self.enqueue_time_us = 0
        self.captured_time_us = 0

        try:
            buf_list.dev.hw.open_buffer(self)
        except BaseException:
            self.close()
            raise

    def __repr__(self) -> str:
        return f"Buffer({self.name!r}, refs={self.mmap_reflinks}, enqueued={self.enqueued})"

    def close(self) -> None:
        self.buf_list.dev.hw.close_buffer(self)

    def use(self) -> bool:
        """Take a reference unless the buffer is owned by the hardware."""
        with _buffer_lock:
            if self.enqueued:
                return False
            self.mmap_reflinks += 1
            return True

    def consumed(self, who: str) -> bool:
        """Drop a reference; the last one hands the buffer back to the hardware."""
        with _buffer_lock:
            if self.mmap_reflinks == 0:
                raise BufferError(f"{self.name}: non symmetric reference counts")

            self.mmap_reflinks -= 1
            if self.enqueued or self.mmap_reflinks != 0:
                return True

            log.debug(
                "%s: Queuing buffer... used=%d length=%d (linked=%s) by %s",
                self.name, self.used, self.length,
                self.dma_source.name if self.dma_source else None, who,
            )

            if self.buf_list.do_timestamps:
                self.captured_time_us = _monotonic_us()

            try:
                self.buf_list.dev.hw.enqueue_buffer(self, who)
            except HardwareError as exc:
                log.error("%s: cannot enqueue buffer: %s", self.name, exc)
                dma_source, self.dma_source = self.dma_source, None
                self.mmap_reflinks += 1
            else:
                self.enqueued = True
                now = _monotonic_us()
                self.enqueue_time_us = now
                self.buf_list.last_enqueued_us = now
                return True

        if dma_source is not None:
            dma_source.consumed(who)
        return False


class BufferList:
    """A set of buffers on one side (capture or output) of a device."""

    def __init__(
        self,
        name: str,
        index: int,
        dev: Any,
        path: str | None,
        fmt: BufferFormat,
        do_capture: bool,
        do_mmap: bool,
    ) -> None:
        self.name = name
        self.index = index
        self.dev = dev
        self.path = path
        self.fmt = dataclasses.replace(fmt)
        self.do_capture = do_capture
        self.do_mmap = do_mmap
        self.do_timestamps = False
        self.bufs: list[Buffer] = []
        self.hw_data: Any = None
        self.queued_bufs: list[Buffer] = []
        self.last_enqueued_us = 0
        self.last_dequeued_us = 0
        self.last_capture_time_us = 0
        self.last_in_queue_time_us = 0
        self.streaming = False
        self.stats = BufferStats()
        self.stats_last = BufferStats()

    def __repr__(self) -> str:
        return f"BufferList({self.name!r}, nbufs={self.nbufs})"

    @property
    def nbufs(self) -> int:
        return len(self.bufs)

    @classmethod
    def open(cls, name, index, dev, path, fmt, do_capture, do_mmap) -> BufferList:
        """Create a buffer list, configure it in hardware and open its buffers."""
        buf_list = cls(name, index, dev, path, fmt, do_capture, do_mmap)
        try:
            got_bufs = dev.hw.open_buffer_list(buf_list)
            if got_bufs > 0:
                buf_list._create_buffers(got_bufs)
        except BaseException:
            buf_list.close()
            raise
        return buf_list

    def _create_buffers(self, got_bufs: int) -> None:
        if self.bufs or got_bufs <= 0:
            raise BufferError(f"{self.name}: cannot allocate {got_bufs} buffers")

        log.info(
            "%s: Using: %dx%d/%s, buffers=%d, bytesperline=%d, sizeimage=%.1fMiB",
            self.name, self.fmt.width, self.fmt.height, fourcc_to_string(self.fmt.format),
            got_bufs, self.fmt.bytesperline, self.fmt.sizeimage / 1024.0 / 1024.0,
        )

        self.fmt.nbufs = got_bufs
        mem_used = 0
        try:
            for i in range(got_bufs):
                try:
                    buf = Buffer(f"{self.name}:buf{i}", self, i)
                except (HardwareError, BufferError):
                    log.error("%s: Cannot open buffer: %d", self.name, i)
                    raise
                if buf.dma_fd >= 0:
                    mem_used += buf.length
                self.bufs.append(buf)
        except BaseException:
            self.free_buffers()
            raise

        log.info(
            "%s: Opened %d buffers. Memory used: %.1f MiB",
            self.name, self.nbufs, mem_used / 1024.0 / 1024.0,
        )

    def close(self) -> None:
        self.free_buffers()
        self.dev.hw.close_buffer_list(self)

    def alloc_buffers(self) -> None:
        """Allocate buffers that the hardware deferred at open time."""
        if self.bufs:
            return
        got_bufs = self.dev.hw.alloc_buffers(self)
        self._create_buffers(got_bufs)

    def free_buffers(self) -> None:
        if not self.bufs:
            return
        for buf in self.bufs:
            buf.close()
        self.bufs = []
        self.dev.hw.free_buffers(self)

    def set_stream(self, do_on: bool) -> None:
        if self.streaming == do_on:
            return

        self.dev.hw.set_stream(self, do_on)
        self.streaming = do_on

        if do_on:
            self.last_enqueued_us = _monotonic_us()
        else:
            self.clear_queue()

        log.info(
            "%s: Streaming %s... Was %d of %d enqueued",
            self.name, "started" if do_on else "stopped", self.count_enqueued(), self.nbufs,
        )

    def pollfd(self, can_dequeue: bool) -> tuple[int, int]:
        return self.dev.hw.pollfd(self, can_dequeue)

    def find_slot(self) -> Buffer | None:
        """Return a buffer that only this list references, if any."""
        return next(
            (buf for buf in self.bufs if not buf.enqueued and buf.mmap_reflinks == 1),
            None,
        )

    def count_enqueued(self) -> int:
        return sum(1 for buf in self.bufs if buf.enqueued)

    def enqueue(self, dma_buf: Buffer) -> bool:
        """Feed dma_buf into a free slot; False if no slot is free."""
        if not self.do_mmap and not dma_buf.buf_list.do_mmap:
            raise BufferError(f"{self.name}: cannot enqueue non-mmap to non-mmap: {dma_buf.name}")

        buf = self.find_slot()
        if buf is None:
            return False

        buf.flags = dataclasses.replace(dma_buf.flags)
        buf.captured_time_us = dma_buf.captured_time_us

        if self.do_mmap:
            if dma_buf.used > buf.length:
                log.info(
                    "%s: The dma_buf (%s) is too long: %d vs space=%d",
                    self.name, dma_buf.name, dma_buf.used, buf.length,
                )
                dma_buf.used = buf.length

            before = _monotonic_us()
            buf.data[: dma_buf.used] = dma_buf.data[: dma_buf.used]
            log.debug(
                "%s: mmap copy from %s, size=%d, space=%d, time=%dus",
                buf.name, dma_buf.name, dma_buf.used, buf.length, _monotonic_us() - before,
            )
        else:
            log.debug(
                "%s: dmabuf copy from %s (dma_fd=%d), size=%d",
                buf.name, dma_buf.name, dma_buf.dma_fd, dma_buf.used,
            )
            buf.dma_source = dma_buf
            buf.length = dma_buf.length
            with _buffer_lock:
                dma_buf.mmap_reflinks += 1

        buf.used = dma_buf.used
        buf.consumed("copy-data")
        return True

    @staticmethod
    def _update_h264_key_frame(buf: Buffer) -> None:
        header = bytes(buf.data[:8]).hex(" ").upper() if buf.data is not None else ""
        if buf.flags.is_keyframe:
            log.debug("%s: Got key frame (from device)!: %s", buf.name, header)
        elif buf.used >= 5 and (buf.data[4] & 0x1F) == 0x07:
            log.debug("%s: Got key frame (from buffer)!: %s", buf.name, header)
            buf.flags.is_keyframe = True

    def dequeue(self) -> Buffer:
        """Take a filled buffer back from the hardware."""
        buf = self.dev.hw.dequeue(self)

        now = _monotonic_us()
        self.last_dequeued_us = now
        self.last_capture_time_us = now - buf.captured_time_us
        self.last_in_queue_time_us = now - buf.enqueue_time_us

        if buf.mmap_reflinks > 0:
            log.error("%s: Buffer appears to be enqueued? (links=%d)", buf.name, buf.mmap_reflinks)

        buf.enqueued = False
        buf.mmap_reflinks = 1

        log.debug(
            "%s: Grabbed mmap buffer=%d, bytes=%d, used=%d, frame=%d, linked=%s",
            self.name, buf.index, buf.length, buf.used, self.stats.frames,
            buf.dma_source.name if buf.dma_source else None,
        )

        if buf.dma_source is not None:
            buf.dma_source.used = 0
            buf.dma_source.consumed("mmap-dequeued")
            buf.dma_source = None

        if self.fmt.format == PIX_FMT_H264:
            self._update_h264_key_frame(buf)
            buf.flags.is_keyed = True
        else:
            buf.flags.is_keyed = False

        self.stats.frames += 1
        return buf

    def clear_queue(self) -> None:
        for buf in self.queued_bufs:
            buf.consumed("clear queue")
        self.queued_bufs.clear()

    def push_to_queue(self, dma_buf: Buffer, max_bufs: int = 0) -> bool:
        """Hold a reference to dma_buf for later; False if the queue is full."""
        limit = min(max_bufs or MAX_BUFFER_QUEUE, MAX_BUFFER_QUEUE)

        if self.dev.paused:
            return True
        if len(self.queued_bufs) >= limit:
            return False

        dma_buf.use()
        self.queued_bufs.append(dma_buf)
        return True

    def pop_from_queue(self) -> Buffer | None:
        if not self.queued_bufs:
            return None
        return self.queued_bufs.pop(0)