"""A capture-only back-end that replays the contents of a file as every frame."""

from __future__ import annotations

import logging
import os
import select
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from camstreamer.device import Device
from camstreamer.hardware import DeviceHardware, HardwareError

log = logging.getLogger(__name__)

_INDEX = struct.Struct("=I")


@dataclass
class _DummyListState:
    read_fd: int
    write_fd: int
    data: bytes = b""
    streaming: bool = False

    def close(self) -> None:
        for fd in (self.read_fd, self.write_fd):
            try:
                os.close(fd)
            except OSError:
                pass


class DummyHardware(DeviceHardware):
    """Serves the file at the device path as the content of every buffer.

    Enqueued buffer indexes travel through a pipe so they can be polled
    and dequeued like frames coming from real hardware.
    """

    def open_device(self, dev: Any) -> None:
        dev.allow_dma = False
        dev.hw_data = None

    def close_device(self, dev: Any) -> None:
        dev.hw_data = None

    def force_key(self, dev: Any) -> None:
        raise HardwareError(f"{dev.name}: forcing a key frame is not supported")

    def set_fps(self, dev: Any, desired_fps: int) -> None:
        raise HardwareError(f"{dev.name}: setting the frame rate is not supported")

    def set_option(self, dev: Any, key: str, value: str) -> bool:
        raise HardwareError(f"{dev.name}: setting options is not supported")

    def open_buffer(self, buf: Any) -> None:
        state: _DummyListState = buf.buf_list.hw_data
        buf.hw_data = None
        buf.data = state.data
        buf.used = len(state.data)
        buf.length = len(state.data)

    def close_buffer(self, buf: Any) -> None:
        buf.hw_data = None

    def enqueue_buffer(self, buf: Any, who: str) -> None:
        state: _DummyListState = buf.buf_list.hw_data
        try:
            written = os.write(state.write_fd, _INDEX.pack(buf.index))
        except OSError as exc:
            raise HardwareError(f"{buf.name}: cannot enqueue: {exc}") from exc
        if written != _INDEX.size:
            raise HardwareError(f"{buf.name}: short write while enqueueing")

    def dequeue(self, buf_list: Any) -> Any:
        state: _DummyListState = buf_list.hw_data
        try:
            raw = os.read(state.read_fd, _INDEX.size)
        except OSError as exc:
            raise HardwareError(f"{buf_list.name}: cannot read: {exc}") from exc
        if len(raw) != _INDEX.size:
            log.info("%s: Received invalid result from `read`: %d", buf_list.name, len(raw))
            raise HardwareError(f"{buf_list.name}: received invalid result from read: {len(raw)}")

        (index,) = _INDEX.unpack(raw)
        if index >= buf_list.nbufs:
            log.info(
                "%s: Received invalid index from `read`: %d >= %d",
                buf_list.name, index, buf_list.nbufs,
            )
            raise HardwareError(f"{buf_list.name}: invalid index {index} >= {buf_list.nbufs}")
        return buf_list.bufs[index]

    def pollfd(self, buf_list: Any, can_dequeue: bool) -> tuple[int, int]:
        state: _DummyListState = buf_list.hw_data
        events = select.POLLHUP
        if can_dequeue and buf_list.count_enqueued() > 0:
            events |= select.POLLIN
        return state.read_fd, events

    def open_buffer_list(self, buf_list: Any) -> int:
        if not buf_list.do_capture:
            raise HardwareError(f"{buf_list.name}: only capture mode supported")

        try:
            read_fd, write_fd = os.pipe()
        except OSError as exc:
            log.info("%s: Cannot open pipe.", buf_list.name)
            raise HardwareError(f"{buf_list.name}: cannot open pipe") from exc

        state = _DummyListState(read_fd, write_fd)
        buf_list.hw_data = state

        path = buf_list.dev.path
        try:
            state.data = Path(path).read_bytes()
        except OSError as exc:
            raise HardwareError(f"{buf_list.name}: can't open device: {path}") from exc

        return buf_list.fmt.nbufs

    def close_buffer_list(self, buf_list: Any) -> None:
        state: _DummyListState | None = buf_list.hw_data
        if state is not None:
            state.close()
        buf_list.hw_data = None

    def set_stream(self, buf_list: Any, do_on: bool) -> None:
        """Record whether the list streams; no preparation is needed."""
        state: _DummyListState | None = buf_list.hw_data
        if state is not None:
            state.streaming = do_on


def open_dummy_device(name: str, path: str) -> Device:
    """Open a device that serves the file at path as its frames."""
    return Device(name, path, DummyHardware())