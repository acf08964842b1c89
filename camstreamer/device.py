"""A capture or processing device with its capture and output buffer lists."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, TextIO

from camstreamer.buffers import BufferFormat, BufferList
from camstreamer.hardware import DeviceHardware, HardwareError

log = logging.getLogger(__name__)

OPTION_VALUE_LIST_SEP = "\n"


class DeviceError(Exception):
    """A device could not be opened or configured."""


class Device:
    """A device driven through a DeviceHardware back-end."""

    def __init__(self, name: str, path: str, hw: DeviceHardware) -> None:
        self.name = name
        self.path = path
        self.bus_info = ""
        self.hw = hw
        self.capture_lists: list[BufferList] = []
        self.output_list: BufferList | None = None
        self.allow_dma = True
        self.hw_data: Any = None
        self.paused = False

        try:
            hw.open_device(self)
        except HardwareError as exc:
            log.error("%s: Can't open device: %s", name, path)
            self.close()
            raise DeviceError(f"{name}: can't open device: {path}") from exc

    def __repr__(self) -> str:
        return f"Device({self.name!r}, {self.path!r})"

    @property
    def n_capture_list(self) -> int:
        return len(self.capture_lists)

    def close(self) -> None:
        for capture_list in self.capture_lists:
            capture_list.close()
        self.capture_lists = []

        if self.output_list is not None:
            self.output_list.close()
            self.output_list = None

        self.hw.close_device(self)

    def open_buffer_list(
        self, do_capture: bool, fmt: BufferFormat, do_mmap: bool, path: str | None = None
    ) -> BufferList:
        """Open a capture list (appended) or the single output list."""
        if not self.allow_dma:
            do_mmap = True

        index = 0
        if do_capture:
            index = len(self.capture_lists)
            name = f"{self.name}:capture:{index}" if index > 0 else f"{self.name}:capture"
        else:
            if self.output_list is not None:
                raise DeviceError(f"{self.name}: the output_list is already created")
            name = f"{self.name}:output"

        buf_list = BufferList.open(name, index, self, path, fmt, do_capture, do_mmap)

        if do_capture:
            self.capture_lists.append(buf_list)
        else:
            self.output_list = buf_list
        return buf_list

    def open_buffer_list_output(self, capture_list: BufferList) -> BufferList:
        """Open an output list that is fed from another device's capture list."""
        if capture_list is None:
            raise DeviceError(f"{self.name}: no capture list to feed the output")

        fmt = dataclasses.replace(capture_list.fmt, interval_us=0)
        do_mmap = (not capture_list.do_mmap) if capture_list.dev.allow_dma else True

        if do_mmap:
            # manually allocated buffers must fit every source buffer
            for buf in capture_list.bufs:
                fmt.sizeimage = max(fmt.sizeimage, buf.length)
        else:
            fmt.sizeimage = 0

        return self.open_buffer_list(False, fmt, do_mmap)

    def open_buffer_list_capture(
        self, path: str | None, output_list: BufferList, fmt: BufferFormat, do_mmap: bool
    ) -> BufferList:
        """Open a capture list, filling unset dimensions from output_list."""
        if output_list is None:
            raise DeviceError(f"{self.name}: no output list for the capture")

        fmt = dataclasses.replace(fmt)
        if not fmt.width:
            fmt.width = output_list.fmt.width
        if not fmt.height:
            fmt.height = output_list.fmt.height
        if not fmt.nbufs:
            fmt.nbufs = output_list.fmt.nbufs

        return self.open_buffer_list(True, fmt, do_mmap, path)

    def open_buffer_list_capture_format(
        self, path: str | None, output_list: BufferList, chosen_format: int, do_mmap: bool
    ) -> BufferList:
        return self.open_buffer_list_capture(
            path, output_list, BufferFormat(format=chosen_format), do_mmap
        )

    def set_stream(self, do_on: bool) -> None:
        for capture_list in self.capture_lists:
            capture_list.set_stream(do_on)
        if self.output_list is not None:
            self.output_list.set_stream(do_on)

    def video_force_key(self) -> None:
        self.hw.force_key(self)

    def dump_options(self, stream: TextIO) -> None:
        self.hw.dump_options(self, stream)

    def set_fps(self, desired_fps: int) -> int:
        """Set the frame rate; returns the software frame interval applied."""
        interval_us = 1000 * 1000 // desired_fps if desired_fps > 0 else 0

        try:
            self.hw.set_fps(self, desired_fps)
        except HardwareError:
            pass
        else:
            interval_us = 0

        log.info("%s: Setting frame interval_us=%d for FPS=%d", self.name, interval_us, desired_fps)

        for capture_list in self.capture_lists:
            capture_list.fmt.interval_us = interval_us
        return interval_us

    def set_rotation(self, vflip: bool, hflip: bool) -> bool:
        return self.hw.set_rotation(self, vflip, hflip)

    def set_option(self, key: str, value: str) -> bool:
        """Set one option; True if applied, False if the key is unknown."""
        return self.hw.set_option(self, key, value)

    def set_option_list(self, option_list: str | None) -> None:
        """Apply options written as key=value entries joined by the list separator."""
        if not option_list:
            return

        for option in option_list.split(OPTION_VALUE_LIST_SEP):
            key, sep, value = option.partition("=")
            if not sep:
                log.info("%s: Missing 'key=value' for '%s'", self.name, option)
                continue
            try:
                self.set_option(key, value)
            except HardwareError as exc:
                log.info("%s: Cannot set '%s' to '%s': %s", self.name, key, value, exc)

    def output_enqueued(self) -> int:
        if self.output_list is not None:
            return self.output_list.count_enqueued()
        return 0

    def capture_enqueued(self) -> tuple[int, int]:
        """Return (min, max) of enqueued buffers across the capture lists."""
        counts = [capture_list.count_enqueued() for capture_list in self.capture_lists]
        max_val = max(counts, default=0)
        min_val = min(min(counts, default=100), max_val)
        return min_val, max_val