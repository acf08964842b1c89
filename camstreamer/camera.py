"""The camera: its devices, the links between them and their configuration."""

from __future__ import annotations

import copy
import enum
import functools
import logging
import os
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field, replace

from camstreamer.buffers import Buffer, BufferList
from camstreamer.bufferlock import BufferLock
from camstreamer.device import Device
from camstreamer.devicelist import DeviceList
from camstreamer.formats import fourcc_to_string
from camstreamer.hardware import HardwareError

log = logging.getLogger(__name__)

MAX_DEVICES = 20
MAX_RESCALLERS = 4
MAX_RESCALLER_SIZE = 1920
RESCALLER_BLOCK_SIZE = 32

DeviceFactory = Callable[[str, str], Device]


class CameraType(enum.IntEnum):
    V4L2 = 0
    LIBCAMERA = 1
    DUMMY = 2


@dataclass
class CameraOutputOptions:
    disabled: bool = False
    height: int = 0
    options: str = ""


@dataclass
class CameraOptions:
    path: str = ""
    width: int = 1920
    height: int = 1080
    format: int = 0
    nbufs: int = 3
    fps: int = 30
    type: CameraType = CameraType.V4L2
    allow_dma: bool = True
    high_res_factor: float = 0.0
    low_res_factor: float = 0.0
    auto_focus: bool = True
    auto_reconnect: int = 0
    force_active: bool = False
    vflip: bool = False
    hflip: bool = False
    options: str = ""
    list_options: bool = False
    isp_options: str = ""
    snapshot: CameraOutputOptions = field(default_factory=CameraOutputOptions)
    stream: CameraOutputOptions = field(default_factory=CameraOutputOptions)
    video: CameraOutputOptions = field(default_factory=CameraOutputOptions)


@dataclass
class LinkCallbacks:
    name: str
    on_buffer: Callable[[Buffer | None], None] | None = None
    buf_lock: BufferLock | None = None


@dataclass
class Link:
    capture_list: BufferList
    output_lists: list[BufferList] = field(default_factory=list)
    callbacks: list[LinkCallbacks] = field(default_factory=list)


def _write_debug_capture(directory: str, buf: Buffer | None) -> None:
    if buf is None:
        return
    fmt = fourcc_to_string(buf.buf_list.fmt.format)
    path = os.path.join(directory, f"decoder_capture.{buf.index}.{fmt}")
    try:
        with open(path, "wb") as fp:
            fp.write(bytes(buf.data[: buf.used]))
    except OSError:
        return


class Camera:
    """A camera device and the processing devices fed from it.

    device_factory opens memory-to-memory devices (decoders, rescalers,
    encoders) by name and path; without it none can be opened.
    """

    def __init__(
        self,
        options: CameraOptions | None = None,
        device_list: DeviceList | None = None,
        device_factory: DeviceFactory | None = None,
        name: str = "CAMERA",
    ) -> None:
        self.name = name
        self.options = copy.deepcopy(options) if options is not None else CameraOptions()
        self.device_list = device_list if device_list is not None else DeviceList()
        self.device_factory = device_factory
        self.camera: Device | None = None
        self.decoder: Device | None = None
        self.isp: Device | None = None
        self.rescallers: list[Device | None] = [None] * MAX_RESCALLERS
        self.codec_snapshot: Device | None = None
        self.codec_stream: Device | None = None
        self.codec_video: Device | None = None
        self.links: list[Link] = []

    def __repr__(self) -> str:
        return f"Camera({self.name!r}, devices={len(self.devices)}, links={len(self.links)})"

    @property
    def devices(self) -> list[Device]:
        """Open devices, in pipeline order."""
        slots = (
            self.camera,
            self.decoder,
            self.isp,
            *self.rescallers,
            self.codec_snapshot,
            self.codec_stream,
            self.codec_video,
        )
        return [dev for dev in slots if dev is not None]

    def close(self) -> None:
        """Release held frames, then close every device in reverse order."""
        for link in reversed(self.links):
            for callbacks in link.callbacks:
                if callbacks.on_buffer is not None:
                    callbacks.on_buffer(None)
                    callbacks.on_buffer = None
                if callbacks.buf_lock is not None:
                    callbacks.buf_lock.capture(None)
                    callbacks.buf_lock = None

        for dev in reversed(self.devices):
            dev.close()

        self.camera = self.decoder = self.isp = None
        self.rescallers = [None] * MAX_RESCALLERS
        self.codec_snapshot = self.codec_stream = self.codec_video = None
        self.links = []

    def ensure_capture(self, capture: BufferList) -> Link:
        """Return the link whose source is capture, creating it if needed."""
        for link in self.links:
            if link.capture_list is capture:
                return link
        if len(self.links) >= MAX_DEVICES:
            raise RuntimeError(f"{self.name}: too many links")
        link = Link(capture)
        self.links.append(link)
        return link

    def add_capture_output(self, capture: BufferList, output: BufferList) -> None:
        self.ensure_capture(capture).output_lists.append(output)

    def add_capture_callbacks(self, capture: BufferList, callbacks: LinkCallbacks) -> None:
        link = self.ensure_capture(capture)
        link.callbacks.append(replace(callbacks))
        if callbacks.buf_lock is not None:
            callbacks.buf_lock.buf_list = capture

    @staticmethod
    def _set_option(dev: Device | None, key: str, value: str) -> None:
        if dev is None:
            return
        with suppress(HardwareError):
            dev.set_option(key, value)

    @staticmethod
    def _set_option_list(dev: Device | None, option_list: str) -> None:
        if dev is not None:
            dev.set_option_list(option_list)

    def set_params(self) -> None:
        """Apply frame rate and configured options to the devices."""
        if self.camera is not None:
            self.camera.set_fps(self.options.fps)
        self._set_option_list(self.camera, self.options.options)
        self._set_option_list(self.isp, self.options.isp_options)

        if self.options.auto_focus:
            self._set_option(self.camera, "AfTrigger", "1")

        self._set_option_list(self.codec_snapshot, self.options.snapshot.options)
        self._set_option_list(self.codec_stream, self.options.stream.options)
        # required for forcing key frames
        self._set_option(self.codec_video, "repeat_sequence_header", "1")
        self._set_option_list(self.codec_video, self.options.video.options)

    def debug_capture(self, capture: BufferList) -> None:
        """Dump every frame of capture to $CAMERA_DEBUG_CAPTURE when it is set."""
        directory = os.environ.get("CAMERA_DEBUG_CAPTURE")
        if directory is None:
            return
        with suppress(OSError):
            os.mkdir(directory, 0o755)
        self.add_capture_callbacks(
            capture,
            LinkCallbacks(
                name="DEBUG-CAPTURE",
                on_buffer=functools.partial(_write_debug_capture, directory),
            ),
        )


__all__ = [
    "Camera",
    "CameraOptions",
    "CameraOutputOptions",
    "CameraType",
    "Link",
    "LinkCallbacks",
    "MAX_DEVICES",
    "MAX_RESCALLERS",
    "MAX_RESCALLER_SIZE",
    "RESCALLER_BLOCK_SIZE",
]