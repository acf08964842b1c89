"""Command-line options of the camera streamer and its entry point."""

from __future__ import annotations

import enum
import json
import logging
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from importlib import metadata
from types import SimpleNamespace
from typing import Any

from camstreamer.bufferlock import BufferLock
from camstreamer.buffers import BufferError
from camstreamer.camera import Camera, CameraOptions, CameraOutputOptions, CameraType
from camstreamer.device import OPTION_VALUE_LIST_SEP, DeviceError
from camstreamer.formats import format_by_name
from camstreamer.hardware import HardwareError
from camstreamer.pipeline import configure_input
from camstreamer.status import camera_status

log = logging.getLogger(__name__)

PROGRAM = "camera-streamer"
USE_HW_H264 = True

DEFAULT_JPEG_OPTIONS = "compression_quality=80"
DEFAULT_VIDEO_OPTIONS = OPTION_VALUE_LIST_SEP.join(
    (
        "video_bitrate_mode=0",
        "video_bitrate=2000000",
        "repeat_sequence_header=5000000",
        "h264_i_frame_period=30",
        "h264_level=11",
        "h264_profile=4",
        "h264_minimum_qp_value=16",
        "h264_maximum_qp_value=32",
    )
)


class OptionError(ValueError):
    """A command-line option is unknown or has an invalid value."""


@dataclass
class HttpOptions:
    port: int = 8080
    maxcons: int = 10


@dataclass
class RtspOptions:
    port: int = 0
    allow_truncated: bool = False
    running: bool = False
    clients: int = 0
    truncated: int = 0
    frames: int = 0
    dropped: int = 0


@dataclass
class LogOptions:
    debug: bool = False
    verbose: bool = False
    stats: int = 0
    filter: str = ""


def default_camera_options() -> CameraOptions:
    """Camera options as they are before any argument is parsed."""
    return CameraOptions(
        snapshot=CameraOutputOptions(options=DEFAULT_JPEG_OPTIONS),
        stream=CameraOutputOptions(options=DEFAULT_JPEG_OPTIONS),
        video=CameraOutputOptions(disabled=not USE_HW_H264, options=DEFAULT_VIDEO_OPTIONS),
    )


def apply_deprecations(options: CameraOptions) -> None:
    """Translate the deprecated resolution factors into output heights."""
    if options.high_res_factor > 0:
        print("Using deprecated `-camera-high_res_factor`. Use `-camera-snapshot.height` instead.")
        if not options.snapshot.height:
            options.snapshot.height = int(options.height / options.high_res_factor)

    if options.low_res_factor > 0:
        print(
            "Using deprecated `-camera-low_res_factor`. "
            "Use `-camera-stream.height` or `-camera-video.height` instead."
        )
        if not options.stream.height:
            options.stream.height = int(options.height / options.low_res_factor)
        if not options.video.height:
            options.video.height = int(options.height / options.low_res_factor)


def inherit_heights(options: CameraOptions) -> None:
    """Cap each output height by the one above it: camera, snapshot, video, stream."""
    if not options.snapshot.height or options.snapshot.height > options.height:
        options.snapshot.height = options.height
    if not options.video.height or options.video.height > options.snapshot.height:
        options.video.height = options.snapshot.height
    if not options.stream.height or options.stream.height > options.video.height:
        options.stream.height = options.video.height


class _Kind(enum.Enum):
    UINT = "uint"
    FLOAT = "float"
    BOOL = "bool"
    STRING = "string"
    LIST = "list"
    CAMERA_TYPE = "type"
    FORMAT = "format"


def _to_uint(value: str) -> int:
    number = int(value)
    if number < 0:
        raise ValueError(f"expected a non-negative number, got {value!r}")
    return number


def _to_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _to_camera_type(value: str) -> CameraType:
    types = {"v4l2": CameraType.V4L2, "libcamera": CameraType.LIBCAMERA, "dummy": CameraType.DUMMY}
    try:
        return types[value.lower()]
    except KeyError:
        raise ValueError(f"unknown camera type {value!r}; expected one of: {', '.join(types)}") from None


_CONVERTERS: dict[_Kind, Callable[[str], Any]] = {
    _Kind.UINT: _to_uint,
    _Kind.FLOAT: float,
    _Kind.BOOL: _to_bool,
    _Kind.STRING: str,
    _Kind.LIST: str,
    _Kind.CAMERA_TYPE: _to_camera_type,
    _Kind.FORMAT: format_by_name,
}


@dataclass(frozen=True)
class _Option:
    name: str
    section: str
    path: tuple[str, ...]
    kind: _Kind
    help: str
    bare: str | None = None


def _opt(section: str, key: str, kind: _Kind, help: str, bare: str | None = None, path: str | None = None) -> _Option:
    return _Option(f"{section}-{key}", section, tuple((path or key).split(".")), kind, help, bare)


_OPTIONS = (
    _opt("camera", "path", _Kind.STRING, "Chooses the camera to use. If empty connect to default."),
    _opt("camera", "type", _Kind.CAMERA_TYPE, "Select camera type."),
    _opt("camera", "width", _Kind.UINT, "Set the camera capture width."),
    _opt("camera", "height", _Kind.UINT, "Set the camera capture height."),
    _opt("camera", "format", _Kind.FORMAT, "Set the camera capture format."),
    _opt("camera", "nbufs", _Kind.UINT, "Set number of capture buffers. Preferred 2 or 3."),
    _opt("camera", "fps", _Kind.UINT, "Set the desired capture framerate."),
    _opt("camera", "allow_dma", _Kind.BOOL, "Prefer to use DMA access to reduce memory copy.", "1"),
    _opt("camera", "high_res_factor", _Kind.FLOAT, "Set the desired high resolution output scale factor."),
    _opt("camera", "low_res_factor", _Kind.FLOAT, "Set the desired low resolution output scale factor."),
    _opt("camera", "options", _Kind.LIST, "Set the camera options. List all available options with `-camera-list_options`."),
    _opt("camera", "auto_reconnect", _Kind.UINT, "Set the camera auto-reconnect delay in seconds."),
    _opt("camera", "auto_focus", _Kind.BOOL, "Do auto-focus on start-up (does not work with all camera).", "1"),
    _opt("camera", "force_active", _Kind.BOOL, "Force camera to be always active.", "1"),
    _opt("camera", "vflip", _Kind.BOOL, "Do vertical image flip (does not work with all camera).", "1"),
    _opt("camera", "hflip", _Kind.BOOL, "Do horizontal image flip (does not work with all camera).", "1"),
    _opt("camera", "isp.options", _Kind.LIST, "Set the ISP processing options. List all available options with `-camera-list_options`.", path="isp_options"),
    _opt("camera", "snapshot.options", _Kind.LIST, "Set the JPEG compression options. List all available options with `-camera-list_options`."),
    _opt("camera", "snapshot.height", _Kind.UINT, "Override the snapshot height and maintain aspect ratio."),
    _opt("camera", "stream.disabled", _Kind.BOOL, "Disable stream.", "1"),
    _opt("camera", "stream.options", _Kind.LIST, "Set the JPEG compression options. List all available options with `-camera-list_options`."),
    _opt("camera", "stream.height", _Kind.UINT, "Override the stream height and maintain aspect ratio."),
    _opt("camera", "video.disabled", _Kind.BOOL, "Disable video.", "1"),
    _opt("camera", "video.options", _Kind.LIST, "Set the H264 encoding options. List all available options with `-camera-list_options`."),
    _opt("camera", "video.height", _Kind.UINT, "Override the video height and maintain aspect ratio."),
    _opt("camera", "list_options", _Kind.BOOL, "List all available options and exit.", "1"),
    _opt("http", "port", _Kind.UINT, "Set the HTTP web-server port."),
    _opt("http", "maxcons", _Kind.UINT, "Set maximum number of concurrent HTTP connections."),
    _opt("rtsp", "port", _Kind.UINT, "Set the RTSP server port (default: 8854).", "8554"),
    _opt("log", "debug", _Kind.BOOL, "Enable debug logging.", "1"),
    _opt("log", "verbose", _Kind.BOOL, "Enable verbose logging.", "1"),
    _opt("log", "stats", _Kind.UINT, "Print statistics every duration.", "1"),
    _opt("log", "filter", _Kind.LIST, "Enable debug logging from the given files. Ex.: `-log-filter=buffer.cc`"),
)

_BY_NAME = {option.name: option for option in _OPTIONS}


def _help_text() -> str:
    lines = [f"Usage: {PROGRAM} [options]", ""]
    for option in _OPTIONS:
        value = f"[={option.bare}]" if option.bare is not None else f"=<{option.kind.value}>"
        lines.append(f"  -{option.name}{value}")
        lines.append(f"      {option.help}")
    return "\n".join(lines)


def _assign(settings: SimpleNamespace, option: _Option, value: str) -> None:
    try:
        converted = _CONVERTERS[option.kind](value)
    except ValueError as exc:
        raise OptionError(f"invalid value for -{option.name}: {exc}") from None

    target = getattr(settings, option.section)
    for attr in option.path[:-1]:
        target = getattr(target, attr)
    attr = option.path[-1]

    if option.kind is _Kind.LIST:
        existing = getattr(target, attr)
        converted = f"{existing}{OPTION_VALUE_LIST_SEP}{converted}" if existing else converted
    setattr(target, attr, converted)


def parse_args(argv: Sequence[str]) -> SimpleNamespace:
    """Parse "-section-key=value" arguments into camera, http, rtsp and log settings.

    A value may also follow as the next argument; options with a default
    value may be given bare.  List options accumulate.
    """
    settings = SimpleNamespace(
        camera=default_camera_options(),
        http=HttpOptions(),
        rtsp=RtspOptions(),
        log=LogOptions(),
    )

    args = iter(argv)
    for arg in args:
        if arg in ("-h", "-help", "--help"):
            print(_help_text())
            raise SystemExit(0)
        if not arg.startswith("-") or not arg.strip("-"):
            raise OptionError(f"unexpected argument: {arg!r}")

        name, sep, value = arg.lstrip("-").partition("=")
        option = _BY_NAME.get(name)
        if option is None:
            raise OptionError(f"unknown option: -{name}")

        if not sep:
            if option.bare is not None:
                value = option.bare
            else:
                next_value = next(args, None)
                if next_value is None:
                    raise OptionError(f"option -{name} requires a value")
                value = next_value

        _assign(settings, option, value)
    return settings


def _configure_logging(options: LogOptions) -> None:
    filters = [item for item in options.filter.split(OPTION_VALUE_LIST_SEP) if item]
    level = logging.DEBUG if options.debug or options.verbose or filters else logging.INFO
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    if filters and not (options.debug or options.verbose):
        def allow(record: logging.LogRecord) -> bool:
            if record.levelno >= logging.INFO:
                return True
            return any(item in record.filename or item in record.name for item in filters)

        for handler in logging.getLogger().handlers:
            handler.addFilter(allow)


def _version() -> str:
    try:
        return metadata.version("camstreamer")
    except metadata.PackageNotFoundError:
        return "unknown"


def _open_camera(options: CameraOptions, locks: dict[str, BufferLock]) -> Camera | None:
    camera = Camera(options)
    try:
        configure_input(camera, locks)
        camera.set_params()
    except (DeviceError, HardwareError, BufferError) as exc:
        log.info("%s: Cannot open camera: %s", camera.name, exc)
        camera.close()
        return None
    return camera


def main(argv: Sequence[str] | None = None) -> int:
    """Configure the camera pipeline from the command line and report its status."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        settings = parse_args(args)
    except OptionError as exc:
        print(exc, file=sys.stderr)
        return -1

    _configure_logging(settings.log)
    print(f"{PROGRAM} Version: {_version()}")

    camera_options: CameraOptions = settings.camera
    apply_deprecations(camera_options)
    inherit_heights(camera_options)

    locks = {
        "snapshot": BufferLock("snapshot_lock"),
        "stream": BufferLock("stream_lock"),
        "video": BufferLock("video_lock"),
    }

    if camera_options.list_options:
        camera = _open_camera(camera_options, locks)
        if camera is not None:
            print()
            for dev in camera.devices:
                dev.dump_options(sys.stdout)
            camera.close()
        return -1

    while True:
        camera = _open_camera(camera_options, locks)
        if camera is not None:
            try:
                status = camera_status(camera, locks, "localhost", settings.http.port, settings.rtsp)
                print(json.dumps(status))
            finally:
                camera.close()
            return 0

        if camera_options.auto_reconnect > 0:
            log.info("Automatically reconnecting in %d seconds...", camera_options.auto_reconnect)
            time.sleep(camera_options.auto_reconnect)
        else:
            return -1