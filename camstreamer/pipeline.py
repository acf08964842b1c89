"""Building the processing pipeline from the camera to its snapshot, stream and video outputs."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable, Mapping
from contextlib import suppress

from camstreamer.bufferlock import BufferLock
from camstreamer.buffers import BufferError, BufferFormat, BufferList, BufferType
from camstreamer.camera import (
    RESCALLER_BLOCK_SIZE,
    Camera,
    CameraOutputOptions,
    CameraType,
    LinkCallbacks,
)
from camstreamer.device import Device, DeviceError
from camstreamer.dummy import open_dummy_device
from camstreamer.formats import (
    PIX_FMT_H264,
    PIX_FMT_JPEG,
    PIX_FMT_MJPEG,
    PIX_FMT_NV12,
    PIX_FMT_NV21,
    PIX_FMT_SBGGR10P,
    PIX_FMT_SGRBG10,
    PIX_FMT_SGRBG10P,
    PIX_FMT_SRGGB10,
    PIX_FMT_SRGGB10P,
    PIX_FMT_YUV420,
    PIX_FMT_YUYV,
    PIX_FMT_YVU420,
    fourcc_to_string,
    many_fourcc_to_string,
)
from camstreamer.hardware import HardwareError
from camstreamer.scaling import configure_rescaller, get_scaled_resolution

log = logging.getLogger(__name__)

MATCH_ALIGN_SIZE = 32
DEFAULT_V4L2_PATH = "/dev/video0"
ISP_OUTPUT_PATH = "/dev/video13"
ISP_CAPTURE_PATH = "/dev/video14"

DECODER_FORMATS = (PIX_FMT_YUYV, PIX_FMT_NV12, PIX_FMT_YUV420, PIX_FMT_NV21, PIX_FMT_YVU420)
RESCALLED_FORMATS = (PIX_FMT_YUYV, PIX_FMT_YUV420, PIX_FMT_NV12, PIX_FMT_NV21, PIX_FMT_YVU420)
SNAPSHOT_FORMATS = (PIX_FMT_JPEG, PIX_FMT_MJPEG)
VIDEO_FORMATS = (PIX_FMT_H264,)

_ISP_FORMATS = frozenset(
    {PIX_FMT_SRGGB10P, PIX_FMT_SGRBG10P, PIX_FMT_SBGGR10P, PIX_FMT_SRGGB10, PIX_FMT_SGRBG10}
)
_DECODER_INPUT_FORMATS = frozenset({PIX_FMT_MJPEG, PIX_FMT_H264})

_OPEN_ERRORS = (DeviceError, HardwareError, BufferError, ValueError)


def _open_device(camera: Camera, name: str, path: str) -> Device | None:
    if camera.device_factory is None:
        log.info("%s: No back-end to open %s", camera.name, path)
        return None
    try:
        return camera.device_factory(name, path)
    except (DeviceError, HardwareError) as exc:
        log.info("%s: Cannot open %s: %s", camera.name, path, exc)
        return None


def _matches_capture(capture: BufferList, target_height: int, fmt: int) -> bool:
    if target_height and abs(capture.fmt.height - target_height) > MATCH_ALIGN_SIZE:
        return False
    return capture.fmt.format == fmt


def find_capture(camera: Camera, target_height: int, formats: Iterable[int]) -> BufferList | None:
    """Find an existing capture list in one of formats (in order) near target_height.

    A target_height of zero matches any height; formats stop at a zero.
    """
    for fmt in formats:
        if not fmt:
            break
        for device in camera.devices:
            for capture in device.capture_lists:
                if _matches_capture(capture, target_height, fmt):
                    return capture
    return None


def configure_decoder(camera: Camera, src_capture: BufferList) -> BufferList | None:
    """Add a decoder turning src_capture into a raw format; None if impossible."""
    found = camera.device_list.find_m2m_formats(src_capture.fmt.format, DECODER_FORMATS)
    if found is None:
        log.info("%s: Cannot find '%s' decoder", camera.name, fourcc_to_string(src_capture.fmt.format))
        return None
    info, chosen_format = found

    if camera.camera is not None:
        with suppress(HardwareError):
            camera.camera.video_force_key()

    camera.decoder = _open_device(camera, "DECODER", info.path)
    if camera.decoder is None:
        return None

    try:
        decoder_output = camera.decoder.open_buffer_list_output(src_capture)
        decoder_capture = camera.decoder.open_buffer_list_capture_format(
            None, decoder_output, chosen_format, True
        )
    except _OPEN_ERRORS as exc:
        log.info("%s: Cannot configure decoder: %s", camera.name, exc)
        return None

    camera.debug_capture(decoder_capture)
    camera.add_capture_output(src_capture, decoder_output)
    return decoder_capture


def configure_isp(camera: Camera, src_capture: BufferList) -> BufferList | None:
    """Add the image signal processor turning raw Bayer data into YUYV."""
    camera.isp = _open_device(camera, "ISP", ISP_OUTPUT_PATH)
    if camera.isp is None:
        return None

    try:
        isp_output = camera.isp.open_buffer_list_output(src_capture)
        isp_capture = camera.isp.open_buffer_list_capture_format(
            ISP_CAPTURE_PATH, isp_output, PIX_FMT_YUYV, True
        )
    except _OPEN_ERRORS as exc:
        log.info("%s: Cannot configure ISP: %s", camera.name, exc)
        return None

    camera.add_capture_output(src_capture, isp_output)
    return isp_capture


def _decode_capture(camera: Camera, camera_capture: BufferList) -> BufferList | None:
    fmt = camera_capture.fmt.format
    if fmt in _ISP_FORMATS:
        return configure_isp(camera, camera_capture)
    if fmt in _DECODER_INPUT_FORMATS:
        return configure_decoder(camera, camera_capture)
    return None


def configure_output(
    camera: Camera,
    camera_capture: BufferList,
    name: str,
    options: CameraOutputOptions,
    formats: Iterable[int],
    callbacks: LinkCallbacks,
    slot: str | None,
) -> BufferList | None:
    """Route one output to a capture list in one of formats.

    Reuses a matching capture, else rescales, decodes and finally encodes,
    storing a new encoder device in the camera attribute named by slot.
    Returns the capture list the callbacks were attached to, or None when
    the output is disabled.  Raises DeviceError when no route exists.
    """
    formats = tuple(formats)

    selected = get_scaled_resolution(camera_capture.fmt, options, 1)
    if selected is None:
        return None
    rescalled = get_scaled_resolution(camera_capture.fmt, options, RESCALLER_BLOCK_SIZE)
    if rescalled is None:
        return None

    src_capture = find_capture(camera, selected.height, formats)
    if src_capture is not None:
        camera.add_capture_callbacks(src_capture, callbacks)
        return src_capture

    src_capture = find_capture(camera, rescalled.height, RESCALLED_FORMATS)

    if src_capture is None:
        other_capture = find_capture(camera, 0, RESCALLED_FORMATS)
        if other_capture is not None:
            src_capture = configure_rescaller(
                camera, other_capture, name, rescalled.height, RESCALLED_FORMATS
            )

    if src_capture is None:
        decoded_capture = _decode_capture(camera, camera_capture)

        src_capture = find_capture(camera, selected.height, RESCALLED_FORMATS)
        if src_capture is None:
            src_capture = find_capture(camera, rescalled.height, RESCALLED_FORMATS)
        if src_capture is None and decoded_capture is not None:
            src_capture = configure_rescaller(
                camera, decoded_capture, name, selected.height, RESCALLED_FORMATS
            )

    if src_capture is None:
        raise DeviceError(
            f"{camera.name}: cannot find source for '{name}' for one of the formats "
            f"'{many_fourcc_to_string(formats)}'"
        )

    found = camera.device_list.find_m2m_formats(src_capture.fmt.format, formats)
    if found is None:
        raise DeviceError(
            f"{camera.name}: cannot find encoder to convert from "
            f"'{fourcc_to_string(src_capture.fmt.format)}'"
        )
    info, chosen_format = found

    device = _open_device(camera, name, info.path)
    if device is None:
        raise DeviceError(f"{camera.name}: cannot open encoder for '{name}': {info.path}")
    if slot is not None:
        setattr(camera, slot, device)

    try:
        output = device.open_buffer_list_output(src_capture)
        capture = device.open_buffer_list_capture_format(None, output, chosen_format, True)
    except _OPEN_ERRORS as exc:
        raise DeviceError(f"{camera.name}: cannot configure encoder for '{name}': {exc}") from exc

    camera.add_capture_output(src_capture, output)
    camera.add_capture_callbacks(capture, callbacks)
    camera.debug_capture(capture)
    return capture


def configure_pipeline(
    camera: Camera, camera_capture: BufferList, locks: Mapping[str, BufferLock] | None = None
) -> None:
    """Configure snapshot, stream and video outputs fed from camera_capture.

    locks maps "snapshot", "stream" and "video" to the buffer locks that
    receive each output's frames.
    """
    locks = locks or {}
    camera_capture.do_timestamps = True
    camera.debug_capture(camera_capture)

    outputs = (
        ("SNAPSHOT", "snapshot", camera.options.snapshot, SNAPSHOT_FORMATS, "codec_snapshot"),
        ("STREAM", "stream", camera.options.stream, SNAPSHOT_FORMATS, "codec_stream"),
        ("VIDEO", "video", camera.options.video, VIDEO_FORMATS, "codec_video"),
    )
    for name, key, options, formats, slot in outputs:
        callbacks = LinkCallbacks(name=f"{name}-CAPTURE", buf_lock=locks.get(key))
        configure_output(camera, camera_capture, name, options, formats, callbacks, slot)


def _list_v4l2_devices() -> None:
    with suppress(OSError):
        subprocess.run(["v4l2-ctl", "--list-devices"], check=False)


def _open_capture(dev: Device, fmt: BufferFormat) -> BufferList:
    try:
        return dev.open_buffer_list(True, fmt, True)
    except _OPEN_ERRORS as exc:
        raise DeviceError(f"{dev.name}: cannot open capture: {exc}") from exc


def _configure_input_v4l2(camera: Camera, locks: Mapping[str, BufferLock] | None) -> None:
    options = camera.options
    path = options.path or DEFAULT_V4L2_PATH

    dev = _open_device(camera, camera.name, path)
    if dev is None:
        log.info("%s: Listing available v4l2 devices:", camera.name)
        _list_v4l2_devices()
        raise DeviceError(f"{camera.name}: cannot open camera: {path}")
    camera.camera = dev

    with suppress(HardwareError):
        dev.set_rotation(options.vflip, options.hflip)

    dev.allow_dma = options.allow_dma
    if "usb" in dev.bus_info:
        log.info("%s: Disabling DMA since device uses USB (which is likely not working properly).", camera.name)
        dev.allow_dma = False

    fmt = BufferFormat(
        width=options.width, height=options.height, format=options.format, nbufs=options.nbufs
    )
    configure_pipeline(camera, _open_capture(dev, fmt), locks)


def _configure_input_libcamera(camera: Camera, locks: Mapping[str, BufferLock] | None) -> None:
    options = camera.options

    dev = _open_device(camera, camera.name, options.path)
    if dev is None:
        raise DeviceError(f"{camera.name}: cannot open camera: {options.path!r}")
    camera.camera = dev

    with suppress(HardwareError):
        dev.set_rotation(options.vflip, options.hflip)
    dev.allow_dma = options.allow_dma

    capture_fmt = BufferFormat(
        width=options.width,
        height=options.height,
        format=options.format,
        nbufs=options.nbufs,
        type=BufferType.IMAGE,
    )
    for output_options in (options.snapshot, options.stream, options.video):
        scaled = get_scaled_resolution(capture_fmt, output_options, 1)
        if scaled is not None:
            capture_fmt = scaled
            break

    camera_capture = _open_capture(dev, capture_fmt)
    raw_capture = _open_capture(
        dev,
        BufferFormat(
            width=options.width, height=options.height, nbufs=options.nbufs, type=BufferType.RAW
        ),
    )

    try:
        camera_capture.alloc_buffers()
        raw_capture.alloc_buffers()
    except _OPEN_ERRORS as exc:
        raise DeviceError(f"{camera.name}: cannot allocate buffers: {exc}") from exc

    configure_pipeline(camera, camera_capture, locks)


def _configure_input_dummy(camera: Camera, locks: Mapping[str, BufferLock] | None) -> None:
    options = camera.options
    try:
        dev = open_dummy_device(camera.name, options.path)
    except (DeviceError, HardwareError) as exc:
        raise DeviceError(f"{camera.name}: cannot open camera: {options.path!r}") from exc
    camera.camera = dev

    fmt = BufferFormat(
        width=options.width, height=options.height, format=options.format, nbufs=options.nbufs
    )
    configure_pipeline(camera, _open_capture(dev, fmt), locks)


def configure_input(camera: Camera, locks: Mapping[str, BufferLock] | None = None) -> None:
    """Open the camera device of the configured type and build the pipeline."""
    camera_type = camera.options.type
    if camera_type == CameraType.V4L2:
        _configure_input_v4l2(camera, locks)
    elif camera_type == CameraType.LIBCAMERA:
        _configure_input_libcamera(camera, locks)
    elif camera_type == CameraType.DUMMY:
        _configure_input_dummy(camera, locks)
    else:
        raise DeviceError(f"{camera.name}: unsupported camera type {camera_type!r}")