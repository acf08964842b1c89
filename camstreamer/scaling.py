"""Output resolution arithmetic and rescaler devices."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable

from camstreamer.buffers import BufferError, BufferFormat, BufferList
from camstreamer.camera import (
    MAX_RESCALLER_SIZE,
    RESCALLER_BLOCK_SIZE,
    Camera,
    CameraOutputOptions,
)
from camstreamer.device import Device, DeviceError
from camstreamer.formats import fourcc_to_string
from camstreamer.hardware import HardwareError

log = logging.getLogger(__name__)


def align_size(size: int, align: int) -> int:
    """Round size up to a multiple of align, or down when align is negative."""
    if align > 0:
        return (size + align - 1) // align * align
    if align < 0:
        return size // -align * -align
    return size


def scaled_resolution(in_width: int, in_height: int, proposed_height: int, align: int) -> tuple[int, int]:
    """Return (width, height) near proposed_height keeping the aspect ratio."""
    if in_width <= 0 or in_height <= 0:
        raise ValueError(f"invalid input resolution {in_width}x{in_height}")

    proposed_height = min(proposed_height, in_height)

    height = min(align_size(proposed_height, align), MAX_RESCALLER_SIZE)
    width = align_size(height * in_width // in_height, align)

    # too wide for the rescaler: cap the width and scale the height down instead
    if width > MAX_RESCALLER_SIZE:
        width = MAX_RESCALLER_SIZE
        height = align_size(width * in_height // in_width, align)

    return width, height


def get_scaled_resolution(
    capture_format: BufferFormat, options: CameraOutputOptions, align: int
) -> BufferFormat | None:
    """Scale capture_format for an output; None if the output is disabled or empty."""
    if options.disabled:
        return None
    width, height = scaled_resolution(capture_format.width, capture_format.height, options.height, align)
    if height <= 0:
        return None
    return dataclasses.replace(capture_format, width=width, height=height)


def _open_m2m_device(camera: Camera, name: str, path: str) -> Device | None:
    if camera.device_factory is None:
        log.info("%s: No back-end to open %s", camera.name, path)
        return None
    try:
        return camera.device_factory(name, path)
    except (DeviceError, HardwareError) as exc:
        log.info("%s: Cannot open %s: %s", camera.name, path, exc)
        return None


def try_rescaller(
    camera: Camera, src_capture: BufferList, name: str, target_height: int, target_format: int
) -> BufferList | None:
    """Open a rescaler from src_capture to target_format, if a device supports it."""
    device_info = camera.device_list.find_m2m_format(src_capture.fmt.format, target_format)
    if device_info is None:
        return None

    if target_height > src_capture.fmt.height:
        log.info(
            "%s: Upscaling from %dp to %dp does not make sense. Lowering to %dp.",
            src_capture.name, src_capture.fmt.height, target_height, src_capture.fmt.height,
        )

    device = _open_m2m_device(camera, f"RESCALLER:{name}", device_info.path)
    if device is None:
        return None

    try:
        rescaller_output = device.open_buffer_list_output(src_capture)
        width, height = scaled_resolution(
            src_capture.fmt.width, src_capture.fmt.height, target_height, RESCALLER_BLOCK_SIZE
        )
        target_fmt = BufferFormat(width=width, height=height, format=target_format)
        rescaller_capture = device.open_buffer_list_capture(None, rescaller_output, target_fmt, True)
    except (DeviceError, HardwareError, BufferError, ValueError) as exc:
        log.info("%s: Cannot configure rescaller: %s", src_capture.name, exc)
        device.close()
        return None

    camera.add_capture_output(src_capture, rescaller_output)
    return rescaller_capture


def configure_rescaller(
    camera: Camera, src_capture: BufferList, name: str, target_height: int, formats: Iterable[int]
) -> BufferList | None:
    """Add a rescaler keeping the source format, else the first format that works."""
    slot = next((i for i, dev in enumerate(camera.rescallers) if dev is None), None)
    if slot is None:
        return None

    rescaller_capture = try_rescaller(camera, src_capture, name, target_height, src_capture.fmt.format)

    for fmt in formats:
        if rescaller_capture is not None or not fmt:
            break
        rescaller_capture = try_rescaller(camera, src_capture, name, target_height, fmt)

    if rescaller_capture is None:
        log.info(
            "%s: Cannot find rescaller to scale from '%s' to 'YUYV'",
            src_capture.name, fourcc_to_string(src_capture.fmt.format),
        )
        return None

    camera.rescallers[slot] = rescaller_capture.dev
    return rescaller_capture