"""JSON status of the camera and the option-setting request handler."""

from __future__ import annotations

import io
from collections.abc import Iterable, Mapping
from typing import Any

from camstreamer.formats import fourcc_to_string
from camstreamer.hardware import HardwareError


def serialize_buffer_list(buf_list: Any) -> dict[str, Any] | bool:
    """Describe a buffer list; False when there is none."""
    if buf_list is None:
        return False
    return {
        "name": buf_list.name,
        "width": buf_list.fmt.width,
        "height": buf_list.fmt.height,
        "format": fourcc_to_string(buf_list.fmt.format),
        "nbufs": buf_list.nbufs,
    }


def serialize_buffer_lock(buf_lock: Any) -> dict[str, Any] | bool:
    """Describe an output's buffer lock; False when there is none."""
    if buf_lock is None:
        return False
    buf_list = buf_lock.buf_list
    output: dict[str, Any] = {"name": buf_lock.name, "enabled": buf_list is not None}
    if buf_list is not None:
        output.update(
            width=buf_list.fmt.width,
            height=buf_list.fmt.height,
            source=buf_list.name,
            frames=buf_lock.counter,
            refs=buf_lock.refs,
            dropped=buf_lock.dropped,
        )
    return output


def devices_status(camera: Any) -> list[dict[str, Any]]:
    devices = []
    for device in camera.devices:
        device_json: dict[str, Any] = {
            "name": device.name,
            "path": device.path,
            "allow_dma": device.allow_dma,
            "output": serialize_buffer_list(device.output_list),
        }
        if device.capture_lists:
            device_json["captures"] = [serialize_buffer_list(c) for c in device.capture_lists]
        devices.append(device_json)
    return devices


def links_status(camera: Any) -> list[dict[str, Any]]:
    links = []
    for link in camera.links:
        link_json: dict[str, Any] = {"source": link.capture_list.name}
        if link.output_lists:
            link_json["sinks"] = [output.name for output in link.output_lists]
        if link.callbacks:
            link_json["callbacks"] = [callbacks.name for callbacks in link.callbacks]
        links.append(link_json)
    return links


def strip_host_port(host: str) -> str:
    """Drop everything from the first colon on."""
    return host.partition(":")[0]


def endpoint_url(running: bool, output: str, protocol: str, host: str, port: int, path: str) -> dict[str, Any]:
    endpoint: dict[str, Any] = {"enabled": running}
    if running:
        endpoint["output"] = output
        endpoint["uri"] = f"{protocol}://{strip_host_port(host)}:{port}{path}"
    return endpoint


def camera_status(
    camera: Any, locks: Mapping[str, Any], host: str, http_port: int, rtsp_options: Any
) -> dict[str, Any]:
    """Build the status document: outputs, devices, links and endpoints.

    locks maps "snapshot", "stream" and "video" to their buffer locks.
    """
    snapshot_lock = locks.get("snapshot")
    stream_lock = locks.get("stream")
    video_lock = locks.get("video")

    def has_source(lock: Any) -> bool:
        return lock is not None and lock.buf_list is not None

    video = has_source(video_lock)
    devices = devices_status(camera) if camera is not None else []
    links = links_status(camera) if camera is not None else []

    rtsp = endpoint_url(video and rtsp_options.running, "video", "rtsp", host, rtsp_options.port, "/stream.h264")
    if rtsp_options.running:
        rtsp.update(
            clients=rtsp_options.clients,
            truncated=rtsp_options.truncated,
            frames=rtsp_options.frames,
            dropped=rtsp_options.dropped,
        )

    return {
        "outputs": {
            "snapshot": serialize_buffer_lock(snapshot_lock),
            "stream": serialize_buffer_lock(stream_lock),
            "video": serialize_buffer_lock(video_lock),
        },
        "devices": devices or None,
        "links": links or None,
        "endpoints": {
            "rtsp": rtsp,
            "webrtc": endpoint_url(False, "video", "http", host, http_port, "/webrtc"),
            "video": endpoint_url(video, "video", "http", host, http_port, "/video"),
            "stream": endpoint_url(has_source(stream_lock), "stream", "http", host, http_port, "/stream"),
            "snapshot": endpoint_url(has_source(snapshot_lock), "snapshot", "http", host, http_port, "/snapshot"),
        },
    }


def set_camera_options(
    camera: Any, params: Mapping[str, str] | Iterable[tuple[str, str]]
) -> tuple[int, str]:
    """Apply key=value options to every device; return (HTTP status, body).

    The status is that of the first reported result; the body lists the
    results followed by the options the devices offer.
    """
    pairs = params.items() if isinstance(params, Mapping) else params
    body = io.StringIO()
    status: int | None = None

    def once(code: int) -> None:
        nonlocal status
        if status is None:
            status = code

    for key, value in pairs:
        if camera is None:
            once(500)
            body.write("No camera attached.\r\n")
            continue

        devices = camera.devices
        for dev in devices:
            try:
                applied = dev.set_option(key, value)
            except HardwareError:
                once(500)
                body.write(f"{dev.name}: Cannot set '{key}' to '{value}'.\r\n")
                continue
            if applied:
                once(200)
                body.write(f"{dev.name}: The '{key}' was set to '{value}'.\r\n")

        if not devices:
            once(404)
            body.write(f"The '{key}' was set not found.\r\n")

    if status is not None:
        body.write("---\r\n")
    else:
        status = 404
        body.write("No options passed.\r\n")

    body.write("\r\nSet: /option?name=value\r\n\r\n")

    if camera is not None:
        for dev in camera.devices:
            dev.dump_options(body)

    return status, body.getvalue()