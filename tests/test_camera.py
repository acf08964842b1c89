import pytest

from camstreamer.bufferlock import BufferLock
from camstreamer.buffers import BufferFormat
from camstreamer.camera import (
    Camera,
    CameraOptions,
    CameraOutputOptions,
    LinkCallbacks,
    MAX_DEVICES,
)
from camstreamer.device import OPTION_VALUE_LIST_SEP, Device
from camstreamer.formats import PIX_FMT_YUYV
from camstreamer.hardware import DeviceHardware


class FakeHardware(DeviceHardware):
    def __init__(self):
        self.options = []
        self.fps = []
        self.closed = 0

    def open_buffer_list(self, buf_list):
        return buf_list.fmt.nbufs or 2

    def open_buffer(self, buf):
        buf.data = bytearray(64)
        buf.length = 64

    def set_option(self, dev, key, value):
        self.options.append((key, value))
        return True

    def set_fps(self, dev, desired_fps):
        self.fps.append(desired_fps)

    def close_device(self, dev):
        self.closed += 1


def make_device(name="DEV"):
    return Device(name, f"/dev/{name.lower()}", FakeHardware())


def make_capture(dev):
    return dev.open_buffer_list(True, BufferFormat(width=640, height=480, format=PIX_FMT_YUYV, nbufs=2), True)


def test_ensure_capture_reuses_link():
    camera = Camera(CameraOptions())
    capture = make_capture(make_device())
    first = camera.ensure_capture(capture)
    second = camera.ensure_capture(capture)
    assert first is second
    assert len(camera.links) == 1
    assert first.capture_list is capture


def test_ensure_capture_limit():
    camera = Camera(CameraOptions())
    dev = make_device()
    for _ in range(MAX_DEVICES):
        camera.ensure_capture(make_capture(dev))
    with pytest.raises(RuntimeError):
        camera.ensure_capture(make_capture(dev))


def test_add_capture_output():
    camera = Camera(CameraOptions())
    source = make_capture(make_device("SRC"))
    sink_dev = make_device("SINK")
    output = sink_dev.open_buffer_list_output(source)
    camera.add_capture_output(source, output)
    assert camera.links[0].output_lists == [output]


def test_add_capture_callbacks_binds_lock():
    camera = Camera(CameraOptions())
    capture = make_capture(make_device())
    lock = BufferLock("snapshot_lock")
    callbacks = LinkCallbacks(name="SNAPSHOT-CAPTURE", buf_lock=lock)
    camera.add_capture_callbacks(capture, callbacks)
    assert lock.buf_list is capture
    stored = camera.links[0].callbacks[0]
    assert stored.name == "SNAPSHOT-CAPTURE"
    assert stored.buf_lock is lock


def test_devices_in_pipeline_order():
    camera = Camera(CameraOptions())
    camera.camera = make_device("CAM")
    camera.codec_video = make_device("VIDEO")
    camera.rescallers[0] = make_device("RESCALER")
    assert camera.devices == [camera.camera, camera.rescallers[0], camera.codec_video]


def test_close_releases_callbacks_and_devices():
    camera = Camera(CameraOptions())
    dev = make_device("CAM")
    camera.camera = dev
    capture = make_capture(dev)
    buf = capture.bufs[0]
    buf.flags.is_keyframe = True

    lock = BufferLock("stream_lock")
    seen = []
    camera.add_capture_callbacks(capture, LinkCallbacks(name="STREAM-CAPTURE", buf_lock=lock))
    camera.add_capture_callbacks(capture, LinkCallbacks(name="WATCH", on_buffer=seen.append))
    lock.capture(buf)
    assert lock.buf is buf

    camera.close()
    assert lock.buf is None
    assert seen == [None]
    assert dev.hw.closed == 1
    assert camera.devices == []
    assert camera.links == []


def test_set_params_applies_options():
    options = CameraOptions(
        fps=15,
        options=OPTION_VALUE_LIST_SEP.join(["brightness=1", "contrast=2"]),
        video=CameraOutputOptions(options="video_bitrate=2000000"),
        snapshot=CameraOutputOptions(options="compression_quality=80"),
    )
    camera = Camera(options)
    camera.camera = make_device("CAM")
    camera.codec_video = make_device("VIDEO")
    camera.codec_snapshot = make_device("SNAPSHOT")
    camera.set_params()

    assert camera.camera.hw.fps == [15]
    assert camera.camera.hw.options == [("brightness", "1"), ("contrast", "2"), ("AfTrigger", "1")]
    assert camera.codec_video.hw.options == [
        ("repeat_sequence_header", "1"),
        ("video_bitrate", "2000000"),
    ]
    assert camera.codec_snapshot.hw.options == [("compression_quality", "80")]


def test_set_params_without_auto_focus():
    camera = Camera(CameraOptions(auto_focus=False))
    camera.camera = make_device("CAM")
    camera.set_params()
    assert ("AfTrigger", "1") not in camera.camera.hw.options


def test_options_are_copied():
    options = CameraOptions()
    camera = Camera(options)
    camera.options.snapshot.height = 480
    assert options.snapshot.height == 0


def test_debug_capture_writes_frames(tmp_path, monkeypatch):
    target = tmp_path / "dbg"
    monkeypatch.setenv("CAMERA_DEBUG_CAPTURE", str(target))
    camera = Camera(CameraOptions())
    capture = make_capture(make_device())
    camera.debug_capture(capture)

    callbacks = camera.links[0].callbacks[0]
    assert callbacks.name == "DEBUG-CAPTURE"
    assert target.is_dir()

    buf = capture.bufs[0]
    buf.data[:4] = b"abcd"
    buf.used = 4
    callbacks.on_buffer(buf)
    callbacks.on_buffer(None)
    assert (target / "decoder_capture.0.YUYV").read_bytes() == b"abcd"


def test_debug_capture_disabled(monkeypatch):
    monkeypatch.delenv("CAMERA_DEBUG_CAPTURE", raising=False)
    camera = Camera(CameraOptions())
    camera.debug_capture(make_capture(make_device()))
    assert camera.links == []