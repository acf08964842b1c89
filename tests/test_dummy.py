import os
import select
import struct

import pytest

from camstreamer.buffers import BufferFormat
from camstreamer.dummy import DummyHardware, open_dummy_device
from camstreamer.hardware import HardwareError

CONTENT = b"\x00\x00\x00\x01\x67frame-data"


@pytest.fixture
def frame_file(tmp_path):
    path = tmp_path / "frame.bin"
    path.write_bytes(CONTENT)
    return path


@pytest.fixture
def device(frame_file):
    dev = open_dummy_device("CAMERA", str(frame_file))
    yield dev
    dev.close()


@pytest.fixture
def capture(device):
    return device.open_buffer_list(True, BufferFormat(width=640, height=480, nbufs=3), True)


def test_device_disables_dma(device):
    assert device.allow_dma is False
    assert isinstance(device.hw, DummyHardware)


def test_capture_list_serves_file_content(capture):
    assert capture.nbufs == 3
    for buf in capture.bufs:
        assert bytes(buf.data) == CONTENT
        assert buf.used == len(CONTENT)
        assert buf.length == len(CONTENT)
        assert buf.enqueued is False


def test_output_list_is_rejected(device):
    with pytest.raises(HardwareError):
        device.open_buffer_list(False, BufferFormat(nbufs=2), True)
    assert device.output_list is None


def test_missing_file_is_rejected(tmp_path):
    dev = open_dummy_device("CAMERA", str(tmp_path / "missing.bin"))
    try:
        with pytest.raises(HardwareError):
            dev.open_buffer_list(True, BufferFormat(nbufs=2), True)
        assert dev.capture_lists == []
    finally:
        dev.close()


def test_enqueue_dequeue_round_trip(capture):
    buf = capture.bufs[1]
    assert buf.consumed("test") is True
    assert buf.enqueued is True
    assert capture.count_enqueued() == 1

    dequeued = capture.dequeue()
    assert dequeued is buf
    assert dequeued.enqueued is False
    assert dequeued.mmap_reflinks == 1
    assert capture.stats.frames == 1


def test_pollfd_reports_input_only_when_dequeue_possible(capture):
    fd, events = capture.pollfd(True)
    assert fd == capture.hw_data.read_fd
    assert not events & select.POLLIN

    capture.bufs[0].consumed("test")
    _, events = capture.pollfd(True)
    assert events & select.POLLIN
    _, events = capture.pollfd(False)
    assert not events & select.POLLIN
    assert events & select.POLLHUP


def test_dequeue_rejects_invalid_index(capture):
    os.write(capture.hw_data.write_fd, struct.pack("=I", 99))
    with pytest.raises(HardwareError):
        capture.dequeue()


def test_unsupported_controls(device, capture):
    with pytest.raises(HardwareError):
        device.video_force_key()
    with pytest.raises(HardwareError):
        device.set_option("brightness", "1")
    interval = device.set_fps(30)
    assert interval > 0
    assert capture.fmt.interval_us == interval


def test_set_stream_toggles(capture):
    capture.set_stream(True)
    assert capture.streaming is True
    capture.set_stream(False)
    assert capture.streaming is False


def test_close_releases_pipe(frame_file):
    dev = open_dummy_device("CAMERA", str(frame_file))
    capture = dev.open_buffer_list(True, BufferFormat(nbufs=2), True)
    read_fd = capture.hw_data.read_fd
    dev.close()
    assert capture.hw_data is None
    with pytest.raises(OSError):
        os.fstat(read_fd)