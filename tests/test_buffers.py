from collections import deque
from types import SimpleNamespace

import pytest

from camstreamer.buffers import (
    MAX_BUFFER_QUEUE,
    BufferError,
    BufferFormat,
    BufferList,
)
from camstreamer.formats import PIX_FMT_H264, PIX_FMT_YUYV
from camstreamer.hardware import DeviceHardware, HardwareError


class FakeHardware(DeviceHardware):
    def __init__(self, size=16, fail_buffer=None, deferred=2):
        self.size = size
        self.fail_buffer = fail_buffer
        self.deferred = deferred
        self.fail_enqueue = False
        self.queue = deque()
        self.closed_lists = []
        self.closed_buffers = []
        self.freed = 0
        self.streams = []

    def open_buffer_list(self, buf_list):
        return buf_list.fmt.nbufs

    def alloc_buffers(self, buf_list):
        return self.deferred

    def free_buffers(self, buf_list):
        self.freed += 1

    def open_buffer(self, buf):
        if buf.index == self.fail_buffer:
            raise HardwareError("cannot open")
        buf.data = bytearray(self.size)
        buf.length = self.size

    def close_buffer(self, buf):
        self.closed_buffers.append(buf.name)

    def enqueue_buffer(self, buf, who):
        if self.fail_enqueue:
            raise HardwareError("queue full")
        self.queue.append(buf)

    def dequeue(self, buf_list):
        return self.queue.popleft()

    def close_buffer_list(self, buf_list):
        self.closed_lists.append(buf_list.name)

    def set_stream(self, buf_list, do_on):
        self.streams.append(do_on)


def make_list(hw=None, name="cam:capture", nbufs=2, do_mmap=True, fmt=0, paused=False):
    hw = hw or FakeHardware()
    dev = SimpleNamespace(hw=hw, paused=paused, name="cam", path=None)
    return BufferList.open(name, 0, dev, None, BufferFormat(format=fmt, nbufs=nbufs), True, do_mmap)


def test_open_creates_named_buffers():
    buf_list = make_list(nbufs=3)
    assert [buf.name for buf in buf_list.bufs] == [
        "cam:capture:buf0", "cam:capture:buf1", "cam:capture:buf2"
    ]
    assert buf_list.nbufs == 3
    assert buf_list.fmt.nbufs == 3
    assert all(buf.mmap_reflinks == 1 and not buf.enqueued for buf in buf_list.bufs)


def test_open_does_not_mutate_format():
    fmt = BufferFormat(nbufs=0)
    dev = SimpleNamespace(hw=FakeHardware(deferred=2), paused=False)
    buf_list = BufferList.open("x", 0, dev, None, fmt, True, True)
    buf_list.alloc_buffers()
    assert fmt.nbufs == 0
    assert buf_list.fmt.nbufs == 2


def test_deferred_allocation():
    buf_list = make_list(hw=FakeHardware(deferred=4), nbufs=0)
    assert buf_list.nbufs == 0
    buf_list.alloc_buffers()
    assert buf_list.nbufs == 4
    buf_list.alloc_buffers()
    assert buf_list.nbufs == 4


def test_deferred_allocation_unsupported():
    class NoAlloc(FakeHardware):
        alloc_buffers = DeviceHardware.alloc_buffers

    buf_list = make_list(hw=NoAlloc(), nbufs=0)
    with pytest.raises(HardwareError):
        buf_list.alloc_buffers()


def test_failing_buffer_closes_list():
    hw = FakeHardware(fail_buffer=1)
    with pytest.raises(HardwareError):
        make_list(hw=hw, nbufs=3)
    assert hw.closed_lists == ["cam:capture"]
    assert "cam:capture:buf0" in hw.closed_buffers


def test_close_releases_everything():
    hw = FakeHardware()
    buf_list = make_list(hw=hw, nbufs=2)
    buf_list.close()
    assert sorted(hw.closed_buffers) == ["cam:capture:buf0", "cam:capture:buf1"]
    assert hw.closed_lists == ["cam:capture"]
    assert hw.freed == 1
    assert buf_list.nbufs == 0


def test_consumed_enqueues_and_dequeue_returns_it():
    hw = FakeHardware()
    buf_list = make_list(hw=hw)
    buf = buf_list.find_slot()
    assert buf is buf_list.bufs[0]
    assert buf.consumed("test") is True
    assert buf.enqueued
    assert buf_list.count_enqueued() == 1
    assert list(hw.queue) == [buf]

    got = buf_list.dequeue()
    assert got is buf
    assert not got.enqueued
    assert got.mmap_reflinks == 1
    assert buf_list.stats.frames == 1


def test_use_refused_while_enqueued():
    buf_list = make_list()
    buf = buf_list.bufs[0]
    assert buf.use() is True
    assert buf.mmap_reflinks == 2
    buf.consumed("a")
    buf.consumed("b")
    assert buf.enqueued
    assert buf.use() is False


def test_consumed_below_zero_raises():
    buf_list = make_list()
    buf = buf_list.bufs[0]
    buf.consumed("a")
    with pytest.raises(BufferError):
        buf.consumed("b")


def test_enqueue_failure_restores_reference():
    hw = FakeHardware()
    buf_list = make_list(hw=hw)
    hw.fail_enqueue = True
    buf = buf_list.bufs[0]
    assert buf.consumed("test") is False
    assert buf.mmap_reflinks == 1
    assert not buf.enqueued


def test_timestamps_assigned_on_enqueue():
    buf_list = make_list()
    buf_list.do_timestamps = True
    buf = buf_list.bufs[0]
    buf.consumed("test")
    assert buf.captured_time_us > 0
    assert buf_list.last_enqueued_us == buf.enqueue_time_us


def test_mmap_enqueue_copies_data():
    src = make_list(name="src")
    dst = make_list(name="dst")
    src_buf = src.bufs[0]
    src_buf.data[:5] = b"hello"
    src_buf.used = 5
    src_buf.flags.is_keyframe = True

    assert dst.enqueue(src_buf) is True
    target = dst.bufs[0]
    assert bytes(target.data[:5]) == b"hello"
    assert target.used == 5
    assert target.flags.is_keyframe
    assert target.enqueued
    assert src_buf.mmap_reflinks == 1


def test_mmap_enqueue_truncates():
    src = make_list(hw=FakeHardware(size=32), name="src")
    dst = make_list(hw=FakeHardware(size=8), name="dst")
    src_buf = src.bufs[0]
    src_buf.used = 32
    assert dst.enqueue(src_buf) is True
    assert src_buf.used == 8
    assert dst.bufs[0].used == 8


def test_dma_enqueue_links_source_until_dequeued():
    src = make_list(name="src", nbufs=1)
    dst = make_list(name="dst", nbufs=1, do_mmap=False)
    src_buf = src.bufs[0]
    src_buf.used = 3

    assert dst.enqueue(src_buf) is True
    target = dst.bufs[0]
    assert target.dma_source is src_buf
    assert src_buf.mmap_reflinks == 2
    assert target.length == src_buf.length

    dst.dequeue()
    assert target.dma_source is None
    assert src_buf.mmap_reflinks == 1
    assert src_buf.used == 0


def test_enqueue_without_slot():
    src = make_list(name="src")
    dst = make_list(name="dst", nbufs=1)
    dst.bufs[0].consumed("busy")
    assert dst.enqueue(src.bufs[0]) is False


def test_enqueue_non_mmap_to_non_mmap_raises():
    src = make_list(name="src", do_mmap=False)
    dst = make_list(name="dst", do_mmap=False)
    with pytest.raises(BufferError):
        dst.enqueue(src.bufs[0])


def test_h264_key_frame_detected():
    hw = FakeHardware()
    buf_list = make_list(hw=hw, nbufs=1, fmt=PIX_FMT_H264)
    buf = buf_list.bufs[0]
    buf.data[:5] = bytes([0, 0, 0, 1, 0x67])
    buf.used = 8
    buf.consumed("t")
    got = buf_list.dequeue()
    assert got.flags.is_keyframe
    assert got.flags.is_keyed


def test_h264_non_key_frame():
    buf_list = make_list(nbufs=1, fmt=PIX_FMT_H264)
    buf = buf_list.bufs[0]
    buf.data[:5] = bytes([0, 0, 0, 1, 0x41])
    buf.used = 8
    buf.consumed("t")
    got = buf_list.dequeue()
    assert not got.flags.is_keyframe
    assert got.flags.is_keyed


def test_raw_format_not_keyed():
    buf_list = make_list(nbufs=1, fmt=PIX_FMT_YUYV)
    buf = buf_list.bufs[0]
    buf.flags.is_keyed = True
    buf.consumed("t")
    assert buf_list.dequeue().flags.is_keyed is False


def test_queue_push_pop_and_limit():
    src = make_list(name="src", nbufs=MAX_BUFFER_QUEUE + 1)
    dst = make_list(name="dst")
    for buf in src.bufs[:MAX_BUFFER_QUEUE]:
        assert dst.push_to_queue(buf) is True
    assert dst.push_to_queue(src.bufs[-1]) is False
    assert src.bufs[0].mmap_reflinks == 2

    assert dst.pop_from_queue() is src.bufs[0]
    assert dst.pop_from_queue() is src.bufs[1]


def test_queue_explicit_limit():
    src = make_list(name="src", nbufs=2)
    dst = make_list(name="dst")
    assert dst.push_to_queue(src.bufs[0], 1) is True
    assert dst.push_to_queue(src.bufs[1], 1) is False


def test_pop_empty_queue():
    assert make_list().pop_from_queue() is None


def test_paused_device_accepts_without_queueing():
    src = make_list(name="src")
    dst = make_list(name="dst", paused=True)
    assert dst.push_to_queue(src.bufs[0]) is True
    assert dst.queued_bufs == []
    assert src.bufs[0].mmap_reflinks == 1


def test_clear_queue_releases_references():
    src = make_list(name="src")
    dst = make_list(name="dst")
    dst.push_to_queue(src.bufs[0])
    dst.clear_queue()
    assert dst.queued_bufs == []
    assert src.bufs[0].mmap_reflinks == 1


def test_set_stream_toggles_and_clears():
    hw = FakeHardware()
    src = make_list(name="src")
    dst = make_list(hw=hw, name="dst")
    dst.set_stream(True)
    dst.set_stream(True)
    assert hw.streams == [True]
    assert dst.streaming
    assert dst.last_enqueued_us > 0

    dst.push_to_queue(src.bufs[0])
    dst.set_stream(False)
    assert hw.streams == [True, False]
    assert dst.queued_bufs == []
    assert src.bufs[0].mmap_reflinks == 1


def test_set_stream_failure_keeps_state():
    class NoStream(FakeHardware):
        set_stream = DeviceHardware.set_stream

    buf_list = make_list(hw=NoStream())
    with pytest.raises(HardwareError):
        buf_list.set_stream(True)
    assert buf_list.streaming is False