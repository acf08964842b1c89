from camstreamer.devicelist import DeviceInfo, DeviceList
from camstreamer.formats import PIX_FMT_H264, PIX_FMT_JPEG, PIX_FMT_MJPEG, PIX_FMT_NV12, PIX_FMT_YUYV


def make_list():
    return DeviceList([
        DeviceInfo("camera", "/dev/video0", camera=True, capture_formats=[PIX_FMT_YUYV]),
        DeviceInfo("not-m2m", "/dev/video5", output_formats=[PIX_FMT_YUYV], capture_formats=[PIX_FMT_JPEG]),
        DeviceInfo("jpeg", "/dev/video31", m2m=True, output_formats=[PIX_FMT_YUYV, PIX_FMT_NV12], capture_formats=[PIX_FMT_JPEG]),
        DeviceInfo("h264", "/dev/video11", m2m=True, output_formats=[PIX_FMT_YUYV], capture_formats=[PIX_FMT_H264]),
    ])


def test_has_format_by_direction():
    info = make_list().devices[2]
    assert info.has_format(False, PIX_FMT_NV12) is True
    assert info.has_format(True, PIX_FMT_NV12) is False
    assert info.has_format(True, PIX_FMT_JPEG) is True


def test_find_m2m_format_skips_non_m2m():
    devices = make_list()
    info = devices.find_m2m_format(PIX_FMT_YUYV, PIX_FMT_JPEG)
    assert info is not None
    assert info.path == "/dev/video31"


def test_find_m2m_format_missing():
    assert make_list().find_m2m_format(PIX_FMT_NV12, PIX_FMT_H264) is None
    assert DeviceList().find_m2m_format(PIX_FMT_YUYV, PIX_FMT_JPEG) is None


def test_find_m2m_formats_prefers_first_available():
    devices = make_list()
    info, chosen = devices.find_m2m_formats(PIX_FMT_YUYV, [PIX_FMT_MJPEG, PIX_FMT_H264, PIX_FMT_JPEG])
    assert chosen == PIX_FMT_H264
    assert info.name == "h264"


def test_find_m2m_formats_stops_at_zero():
    devices = make_list()
    assert devices.find_m2m_formats(PIX_FMT_YUYV, [PIX_FMT_MJPEG, 0, PIX_FMT_JPEG]) is None


def test_iteration_and_length():
    devices = make_list()
    assert len(devices) == 4
    assert [info.name for info in devices] == ["camera", "not-m2m", "jpeg", "h264"]