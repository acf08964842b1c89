"""Four-character pixel format codes and the names accepted for them."""

from __future__ import annotations

from collections.abc import Iterable

_BIG_ENDIAN_FLAG = 1 << 31


def fourcc(a, b, c, d) -> int:
    """Pack four characters (or byte values) into a little-endian format code."""
    codes = [ord(x) if isinstance(x, str) else int(x) for x in (a, b, c, d)]
    for code in codes:
        if not 0 <= code <= 0xFF:
            raise ValueError(f"fourcc component out of range: {code!r}")
    return codes[0] | (codes[1] << 8) | (codes[2] << 16) | (codes[3] << 24)


def fourcc_to_string(value: int) -> str:
    """Render a format code as its four characters ("-BE" marks big-endian)."""
    suffix = ""
    if value & _BIG_ENDIAN_FLAG:
        value &= ~_BIG_ENDIAN_FLAG
        suffix = "-BE"
    raw = [(value >> shift) & 0xFF for shift in (0, 8, 16, 24)]
    while raw and raw[-1] == 0:
        raw.pop()
    text = "".join(chr(code) if 32 <= code < 127 else "?" for code in raw)
    return text + suffix


def many_fourcc_to_string(values: Iterable[int]) -> str:
    """Render several format codes, stopping at a zero terminator."""
    names = []
    for value in values:
        if not value:
            break
        names.append(fourcc_to_string(value))
    return ", ".join(names)


PIX_FMT_YUYV = fourcc("Y", "U", "Y", "V")
PIX_FMT_YUV420 = fourcc("Y", "U", "1", "2")
PIX_FMT_YVU420 = fourcc("Y", "V", "1", "2")
PIX_FMT_NV12 = fourcc("N", "V", "1", "2")
PIX_FMT_NV21 = fourcc("N", "V", "2", "1")
PIX_FMT_MJPEG = fourcc("M", "J", "P", "G")
PIX_FMT_JPEG = fourcc("J", "P", "E", "G")
PIX_FMT_H264 = fourcc("H", "2", "6", "4")
PIX_FMT_SRGGB10 = fourcc("R", "G", "1", "0")
PIX_FMT_SGRBG10 = fourcc("B", "A", "1", "0")
PIX_FMT_SGRBG10P = fourcc("p", "g", "A", "A")
PIX_FMT_SRGGB10P = fourcc("p", "R", "A", "A")
PIX_FMT_SBGGR10P = fourcc("p", "B", "A", "A")
PIX_FMT_RGB565 = fourcc("R", "G", "B", "P")
PIX_FMT_RGB24 = fourcc("R", "G", "B", "3")
PIX_FMT_BGR24 = fourcc("B", "G", "R", "3")

CAMERA_FORMATS: dict[str, int] = {
    "DEFAULT": 0,
    "YUYV": PIX_FMT_YUYV,
    "YUV420": PIX_FMT_YUV420,
    "NV12": PIX_FMT_NV12,
    "NV21": PIX_FMT_NV21,
    "MJPG": PIX_FMT_MJPEG,
    "MJPEG": PIX_FMT_MJPEG,
    "JPEG": PIX_FMT_MJPEG,
    "H264": PIX_FMT_H264,
    "RG10": PIX_FMT_SRGGB10,
    "GB10P": PIX_FMT_SGRBG10P,
    "RG10P": PIX_FMT_SRGGB10P,
    "BG10P": PIX_FMT_SBGGR10P,
    "RGB565": PIX_FMT_RGB565,
    "RGBP": PIX_FMT_RGB565,
    "RGB24": PIX_FMT_RGB24,
    "RGB": PIX_FMT_RGB24,
    "BGR": PIX_FMT_BGR24,
}


def format_by_name(name: str) -> int:
    """Return the format code for a capture format name (case-insensitive)."""
    try:
        return CAMERA_FORMATS[name.upper()]
    except KeyError:
        choices = ", ".join(CAMERA_FORMATS)
        raise ValueError(f"unknown format {name!r}; expected one of: {choices}") from None