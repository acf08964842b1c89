"""Descriptions of available devices and lookups by supported formats."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field


@dataclass
class DeviceInfo:
    name: str
    path: str
    camera: bool = False
    m2m: bool = False
    output_formats: list[int] = field(default_factory=list)
    capture_formats: list[int] = field(default_factory=list)

    def has_format(self, capture: bool, fmt: int) -> bool:
        formats = self.capture_formats if capture else self.output_formats
        return fmt in formats


@dataclass
class DeviceList:
    devices: list[DeviceInfo] = field(default_factory=list)

    def __iter__(self) -> Iterator[DeviceInfo]:
        return iter(self.devices)

    def __len__(self) -> int:
        return len(self.devices)

    def find_m2m_format(self, output: int, capture: int) -> DeviceInfo | None:
        """Find a memory-to-memory device converting output into capture."""
        return next(
            (
                info
                for info in self.devices
                if info.m2m and info.has_format(False, output) and info.has_format(True, capture)
            ),
            None,
        )

    def find_m2m_formats(
        self, output: int, capture_formats: Iterable[int]
    ) -> tuple[DeviceInfo, int] | None:
        """Try capture formats in order (up to a zero); return (device, format)."""
        for capture in capture_formats:
            if not capture:
                break
            info = self.find_m2m_format(output, capture)
            if info is not None:
                return info, capture
        return None