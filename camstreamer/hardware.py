"""Interface that concrete capture back-ends implement."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, NoReturn, TextIO


class HardwareError(Exception):
    """A back-end operation failed or is not supported."""


def _unsupported(target: Any, operation: str) -> NoReturn:
    name = getattr(target, "name", None)
    prefix = f"{name}: " if name else ""
    raise HardwareError(f"{prefix}{operation} is not supported")


class DeviceHardware:
    """Base class for a device back-end.

    Optional operations raise HardwareError when the back-end does not
    provide them; the lifecycle hooks default to doing nothing.
    """

    def open_device(self, dev: Any) -> None:
        """Prepare back-end state for a newly created device."""

    def close_device(self, dev: Any) -> None:
        """Release back-end state held for a device."""

    def force_key(self, dev: Any) -> None:
        _unsupported(dev, "forcing a key frame")

    def option_lines(self, dev: Any) -> Iterable[str]:
        """Lines describing the options the device offers; none by default."""
        return ()

    def dump_options(self, dev: Any, stream: TextIO) -> None:
        """Write the lines from option_lines to stream."""
        for line in self.option_lines(dev):
            stream.write(f"{line}\n")

    def set_fps(self, dev: Any, desired_fps: int) -> None:
        _unsupported(dev, "setting the frame rate")

    def set_rotation(self, dev: Any, vflip: bool, hflip: bool) -> bool:
        """Apply flips through the generic flip options."""
        results = []
        errors = []
        for key, flag in (("horizontal_flip", hflip), ("vertical_flip", vflip)):
            try:
                results.append(self.set_option(dev, key, "1" if flag else "0"))
            except HardwareError as exc:
                errors.append(exc)
        if errors:
            raise errors[0]
        return results[0] or results[1]

    def set_option(self, dev: Any, key: str, value: str) -> bool:
        """Set an option; True if set, False if the key is unknown."""
        _unsupported(dev, "setting options")

    def open_buffer(self, buf: Any) -> None:
        """Attach memory and back-end state to a buffer."""

    def close_buffer(self, buf: Any) -> None:
        """Release back-end state held for a buffer."""

    def enqueue_buffer(self, buf: Any, who: str) -> None:
        _unsupported(buf, "enqueueing buffers")

    def dequeue(self, buf_list: Any) -> Any:
        _unsupported(buf_list, "dequeueing buffers")

    def pollfd(self, buf_list: Any, can_dequeue: bool) -> tuple[int, int]:
        """Return (fd, poll events) to wait on for this buffer list."""
        _unsupported(buf_list, "polling")

    def open_buffer_list(self, buf_list: Any) -> int:
        """Configure a buffer list; return how many buffers to create now."""
        return 0

    def close_buffer_list(self, buf_list: Any) -> None:
        """Release back-end state held for a buffer list."""

    def alloc_buffers(self, buf_list: Any) -> int:
        """Allocate buffers later than opening; return how many were allocated."""
        _unsupported(buf_list, "deferred buffer allocation")

    def free_buffers(self, buf_list: Any) -> int:
        """Release memory allocated by alloc_buffers; return how much was released.

        Without deferred allocation nothing was allocated, so nothing is released.
        """
        return 0

    def set_stream(self, buf_list: Any, do_on: bool) -> None:
        """Start or stop streaming of a buffer list."""
        _unsupported(buf_list, "streaming control")