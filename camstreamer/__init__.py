"""Camera capture pipeline: buffers, buffer locks, devices, pipeline planning and status."""

__version__ = "0.1.0"