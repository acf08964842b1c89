[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "camstreamer"
version = "0.1.0"
description = "Camera capture pipeline: reference-counted buffers, device graph planning and JSON status reporting"
requires-python = ">=3.10"
dependencies = []
keywords = ["camera", "video", "capture", "streaming", "mjpeg", "h264", "pipeline", "fourcc"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video :: Capture",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
camstreamer = "camstreamer.options:main"

[tool.hatch.build.targets.wheel]
packages = ["camstreamer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
