# camstreamer

A camera capture pipeline library. It manages capture and output buffer
lists made of reference-counted buffers, plans a chain of devices (camera,
ISP, decoder, rescalers, encoders) that feeds snapshot, stream and video
outputs, hands the latest frame of each output to consumers through buffer
locks, and describes the whole pipeline as a JSON-ready status document.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Command line

The `camstreamer` command builds the pipeline from its options, prints a
version line and the pipeline's status as JSON, then closes the camera.

```
camstreamer -camera-type=dummy -camera-path=frame.jpg -camera-format=JPEG -camera-video.disabled
```

The `dummy` camera type serves the bytes of the file named by
`-camera-path` as every captured frame. With a JPEG source the snapshot and
stream outputs are taken straight from the camera capture; the video output
needs an H264 source, so it is disabled here.

Options take the form `-group-key=value` (the value may also follow as the
next argument):

- camera: `-camera-path`, `-camera-type` (`v4l2`, `libcamera`, `dummy`),
  `-camera-width`, `-camera-height`, `-camera-format` (for example `YUYV`,
  `NV12`, `MJPEG`, `JPEG`, `H264`, `RGB24`), `-camera-nbufs`,
  `-camera-fps`, `-camera-allow_dma`, `-camera-options`,
  `-camera-isp.options`, `-camera-auto_reconnect`, `-camera-auto_focus`,
  `-camera-force_active`, `-camera-vflip`, `-camera-hflip`,
  `-camera-list_options`, and per output `-camera-snapshot.height`,
  `-camera-snapshot.options`, `-camera-stream.height`,
  `-camera-stream.options`, `-camera-stream.disabled`,
  `-camera-video.height`, `-camera-video.options`,
  `-camera-video.disabled`; the deprecated `-camera-high_res_factor` and
  `-camera-low_res_factor` are turned into output heights.
- http: `-http-port`, `-http-maxcons`.
- rtsp: `-rtsp-port`.
- log: `-log-debug`, `-log-verbose`, `-log-stats`, `-log-filter`.

Boolean options may be given bare (`-camera-video.disabled`). List options
(`-camera-options` and the `.options` entries) accumulate when repeated.
Output heights are capped in the order camera, snapshot, video, stream.
`-h` or `--help` prints every option with its description.
`-camera-list_options` opens the camera, prints the options its devices
offer and exits. With `-camera-auto_reconnect=N` a camera that fails to
open is tried again every N seconds.

## Library overview

- `camstreamer.formats`: `fourcc`, `fourcc_to_string`,
  `many_fourcc_to_string` and `format_by_name` for pixel format codes.
- `camstreamer.hardware`: `DeviceHardware`, the base class a back-end
  subclasses, and `HardwareError`.
- `camstreamer.buffers`: `BufferFormat`, `Buffer` and `BufferList`, with
  reference counting (`Buffer.use`, `Buffer.consumed`), `enqueue`,
  `dequeue`, H264 key-frame detection and a small pending queue
  (`push_to_queue`, `pop_from_queue`).
- `camstreamer.bufferlock`: `BufferLock`, which keeps the most recent
  frame for readers (`get`), drops frames faster than its frame interval
  and runs `write_loop` to pass a number of frames to a callback.
- `camstreamer.device`: `Device`, which owns one output list and any
  number of capture lists, and forwards frame rate, rotation and
  `key=value` options to its back-end.
- `camstreamer.devicelist`: `DeviceInfo` and `DeviceList` for finding
  memory-to-memory devices that convert one format into another.
- `camstreamer.dummy`: `DummyHardware` and `open_dummy_device`, the
  file-replaying back-end.
- `camstreamer.camera`: `Camera`, `CameraOptions`, `CameraOutputOptions`,
  `Link` and `LinkCallbacks`. `Camera.debug_capture` writes every frame of
  a capture list to the directory named by `CAMERA_DEBUG_CAPTURE`.
- `camstreamer.scaling`: `align_size`, `scaled_resolution`,
  `get_scaled_resolution` and rescaler set-up.
- `camstreamer.pipeline`: `configure_input`, `configure_pipeline`,
  `configure_output`, `configure_decoder`, `configure_isp` and
  `find_capture`.
- `camstreamer.status`: `camera_status` builds the status document;
  `set_camera_options` applies options to every device and returns an HTTP
  status code with a text body.

Computing an output size that keeps the aspect ratio:

```python
from camstreamer.scaling import scaled_resolution

width, height = scaled_resolution(1920, 1080, 720, 32)
```

Decoders, rescalers, ISPs, encoders and `v4l2`/`libcamera` cameras are
opened through `Camera.device_factory`, a callable taking a name and a
path and returning a `Device`; give it one backed by your own
`DeviceHardware` subclass.

## What the package does not do

- It contains no back-end for real hardware; only the `dummy` back-end is
  included. The `camstreamer` command creates its camera without a device
  factory, so from the command line only `-camera-type=dummy` opens, and
  no decoder, rescaler or encoder can be added to the pipeline.
- It runs no HTTP, RTSP or WebRTC server and does not stream frames over
  the network. `-http-port` and `-rtsp-port` only appear in the endpoint
  URIs of the status document, and the command exits after printing it.