# frameproc

This library provides post-processing stages for frames from a camera
pipeline. Images are planar YUV420 buffers: a Y plane followed by U and V
planes. A `StreamInfo` describes each one by width, height and stride.
Each stage follows the same steps:

1. It reads its parameters from a plain dictionary.
2. It is configured against a `CameraApp`, which holds the main,
   low-resolution and still streams and their `StreamInfo`.
3. It handles one `CompletedRequest` at a time. A request holds the image
   buffers, keyed by `Stream`, and a `post_process_metadata` dictionary.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `frameproc.pwl` defines `Pwl`, a piecewise-linear function. It also
  defines the helper types `Interval`, `Point` and `PerpType`.
  - Build one with `Pwl.from_flat([x0, y0, x1, y1, ...])`.
  - It offers `eval`, `eval_with_span`, `compose`, `combine`, `map`,
    `map2`, `invert`, `match_domain`, `generate_lut`, `scale` and `debug`.
- `frameproc.histogram` defines `Histogram`. It supports `quantile`,
  `inter_quantile_mean` and `cumulative_freq`.
- `frameproc.stage` contains the shared stage machinery:
  - the `PostProcessingStage` base class;
  - the data types `StreamInfo`, `Stream`, `StreamConfiguration`,
    `CompletedRequest` and `CameraApp`;
  - the stage registry, `register_stage` and `get_post_processing_stages`;
  - `yuv420_to_rgb`, which converts to RGB with a centre crop;
  - `execution_time`.
- `frameproc.hdr` defines `HdrStage`, registered as `"hdr"`:
  - It accumulates `num_frames` still frames.
  - It applies an edge-preserving low pass filter, a global tone curve
    and local contrast gain.
  - It writes the result into the last frame.
  - Frames before the last are dropped, because `process` returns `True`.
  - If `jpeg_filename` is set, it saves each frame as a JPEG. The name may
    contain a `%d` for the frame number.
- `frameproc.motion_detect` defines `MotionDetectStage`, registered as
  `"motion_detect"`:
  - It compares a region of interest of the low-resolution stream with
    the frame it examined before.
  - It sets `post_process_metadata["motion_detect.result"]`.
- `frameproc.negate` defines `NegateStage`, registered as `"negate"`. It
  inverts every byte of the main stream's buffer.
- `frameproc.detection` provides:
  - `Rectangle` and `Detection`;
  - `read_detect_labels`;
  - `interpret_detections`, which maps detector outputs to main-image
    coordinates and merges overlapping boxes of the same category.
- `frameproc.classify` provides `read_classify_labels`, `top_results`,
  `label_results` and `format_annotation`.
- `frameproc.pose` provides:
  - `Feature`;
  - `interpret_pose`, which turns heatmaps and offsets into keypoint
    locations and confidences;
  - `pose_segments` and `pose_markers`;
  - `PlotPoseStage`, registered as `"plot_pose_cv"`. It draws the
    keypoints from `pose_estimation.locations` and
    `pose_estimation.confidences` onto the main image.
- `frameproc.segmentation` provides:
  - `Segmentation`;
  - `read_segmentation_labels`;
  - `interpret_segmentation`, which picks the most confident category
    per pixel;
  - `largest_categories`;
  - `draw_segmentation`, which draws the map in grey in the bottom right
    of a YUV420 image.

## Example

```python
from frameproc.pwl import Pwl
from frameproc.histogram import Histogram

curve = Pwl.from_flat([0, 0, 100, 50, 255, 255])
print(curve.eval(50))           # 25.0
lut = curve.generate_lut(int)   # 256 entries

hist = Histogram([1, 2, 3, 4])
print(hist.quantile(0.5))
```

Importing a stage's module registers that stage. After that, you can look
the stage up by name:

```python
import frameproc.negate
from frameproc.stage import (
    CameraApp, CompletedRequest, Stream, StreamInfo, get_post_processing_stages,
)

main = Stream("main")
app = CameraApp(main_stream=main, stream_info={main: StreamInfo(4, 2, 4)})
buffer = bytearray(12)

stage = get_post_processing_stages()["negate"](app)
stage.read({})
stage.configure()
stage.process(CompletedRequest(buffers={main: buffer}))
# every byte of buffer is now 0xff
```

## What it does not do

- The package does not drive a camera or capture frames. You supply the
  buffers and stream descriptions yourself.
- It does not load or run neural-network models. The detection,
  classification, pose and segmentation helpers only interpret output
  arrays that you pass in.
- It has no preview window or any other display output.
- It has no command-line program.