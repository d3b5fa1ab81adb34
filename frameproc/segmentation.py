"""Image segmentation results: reading labels, interpreting outputs, drawing."""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import takewhile
from typing import List, Sequence, Tuple

import numpy as np

from .stage import StreamInfo

# Input and output size of the segmentation network.
WIDTH = 257
HEIGHT = 257
RESULT_KEY = "segmentation.result"


@dataclass
class Segmentation:
    """A category index for every pixel, with the category labels."""

    width: int
    height: int
    labels: List[str] = field(default_factory=list)
    segmentation: bytes = b""


def read_segmentation_labels(path) -> List[str]:
    """Read a labels file, one label per line."""
    try:
        with open(path, encoding="utf-8", newline="") as f:
            content = f.read()
    except OSError as exc:
        raise RuntimeError("SegmentationTfStage: Failed to load labels file") from exc
    if not content:
        return []
    labels = content.split("\n")
    if content.endswith("\n"):
        labels.pop()
    return labels


def _indices(segmentation) -> np.ndarray:
    if isinstance(segmentation, (bytes, bytearray, memoryview)):
        return np.frombuffer(segmentation, dtype=np.uint8)
    return np.asarray(segmentation).reshape(-1)


def interpret_segmentation(
    output, num_categories: int, width: int = WIDTH, height: int = HEIGHT
) -> bytes:
    """Pick the most confident category for every pixel of the network output."""
    if num_categories < 1:
        raise ValueError("need at least one category")
    scores = np.asarray(output).reshape(-1)
    if scores.size != width * height * num_categories:
        raise ValueError("output tensor has unexpected size")
    best = np.argmax(scores.reshape(width * height, num_categories), axis=1)
    return (best & 0xFF).astype(np.uint8).tobytes()


def largest_categories(
    segmentation, labels: Sequence[str], threshold: int = 5000
) -> List[Tuple[str, int]]:
    """Labels with their pixel counts, largest first, while counts reach threshold."""
    indices = _indices(segmentation).astype(np.int64)
    counts = np.bincount(indices, minlength=len(labels))
    if len(counts) > len(labels):
        raise ValueError("segmentation refers to a category without a label")
    ranked = sorted(zip(labels, counts.tolist()), key=lambda pair: pair[1], reverse=True)
    return list(takewhile(lambda pair: pair[1] >= threshold, ranked))


def _writable_bytes(buf) -> np.ndarray:
    if isinstance(buf, np.ndarray):
        data = buf.reshape(-1).view(np.uint8)
    else:
        data = np.frombuffer(buf, dtype=np.uint8)
    if not data.flags.writeable:
        raise TypeError("image buffer is read-only")
    return data


def draw_segmentation(
    buffer,
    main_info: StreamInfo,
    segmentation,
    num_labels: int,
    width: int = WIDTH,
    height: int = HEIGHT,
) -> None:
    """Draw the segmentation as grey levels in the bottom right of a YUV420 image."""
    if num_labels < 1:
        raise ValueError("need at least one label")
    y_offset = main_info.height - height
    x_offset = main_info.width - width
    if y_offset < 0 or x_offset < 0:
        raise ValueError("main image is smaller than the segmentation")
    seg = _indices(segmentation).astype(np.int64)
    if seg.size != width * height:
        raise ValueError("segmentation has unexpected size")

    data = _writable_bytes(buffer)
    stride = main_info.stride
    scale = 255 // num_labels
    luma = data[: stride * main_info.height].reshape(main_info.height, stride)
    luma[y_offset : y_offset + height, x_offset : x_offset + width] = (
        (seg.reshape(height, width) * scale) & 0xFF
    ).astype(np.uint8)

    # Make the region grey by setting its chroma to neutral.
    half_stride = stride // 2
    uv_rows = main_info.height // 2
    uv_size = uv_rows * half_stride
    u_start = stride * main_info.height
    y0, x0 = y_offset // 2, x_offset // 2
    for start in (u_start, u_start + uv_size):
        plane = data[start : start + uv_size].reshape(uv_rows, half_stride)
        plane[y0 : y0 + height // 2, x0 : x0 + width // 2] = 128