"""Object detection results and interpretation of detector network outputs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from .stage import StreamInfo

logger = logging.getLogger(__name__)

# Input size of the detection network.
WIDTH = 300
HEIGHT = 300


@dataclass
class Rectangle:
    x: int
    y: int
    width: int
    height: int

    def area(self) -> int:
        return self.width * self.height

    def bounded_to(self, other: "Rectangle") -> "Rectangle":
        """Return the intersection with other (empty if they do not meet)."""
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.x + self.width, other.x + other.width)
        bottom = min(self.y + self.height, other.y + other.height)
        return Rectangle(left, top, max(right - left, 0), max(bottom - top, 0))


@dataclass
class Detection:
    """One detected object: its category, label, confidence and bounding box."""

    category: int
    name: str
    confidence: float
    box: Rectangle

    def __str__(self) -> str:
        b = self.box
        return (
            f"{self.name}[{self.category}] ({self.confidence:.2g}) @ "
            f"{b.x},{b.y} {b.width}x{b.height}"
        )


def _read_lines(path) -> List[str]:
    with open(path, encoding="utf-8", newline="") as f:
        content = f.read()
    if not content:
        return []
    lines = content.split("\n")
    if content.endswith("\n"):
        lines.pop()
    return lines


def read_detect_labels(path) -> List[str]:
    """Read a detector labels file; its first line is not a label and is skipped."""
    try:
        lines = _read_lines(path)
    except OSError as exc:
        raise RuntimeError("ObjectDetectTfStage: Failed to load labels file") from exc
    return lines[1:]


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(value, hi))


def interpret_detections(
    boxes,
    classes: Sequence[float],
    scores: Sequence[float],
    labels: Sequence[str],
    lores_info: StreamInfo,
    main_info: StreamInfo,
    confidence_threshold: float = 0.5,
    overlap_threshold: float = 0.5,
) -> List[Detection]:
    """Turn network outputs into detections in main image coordinates.

    boxes holds (ymin, xmin, ymax, xmax) fractions for each detection. Boxes of
    the same category that overlap too much are merged, keeping the one with
    the higher confidence.
    """
    box_array = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    results: List[Detection] = []

    for (b0, b1, b2, b3), cls, score in zip(box_array, classes, scores):
        if score < confidence_threshold:
            continue

        # Coordinates in the image fed to the network.
        y = _clamp(int(HEIGHT * b0), 0, HEIGHT)
        x = _clamp(int(WIDTH * b1), 0, WIDTH)
        h = _clamp(int(HEIGHT * b2 - y), 0, HEIGHT)
        w = _clamp(int(WIDTH * b3 - x), 0, WIDTH)
        # The network sees a centre crop of the lores image.
        y += (lores_info.height - HEIGHT) // 2
        x += (lores_info.width - WIDTH) // 2
        # The lores image is a pure scaling of the main one.
        y = y * main_info.height // lores_info.height
        x = x * main_info.width // lores_info.width
        h = h * main_info.height // lores_info.height
        w = w * main_info.width // lores_info.width

        c = int(cls)
        detection = Detection(c, labels[c], float(score), Rectangle(x, y, w, h))

        for i, prev in enumerate(results):
            if prev.category != c:
                continue
            overlap = prev.box.bounded_to(detection.box).area()
            if (
                overlap > overlap_threshold * prev.box.area()
                or overlap > overlap_threshold * detection.box.area()
            ):
                if detection.confidence > prev.confidence:
                    results[i] = detection
                break
        else:
            results.append(detection)

    for detection in results:
        logger.debug("%s", detection)
    return results