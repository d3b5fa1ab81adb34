"""Pose estimation: reading keypoints from network outputs and plotting them."""

from __future__ import annotations

from enum import IntEnum
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw

from .stage import (
    CameraApp,
    CompletedRequest,
    PostProcessingStage,
    Stream,
    StreamInfo,
    register_stage,
)

NAME = "plot_pose_cv"
LOCATIONS_KEY = "pose_estimation.locations"
CONFIDENCES_KEY = "pose_estimation.confidences"

HEATMAP_DIMS = 9

_COLOUR = 255
_RADIUS = 5
_THICKNESS = 2


class Feature(IntEnum):
    """Body keypoints, in the order the pose network reports them."""

    NOSE = 0
    LEFT_EYE = 1
    RIGHT_EYE = 2
    LEFT_EAR = 3
    RIGHT_EAR = 4
    LEFT_SHOULDER = 5
    RIGHT_SHOULDER = 6
    LEFT_ELBOW = 7
    RIGHT_ELBOW = 8
    LEFT_WRIST = 9
    RIGHT_WRIST = 10
    LEFT_HIP = 11
    RIGHT_HIP = 12
    LEFT_KNEE = 13
    RIGHT_KNEE = 14
    LEFT_ANKLE = 15
    RIGHT_ANKLE = 16


FEATURE_SIZE = len(Feature)

# Limbs drawn between pairs of keypoints, in drawing order.
_SEGMENTS: Tuple[Tuple[Feature, Feature], ...] = (
    (Feature.LEFT_SHOULDER, Feature.RIGHT_SHOULDER),
    (Feature.LEFT_SHOULDER, Feature.LEFT_ELBOW),
    (Feature.LEFT_SHOULDER, Feature.LEFT_HIP),
    (Feature.RIGHT_SHOULDER, Feature.RIGHT_ELBOW),
    (Feature.RIGHT_SHOULDER, Feature.RIGHT_HIP),
    (Feature.LEFT_ELBOW, Feature.LEFT_WRIST),
    (Feature.RIGHT_ELBOW, Feature.RIGHT_WRIST),
    (Feature.LEFT_HIP, Feature.RIGHT_HIP),
    (Feature.LEFT_HIP, Feature.LEFT_KNEE),
    (Feature.LEFT_KNEE, Feature.LEFT_ANKLE),
    (Feature.RIGHT_KNEE, Feature.RIGHT_HIP),
    (Feature.RIGHT_KNEE, Feature.RIGHT_ANKLE),
)


def interpret_pose(
    heatmaps, offsets, main_info: StreamInfo
) -> Tuple[List[Tuple[int, int]], List[float]]:
    """Find each keypoint's location in the main image and its confidence.

    heatmaps holds 9x9 cells of per-feature scores; offsets holds, for each
    cell, the y offsets of all features followed by their x offsets.
    """
    cells = HEATMAP_DIMS * HEATMAP_DIMS
    heat = np.asarray(heatmaps, dtype=np.float32).reshape(-1)
    offs = np.asarray(offsets, dtype=np.float32).reshape(-1)
    if heat.size != cells * FEATURE_SIZE:
        raise ValueError("heatmaps have unexpected size")
    if offs.size != cells * 2 * FEATURE_SIZE:
        raise ValueError("offsets have unexpected size")

    grid = heat.reshape(cells, FEATURE_SIZE)
    best_cells = np.argmax(grid, axis=0)

    locations: List[Tuple[int, int]] = []
    confidences: List[float] = []
    for feature, cell in zip(Feature, best_cells):
        cell = int(cell)
        confidences.append(float(grid[cell, feature]))
        y, x = divmod(cell, HEATMAP_DIMS)
        j = 2 * FEATURE_SIZE * cell + feature
        loc_y = int((y * main_info.height) // (HEATMAP_DIMS - 1) + float(offs[j]))
        loc_x = int((x * main_info.width) // (HEATMAP_DIMS - 1) + float(offs[j + FEATURE_SIZE]))
        locations.append((loc_x, loc_y))
    return locations, confidences


def _check_confidences(confidences: Sequence[float]) -> None:
    if len(confidences) < FEATURE_SIZE:
        raise ValueError(f"expected {FEATURE_SIZE} confidences, got {len(confidences)}")


def pose_segments(
    confidences: Sequence[float], threshold: float
) -> List[Tuple[Feature, Feature]]:
    """Limbs whose both ends are more confident than threshold."""
    _check_confidences(confidences)
    return [
        (a, b)
        for a, b in _SEGMENTS
        if confidences[a] > threshold and confidences[b] > threshold
    ]


def pose_markers(confidences: Sequence[float], threshold: float) -> List[Feature]:
    """Keypoints marked with a circle: those less confident than threshold."""
    _check_confidences(confidences)
    return [feature for feature in Feature if confidences[feature] < threshold]


def _writable_bytes(buf) -> np.ndarray:
    if isinstance(buf, np.ndarray):
        data = buf.reshape(-1).view(np.uint8)
    else:
        data = np.frombuffer(buf, dtype=np.uint8)
    if not data.flags.writeable:
        raise TypeError("image buffer is read-only")
    return data


class PlotPoseStage(PostProcessingStage):
    """Draws estimated pose keypoints and limbs onto the main image."""

    def __init__(self, app: CameraApp):
        super().__init__(app)
        self._stream: Optional[Stream] = None
        self.confidence_threshold = -1.0

    def name(self) -> str:
        return NAME

    def read(self, params: Mapping[str, Any]) -> None:
        self.confidence_threshold = float(params.get("confidence_threshold", -1.0))

    def configure(self) -> None:
        self._stream = self.app.main_stream

    def process(self, request: CompletedRequest) -> bool:
        if self._stream is None:
            return False
        info = self.app.get_stream_info(self._stream)
        locations = request.post_process_metadata.get(LOCATIONS_KEY) or []
        confidences = request.post_process_metadata.get(CONFIDENCES_KEY) or []
        if locations and confidences:
            data = _writable_bytes(request.buffers[self._stream])
            luma = data[: info.stride * info.height].reshape(info.height, info.stride)
            self._draw(luma[:, : info.width], locations, confidences)
        return False

    def _draw(self, luma: np.ndarray, locations, confidences: Sequence[float]) -> None:
        points = [tuple(int(v) for v in loc) for loc in locations]
        image = Image.fromarray(np.ascontiguousarray(luma))
        draw = ImageDraw.Draw(image)
        for feature in pose_markers(confidences, self.confidence_threshold):
            x, y = points[feature]
            draw.ellipse(
                (x - _RADIUS, y - _RADIUS, x + _RADIUS, y + _RADIUS),
                outline=_COLOUR,
                width=_THICKNESS,
            )
        for a, b in pose_segments(confidences, self.confidence_threshold):
            draw.line([points[a], points[b]], fill=_COLOUR, width=_THICKNESS)
        luma[:] = np.asarray(image)


register_stage(NAME, PlotPoseStage)