"""A simple motion detector working on the low resolution stream.

Pixels in a region of interest of the current frame are compared with the same
pixels of the previous frame examined. A pixel counts as changed when the
difference exceeds ``difference_m * old + difference_c``; when enough pixels
change, motion is reported under ``motion_detect.result`` in the request's
post-processing metadata.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import numpy as np

from .stage import CameraApp, CompletedRequest, PostProcessingStage, Stream, register_stage

logger = logging.getLogger(__name__)

NAME = "motion_detect"
RESULT_KEY = "motion_detect.result"


@dataclass
class MotionDetectConfig:
    """Detector settings; ROI dimensions are fractions of the lores image size."""

    roi_x: float = 0.0
    roi_y: float = 0.0
    roi_width: float = 1.0
    roi_height: float = 1.0
    hskip: int = 1
    vskip: int = 1
    difference_m: float = 0.1
    difference_c: int = 10
    region_threshold: float = 0.005
    frame_period: int = 5
    verbose: bool = False


def _byte_view(buf) -> np.ndarray:
    if isinstance(buf, np.ndarray):
        return buf.reshape(-1).view(np.uint8)
    return np.frombuffer(buf, dtype=np.uint8)


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(value, hi))


class MotionDetectStage(PostProcessingStage):
    """Reports whether enough of the region of interest changed between frames."""

    def __init__(self, app: CameraApp):
        super().__init__(app)
        self.config = MotionDetectConfig()
        self._stream: Optional[Stream] = None
        self._roi_index = np.zeros((0, 0), dtype=np.int64)
        self._region_threshold = 0
        self._previous = np.zeros((0, 0), dtype=np.int64)
        self._first_time = True
        self._motion_detected = False
        self._lock = threading.Lock()

    def name(self) -> str:
        return NAME

    def read(self, params: Mapping[str, Any]) -> None:
        self.config = MotionDetectConfig(
            roi_x=float(params.get("roi_x", 0.0)),
            roi_y=float(params.get("roi_y", 0.0)),
            roi_width=float(params.get("roi_width", 1.0)),
            roi_height=float(params.get("roi_height", 1.0)),
            hskip=int(params.get("hskip", 1)),
            vskip=int(params.get("vskip", 1)),
            difference_m=float(params.get("difference_m", 0.1)),
            difference_c=int(params.get("difference_c", 10)),
            region_threshold=float(params.get("region_threshold", 0.005)),
            frame_period=int(params.get("frame_period", 5)),
            verbose=bool(int(params.get("verbose", 0))),
        )

    def configure(self) -> None:
        self._stream = self.app.lores_stream
        if self._stream is None:
            return
        info = dataclasses.replace(self.app.get_stream_info(self._stream))
        cfg = self.config
        cfg.hskip = max(cfg.hskip, 1)
        cfg.vskip = max(cfg.vskip, 1)
        width = info.width // cfg.hskip
        height = info.height // cfg.vskip
        lores_stride = info.stride * cfg.vskip

        # Pixel positions are held as if in an image subsampled by hskip and vskip.
        roi_x = max(0, int(cfg.roi_x * width))
        roi_y = max(0, int(cfg.roi_y * height))
        roi_width = max(0, int(cfg.roi_width * width))
        roi_height = max(0, int(cfg.roi_height * height))
        threshold = max(0, int(cfg.region_threshold * roi_width * roi_height))

        roi_x = _clamp(roi_x, 0, width)
        roi_y = _clamp(roi_y, 0, height)
        roi_width = _clamp(roi_width, 0, width - roi_x)
        roi_height = _clamp(roi_height, 0, height - roi_y)
        self._region_threshold = _clamp(threshold, 0, roi_width * roi_height)

        if cfg.verbose:
            logger.info(
                "Lores: %dx%d roi: (%d,%d) %dx%d threshold: %d",
                width, height, roi_x, roi_y, roi_width, roi_height, self._region_threshold,
            )

        rows = (roi_y + np.arange(roi_height)) * lores_stride + roi_x * cfg.hskip
        cols = np.arange(roi_width) * cfg.hskip
        self._roi_index = rows[:, None] + cols[None, :]
        self._previous = np.zeros((roi_height, roi_width), dtype=np.int64)
        self._first_time = True
        self._motion_detected = False

    def process(self, request: CompletedRequest) -> bool:
        if self._stream is None:
            return False
        period = self.config.frame_period
        if period and request.sequence % period:
            return False

        data = _byte_view(request.buffers[self._stream])
        current = data[self._roi_index].astype(np.int64)

        with self._lock:
            if self._first_time:
                self._first_time = False
                self._previous = current
                request.post_process_metadata[RESULT_KEY] = self._motion_detected
                return False

            old = self._previous
            self._previous = current
            changed = np.abs(current - old) > (
                self.config.difference_m * old + self.config.difference_c
            )
            regions = int(np.count_nonzero(changed))
            motion_detected = bool(current.size) and regions >= self._region_threshold

            if self.config.verbose and motion_detected != self._motion_detected:
                logger.info("Motion %s", "detected" if motion_detected else "stopped")

            self._motion_detected = motion_detected
            request.post_process_metadata[RESULT_KEY] = motion_detected
            return False


register_stage(NAME, MotionDetectStage)