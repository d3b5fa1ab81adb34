"""HDR and dynamic range compression over several accumulated YUV420 frames."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .histogram import Histogram
from .pwl import Pwl
from .stage import (
    CameraApp,
    CompletedRequest,
    PostProcessingStage,
    StreamConfiguration,
    StreamInfo,
    register_stage,
    yuv420_to_rgb,
)

logger = logging.getLogger(__name__)

NAME = "hdr"

# Neighbourhood size used by the low pass filter passes.
_SIZE = 1
# Cached values of e^(-x^2) for 0 <= x <= 3, in steps of 0.1.
_WEIGHTS = [math.exp(-d * d / 100.0) for d in range(31)]
_MAX_FILENAME = 127


@dataclass
class LpFilterConfig:
    """Low pass filter settings."""

    strength: float = 0.0  # smaller values smooth more
    threshold: Pwl = field(default_factory=Pwl)  # pixel differences to smooth over


@dataclass
class TonemapPoint:
    """Where the inter-quantile mean around quantile q should be moved to."""

    q: float
    width: float
    target: float
    max_up: float
    max_down: float

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "TonemapPoint":
        return cls(
            q=float(params["q"]),
            width=float(params["width"]),
            target=float(params["target"]),
            max_up=float(params["max_up"]),
            max_down=float(params["max_down"]),
        )


@dataclass
class GlobalTonemapConfig:
    points: List[TonemapPoint] = field(default_factory=list)
    strength: float = 0.0  # 1.0 follows the targets, 0.0 ignores them


@dataclass
class LocalTonemapConfig:
    pos_strength: Pwl = field(default_factory=Pwl)  # gain where brighter than neighbourhood
    neg_strength: Pwl = field(default_factory=Pwl)  # gain where darker than neighbourhood
    colour_scale: float = 1.0


@dataclass
class HdrConfig:
    num_frames: int = 0
    lp_filter: LpFilterConfig = field(default_factory=LpFilterConfig)
    global_tonemap: GlobalTonemapConfig = field(default_factory=GlobalTonemapConfig)
    local_tonemap: LocalTonemapConfig = field(default_factory=LocalTonemapConfig)
    jpeg_filename: str = ""


def _byte_view(buf) -> np.ndarray:
    """Return a flat uint8 view onto buf, sharing its memory."""
    if isinstance(buf, np.ndarray):
        if buf.dtype != np.uint8:
            raise TypeError("image buffers must hold uint8 data")
        if not buf.flags.c_contiguous:
            raise ValueError("image buffers must be contiguous")
        return buf.reshape(-1)
    return np.frombuffer(buf, dtype=np.uint8)


def _iir_pass(
    pixels: Sequence[int],
    width: int,
    height: int,
    strength: float,
    threshold: Sequence[float],
    reverse: bool,
) -> Tuple[List[float], List[float]]:
    """One direction of the edge-preserving IIR low pass filter."""
    n = width * height
    out = [0.0] * n
    sums = [0.0] * n
    num_weights = len(_WEIGHTS)
    if reverse:
        rows = range(height - 1 - _SIZE, -1, -1)
        cols = range(width - 1 - _SIZE, -1, -1)
        deltas = (width + 1, width, width - 1, 1)
    else:
        rows = range(_SIZE, height)
        cols = range(_SIZE, width)
        deltas = (-width - 1, -width, -width + 1, -1)
    for y in rows:
        base = y * width
        for x in cols:
            off = base + x
            pixel = pixels[off]
            scale = 10 / threshold[pixel]
            pixel_wt_sum = pixel * strength
            wt_sum = strength
            for delta in deltas:
                p = int(out[off + delta])
                idx = int(abs(p - pixel) * scale)
                if 0 <= idx < num_weights:
                    wt = _WEIGHTS[idx]
                    pixel_wt_sum += wt * p
                    wt_sum += wt
            out[off] = pixel_wt_sum / wt_sum
            sums[off] = wt_sum
    return out, sums


class HdrImage:
    """A 16-bit YUV420 accumulator image: Y plane followed by U and V planes."""

    def __init__(self, width: int = 0, height: int = 0, num_pixels: int = 0):
        self.width = width
        self.height = height
        self.pixels = np.zeros(num_pixels, dtype=np.int16)
        self.dynamic_range = 0  # one more than the maximum pixel value

    def clear(self) -> None:
        self.pixels[:] = 0

    def accumulate(self, src, stride: int) -> None:
        """Add a YUV420 frame with the given stride into this image."""
        data = _byte_view(src)
        w, h = self.width, self.height
        wh = w * h
        luma = data[: stride * h].reshape(h, stride)[:, :w]
        self.pixels[:wh] += luma.reshape(-1).astype(np.int16)

        # U and V are read together as height rows of half the stride.
        half_stride, half_width = stride // 2, w // 2
        idx = stride * h + np.arange(h)[:, None] * half_stride + np.arange(half_width)[None, :]
        chroma = data[idx].astype(np.int16) - 128
        self.pixels[wh : wh + h * half_width] += chroma.reshape(-1)

        self.dynamic_range += 256

    def lp_filter(self, config: LpFilterConfig) -> "HdrImage":
        """Return an edge-preserving smoothed copy of the Y plane."""
        threshold = config.threshold.generate_lut(float)
        strength = config.strength
        w, h = self.width, self.height
        luma = self.pixels[: w * h].tolist()

        fwd_pixels, fwd_sums = _iir_pass(luma, w, h, strength, threshold, reverse=False)
        rev_pixels, rev_sums = _iir_pass(luma, w, h, strength, threshold, reverse=True)

        combined = []
        for fp, fs, rp, rs in zip(fwd_pixels, fwd_sums, rev_pixels, rev_sums):
            total = fs + rs
            # Pixels reached by neither pass have no estimate and come out as zero.
            combined.append(int((fp * fs + rp * rs) / total) if total else 0)

        out = HdrImage(w, h, w * h)
        out.pixels[:] = np.array(combined, dtype=np.int64).astype(np.int16)
        out.dynamic_range = self.dynamic_range
        return out

    def calculate_histogram(self) -> Histogram:
        """Histogram of the Y plane over the whole dynamic range."""
        luma = self.pixels[: self.width * self.height].astype(np.int64)
        counts = np.bincount(luma, minlength=self.dynamic_range)
        if len(counts) > self.dynamic_range:
            raise ValueError("pixel values exceed the dynamic range")
        return Histogram(counts.tolist())

    def create_tonemap(self, config: GlobalTonemapConfig) -> Pwl:
        """Build the global tone curve from the configured quantile targets."""
        maxval = self.dynamic_range - 1
        histogram = self.calculate_histogram()
        tonemap = Pwl()
        tonemap.append(0, 0)
        for tp in config.points:
            iqm = histogram.inter_quantile_mean(tp.q - tp.width, tp.q + tp.width)
            target = tp.target * 4096
            lo, hi = iqm * tp.max_down, iqm * tp.max_up
            target = lo if target < lo else (hi if hi < target else target)
            target = 0.0 if target < 0 else (4095.0 if target > 4095 else target)
            target = iqm + (target - iqm) * config.strength
            tonemap.append(iqm, target)
        tonemap.append(maxval, maxval)
        return tonemap

    def tonemap(self, lp: "HdrImage", config: HdrConfig) -> None:
        """Tone map the low pass image and add back the scaled local detail."""
        tonemap_lut = np.array(self.create_tonemap(config.global_tonemap).generate_lut(int), dtype=np.int64)
        pos_lut = np.array(config.local_tonemap.pos_strength.generate_lut(float))
        neg_lut = np.array(config.local_tonemap.neg_strength.generate_lut(float))
        colour_scale = config.local_tonemap.colour_scale

        w, h = self.width, self.height
        wh = w * h
        maxval = self.dynamic_range - 1

        luma = self.pixels[:wh].astype(np.int64)
        lp_luma = lp.pixels[:wh].astype(np.int64)
        high_pass = luma - lp_luma
        mapped = tonemap_lut[lp_luma]
        strength = np.where(high_pass > 0, pos_lut[lp_luma], neg_lut[lp_luma])
        final = np.clip(mapped + np.trunc(strength * high_pass).astype(np.int64), 0, maxval)
        self.pixels[:wh] = final.astype(np.int16)

        # Chroma is scaled by the luma gain at the top left of each 2x2 block.
        rows = np.arange(0, h, 2)
        cols = np.arange((w + 1) // 2)
        off_u = wh + ((rows * w) // 4)[:, None] + cols[None, :]
        off_v = off_u + wh // 4
        final_even = final.reshape(h, w)[::2, ::2]
        lp_even = lp_luma.reshape(h, w)[::2, ::2]
        # Values here are non-linear so colours can come out slightly saturated;
        # colour_scale allows that to be tweaked.
        f = (final_even + 1) / (lp_even + 1)
        f = (f - 1) * colour_scale + 1
        u = self.pixels[off_u].astype(np.float64)
        v = self.pixels[off_v].astype(np.float64)
        self.pixels[off_u] = np.trunc(u * f).astype(np.int16)
        self.pixels[off_v] = np.trunc(v * f).astype(np.int16)

    def extract(self, dest, stride: int) -> None:
        """Write the image back as 8-bit YUV420 with the given stride."""
        ratio = float(self.dynamic_range // 256)
        if ratio <= 0:
            raise ValueError("dynamic range must be at least 256 to extract")
        out = _byte_view(dest)
        w, h = self.width, self.height
        wh = w * h

        luma = np.trunc(self.pixels[:wh].reshape(h, w) / ratio).astype(np.int64).astype(np.uint8)
        out[: stride * h].reshape(h, stride)[:, :w] = luma

        hw, hh, hs = w // 2, h // 2, stride // 2
        u = self.pixels[wh : wh + hw * hh].reshape(hh, hw)
        v = self.pixels[wh + wh // 4 : wh + wh // 4 + hw * hh].reshape(hh, hw)
        dest_u = stride * h
        dest_v = dest_u + stride * h // 4
        grid = np.arange(hh)[:, None] * hs + np.arange(hw)[None, :]
        out[dest_u + grid] = np.clip(np.trunc(u / ratio).astype(np.int64) + 128, 0, 255)
        out[dest_v + grid] = np.clip(np.trunc(v / ratio).astype(np.int64) + 128, 0, 255)

    def scale(self, factor: float) -> None:
        """Multiply every pixel, and the dynamic range, by factor."""
        self.pixels = np.trunc(self.pixels * factor).astype(np.int16)
        self.dynamic_range = int(self.dynamic_range * factor)


def _strength_curve(curve: Pwl, strength: float) -> Pwl:
    """Blend curve towards 1: strength 1 keeps it, strength 0 gives 1 everywhere."""
    result = Pwl()
    curve.map(lambda x, y: result.append(x, y * strength + 1 - strength))
    return result


class HdrStage(PostProcessingStage):
    """Accumulates several still frames and writes out a tone mapped result."""

    def __init__(self, app: CameraApp):
        super().__init__(app)
        self.config = HdrConfig()
        self._stream = None
        self._info = StreamInfo()
        self._frame_num = 0
        self._lock = threading.Lock()
        self._acc = HdrImage()
        self._lp = HdrImage()

    def name(self) -> str:
        return NAME

    def read(self, params: Mapping[str, Any]) -> None:
        lp_filter = LpFilterConfig(
            strength=float(params["lp_filter_strength"]),
            threshold=Pwl.from_flat(params["lp_filter_threshold"]),
        )
        global_tonemap = GlobalTonemapConfig(
            points=[TonemapPoint.from_params(p) for p in params["global_tonemap_points"]],
            strength=float(params["global_tonemap_strength"]),
        )
        pos_strength = Pwl.from_flat(params["local_pos_strength"])
        neg_strength = Pwl.from_flat(params["local_neg_strength"])
        strength = float(params["local_tonemap_strength"])
        local_tonemap = LocalTonemapConfig(
            pos_strength=_strength_curve(pos_strength, strength),
            neg_strength=_strength_curve(neg_strength, strength),
            colour_scale=float(params["local_colour_scale"]),
        )
        self.config = HdrConfig(
            num_frames=int(params["num_frames"]),
            lp_filter=lp_filter,
            global_tonemap=global_tonemap,
            local_tonemap=local_tonemap,
            jpeg_filename=str(params.get("jpeg_filename", "")),
        )

    def adjust_config(self, use_case: str, config: StreamConfiguration) -> None:
        # Several full resolution frames must be captured quickly, which needs buffers.
        if use_case == "still" and config.buffer_count < 3:
            config.buffer_count = 3

    def configure(self) -> None:
        self._stream = self.app.still_stream
        if self._stream is None:
            return
        self._info = self.app.get_stream_info(self._stream)
        if self._stream.configuration.pixel_format != "YUV420":
            raise RuntimeError("HdrStage: only supports YUV420")
        w, h = self._info.width, self._info.height
        self._frame_num = 0
        self._acc = HdrImage(w, h, w * h * 3 // 2)
        self._lp = HdrImage(w, h, w * h)

    def _frame_filename(self) -> str:
        try:
            filename = self.config.jpeg_filename % self._frame_num
        except TypeError:
            filename = self.config.jpeg_filename
        return filename[:_MAX_FILENAME]

    def _save_jpeg(self, buffer, filename: str) -> None:
        info = self._info
        rgb_info = StreamInfo(width=info.width, height=info.height, stride=3 * info.width)
        rgb = yuv420_to_rgb(buffer, info, rgb_info)
        Image.frombytes("RGB", (info.width, info.height), rgb).save(filename, format="JPEG")

    def process(self, request: CompletedRequest) -> bool:
        if self._stream is None:
            return False  # viewfinder mode: nothing to do

        with self._lock:
            # Frames after the HDR result are passed through unmodified.
            if self._frame_num >= self.config.num_frames:
                return False

            buffer = request.buffers[self._stream]
            logger.info("Accumulating frame %d", self._frame_num)
            self._acc.accumulate(buffer, self._info.stride)

            if self.config.jpeg_filename:
                self._save_jpeg(buffer, self._frame_filename())

            self._frame_num += 1
            if self._frame_num < self.config.num_frames:
                return True

            logger.info("Doing HDR processing...")
            self._acc.scale(16.0 / self.config.num_frames)
            self._lp = self._acc.lp_filter(self.config.lp_filter)
            self._acc.tonemap(self._lp, self.config)
            self._acc.extract(buffer, self._info.stride)
            logger.info("HDR done!")
            return False


register_stage(NAME, HdrStage)