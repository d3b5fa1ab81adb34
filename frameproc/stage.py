"""Base class, registry and helpers for frame post-processing stages."""

from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

import numpy as np


@dataclass
class StreamInfo:
    """Geometry and format of an image stream."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: str = "YUV420"
    colour_space: Optional[str] = None


@dataclass
class StreamConfiguration:
    """Negotiable configuration of a stream."""

    pixel_format: str = "YUV420"
    buffer_count: int = 1


@dataclass(eq=False)
class Stream:
    """An image stream; identity is used to key buffers."""

    name: str
    configuration: StreamConfiguration = field(default_factory=StreamConfiguration)


@dataclass
class CompletedRequest:
    """A finished capture: its buffers and metadata."""

    sequence: int = 0
    buffers: Dict[Stream, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    post_process_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CameraApp:
    """The streams and settings a stage can inspect."""

    main_stream: Optional[Stream] = None
    lores_stream: Optional[Stream] = None
    still_stream: Optional[Stream] = None
    stream_info: Dict[Stream, StreamInfo] = field(default_factory=dict)
    options: Any = None
    camera_model: str = ""

    def get_stream_info(self, stream: Stream) -> StreamInfo:
        try:
            return self.stream_info[stream]
        except KeyError:
            raise KeyError(f"no information for stream {stream.name!r}") from None


class PostProcessingStage(abc.ABC):
    """A stage that inspects or modifies each completed request."""

    def __init__(self, app: CameraApp):
        self.app = app
        self.running = False

    @abc.abstractmethod
    def name(self) -> str:
        """Return the name under which the stage is registered."""

    def read(self, params: Mapping[str, Any]) -> None:
        """Read the stage's parameters."""

    def adjust_config(self, use_case: str, config: StreamConfiguration) -> None:
        """Adjust a stream configuration before the camera is configured."""

    def configure(self) -> None:
        """Prepare for the configured streams."""

    def start(self) -> None:
        """Mark the stage as running when the camera starts."""
        self.running = True

    @abc.abstractmethod
    def process(self, request: CompletedRequest) -> bool:
        """Process a request; return True if it is to be dropped."""

    def stop(self) -> None:
        """Mark the stage as stopped when the camera stops."""
        self.running = False

    def teardown(self) -> None:
        """Release anything acquired in configure; the stage is no longer running."""
        self.running = False


def yuv420_to_rgb(src, src_info: StreamInfo, dst_info: StreamInfo) -> bytes:
    """Convert a YUV420 image to packed RGB, cropping from the centre.

    The result has dst_info.height rows of dst_info.stride bytes each.
    """
    if src_info.width < dst_info.width or src_info.height < dst_info.height:
        raise ValueError("destination image is larger than the source")
    if dst_info.stride < 3 * dst_info.width:
        raise ValueError("destination stride too small for RGB rows")
    data = src if isinstance(src, np.ndarray) else np.frombuffer(src, dtype=np.uint8)
    data = data.reshape(-1)

    off_x = ((src_info.width - dst_info.width) // 2) & ~1
    off_y = ((src_info.height - dst_info.height) // 2) & ~1
    stride = src_info.stride
    half_stride = stride // 2
    y_size = src_info.height * stride
    u_size = (src_info.height // 2) * half_stride

    rows = np.arange(dst_info.height) + off_y
    cols = np.arange(dst_info.width)
    y_idx = rows[:, None] * stride + (cols + off_x)[None, :]
    uv_idx = y_size + (rows // 2)[:, None] * half_stride + (off_x // 2 + cols // 2)[None, :]

    y = data[y_idx].astype(np.float64)
    u = data[uv_idx].astype(np.float64) - 128
    v = data[uv_idx + u_size].astype(np.float64) - 128

    r = y + 1.402 * v
    g = y - 0.345 * u - 0.714 * v
    b = y + 1.771 * u
    rgb = np.clip(np.trunc(np.stack([r, g, b], axis=-1)), 0, 255).astype(np.uint8)

    out = np.zeros((dst_info.height, dst_info.stride), dtype=np.uint8)
    out[:, : 3 * dst_info.width] = rgb.reshape(dst_info.height, 3 * dst_info.width)
    return out.tobytes()


def execution_time(f: Callable[..., Any], *args, **kwargs) -> float:
    """Run f(*args, **kwargs) and return the elapsed time in seconds."""
    start = time.perf_counter()
    f(*args, **kwargs)
    return time.perf_counter() - start


StageFactory = Callable[[CameraApp], PostProcessingStage]

_stages: Dict[str, StageFactory] = {}


def register_stage(name: str, factory: StageFactory) -> StageFactory:
    """Register a stage factory under name, replacing any earlier one."""
    _stages[name] = factory
    return factory


def get_post_processing_stages() -> Mapping[str, StageFactory]:
    """Return a read-only view of all registered stage factories."""
    return MappingProxyType(_stages)