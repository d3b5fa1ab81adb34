"""Image negative effect: inverts every byte of the main stream's buffer."""

from __future__ import annotations

from typing import Optional

import numpy as np

from .stage import CameraApp, CompletedRequest, PostProcessingStage, Stream, register_stage

NAME = "negate"


def _writable_bytes(buf) -> np.ndarray:
    if isinstance(buf, np.ndarray):
        if not buf.flags.c_contiguous:
            raise ValueError("image buffers must be contiguous")
        data = buf.reshape(-1).view(np.uint8)
    else:
        data = np.frombuffer(buf, dtype=np.uint8)
    if not data.flags.writeable:
        raise TypeError("image buffer is read-only")
    return data


class NegateStage(PostProcessingStage):
    """Inverts the main stream image in place."""

    def __init__(self, app: CameraApp):
        super().__init__(app)
        self._stream: Optional[Stream] = None

    def name(self) -> str:
        return NAME

    def configure(self) -> None:
        self._stream = self.app.main_stream

    def process(self, request: CompletedRequest) -> bool:
        if self._stream is None:
            return False
        data = _writable_bytes(request.buffers[self._stream])
        np.bitwise_xor(data, 0xFF, out=data)
        return False


register_stage(NAME, NegateStage)