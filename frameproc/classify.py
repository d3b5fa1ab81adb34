"""Helpers for interpreting image classification network outputs."""

from __future__ import annotations

import heapq
from typing import List, Sequence, Tuple

_LABEL_PADDING = 16


def read_classify_labels(path) -> Tuple[List[str], int]:
    """Read a labels file, one label per line.

    Returns the labels padded with empty strings to a multiple of 16, and the
    number of labels actually read.
    """
    try:
        with open(path, encoding="utf-8", newline="") as f:
            content = f.read()
    except OSError as exc:
        raise RuntimeError("ObjectClassifyTfStage: Failed to load labels file") from exc
    labels = content.split("\n") if content else []
    if content.endswith("\n"):
        labels.pop()
    count = len(labels)
    labels.extend([""] * (-count % _LABEL_PADDING))
    return labels, count


def top_results(
    prediction: Sequence[int],
    num_results: int,
    threshold_low: float,
    threshold_high: float,
    previous: Sequence[Tuple[float, int]] = (),
) -> List[Tuple[float, int]]:
    """Return up to num_results (confidence, index) pairs in descending order.

    Scores are 8-bit values scaled to 0..1. A result is kept if it reaches
    threshold_high, or if it reaches threshold_low and was among the previous
    results.
    """
    previous_indices = {index for _, index in previous}
    heap: List[Tuple[float, int]] = []
    for i, value in enumerate(prediction):
        confidence = int(value) / 255.0
        if confidence < threshold_low:
            continue
        if confidence >= threshold_high or i in previous_indices:
            heapq.heappush(heap, (confidence, i))
            if len(heap) > num_results:
                heapq.heappop(heap)
    return sorted(heap, reverse=True)


def label_results(
    results: Sequence[Tuple[float, int]], labels: Sequence[str]
) -> List[Tuple[str, float]]:
    """Pair each result's label with its confidence."""
    return [(labels[index], confidence) for confidence, index in results]


def _short_label(label: str) -> str:
    start = label.find(":") + 1
    end = label.find(",")
    return label[start:end] if end >= start else label[start:]


def format_annotation(results: Sequence[Tuple[str, float]]) -> str:
    """Annotation text listing each label (after ':' and before ',') and confidence."""
    parts = [f"{_short_label(label)} {confidence:.2g}" for label, confidence in results]
    return "Detected: " + ", ".join(parts)