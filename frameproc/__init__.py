"""Post-processing stages, curves and result helpers for YUV420 camera frames."""

__version__ = "0.1.0"

__all__ = [
    "classify",
    "detection",
    "hdr",
    "histogram",
    "motion_detect",
    "negate",
    "pose",
    "pwl",
    "segmentation",
    "stage",
]