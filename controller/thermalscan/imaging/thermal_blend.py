"""Thermal blend engine: palette applied to an RGB frame, mixed by progress."""
from __future__ import annotations

import numpy as np

from .palette import thermal_colors

LUMA_WEIGHTS = (0.299, 0.587, 0.114)


def luminance(frame: np.ndarray) -> np.ndarray:
    """Per-pixel luma of an ``(H, W, 3)`` RGB frame as float64."""
    rgb = frame.astype(np.float64)
    return LUMA_WEIGHTS[0] * rgb[..., 0] + LUMA_WEIGHTS[1] * rgb[..., 1] + LUMA_WEIGHTS[2] * rgb[..., 2]


def blend(frame: np.ndarray, progress: float) -> np.ndarray:
    """
    Blend ``frame`` toward its thermal false-color rendition.

    ``progress`` is clamped to [0, 1]; 0 returns an identical copy, 1 returns
    the pure palette image. Output channels are truncated toward zero. The
    input frame is never modified.
    """
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"expected an (H, W, 3) RGB frame, got shape {frame.shape}")

    p = min(max(float(progress), 0.0), 1.0)
    if p == 0.0:
        return frame.copy()

    thermal = thermal_colors(luminance(frame)).astype(np.float64)
    mixed = frame.astype(np.float64) * (1.0 - p) + thermal * p
    return np.clip(np.floor(mixed), 0, 255).astype(np.uint8)


__all__ = ["LUMA_WEIGHTS", "luminance", "blend"]
