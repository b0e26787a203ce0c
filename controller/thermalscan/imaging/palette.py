"""False-color thermal palette.

Luminance (0-255) is mapped onto five piecewise-linear bands:
blue -> cyan -> green -> yellow -> red -> orange. The scalar ``color_for``
and the vectorized ``thermal_colors`` use the same arithmetic so they agree
exactly for any input.
"""
from __future__ import annotations

import math
from typing import Tuple

import numpy as np

# (band start, band width) in normalized luminance
BLUE_CYAN = (0.0, 0.30)
CYAN_GREEN = (0.30, 0.05)
GREEN_YELLOW = (0.35, 0.15)
YELLOW_RED = (0.50, 0.25)
RED_ORANGE = (0.75, 0.25)

ORANGE_GREEN_MAX = 165

RGB = Tuple[int, int, int]


def _normalize(luminance: float) -> float:
    return min(max(luminance, 0.0), 255.0) / 255.0


def color_for(luminance: float) -> RGB:
    """Map a single luminance sample to an ``(r, g, b)`` thermal color."""
    n = _normalize(float(luminance))
    if n < CYAN_GREEN[0]:
        t = (n - BLUE_CYAN[0]) / BLUE_CYAN[1]
        return 0, math.floor(t * 255), 255
    if n < GREEN_YELLOW[0]:
        t = (n - CYAN_GREEN[0]) / CYAN_GREEN[1]
        return 0, 255, math.floor(255 * (1 - t))
    if n < YELLOW_RED[0]:
        t = (n - GREEN_YELLOW[0]) / GREEN_YELLOW[1]
        return math.floor(t * 255), 255, 0
    if n < RED_ORANGE[0]:
        t = (n - YELLOW_RED[0]) / YELLOW_RED[1]
        return 255, math.floor(255 * (1 - t)), 0
    t = (n - RED_ORANGE[0]) / RED_ORANGE[1]
    return 255, math.floor(t * ORANGE_GREEN_MAX), 0


def thermal_colors(luminance: np.ndarray) -> np.ndarray:
    """Vectorized ``color_for``: returns a ``(..., 3)`` uint8 array."""
    n = np.clip(np.asarray(luminance, dtype=np.float64), 0.0, 255.0) / 255.0
    out = np.zeros(n.shape + (3,), dtype=np.uint8)
    r = out[..., 0]
    g = out[..., 1]
    b = out[..., 2]

    band = n < CYAN_GREEN[0]
    t = (n[band] - BLUE_CYAN[0]) / BLUE_CYAN[1]
    g[band] = np.floor(t * 255)
    b[band] = 255

    band = (n >= CYAN_GREEN[0]) & (n < GREEN_YELLOW[0])
    t = (n[band] - CYAN_GREEN[0]) / CYAN_GREEN[1]
    g[band] = 255
    b[band] = np.floor(255 * (1 - t))

    band = (n >= GREEN_YELLOW[0]) & (n < YELLOW_RED[0])
    t = (n[band] - GREEN_YELLOW[0]) / GREEN_YELLOW[1]
    r[band] = np.floor(t * 255)
    g[band] = 255

    band = (n >= YELLOW_RED[0]) & (n < RED_ORANGE[0])
    t = (n[band] - YELLOW_RED[0]) / YELLOW_RED[1]
    r[band] = 255
    g[band] = np.floor(255 * (1 - t))

    band = n >= RED_ORANGE[0]
    t = (n[band] - RED_ORANGE[0]) / RED_ORANGE[1]
    r[band] = 255
    g[band] = np.floor(t * ORANGE_GREEN_MAX)

    return out


__all__ = ["color_for", "thermal_colors"]
