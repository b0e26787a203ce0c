"""Cover-fit compositing of camera frames onto the fixed output canvas."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CropGeometry:
    """Region of the source frame that fills the target canvas."""

    x: int
    y: int
    width: int
    height: int


def compute_geometry(source_width: int, source_height: int, target_width: int, target_height: int) -> CropGeometry:
    """Center crop that gives the source the target's aspect ratio."""
    if min(source_width, source_height, target_width, target_height) <= 0:
        raise ValueError("frame dimensions must be positive")

    source_aspect = source_width / source_height
    target_aspect = target_width / target_height

    if source_aspect > target_aspect:
        # Source is wider: keep full height, trim left/right.
        crop_width = min(source_width, max(1, round(source_height * target_aspect)))
        return CropGeometry((source_width - crop_width) // 2, 0, crop_width, source_height)

    crop_height = min(source_height, max(1, round(source_width / target_aspect)))
    return CropGeometry(0, (source_height - crop_height) // 2, source_width, crop_height)


def compose(source: np.ndarray, target_width: int, target_height: int, mirror: bool = False) -> np.ndarray:
    """Crop, resize and optionally mirror ``source`` into a new ``target_height x target_width`` buffer."""
    if source.ndim != 3 or source.shape[2] != 3:
        raise ValueError(f"expected an (H, W, 3) frame, got shape {source.shape}")

    source_height, source_width = source.shape[:2]
    geometry = compute_geometry(source_width, source_height, target_width, target_height)
    crop = source[geometry.y:geometry.y + geometry.height, geometry.x:geometry.x + geometry.width]

    if (geometry.width, geometry.height) == (target_width, target_height):
        out = crop.copy()
    else:
        out = cv2.resize(crop, (target_width, target_height), interpolation=cv2.INTER_LINEAR)

    if mirror:
        out = cv2.flip(out, 1)
    return np.ascontiguousarray(out)


class FrameCompositor:
    """Composites every frame onto a fixed canvas; geometry is recomputed per call."""

    def __init__(self, width: int, height: int, *, mirror: bool = False) -> None:
        self.width = width
        self.height = height
        self.mirror = mirror
        self.last_geometry: Optional[CropGeometry] = None

    def compose(self, source: np.ndarray) -> np.ndarray:
        source_height, source_width = source.shape[:2]
        geometry = compute_geometry(source_width, source_height, self.width, self.height)
        if geometry != self.last_geometry:
            logger.debug(
                "Source %dx%d -> crop %s for %dx%d canvas",
                source_width,
                source_height,
                geometry,
                self.width,
                self.height,
            )
        self.last_geometry = geometry
        return compose(source, self.width, self.height, self.mirror)


__all__ = ["CropGeometry", "compute_geometry", "compose", "FrameCompositor"]
