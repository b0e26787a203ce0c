"""Pixel pipeline: compositing, thermal palette and blending."""
from .compositor import CropGeometry, FrameCompositor, compose, compute_geometry
from .palette import color_for, thermal_colors
from .thermal_blend import blend, luminance

__all__ = [
    "CropGeometry",
    "FrameCompositor",
    "compose",
    "compute_geometry",
    "color_for",
    "thermal_colors",
    "blend",
    "luminance",
]
