"""
Core Data Model
===============

Tiles, regions of interest and the camera registry.
"""

from .roi import Range, ROI, Tile, downscale_roi, upscale_roi, divide_round_up
from .camera import CameraParams, MultiViewParams, scale_intrinsics

__all__ = [
    'Range',
    'ROI',
    'Tile',
    'downscale_roi',
    'upscale_roi',
    'divide_round_up',
    'CameraParams',
    'MultiViewParams',
    'scale_intrinsics'
]
