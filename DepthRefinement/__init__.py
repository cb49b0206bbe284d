"""
Depth Refinement Module
=======================

Tile-based multi-view stereo depth/similarity map refinement on PyTorch
devices (CUDA when available, CPU otherwise):
- upscaling of a coarse (SGM) depth map to the working resolution
- similarity volume over depth hypotheses, fused across target cameras
- sub-pixel best depth extraction (parabola or sliding gaussian)
- variance-guided depth map optimization

Architecture:
    core/        - Tiles, regions of interest and camera registry
    device/      - Command queues, pitched buffers, device camera cache
    operations/  - Depth/sim map, similarity volume and optimizer kernels
    io/          - Diagnostic exports

Example:
    >>> from DepthRefinement import RefineEngine, RefineParams, TileParams
    >>> from DepthRefinement import CommandQueue, DeviceCache, Tile, ROI
    >>>
    >>> cache = DeviceCache(max_cameras=16)
    >>> with RefineEngine(mp, TileParams(), RefineParams(), CommandQueue(), cache) as engine:
    >>>     tile = Tile(rc=0, roi=ROI.from_bounds(0, 640, 0, 480), refine_tcams=(1, 2))
    >>>     engine.refine_tile(tile, coarse_depth_sim_map)
    >>>     depth_sim_map = engine.retrieve_depth_sim_map()
"""

from .config import RefineParams, TileParams, create_params_from_preset, load_params, save_params
from .core import ROI, Range, Tile, CameraParams, MultiViewParams, downscale_roi, upscale_roi
from .device import CommandQueue, DeviceBuffer, DeviceCache
from .io import DiagnosticsExporter
from .logger import configure_root_logger, get_logger, set_level
from .refine import RefineEngine

__version__ = "1.0.0"
__all__ = [
    'RefineEngine',
    'RefineParams',
    'TileParams',
    'create_params_from_preset',
    'load_params',
    'save_params',
    'ROI',
    'Range',
    'Tile',
    'CameraParams',
    'MultiViewParams',
    'downscale_roi',
    'upscale_roi',
    'CommandQueue',
    'DeviceBuffer',
    'DeviceCache',
    'DiagnosticsExporter',
    'configure_root_logger',
    'get_logger',
    'set_level'
]
