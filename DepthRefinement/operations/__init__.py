"""
Device Operations
=================

Depth/similarity map transforms, similarity volume and depth optimization.
Every operation receives the command queue it runs on.
"""

from .depth_sim_map import (
    NO_DEPTH,
    MASKED_DEPTH,
    NO_SIMILARITY,
    PASSTHROUGH_SIMILARITY,
    MIN_ALPHA,
    roi_pixel_grid,
    depth_sim_map_upscale_and_filter,
    depth_sim_map_compute_pix_size,
    normal_map_upscale,
    depth_sim_map_copy_depth_only
)
from .similarity_volume import (
    sigmoid,
    sample_image,
    volume_initialize,
    volume_refine_similarity,
    fit_parabola_peak,
    sliding_gaussian_peak,
    volume_refine_best_depth
)
from .optimization import compute_image_variance, optimize_depth_sim_map_gradient_descent

__all__ = [
    'NO_DEPTH',
    'MASKED_DEPTH',
    'NO_SIMILARITY',
    'PASSTHROUGH_SIMILARITY',
    'MIN_ALPHA',
    'roi_pixel_grid',
    'depth_sim_map_upscale_and_filter',
    'depth_sim_map_compute_pix_size',
    'normal_map_upscale',
    'depth_sim_map_copy_depth_only',
    'sigmoid',
    'sample_image',
    'volume_initialize',
    'volume_refine_similarity',
    'fit_parabola_peak',
    'sliding_gaussian_peak',
    'volume_refine_best_depth',
    'compute_image_variance',
    'optimize_depth_sim_map_gradient_descent'
]
