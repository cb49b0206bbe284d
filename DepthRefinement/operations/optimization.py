"""
Depth Map Optimization
======================

Variance-guided smoothing of the refined depth map by gradient descent.

Each iteration moves every refined depth toward a weighted combination of
three targets:
- the mean of its valid 4-neighbours (smoothness, weaker on textured pixels),
- its refined depth (photo-consistency, weighted by the refined similarity),
- the upscaled coarse depth (anchor).
Depths stay inside the refine search window around the coarse depth.
"""

import torch
import torch.nn.functional as F

from ..config import RefineParams
from ..core.roi import ROI
from ..device.camera_cache import DeviceCamera
from ..device.command_queue import CommandQueue
from .depth_sim_map import roi_pixel_grid
from .similarity_volume import sample_image


def compute_image_variance(out_variance: torch.Tensor,
                           rc_camera: DeviceCamera,
                           refine_params: RefineParams,
                           roi: ROI,
                           queue: CommandQueue):
    """
    3x3 variance of the reference L channel at working resolution.

    Args:
        out_variance: Output (roi height, roi width)
        rc_camera: Reference device camera
        refine_params: Refine parameters
        roi: Downscaled tile region
        queue: Command queue
    """
    if tuple(out_variance.shape) != (roi.height(), roi.width()):
        raise ValueError(
            f"Variance map has shape {tuple(out_variance.shape)}, expected {(roi.height(), roi.width())}"
        )

    with queue.scope():
        u, v = roi_pixel_grid(roi, refine_params.step_xy, queue.device)
        luminance = sample_image(rc_camera.lab[0:1], u, v).unsqueeze(0)

        padded = F.pad(luminance, (1, 1, 1, 1), mode='replicate')
        mean = F.avg_pool2d(padded, kernel_size=3, stride=1)
        mean_sq = F.avg_pool2d(padded * padded, kernel_size=3, stride=1)

        out_variance.copy_((mean_sq - mean * mean).clamp(min=0.0)[0, 0])


def _neighbour_mean(depth: torch.Tensor) -> torch.Tensor:
    """Mean of the valid 4-neighbours of each pixel, the pixel itself when none is valid"""
    padded = F.pad(depth[None, None], (1, 1, 1, 1), value=-1.0)[0, 0]
    neighbours = torch.stack([
        padded[:-2, 1:-1],
        padded[2:, 1:-1],
        padded[1:-1, :-2],
        padded[1:-1, 2:],
    ])
    valid = neighbours > 0
    count = valid.sum(dim=0)
    total = (neighbours * valid).sum(dim=0)
    return torch.where(count > 0, total / count.clamp(min=1), depth)


def optimize_depth_sim_map_gradient_descent(out_optimized: torch.Tensor,
                                            img_variance: torch.Tensor,
                                            tmp_depth: torch.Tensor,
                                            sgm_depth_pix_size_map: torch.Tensor,
                                            refined_depth_sim_map: torch.Tensor,
                                            refine_params: RefineParams,
                                            roi: ROI,
                                            queue: CommandQueue):
    """
    Smooth the refined depth map.

    Per iteration, with current depth D, refined depth Rf and similarity s,
    coarse depth U, pixel size p, neighbour mean N and image variance var:

        w_s = smoothness / (1 + var / variance_scale)
        w_p = photo_weight * clamp(s, 0, 1)
        w_a = anchor_weight / half_nb_depths^2
        D  <- D - step * (w_s (D - N) + w_p (D - Rf) + w_a (D - U)) / (w_s + w_p + w_a)
        D  <- clamp(D, U - half_nb_depths * depth_step * p, U + half_nb_depths * depth_step * p)

    The pixel size p bounds how far D may drift from the coarse depth.

    Only pixels with a valid refined and coarse depth are updated; the
    similarity is carried over from the refined map.

    Args:
        out_optimized: Output map (roi height, roi width, 2)
        img_variance: Reference image variance (roi height, roi width)
        tmp_depth: Scratch depth (roi height, roi width)
        sgm_depth_pix_size_map: Upscaled (depth, pixel size) map
        refined_depth_sim_map: Refined (depth, similarity) map
        refine_params: Refine parameters
        roi: Downscaled tile region
        queue: Command queue
    """
    expected = (roi.height(), roi.width(), 2)
    if tuple(out_optimized.shape) != expected:
        raise ValueError(f"Optimized depth/sim map has shape {tuple(out_optimized.shape)}, expected {expected}")

    half = refine_params.half_nb_depths

    with queue.scope():
        coarse = sgm_depth_pix_size_map[..., 0]
        pix_size = sgm_depth_pix_size_map[..., 1]
        refined = refined_depth_sim_map[..., 0]
        similarity = refined_depth_sim_map[..., 1]

        update = (refined > 0) & (coarse > 0)

        w_s = refine_params.optimization_smoothness / (
            1.0 + img_variance / refine_params.optimization_variance_scale
        )
        w_p = refine_params.optimization_photo_weight * similarity.clamp(0.0, 1.0)
        w_a = refine_params.optimization_anchor_weight / float(half * half)
        w_sum = (w_s + w_p + w_a).clamp(min=1e-12)

        window = half * refine_params.depth_step * pix_size
        low = coarse - window
        high = coarse + window

        out_optimized.copy_(refined_depth_sim_map)
        depth = out_optimized[..., 0]

        for _ in range(refine_params.optimization_nb_iterations):
            tmp_depth.copy_(depth)
            neighbour_mean = _neighbour_mean(tmp_depth)

            gradient = w_s * (tmp_depth - neighbour_mean) + w_p * (tmp_depth - refined) + w_a * (tmp_depth - coarse)
            stepped = tmp_depth - refine_params.optimization_step * gradient / w_sum
            stepped = torch.maximum(torch.minimum(stepped, high), low)

            depth.copy_(torch.where(update, stepped, tmp_depth))
