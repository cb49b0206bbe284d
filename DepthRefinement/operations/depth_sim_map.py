"""
Depth/Similarity Map Operations
===============================

Device operations on (depth, similarity) maps at working resolution:
upscaling of the coarse map with alpha filtering, pixel size computation,
normal map upscaling and depth-only copy.

A depth/sim map is a tensor (height, width, 2). Invalid pixels carry a
negative depth sentinel.
"""

from typing import Tuple

import torch

from ..config import RefineParams
from ..core.roi import ROI
from ..device.camera_cache import DeviceCamera
from ..device.command_queue import CommandQueue


NO_DEPTH = -1.0
MASKED_DEPTH = -2.0
NO_SIMILARITY = 0.0
PASSTHROUGH_SIMILARITY = 1.0

# Pixels with a lower alpha are excluded from the refine step
MIN_ALPHA = 0.9


def roi_pixel_grid(roi: ROI, step_xy: int,
                   device: torch.device) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Image coordinates (at the working scale) of the pixels of a downscaled ROI.

    Returns:
        u, v coordinates, each (height, width)
    """
    xs = torch.arange(roi.x.begin, roi.x.end, device=device, dtype=torch.float32) * step_xy
    ys = torch.arange(roi.y.begin, roi.y.end, device=device, dtype=torch.float32) * step_xy
    v, u = torch.meshgrid(ys, xs, indexing='ij')
    return u, v


def _check_map(name: str, tensor: torch.Tensor, roi: ROI, channels: int):
    expected = (roi.height(), roi.width(), channels)
    if tuple(tensor.shape) != expected:
        raise ValueError(f"{name} has shape {tuple(tensor.shape)}, expected {expected}")


def _interpolation_coords(out_size: int, in_size: int, device: torch.device):
    """Left neighbour index, right neighbour index and weight of each output pixel"""
    ratio = in_size / out_size
    pos = (torch.arange(out_size, device=device, dtype=torch.float32) + 0.5) * ratio - 0.5
    pos = pos.clamp(0, in_size - 1)
    i0 = pos.floor().long().clamp(max=max(in_size - 2, 0))
    i1 = (i0 + 1).clamp(max=in_size - 1)
    frac = (pos - i0.float()).clamp(0.0, 1.0)
    return i0, i1, frac


def _masked_pixels(rc_camera: DeviceCamera, roi: ROI, step_xy: int) -> torch.Tensor:
    """Pixels of the ROI whose reference alpha is below MIN_ALPHA"""
    xs = (torch.arange(roi.x.begin, roi.x.end, device=rc_camera.alpha.device) * step_xy).clamp(max=rc_camera.width - 1)
    ys = (torch.arange(roi.y.begin, roi.y.end, device=rc_camera.alpha.device) * step_xy).clamp(max=rc_camera.height - 1)
    alpha = rc_camera.alpha[ys[:, None], xs[None, :]]
    return alpha < MIN_ALPHA


def depth_sim_map_upscale_and_filter(out_depth_sim_map: torch.Tensor,
                                     in_depth_sim_map: torch.Tensor,
                                     rc_camera: DeviceCamera,
                                     refine_params: RefineParams,
                                     roi: ROI,
                                     queue: CommandQueue):
    """
    Upscale a coarse depth/sim map to the working resolution of a tile.

    Bilinear interpolation between the 4 coarse neighbours. When one of the
    contributing neighbours is invalid, the valid ones are averaged instead so
    that invalid depths never leak into valid pixels. Pixels masked by the
    reference alpha are written with MASKED_DEPTH.

    Args:
        out_depth_sim_map: Output map (roi height, roi width, 2)
        in_depth_sim_map: Coarse map covering the same tile (h, w, 2)
        rc_camera: Reference device camera
        refine_params: Refine parameters
        roi: Downscaled tile region
        queue: Command queue
    """
    _check_map("Upscaled depth/sim map", out_depth_sim_map, roi, 2)
    if in_depth_sim_map.dim() != 3 or in_depth_sim_map.shape[2] != 2:
        raise ValueError(f"Coarse depth/sim map must be (h, w, 2), got {tuple(in_depth_sim_map.shape)}")

    with queue.scope():
        in_map = in_depth_sim_map.to(queue.device, torch.float32)
        in_height, in_width = in_map.shape[:2]

        x0, x1, fx = _interpolation_coords(roi.width(), in_width, queue.device)
        y0, y1, fy = _interpolation_coords(roi.height(), in_height, queue.device)

        # 4 neighbours (h, w, 2)
        lu = in_map[y0[:, None], x0[None, :]]
        ru = in_map[y0[:, None], x1[None, :]]
        ld = in_map[y1[:, None], x0[None, :]]
        rd = in_map[y1[:, None], x1[None, :]]

        wx = fx[None, :, None]
        wy = fy[:, None, None]
        bilinear = torch.lerp(torch.lerp(lu, ru, wx), torch.lerp(ld, rd, wx), wy)

        # Validity of the neighbours that actually contribute
        neighbours = torch.stack([lu, ru, ld, rd])
        weights = torch.stack([(1 - wx) * (1 - wy), wx * (1 - wy), (1 - wx) * wy, wx * wy])
        contributing = weights > 0
        valid = contributing & (neighbours[..., :1] > 0)

        nb_valid = valid.sum(dim=0)
        all_valid = (nb_valid == contributing.sum(dim=0))
        average = (neighbours * valid).sum(dim=0) / nb_valid.clamp(min=1)

        invalid_value = torch.tensor([NO_DEPTH, NO_SIMILARITY], device=queue.device)
        masked_value = torch.tensor([MASKED_DEPTH, NO_SIMILARITY], device=queue.device)

        out = torch.where(all_valid, bilinear, torch.where(nb_valid > 0, average, invalid_value))

        # Filter masked pixels (alpha)
        masked = _masked_pixels(rc_camera, roi, refine_params.step_xy)
        out = torch.where(masked[..., None], masked_value, out)

        out_depth_sim_map.copy_(out)


def depth_sim_map_compute_pix_size(depth_sim_map: torch.Tensor,
                                   rc_camera: DeviceCamera,
                                   refine_params: RefineParams,
                                   roi: ROI,
                                   queue: CommandQueue):
    """
    Replace the similarity of valid pixels by their pixel size.

    The pixel size is the metric footprint of a reference pixel at the pixel
    depth; it is the depth step of the refine volume and the trust weight of
    the optimization.
    """
    _check_map("Depth/sim map", depth_sim_map, roi, 2)

    with queue.scope():
        depth = depth_sim_map[..., 0]
        pix_size = rc_camera.pixel_size(depth)
        depth_sim_map[..., 1] = torch.where(depth > 0, pix_size, depth_sim_map[..., 1])


def normal_map_upscale(out_normal_map: torch.Tensor,
                       in_normal_map: torch.Tensor,
                       roi: ROI,
                       queue: CommandQueue):
    """Nearest-neighbour upscale of a coarse normal map covering the same tile"""
    _check_map("Upscaled normal map", out_normal_map, roi, 3)
    if in_normal_map.dim() != 3 or in_normal_map.shape[2] != 3:
        raise ValueError(f"Coarse normal map must be (h, w, 3), got {tuple(in_normal_map.shape)}")

    with queue.scope():
        in_map = in_normal_map.to(queue.device, torch.float32)
        in_height, in_width = in_map.shape[:2]

        xs = ((torch.arange(roi.width(), device=queue.device) + 0.5) * (in_width / roi.width())).long()
        ys = ((torch.arange(roi.height(), device=queue.device) + 0.5) * (in_height / roi.height())).long()
        xs = xs.clamp(max=in_width - 1)
        ys = ys.clamp(max=in_height - 1)

        out_normal_map.copy_(in_map[ys[:, None], xs[None, :]])


def depth_sim_map_copy_depth_only(out_depth_sim_map: torch.Tensor,
                                  in_depth_sim_map: torch.Tensor,
                                  default_sim: float,
                                  queue: CommandQueue):
    """Copy depths and set every similarity to a constant"""
    if out_depth_sim_map.shape != in_depth_sim_map.shape:
        raise ValueError(
            f"Depth/sim map shapes differ: {tuple(out_depth_sim_map.shape)} "
            f"and {tuple(in_depth_sim_map.shape)}"
        )

    with queue.scope():
        out_depth_sim_map[..., 0].copy_(in_depth_sim_map[..., 0])
        out_depth_sim_map[..., 1].fill_(default_sim)
