"""
Similarity Volume Operations
============================

Build the refine similarity volume and extract the best depth of each pixel.

The volume holds, for every working pixel and every depth hypothesis around
the upscaled coarse depth, the sum over target cameras of a photo-consistency
score in [0, 1] (higher is better).
"""

from typing import Optional, Tuple

import torch
import torch.nn.functional as F

from ..config import RefineParams
from ..core.roi import ROI, Range
from ..device.camera_cache import DeviceCamera
from ..device.command_queue import CommandQueue
from ..logger import get_logger
from .depth_sim_map import NO_SIMILARITY

logger = get_logger("SimilarityVolume")


# Patches with a lower weighted variance of L are not matched
MIN_PATCH_VARIANCE = 1e-3

# Pixels processed per warp batch
PIXEL_CHUNK_SIZE = 1 << 15


def sigmoid(zero_val: float, end_val: float, width: float, mid: float,
            x: torch.Tensor) -> torch.Tensor:
    """Smooth step from `zero_val` (x << mid) to `end_val` (x >> mid)"""
    return zero_val + (end_val - zero_val) * (1.0 / (1.0 + torch.exp(10.0 * ((x - mid) / width))))


def sample_image(image: torch.Tensor, u: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
    """
    Bilinear sampling of an image at continuous pixel coordinates.

    Coordinates outside the image are clamped to the border.

    Args:
        image: Image (channels, height, width)
        u, v: Pixel coordinates (any matching shapes)

    Returns:
        Sampled values (channels, *u.shape)
    """
    channels, height, width = image.shape
    shape = u.shape

    gx = 2.0 * u.reshape(-1) / max(width - 1, 1) - 1.0
    gy = 2.0 * v.reshape(-1) / max(height - 1, 1) - 1.0
    grid = torch.stack([gx, gy], dim=-1).view(1, 1, -1, 2)

    sampled = F.grid_sample(image.unsqueeze(0), grid.to(image.dtype), mode='bilinear',
                            padding_mode='border', align_corners=True)
    return sampled.view(channels, *shape)


def volume_initialize(volume: torch.Tensor, value: float, queue: CommandQueue):
    """Set every cell of a volume region"""
    with queue.scope():
        volume.fill_(value)


def _patch_offsets(wsh: int, device: torch.device) -> Tuple[torch.Tensor, torch.Tensor]:
    """Row-major patch offsets (P,) with the center at index P // 2"""
    r = torch.arange(-wsh, wsh + 1, device=device, dtype=torch.float32)
    oy, ox = torch.meshgrid(r, r, indexing='ij')
    return ox.reshape(-1), oy.reshape(-1)


def _weighted_stats(weights: torch.Tensor, a: torch.Tensor, weight_sum: torch.Tensor):
    mean = (weights * a).sum(dim=1, keepdim=True) / weight_sum
    centered = a - mean
    return centered, (weights * centered * centered).sum(dim=1, keepdim=True) / weight_sum


def volume_refine_similarity(volume: torch.Tensor,
                             depth_pix_size_map: torch.Tensor,
                             normal_map: Optional[torch.Tensor],
                             rc_camera: DeviceCamera,
                             tc_camera: DeviceCamera,
                             refine_params: RefineParams,
                             roi: ROI,
                             queue: CommandQueue,
                             depth_range: Optional[Range] = None):
    """
    Add the photo-consistency of one target camera to the similarity volume.

    For each valid pixel and each hypothesis
    `z_k = z0 + (k - half_nb_depths) * depth_step * pixel_size`, a patch of
    the reference image is warped into the target image through the plane at
    `z_k` (oriented by the normal map when given, else fronto-parallel).
    The bilateral-weighted NCC of the L channels is turned into a score in
    [0, 1] and added to the volume. Samples behind the target camera, with
    their center outside the target image or on a textureless patch add
    nothing.

    Args:
        volume: Volume region (nb_depths, roi height, roi width)
        depth_pix_size_map: Upscaled (depth, pixel size) map of the tile
        normal_map: Optional upscaled normal map (roi height, roi width, 3)
        rc_camera: Reference device camera
        tc_camera: Target device camera
        refine_params: Refine parameters
        roi: Downscaled tile region
        queue: Command queue
        depth_range: Hypotheses to process (default: all)
    """
    nb_depths = refine_params.nb_depths_to_refine
    if volume.shape != (nb_depths, roi.height(), roi.width()):
        raise ValueError(
            f"Volume has shape {tuple(volume.shape)}, expected {(nb_depths, roi.height(), roi.width())}"
        )
    if depth_range is None:
        depth_range = Range(0, nb_depths)
    if not Range(0, nb_depths).contains(depth_range):
        raise ValueError(f"Depth range [{depth_range.begin}, {depth_range.end}) outside [0, {nb_depths})")

    half = refine_params.half_nb_depths
    step_xy = refine_params.step_xy
    device = queue.device

    with queue.scope():
        height, width = roi.height(), roi.width()
        nb_pixels = height * width

        logger.debug(f"Refine similarity with tc {tc_camera.cam_id}: {width}x{height} pixels, "
                     f"depths [{depth_range.begin}, {depth_range.end})")

        ox, oy = _patch_offsets(refine_params.wsh, device)
        center_index = ox.numel() // 2
        dist_xy = torch.sqrt(ox * ox + oy * oy)

        tc_l = tc_camera.lab[0:1]
        tc_width, tc_height = tc_camera.width, tc_camera.height

        # Dense over the region, invalid pixels are masked out of the scores
        for start in range(0, nb_pixels, PIXEL_CHUNK_SIZE):
            flat = torch.arange(start, min(start + PIXEL_CHUNK_SIZE, nb_pixels), device=device)
            cy = torch.div(flat, width, rounding_mode='floor')
            cx = flat - cy * width

            z0 = depth_pix_size_map[cy, cx, 0]
            pix_size = depth_pix_size_map[cy, cx, 1]
            pixel_ok = z0 > 0

            # Reference patch (n, P)
            u_c = (roi.x.begin + cx).float() * step_xy
            v_c = (roi.y.begin + cy).float() * step_xy
            u_p = u_c[:, None] + ox[None, :]
            v_p = v_c[:, None] + oy[None, :]

            rc_lab = sample_image(rc_camera.lab, u_p, v_p)
            d_lab = torch.linalg.norm(rc_lab - rc_lab[:, :, center_index:center_index + 1], dim=0)
            weights = torch.exp(-d_lab / refine_params.gamma_c - dist_xy[None, :] / refine_params.gamma_p)
            weight_sum = weights.sum(dim=1, keepdim=True)

            rc_centered, rc_var = _weighted_stats(weights, rc_lab[0], weight_sum)
            rc_textured = rc_var[:, 0] > MIN_PATCH_VARIANCE

            # Plane through each hypothesis point: X = C + t * ray
            rays = rc_camera.pixel_rays(u_p, v_p)
            if normal_map is not None:
                normals = normal_map[cy, cx]
                has_normal = torch.linalg.norm(normals, dim=-1, keepdim=True) > 0
                normals = torch.where(has_normal, normals, rc_camera.optical_axis().expand_as(normals))
            else:
                normals = rc_camera.optical_axis().expand(cy.numel(), 3)

            n_dot_rays = (rays * normals[:, None, :]).sum(dim=-1)
            n_dot_center = n_dot_rays[:, center_index:center_index + 1]
            plane_ok = (n_dot_rays.abs() > 1e-8).all(dim=1) & (n_dot_center[:, 0].abs() > 1e-8)
            ray_ratio = n_dot_center / torch.where(n_dot_rays.abs() > 1e-8, n_dot_rays,
                                                   torch.ones_like(n_dot_rays))

            for k in range(depth_range.begin, depth_range.end):
                z_k = z0 + (k - half) * refine_params.depth_step * pix_size

                points = rc_camera.center + (z_k[:, None] * ray_ratio)[..., None] * rays
                u_t, v_t, z_t = tc_camera.project(points)

                in_front = (z_t > 0).all(dim=1)
                u_center = u_t[:, center_index]
                v_center = v_t[:, center_index]
                inside = (u_center >= 0) & (u_center <= tc_width - 1) & \
                         (v_center >= 0) & (v_center <= tc_height - 1)

                tc_values = sample_image(tc_l, u_t, v_t)[0]
                tc_centered, tc_var = _weighted_stats(weights, tc_values, weight_sum)

                cov = (weights * rc_centered * tc_centered).sum(dim=1) / weight_sum[:, 0]
                textured = rc_textured & (tc_var[:, 0] > MIN_PATCH_VARIANCE)
                denom = torch.sqrt((rc_var[:, 0] * tc_var[:, 0]).clamp(min=MIN_PATCH_VARIANCE ** 2))
                ncc = (cov / denom).clamp(-1.0, 1.0)

                score = sigmoid(0.0, 1.0, 0.7, -0.7, -ncc)
                valid = pixel_ok & (z_k > 0) & plane_ok & in_front & inside & textured
                score = torch.where(valid, score, torch.zeros_like(score))

                volume[k].index_put_((cy, cx), score, accumulate=True)


# =============================================================================
# Sub-pixel peak extraction
# =============================================================================

def fit_parabola_peak(scores: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Sub-pixel maximum of sampled scores by a 3-point parabola fit.

    The fit is only applied when the best sample is interior and the
    curvature is negative; the offset is bounded to half a sample.

    Args:
        scores: Sampled scores (nb_samples, ...)

    Returns:
        Continuous peak index and interpolated peak score, each (...)
    """
    nb_samples = scores.shape[0]
    best = scores.argmax(dim=0, keepdim=True)

    y1 = scores.gather(0, best)[0]
    y0 = scores.gather(0, (best - 1).clamp(min=0))[0]
    y2 = scores.gather(0, (best + 1).clamp(max=nb_samples - 1))[0]
    best = best[0]

    denom = y0 - 2.0 * y1 + y2
    fit = (best > 0) & (best < nb_samples - 1) & (denom < 0)
    safe_denom = torch.where(fit, denom, -torch.ones_like(denom))
    offset = torch.where(fit, 0.5 * (y0 - y2) / safe_denom, torch.zeros_like(denom))
    offset = offset.clamp(-0.5, 0.5)

    peak = y1 - 0.25 * (y0 - y2) * offset
    return best.to(scores.dtype) + offset, peak


def sliding_gaussian_peak(scores: torch.Tensor, nb_subsamples: int,
                          sigma: float) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Sub-pixel maximum of sampled scores by a sliding gaussian.

    The scores are smoothed with a gaussian of width `sigma` (in sub-samples)
    evaluated every `1 / nb_subsamples` sample; the best smoothed value wins.

    Args:
        scores: Sampled scores (nb_samples, ...)
        nb_subsamples: Sub-samples per sample
        sigma: Gaussian standard deviation in sub-samples

    Returns:
        Continuous peak index and smoothed peak score, each (...)
    """
    nb_samples = scores.shape[0]
    half = nb_samples // 2
    sample_pos = (torch.arange(nb_samples, device=scores.device, dtype=scores.dtype) - half) * nb_subsamples

    best_value = torch.full(scores.shape[1:], -float('inf'), device=scores.device, dtype=scores.dtype)
    best_index = torch.zeros(scores.shape[1:], device=scores.device, dtype=scores.dtype)

    for s in range(-nb_subsamples * half, nb_subsamples * half + 1):
        weights = torch.exp(-(sample_pos - s) ** 2 / (2.0 * sigma * sigma))
        value = torch.tensordot(weights, scores, dims=1) / weights.sum()

        better = value > best_value
        best_value = torch.where(better, value, best_value)
        best_index = torch.where(better, torch.full_like(best_index, half + s / nb_subsamples), best_index)

    return best_index, best_value


def volume_refine_best_depth(out_depth_sim_map: torch.Tensor,
                             depth_pix_size_map: torch.Tensor,
                             volume: torch.Tensor,
                             refine_params: RefineParams,
                             nb_tcams: int,
                             roi: ROI,
                             queue: CommandQueue):
    """
    Write the refined (depth, similarity) map from the similarity volume.

    Args:
        out_depth_sim_map: Output map (roi height, roi width, 2)
        depth_pix_size_map: Upscaled (depth, pixel size) map
        volume: Filled volume region (nb_depths, roi height, roi width)
        refine_params: Refine parameters
        nb_tcams: Number of target cameras summed in the volume
        roi: Downscaled tile region
        queue: Command queue
    """
    expected = (roi.height(), roi.width(), 2)
    if tuple(out_depth_sim_map.shape) != expected:
        raise ValueError(f"Refined depth/sim map has shape {tuple(out_depth_sim_map.shape)}, expected {expected}")

    with queue.scope():
        depth = depth_pix_size_map[..., 0]
        pix_size = depth_pix_size_map[..., 1]

        if refine_params.subpixel_method == 'gaussian':
            index, peak = sliding_gaussian_peak(volume, refine_params.nb_subsamples, refine_params.sigma)
        else:
            index, peak = fit_parabola_peak(volume)

        refined = depth + (index - refine_params.half_nb_depths) * refine_params.depth_step * pix_size
        similarity = (peak / max(nb_tcams, 1)).clamp(0.0, 1.0)

        # Invalid pixels keep their sentinel, pixels without evidence keep the coarse depth
        found = (depth > 0) & (peak > 0)
        if nb_tcams == 0:
            found = torch.zeros_like(found)
        out_depth_sim_map[..., 0] = torch.where(found, refined, depth)
        out_depth_sim_map[..., 1] = torch.where(found, similarity, torch.full_like(similarity, NO_SIMILARITY))
