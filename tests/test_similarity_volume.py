import numpy as np
import pytest
import torch

from DepthRefinement.config import RefineParams
from DepthRefinement.core.roi import ROI, Range
from DepthRefinement.operations.depth_sim_map import (
    MASKED_DEPTH,
    NO_DEPTH,
    NO_SIMILARITY,
    depth_sim_map_compute_pix_size,
    depth_sim_map_upscale_and_filter,
)
from DepthRefinement.operations.similarity_volume import (
    fit_parabola_peak,
    sample_image,
    sigmoid,
    sliding_gaussian_peak,
    volume_initialize,
    volume_refine_best_depth,
    volume_refine_similarity,
)

from conftest import PLANE_DEPTH, RC_HEIGHT, RC_WIDTH, constant_depth_sim_map


ROI_FULL = ROI.from_bounds(0, RC_WIDTH, 0, RC_HEIGHT)


def upscaled_map(depth, rc_camera, params, queue):
    """(depth, pixel size) map of the whole reference image"""
    sgm_map = torch.empty(RC_HEIGHT, RC_WIDTH, 2)
    coarse = torch.from_numpy(constant_depth_sim_map(RC_WIDTH, RC_HEIGHT, depth))
    depth_sim_map_upscale_and_filter(sgm_map, coarse, rc_camera, params, ROI_FULL, queue)
    depth_sim_map_compute_pix_size(sgm_map, rc_camera, params, ROI_FULL, queue)
    return sgm_map


def build_volume(mp, cache, queue, params, sgm_map, tcams, depth_range=None):
    rc_camera = cache.request_camera(0, params.scale, mp, queue)
    volume = torch.empty(params.nb_depths_to_refine, RC_HEIGHT, RC_WIDTH)
    volume_initialize(volume, 0.0, queue)
    for tc in tcams:
        tc_camera = cache.request_camera(tc, params.scale, mp, queue)
        volume_refine_similarity(volume, sgm_map, None, rc_camera, tc_camera, params,
                                 ROI_FULL, queue, depth_range=depth_range)
    return volume


# =============================================================================
# Scoring helpers
# =============================================================================

def test_sigmoid_maps_cost_to_similarity():
    costs = torch.tensor([-1.0, -0.7, 0.0, 1.0])
    scores = sigmoid(0.0, 1.0, 0.7, -0.7, costs)

    assert scores[0] > 0.98
    assert scores[1].item() == pytest.approx(0.5)
    assert scores[2] < 1e-3
    assert torch.all(scores[1:] < scores[:-1])


def test_sample_image_bilinear():
    image = torch.arange(12, dtype=torch.float32).view(1, 3, 4)

    values = sample_image(image, torch.tensor([1.5, 0.0, 10.0]), torch.tensor([1.0, 2.0, 0.0]))

    assert values.shape == (1, 3)
    torch.testing.assert_close(values[0], torch.tensor([5.5, 8.0, 3.0]))


def test_parabola_peak_recovers_vertex():
    k = torch.arange(11, dtype=torch.float32)
    scores = (1.0 - 0.01 * (k - 5.3) ** 2).view(11, 1, 1).repeat(1, 2, 3)

    index, peak = fit_parabola_peak(scores)

    assert index.shape == (2, 3)
    torch.testing.assert_close(index, torch.full((2, 3), 5.3), rtol=0, atol=1e-3)
    torch.testing.assert_close(peak, torch.ones(2, 3), rtol=0, atol=1e-4)


def test_parabola_peak_on_border_is_not_fitted():
    scores = torch.tensor([0.9, 0.5, 0.2, 0.1, 0.0])

    index, peak = fit_parabola_peak(scores)

    assert index.item() == 0.0
    assert peak.item() == pytest.approx(0.9)


def test_gaussian_peak_symmetric_curve():
    k = torch.arange(11, dtype=torch.float32)
    scores = torch.exp(-(k - 5.0) ** 2 / 4.0)

    index, peak = sliding_gaussian_peak(scores, nb_subsamples=10, sigma=15.0)

    assert index.item() == pytest.approx(5.0)
    assert 0 < peak.item() <= 1.0


def test_gaussian_peak_follows_offset():
    k = torch.arange(11, dtype=torch.float32)
    scores = torch.exp(-(k - 6.4) ** 2 / 4.0)

    index, _ = sliding_gaussian_peak(scores, nb_subsamples=10, sigma=5.0)

    assert index.item() == pytest.approx(6.4, abs=0.2)


# =============================================================================
# Volume
# =============================================================================

def test_volume_peaks_at_true_depth(plane_scene, device_cache, queue):
    params = RefineParams(half_nb_depths=10)
    rc_camera = device_cache.request_camera(0, 1, plane_scene, queue)
    sgm_map = upscaled_map(PLANE_DEPTH, rc_camera, params, queue)

    volume = build_volume(plane_scene, device_cache, queue, params, sgm_map, (1, 2))

    valid = sgm_map[..., 0] > 0
    best = volume.argmax(dim=0)[valid].float()
    assert (best - params.half_nb_depths).abs().median() <= 1
    assert volume.max() <= 2.0
    assert volume.min() >= 0.0

    # Masked pixels get nothing
    assert torch.all(volume[:, ~valid] == 0)


def test_volume_is_independent_of_target_order(plane_scene, device_cache, queue):
    params = RefineParams(half_nb_depths=6)
    rc_camera = device_cache.request_camera(0, 1, plane_scene, queue)
    sgm_map = upscaled_map(PLANE_DEPTH + 0.02, rc_camera, params, queue)

    forward = build_volume(plane_scene, device_cache, queue, params, sgm_map, (1, 2))
    backward = build_volume(plane_scene, device_cache, queue, params, sgm_map, (2, 1))

    torch.testing.assert_close(forward, backward, rtol=1e-5, atol=1e-6)


def test_depth_range_limits_hypotheses(plane_scene, device_cache, queue):
    params = RefineParams(half_nb_depths=4)
    rc_camera = device_cache.request_camera(0, 1, plane_scene, queue)
    sgm_map = upscaled_map(PLANE_DEPTH, rc_camera, params, queue)

    volume = build_volume(plane_scene, device_cache, queue, params, sgm_map, (1,), depth_range=Range(2, 5))

    assert torch.all(volume[:2] == 0)
    assert torch.all(volume[5:] == 0)
    assert volume[2:5].max() > 0

    with pytest.raises(ValueError):
        build_volume(plane_scene, device_cache, queue, params, sgm_map, (1,), depth_range=Range(0, 20))


# =============================================================================
# Best depth
# =============================================================================

def test_best_depth_sentinels(queue):
    params = RefineParams(half_nb_depths=2, depth_step=1.0)
    roi = ROI.from_bounds(0, 3, 0, 1)

    sgm_map = torch.tensor([[[2.0, 0.01], [NO_DEPTH, 0.0], [3.0, 0.02]]])
    volume = torch.zeros(5, 1, 3)
    volume[:, 0, 0] = torch.tensor([0.1, 0.5, 0.9, 0.5, 0.1]) * 2
    volume[:, 0, 1] = 1.0  # ignored, invalid pixel
    out = torch.empty(1, 3, 2)

    volume_refine_best_depth(out, sgm_map, volume, params, 2, roi, queue)

    assert out[0, 0, 0].item() == pytest.approx(2.0)
    assert out[0, 0, 1].item() == pytest.approx(0.9)
    # Invalid pixel keeps its sentinel
    assert out[0, 1].tolist() == [NO_DEPTH, NO_SIMILARITY]
    # No evidence: coarse depth, no similarity
    assert out[0, 2].tolist() == [pytest.approx(3.0), NO_SIMILARITY]


def test_best_depth_subpixel_offset(queue):
    params = RefineParams(half_nb_depths=5, depth_step=2.0)
    roi = ROI.from_bounds(0, 1, 0, 1)
    k = torch.arange(11, dtype=torch.float32)
    volume = (1.0 - 0.01 * (k - 6.4) ** 2).view(11, 1, 1)
    sgm_map = torch.tensor([[[2.0, 0.01]]])
    out = torch.empty(1, 1, 2)

    volume_refine_best_depth(out, sgm_map, volume, params, 1, roi, queue)

    # 1.4 hypotheses of 2 pixel sizes
    assert out[0, 0, 0].item() == pytest.approx(2.0 + 1.4 * 2.0 * 0.01, abs=1e-5)
    assert out[0, 0, 1].item() == pytest.approx(1.0, abs=1e-4)


def test_best_depth_without_target_cameras(queue):
    params = RefineParams(half_nb_depths=1)
    roi = ROI.from_bounds(0, 2, 0, 1)
    sgm_map = torch.tensor([[[2.0, 0.01], [MASKED_DEPTH, 0.0]]])
    volume = torch.zeros(3, 1, 2)
    out = torch.empty(1, 2, 2)

    volume_refine_best_depth(out, sgm_map, volume, params, 0, roi, queue)

    assert out[..., 0].tolist() == [[2.0, MASKED_DEPTH]]
    assert torch.all(out[..., 1] == NO_SIMILARITY)
    assert not torch.isnan(out).any()


def test_best_depth_gaussian_method(queue):
    params = RefineParams(half_nb_depths=5, subpixel_method='gaussian', nb_subsamples=10, sigma=5.0)
    roi = ROI.from_bounds(0, 1, 0, 1)
    k = torch.arange(11, dtype=torch.float32)
    volume = torch.exp(-(k - 5.0) ** 2 / 4.0).view(11, 1, 1)
    sgm_map = torch.tensor([[[2.0, 0.01]]])
    out = torch.empty(1, 1, 2)

    volume_refine_best_depth(out, sgm_map, volume, params, 1, roi, queue)

    assert out[0, 0, 0].item() == pytest.approx(2.0, abs=1e-6)
    assert 0 < out[0, 0, 1].item() <= 1.0
    assert np.isfinite(out.numpy()).all()


def test_volume_build_never_reads_back_to_host(plane_scene, device_cache, queue, monkeypatch):
    params = RefineParams(half_nb_depths=4)
    rc_camera = device_cache.request_camera(0, 1, plane_scene, queue)
    tc_camera = device_cache.request_camera(1, 1, plane_scene, queue)
    sgm_map = upscaled_map(PLANE_DEPTH, rc_camera, params, queue)
    expected = build_volume(plane_scene, device_cache, queue, params, sgm_map, (1,))

    def blocking_call(*args, **kwargs):
        raise AssertionError("host read-back while building the volume")

    volume = torch.empty(params.nb_depths_to_refine, RC_HEIGHT, RC_WIDTH)
    with monkeypatch.context() as m:
        m.setattr(torch, "nonzero", blocking_call)
        for name in ("nonzero", "item", "tolist", "__bool__"):
            m.setattr(torch.Tensor, name, blocking_call)

        volume_initialize(volume, 0.0, queue)
        volume_refine_similarity(volume, sgm_map, None, rc_camera, tc_camera, params, ROI_FULL, queue)

    torch.testing.assert_close(volume, expected)


def test_all_masked_volume_stays_empty(plane_scene, device_cache, queue):
    params = RefineParams(half_nb_depths=3)
    sgm_map = torch.zeros(RC_HEIGHT, RC_WIDTH, 2)
    sgm_map[..., 0] = MASKED_DEPTH

    volume = build_volume(plane_scene, device_cache, queue, params, sgm_map, (1, 2))

    assert torch.all(volume == 0)
