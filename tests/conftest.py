"""
Shared fixtures: a synthetic textured plane seen by three pinhole cameras.

The reference camera sits at the origin looking down +z at the plane
z = PLANE_DEPTH; two target cameras are shifted along x and converge on the
plane center.
"""

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from DepthRefinement.core.camera import CameraParams, MultiViewParams
from DepthRefinement.device.camera_cache import DeviceCache
from DepthRefinement.device.command_queue import CommandQueue


PLANE_DEPTH = 2.0
FOCAL = 200.0

RC_WIDTH, RC_HEIGHT = 64, 48
TC_WIDTH, TC_HEIGHT = 96, 72
BORDER = 4


def intrinsics(width: int, height: int, focal: float = FOCAL) -> np.ndarray:
    return np.array([
        [focal, 0, (width - 1) / 2.0],
        [0, focal, (height - 1) / 2.0],
        [0, 0, 1]
    ])


def texture(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """Gray level of the plane at world (X, Y), in [0.15, 0.85]"""
    return (0.5
            + 0.15 * np.sin(2 * np.pi * X / 0.09)
            + 0.10 * np.sin(2 * np.pi * Y / 0.07)
            + 0.10 * np.sin(2 * np.pi * (X + Y) / 0.11))


def look_at_plane(center: np.ndarray, target: np.ndarray):
    """World to camera (R, t) of a camera at `center` looking at `target` (yaw only)"""
    yaw = np.arctan2(target[0] - center[0], target[2] - center[2])
    R_cam_to_world = Rotation.from_euler('y', yaw).as_matrix()
    R = R_cam_to_world.T
    return R, -R @ center


def render_plane(K: np.ndarray, R: np.ndarray, t: np.ndarray,
                 width: int, height: int, plane_depth: float = PLANE_DEPTH) -> np.ndarray:
    """Float RGB image (height, width, 3) of the textured plane"""
    center = -R.T @ t
    u, v = np.meshgrid(np.arange(width), np.arange(height))
    pixels = np.stack([u, v, np.ones_like(u)], axis=-1).reshape(-1, 3).T

    directions = R.T @ np.linalg.inv(K) @ pixels
    scale = (plane_depth - center[2]) / directions[2]
    points = center[:, None] + scale * directions

    gray = texture(points[0], points[1]).reshape(height, width)
    return np.repeat(gray[..., None], 3, axis=-1).astype(np.float32)


def border_mask(width: int, height: int, border: int = BORDER) -> np.ndarray:
    mask = np.zeros((height, width), dtype=bool)
    mask[border:height - border, border:width - border] = True
    return mask


def make_plane_scene(output_folder=None) -> MultiViewParams:
    """Reference camera 0 and target cameras 1 (x = -0.5) and 2 (x = +0.5)"""
    target = np.array([0.0, 0.0, PLANE_DEPTH])

    K_rc = intrinsics(RC_WIDTH, RC_HEIGHT)
    R_rc, t_rc = np.eye(3), np.zeros(3)
    cameras = [CameraParams(
        view_id=100,
        K=K_rc, R=R_rc, t=t_rc,
        width=RC_WIDTH, height=RC_HEIGHT,
        image=render_plane(K_rc, R_rc, t_rc, RC_WIDTH, RC_HEIGHT),
        mask=border_mask(RC_WIDTH, RC_HEIGHT)
    )]

    K_tc = intrinsics(TC_WIDTH, TC_HEIGHT)
    for view_id, x in ((101, -0.5), (102, 0.5)):
        R, t = look_at_plane(np.array([x, 0.0, 0.0]), target)
        cameras.append(CameraParams(
            view_id=view_id,
            K=K_tc, R=R, t=t,
            width=TC_WIDTH, height=TC_HEIGHT,
            image=render_plane(K_tc, R, t, TC_WIDTH, TC_HEIGHT)
        ))

    return MultiViewParams(cameras, output_folder=output_folder)


def constant_depth_sim_map(width: int, height: int, depth: float, similarity: float = 0.5) -> np.ndarray:
    depth_sim_map = np.empty((height, width, 2), dtype=np.float32)
    depth_sim_map[..., 0] = depth
    depth_sim_map[..., 1] = similarity
    return depth_sim_map


@pytest.fixture
def plane_scene(tmp_path) -> MultiViewParams:
    return make_plane_scene(output_folder=str(tmp_path / "refine"))


@pytest.fixture
def queue() -> CommandQueue:
    return CommandQueue(device='cpu')


@pytest.fixture
def device_cache() -> DeviceCache:
    return DeviceCache(max_cameras=8)
