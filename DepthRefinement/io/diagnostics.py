"""
Diagnostics Exporter
====================

Writes intermediate results of the refine step to the output folder:
- depth and similarity maps (.npy with a colour-mapped .png preview)
- cross sections of the similarity volume as a point cloud (.ply)
- similarity curves of 9 sample pixels (.csv)

The exporter only reads host copies of device data.
"""

import csv
import os
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np
import torch

from ..config import RefineParams, TileParams
from ..core.camera import MultiViewParams, scale_intrinsics
from ..core.roi import Tile, downscale_roi
from ..logger import get_logger

try:
    import open3d as o3d
    HAS_OPEN3D = True
except ImportError:
    HAS_OPEN3D = False


ArrayLike = Union[np.ndarray, torch.Tensor]


def _to_host(data: ArrayLike) -> np.ndarray:
    if isinstance(data, torch.Tensor):
        return data.detach().cpu().numpy()
    return np.asarray(data)


def colorize(values: np.ndarray, valid: np.ndarray) -> np.ndarray:
    """
    Colour-map values for a preview image.

    Args:
        values: Scalar map (H, W)
        valid: Pixels to colour, others are black

    Returns:
        BGR uint8 image (H, W, 3)
    """
    normalized = np.zeros(values.shape, dtype=np.float32)
    if valid.any():
        v_min, v_max = np.percentile(values[valid], [1, 99])
        normalized = (values - v_min) / max(v_max - v_min, 1e-12)
        normalized = np.clip(normalized, 0, 1)

    image = cv2.applyColorMap((normalized * 255).astype(np.uint8), cv2.COLORMAP_JET)
    image[~valid] = 0
    return image


class DiagnosticsExporter:
    """
    Intermediate result writer of the refine engine.

    Files are named
    `{output_folder}/{view_id}_{type}_scale{scale}{suffix}[_{tileX}_{tileY}].{ext}`,
    the tile part only being present when the depth map has several tiles.
    """

    def __init__(self, mp: MultiViewParams, tile_params: TileParams,
                 refine_params: RefineParams, output_folder: Optional[str] = None):
        """
        Initialize exporter.

        Args:
            mp: Camera registry
            tile_params: Tiling dimensions
            refine_params: Refine parameters
            output_folder: Destination (default: the registry output folder)
        """
        folder = output_folder or mp.output_folder
        if folder is None:
            raise ValueError("DiagnosticsExporter requires an output folder")

        self.mp = mp
        self.tile_params = tile_params
        self.refine_params = refine_params
        self.output_folder = Path(folder)
        self.output_folder.mkdir(parents=True, exist_ok=True)

        self.logger = get_logger("Diagnostics")

        if refine_params.export_intermediate_cross_volumes and not HAS_OPEN3D:
            self.logger.warning("Open3D not available, volume cross sections will not be exported")

    def get_file_name_from_index(self, tile: Tile, file_type: str, suffix: str, extension: str) -> Path:
        """Output path of one intermediate result of a tile"""
        name = f"{self.mp.get_view_id(tile.rc)}_{file_type}_scale{self.refine_params.scale}{suffix}"
        if tile.nb_tiles > 1:
            name += f"_{tile.roi.x.begin}_{tile.roi.y.begin}"
        return self.output_folder / f"{name}.{extension}"

    # =========================================================================
    # Depth/sim maps
    # =========================================================================

    def write_depth_sim_map(self, tile: Tile, depth_sim_map: ArrayLike, suffix: str):
        """
        Save the depth and similarity channels of a tile map.

        Args:
            tile: Tile the map belongs to
            depth_sim_map: Map (h, w, 2) at working resolution
            suffix: Processing stage, e.g. "_refinedFused"
        """
        data = _to_host(depth_sim_map).astype(np.float32)
        depth = data[..., 0]
        similarity = data[..., 1]
        valid = depth > 0

        depth_path = self.get_file_name_from_index(tile, "depthMap", suffix, "npy")
        sim_path = self.get_file_name_from_index(tile, "simMap", suffix, "npy")

        np.save(depth_path, depth)
        np.save(sim_path, similarity)
        cv2.imwrite(str(depth_path.with_suffix(".png")), colorize(depth, valid))
        cv2.imwrite(str(sim_path.with_suffix(".png")), colorize(similarity, valid))

        self.logger.debug(f"{tile}Depth/sim map exported: {depth_path.name}, {sim_path.name}")

    # =========================================================================
    # Similarity volume
    # =========================================================================

    def export_volume_information(self, tile: Tile, volume: ArrayLike,
                                  depth_pix_size_map: ArrayLike, name: str):
        """
        Export the similarity volume of a tile.

        Args:
            tile: Tile the volume belongs to
            volume: Similarity volume (nb_depths, h, w)
            depth_pix_size_map: Upscaled (depth, pixel size) map (h, w, 2)
            name: Processing stage, e.g. "afterRefine"
        """
        volume = _to_host(volume).astype(np.float32)
        depth_pix_size = _to_host(depth_pix_size_map).astype(np.float32)

        if self.refine_params.export_intermediate_cross_volumes:
            if HAS_OPEN3D:
                self._export_volume_cross(tile, volume, depth_pix_size, name)
            else:
                self.logger.warning(f"{tile}Open3D not available, skipping volume cross export")

        if self.refine_params.export_intermediate_volume_9p_csv:
            self._export_volume_9p_csv(tile, volume, name)

    def _hypothesis_points(self, tile: Tile, xs: np.ndarray, ys: np.ndarray,
                           depth_pix_size: np.ndarray) -> np.ndarray:
        """World points (nb_depths, n, 3) of every hypothesis of working pixels"""
        params = self.refine_params
        camera = self.mp.get_camera(tile.rc)
        roi = downscale_roi(tile.roi, params.downscale)

        K_inv = np.linalg.inv(scale_intrinsics(camera.K, params.scale))
        u = (roi.x.begin + xs) * params.step_xy
        v = (roi.y.begin + ys) * params.step_xy
        pixels = np.stack([u, v, np.ones_like(u)], axis=0).astype(np.float64)
        rays = (camera.R.T @ K_inv @ pixels).T

        depth = depth_pix_size[ys, xs, 0]
        pix_size = depth_pix_size[ys, xs, 1]
        offsets = (np.arange(params.nb_depths_to_refine) - params.half_nb_depths) * params.depth_step
        depths = depth[None, :] + offsets[:, None] * pix_size[None, :]

        return camera.center[None, None, :] + depths[..., None] * rays[None, :, :]

    def _export_volume_cross(self, tile: Tile, volume: np.ndarray,
                             depth_pix_size: np.ndarray, name: str):
        """Middle row and column of the tile, one point per hypothesis"""
        _, height, width = volume.shape

        cols = np.arange(width)
        rows = np.arange(height)
        xs = np.concatenate([cols, np.full(height, width // 2)])
        ys = np.concatenate([np.full(width, height // 2), rows])

        valid = depth_pix_size[ys, xs, 0] > 0
        xs, ys = xs[valid], ys[valid]

        filepath = self.get_file_name_from_index(tile, "volumeCross", f"_{name}", "ply")
        if xs.size == 0:
            self.logger.warning(f"{tile}No valid pixel on the volume cross, nothing exported")
            return

        points = self._hypothesis_points(tile, xs, ys, depth_pix_size).reshape(-1, 3)
        similarity = volume[:, ys, xs].reshape(-1)

        # Colour by similarity
        max_sim = similarity.max() if similarity.max() > 0 else 1.0
        levels = (np.clip(similarity / max_sim, 0, 1) * 255).astype(np.uint8)
        colors = cv2.applyColorMap(levels.reshape(-1, 1), cv2.COLORMAP_JET).reshape(-1, 3)[:, ::-1]

        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(points.astype(np.float64))
        pcd.colors = o3d.utility.Vector3dVector(colors.astype(np.float64) / 255.0)
        o3d.io.write_point_cloud(str(filepath), pcd)

        self.logger.debug(f"{tile}Volume cross exported: {filepath.name} ({len(points)} points)")

    def _export_volume_9p_csv(self, tile: Tile, volume: np.ndarray, name: str):
        """Similarity curves of 9 pixels spread over the tile"""
        nb_depths, height, width = volume.shape
        filepath = self.get_file_name_from_index(tile, "stats9p", "", "csv")
        write_header = not filepath.exists()

        with open(filepath, 'a', newline='') as f:
            writer = csv.writer(f)
            if write_header:
                writer.writerow(['name', 'rc', 'x', 'y'] + [f'depth_{k}' for k in range(nb_depths)])

            for j in range(1, 4):
                for i in range(1, 4):
                    x = min(width * i // 4, width - 1)
                    y = min(height * j // 4, height - 1)
                    writer.writerow([name, tile.rc, x, y] + [float(s) for s in volume[:, y, x]])

        self.logger.debug(f"{tile}Volume 9 points exported: {os.path.basename(filepath)}")
