"""
Depth/Similarity Map Refine Engine
==================================

Refines the coarse depth/similarity map of one reference camera tile:
1. Upscale the coarse map to the working resolution and compute pixel sizes
2. Build the similarity volume over depth hypotheses around the coarse depth,
   summed over the target cameras, and extract the sub-pixel best depth
3. Optionally smooth the result with the variance-guided optimizer

All per-tile device buffers are allocated once, at construction, to the
largest tile dimensions and reused for every tile.
"""

from typing import List, Optional, Union

import numpy as np
import torch

from .config import RefineParams, TileParams
from .core.camera import MultiViewParams
from .core.roi import ROI, Tile, divide_round_up, downscale_roi
from .device.buffer import DeviceBuffer
from .device.camera_cache import DeviceCache, DeviceCamera
from .device.command_queue import CommandQueue
from .io.diagnostics import DiagnosticsExporter
from .logger import get_logger, log_elapsed
from .operations.depth_sim_map import (
    PASSTHROUGH_SIMILARITY,
    depth_sim_map_compute_pix_size,
    depth_sim_map_copy_depth_only,
    depth_sim_map_upscale_and_filter,
    normal_map_upscale,
)
from .operations.optimization import compute_image_variance, optimize_depth_sim_map_gradient_descent
from .operations.similarity_volume import (
    volume_initialize,
    volume_refine_best_depth,
    volume_refine_similarity,
)


MapLike = Union[np.ndarray, torch.Tensor]


class RefineEngine:
    """
    Tile-based depth/similarity map refinement on one command queue.

    Usage:
        cache = DeviceCache()
        with RefineEngine(mp, TileParams(), RefineParams(), CommandQueue(), cache) as engine:
            refined = engine.refine_tile(tile, coarse_depth_sim_map)
            host_map = engine.retrieve_depth_sim_map()
    """

    def __init__(self,
                 mp: MultiViewParams,
                 tile_params: TileParams,
                 refine_params: RefineParams,
                 queue: CommandQueue,
                 device_cache: DeviceCache,
                 exporter: Optional[DiagnosticsExporter] = None):
        """
        Initialize engine and allocate its device buffers.

        Args:
            mp: Camera registry
            tile_params: Tiling dimensions (maximum tile size)
            refine_params: Refine parameters
            queue: Command queue every device operation runs on
            device_cache: Shared device camera cache
            exporter: Diagnostics writer (created from the registry output
                folder when export flags are set and none is given)

        Raises:
            ValueError: If the parameters are invalid
            RuntimeError: If device buffers cannot be allocated
        """
        self.logger = get_logger("Refine")

        # Validate before any allocation
        refine_params.check()

        self.mp = mp
        self.tile_params = tile_params
        self.refine_params = refine_params
        self.queue = queue
        self.device_cache = device_cache

        export_requested = (refine_params.export_intermediate_depth_sim_maps or
                            refine_params.export_volume)
        if exporter is None and export_requested:
            if mp.output_folder is not None:
                exporter = DiagnosticsExporter(mp, tile_params, refine_params)
            else:
                self.logger.warning("Intermediate exports requested without output folder, exports disabled")
        self.exporter = exporter

        self.max_width = divide_round_up(tile_params.buffer_width, refine_params.downscale)
        self.max_height = divide_round_up(tile_params.buffer_height, refine_params.downscale)

        self._buffers: List[DeviceBuffer] = []
        self._sgm_depth_pix_size_map: Optional[DeviceBuffer] = None
        self._refined_depth_sim_map: Optional[DeviceBuffer] = None
        self._optimized_depth_sim_map: Optional[DeviceBuffer] = None
        self._normal_map: Optional[DeviceBuffer] = None
        self._volume: Optional[DeviceBuffer] = None
        self._img_variance: Optional[DeviceBuffer] = None
        self._tmp_depth: Optional[DeviceBuffer] = None

        self._roi: Optional[ROI] = None
        self._normal_map_valid = False

        self._allocate_buffers()

        self.logger.info(
            f"Refine engine ready on {queue.device}: {self.max_width}x{self.max_height}x"
            f"{refine_params.nb_depths_to_refine}, "
            f"{self.get_device_memory_consumption():.1f} MB"
        )

    # =========================================================================
    # Buffers
    # =========================================================================

    def _allocate(self, dims, channels: int = 1) -> DeviceBuffer:
        buffer = DeviceBuffer(dims, self.queue, channels=channels)
        self._buffers.append(buffer)
        return buffer

    def _allocate_buffers(self):
        """Allocate every per-tile buffer, releasing all of them on failure"""
        params = self.refine_params
        map_dims = (self.max_height, self.max_width)

        try:
            self._sgm_depth_pix_size_map = self._allocate(map_dims, channels=2)
            self._refined_depth_sim_map = self._allocate(map_dims, channels=2)
            self._optimized_depth_sim_map = self._allocate(map_dims, channels=2)

            if params.use_normal_map:
                self._normal_map = self._allocate(map_dims, channels=3)

            self._volume = self._allocate((params.nb_depths_to_refine, *map_dims))

            if params.use_optimization:
                self._img_variance = self._allocate(map_dims)
                self._tmp_depth = self._allocate(map_dims)

        except RuntimeError as e:
            self.release()
            raise RuntimeError(
                f"Cannot allocate refine buffers ({self.max_width}x{self.max_height}x"
                f"{params.nb_depths_to_refine}) on {self.queue.device}: {e}"
            ) from e

    def release(self):
        """Free every device buffer (the engine is unusable afterwards)"""
        for buffer in self._buffers:
            buffer.release()
        self._buffers = []
        self._sgm_depth_pix_size_map = None
        self._refined_depth_sim_map = None
        self._optimized_depth_sim_map = None
        self._normal_map = None
        self._volume = None
        self._img_variance = None
        self._tmp_depth = None
        self._roi = None

    def __enter__(self) -> "RefineEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def get_device_memory_consumption(self) -> float:
        """Allocated (padded) device memory of the engine buffers in MB"""
        return sum(buffer.padded_size() for buffer in self._buffers) / (1024.0 * 1024.0)

    def get_device_memory_consumption_unpadded(self) -> float:
        """Logical device memory of the engine buffers in MB"""
        return sum(buffer.size() for buffer in self._buffers) / (1024.0 * 1024.0)

    # =========================================================================
    # Refine
    # =========================================================================

    def refine_tile(self, tile: Tile, coarse_depth_sim_map: MapLike,
                    coarse_normal_map: Optional[MapLike] = None) -> torch.Tensor:
        """
        Refine the depth/similarity map of a tile.

        Args:
            tile: Tile to process
            coarse_depth_sim_map: Coarse (depth, similarity) map of the tile (h, w, 2)
            coarse_normal_map: Optional coarse normal map of the tile (h, w, 3),
                used only when the engine was built with `use_normal_map`

        Returns:
            Device view (roi height, roi width, 2) of the refined map, valid
            until the next call

        Raises:
            ValueError: If the tile or the inputs do not fit the engine
        """
        if self._volume is None:
            raise RuntimeError("Refine engine has been released")

        roi = self._check_tile(tile)
        coarse_map = self._as_tensor(coarse_depth_sim_map, 2, "Coarse depth/sim map")
        normal_map = None
        if coarse_normal_map is not None:
            normal_map = self._as_tensor(coarse_normal_map, 3, "Coarse normal map")

        self.logger.info(f"{tile}Refine depth/sim map ({roi.width()}x{roi.height()}, "
                         f"{len(tile.refine_tcams)} target cameras)")
        self._roi = roi

        with log_elapsed(self.logger, f"{tile}Refine depth/sim map"):
            self._compute_sgm_upscaled_depth_pix_size_map(tile, roi, coarse_map, normal_map)

            if self.refine_params.use_refine_fuse:
                self._refine_and_fuse_depth_sim_map(tile, roi)
            else:
                self.logger.info(f"{tile}Refine/fuse disabled, copy upscaled depths")
                depth_sim_map_copy_depth_only(
                    self._refined_depth_sim_map.region(roi.width(), roi.height()),
                    self._sgm_depth_pix_size_map.region(roi.width(), roi.height()),
                    PASSTHROUGH_SIMILARITY,
                    self.queue
                )

            if self.refine_params.export_intermediate_depth_sim_maps and self.exporter is not None:
                refined_map = self._refined_depth_sim_map.region(roi.width(), roi.height())
                self.exporter.write_depth_sim_map(tile, self._host_copy(refined_map), "_refinedFused")

            if self.refine_params.use_optimization:
                self._optimize_depth_sim_map(tile, roi)
            else:
                self._optimized_depth_sim_map.copy_from(self._refined_depth_sim_map, self.queue)

        return self._optimized_depth_sim_map.region(roi.width(), roi.height())

    def _check_tile(self, tile: Tile) -> ROI:
        """Validate a tile against the registry and the buffers, return its working ROI"""
        for cam_id in (tile.rc, *tile.refine_tcams):
            if not 0 <= cam_id < self.mp.ncams:
                raise ValueError(f"{tile}Camera index {cam_id} out of range [0, {self.mp.ncams})")

        bounds = self.mp.get_image_bounds(tile.rc)
        if not tile.roi.is_subset_of(bounds):
            raise ValueError(f"{tile}Tile ROI ({tile.roi}) outside the image bounds ({bounds})")

        roi = downscale_roi(tile.roi, self.refine_params.downscale)
        if roi.width() > self.max_width or roi.height() > self.max_height:
            raise ValueError(
                f"{tile}Downscaled tile {roi.width()}x{roi.height()} exceeds the engine buffers "
                f"{self.max_width}x{self.max_height}"
            )
        return roi

    @staticmethod
    def _as_tensor(data: MapLike, channels: int, name: str) -> torch.Tensor:
        if isinstance(data, np.ndarray):
            data = torch.from_numpy(np.ascontiguousarray(data, dtype=np.float32))
        if data.dim() != 3 or data.shape[2] != channels:
            raise ValueError(f"{name} must be (h, w, {channels}), got {tuple(data.shape)}")
        return data

    def _request_camera(self, cam_id: int) -> DeviceCamera:
        return self.device_cache.request_camera(cam_id, self.refine_params.scale, self.mp, self.queue)

    def _host_copy(self, tensor: torch.Tensor) -> np.ndarray:
        self.queue.synchronize()
        return tensor.detach().cpu().numpy().copy()

    def _compute_sgm_upscaled_depth_pix_size_map(self, tile: Tile, roi: ROI,
                                                 coarse_map: torch.Tensor,
                                                 normal_map: Optional[torch.Tensor]):
        """Upscale the coarse map (and normals), then store pixel sizes as similarity"""
        self.logger.debug(f"{tile}Compute upscaled depth/pixSize map")

        rc_camera = self._request_camera(tile.rc)
        sgm_map = self._sgm_depth_pix_size_map.region(roi.width(), roi.height())

        depth_sim_map_upscale_and_filter(sgm_map, coarse_map, rc_camera, self.refine_params, roi, self.queue)

        if self.refine_params.export_intermediate_depth_sim_maps and self.exporter is not None:
            self.exporter.write_depth_sim_map(tile, self._host_copy(sgm_map), "_sgmUpscaled")

        depth_sim_map_compute_pix_size(sgm_map, rc_camera, self.refine_params, roi, self.queue)

        self._normal_map_valid = False
        if self._normal_map is not None and normal_map is not None:
            normal_map_upscale(self._normal_map.region(roi.width(), roi.height()), normal_map, roi, self.queue)
            self._normal_map_valid = True
        elif normal_map is not None:
            self.logger.debug(f"{tile}Normal map given but use_normal_map is disabled, ignored")

    def _refine_and_fuse_depth_sim_map(self, tile: Tile, roi: ROI):
        """Build the similarity volume over all target cameras and extract the best depths"""
        self.logger.debug(f"{tile}Refine and fuse depth/sim map")

        width, height = roi.width(), roi.height()
        volume = self._volume.region(width, height)
        sgm_map = self._sgm_depth_pix_size_map.region(width, height)
        refined_map = self._refined_depth_sim_map.region(width, height)
        normal_map = self._normal_map.region(width, height) if self._normal_map_valid else None

        volume_initialize(volume, 0.0, self.queue)

        if not tile.refine_tcams:
            self.logger.warning(f"{tile}No target camera, refined similarities will be empty")

        rc_camera = self._request_camera(tile.rc)
        for tc in tile.refine_tcams:
            tc_camera = self._request_camera(tc)
            volume_refine_similarity(volume, sgm_map, normal_map, rc_camera, tc_camera,
                                     self.refine_params, roi, self.queue)
            self.logger.debug(f"{tile}Similarity volume with tc {tc} done")

        if self.refine_params.export_volume and self.exporter is not None:
            self.exporter.export_volume_information(tile, self._host_copy(volume),
                                                    self._host_copy(sgm_map), "afterRefine")

        volume_refine_best_depth(refined_map, sgm_map, volume, self.refine_params,
                                 len(tile.refine_tcams), roi, self.queue)

    def _optimize_depth_sim_map(self, tile: Tile, roi: ROI):
        """Variance-guided smoothing of the refined map"""
        self.logger.debug(f"{tile}Color optimization "
                          f"({self.refine_params.optimization_nb_iterations} iterations)")

        width, height = roi.width(), roi.height()
        rc_camera = self._request_camera(tile.rc)
        img_variance = self._img_variance.region(width, height)

        compute_image_variance(img_variance, rc_camera, self.refine_params, roi, self.queue)

        optimize_depth_sim_map_gradient_descent(
            self._optimized_depth_sim_map.region(width, height),
            img_variance,
            self._tmp_depth.region(width, height),
            self._sgm_depth_pix_size_map.region(width, height),
            self._refined_depth_sim_map.region(width, height),
            self.refine_params,
            roi,
            self.queue
        )

    # =========================================================================
    # Results
    # =========================================================================

    def _current_roi(self) -> ROI:
        if self._roi is None:
            raise RuntimeError("No tile has been refined")
        return self._roi

    def retrieve_depth_sim_map(self) -> np.ndarray:
        """Host copy (roi height, roi width, 2) of the last refined map"""
        roi = self._current_roi()
        return self._host_copy(self._optimized_depth_sim_map.region(roi.width(), roi.height()))

    def get_similarity_volume(self) -> torch.Tensor:
        roi = self._current_roi()
        return self._volume.region(roi.width(), roi.height())

    def get_upscaled_depth_pix_size_map(self) -> torch.Tensor:
        roi = self._current_roi()
        return self._sgm_depth_pix_size_map.region(roi.width(), roi.height())

    def get_refined_depth_sim_map(self) -> torch.Tensor:
        roi = self._current_roi()
        return self._refined_depth_sim_map.region(roi.width(), roi.height())

    def get_optimized_depth_sim_map(self) -> torch.Tensor:
        roi = self._current_roi()
        return self._optimized_depth_sim_map.region(roi.width(), roi.height())
