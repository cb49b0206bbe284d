"""
Device camera cache.

Cameras (intrinsics, pose and CIELab image at a working scale) are uploaded to
the device once and shared by every refine engine of a job. The cache is an
LRU keyed by (camera index, scale), bounded by a number of cameras and an
optional memory budget. It is created explicitly and injected into engines.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np
import torch

from ..core.camera import MultiViewParams, scale_intrinsics
from ..logger import get_logger
from .command_queue import CommandQueue


@dataclass
class DeviceCamera:
    """
    Camera resident in device memory at a working scale.

    Attributes:
        cam_id: Camera index in the registry
        device_cam_id: Slot identifier assigned by the cache
        scale: Working downscale factor
        width: Scaled image width
        height: Scaled image height
        K, K_inv: Scaled intrinsics (3x3)
        R: World to camera rotation (3x3)
        t: World to camera translation (3,)
        center: Camera center in world coordinates (3,)
        lab: CIELab image (3, height, width), L in [0, 100]
        alpha: Validity in [0, 1] (height, width)
    """

    cam_id: int
    device_cam_id: int
    scale: int
    width: int
    height: int
    K: torch.Tensor
    K_inv: torch.Tensor
    R: torch.Tensor
    t: torch.Tensor
    center: torch.Tensor
    lab: torch.Tensor
    alpha: torch.Tensor

    @classmethod
    def upload(cls, cam_id: int, device_cam_id: int, scale: int,
               mp: MultiViewParams, queue: CommandQueue) -> "DeviceCamera":
        """
        Prepare a camera on the host and copy it to the queue's device.

        Blocks until the copy has completed so the camera can be shared with
        engines running on other queues.
        """
        camera = mp.get_camera(cam_id)
        image = camera.load_image()

        # Downscale image (area filter) and intrinsics
        if scale > 1:
            width = max(camera.width // scale, 1)
            height = max(camera.height // scale, 1)
            image = cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)
        else:
            width, height = camera.width, camera.height

        lab = cv2.cvtColor(np.ascontiguousarray(image[..., :3]), cv2.COLOR_RGB2Lab)
        K = scale_intrinsics(camera.K, scale)

        def to_device(array: np.ndarray) -> torch.Tensor:
            return torch.as_tensor(np.ascontiguousarray(array), dtype=torch.float32).to(
                queue.device, non_blocking=True
            )

        with queue.scope():
            device_camera = cls(
                cam_id=cam_id,
                device_cam_id=device_cam_id,
                scale=scale,
                width=width,
                height=height,
                K=to_device(K),
                K_inv=to_device(np.linalg.inv(K)),
                R=to_device(camera.R),
                t=to_device(camera.t),
                center=to_device(camera.center),
                lab=to_device(lab.transpose(2, 0, 1)),
                alpha=to_device(image[..., 3]),
            )
        queue.synchronize()

        return device_camera

    def size_bytes(self) -> int:
        tensors = (self.K, self.K_inv, self.R, self.t, self.center, self.lab, self.alpha)
        return sum(t.numel() * t.element_size() for t in tensors)

    def optical_axis(self) -> torch.Tensor:
        """Viewing direction in world coordinates"""
        return self.R[2]

    def pixel_rays(self, u: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
        """
        World-space ray directions through pixels.

        Rays are scaled so their camera-frame z component is 1, so that
        `center + depth * ray` is the point at z-depth `depth`.

        Args:
            u, v: Pixel coordinates at the working scale (any matching shapes)

        Returns:
            Directions (*shape, 3)
        """
        cam_dirs = (u.unsqueeze(-1) * self.K_inv[:, 0]
                    + v.unsqueeze(-1) * self.K_inv[:, 1]
                    + self.K_inv[:, 2])
        return cam_dirs @ self.R

    def project(self, points: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Project world points.

        Args:
            points: World points (*shape, 3)

        Returns:
            u, v pixel coordinates and camera z-depth, each (*shape)
        """
        cam = points @ self.R.T + self.t
        z = cam[..., 2]
        z_safe = torch.where(z.abs() > 1e-12, z, torch.full_like(z, 1e-12))
        uvw = cam @ self.K.T
        return uvw[..., 0] / z_safe, uvw[..., 1] / z_safe, z

    def pixel_size(self, depth: torch.Tensor) -> torch.Tensor:
        """Metric footprint of one pixel at the given z-depth"""
        return depth * torch.linalg.norm(self.K_inv[:, 0])


class DeviceCache:
    """
    Shared LRU cache of device cameras.

    Lookups of resident cameras only take a short mapping lock, so they run
    concurrently with an upload in progress. Uploads and evictions are
    serialized by a second lock.

    Usage:
        cache = DeviceCache(max_cameras=16)
        rc_camera = cache.request_camera(rc, scale, mp, queue)
    """

    def __init__(self, max_cameras: int = 32, max_memory_mb: Optional[float] = None):
        """
        Initialize cache.

        Args:
            max_cameras: Maximum number of resident cameras
            max_memory_mb: Optional device memory budget for camera data
        """
        if max_cameras < 1:
            raise ValueError(f"max_cameras must be >= 1, got {max_cameras}")
        if max_memory_mb is not None and max_memory_mb <= 0:
            raise ValueError(f"max_memory_mb must be positive, got {max_memory_mb}")

        self.max_cameras = max_cameras
        self.max_memory_mb = max_memory_mb
        self.cache: "OrderedDict[Tuple[int, int], DeviceCamera]" = OrderedDict()

        self._lock = threading.Lock()
        self._upload_lock = threading.Lock()
        self._next_device_cam_id = 0

        self.hits = 0
        self.misses = 0
        self.evictions = 0

        self.logger = get_logger("DeviceCache")

    def _get(self, key: Tuple[int, int]) -> Optional[DeviceCamera]:
        with self._lock:
            if key in self.cache:
                # Move to end (most recently used)
                self.cache.move_to_end(key)
                self.hits += 1
                return self.cache[key]
        return None

    def request_camera(self, cam_id: int, scale: int, mp: MultiViewParams,
                       queue: CommandQueue) -> DeviceCamera:
        """
        Get the device camera for (cam_id, scale), uploading it on a miss.

        The returned handle stays usable for the caller even if the cache
        evicts it afterwards.

        Args:
            cam_id: Camera index
            scale: Working downscale factor
            mp: Camera registry
            queue: Queue used for the upload on a miss

        Returns:
            Device camera
        """
        key = (cam_id, scale)

        device_camera = self._get(key)
        if device_camera is not None:
            return device_camera

        with self._upload_lock:
            # Another engine may have uploaded it while we were waiting
            device_camera = self._get(key)
            if device_camera is not None:
                return device_camera

            with self._lock:
                self.misses += 1
                device_cam_id = self._next_device_cam_id
                self._next_device_cam_id += 1

            self.logger.debug(f"Upload camera {cam_id} (scale {scale}) to {queue.device}")
            device_camera = DeviceCamera.upload(cam_id, device_cam_id, scale, mp, queue)

            with self._lock:
                self.cache[key] = device_camera
                self._evict()

        return device_camera

    def _evict(self):
        """Remove least recently used cameras until limits hold (lock held)"""
        while len(self.cache) > 1 and (
            len(self.cache) > self.max_cameras or
            (self.max_memory_mb is not None and self._memory_bytes() > self.max_memory_mb * 1024 * 1024)
        ):
            key, _ = self.cache.popitem(last=False)
            self.evictions += 1
            self.logger.debug(f"Evict camera {key[0]} (scale {key[1]})")

    def _memory_bytes(self) -> int:
        return sum(camera.size_bytes() for camera in self.cache.values())

    def contains(self, cam_id: int, scale: int) -> bool:
        with self._lock:
            return (cam_id, scale) in self.cache

    def memory_consumption(self) -> float:
        """Resident camera data in MB"""
        with self._lock:
            return self._memory_bytes() / (1024.0 * 1024.0)

    def clear(self):
        """Clear cache"""
        with self._upload_lock, self._lock:
            self.cache.clear()
            self.hits = 0
            self.misses = 0
            self.evictions = 0

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        with self._lock:
            total = self.hits + self.misses
            hit_rate = self.hits / total if total > 0 else 0

            return {
                'size': len(self.cache),
                'max_size': self.max_cameras,
                'hits': self.hits,
                'misses': self.misses,
                'evictions': self.evictions,
                'hit_rate': hit_rate,
                'memory_mb': self._memory_bytes() / (1024.0 * 1024.0)
            }
