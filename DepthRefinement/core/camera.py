"""
Camera registry.

Pinhole cameras (K, R, t with x_cam = R @ X + t) and their images, indexed by
camera index. This is the calibration interface consumed by the refine step.
"""

import cv2
import numpy as np
from dataclasses import dataclass
from typing import List, Optional

from .roi import ROI, Range


@dataclass
class CameraParams:
    """
    Calibration and image source of one view.

    Attributes:
        view_id: Identifier of the view in the reconstruction
        K: Intrinsic matrix (3x3) at full resolution
        R: World to camera rotation (3x3)
        t: World to camera translation (3,)
        width: Full-resolution image width
        height: Full-resolution image height
        image_path: Image file, read with OpenCV when `image` is not given
        image: In-memory image (H, W), (H, W, 3) or (H, W, 4), uint8 or float in [0, 1]
        mask: Optional validity mask (H, W), True where pixels are usable
    """

    view_id: int
    K: np.ndarray
    R: np.ndarray
    t: np.ndarray
    width: int
    height: int
    image_path: Optional[str] = None
    image: Optional[np.ndarray] = None
    mask: Optional[np.ndarray] = None

    def __post_init__(self):
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates"""
        return -self.R.T @ self.t

    def load_image(self) -> np.ndarray:
        """
        Load the view image as float32 RGBA in [0, 1].

        Alpha comes from the image itself when it has 4 channels, multiplied
        by the validity mask when one is given.

        Returns:
            Image (height, width, 4)
        """
        if self.image is not None:
            image = np.asarray(self.image)
        elif self.image_path is not None:
            image = cv2.imread(str(self.image_path), cv2.IMREAD_UNCHANGED)
            if image is None:
                raise FileNotFoundError(f"Cannot read image: {self.image_path}")
            if image.ndim == 3 and image.shape[2] == 4:
                image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
            elif image.ndim == 3:
                image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        else:
            raise ValueError(f"View {self.view_id} has neither an image nor an image path")

        # Normalize to float [0, 1]
        if image.dtype == np.uint8:
            image = image.astype(np.float32) / 255.0
        elif image.dtype == np.uint16:
            image = image.astype(np.float32) / 65535.0
        else:
            image = image.astype(np.float32)

        if image.ndim == 2:
            image = np.stack([image] * 3, axis=-1)

        if image.shape[:2] != (self.height, self.width):
            raise ValueError(
                f"View {self.view_id} image is {image.shape[1]}x{image.shape[0]}, "
                f"expected {self.width}x{self.height}"
            )

        if image.shape[2] == 4:
            rgb, alpha = image[..., :3], image[..., 3]
        else:
            rgb, alpha = image[..., :3], np.ones((self.height, self.width), dtype=np.float32)

        if self.mask is not None:
            alpha = alpha * np.asarray(self.mask, dtype=np.float32)

        return np.dstack([rgb, alpha]).astype(np.float32)


def scale_intrinsics(K: np.ndarray, scale: int) -> np.ndarray:
    """
    Intrinsics of an image downscaled by an integer factor.

    Pixel centers are preserved: x' = (x + 0.5) / scale - 0.5.
    """
    if scale == 1:
        return K.copy()

    K_scaled = K.astype(np.float64).copy()
    K_scaled[0, 0] /= scale
    K_scaled[1, 1] /= scale
    K_scaled[0, 1] /= scale
    K_scaled[0, 2] = (K[0, 2] + 0.5) / scale - 0.5
    K_scaled[1, 2] = (K[1, 2] + 0.5) / scale - 0.5
    return K_scaled


class MultiViewParams:
    """
    Global calibration registry of a depth map job.

    Cameras are addressed by their index in the registry (rc / tc).
    """

    def __init__(self, cameras: List[CameraParams],
                 output_folder: Optional[str] = None,
                 nb_scales: int = 4):
        """
        Initialize registry.

        Args:
            cameras: Calibrated views
            output_folder: Folder for diagnostic exports
            nb_scales: Number of image scales available for the job
        """
        if not cameras:
            raise ValueError("MultiViewParams requires at least one camera")

        self.cameras = list(cameras)
        self.output_folder = output_folder
        self.nb_scales = nb_scales

    @property
    def ncams(self) -> int:
        return len(self.cameras)

    def get_camera(self, rc: int) -> CameraParams:
        if not 0 <= rc < self.ncams:
            raise IndexError(f"Camera index {rc} out of range [0, {self.ncams})")
        return self.cameras[rc]

    def get_view_id(self, rc: int) -> int:
        return self.get_camera(rc).view_id

    def get_image_bounds(self, rc: int) -> ROI:
        """Full-resolution image bounds of a camera"""
        camera = self.get_camera(rc)
        return ROI(Range(0, camera.width), Range(0, camera.height))
