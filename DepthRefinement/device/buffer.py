"""
Pitched device buffer.

Rows are padded to PITCH_ALIGNMENT bytes the way accelerator pitched
allocations are, so both the logical size and the allocated (padded) size can
be reported for capacity planning. The buffer owns its storage; `release()`
(or leaving the `with` block) frees it.
"""

import math
from typing import Optional, Sequence, Tuple

import numpy as np
import torch

from .command_queue import CommandQueue


PITCH_ALIGNMENT = 512  # bytes


class DeviceBuffer:
    """
    Fixed-size device array with padded rows.

    The logical tensor has shape `(*dims)` when `channels == 1`, and
    `(*dims, channels)` otherwise. The last entry of `dims` is the row width.
    """

    def __init__(self, dims: Sequence[int], queue: CommandQueue,
                 channels: int = 1, dtype: torch.dtype = torch.float32):
        """
        Allocate buffer.

        Args:
            dims: Logical dimensions, e.g. (height, width) or (depth, height, width)
            queue: Command queue the allocation is made on
            channels: Number of elements per cell (2 for depth/sim maps)
            dtype: Element type

        Raises:
            ValueError: If a dimension is not positive
            RuntimeError: If the device allocation fails
        """
        self.dims: Tuple[int, ...] = tuple(int(d) for d in dims)
        if not self.dims or any(d < 1 for d in self.dims):
            raise ValueError(f"Invalid buffer dimensions: {self.dims}")

        self.channels = channels
        self.dtype = dtype
        self.device = queue.device

        element_size = dtype.itemsize
        self._cell_bytes = element_size * channels

        # Padded row width in cells
        row_bytes = self.dims[-1] * self._cell_bytes
        padded_row_bytes = math.ceil(row_bytes / PITCH_ALIGNMENT) * PITCH_ALIGNMENT
        self.pitch = math.ceil(padded_row_bytes / self._cell_bytes)

        with queue.scope():
            self._storage: Optional[torch.Tensor] = torch.empty(
                (*self.dims[:-1], self.pitch, channels), dtype=dtype, device=self.device
            )

        tensor = self._storage.narrow(-2, 0, self.dims[-1])
        self._tensor: Optional[torch.Tensor] = tensor.squeeze(-1) if channels == 1 else tensor

    # =========================================================================
    # Accounting
    # =========================================================================

    def size(self) -> int:
        """Logical (unpadded) size in bytes"""
        return int(np.prod(self.dims)) * self._cell_bytes

    def padded_size(self) -> int:
        """Allocated (padded) size in bytes"""
        return int(np.prod(self.dims[:-1])) * self.pitch * self._cell_bytes

    # =========================================================================
    # Access
    # =========================================================================

    @property
    def is_allocated(self) -> bool:
        return self._storage is not None

    @property
    def tensor(self) -> torch.Tensor:
        """Full logical tensor (a view on the padded storage)"""
        if self._tensor is None:
            raise RuntimeError("Device buffer has been released")
        return self._tensor

    def region(self, width: int, height: int) -> torch.Tensor:
        """
        View of the top-left `height x width` window of the buffer.

        The two last spatial dimensions are (height, width); leading
        dimensions (e.g. depth of a volume) are kept whole.
        """
        if width > self.dims[-1] or height > self.dims[-2]:
            raise ValueError(
                f"Region {width}x{height} exceeds buffer {self.dims[-1]}x{self.dims[-2]}"
            )

        offset = 1 if self.channels > 1 else 0
        view = self.tensor.narrow(-1 - offset, 0, width)
        return view.narrow(-2 - offset, 0, height)

    def fill(self, value: float, queue: CommandQueue):
        with queue.scope():
            self.tensor.fill_(value)

    def copy_from(self, other: "DeviceBuffer", queue: CommandQueue):
        """Copy the whole content of a buffer of identical dimensions"""
        if other.dims != self.dims or other.channels != self.channels:
            raise ValueError(
                f"Cannot copy buffer {other.dims}x{other.channels} into {self.dims}x{self.channels}"
            )
        with queue.scope():
            self.tensor.copy_(other.tensor)

    def release(self):
        """Free the device storage"""
        self._tensor = None
        self._storage = None

    def __enter__(self) -> "DeviceBuffer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def __repr__(self) -> str:
        return (f"DeviceBuffer(dims={self.dims}, channels={self.channels}, "
                f"dtype={self.dtype}, device={self.device}, pitch={self.pitch})")
