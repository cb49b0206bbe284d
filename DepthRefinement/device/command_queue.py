"""
Ordered device command queue.

Every device operation receives the queue it must run on. On CUDA devices the
queue is a dedicated stream: operations are enqueued in program order and the
host only blocks on `synchronize()`. On CPU operations run eagerly, which is a
trivially ordered queue.
"""

import contextlib
from typing import Optional, Union

import torch


class CommandQueue:
    """FIFO execution context bound to one device"""

    def __init__(self, device: Union[str, torch.device, None] = None,
                 stream: Optional["torch.cuda.Stream"] = None):
        """
        Initialize command queue.

        Args:
            device: Target device (default: CUDA if available, else CPU)
            stream: Existing CUDA stream to wrap (a new one is created otherwise)
        """
        if device is None:
            device = 'cuda' if torch.cuda.is_available() else 'cpu'
        self.device = torch.device(device)

        if self.device.type == 'cuda':
            self.stream = stream if stream is not None else torch.cuda.Stream(device=self.device)
        else:
            self.stream = None

    @property
    def is_async(self) -> bool:
        return self.stream is not None

    def scope(self):
        """Context in which device work is enqueued on this queue"""
        if self.stream is not None:
            return torch.cuda.stream(self.stream)
        return contextlib.nullcontext()

    def synchronize(self):
        """Block the host until every enqueued operation has completed"""
        if self.stream is not None:
            self.stream.synchronize()

    def __repr__(self) -> str:
        return f"CommandQueue(device={self.device}, async={self.is_async})"
