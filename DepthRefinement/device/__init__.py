"""
Device Resources
================

Command queues, pitched device buffers and the shared device camera cache.
"""

from .command_queue import CommandQueue
from .buffer import DeviceBuffer, PITCH_ALIGNMENT
from .camera_cache import DeviceCamera, DeviceCache

__all__ = [
    'CommandQueue',
    'DeviceBuffer',
    'PITCH_ALIGNMENT',
    'DeviceCamera',
    'DeviceCache'
]
