"""
Input/Output
============

Diagnostic exports of intermediate refine results.
"""

from .diagnostics import DiagnosticsExporter, HAS_OPEN3D, colorize

__all__ = [
    'DiagnosticsExporter',
    'HAS_OPEN3D',
    'colorize'
]
