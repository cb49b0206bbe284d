"""
Region of interest and tile model.

A tile is a rectangular portion of the reference image processed
independently to bound device memory. Its ROI is expressed at full resolution
and mapped to the working resolution with `downscale_roi`.
"""

from dataclasses import dataclass
from typing import Tuple


def divide_round_up(a: int, b: int) -> int:
    """Integer division rounded toward +infinity"""
    return -(-a // b)


@dataclass(frozen=True)
class Range:
    """Half-open integer interval [begin, end)"""

    begin: int
    end: int

    def size(self) -> int:
        return self.end - self.begin

    def contains(self, other: "Range") -> bool:
        return self.begin <= other.begin and other.end <= self.end


@dataclass(frozen=True)
class ROI:
    """Rectangular region as two half-open pixel ranges"""

    x: Range
    y: Range

    @classmethod
    def from_bounds(cls, x_begin: int, x_end: int, y_begin: int, y_end: int) -> "ROI":
        return cls(Range(x_begin, x_end), Range(y_begin, y_end))

    def width(self) -> int:
        return self.x.size()

    def height(self) -> int:
        return self.y.size()

    def is_empty(self) -> bool:
        return self.width() <= 0 or self.height() <= 0

    def is_subset_of(self, other: "ROI") -> bool:
        return other.x.contains(self.x) and other.y.contains(self.y)

    def __str__(self) -> str:
        return f"x: [{self.x.begin} - {self.x.end}], y: [{self.y.begin} - {self.y.end}]"


def downscale_roi(roi: ROI, factor: int) -> ROI:
    """
    Map a full-resolution ROI to the working resolution.

    Begin is rounded down and end is rounded up so the downscaled ROI always
    covers the full-resolution one.

    Args:
        roi: Full-resolution region
        factor: Downscale factor (scale * step_xy)

    Returns:
        Downscaled region
    """
    if factor < 1:
        raise ValueError(f"Downscale factor must be >= 1, got {factor}")

    return ROI(
        Range(roi.x.begin // factor, divide_round_up(roi.x.end, factor)),
        Range(roi.y.begin // factor, divide_round_up(roi.y.end, factor)),
    )


def upscale_roi(roi: ROI, factor: int) -> ROI:
    """Inverse of `downscale_roi` up to rounding"""
    if factor < 1:
        raise ValueError(f"Upscale factor must be >= 1, got {factor}")

    return ROI(
        Range(roi.x.begin * factor, roi.x.end * factor),
        Range(roi.y.begin * factor, roi.y.end * factor),
    )


@dataclass(frozen=True)
class Tile:
    """
    One unit of refine work.

    Attributes:
        rc: Reference camera index
        roi: Full-resolution region of the reference image
        refine_tcams: Ordered target camera indexes
        nb_tiles: Total number of tiles of the job
        id: Index of this tile in the job
    """

    rc: int
    roi: ROI
    refine_tcams: Tuple[int, ...] = ()
    nb_tiles: int = 1
    id: int = 0

    def __post_init__(self):
        # frozen dataclass: normalize lists to tuples
        object.__setattr__(self, 'refine_tcams', tuple(int(tc) for tc in self.refine_tcams))

        if self.roi.is_empty():
            raise ValueError(f"Tile ROI is empty ({self.roi})")
        if self.nb_tiles < 1 or not 0 <= self.id < self.nb_tiles:
            raise ValueError(f"Invalid tile index {self.id} for {self.nb_tiles} tiles")
        if self.rc in self.refine_tcams:
            raise ValueError(f"Reference camera {self.rc} cannot be one of its target cameras")

    def __str__(self) -> str:
        return f"[tile {self.id + 1}/{self.nb_tiles}, rc {self.rc}] "
