"""
Box Counting Algorithm for the Fractal Dimension of Voxel Aggregates.

This module implements box counting on cubic occupancy grids. For an
aggregate embedded in 3D space, the fractal dimension D satisfies
N(s) ~ s^(-D), where N(s) is the number of boxes of edge s that hold
at least one occupied cell.

For a compact solid: D = 3.0
For a flat sheet: D = 2.0
For a diffusion-limited aggregate: 2.0 < D < 3.0 (typically ~2.5)
"""

import logging
import numbers
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from .errors import InsufficientData, InvalidBoxSize, InvalidScaleSet
from .volume_io import VolumeFrame

LOGGER = logging.getLogger(__name__)

BACKENDS = ("numpy", "numba")


@dataclass(frozen=True)
class CountPoint:
    """Result of a single box count at a specific scale."""
    box_size: int  # Box edge length in cells
    count: int  # Number of boxes holding at least one occupied cell
    boxes_per_axis: int  # N / box_size

    @property
    def max_count(self) -> int:
        """Upper bound on count: every box occupied."""
        return self.boxes_per_axis ** 3


@dataclass(frozen=True)
class DimensionEstimate:
    """Result of the log-log regression for one frame."""
    dimension: float  # Slope of log(N) vs log(1/s)
    r_squared: float  # R² of the fit, NaN when counts have zero variance
    std_error: float  # Standard error of the slope
    intercept: float  # Intercept of the fit
    box_sizes: List[int] = field(default_factory=list)  # Box sizes used in the fit
    counts: List[int] = field(default_factory=list)  # Non-zero counts used in the fit
    log_inv_size: np.ndarray = field(default_factory=lambda: np.empty(0))  # log(1/s)
    log_counts: np.ndarray = field(default_factory=lambda: np.empty(0))  # log(N)

    @property
    def n_points(self) -> int:
        return len(self.counts)

    @classmethod
    def undefined(cls) -> "DimensionEstimate":
        """Placeholder estimate for a frame that could not be fitted."""
        nan = float("nan")
        return cls(dimension=nan, r_squared=nan, std_error=nan, intercept=nan)


def _check_box_size(box_size, edge: int, frame_index: Optional[int] = None) -> int:
    if (isinstance(box_size, bool) or not isinstance(box_size, numbers.Integral)
            or box_size <= 0 or edge % box_size != 0):
        raise InvalidBoxSize(box_size, edge, frame_index)
    return int(box_size)


def count_occupied_boxes(grid: np.ndarray, box_size: int) -> int:
    """
    Count occupied boxes of edge `box_size` in a cubic boolean grid.

    The grid is reshaped so that each box becomes its own set of three
    axes; a box is occupied if any cell along those axes is True.
    """
    n = grid.shape[0] // box_size
    boxes = grid.reshape(n, box_size, n, box_size, n, box_size)
    return int(np.count_nonzero(boxes.any(axis=(1, 3, 5))))


class BoxCounter:
    """
    Counts occupied boxes in a cubic occupancy grid.

    Boxes never overlap and tile the grid exactly, so every cell
    belongs to exactly one box.
    """

    backend = "numpy"

    def count_boxes(self, frame: VolumeFrame, box_size: int) -> CountPoint:
        """
        Count boxes of edge `box_size` holding at least one occupied cell.

        Args:
            frame: Cubic VolumeFrame
            box_size: Box edge length; must divide the frame edge exactly

        Returns:
            CountPoint with count and grid information
        """
        edge = frame.edge
        box_size = _check_box_size(box_size, edge, frame.index)
        count = self._count(frame.grid, box_size)
        return CountPoint(box_size=box_size, count=count, boxes_per_axis=edge // box_size)

    count = count_boxes

    def _count(self, grid: np.ndarray, box_size: int) -> int:
        return count_occupied_boxes(grid, box_size)


def create_counter(backend: str = "numpy") -> BoxCounter:
    """
    Factory function to create a box counter.

    Args:
        backend: "numpy" for the reshape reduction, "numba" for the JIT scan

    Returns:
        BoxCounter or FastBoxCounter
    """
    if backend == "numpy":
        return BoxCounter()
    if backend == "numba":
        from .fast_counting import FastBoxCounter
        return FastBoxCounter()
    raise ValueError(f"unknown counting backend {backend!r}; choose one of {BACKENDS}")


def default_scale_set(edge: int) -> Tuple[int, ...]:
    """Powers of two that divide `edge`, from 1 up to edge / 2."""
    scales = []
    s = 1
    while s <= edge // 2 and edge % s == 0:
        scales.append(s)
        s *= 2
    return tuple(scales)


def validate_scale_set(scales: Sequence[int]) -> Tuple[int, ...]:
    """
    Check that scales form a strictly monotonic sequence of positive integers.

    Returns:
        The scales as a tuple of ints, in their original order
    """
    scales = tuple(scales)
    if len(scales) < 2:
        raise InvalidScaleSet(f"scale set needs at least 2 box sizes, got {len(scales)}")

    for s in scales:
        if isinstance(s, bool) or not isinstance(s, numbers.Integral) or s <= 0:
            raise InvalidScaleSet(f"box sizes must be positive integers, got {s!r}")
    scales = tuple(int(s) for s in scales)

    steps = np.diff(scales)
    if not (np.all(steps > 0) or np.all(steps < 0)):
        raise InvalidScaleSet(
            f"box sizes must be distinct and strictly increasing or decreasing, got {scales}"
        )
    return scales


def sweep(frame: VolumeFrame, scales: Sequence[int],
          counter: Optional[BoxCounter] = None,
          workers: int = 1) -> List[CountPoint]:
    """
    Count occupied boxes at every scale of a scale set.

    Each scale is independent, so with workers > 1 they are counted on a
    thread pool. Output order always follows the order of `scales`.

    Args:
        frame: Cubic VolumeFrame
        scales: Ordered box sizes
        counter: Box counter to use (default: numpy BoxCounter)
        workers: Number of threads for counting

    Returns:
        One CountPoint per scale
    """
    scales = validate_scale_set(scales)
    if counter is None:
        counter = BoxCounter()

    # Fail on the first bad scale before doing any counting.
    edge = frame.edge
    for s in scales:
        _check_box_size(s, edge, frame.index)

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            points = list(pool.map(lambda s: counter.count_boxes(frame, s), scales))
    else:
        points = [counter.count_boxes(frame, s) for s in scales]

    for p in points:
        LOGGER.debug("  frame %d, s = %d: %d boxes (grid: %d^3)",
                     frame.index, p.box_size, p.count, p.boxes_per_axis)
    return points


def estimate_dimension(points: Sequence[CountPoint],
                       frame_index: Optional[int] = None) -> DimensionEstimate:
    """
    Estimate the fractal dimension from box counts.

    The fractal dimension D is the slope of log(N) vs log(1/s). Zero
    counts are dropped before fitting since log(0) is undefined.

    When every remaining count is equal the fit has no variance in y:
    the slope is reported as 0.0 and R² as NaN.

    Args:
        points: CountPoints from a sweep
        frame_index: Frame index attached to errors

    Returns:
        DimensionEstimate with dimension estimate and statistics
    """
    valid = [p for p in points if p.count > 0]
    if len(valid) < 2:
        raise InsufficientData(len(valid), frame_index)

    box_sizes = np.array([p.box_size for p in valid], dtype=np.float64)
    counts = np.array([p.count for p in valid], dtype=np.float64)

    # Linear regression in log-log space
    log_inv_size = np.log(1.0 / box_sizes)
    log_counts = np.log(counts)
    log_inv_size.flags.writeable = False
    log_counts.flags.writeable = False

    if np.all(box_sizes == box_sizes[0]):
        raise InvalidScaleSet(
            f"all {len(valid)} usable points share box size {int(box_sizes[0])}; "
            f"a slope needs at least 2 distinct box sizes",
            frame_index,
        )

    if np.all(log_counts == log_counts[0]):
        slope = 0.0
        intercept = float(log_counts[0])
        r_squared = float("nan")
        std_err = 0.0
    else:
        slope, intercept, r_value, p_value, std_err = stats.linregress(
            log_inv_size, log_counts
        )
        slope = float(slope)
        intercept = float(intercept)
        r_squared = float(r_value ** 2)
        std_err = float(std_err)

    return DimensionEstimate(
        dimension=slope,
        r_squared=r_squared,
        std_error=std_err,
        intercept=intercept,
        box_sizes=[p.box_size for p in valid],
        counts=[p.count for p in valid],
        log_inv_size=log_inv_size,
        log_counts=log_counts,
    )


def compute_fractal_dimension(frame: VolumeFrame,
                              scales: Optional[Sequence[int]] = None,
                              backend: str = "numpy",
                              workers: int = 1) -> DimensionEstimate:
    """
    Compute the fractal dimension of a single frame.

    Args:
        frame: Cubic VolumeFrame to analyze
        scales: Box sizes (default: power-of-two divisors of the edge up to N/2)
        backend: Counting backend, "numpy" or "numba"
        workers: Threads used to count scales concurrently

    Returns:
        DimensionEstimate
    """
    if scales is None:
        scales = default_scale_set(frame.edge)

    points = sweep(frame, scales, counter=create_counter(backend), workers=workers)
    return estimate_dimension(points, frame_index=frame.index)
