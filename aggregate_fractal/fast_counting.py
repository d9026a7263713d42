"""
High-performance box counting using Numba JIT compilation.

The NumPy reshape reduction inspects every cell at every scale. The
Numba kernel scans box by box and stops at the first occupied cell,
which is much faster on dense aggregates and large grids.
"""

import numpy as np
from numba import njit, prange

from .box_counting import BoxCounter


@njit(cache=True)
def _box_is_occupied(grid, i0, j0, k0, box_size):
    """Return True as soon as an occupied cell is found inside the box."""
    for i in range(i0, i0 + box_size):
        for j in range(j0, j0 + box_size):
            for k in range(k0, k0 + box_size):
                if grid[i, j, k] != 0:
                    return True
    return False


@njit(parallel=True, cache=True)
def _count_boxes_numba(grid, box_size):
    """
    Numba-accelerated box counting with parallel execution over box slabs.

    Args:
        grid: Cubic uint8 array, nonzero where occupied
        box_size: Box edge length; must divide the grid edge

    Returns:
        Number of occupied boxes
    """
    n = grid.shape[0] // box_size
    total = 0

    for bi in prange(n):
        slab = 0
        for bj in range(n):
            for bk in range(n):
                if _box_is_occupied(grid, bi * box_size, bj * box_size,
                                    bk * box_size, box_size):
                    slab += 1
        total += slab

    return total


class FastBoxCounter(BoxCounter):
    """
    Box counter using a Numba-compiled scan.

    Produces the same counts as BoxCounter.
    """

    backend = "numba"

    def _count(self, grid: np.ndarray, box_size: int) -> int:
        data = np.ascontiguousarray(grid, dtype=np.uint8)
        return int(_count_boxes_numba(data, box_size))
