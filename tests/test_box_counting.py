#!/usr/bin/env python3
"""
Tests for box counting on cubic occupancy grids.

Includes tests with synthetic aggregates of known dimension.
"""

import math
import os
import sys

import numpy as np
import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aggregate_fractal.box_counting import (
    BoxCounter,
    compute_fractal_dimension,
    create_counter,
    default_scale_set,
    estimate_dimension,
    sweep,
    validate_scale_set,
)
from aggregate_fractal.errors import (
    InsufficientData,
    InvalidBoxSize,
    InvalidScaleSet,
    ShapeMismatch,
)
from aggregate_fractal.volume_io import VolumeFrame
from synthetic_volumes import (
    create_line,
    create_octant_fractal,
    create_plane,
    create_random_grid,
)


def test_full_grid_scenario():
    """A fully occupied 8^3 grid is volume-filling: D = 3."""
    print("Testing full 8^3 grid (expected D = 3.0)...")

    frame = VolumeFrame(np.ones((8, 8, 8), dtype=bool))
    points = sweep(frame, (1, 2, 4))

    assert [(p.box_size, p.count) for p in points] == [(1, 512), (2, 64), (4, 8)]

    result = estimate_dimension(points)
    print(f"  Fractal dimension: {result.dimension:.4f}")
    print(f"  R²: {result.r_squared:.6f}")

    assert result.dimension == pytest.approx(3.0, abs=1e-12)
    assert result.r_squared == pytest.approx(1.0, abs=1e-12)
    print("  PASSED!")


def test_single_corner_cell():
    """A single occupied cell gives a constant count and a zero slope."""
    print("\nTesting single corner cell (expected D = 0, R² undefined)...")

    grid = np.zeros((8, 8, 8), dtype=bool)
    grid[0, 0, 0] = True
    frame = VolumeFrame(grid)

    points = sweep(frame, (1, 2, 4, 8))
    assert [(p.box_size, p.count) for p in points] == [(1, 1), (2, 1), (4, 1), (8, 1)]

    result = estimate_dimension(points)
    assert result.dimension == 0.0
    assert math.isnan(result.r_squared)
    assert result.std_error == 0.0
    assert result.n_points == 4
    print("  PASSED!")


def test_empty_grid():
    """An empty grid counts zero boxes everywhere and cannot be fitted."""
    print("\nTesting empty grid...")

    frame = VolumeFrame(np.zeros((8, 8, 8), dtype=bool))
    points = sweep(frame, (1, 2, 4, 8))
    assert all(p.count == 0 for p in points)

    with pytest.raises(InsufficientData) as excinfo:
        estimate_dimension(points, frame_index=5)
    assert excinfo.value.n_points == 0
    assert excinfo.value.frame_index == 5
    print("  PASSED!")


def test_saturation():
    """A full grid occupies every box at every scale."""
    frame = VolumeFrame(np.ones((16, 16, 16), dtype=bool))
    for p in sweep(frame, (1, 2, 4, 8, 16)):
        assert p.count == (16 // p.box_size) ** 3 == p.max_count


def test_count_bounds_and_monotonicity():
    """Counts stay within [0, (N/s)^3] and never grow with box size."""
    print("\nTesting bounds and monotonicity on random grids...")

    for density in (0.001, 0.01, 0.1, 0.5):
        frame = VolumeFrame(create_random_grid(16, density, seed=7))
        points = sweep(frame, (1, 2, 4, 8, 16))

        for p in points:
            assert 0 <= p.count <= (16 // p.box_size) ** 3

        counts = [p.count for p in points]
        assert all(a >= b for a, b in zip(counts, counts[1:])), counts

    print("  PASSED!")


def test_plane_dimension():
    """A flat sheet has D = 2 exactly."""
    print("\nTesting flat plane (expected D = 2.0)...")

    result = compute_fractal_dimension(VolumeFrame(create_plane(32, height=5)))
    print(f"  Fractal dimension: {result.dimension:.4f}")

    assert result.dimension == pytest.approx(2.0, abs=1e-9)
    assert result.r_squared == pytest.approx(1.0, abs=1e-9)
    print("  PASSED!")


def test_line_dimension():
    """A straight line has D = 1 exactly."""
    result = compute_fractal_dimension(VolumeFrame(create_line(32)))
    assert result.dimension == pytest.approx(1.0, abs=1e-9)


def test_octant_fractal_dimension():
    """Keeping 5 of 8 octants per level gives D = log2(5)."""
    print("\nTesting octant fractal (expected D = log2(5) ≈ 2.3219)...")

    frame = VolumeFrame(create_octant_fractal(5, [0, 1, 2, 4, 7]))
    result = compute_fractal_dimension(frame)

    print(f"  Fractal dimension: {result.dimension:.4f}")
    print(f"  R²: {result.r_squared:.6f}")

    assert result.box_sizes == [1, 2, 4, 8, 16]
    assert result.dimension == pytest.approx(math.log2(5), abs=1e-9)
    assert result.r_squared == pytest.approx(1.0, abs=1e-9)
    print("  PASSED!")


def test_invalid_box_size():
    """Box sizes that do not tile the grid are rejected, never truncated."""
    counter = BoxCounter()
    frame = VolumeFrame(np.ones((8, 8, 8), dtype=bool), index=3)

    for bad in (3, 0, -2, 16, 2.0, True):
        with pytest.raises(InvalidBoxSize) as excinfo:
            counter.count_boxes(frame, bad)
        assert excinfo.value.edge == 8
        assert excinfo.value.frame_index == 3


def test_sweep_reports_failing_scale():
    frame = VolumeFrame(np.ones((8, 8, 8), dtype=bool), index=2)
    with pytest.raises(InvalidBoxSize) as excinfo:
        sweep(frame, (1, 2, 3))
    assert excinfo.value.box_size == 3
    assert "frame 2" in str(excinfo.value)


def test_non_cubic_grid_rejected():
    frame = VolumeFrame(np.ones((8, 8, 4), dtype=bool))
    with pytest.raises(ShapeMismatch):
        BoxCounter().count_boxes(frame, 2)


def test_sweep_preserves_scale_order():
    """Output follows the scale order, not the count order."""
    frame = VolumeFrame(create_random_grid(16, 0.05))
    increasing = sweep(frame, (1, 2, 4, 8))
    decreasing = sweep(frame, (8, 4, 2, 1))

    assert [p.box_size for p in decreasing] == [8, 4, 2, 1]
    assert [p.count for p in decreasing] == [p.count for p in reversed(increasing)]

    fit_up = estimate_dimension(increasing)
    fit_down = estimate_dimension(decreasing)
    assert fit_down.dimension == pytest.approx(fit_up.dimension, rel=1e-12)


def test_threaded_sweep_matches_serial():
    frame = VolumeFrame(create_random_grid(32, 0.02, seed=3))
    scales = (1, 2, 4, 8, 16)
    assert sweep(frame, scales, workers=4) == sweep(frame, scales)


def test_numba_backend_matches_numpy():
    """The JIT counter returns the same counts as the reshape reduction."""
    pytest.importorskip("numba")
    print("\nTesting numba backend against numpy backend...")

    numpy_counter = create_counter("numpy")
    numba_counter = create_counter("numba")
    assert numba_counter.backend == "numba"

    grids = [
        create_random_grid(16, 0.01, seed=1),
        create_random_grid(16, 0.3, seed=2),
        create_octant_fractal(4, [0, 3, 5, 6]),
        np.zeros((16, 16, 16), dtype=bool),
    ]
    for grid in grids:
        frame = VolumeFrame(grid)
        expected = sweep(frame, (1, 2, 4, 8, 16), counter=numpy_counter)
        actual = sweep(frame, (1, 2, 4, 8, 16), counter=numba_counter)
        assert actual == expected

    print("  PASSED!")


def test_unknown_backend():
    with pytest.raises(ValueError):
        create_counter("cuda")


def test_default_scale_set():
    assert default_scale_set(8) == (1, 2, 4)
    assert default_scale_set(64) == (1, 2, 4, 8, 16, 32)
    assert default_scale_set(48) == (1, 2, 4, 8, 16)
    assert default_scale_set(12) == (1, 2, 4)
    assert default_scale_set(9) == (1,)
    assert default_scale_set(1) == ()


def test_validate_scale_set():
    assert validate_scale_set([1, 2, 4]) == (1, 2, 4)
    assert validate_scale_set((8, 4, 2)) == (8, 4, 2)
    assert validate_scale_set(np.array([1, 2])) == (1, 2)

    for bad in [(4,), (), (1, 2, 2), (1, 4, 2), (0, 1), (1.5, 2), (True, 2)]:
        with pytest.raises(InvalidScaleSet):
            validate_scale_set(bad)


def run_all_tests():
    """Run all tests."""
    print("=" * 60)
    print("Box Counting Tests")
    print("=" * 60)

    test_full_grid_scenario()
    test_single_corner_cell()
    test_empty_grid()
    test_count_bounds_and_monotonicity()
    test_plane_dimension()
    test_octant_fractal_dimension()
    test_numba_backend_matches_numpy()

    print("\n" + "=" * 60)
    print("All tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    run_all_tests()
