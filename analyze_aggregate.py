#!/usr/bin/env python3
"""
Compute the fractal dimension of 3D+t aggregation simulations.

Reads a 4D (time, x, y, z) array from a NumPy .npz archive and writes
the box-counting fractal dimension of every frame to a delimited file.

Usage:
    # Analyze a simulation, tab-separated output to fractal_dimension.csv
    python analyze_aggregate.py simulation.npz

    # Comma-separated output to a chosen file
    python analyze_aggregate.py simulation.npz -o dims.csv -s ,

    # Explicit box sizes, cropping non-cubic grids
    python analyze_aggregate.py simulation.npz --scales 1,2,4,8,16 --shape-policy crop

    # Four frames at a time with the Numba counter
    python analyze_aggregate.py simulation.npz --workers 4 --backend numba
"""

import argparse
import csv
import logging
import math
import os
import sys
import tempfile
from typing import List, Optional, Sequence, Tuple

import numpy as np

from aggregate_fractal import (
    FractalDimensionError,
    PipelineConfig,
    Record,
    compute_fractal_dimensions,
    load_aggregate,
)
from aggregate_fractal.box_counting import BACKENDS
from aggregate_fractal.pipeline import ERROR_POLICIES, EXECUTORS
from aggregate_fractal.volume_io import DEFAULT_ARRAY_NAME, DEFAULT_THRESHOLD, SHAPE_POLICIES

LOGGER = logging.getLogger("aggregate_fractal.cli")

CSV_COLUMNS = [
    'FrameNumber', 'FractalDimension', 'RSquared', 'Intercept',
    'StdError', 'NPoints', 'Occupancy',
]


def parse_separator(value: str) -> str:
    """Accept a single character, or the escapes '\\t' and 'tab'."""
    if value in ('\\t', 'tab'):
        return '\t'
    if len(value) != 1:
        raise argparse.ArgumentTypeError(
            f"separator must be a single character, got {value!r}")
    return value


def parse_scales(value: str) -> Tuple[int, ...]:
    """Parse a comma-separated list of box sizes, e.g. '1,2,4,8'."""
    try:
        return tuple(int(v) for v in value.split(',') if v.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"scales must be comma-separated integers, got {value!r}")


def record_to_row(record: Record) -> List:
    est = record.estimate
    return [
        record.frame_index,
        est.dimension,
        est.r_squared,
        est.intercept,
        est.std_error,
        est.n_points,
        record.occupancy,
    ]


def save_results_csv(records: Sequence[Record], output_path: str,
                     separator: str = '\t') -> None:
    """
    Save records to a delimited text file.

    The file is written to a temporary path and moved into place, so the
    output path only ever holds a complete result.
    """
    directory = os.path.dirname(os.path.abspath(output_path))
    fd, tmp_path = tempfile.mkstemp(prefix='.fractal_dimension_', suffix='.tmp', dir=directory)
    try:
        with os.fdopen(fd, 'w', newline='') as f:
            writer = csv.writer(f, delimiter=separator, quoting=csv.QUOTE_NONNUMERIC)
            writer.writerow(CSV_COLUMNS)
            for record in records:
                writer.writerow(record_to_row(record))
        os.replace(tmp_path, output_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    print(f"Results saved to {output_path}")


def print_summary(records: Sequence[Record]) -> None:
    """Print summary table of results."""
    print()
    print("=" * 60)
    print("SUMMARY")
    print("=" * 60)
    print(f"{'Frame':>7} {'D':>8} {'R²':>9} {'Points':>7} {'Occupancy':>10}")
    print("-" * 60)

    for r in records:
        print(f"{r.frame_index:>7} {r.dimension:>8.4f} {r.r_squared:>9.5f} "
              f"{r.estimate.n_points:>7} {r.occupancy:>10.5f}")

    print("=" * 60)

    # Statistics
    D_values = [r.dimension for r in records if not np.isnan(r.dimension)]
    if D_values:
        print(f"\nFractal Dimension Statistics:")
        print(f"  Min:  {min(D_values):.4f}")
        print(f"  Max:  {max(D_values):.4f}")
        print(f"  Mean: {np.mean(D_values):.4f}")
        print(f"  Std:  {np.std(D_values):.4f}")


def warn_low_quality(records: Sequence[Record], min_r_squared: float) -> int:
    """Log a warning for every frame whose fit is below min_r_squared."""
    flagged = 0
    for r in records:
        if r.error is not None:
            continue
        if math.isnan(r.r_squared) or r.r_squared < min_r_squared:
            LOGGER.warning("Frame %d: unreliable fit (R²=%.5f, %d points)",
                           r.frame_index, r.r_squared, r.estimate.n_points)
            flagged += 1
    return flagged


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='aggregate-fractal-dim',
        description='Calculate the fractal dimension of 3D+t aggregation simulations '
                    'stored as 4D *.npz arrays.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument('npz_file_path', help='Path to the simulation output')
    parser.add_argument('--output', '-o', type=str, default='fractal_dimension.csv',
                        help='Path to the output file (default: fractal_dimension.csv)')
    parser.add_argument('--separator', '-s', type=parse_separator, default='\t',
                        help="Field separator for the output file (default: tab)")
    parser.add_argument('--array-name', type=str, default=DEFAULT_ARRAY_NAME,
                        help=f'Array name inside the archive (default: {DEFAULT_ARRAY_NAME})')
    parser.add_argument('--threshold', type=float, default=DEFAULT_THRESHOLD,
                        help='Values >= threshold are occupied (default: any nonzero value)')
    parser.add_argument('--scales', type=parse_scales, default=None,
                        help='Comma-separated box sizes (default: powers of two up to N/2)')
    parser.add_argument('--shape-policy', choices=SHAPE_POLICIES, default='pad',
                        help='Handling of non-cubic grids (default: pad)')
    parser.add_argument('--on-error', choices=ERROR_POLICIES, default='abort',
                        help='abort the run, or write NaN for failing frames (default: abort)')
    parser.add_argument('--backend', choices=BACKENDS, default='numpy',
                        help='Box counting backend (default: numpy)')
    parser.add_argument('--workers', type=int, default=1,
                        help='Frames processed concurrently (default: 1)')
    parser.add_argument('--scale-workers', type=int, default=1,
                        help='Box sizes counted concurrently per frame (default: 1)')
    parser.add_argument('--executor', choices=EXECUTORS, default='thread',
                        help='Pool type used with --workers (default: thread)')
    parser.add_argument('--min-r-squared', type=float, default=0.95,
                        help='Warn about frames with a lower R² (default: 0.95)')
    parser.add_argument('--quiet', '-q', action='store_true',
                        help='Reduce output verbosity')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    verbose = not args.quiet
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    try:
        config = PipelineConfig(
            scales=args.scales,
            shape_policy=args.shape_policy,
            on_error=args.on_error,
            backend=args.backend,
            threshold=args.threshold,
            frame_workers=args.workers,
            scale_workers=args.scale_workers,
            executor=args.executor,
        )
    except ValueError as err:
        parser.error(str(err))

    if verbose:
        print("=" * 60)
        print("AGGREGATE FRACTAL DIMENSION")
        print("=" * 60)
        print(f"Input:  {args.npz_file_path}")
        print(f"Output: {args.output}")
        print()

    try:
        array = load_aggregate(args.npz_file_path, array_name=args.array_name)
        if verbose:
            print(f"Loading done: {array.shape[0]} frames of {array.shape[1:]}. "
                  f"Starting processing.")
        records = compute_fractal_dimensions(array, config)
    except FractalDimensionError as err:
        frame = 'n/a' if err.frame_index is None else err.frame_index
        print(f"error: {type(err).__name__} (frame {frame}): {err.message}", file=sys.stderr)
        return 1
    except (OSError, KeyError, ValueError) as err:
        print(f"error: {err}", file=sys.stderr)
        return 1

    warn_low_quality(records, args.min_r_squared)

    if verbose:
        print_summary(records)

    try:
        save_results_csv(records, args.output, separator=args.separator)
    except OSError as err:
        print(f"error: could not write {args.output}: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
