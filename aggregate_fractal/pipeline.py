"""
Per-timestep fractal dimension pipeline.

Runs a box-counting sweep and a log-log fit for every frame of a
simulation and returns one Record per frame, in timestep order.
"""

import logging
import math
from collections import deque
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .box_counting import (
    BACKENDS,
    DimensionEstimate,
    create_counter,
    default_scale_set,
    estimate_dimension,
    sweep,
    validate_scale_set,
)
from .errors import FractalDimensionError, ShapeMismatch
from .volume_io import (
    DEFAULT_THRESHOLD,
    SHAPE_POLICIES,
    VolumeFrame,
    conform_frame,
    iter_frames,
)

LOGGER = logging.getLogger(__name__)

ERROR_POLICIES = ("abort", "nan")
EXECUTORS = ("thread", "process")


@dataclass(frozen=True)
class PipelineConfig:
    """
    Settings for one pipeline run.

    Attributes:
        scales: Box sizes for every frame (default: power-of-two divisors of the edge)
        shape_policy: How non-cubic frames are handled: "pad", "crop" or "strict"
        on_error: "abort" stops at the first failing frame, "nan" records NaN and continues
        backend: Box counting backend, "numpy" or "numba"
        threshold: Raw values >= threshold are occupied (default: any nonzero value)
        frame_workers: Number of frames processed concurrently
        scale_workers: Number of scales counted concurrently within a frame
        executor: Pool used for frame_workers > 1, "thread" or "process"
    """
    scales: Optional[Tuple[int, ...]] = None
    shape_policy: str = "pad"
    on_error: str = "abort"
    backend: str = "numpy"
    threshold: Optional[float] = DEFAULT_THRESHOLD
    frame_workers: int = 1
    scale_workers: int = 1
    executor: str = "thread"

    def __post_init__(self):
        if self.scales is not None:
            object.__setattr__(self, "scales", validate_scale_set(self.scales))
        if self.shape_policy not in SHAPE_POLICIES:
            raise ValueError(f"shape_policy must be one of {SHAPE_POLICIES}, got {self.shape_policy!r}")
        if self.on_error not in ERROR_POLICIES:
            raise ValueError(f"on_error must be one of {ERROR_POLICIES}, got {self.on_error!r}")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.executor not in EXECUTORS:
            raise ValueError(f"executor must be one of {EXECUTORS}, got {self.executor!r}")
        if self.frame_workers < 1 or self.scale_workers < 1:
            raise ValueError("worker counts must be at least 1")


@dataclass(frozen=True)
class Record:
    """Fractal dimension estimate for one timestep."""
    frame_index: int
    estimate: DimensionEstimate
    occupancy: float  # Fraction of occupied cells in the raw frame
    error: Optional[str] = None  # Error kind when the frame could not be fitted

    @property
    def dimension(self) -> float:
        return self.estimate.dimension

    @property
    def r_squared(self) -> float:
        return self.estimate.r_squared


def _analyze_frame(position: int, frame: VolumeFrame,
                   scales: Optional[Tuple[int, ...]],
                   config: PipelineConfig) -> Record:
    """Conform, sweep and fit a single frame; safe for ProcessPoolExecutor."""
    multiple = math.lcm(*scales) if scales is not None else 1
    conformed = conform_frame(frame, config.shape_policy, multiple)

    frame_scales = scales if scales is not None else default_scale_set(conformed.edge)
    points = sweep(conformed, frame_scales,
                   counter=create_counter(config.backend),
                   workers=config.scale_workers)
    estimate = estimate_dimension(points, frame_index=position)

    return Record(frame_index=position, estimate=estimate, occupancy=frame.occupancy)


class AggregatePipeline:
    """
    Computes one fractal dimension Record per simulation frame.

    Frames are independent; with frame_workers > 1 they run on a pool and
    results are reassembled by timestep index, never by completion order.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config if config is not None else PipelineConfig()

    def run(self, frames: Iterable[VolumeFrame],
            scales: Optional[Sequence[int]] = None) -> List[Record]:
        """
        Process frames in order.

        Args:
            frames: Ordered frames; the position in this sequence is the timestep index
            scales: Box sizes overriding config.scales

        Returns:
            One Record per frame, sorted by timestep index
        """
        if scales is not None:
            scales = validate_scale_set(scales)
        else:
            scales = self.config.scales

        if self.config.frame_workers > 1:
            records = self._run_concurrent(frames, scales)
        else:
            records = self._run_serial(frames, scales)

        LOGGER.info("Processed %d frames", len(records))
        return records

    def _run_serial(self, frames: Iterable[VolumeFrame],
                    scales: Optional[Tuple[int, ...]]) -> List[Record]:
        records = []
        expected_shape = None

        for position, frame in enumerate(frames):
            if expected_shape is None:
                expected_shape = frame.shape
            try:
                self._check_shape(position, frame, expected_shape)
                record = _analyze_frame(position, frame, scales, self.config)
            except FractalDimensionError as err:
                record = self._handle_failure(position, frame, err)
            self._log_record(record)
            records.append(record)

        return records

    def _run_concurrent(self, frames: Iterable[VolumeFrame],
                        scales: Optional[Tuple[int, ...]]) -> List[Record]:
        config = self.config
        pool_cls = ProcessPoolExecutor if config.executor == "process" else ThreadPoolExecutor
        window = 2 * config.frame_workers

        records: Dict[int, Record] = {}
        pending: Deque[Tuple[int, VolumeFrame, Future]] = deque()
        expected_shape = None

        with pool_cls(max_workers=config.frame_workers) as pool:
            try:
                for position, frame in enumerate(frames):
                    if expected_shape is None:
                        expected_shape = frame.shape
                    try:
                        self._check_shape(position, frame, expected_shape)
                    except ShapeMismatch as err:
                        # Pre-failed; collected in frame order with the pool futures.
                        future = Future()
                        future.set_exception(err)
                    else:
                        future = pool.submit(_analyze_frame, position, frame, scales, config)
                    pending.append((position, frame, future))

                    # Bound the number of frames held in memory.
                    if len(pending) >= window:
                        self._collect(pending.popleft(), records)

                while pending:
                    self._collect(pending.popleft(), records)
            except BaseException:
                for _, _, future in pending:
                    future.cancel()
                raise

        return [records[position] for position in sorted(records)]

    def _collect(self, item: Tuple[int, VolumeFrame, Future],
                 records: Dict[int, Record]) -> None:
        position, frame, future = item
        try:
            record = future.result()
        except FractalDimensionError as err:
            record = self._handle_failure(position, frame, err)
        self._log_record(record)
        records[position] = record

    @staticmethod
    def _check_shape(position: int, frame: VolumeFrame,
                     expected_shape: Tuple[int, ...]) -> None:
        if frame.shape != expected_shape:
            raise ShapeMismatch(frame.shape, expected_shape, frame_index=position)

    def _handle_failure(self, position: int, frame: VolumeFrame,
                        err: FractalDimensionError) -> Record:
        err.frame_index = position
        if self.config.on_error == "abort":
            raise err

        LOGGER.warning("Frame %d: %s: %s; recording NaN",
                       position, type(err).__name__, err.message)
        return Record(
            frame_index=position,
            estimate=DimensionEstimate.undefined(),
            occupancy=frame.occupancy,
            error=type(err).__name__,
        )

    @staticmethod
    def _log_record(record: Record) -> None:
        LOGGER.info("Processed frame: %d (D=%.4f, R²=%.5f)",
                    record.frame_index, record.dimension, record.r_squared)


def compute_fractal_dimensions(array: np.ndarray,
                               config: Optional[PipelineConfig] = None) -> List[Record]:
    """
    Compute the fractal dimension of every frame of a 4D simulation array.

    Args:
        array: Array of shape (time, x, y, z)
        config: Pipeline settings (default: PipelineConfig())

    Returns:
        One Record per timestep, in timestep order
    """
    if config is None:
        config = PipelineConfig()

    frames = iter_frames(array, threshold=config.threshold)
    return AggregatePipeline(config).run(frames)
