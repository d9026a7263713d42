"""
Volume frame I/O and data structures for aggregate analysis.

Reads the 4D (time, x, y, z) simulation output from NumPy archives and
turns each timestep into an immutable boolean occupancy grid.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple, Union

import numpy as np

from .errors import ShapeMismatch

LOGGER = logging.getLogger(__name__)

DEFAULT_ARRAY_NAME = "arr_0"
DEFAULT_THRESHOLD = None  # nonzero is occupied

SHAPE_POLICIES = ("pad", "crop", "strict")


@dataclass(frozen=True, eq=False)
class VolumeFrame:
    """
    Occupancy grid of a single simulation timestep.

    Attributes:
        grid: 3D boolean array, True where a particle is present (read-only)
        index: Timestep index within the source array
    """
    grid: np.ndarray
    index: int = 0

    def __post_init__(self):
        grid = np.array(self.grid, dtype=bool, copy=True)
        if grid.ndim != 3:
            raise ValueError(f"expected a 3D occupancy grid, got {grid.ndim}D")
        grid.flags.writeable = False
        object.__setattr__(self, "grid", grid)

    @classmethod
    def from_array(cls, values: np.ndarray, index: int = 0,
                   threshold: Optional[float] = DEFAULT_THRESHOLD) -> "VolumeFrame":
        """
        Build a frame from raw simulation values.

        Nonzero cells are occupied, or cells with value >= threshold when a
        threshold is given. Boolean input is used as-is.
        """
        values = np.asarray(values)
        if values.dtype == bool:
            return cls(values, index)
        if threshold is None:
            return cls(values != 0, index)
        return cls(values >= threshold, index)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(int(s) for s in self.grid.shape)

    @property
    def is_cubic(self) -> bool:
        nx, ny, nz = self.shape
        return nx == ny == nz

    @property
    def edge(self) -> int:
        """Edge length N of a cubic grid."""
        if not self.is_cubic:
            raise ShapeMismatch(self.shape, frame_index=self.index)
        return self.shape[0]

    @property
    def n_occupied(self) -> int:
        return int(np.count_nonzero(self.grid))

    @property
    def occupancy(self) -> float:
        """Fraction of occupied cells."""
        if self.grid.size == 0:
            return 0.0
        return self.n_occupied / self.grid.size


def conform_frame(frame: VolumeFrame, policy: str = "pad", multiple: int = 1) -> VolumeFrame:
    """
    Bring a frame to a cubic grid whose edge is a multiple of `multiple`.

    Policies:
        pad: extend with unoccupied cells up to the next valid cube edge
        crop: keep the largest valid cube anchored at the origin
        strict: reject non-cubic grids, leave everything else untouched

    Returns:
        The original frame when no change is needed, else a new frame
    """
    if policy not in SHAPE_POLICIES:
        raise ValueError(f"unknown shape policy {policy!r}; choose one of {SHAPE_POLICIES}")

    shape = frame.shape
    multiple = max(1, int(multiple))

    if frame.is_cubic and shape[0] % multiple == 0:
        return frame

    if policy == "strict":
        if not frame.is_cubic:
            raise ShapeMismatch(shape, frame_index=frame.index)
        return frame

    if policy == "crop":
        edge = (min(shape) // multiple) * multiple
        if edge == 0:
            raise ShapeMismatch(shape, (multiple, multiple, multiple), frame_index=frame.index)
        LOGGER.debug("Cropping frame %d from %s to %d^3", frame.index, shape, edge)
        return VolumeFrame(frame.grid[:edge, :edge, :edge], frame.index)

    edge = int(math.ceil(max(shape) / multiple)) * multiple
    LOGGER.debug("Padding frame %d from %s to %d^3", frame.index, shape, edge)
    padded = np.pad(frame.grid, [(0, edge - s) for s in shape],
                    mode="constant", constant_values=False)
    return VolumeFrame(padded, frame.index)


def load_aggregate(filename: Union[str, os.PathLike],
                   array_name: str = DEFAULT_ARRAY_NAME) -> np.ndarray:
    """
    Load a 4D (time, x, y, z) simulation array.

    Args:
        filename: Path to a .npz archive or a .npy file
        array_name: Name of the array inside a .npz archive

    Returns:
        The raw 4D array
    """
    filename = os.fspath(filename)
    if not os.path.exists(filename):
        raise FileNotFoundError(f"File not found: {filename}")

    ext = os.path.splitext(filename)[1].lower()
    if ext == ".npy":
        array = np.load(filename)
    else:
        with np.load(filename) as archive:
            if array_name not in archive.files:
                raise KeyError(
                    f"Could not load array by name {array_name!r}; "
                    f"archive holds {sorted(archive.files)}"
                )
            array = archive[array_name]

    _check_4d(array)

    LOGGER.info("Loaded %s: %d frames of %s", filename, array.shape[0], array.shape[1:])
    return array


def _check_4d(array: np.ndarray) -> None:
    if array.ndim != 4:
        raise ShapeMismatch(
            array.shape,
            message=f"expected 4D array (time, x, y, z), got shape {array.shape}",
        )


def iter_frames(array: np.ndarray,
                threshold: Optional[float] = DEFAULT_THRESHOLD) -> Iterator[VolumeFrame]:
    """Return an iterator yielding one VolumeFrame per timestep, built only when requested."""
    array = np.asarray(array)
    _check_4d(array)
    return (VolumeFrame.from_array(array[t], index=t, threshold=threshold)
            for t in range(array.shape[0]))
