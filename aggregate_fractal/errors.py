"""
Error types raised by the box-counting pipeline.

All errors are deterministic input-validation failures. They carry the
index of the frame that triggered them once the pipeline knows it.
"""

from typing import Optional, Tuple


class FractalDimensionError(ValueError):
    """Base class for box-counting and estimation failures."""

    def __init__(self, message: str, frame_index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.frame_index = frame_index

    def __str__(self) -> str:
        if self.frame_index is None:
            return self.message
        return f"frame {self.frame_index}: {self.message}"

    def __reduce__(self):
        # Subclass signatures differ from self.args; unpickle from attributes.
        return (_rebuild_error, (type(self), dict(self.__dict__)))


def _rebuild_error(cls, state):
    err = cls.__new__(cls)
    ValueError.__init__(err, state["message"])
    err.__dict__.update(state)
    return err


class InvalidBoxSize(FractalDimensionError):
    """A box size does not evenly divide the frame edge length."""

    def __init__(self, box_size, edge: int, frame_index: Optional[int] = None):
        super().__init__(
            f"box size {box_size!r} does not evenly divide grid edge {edge}",
            frame_index,
        )
        self.box_size = box_size
        self.edge = edge


class InsufficientData(FractalDimensionError):
    """Fewer than two usable log-log points remain after dropping zero counts."""

    def __init__(self, n_points: int, frame_index: Optional[int] = None):
        super().__init__(
            f"only {n_points} non-zero box count(s); at least 2 are needed for a fit",
            frame_index,
        )
        self.n_points = n_points


class ShapeMismatch(FractalDimensionError):
    """An array has the wrong rank, a frame is not cubic, or frames differ in shape."""

    def __init__(self, shape: Tuple[int, ...], expected: Optional[Tuple[int, ...]] = None,
                 frame_index: Optional[int] = None, message: Optional[str] = None):
        if message is None:
            if expected is None:
                message = f"grid of shape {tuple(shape)} is not a cube"
            else:
                message = (f"grid of shape {tuple(shape)} does not match "
                           f"expected shape {tuple(expected)}")
        super().__init__(message, frame_index)
        self.shape = tuple(shape)
        self.expected = None if expected is None else tuple(expected)


class InvalidScaleSet(FractalDimensionError):
    """The scale set is not an ordered sequence of at least two distinct box sizes."""
