"""
Aggregate Fractal - box-counting dimension of growing 3D aggregates.

This package provides tools for computing the fractal dimension of
voxel aggregates at every timestep of a 3D+t simulation, using the
box-counting method on cubic occupancy grids.
"""

import logging

from .box_counting import (
    BoxCounter,
    CountPoint,
    DimensionEstimate,
    compute_fractal_dimension,
    create_counter,
    default_scale_set,
    estimate_dimension,
    sweep,
    validate_scale_set,
)
from .errors import (
    FractalDimensionError,
    InsufficientData,
    InvalidBoxSize,
    InvalidScaleSet,
    ShapeMismatch,
)
from .pipeline import (
    AggregatePipeline,
    PipelineConfig,
    Record,
    compute_fractal_dimensions,
)
from .volume_io import (
    VolumeFrame,
    conform_frame,
    iter_frames,
    load_aggregate,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
__all__ = [
    # Box counting
    "BoxCounter",
    "CountPoint",
    "DimensionEstimate",
    "compute_fractal_dimension",
    "create_counter",
    "default_scale_set",
    "estimate_dimension",
    "sweep",
    "validate_scale_set",
    # Pipeline
    "AggregatePipeline",
    "PipelineConfig",
    "Record",
    "compute_fractal_dimensions",
    # Volume I/O
    "VolumeFrame",
    "conform_frame",
    "iter_frames",
    "load_aggregate",
    # Errors
    "FractalDimensionError",
    "InsufficientData",
    "InvalidBoxSize",
    "InvalidScaleSet",
    "ShapeMismatch",
]
