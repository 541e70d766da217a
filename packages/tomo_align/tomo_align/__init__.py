"""tomo_align
============

Cost/gradient engine for per-tomogram refinement of tilt-series geometry:
frame pose corrections, particle offsets, particle motion and a smooth 2D
image deformation, scored against per-particle cross-correlation stacks.

Modules
-------
config       pydantic settings + YAML loading
layout       ParameterLayout: flat vector <-> named blocks
tait_bryan   Rotation matrices and their angle derivatives
projection   ProjectionBuilder: corrected frame projections
sampling     CorrelationVolume: C2 cubic B-spline sampler
motion       MotionModel variants + MOTION_MODEL_REGISTRY
deformation  DeformationModel2D variants + DEFORMATION_MODEL_REGISTRY
reduction    Thread-parallel accumulation
evaluator    ModularAlignment: the cost/gradient oracle
export       Trajectories, projections and deformation exports
"""

from tomo_align.config import (
    AlignmentConfig,
    AlignmentSettings,
    DeformationModelSpec,
    MotionModelSpec,
    load_config,
)
from tomo_align.deformation import (
    DEFORMATION_MODEL_REGISTRY,
    DeformationModel2D,
    LinearDeformation2D,
    NoDeformation2D,
    SplineDeformation2D,
    build_deformation_model,
)
from tomo_align.errors import AlignmentError, ConfigurationError, ParameterLengthError
from tomo_align.evaluator import SENTINEL_COST, GradientCheckReport, ModularAlignment
from tomo_align.export import (
    Trajectory,
    deformation_coefficients,
    deformation_field,
    export_trajectories,
    image_shifts,
    particle_positions,
    particle_trajectory,
    projection_matrices,
)
from tomo_align.layout import ParameterBlocks, ParameterLayout, ViewParams
from tomo_align.motion import (
    MOTION_MODEL_REGISTRY,
    GPMotionModel,
    LinearMotionModel,
    MotionModel,
    NoMotionModel,
    build_motion_model,
)
from tomo_align.projection import FrameProjections, ProjectionBuilder
from tomo_align.sampling import CorrelationVolume

__all__ = [
    "AlignmentConfig",
    "AlignmentSettings",
    "DeformationModelSpec",
    "MotionModelSpec",
    "load_config",
    "DEFORMATION_MODEL_REGISTRY",
    "DeformationModel2D",
    "LinearDeformation2D",
    "NoDeformation2D",
    "SplineDeformation2D",
    "build_deformation_model",
    "AlignmentError",
    "ConfigurationError",
    "ParameterLengthError",
    "SENTINEL_COST",
    "GradientCheckReport",
    "ModularAlignment",
    "Trajectory",
    "deformation_coefficients",
    "deformation_field",
    "export_trajectories",
    "image_shifts",
    "particle_positions",
    "particle_trajectory",
    "projection_matrices",
    "ParameterBlocks",
    "ParameterLayout",
    "ViewParams",
    "MOTION_MODEL_REGISTRY",
    "GPMotionModel",
    "LinearMotionModel",
    "MotionModel",
    "NoMotionModel",
    "build_motion_model",
    "FrameProjections",
    "ProjectionBuilder",
    "CorrelationVolume",
]
