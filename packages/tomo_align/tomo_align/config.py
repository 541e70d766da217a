"""tomo_align.config
====================

Validated configuration for one alignment problem.

Models
------
AlignmentSettings     Which parameter blocks are held constant
MotionModelSpec       Registry key + constructor params of the motion model
DeformationModelSpec  Registry key + constructor params of the 2D deformation
AlignmentConfig       Everything above plus sampling and threading options

``load_config`` reads an ``AlignmentConfig`` from YAML.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Base model
# ---------------------------------------------------------------------------


class StrictBaseModel(BaseModel):
    """No extra fields, re-validated on assignment, no NaN/Inf floats."""

    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        ser_json_inf_nan="constants",
    )

    @model_validator(mode="after")
    def _reject_nan_inf(self) -> "StrictBaseModel":
        for field_name in self.__class__.model_fields:
            val = getattr(self, field_name)
            if isinstance(val, float) and (math.isnan(val) or math.isinf(val)):
                raise ValueError(
                    f"Field '{field_name}' contains {val!r}, which is not allowed."
                )
        return self


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class AlignmentSettings(StrictBaseModel):
    """Flags selecting the free parameter blocks.

    Attributes
    ----------
    const_particles : bool
        Hold particle positions fixed. Disables both the static 3D offsets
        and the motion model; their blocks remain in the parameter vector.
    const_angles : bool
        Do not refine per-frame rotation angles.
    const_shifts : bool
        Do not refine per-frame in-plane translations.
    per_frame_2d_deformation : bool
        One set of deformation coefficients per frame instead of one shared set.
    """

    # the parameter layout is derived from these flags
    model_config = ConfigDict(frozen=True)

    const_particles: bool = False
    const_angles: bool = False
    const_shifts: bool = False
    per_frame_2d_deformation: bool = False


class MotionModelSpec(StrictBaseModel):
    """Motion model selection.

    Attributes
    ----------
    kind : str
        Key in ``MOTION_MODEL_REGISTRY`` (``"none"``, ``"linear"``, ``"gp"``).
    params : dict
        Forwarded to the model's ``from_positions`` constructor.
    """

    kind: str = "none"
    params: Dict[str, Any] = {}


class DeformationModelSpec(StrictBaseModel):
    """2D deformation model selection.

    Attributes
    ----------
    kind : str
        Key in ``DEFORMATION_MODEL_REGISTRY`` (``"none"``, ``"linear"``, ``"spline"``).
    params : dict
        Forwarded to the model constructor (e.g. ``image_size``, ``grid_size``).
    """

    kind: str = "none"
    params: Dict[str, Any] = {}


class AlignmentConfig(StrictBaseModel):
    settings: AlignmentSettings = Field(default_factory=AlignmentSettings)
    motion: MotionModelSpec = Field(default_factory=MotionModelSpec)
    deformation: DeformationModelSpec = Field(default_factory=DeformationModelSpec)
    padding_factor: float = Field(2.0, gt=0.0)
    pixel_size: float = Field(1.0, gt=0.0, description="Angstrom per pixel.")
    num_threads: int = Field(1, ge=1)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)


def load_config(path: Union[str, Path]) -> AlignmentConfig:
    """Read an ``AlignmentConfig`` from a YAML file.

    An empty file yields the default configuration.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return AlignmentConfig.model_validate(data)
