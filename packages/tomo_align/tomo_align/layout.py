"""tomo_align.layout

Flat parameter vector <-> named blocks.

Layout, in order::

    0                         [phi, theta, psi][dx, dy] * (fc - 1)   frame poses, stride fs
    fs*(fc-1)                 [x, y, z] * pc                          static particle offsets
    fs*(fc-1) + 3*pc          coefficients * (fc - 1)                 motion, mpc per transition
    ... + mpc*(fc-1)          coefficients * (fc or 1)                2D deformation, dc each

Frame 0 is the reference and stores no pose parameters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional

import numpy as np

from tomo_align.config import AlignmentSettings
from tomo_align.errors import ConfigurationError, ParameterLengthError


class ViewParams(NamedTuple):
    phi: float
    theta: float
    psi: float
    dx: float
    dy: float


ZERO_VIEW = ViewParams(0.0, 0.0, 0.0, 0.0, 0.0)


@dataclass
class ParameterBlocks:
    """Decoded copy of a parameter vector.

    ``poses`` has one row per stored frame (frames 1..fc-1) and ``frame_stride``
    columns; ``deformation`` has ``fc`` rows if per-frame, else one.
    """
    poses: np.ndarray
    positions: np.ndarray
    motion: np.ndarray
    deformation: np.ndarray


@dataclass(frozen=True)
class ParameterLayout:
    settings: AlignmentSettings
    frame_count: int
    particle_count: int
    motion_parameter_count: int = 0
    deformation_parameter_count: int = 0

    def __post_init__(self) -> None:
        if self.frame_count < 1:
            raise ConfigurationError(f"frame_count must be >= 1, got {self.frame_count}")
        for name in ("particle_count", "motion_parameter_count", "deformation_parameter_count"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)}")

    # --- Sizes ---

    @property
    def frame_stride(self) -> int:
        fs = 0
        if not self.settings.const_angles:
            fs += 3
        if not self.settings.const_shifts:
            fs += 2
        return fs

    @property
    def deformation_block_count(self) -> int:
        return self.frame_count if self.settings.per_frame_2d_deformation else 1

    @property
    def param_count(self) -> int:
        fc = self.frame_count
        return (
            self.frame_stride * (fc - 1)
            + 3 * self.particle_count
            + self.motion_parameter_count * (fc - 1)
            + self.deformation_parameter_count * self.deformation_block_count
        )

    # --- Offsets ---

    def pose_offset(self, f: int) -> int:
        return (f - 1) * self.frame_stride

    @property
    def positions_offset(self) -> int:
        return self.frame_stride * (self.frame_count - 1)

    @property
    def motion_offset(self) -> int:
        return self.positions_offset + 3 * self.particle_count

    @property
    def deformation_offset(self) -> int:
        return self.motion_offset + self.motion_parameter_count * (self.frame_count - 1)

    def deformation_offset_for_frame(self, f: int) -> int:
        if self.settings.per_frame_2d_deformation:
            return self.deformation_offset + f * self.deformation_parameter_count
        return self.deformation_offset

    # --- Decoding ---

    def check(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        if x.ndim != 1 or x.shape[0] != self.param_count:
            raise ParameterLengthError(self.param_count, int(x.size))
        return x

    def read_view_params(self, x: np.ndarray, f: int) -> ViewParams:
        """Pose correction of frame ``f``; disabled components read as zero."""
        if f == 0:
            return ZERO_VIEW

        offset = self.pose_offset(f)
        phi = theta = psi = dx = dy = 0.0

        if not self.settings.const_angles:
            phi, theta, psi = (float(v) for v in x[offset:offset + 3])
            offset += 3

        if not self.settings.const_shifts:
            dx, dy = (float(v) for v in x[offset:offset + 2])

        return ViewParams(phi, theta, psi, dx, dy)

    def poses(self, x: np.ndarray) -> np.ndarray:
        return x[:self.positions_offset].reshape(self.frame_count - 1, self.frame_stride)

    def positions(self, x: np.ndarray) -> np.ndarray:
        return x[self.positions_offset:self.motion_offset].reshape(self.particle_count, 3)

    def motion_coefficients(self, x: np.ndarray) -> np.ndarray:
        return x[self.motion_offset:self.deformation_offset].reshape(
            self.frame_count - 1, self.motion_parameter_count
        )

    def deformation_blocks(self, x: np.ndarray) -> np.ndarray:
        return x[self.deformation_offset:].reshape(
            self.deformation_block_count, self.deformation_parameter_count
        )

    def deformation_coefficients(self, x: np.ndarray) -> np.ndarray:
        """One row of deformation coefficients per frame, shape ``(fc, dc)``."""
        blocks = self.deformation_blocks(x)
        if self.settings.per_frame_2d_deformation:
            return blocks
        return np.broadcast_to(blocks, (self.frame_count, self.deformation_parameter_count))

    def unpack(self, x: np.ndarray) -> ParameterBlocks:
        x = self.check(x)
        return ParameterBlocks(
            poses=self.poses(x).copy(),
            positions=self.positions(x).copy(),
            motion=self.motion_coefficients(x).copy(),
            deformation=self.deformation_blocks(x).copy(),
        )

    # --- Encoding ---

    def zeros(self) -> np.ndarray:
        return np.zeros(self.param_count, dtype=np.float64)

    def pack(
        self,
        poses: Optional[np.ndarray] = None,
        positions: Optional[np.ndarray] = None,
        motion: Optional[np.ndarray] = None,
        deformation: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Build a parameter vector; omitted blocks are zero."""
        x = self.zeros()
        if poses is not None:
            self.poses(x)[...] = poses
        if positions is not None:
            self.positions(x)[...] = positions
        if motion is not None:
            self.motion_coefficients(x)[...] = motion
        if deformation is not None:
            self.deformation_blocks(x)[...] = deformation
        return x
