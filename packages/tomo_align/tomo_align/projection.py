"""tomo_align.projection

Per-frame corrected projection matrices and their angle derivatives.

For frame ``f > 0``::

    P[f] = C+ @ Q(phi, theta, psi) @ C- @ P0[f],   P[f][0:2, 3] += (dx, dy)

where ``C-`` / ``C+`` move the tomogram centre to / from the origin, so the
pose correction rotates about the centre of the volume. The partials
``P_phi``, ``P_theta``, ``P_psi`` replace ``Q`` by its derivative with the
homogeneous entry zeroed; applied to a homogeneous point they give the
direction in which the projected point moves, not a transformed point.
Frame 0 is the reference: ``P[0] == P0[0]`` and its partials are zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from tomo_align.errors import ConfigurationError
from tomo_align.layout import ParameterLayout
from tomo_align.tait_bryan import angles_to_matrix, angles_to_matrix_and_derivatives


@dataclass(frozen=True)
class FrameProjections:
    """Projections of one evaluation, each array shaped (fc, 4, 4)."""
    P: np.ndarray
    P_phi: Optional[np.ndarray] = None
    P_theta: Optional[np.ndarray] = None
    P_psi: Optional[np.ndarray] = None


def centering_matrices(centre: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    """Homogeneous translations by ``-centre`` and ``+centre``."""
    c = np.asarray(centre, dtype=np.float64).reshape(3)
    minus = np.eye(4)
    plus = np.eye(4)
    minus[:3, 3] = -c
    plus[:3, 3] = c
    return minus, plus


def _embed(block: np.ndarray, corner: float) -> np.ndarray:
    m = np.zeros((4, 4))
    m[:3, :3] = block
    m[3, 3] = corner
    return m


class ProjectionBuilder:
    """Builds corrected frame projections from a parameter vector.

    Parameters
    ----------
    initial_projections : ndarray, shape (fc, 4, 4)
        Immutable initial geometry, one homogeneous projection per frame.
    tomogram_centre : sequence of 3 floats
        Rotation centre of the pose corrections, in tomogram coordinates.
    layout : ParameterLayout
        Where to read the pose corrections from.
    """

    def __init__(
        self,
        initial_projections: np.ndarray,
        tomogram_centre: Sequence[float],
        layout: ParameterLayout,
    ):
        proj = np.array(initial_projections, dtype=np.float64)
        if proj.ndim != 3 or proj.shape[1:] != (4, 4):
            raise ConfigurationError(
                f"Expected initial projections of shape (fc, 4, 4), got {proj.shape}"
            )
        if proj.shape[0] != layout.frame_count:
            raise ConfigurationError(
                f"{proj.shape[0]} projections for a layout of {layout.frame_count} frames"
            )
        proj.setflags(write=False)
        self.initial = proj
        self.layout = layout
        self.minus_centre, self.plus_centre = centering_matrices(tomogram_centre)

    def build(self, x: np.ndarray, with_derivatives: bool = True) -> FrameProjections:
        fc = self.layout.frame_count
        P = np.empty((fc, 4, 4))
        P[0] = self.initial[0]

        if with_derivatives:
            P_phi = np.zeros((fc, 4, 4))
            P_theta = np.zeros((fc, 4, 4))
            P_psi = np.zeros((fc, 4, 4))

        for f in range(1, fc):
            view = self.layout.read_view_params(x, f)
            cent_proj = self.minus_centre @ self.initial[f]

            if with_derivatives:
                R, R_phi, R_theta, R_psi = angles_to_matrix_and_derivatives(
                    view.phi, view.theta, view.psi
                )
                P_phi[f] = self.plus_centre @ _embed(R_phi, 0.0) @ cent_proj
                P_theta[f] = self.plus_centre @ _embed(R_theta, 0.0) @ cent_proj
                P_psi[f] = self.plus_centre @ _embed(R_psi, 0.0) @ cent_proj
            else:
                R = angles_to_matrix(view.phi, view.theta, view.psi)

            P[f] = self.plus_centre @ _embed(R, 1.0) @ cent_proj
            P[f, 0, 3] += view.dx
            P[f, 1, 3] += view.dy

        if with_derivatives:
            return FrameProjections(P, P_phi, P_theta, P_psi)
        return FrameProjections(P)

    def corrected(self, x: np.ndarray) -> np.ndarray:
        return self.build(x, with_derivatives=False).P
