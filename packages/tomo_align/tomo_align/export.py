"""tomo_align.export

Read-only projections of a parameter vector for downstream collaborators.

Frame-indexed outputs accept ``frame_sequence``: entry ``f`` of the internal
(alignment) order is written to position ``frame_sequence[f]`` of the output,
so results can be delivered in the caller's own frame order (e.g. by tilt
angle). Nothing here modifies ``x`` or the problem.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from tomo_align.errors import ConfigurationError
from tomo_align.evaluator import ModularAlignment


@dataclass
class Trajectory:
    """Per-frame 3D shifts of one particle, in Angstrom."""
    shifts_angstrom: np.ndarray

    @classmethod
    def zeros(cls, frame_count: int) -> "Trajectory":
        return cls(np.zeros((frame_count, 3)))

    def __add__(self, other: "Trajectory") -> "Trajectory":
        return Trajectory(self.shifts_angstrom + other.shifts_angstrom)


def _frame_sequence(problem: ModularAlignment, frame_sequence: Optional[Sequence[int]]) -> np.ndarray:
    fc = problem.frame_count
    if frame_sequence is None:
        return np.arange(fc)
    seq = np.asarray(frame_sequence, dtype=np.int64)
    if seq.shape != (fc,) or sorted(seq.tolist()) != list(range(fc)):
        raise ConfigurationError(f"frame_sequence must be a permutation of range({fc})")
    return seq


def projection_matrices(
    problem: ModularAlignment,
    x: np.ndarray,
    frame_sequence: Optional[Sequence[int]] = None,
) -> np.ndarray:
    """Corrected projections, shape (fc, 4, 4), in output frame order."""
    x = problem.layout.check(x)
    seq = _frame_sequence(problem, frame_sequence)
    out = np.empty((problem.frame_count, 4, 4))
    out[seq] = problem.projections.corrected(x)
    return out


def particle_positions(problem: ModularAlignment, x: np.ndarray) -> np.ndarray:
    """Initial positions plus static offsets, shape (pc, 3)."""
    x = problem.layout.check(x)
    if problem.settings.const_particles:
        return problem.initial_positions.copy()
    return problem.initial_positions + problem.layout.positions(x)


def particle_trajectory(
    problem: ModularAlignment,
    x: np.ndarray,
    p: int,
    frame_sequence: Optional[Sequence[int]] = None,
) -> Trajectory:
    """Motion-model drift of particle ``p`` in Angstrom, in output frame order."""
    x = problem.layout.check(x)
    seq = _frame_sequence(problem, frame_sequence)
    out = Trajectory.zeros(problem.frame_count)
    if not problem.motion_active:
        return out
    shifts = problem.motion_model.trajectory(problem.layout.motion_coefficients(x), p)
    out.shifts_angstrom[seq] = problem.pixel_size * shifts
    return out


def export_trajectories(
    problem: ModularAlignment,
    x: np.ndarray,
    history: Sequence[Trajectory],
    frame_sequence: Optional[Sequence[int]] = None,
) -> List[Trajectory]:
    """Stored trajectories plus the fitted drift.

    ``history`` is indexed by dataset particle id (``problem.particle_ids``).
    """
    return [
        history[pid] + particle_trajectory(problem, x, p, frame_sequence)
        for p, pid in enumerate(problem.particle_ids)
    ]


def deformation_coefficients(
    problem: ModularAlignment,
    x: np.ndarray,
    frame_sequence: Optional[Sequence[int]] = None,
) -> List[np.ndarray]:
    """Per output frame, the deformation coefficients in the model's grid layout.

    Empty if the deformation model has no parameters.
    """
    x = problem.layout.check(x)
    if problem.layout.deformation_parameter_count == 0:
        return []
    seq = _frame_sequence(problem, frame_sequence)
    coeffs = problem.layout.deformation_coefficients(x)
    out: List[np.ndarray] = [np.empty(0)] * problem.frame_count
    for f in range(problem.frame_count):
        out[seq[f]] = problem.deformation_model.coefficient_grid(coeffs[f])
    return out


def image_shifts(problem: ModularAlignment, x: np.ndarray) -> np.ndarray:
    """Where each particle samples its correlation grid, shape (pc, fc, 2).

    The grid centre ``max_range * padding_factor`` means no displacement.
    """
    x = problem.layout.check(x)
    P = problem.projections.corrected(x)
    out = np.empty((problem.particle_count, problem.frame_count, 2))
    for p in range(problem.particle_count):
        out[p] = problem.sample_geometry(x, p, P)[-1]
    return out


def deformation_field(
    problem: ModularAlignment,
    x: np.ndarray,
    frame: int = 0,
    samples: Sequence[int] = (16, 16),
    frame_sequence: Optional[Sequence[int]] = None,
) -> np.ndarray:
    """Deformation of ``frame`` sampled on a regular image grid.

    ``frame`` is an output frame index, i.e. a position in ``frame_sequence``
    order. Returns an array of shape (sy, sx, 4): image x, image y, shift x,
    shift y. Requires a deformation model with an ``image_size``.
    """
    x = problem.layout.check(x)
    seq = _frame_sequence(problem, frame_sequence)
    if not 0 <= frame < problem.frame_count:
        raise ConfigurationError(f"frame {frame} out of range for {problem.frame_count} frames")
    internal = int(np.flatnonzero(seq == frame)[0])
    model = problem.deformation_model
    if not hasattr(model, "image_size"):
        raise ConfigurationError(f"{type(model).__name__} has no image extent to sample")
    w, h = model.image_size
    sx, sy = (int(v) for v in samples)
    gx, gy = np.meshgrid(np.linspace(0.0, w, sx), np.linspace(0.0, h, sy))
    points = np.stack([gx.ravel(), gy.ravel()], axis=1)
    coeffs = problem.layout.deformation_coefficients(x)[internal]
    shift, _, _ = model.shift_and_gradient(points, np.broadcast_to(coeffs, (len(points), len(coeffs))))
    return np.concatenate([points, shift], axis=1).reshape(sy, sx, 4)
