"""tomo_align.evaluator
======================

Cost and analytic gradient of the tilt-series alignment problem.

For every particle ``p`` and frame ``f`` the particle is projected through
the corrected frame projection, warped by the 2D deformation model, and its
displacement from the uncorrected projection is looked up in the particle's
cross-correlation stack. The cost is the negated sum of those correlation
values (the optimizer minimises it); the gradient is pushed back through the
deformation, the projection and the motion model to every parameter block.

Particles are independent given the frame projections, so the particle loop
runs through ``parallel_reduce`` with one private accumulator per worker.
"""

from __future__ import annotations

import logging
import math
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from tomo_align.config import AlignmentConfig, AlignmentSettings
from tomo_align.deformation import DeformationModel2D, build_deformation_model
from tomo_align.errors import ConfigurationError
from tomo_align.layout import ParameterLayout
from tomo_align.motion import MotionModel, build_motion_model
from tomo_align.projection import FrameProjections, ProjectionBuilder
from tomo_align.reduction import Accumulator, parallel_reduce
from tomo_align.sampling import CorrelationVolume

logger = logging.getLogger(__name__)

SENTINEL_COST = sys.float_info.max


@dataclass
class GradientCheckReport:
    """Result of ``check_gradient()``."""
    passed: bool
    indices: List[int]
    analytic: np.ndarray
    numeric: np.ndarray
    max_relative_error: float
    tolerance: float

    def summary(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return (
            f"GradientCheck [{status}]: max_rel_err={self.max_relative_error:.2e}, "
            f"tol={self.tolerance:.2e}, coords={len(self.indices)}"
        )


class ModularAlignment:
    """Cost/gradient oracle for one tomogram.

    Parameters
    ----------
    correlation_volumes : sequence of CorrelationVolume or ndarray
        One (fc, ny, nx) stack per particle, centred on the particle's
        initial projected position in every frame.
    initial_projections : ndarray, shape (fc, 4, 4)
        Initial frame projections, frame 0 being the reference.
    initial_positions : ndarray, shape (pc, 3)
        Initial particle positions in tomogram pixels.
    motion_model, deformation_model
        Capability objects; their parameter counts define the layout.
    settings : AlignmentSettings
        Which parameter blocks are free.
    tomogram_centre : sequence of 3 floats
        Rotation centre of the pose corrections.
    padding_factor : float
        Oversampling of the correlation grid relative to image pixels.
    pixel_size : float
        Angstrom per pixel, used for exported trajectories.
    num_threads : int
        Worker threads of the particle loop.
    particle_ids : sequence of int, optional
        Indices of the particles in the caller's dataset, kept for exports.
    """

    def __init__(
        self,
        correlation_volumes: Sequence[Union[CorrelationVolume, np.ndarray]],
        initial_projections: np.ndarray,
        initial_positions: np.ndarray,
        motion_model: MotionModel,
        deformation_model: DeformationModel2D,
        settings: AlignmentSettings,
        tomogram_centre: Sequence[float],
        padding_factor: float,
        pixel_size: float = 1.0,
        num_threads: int = 1,
        particle_ids: Optional[Sequence[int]] = None,
    ):
        self.volumes = [
            v if isinstance(v, CorrelationVolume) else CorrelationVolume(v)
            for v in correlation_volumes
        ]
        positions = np.array(initial_positions, dtype=np.float64).reshape(-1, 3)
        positions.setflags(write=False)
        self.initial_positions = positions

        fc = len(initial_projections)
        pc = len(positions)

        if len(self.volumes) != pc:
            raise ConfigurationError(
                f"{len(self.volumes)} correlation volumes for {pc} particles"
            )
        extent = self.volumes[0].extent if pc else 0
        for p, v in enumerate(self.volumes):
            if v.frame_count != fc:
                raise ConfigurationError(
                    f"Correlation volume {p} has {v.frame_count} frames, expected {fc}"
                )
            # one grid centre serves every particle and both axes
            if v.shape[1:] != (extent, extent):
                raise ConfigurationError(
                    f"Correlation volume {p} is {v.shape[2]}x{v.shape[1]}, "
                    f"expected square {extent}x{extent} grids"
                )
        if padding_factor <= 0.0:
            raise ConfigurationError(f"padding_factor must be positive, got {padding_factor}")

        self.motion_model = motion_model
        self.deformation_model = deformation_model
        self.settings = settings
        self.padding_factor = float(padding_factor)
        self.pixel_size = float(pixel_size)
        self.num_threads = int(num_threads)
        self.particle_ids = list(particle_ids) if particle_ids is not None else list(range(pc))

        self.layout = ParameterLayout(
            settings=settings,
            frame_count=fc,
            particle_count=pc,
            motion_parameter_count=motion_model.parameter_count,
            deformation_parameter_count=deformation_model.parameter_count,
        )
        self.projections = ProjectionBuilder(initial_projections, tomogram_centre, self.layout)
        self.max_range = extent / (2.0 * self.padding_factor)
        self.last_iteration = 0
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=self.num_threads) if self.num_threads > 1 else None
        )

        logger.info(
            "Alignment problem: %d frames, %d particles, %d motion / %d deformation "
            "coefficients, %d parameters",
            fc, pc, self.layout.motion_parameter_count,
            self.layout.deformation_parameter_count, self.layout.param_count,
        )

    @classmethod
    def from_config(
        cls,
        config: AlignmentConfig,
        correlation_volumes: Sequence[Union[CorrelationVolume, np.ndarray]],
        initial_projections: np.ndarray,
        initial_positions: np.ndarray,
        tomogram_centre: Sequence[float],
        particle_ids: Optional[Sequence[int]] = None,
    ) -> "ModularAlignment":
        return cls(
            correlation_volumes,
            initial_projections,
            initial_positions,
            motion_model=build_motion_model(config.motion, initial_positions, config.pixel_size),
            deformation_model=build_deformation_model(config.deformation),
            settings=config.settings,
            tomogram_centre=tomogram_centre,
            padding_factor=config.padding_factor,
            pixel_size=config.pixel_size,
            num_threads=config.num_threads,
            particle_ids=particle_ids,
        )

    # --- Sizes ---

    @property
    def frame_count(self) -> int:
        return self.layout.frame_count

    @property
    def particle_count(self) -> int:
        return self.layout.particle_count

    @property
    def param_count(self) -> int:
        return self.layout.param_count

    @property
    def motion_active(self) -> bool:
        return not self.settings.const_particles and self.layout.motion_parameter_count > 0

    # --- Per-particle geometry ---

    def particle_shifts(self, x: np.ndarray, p: int) -> np.ndarray:
        """Static offset plus motion-model drift of particle ``p`` per frame, (fc, 3)."""
        fc = self.frame_count
        if self.settings.const_particles:
            return np.zeros((fc, 3))
        shifts = np.broadcast_to(self.layout.positions(x)[p], (fc, 3))
        if self.motion_active:
            shifts = shifts + self.motion_model.trajectory(self.layout.motion_coefficients(x), p)
        return np.array(shifts)

    def sample_geometry(
        self, x: np.ndarray, p: int, P: np.ndarray
    ) -> Tuple[np.ndarray, ...]:
        """Homogeneous 3D positions, projected/deformed positions and grid coordinates."""
        fc = self.frame_count
        initial4 = np.append(self.initial_positions[p], 1.0)
        pos4 = np.hstack([self.initial_positions[p] + self.particle_shifts(x, p), np.ones((fc, 1))])

        p0 = np.einsum("fij,j->fi", self.projections.initial[:, :2, :], initial4)
        pl = np.einsum("fij,fj->fi", P[:, :2, :], pos4)

        coeffs = self.layout.deformation_coefficients(x)
        d, d_dx, d_dy = self.deformation_model.shift_and_gradient(pl, coeffs)

        dp = pl + d - p0
        grid = (dp + self.max_range) * self.padding_factor
        return pos4, pl, coeffs, d_dx, d_dy, grid

    # --- Cost and gradient ---

    def evaluate(self, x: np.ndarray) -> Tuple[float, np.ndarray]:
        """Cost and gradient at ``x``.

        A non-finite entry anywhere in ``x`` returns ``SENTINEL_COST`` and a
        zero gradient; the caller should treat the step as infeasible.

        The data term is the plain correlation sum, not scaled by
        ``padding_factor``; motion prior weights (``regularisation``, GP
        sigmas) are balanced against it on that scale.

        Raises
        ------
        ParameterLengthError
            If ``len(x)`` does not match the layout.
        """
        x = self.layout.check(x)

        if not np.all(np.isfinite(x)):
            logger.debug("Rejecting parameter vector with non-finite entries")
            return SENTINEL_COST, np.zeros_like(x)

        frames = self.projections.build(x, with_derivatives=True)

        def work(p: int, acc: Accumulator) -> None:
            self._accumulate_particle(x, p, frames, acc)

        acc = parallel_reduce(
            range(self.particle_count), work, self.param_count, self.num_threads,
            executor=self._executor,
        )

        cost, grad = acc.cost, acc.gradient

        if self.motion_active:
            prior_cost, prior_grad = self.motion_model.prior_cost_and_gradient(
                self.layout.motion_coefficients(x)
            )
            cost += prior_cost
            self.layout.motion_coefficients(grad)[...] += prior_grad

        return float(cost), grad

    __call__ = evaluate

    def _accumulate_particle(
        self, x: np.ndarray, p: int, frames: FrameProjections, acc: Accumulator
    ) -> None:
        layout = self.layout
        settings = self.settings
        fc = self.frame_count
        pf = self.padding_factor
        P = frames.P

        pos4, pl, coeffs, d_dx, d_dy, grid = self.sample_geometry(x, p, P)

        value, gx, gy = self.volumes[p].value_and_gradient(grid[:, 0], grid[:, 1], np.arange(fc))
        acc.cost -= float(np.sum(value))

        # dC/d(sample position) in image pixels
        g0 = -pf * np.stack([gx, gy], axis=1)
        g = self.deformation_model.transform_image_gradient(g0, d_dx, d_dy)

        if layout.deformation_parameter_count:
            dgrad = self.deformation_model.cost_gradient(pl, g0, coeffs)
            blocks = layout.deformation_blocks(acc.gradient)
            if settings.per_frame_2d_deformation:
                blocks += dgrad
            else:
                blocks[0] += dgrad.sum(axis=0)

        if fc > 1 and layout.frame_stride:
            poses = layout.poses(acc.gradient)
            col = 0
            if not settings.const_angles:
                for deriv in (frames.P_phi, frames.P_theta, frames.P_psi):
                    pl_a = np.einsum("fij,fj->fi", deriv[1:, :2, :], pos4[1:])
                    poses[:, col] += np.sum(pl_a * g[1:], axis=1)
                    col += 1
            if not settings.const_shifts:
                poses[:, col:col + 2] += g[1:]

        if not settings.const_particles:
            # back-projection through the top two rows of P
            dpos = np.einsum("fij,fi->fj", P[:, :2, :3], g)
            layout.positions(acc.gradient)[p] += dpos.sum(axis=0)

            if self.motion_active:
                layout.motion_coefficients(acc.gradient)[...] += (
                    self.motion_model.cost_gradient(dpos, p)
                )

    # --- Diagnostics ---

    def check_gradient(
        self,
        x: np.ndarray,
        eps: float = 1e-6,
        indices: Optional[Sequence[int]] = None,
        rtol: float = 1e-4,
        atol: float = 1e-8,
    ) -> GradientCheckReport:
        """Compare the analytic gradient with centred finite differences."""
        x = self.layout.check(x).copy()
        _, analytic = self.evaluate(x)
        idx = list(range(self.param_count)) if indices is None else [int(i) for i in indices]

        numeric = np.empty(len(idx))
        for k, i in enumerate(idx):
            orig = x[i]
            x[i] = orig + eps
            c_plus, _ = self.evaluate(x)
            x[i] = orig - eps
            c_minus, _ = self.evaluate(x)
            x[i] = orig
            numeric[k] = (c_plus - c_minus) / (2.0 * eps)

        a = analytic[idx]
        err = np.abs(a - numeric) / np.maximum(np.abs(numeric), atol / rtol)
        max_err = float(err.max()) if len(err) else 0.0
        return GradientCheckReport(
            passed=max_err <= rtol,
            indices=idx,
            analytic=a,
            numeric=numeric,
            max_relative_error=max_err,
            tolerance=rtol,
        )

    def report(self, iteration: int, cost: float) -> None:
        """Progress hook for the optimizer driver."""
        if iteration > 0:
            decade = 10 ** int(math.log10(iteration))
            if decade == 1 or iteration % decade == 0:
                logger.info("iteration %d: cost %.10g", iteration, cost)
        logger.debug("iteration %d: cost %.10g", iteration, cost)
        self.last_iteration = iteration

    # --- Worker pool ---

    def close(self) -> None:
        """Shut down the particle-loop worker pool; later evaluations run inline."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
            self.num_threads = 1

    def __enter__(self) -> "ModularAlignment":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
