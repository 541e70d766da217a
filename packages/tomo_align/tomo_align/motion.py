"""tomo_align.motion
===================

Particle motion models: per-transition coefficients -> 3D position drift.

A particle's shift at frame ``f`` is the ordered fold of ``update_position``
over transitions ``0 .. f-1`` starting from zero, so frame 0 never moves.

Models
------
NoMotionModel      No parameters, particles stay put
LinearMotionModel  Affine velocity field over particle positions
GPMotionModel      Gaussian-process velocity field, eigen-basis over particles
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Dict, Tuple, Type

import numpy as np
from scipy import linalg

from tomo_align.config import MotionModelSpec
from tomo_align.errors import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# MotionModel ABC
# ---------------------------------------------------------------------------


class MotionModel(ABC):
    """Maps per-transition coefficients to incremental particle shifts.

    Implementations are pure: the same coefficients always give the same
    shifts and nothing is cached between calls.
    """

    @property
    @abstractmethod
    def parameter_count(self) -> int:
        """Coefficients per frame-to-frame transition."""
        ...

    @abstractmethod
    def update_position(
        self, coefficients: np.ndarray, particle: int, shift: np.ndarray
    ) -> np.ndarray:
        """Shift after one more transition; ``shift`` is not modified."""
        ...

    @abstractmethod
    def cost_gradient(self, position_gradients: np.ndarray, particle: int) -> np.ndarray:
        """Map per-frame position gradients (fc, 3) to coefficients (fc-1, mpc)."""
        ...

    @abstractmethod
    def prior_cost_and_gradient(self, coefficients: np.ndarray) -> Tuple[float, np.ndarray]:
        """Regularisation over all coefficients, shape (fc-1, mpc)."""
        ...

    def trajectory(self, coefficients: np.ndarray, particle: int) -> np.ndarray:
        """Shift of ``particle`` in every frame, shape (fc, 3)."""
        steps = itertools.accumulate(
            coefficients,
            lambda shift, c: self.update_position(c, particle, shift),
            initial=np.zeros(3),
        )
        return np.array(list(steps)).reshape(len(coefficients) + 1, 3)


class NoMotionModel(MotionModel):
    @property
    def parameter_count(self) -> int:
        return 0

    def update_position(self, coefficients, particle, shift):
        return np.array(shift, dtype=np.float64)

    def cost_gradient(self, position_gradients, particle):
        return np.zeros((max(len(position_gradients) - 1, 0), 0))

    def prior_cost_and_gradient(self, coefficients):
        return 0.0, np.zeros_like(coefficients, dtype=np.float64)

    @classmethod
    def from_positions(cls, positions: np.ndarray, pixel_size: float = 1.0) -> "NoMotionModel":
        return cls()


class BasisMotionModel(MotionModel):
    """Velocities as per-particle weighted sums of 3D basis coefficients.

    Each transition carries ``nb`` coefficient triples ``c[b]``; particle ``p``
    moves by ``sum_b weights[p, b] * c[b]``. The prior is
    ``prior_weight * sum(c**2)``.
    """

    def __init__(self, weights: np.ndarray, prior_weight: float = 1.0):
        w = np.asarray(weights, dtype=np.float64)
        if w.ndim != 2:
            raise ConfigurationError(f"Basis weights must be 2D (pc, nb), got {w.shape}")
        if prior_weight < 0.0:
            raise ConfigurationError(f"prior_weight must be >= 0, got {prior_weight}")
        w.setflags(write=False)
        self.weights = w
        self.prior_weight = float(prior_weight)

    @property
    def basis_count(self) -> int:
        return self.weights.shape[1]

    @property
    def parameter_count(self) -> int:
        return 3 * self.basis_count

    def update_position(self, coefficients, particle, shift):
        c = np.asarray(coefficients, dtype=np.float64).reshape(self.basis_count, 3)
        return shift + self.weights[particle] @ c

    def trajectory(self, coefficients, particle):
        c = np.asarray(coefficients, dtype=np.float64).reshape(-1, self.basis_count, 3)
        steps = np.einsum("b,tbk->tk", self.weights[particle], c)
        out = np.zeros((len(c) + 1, 3))
        np.cumsum(steps, axis=0, out=out[1:])
        return out

    def cost_gradient(self, position_gradients, particle):
        g = np.asarray(position_gradients, dtype=np.float64)
        # transition t moves every frame after it
        tail = np.cumsum(g[::-1], axis=0)[::-1][1:]
        grad = np.einsum("b,tk->tbk", self.weights[particle], tail)
        return grad.reshape(len(tail), self.parameter_count)

    def prior_cost_and_gradient(self, coefficients):
        c = np.asarray(coefficients, dtype=np.float64)
        return self.prior_weight * float(np.sum(c * c)), 2.0 * self.prior_weight * c


class LinearMotionModel(BasisMotionModel):
    """Affine velocity field ``v(p) = v0 + A @ (p - centre) / scale``.

    Parameters
    ----------
    positions : ndarray, shape (pc, 3)
        Particle positions in pixels.
    regularisation : float
        Ridge weight on all coefficients.
    """

    @classmethod
    def from_positions(
        cls,
        positions: np.ndarray,
        pixel_size: float = 1.0,
        regularisation: float = 1e-3,
    ) -> "LinearMotionModel":
        pos = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        if len(pos) == 0:
            return cls(np.zeros((0, 4)), regularisation)
        centre = pos.mean(axis=0)
        scale = float(np.max(np.abs(pos - centre))) or 1.0
        weights = np.hstack([np.ones((len(pos), 1)), (pos - centre) / scale])
        return cls(weights, prior_weight=regularisation)


class GPMotionModel(BasisMotionModel):
    """Gaussian-process motion: spatially correlated particle velocities.

    The velocity covariance between particles ``i`` and ``j`` is
    ``sigma_velocity**2 * k(d_ij / sigma_divergence)`` with
    ``k(r) = exp(-r)`` or ``exp(-r**2)``. Its eigenvectors, scaled by the
    square root of their eigenvalues, form the basis, so unit-normal
    coefficients reproduce the GP and the prior is ``sum(c**2)``.

    Parameters
    ----------
    positions : ndarray, shape (pc, 3)
        Particle positions in pixels.
    pixel_size : float
        Angstrom per pixel.
    sigma_velocity : float
        Velocity standard deviation, Angstrom per frame.
    sigma_divergence : float
        Correlation length, Angstrom.
    max_basis : int, optional
        Keep at most this many basis vectors (largest eigenvalues first).
    sq_exp_kernel : bool
        Use the squared-exponential kernel instead of the exponential one.
    """

    @classmethod
    def from_positions(
        cls,
        positions: np.ndarray,
        pixel_size: float = 1.0,
        sigma_velocity: float = 1.0,
        sigma_divergence: float = 500.0,
        max_basis: int = -1,
        sq_exp_kernel: bool = False,
        min_eigenvalue: float = 1e-10,
    ) -> "GPMotionModel":
        if sigma_velocity <= 0.0 or sigma_divergence <= 0.0:
            raise ConfigurationError("sigma_velocity and sigma_divergence must be positive")

        pos = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        if len(pos) == 0:
            return cls(np.zeros((0, 0)))

        sig_vel_px = sigma_velocity / pixel_size
        sig_div_px = sigma_divergence / pixel_size

        d = np.linalg.norm(pos[:, None, :] - pos[None, :, :], axis=-1) / sig_div_px
        kernel = np.exp(-d * d) if sq_exp_kernel else np.exp(-d)
        cov = sig_vel_px * sig_vel_px * kernel

        eigvals, eigvecs = linalg.eigh(cov)
        order = np.argsort(eigvals)[::-1]
        eigvals, eigvecs = eigvals[order], eigvecs[:, order]

        keep = eigvals > min_eigenvalue * max(eigvals[0], 0.0)
        if max_basis > 0:
            keep[max_basis:] = False

        basis = eigvecs[:, keep] * np.sqrt(eigvals[keep])
        logger.debug(
            "GP motion basis: %d of %d eigenvectors kept", basis.shape[1], len(eigvals)
        )
        return cls(basis)


# ---------------------------------------------------------------------------
# Registry + builder
# ---------------------------------------------------------------------------

MOTION_MODEL_REGISTRY: Dict[str, Type[MotionModel]] = {
    "none": NoMotionModel,
    "linear": LinearMotionModel,
    "gp": GPMotionModel,
}


def build_motion_model(
    spec: MotionModelSpec, positions: np.ndarray, pixel_size: float = 1.0
) -> MotionModel:
    """Construct a motion model for the given particle positions.

    Raises
    ------
    ConfigurationError
        If ``spec.kind`` is not in MOTION_MODEL_REGISTRY or its params are invalid.
    """
    if spec.kind not in MOTION_MODEL_REGISTRY:
        raise ConfigurationError(
            f"Unknown motion model kind '{spec.kind}'. "
            f"Available: {sorted(MOTION_MODEL_REGISTRY.keys())}"
        )
    cls = MOTION_MODEL_REGISTRY[spec.kind]
    try:
        return cls.from_positions(positions, pixel_size, **spec.params)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid params for motion model '{spec.kind}': {exc}") from exc
