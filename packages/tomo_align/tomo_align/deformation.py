"""tomo_align.deformation
========================

Smooth 2D image-plane deformations, evaluated at batches of points.

All methods take ``points`` of shape (n, 2) in image pixels and one row of
coefficients per point, ``coefficients`` of shape (n, dc), so shared and
per-frame coefficient sets go through the same code.

Models
------
NoDeformation2D      Zero parameters, identity warp
LinearDeformation2D  2x2 matrix over normalised image coordinates
SplineDeformation2D  Cubic B-spline control grid spanning the image
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Sequence, Tuple, Type

import numpy as np

from tomo_align.config import DeformationModelSpec
from tomo_align.errors import ConfigurationError


# ---------------------------------------------------------------------------
# DeformationModel2D ABC
# ---------------------------------------------------------------------------


class DeformationModel2D(ABC):
    """Maps an image position plus coefficients to a local 2D shift."""

    @property
    @abstractmethod
    def parameter_count(self) -> int:
        ...

    @abstractmethod
    def shift_and_gradient(
        self, points: np.ndarray, coefficients: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Shift ``d`` at each point and its spatial partials ``d_dx``, ``d_dy``.

        Returns three (n, 2) arrays.
        """
        ...

    @abstractmethod
    def cost_gradient(
        self, points: np.ndarray, image_gradient: np.ndarray, coefficients: np.ndarray
    ) -> np.ndarray:
        """Per-point coefficient gradient (n, dc) given dC/d(shift) (n, 2)."""
        ...

    def transform_image_gradient(
        self, gradient: np.ndarray, d_dx: np.ndarray, d_dy: np.ndarray
    ) -> np.ndarray:
        """Pull an image-plane gradient back through ``I + J``.

        The sampled position is ``p + d(p)``, so the gradient with respect to
        ``p`` is ``(I + J)^T g`` with ``J = [d_dx | d_dy]``.
        """
        g = np.asarray(gradient, dtype=np.float64)
        out = g.copy()
        out[:, 0] += np.sum(g * d_dx, axis=1)
        out[:, 1] += np.sum(g * d_dy, axis=1)
        return out

    def coefficient_grid(self, coefficients: np.ndarray) -> np.ndarray:
        """One coefficient set in the model's natural layout."""
        return np.asarray(coefficients, dtype=np.float64).copy()


class NoDeformation2D(DeformationModel2D):
    @property
    def parameter_count(self) -> int:
        return 0

    def shift_and_gradient(self, points, coefficients):
        z = np.zeros((len(points), 2))
        return z, z.copy(), z.copy()

    def cost_gradient(self, points, image_gradient, coefficients):
        return np.zeros((len(points), 0))


class LinearDeformation2D(DeformationModel2D):
    """``d(p) = A @ (p - centre) / scale`` with ``A = [[a0, a1], [a2, a3]]``.

    ``centre`` is the image centre and ``scale`` half the larger image side.
    """

    def __init__(self, image_size: Sequence[float]):
        w, h = (float(v) for v in image_size)
        if w <= 0 or h <= 0:
            raise ConfigurationError(f"image_size must be positive, got {image_size}")
        self.image_size = (w, h)
        self.centre = np.array([w / 2.0, h / 2.0])
        self.scale = max(w, h) / 2.0

    @property
    def parameter_count(self) -> int:
        return 4

    def _normalised(self, points: np.ndarray) -> np.ndarray:
        return (np.asarray(points, dtype=np.float64) - self.centre) / self.scale

    def shift_and_gradient(self, points, coefficients):
        u = self._normalised(points)
        A = np.asarray(coefficients, dtype=np.float64).reshape(-1, 2, 2)
        shift = np.einsum("nij,nj->ni", A, u)
        return shift, A[:, :, 0] / self.scale, A[:, :, 1] / self.scale

    def cost_gradient(self, points, image_gradient, coefficients):
        u = self._normalised(points)
        g = np.asarray(image_gradient, dtype=np.float64)
        return np.einsum("ni,nj->nij", g, u).reshape(len(u), 4)

    def coefficient_grid(self, coefficients):
        return np.asarray(coefficients, dtype=np.float64).reshape(2, 2).copy()


def _cubic_bspline(t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Centred cubic B-spline and its derivative."""
    a = np.abs(t)
    inner = a < 1.0
    outer = (a >= 1.0) & (a < 2.0)
    b = np.where(inner, 2.0 / 3.0 - a * a + 0.5 * a * a * a, 0.0)
    b = np.where(outer, (2.0 - a) ** 3 / 6.0, b)
    db = np.where(inner, -2.0 * t + 1.5 * t * a, 0.0)
    db = np.where(outer, -0.5 * np.sign(t) * (2.0 - a) ** 2, db)
    return b, db


class SplineDeformation2D(DeformationModel2D):
    """Cubic B-spline deformation with a regular control grid.

    Parameters
    ----------
    image_size : (w, h)
        Image extent in pixels; control nodes span ``[0, w] x [0, h]``.
    grid_size : (gx, gy)
        Number of control nodes along x and y, each >= 2.

    Coefficients are stored node by node, row-major over (gy, gx), each node
    holding its (x, y) shift: ``dc = 2 * gx * gy``.
    """

    def __init__(self, image_size: Sequence[float], grid_size: Sequence[int] = (4, 4)):
        w, h = (float(v) for v in image_size)
        gx, gy = (int(v) for v in grid_size)
        if w <= 0 or h <= 0:
            raise ConfigurationError(f"image_size must be positive, got {image_size}")
        if gx < 2 or gy < 2:
            raise ConfigurationError(f"grid_size must be at least (2, 2), got {grid_size}")
        self.image_size = (w, h)
        self.grid_size = (gx, gy)
        self.spacing = np.array([w / (gx - 1), h / (gy - 1)])

    @property
    def parameter_count(self) -> int:
        return 2 * self.grid_size[0] * self.grid_size[1]

    def _basis(self, points: np.ndarray) -> Tuple[np.ndarray, ...]:
        p = np.asarray(points, dtype=np.float64) / self.spacing
        gx, gy = self.grid_size
        bx, dbx = _cubic_bspline(p[:, 0:1] - np.arange(gx))
        by, dby = _cubic_bspline(p[:, 1:2] - np.arange(gy))
        return bx, dbx / self.spacing[0], by, dby / self.spacing[1]

    def _nodes(self, coefficients: np.ndarray) -> np.ndarray:
        gx, gy = self.grid_size
        return np.asarray(coefficients, dtype=np.float64).reshape(-1, gy, gx, 2)

    def shift_and_gradient(self, points, coefficients):
        bx, dbx, by, dby = self._basis(points)
        c = self._nodes(coefficients)
        shift = np.einsum("ny,nx,nyxk->nk", by, bx, c)
        d_dx = np.einsum("ny,nx,nyxk->nk", by, dbx, c)
        d_dy = np.einsum("ny,nx,nyxk->nk", dby, bx, c)
        return shift, d_dx, d_dy

    def cost_gradient(self, points, image_gradient, coefficients):
        bx, _, by, _ = self._basis(points)
        g = np.asarray(image_gradient, dtype=np.float64)
        return np.einsum("ny,nx,nk->nyxk", by, bx, g).reshape(len(g), self.parameter_count)

    def coefficient_grid(self, coefficients):
        return self._nodes(coefficients)[0].copy()


# ---------------------------------------------------------------------------
# Registry + builder
# ---------------------------------------------------------------------------

DEFORMATION_MODEL_REGISTRY: Dict[str, Type[DeformationModel2D]] = {
    "none": NoDeformation2D,
    "linear": LinearDeformation2D,
    "spline": SplineDeformation2D,
}


def build_deformation_model(spec: DeformationModelSpec) -> DeformationModel2D:
    """Construct a 2D deformation model from its spec.

    Raises
    ------
    ConfigurationError
        If ``spec.kind`` is not in DEFORMATION_MODEL_REGISTRY or its params are invalid.
    """
    if spec.kind not in DEFORMATION_MODEL_REGISTRY:
        raise ConfigurationError(
            f"Unknown deformation model kind '{spec.kind}'. "
            f"Available: {sorted(DEFORMATION_MODEL_REGISTRY.keys())}"
        )
    cls = DEFORMATION_MODEL_REGISTRY[spec.kind]
    try:
        return cls(**spec.params)
    except TypeError as exc:
        raise ConfigurationError(
            f"Invalid params for deformation model '{spec.kind}': {exc}"
        ) from exc
