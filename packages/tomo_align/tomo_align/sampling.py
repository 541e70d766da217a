"""Smooth sampling of per-particle cross-correlation stacks.

Each frame of a stack is converted once to cubic B-spline coefficients
(``scipy.ndimage.spline_filter``, mirror boundaries), after which value and
analytic x/y gradient are evaluated directly from the 4x4 coefficient
neighbourhood. The cubic B-spline is twice continuously differentiable, so
the gradient returned here is the exact derivative of the value.

Boundary policy: sample coordinates are clamped to ``[0, n - 1]`` along each
axis. A clamped axis contributes a zero derivative.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy import ndimage

from tomo_align.errors import ConfigurationError


def _bspline_weights(t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Cubic B-spline weights and derivatives for offsets -1, 0, 1, 2.

    ``t`` is the fractional position in [0, 1); returns two (n, 4) arrays.
    """
    t2 = t * t
    t3 = t2 * t
    s = 1.0 - t
    w = np.stack(
        [
            s * s * s / 6.0,
            (3.0 * t3 - 6.0 * t2 + 4.0) / 6.0,
            (-3.0 * t3 + 3.0 * t2 + 3.0 * t + 1.0) / 6.0,
            t3 / 6.0,
        ],
        axis=-1,
    )
    dw = np.stack(
        [
            -0.5 * s * s,
            1.5 * t2 - 2.0 * t,
            -1.5 * t2 + t + 0.5,
            0.5 * t2,
        ],
        axis=-1,
    )
    return w, dw


def _mirror(idx: np.ndarray, n: int) -> np.ndarray:
    """Whole-sample symmetric index folding (``d c b | a b c d | c b a``)."""
    if n == 1:
        return np.zeros_like(idx)
    period = 2 * (n - 1)
    idx = np.abs(idx) % period
    return np.where(idx >= n, period - idx, idx)


def _axis_setup(
    coord: np.ndarray, n: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    clamped = np.clip(coord, 0.0, n - 1.0)
    inside = (coord >= 0.0) & (coord <= n - 1.0)
    base = np.floor(clamped)
    w, dw = _bspline_weights(clamped - base)
    dw = dw * inside[:, None]
    idx = _mirror(base.astype(np.int64)[:, None] + np.arange(-1, 3), n)
    return idx, w, dw


class CorrelationVolume:
    """Read-only cross-correlation stack of one particle.

    Parameters
    ----------
    data : ndarray, shape (fc, ny, nx)
        One 2D correlation map per frame, on the oversampled pixel grid.
    """

    def __init__(self, data: np.ndarray):
        arr = np.asarray(data, dtype=np.float64)
        if arr.ndim != 3:
            raise ConfigurationError(f"Expected (fc, ny, nx) correlation stack, got {arr.ndim}D")
        self.shape = arr.shape
        coeffs = np.empty_like(arr)
        for f in range(arr.shape[0]):
            coeffs[f] = ndimage.spline_filter(arr[f], order=3, mode="mirror")
        coeffs.setflags(write=False)
        self._coeffs = coeffs

    @property
    def frame_count(self) -> int:
        return self.shape[0]

    @property
    def extent(self) -> int:
        """Grid size along x."""
        return self.shape[2]

    def value_and_gradient(
        self,
        px: np.ndarray,
        py: np.ndarray,
        frames: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Interpolated value and d/dx, d/dy at ``(px[i], py[i])`` in ``frames[i]``.

        Returns
        -------
        value, grad_x, grad_y : ndarray, shape (n,)
        """
        px = np.atleast_1d(np.asarray(px, dtype=np.float64))
        py = np.atleast_1d(np.asarray(py, dtype=np.float64))
        frames = np.atleast_1d(np.asarray(frames, dtype=np.int64))
        _, ny, nx = self.shape

        ix, wx, dwx = _axis_setup(px, nx)
        iy, wy, dwy = _axis_setup(py, ny)

        # (n, 4, 4) neighbourhood indexed [sample, row, column]
        c = self._coeffs[frames[:, None, None], iy[:, :, None], ix[:, None, :]]

        value = np.einsum("ni,nij,nj->n", wy, c, wx)
        grad_x = np.einsum("ni,nij,nj->n", wy, c, dwx)
        grad_y = np.einsum("ni,nij,nj->n", dwy, c, wx)
        return value, grad_x, grad_y
