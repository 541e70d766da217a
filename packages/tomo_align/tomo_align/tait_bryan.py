"""Tait-Bryan rotations (pure, stateless).

Functions
---------
angles_to_matrix                  R = Rx(phi) @ Ry(theta) @ Rz(psi)
angles_to_matrix_and_derivatives  R plus dR/dphi, dR/dtheta, dR/dpsi
"""

from __future__ import annotations

from typing import Tuple

import numpy as np


def _rx(a: float) -> Tuple[np.ndarray, np.ndarray]:
    c, s = np.cos(a), np.sin(a)
    r = np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])
    dr = np.array([[0.0, 0.0, 0.0], [0.0, -s, -c], [0.0, c, -s]])
    return r, dr


def _ry(a: float) -> Tuple[np.ndarray, np.ndarray]:
    c, s = np.cos(a), np.sin(a)
    r = np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])
    dr = np.array([[-s, 0.0, c], [0.0, 0.0, 0.0], [-c, 0.0, -s]])
    return r, dr


def _rz(a: float) -> Tuple[np.ndarray, np.ndarray]:
    c, s = np.cos(a), np.sin(a)
    r = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
    dr = np.array([[-s, -c, 0.0], [c, -s, 0.0], [0.0, 0.0, 0.0]])
    return r, dr


def angles_to_matrix(phi: float, theta: float, psi: float) -> np.ndarray:
    """3x3 rotation for angles in radians."""
    return _rx(phi)[0] @ _ry(theta)[0] @ _rz(psi)[0]


def angles_to_matrix_and_derivatives(
    phi: float, theta: float, psi: float
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Rotation and its partial derivatives with respect to each angle.

    Returns
    -------
    (R, R_phi, R_theta, R_psi), each of shape (3, 3).
    """
    x, dx = _rx(phi)
    y, dy = _ry(theta)
    z, dz = _rz(psi)
    return x @ y @ z, dx @ y @ z, x @ dy @ z, x @ y @ dz
