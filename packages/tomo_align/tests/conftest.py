"""Shared pytest fixtures for tomo_align tests.

The synthetic tilt series tilts a 120 x 100 x 40 tomogram about the y axis.
Every particle's correlation stack holds one Gaussian peak per frame, placed
slightly off the grid centre so gradients at ``x = 0`` are non-zero.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import numpy as np
import pytest

from tomo_align.config import (
    AlignmentConfig,
    AlignmentSettings,
    DeformationModelSpec,
    MotionModelSpec,
)
from tomo_align.evaluator import ModularAlignment

TOMO_SIZE = (120.0, 100.0, 40.0)
TOMO_CENTRE = np.array(TOMO_SIZE) / 2.0
IMAGE_SIZE = (120.0, 100.0)
GRID = 32
PADDING = 2.0


def tilt_projection(angle_deg: float) -> np.ndarray:
    """Projection of a y-axis tilt, centred on the tomogram and the image."""
    a = np.deg2rad(angle_deg)
    c, s = np.cos(a), np.sin(a)
    rot = np.eye(4)
    rot[:3, :3] = [[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]]
    minus = np.eye(4)
    minus[:3, 3] = -TOMO_CENTRE
    plus = np.eye(4)
    plus[:3, 3] = TOMO_CENTRE
    return plus @ rot @ minus


def tilt_series(frame_count: int) -> np.ndarray:
    # dose-symmetric order: 0, +3, -3, +6, -6, ...
    angles = [0.0] + [3.0 * ((k + 1) // 2) * (1 if k % 2 == 0 else -1) for k in range(frame_count - 1)]
    return np.stack([tilt_projection(a) for a in angles])


def correlation_stack(rng: np.random.Generator, frame_count: int) -> np.ndarray:
    iy, ix = np.mgrid[0:GRID, 0:GRID].astype(np.float64)
    centre = GRID / 2.0
    stack = np.empty((frame_count, GRID, GRID))
    for f in range(frame_count):
        cx, cy = centre + rng.uniform(-2.0, 2.0, size=2)
        stack[f] = np.exp(-((ix - cx) ** 2 + (iy - cy) ** 2) / (2.0 * 3.0 ** 2))
    return stack


def _build(
    frame_count: int = 4,
    particle_count: int = 3,
    settings: Optional[Dict[str, bool]] = None,
    motion: Optional[Dict[str, Any]] = None,
    deformation: Optional[Dict[str, Any]] = None,
    num_threads: int = 1,
    seed: int = 0,
) -> ModularAlignment:
    rng = np.random.default_rng(seed)
    positions = rng.uniform([20.0, 20.0, 10.0], [100.0, 80.0, 30.0], size=(particle_count, 3))
    volumes = [correlation_stack(rng, frame_count) for _ in range(particle_count)]
    config = AlignmentConfig(
        settings=AlignmentSettings(**(settings or {})),
        motion=MotionModelSpec(**(motion or {})),
        deformation=DeformationModelSpec(**(deformation or {})),
        padding_factor=PADDING,
        pixel_size=1.5,
        num_threads=num_threads,
    )
    return ModularAlignment.from_config(
        config, volumes, tilt_series(frame_count), positions, TOMO_CENTRE
    )


@pytest.fixture
def make_problem():
    """Factory for synthetic alignment problems."""
    return _build


def random_parameters(problem: ModularAlignment, seed: int = 1) -> np.ndarray:
    """Small random parameter vector that keeps every sample inside the grid."""
    rng = np.random.default_rng(seed)
    layout = problem.layout
    poses = np.zeros((layout.frame_count - 1, layout.frame_stride))
    col = 0
    if not layout.settings.const_angles:
        poses[:, :3] = rng.normal(0.0, 0.004, size=(layout.frame_count - 1, 3))
        col = 3
    if not layout.settings.const_shifts:
        poses[:, col:col + 2] = rng.normal(0.0, 0.3, size=(layout.frame_count - 1, 2))
    return layout.pack(
        poses=poses,
        positions=rng.normal(0.0, 0.3, size=(layout.particle_count, 3)),
        motion=rng.normal(0.0, 0.05, size=(layout.frame_count - 1, layout.motion_parameter_count)),
        deformation=rng.normal(
            0.0, 0.1, size=(layout.deformation_block_count, layout.deformation_parameter_count)
        ),
    )


@pytest.fixture
def random_x():
    return random_parameters
