"""Tests for ParameterLayout: block sizes, offsets, view params, encode/decode."""

from __future__ import annotations

import itertools

import numpy as np
import pytest

from tomo_align.config import AlignmentSettings
from tomo_align.errors import ConfigurationError, ParameterLengthError
from tomo_align.layout import ParameterLayout, ViewParams

FLAGS = list(itertools.product([False, True], repeat=3))
COUNTS = list(itertools.product([1, 2, 5], [0, 3], [0, 2], [0, 4]))


def _layout(flags, fc, pc, mpc, dc) -> ParameterLayout:
    const_angles, const_shifts, per_frame = flags
    settings = AlignmentSettings(
        const_angles=const_angles,
        const_shifts=const_shifts,
        per_frame_2d_deformation=per_frame,
    )
    return ParameterLayout(settings, fc, pc, mpc, dc)


class TestParamCount:
    @pytest.mark.parametrize("flags", FLAGS)
    @pytest.mark.parametrize("fc,pc,mpc,dc", COUNTS)
    def test_formula(self, flags, fc, pc, mpc, dc):
        layout = _layout(flags, fc, pc, mpc, dc)
        const_angles, const_shifts, per_frame = flags
        fs = (0 if const_angles else 3) + (0 if const_shifts else 2)
        assert layout.frame_stride == fs
        expected = fs * (fc - 1) + 3 * pc + mpc * (fc - 1) + dc * (fc if per_frame else 1)
        assert layout.param_count == expected

    @pytest.mark.parametrize("flags", FLAGS)
    @pytest.mark.parametrize("fc,pc,mpc,dc", COUNTS)
    def test_blocks_are_contiguous_and_cover_vector(self, flags, fc, pc, mpc, dc):
        layout = _layout(flags, fc, pc, mpc, dc)
        x = np.arange(layout.param_count, dtype=np.float64)
        pieces = [
            layout.poses(x).ravel(),
            layout.positions(x).ravel(),
            layout.motion_coefficients(x).ravel(),
            layout.deformation_blocks(x).ravel(),
        ]
        np.testing.assert_array_equal(np.concatenate(pieces), x)

    def test_concrete_scenario(self):
        layout = ParameterLayout(AlignmentSettings(), 3, 2, 0, 0)
        assert layout.param_count == 16
        assert layout.positions_offset == 10
        assert layout.motion_offset == 16
        assert layout.deformation_offset == 16

    def test_const_particles_keeps_position_block(self):
        free = ParameterLayout(AlignmentSettings(), 4, 5, 3, 2)
        fixed = ParameterLayout(AlignmentSettings(const_particles=True), 4, 5, 3, 2)
        assert free.param_count == fixed.param_count

    def test_invalid_counts(self):
        with pytest.raises(ConfigurationError):
            ParameterLayout(AlignmentSettings(), 0, 1)
        with pytest.raises(ConfigurationError):
            ParameterLayout(AlignmentSettings(), 3, -1)


class TestViewParams:
    def test_frame_zero_is_identity(self):
        layout = ParameterLayout(AlignmentSettings(), 3, 1)
        x = np.full(layout.param_count, 7.0)
        assert layout.read_view_params(x, 0) == ViewParams(0.0, 0.0, 0.0, 0.0, 0.0)

    def test_all_free(self):
        layout = ParameterLayout(AlignmentSettings(), 3, 0)
        x = np.arange(1.0, 11.0)
        assert layout.read_view_params(x, 1) == ViewParams(1.0, 2.0, 3.0, 4.0, 5.0)
        assert layout.read_view_params(x, 2) == ViewParams(6.0, 7.0, 8.0, 9.0, 10.0)

    def test_const_angles(self):
        layout = ParameterLayout(AlignmentSettings(const_angles=True), 3, 0)
        x = np.array([1.0, 2.0, 3.0, 4.0])
        assert layout.read_view_params(x, 2) == ViewParams(0.0, 0.0, 0.0, 3.0, 4.0)

    def test_const_shifts(self):
        layout = ParameterLayout(AlignmentSettings(const_shifts=True), 3, 0)
        x = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
        assert layout.read_view_params(x, 1) == ViewParams(1.0, 2.0, 3.0, 0.0, 0.0)


class TestEncodeDecode:
    def test_pack_unpack_agree(self):
        settings = AlignmentSettings(per_frame_2d_deformation=True)
        layout = ParameterLayout(settings, 4, 2, 6, 8)
        rng = np.random.default_rng(3)
        poses = rng.normal(size=(3, 5))
        positions = rng.normal(size=(2, 3))
        motion = rng.normal(size=(3, 6))
        deformation = rng.normal(size=(4, 8))

        x = layout.pack(poses, positions, motion, deformation)
        blocks = layout.unpack(x)

        np.testing.assert_array_equal(blocks.poses, poses)
        np.testing.assert_array_equal(blocks.positions, positions)
        np.testing.assert_array_equal(blocks.motion, motion)
        np.testing.assert_array_equal(blocks.deformation, deformation)
        assert layout.read_view_params(x, 2) == ViewParams(*poses[1])

    def test_shared_deformation_repeats_per_frame(self):
        layout = ParameterLayout(AlignmentSettings(), 3, 0, 0, 4)
        x = layout.pack(deformation=np.array([[1.0, 2.0, 3.0, 4.0]]))
        coeffs = layout.deformation_coefficients(x)
        assert coeffs.shape == (3, 4)
        np.testing.assert_array_equal(coeffs[2], [1.0, 2.0, 3.0, 4.0])

    def test_length_mismatch_fails_fast(self):
        layout = ParameterLayout(AlignmentSettings(), 3, 2)
        with pytest.raises(ParameterLengthError):
            layout.check(np.zeros(layout.param_count + 1))
        with pytest.raises(ValueError):
            layout.unpack(np.zeros(3))
