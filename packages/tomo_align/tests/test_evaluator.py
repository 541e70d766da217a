"""Tests for the ModularAlignment cost/gradient oracle.

Covers
------
* analytic gradient vs centred finite differences, across settings and models
* non-finite guard
* thread-count invariance
* the x = 0 reference scenario
"""

from __future__ import annotations

import numpy as np
import pytest

import tomo_align.evaluator as evaluator_module
from tomo_align.errors import ConfigurationError, ParameterLengthError
from tomo_align.evaluator import SENTINEL_COST, ModularAlignment

from conftest import GRID, IMAGE_SIZE, random_parameters

SPLINE = {"kind": "spline", "params": {"image_size": list(IMAGE_SIZE), "grid_size": [3, 3]}}
LINEAR_DEF = {"kind": "linear", "params": {"image_size": list(IMAGE_SIZE)}}
GP = {"kind": "gp", "params": {"sigma_velocity": 0.5, "sigma_divergence": 60.0}}
LINEAR_MOTION = {"kind": "linear", "params": {"regularisation": 0.1}}

CASES = {
    "poses_only": dict(settings={"const_particles": True}),
    "all_free_no_models": dict(),
    "const_angles": dict(settings={"const_angles": True}, motion=LINEAR_MOTION),
    "const_shifts": dict(settings={"const_shifts": True}, deformation=LINEAR_DEF),
    "gp_spline_shared": dict(motion=GP, deformation=SPLINE),
    "gp_spline_per_frame": dict(
        settings={"per_frame_2d_deformation": True}, motion=GP, deformation=SPLINE
    ),
    "linear_motion_linear_def": dict(motion=LINEAR_MOTION, deformation=LINEAR_DEF),
}


def _finite_difference(problem: ModularAlignment, x: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    out = np.empty_like(x)
    for i in range(len(x)):
        up, down = x.copy(), x.copy()
        up[i] += eps
        down[i] -= eps
        out[i] = (problem.evaluate(up)[0] - problem.evaluate(down)[0]) / (2 * eps)
    return out


class TestGradient:
    @pytest.mark.parametrize("case", sorted(CASES), ids=sorted(CASES))
    def test_matches_finite_differences(self, make_problem, case):
        problem = make_problem(frame_count=4, particle_count=3, **CASES[case])
        x = random_parameters(problem, seed=7)
        _, grad = problem.evaluate(x)
        numeric = _finite_difference(problem, x)
        np.testing.assert_allclose(grad, numeric, rtol=1e-4, atol=1e-6)

    def test_check_gradient_report(self, make_problem):
        problem = make_problem(motion=GP, deformation=SPLINE)
        x = random_parameters(problem)
        report = problem.check_gradient(x, indices=range(0, problem.param_count, 3))
        assert report.passed, report.summary()
        assert "PASS" in report.summary()

    def test_const_particles_leaves_position_and_motion_blocks_zero(self, make_problem):
        problem = make_problem(settings={"const_particles": True}, motion=GP)
        x = random_parameters(problem)
        _, grad = problem.evaluate(x)
        layout = problem.layout
        np.testing.assert_array_equal(layout.positions(grad), 0.0)
        np.testing.assert_array_equal(layout.motion_coefficients(grad), 0.0)
        assert np.any(layout.poses(grad) != 0.0)


class TestNonFiniteGuard:
    @pytest.mark.parametrize("where", [0, 0.5, -1])
    @pytest.mark.parametrize("bad", [np.nan, np.inf, -np.inf])
    def test_returns_sentinel(self, make_problem, where, bad):
        problem = make_problem(motion=GP, deformation=SPLINE)
        x = random_parameters(problem)
        i = int(where * len(x)) if isinstance(where, float) else where
        x[i] = bad
        cost, grad = problem.evaluate(x)
        assert cost == SENTINEL_COST
        np.testing.assert_array_equal(grad, np.zeros_like(x))

    def test_wrong_length_fails_fast(self, make_problem):
        problem = make_problem()
        with pytest.raises(ParameterLengthError):
            problem.evaluate(np.zeros(problem.param_count - 1))
        # length is checked before the non-finite guard
        with pytest.raises(ParameterLengthError):
            problem.evaluate(np.full(problem.param_count + 2, np.nan))


class TestThreads:
    def test_thread_count_invariance(self, make_problem):
        kwargs = dict(frame_count=5, particle_count=7, motion=GP, deformation=SPLINE, seed=3)
        single = make_problem(num_threads=1, **kwargs)
        multi = make_problem(num_threads=4, **kwargs)
        x = random_parameters(single, seed=2)

        c1, g1 = single.evaluate(x)
        c4, g4 = multi.evaluate(x)

        assert c4 == pytest.approx(c1, rel=1e-9)
        np.testing.assert_allclose(g4, g1, rtol=1e-6, atol=1e-12)

    def test_more_threads_than_particles(self, make_problem):
        problem = make_problem(particle_count=2, num_threads=8)
        cost, grad = problem.evaluate(random_parameters(problem))
        assert np.isfinite(cost)
        assert grad.shape == (problem.param_count,)


class TestReferenceScenario:
    def test_zero_parameters_sample_unmodified_positions(self, make_problem):
        problem = make_problem(frame_count=3, particle_count=2)
        assert problem.param_count == 16

        cost, grad = problem.evaluate(np.zeros(16))

        centre = np.full(3, GRID / 2.0)
        expected = -sum(
            float(np.sum(v.value_and_gradient(centre, centre, np.arange(3))[0]))
            for v in problem.volumes
        )
        assert cost == pytest.approx(expected, rel=1e-10)
        assert grad.shape == (16,)
        assert np.any(problem.layout.poses(grad) != 0.0)

    def test_const_particles_has_no_position_contribution(self, make_problem):
        problem = make_problem(frame_count=3, particle_count=2, settings={"const_particles": True})
        assert problem.param_count == 16
        _, grad = problem.evaluate(np.zeros(16))
        np.testing.assert_array_equal(grad[10:], 0.0)
        assert np.all(np.isfinite(grad[:10]))

    def test_single_frame_has_no_pose_block(self, make_problem):
        problem = make_problem(frame_count=1, particle_count=2)
        assert problem.param_count == 6
        cost, grad = problem.evaluate(np.zeros(6))
        assert np.isfinite(cost)


class TestConstruction:
    def test_volume_count_mismatch(self, make_problem):
        problem = make_problem()
        with pytest.raises(ConfigurationError):
            ModularAlignment(
                problem.volumes[:-1],
                problem.projections.initial,
                problem.initial_positions,
                problem.motion_model,
                problem.deformation_model,
                problem.settings,
                tomogram_centre=(60.0, 50.0, 20.0),
                padding_factor=2.0,
            )

    @staticmethod
    def _rebuild(problem, volumes):
        return ModularAlignment(
            volumes,
            problem.projections.initial,
            problem.initial_positions,
            problem.motion_model,
            problem.deformation_model,
            problem.settings,
            tomogram_centre=(60.0, 50.0, 20.0),
            padding_factor=2.0,
        )

    def test_rejects_non_square_grid(self, make_problem):
        problem = make_problem(frame_count=3, particle_count=1)
        with pytest.raises(ConfigurationError, match="square"):
            self._rebuild(problem, [np.zeros((3, GRID, GRID + 16))])

    def test_rejects_mixed_grid_sizes(self, make_problem):
        problem = make_problem(frame_count=3, particle_count=2)
        volumes = [np.zeros((3, GRID, GRID)), np.zeros((3, GRID + 16, GRID + 16))]
        with pytest.raises(ConfigurationError, match="square"):
            self._rebuild(problem, volumes)

    def test_worker_pool_is_reused(self, make_problem, monkeypatch):
        created = []
        real_pool = evaluator_module.ThreadPoolExecutor

        def counting_pool(*args, **kwargs):
            created.append(kwargs.get("max_workers"))
            return real_pool(*args, **kwargs)

        monkeypatch.setattr(evaluator_module, "ThreadPoolExecutor", counting_pool)
        with make_problem(particle_count=5, num_threads=3) as problem:
            x = random_parameters(problem)
            first = problem.evaluate(x)
            second = problem.evaluate(x)
        assert created == [3]
        assert first[0] == second[0]
        np.testing.assert_array_equal(first[1], second[1])

    def test_close_falls_back_to_inline(self, make_problem):
        problem = make_problem(particle_count=4, num_threads=2)
        x = random_parameters(problem)
        before = problem.evaluate(x)
        problem.close()
        after = problem.evaluate(x)
        assert after[0] == pytest.approx(before[0], rel=1e-12)
        np.testing.assert_allclose(after[1], before[1], rtol=1e-9, atol=1e-12)

    def test_report_tracks_iteration(self, make_problem, caplog):
        problem = make_problem()
        with caplog.at_level("INFO", logger="tomo_align.evaluator"):
            problem.report(20, -3.5)
            problem.report(25, -3.6)
        assert problem.last_iteration == 25
        messages = [
            r.getMessage() for r in caplog.records
            if r.levelname == "INFO" and r.getMessage().startswith("iteration")
        ]
        assert messages == ["iteration 20: cost -3.5"]
