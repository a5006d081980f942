#!/usr/bin/env python3
"""
Unit tests for the robust least-squares refinement.
"""

import os
import sys
import unittest

import numpy as np

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from infrastructure_calibration.config import OptimizerConfig
from infrastructure_calibration.exceptions import (
    CalibrationCancelledError, OptimizationDivergedError,
)
from infrastructure_calibration.optimizer import (
    ReprojectionProblem, RobustLeastSquares, huber_cost, huber_loss, huber_weights, refine_pose,
)
from infrastructure_calibration.pose import Pose
from infrastructure_calibration.synthetic import default_camera_pose, make_scene


class UphillProblem(ReprojectionProblem):
    """Reprojection problem whose Jacobian has the wrong sign."""

    def jacobian(self, state):
        return -super().jacobian(state)


class TestHuber(unittest.TestCase):
    """Test the robust loss."""

    def test_weights(self):
        np.testing.assert_array_almost_equal(huber_weights(np.array([0.5, 2.0, 8.0]), 2.0),
                                             [1.0, 1.0, 0.25])

    def test_cost_is_continuous_at_delta(self):
        below, above = huber_cost(np.array([2.0 - 1e-9, 2.0 + 1e-9]), 2.0)
        self.assertAlmostEqual(below, above, places=6)
        self.assertAlmostEqual(huber_cost(np.array([6.0]), 2.0)[0], 2.0 * 2.0 * 6.0 - 4.0)

    def test_loss_matches_cost_on_robust_rows_only(self):
        errors = np.array([0.5, -3.0, 8.0, 8.0])
        rho = huber_loss(2.0, robust_rows=3)(errors ** 2)
        self.assertEqual(rho.shape, (3, 4))
        np.testing.assert_allclose(rho[0, :3], huber_cost(np.abs(errors[:3]), 2.0))
        np.testing.assert_allclose(rho[1, :3], huber_weights(np.abs(errors[:3]), 2.0))
        # Prior row stays quadratic
        np.testing.assert_allclose(rho[:, 3], [64.0, 1.0, 0.0])


class TestRefinePose(unittest.TestCase):
    """Test pose refinement on synthetic correspondences."""

    def setUp(self):
        self.scene = make_scene(seed=1)
        self.truth = default_camera_pose(0)
        capture = self.scene.observe(self.truth, 30, seed=4)
        self.observed = capture.observations.keypoints
        self.landmark_ids = capture.landmark_ids
        self.positions = np.array([self.scene.graph.landmark(int(l)).position
                                   for l in self.landmark_ids])
        self.start = self.truth.perturbed([0.02, -0.01, 0.015, 0.1, -0.05, 0.08])

    def _refine(self, start=None, observed=None, **config):
        return refine_pose(self.scene.intrinsics, start or self.start,
                           self.observed if observed is None else observed,
                           self.landmark_ids, self.positions, OptimizerConfig(**config))

    def test_noise_free_converges_to_truth(self):
        result = self._refine()

        self.assertTrue(result.summary.converged)
        self.assertLess(result.summary.iterations, 15)
        self.assertIn(result.summary.termination,
                      ('gradient_tolerance', 'step_tolerance', 'relative_tolerance'))
        self.assertTrue(result.pose.is_close(self.truth, 1e-6, 1e-6))
        self.assertLess(result.errors.max(), 1e-4)
        history = result.summary.cost_history
        self.assertTrue(all(b < a for a, b in zip(history, history[1:])))
        self.assertLess(result.summary.final_cost, result.summary.initial_cost)

    def test_covariance_attached(self):
        rng = np.random.default_rng(0)
        noisy = self.observed + rng.normal(0.0, 0.5, self.observed.shape)
        result = self._refine(observed=noisy)

        covariance = result.pose.covariance
        self.assertEqual(covariance.shape, (6, 6))
        np.testing.assert_array_almost_equal(covariance, covariance.T)
        self.assertTrue(np.all(np.diag(covariance) > 0))

    def test_huber_limits_outlier_influence(self):
        corrupted = self.observed.copy()
        corrupted[0] += [40.0, -35.0]

        robust = self._refine(observed=corrupted)
        plain = self._refine(observed=corrupted, huber_delta_px=1e6)

        self.assertLess(robust.pose.distance_to(self.truth), plain.pose.distance_to(self.truth))
        self.assertGreater(robust.errors[0], 40.0)

    def test_max_iterations(self):
        result = self._refine(max_iterations=1)
        self.assertFalse(result.summary.converged)
        self.assertEqual(result.summary.termination, 'max_iterations')
        self.assertEqual(result.summary.iterations, 1)

    def test_cancelled(self):
        with self.assertRaises(CalibrationCancelledError) as ctx:
            refine_pose(self.scene.intrinsics, self.start, self.observed, self.landmark_ids,
                        self.positions, should_stop=lambda: True, camera_id='cam_7')
        self.assertEqual(ctx.exception.camera_id, 'cam_7')

    def test_points_behind_camera(self):
        behind = self.truth.perturbed([0.0, np.pi, 0.0, 0.0, 0.0, 0.0])
        with self.assertRaises(OptimizationDivergedError) as ctx:
            self._refine(start=behind)
        self.assertEqual(ctx.exception.iteration, 0)

    def test_landmark_refinement(self):
        graph = self.scene.graph
        moved_id = int(self.landmark_ids[3])
        true_position = graph.landmark(moved_id).position
        positions = self.positions.copy()
        positions[3] += [0.1, 0.0, 0.0]

        keyframe_terms = []
        for keyframe_id in graph.landmark(moved_id).observer_ids:
            keyframe = graph.keyframe(keyframe_id)
            index = int(np.flatnonzero(keyframe.landmark_ids == moved_id)[0])
            keyframe_terms.append((keyframe.pose, keyframe.keypoints[index], moved_id))

        result = refine_pose(self.scene.intrinsics, self.start, self.observed, self.landmark_ids,
                             positions, OptimizerConfig(), refined_ids=[moved_id],
                             keyframe_terms=keyframe_terms, keyframe_intrinsics=graph.intrinsics)

        self.assertEqual(list(result.landmark_positions), [moved_id])
        refined = result.landmark_positions[moved_id]
        self.assertLess(np.linalg.norm(refined - true_position), 0.02)
        self.assertLess(result.pose.distance_to(self.truth), 0.01)

    def test_refined_landmark_must_be_observed(self):
        with self.assertRaises(ValueError):
            refine_pose(self.scene.intrinsics, self.start, self.observed, self.landmark_ids,
                        self.positions, refined_ids=[10_000])


class TestDivergence(unittest.TestCase):
    """Test divergence and conditioning checks of the solver."""

    def setUp(self):
        self.scene = make_scene(seed=1)
        self.truth = default_camera_pose(0)
        capture = self.scene.observe(self.truth, 20, seed=4)
        self.observed = capture.observations.keypoints
        self.positions = np.array([self.scene.graph.landmark(int(l)).position
                                   for l in capture.landmark_ids])

    def test_no_decrease_reported_as_divergence(self):
        problem = UphillProblem(self.scene.intrinsics, self.observed, self.positions)
        solver = RobustLeastSquares(OptimizerConfig(max_step_attempts=3), camera_id='north')
        start = self.truth.perturbed([0.02, 0.0, -0.01, 0.05, 0.0, 0.0])

        with self.assertRaises(OptimizationDivergedError) as ctx:
            solver.solve(problem, problem.initial_state(start))
        self.assertEqual(ctx.exception.iteration, 3)
        self.assertEqual(ctx.exception.camera_id, 'north')

    def test_degenerate_geometry_is_ill_conditioned(self):
        positions = np.tile([0.0, 0.0, 10.0], (12, 1))
        observed = np.tile([330.0, 250.0], (12, 1))
        problem = ReprojectionProblem(self.scene.intrinsics, observed, positions)

        with self.assertRaises(OptimizationDivergedError) as ctx:
            RobustLeastSquares().solve(problem, problem.initial_state(Pose.identity()))
        self.assertIn('ill-conditioned', str(ctx.exception))


if __name__ == '__main__':
    unittest.main()
