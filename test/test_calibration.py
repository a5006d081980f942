#!/usr/bin/env python3
"""
Unit tests for infrastructure camera calibration.
"""

import os
import sys
import tempfile
import unittest

import numpy as np
import yaml

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from infrastructure_calibration.calibration import (
    CalibrationResult, CameraState, InfrastructureCalibration,
)
from infrastructure_calibration.config import CalibrationConfig
from infrastructure_calibration.exceptions import (
    CalibrationCancelledError, DuplicateCameraError, InsufficientCorrespondencesError,
    MapIOError, MapNotLoadedError, NotFoundError, OptimizationDivergedError,
)
from infrastructure_calibration.pose import Pose
from infrastructure_calibration.sparse_graph import Keyframe, Landmark, SparseGraph
from infrastructure_calibration.synthetic import default_camera_pose, make_scene
from infrastructure_calibration.utils import load_cameras_config, save_calibration_results_yaml


def _renumbered(graph, offset):
    """Copy of ``graph`` with every landmark id shifted by ``offset``."""
    keyframes = [Keyframe(k.id, k.pose, k.landmark_ids + offset, k.keypoints, k.descriptors)
                 for k in graph.keyframes.values()]
    landmarks = [Landmark(l.id + offset, l.position, l.descriptor)
                 for l in graph.landmarks.values()]
    return SparseGraph.from_records(keyframes, landmarks, graph.intrinsics)


class CalibrationTestCase(unittest.TestCase):
    """Synthetic map written to disk and loaded into a fresh calibration."""

    config = None

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

        self.scene = make_scene(num_keyframes=3, num_landmarks=50, seed=0)
        self.map_path = os.path.join(self.tmp.name, 'sparse_map.yaml')
        self.scene.graph.save(self.map_path)

        self.calibration = InfrastructureCalibration(self.config)
        self.calibration.load_map(self.map_path)

    def add_camera(self, camera_id, index=0, **kwargs):
        self.calibration.add_camera(camera_id, self.scene.intrinsics, **kwargs)
        return default_camera_pose(index)


class TestCalibrate(CalibrationTestCase):
    """Test single-camera calibration."""

    def test_noise_free_matches_ground_truth(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 30, seed=1)

        result = self.calibration.calibrate('cam', capture.observations)

        self.assertEqual(result.state, CameraState.CONVERGED)
        self.assertTrue(result.succeeded)
        self.assertTrue(result.pose.is_close(truth, 1e-6, 1e-6))
        self.assertEqual(result.num_inliers, 30)
        self.assertLess(result.max_error, 1e-3)
        self.assertTrue(result.converged)
        self.assertLess(result.iterations, 10)
        self.assertNotEqual(result.termination, 'max_iterations')
        self.assertEqual(self.calibration.state('cam'), CameraState.CONVERGED)
        self.assertIs(self.calibration.result('cam'), result)

    def test_calibrate_is_idempotent(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 35, num_outliers=5, noise_px=0.5, seed=2)

        first = self.calibration.calibrate('cam', capture.observations)
        second = self.calibration.calibrate('cam', capture.observations)

        self.assertTrue(first.pose.is_close(second.pose, 1e-12, 1e-12))
        self.assertEqual(first.num_inliers, second.num_inliers)
        self.assertEqual(first.inlier_landmark_ids, second.inlier_landmark_ids)

    def test_forty_correspondences_thirty_five_correct(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 40, num_outliers=5, noise_px=0.5, seed=3)

        result = self.calibration.calibrate('cam', capture.observations)

        self.assertEqual(result.state, CameraState.CONVERGED)
        self.assertGreaterEqual(result.num_inliers, 30)
        self.assertLess(result.mean_error, 1.0)
        self.assertEqual(result.num_correspondences, 40)
        outlier_landmarks = set(capture.landmark_ids[capture.outlier_mask].tolist())
        self.assertFalse(outlier_landmarks & set(result.inlier_landmark_ids))

    def test_thirty_percent_outliers(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 40, num_outliers=12, noise_px=0.3, seed=4)

        result = self.calibration.calibrate('cam', capture.observations)

        self.assertEqual(result.state, CameraState.CONVERGED)
        self.assertLess(result.pose.distance_to(truth), 0.05)
        self.assertLess(result.pose.angle_to(truth), 0.01)

    def test_beyond_breakdown_point(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 40, num_outliers=36, noise_px=0.3, seed=5)

        with self.assertRaises(InsufficientCorrespondencesError):
            self.calibration.calibrate('cam', capture.observations)
        self.assertEqual(self.calibration.state('cam'), CameraState.INSUFFICIENT_DATA)
        recorded = self.calibration.result('cam')
        self.assertIsNone(recorded.pose)
        self.assertEqual(recorded.error_type, 'InsufficientCorrespondencesError')

    def test_two_correspondences(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 2, seed=6)

        with self.assertRaises(InsufficientCorrespondencesError) as ctx:
            self.calibration.calibrate('cam', capture.observations)
        self.assertEqual(ctx.exception.found, 2)
        self.assertEqual(ctx.exception.stage, 'matching')
        self.assertEqual(self.calibration.state('cam'), CameraState.INSUFFICIENT_DATA)

    def test_missing_observations(self):
        self.add_camera('cam')
        with self.assertRaises(InsufficientCorrespondencesError):
            self.calibration.calibrate('cam')
        self.assertEqual(self.calibration.state('cam'), CameraState.INSUFFICIENT_DATA)

    def test_ill_conditioned_refinement_diverges(self):
        calibration = InfrastructureCalibration(
            CalibrationConfig.from_dict({'optimizer': {'max_condition_number': 1.0001}}))
        calibration.load_map(self.map_path)
        calibration.add_camera('cam', self.scene.intrinsics)
        capture = self.scene.observe(default_camera_pose(0), 30, noise_px=0.3, seed=7)

        with self.assertRaises(OptimizationDivergedError):
            calibration.calibrate('cam', capture.observations)
        self.assertEqual(calibration.state('cam'), CameraState.DIVERGED)
        self.assertEqual(calibration.result('cam').error_type, 'OptimizationDivergedError')

    def test_prior_pose_limits_search(self):
        truth = self.add_camera('near', prior_pose=Pose.identity(), search_radius=5.0)
        self.add_camera('far', prior_pose=Pose.from_rotation_vector(np.zeros(3), [100.0, 0.0, 0.0]),
                        search_radius=5.0)
        capture = self.scene.observe(truth, 30, seed=8)

        self.assertTrue(self.calibration.calibrate('near', capture.observations).succeeded)
        with self.assertRaises(InsufficientCorrespondencesError) as ctx:
            self.calibration.calibrate('far', capture.observations)
        self.assertEqual(ctx.exception.found, 0)

    def test_intrinsics_from_mapping(self):
        self.calibration.add_camera('cam', self.scene.intrinsics.to_dict())
        capture = self.scene.observe(default_camera_pose(0), 30, seed=9)
        self.assertTrue(self.calibration.calibrate('cam', capture.observations).succeeded)


class TestCameraRegistry(CalibrationTestCase):
    """Test registration, lookups and state handling."""

    def test_duplicate_camera(self):
        self.add_camera('cam')
        with self.assertRaises(DuplicateCameraError):
            self.add_camera('cam')

    def test_unknown_camera(self):
        with self.assertRaises(NotFoundError):
            self.calibration.calibrate('ghost')
        with self.assertRaises(NotFoundError):
            self.calibration.state('ghost')

    def test_map_required(self):
        calibration = InfrastructureCalibration()
        calibration.add_camera('cam', self.scene.intrinsics)
        with self.assertRaises(MapNotLoadedError):
            calibration.calibrate('cam')
        with self.assertRaises(MapNotLoadedError):
            calibration.run()

    def test_failed_load_keeps_previous_map(self):
        graph = self.calibration.graph
        with self.assertRaises(MapIOError):
            self.calibration.load_map(os.path.join(self.tmp.name, 'missing.yaml'))
        self.assertIs(self.calibration.graph, graph)

    def test_explicit_correspondences_are_reused(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 30, seed=10)

        correspondences = self.calibration.find_correspondences('cam', capture.observations)
        self.assertEqual(self.calibration.state('cam'), CameraState.CORRESPONDENCES_FOUND)
        self.assertEqual(len(correspondences), 30)

        result = self.calibration.calibrate('cam', capture.observations)
        self.assertEqual(result.num_correspondences, len(correspondences))

    def test_load_map_resets_cameras(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 30, seed=11)
        self.calibration.calibrate('cam', capture.observations)

        self.calibration.load_map(self.map_path)

        self.assertEqual(self.calibration.state('cam'), CameraState.REGISTERED)
        self.assertIsNone(self.calibration.result('cam'))
        self.assertIsNone(self.calibration.correspondences('cam'))
        result = self.calibration.calibrate('cam', capture.observations)
        self.assertTrue(result.pose.is_close(truth, 1e-6, 1e-6))

    def test_rerun_after_loading_different_map(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 30, seed=13)
        stale = self.calibration.find_correspondences('cam', capture.observations)

        other_path = os.path.join(self.tmp.name, 'renumbered_map.yaml')
        _renumbered(self.scene.graph, 1000).save(other_path)
        self.calibration.load_map(other_path)
        self.assertEqual(self.calibration.state('cam'), CameraState.REGISTERED)
        self.assertIsNone(self.calibration.correspondences('cam'))

        result = self.calibration.calibrate('cam', capture.observations)

        graph = self.calibration.graph
        fresh = self.calibration.correspondences('cam')
        self.assertEqual([c.landmark_id for c in fresh], [c.landmark_id + 1000 for c in stale])
        self.assertEqual(len(result.inlier_landmark_ids), 30)
        self.assertTrue(all(graph.has_landmark(l) for l in result.inlier_landmark_ids))
        self.assertTrue(all(l >= 1000 for l in result.inlier_landmark_ids))
        self.assertTrue(result.pose.is_close(truth, 1e-6, 1e-6))

    def test_cancel(self):
        truth = self.add_camera('cam')
        capture = self.scene.observe(truth, 30, seed=12)

        self.calibration.cancel('cam')
        with self.assertRaises(CalibrationCancelledError):
            self.calibration.calibrate('cam', capture.observations)
        self.assertEqual(self.calibration.state('cam'), CameraState.REGISTERED)

        self.assertTrue(self.calibration.calibrate('cam', capture.observations).succeeded)

    def test_state_transitions(self):
        self.assertFalse(CameraState.REGISTERED.can_transition_to(CameraState.REFINING))
        self.assertFalse(CameraState.CORRESPONDENCES_FOUND.can_transition_to(CameraState.REFINING))
        self.assertTrue(CameraState.COARSE_POSE_ESTIMATED.can_transition_to(CameraState.REFINING))
        self.assertTrue(CameraState.CONVERGED.can_transition_to(CameraState.CORRESPONDENCES_FOUND))
        self.assertTrue(CameraState.DIVERGED.is_terminal)
        self.assertFalse(CameraState.REFINING.is_terminal)


class TestRun(CalibrationTestCase):
    """Test batch calibration with partial failure."""

    def test_failing_middle_camera(self):
        observations = {}
        for index, camera_id in enumerate(['east', 'middle', 'west']):
            truth = self.add_camera(camera_id, index)
            count = 2 if camera_id == 'middle' else 30
            observations[camera_id] = self.scene.observe(truth, count, noise_px=0.3,
                                                         seed=20 + index).observations

        results = self.calibration.run(observations, max_workers=3)

        self.assertEqual(list(results), ['east', 'middle', 'west'])
        self.assertTrue(results['east'].succeeded)
        self.assertTrue(results['west'].succeeded)
        self.assertEqual(results['middle'].state, CameraState.INSUFFICIENT_DATA)
        self.assertEqual(results['middle'].error_type, 'InsufficientCorrespondencesError')
        self.assertIsNone(results['middle'].pose)
        self.assertLess(results['west'].pose.distance_to(default_camera_pose(2)), 0.05)

    def test_empty_run(self):
        self.assertEqual(self.calibration.run(), {})

    def test_results_yaml(self):
        truth = self.add_camera('north')
        self.calibration.add_camera('south', self.scene.intrinsics)
        self.calibration.add_observations('north', self.scene.observe(truth, 30, seed=30).observations)

        results = self.calibration.run()
        path = os.path.join(self.tmp.name, 'extrinsics.yaml')
        save_calibration_results_yaml(results.values(), path)
        with open(path) as f:
            saved = yaml.safe_load(f)

        self.assertEqual(saved['north']['parent'], 'map')
        self.assertEqual(saved['north']['status'], 'converged')
        np.testing.assert_array_almost_equal(saved['north']['value'][:3], truth.translation, decimal=5)
        self.assertNotIn('value', saved['south'])
        self.assertEqual(saved['south']['status'], 'insufficient_data')
        self.assertIn('error', saved['south'])

    def test_results_yaml_keeps_error_text(self):
        message = 'Cannot read map C:\\maps\\site "A".yaml\nnext line'
        failed = CalibrationResult(camera_id='south', state=CameraState.DIVERGED, error=message)
        path = os.path.join(self.tmp.name, 'failed.yaml')
        save_calibration_results_yaml([failed], path)
        with open(path) as f:
            saved = yaml.safe_load(f)

        self.assertEqual(saved['south']['error'], message)
        self.assertEqual(saved['south']['status'], 'diverged')


class TestLandmarkRefinement(CalibrationTestCase):
    """Test joint landmark refinement and map updates."""

    config = CalibrationConfig.from_dict({
        'optimizer': {'refine_landmarks': True, 'max_refined_landmarks': 10},
    })

    def test_refined_landmarks_merged(self):
        original = self.calibration.graph
        observations = {}
        for index, camera_id in enumerate(['a', 'b']):
            truth = self.add_camera(camera_id, index)
            observations[camera_id] = self.scene.observe(truth, 30, seed=40 + index).observations

        results = self.calibration.run(observations)
        refined = set()
        for result in results.values():
            self.assertTrue(result.succeeded)
            self.assertLessEqual(len(result.refined_landmarks), 10)
            refined.update(result.refined_landmarks)
        self.assertTrue(refined)
        self.assertIs(self.calibration.graph, original)

        self.assertEqual(self.calibration.apply_landmark_updates(results), len(refined))
        updated = self.calibration.graph
        self.assertIsNot(updated, original)
        for landmark_id in refined:
            np.testing.assert_allclose(updated.landmark(landmark_id).position,
                                       original.landmark(landmark_id).position, atol=1e-4)

    def test_failed_results_ignored(self):
        failure = CalibrationResult.failure('x', CameraState.DIVERGED, RuntimeError('boom'))
        self.assertEqual(self.calibration.apply_landmark_updates([failure]), 0)


class TestCamerasConfig(unittest.TestCase):
    """Test loading the cameras configuration."""

    def test_relative_paths_resolved(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'cameras.yaml')
            with open(path, 'w') as f:
                f.write("# Infrastructure cameras\n"
                        "cameras:\n"
                        "  gate:\n"
                        "    intrinsics_file: intrinsics/gate.yaml\n"
                        "    observations_file: /data/gate.npz\n"
                        "    prior_pose: [1.0, 2.0, 3.0, 0.0, 0.0, 0.0, 1.0]\n")
            config = load_cameras_config(path)

        gate = config['cameras']['gate']
        self.assertEqual(gate['intrinsics_file'], os.path.join(tmp, 'intrinsics', 'gate.yaml'))
        self.assertEqual(gate['observations_file'], '/data/gate.npz')
        self.assertEqual(len(gate['prior_pose']), 7)


if __name__ == '__main__':
    unittest.main()
