#!/usr/bin/env python3
"""
Unit tests for descriptor matching and geometric verification.
"""

import os
import sys
import tempfile
import unittest

import numpy as np

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from infrastructure_calibration.config import MatchingConfig, PnPConfig
from infrastructure_calibration.correspondence_finder import (
    NO_HINT, Correspondence, CorrespondenceFinder, FeatureObservations,
    descriptor_distances, load_observations, save_observations,
)
from infrastructure_calibration.exceptions import InsufficientCorrespondencesError
from infrastructure_calibration.pose import Pose
from infrastructure_calibration.sparse_graph import Keyframe, Landmark, SparseGraph
from infrastructure_calibration.synthetic import default_camera_pose, make_scene


def _small_graph():
    """Landmarks 1 and 2 look almost alike; landmark 4 is only seen from far away."""
    near = Keyframe(0, Pose.identity(), [1, 2, 3],
                    [[100.0, 100.0], [200.0, 100.0], [300.0, 100.0]],
                    np.array([[1.0, 0.0, 0.0, 0.0],
                              [1.0, 0.05, 0.0, 0.0],
                              [0.0, 0.0, 1.0, 0.0]], dtype=np.float32))
    far = Keyframe(1, Pose.from_rotation_vector(np.zeros(3), [50.0, 0.0, 0.0]), [4],
                   [[320.0, 240.0]], np.array([[0.0, 1.0, 0.0, 0.0]], dtype=np.float32))
    landmarks = [Landmark(i, [float(i), 0.0, 10.0]) for i in (1, 2, 3, 4)]
    return SparseGraph.from_records([near, far], landmarks)


def _observations(descriptors, hints=None):
    descriptors = np.asarray(descriptors, dtype=np.float32)
    keypoints = np.column_stack([np.arange(len(descriptors)) * 20.0, np.zeros(len(descriptors))])
    return FeatureObservations(keypoints, descriptors, hints)


class TestDescriptorDistances(unittest.TestCase):
    """Test L2 and Hamming distance matrices."""

    def test_l2(self):
        d = descriptor_distances(np.array([[0.0, 0.0]]), np.array([[3.0, 4.0], [0.0, 1.0]]))
        np.testing.assert_array_almost_equal(d, [[5.0, 1.0]])

    def test_hamming(self):
        query = np.array([[0b11110000, 0]], dtype=np.uint8)
        train = np.array([[0b11110000, 0], [0, 0], [0xFF, 0x01]], dtype=np.uint8)
        np.testing.assert_array_equal(descriptor_distances(query, train), [[0, 4, 5]])


class TestFindCorrespondences(unittest.TestCase):
    """Test descriptor matching against map landmarks."""

    def setUp(self):
        self.graph = _small_graph()
        self.finder = CorrespondenceFinder(self.graph)

    def test_ambiguous_match_rejected(self):
        observations = _observations([[1.0, 0.025, 0.0, 0.0],    # halfway between 1 and 2
                                      [0.0, 0.0, 1.0, 0.01]])
        matches = self.finder.find_correspondences(observations)

        self.assertEqual([(c.observation_index, c.landmark_id) for c in matches], [(1, 3)])
        self.assertAlmostEqual(matches[0].score, 0.01, places=5)

    def test_distinctive_match_accepted(self):
        matches = self.finder.find_correspondences(_observations([[1.0, 0.0, 0.0, 0.0]]))
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].landmark_id, 1)
        self.assertAlmostEqual(matches[0].ratio, 0.0)

    def test_max_descriptor_distance(self):
        observations = _observations([[0.0, 0.0, 1.0, 0.01]])
        strict = CorrespondenceFinder(self.graph, MatchingConfig(max_descriptor_distance=0.001))
        self.assertEqual(strict.find_correspondences(observations), [])
        self.assertEqual(len(self.finder.find_correspondences(observations)), 1)

    def test_one_to_one_keeps_best_observation(self):
        observations = _observations([[0.0, 0.0, 1.0, 0.02],
                                      [0.0, 0.0, 1.0, 0.0],
                                      [0.0, 0.0, 1.0, 0.0]])
        matches = self.finder.find_correspondences(observations)
        self.assertEqual([(c.observation_index, c.landmark_id) for c in matches], [(1, 3)])

        relaxed = CorrespondenceFinder(self.graph, MatchingConfig(one_to_one=False))
        self.assertEqual(len(relaxed.find_correspondences(observations)), 3)

    def test_candidate_keyframes_restrict_landmarks(self):
        observations = _observations([[0.0, 1.0, 0.0, 0.0]])

        candidates = self.finder.candidate_keyframes(Pose.identity(), radius=5.0)
        self.assertEqual([k.id for k in candidates], [0])
        self.assertEqual(self.finder.find_correspondences(observations, candidates), [])

        matches = self.finder.find_correspondences(observations)
        self.assertEqual([c.landmark_id for c in matches], [4])

    def test_hints_bypass_matching(self):
        observations = _observations([[0.0, 0.0, 1.0, 0.0],
                                      [0.0, 0.0, 1.0, 0.0],
                                      [1.0, 0.0, 0.0, 0.0]],
                                     hints=[2, NO_HINT, 99])
        matches = self.finder.find_correspondences(observations)

        self.assertEqual([(c.observation_index, c.landmark_id) for c in matches],
                         [(0, 2), (1, 3), (2, 1)])
        self.assertEqual(matches[0].score, 0.0)

    def test_descriptor_size_mismatch(self):
        with self.assertRaises(ValueError):
            self.finder.find_correspondences(_observations([[1.0, 0.0, 0.0]]))

    def test_synthetic_hamming_matching(self):
        scene = make_scene(num_landmarks=40, seed=2, descriptor_type='uint8')
        capture = scene.observe(default_camera_pose(0), 25, seed=3)
        matches = CorrespondenceFinder(scene.graph).find_correspondences(capture.observations)

        self.assertEqual(len(matches), 25)
        self.assertEqual([c.observation_index for c in matches], list(range(25)))
        for match in matches:
            self.assertEqual(match.landmark_id, capture.landmark_ids[match.observation_index])


class TestVerify(unittest.TestCase):
    """Test PnP RANSAC verification."""

    def setUp(self):
        self.scene = make_scene(seed=5)
        self.finder = CorrespondenceFinder(self.scene.graph)
        self.truth = default_camera_pose(1)

    def test_outliers_flagged(self):
        capture = self.scene.observe(self.truth, 30, num_outliers=6, noise_px=0.3, seed=1)
        estimate = self.finder.match_and_verify(capture.observations, self.scene.intrinsics)

        self.assertEqual(len(estimate.correspondences), 30)
        flagged = ~estimate.inlier_mask
        outliers = capture.outlier_mask[[c.observation_index for c in estimate.correspondences]]
        np.testing.assert_array_equal(flagged, outliers)
        self.assertEqual(estimate.num_inliers, 24)
        self.assertLess(estimate.pose.distance_to(self.truth), 0.1)
        self.assertLess(estimate.pose.angle_to(self.truth), 0.02)

    def test_too_few_correspondences(self):
        correspondences = [Correspondence(i, i, 0.0) for i in range(3)]
        capture = self.scene.observe(self.truth, 3, seed=2)
        with self.assertRaises(InsufficientCorrespondencesError) as ctx:
            self.finder.verify(correspondences, capture.observations, self.scene.intrinsics,
                               camera_id='cam')
        self.assertEqual(ctx.exception.stage, 'matching')
        self.assertEqual(ctx.exception.found, 3)
        self.assertEqual(ctx.exception.required, 6)
        self.assertEqual(ctx.exception.camera_id, 'cam')

    def test_deterministic(self):
        capture = self.scene.observe(self.truth, 30, num_outliers=9, noise_px=0.5, seed=7)
        finder = CorrespondenceFinder(self.scene.graph, pnp=PnPConfig(seed=11))
        first = finder.match_and_verify(capture.observations, self.scene.intrinsics)
        second = finder.match_and_verify(capture.observations, self.scene.intrinsics)
        np.testing.assert_array_equal(first.inlier_mask, second.inlier_mask)
        self.assertTrue(first.pose.is_close(second.pose, 1e-12, 1e-12))


class TestFeatureObservations(unittest.TestCase):
    """Test observation validation and persistence."""

    def test_shape_validation(self):
        with self.assertRaises(ValueError):
            FeatureObservations(np.zeros((3, 2)), descriptors=np.zeros((2, 8)))
        with self.assertRaises(ValueError):
            FeatureObservations(np.zeros((3, 2)), landmark_hints=[1, 2])

    def test_save_load(self):
        observations = FeatureObservations(np.array([[1.0, 2.0], [3.0, 4.0]]),
                                           np.array([[1, 2], [3, 4]], dtype=np.uint8),
                                           [7, NO_HINT])
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'observations.npz')
            save_observations(observations, path)
            loaded = load_observations(path)

        np.testing.assert_array_equal(loaded.keypoints, observations.keypoints)
        np.testing.assert_array_equal(loaded.descriptors, observations.descriptors)
        self.assertEqual(loaded.descriptors.dtype, np.uint8)
        np.testing.assert_array_equal(loaded.landmark_hints, [7, NO_HINT])


if __name__ == '__main__':
    unittest.main()
