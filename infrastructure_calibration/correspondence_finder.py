"""
Correspondence search between a camera's local features and map landmarks.

Matching is descriptor nearest-neighbour with Lowe's ratio test; candidate
matches are then verified geometrically with PnP RANSAC.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

import cv2
import numpy as np
from scipy.spatial.distance import cdist

from .camera_models import CameraIntrinsics
from .config import MIN_PNP_POINTS, MatchingConfig, PnPConfig
from .exceptions import InsufficientCorrespondencesError
from .pose import Pose
from .sparse_graph import Keyframe, SparseGraph

logger = logging.getLogger(__name__)

NO_HINT = -1


def _pnp_flags(method: str) -> int:
    flag_map = {
        'epnp': cv2.SOLVEPNP_EPNP,
        'iterative': cv2.SOLVEPNP_ITERATIVE,
        'p3p': cv2.SOLVEPNP_P3P,
        'ap3p': cv2.SOLVEPNP_AP3P,
        'sqpnp': getattr(cv2, 'SOLVEPNP_SQPNP', cv2.SOLVEPNP_EPNP),
    }
    return flag_map[method]


@dataclass(frozen=True, eq=False)
class FeatureObservations:
    """
    2D features extracted from one camera capture.

    Attributes:
        keypoints: (N, 2) pixel coordinates
        descriptors: (N, D) float (L2) or uint8 (Hamming) descriptors
        landmark_hints: (N,) landmark ids of pre-matched features, -1 otherwise
    """
    keypoints: np.ndarray
    descriptors: Optional[np.ndarray] = None
    landmark_hints: Optional[np.ndarray] = None

    def __post_init__(self):
        keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 2)
        object.__setattr__(self, 'keypoints', keypoints)
        n = len(keypoints)
        if self.descriptors is not None:
            descriptors = np.asarray(self.descriptors)
            if descriptors.ndim != 2 or len(descriptors) != n:
                raise ValueError(f"Expected {n} descriptor rows, got shape {descriptors.shape}")
            object.__setattr__(self, 'descriptors', descriptors)
        if self.landmark_hints is not None:
            hints = np.asarray(self.landmark_hints, dtype=np.int64).ravel()
            if len(hints) != n:
                raise ValueError(f"Expected {n} landmark hints, got {len(hints)}")
            object.__setattr__(self, 'landmark_hints', hints)

    def __len__(self) -> int:
        return len(self.keypoints)

    @classmethod
    def load(cls, path: str) -> 'FeatureObservations':
        """Load from an ``.npz`` file with keypoints[, descriptors, landmark_hints]."""
        with np.load(path, allow_pickle=False) as data:
            return cls(
                keypoints=data['keypoints'],
                descriptors=data['descriptors'] if 'descriptors' in data.files else None,
                landmark_hints=data['landmark_hints'] if 'landmark_hints' in data.files else None,
            )

    def save(self, path: str) -> None:
        arrays = {'keypoints': self.keypoints}
        if self.descriptors is not None:
            arrays['descriptors'] = self.descriptors
        if self.landmark_hints is not None:
            arrays['landmark_hints'] = self.landmark_hints
        np.savez(path, **arrays)


def load_observations(path: str) -> FeatureObservations:
    return FeatureObservations.load(path)


def save_observations(observations: FeatureObservations, path: str) -> None:
    observations.save(path)


@dataclass(frozen=True)
class Correspondence:
    """
    A local feature matched to a map landmark.

    ``score`` is the descriptor distance (0 for pre-matched hints, lower is
    better) and ``ratio`` the best / second-best distance ratio.
    """
    observation_index: int
    landmark_id: int
    score: float
    ratio: float = 0.0


@dataclass(frozen=True, eq=False)
class PoseEstimate:
    """Coarse camera pose from geometric verification."""
    pose: Pose
    correspondences: List[Correspondence]
    inlier_mask: np.ndarray
    reprojection_errors: np.ndarray = field(default_factory=lambda: np.zeros(0))

    @property
    def inliers(self) -> List[Correspondence]:
        return [c for c, keep in zip(self.correspondences, self.inlier_mask) if keep]

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inlier_mask))


def descriptor_distances(query: np.ndarray, train: np.ndarray) -> np.ndarray:
    """
    Pairwise descriptor distances.

    uint8 descriptors are treated as packed binary strings (Hamming
    distance in bits), anything else as float vectors (L2 distance).
    """
    if query.dtype == np.uint8 and train.dtype == np.uint8:
        query_bits = np.unpackbits(query, axis=1)
        train_bits = np.unpackbits(train, axis=1)
        return cdist(query_bits, train_bits, 'hamming') * query_bits.shape[1]
    return cdist(query.astype(np.float64), train.astype(np.float64), 'euclidean')


class CorrespondenceFinder:
    """
    Maps a camera's features onto SparseGraph landmarks.

    Holds read-only access to the graph and no other state, so a single
    finder can be shared between worker threads.
    """

    def __init__(self, graph: SparseGraph,
                 matching: Optional[MatchingConfig] = None,
                 pnp: Optional[PnPConfig] = None):
        self.graph = graph
        self.matching = matching or MatchingConfig()
        self.pnp = pnp or PnPConfig()

    def candidate_keyframes(self, prior_pose: Optional[Pose] = None,
                            radius: Optional[float] = None) -> List[Keyframe]:
        """Keyframes near a prior pose, or the whole map without one."""
        if prior_pose is None:
            return list(self.graph.keyframes.values())
        if radius is None:
            radius = self.matching.search_radius
        return list(self.graph.keyframes_near(prior_pose, radius))

    def find_correspondences(self, observations: FeatureObservations,
                             candidate_keyframes: Optional[Iterable[Keyframe]] = None,
                             camera_id: Any = None) -> List[Correspondence]:
        """
        Match observations against the landmarks seen by the candidate keyframes.

        Pre-matched hints that name a landmark of the graph are taken as-is;
        remaining features are matched by descriptor. Results are sorted by
        observation index.
        """
        if candidate_keyframes is None:
            candidate_keyframes = self.graph.keyframes.values()
        keyframe_ids = [k.id for k in candidate_keyframes]

        n = len(observations)
        hinted = np.zeros(n, dtype=bool)
        matches: List[Correspondence] = []

        if observations.landmark_hints is not None:
            for i, hint in enumerate(observations.landmark_hints):
                if hint == NO_HINT:
                    continue
                if self.graph.has_landmark(int(hint)):
                    matches.append(Correspondence(i, int(hint), 0.0, 0.0))
                    hinted[i] = True
                else:
                    logger.debug("Camera %s: hint for feature %d names unknown landmark %d",
                                 camera_id, i, hint)

        if observations.descriptors is not None and keyframe_ids and not np.all(hinted):
            matches.extend(self._match_descriptors(observations, np.flatnonzero(~hinted),
                                                   keyframe_ids))

        if self.matching.one_to_one:
            matches = self._enforce_one_to_one(matches)

        matches.sort(key=lambda c: c.observation_index)
        logger.debug("Camera %s: %d correspondences from %d features (%d hinted) over %d keyframes",
                     camera_id, len(matches), n, int(hinted.sum()), len(keyframe_ids))
        return matches

    def _match_descriptors(self, observations: FeatureObservations, query_indices: np.ndarray,
                           keyframe_ids: List[int]) -> List[Correspondence]:
        landmark_ids = self.graph.landmarks_observed_by(keyframe_ids)
        train, owners = self.graph.landmark_descriptors(landmark_ids, keyframe_ids)
        if len(train) == 0 or len(query_indices) == 0:
            return []
        if train.shape[1] != observations.descriptors.shape[1]:
            raise ValueError(f"Descriptor size mismatch: map {train.shape[1]}, "
                             f"observations {observations.descriptors.shape[1]}")

        distances = descriptor_distances(observations.descriptors[query_indices], train)

        # Collapse columns to one distance per landmark (minimum over its descriptors)
        order = np.argsort(owners, kind='stable')
        owners_sorted = owners[order]
        unique_ids, starts = np.unique(owners_sorted, return_index=True)
        per_landmark = np.minimum.reduceat(distances[:, order], starts, axis=1)

        ratio = self.matching.ratio_test
        max_distance = self.matching.max_descriptor_distance
        matches = []
        for row, obs_index in enumerate(query_indices):
            row_distances = per_landmark[row]
            # Lower distance first, then lower landmark id
            ranked = np.lexsort((unique_ids, row_distances))
            best = ranked[0]
            best_distance = float(row_distances[best])
            if max_distance is not None and best_distance > max_distance:
                continue
            if len(ranked) > 1:
                second_distance = float(row_distances[ranked[1]])
                if not best_distance < ratio * second_distance:
                    continue
                match_ratio = best_distance / second_distance
            else:
                match_ratio = 0.0
            matches.append(Correspondence(int(obs_index), int(unique_ids[best]),
                                          best_distance, match_ratio))
        return matches

    @staticmethod
    def _enforce_one_to_one(matches: List[Correspondence]) -> List[Correspondence]:
        """Keep, for each landmark, the match with the lowest score."""
        best = {}
        for match in matches:
            current = best.get(match.landmark_id)
            key = (match.score, match.observation_index)
            if current is None or key < (current.score, current.observation_index):
                best[match.landmark_id] = match
        return list(best.values())

    def verify(self, correspondences: List[Correspondence], observations: FeatureObservations,
               intrinsics: CameraIntrinsics, camera_id: Any = None) -> PoseEstimate:
        """
        Estimate a coarse camera pose with PnP RANSAC and flag outliers.

        Raises:
            InsufficientCorrespondencesError: fewer than ``min_correspondences``
                matches or consensus inliers
        """
        required = self.pnp.min_correspondences
        if len(correspondences) < required:
            raise InsufficientCorrespondencesError(camera_id, len(correspondences), required,
                                                   'matching')

        object_points = np.array([self.graph.landmark(c.landmark_id).position
                                  for c in correspondences], dtype=np.float64)
        pixels = observations.keypoints[[c.observation_index for c in correspondences]]
        image_points = intrinsics.undistort(pixels)
        K = intrinsics.camera_matrix
        threshold = self.pnp.reprojection_threshold_px

        cv2.setRNGSeed(self.pnp.seed)
        success, rvec, tvec, inliers = cv2.solvePnPRansac(
            object_points.reshape(-1, 1, 3),
            image_points.reshape(-1, 1, 2),
            K,
            None,
            flags=_pnp_flags(self.pnp.method),
            reprojectionError=threshold,
            confidence=self.pnp.confidence,
            iterationsCount=self.pnp.max_ransac_iterations,
        )

        if not success or inliers is None or len(inliers) < MIN_PNP_POINTS:
            found = 0 if inliers is None else len(inliers)
            raise InsufficientCorrespondencesError(camera_id, found, required,
                                                   'geometric verification')

        # Polish on the consensus set before classifying every correspondence
        inlier_idx = inliers.ravel()
        success, rvec, tvec = cv2.solvePnP(
            object_points[inlier_idx].reshape(-1, 1, 3),
            image_points[inlier_idx].reshape(-1, 1, 2),
            K, None, rvec, tvec,
            useExtrinsicGuess=True,
            flags=cv2.SOLVEPNP_ITERATIVE,
        )
        if not success or not np.all(np.isfinite(rvec)) or not np.all(np.isfinite(tvec)):
            raise InsufficientCorrespondencesError(camera_id, len(inlier_idx), required,
                                                   'geometric verification')

        pose = Pose.from_world_to_camera(rvec.ravel(), tvec.ravel())
        points_cam = pose.to_camera(object_points)
        in_front = points_cam[:, 2] > 0
        projected = np.full((len(object_points), 2), np.inf)
        if np.any(in_front):
            uv = points_cam[in_front, :2] / points_cam[in_front, 2:3]
            projected[in_front] = uv @ K[:2, :2].T + K[:2, 2]
        errors = np.linalg.norm(projected - image_points, axis=1)
        inlier_mask = in_front & (errors <= threshold)

        num_inliers = int(inlier_mask.sum())
        if num_inliers < required:
            raise InsufficientCorrespondencesError(camera_id, num_inliers, required,
                                                   'geometric verification')

        logger.debug("Camera %s: PnP kept %d/%d correspondences", camera_id,
                     num_inliers, len(correspondences))
        return PoseEstimate(pose, list(correspondences), inlier_mask, errors)

    def match_and_verify(self, observations: FeatureObservations, intrinsics: CameraIntrinsics,
                         candidate_keyframes: Optional[Iterable[Keyframe]] = None,
                         camera_id: Any = None) -> PoseEstimate:
        correspondences = self.find_correspondences(observations, candidate_keyframes, camera_id)
        return self.verify(correspondences, observations, intrinsics, camera_id)

