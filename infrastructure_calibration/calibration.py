"""
Extrinsic calibration of fixed infrastructure cameras against a sparse map.

Each registered camera is localized independently: its features are matched
to map landmarks, a coarse pose is estimated with PnP RANSAC, and the pose is
refined by robust nonlinear least squares.
"""

import logging
import os
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import cv2
import numpy as np

from .camera_models import CameraIntrinsics, intrinsics_from_dict, load_camera_intrinsics
from .config import CalibrationConfig
from .correspondence_finder import (
    Correspondence, CorrespondenceFinder, FeatureObservations, PoseEstimate,
)
from .exceptions import (
    CalibrationCancelledError, CalibrationError, CalibrationStateError,
    DuplicateCameraError, InsufficientCorrespondencesError, MapNotLoadedError,
    NotFoundError, OptimizationDivergedError,
)
from .optimizer import refine_pose
from .pose import Pose
from .sparse_graph import SparseGraph

logger = logging.getLogger(__name__)


class CameraState(Enum):
    """Calibration progress of a single camera."""
    REGISTERED = 'registered'
    CORRESPONDENCES_FOUND = 'correspondences_found'
    COARSE_POSE_ESTIMATED = 'coarse_pose_estimated'
    REFINING = 'refining'
    CONVERGED = 'converged'
    DIVERGED = 'diverged'
    INSUFFICIENT_DATA = 'insufficient_data'

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    def can_transition_to(self, other: 'CameraState') -> bool:
        return other in _TRANSITIONS[self]


_TERMINAL_STATES = frozenset({
    CameraState.CONVERGED, CameraState.DIVERGED, CameraState.INSUFFICIENT_DATA,
})

# Numerical failures of OpenCV or numpy during estimation end in DIVERGED
_TRANSITIONS = {
    CameraState.REGISTERED: {
        CameraState.CORRESPONDENCES_FOUND, CameraState.INSUFFICIENT_DATA,
    },
    CameraState.CORRESPONDENCES_FOUND: {
        CameraState.CORRESPONDENCES_FOUND, CameraState.COARSE_POSE_ESTIMATED,
        CameraState.INSUFFICIENT_DATA, CameraState.DIVERGED,
    },
    CameraState.COARSE_POSE_ESTIMATED: {
        CameraState.REFINING, CameraState.INSUFFICIENT_DATA, CameraState.DIVERGED,
    },
    CameraState.REFINING: {
        CameraState.CONVERGED, CameraState.DIVERGED, CameraState.INSUFFICIENT_DATA,
    },
}
for _state in _TERMINAL_STATES:
    _TRANSITIONS[_state] = {CameraState.CORRESPONDENCES_FOUND, CameraState.INSUFFICIENT_DATA}


@dataclass(frozen=True, eq=False)
class CalibrationResult:
    """Outcome of calibrating one camera."""
    camera_id: Any
    state: CameraState
    pose: Optional[Pose] = None                 # camera -> map, with covariance
    num_inliers: int = 0
    num_correspondences: int = 0
    mean_error: float = float('nan')            # pixels, over final inliers
    median_error: float = float('nan')
    max_error: float = float('nan')
    rms_error: float = float('nan')
    iterations: int = 0
    converged: bool = False
    termination: Optional[str] = None
    initial_cost: float = float('nan')
    final_cost: float = float('nan')
    refined_landmarks: Dict[int, np.ndarray] = field(default_factory=dict)
    inlier_landmark_ids: Tuple[int, ...] = ()
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is CameraState.CONVERGED and self.pose is not None

    @classmethod
    def failure(cls, camera_id: Any, state: CameraState, error: BaseException,
                num_correspondences: int = 0) -> 'CalibrationResult':
        return cls(camera_id=camera_id, state=state,
                   num_correspondences=num_correspondences,
                   error=str(error), error_type=type(error).__name__)


@dataclass(eq=False)
class CameraRecord:
    """Registration data and progress of one camera."""
    camera_id: Any
    intrinsics: CameraIntrinsics
    prior_pose: Optional[Pose] = None
    search_radius: Optional[float] = None
    state: CameraState = CameraState.REGISTERED
    observations: Optional[FeatureObservations] = None
    correspondences: Optional[List[Correspondence]] = None
    correspondence_source: Optional[FeatureObservations] = None
    correspondence_map_version: int = -1
    result: Optional[CalibrationResult] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)


IntrinsicsLike = Union[CameraIntrinsics, Mapping[str, Any], str, os.PathLike]


class InfrastructureCalibration:
    """
    Calibrates registered infrastructure cameras against a loaded SparseGraph.

    The graph is shared read-only between calibrations, so cameras can be
    processed concurrently by ``run()``. Per-camera bookkeeping is guarded
    by an internal lock.
    """

    def __init__(self, config: Optional[CalibrationConfig] = None):
        """
        Args:
            config: Calibration policy parameters (defaults when omitted)
        """
        self.config = config or CalibrationConfig()
        self._graph: Optional[SparseGraph] = None
        self._map_version = 0
        self._cameras: Dict[Any, CameraRecord] = {}
        self._lock = threading.RLock()

    # Map

    @property
    def graph(self) -> Optional[SparseGraph]:
        return self._graph

    def load_map(self, path: str) -> SparseGraph:
        """
        Load a sparse map and make it the calibration reference.

        Every registered camera returns to REGISTERED and cached
        correspondences are dropped. On error the previous map is kept.

        Raises:
            MapIOError: The file cannot be read
            CorruptMapError: The map is malformed or inconsistent
        """
        graph = SparseGraph.load(path)
        self.set_map(graph)
        logger.info("Loaded map %s: %d keyframes, %d landmarks", path,
                    graph.num_keyframes, graph.num_landmarks)
        return graph

    def set_map(self, graph: SparseGraph) -> None:
        """Use an already constructed graph, with the same reset as ``load_map``."""
        with self._lock:
            self._graph = graph
            self._map_version += 1
            for record in self._cameras.values():
                self._reset(record)
                record.result = None

    def _require_graph(self) -> SparseGraph:
        graph = self._graph
        if graph is None:
            raise MapNotLoadedError()
        return graph

    # Cameras

    @property
    def cameras(self) -> List[Any]:
        """Camera ids in registration order."""
        with self._lock:
            return list(self._cameras)

    def add_camera(self, camera_id: Any, intrinsics: IntrinsicsLike,
                   prior_pose: Optional[Pose] = None,
                   search_radius: Optional[float] = None) -> None:
        """
        Register a camera.

        Args:
            camera_id: Unique camera identifier
            intrinsics: CameraIntrinsics, an intrinsics mapping or a YAML path
            prior_pose: Approximate camera->map pose restricting the keyframe search
            search_radius: Search radius (metres) around the prior; falls back
                to ``matching.search_radius``

        Raises:
            DuplicateCameraError: The id is already registered
        """
        if isinstance(intrinsics, CameraIntrinsics):
            model = intrinsics
        elif isinstance(intrinsics, Mapping):
            model = intrinsics_from_dict(dict(intrinsics))
        else:
            model = load_camera_intrinsics(os.fspath(intrinsics))

        if search_radius is not None and search_radius < 0:
            raise ValueError(f"Search radius must be non-negative, got {search_radius}")

        with self._lock:
            if camera_id in self._cameras:
                raise DuplicateCameraError(camera_id)
            self._cameras[camera_id] = CameraRecord(camera_id, model, prior_pose, search_radius)

    def add_observations(self, camera_id: Any, observations: FeatureObservations) -> None:
        """Store the capture used when the camera is calibrated without explicit observations."""
        with self._lock:
            self._record(camera_id).observations = observations

    def _record(self, camera_id: Any) -> CameraRecord:
        try:
            return self._cameras[camera_id]
        except KeyError:
            raise NotFoundError('camera', camera_id) from None

    def state(self, camera_id: Any) -> CameraState:
        with self._lock:
            return self._record(camera_id).state

    def result(self, camera_id: Any) -> Optional[CalibrationResult]:
        with self._lock:
            return self._record(camera_id).result

    def correspondences(self, camera_id: Any) -> Optional[List[Correspondence]]:
        with self._lock:
            cached = self._record(camera_id).correspondences
            return list(cached) if cached is not None else None

    def cancel(self, camera_id: Any) -> None:
        """
        Cancel the camera's in-flight (or next) calibration.

        The calibration raises CalibrationCancelledError at its next check
        and the camera returns to REGISTERED.
        """
        with self._lock:
            self._record(camera_id).cancel_event.set()

    # State machine

    def _transition(self, record: CameraRecord, new_state: CameraState) -> None:
        with self._lock:
            if not record.state.can_transition_to(new_state):
                raise CalibrationStateError(record.camera_id, record.state.value, new_state.value)
            record.state = new_state

    @staticmethod
    def _reset(record: CameraRecord) -> None:
        record.state = CameraState.REGISTERED
        record.correspondences = None
        record.correspondence_source = None
        record.correspondence_map_version = -1

    def _check_cancelled(self, record: CameraRecord) -> None:
        if record.cancel_event.is_set():
            raise CalibrationCancelledError(record.camera_id)

    # Calibration steps

    def _finder(self, graph: SparseGraph) -> CorrespondenceFinder:
        return CorrespondenceFinder(graph, self.config.matching, self.config.pnp)

    def _candidate_keyframes(self, record: CameraRecord, finder: CorrespondenceFinder):
        if record.prior_pose is None:
            return None
        candidates = finder.candidate_keyframes(record.prior_pose, record.search_radius)
        logger.debug("Camera %s: %d candidate keyframes near prior", record.camera_id,
                     len(candidates))
        return candidates

    def find_correspondences(self, camera_id: Any,
                             observations: Optional[FeatureObservations] = None
                             ) -> List[Correspondence]:
        """
        Match a camera's observations against the map.

        The result is cached and reused by the next ``calibrate`` call for
        the same observations and map. Moves the camera to CORRESPONDENCES_FOUND.
        """
        graph = self._require_graph()
        with self._lock:
            record = self._record(camera_id)
            if observations is None:
                observations = record.observations
        if observations is None:
            raise InsufficientCorrespondencesError(camera_id, 0, self.config.pnp.min_correspondences,
                                                   'observation')

        finder = self._finder(graph)
        correspondences = finder.find_correspondences(
            observations, self._candidate_keyframes(record, finder), camera_id)

        with self._lock:
            if not record.state.can_transition_to(CameraState.CORRESPONDENCES_FOUND):
                raise CalibrationStateError(camera_id, record.state.value,
                                            CameraState.CORRESPONDENCES_FOUND.value)
            record.state = CameraState.CORRESPONDENCES_FOUND
            record.correspondences = correspondences
            record.correspondence_source = observations
            record.correspondence_map_version = self._map_version
        return list(correspondences)

    def _cached_correspondences(self, record: CameraRecord,
                                observations: FeatureObservations
                                ) -> Optional[List[Correspondence]]:
        with self._lock:
            if (record.state is CameraState.CORRESPONDENCES_FOUND
                    and record.correspondences is not None
                    and record.correspondence_source is observations
                    and record.correspondence_map_version == self._map_version):
                return record.correspondences
        return None

    def calibrate(self, camera_id: Any,
                  observations: Optional[FeatureObservations] = None) -> CalibrationResult:
        """
        Estimate the camera->map pose of one camera.

        Args:
            camera_id: Registered camera id
            observations: Features of the capture; the stored observations
                are used when omitted

        Returns:
            CalibrationResult in state CONVERGED

        Raises:
            MapNotLoadedError: No map loaded
            NotFoundError: Unknown camera
            InsufficientCorrespondencesError: Too few matches or inliers (state INSUFFICIENT_DATA)
            OptimizationDivergedError: Refinement failed (state DIVERGED)
            CalibrationCancelledError: ``cancel`` was called (state REGISTERED)
        """
        graph = self._require_graph()
        with self._lock:
            record = self._record(camera_id)
            if observations is None:
                observations = record.observations

        num_correspondences = 0
        try:
            self._check_cancelled(record)
            if observations is None:
                raise InsufficientCorrespondencesError(
                    camera_id, 0, self.config.pnp.min_correspondences, 'observation')

            correspondences = self._cached_correspondences(record, observations)
            if correspondences is None:
                correspondences = self.find_correspondences(camera_id, observations)
            num_correspondences = len(correspondences)

            self._check_cancelled(record)
            estimate = self._finder(graph).verify(correspondences, observations,
                                                  record.intrinsics, camera_id)
            self._transition(record, CameraState.COARSE_POSE_ESTIMATED)
            logger.debug("Camera %s: coarse pose %s from %d/%d inliers", camera_id,
                         estimate.pose, estimate.num_inliers, num_correspondences)

            self._check_cancelled(record)
            self._transition(record, CameraState.REFINING)
            result = self._refine(record, graph, observations, estimate, num_correspondences)
            self._transition(record, CameraState.CONVERGED)

        except CalibrationCancelledError as e:
            with self._lock:
                self._reset(record)
                record.result = CalibrationResult.failure(camera_id, CameraState.REGISTERED, e,
                                                          num_correspondences)
            logger.info("Camera %s: calibration cancelled", camera_id)
            raise
        except InsufficientCorrespondencesError as e:
            self._record_failure(record, CameraState.INSUFFICIENT_DATA, e, num_correspondences)
            raise
        except OptimizationDivergedError as e:
            self._record_failure(record, CameraState.DIVERGED, e, num_correspondences)
            raise
        except (cv2.error, np.linalg.LinAlgError, ValueError) as e:
            self._record_failure(record, CameraState.DIVERGED, e, num_correspondences)
            raise
        finally:
            record.cancel_event.clear()

        with self._lock:
            record.result = result
        logger.info("Camera %s: converged with %d inliers, mean error %.3f px (%s after %d iterations)",
                    camera_id, result.num_inliers, result.mean_error, result.termination,
                    result.iterations)
        return result

    def _record_failure(self, record: CameraRecord, state: CameraState,
                        error: BaseException, num_correspondences: int) -> None:
        with self._lock:
            record.state = state
            record.result = CalibrationResult.failure(record.camera_id, state, error,
                                                      num_correspondences)
        logger.warning("Camera %s: %s", record.camera_id, error)

    def _select_refined_landmarks(self, graph: SparseGraph,
                                  landmark_ids: Iterable[int]) -> List[int]:
        """Optimization-eligible landmarks, most observed first, capped in number."""
        eligible = {l for l in landmark_ids if graph.landmark(l).is_optimizable}
        ranked = sorted(eligible, key=lambda l: (-len(graph.landmark(l).observer_ids), l))
        return ranked[:self.config.optimizer.max_refined_landmarks]

    @staticmethod
    def _keyframe_terms(graph: SparseGraph,
                        landmark_ids: Iterable[int]) -> List[Tuple[Pose, np.ndarray, int]]:
        terms = []
        for landmark_id in landmark_ids:
            for keyframe_id in graph.landmark(landmark_id).observer_ids:
                keyframe = graph.keyframe(keyframe_id)
                index = int(np.flatnonzero(keyframe.landmark_ids == landmark_id)[0])
                terms.append((keyframe.pose, keyframe.keypoints[index], landmark_id))
        return terms

    def _refine(self, record: CameraRecord, graph: SparseGraph,
                observations: FeatureObservations, estimate: PoseEstimate,
                num_correspondences: int) -> CalibrationResult:
        cfg = self.config.optimizer
        camera_id = record.camera_id
        inliers = estimate.inliers
        landmark_ids = [c.landmark_id for c in inliers]
        observed = observations.keypoints[[c.observation_index for c in inliers]]
        positions = np.array([graph.landmark(l).position for l in landmark_ids])

        refined_ids: List[int] = []
        keyframe_terms: List[Tuple[Pose, np.ndarray, int]] = []
        if cfg.refine_landmarks:
            refined_ids = self._select_refined_landmarks(graph, landmark_ids)
            if graph.intrinsics is not None:
                keyframe_terms = self._keyframe_terms(graph, refined_ids)

        refinement = refine_pose(
            record.intrinsics, estimate.pose, observed, landmark_ids, positions,
            config=cfg,
            refined_ids=refined_ids,
            keyframe_terms=keyframe_terms,
            keyframe_intrinsics=graph.intrinsics,
            should_stop=record.cancel_event.is_set,
            camera_id=camera_id,
        )
        summary = refinement.summary

        errors = refinement.errors
        inlier_mask = np.isfinite(errors) & (errors <= cfg.inlier_threshold_px)
        num_inliers = int(inlier_mask.sum())
        required = self.config.pnp.min_correspondences
        if num_inliers < required:
            raise InsufficientCorrespondencesError(camera_id, num_inliers, required, 'refinement')
        if not summary.converged:
            logger.warning("Camera %s: refinement stopped after %d iterations without converging",
                           camera_id, summary.iterations)

        inlier_errors = errors[inlier_mask]
        return CalibrationResult(
            camera_id=camera_id,
            state=CameraState.CONVERGED,
            pose=refinement.pose,
            num_inliers=num_inliers,
            num_correspondences=num_correspondences,
            mean_error=float(np.mean(inlier_errors)),
            median_error=float(np.median(inlier_errors)),
            max_error=float(np.max(inlier_errors)),
            rms_error=float(np.sqrt(np.mean(inlier_errors ** 2))),
            iterations=summary.iterations,
            converged=summary.converged,
            termination=summary.termination,
            initial_cost=summary.initial_cost,
            final_cost=summary.final_cost,
            refined_landmarks=refinement.landmark_positions,
            inlier_landmark_ids=tuple(l for l, keep in zip(landmark_ids, inlier_mask) if keep),
        )

    # Batch

    def _calibrate_recorded(self, camera_id: Any) -> CalibrationResult:
        """Calibrate one camera, turning per-camera errors into a failure result."""
        try:
            return self.calibrate(camera_id)
        except MapNotLoadedError:
            raise
        except (CalibrationError, cv2.error, np.linalg.LinAlgError, ValueError) as e:
            with self._lock:
                recorded = self._record(camera_id).result
            if recorded is not None and recorded.error is not None:
                return recorded
            return CalibrationResult.failure(camera_id, CameraState.DIVERGED, e)

    def run(self, observations: Optional[Mapping[Any, FeatureObservations]] = None,
            max_workers: Optional[int] = None) -> Dict[Any, CalibrationResult]:
        """
        Calibrate every registered camera.

        A failing camera yields a failure result and does not affect the
        others. Results are returned in registration order.

        Args:
            observations: Optional ``{camera_id: FeatureObservations}`` stored before running
            max_workers: Thread pool size; falls back to ``batch.max_workers``

        Raises:
            MapNotLoadedError: No map loaded
        """
        self._require_graph()
        if observations:
            for camera_id, camera_observations in observations.items():
                self.add_observations(camera_id, camera_observations)

        camera_ids = self.cameras
        if not camera_ids:
            return {}

        workers = max_workers or self.config.batch.max_workers or min(len(camera_ids),
                                                                      os.cpu_count() or 1)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {cid: pool.submit(self._calibrate_recorded, cid) for cid in camera_ids}
            results = {cid: futures[cid].result() for cid in camera_ids}

        succeeded = sum(1 for r in results.values() if r.succeeded)
        logger.info("Calibrated %d/%d cameras", succeeded, len(results))

        if self.config.batch.apply_landmark_updates:
            self.apply_landmark_updates(results)
        return results

    def apply_landmark_updates(self, results: Union[Mapping[Any, CalibrationResult],
                                                    Iterable[CalibrationResult]]) -> int:
        """
        Merge jointly refined landmark positions into the map.

        Estimates of the same landmark from several cameras are averaged and
        a new graph replaces the current one. Cached correspondences stay
        valid since landmark ids do not change.

        Returns:
            Number of updated landmarks
        """
        if isinstance(results, Mapping):
            results = results.values()

        estimates: Dict[int, List[np.ndarray]] = defaultdict(list)
        for result in results:
            if not result.succeeded:
                continue
            for landmark_id, position in result.refined_landmarks.items():
                estimates[landmark_id].append(np.asarray(position, dtype=np.float64))

        if not estimates:
            return 0

        with self._lock:
            graph = self._require_graph()
            updates = {l: np.mean(positions, axis=0) for l, positions in estimates.items()
                       if graph.has_landmark(l)}
            self._graph = graph.with_landmark_positions(updates)
        logger.info("Updated %d landmark positions", len(updates))
        return len(updates)
