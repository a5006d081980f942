"""
Sparse structure-from-motion map: keyframes, landmarks and the 2D-3D
observations linking them.

All entities are owned by the graph and refer to each other by integer id.
A loaded graph is never mutated; updates produce a new graph.
"""

import logging
import os
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import numpy as np
import yaml
from scipy.spatial import cKDTree

from .camera_models import CameraIntrinsics, intrinsics_from_dict
from .exceptions import ConfigurationError, CorruptMapError, MapIOError, NotFoundError
from .pose import Pose
from .utils import format_pose_value, parse_pose_value

logger = logging.getLogger(__name__)

# A landmark seen by fewer keyframes is under-constrained and never refined
MIN_LANDMARK_OBSERVERS = 2

MAP_FORMAT_VERSION = 1


@dataclass(frozen=True, eq=False)
class Landmark:
    """A 3D point in the map frame."""
    id: int
    position: np.ndarray
    descriptor: Optional[np.ndarray] = None
    observer_ids: Tuple[int, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'position', np.asarray(self.position, dtype=np.float64).ravel())
        if self.descriptor is not None:
            object.__setattr__(self, 'descriptor', np.asarray(self.descriptor).ravel())
        object.__setattr__(self, 'observer_ids', tuple(int(k) for k in self.observer_ids))

    @property
    def is_optimizable(self) -> bool:
        return len(self.observer_ids) >= MIN_LANDMARK_OBSERVERS


@dataclass(frozen=True)
class Observation:
    """A single 2D feature of a keyframe linked to a landmark."""
    keyframe_id: int
    landmark_id: int
    uv: np.ndarray
    descriptor: Optional[np.ndarray] = None


@dataclass(frozen=True, eq=False)
class Keyframe:
    """
    A map camera pose together with its observed features.

    Observations are stored column-wise: ``landmark_ids[i]`` is observed at
    pixel ``keypoints[i]`` with descriptor ``descriptors[i]``.
    """
    id: int
    pose: Pose
    landmark_ids: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    keypoints: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    descriptors: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, 'landmark_ids', np.asarray(self.landmark_ids, dtype=np.int64).ravel())
        object.__setattr__(self, 'keypoints', np.asarray(self.keypoints, dtype=np.float64))
        if self.descriptors is not None:
            object.__setattr__(self, 'descriptors', np.asarray(self.descriptors))

    @property
    def num_observations(self) -> int:
        return int(len(self.landmark_ids))

    def observations(self) -> Iterator[Observation]:
        for i, landmark_id in enumerate(self.landmark_ids):
            descriptor = self.descriptors[i] if self.descriptors is not None else None
            yield Observation(self.id, int(landmark_id), self.keypoints[i], descriptor)


class KeyframeNeighborhood(Sequence):
    """
    Keyframes within a radius of a query position, nearest first.

    The neighbourhood is computed on first access and can be iterated any
    number of times.
    """

    def __init__(self, graph: 'SparseGraph', center: np.ndarray, radius: Optional[float]):
        self._graph = graph
        self._center = np.asarray(center, dtype=np.float64).reshape(3)
        self._radius = radius
        self._ids: Optional[List[int]] = None
        self._distances: Optional[List[float]] = None

    def _resolve(self) -> List[int]:
        if self._ids is None:
            ids, distances = self._graph._query_radius(self._center, self._radius)
            self._ids, self._distances = ids, distances
        return self._ids

    @property
    def ids(self) -> List[int]:
        return list(self._resolve())

    @property
    def distances(self) -> List[float]:
        self._resolve()
        return list(self._distances)

    def __len__(self) -> int:
        return len(self._resolve())

    def __getitem__(self, index):
        ids = self._resolve()
        if isinstance(index, slice):
            return [self._graph.keyframe(k) for k in ids[index]]
        return self._graph.keyframe(ids[index])

    def __iter__(self) -> Iterator[Keyframe]:
        for keyframe_id in self._resolve():
            yield self._graph.keyframe(keyframe_id)


class SparseGraph:
    """
    Keyframes and landmarks indexed by id.

    Construction validates referential integrity and fills each landmark's
    observer list from the keyframe observations.
    """

    def __init__(self, keyframes: Mapping[int, Keyframe], landmarks: Mapping[int, Landmark],
                 intrinsics: Optional[CameraIntrinsics] = None):
        self._keyframes: Dict[int, Keyframe] = {
            int(k): keyframes[k] for k in sorted(keyframes)
        }
        self._landmarks: Dict[int, Landmark] = {
            int(k): landmarks[k] for k in sorted(landmarks)
        }
        self.intrinsics = intrinsics

        self._validate_and_link()

        self._tree_ids = list(self._keyframes)
        if self._tree_ids:
            centers = np.array([self._keyframes[k].pose.center for k in self._tree_ids])
            self._tree = cKDTree(centers)
        else:
            self._tree = None

    # Construction

    @classmethod
    def from_records(cls, keyframes: Iterable[Keyframe], landmarks: Iterable[Landmark],
                     intrinsics: Optional[CameraIntrinsics] = None) -> 'SparseGraph':
        """Build a graph from lists, rejecting duplicate ids."""
        keyframe_map: Dict[int, Keyframe] = {}
        for keyframe in keyframes:
            if keyframe.id in keyframe_map:
                raise CorruptMapError("Duplicate keyframe id", keyframe_id=keyframe.id,
                                      invariant='unique-keyframe-id')
            keyframe_map[keyframe.id] = keyframe

        landmark_map: Dict[int, Landmark] = {}
        for landmark in landmarks:
            if landmark.id in landmark_map:
                raise CorruptMapError("Duplicate landmark id", landmark_id=landmark.id,
                                      invariant='unique-landmark-id')
            landmark_map[landmark.id] = landmark

        return cls(keyframe_map, landmark_map, intrinsics)

    def _validate_and_link(self):
        descriptor_dims = set()
        observers: Dict[int, List[int]] = {lid: [] for lid in self._landmarks}

        for keyframe_id, keyframe in self._keyframes.items():
            if keyframe.id != keyframe_id:
                raise CorruptMapError("Keyframe stored under a different id",
                                      keyframe_id=keyframe.id, invariant='unique-keyframe-id')
            n = keyframe.num_observations
            if n == 0:
                raise CorruptMapError("Keyframe has no landmark observations",
                                      keyframe_id=keyframe_id, invariant='keyframe-observed')
            if keyframe.keypoints.shape != (n, 2):
                raise CorruptMapError("Keypoint array does not match observation count",
                                      keyframe_id=keyframe_id, invariant='observation-shape')
            if not np.all(np.isfinite(keyframe.keypoints)):
                raise CorruptMapError("Non-finite keypoint", keyframe_id=keyframe_id,
                                      invariant='finite-values')
            if keyframe.descriptors is not None:
                if keyframe.descriptors.ndim != 2 or len(keyframe.descriptors) != n:
                    raise CorruptMapError("Descriptor array does not match observation count",
                                          keyframe_id=keyframe_id, invariant='observation-shape')
                descriptor_dims.add((keyframe.descriptors.shape[1], keyframe.descriptors.dtype.kind))

            seen = set()
            for landmark_id in keyframe.landmark_ids:
                landmark_id = int(landmark_id)
                if landmark_id not in self._landmarks:
                    raise CorruptMapError("Observation references a missing landmark",
                                          keyframe_id=keyframe_id, landmark_id=landmark_id,
                                          invariant='observation-landmark-exists')
                if landmark_id in seen:
                    raise CorruptMapError("Keyframe observes a landmark more than once",
                                          keyframe_id=keyframe_id, landmark_id=landmark_id,
                                          invariant='single-observation-per-keyframe')
                seen.add(landmark_id)
                observers[landmark_id].append(keyframe_id)

        for landmark_id, landmark in list(self._landmarks.items()):
            if landmark.id != landmark_id:
                raise CorruptMapError("Landmark stored under a different id",
                                      landmark_id=landmark.id, invariant='unique-landmark-id')
            if landmark.position.shape != (3,) or not np.all(np.isfinite(landmark.position)):
                raise CorruptMapError("Landmark position must be a finite 3-vector",
                                      landmark_id=landmark_id, invariant='finite-values')
            if landmark.descriptor is not None:
                descriptor_dims.add((landmark.descriptor.size, landmark.descriptor.dtype.kind))

            derived = tuple(sorted(observers[landmark_id]))
            if landmark.observer_ids:
                missing = [k for k in landmark.observer_ids if k not in self._keyframes]
                if missing:
                    raise CorruptMapError("Landmark lists a missing observing keyframe",
                                          keyframe_id=missing[0], landmark_id=landmark_id,
                                          invariant='observer-keyframe-exists')
                if tuple(sorted(landmark.observer_ids)) != derived:
                    raise CorruptMapError("Landmark observers disagree with keyframe observations",
                                          landmark_id=landmark_id,
                                          invariant='observer-consistency')
            self._landmarks[landmark_id] = replace(landmark, observer_ids=derived)

        if len(descriptor_dims) > 1:
            raise CorruptMapError("Descriptors of different size or type in one map",
                                  invariant='descriptor-consistency',
                                  descriptor_types=sorted(descriptor_dims))

    # Queries

    def keyframe(self, keyframe_id: int) -> Keyframe:
        try:
            return self._keyframes[keyframe_id]
        except KeyError:
            raise NotFoundError('keyframe', keyframe_id) from None

    def landmark(self, landmark_id: int) -> Landmark:
        try:
            return self._landmarks[landmark_id]
        except KeyError:
            raise NotFoundError('landmark', landmark_id) from None

    @property
    def keyframes(self) -> Mapping[int, Keyframe]:
        return dict(self._keyframes)

    @property
    def landmarks(self) -> Mapping[int, Landmark]:
        return dict(self._landmarks)

    @property
    def keyframe_ids(self) -> List[int]:
        return list(self._keyframes)

    @property
    def landmark_ids(self) -> List[int]:
        return list(self._landmarks)

    @property
    def num_keyframes(self) -> int:
        return len(self._keyframes)

    @property
    def num_landmarks(self) -> int:
        return len(self._landmarks)

    @property
    def num_observations(self) -> int:
        return sum(k.num_observations for k in self._keyframes.values())

    def has_landmark(self, landmark_id: int) -> bool:
        return landmark_id in self._landmarks

    def validate(self) -> None:
        """Re-check referential integrity; raises CorruptMapError on violation."""
        self._validate_and_link()

    def observations(self) -> Iterator[Observation]:
        """Every keyframe observation, by keyframe id then feature order."""
        for keyframe in self._keyframes.values():
            yield from keyframe.observations()

    def keyframes_near(self, pose: Pose, radius: Optional[float]) -> KeyframeNeighborhood:
        """
        Keyframes whose centre lies within ``radius`` metres of ``pose``.

        ``radius=None`` selects every keyframe. Ordered by ascending distance,
        ties broken by keyframe id.
        """
        if radius is not None and radius < 0:
            raise ValueError(f"Search radius must be non-negative, got {radius}")
        return KeyframeNeighborhood(self, pose.center, radius)

    def _query_radius(self, center: np.ndarray,
                      radius: Optional[float]) -> Tuple[List[int], List[float]]:
        if self._tree is None:
            return [], []
        if radius is None or np.isinf(radius):
            indices = range(len(self._tree_ids))
        else:
            indices = self._tree.query_ball_point(center, radius)
        candidates = []
        for i in indices:
            keyframe_id = self._tree_ids[i]
            distance = float(np.linalg.norm(self._tree.data[i] - center))
            candidates.append((distance, keyframe_id))
        candidates.sort()
        return [k for _, k in candidates], [d for d, _ in candidates]

    def landmarks_observed_by(self, keyframe_ids: Iterable[int]) -> List[int]:
        """Sorted ids of every landmark observed by any of the keyframes."""
        landmark_ids = set()
        for keyframe_id in keyframe_ids:
            landmark_ids.update(int(l) for l in self.keyframe(keyframe_id).landmark_ids)
        return sorted(landmark_ids)

    def landmark_descriptors(self, landmark_ids: Iterable[int],
                             keyframe_ids: Optional[Iterable[int]] = None
                             ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Stack every descriptor available for the given landmarks.

        A landmark contributes its own descriptor (if any) plus the descriptor
        of each keyframe observation (restricted to ``keyframe_ids`` when
        given).

        Returns:
            Tuple of (descriptors (M, D), owning landmark id per row (M,))
        """
        wanted = set(int(l) for l in landmark_ids)
        allowed = None if keyframe_ids is None else set(keyframe_ids)
        rows: List[np.ndarray] = []
        owners: List[int] = []

        for landmark_id in sorted(wanted):
            descriptor = self.landmark(landmark_id).descriptor
            if descriptor is not None:
                rows.append(descriptor)
                owners.append(landmark_id)

        for keyframe_id, keyframe in self._keyframes.items():
            if keyframe.descriptors is None or (allowed is not None and keyframe_id not in allowed):
                continue
            for i, landmark_id in enumerate(keyframe.landmark_ids):
                if int(landmark_id) in wanted:
                    rows.append(keyframe.descriptors[i])
                    owners.append(int(landmark_id))

        if not rows:
            return np.zeros((0, 0)), np.zeros(0, dtype=np.int64)
        return np.vstack(rows), np.array(owners, dtype=np.int64)

    def with_landmark_positions(self, updates: Mapping[int, np.ndarray]) -> 'SparseGraph':
        """Copy of the graph with some landmark positions replaced."""
        landmarks = dict(self._landmarks)
        for landmark_id, position in updates.items():
            landmark = self.landmark(landmark_id)
            landmarks[landmark_id] = replace(
                landmark, position=np.asarray(position, dtype=np.float64).reshape(3).copy()
            )
        return SparseGraph(self._keyframes, landmarks, self.intrinsics)

    def __repr__(self) -> str:
        return (f"SparseGraph(keyframes={self.num_keyframes}, landmarks={self.num_landmarks}, "
                f"observations={self.num_observations})")

    # Persistence

    @classmethod
    def load(cls, source: str) -> 'SparseGraph':
        """
        Load a map from a YAML or ``.npz`` file.

        Raises:
            MapIOError: the file cannot be read
            CorruptMapError: the content is malformed or violates an invariant
        """
        source = os.fspath(source)
        if source.lower().endswith('.npz'):
            graph = _load_npz(source)
        else:
            graph = _load_yaml(source)
        logger.info("Loaded map %s: %d keyframes, %d landmarks, %d observations",
                    source, graph.num_keyframes, graph.num_landmarks, graph.num_observations)
        return graph

    def save(self, path: str) -> None:
        """Write the map as YAML or ``.npz`` depending on the file suffix."""
        path = os.fspath(path)
        if path.lower().endswith('.npz'):
            _save_npz(self, path)
        else:
            _save_yaml(self, path)


def load_sparse_graph(source: str) -> SparseGraph:
    return SparseGraph.load(source)


def save_sparse_graph(graph: SparseGraph, path: str) -> None:
    graph.save(path)


# YAML layout

def _descriptor_dtype(name: str) -> np.dtype:
    if name not in ('float32', 'uint8'):
        raise ValueError(f"Unsupported descriptor type {name!r}")
    return np.dtype(name)


def _load_yaml(path: str) -> SparseGraph:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise MapIOError(path, str(e)) from e
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise CorruptMapError(f"Map is not valid YAML: {e}", path=path,
                              invariant='parseable') from e

    if not isinstance(document, dict):
        raise CorruptMapError("Map document must be a mapping", path=path, invariant='schema')
    data = document.get('sparse_graph', document)

    try:
        dtype = _descriptor_dtype(data.get('descriptor_type', 'float32'))

        intrinsics = None
        if data.get('camera'):
            intrinsics = intrinsics_from_dict(data['camera'])

        keyframes = []
        for entry in data.get('keyframes') or []:
            keyframe_id = int(entry['id'])
            translation, quaternion = parse_pose_value(entry['pose'], f"keyframe {keyframe_id}")
            observations = entry.get('observations') or []
            landmark_ids = np.array([int(o['landmark']) for o in observations], dtype=np.int64)
            keypoints = np.array([o['uv'] for o in observations],
                                 dtype=np.float64).reshape(-1, 2)
            descriptors = None
            if observations and all(o.get('descriptor') is not None for o in observations):
                descriptors = np.array([o['descriptor'] for o in observations], dtype=dtype)
            keyframes.append(Keyframe(
                id=keyframe_id,
                pose=Pose.from_quaternion(quaternion, translation),
                landmark_ids=landmark_ids,
                keypoints=keypoints,
                descriptors=descriptors,
            ))

        landmarks = []
        for entry in data.get('landmarks') or []:
            descriptor = entry.get('descriptor')
            landmarks.append(Landmark(
                id=int(entry['id']),
                position=np.array(entry['position'], dtype=np.float64).ravel(),
                descriptor=np.array(descriptor, dtype=dtype) if descriptor is not None else None,
                observer_ids=tuple(int(k) for k in entry.get('observers') or ()),
            ))
    except CorruptMapError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError, ConfigurationError) as e:
        raise CorruptMapError(f"Malformed map entry: {e}", path=path, invariant='schema') from e

    return SparseGraph.from_records(keyframes, landmarks, intrinsics)


def _save_yaml(graph: SparseGraph, path: str) -> None:
    dtype_name = 'float32'
    keyframe_entries = []
    for keyframe in graph.keyframes.values():
        if keyframe.descriptors is not None and keyframe.descriptors.dtype == np.uint8:
            dtype_name = 'uint8'
        observations = []
        for obs in keyframe.observations():
            item = {'landmark': obs.landmark_id, 'uv': [float(v) for v in obs.uv]}
            if obs.descriptor is not None:
                item['descriptor'] = obs.descriptor.tolist()
            observations.append(item)
        keyframe_entries.append({
            'id': keyframe.id,
            'pose': format_pose_value(keyframe.pose.translation, keyframe.pose.quaternion),
            'observations': observations,
        })

    landmark_entries = []
    for landmark in graph.landmarks.values():
        item = {
            'id': landmark.id,
            'position': [float(v) for v in landmark.position],
            'observers': list(landmark.observer_ids),
        }
        if landmark.descriptor is not None:
            if landmark.descriptor.dtype == np.uint8:
                dtype_name = 'uint8'
            item['descriptor'] = landmark.descriptor.tolist()
        landmark_entries.append(item)

    data = {
        'version': MAP_FORMAT_VERSION,
        'descriptor_type': dtype_name,
        'keyframes': keyframe_entries,
        'landmarks': landmark_entries,
    }
    if graph.intrinsics is not None:
        data['camera'] = graph.intrinsics.to_dict()

    with open(path, 'w') as f:
        yaml.safe_dump({'sparse_graph': data}, f, sort_keys=False)


# NPZ layout

def _load_npz(path: str) -> SparseGraph:
    try:
        with np.load(path, allow_pickle=False) as data:
            arrays = {key: data[key] for key in data.files}
    except OSError as e:
        raise MapIOError(path, str(e)) from e
    except (ValueError, zipfile.BadZipFile) as e:
        raise CorruptMapError(f"Map is not a valid npz archive: {e}", path=path,
                              invariant='parseable') from e

    try:
        keyframe_ids = arrays['keyframe_ids'].astype(np.int64)
        keyframe_poses = arrays['keyframe_poses'].reshape(-1, 7)
        obs_keyframe_ids = arrays['obs_keyframe_ids'].astype(np.int64)
        obs_landmark_ids = arrays['obs_landmark_ids'].astype(np.int64)
        obs_uvs = arrays['obs_uvs'].astype(np.float64).reshape(-1, 2)
        obs_descriptors = arrays.get('obs_descriptors')
        landmark_ids = arrays['landmark_ids'].astype(np.int64)
        landmark_positions = arrays['landmark_positions'].astype(np.float64).reshape(-1, 3)
        landmark_descriptors = arrays.get('landmark_descriptors')
        has_descriptor = arrays.get('landmark_has_descriptor')

        if len(keyframe_poses) != len(keyframe_ids):
            raise ValueError("keyframe_poses and keyframe_ids differ in length")
        if not (len(obs_keyframe_ids) == len(obs_landmark_ids) == len(obs_uvs)):
            raise ValueError("observation arrays differ in length")
        if len(landmark_positions) != len(landmark_ids):
            raise ValueError("landmark_positions and landmark_ids differ in length")
        if obs_descriptors is not None and len(obs_descriptors) != len(obs_uvs):
            raise ValueError("obs_descriptors and obs_uvs differ in length")
        if landmark_descriptors is not None and len(landmark_descriptors) != len(landmark_ids):
            raise ValueError("landmark_descriptors and landmark_ids differ in length")
        if has_descriptor is not None and len(has_descriptor) != len(landmark_ids):
            raise ValueError("landmark_has_descriptor and landmark_ids differ in length")

        known_keyframes = set(int(k) for k in keyframe_ids)
        for keyframe_id in obs_keyframe_ids:
            if int(keyframe_id) not in known_keyframes:
                raise CorruptMapError("Observation references a missing keyframe",
                                      keyframe_id=int(keyframe_id),
                                      invariant='observation-keyframe-exists')

        keyframes = []
        for keyframe_id, value in zip(keyframe_ids, keyframe_poses):
            translation, quaternion = parse_pose_value(value)
            rows = np.flatnonzero(obs_keyframe_ids == keyframe_id)
            keyframes.append(Keyframe(
                id=int(keyframe_id),
                pose=Pose.from_quaternion(quaternion, translation),
                landmark_ids=obs_landmark_ids[rows],
                keypoints=obs_uvs[rows],
                descriptors=obs_descriptors[rows] if obs_descriptors is not None else None,
            ))

        landmarks = []
        for i, landmark_id in enumerate(landmark_ids):
            descriptor = None
            if landmark_descriptors is not None and (has_descriptor is None or has_descriptor[i]):
                descriptor = landmark_descriptors[i]
            landmarks.append(Landmark(int(landmark_id), landmark_positions[i], descriptor))

        intrinsics = None
        if 'camera_matrix' in arrays:
            intrinsics = intrinsics_from_dict({
                'camera_matrix': arrays['camera_matrix'],
                'dist_coeffs': arrays.get('dist_coeffs', np.zeros(0)),
                'distortion_model': str(arrays.get('distortion_model', 'pinhole')),
            })
    except CorruptMapError:
        raise
    except (KeyError, IndexError, TypeError, ValueError, ConfigurationError) as e:
        raise CorruptMapError(f"Malformed map arrays: {e}", path=path, invariant='schema') from e

    return SparseGraph.from_records(keyframes, landmarks, intrinsics)


def _save_npz(graph: SparseGraph, path: str) -> None:
    keyframes = list(graph.keyframes.values())
    landmarks = list(graph.landmarks.values())

    arrays = {
        'keyframe_ids': np.array([k.id for k in keyframes], dtype=np.int64),
        'keyframe_poses': np.array([
            format_pose_value(k.pose.translation, k.pose.quaternion) for k in keyframes
        ]).reshape(-1, 7),
        'obs_keyframe_ids': np.concatenate(
            [np.full(k.num_observations, k.id, dtype=np.int64) for k in keyframes]
        ) if keyframes else np.zeros(0, dtype=np.int64),
        'obs_landmark_ids': np.concatenate(
            [k.landmark_ids for k in keyframes]
        ).astype(np.int64) if keyframes else np.zeros(0, dtype=np.int64),
        'obs_uvs': np.vstack([k.keypoints for k in keyframes]) if keyframes else np.zeros((0, 2)),
        'landmark_ids': np.array([l.id for l in landmarks], dtype=np.int64),
        'landmark_positions': np.array([l.position for l in landmarks]).reshape(-1, 3),
    }

    if keyframes and all(k.descriptors is not None for k in keyframes):
        arrays['obs_descriptors'] = np.vstack([k.descriptors for k in keyframes])

    with_descriptor = [l for l in landmarks if l.descriptor is not None]
    if with_descriptor:
        template = with_descriptor[0].descriptor
        stacked = np.zeros((len(landmarks), template.size), dtype=template.dtype)
        has_descriptor = np.zeros(len(landmarks), dtype=bool)
        for i, landmark in enumerate(landmarks):
            if landmark.descriptor is not None:
                stacked[i] = landmark.descriptor
                has_descriptor[i] = True
        arrays['landmark_descriptors'] = stacked
        arrays['landmark_has_descriptor'] = has_descriptor

    if graph.intrinsics is not None:
        arrays['camera_matrix'] = graph.intrinsics.camera_matrix
        arrays['dist_coeffs'] = graph.intrinsics.dist_coeffs
        arrays['distortion_model'] = np.array(graph.intrinsics.model)

    np.savez(path, **arrays)
