"""
Synthetic sparse maps and camera captures with known ground truth.

Landmarks are scattered in a slab in front of a short row of keyframes
looking along +z. Captures of a camera at a chosen pose can be generated with
pixel noise, gross outliers and descriptors derived from the landmark
descriptors, which is enough to exercise matching, PnP and refinement.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .camera_models import CameraIntrinsics, PinholeIntrinsics
from .correspondence_finder import FeatureObservations
from .pose import Pose
from .sparse_graph import Keyframe, Landmark, SparseGraph

# Outliers are placed at least this far (pixels) from the true projection
OUTLIER_MIN_OFFSET_PX = 20.0


def default_intrinsics() -> CameraIntrinsics:
    """640x480 pinhole camera with a 500 px focal length."""
    return PinholeIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0,
                             image_size=(640, 480), name='synthetic')


def default_camera_pose(index: int = 0) -> Pose:
    """A camera pose that sees most of the synthetic landmarks."""
    return Pose.from_rotation_vector(
        [0.03, -0.05 + 0.04 * index, 0.02],
        [0.4 + 0.6 * index, -0.3, 0.6],
    )


def _perturb_descriptor(descriptor: np.ndarray, rng: np.random.Generator,
                        noise: float, bit_flips: int) -> np.ndarray:
    if descriptor.dtype == np.uint8:
        bits = np.unpackbits(descriptor)
        flip = rng.choice(bits.size, size=min(bit_flips, bits.size), replace=False)
        bits[flip] ^= 1
        return np.packbits(bits)
    return (descriptor + rng.normal(0.0, noise, descriptor.shape)).astype(descriptor.dtype)


def _in_image(pixels: np.ndarray, valid: np.ndarray, image_size, margin: float = 1.0) -> np.ndarray:
    width, height = image_size
    inside = valid.copy()
    inside[valid] = ((pixels[valid, 0] >= margin) & (pixels[valid, 0] <= width - margin)
                     & (pixels[valid, 1] >= margin) & (pixels[valid, 1] <= height - margin))
    return inside


@dataclass(eq=False)
class SyntheticCapture:
    """Observations of one camera with their ground truth."""
    pose: Pose
    observations: FeatureObservations
    landmark_ids: np.ndarray        # true landmark of each feature
    outlier_mask: np.ndarray        # features with a corrupted pixel position

    @property
    def num_outliers(self) -> int:
        return int(self.outlier_mask.sum())


@dataclass(eq=False)
class SyntheticScene:
    """A SparseGraph with the intrinsics used to generate it."""
    graph: SparseGraph
    intrinsics: CameraIntrinsics
    descriptor_noise: float = 0.05
    descriptor_bit_flips: int = 4

    def observe(self, pose: Pose, num_correspondences: int, num_outliers: int = 0,
                noise_px: float = 0.0, seed: int = 0, use_hints: bool = False,
                intrinsics: Optional[CameraIntrinsics] = None) -> SyntheticCapture:
        """
        Capture ``num_correspondences`` visible landmarks from ``pose``.

        The first ``num_outliers`` features keep the correct descriptor but
        get a random pixel position, so they pass matching and must be
        rejected geometrically.
        """
        if num_outliers > num_correspondences:
            raise ValueError("More outliers than correspondences requested")
        intrinsics = intrinsics or self.intrinsics
        rng = np.random.default_rng(seed)

        landmark_ids = np.array(self.graph.landmark_ids, dtype=np.int64)
        positions = np.array([self.graph.landmark(l).position for l in landmark_ids])
        pixels, valid = intrinsics.project(pose.to_camera(positions))
        visible = np.flatnonzero(_in_image(pixels, valid, intrinsics.image_size or (640, 480)))
        if len(visible) < num_correspondences:
            raise ValueError(f"Only {len(visible)} landmarks visible, "
                             f"{num_correspondences} requested")

        chosen = rng.choice(visible, size=num_correspondences, replace=False)
        keypoints = pixels[chosen].copy()
        if noise_px > 0:
            keypoints += rng.normal(0.0, noise_px, keypoints.shape)

        width, height = intrinsics.image_size or (640, 480)
        outlier_mask = np.zeros(num_correspondences, dtype=bool)
        for i in range(num_outliers):
            while True:
                candidate = rng.uniform([0.0, 0.0], [width, height])
                if np.linalg.norm(candidate - pixels[chosen[i]]) >= OUTLIER_MIN_OFFSET_PX:
                    break
            keypoints[i] = candidate
            outlier_mask[i] = True

        descriptors = None
        first = self.graph.landmark(int(landmark_ids[0])).descriptor
        if first is not None:
            descriptors = np.array([
                _perturb_descriptor(self.graph.landmark(int(landmark_ids[j])).descriptor, rng,
                                    self.descriptor_noise, self.descriptor_bit_flips)
                for j in chosen
            ])

        hints = landmark_ids[chosen].copy() if use_hints else None
        observations = FeatureObservations(keypoints, descriptors, hints)
        return SyntheticCapture(pose, observations, landmark_ids[chosen].copy(), outlier_mask)


def make_scene(num_keyframes: int = 3, num_landmarks: int = 50, seed: int = 0,
               intrinsics: Optional[CameraIntrinsics] = None,
               descriptor_dim: int = 32, descriptor_type: str = 'float32',
               include_map_intrinsics: bool = True,
               keyframe_spacing: float = 1.0) -> SyntheticScene:
    """
    Build a synthetic map.

    Args:
        num_keyframes: Keyframes placed along the x axis, ``keyframe_spacing`` apart
        num_landmarks: Landmarks in x [-3, 3], y [-2, 2], z [8, 12] metres
        seed: Random seed
        intrinsics: Mapping camera (default 640x480 pinhole, f=500)
        descriptor_dim: Descriptor length (bytes for uint8); 0 for no descriptors
        descriptor_type: 'float32' (L2) or 'uint8' (Hamming)
        include_map_intrinsics: Store the mapping camera in the graph
        keyframe_spacing: Distance between neighbouring keyframes (metres)

    Returns:
        SyntheticScene
    """
    if descriptor_type not in ('float32', 'uint8'):
        raise ValueError(f"Unsupported descriptor type: {descriptor_type}")
    rng = np.random.default_rng(seed)
    intrinsics = intrinsics or default_intrinsics()
    image_size = intrinsics.image_size or (640, 480)
    scene = SyntheticScene(None, intrinsics)

    positions = rng.uniform([-3.0, -2.0, 8.0], [3.0, 2.0, 12.0], size=(num_landmarks, 3))
    landmark_ids = np.arange(num_landmarks, dtype=np.int64)

    if descriptor_dim <= 0:
        landmark_descriptors = [None] * num_landmarks
    elif descriptor_type == 'uint8':
        landmark_descriptors = list(rng.integers(0, 256, size=(num_landmarks, descriptor_dim),
                                                 dtype=np.uint8))
    else:
        landmark_descriptors = list(rng.normal(0.0, 1.0, size=(num_landmarks, descriptor_dim))
                                    .astype(np.float32))

    keyframes = []
    offset = (num_keyframes - 1) / 2.0
    for k in range(num_keyframes):
        pose = Pose.from_rotation_vector([0.0, 0.05 * (k - offset), 0.0],
                                         [keyframe_spacing * (k - offset), 0.0, 0.0])
        pixels, valid = intrinsics.project(pose.to_camera(positions))
        seen = np.flatnonzero(_in_image(pixels, valid, image_size))
        descriptors = None
        if descriptor_dim > 0:
            descriptors = np.array([
                _perturb_descriptor(landmark_descriptors[j], rng, scene.descriptor_noise,
                                    scene.descriptor_bit_flips)
                for j in seen
            ])
        keyframes.append(Keyframe(k, pose, landmark_ids[seen], pixels[seen], descriptors))

    landmarks = [Landmark(int(l), positions[l], landmark_descriptors[l]) for l in landmark_ids]
    scene.graph = SparseGraph.from_records(
        keyframes, landmarks, intrinsics if include_map_intrinsics else None)
    return scene
