"""
Rigid-body pose used for keyframes and camera extrinsics.

A Pose maps points from a camera frame into the map frame (camera -> map),
so its translation is the camera centre expressed in map coordinates.
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .utils import (
    quaternion_from_matrix, matrix_from_quaternion, orthonormalize,
    rotation_from_vector, vector_from_rotation, invert_transform,
)

# Allowed drift of R^T R from identity before a rotation is rejected outright
_ORTHONORMAL_TOLERANCE = 1e-3


@dataclass(frozen=True, eq=False)
class Pose:
    """
    Rotation + translation with an optional 6x6 covariance.

    The covariance is ordered (rotation, translation); the rotation block is
    expressed in the body-frame tangent space used by ``perturbed``.
    """
    rotation: np.ndarray
    translation: np.ndarray
    covariance: Optional[np.ndarray] = field(default=None)

    def __post_init__(self):
        R = np.array(self.rotation, dtype=np.float64).reshape(3, 3)
        t = np.array(self.translation, dtype=np.float64).reshape(3)

        if not np.all(np.isfinite(R)) or not np.all(np.isfinite(t)):
            raise ValueError("Pose contains non-finite values")
        if np.linalg.norm(R.T @ R - np.eye(3)) > _ORTHONORMAL_TOLERANCE:
            raise ValueError("Rotation is not orthonormal")
        if np.linalg.det(R) < 0:
            raise ValueError("Rotation is a reflection (det < 0)")

        R = orthonormalize(R)
        R.setflags(write=False)
        t.setflags(write=False)
        object.__setattr__(self, 'rotation', R)
        object.__setattr__(self, 'translation', t)

        if self.covariance is not None:
            cov = np.array(self.covariance, dtype=np.float64).reshape(6, 6)
            cov.setflags(write=False)
            object.__setattr__(self, 'covariance', cov)

    @classmethod
    def identity(cls) -> 'Pose':
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_quaternion(cls, quaternion, translation, covariance=None) -> 'Pose':
        """Build from quaternion [x, y, z, w] and translation."""
        return cls(matrix_from_quaternion(np.asarray(quaternion, dtype=np.float64)),
                   translation, covariance)

    @classmethod
    def from_rotation_vector(cls, rvec, translation, covariance=None) -> 'Pose':
        return cls(rotation_from_vector(rvec), translation, covariance)

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> 'Pose':
        T = np.asarray(T, dtype=np.float64)
        return cls(T[:3, :3], T[:3, 3])

    @classmethod
    def from_world_to_camera(cls, rvec, tvec) -> 'Pose':
        """Convert an OpenCV (rvec, tvec) map->camera transform to a camera->map Pose."""
        R_cw = rotation_from_vector(rvec)
        t_cw = np.asarray(tvec, dtype=np.float64).reshape(3)
        return cls(R_cw.T, -R_cw.T @ t_cw)

    @property
    def quaternion(self) -> np.ndarray:
        return quaternion_from_matrix(self.rotation)

    @property
    def rotation_vector(self) -> np.ndarray:
        return vector_from_rotation(self.rotation)

    @property
    def center(self) -> np.ndarray:
        return self.translation

    def matrix(self) -> np.ndarray:
        """4x4 homogeneous transformation matrix."""
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> 'Pose':
        return Pose.from_matrix(invert_transform(self.matrix()))

    def compose(self, other: 'Pose') -> 'Pose':
        """self * other (other applied first)."""
        return Pose(self.rotation @ other.rotation,
                    self.rotation @ other.translation + self.translation)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the pose to (N, 3) points."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.rotation.T + self.translation

    def to_camera(self, points: np.ndarray) -> np.ndarray:
        """Map-frame (N, 3) points into this camera's frame."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return (points - self.translation) @ self.rotation

    def world_to_camera(self):
        """OpenCV-style (rvec, tvec) of the map->camera transform."""
        R_cw = self.rotation.T
        return vector_from_rotation(R_cw), -R_cw @ self.translation

    def perturbed(self, delta: np.ndarray) -> 'Pose':
        """
        Apply a 6-vector tangent update (rotation, translation).

        The rotation part is right-multiplied (body frame) and the result is
        re-orthonormalized.
        """
        delta = np.asarray(delta, dtype=np.float64).reshape(6)
        R = orthonormalize(self.rotation @ rotation_from_vector(delta[:3]))
        return Pose(R, self.translation + delta[3:])

    def with_covariance(self, covariance: Optional[np.ndarray]) -> 'Pose':
        return Pose(self.rotation, self.translation, covariance)

    def distance_to(self, other: 'Pose') -> float:
        return float(np.linalg.norm(self.translation - other.translation))

    def angle_to(self, other: 'Pose') -> float:
        """Rotation angle (radians) between the two orientations."""
        R_rel = self.rotation.T @ other.rotation
        return float(np.linalg.norm(vector_from_rotation(R_rel)))

    def is_close(self, other: 'Pose', translation_tol: float = 1e-6,
                 angle_tol: float = 1e-6) -> bool:
        return (self.distance_to(other) <= translation_tol
                and self.angle_to(other) <= angle_tol)

    def __repr__(self) -> str:
        t = self.translation
        q = self.quaternion
        return (f"Pose(t=[{t[0]:.4f}, {t[1]:.4f}, {t[2]:.4f}], "
                f"q=[{q[0]:.4f}, {q[1]:.4f}, {q[2]:.4f}, {q[3]:.4f}])")
