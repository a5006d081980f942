"""
Camera intrinsics models.

A closed set of projection models is supported: plain pinhole, pinhole with
radial-tangential (plumb bob) distortion and fisheye (equidistant /
Kannala-Brandt). All of them share the ``CameraIntrinsics`` interface used
by correspondence verification and by the optimizer.
"""

import cv2
import numpy as np
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field

from .exceptions import ConfigurationError
from .utils import load_intrinsics, parse_intrinsics


PINHOLE = 'pinhole'
RADTAN = 'radtan'
FISHEYE = 'fisheye'

# Distortion model names found in intrinsics files
MODEL_ALIASES = {
    'none': PINHOLE,
    'pinhole': PINHOLE,
    'plumb_bob': RADTAN,
    'radtan': RADTAN,
    'rational_polynomial': RADTAN,
    'equidistant': FISHEYE,
    'fisheye': FISHEYE,
    'kb4': FISHEYE,
    'kannala_brandt': FISHEYE,
}

# Points closer to the image plane than this are treated as behind the camera
MIN_DEPTH = 1e-9


@dataclass(frozen=True, eq=False)
class CameraIntrinsics:
    """Focal lengths, principal point and (model specific) distortion."""
    fx: float
    fy: float
    cx: float
    cy: float
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(0))
    image_size: Optional[Tuple[int, int]] = None
    name: str = 'unknown'

    model = PINHOLE

    def __post_init__(self):
        if not (self.fx > 0 and self.fy > 0):
            raise ConfigurationError("Focal lengths must be positive",
                                     {'camera': self.name, 'fx': self.fx, 'fy': self.fy})
        coeffs = np.array(self.dist_coeffs, dtype=np.float64).ravel()
        coeffs.setflags(write=False)
        object.__setattr__(self, 'dist_coeffs', coeffs)

    @property
    def camera_matrix(self) -> np.ndarray:
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ])

    def project(self, points_cam: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Project (N, 3) camera-frame points to pixels.

        Returns:
            Tuple of (pixels (N, 2), valid mask (N,)) where invalid points lie
            behind the camera. Their pixels are NaN.
        """
        points_cam = np.asarray(points_cam, dtype=np.float64).reshape(-1, 3)
        valid = points_cam[:, 2] > MIN_DEPTH
        pixels = np.full((len(points_cam), 2), np.nan)
        if np.any(valid):
            pixels[valid] = self._project_valid(points_cam[valid])
        return pixels, valid

    def _project_valid(self, points_cam: np.ndarray) -> np.ndarray:
        x = points_cam[:, 0] / points_cam[:, 2]
        y = points_cam[:, 1] / points_cam[:, 2]
        return np.column_stack([self.fx * x + self.cx, self.fy * y + self.cy])

    def undistort(self, pixels: np.ndarray) -> np.ndarray:
        """
        Remove lens distortion from (N, 2) pixels.

        Returns the pixels an ideal pinhole camera with the same
        ``camera_matrix`` would have observed.
        """
        return np.asarray(pixels, dtype=np.float64).reshape(-1, 2).copy()

    def to_dict(self) -> Dict[str, Any]:
        """Intrinsics in the calibration YAML layout."""
        data = {
            'camera_name': self.name,
            'distortion_model': self.model,
            'camera_matrix': {'rows': 3, 'cols': 3,
                              'data': [float(v) for v in self.camera_matrix.ravel()]},
            'distortion_coefficients': {'rows': 1, 'cols': int(self.dist_coeffs.size),
                                        'data': [float(v) for v in self.dist_coeffs]},
        }
        if self.image_size is not None:
            data['image_width'] = int(self.image_size[0])
            data['image_height'] = int(self.image_size[1])
        return data


class PinholeIntrinsics(CameraIntrinsics):
    """Ideal pinhole camera without distortion."""
    model = PINHOLE


class RadtanIntrinsics(CameraIntrinsics):
    """Pinhole camera with OpenCV plumb bob distortion (k1, k2, p1, p2[, k3...])."""
    model = RADTAN

    def _project_valid(self, points_cam: np.ndarray) -> np.ndarray:
        projected, _ = cv2.projectPoints(
            points_cam.reshape(-1, 1, 3), np.zeros(3), np.zeros(3),
            self.camera_matrix, self.dist_coeffs
        )
        return projected.reshape(-1, 2)

    def undistort(self, pixels: np.ndarray) -> np.ndarray:
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 1, 2)
        if len(pixels) == 0:
            return pixels.reshape(0, 2)
        undistorted = cv2.undistortPoints(
            pixels, self.camera_matrix, self.dist_coeffs, P=self.camera_matrix
        )
        return undistorted.reshape(-1, 2)


class FisheyeIntrinsics(CameraIntrinsics):
    """Equidistant fisheye camera (k1, k2, k3, k4)."""
    model = FISHEYE

    def __post_init__(self):
        super().__post_init__()
        coeffs = np.zeros(4)
        n = min(4, self.dist_coeffs.size)
        coeffs[:n] = self.dist_coeffs[:n]
        coeffs.setflags(write=False)
        object.__setattr__(self, 'dist_coeffs', coeffs)

    def _project_valid(self, points_cam: np.ndarray) -> np.ndarray:
        projected, _ = cv2.fisheye.projectPoints(
            points_cam.reshape(-1, 1, 3), np.zeros((3, 1)), np.zeros((3, 1)),
            self.camera_matrix, self.dist_coeffs.reshape(4, 1)
        )
        return projected.reshape(-1, 2)

    def undistort(self, pixels: np.ndarray) -> np.ndarray:
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 1, 2)
        if len(pixels) == 0:
            return pixels.reshape(0, 2)
        undistorted = cv2.fisheye.undistortPoints(
            pixels, self.camera_matrix, self.dist_coeffs.reshape(4, 1),
            P=self.camera_matrix
        )
        return undistorted.reshape(-1, 2)


_MODEL_CLASSES = {
    PINHOLE: PinholeIntrinsics,
    RADTAN: RadtanIntrinsics,
    FISHEYE: FisheyeIntrinsics,
}


def intrinsics_from_dict(data: Dict[str, Any]) -> CameraIntrinsics:
    """
    Build a model variant from an intrinsics mapping.

    Accepts either the raw YAML layout or the normalized dict returned by
    ``utils.load_intrinsics``.
    """
    try:
        parsed = data if 'dist_coeffs' in data else parse_intrinsics(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed intrinsics: {e}") from e

    model_name = str(parsed.get('distortion_model') or 'pinhole').lower()
    if model_name not in MODEL_ALIASES:
        raise ConfigurationError(f"Unknown distortion model: {model_name}",
                                 {'camera': parsed.get('camera_name', 'unknown')})
    model = MODEL_ALIASES[model_name]

    dist_coeffs = np.asarray(parsed.get('dist_coeffs', np.zeros(0)), dtype=np.float64)
    # A radtan model without any non-zero coefficient is a plain pinhole
    if model == RADTAN and not np.any(dist_coeffs):
        model = PINHOLE

    K = np.asarray(parsed['camera_matrix'], dtype=np.float64).reshape(3, 3)
    cls = _MODEL_CLASSES[model]
    return cls(
        fx=float(K[0, 0]), fy=float(K[1, 1]), cx=float(K[0, 2]), cy=float(K[1, 2]),
        dist_coeffs=dist_coeffs if model != PINHOLE else np.zeros(0),
        image_size=parsed.get('image_size'),
        name=parsed.get('camera_name', 'unknown'),
    )


def load_camera_intrinsics(path: str) -> CameraIntrinsics:
    """Load an intrinsics YAML file into a model variant."""
    return intrinsics_from_dict(load_intrinsics(path))
