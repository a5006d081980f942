"""
Utility functions for infrastructure camera calibration.
"""

import cv2
import numpy as np
import yaml
import os
from typing import Dict, Any, Iterable, Optional, Tuple


def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML document, skipping leading comment blocks."""
    with open(path, 'r') as f:
        content = f.read()
    lines = [l for l in content.split('\n') if not l.strip().startswith('#')]
    data = yaml.safe_load('\n'.join(lines))
    return data if data is not None else {}


def load_cameras_config(config_path: str) -> Dict[str, Any]:
    """
    Load the infrastructure cameras configuration from YAML.

    Relative ``intrinsics_file`` and ``observations_file`` entries are
    resolved against the directory of the config file.
    """
    config = load_yaml(config_path)
    base_dir = os.path.dirname(os.path.abspath(config_path))

    cameras = config.get('cameras') or {}
    for cam_config in cameras.values():
        for key in ('intrinsics_file', 'observations_file'):
            value = cam_config.get(key)
            if value and not os.path.isabs(value):
                cam_config[key] = os.path.join(base_dir, value)
    config['cameras'] = cameras
    return config


def load_intrinsics(intrinsics_path: str) -> Dict[str, Any]:
    """
    Load camera intrinsics from YAML file.

    Returns dict with:
        - camera_matrix: 3x3 numpy array
        - dist_coeffs: distortion coefficients
        - distortion_model: string
        - image_size: (width, height) or None
        - camera_name: string
    """
    return parse_intrinsics(load_yaml(intrinsics_path))


def parse_intrinsics(data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize an intrinsics mapping in the calibration YAML layout."""
    k_data = data['camera_matrix']
    if isinstance(k_data, dict):
        k_data = k_data['data']
    camera_matrix = np.array(k_data, dtype=np.float64).reshape(3, 3)

    d_data = data.get('distortion_coefficients', [])
    if isinstance(d_data, dict):
        d_data = d_data.get('data', [])
    dist_coeffs = np.array(d_data if d_data is not None else [], dtype=np.float64).ravel()

    image_size = None
    if 'image_width' in data and 'image_height' in data:
        image_size = (int(data['image_width']), int(data['image_height']))

    return {
        'camera_matrix': camera_matrix,
        'dist_coeffs': dist_coeffs,
        'distortion_model': data.get('distortion_model', 'plumb_bob'),
        'image_size': image_size,
        'camera_name': data.get('camera_name', 'unknown'),
    }


def quaternion_from_matrix(R: np.ndarray) -> np.ndarray:
    """
    Convert a 3x3 rotation matrix to quaternion [x, y, z, w].

    The returned quaternion has a non-negative w component.
    """
    trace = np.trace(R)

    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (R[2, 1] - R[1, 2]) * s
        y = (R[0, 2] - R[2, 0]) * s
        z = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s

    q = np.array([x, y, z, w])
    if q[3] < 0:
        q = -q
    return q


def matrix_from_quaternion(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion [x, y, z, w] to 3x3 rotation matrix.

    The quaternion is normalized first.
    """
    x, y, z, w = q

    n = np.sqrt(x*x + y*y + z*z + w*w)
    if not np.isfinite(n) or n == 0.0:
        raise ValueError(f"Cannot build a rotation from quaternion {list(q)}")
    x, y, z, w = x/n, y/n, z/n, w/n

    R = np.array([
        [1 - 2*y*y - 2*z*z, 2*x*y - 2*z*w, 2*x*z + 2*y*w],
        [2*x*y + 2*z*w, 1 - 2*x*x - 2*z*z, 2*y*z - 2*x*w],
        [2*x*z - 2*y*w, 2*y*z + 2*x*w, 1 - 2*x*x - 2*y*y]
    ])

    return R


def orthonormalize(R: np.ndarray) -> np.ndarray:
    """Project a near-rotation 3x3 matrix onto SO(3) via SVD."""
    U, _, Vt = np.linalg.svd(R)
    R_ortho = U @ Vt
    if np.linalg.det(R_ortho) < 0:
        U[:, -1] = -U[:, -1]
        R_ortho = U @ Vt
    return R_ortho


def rotation_from_vector(rvec: np.ndarray) -> np.ndarray:
    """Rodrigues rotation vector (3,) to 3x3 rotation matrix."""
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return R


def vector_from_rotation(R: np.ndarray) -> np.ndarray:
    """3x3 rotation matrix to Rodrigues rotation vector (3,)."""
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return rvec.flatten()


def invert_transform(T: np.ndarray) -> np.ndarray:
    """Invert a 4x4 rigid transformation matrix."""
    R = T[:3, :3]
    t = T[:3, 3]

    T_inv = np.eye(4)
    T_inv[:3, :3] = R.T
    T_inv[:3, 3] = -R.T @ t

    return T_inv


def save_calibration_results_yaml(results: Iterable, output_path: str,
                                  reference_frame: str = "map") -> None:
    """
    Save calibration results in the extrinsics YAML format.

    Each camera entry carries its status and, when calibration succeeded,
    the camera pose in the reference frame as
    ``[x_m, y_m, z_m, qx, qy, qz, qw]`` plus residual diagnostics.

    Args:
        results: Iterable of CalibrationResult
        output_path: Path to save the YAML file
        reference_frame: Name of the map frame
    """
    lines = [
        "# Extrinsic calibration computed by infrastructure_calibration",
        f"# Reference frame: {reference_frame}",
        "# Position xyz; Quaternions xyzw",
        "# [ x_m, y_m, z_m, qx, qy, qz, qw]",
    ]

    for result in results:
        lines.append(f"{result.camera_id}:")
        lines.append(f'  parent: "{reference_frame}"')
        lines.append(f'  child: "{result.camera_id}"')
        lines.append(f'  status: "{result.state.value}"')
        if result.pose is not None:
            t = result.pose.translation
            q = result.pose.quaternion
            lines.append(f"  value: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}, "
                         f"{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")
            lines.append(f"  inliers: {result.num_inliers}")
            lines.append(f"  mean_reprojection_error_px: {result.mean_error:.6f}")
            lines.append(f"  max_reprojection_error_px: {result.max_error:.6f}")
            lines.append(f"  converged: {str(result.converged).lower()}")
        if result.error is not None:
            error_entry = yaml.safe_dump({'error': result.error}, default_style='"',
                                         width=float('inf'))
            lines.append('  ' + error_entry.rstrip('\n'))

    with open(output_path, 'w') as f:
        f.write('\n'.join(lines) + '\n')


def format_pose_value(translation: np.ndarray, quaternion: np.ndarray) -> list:
    """Pose as the ``[x, y, z, qx, qy, qz, qw]`` list used in map and result files."""
    return [float(v) for v in translation] + [float(v) for v in quaternion]


def parse_pose_value(value, context: Optional[str] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of ``format_pose_value``."""
    arr = np.asarray(value, dtype=np.float64).ravel()
    if arr.size != 7:
        where = f" for {context}" if context else ""
        raise ValueError(f"Expected [x, y, z, qx, qy, qz, qw]{where}, got {arr.size} values")
    return arr[:3], arr[3:]
