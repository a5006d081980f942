# infrastructure_calibration package
"""
Extrinsic calibration of fixed infrastructure cameras against a sparse map.

This package registers each camera's 2D features against the landmarks of a
pre-built sparse 3D map (keyframes, landmarks, observations) and estimates
the camera pose in the map frame with robust PnP followed by nonlinear
least-squares refinement.
"""

from .calibration import CalibrationResult, CameraState, InfrastructureCalibration
from .camera_models import CameraIntrinsics, intrinsics_from_dict, load_camera_intrinsics
from .config import CalibrationConfig, load_calibration_config
from .correspondence_finder import (
    Correspondence, CorrespondenceFinder, FeatureObservations, load_observations,
)
from .exceptions import (
    CalibrationError, CorruptMapError, InsufficientCorrespondencesError, MapIOError,
    NotFoundError, OptimizationDivergedError,
)
from .pose import Pose
from .sparse_graph import Keyframe, Landmark, SparseGraph, load_sparse_graph
from .utils import load_cameras_config, save_calibration_results_yaml

__all__ = [
    'CalibrationConfig',
    'CalibrationError',
    'CalibrationResult',
    'CameraIntrinsics',
    'CameraState',
    'Correspondence',
    'CorrespondenceFinder',
    'CorruptMapError',
    'FeatureObservations',
    'InfrastructureCalibration',
    'InsufficientCorrespondencesError',
    'Keyframe',
    'Landmark',
    'MapIOError',
    'NotFoundError',
    'OptimizationDivergedError',
    'Pose',
    'SparseGraph',
    'intrinsics_from_dict',
    'load_calibration_config',
    'load_camera_intrinsics',
    'load_cameras_config',
    'load_observations',
    'load_sparse_graph',
    'save_calibration_results_yaml',
]
