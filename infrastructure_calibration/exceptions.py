"""
Exception hierarchy for infrastructure calibration.

Every error carries the identifiers involved (camera, keyframe, landmark)
and the violated condition in ``details`` so that a failing camera can be
re-acquired on its own.
"""

from typing import Any, Dict, Optional


class CalibrationError(Exception):
    """Base exception for all infrastructure calibration errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class ConfigurationError(CalibrationError):
    """Raised when a calibration configuration value is invalid."""
    pass


# Map loading

class MapIOError(CalibrationError, IOError):
    """Raised when a map source cannot be read."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot read map '{path}'", {'path': path, 'reason': reason})
        self.path = path


class CorruptMapError(CalibrationError):
    """Raised when a loaded map violates referential or structural invariants."""

    def __init__(self, message: str, keyframe_id: Optional[int] = None,
                 landmark_id: Optional[int] = None, invariant: Optional[str] = None,
                 **details: Any):
        context = {}
        if keyframe_id is not None:
            context['keyframe_id'] = keyframe_id
        if landmark_id is not None:
            context['landmark_id'] = landmark_id
        if invariant is not None:
            context['invariant'] = invariant
        context.update(details)
        super().__init__(message, context)
        self.keyframe_id = keyframe_id
        self.landmark_id = landmark_id
        self.invariant = invariant


class MapNotLoadedError(CalibrationError):
    """Raised when calibration is requested before a map was loaded."""

    def __init__(self):
        super().__init__("No map loaded; call load_map() first")


class NotFoundError(CalibrationError, KeyError):
    """Raised when an id lookup fails."""

    def __init__(self, kind: str, identifier: Any):
        super().__init__(f"Unknown {kind} id {identifier!r}", {f'{kind}_id': identifier})
        self.kind = kind
        self.identifier = identifier

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return CalibrationError.__str__(self)


# Per-camera errors

class CameraError(CalibrationError):
    """Base class for errors tied to a single camera."""

    def __init__(self, message: str, camera_id: Any, **details: Any):
        context = {'camera_id': camera_id}
        context.update(details)
        super().__init__(message, context)
        self.camera_id = camera_id


class DuplicateCameraError(CameraError):
    """Raised when a camera id is registered twice."""

    def __init__(self, camera_id: Any):
        super().__init__(f"Camera {camera_id!r} is already registered", camera_id)


class InsufficientCorrespondencesError(CameraError):
    """Raised when too few verified matches remain to estimate a pose."""

    def __init__(self, camera_id: Any, found: int, required: int, stage: str):
        super().__init__(
            f"Only {found} correspondences after {stage}, need {required}",
            camera_id, found=found, required=required, stage=stage,
        )
        self.found = found
        self.required = required
        self.stage = stage


class OptimizationDivergedError(CameraError):
    """Raised when refinement diverges or the normal equations are ill-conditioned."""

    def __init__(self, camera_id: Any, reason: str, iteration: int, **details: Any):
        super().__init__(f"Optimization diverged: {reason}", camera_id,
                         iteration=iteration, **details)
        self.reason = reason
        self.iteration = iteration


class CalibrationCancelledError(CameraError):
    """Raised from an in-flight calibration that was cancelled."""

    def __init__(self, camera_id: Any):
        super().__init__(f"Calibration of camera {camera_id!r} was cancelled", camera_id)


class CalibrationStateError(CameraError):
    """Raised on an invalid camera state transition."""

    def __init__(self, camera_id: Any, current: Any, requested: Any):
        super().__init__(
            f"Invalid transition {current} -> {requested}",
            camera_id, current=current, requested=requested,
        )
