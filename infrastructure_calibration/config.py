"""
Calibration policy parameters.

Thresholds, ratios and tolerances are deployment policy rather than
invariants, so they live here with documented defaults and can be
overridden from a YAML file:

    matching:
      ratio_test: 0.8
    pnp:
      reprojection_threshold_px: 4.0
    optimizer:
      max_iterations: 50
    batch:
      max_workers: 4
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError
from .utils import load_yaml


PNP_METHODS = ('epnp', 'iterative', 'p3p', 'ap3p', 'sqpnp')

# Solvers used for geometric verification need at least this many points
MIN_PNP_POINTS = 4


@dataclass
class MatchingConfig:
    """Descriptor matching against map landmarks."""
    ratio_test: float = 0.8
    max_descriptor_distance: Optional[float] = None
    one_to_one: bool = True
    search_radius: Optional[float] = None   # metres around a camera's prior pose

    def __post_init__(self):
        if not 0.0 < self.ratio_test <= 1.0:
            raise ConfigurationError("ratio_test must be in (0, 1]", {'ratio_test': self.ratio_test})
        if self.max_descriptor_distance is not None and self.max_descriptor_distance < 0:
            raise ConfigurationError("max_descriptor_distance must be non-negative")
        if self.search_radius is not None and self.search_radius < 0:
            raise ConfigurationError("search_radius must be non-negative")


@dataclass
class PnPConfig:
    """Robust pose-from-points estimation (RANSAC)."""
    method: str = 'epnp'
    reprojection_threshold_px: float = 4.0
    confidence: float = 0.99
    max_ransac_iterations: int = 2000
    min_correspondences: int = 6
    seed: int = 0

    def __post_init__(self):
        if self.method not in PNP_METHODS:
            raise ConfigurationError(f"Unknown PnP method: {self.method}",
                                     {'available': ', '.join(PNP_METHODS)})
        if self.min_correspondences < MIN_PNP_POINTS:
            raise ConfigurationError(
                f"min_correspondences must be at least {MIN_PNP_POINTS}",
                {'min_correspondences': self.min_correspondences})
        if self.reprojection_threshold_px <= 0:
            raise ConfigurationError("reprojection_threshold_px must be positive")
        if not 0.0 < self.confidence < 1.0:
            raise ConfigurationError("confidence must be in (0, 1)")
        if self.max_ransac_iterations < 1:
            raise ConfigurationError("max_ransac_iterations must be positive")


@dataclass
class OptimizerConfig:
    """Robust least-squares refinement with a Huber loss."""
    max_iterations: int = 50
    relative_tolerance: float = 1e-8
    gradient_tolerance: float = 1e-10
    step_tolerance: float = 1e-10
    huber_delta_px: float = 2.0
    max_step_attempts: int = 10              # rejected trial steps per failed iteration
    divergence_window: int = 3
    max_condition_number: float = 1e12
    inlier_threshold_px: float = 2.0
    refine_landmarks: bool = False
    max_refined_landmarks: int = 50
    landmark_prior_sigma: float = 0.05      # metres

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be positive")
        if self.huber_delta_px <= 0:
            raise ConfigurationError("huber_delta_px must be positive")
        if min(self.relative_tolerance, self.gradient_tolerance, self.step_tolerance) <= 0:
            raise ConfigurationError("optimizer tolerances must be positive")
        if self.max_step_attempts < 1:
            raise ConfigurationError("max_step_attempts must be positive")
        if self.divergence_window < 1:
            raise ConfigurationError("divergence_window must be positive")
        if self.max_condition_number <= 1:
            raise ConfigurationError("max_condition_number must exceed 1")
        if self.inlier_threshold_px <= 0:
            raise ConfigurationError("inlier_threshold_px must be positive")
        if self.max_refined_landmarks < 0:
            raise ConfigurationError("max_refined_landmarks must be non-negative")
        if self.landmark_prior_sigma <= 0:
            raise ConfigurationError("landmark_prior_sigma must be positive")


@dataclass
class BatchConfig:
    """Batch execution over all registered cameras."""
    max_workers: Optional[int] = None
    apply_landmark_updates: bool = False

    def __post_init__(self):
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError("max_workers must be positive")


_SECTIONS = {
    'matching': MatchingConfig,
    'pnp': PnPConfig,
    'optimizer': OptimizerConfig,
    'batch': BatchConfig,
}


@dataclass
class CalibrationConfig:
    """All calibration policy parameters."""
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    pnp: PnPConfig = field(default_factory=PnPConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'CalibrationConfig':
        """Build from a nested mapping; missing keys keep their defaults."""
        config = config or {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration must be a mapping, got {type(config).__name__}")
        unknown = set(config) - set(_SECTIONS)
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")

        sections = {}
        for name, section_cls in _SECTIONS.items():
            values = config.get(name) or {}
            if not isinstance(values, dict):
                raise ConfigurationError(
                    f"Section '{name}' must be a mapping, got {type(values).__name__}")
            allowed = {f.name for f in fields(section_cls)}
            bad_keys = set(values) - allowed
            if bad_keys:
                raise ConfigurationError(f"Unknown keys in '{name}': {sorted(bad_keys)}")
            try:
                sections[name] = section_cls(**values)
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{name}' section: {e}") from e
        return cls(**sections)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_calibration_config(config_path: str) -> CalibrationConfig:
    """Load calibration parameters from a YAML file."""
    return CalibrationConfig.from_dict(load_yaml(config_path))
