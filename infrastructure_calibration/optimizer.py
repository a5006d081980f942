"""
Nonlinear least-squares refinement of camera extrinsics.

The reprojection problem minimizes, over the camera pose (and optionally a
bounded set of landmark positions), the Huber-robustified pixel error between
projected landmarks and observed features. It is solved with the trust-region
reflective method of ``scipy.optimize.least_squares``. A monitor wrapped
around the residual and Jacobian callbacks adds cancellation, the iteration
limit and the divergence checks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from .camera_models import CameraIntrinsics
from .config import OptimizerConfig
from .exceptions import CalibrationCancelledError, OptimizationDivergedError
from .pose import Pose

logger = logging.getLogger(__name__)

POSE_DOF = 6
LANDMARK_DOF = 3

# Central-difference step for the Jacobian (radians / metres)
_JACOBIAN_STEP = 1e-6

# least_squares status -> termination reason
_TERMINATION = {
    0: 'max_iterations',
    1: 'gradient_tolerance',
    2: 'relative_tolerance',
    3: 'step_tolerance',
    4: 'relative_tolerance',
}


def huber_weights(errors: np.ndarray, delta: float) -> np.ndarray:
    """IRLS weights of the Huber loss for absolute residuals."""
    weights = np.ones_like(errors)
    large = errors > delta
    weights[large] = delta / errors[large]
    return weights


def huber_cost(errors: np.ndarray, delta: float) -> np.ndarray:
    """Huber loss of absolute residuals (quadratic below ``delta``)."""
    return np.where(errors <= delta, errors ** 2, 2.0 * delta * errors - delta ** 2)


def huber_loss(delta: float, robust_rows: int) -> Callable[[np.ndarray], np.ndarray]:
    """
    Huber loss in the callable form accepted by ``least_squares``.

    The returned function maps squared residuals ``z`` to the stacked loss
    and its first and second derivatives, shape (3, m). Only the first
    ``robust_rows`` residuals are robustified; later rows stay quadratic.
    """
    def loss(z):
        rho = np.vstack([z, np.ones_like(z), np.zeros_like(z)])
        head = z[:robust_rows]
        large = np.flatnonzero(head > delta ** 2)
        if large.size:
            s = np.sqrt(head[large])
            rho[0, large] = 2.0 * delta * s - delta ** 2
            rho[1, large] = delta / s
            rho[2, large] = -0.5 * delta / (head[large] * s)
        return rho
    return loss


@dataclass(frozen=True, eq=False)
class ProblemState:
    """Current estimate: camera pose plus refined landmark positions (K, 3)."""
    pose: Pose
    landmarks: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))


@dataclass(frozen=True)
class KeyframeTerm:
    """A fixed keyframe observation of a refined landmark."""
    pose: Pose
    uv: np.ndarray
    landmark_index: int


class ReprojectionProblem:
    """
    Residual blocks of the calibration problem.

    Rows are laid out as camera reprojection residuals (2 per
    correspondence), keyframe reprojection residuals of refined landmarks
    (2 per keyframe observation, keyframe poses fixed) and landmark position
    priors (3 per refined landmark, scaled by ``prior_sigma``). The Huber
    loss applies to each reprojection residual; priors stay quadratic.
    """

    def __init__(self, intrinsics: CameraIntrinsics, observed: np.ndarray,
                 landmark_positions: np.ndarray,
                 refined_index: Optional[np.ndarray] = None,
                 keyframe_terms: Sequence[KeyframeTerm] = (),
                 keyframe_intrinsics: Optional[CameraIntrinsics] = None,
                 prior_sigma: float = 0.05, huber_delta: float = 2.0):
        """
        Args:
            intrinsics: Intrinsics of the camera being calibrated
            observed: (M, 2) observed pixels
            landmark_positions: (M, 3) map positions of the matched landmarks
            refined_index: (M,) index into the refined landmark block, -1 when fixed
            keyframe_terms: Keyframe observations of refined landmarks
            keyframe_intrinsics: Intrinsics of the mapping camera
            prior_sigma: Landmark position prior standard deviation (metres)
            huber_delta: Huber threshold (pixels)
        """
        self.intrinsics = intrinsics
        self.observed = np.asarray(observed, dtype=np.float64).reshape(-1, 2)
        self.fixed_positions = np.asarray(landmark_positions, dtype=np.float64).reshape(-1, 3)
        m = len(self.observed)
        if refined_index is None:
            refined_index = np.full(m, -1, dtype=np.int64)
        self.refined_index = np.asarray(refined_index, dtype=np.int64)

        self.num_refined = int(self.refined_index.max() + 1) if m and self.refined_index.max() >= 0 else 0
        self.prior_positions = np.zeros((self.num_refined, 3))
        for i, k in enumerate(self.refined_index):
            if k >= 0:
                self.prior_positions[k] = self.fixed_positions[i]

        self.keyframe_terms = list(keyframe_terms) if keyframe_intrinsics is not None else []
        self.keyframe_intrinsics = keyframe_intrinsics
        self.prior_sigma = prior_sigma
        self.huber_delta = huber_delta

        n_kf = len(self.keyframe_terms)
        self._camera_rows = 2 * m
        self._keyframe_rows = 2 * n_kf
        self.num_residuals = self._camera_rows + self._keyframe_rows + 3 * self.num_refined
        self.num_parameters = POSE_DOF + LANDMARK_DOF * self.num_refined

        # Refined landmark each row depends on (-1: pose only)
        row_landmark = [np.repeat(self.refined_index, 2)]
        row_landmark.append(np.repeat([t.landmark_index for t in self.keyframe_terms], 2)
                            .astype(np.int64))
        row_landmark.append(np.repeat(np.arange(self.num_refined), 3))
        self._row_landmark = np.concatenate(row_landmark).astype(np.int64)

        self._robust_rows = self._camera_rows + self._keyframe_rows

    def initial_state(self, pose: Pose) -> ProblemState:
        return ProblemState(pose, self.prior_positions.copy())

    def _current_positions(self, state: ProblemState) -> np.ndarray:
        positions = self.fixed_positions.copy()
        refined = self.refined_index >= 0
        if np.any(refined):
            positions[refined] = state.landmarks[self.refined_index[refined]]
        return positions

    def residuals(self, state: ProblemState) -> np.ndarray:
        """Unweighted residual vector (NaN where a point falls behind a camera)."""
        blocks = []
        projected, _ = self.intrinsics.project(state.pose.to_camera(self._current_positions(state)))
        blocks.append((projected - self.observed).ravel())

        if self.keyframe_terms:
            rows = []
            for term in self.keyframe_terms:
                point = state.landmarks[term.landmark_index]
                uv, _ = self.keyframe_intrinsics.project(term.pose.to_camera(point))
                rows.append(uv[0] - term.uv)
            blocks.append(np.concatenate(rows))

        if self.num_refined:
            blocks.append(((state.landmarks - self.prior_positions) / self.prior_sigma).ravel())

        return np.concatenate(blocks) if blocks else np.zeros(0)

    def camera_errors(self, state: ProblemState) -> np.ndarray:
        """Pixel reprojection error of each camera correspondence."""
        r = self.residuals(state)
        return np.linalg.norm(r[:self._camera_rows].reshape(-1, 2), axis=1)

    def loss(self) -> Callable[[np.ndarray], np.ndarray]:
        return huber_loss(self.huber_delta, self._robust_rows)

    def row_weights(self, residuals: np.ndarray) -> np.ndarray:
        weights = np.ones(self.num_residuals)
        if self._robust_rows:
            weights[:self._robust_rows] = huber_weights(np.abs(residuals[:self._robust_rows]),
                                                        self.huber_delta)
        return weights

    def cost(self, residuals: np.ndarray) -> float:
        """Half the robustified sum of squares; inf when any residual is not finite."""
        if not np.all(np.isfinite(residuals)):
            return float('inf')
        robust = huber_cost(np.abs(residuals[:self._robust_rows]), self.huber_delta).sum()
        prior = np.sum(residuals[self._robust_rows:] ** 2)
        return 0.5 * float(robust + prior)

    def apply(self, state: ProblemState, delta: np.ndarray) -> ProblemState:
        pose = state.pose.perturbed(delta[:POSE_DOF])
        landmarks = state.landmarks + delta[POSE_DOF:].reshape(-1, 3)
        return ProblemState(pose, landmarks)

    def jacobian(self, state: ProblemState) -> np.ndarray:
        """
        Central-difference Jacobian.

        Each residual depends on at most one refined landmark, so all
        landmarks are perturbed together per coordinate.
        """
        h = _JACOBIAN_STEP
        J = np.zeros((self.num_residuals, self.num_parameters))
        delta = np.zeros(self.num_parameters)

        for j in range(POSE_DOF):
            delta[:] = 0.0
            delta[j] = h
            r_plus = self.residuals(self.apply(state, delta))
            r_minus = self.residuals(self.apply(state, -delta))
            J[:, j] = (r_plus - r_minus) / (2.0 * h)

        if self.num_refined:
            rows = np.flatnonzero(self._row_landmark >= 0)
            owners = self._row_landmark[rows]
            for c in range(LANDMARK_DOF):
                offsets = np.zeros((self.num_refined, 3))
                offsets[:, c] = h
                r_plus = self.residuals(ProblemState(state.pose, state.landmarks + offsets))
                r_minus = self.residuals(ProblemState(state.pose, state.landmarks - offsets))
                diff = (r_plus - r_minus) / (2.0 * h)
                J[rows, POSE_DOF + LANDMARK_DOF * owners + c] = diff[rows]

        return J


@dataclass
class OptimizationSummary:
    """Outcome of a robust least-squares solve."""
    initial_cost: float
    final_cost: float
    iterations: int
    converged: bool
    termination: str
    cost_history: List[float] = field(default_factory=list)
    condition_number: float = float('nan')
    covariance: Optional[np.ndarray] = None


def scaled_condition_number(H: np.ndarray) -> float:
    """Condition number of the Jacobi-scaled normal matrix (inf when singular)."""
    diag = np.diag(H)
    if np.any(~np.isfinite(diag)) or np.any(diag <= 0):
        return float('inf')
    scale = 1.0 / np.sqrt(diag)
    return float(np.linalg.cond(H * np.outer(scale, scale)))


class _IterationLimit(Exception):
    """Raised from the residual callback once ``max_iterations`` steps were accepted."""


class _Stalled(Exception):
    """Raised from the residual callback when a rejected step leaves the cost unchanged."""


class _SolveMonitor:
    """
    Residual and Jacobian callbacks handed to ``least_squares``.

    Parameters are a tangent offset from the starting state. Every residual
    evaluation after the first is a trial step, and the trust-region solver
    accepts a step exactly when it lowers the cost, so the monitor can count
    iterations and failed steps from the costs it sees.
    """

    def __init__(self, solver: 'RobustLeastSquares', problem: ReprojectionProblem,
                 start: ProblemState):
        self.solver = solver
        self.problem = problem
        self.start = start
        self.best_x = np.zeros(problem.num_parameters)
        self.best_cost: Optional[float] = None
        self.history: List[float] = []
        self.accepted = 0
        self.rejected = 0
        self.condition = float('nan')

    def state(self, x: np.ndarray) -> ProblemState:
        return self.problem.apply(self.start, x)

    def residuals(self, x: np.ndarray) -> np.ndarray:
        cfg = self.solver.config
        self.solver._check_cancelled()
        if self.best_cost is not None and self.accepted >= cfg.max_iterations:
            raise _IterationLimit()

        r = self.problem.residuals(self.state(x))
        cost = self.problem.cost(r)
        if self.best_cost is None:
            self.best_cost = cost
            self.history.append(cost)
        elif cost < self.best_cost:
            self.best_x, self.best_cost = x.copy(), cost
            self.history.append(cost)
            self.accepted += 1
            self.rejected = 0
        else:
            self.rejected += 1
            if np.isfinite(cost) and cost - self.best_cost <= cfg.relative_tolerance * self.best_cost:
                # At the minimum up to rounding
                raise _Stalled()
            if self.rejected % cfg.max_step_attempts == 0:
                failed = self.rejected // cfg.max_step_attempts
                logger.debug("Camera %s: iteration %d did not reduce cost %.6e (%d in a row)",
                             self.solver.camera_id, self.accepted + failed, self.best_cost, failed)
                if failed >= cfg.divergence_window:
                    raise self.solver._diverged(
                        f"cost did not decrease for {failed} consecutive iterations",
                        self.accepted + failed, cost=self.best_cost)
        return r

    def jacobian(self, x: np.ndarray) -> np.ndarray:
        state = self.state(x)
        J = self.problem.jacobian(state)
        w = self.problem.row_weights(self.problem.residuals(state))
        self.condition = scaled_condition_number(J.T @ (J * w[:, None]))
        if not self.condition <= self.solver.config.max_condition_number:
            raise self.solver._diverged("normal equations are ill-conditioned", self.accepted + 1,
                                        condition_number=self.condition)
        return J


class RobustLeastSquares:
    """
    Trust-region least squares with a Huber loss.

    Terminates when the relative cost decrease, the gradient or the step
    size falls below its tolerance, or after ``max_iterations`` accepted
    steps. The solve is declared diverged when ``divergence_window``
    consecutive iterations (``max_step_attempts`` rejected trial steps
    each) fail to reduce the cost, when the starting cost is not finite, or
    when the normal equations are ill-conditioned.
    """

    def __init__(self, config: Optional[OptimizerConfig] = None,
                 should_stop: Optional[Callable[[], bool]] = None,
                 camera_id: Any = None):
        self.config = config or OptimizerConfig()
        self.should_stop = should_stop
        self.camera_id = camera_id

    def _diverged(self, reason: str, iteration: int, **details) -> OptimizationDivergedError:
        return OptimizationDivergedError(self.camera_id, reason, iteration, **details)

    def _check_cancelled(self) -> None:
        if self.should_stop is not None and self.should_stop():
            raise CalibrationCancelledError(self.camera_id)

    def solve(self, problem: ReprojectionProblem,
              state: ProblemState) -> Tuple[ProblemState, OptimizationSummary]:
        cfg = self.config
        initial_cost = problem.cost(problem.residuals(state))
        if not np.isfinite(initial_cost):
            raise self._diverged("initial cost is not finite", 0)

        monitor = _SolveMonitor(self, problem, state)
        try:
            result = least_squares(
                monitor.residuals,
                np.zeros(problem.num_parameters),
                jac=monitor.jacobian,
                method='trf',
                x_scale=1.0,
                loss=problem.loss(),
                ftol=cfg.relative_tolerance,
                xtol=cfg.step_tolerance,
                gtol=cfg.gradient_tolerance,
                max_nfev=(cfg.max_iterations + cfg.divergence_window) * cfg.max_step_attempts + 1,
            )
            termination = _TERMINATION.get(result.status, 'max_iterations')
            converged = result.status > 0
        except _IterationLimit:
            termination, converged = 'max_iterations', False
        except _Stalled:
            termination, converged = 'relative_tolerance', True

        final = monitor.state(monitor.best_x)
        cost = monitor.best_cost
        covariance = self._covariance(problem, final, problem.residuals(final), cost)
        summary = OptimizationSummary(
            initial_cost=initial_cost,
            final_cost=cost,
            iterations=monitor.accepted,
            converged=converged,
            termination=termination,
            cost_history=monitor.history,
            condition_number=monitor.condition,
            covariance=covariance,
        )
        logger.debug("Camera %s: least squares %s after %d iterations, cost %.6e -> %.6e",
                     self.camera_id, termination, monitor.accepted, initial_cost, cost)
        return final, summary

    @staticmethod
    def _covariance(problem: ReprojectionProblem, state: ProblemState,
                    residuals: np.ndarray, cost: float) -> Optional[np.ndarray]:
        """Parameter covariance from the inverse normal matrix, scaled by the residual variance."""
        J = problem.jacobian(state)
        w = problem.row_weights(residuals)
        H = J.T @ (J * w[:, None])
        dof = problem.num_residuals - problem.num_parameters
        sigma2 = 2.0 * cost / dof if dof > 0 else 1.0
        try:
            covariance = np.linalg.inv(H) * max(sigma2, np.finfo(float).tiny)
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(covariance)):
            return None
        return covariance


@dataclass
class RefinementResult:
    """Refined pose and landmarks with per-correspondence errors."""
    pose: Pose
    landmark_positions: Dict[int, np.ndarray]
    errors: np.ndarray
    summary: OptimizationSummary


def refine_pose(intrinsics: CameraIntrinsics, initial_pose: Pose,
                observed: np.ndarray, landmark_ids: Sequence[int],
                landmark_positions: np.ndarray,
                config: Optional[OptimizerConfig] = None,
                refined_ids: Sequence[int] = (),
                keyframe_terms: Sequence[Tuple[Pose, np.ndarray, int]] = (),
                keyframe_intrinsics: Optional[CameraIntrinsics] = None,
                should_stop: Optional[Callable[[], bool]] = None,
                camera_id: Any = None) -> RefinementResult:
    """
    Refine a camera pose against matched landmarks.

    Args:
        intrinsics: Camera intrinsics
        initial_pose: Coarse camera->map pose
        observed: (M, 2) observed pixels
        landmark_ids: (M,) landmark id of each observation
        landmark_positions: (M, 3) landmark positions
        config: Optimizer parameters
        refined_ids: Landmark ids whose positions are refined jointly
        keyframe_terms: (keyframe pose, pixel, landmark id) observations of refined landmarks
        keyframe_intrinsics: Intrinsics of the mapping camera
        should_stop: Polled before every residual evaluation; True cancels the solve
        camera_id: Used in errors and log messages

    Returns:
        RefinementResult with the pose covariance attached to the pose
    """
    config = config or OptimizerConfig()
    landmark_ids = [int(l) for l in landmark_ids]
    refined_ids = [int(l) for l in refined_ids]
    slot = {landmark_id: k for k, landmark_id in enumerate(refined_ids)}

    refined_index = np.array([slot.get(l, -1) for l in landmark_ids], dtype=np.int64)
    missing = [l for l in refined_ids if l not in set(landmark_ids)]
    if missing:
        raise ValueError(f"Refined landmarks without a camera observation: {missing}")

    terms = [KeyframeTerm(pose, np.asarray(uv, dtype=np.float64), slot[int(l)])
             for pose, uv, l in keyframe_terms if int(l) in slot]

    problem = ReprojectionProblem(
        intrinsics, observed, landmark_positions,
        refined_index=refined_index,
        keyframe_terms=terms,
        keyframe_intrinsics=keyframe_intrinsics,
        prior_sigma=config.landmark_prior_sigma,
        huber_delta=config.huber_delta_px,
    )
    solver = RobustLeastSquares(config, should_stop=should_stop, camera_id=camera_id)
    state, summary = solver.solve(problem, problem.initial_state(initial_pose))

    pose_covariance = None
    if summary.covariance is not None:
        pose_covariance = summary.covariance[:POSE_DOF, :POSE_DOF]

    return RefinementResult(
        pose=state.pose.with_covariance(pose_covariance),
        landmark_positions={l: state.landmarks[k].copy() for l, k in slot.items()},
        errors=problem.camera_errors(state),
        summary=summary,
    )
