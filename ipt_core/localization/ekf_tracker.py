"""
Extended Kalman Filter Tracker (2D position, range measurements).

Implements recursive refinement of the receiver position from four anchor
ranges per tick.

State: [x, y] (floor-plan position), covariance P (2x2)
Process model: random walk, F = I, Q = diag(q, q)
Measurement model: h_i(x) = |x - a_i|, i = 1..4, R = r * I4
Jacobian: H[i] = (x - a_i) / h_i(x), linearised at the prior (predicted) mean

The tracker holds configuration only. Every operation takes a FilterState and
returns a new one; the input state is never modified, so a failed tick leaves
the caller's state untouched.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from ipt_core.errors import FilterDivergence
from ipt_core.proto.anchor_observation import (
    AnchorObservation,
    anchor_positions,
    check_observation_count,
    measured_ranges,
)
from ipt_core.metrics import get_metrics

logger = logging.getLogger(__name__)

STATE_DIM = 2
COVARIANCE_UPDATES = ('simple', 'joseph')

# Covariance validation tolerances, relative to max(1, max|P|)
ASYMMETRY_TOL = 1e-6
PSD_TOL = 1e-9


@dataclass
class EKFConfig:
    """
    Configuration for the EKF tracker.

    Attributes:
        process_noise: Diagonal of Q (units^2 per tick)
        measurement_noise: Diagonal value of R (units^2), same for all ranges
        initial_covariance: Diagonal of P0 for a freshly initialised state
        covariance_update: "simple" (P - KHP) or "joseph"
        max_step: Largest accepted ||K z|| before the update is rejected
        symmetry_tol: P is re-symmetrised before the update above this asymmetry
    """

    process_noise: Tuple[float, float] = (0.001, 0.001)
    measurement_noise: float = 0.1
    initial_covariance: Tuple[float, float] = (10.0, 10.0)
    covariance_update: str = 'simple'
    max_step: float = 1e6
    symmetry_tol: float = 1e-9

    def __post_init__(self):
        if self.covariance_update not in COVARIANCE_UPDATES:
            raise ValueError(
                f"Unknown covariance update '{self.covariance_update}', "
                f"expected one of {COVARIANCE_UPDATES}"
            )
        if self.measurement_noise <= 0:
            raise ValueError(f"Measurement noise must be positive: {self.measurement_noise}")
        if any(q < 0 for q in self.process_noise):
            raise ValueError(f"Process noise cannot be negative: {self.process_noise}")


def _frozen(array: np.ndarray) -> np.ndarray:
    out = np.array(array, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class FilterState:
    """
    EKF state for one tracking session.

    Attributes:
        x: Mean position, shape (2,)
        P: Error covariance, shape (2, 2), symmetric PSD
        tick: Number of updates applied since initialisation

    The arrays are read-only copies.
    """

    x: np.ndarray
    P: np.ndarray
    tick: int = 0

    def __post_init__(self):
        x = _frozen(self.x).reshape(-1)
        P = _frozen(self.P)
        if x.shape != (STATE_DIM,):
            raise ValueError(f"State mean must have shape (2,), got {x.shape}")
        if P.shape != (STATE_DIM, STATE_DIM):
            raise ValueError(f"Covariance must have shape (2, 2), got {P.shape}")
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(P))):
            raise ValueError("Filter state must be finite")
        scale = max(1.0, float(np.max(np.abs(P))))
        if np.max(np.abs(P - P.T)) > ASYMMETRY_TOL * scale:
            raise ValueError(f"Covariance must be symmetric: {P.tolist()}")
        if np.min(np.linalg.eigvalsh(0.5 * (P + P.T))) < -PSD_TOL * scale:
            raise ValueError(f"Covariance must be positive semi-definite: {P.tolist()}")
        object.__setattr__(self, 'x', _frozen(x))
        object.__setattr__(self, 'P', P)

    @classmethod
    def initial(
        cls,
        position: Tuple[float, float],
        covariance_diag: Tuple[float, float] = (10.0, 10.0),
    ) -> "FilterState":
        """State created from an initial position fix with P0 = diag(covariance_diag)."""
        return cls(x=np.asarray(position, dtype=float), P=np.diag(covariance_diag))

    @property
    def position(self) -> Tuple[float, float]:
        return (float(self.x[0]), float(self.x[1]))

    @property
    def covariance_trace(self) -> float:
        return float(np.trace(self.P))

    @property
    def position_std(self) -> Tuple[float, float]:
        """Standard deviations (sqrt of diagonal covariance)."""
        return (float(np.sqrt(max(self.P[0, 0], 0.0))),
                float(np.sqrt(max(self.P[1, 1], 0.0))))

    def to_dict(self) -> dict:
        return {
            'x': self.x.tolist(),
            'P': self.P.tolist(),
            'tick': self.tick,
        }


@dataclass(frozen=True, eq=False)
class EKFUpdate:
    """
    Diagnostics of one predict + update cycle.

    Attributes:
        state: Posterior state
        prior: Predicted state the measurement model was linearised at
        innovation: y - h(x_prior), in observation order
        gain: Kalman gain K (2x4)
        predicted_ranges: h(x_prior)
    """

    state: FilterState
    prior: FilterState
    innovation: np.ndarray = field(repr=False)
    gain: np.ndarray = field(repr=False)
    predicted_ranges: np.ndarray = field(repr=False)

    @property
    def innovation_norm(self) -> float:
        return float(np.linalg.norm(self.innovation))

    @property
    def step_norm(self) -> float:
        return float(np.linalg.norm(self.state.x - self.prior.x))


class EKFTracker:
    """
    Stateless EKF predict/update stepper.

    Usage:
        tracker = EKFTracker(EKFConfig())
        state = tracker.initial_state(wcls_position)

        # Each tick
        state, position = tracker.step(state, observations)

    Not re-entrant per state: the host must sequence ticks so that the state
    produced by tick k is the only input to tick k+1.
    """

    def __init__(self, config: Optional[EKFConfig] = None):
        """
        Initialize tracker.

        Args:
            config: Filter configuration (uses defaults if None)
        """
        self.config = config or EKFConfig()
        self.metrics = get_metrics()

        # Random-walk process model; kept explicit for later motion models
        self.F = np.eye(STATE_DIM)
        self.Q = np.diag(self.config.process_noise)

    def initial_state(self, position: Tuple[float, float]) -> FilterState:
        """Fresh state at position with the configured initial covariance."""
        self.metrics.increment('ekf_initialisations')
        return FilterState.initial(position, self.config.initial_covariance)

    def predict(self, state: FilterState) -> FilterState:
        """x = F x, P = F P F^T + Q."""
        x = self.F @ state.x
        P = self.F @ state.P @ self.F.T + self.Q
        return FilterState(x=x, P=P, tick=state.tick)

    def measurement_model(
        self,
        x: np.ndarray,
        anchors: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Predicted ranges and their Jacobian at x.

        Args:
            x: Position (2,)
            anchors: Anchor positions (n, 2), observation order

        Returns:
            (h, H): ranges (n,) and Jacobian (n, 2). A row of H is zero when
            x coincides with that anchor.
        """
        diff = x[np.newaxis, :] - anchors
        h = np.sqrt(np.sum(diff ** 2, axis=1))
        H = np.zeros_like(diff)
        nonzero = h > 0
        H[nonzero] = diff[nonzero] / h[nonzero][:, np.newaxis]
        return h, H

    def update(
        self,
        prior: FilterState,
        observations: Sequence[AnchorObservation],
    ) -> EKFUpdate:
        """
        Measurement update with four range observations.

        Args:
            prior: Predicted state (output of predict)
            observations: Four observations; row order of H, y and h(x)

        Returns:
            EKFUpdate with the posterior state

        Raises:
            FilterDivergence: S not SPD, non-finite result, or ||K z|| > max_step
        """
        check_observation_count(observations)

        anchors = anchor_positions(observations)
        y = measured_ranges(observations)

        P = np.array(prior.P)
        asymmetry = float(np.max(np.abs(P - P.T)))
        if asymmetry > self.config.symmetry_tol:
            logger.debug("Re-symmetrising covariance (asymmetry %.3e)", asymmetry)
            P = 0.5 * (P + P.T)

        h, H = self.measurement_model(prior.x, anchors)
        R = self.config.measurement_noise * np.eye(len(observations))

        # S = H P H^T + R
        S = H @ P @ H.T + R
        try:
            L = np.linalg.cholesky(S)
        except np.linalg.LinAlgError:
            raise FilterDivergence("innovation covariance is not positive definite") from None

        # K = P H^T S^-1, via the Cholesky factor of S
        HP = H @ P
        K = np.linalg.solve(L.T, np.linalg.solve(L, HP)).T

        z = y - h
        dx = K @ z
        step_norm = float(np.linalg.norm(dx))
        if not np.isfinite(step_norm) or step_norm > self.config.max_step:
            raise FilterDivergence(
                f"update step {step_norm:.3e} exceeds limit {self.config.max_step:.1e}",
                step_norm=step_norm,
            )

        x = prior.x + dx
        if self.config.covariance_update == 'joseph':
            I_KH = np.eye(STATE_DIM) - K @ H
            P_post = I_KH @ P @ I_KH.T + K @ R @ K.T
        else:
            P_post = P - K @ HP
        P_post = 0.5 * (P_post + P_post.T)

        if not np.all(np.isfinite(P_post)):
            raise FilterDivergence("posterior covariance is not finite")

        try:
            posterior = FilterState(x=x, P=P_post, tick=prior.tick + 1)
        except ValueError as e:
            raise FilterDivergence(f"posterior state rejected: {e}") from None
        return EKFUpdate(
            state=posterior,
            prior=prior,
            innovation=z,
            gain=K,
            predicted_ranges=h,
        )

    def step_with_diagnostics(
        self,
        state: FilterState,
        observations: Sequence[AnchorObservation],
    ) -> EKFUpdate:
        """Predict + update, returning the full diagnostics."""
        try:
            result = self.update(self.predict(state), observations)
        except FilterDivergence:
            self.metrics.increment_drop('filter_divergence')
            raise

        self.metrics.increment('ekf_updates')
        self.metrics.record_histogram('ekf_innovation_norm', result.innovation_norm)
        self.metrics.record_histogram('ekf_covariance_trace', result.state.covariance_trace)
        return result

    def step(
        self,
        state: FilterState,
        observations: Sequence[AnchorObservation],
    ) -> Tuple[FilterState, Tuple[float, float]]:
        """
        One tick: predict then update.

        Returns:
            (posterior state, posterior position)
        """
        result = self.step_with_diagnostics(state, observations)
        return result.state, result.state.position
