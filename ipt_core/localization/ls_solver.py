"""
Closed-form Least-Squares Position Solver (4 anchors, 2D).

Linearised trilateration against anchor 1 (the strongest observation).
Four estimators are available:

- circular: range equations differenced against anchor 1, unknowns [x-x1, y-y1]
- weighted_circular: circular with variance weighting S (WCLS, the EKF initialiser)
- hyperbolic: range-difference linearisation, unknowns [x, y, r1]
- weighted_hyperbolic: hyperbolic with the same S weighting

Weighting matrix, from var(r_i^2) ~ r_i^4:

    S[i][j] = r1^4 + (r_{i+1}^4 if i == j else 0)

The default "source" weighting forms A' = S^-1 A, b' = S^-1 b and solves the
ordinary least-squares problem on (A', b'). This is not the textbook GLS
estimator; weighting="gls" solves x = (A^T S^-1 A)^-1 A^T S^-1 b instead, by
whitening with the Cholesky factor of S.
"""

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple, Optional

import numpy as np

from ipt_core.errors import SingularSystem, IllConditioned
from ipt_core.proto.anchor_observation import (
    AnchorObservation,
    anchor_positions,
    check_observation_count,
    measured_ranges,
)
from ipt_core.metrics import get_metrics

logger = logging.getLogger(__name__)

ALGORITHMS = ('circular', 'weighted_circular', 'hyperbolic', 'weighted_hyperbolic')
WEIGHTINGS = ('source', 'gls')


@dataclass
class LSSolverConfig:
    """
    Configuration for the closed-form solver.

    Attributes:
        algorithm: One of ALGORITHMS
        weighting: "source" (S^-1 A, S^-1 b then OLS) or "gls" (textbook GLS);
            ignored by the unweighted algorithms
        min_quality: Solves whose quality (1 / condition number) is at or
            below this are rejected as ill-conditioned
    """

    algorithm: str = 'weighted_circular'
    weighting: str = 'source'
    min_quality: float = 1e-8

    def __post_init__(self):
        if self.algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown LS algorithm '{self.algorithm}', expected one of {ALGORITHMS}")
        if self.weighting not in WEIGHTINGS:
            raise ValueError(f"Unknown weighting '{self.weighting}', expected one of {WEIGHTINGS}")


@dataclass(frozen=True)
class LSSolution:
    """
    Result of a closed-form solve.

    Attributes:
        position: Estimated (x, y)
        quality: 1 / condition number of the solved system matrix
        residual_m: RMS of |p - a_i| - r_i over the four anchors
        algorithm: Estimator that produced the solution
    """

    position: Tuple[float, float]
    quality: float
    residual_m: float
    algorithm: str


class LSSolver:
    """
    Closed-form 4-anchor position solver.

    Usage:
        solver = LSSolver(LSSolverConfig(algorithm='weighted_circular'))
        solution = solver.solve(observations)
        x, y = solution.position
    """

    def __init__(self, config: Optional[LSSolverConfig] = None):
        self.config = config or LSSolverConfig()
        self.metrics = get_metrics()

    def solve(self, observations: Sequence[AnchorObservation]) -> LSSolution:
        """
        Estimate the receiver position from four observations.

        Args:
            observations: Exactly four observations; observations[0] is the
                reference anchor of the linearisation

        Returns:
            LSSolution

        Raises:
            SingularSystem: system matrix rank-deficient (e.g. collinear anchors)
            IllConditioned: solver quality at or below min_quality
        """
        check_observation_count(observations)
        self.metrics.increment('ls_solves')

        anchors = anchor_positions(observations)
        ranges = measured_ranges(observations)

        algorithm = self.config.algorithm
        if algorithm in ('circular', 'weighted_circular'):
            A, b = circular_system(anchors, ranges)
        else:
            A, b = hyperbolic_system(anchors, ranges)

        try:
            if algorithm.startswith('weighted'):
                S = variance_weights(ranges)
                if self.config.weighting == 'gls':
                    A, b = _whiten(A, b, S)
                else:
                    A, b = _apply_inverse_weights(A, b, S)

            solution, quality = solve_least_squares(A, b, self.config.min_quality)
        except (SingularSystem, IllConditioned) as e:
            self.metrics.increment_drop(e.reason)
            raise

        if algorithm in ('circular', 'weighted_circular'):
            # Unknowns are offsets from the reference anchor
            position = (float(solution[0] + anchors[0, 0]), float(solution[1] + anchors[0, 1]))
        else:
            position = (float(solution[0]), float(solution[1]))

        residual = range_residual_rms(position, anchors, ranges)
        self.metrics.record_histogram('ls_residual_m', residual)
        logger.debug("%s solve: position=(%.3f, %.3f) quality=%.3e residual=%.3f",
                     algorithm, position[0], position[1], quality, residual)

        return LSSolution(position=position, quality=quality, residual_m=residual,
                          algorithm=algorithm)


def circular_system(anchors: np.ndarray, ranges: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Circular linearisation against anchor 1.

    A = [x_i - x1, y_i - y1]             (i = 2..4)
    b = 1/2 [r1^2 - r_i^2 + d_i1]         d_i1 = |a_i - a1|^2
    """
    offsets = anchors[1:] - anchors[0]
    d_sq = np.sum(offsets ** 2, axis=1)
    b = 0.5 * (ranges[0] ** 2 - ranges[1:] ** 2 + d_sq)
    return offsets, b


def hyperbolic_system(anchors: np.ndarray, ranges: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Range-difference linearisation against anchor 1, unknowns [x, y, r1].

    A = -[x_i - x1, y_i - y1, r_i1]       r_i1 = r_i - r1
    b = 1/2 [r_i1^2 - K_i + K1]           K_i = x_i^2 + y_i^2
    """
    offsets = anchors[1:] - anchors[0]
    range_diff = ranges[1:] - ranges[0]
    K = np.sum(anchors ** 2, axis=1)
    A = -np.column_stack([offsets, range_diff])
    b = 0.5 * (range_diff ** 2 - K[1:] + K[0])
    return A, b


def variance_weights(ranges: np.ndarray) -> np.ndarray:
    """S[i][j] = r1^4 + (r_{i+1}^4 if i == j else 0), 3x3."""
    r4 = ranges ** 4
    n = len(ranges) - 1
    return np.full((n, n), r4[0]) + np.diag(r4[1:])


def _apply_inverse_weights(
    A: np.ndarray, b: np.ndarray, S: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """A' = S^-1 A, b' = S^-1 b."""
    try:
        A_prime = np.linalg.solve(S, A)
        b_prime = np.linalg.solve(S, b)
    except np.linalg.LinAlgError:
        raise SingularSystem(int(np.linalg.matrix_rank(S)), S.shape[1], matrix="weighting") from None
    return A_prime, b_prime


def _whiten(A: np.ndarray, b: np.ndarray, S: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """L^-1 A, L^-1 b with S = L L^T, so OLS on the result is GLS."""
    try:
        L = np.linalg.cholesky(S)
    except np.linalg.LinAlgError:
        raise SingularSystem(int(np.linalg.matrix_rank(S)), S.shape[1], matrix="weighting") from None
    return np.linalg.solve(L, A), np.linalg.solve(L, b)


def solve_least_squares(
    A: np.ndarray, b: np.ndarray, min_quality: float
) -> Tuple[np.ndarray, float]:
    """
    Ordinary least squares with rank and conditioning checks.

    Returns:
        (solution, quality) where quality = smallest / largest singular value

    Raises:
        SingularSystem, IllConditioned
    """
    columns = A.shape[1]

    if not np.all(np.isfinite(A)) or not np.all(np.isfinite(b)):
        raise SingularSystem(0, columns)

    solution, _, rank, singular_values = np.linalg.lstsq(A, b, rcond=None)

    if rank < columns:
        raise SingularSystem(int(rank), columns)

    quality = float(singular_values[-1] / singular_values[0])
    if quality <= min_quality:
        raise IllConditioned(quality, min_quality)

    return solution, quality


def range_residual_rms(
    position: Tuple[float, float], anchors: np.ndarray, ranges: np.ndarray
) -> float:
    """RMS of predicted minus measured range."""
    predicted = np.linalg.norm(anchors - np.asarray(position), axis=1)
    return float(np.sqrt(np.mean((predicted - ranges) ** 2)))


def weighted_circular_position(
    observations: Sequence[AnchorObservation],
    min_quality: float = 1e-8,
) -> Tuple[float, float]:
    """WCLS position with the default source weighting."""
    solver = LSSolver(LSSolverConfig(algorithm='weighted_circular', min_quality=min_quality))
    return solver.solve(observations).position
