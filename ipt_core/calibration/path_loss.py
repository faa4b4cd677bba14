"""
Empirical Path-Loss Model (cubic RSS -> distance).

Fits, per anchor, d = a + b*r + c*r^2 + d*r^3 by ordinary least squares on
labelled (rss, distance) calibration samples. The design matrix carries the
column of ones explicitly and no further intercept is added, so the fitted
coefficients are evaluated directly.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np

from ipt_core.errors import InsufficientSamples, SingularDesign
from ipt_core.metrics import get_metrics

if TYPE_CHECKING:
    from ipt_core.calibration.calibration_store import CalibrationStore

logger = logging.getLogger(__name__)

POLYNOMIAL_DEGREE = 3
NUM_COEFFICIENTS = POLYNOMIAL_DEGREE + 1

Coefficients = Tuple[float, float, float, float]


@dataclass(frozen=True)
class PathLossModel:
    """
    Stored path-loss curve of one anchor.

    Attributes:
        anchor_id: Anchor the curve was calibrated against
        coefficients: (a, b, c, d) of a + b*r + c*r^2 + d*r^3
        source: "fitted" (regression) or "manual" (user supplied)
        residual_rms: RMS fit residual in distance units (fitted models only)
        num_samples: Samples used for the fit (fitted models only)
    """

    anchor_id: int
    coefficients: Coefficients
    source: str = "fitted"
    residual_rms: Optional[float] = None
    num_samples: int = 0

    def __post_init__(self):
        if len(self.coefficients) != NUM_COEFFICIENTS:
            raise ValueError(
                f"Need {NUM_COEFFICIENTS} coefficients, got {len(self.coefficients)}"
            )
        if not all(np.isfinite(c) for c in self.coefficients):
            raise ValueError(f"Coefficients must be finite: {self.coefficients}")
        # Plain floats, never numpy scalars or strings
        object.__setattr__(
            self, 'coefficients', tuple(float(c) for c in self.coefficients)
        )

    def distance(self, rss: float) -> float:
        """Raw polynomial value at rss (may be negative; callers clamp)."""
        return evaluate_polynomial(self.coefficients, rss)

    def to_dict(self) -> dict:
        return {
            'anchor_id': self.anchor_id,
            'coefficients': list(self.coefficients),
            'source': self.source,
            'residual_rms': self.residual_rms,
            'num_samples': self.num_samples,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PathLossModel":
        return cls(
            anchor_id=int(data['anchor_id']),
            coefficients=tuple(data['coefficients']),
            source=data.get('source', 'manual'),
            residual_rms=data.get('residual_rms'),
            num_samples=int(data.get('num_samples', 0)),
        )


def evaluate_polynomial(coefficients: Sequence[float], rss: float) -> float:
    """Evaluate a + b*r + c*r^2 + d*r^3."""
    a, b, c, d = coefficients
    return a + b * rss + c * rss ** 2 + d * rss ** 3


def design_matrix(rss_values: Sequence[float]) -> np.ndarray:
    """Rows [1, r, r^2, r^3] for each RSS value."""
    r = np.asarray(rss_values, dtype=float)
    return np.vander(r, NUM_COEFFICIENTS, increasing=True)


class PathLossFitter:
    """
    Ordinary least-squares fit of the cubic path-loss polynomial.

    Usage:
        fitter = PathLossFitter()
        coefficients = fitter.fit([(-40, 1.0), (-50, 2.0), (-60, 3.0), (-70, 4.0)])

    The columns of the design matrix are scaled to unit norm before the SVD
    solve; raw RSS powers span about six orders of magnitude.
    """

    def __init__(self, min_reciprocal_condition: float = 1e-12):
        """
        Initialize fitter.

        Args:
            min_reciprocal_condition: Smallest acceptable 1/cond of the
                column-scaled design matrix
        """
        self.min_reciprocal_condition = min_reciprocal_condition
        self.metrics = get_metrics()

    def fit(self, samples: Iterable[Tuple[float, float]]) -> Coefficients:
        """
        Fit coefficients from (rss, distance) pairs.

        Args:
            samples: Calibration pairs, at least four

        Returns:
            (a, b, c, d)

        Raises:
            InsufficientSamples: fewer than four samples
            SingularDesign: X^T X not invertible to working precision
        """
        coefficients, _ = self.fit_with_residual(samples)
        return coefficients

    def fit_with_residual(
        self,
        samples: Iterable[Tuple[float, float]],
    ) -> Tuple[Coefficients, float]:
        """Fit and also return the RMS residual of the fit."""
        pairs = [(float(r), float(d)) for r, d in samples]

        if len(pairs) < NUM_COEFFICIENTS:
            self.metrics.increment_drop('insufficient_samples')
            raise InsufficientSamples(len(pairs), NUM_COEFFICIENTS)

        rss = np.array([p[0] for p in pairs])
        distance = np.array([p[1] for p in pairs])

        X = design_matrix(rss)
        column_norms = np.linalg.norm(X, axis=0)
        column_norms[column_norms == 0] = 1.0
        X_scaled = X / column_norms

        scaled_coeffs, _, rank, singular_values = np.linalg.lstsq(
            X_scaled, distance, rcond=None
        )

        if rank < NUM_COEFFICIENTS:
            self.metrics.increment_drop('singular_design')
            raise SingularDesign(int(rank))

        reciprocal_condition = singular_values[-1] / singular_values[0]
        if reciprocal_condition < self.min_reciprocal_condition:
            self.metrics.increment_drop('singular_design')
            raise SingularDesign(int(rank), condition=1.0 / reciprocal_condition)

        coeffs = scaled_coeffs / column_norms
        residuals = distance - X @ coeffs
        residual_rms = float(np.sqrt(np.mean(residuals ** 2)))

        self.metrics.increment('path_loss_fits')
        self.metrics.record_histogram('path_loss_residual_rms', residual_rms)
        logger.debug(
            "Fitted path-loss curve on %d samples: coeffs=%s rms=%.4g",
            len(pairs), coeffs, residual_rms,
        )

        return tuple(float(c) for c in coeffs), residual_rms


def fit_path_loss(
    anchor_id: int,
    samples: Optional[Iterable[Tuple[float, float]]] = None,
    store: Optional["CalibrationStore"] = None,
    fitter: Optional[PathLossFitter] = None,
) -> Coefficients:
    """
    Fit the path-loss curve of one anchor.

    Args:
        anchor_id: Anchor being calibrated
        samples: (rss, distance) pairs; if None, the measurements recorded in
            store for this anchor are used
        store: Calibration store; when given, the fitted model is written to it
        fitter: Fitter to use (default PathLossFitter())

    Returns:
        (a, b, c, d)

    Raises:
        InsufficientSamples, SingularDesign
        ValueError: samples is None and no store was given
    """
    fitter = fitter or PathLossFitter()

    if samples is None:
        if store is None:
            raise ValueError("Either samples or a calibration store is required")
        samples = store.measurements(anchor_id)

    pairs = list(samples)
    coefficients, residual_rms = fitter.fit_with_residual(pairs)

    if store is not None:
        store.put_model(PathLossModel(
            anchor_id=anchor_id,
            coefficients=coefficients,
            source="fitted",
            residual_rms=residual_rms,
            num_samples=len(pairs),
        ))
        logger.info(
            "Stored fitted path-loss model for anchor %d (rms=%.3f, n=%d)",
            anchor_id, residual_rms, len(pairs),
        )

    return coefficients
