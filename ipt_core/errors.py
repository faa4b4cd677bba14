"""
Tracker error taxonomy.

Three families, none of them fatal to the host:
- Data insufficiency: the caller skips the tick (or the calibration attempt)
- Numerical: the solve failed; the caller drops the tick and continues
- Filter divergence: state is preserved; repeated divergence means re-initialise

Every error carries an exit code (used by the CLI wrapper) and a drop reason
code (used by the metrics collector), plus enough context for logging.
"""

from typing import Optional


class TrackerError(Exception):
    """Base class for all positioning pipeline errors."""

    exit_code: int = 1
    reason: str = "tracker_error"


# =============================================================================
# Data insufficiency
# =============================================================================


class DataInsufficiencyError(TrackerError):
    """Not enough input data to run the requested operation."""


class InsufficientSamples(DataInsufficiencyError):
    """Fewer than four (rss, distance) samples supplied to the path-loss fit."""

    exit_code = 12
    reason = "insufficient_samples"

    def __init__(self, count: int, required: int = 4):
        self.count = count
        self.required = required
        super().__init__(
            f"need at least {required} calibration samples, got {count}"
        )


class InsufficientAnchors(DataInsufficiencyError):
    """Fewer than four distinct known anchors left after reducing a scan."""

    exit_code = 10
    reason = "insufficient_anchors"

    def __init__(self, count: int, required: int = 4):
        self.count = count
        self.required = required
        super().__init__(f"need {required} known anchors, got {count}")


class ModelUnavailable(DataInsufficiencyError):
    """The session anchor has no path-loss model in the calibration store."""

    exit_code = 11
    reason = "model_unavailable"

    def __init__(self, anchor_id: int):
        self.anchor_id = anchor_id
        super().__init__(f"no path-loss model stored for anchor {anchor_id}")


# =============================================================================
# Numerical failures
# =============================================================================


class NumericalError(TrackerError):
    """A linear solve could not produce a trustworthy answer."""


class SingularDesign(NumericalError):
    """Path-loss design matrix X^T X is not invertible to working precision."""

    exit_code = 22
    reason = "singular_design"

    def __init__(self, rank: int, condition: Optional[float] = None):
        self.rank = rank
        self.condition = condition
        message = f"path-loss design matrix is rank {rank} (need 4)"
        if condition is not None:
            message += f", condition {condition:.3e}"
        super().__init__(message)


class SingularSystem(NumericalError):
    """Least-squares system matrix is rank-deficient."""

    exit_code = 20
    reason = "singular_system"

    def __init__(self, rank: int, columns: int, matrix: str = "system"):
        self.rank = rank
        self.columns = columns
        self.matrix = matrix
        super().__init__(f"{matrix} matrix rank {rank} < {columns} columns")


class IllConditioned(NumericalError):
    """Least-squares system is nearly singular (solver quality too low)."""

    exit_code = 21
    reason = "ill_conditioned"

    def __init__(self, quality: float, threshold: float):
        self.quality = quality
        self.threshold = threshold
        super().__init__(
            f"solver quality {quality:.3e} at or below threshold {threshold:.1e}"
        )


# =============================================================================
# Filter divergence
# =============================================================================


class FilterDivergence(TrackerError):
    """EKF update could not be computed or produced an implausible step."""

    exit_code = 30
    reason = "filter_divergence"

    def __init__(self, message: str, step_norm: Optional[float] = None):
        self.step_norm = step_norm
        super().__init__(message)


EXIT_SUCCESS = 0
EXIT_USAGE = 2
