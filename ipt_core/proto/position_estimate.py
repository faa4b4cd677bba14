"""
Position Estimate Output Schema.

Defines what the tracking pipeline hands to the position sink, one estimate
per tick, whether or not the tick produced a fix.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from enum import IntEnum


class FixType(IntEnum):
    """Type of position fix."""

    NO_FIX = 0          # Tick skipped (data insufficiency or numerical failure)
    LS_FIX = 1          # Single-shot closed-form least-squares estimate
    EKF_FIX = 2         # Posterior mean of the extended Kalman filter


@dataclass
class PositionEstimate:
    """
    Receiver position estimate for one tick.

    Attributes:
        t_solve: Scan time the estimate belongs to
        fix_type: NO_FIX, LS_FIX or EKF_FIX
        position: (x, y) in floor-plan units; last known position for NO_FIX
        tick: Session tick counter (1-based)
        anchor_ids: Anchors used, strongest first

        # Optional uncertainty
        pos_std: Standard deviations (x, y) from the filter covariance
        covariance_trace: trace(P) after the update

        # Optional filter diagnostics
        innovation_norm: ||y - h(x)|| of the update

        # Skipped ticks
        error_code: Exit code of the error that skipped the tick (0 on success)
        error_reason: Drop reason code of that error

    Notes:
        - position is always populated; for NO_FIX it repeats the last fix
    """

    t_solve: float
    fix_type: FixType
    position: Tuple[float, float]
    tick: int = 0
    anchor_ids: List[int] = field(default_factory=list)

    pos_std: Optional[Tuple[float, float]] = None
    covariance_trace: Optional[float] = None
    innovation_norm: Optional[float] = None

    error_code: int = 0
    error_reason: Optional[str] = None

    def __post_init__(self):
        """Validate position estimate."""
        if len(self.position) != 2:
            raise ValueError(f"Position must be 2D: {self.position}")

        if self.covariance_trace is not None and self.covariance_trace < 0:
            raise ValueError(f"Covariance trace cannot be negative: {self.covariance_trace}")

    @property
    def has_valid_fix(self) -> bool:
        """Check if this is a valid position fix (not NO_FIX)."""
        return self.fix_type != FixType.NO_FIX

    @property
    def is_filtered(self) -> bool:
        return self.fix_type == FixType.EKF_FIX

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            't_solve': self.t_solve,
            'fix_type': self.fix_type.name,
            'position': list(self.position),
            'tick': self.tick,
            'anchor_ids': list(self.anchor_ids),
            'pos_std': list(self.pos_std) if self.pos_std is not None else None,
            'covariance_trace': self.covariance_trace,
            'innovation_norm': self.innovation_norm,
            'error_code': self.error_code,
            'error_reason': self.error_reason,
        }


def create_no_fix(
    t_solve: float,
    last_position: Tuple[float, float] = (0.0, 0.0),
    tick: int = 0,
    error_code: int = 0,
    error_reason: Optional[str] = None,
) -> PositionEstimate:
    """
    Create a NO_FIX position estimate.

    Args:
        t_solve: Scan time
        last_position: Last known position (default: origin)
        tick: Session tick counter
        error_code: Exit code of the error that caused the skip
        error_reason: Drop reason code of that error

    Returns:
        PositionEstimate with NO_FIX
    """
    return PositionEstimate(
        t_solve=t_solve,
        fix_type=FixType.NO_FIX,
        position=last_position,
        tick=tick,
        error_code=error_code,
        error_reason=error_reason,
    )
