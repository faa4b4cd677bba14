"""
Anchor Observation Schema.

Output of the scan reducer and input to the least-squares initialiser and the
EKF: one known anchor, its position, the RSS it was heard at and the distance
the path-loss model assigns to that RSS.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple
import math

import numpy as np

# Observations per tick (the filter's measurement dimension)
OBSERVATIONS_PER_TICK = 4


@dataclass(frozen=True)
class AnchorObservation:
    """
    Range observation to a single anchor.

    Attributes:
        anchor_id: Registry identifier of the anchor
        anchor_label: Stripped BSSID the anchor is registered under
        anchor_position: Anchor (x, y) in floor-plan units
        rss: Received signal strength (dBm)
        estimated_distance: Range from the path-loss model, clamped to >= 0
    """

    anchor_id: int
    anchor_label: str
    anchor_position: Tuple[float, float]
    rss: float
    estimated_distance: float

    def __post_init__(self):
        if self.estimated_distance < 0:
            raise ValueError(f"Distance cannot be negative: {self.estimated_distance}")
        if not math.isfinite(self.estimated_distance):
            raise ValueError(f"Distance must be finite: {self.estimated_distance}")

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/serialization."""
        return {
            'anchor_id': self.anchor_id,
            'anchor_label': self.anchor_label,
            'anchor_position': self.anchor_position,
            'rss': self.rss,
            'estimated_distance': self.estimated_distance,
        }


def check_observation_count(observations: Sequence[AnchorObservation]) -> None:
    """Raise ValueError unless exactly four observations are given."""
    if len(observations) != OBSERVATIONS_PER_TICK:
        raise ValueError(
            f"Need exactly {OBSERVATIONS_PER_TICK} observations, got {len(observations)}"
        )


def anchor_positions(observations: Sequence[AnchorObservation]) -> np.ndarray:
    """Anchor positions as an (n, 2) array in observation order."""
    return np.array([o.anchor_position for o in observations], dtype=float)


def measured_ranges(observations: Sequence[AnchorObservation]) -> np.ndarray:
    """Estimated distances as an (n,) array in observation order."""
    return np.array([o.estimated_distance for o in observations], dtype=float)


def anchor_ids(observations: Sequence[AnchorObservation]) -> List[int]:
    """Anchor ids in observation order."""
    return [o.anchor_id for o in observations]
