"""
Protocol Module: Message schemas exchanged with the platform shell.

- Raw scan samples/batches in (from the Wi-Fi scan producer)
- Anchor observations between pipeline stages
- Position estimates out (to the position sink)
"""

from .scan_sample import (
    RawScanSample,
    ScanBatch,
)
from .anchor_observation import (
    AnchorObservation,
    OBSERVATIONS_PER_TICK,
    anchor_ids,
    anchor_positions,
    check_observation_count,
    measured_ranges,
)
from .position_estimate import (
    PositionEstimate,
    FixType,
    create_no_fix,
)

__all__ = [
    'RawScanSample',
    'ScanBatch',
    'AnchorObservation',
    'OBSERVATIONS_PER_TICK',
    'anchor_ids',
    'anchor_positions',
    'check_observation_count',
    'measured_ranges',
    'PositionEstimate',
    'FixType',
    'create_no_fix',
]
