"""
Localization Module: scan reduction, closed-form fixes, EKF tracking.

Key classes:
- InMemoryAnchorRegistry: Known anchors by stripped BSSID label and id
- ScanReducer: Raw scan -> four ordered anchor observations
- LSSolver: Circular / hyperbolic (weighted) least-squares fixes, WCLS initialiser
- EKFTracker: Range-measurement EKF over an immutable FilterState
- TrackingSession: Tick-by-tick pipeline with sink and re-initialisation
"""

from .anchor_registry import (
    Anchor,
    AnchorRegistry,
    InMemoryAnchorRegistry,
)
from .scan_reducer import (
    ScanReducer,
    ScanReducerConfig,
)
from .ls_solver import (
    ALGORITHMS,
    LSSolver,
    LSSolverConfig,
    LSSolution,
    weighted_circular_position,
)
from .ekf_tracker import (
    EKFTracker,
    EKFConfig,
    EKFUpdate,
    FilterState,
)
from .tracking_session import (
    TrackingPipeline,
    TrackingSession,
    TrackingSessionConfig,
    create_default_session,
    initialise,
    step,
)

__all__ = [
    # Anchors
    'Anchor',
    'AnchorRegistry',
    'InMemoryAnchorRegistry',
    # Scan reduction
    'ScanReducer',
    'ScanReducerConfig',
    # Closed-form solvers
    'ALGORITHMS',
    'LSSolver',
    'LSSolverConfig',
    'LSSolution',
    'weighted_circular_position',
    # EKF
    'EKFTracker',
    'EKFConfig',
    'EKFUpdate',
    'FilterState',
    # Pipeline
    'TrackingPipeline',
    'TrackingSession',
    'TrackingSessionConfig',
    'create_default_session',
    'initialise',
    'step',
]
