"""
Indoor tracker configuration
"""

from ipt_core.localization import (
    EKFConfig,
    LSSolverConfig,
    ScanReducerConfig,
    TrackingSessionConfig,
)

# Scan reducer
REDUCER_CONFIG = {
    "num_observations": 4,            # anchors per tick (EKF measurement size)
    "clamp_negative_distance": True,  # negative polynomial output -> 0
}

# Closed-form initialiser
INITIALISER_CONFIG = {
    "algorithm": "weighted_circular", # circular / weighted_circular / hyperbolic / weighted_hyperbolic
    "weighting": "source",            # "source" (S^-1 A, S^-1 b) or "gls"
    "min_quality": 1e-8,              # reject solves at or below this 1/cond
}

# Extended Kalman filter
FILTER_CONFIG = {
    "process_noise": (0.001, 0.001),  # Q diagonal
    "measurement_noise": 0.1,         # R = 0.1 * I4 (earlier revision: 0.001)
    "initial_covariance": (10.0, 10.0),  # P0 diagonal
    "covariance_update": "simple",    # "simple" (P - KHP) or "joseph"
    "max_step": 1e6,                  # divergence limit on ||K z||
}

# Tracking session
SESSION_CONFIG = {
    "update_on_first_tick": True,     # EKF update on the initialising scan too
    "max_consecutive_divergences": 3, # then re-initialise from WCLS
    "stabilise_anchor_set": False,    # keep previous anchors while visible
}

# Output
OUTPUT_CONFIG = {
    "print_interval": 1,              # print every N-th tick in `track`
    "print_metrics_summary": False,
}

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def build_session_config() -> TrackingSessionConfig:
    """TrackingSessionConfig from the dictionaries above."""
    return TrackingSessionConfig(
        reducer_config=ScanReducerConfig(**REDUCER_CONFIG),
        solver_config=LSSolverConfig(**INITIALISER_CONFIG),
        filter_config=EKFConfig(**FILTER_CONFIG),
        **SESSION_CONFIG,
    )
