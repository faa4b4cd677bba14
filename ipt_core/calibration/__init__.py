"""
Calibration Module: offline RSS -> distance path-loss estimation.

Key classes:
- PathLossFitter: cubic OLS regression on labelled measurements
- PathLossModel: one anchor's stored coefficients
- InMemoryCalibrationStore: models and measurements keyed by anchor id
"""

from .path_loss import (
    PathLossFitter,
    PathLossModel,
    Coefficients,
    NUM_COEFFICIENTS,
    design_matrix,
    evaluate_polynomial,
    fit_path_loss,
)
from .calibration_store import (
    CalibrationStore,
    InMemoryCalibrationStore,
)

__all__ = [
    'PathLossFitter',
    'PathLossModel',
    'Coefficients',
    'NUM_COEFFICIENTS',
    'design_matrix',
    'evaluate_polynomial',
    'fit_path_loss',
    'CalibrationStore',
    'InMemoryCalibrationStore',
]
