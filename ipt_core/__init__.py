"""
Indoor Position Tracker (IPT) Core Package.

Wi-Fi RSS indoor positioning: path-loss calibration, weighted circular
least-squares initialisation and EKF range tracking over four anchors.

Package structure:
- proto: Scan samples, anchor observations, position estimates
- calibration: Cubic path-loss regression and calibration store
- localization: Scan reduction, least-squares solvers, EKF, tracking session
- metrics: Diagnostics, counters, histograms
- errors: Error taxonomy with CLI exit codes
"""

__version__ = "0.1.0"
__author__ = "IPT Team"

from .calibration import fit_path_loss
from .localization import initialise, step

__all__ = ['fit_path_loss', 'initialise', 'step']
