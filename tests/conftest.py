"""
Pytest configuration and shared fixtures for the indoor tracker tests.

Provides a square anchor layout, a calibration store with a simple linear
path-loss curve, and helpers to synthesise scans and observations from a
known receiver position.
"""

import sys
import math
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ipt_core.metrics import get_metrics
from ipt_core.calibration import InMemoryCalibrationStore
from ipt_core.localization import Anchor, InMemoryAnchorRegistry
from ipt_core.proto import AnchorObservation, RawScanSample, ScanBatch


# Session anchor curve: d = -3 - 0.1 r  <=>  r = -10 d - 30
LINEAR_COEFFICIENTS = (-3.0, -0.1, 0.0, 0.0)
SESSION_ANCHOR_ID = 1

SQUARE_ANCHORS = [
    Anchor(1, "AA:BB:CC:00:00:1", (0.0, 0.0)),
    Anchor(2, "AA:BB:CC:00:00:2", (10.0, 0.0)),
    Anchor(3, "AA:BB:CC:00:00:3", (10.0, 10.0)),
    Anchor(4, "AA:BB:CC:00:00:4", (0.0, 10.0)),
]


# =============================================================================
# Metrics isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_metrics():
    """Start every test from zeroed global metrics."""
    get_metrics().reset()
    yield


# =============================================================================
# Anchor / calibration fixtures
# =============================================================================


@pytest.fixture
def square_anchors() -> List[Anchor]:
    """
    Four anchors on a 10 x 10 square.

    Returns:
        Anchors at (0,0), (10,0), (10,10), (0,10) with ids 1-4.
    """
    return list(SQUARE_ANCHORS)


@pytest.fixture
def registry(square_anchors) -> InMemoryAnchorRegistry:
    return InMemoryAnchorRegistry(square_anchors)


@pytest.fixture
def store() -> InMemoryCalibrationStore:
    """Calibration store with the linear test curve on the session anchor."""
    calibration = InMemoryCalibrationStore()
    calibration.put(SESSION_ANCHOR_ID, LINEAR_COEFFICIENTS)
    return calibration


# =============================================================================
# Helper Functions
# =============================================================================


def rss_for_distance(distance: float) -> float:
    """Inverse of the linear test curve."""
    return -10.0 * distance - 30.0


def calculate_distance_2d(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    """Euclidean distance between two 2D points."""
    return math.sqrt((p1[0] - p2[0]) ** 2 + (p1[1] - p2[1]) ** 2)


def true_ranges(position: Tuple[float, float], anchors: Sequence[Anchor]) -> List[float]:
    return [calculate_distance_2d(position, a.position) for a in anchors]


def make_observations(
    anchors: Sequence[Anchor],
    ranges: Sequence[float],
) -> List[AnchorObservation]:
    """Observations in the given order (caller controls anchor 1)."""
    return [
        AnchorObservation(
            anchor_id=a.anchor_id,
            anchor_label=a.label,
            anchor_position=a.position,
            rss=rss_for_distance(r),
            estimated_distance=r,
        )
        for a, r in zip(anchors, ranges)
    ]


def make_scan(
    anchors: Sequence[Anchor],
    ranges: Sequence[float],
    suffix: str = "0",
    t_scan: float = 0.0,
) -> ScanBatch:
    """
    Raw scan whose RSS values map back to ranges under the test curve.

    Each label gets a virtual-SSID suffix character appended.
    """
    samples = [
        RawScanSample(anchor_label=a.label + suffix, rss=rss_for_distance(r))
        for a, r in zip(anchors, ranges)
    ]
    return ScanBatch(samples=samples, t_scan=t_scan)


@pytest.fixture
def scan_factory(square_anchors):
    """Build a scan for a receiver at `position` over the square anchors."""

    def factory(position: Tuple[float, float], noise: Sequence[float] = None, **kwargs) -> ScanBatch:
        ranges = true_ranges(position, square_anchors)
        if noise is not None:
            ranges = [r + n for r, n in zip(ranges, noise)]
        return make_scan(square_anchors, ranges, **kwargs)

    return factory
