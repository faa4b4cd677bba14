"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Scan ticks (received, reduced, located)
- Drop reasons (unknown anchor, duplicate SSID, numerical failure, etc.)
- Solver and filter statistics (initialisations, updates, divergences)
- Histograms (innovation norm, covariance trace, fit residuals)

Every skipped tick or dropped sample is counted under a reason code.
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)

# Pipeline stage each drop reason is raised in
DROP_STAGES = {
    'unknown_anchor': 'reducer',
    'duplicate_ssid': 'reducer',
    'insufficient_anchors': 'reducer',
    'model_unavailable': 'reducer',
    'insufficient_samples': 'calibration',
    'singular_design': 'calibration',
    'singular_system': 'solver',
    'ill_conditioned': 'solver',
    'filter_divergence': 'filter',
}


@dataclass
class CounterSnapshot:
    """Counters, drop reasons and histograms captured at one instant."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())

    def drop_rate(self, total_items: int) -> float:
        """Drops as a percentage of total_items."""
        if total_items == 0:
            return 0.0
        return (self.total_dropped() / total_items) * 100.0

    def located_rate(self) -> float:
        """Percentage of ticks that produced an LS or EKF fix."""
        ticks = self.counters.get('ticks_in', 0)
        if ticks == 0:
            return 0.0
        return (self.counters.get('ticks_located', 0) / ticks) * 100.0

    def drops_by_stage(self) -> Dict[str, int]:
        """Drop counts summed per pipeline stage (see DROP_STAGES)."""
        stages: Dict[str, int] = {}
        for reason, count in self.drop_reasons.items():
            stage = DROP_STAGES.get(reason, 'other')
            stages[stage] = stages.get(stage, 0) + count
        return stages


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('ticks_in')
        collector.increment_drop('insufficient_anchors')
        collector.record_histogram('ekf_innovation_norm', 0.42)

        snapshot = collector.snapshot()
        print(f"Total dropped: {snapshot.total_dropped()}")
    """

    # Standard drop reason codes
    DROP_REASONS = {
        'unknown_anchor': 'Scan sample label not in anchor registry',
        'duplicate_ssid': 'Virtual SSID of an already seen physical AP',
        'insufficient_anchors': 'Less than 4 distinct known anchors',
        'model_unavailable': 'Session anchor has no path-loss model',
        'insufficient_samples': 'Less than 4 calibration samples',
        'singular_design': 'Path-loss design matrix not invertible',
        'singular_system': 'Least-squares system rank-deficient',
        'ill_conditioned': 'Least-squares system nearly singular',
        'filter_divergence': 'EKF innovation covariance not SPD or step too large',
    }

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()

        self._init_standard_counters()

    def _init_standard_counters(self):
        """Initialize standard counter keys."""
        standard_counters = [
            'ticks_in',
            'ticks_located',
            'samples_in',
            'path_loss_fits',
            'ls_solves',
            'ekf_initialisations',
            'ekf_updates',
            'session_reinitialisations',
        ]

        with self._lock:
            for counter in standard_counters:
                if counter not in self._counters:
                    self._counters[counter] = 0

            for reason in self.DROP_REASONS:
                if reason not in self._drop_reasons:
                    self._drop_reasons[reason] = 0

    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.

        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Increment drop counter for specific reason.

        Args:
            reason: Drop reason code (should be in DROP_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.DROP_REASONS:
            # Still counted, but flagged so new codes get registered
            logger.warning("Unknown drop reason '%s'", reason)

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['items_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        """Get current value of a counter (0 if never incremented)."""
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        """Get current count for a drop reason."""
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.

        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Maximum samples to keep (prevents unbounded growth)
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)

            if len(samples) > max_samples:
                # Keep most recent half
                self._histograms[histogram_name] = samples[-max_samples//2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Get statistics for a histogram.

        Returns:
            Dict with min, max, mean, median, p95, p99, count;
            None if histogram is empty
        """
        with self._lock:
            samples = self._histograms.get(histogram_name, [])

            if not samples:
                return None

            sorted_samples = sorted(samples)
            count = len(sorted_samples)

            return {
                'count': count,
                'min': sorted_samples[0],
                'max': sorted_samples[-1],
                'mean': statistics.mean(sorted_samples),
                'median': statistics.median(sorted_samples),
                'p95': sorted_samples[int(count * 0.95)] if count > 1 else sorted_samples[0],
                'p99': sorted_samples[int(count * 0.99)] if count > 1 else sorted_samples[0],
            }

    def snapshot(self) -> CounterSnapshot:
        """Get a snapshot (deep copy) of current metrics state."""
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._init_standard_counters()

    def get_uptime(self) -> float:
        """Get uptime in seconds since initialization."""
        return time.time() - self._start_time

    def print_summary(self):
        """Print ticks, drops per pipeline stage and histogram stats."""
        snapshot = self.snapshot()
        counters = snapshot.counters

        print("\n" + "=" * 70)
        print(f"  TRACKING METRICS SUMMARY (uptime: {self.get_uptime():.1f}s)")
        print("=" * 70)

        print(f"\nTICKS: {counters.get('ticks_in', 0)} in, "
              f"{counters.get('ticks_located', 0)} located "
              f"({snapshot.located_rate():.1f}%), "
              f"{counters.get('session_reinitialisations', 0)} re-initialisations")

        print("\nCOUNTERS:")
        for name, value in sorted(counters.items()):
            print(f"  {name:30s}: {value:8d}")

        if snapshot.total_dropped() > 0:
            print("\nDROPS BY STAGE:")
            stages = snapshot.drops_by_stage()
            for stage in sorted(stages):
                if stages[stage] == 0:
                    continue
                print(f"  {stage}: {stages[stage]}")
                for reason, count in sorted(snapshot.drop_reasons.items()):
                    if count > 0 and DROP_STAGES.get(reason, 'other') == stage:
                        print(f"    {reason:28s}: {count:8d}")

        if snapshot.histograms:
            print("\nHISTOGRAMS:")
            for name in sorted(snapshot.histograms):
                stats = self.get_histogram_stats(name)
                if stats:
                    print(f"  {name}: count={stats['count']}, mean={stats['mean']:.4g}, "
                          f"p95={stats['p95']:.4g}, max={stats['max']:.4g}")

        print("=" * 70 + "\n")
