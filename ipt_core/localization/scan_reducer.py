"""
Scan Reducer.

Turns one raw Wi-Fi scan into the canonical list of four anchor observations
consumed by the least-squares initialiser and the EKF.

Stages, in order:
1. Known-anchor filter (strip the virtual-SSID character, keep registered labels)
2. Virtual-SSID dedup (first occurrence per physical AP wins)
3. Sufficiency check (at least four anchors)
4. Top-4 selection (stable sort by RSS, strongest first)
5. RSS -> distance with the session anchor's path-loss curve
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ipt_core.errors import InsufficientAnchors, ModelUnavailable
from ipt_core.calibration import CalibrationStore
from ipt_core.localization.anchor_registry import Anchor, AnchorRegistry
from ipt_core.proto.scan_sample import RawScanSample, ScanBatch
from ipt_core.proto.anchor_observation import AnchorObservation, OBSERVATIONS_PER_TICK
from ipt_core.metrics import get_metrics

logger = logging.getLogger(__name__)

KnownSample = Tuple[Anchor, RawScanSample]


@dataclass
class ScanReducerConfig:
    """
    Configuration for the scan reducer.

    Attributes:
        num_observations: Anchors kept per tick (the filter's measurement size)
        clamp_negative_distance: Clamp negative polynomial output to 0
    """

    num_observations: int = OBSERVATIONS_PER_TICK
    clamp_negative_distance: bool = True


class ScanReducer:
    """
    Reduce raw scan batches to ordered anchor observations.

    Usage:
        reducer = ScanReducer(registry, store)
        observations = reducer.reduce(batch, session_anchor_id=3)
        # observations[0] is the strongest anchor
    """

    def __init__(
        self,
        registry: AnchorRegistry,
        store: CalibrationStore,
        config: Optional[ScanReducerConfig] = None,
    ):
        """
        Initialize reducer.

        Args:
            registry: Known anchors
            store: Path-loss models keyed by anchor id
            config: Reducer configuration (uses defaults if None)
        """
        self.registry = registry
        self.store = store
        self.config = config or ScanReducerConfig()
        self.metrics = get_metrics()

    def reduce(
        self,
        batch: ScanBatch,
        session_anchor_id: int,
        preferred_labels: Optional[Sequence[str]] = None,
    ) -> List[AnchorObservation]:
        """
        Reduce a scan batch to exactly num_observations observations.

        Args:
            batch: Raw scan batch
            session_anchor_id: Anchor whose path-loss curve converts every RSS
            preferred_labels: Anchor set of the previous tick; kept when all of
                its labels are still present (anchor-set stabilisation)

        Returns:
            Observations ordered by decreasing RSS

        Raises:
            InsufficientAnchors: fewer than num_observations distinct known anchors
            ModelUnavailable: session anchor has no path-loss model
        """
        self.metrics.increment('samples_in', len(batch.samples))

        known = self.filter_known(batch.samples)
        unique = self.deduplicate(known)

        required = self.config.num_observations
        if len(unique) < required:
            self.metrics.increment_drop('insufficient_anchors')
            raise InsufficientAnchors(len(unique), required)

        selected = self.strongest(unique, preferred_labels)

        model = self.store.get(session_anchor_id)
        if model is None:
            self.metrics.increment_drop('model_unavailable')
            raise ModelUnavailable(session_anchor_id)

        observations = []
        for anchor, sample in selected:
            distance = model.distance(sample.rss)
            if distance < 0 and self.config.clamp_negative_distance:
                logger.debug("Clamped negative distance %.3f for %s (rss=%s)",
                             distance, anchor.label, sample.rss)
                distance = 0.0
            observations.append(AnchorObservation(
                anchor_id=anchor.anchor_id,
                anchor_label=anchor.label,
                anchor_position=anchor.position,
                rss=sample.rss,
                estimated_distance=distance,
            ))

        return observations

    def filter_known(self, samples: Sequence[RawScanSample]) -> List[KnownSample]:
        """
        Keep samples whose stripped label is a registered anchor.

        Returned samples carry the stripped label.
        """
        known = []
        for sample in samples:
            stripped = sample.stripped_label
            anchor = self.registry.lookup(stripped)
            if anchor is None:
                self.metrics.increment_drop('unknown_anchor')
                continue
            known.append((anchor, RawScanSample(anchor_label=stripped, rss=sample.rss)))
        return known

    def deduplicate(self, known: Sequence[KnownSample]) -> List[KnownSample]:
        """One sample per stripped label, first occurrence wins, order kept."""
        seen = set()
        unique = []
        for anchor, sample in known:
            if sample.anchor_label in seen:
                self.metrics.increment_drop('duplicate_ssid')
                continue
            seen.add(sample.anchor_label)
            unique.append((anchor, sample))
        return unique

    def strongest(
        self,
        unique: Sequence[KnownSample],
        preferred_labels: Optional[Sequence[str]] = None,
    ) -> List[KnownSample]:
        """
        Select the strongest anchors, strongest first.

        sorted() is stable, so equal RSS values keep first-seen order.
        """
        count = self.config.num_observations
        ranked = sorted(unique, key=lambda item: item[1].rss, reverse=True)

        if preferred_labels and len(preferred_labels) == count:
            wanted = set(preferred_labels)
            kept = [item for item in ranked if item[1].anchor_label in wanted]
            if len(kept) == count:
                return kept
            logger.debug("Previous anchor set %s no longer fully visible", preferred_labels)

        return ranked[:count]
