"""
Tracking Pipeline and Session.

Composes the scan reducer, the closed-form initialiser and the EKF into the
three core operations:

    initialise(scan_batch, session_anchor_id) -> FilterState
    step(filter_state, scan_batch, session_anchor_id) -> (FilterState, position)
    fit_path_loss(anchor_id, samples)             (see ipt_core.calibration)

TrackingSession drives them tick by tick for one receiver, owning the filter
state and forwarding one PositionEstimate per tick to an optional sink.

Usage:
    session = TrackingSession(registry, store, session_anchor_id=3, sink=print)

    for batch in scans:
        estimate = session.process(batch)
        if estimate.has_valid_fix:
            print(f"Position: {estimate.position}")
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ipt_core.errors import FilterDivergence, TrackerError
from ipt_core.calibration import CalibrationStore
from ipt_core.localization.anchor_registry import AnchorRegistry
from ipt_core.localization.scan_reducer import ScanReducer, ScanReducerConfig
from ipt_core.localization.ls_solver import LSSolver, LSSolverConfig, LSSolution
from ipt_core.localization.ekf_tracker import EKFTracker, EKFConfig, EKFUpdate, FilterState
from ipt_core.proto.scan_sample import ScanBatch
from ipt_core.proto.anchor_observation import AnchorObservation, anchor_ids
from ipt_core.proto.position_estimate import PositionEstimate, FixType, create_no_fix
from ipt_core.metrics import get_metrics

logger = logging.getLogger(__name__)

PositionSink = Callable[[PositionEstimate], None]


@dataclass
class TrackingSessionConfig:
    """
    Configuration for the tracking pipeline and session.

    Attributes:
        reducer_config: ScanReducer configuration
        solver_config: Closed-form initialiser configuration
        filter_config: EKF configuration
        update_on_first_tick: Also run an EKF update on the batch used to
            initialise (the WCLS fix alone is reported otherwise)
        max_consecutive_divergences: Divergent ticks in a row after which the
            filter state is dropped and re-initialised from WCLS
        stabilise_anchor_set: Keep the previous tick's four anchors while all
            of them remain visible
    """

    reducer_config: Optional[ScanReducerConfig] = None
    solver_config: Optional[LSSolverConfig] = None
    filter_config: Optional[EKFConfig] = None
    update_on_first_tick: bool = True
    max_consecutive_divergences: int = 3
    stabilise_anchor_set: bool = False


class TrackingPipeline:
    """
    Stateless composition of reducer, initialiser and filter.

    Holds the read-only collaborators (anchor registry, calibration store) and
    configuration; filter state is always passed in and returned.
    """

    def __init__(
        self,
        registry: AnchorRegistry,
        store: CalibrationStore,
        config: Optional[TrackingSessionConfig] = None,
    ):
        self.config = config or TrackingSessionConfig()
        self.reducer = ScanReducer(registry, store, self.config.reducer_config or ScanReducerConfig())
        self.solver = LSSolver(self.config.solver_config or LSSolverConfig())
        self.tracker = EKFTracker(self.config.filter_config or EKFConfig())

    def reduce(
        self,
        batch: ScanBatch,
        session_anchor_id: int,
        preferred_labels: Optional[Sequence[str]] = None,
    ) -> List[AnchorObservation]:
        return self.reducer.reduce(batch, session_anchor_id, preferred_labels)

    def locate(self, batch: ScanBatch, session_anchor_id: int) -> LSSolution:
        """Single-shot closed-form fix from one scan."""
        observations = self.reduce(batch, session_anchor_id)
        return self.solver.solve(observations)

    def initialise(self, batch: ScanBatch, session_anchor_id: int) -> FilterState:
        """
        Reduce a scan and build the initial filter state from its LS fix.

        Raises:
            InsufficientAnchors, ModelUnavailable, SingularSystem, IllConditioned
        """
        solution = self.locate(batch, session_anchor_id)
        return self.tracker.initial_state(solution.position)

    def step(
        self,
        state: FilterState,
        batch: ScanBatch,
        session_anchor_id: int,
    ) -> Tuple[FilterState, Tuple[float, float]]:
        """
        Reduce a scan, then predict + update.

        Raises:
            InsufficientAnchors, ModelUnavailable, FilterDivergence
        """
        observations = self.reduce(batch, session_anchor_id)
        return self.tracker.step(state, observations)


def initialise(
    scan_batch: ScanBatch,
    session_anchor_id: int,
    registry: AnchorRegistry,
    store: CalibrationStore,
    config: Optional[TrackingSessionConfig] = None,
) -> FilterState:
    """Reducer + WCLS: initial FilterState with P0 = diag(10, 10)."""
    return TrackingPipeline(registry, store, config).initialise(scan_batch, session_anchor_id)


def step(
    filter_state: FilterState,
    scan_batch: ScanBatch,
    session_anchor_id: int,
    registry: AnchorRegistry,
    store: CalibrationStore,
    config: Optional[TrackingSessionConfig] = None,
) -> Tuple[FilterState, Tuple[float, float]]:
    """Reducer + predict + update. The input state is not modified."""
    return TrackingPipeline(registry, store, config).step(
        filter_state, scan_batch, session_anchor_id
    )


class TrackingSession:
    """
    Tick-by-tick tracking of one receiver.

    Pipeline per tick:
    1. Reduce the scan to four observations
    2. First tick: WCLS fix -> initial filter state
    3. EKF predict + update
    4. Emit a PositionEstimate (EKF_FIX, LS_FIX or NO_FIX) to the sink

    Skipped ticks leave the filter state exactly as it was. Repeated filter
    divergence drops the state so the next tick re-initialises.

    Not re-entrant: concurrent calls to process() raise RuntimeError.
    """

    def __init__(
        self,
        registry: AnchorRegistry,
        store: CalibrationStore,
        session_anchor_id: int,
        config: Optional[TrackingSessionConfig] = None,
        sink: Optional[PositionSink] = None,
    ):
        """
        Initialize tracking session.

        Args:
            registry: Known anchors
            store: Path-loss models (read-only during the session)
            session_anchor_id: Anchor whose curve converts every RSS
            config: Session configuration (uses defaults if None)
            sink: Callable receiving every PositionEstimate
        """
        self.config = config or TrackingSessionConfig()
        self.pipeline = TrackingPipeline(registry, store, self.config)
        self.session_anchor_id = session_anchor_id
        self.sink = sink
        self.metrics = get_metrics()

        self._lock = threading.Lock()
        self._state: Optional[FilterState] = None
        self._tick = 0
        self._consecutive_divergences = 0
        self._last_labels: Optional[List[str]] = None
        self._last_position: Tuple[float, float] = (0.0, 0.0)

    @property
    def state(self) -> Optional[FilterState]:
        """Current filter state (None before the first successful tick)."""
        return self._state

    @property
    def is_initialised(self) -> bool:
        return self._state is not None

    @property
    def tick(self) -> int:
        return self._tick

    def process(self, batch: ScanBatch) -> PositionEstimate:
        """
        Run one tick on a scan batch.

        Args:
            batch: Raw scan batch

        Returns:
            PositionEstimate for this tick (also sent to the sink)
        """
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("TrackingSession.process is not re-entrant")
        try:
            estimate = self._process_locked(batch)
        finally:
            self._lock.release()

        if self.sink is not None:
            self.sink(estimate)
        return estimate

    def _process_locked(self, batch: ScanBatch) -> PositionEstimate:
        self._tick += 1
        self.metrics.increment('ticks_in')

        preferred = self._last_labels if self.config.stabilise_anchor_set else None

        try:
            observations = self.pipeline.reduce(batch, self.session_anchor_id, preferred)

            state = self._state
            if state is None:
                solution = self.pipeline.solver.solve(observations)
                state = self.pipeline.tracker.initial_state(solution.position)
                logger.info("Tracking initialised at (%.2f, %.2f) from %s fix",
                            solution.position[0], solution.position[1], solution.algorithm)

                if not self.config.update_on_first_tick:
                    self._commit(state, observations)
                    return self._estimate(batch, FixType.LS_FIX, state, observations)

            result = self.pipeline.tracker.step_with_diagnostics(state, observations)

        except FilterDivergence as e:
            return self._handle_divergence(batch, e)

        except TrackerError as e:
            logger.debug("Tick %d skipped: %s", self._tick, e)
            return self._no_fix(batch, e)

        self._consecutive_divergences = 0
        self._commit(result.state, observations)
        return self._estimate(batch, FixType.EKF_FIX, result.state, observations, result)

    def _handle_divergence(self, batch: ScanBatch, error: FilterDivergence) -> PositionEstimate:
        self._consecutive_divergences += 1
        logger.warning("Tick %d: filter divergence (%d in a row): %s",
                       self._tick, self._consecutive_divergences, error)

        if self._consecutive_divergences >= self.config.max_consecutive_divergences:
            logger.warning("Dropping filter state; next tick re-initialises")
            self.metrics.increment('session_reinitialisations')
            self._state = None
            self._last_labels = None
            self._consecutive_divergences = 0

        return self._no_fix(batch, error)

    def _commit(self, state: FilterState, observations: Sequence[AnchorObservation]):
        self._state = state
        self._last_position = state.position
        self._last_labels = [o.anchor_label for o in observations]

    def _estimate(
        self,
        batch: ScanBatch,
        fix_type: FixType,
        state: FilterState,
        observations: Sequence[AnchorObservation],
        result: Optional[EKFUpdate] = None,
    ) -> PositionEstimate:
        self.metrics.increment('ticks_located')
        return PositionEstimate(
            t_solve=batch.t_scan,
            fix_type=fix_type,
            position=state.position,
            tick=self._tick,
            anchor_ids=anchor_ids(observations),
            pos_std=state.position_std,
            covariance_trace=state.covariance_trace,
            innovation_norm=result.innovation_norm if result is not None else None,
        )

    def _no_fix(self, batch: ScanBatch, error: TrackerError) -> PositionEstimate:
        return create_no_fix(
            batch.t_scan,
            last_position=self._last_position,
            tick=self._tick,
            error_code=error.exit_code,
            error_reason=error.reason,
        )

    def reset(self):
        """End the tracking session's filter; the next tick re-initialises."""
        with self._lock:
            self._state = None
            self._last_labels = None
            self._consecutive_divergences = 0
            self._last_position = (0.0, 0.0)

    def get_statistics(self) -> dict:
        """Get session statistics."""
        return {
            'ticks': self._tick,
            'initialised': self.is_initialised,
            'ticks_located': self.metrics.get_counter('ticks_located'),
            'ekf_updates': self.metrics.get_counter('ekf_updates'),
            'reinitialisations': self.metrics.get_counter('session_reinitialisations'),
            'consecutive_divergences': self._consecutive_divergences,
        }


def create_default_session(
    registry: AnchorRegistry,
    store: CalibrationStore,
    session_anchor_id: int,
    sink: Optional[PositionSink] = None,
) -> TrackingSession:
    """
    Create a tracking session with default configuration.

    WCLS initialiser (source weighting), Q = 0.001 I, R = 0.1 I, P0 = 10 I.
    """
    config = TrackingSessionConfig(
        reducer_config=ScanReducerConfig(),
        solver_config=LSSolverConfig(algorithm='weighted_circular', weighting='source'),
        filter_config=EKFConfig(),
        update_on_first_tick=True,
        max_consecutive_divergences=3,
        stabilise_anchor_set=False,
    )
    return TrackingSession(registry, store, session_anchor_id, config, sink)
