"""
Unit tests for the EKF tracker.

Tests cover:
- Immutable filter state and a stateless stepper
- Covariance symmetry / positive semi-definiteness
- Exact-measurement fixed point
- Convergence on a noisy static receiver
- Divergence detection
"""

import pytest
import numpy as np

from ipt_core.errors import FilterDivergence
from ipt_core.localization import EKFConfig, EKFTracker, FilterState
from ipt_core.metrics import get_metrics

from tests.conftest import make_observations, true_ranges


TRUE_POSITION = (3.0, 7.0)


@pytest.fixture
def tracker() -> EKFTracker:
    return EKFTracker(EKFConfig())


def noisy_observations(anchors, rng, sigma=0.05, position=TRUE_POSITION):
    ranges = np.array(true_ranges(position, anchors)) + rng.normal(0, sigma, len(anchors))
    return make_observations(anchors, np.maximum(ranges, 0.0))


# =============================================================================
# Test FilterState
# =============================================================================


class TestFilterState:
    """Tests for the immutable state record."""

    def test_initial_state(self, tracker):
        state = tracker.initial_state((4.0, 6.0))

        assert state.position == (4.0, 6.0)
        np.testing.assert_array_equal(state.P, np.diag([10.0, 10.0]))
        assert state.tick == 0
        assert state.covariance_trace == pytest.approx(20.0)
        assert get_metrics().get_counter('ekf_initialisations') == 1

    def test_arrays_are_read_only(self):
        state = FilterState.initial((1.0, 2.0))

        with pytest.raises(ValueError):
            state.x[0] = 5.0
        with pytest.raises(ValueError):
            state.P[0, 0] = 5.0

    def test_state_copies_its_inputs(self):
        x = np.array([1.0, 2.0])
        state = FilterState(x=x, P=np.eye(2))

        x[0] = 99.0

        assert state.position == (1.0, 2.0)

    def test_rejects_wrong_shapes(self):
        with pytest.raises(ValueError, match="shape"):
            FilterState(x=np.zeros(3), P=np.eye(2))
        with pytest.raises(ValueError, match="shape"):
            FilterState(x=np.zeros(2), P=np.eye(3))

    def test_rejects_non_finite(self):
        with pytest.raises(ValueError, match="finite"):
            FilterState(x=np.array([np.nan, 0.0]), P=np.eye(2))

    def test_rejects_indefinite_covariance(self):
        with pytest.raises(ValueError, match="positive semi-definite"):
            FilterState(x=np.array([5.0, 5.0]), P=-100.0 * np.eye(2))

    def test_rejects_asymmetric_covariance(self):
        with pytest.raises(ValueError, match="symmetric"):
            FilterState(x=np.zeros(2), P=np.array([[10.0, 1.0], [0.0, 10.0]]))

    def test_tolerates_rounding_asymmetry(self):
        state = FilterState(x=np.zeros(2), P=np.array([[10.0, 1e-6], [0.0, 10.0]]))

        assert state.P[0, 1] == 1e-6

    def test_to_dict(self):
        state = FilterState.initial((1.0, 2.0), (3.0, 4.0))

        data = state.to_dict()

        assert data['x'] == [1.0, 2.0]
        assert data['P'] == [[3.0, 0.0], [0.0, 4.0]]


# =============================================================================
# Test Update
# =============================================================================


class TestEKFUpdate:
    """Tests for predict + update."""

    def test_input_state_not_modified(self, tracker, square_anchors):
        rng = np.random.default_rng(1)
        state = tracker.initial_state((5.0, 5.0))
        x_before, P_before = state.x.copy(), state.P.copy()

        new_state, _ = tracker.step(state, noisy_observations(square_anchors, rng))

        np.testing.assert_array_equal(state.x, x_before)
        np.testing.assert_array_equal(state.P, P_before)
        assert new_state is not state
        assert new_state.tick == 1

    def test_deterministic(self, tracker, square_anchors):
        rng = np.random.default_rng(2)
        state = tracker.initial_state((5.0, 5.0))
        observations = noisy_observations(square_anchors, rng)

        a, pos_a = tracker.step(state, observations)
        b, pos_b = tracker.step(state, observations)

        assert pos_a == pos_b
        np.testing.assert_array_equal(a.P, b.P)

    def test_covariance_symmetric_psd(self, tracker, square_anchors):
        rng = np.random.default_rng(3)
        state = tracker.initial_state((5.0, 5.0))

        for _ in range(30):
            state, _ = tracker.step(state, noisy_observations(square_anchors, rng))
            np.testing.assert_array_equal(state.P, state.P.T)
            assert np.all(np.linalg.eigvalsh(state.P) >= -1e-9)

    def test_exact_measurements_are_fixed_point(self, square_anchors):
        """With Q = 0 and exact ranges at the prior, the mean does not move."""
        tracker = EKFTracker(EKFConfig(process_noise=(0.0, 0.0)))
        state = tracker.initial_state(TRUE_POSITION)
        observations = make_observations(square_anchors, true_ranges(TRUE_POSITION, square_anchors))

        for _ in range(5):
            previous_trace = state.covariance_trace
            state, position = tracker.step(state, observations)
            assert position == pytest.approx(TRUE_POSITION, abs=1e-12)
            assert state.covariance_trace < previous_trace

    def test_converges_on_static_receiver(self, tracker, square_anchors):
        rng = np.random.default_rng(4)
        state = tracker.initial_state((5.0, 5.0))

        for _ in range(20):
            state, position = tracker.step(state, noisy_observations(square_anchors, rng))

        error = np.linalg.norm(np.array(position) - np.array(TRUE_POSITION))
        assert error < 0.3
        assert state.covariance_trace < 1.0

    def test_joseph_matches_simple_update(self, square_anchors):
        rng = np.random.default_rng(5)
        observations = noisy_observations(square_anchors, rng)
        simple = EKFTracker(EKFConfig(covariance_update='simple'))
        joseph = EKFTracker(EKFConfig(covariance_update='joseph'))
        state = FilterState.initial((5.0, 5.0))

        a, _ = simple.step(state, observations)
        b, _ = joseph.step(state, observations)

        np.testing.assert_allclose(a.x, b.x, atol=1e-12)
        np.testing.assert_allclose(a.P, b.P, atol=1e-10)

    def test_asymmetric_prior_is_symmetrised(self, tracker, square_anchors):
        rng = np.random.default_rng(6)
        state = FilterState(x=np.array([5.0, 5.0]), P=np.array([[10.0, 1e-6], [0.0, 10.0]]))

        new_state, _ = tracker.step(state, noisy_observations(square_anchors, rng))

        np.testing.assert_array_equal(new_state.P, new_state.P.T)

    def test_update_records_diagnostics(self, tracker, square_anchors):
        rng = np.random.default_rng(7)
        state = tracker.initial_state((5.0, 5.0))

        result = tracker.step_with_diagnostics(state, noisy_observations(square_anchors, rng))

        assert result.gain.shape == (2, 4)
        assert result.innovation.shape == (4,)
        assert result.innovation_norm >= 0
        assert result.step_norm == pytest.approx(
            np.linalg.norm(result.state.x - result.prior.x)
        )
        assert get_metrics().get_counter('ekf_updates') == 1

    def test_step_bounded_by_gain_times_innovation(self, tracker, square_anchors):
        """||x_new - x_prior|| <= ||K||_2 ||z|| on every tick."""
        rng = np.random.default_rng(8)
        state = tracker.initial_state((5.0, 5.0))

        for _ in range(50):
            result = tracker.step_with_diagnostics(
                state, noisy_observations(square_anchors, rng, sigma=1.0)
            )
            bound = np.linalg.norm(result.gain, 2) * result.innovation_norm
            assert result.step_norm <= bound + 1e-9
            state = result.state


class TestMeasurementModel:
    """Tests for h(x) and its Jacobian."""

    def test_jacobian_rows_are_unit_vectors(self, tracker, square_anchors):
        anchors = np.array([a.position for a in square_anchors])

        h, H = tracker.measurement_model(np.array(TRUE_POSITION), anchors)

        np.testing.assert_allclose(h, true_ranges(TRUE_POSITION, square_anchors))
        np.testing.assert_allclose(np.linalg.norm(H, axis=1), 1.0)

    def test_zero_row_at_anchor(self, tracker, square_anchors):
        anchors = np.array([a.position for a in square_anchors])

        h, H = tracker.measurement_model(np.array([0.0, 0.0]), anchors)

        assert h[0] == 0.0
        np.testing.assert_array_equal(H[0], [0.0, 0.0])
        assert np.all(np.isfinite(H))


class TestDivergence:
    """Tests for divergence detection."""

    def test_oversized_step_raises(self, square_anchors):
        tracker = EKFTracker(EKFConfig(max_step=0.01))
        state = tracker.initial_state((5.0, 5.0))
        observations = make_observations(square_anchors, true_ranges((1.0, 9.0), square_anchors))

        with pytest.raises(FilterDivergence) as excinfo:
            tracker.step(state, observations)

        assert excinfo.value.step_norm > 0.01
        assert excinfo.value.exit_code == 30
        assert get_metrics().get_drop_count('filter_divergence') == 1
        assert state.position == (5.0, 5.0)

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            EKFConfig(covariance_update='square_root')
        with pytest.raises(ValueError):
            EKFConfig(measurement_noise=0.0)

    def test_innovation_covariance_not_spd_raises(self, square_anchors):
        """S = H P H^T + R with a corrupted negative R fails its Cholesky factorisation."""
        tracker = EKFTracker(EKFConfig())
        tracker.config.measurement_noise = -50.0
        state = tracker.initial_state((5.0, 5.0))
        observations = make_observations(square_anchors, true_ranges(TRUE_POSITION, square_anchors))

        with pytest.raises(FilterDivergence, match="not positive definite"):
            tracker.step(state, observations)

        assert state.position == (5.0, 5.0)
        np.testing.assert_array_equal(state.P, np.diag([10.0, 10.0]))
        assert get_metrics().get_drop_count('filter_divergence') == 1
        assert get_metrics().get_counter('ekf_updates') == 0
