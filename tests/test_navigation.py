"""
Unit tests for the receiver estimation cycle.
"""

import numpy as np
import pytest

from eloran.config import SimulatorConfig
from eloran.context import SimulationContext
from eloran.integrity import EventLog, IntegrityMonitor
from eloran.navigation import (
    METERS_PER_DEGREE,
    ROLLING_WINDOW,
    ReceiverEstimator,
    build_observations,
    offset_position,
)


def make_context(**config):
    ctx = SimulationContext(SimulatorConfig(rng_seed=11, **config))
    ctx.add_master(0.0, 0.0)
    ctx.add_slave(0.0, 1.0)
    ctx.add_slave(1.0, 0.0)
    ctx.add_slave(-0.8, 0.6)
    ctx.add_receiver(0.2, 0.3)
    return ctx


class TestObservations:
    """Test TDOA observation generation."""

    def test_one_per_slave_against_first_master(self, context):
        observations = build_observations(context, context.receiver("R1"))
        assert [o.slave.label for o in observations] == ["S1", "S2"]
        assert all(o.master.label == "M1" for o in observations)

    def test_equidistant_receiver_sees_zero(self, context):
        """R1 is equidistant from M1 and S1."""
        observations = build_observations(context, context.receiver("R1"))
        assert abs(observations[0].tdoa_seconds) < 1e-12

    def test_offset_position(self):
        lat, lng = offset_position(0.0, 10.0, METERS_PER_DEGREE, METERS_PER_DEGREE)
        assert lat == pytest.approx(1.0)
        assert lng == pytest.approx(11.0)


class TestEstimate:
    """Test estimation cycles in each fusion mode."""

    def test_radio_fix_without_noise(self, context):
        """Without estimator noise the radio fix lands on the true position."""
        estimate = ReceiverEstimator(context).estimate("R1")
        assert estimate.reference == "M1"
        assert estimate.fix.error_meters < 1.0
        assert estimate.alarm is None
        assert estimate.asf_errors == {}

    def test_last_fix_written_back(self, context):
        estimate = ReceiverEstimator(context).estimate("R1")
        assert context.receiver("R1").last_fix == estimate.fix

    def test_satellite_mode(self, context):
        context.update_receiver("R1", fusion_mode="satellite")
        estimate = ReceiverEstimator(context).estimate("R1")
        assert estimate.fix.hpl_meters == pytest.approx(24.0)
        assert estimate.fix.error_meters < 1e-6

    def test_fused_mode_hpl(self, context):
        """Fusing an exact radio fix leaves the weighted satellite term."""
        context.update_receiver("R1", fusion_mode="fused")
        estimate = ReceiverEstimator(context).estimate("R1")
        assert estimate.fix.hpl_meters == pytest.approx(3 * 0.4 * 8.0, abs=0.01)

    def test_controlled_noise_scale(self):
        """Estimator noise produces errors on the order of its sigma."""
        ctx = make_context(estimator={"mode": "controlled", "noise_std_meters": 20.0})
        estimator = ReceiverEstimator(ctx)
        errors = [estimator.estimate("R1").fix.error_meters for _ in range(200)]
        # Rayleigh mean is sigma * sqrt(pi / 2)
        assert np.mean(errors) == pytest.approx(20.0 * np.sqrt(np.pi / 2), rel=0.2)

    def test_random_noise_larger_than_controlled(self):
        controlled = ReceiverEstimator(make_context(estimator={"mode": "controlled"}))
        random = ReceiverEstimator(make_context(estimator={"mode": "random"}))
        mean_controlled = np.mean([controlled.estimate("R1").fix.error_meters for _ in range(300)])
        mean_random = np.mean([random.estimate("R1").fix.error_meters for _ in range(300)])
        assert mean_random > mean_controlled

    def test_rolling_window(self):
        estimator = ReceiverEstimator(make_context(estimator={"mode": "none"}))
        for _ in range(ROLLING_WINDOW + 20):
            estimator.estimate("R1")
        assert len(estimator.recent_errors) == ROLLING_WINDOW
        assert len(estimator.recent_hpls) == ROLLING_WINDOW

    def test_alarm_on_large_hpl(self):
        ctx = make_context(estimator={"mode": "none"}, integrity={"threshold_meters": 10.0})
        ctx.update_receiver("R1", fusion_mode="satellite")
        log = EventLog()
        estimator = ReceiverEstimator(ctx, IntegrityMonitor(ctx.config.integrity, log))
        estimate = estimator.estimate("R1")
        assert estimate.alarm is not None
        assert estimate.alarm.station == "M1"
        assert log.events == [estimate.alarm]

    def test_estimate_all(self):
        ctx = make_context(estimator={"mode": "none"})
        ctx.add_receiver(-0.3, 0.1)
        estimates = ReceiverEstimator(ctx).estimate_all()
        assert [e.receiver for e in estimates] == ["R1", "R2"]
        assert all(e.fix.error_meters < 1.0 for e in estimates)

    def test_unknown_receiver(self, context):
        with pytest.raises(KeyError):
            ReceiverEstimator(context).estimate("R9")

    def test_master_required(self, config):
        ctx = SimulationContext(config)
        ctx.add_slave(0.0, 1.0)
        ctx.add_receiver(0.5, 0.5)
        with pytest.raises(ValueError):
            ReceiverEstimator(ctx).estimate("R1")
