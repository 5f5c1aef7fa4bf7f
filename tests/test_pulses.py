"""
Unit tests for the pulse/timing simulator.
"""

import numpy as np
import pytest

from eloran.config import PulseSettings, SimulatorConfig
from eloran.context import NoiseSource, SimulationContext
from eloran.physics import compute_arrival
from eloran.pulses import (
    emission_instants,
    render_waveform,
    simulate_pulses,
    station_arrivals,
)
from eloran.schemas import Arrival, EmissionParams, Station


class TestEmission:
    """Test emission scheduling."""

    def test_instants_bracket_current_period(self):
        """Emissions fall on GRI multiples plus the phase, around the current time."""
        station = Station(
            role="master", label="M1", latitude=0.0, longitude=0.0,
            emission=EmissionParams(group_repetition_interval_ms=1000.0, phase_seconds=0.1),
        )
        assert emission_instants(station, 5.5) == pytest.approx([4.1, 5.1, 6.1])

    def test_period_counts(self, master):
        assert len(emission_instants(master, 0.0, periods_before=2, periods_after=3)) == 6


class TestArrivals:
    """Test arrival generation at receivers."""

    def test_direct_arrival_matches_model(self, master, receiver):
        """Without jitter the arrival is emission plus the modeled delay."""
        settings = PulseSettings(jitter_std_seconds=0.0)
        arrivals = station_arrivals(master, receiver, 0.0, settings, NoiseSource(1))
        assert len(arrivals) == 1
        expected = compute_arrival(master, receiver.latitude, receiver.longitude, 0.0)
        assert arrivals[0].arrival_seconds == pytest.approx(expected)
        assert arrivals[0].emission_seconds == 0.0
        assert arrivals[0].kind == "master"

    def test_outside_window_dropped(self, master, receiver):
        """Arrivals before the window start or after its end are discarded."""
        settings = PulseSettings(jitter_std_seconds=0.0)
        assert station_arrivals(master, receiver, 0.5, settings, NoiseSource(1)) == []

    def test_skywave_follows_direct(self, slave, receiver):
        """Skywave arrives after the direct wave with reduced amplitude."""
        settings = PulseSettings(jitter_std_seconds=0.0, skywave_enabled=True)
        arrivals = station_arrivals(slave, receiver, 0.0, settings, NoiseSource(1))
        kinds = [a.kind for a in arrivals]
        assert kinds == ["slave", "slave-sky"]
        direct, sky = arrivals
        assert sky.arrival_seconds == pytest.approx(direct.arrival_seconds + 1e-3)
        assert sky.amplitude_scale == pytest.approx(0.3)
        assert sky.is_skywave and not direct.is_skywave

    def test_skywave_past_window_dropped(self, master, receiver):
        settings = PulseSettings(
            jitter_std_seconds=0.0, skywave_enabled=True, skywave_delay_seconds=0.05
        )
        arrivals = station_arrivals(master, receiver, 0.0, settings, NoiseSource(1))
        assert [a.kind for a in arrivals] == ["master"]

    def test_jittered_arrivals_stay_in_window(self, master, receiver):
        """Jitter never pushes a kept arrival outside the window."""
        settings = PulseSettings(jitter_std_seconds=1e-3)
        noise = NoiseSource(7)
        for t in np.linspace(0.0, 3.0, 31):
            for arrival in station_arrivals(master, receiver, t, settings, noise):
                assert t <= arrival.arrival_seconds <= t + settings.window_seconds


class TestWaveform:
    """Test raised-cosine waveform rendering."""

    def test_length(self):
        settings = PulseSettings()
        assert render_waveform([], 0.0, settings).shape == (10000,)

    def test_pulse_shape(self):
        """A single pulse peaks at its start with amplitude 10^(dBm/20) * scale."""
        settings = PulseSettings()
        arrival = Arrival(
            receiver="R1", station="M1", kind="master",
            emission_seconds=0.0, arrival_seconds=2 ** -9, tx_power_dbm=20.0, amplitude_scale=0.5,
        )
        waveform = render_waveform([arrival], 0.0, settings)
        start = 1953
        assert waveform[start] == pytest.approx(5.0)
        assert waveform[:start].max() == 0.0
        # pulse is 100 samples long and decays towards zero
        assert waveform[start + 50] == pytest.approx(2.5)
        assert np.all(waveform[start + 100:] == 0.0)

    def test_pulse_clipped_at_window_end(self):
        settings = PulseSettings()
        arrival = Arrival(
            receiver="R1", station="S1", kind="slave",
            emission_seconds=0.0, arrival_seconds=0.00995, tx_power_dbm=18.0,
        )
        waveform = render_waveform([arrival], 0.0, settings)
        assert waveform.shape == (10000,)
        assert waveform[9960] > 0.0


class TestSimulatePulses:
    """Test the full receiver simulation."""

    def test_one_timeline_per_receiver(self, context):
        context.add_receiver(0.2, 0.8, label="R2")
        timelines = simulate_pulses(context.snapshot(), context.config.pulses, context.noise)
        assert [t.receiver for t in timelines] == ["R1", "R2"]
        for timeline in timelines:
            assert len(timeline.arrivals) == 3
            assert {a.station for a in timeline.arrivals} == {"M1", "S1", "S2"}

    def test_arrivals_sorted(self, context):
        settings = context.config.pulses.model_copy(update={"skywave_enabled": True})
        timeline = simulate_pulses(context.snapshot(), settings, context.noise)[0]
        times = [a.arrival_seconds for a in timeline.arrivals]
        assert times == sorted(times)
        assert len(timeline.arrivals) == 6

    def test_seeded_reproducibility(self):
        """Two sessions with the same seed produce the same jittered arrivals."""
        def run():
            ctx = SimulationContext(SimulatorConfig(pulses={"jitter_std_seconds": 1e-5}), seed=99)
            ctx.add_master(0.0, 0.0)
            ctx.add_slave(0.0, 1.0)
            ctx.add_receiver(0.4, 0.3)
            timeline = simulate_pulses(ctx.snapshot(), ctx.config.pulses, ctx.noise)[0]
            return [a.arrival_seconds for a in timeline.arrivals]

        assert run() == run()

    def test_no_receivers(self, config):
        ctx = SimulationContext(config)
        ctx.add_master(0.0, 0.0)
        assert simulate_pulses(ctx.snapshot(), config.pulses) == []

    def test_receiver_without_stations(self):
        ctx = SimulationContext()
        ctx.add_receiver(0.0, 0.0)
        timelines = simulate_pulses(ctx.snapshot())
        assert timelines[0].arrivals == []
        assert not timelines[0].waveform.any()
