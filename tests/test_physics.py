"""
Unit tests for the clock and propagation model.
"""

import math

import numpy as np
import pytest

from eloran.asf import ConstantAsf, ExpressionAsf
from eloran.physics import (
    EARTH_RADIUS,
    compute_arrival,
    compute_arrival_no_diff,
    direct_path_delay,
    haversine_distance,
    observed_tdoa,
    pair_constant,
    station_distance,
)
from eloran.schemas import SPEED_OF_LIGHT, ClockModel, DifferentialCorrection, Station


class TestDistances:
    """Test great-circle distance calculations."""

    def test_one_degree_on_equator(self):
        """One degree of longitude on the equator is R * pi / 180."""
        expected = EARTH_RADIUS * math.pi / 180
        assert abs(haversine_distance(0.0, 0.0, 0.0, 1.0) - expected) < 1e-6

    def test_zero_distance(self):
        """Coincident points are zero meters apart."""
        assert haversine_distance(42.0, -70.0, 42.0, -70.0) == 0.0

    def test_vectorized(self):
        """Arrays broadcast elementwise."""
        lats = np.array([0.0, 0.0, 1.0])
        lngs = np.array([0.0, 1.0, 0.0])
        d = haversine_distance(0.0, 0.0, lats, lngs)
        assert d.shape == (3,)
        assert d[0] == 0.0
        assert abs(d[1] - d[2]) < 1e-6

    def test_symmetric(self, master, slave):
        """Baseline does not depend on argument order."""
        assert station_distance(master, slave) == pytest.approx(station_distance(slave, master))


class TestDirectPathDelay:
    """Test the free-space delay."""

    def test_delay_equals_distance_over_c(self, master, slave):
        """Delay between two stations equals d / C."""
        d = station_distance(master, slave)
        delay = direct_path_delay(master, slave.latitude, slave.longitude)
        assert abs(delay - d / SPEED_OF_LIGHT) < 1e-15

    @pytest.mark.parametrize("lat,lng", [(10.0, 20.0), (-45.0, 170.0), (60.0, -5.0)])
    def test_delay_at_arbitrary_points(self, master, lat, lng):
        """Delay to any point equals its haversine distance over C."""
        d = haversine_distance(master.latitude, master.longitude, lat, lng)
        assert direct_path_delay(master, lat, lng) == pytest.approx(d / SPEED_OF_LIGHT, rel=1e-12)


class TestArrival:
    """Test the full arrival-time model."""

    def test_components_add_up(self):
        """Arrival = d/C + offset + bias + drift*t + (asf - diff)/C."""
        station = Station(
            role="master", label="M1", latitude=0.0, longitude=0.0,
            offset_seconds=2e-6,
            clock=ClockModel(bias_seconds=1e-6, drift_seconds_per_second=1e-9),
            asf=ConstantAsf(meters=30.0),
            differential_correction=DifferentialCorrection(enabled=True, average_meters=10.0),
        )
        t = 100.0
        d = haversine_distance(0.0, 0.0, 0.3, 0.4)
        expected = d / SPEED_OF_LIGHT + 2e-6 + 1e-6 + 1e-9 * t + 20.0 / SPEED_OF_LIGHT
        assert compute_arrival(station, 0.3, 0.4, t) == pytest.approx(expected, rel=1e-12)

    def test_no_diff_variant_ignores_correction(self):
        """The no-diff variant differs exactly by the correction."""
        station = Station(
            role="master", label="M1", latitude=0.0, longitude=0.0,
            differential_correction=DifferentialCorrection(enabled=True, average_meters=15.0),
        )
        with_diff = compute_arrival(station, 0.2, 0.2, 0.0)
        without = compute_arrival_no_diff(station, 0.2, 0.2, 0.0)
        assert (without - with_diff) * SPEED_OF_LIGHT == pytest.approx(15.0, abs=1e-6)

    def test_disabled_correction_not_applied(self):
        """A disabled correction contributes nothing."""
        station = Station(
            role="master", label="M1", latitude=0.0, longitude=0.0,
            differential_correction=DifferentialCorrection(enabled=False, average_meters=15.0),
        )
        assert compute_arrival(station, 0.2, 0.2, 0.0) == compute_arrival_no_diff(station, 0.2, 0.2, 0.0)

    def test_failing_asf_contributes_zero(self):
        """A failing expression is a zero contribution, reported for that station."""
        station = Station(
            role="slave", label="S9", latitude=0.0, longitude=0.0,
            asf=ExpressionAsf(expression="1 / (lat - lat)"),
        )
        errors = {}
        arrival = compute_arrival(station, 0.1, 0.1, 0.0, errors)
        assert arrival == pytest.approx(direct_path_delay(station, 0.1, 0.1))
        assert "S9" in errors


class TestPairConstant:
    """Test removal of the pair timing bias."""

    def test_observed_tdoa_independent_of_clocks(self, master, slave):
        """Clock bias, drift and offsets cancel out of the observed TDOA."""
        biased_slave = slave.model_copy(update={
            "offset_seconds": 5e-3,
            "clock": ClockModel(bias_seconds=3e-6, drift_seconds_per_second=2e-9),
        })
        plain = observed_tdoa(master, slave, 0.5, 0.5, 50.0)
        biased = observed_tdoa(master, biased_slave, 0.5, 0.5, 50.0)
        assert biased == pytest.approx(plain, abs=1e-15)

    def test_pair_constant_value(self, master, slave):
        """Pair constant is slave timing minus master timing."""
        s = slave.model_copy(update={"offset_seconds": 1e-3, "clock": ClockModel(drift_seconds_per_second=1e-6)})
        assert pair_constant(master, s, 10.0) == pytest.approx(1e-3 + 1e-5)

    def test_midpoint_tdoa_is_zero(self, master, slave):
        """On the perpendicular bisector the TDOA vanishes."""
        assert abs(observed_tdoa(master, slave, 0.3, 0.5, 0.0)) < 1e-12
