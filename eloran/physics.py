"""
e-Loran physics module.

This module contains the propagation constants and the clock and
propagation model. All functions are pure and stateless.

For a station and a target point at simulated time ``t``::

    arrival(t) = d / C + offset + (bias + drift * t) + (asf - diff) / C

Every delay here uses the spherical haversine distance on geodetic
coordinates. Planar coordinates are only used to lay out grids.
"""

import logging
from typing import Dict, Optional, Tuple

import numpy as np

from .errors import AsfExpressionError
from .schemas import SPEED_OF_LIGHT, Station

logger = logging.getLogger(__name__)

EARTH_RADIUS = 6371000.0  # m, spherical model


def haversine_distance(lat1, lon1, lat2, lon2):
    """
    Calculate the great-circle distance between two points in meters.

    Accepts scalars or numpy arrays (broadcast elementwise).

    Args:
        lat1: Latitude of first point in decimal degrees
        lon1: Longitude of first point in decimal degrees
        lat2: Latitude of second point in decimal degrees
        lon2: Longitude of second point in decimal degrees

    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(np.radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS * np.arcsin(np.sqrt(np.clip(h, 0.0, 1.0)))


def station_distance(a: Station, b: Station) -> float:
    """Great-circle baseline between two stations in meters."""
    return float(haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude))


def direct_path_delay(station: Station, lat, lng):
    """Free-space propagation delay in seconds from a station to a point."""
    return haversine_distance(station.latitude, station.longitude, lat, lng) / SPEED_OF_LIGHT


def timing_constant(station: Station, sim_time_seconds: float) -> float:
    """Clock offset plus fixed timing offset of a station, in seconds."""
    return station.offset_seconds + station.clock.offset_at(sim_time_seconds)


def pair_constant(master: Station, slave: Station, sim_time_seconds: float) -> float:
    """
    Global timing bias of a master/slave pair.

    Subtracting this from ``arrival(slave) - arrival(master)`` leaves only
    the geometric, ASF and differential-correction structure.
    """
    return timing_constant(slave, sim_time_seconds) - timing_constant(master, sim_time_seconds)


def sample_asf(station: Station, lat: float, lng: float) -> Tuple[float, Optional[AsfExpressionError]]:
    """
    Sample a station's ASF contribution at a point.

    A failing expression contributes zero; the error is returned so the
    caller can report it for that station.

    Returns:
        Tuple of (asf_meters, error or None)
    """
    if station.asf is None:
        return 0.0, None
    try:
        return float(station.asf.sample(lat, lng)), None
    except AsfExpressionError as e:
        logger.warning("ASF evaluation failed for %s: %s", station.label, e)
        return 0.0, e


def _arrival(
    station: Station,
    lat: float,
    lng: float,
    sim_time_seconds: float,
    diff_meters: float,
    asf_errors: Optional[Dict[str, str]],
) -> float:
    asf_meters, error = sample_asf(station, lat, lng)
    if error is not None and asf_errors is not None:
        asf_errors[station.label] = str(error)
    return float(
        direct_path_delay(station, lat, lng)
        + timing_constant(station, sim_time_seconds)
        + (asf_meters - diff_meters) / SPEED_OF_LIGHT
    )


def compute_arrival(
    station: Station,
    lat: float,
    lng: float,
    sim_time_seconds: float,
    asf_errors: Optional[Dict[str, str]] = None,
) -> float:
    """
    Calculate the arrival time of a station's signal at a point.

    Args:
        station: Transmitting station
        lat: Point latitude in decimal degrees
        lng: Point longitude in decimal degrees
        sim_time_seconds: Simulated time driving the clock drift
        asf_errors: Optional dict collecting ASF failures by station label

    Returns:
        Arrival time in seconds relative to the nominal emission instant
    """
    return _arrival(
        station, lat, lng, sim_time_seconds,
        station.differential_correction.applied_meters, asf_errors,
    )


def compute_arrival_no_diff(
    station: Station,
    lat: float,
    lng: float,
    sim_time_seconds: float,
    asf_errors: Optional[Dict[str, str]] = None,
) -> float:
    """Arrival time with the differential correction forced to zero."""
    return _arrival(station, lat, lng, sim_time_seconds, 0.0, asf_errors)


def observed_tdoa(
    master: Station,
    slave: Station,
    lat: float,
    lng: float,
    sim_time_seconds: float,
    asf_errors: Optional[Dict[str, str]] = None,
) -> float:
    """
    TDOA (slave minus master) at a point with the pair constant removed.

    Returns:
        TDOA in seconds
    """
    arrival_master = compute_arrival(master, lat, lng, sim_time_seconds, asf_errors)
    arrival_slave = compute_arrival(slave, lat, lng, sim_time_seconds, asf_errors)
    return arrival_slave - arrival_master - pair_constant(master, slave, sim_time_seconds)
