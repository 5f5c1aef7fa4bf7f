"""
TDOA grid engine.

Functions for laying out a grid around the stations, evaluating the
TDOA field of every master/slave pair on it and tracing lines of
position through the resulting rasters.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .asf import ConstantAsf, RasterAsf, rasterize
from .config import GridSettings
from .contour import extract_contours
from .errors import AsfExpressionError, GridComputeCancelled
from .physics import haversine_distance, pair_constant, station_distance, timing_constant
from .projection import GridBounds, to_planar
from .schemas import SPEED_OF_LIGHT, Contour, GridResult, Station, TdoaRaster

logger = logging.getLogger(__name__)


def compute_bounds(
    points: Sequence[Tuple[float, float]],
    settings: Optional[GridSettings] = None,
) -> GridBounds:
    """
    Calculate padded grid bounds that cover a set of points.

    A span narrower than ``degenerate_span_degrees`` (for example all
    stations at one spot) is widened to the minimum padding first.

    Args:
        points: (latitude, longitude) pairs in decimal degrees
        settings: Grid settings

    Returns:
        GridBounds in Web Mercator meters
    """
    settings = settings or GridSettings()
    if not points:
        raise ValueError("at least one point is required to size a grid")

    lats = [p[0] for p in points]
    lngs = [p[1] for p in points]
    min_lng, min_lat, max_lng, max_lat = min(lngs), min(lats), max(lngs), max(lats)

    if abs(max_lng - min_lng) < settings.degenerate_span_degrees:
        min_lng -= settings.min_padding_degrees
        max_lng += settings.min_padding_degrees
    if abs(max_lat - min_lat) < settings.degenerate_span_degrees:
        min_lat -= settings.min_padding_degrees
        max_lat += settings.min_padding_degrees

    pad_x = max((max_lng - min_lng) * settings.padding_fraction, settings.min_padding_degrees)
    pad_y = max((max_lat - min_lat) * settings.padding_fraction, settings.min_padding_degrees)
    min_lng, max_lng = max(min_lng - pad_x, -180.0), min(max_lng + pad_x, 180.0)
    min_lat, max_lat = max(min_lat - pad_y, -85.0), min(max_lat + pad_y, 85.0)

    min_x, min_y = to_planar(min_lat, min_lng)
    max_x, max_y = to_planar(max_lat, max_lng)
    return GridBounds(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)


def max_baseline(masters: Sequence[Station], slaves: Sequence[Station]) -> float:
    """Longest master-slave baseline in meters."""
    longest = 0.0
    for master in masters:
        for slave in slaves:
            longest = max(longest, station_distance(master, slave))
    return longest


def auto_levels(
    masters: Sequence[Station],
    slaves: Sequence[Station],
    settings: Optional[GridSettings] = None,
) -> List[float]:
    """
    Select contour levels from the station geometry.

    The step is ``max(min_level_step_meters, baseline / level_divisions)``
    and the levels form an odd set symmetric around zero.

    Returns:
        Levels in seconds, ascending
    """
    settings = settings or GridSettings()
    step = max(settings.min_level_step_meters, max_baseline(masters, slaves) / settings.level_divisions)
    half = settings.level_count // 2
    return [k * step / SPEED_OF_LIGHT for k in range(-half, half + 1)]


def station_asf_values(
    station: Station,
    bounds: GridBounds,
    nx: int,
    ny: int,
    lats: np.ndarray,
    lngs: np.ndarray,
    presampled: Optional[np.ndarray] = None,
    cancel: Optional[threading.Event] = None,
) -> Tuple[np.ndarray, Optional[AsfExpressionError]]:
    """
    ASF of one station at every lattice point, as a (ny, nx) array.

    A failing expression contributes zero everywhere; the error is
    returned for the caller to report.
    """
    if presampled is not None:
        return np.asarray(presampled, dtype=float).reshape(ny, nx), None
    source = station.asf
    if source is None:
        return np.zeros((ny, nx)), None
    if isinstance(source, ConstantAsf):
        return np.full((ny, nx), source.meters), None
    if isinstance(source, RasterAsf) and source.matches(bounds, nx, ny):
        return source.values.reshape(ny, nx), None
    try:
        raster = rasterize(source, bounds, nx, ny, lats, lngs, cancel)
        return raster.values.reshape(ny, nx), None
    except AsfExpressionError as e:
        logger.warning("ASF sampling failed for %s, using zero: %s", station.label, e)
        return np.zeros((ny, nx)), e


def _arrival_rows(
    station: Station,
    asf: np.ndarray,
    lats: np.ndarray,
    lngs: np.ndarray,
    sim_time_seconds: float,
    j: int,
) -> np.ndarray:
    geometric = haversine_distance(station.latitude, station.longitude, lats[j], lngs[j])
    return (
        geometric / SPEED_OF_LIGHT
        + timing_constant(station, sim_time_seconds)
        + (asf[j] - station.differential_correction.applied_meters) / SPEED_OF_LIGHT
    )


def tdoa_raster(
    master: Station,
    slave: Station,
    master_index: int,
    slave_index: int,
    lats: np.ndarray,
    lngs: np.ndarray,
    master_asf: np.ndarray,
    slave_asf: np.ndarray,
    sim_time_seconds: float,
    cancel: Optional[threading.Event] = None,
) -> TdoaRaster:
    """
    Evaluate the TDOA field of one pair at every lattice point.

    ``value = arrival(slave) - arrival(master) - pair_constant`` so the
    zero contour carries only geometric, ASF and differential structure.

    Raises:
        GridComputeCancelled: If ``cancel`` is set between rows
    """
    ny, nx = lats.shape
    constant = pair_constant(master, slave, sim_time_seconds)
    values = np.empty((ny, nx))
    for j in range(ny):
        if cancel is not None and cancel.is_set():
            raise GridComputeCancelled("grid computation cancelled")
        arrival_master = _arrival_rows(master, master_asf, lats, lngs, sim_time_seconds, j)
        arrival_slave = _arrival_rows(slave, slave_asf, lats, lngs, sim_time_seconds, j)
        values[j] = (arrival_slave - arrival_master) - constant
    return TdoaRaster(
        master_index=master_index, slave_index=slave_index, nx=nx, ny=ny, values=values
    )


def compute_grid(
    masters: Sequence[Station],
    slaves: Sequence[Station],
    bounds: GridBounds,
    nx: int,
    ny: int,
    sim_time_seconds: float = 0.0,
    levels_seconds: Optional[Sequence[float]] = None,
    asf_rasters: Optional[Dict[str, np.ndarray]] = None,
    cancel: Optional[threading.Event] = None,
    asf_errors: Optional[Dict[str, str]] = None,
) -> GridResult:
    """
    Calculate rasters and contours for every master/slave pair.

    Args:
        masters: Master stations
        slaves: Slave stations
        bounds: Grid bounds
        nx: Grid columns
        ny: Grid rows
        sim_time_seconds: Simulated time for clock drift
        levels_seconds: Contour levels; zero only when omitted
        asf_rasters: Presampled flat ASF rasters keyed by station label
        cancel: Optional cancellation event, checked between pairs and rows
        asf_errors: Optional dict collecting ASF failures by station label

    Returns:
        GridResult with one raster per pair and its contours

    Raises:
        GridComputeCancelled: If cancelled part-way
    """
    levels = [0.0] if levels_seconds is None else list(levels_seconds)
    asf_rasters = asf_rasters or {}
    lats, lngs = bounds.geodetic_lattice(nx, ny)

    asf_by_label: Dict[str, np.ndarray] = {}
    for station in list(masters) + list(slaves):
        values, error = station_asf_values(
            station, bounds, nx, ny, lats, lngs, asf_rasters.get(station.label), cancel
        )
        asf_by_label[station.label] = values
        if error is not None and asf_errors is not None:
            asf_errors[station.label] = str(error)

    rasters: List[TdoaRaster] = []
    contours: List[Contour] = []
    for mi, master in enumerate(masters):
        for si, slave in enumerate(slaves):
            if cancel is not None and cancel.is_set():
                raise GridComputeCancelled("grid computation cancelled")
            raster = tdoa_raster(
                master, slave, mi, si, lats, lngs,
                asf_by_label[master.label], asf_by_label[slave.label],
                sim_time_seconds, cancel,
            )
            rasters.append(raster)
            contours.extend(extract_contours(raster, bounds, levels, cancel))

    logger.info(
        "Computed %d TDOA rasters (%dx%d) with %d contours",
        len(rasters), nx, ny, len(contours),
    )
    return GridResult(
        bounds=bounds,
        nx=nx,
        ny=ny,
        sim_time_seconds=sim_time_seconds,
        rasters=rasters,
        contours=contours,
    )
