"""
TDOA position solver.

Gauss-Newton least squares on a local equirectangular frame centred on
the initial guess. Updates are taken in that frame, but modeled TDOAs
use the same haversine distance as the propagation model, so noise-free
observations are reproduced exactly at the true position.

Residuals and Jacobian rows are scaled to meters (multiplied by the
propagation speed) so the normal equations, covariance and protection
level are all expressed in meters.
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from .physics import EARTH_RADIUS, haversine_distance
from .schemas import SPEED_OF_LIGHT, Station

logger = logging.getLogger(__name__)

SINGULAR_DETERMINANT = 1e-12
HPL_SIGMA_SCALE = 3.0


class TdoaObservation(BaseModel):
    """Observed slave-minus-master TDOA with the pair constant removed."""

    model_config = ConfigDict(frozen=True)

    master: Station
    slave: Station
    tdoa_seconds: float = Field(..., description="Observed TDOA in seconds")


class PositionSolution(BaseModel):
    """Solver output: position, covariance in meters squared, HPL in meters."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    latitude: float
    longitude: float
    covariance: Optional[np.ndarray] = Field(
        None, description="2x2 east/north covariance in m^2; None when the geometry is singular"
    )
    hpl_meters: Optional[float] = Field(None, description="Horizontal protection level")
    converged: bool = False
    iterations: int = 0
    residual_meters: List[float] = Field(default_factory=list)


class LocalFrame:
    """Equirectangular projection around a reference latitude."""

    def __init__(self, ref_latitude: float):
        self.ref_latitude = ref_latitude
        self.cos_ref = max(math.cos(math.radians(ref_latitude)), 1e-9)

    def to_xy(self, lat: float, lng: float) -> Tuple[float, float]:
        return (
            math.radians(lng) * EARTH_RADIUS * self.cos_ref,
            math.radians(lat) * EARTH_RADIUS,
        )

    def to_latlng(self, x: float, y: float) -> Tuple[float, float]:
        return (
            math.degrees(y / EARTH_RADIUS),
            math.degrees(x / (EARTH_RADIUS * self.cos_ref)),
        )


def _away_gradient(station: Station, lat: float, lng: float) -> Tuple[float, float]:
    """
    Gradient of the great-circle distance from ``station`` at a point.

    Returns:
        (d/d_east, d/d_north), unit vector pointing away from the station
    """
    phi = math.radians(lat)
    phi_s = math.radians(station.latitude)
    dlam = math.radians(station.longitude - lng)
    bearing = math.atan2(
        math.sin(dlam) * math.cos(phi_s),
        math.cos(phi) * math.sin(phi_s) - math.sin(phi) * math.cos(phi_s) * math.cos(dlam),
    )
    return -math.sin(bearing), -math.cos(bearing)


def _linearize(
    observations: Sequence[TdoaObservation], frame: LocalFrame, lat: float, lng: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Jacobian (meters per frame meter) and residuals (meters) at a point."""
    east_scale = math.cos(math.radians(lat)) / frame.cos_ref
    jacobian = np.empty((len(observations), 2))
    residuals = np.empty(len(observations))
    for i, obs in enumerate(observations):
        d_master = haversine_distance(obs.master.latitude, obs.master.longitude, lat, lng)
        d_slave = haversine_distance(obs.slave.latitude, obs.slave.longitude, lat, lng)
        residuals[i] = obs.tdoa_seconds * SPEED_OF_LIGHT - (d_slave - d_master)
        gm_e, gm_n = _away_gradient(obs.master, lat, lng)
        gs_e, gs_n = _away_gradient(obs.slave, lat, lng)
        jacobian[i, 0] = (gs_e - gm_e) * east_scale
        jacobian[i, 1] = gs_n - gm_n
    return jacobian, residuals


def _inverse_2x2(m: np.ndarray) -> Optional[np.ndarray]:
    det = m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0]
    if abs(det) < SINGULAR_DETERMINANT:
        return None
    return np.array([[m[1, 1], -m[0, 1]], [-m[1, 0], m[0, 0]]]) / det


def hpl_from_covariance(covariance: np.ndarray) -> float:
    """Three sigma along the major axis of a 2x2 covariance."""
    trace = covariance[0, 0] + covariance[1, 1]
    det = covariance[0, 0] * covariance[1, 1] - covariance[0, 1] * covariance[1, 0]
    spread = math.sqrt(max(0.0, trace * trace / 4.0 - det))
    largest = max(0.0, trace / 2.0 + spread)
    return HPL_SIGMA_SCALE * math.sqrt(largest)


def solve_position(
    observations: Sequence[TdoaObservation],
    initial_latitude: float,
    initial_longitude: float,
    max_iterations: int = 30,
    step_tolerance: float = 1e-6,
) -> PositionSolution:
    """
    Recover a 2-D fix from TDOA observations.

    A singular normal matrix ends the iteration early and the last
    iterate is returned unconverged; this never raises for geometry.

    Args:
        observations: TDOAs sharing one reference master
        initial_latitude: Starting latitude in decimal degrees
        initial_longitude: Starting longitude in decimal degrees
        max_iterations: Iteration cap
        step_tolerance: Step norm in meters below which the fix is accepted

    Returns:
        PositionSolution
    """
    if not observations:
        return PositionSolution(latitude=initial_latitude, longitude=initial_longitude)

    frame = LocalFrame(initial_latitude)
    x, y = frame.to_xy(initial_latitude, initial_longitude)
    converged = False
    iterations = 0

    for iterations in range(1, max_iterations + 1):
        lat, lng = frame.to_latlng(x, y)
        jacobian, residuals = _linearize(observations, frame, lat, lng)
        normal = jacobian.T @ jacobian
        inverse = _inverse_2x2(normal)
        if inverse is None:
            logger.debug("Singular normal equations at iteration %d", iterations)
            break
        step = inverse @ (jacobian.T @ residuals)
        x += step[0]
        y += step[1]
        logger.debug("Iteration %d: step %.3e m", iterations, float(np.hypot(*step)))
        if float(np.hypot(*step)) < step_tolerance:
            converged = True
            break

    lat, lng = frame.to_latlng(x, y)
    jacobian, residuals = _linearize(observations, frame, lat, lng)
    inverse = _inverse_2x2(jacobian.T @ jacobian)

    covariance = None
    hpl = None
    if inverse is not None:
        dof = max(len(observations) - 2, 1)
        sigma2 = float(residuals @ residuals) / dof
        covariance = sigma2 * inverse
        hpl = hpl_from_covariance(covariance)

    return PositionSolution(
        latitude=lat,
        longitude=lng,
        covariance=covariance,
        hpl_meters=hpl,
        converged=converged,
        iterations=iterations,
        residual_meters=[float(r) for r in residuals],
    )


def satellite_solution(latitude: float, longitude: float, sigma_meters: float = 8.0) -> PositionSolution:
    """A satellite fix with isotropic uncertainty."""
    covariance = np.eye(2) * sigma_meters ** 2
    return PositionSolution(
        latitude=latitude,
        longitude=longitude,
        covariance=covariance,
        hpl_meters=hpl_from_covariance(covariance),
        converged=True,
    )


def fuse_with_satellite(
    solution: PositionSolution,
    satellite_latitude: float,
    satellite_longitude: float,
    satellite_sigma_meters: float = 8.0,
    radio_weight: float = 0.6,
) -> PositionSolution:
    """
    Weighted average of a radio fix and a satellite fix.

    Covariances combine with squared weights; the HPL is recomputed from
    the fused covariance. A radio fix without covariance contributes none.
    """
    w_radio = radio_weight
    w_sat = 1.0 - radio_weight
    radio_cov = solution.covariance if solution.covariance is not None else np.zeros((2, 2))
    sat_cov = np.eye(2) * satellite_sigma_meters ** 2
    covariance = w_radio ** 2 * radio_cov + w_sat ** 2 * sat_cov
    return solution.model_copy(
        update={
            "latitude": w_radio * solution.latitude + w_sat * satellite_latitude,
            "longitude": w_radio * solution.longitude + w_sat * satellite_longitude,
            "covariance": covariance,
            "hpl_meters": hpl_from_covariance(covariance),
        }
    )
