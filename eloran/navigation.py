"""
Receiver estimation cycle.

For a receiver at a known true position: generate TDOA observations from
the propagation model, solve, optionally fuse with a satellite fix,
apply estimator noise, measure the error against ground truth and run
the integrity check. The result is written back as the receiver's
``last_fix``.
"""

import logging
import math
from collections import deque
from typing import Dict, List, Optional

from geopy.distance import geodesic
from pydantic import BaseModel, ConfigDict, Field

from .context import SimulationContext
from .integrity import IntegrityMonitor
from .physics import observed_tdoa
from .schemas import Fix, IntegrityEvent, Receiver
from .solver import (
    PositionSolution,
    TdoaObservation,
    fuse_with_satellite,
    satellite_solution,
    solve_position,
)

logger = logging.getLogger(__name__)

METERS_PER_DEGREE = 111320.0
ROLLING_WINDOW = 100


class Estimate(BaseModel):
    """One completed estimation cycle."""

    model_config = ConfigDict(frozen=True)

    receiver: str
    reference: str
    fix: Fix
    solution: PositionSolution
    alarm: Optional[IntegrityEvent] = None
    asf_errors: Dict[str, str] = Field(default_factory=dict)


def build_observations(
    context: SimulationContext,
    receiver: Receiver,
    asf_errors: Optional[Dict[str, str]] = None,
) -> List[TdoaObservation]:
    """TDOA of every slave against the first master, at the receiver's true position."""
    master = context.masters[0]
    sim_time = context.clock.now
    return [
        TdoaObservation(
            master=master,
            slave=slave,
            tdoa_seconds=observed_tdoa(
                master, slave, receiver.latitude, receiver.longitude, sim_time, asf_errors
            ),
        )
        for slave in context.slaves
    ]


def offset_position(latitude: float, longitude: float, north_m: float, east_m: float):
    """Shift a position by small north/east offsets in meters."""
    return (
        latitude + north_m / METERS_PER_DEGREE,
        longitude + east_m / (METERS_PER_DEGREE * math.cos(math.radians(latitude))),
    )


class ReceiverEstimator:
    """Runs estimation cycles and keeps rolling error/HPL statistics."""

    def __init__(self, context: SimulationContext, monitor: Optional[IntegrityMonitor] = None):
        self.context = context
        self.monitor = monitor or IntegrityMonitor(context.config.integrity)
        self.recent_errors = deque(maxlen=ROLLING_WINDOW)
        self.recent_hpls = deque(maxlen=ROLLING_WINDOW)

    def _apply_estimator_noise(self, latitude: float, longitude: float):
        settings = self.context.config.estimator
        noise = self.context.noise
        if settings.mode == "none":
            return latitude, longitude
        sigma = settings.noise_std_meters
        if settings.mode == "random":
            # variable amplitude between 0.5x and 3x
            sigma *= 0.5 + noise.uniform() * 2.5
        north = noise.gaussian(sigma)
        east = noise.gaussian(sigma)
        return offset_position(latitude, longitude, north, east)

    def estimate(self, label: str) -> Estimate:
        """
        Run one estimation cycle for a receiver.

        Raises:
            KeyError: If no receiver has the label
            ValueError: If no master is placed
        """
        receiver = self.context.receiver(label)
        if not self.context.masters:
            raise ValueError("a master station is required as TDOA reference")
        settings = self.context.config.estimator
        reference = self.context.masters[0]

        asf_errors: Dict[str, str] = {}
        if receiver.fusion_mode == "satellite":
            solution = satellite_solution(
                receiver.latitude, receiver.longitude, settings.satellite_sigma_meters
            )
        else:
            observations = build_observations(self.context, receiver, asf_errors)
            solution = solve_position(
                observations,
                receiver.latitude,
                receiver.longitude,
                max_iterations=settings.max_iterations,
                step_tolerance=settings.step_tolerance_meters,
            )
            if receiver.fusion_mode == "fused":
                solution = fuse_with_satellite(
                    solution,
                    receiver.latitude,
                    receiver.longitude,
                    settings.satellite_sigma_meters,
                    settings.radio_weight,
                )

        lat, lng = self._apply_estimator_noise(solution.latitude, solution.longitude)
        error = geodesic((receiver.latitude, receiver.longitude), (lat, lng)).meters
        fix = Fix(latitude=lat, longitude=lng, error_meters=error, hpl_meters=solution.hpl_meters)
        self.context.update_receiver(label, last_fix=fix)

        self.recent_errors.append(error)
        if solution.hpl_meters is not None and not math.isnan(solution.hpl_meters):
            self.recent_hpls.append(solution.hpl_meters)

        alarm = self.monitor.check(label, reference.label, solution.hpl_meters, error)
        logger.info(
            "Estimated %s: %.6f, %.6f (err %.1f m, HPL %s)",
            label, lat, lng, error,
            f"{solution.hpl_meters:.1f} m" if solution.hpl_meters is not None else "n/a",
        )
        return Estimate(
            receiver=label,
            reference=reference.label,
            fix=fix,
            solution=solution,
            alarm=alarm,
            asf_errors=asf_errors,
        )

    def estimate_all(self) -> List[Estimate]:
        return [self.estimate(receiver.label) for receiver in self.context.receivers]
