"""
Differential-correction calibration.

Master arrivals from a pulse simulation are compared with the arrival
predicted by the propagation model without differential correction. The
averaged negative delta becomes the master's correction, so predictions
with the correction applied match the observations.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .context import SimulationContext
from .physics import compute_arrival, compute_arrival_no_diff
from .schemas import (
    SPEED_OF_LIGHT,
    CalibrationResult,
    DifferentialCorrection,
    Receiver,
    ReceiverTimeline,
    Station,
)

logger = logging.getLogger(__name__)


def _master_observations(
    masters: Sequence[Station],
    receivers: Sequence[Receiver],
    timelines: Sequence[ReceiverTimeline],
):
    """Yield (master, receiver, arrival, sim_time) for direct master arrivals."""
    masters_by_label = {m.label: m for m in masters}
    receivers_by_label = {r.label: r for r in receivers}
    for timeline in timelines:
        receiver = receivers_by_label.get(timeline.receiver)
        if receiver is None:
            continue
        for arrival in timeline.arrivals:
            master = masters_by_label.get(arrival.station)
            if master is None or arrival.is_skywave:
                continue
            yield master, receiver, arrival, timeline.window_start_seconds


def calibrate(
    masters: Sequence[Station],
    receivers: Sequence[Receiver],
    timelines: Sequence[ReceiverTimeline],
) -> CalibrationResult:
    """
    Estimate per-master differential corrections.

    ``predicted = emission + arrival_no_diff(master, receiver, t)``, with
    ``t`` the start of the timeline's window. Each direct master arrival
    contributes ``-(observed - predicted) * C``.

    Args:
        masters: Master stations as currently modeled
        receivers: Receivers at their true positions
        timelines: Output of a pulse simulation

    Returns:
        CalibrationResult; masters without observations are absent
    """
    deltas: Dict[str, List[float]] = defaultdict(list)
    sim_time = 0.0
    for master, receiver, arrival, t in _master_observations(masters, receivers, timelines):
        predicted = arrival.emission_seconds + compute_arrival_no_diff(
            master, receiver.latitude, receiver.longitude, t
        )
        deltas[master.label].append(-(arrival.arrival_seconds - predicted) * SPEED_OF_LIGHT)
        sim_time = max(sim_time, t)

    return CalibrationResult(
        corrections_meters={label: float(np.mean(values)) for label, values in deltas.items()},
        observation_counts={label: len(values) for label, values in deltas.items()},
        sim_time_seconds=sim_time,
    )


def apply_calibration(masters: Sequence[Station], result: CalibrationResult) -> Tuple[Station, ...]:
    """Return new masters with the calibrated corrections enabled."""
    updated = []
    for master in masters:
        correction = result.corrections_meters.get(master.label)
        if correction is None:
            updated.append(master)
            continue
        updated.append(
            master.model_copy(
                update={
                    "differential_correction": DifferentialCorrection(
                        enabled=True, average_meters=correction
                    )
                }
            )
        )
    return tuple(updated)


def prediction_residuals(
    masters: Sequence[Station],
    receivers: Sequence[Receiver],
    timelines: Sequence[ReceiverTimeline],
) -> Dict[str, List[float]]:
    """Observed minus predicted (correction applied) master arrivals, in meters."""
    residuals: Dict[str, List[float]] = defaultdict(list)
    for master, receiver, arrival, t in _master_observations(masters, receivers, timelines):
        predicted = arrival.emission_seconds + compute_arrival(
            master, receiver.latitude, receiver.longitude, t
        )
        residuals[master.label].append((arrival.arrival_seconds - predicted) * SPEED_OF_LIGHT)
    return dict(residuals)


def autocalibrate(
    context: SimulationContext, timelines: Sequence[ReceiverTimeline]
) -> CalibrationResult:
    """Calibrate the context's masters and swap in the corrected stations."""
    result = calibrate(context.masters, context.receivers, timelines)
    if not result.corrections_meters:
        logger.warning("No master arrivals to calibrate from; run a pulse simulation first")
        return result
    context.replace_stations(masters=apply_calibration(context.masters, result))
    for label, correction in result.corrections_meters.items():
        logger.info(
            "Calibrated %s: %.2f m from %d arrivals",
            label, correction, result.observation_counts[label],
        )
    return result
