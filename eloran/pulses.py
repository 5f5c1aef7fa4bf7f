"""
Pulse/timing simulator.

Each station emits once per group repetition interval. For every
receiver the emissions bracketing the current simulated time are
propagated with the clock and propagation model, perturbed by detection
jitter and optionally followed by a delayed, attenuated skywave. Arrivals
inside the simulation window are rendered into a waveform buffer as
raised-cosine pulses.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

import numpy as np

from .config import PulseSettings
from .context import NoiseSource, ScenarioSnapshot
from .physics import compute_arrival
from .schemas import Arrival, Receiver, ReceiverTimeline, Station

logger = logging.getLogger(__name__)


def emission_instants(
    station: Station, sim_time_seconds: float, periods_before: int = 1, periods_after: int = 1
) -> List[float]:
    """Emission times of the periods around ``sim_time_seconds``."""
    gri = station.emission.gri_seconds
    base = math.floor(sim_time_seconds / gri)
    return [
        (base + k) * gri + station.emission.phase_seconds
        for k in range(-periods_before, periods_after + 1)
    ]


def station_arrivals(
    station: Station,
    receiver: Receiver,
    sim_time_seconds: float,
    settings: PulseSettings,
    noise: NoiseSource,
    asf_errors: Optional[Dict[str, str]] = None,
) -> List[Arrival]:
    """Direct (and skywave) arrivals of one station at one receiver inside the window."""
    window_end = sim_time_seconds + settings.window_seconds
    propagation = compute_arrival(
        station, receiver.latitude, receiver.longitude, sim_time_seconds, asf_errors
    )
    arrivals = []
    for emitted in emission_instants(
        station, sim_time_seconds, settings.periods_before, settings.periods_after
    ):
        observed = emitted + propagation + noise.gaussian(settings.jitter_std_seconds)
        if not sim_time_seconds <= observed <= window_end:
            continue
        arrivals.append(
            Arrival(
                receiver=receiver.label,
                station=station.label,
                kind=station.role,
                emission_seconds=emitted,
                arrival_seconds=observed,
                tx_power_dbm=station.tx_power_dbm,
            )
        )
        if settings.skywave_enabled:
            sky = observed + settings.skywave_delay_seconds
            if sky <= window_end:
                arrivals.append(
                    Arrival(
                        receiver=receiver.label,
                        station=station.label,
                        kind=f"{station.role}-sky",
                        emission_seconds=emitted,
                        arrival_seconds=sky,
                        tx_power_dbm=station.tx_power_dbm,
                        amplitude_scale=settings.skywave_amplitude_fraction,
                    )
                )
    return arrivals


def render_waveform(
    arrivals: Sequence[Arrival], window_start_seconds: float, settings: PulseSettings
) -> np.ndarray:
    """
    Superpose one raised-cosine pulse per arrival.

    Amplitude is ``10 ** (tx_dbm / 20)`` times the arrival's scale.
    """
    rate = settings.sample_rate_hz
    num_samples = int(math.floor(settings.window_seconds * rate))
    waveform = np.zeros(num_samples)
    for arrival in arrivals:
        offset = arrival.arrival_seconds - window_start_seconds
        start = int(math.floor(max(0.0, offset) * rate))
        end = min(int(math.floor((offset + settings.pulse_duration_seconds) * rate)), num_samples)
        if end <= start:
            continue
        t = (np.arange(start, end) - start) / rate
        shape = 0.5 * (1.0 + np.cos(np.pi * t / settings.pulse_duration_seconds))
        waveform[start:end] += 10.0 ** (arrival.tx_power_dbm / 20.0) * arrival.amplitude_scale * shape
    return waveform


def simulate_receiver(
    receiver: Receiver,
    stations: Sequence[Station],
    sim_time_seconds: float,
    settings: PulseSettings,
    noise: NoiseSource,
    asf_errors: Optional[Dict[str, str]] = None,
) -> ReceiverTimeline:
    arrivals = []
    for station in stations:
        arrivals.extend(
            station_arrivals(station, receiver, sim_time_seconds, settings, noise, asf_errors)
        )
    arrivals.sort(key=lambda a: a.arrival_seconds)
    return ReceiverTimeline(
        receiver=receiver.label,
        window_start_seconds=sim_time_seconds,
        sample_rate_hz=settings.sample_rate_hz,
        arrivals=arrivals,
        waveform=render_waveform(arrivals, sim_time_seconds, settings),
    )


def simulate_pulses(
    snapshot: ScenarioSnapshot,
    settings: Optional[PulseSettings] = None,
    noise: Optional[NoiseSource] = None,
    asf_errors: Optional[Dict[str, str]] = None,
) -> List[ReceiverTimeline]:
    """
    Simulate arrivals and waveforms at every receiver.

    Args:
        snapshot: Stations and receivers at the current simulated time
        settings: Pulse settings
        noise: Seeded noise source for jitter
        asf_errors: Optional dict collecting ASF failures by station label

    Returns:
        One timeline per receiver, arrivals sorted by time
    """
    settings = settings or PulseSettings()
    noise = noise or NoiseSource()
    timelines = [
        simulate_receiver(
            receiver, snapshot.stations, snapshot.sim_time_seconds, settings, noise, asf_errors
        )
        for receiver in snapshot.receivers
    ]
    logger.info(
        "Simulated %d arrivals at %d receivers (t=%.1f s)",
        sum(len(t.arrivals) for t in timelines), len(timelines), snapshot.sim_time_seconds,
    )
    return timelines
