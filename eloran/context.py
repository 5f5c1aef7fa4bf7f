"""
Simulation context.

The context owns the only long-lived mutable state of a session: the
simulated clock, the seeded noise source and the current station and
receiver collections. Collections are tuples replaced wholesale on every
edit, so a snapshot handed to a grid computation is never affected by
later edits.
"""

import logging
import math
import threading
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np
from pydantic import BaseModel, ConfigDict

from .asf import ConstantAsf, ExpressionAsf, RasterAsf
from .config import SimulatorConfig
from .errors import AsfExpressionError
from .schemas import Receiver, Station

logger = logging.getLogger(__name__)

LABEL_PREFIXES = {"master": "M", "slave": "S", "receiver": "R"}
DEFAULT_TX_POWER_DBM = {"master": 20.0, "slave": 18.0}


class SimulationClock:
    """Monotonically increasing simulated time, independent of wall-clock."""

    def __init__(self, start_seconds: float = 0.0):
        self._now = float(start_seconds)
        self._lock = threading.Lock()

    @property
    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 1.0) -> float:
        """
        Move simulated time forward.

        Raises:
            ValueError: If ``seconds`` is negative
        """
        if seconds < 0:
            raise ValueError("simulated time cannot move backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def restart(self, start_seconds: float = 0.0) -> None:
        """Set simulated time back to ``start_seconds`` in place."""
        with self._lock:
            self._now = float(start_seconds)


class ClockTicker:
    """
    Advances a simulation clock on a fixed wall-clock tick.

    ``on_tick`` is called with the new simulated time after every step.
    """

    def __init__(
        self,
        clock: SimulationClock,
        interval_seconds: float = 1.0,
        step_seconds: float = 1.0,
        on_tick: Optional[Callable[[float], None]] = None,
    ):
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.step_seconds = step_seconds
        self.on_tick = on_tick
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sim-clock", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            now = self.clock.advance(self.step_seconds)
            if self.on_tick is not None:
                try:
                    self.on_tick(now)
                except Exception:
                    logger.exception("Clock tick callback failed at t=%.1f s", now)


class NoiseSource:
    """Seeded uniform stream with Box-Muller Gaussian samples."""

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def uniform(self) -> float:
        """Uniform sample in [0, 1)."""
        return float(self._rng.random())

    def gaussian(self, std: float) -> float:
        """Zero-mean Gaussian sample by the Box-Muller transform."""
        u = 0.0
        while u == 0.0:
            u = self.uniform()
        v = 0.0
        while v == 0.0:
            v = self.uniform()
        return std * math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)

    def reseed(self, seed: Optional[int]) -> None:
        self.seed = seed
        self._rng = np.random.default_rng(seed)


class ScenarioSnapshot(BaseModel):
    """Immutable view of the stations and receivers at one simulated time."""

    model_config = ConfigDict(frozen=True)

    masters: Tuple[Station, ...] = ()
    slaves: Tuple[Station, ...] = ()
    receivers: Tuple[Receiver, ...] = ()
    sim_time_seconds: float = 0.0

    @property
    def stations(self) -> Tuple[Station, ...]:
        return self.masters + self.slaves


class SimulationContext:
    """
    Session state passed explicitly to every computation.

    Edits never mutate a station in place: each one builds a new station
    and swaps in a new tuple.
    """

    def __init__(self, config: Optional[SimulatorConfig] = None, seed: Optional[int] = None):
        self.config = config or SimulatorConfig()
        self.clock = SimulationClock()
        self.noise = NoiseSource(seed if seed is not None else self.config.rng_seed)
        self._lock = threading.RLock()
        self._masters: Tuple[Station, ...] = ()
        self._slaves: Tuple[Station, ...] = ()
        self._receivers: Tuple[Receiver, ...] = ()
        self._counters: Dict[str, int] = {role: 0 for role in LABEL_PREFIXES}

    @property
    def masters(self) -> Tuple[Station, ...]:
        return self._masters

    @property
    def slaves(self) -> Tuple[Station, ...]:
        return self._slaves

    @property
    def receivers(self) -> Tuple[Receiver, ...]:
        return self._receivers

    @property
    def stations(self) -> Tuple[Station, ...]:
        return self._masters + self._slaves

    def snapshot(self) -> ScenarioSnapshot:
        with self._lock:
            return ScenarioSnapshot(
                masters=self._masters,
                slaves=self._slaves,
                receivers=self._receivers,
                sim_time_seconds=self.clock.now,
            )

    def _next_label(self, role: str) -> str:
        self._counters[role] += 1
        return f"{LABEL_PREFIXES[role]}{self._counters[role]}"

    def _label_taken(self, label: str) -> bool:
        return any(item.label == label for item in self.stations + self._receivers)

    def add_station(
        self, role: str, latitude: float, longitude: float, label: Optional[str] = None, **fields
    ) -> Station:
        """
        Place a new master or slave.

        Args:
            role: ``master`` or ``slave``
            latitude: Latitude in decimal degrees
            longitude: Longitude in decimal degrees
            label: Optional label; ``M<n>``/``S<n>`` is assigned when omitted
            **fields: Any other ``Station`` field

        Returns:
            The created station

        Raises:
            ValueError: If the label is already in use
        """
        with self._lock:
            if role not in ("master", "slave"):
                raise ValueError(f"invalid station role: {role}")
            generated = self._next_label(role)
            label = label or generated
            if self._label_taken(label):
                raise ValueError(f"label already in use: {label}")
            fields.setdefault("tx_power_dbm", DEFAULT_TX_POWER_DBM[role])
            station = Station(role=role, label=label, latitude=latitude, longitude=longitude, **fields)
            if role == "master":
                self._masters = self._masters + (station,)
            else:
                self._slaves = self._slaves + (station,)
            return station

    def add_master(self, latitude: float, longitude: float, label: Optional[str] = None, **fields) -> Station:
        return self.add_station("master", latitude, longitude, label, **fields)

    def add_slave(self, latitude: float, longitude: float, label: Optional[str] = None, **fields) -> Station:
        return self.add_station("slave", latitude, longitude, label, **fields)

    def add_receiver(
        self, latitude: float, longitude: float, label: Optional[str] = None, **fields
    ) -> Receiver:
        with self._lock:
            generated = self._next_label("receiver")
            label = label or generated
            if self._label_taken(label):
                raise ValueError(f"label already in use: {label}")
            receiver = Receiver(label=label, latitude=latitude, longitude=longitude, **fields)
            self._receivers = self._receivers + (receiver,)
            return receiver

    def station(self, label: str) -> Station:
        for station in self.stations:
            if station.label == label:
                return station
        raise KeyError(label)

    def receiver(self, label: str) -> Receiver:
        for receiver in self._receivers:
            if receiver.label == label:
                return receiver
        raise KeyError(label)

    def update_station(self, label: str, **changes) -> Station:
        """
        Replace a station with an edited copy.

        Raises:
            KeyError: If no station has the label
        """
        with self._lock:
            current = self.station(label)
            updated = Station.model_validate({**current.model_dump(), **changes})
            self._swap_station(label, updated)
            return updated

    def _swap_station(self, label: str, updated: Station) -> None:
        if any(s.label == label for s in self._masters):
            self._masters = tuple(updated if s.label == label else s for s in self._masters)
        else:
            self._slaves = tuple(updated if s.label == label else s for s in self._slaves)

    def update_receiver(self, label: str, **changes) -> Receiver:
        with self._lock:
            current = self.receiver(label)
            updated = current.model_copy(update=changes)
            self._receivers = tuple(updated if r.label == label else r for r in self._receivers)
            return updated

    def move(self, label: str, latitude: float, longitude: float) -> None:
        """Move a station or receiver to a new position."""
        with self._lock:
            if any(r.label == label for r in self._receivers):
                self.update_receiver(label, latitude=latitude, longitude=longitude)
            else:
                self.update_station(label, latitude=latitude, longitude=longitude)

    def remove(self, label: str) -> None:
        with self._lock:
            self._masters = tuple(s for s in self._masters if s.label != label)
            self._slaves = tuple(s for s in self._slaves if s.label != label)
            self._receivers = tuple(r for r in self._receivers if r.label != label)

    def replace_stations(
        self,
        masters: Optional[Tuple[Station, ...]] = None,
        slaves: Optional[Tuple[Station, ...]] = None,
    ) -> None:
        """Swap in whole new station collections."""
        with self._lock:
            if masters is not None:
                self._masters = tuple(masters)
            if slaves is not None:
                self._slaves = tuple(slaves)

    def assign_asf(
        self, label: str, source: Union[ConstantAsf, RasterAsf, ExpressionAsf, str]
    ) -> Station:
        """
        Attach an ASF source to a station.

        Expression text is compiled and trial-evaluated at the first
        master's position before it is attached.

        Raises:
            AsfExpressionError: If the expression is rejected
        """
        if isinstance(source, str):
            asf_settings = self.config.asf
            if len(source) > asf_settings.max_expression_length:
                raise AsfExpressionError(
                    f"expression longer than {asf_settings.max_expression_length} characters", source
                )
            source = ExpressionAsf(expression=source, timeout_seconds=asf_settings.timeout_seconds)
        if isinstance(source, ExpressionAsf):
            probe = self._masters[0] if self._masters else self.station(label)
            source.sample(probe.latitude, probe.longitude)
        station = self.update_station(label, asf=source)
        logger.info("ASF (%s) assigned to %s", source.kind, label)
        return station

    def clear_asf(self, label: str) -> Station:
        return self.update_station(label, asf=None)

    def reset(self) -> None:
        """Remove every station and receiver and restart the clock."""
        with self._lock:
            self._masters = ()
            self._slaves = ()
            self._receivers = ()
            self._counters = {role: 0 for role in LABEL_PREFIXES}
            self.clock.restart()
