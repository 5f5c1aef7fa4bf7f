"""
Integrity monitoring and data-channel broadcast.

Alarms and broadcast messages are plain events collected in a bounded
log; neither ever interrupts the simulation.
"""

import logging
import time
from collections import deque
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

import pandas as pd

from .config import IntegritySettings
from .context import NoiseSource, SimulationContext
from .schemas import BroadcastMessage, IntegrityEvent, Station

logger = logging.getLogger(__name__)

LogEvent = Union[BroadcastMessage, IntegrityEvent]

LOG_COLUMNS = [
    "timestamp", "type", "station", "receiver", "seq", "diffMeters", "errorMeters", "raw",
]


class EventLog:
    """Bounded in-memory log of broadcast and integrity events."""

    def __init__(self, capacity: int = 400):
        self._events = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    @property
    def events(self) -> List[LogEvent]:
        return list(self._events)

    def append(self, event: LogEvent) -> None:
        self._events.append(event)

    def extend(self, events: Iterable[LogEvent]) -> None:
        self._events.extend(events)

    def clear(self) -> None:
        self._events.clear()

    def to_dataframe(self) -> pd.DataFrame:
        """One row per event, in log order."""
        rows = []
        for event in self._events:
            is_dds = isinstance(event, BroadcastMessage)
            rows.append({
                "timestamp": event.time.isoformat(),
                "type": event.event_type,
                "station": event.station,
                "receiver": None if is_dds else event.receiver,
                "seq": event.seq if is_dds else None,
                "diffMeters": event.diff_meters if is_dds else None,
                "errorMeters": None if is_dds else event.error_meters,
                "raw": event.model_dump_json(),
            })
        return pd.DataFrame(rows, columns=LOG_COLUMNS)

    def export_csv(self, output_path: Union[str, Path]) -> Path:
        """Write the log as CSV and return the path."""
        output_path = Path(output_path)
        output_path.parent.mkdir(exist_ok=True, parents=True)
        self.to_dataframe().to_csv(output_path, index=False)
        return output_path


class IntegrityMonitor:
    """
    Compares each fix against a protection threshold.

    The HPL is checked when the solver produced one, otherwise the raw
    error against ground truth.
    """

    def __init__(self, settings: Optional[IntegritySettings] = None, log: Optional[EventLog] = None):
        self.settings = settings or IntegritySettings()
        self.log = log

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def check(
        self,
        receiver: str,
        station: str,
        hpl_meters: Optional[float],
        error_meters: Optional[float],
    ) -> Optional[IntegrityEvent]:
        """
        Evaluate one fix.

        Args:
            receiver: Receiver label
            station: Reference master label
            hpl_meters: Protection level, or None when unavailable
            error_meters: Error against ground truth

        Returns:
            IntegrityEvent when the check value exceeds the threshold, else None
        """
        if not self.settings.enabled:
            return None
        check = hpl_meters if hpl_meters is not None else error_meters
        if check is None or check <= self.settings.threshold_meters:
            return None

        event = IntegrityEvent(
            station=station,
            receiver=receiver,
            error_meters=error_meters,
            hpl_meters=hpl_meters,
            check_meters=check,
            threshold_meters=self.settings.threshold_meters,
        )
        logger.warning(
            "INTEGRITY ALARM: %s check %.1f m > threshold %.1f m (HPL %s)",
            receiver, check, self.settings.threshold_meters,
            f"{hpl_meters:.1f}" if hpl_meters is not None else "n/a",
        )
        if self.log is not None:
            self.log.append(event)
        return event


def broadcast_dds(
    masters: Sequence[Station],
    sim_time_seconds: float,
    noise: NoiseSource,
    integrity_enabled: bool = True,
    now_ms: Optional[float] = None,
) -> List[BroadcastMessage]:
    """
    Build one data-channel message per DDS-enabled master.

    Args:
        masters: Master stations
        sim_time_seconds: Simulated broadcast time
        noise: Source for sequence numbers
        integrity_enabled: Reported integrity status is OK when True, else UNKNOWN
        now_ms: Wall-clock milliseconds; defaults to the current time

    Returns:
        Messages in master order
    """
    now_ms = time.time() * 1000.0 if now_ms is None else now_ms
    messages = []
    for master in masters:
        if not master.dds_enabled:
            continue
        messages.append(
            BroadcastMessage(
                station=master.label,
                seq=int(noise.uniform() * 100000),
                utc_ms=now_ms + master.clock.bias_seconds * 1000.0,
                integrity="OK" if integrity_enabled else "UNKNOWN",
                diff_meters=master.differential_correction.applied_meters,
                sim_time_seconds=sim_time_seconds,
            )
        )
    return messages


class DdsBroadcaster:
    """Periodic broadcast driven by the simulation clock."""

    def __init__(self, context: SimulationContext, log: EventLog):
        self.context = context
        self.log = log

    @property
    def settings(self) -> IntegritySettings:
        return self.context.config.integrity

    def broadcast(self, sim_time_seconds: Optional[float] = None) -> List[BroadcastMessage]:
        if not self.settings.broadcast_enabled:
            return []
        sim_time = self.context.clock.now if sim_time_seconds is None else sim_time_seconds
        messages = broadcast_dds(
            self.context.masters, sim_time, self.context.noise, self.settings.enabled
        )
        self.log.extend(messages)
        if messages:
            logger.debug("Broadcast %d DDS messages at t=%.1f s", len(messages), sim_time)
        return messages

    def on_tick(self, sim_time_seconds: float) -> None:
        """Clock callback: broadcast every ``broadcast_every_seconds``."""
        if int(round(sim_time_seconds)) % self.settings.broadcast_every_seconds == 0:
            self.broadcast(sim_time_seconds)
