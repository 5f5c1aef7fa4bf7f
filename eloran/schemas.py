"""
e-Loran data models using Pydantic.

These models define stations, receivers, grids, contours, pulse
arrivals and the events produced by calibration and integrity
monitoring. Stations and receivers are immutable; edits produce new
instances via ``model_copy(update=...)``.
"""

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .asf import AsfSource
from .projection import GridBounds

SPEED_OF_LIGHT = 299792458.0  # m/s

StationRole = Literal["master", "slave"]
FusionMode = Literal["radio", "satellite", "fused"]
ArrivalKind = Literal["master", "slave", "master-sky", "slave-sky"]


class ClockModel(BaseModel):
    """Station clock with a constant bias and linear drift."""

    model_config = ConfigDict(frozen=True)

    clock_type: str = Field("gps-disciplined", description="Clock discipline source")
    bias_seconds: float = Field(0.0, description="Clock bias in seconds (positive = ahead of UTC)")
    drift_seconds_per_second: float = Field(0.0, description="Clock drift in seconds per second")

    def offset_at(self, sim_time_seconds: float) -> float:
        """Effective clock offset at a simulated time."""
        return self.bias_seconds + self.drift_seconds_per_second * sim_time_seconds


class DifferentialCorrection(BaseModel):
    """Differential correction broadcast for a station."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(True, description="Apply the correction")
    average_meters: float = Field(0.0, description="Averaged correction in meters")

    @property
    def applied_meters(self) -> float:
        return self.average_meters if self.enabled else 0.0


class EmissionParams(BaseModel):
    """Pulse emission timing for a station."""

    model_config = ConfigDict(frozen=True)

    group_repetition_interval_ms: float = Field(
        1000.0, gt=0, description="Period between pulse groups in milliseconds"
    )
    phase_seconds: float = Field(0.0, description="Emission phase offset in seconds")

    @property
    def gri_seconds(self) -> float:
        return self.group_repetition_interval_ms / 1000.0


class Station(BaseModel):
    """A transmitting station (master or slave)."""

    model_config = ConfigDict(frozen=True)

    role: StationRole = Field(..., description="Station role")
    label: str = Field(..., min_length=1, description="Unique station label")
    latitude: float = Field(..., ge=-90, le=90, description="Latitude in decimal degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in decimal degrees")
    clock: ClockModel = Field(default_factory=ClockModel, description="Clock model")
    offset_seconds: float = Field(0.0, description="Fixed timing offset in seconds")
    asf: Optional[AsfSource] = Field(None, description="Additional Secondary Factor source")
    differential_correction: DifferentialCorrection = Field(
        default_factory=DifferentialCorrection, description="Differential correction"
    )
    emission: EmissionParams = Field(default_factory=EmissionParams, description="Pulse emission")
    dds_enabled: bool = Field(True, description="Broadcast data messages")
    tx_power_dbm: float = Field(20.0, description="Transmit power in dBm")
    gri: int = Field(8330, description="GRI designation in tens of microseconds")


class Fix(BaseModel):
    """Result of one receiver estimation cycle."""

    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    error_meters: Optional[float] = Field(None, description="Error against ground truth")
    hpl_meters: Optional[float] = Field(None, description="Horizontal protection level")


class Receiver(BaseModel):
    """A receiver at a known true position."""

    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1, description="Unique receiver label")
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    fusion_mode: FusionMode = Field("radio", description="Position source")
    last_fix: Optional[Fix] = Field(None, description="Most recent fix")


class TdoaRaster(BaseModel):
    """TDOA values in seconds for one master/slave pair."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    master_index: int
    slave_index: int
    nx: int = Field(..., ge=2)
    ny: int = Field(..., ge=2)
    values: np.ndarray = Field(..., description="Flat row-major TDOA values in seconds")

    @field_validator("values", mode="before")
    @classmethod
    def _as_float_array(cls, v):
        return np.asarray(v, dtype=float).ravel()

    @model_validator(mode="after")
    def _check_values(self) -> "TdoaRaster":
        if self.values.size != self.nx * self.ny:
            raise ValueError(f"raster has {self.values.size} values, expected {self.nx * self.ny}")
        if not np.all(np.isfinite(self.values)):
            raise ValueError("raster values must be finite")
        return self

    def as_grid(self) -> np.ndarray:
        """Return a (ny, nx) view of the values."""
        return self.values.reshape(self.ny, self.nx)


class Contour(BaseModel):
    """A line of position traced from a TDOA raster."""

    model_config = ConfigDict(frozen=True)

    master_index: int
    slave_index: int
    level_seconds: float = Field(..., description="Iso-level in seconds")
    points: List[Tuple[float, float]] = Field(
        ..., description="Polyline as (x, y) Web Mercator meters"
    )

    @property
    def level_meters(self) -> float:
        return self.level_seconds * SPEED_OF_LIGHT

    @property
    def closed(self) -> bool:
        return len(self.points) > 2 and self.points[0] == self.points[-1]


class GridResult(BaseModel):
    """Rasters and contours for every master/slave pair."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    bounds: GridBounds
    nx: int
    ny: int
    sim_time_seconds: float = 0.0
    rasters: List[TdoaRaster] = Field(default_factory=list)
    contours: List[Contour] = Field(default_factory=list)
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Arrival(BaseModel):
    """One pulse arrival at a receiver."""

    model_config = ConfigDict(frozen=True)

    receiver: str
    station: str
    kind: ArrivalKind
    emission_seconds: float = Field(..., description="Nominal emission instant")
    arrival_seconds: float = Field(..., description="Observed arrival time")
    tx_power_dbm: float
    amplitude_scale: float = 1.0

    @property
    def is_skywave(self) -> bool:
        return self.kind.endswith("-sky")


class ReceiverTimeline(BaseModel):
    """Arrivals and the rendered waveform for one receiver."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    receiver: str
    window_start_seconds: float
    sample_rate_hz: float
    arrivals: List[Arrival] = Field(default_factory=list)
    waveform: np.ndarray = Field(default_factory=lambda: np.zeros(0))


class CalibrationResult(BaseModel):
    """Per-master differential corrections derived from a session."""

    model_config = ConfigDict(frozen=True)

    corrections_meters: Dict[str, float] = Field(default_factory=dict)
    observation_counts: Dict[str, int] = Field(default_factory=dict)
    sim_time_seconds: float = 0.0


class IntegrityEvent(BaseModel):
    """Alarm raised when a fix exceeds the integrity threshold."""

    model_config = ConfigDict(frozen=True)

    event_type: Literal["INTEGRITY_ALARM"] = "INTEGRITY_ALARM"
    station: str
    receiver: str
    error_meters: Optional[float] = None
    hpl_meters: Optional[float] = None
    check_meters: float
    threshold_meters: float
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BroadcastMessage(BaseModel):
    """Data-channel message broadcast by a master."""

    model_config = ConfigDict(frozen=True)

    event_type: Literal["DDS"] = "DDS"
    station: str
    seq: int
    utc_ms: float = Field(..., description="Approximate broadcast time adjusted by clock bias")
    integrity: Literal["OK", "UNKNOWN"]
    diff_meters: float
    sim_time_seconds: float
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ImportSummary(BaseModel):
    """Outcome of a station import."""

    applied: int = 0
    rejected: int = 0
    errors: List[str] = Field(default_factory=list)
