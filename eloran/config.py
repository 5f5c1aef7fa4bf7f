"""
Simulator configuration.

Settings are grouped by component and loaded from YAML. Every field has
a default so an empty document yields a usable configuration.
"""

from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError


class GridSettings(BaseModel):
    """Grid layout and contour level selection."""

    nx: int = Field(200, ge=2, description="Grid columns")
    ny: int = Field(200, ge=2, description="Grid rows")
    padding_fraction: float = Field(0.35, ge=0, description="Padding around station extents")
    min_padding_degrees: float = Field(0.01, gt=0, description="Minimum padding in degrees")
    degenerate_span_degrees: float = Field(1e-6, gt=0, description="Span treated as zero")
    min_level_step_meters: float = Field(100.0, gt=0, description="Smallest contour step")
    level_divisions: int = Field(20, ge=1, description="Baseline divisions per level step")
    level_count: int = Field(21, ge=1, description="Number of auto levels (made odd)")


class PulseSettings(BaseModel):
    """Pulse/timing simulation parameters."""

    sample_rate_hz: float = Field(1_000_000.0, gt=0)
    pulse_duration_seconds: float = Field(1e-4, gt=0)
    window_seconds: float = Field(0.01, gt=0)
    jitter_std_seconds: float = Field(1e-3, ge=0, description="Detection jitter sigma")
    skywave_enabled: bool = False
    skywave_delay_seconds: float = Field(1e-3, ge=0)
    skywave_amplitude_fraction: float = Field(0.3, ge=0, le=1)
    periods_before: int = Field(1, ge=0, description="Emission periods before current time")
    periods_after: int = Field(1, ge=0, description="Emission periods after current time")


class EstimatorSettings(BaseModel):
    """Position solver and estimation cycle parameters."""

    mode: Literal["controlled", "random", "none"] = "controlled"
    noise_std_meters: float = Field(20.0, ge=0)
    satellite_sigma_meters: float = Field(8.0, gt=0)
    radio_weight: float = Field(0.6, ge=0, le=1)
    max_iterations: int = Field(30, ge=1)
    step_tolerance_meters: float = Field(1e-6, gt=0)


class IntegritySettings(BaseModel):
    """Integrity monitoring and data broadcast."""

    enabled: bool = True
    threshold_meters: float = Field(50.0, gt=0)
    broadcast_enabled: bool = True
    broadcast_every_seconds: int = Field(5, ge=1)
    log_capacity: int = Field(400, ge=1)


class AsfSettings(BaseModel):
    """ASF expression sandbox limits."""

    timeout_seconds: float = Field(1.0, gt=0)
    max_expression_length: int = Field(512, ge=1)


class SimulatorConfig(BaseModel):
    """Complete simulator configuration."""

    grid: GridSettings = Field(default_factory=GridSettings)
    pulses: PulseSettings = Field(default_factory=PulseSettings)
    estimator: EstimatorSettings = Field(default_factory=EstimatorSettings)
    integrity: IntegritySettings = Field(default_factory=IntegritySettings)
    asf: AsfSettings = Field(default_factory=AsfSettings)
    rng_seed: Optional[int] = Field(None, description="Seed for reproducible noise")
    compute_timeout_seconds: float = Field(10.0, gt=0)

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "SimulatorConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigError: If the file is missing, unparsable or invalid
        """
        try:
            with open(yaml_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {yaml_path}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {yaml_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration in {yaml_path} must be a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {yaml_path}: {e}")
