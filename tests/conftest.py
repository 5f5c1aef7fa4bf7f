"""
Pytest configuration and fixtures for e-Loran simulator tests.
"""

import pytest

from eloran.config import SimulatorConfig
from eloran.context import SimulationContext
from eloran.schemas import Receiver, Station


@pytest.fixture
def master():
    """Master at the origin."""
    return Station(role="master", label="M1", latitude=0.0, longitude=0.0)


@pytest.fixture
def slave():
    """Slave one degree east of the master."""
    return Station(role="slave", label="S1", latitude=0.0, longitude=1.0, tx_power_dbm=18.0)


@pytest.fixture
def slaves():
    """Four slaves surrounding the origin master."""
    return [
        Station(role="slave", label="S1", latitude=0.0, longitude=1.0),
        Station(role="slave", label="S2", latitude=1.0, longitude=0.0),
        Station(role="slave", label="S3", latitude=-0.8, longitude=0.6),
        Station(role="slave", label="S4", latitude=0.7, longitude=-0.9),
    ]


@pytest.fixture
def receiver():
    """Receiver between the example master and slave."""
    return Receiver(label="R1", latitude=0.5, longitude=0.5)


@pytest.fixture
def config():
    """Configuration with a small grid and no jitter."""
    return SimulatorConfig(
        grid={"nx": 41, "ny": 41},
        pulses={"jitter_std_seconds": 0.0},
        estimator={"mode": "none"},
        rng_seed=1234,
    )


@pytest.fixture
def context(config):
    """Context with one master, two slaves and one receiver."""
    ctx = SimulationContext(config)
    ctx.add_master(0.0, 0.0)
    ctx.add_slave(0.0, 1.0)
    ctx.add_slave(1.0, 0.0)
    ctx.add_receiver(0.5, 0.5)
    return ctx
