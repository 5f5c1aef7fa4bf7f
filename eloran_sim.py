#!/usr/bin/env python3
"""
Run an e-Loran simulation session from a station file.

Loads the configuration and stations, computes the TDOA grid and lines of
position, simulates pulses at every receiver, optionally calibrates the
masters' differential corrections, estimates every receiver and writes
the scenario GeoJSON, timing CSV and event log CSV.
"""

import argparse
import logging
import sys
from pathlib import Path

from eloran.calibration import autocalibrate, prediction_residuals
from eloran.config import SimulatorConfig
from eloran.context import SimulationContext
from eloran.errors import ConfigError, GridComputeError
from eloran.grid import auto_levels
from eloran.integrity import DdsBroadcaster, EventLog, IntegrityMonitor
from eloran.io import export_timing_csv, import_station_records, save_geojson, scenario_to_geojson
from eloran.navigation import ReceiverEstimator
from eloran.pulses import simulate_pulses
from eloran.worker import GridComputeService


def main():
    """Run one simulation session."""
    parser = argparse.ArgumentParser(description="Run an e-Loran simulation session")
    parser.add_argument(
        "--config",
        default="config/eloran_config.yaml",
        help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--stations",
        default="config/stations.csv",
        help="Station CSV (role,lat,lng,label,...)"
    )
    parser.add_argument(
        "--output",
        default="output",
        help="Output directory"
    )
    parser.add_argument(
        "--sim-time",
        type=float,
        default=0.0,
        help="Simulated time in seconds at which to run"
    )
    parser.add_argument(
        "--calibrate",
        action="store_true",
        help="Calibrate master differential corrections from the pulse simulation"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print(f"Loading configuration from {args.config}...")
    try:
        config = SimulatorConfig.from_yaml(args.config)
        print("✓ Configuration loaded successfully")
    except ConfigError as e:
        print(f"✗ Error loading configuration: {e}")
        return 1

    context = SimulationContext(config)
    context.clock.advance(args.sim_time)

    print(f"Importing stations from {args.stations}...")
    summary = import_station_records(args.stations, context)
    print(f"✓ {summary.applied} rows applied, {summary.rejected} rejected")
    for error in summary.errors:
        print(f"  {error}")
    if not context.masters or not context.slaves:
        print("✗ At least one master and one slave are required")
        return 1

    output_dir = Path(args.output)
    log = EventLog(config.integrity.log_capacity)

    print("Computing TDOA grid...")
    snapshot = context.snapshot()
    with GridComputeService(timeout_seconds=config.compute_timeout_seconds) as service:
        levels = auto_levels(snapshot.masters, snapshot.slaves, config.grid)
        request = service.build_request(snapshot, config.grid, levels)
        try:
            response = service.compute(request)
        except GridComputeError as e:
            print(f"✗ Grid computation failed: {e}")
            return 1
    grid = response.result
    print(f"✓ {len(grid.rasters)} rasters, {len(grid.contours)} contours"
          f"{' (in-process fallback)' if response.fallback else ''}")
    for label, error in response.asf_errors.items():
        print(f"  ASF for {label} ignored: {error}")

    if context.receivers:
        print("Simulating pulses...")
        timelines = simulate_pulses(context.snapshot(), config.pulses, context.noise)
        print(f"✓ {sum(len(t.arrivals) for t in timelines)} arrivals at {len(timelines)} receivers")
        export_timing_csv(timelines, output_dir / "sim_timing.csv")

        if args.calibrate:
            result = autocalibrate(context, timelines)
            for label, correction in result.corrections_meters.items():
                print(f"✓ {label}: correction {correction:.2f} m "
                      f"({result.observation_counts[label]} arrivals)")
            residuals = prediction_residuals(context.masters, context.receivers, timelines)
            for label, values in residuals.items():
                print(f"  {label}: max residual {max(abs(v) for v in values):.3f} m")

        print("Estimating receivers...")
        estimator = ReceiverEstimator(context, IntegrityMonitor(config.integrity, log))
        for estimate in estimator.estimate_all():
            hpl = estimate.fix.hpl_meters
            print(f"  {estimate.receiver}: {estimate.fix.latitude:.6f}, {estimate.fix.longitude:.6f} "
                  f"(err {estimate.fix.error_meters:.1f} m, HPL {f'{hpl:.1f} m' if hpl is not None else 'n/a'})"
                  f"{'  INTEGRITY ALARM' if estimate.alarm else ''}")

    DdsBroadcaster(context, log).broadcast()

    geojson_path = output_dir / "eloran_scenario.geojson"
    save_geojson(scenario_to_geojson(context.snapshot(), grid), geojson_path)
    log.export_csv(output_dir / "eloran_logs.csv")

    print("\nSession Summary:")
    print(f"  Masters: {len(context.masters)}")
    print(f"  Slaves: {len(context.slaves)}")
    print(f"  Receivers: {len(context.receivers)}")
    print(f"  Log events: {len(log)}")
    print(f"  Output directory: {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
