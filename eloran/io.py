"""
Import and export of scenario data.

* Station import records (CSV, one row per station or receiver)
* Scenario export as a GeoJSON FeatureCollection
* Pulse timing export as CSV
"""

import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from shapely.geometry import LineString, Point, mapping

from .context import ScenarioSnapshot, SimulationContext
from .errors import ImportRowError
from .projection import to_geodetic, to_planar
from .schemas import ClockModel, GridResult, ImportSummary, ReceiverTimeline

logger = logging.getLogger(__name__)

IMPORT_COLUMNS = [
    "role", "lat", "lng", "label", "txPowerDbm", "gri",
    "clockType", "clockBias", "clockDrift", "ddsEnabled", "offsetSec",
]
TIMING_COLUMNS = ["receiver", "station", "type", "arrivalSec", "txDbm", "txScale"]
ROLES = ("master", "slave", "receiver")


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _optional_float(row: Mapping[str, Any], key: str, row_index: int) -> Optional[float]:
    value = row.get(key)
    if _blank(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ImportRowError(row_index, f"invalid {key} '{value}'")
    if not math.isfinite(number):
        raise ImportRowError(row_index, f"invalid {key} '{value}'")
    return number


def parse_station_record(row_index: int, row: Mapping[str, Any]) -> Tuple[str, float, float, Dict[str, Any]]:
    """
    Validate one import row.

    Args:
        row_index: 1-based row number used in error messages
        row: Record keyed by the import column names

    Returns:
        Tuple of (role, latitude, longitude, extra fields for the context)

    Raises:
        ImportRowError: If the role is invalid or a value is not numeric
    """
    role_value = "" if _blank(row.get("role")) else str(row.get("role"))
    role = role_value.strip().lower()
    if role not in ROLES:
        raise ImportRowError(row_index, f"invalid role '{role_value}'")

    lat = _optional_float(row, "lat", row_index)
    lng = _optional_float(row, "lng", row_index)
    if lat is None or lng is None or not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        raise ImportRowError(row_index, "invalid coords")

    fields: Dict[str, Any] = {}
    if not _blank(row.get("label")):
        fields["label"] = str(row["label"]).strip()
    if role == "receiver":
        return role, lat, lng, fields

    tx = _optional_float(row, "txPowerDbm", row_index)
    if tx is not None:
        fields["tx_power_dbm"] = tx
    gri = _optional_float(row, "gri", row_index)
    if gri is not None:
        fields["gri"] = int(gri)
    offset = _optional_float(row, "offsetSec", row_index)
    if offset is not None:
        fields["offset_seconds"] = offset

    clock: Dict[str, Any] = {}
    if not _blank(row.get("clockType")):
        clock["clock_type"] = str(row["clockType"]).strip()
    bias = _optional_float(row, "clockBias", row_index)
    if bias is not None:
        clock["bias_seconds"] = bias
    drift = _optional_float(row, "clockDrift", row_index)
    if drift is not None:
        clock["drift_seconds_per_second"] = drift
    if clock:
        fields["clock"] = ClockModel(**clock)

    dds = row.get("ddsEnabled")
    if not _blank(dds):
        fields["dds_enabled"] = str(dds).strip().lower() not in ("false", "0", "no")
    return role, lat, lng, fields


def read_station_csv(csv_path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Read a station CSV into a list of records, values kept as text."""
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False, skip_blank_lines=True)
    df.columns = [c.strip() for c in df.columns]
    return df.to_dict(orient="records")


def import_station_records(
    records: Union[str, Path, pd.DataFrame, Iterable[Mapping[str, Any]]],
    context: SimulationContext,
) -> ImportSummary:
    """
    Apply station import records to a context, row by row.

    Valid rows are applied as they are read; a rejected row does not stop
    the import.

    Args:
        records: CSV path, DataFrame or iterable of records
        context: Simulation context to add stations and receivers to

    Returns:
        ImportSummary with applied/rejected counts and row-indexed errors
    """
    if isinstance(records, (str, Path)):
        records = read_station_csv(records)
    elif isinstance(records, pd.DataFrame):
        records = records.to_dict(orient="records")

    summary = ImportSummary()
    for index, row in enumerate(records, start=1):
        try:
            role, lat, lng, fields = parse_station_record(index, row)
            label = fields.pop("label", None)
            try:
                if role == "receiver":
                    context.add_receiver(lat, lng, label)
                else:
                    context.add_station(role, lat, lng, label, **fields)
            except ValueError as e:
                raise ImportRowError(index, str(e))
        except ImportRowError as e:
            summary.rejected += 1
            summary.errors.append(str(e))
            continue
        summary.applied += 1

    if summary.errors:
        logger.warning(
            "Import completed: %d added, %d rejected: %s",
            summary.applied, summary.rejected, "; ".join(summary.errors),
        )
    else:
        logger.info("Import successful: %d stations added", summary.applied)
    return summary


def _point_feature(latitude: float, longitude: float, properties: Dict[str, Any]) -> Dict[str, Any]:
    x, y = to_planar(latitude, longitude)
    properties["projected"] = {"x": x, "y": y}
    return {
        "type": "Feature",
        "geometry": mapping(Point(longitude, latitude)),
        "properties": properties,
    }


def scenario_to_geojson(
    snapshot: ScenarioSnapshot,
    grid: Optional[GridResult] = None,
) -> Dict[str, Any]:
    """
    Convert a scenario to a GeoJSON FeatureCollection.

    Args:
        snapshot: Stations and receivers to export
        grid: Optional computed grid; adds a metadata feature and contours

    Returns:
        GeoJSON FeatureCollection as dictionary
    """
    created_at = datetime.now(timezone.utc).isoformat()
    features = []

    for station in snapshot.stations:
        features.append(_point_feature(station.latitude, station.longitude, {
            "role": station.role,
            "label": station.label,
            "txDbm": station.tx_power_dbm,
            "gri": station.gri,
            "clockType": station.clock.clock_type,
            "clockBias": station.clock.bias_seconds,
            "clockDrift": station.clock.drift_seconds_per_second,
            "ddsEnabled": station.dds_enabled,
            "offsetSec": station.offset_seconds,
            "diffMeters": station.differential_correction.applied_meters,
            "createdAt": created_at,
        }))

    for receiver in snapshot.receivers:
        features.append(_point_feature(receiver.latitude, receiver.longitude, {
            "role": "receiver",
            "label": receiver.label,
            "fusionMode": receiver.fusion_mode,
            "createdAt": created_at,
        }))

    if grid is not None:
        features.append({
            "type": "Feature",
            "geometry": None,
            "properties": {
                "type": "grid-metadata",
                "computedAt": grid.computed_at.isoformat(),
                "bounds": grid.bounds.to_list(),
                "maps": [
                    {"masterIndex": r.master_index, "slaveIndex": r.slave_index, "nx": r.nx, "ny": r.ny}
                    for r in grid.rasters
                ],
            },
        })
        for idx, contour in enumerate(grid.contours):
            if len(contour.points) < 2:
                continue
            coords = []
            for x, y in contour.points:
                lat, lng = to_geodetic(x, y)
                coords.append((round(lng, 6), round(lat, 6)))
            features.append({
                "type": "Feature",
                "geometry": mapping(LineString(coords)),
                "properties": {
                    "type": "lop-contour",
                    "id": f"lop-{contour.master_index}-{contour.slave_index}-{idx}",
                    "masterIndex": contour.master_index,
                    "slaveIndex": contour.slave_index,
                    "levelSeconds": contour.level_seconds,
                    "levelMeters": contour.level_meters,
                    "createdAt": created_at,
                },
            })

    return {
        "type": "FeatureCollection",
        "features": features,
        "properties": {"exportedAt": created_at, "simTimeSeconds": snapshot.sim_time_seconds},
    }


def scenario_records(collection: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Turn the point features of an exported scenario back into import records."""
    records = []
    for feature in collection.get("features", []):
        properties = feature.get("properties") or {}
        geometry = feature.get("geometry")
        if properties.get("role") not in ROLES or not geometry or geometry.get("type") != "Point":
            continue
        lng, lat = geometry["coordinates"][:2]
        record = {"role": properties["role"], "lat": lat, "lng": lng, "label": properties.get("label")}
        if properties["role"] != "receiver":
            record.update({
                "txPowerDbm": properties.get("txDbm"),
                "gri": properties.get("gri"),
                "clockType": properties.get("clockType"),
                "clockBias": properties.get("clockBias"),
                "clockDrift": properties.get("clockDrift"),
                "ddsEnabled": properties.get("ddsEnabled"),
                "offsetSec": properties.get("offsetSec"),
            })
        records.append(record)
    return records


def export_station_csv(records: Sequence[Mapping[str, Any]], output_path: Union[str, Path]) -> Path:
    """Write import records as a station CSV."""
    output_path = Path(output_path)
    output_path.parent.mkdir(exist_ok=True, parents=True)
    pd.DataFrame(list(records), columns=IMPORT_COLUMNS).to_csv(output_path, index=False)
    return output_path


def save_geojson(data: Dict[str, Any], output_path: Union[str, Path]) -> None:
    """
    Save GeoJSON data to a file.

    Args:
        data: GeoJSON data as dictionary
        output_path: Path to save the GeoJSON file
    """
    output_dir = Path(output_path).parent
    output_dir.mkdir(exist_ok=True, parents=True)

    with open(output_path, 'w') as f:
        json.dump(data, f, indent=2)


def load_geojson(input_path: Union[str, Path]) -> Dict[str, Any]:
    with open(input_path, 'r') as f:
        return json.load(f)


def timing_dataframe(timelines: Sequence[ReceiverTimeline]) -> pd.DataFrame:
    """One row per arrival at every receiver."""
    rows = [
        {
            "receiver": timeline.receiver,
            "station": arrival.station,
            "type": arrival.kind,
            "arrivalSec": arrival.arrival_seconds,
            "txDbm": arrival.tx_power_dbm,
            "txScale": arrival.amplitude_scale,
        }
        for timeline in timelines
        for arrival in timeline.arrivals
    ]
    return pd.DataFrame(rows, columns=TIMING_COLUMNS)


def export_timing_csv(timelines: Sequence[ReceiverTimeline], output_path: Union[str, Path]) -> Path:
    """Write the pulse timing table as CSV and return the path."""
    output_path = Path(output_path)
    output_path.parent.mkdir(exist_ok=True, parents=True)
    timing_dataframe(timelines).to_csv(output_path, index=False)
    return output_path
