"""
Unit tests for station import and scenario/timing export.
"""

import pandas as pd
import pytest

from eloran.config import PulseSettings
from eloran.context import NoiseSource, SimulationContext
from eloran.errors import ImportRowError
from eloran.grid import compute_bounds, compute_grid
from eloran.io import (
    IMPORT_COLUMNS,
    TIMING_COLUMNS,
    export_station_csv,
    export_timing_csv,
    import_station_records,
    load_geojson,
    parse_station_record,
    save_geojson,
    scenario_records,
    scenario_to_geojson,
    timing_dataframe,
)
from eloran.projection import to_planar
from eloran.pulses import simulate_pulses


class TestParseRecord:
    """Test validation of single import rows."""

    def test_minimal_master(self):
        role, lat, lng, fields = parse_station_record(1, {"role": "master", "lat": "42.7", "lng": "-76.8"})
        assert (role, lat, lng) == ("master", 42.7, -76.8)
        assert fields == {}

    def test_full_slave(self):
        row = {
            "role": " Slave ", "lat": 1, "lng": 2, "label": "Caribou", "txPowerDbm": "17.5",
            "gri": "9960", "clockType": "cesium", "clockBias": "1e-7", "clockDrift": "2e-12",
            "ddsEnabled": "false", "offsetSec": "0.011",
        }
        role, _, _, fields = parse_station_record(3, row)
        assert role == "slave"
        assert fields["label"] == "Caribou"
        assert fields["tx_power_dbm"] == 17.5
        assert fields["gri"] == 9960
        assert fields["offset_seconds"] == 0.011
        assert fields["clock"].clock_type == "cesium"
        assert fields["clock"].bias_seconds == 1e-7
        assert fields["clock"].drift_seconds_per_second == 2e-12
        assert fields["dds_enabled"] is False

    def test_receiver_ignores_station_fields(self):
        _, _, _, fields = parse_station_record(1, {"role": "receiver", "lat": 0, "lng": 0, "gri": "x"})
        assert fields == {}

    @pytest.mark.parametrize("row,message", [
        ({"role": "tower", "lat": 0, "lng": 0}, "Row 4: invalid role 'tower'"),
        ({"role": "", "lat": 0, "lng": 0}, "Row 4: invalid role ''"),
        ({"role": "master", "lat": "abc", "lng": 0}, "Row 4: invalid lat 'abc'"),
        ({"role": "master", "lat": "", "lng": 0}, "Row 4: invalid coords"),
        ({"role": "master", "lat": 95, "lng": 0}, "Row 4: invalid coords"),
        ({"role": "slave", "lat": 0, "lng": 0, "clockBias": "soon"}, "Row 4: invalid clockBias 'soon'"),
    ])
    def test_rejections(self, row, message):
        with pytest.raises(ImportRowError) as excinfo:
            parse_station_record(4, row)
        assert str(excinfo.value) == message
        assert excinfo.value.row_index == 4


class TestImport:
    """Test row-by-row application of import records."""

    def test_partial_success(self, config):
        ctx = SimulationContext(config)
        records = [
            {"role": "master", "lat": 0, "lng": 0},
            {"role": "bogus", "lat": 0, "lng": 0},
            {"role": "slave", "lat": 0, "lng": 1},
            {"role": "slave", "lat": "n/a", "lng": 1},
            {"role": "receiver", "lat": 0.5, "lng": 0.5},
        ]
        summary = import_station_records(records, ctx)
        assert summary.applied == 3
        assert summary.rejected == 2
        assert summary.errors[0].startswith("Row 2:")
        assert summary.errors[1].startswith("Row 4:")
        assert len(ctx.masters) == 1 and len(ctx.slaves) == 1 and len(ctx.receivers) == 1

    def test_duplicate_label_rejected(self, config):
        ctx = SimulationContext(config)
        records = [
            {"role": "master", "lat": 0, "lng": 0, "label": "Seneca"},
            {"role": "slave", "lat": 0, "lng": 1, "label": "Seneca"},
        ]
        summary = import_station_records(records, ctx)
        assert summary.applied == 1
        assert summary.errors == ["Row 2: label already in use: Seneca"]

    def test_from_csv(self, tmp_path, config):
        path = tmp_path / "stations.csv"
        path.write_text(
            "role,lat,lng,label,txPowerDbm\n"
            "master,42.71,-76.83,Seneca,20\n"
            "slave,46.77,-67.93,Caribou,\n"
            "receiver,42.36,-71.06,Boston,\n"
        )
        ctx = SimulationContext(config)
        summary = import_station_records(path, ctx)
        assert summary.applied == 3
        assert ctx.station("Caribou").tx_power_dbm == 18.0
        assert ctx.receiver("Boston").latitude == pytest.approx(42.36)

    def test_from_dataframe(self, config):
        df = pd.DataFrame([{"role": "master", "lat": 1.0, "lng": 2.0, "label": "A"}])
        ctx = SimulationContext(config)
        assert import_station_records(df, ctx).applied == 1


class TestGeoJson:
    """Test scenario export."""

    def test_points_for_every_item(self, context):
        collection = scenario_to_geojson(context.snapshot())
        assert collection["type"] == "FeatureCollection"
        roles = [f["properties"]["role"] for f in collection["features"]]
        assert roles == ["master", "slave", "slave", "receiver"]
        feature = collection["features"][1]
        assert feature["geometry"]["type"] == "Point"
        assert tuple(feature["geometry"]["coordinates"]) == (1.0, 0.0)
        x, y = to_planar(0.0, 1.0)
        assert feature["properties"]["projected"]["x"] == pytest.approx(x)
        assert feature["properties"]["projected"]["y"] == pytest.approx(y)

    def test_grid_features(self, context):
        snapshot = context.snapshot()
        bounds = compute_bounds([(s.latitude, s.longitude) for s in snapshot.stations])
        grid = compute_grid(snapshot.masters, snapshot.slaves, bounds, 21, 21)
        collection = scenario_to_geojson(snapshot, grid)
        metadata = [f for f in collection["features"] if f["properties"].get("type") == "grid-metadata"]
        assert len(metadata) == 1
        assert len(metadata[0]["properties"]["maps"]) == 2
        contours = [f for f in collection["features"] if f["properties"].get("type") == "lop-contour"]
        assert contours
        for feature in contours:
            assert feature["geometry"]["type"] == "LineString"
            props = feature["properties"]
            assert props["levelMeters"] == pytest.approx(props["levelSeconds"] * 299792458.0)

    def test_round_trip(self, tmp_path, context):
        """Export, reload and re-import reproduce roles, positions and labels."""
        context.update_station("S1", gri=9960, dds_enabled=False)
        path = tmp_path / "out" / "scenario.geojson"
        save_geojson(scenario_to_geojson(context.snapshot()), path)
        records = scenario_records(load_geojson(path))

        restored = SimulationContext(context.config)
        summary = import_station_records(records, restored)
        assert summary.rejected == 0

        def items(ctx):
            return {
                (getattr(item, "role", "receiver"), item.label, item.latitude, item.longitude)
                for item in ctx.stations + ctx.receivers
            }

        assert items(restored) == items(context)
        assert restored.station("S1").gri == 9960
        assert restored.station("S1").dds_enabled is False

    def test_station_csv_round_trip(self, tmp_path, context):
        records = scenario_records(scenario_to_geojson(context.snapshot()))
        path = export_station_csv(records, tmp_path / "stations.csv")
        assert list(pd.read_csv(path).columns) == IMPORT_COLUMNS
        restored = SimulationContext(context.config)
        assert import_station_records(path, restored).applied == 4


class TestTimingExport:
    """Test the pulse timing table."""

    def test_columns_and_rows(self, tmp_path, context):
        settings = PulseSettings(jitter_std_seconds=0.0, skywave_enabled=True)
        timelines = simulate_pulses(context.snapshot(), settings, NoiseSource(1))
        df = timing_dataframe(timelines)
        assert list(df.columns) == TIMING_COLUMNS
        assert len(df) == 6
        assert set(df["type"]) == {"master", "slave", "master-sky", "slave-sky"}
        sky = df[df["type"].str.endswith("-sky")]
        assert (sky["txScale"] == 0.3).all()

        path = export_timing_csv(timelines, tmp_path / "timing.csv")
        assert len(pd.read_csv(path)) == 6

    def test_empty(self):
        assert list(timing_dataframe([]).columns) == TIMING_COLUMNS
