"""
Unit tests for pour point snapping and watershed delineation
"""

import logging

import geopandas as gpd
import pytest

from clients.watershed_clients.watershed import WatershedAnalyzer, WatershedDelineationError
from clients.watershed_clients.whitebox_client import WhiteboxTerrainClient
from infrastructure.configuration_manager import HydrologySettings
from processors.outlet_snapping import PourPointProcessor
from tests.conftest import CELL, FakeWhiteboxTools, UTM_CRS


@pytest.fixture
def pour_point_processor(tmp_path, whitebox_client):
    return PourPointProcessor(tmp_path / "pour_points", whitebox_client)


@pytest.fixture
def analyzer(tmp_path, whitebox_client, pour_point_processor):
    return WatershedAnalyzer(tmp_path / "hydrology", whitebox_client, pour_point_processor)


@pytest.fixture
def flow_files(tmp_path, utm_dem, analyzer):
    settings = HydrologySettings()
    conditioned = analyzer.condition_dem(utm_dem, tmp_path / "hydrology", settings)
    return analyzer.calculate_flow(conditioned['conditioned_dem'], tmp_path / "hydrology", settings)


class TestPourPointProcessor:
    """Pour point files and snapping reports"""

    def test_create_pour_points(self, pour_point_processor, off_stream_outlet):
        path = pour_point_processor.create_pour_points([off_stream_outlet], UTM_CRS, "outlets.shp")

        gdf = gpd.read_file(path)
        assert path.parent == pour_point_processor.workspace_dir
        assert gdf.crs.to_epsg() == 32617
        assert list(gdf['id']) == [1]
        assert gdf['lat'].iloc[0] == pytest.approx(off_stream_outlet[0])

    def test_create_pour_points_requires_points(self, pour_point_processor):
        with pytest.raises(ValueError):
            pour_point_processor.create_pour_points([], UTM_CRS, "outlets.shp")

    def test_snap_reports_distance(self, tmp_path, analyzer, pour_point_processor, flow_files, off_stream_outlet):
        streams = analyzer.extract_streams(flow_files['flow_accumulation'], tmp_path / "hydrology", 1000)
        points = pour_point_processor.create_pour_points([off_stream_outlet], UTM_CRS, "outlets.shp")

        report = pour_point_processor.snap_pour_points(points, streams, tmp_path / "snapped.shp",
                                                       snap_distance_m=50.0, cell_size_m=CELL)

        assert report['snapped_pour_points'].exists()
        point = report['points'][0]
        assert point['id'] == 1
        assert point['on_stream'] is True
        assert point['snap_distance_m'] == pytest.approx(CELL, abs=0.01)
        assert report['max_snap_distance_m'] == pytest.approx(CELL, abs=0.01)

    def test_unsnapped_point_warns(self, tmp_path, analyzer, pour_point_processor, flow_files,
                                   off_stream_outlet, caplog):
        # threshold above every accumulation value leaves no streams
        streams = analyzer.extract_streams(flow_files['flow_accumulation'], tmp_path / "hydrology", 1e9)
        points = pour_point_processor.create_pour_points([off_stream_outlet], UTM_CRS, "outlets.shp")

        with caplog.at_level(logging.WARNING):
            report = pour_point_processor.snap_pour_points(points, streams, tmp_path / "snapped.shp",
                                                           snap_distance_m=50.0, cell_size_m=CELL)

        assert report['points'][0]['snap_distance_m'] == 0.0
        assert report['points'][0]['on_stream'] is False
        assert any("did not move" in r.getMessage() for r in caplog.records)

    def test_snap_needs_client(self, tmp_path):
        processor = PourPointProcessor(tmp_path)
        with pytest.raises(RuntimeError):
            processor.snap_pour_points("a.shp", "b.tif", "c.shp", 50.0, CELL)


class TestWatershedAnalyzer:
    """Hydrology sequence on the synthetic valley DEM"""

    def test_condition_dem(self, tmp_path, utm_dem, analyzer, fake_wbt):
        result = analyzer.condition_dem(utm_dem, tmp_path / "h", HydrologySettings(breach_distance_cells=7))

        assert set(result) == {'hillshade', 'breached_dem', 'conditioned_dem'}
        assert all(p.exists() for p in result.values())
        assert [tool for tool, _ in fake_wbt.calls] == [
            'hillshade', 'breach_depressions_least_cost', 'fill_depressions'
        ]
        assert fake_wbt.calls[1][1]['dist'] == 7

    def test_condition_dem_without_fill(self, tmp_path, utm_dem, analyzer, fake_wbt):
        result = analyzer.condition_dem(utm_dem, tmp_path / "h", HydrologySettings(fill_depressions=False))

        assert result['conditioned_dem'] == result['breached_dem']
        assert 'fill_depressions' not in [tool for tool, _ in fake_wbt.calls]

    def test_delineate_watershed(self, tmp_path, analyzer, flow_files, off_stream_outlet):
        streams = analyzer.extract_streams(flow_files['flow_accumulation'], tmp_path / "hydrology", 1000)

        result = analyzer.delineate_watershed(flow_files, streams, [off_stream_outlet], UTM_CRS,
                                              tmp_path / "hydrology", snap_distance_m=50.0)

        # fake basin: rows 0..50, 21 columns around the snapped outlet
        assert result['cell_count'] == 51 * 21
        assert result['area_km2'] == pytest.approx(51 * 21 * CELL * CELL / 1e6, rel=1e-6)
        assert result['watershed_boundary'].name == "watershed_boundary.geojson"

        boundary = gpd.read_file(result['watershed_boundary'])
        assert len(boundary) == 1
        assert boundary.crs.to_epsg() == 32617
        assert result['snapping']['max_snap_distance_m'] == pytest.approx(CELL, abs=0.01)

    def test_empty_watershed(self, tmp_path, utm_dem, off_stream_outlet):
        wbt = WhiteboxTerrainClient(tmp_path / "wbt", wbt=FakeWhiteboxTools(empty_watershed=True))
        analyzer = WatershedAnalyzer(tmp_path, wbt, PourPointProcessor(tmp_path, wbt))

        with pytest.raises(WatershedDelineationError):
            analyzer.analyze(utm_dem, tmp_path / "hydrology", HydrologySettings(), [off_stream_outlet])

    def test_analyze(self, tmp_path, utm_dem, analyzer, off_stream_outlet):
        result = analyzer.analyze(utm_dem, tmp_path / "hydrology", HydrologySettings(), [off_stream_outlet])

        for key in ('hillshade', 'conditioned_dem', 'flow_accumulation', 'flow_direction',
                    'streams', 'snapped_pour_points', 'watershed_raster', 'watershed_boundary'):
            assert result[key].exists(), key
        assert result['crs'] == UTM_CRS
        assert result['area_km2'] > 0

    def test_requires_collaborators(self, tmp_path):
        with pytest.raises(ValueError):
            WatershedAnalyzer(tmp_path)

    @pytest.mark.parametrize("accumulation_type, expected", [
        ('cells', 1000.0),
        ('catchment area', 1000.0 * CELL * CELL),
        ('specific contributing area', 1000.0 * CELL),
    ])
    def test_stream_threshold_follows_accumulation_units(self, tmp_path, analyzer, flow_files, fake_wbt,
                                                         accumulation_type, expected):
        analyzer.extract_streams(flow_files['flow_accumulation'], tmp_path / "hydrology", 1000,
                                 accumulation_type)

        thresholds = [kwargs['threshold'] for tool, kwargs in fake_wbt.calls if tool == 'extract_streams']
        assert thresholds == [pytest.approx(expected)]

    def test_analyze_passes_area_threshold(self, tmp_path, utm_dem, analyzer, fake_wbt, off_stream_outlet):
        settings = HydrologySettings(flow_accumulation_type='catchment area', stream_threshold_cells=10)

        analyzer.analyze(utm_dem, tmp_path / "hydrology", settings, [off_stream_outlet])

        streams_call = dict(fake_wbt.calls)['extract_streams']
        assert streams_call['threshold'] == pytest.approx(10 * CELL * CELL)
        assert dict(fake_wbt.calls)['d8_flow_accumulation']['out_type'] == 'catchment area'

    def test_unknown_accumulation_type(self, flow_files):
        with pytest.raises(ValueError):
            WatershedAnalyzer.accumulation_threshold(flow_files['flow_accumulation'], 1000, 'hectares')
