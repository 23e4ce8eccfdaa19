"""
Unit and integration tests for the terrain workflow steps and orchestrators
"""

import json
import logging

import pandas as pd
import pytest

from clients.watershed_clients.whitebox_client import WhiteboxTerrainClient
from infrastructure.configuration_manager import ConfigurationManager, DEMSettings
from infrastructure.path_manager import AbsolutePathManager
from workflows.steps import (
    DEMAcquisitionStep,
    SITE_PIPELINE_STEPS,
    HydrologicConditioningStep,
    TerrainMetricsStep,
    get_step,
    list_available_steps,
)
from workflows.terrain_workflow import MultiSiteTerrainWorkflow, SiteTerrainWorkflow, main
from tests.conftest import FakeElevationClient, FakeWhiteboxTools


class SelectiveElevationClient(FakeElevationClient):
    """Fails only for the listed latitudes"""

    def __init__(self, failing_latitudes):
        super().__init__()
        self.failing_latitudes = set(failing_latitudes)

    def get_dem_for_point(self, lat, lon, buffer_km, output_path, **kwargs):
        self.fail = lat in self.failing_latitudes
        return super().get_dem_for_point(lat, lon, buffer_km, output_path, **kwargs)


def _missing_toolbox(*args, **kwargs):
    raise RuntimeError("could not download WhiteboxTools binary")


def _fake_toolbox(work_dir, **kwargs):
    return WhiteboxTerrainClient(work_dir, wbt=FakeWhiteboxTools())


class TestStepRegistry:
    """Test step lookup"""

    def test_pipeline_order(self):
        assert SITE_PIPELINE_STEPS == list_available_steps()
        assert SITE_PIPELINE_STEPS[0] == 'dem_acquisition'
        assert SITE_PIPELINE_STEPS[-1] == 'visualization'

    def test_get_step_passes_arguments(self, whitebox_client):
        step = get_step('terrain_metrics', whitebox_client=whitebox_client)

        assert isinstance(step, TerrainMetricsStep)
        assert step.whitebox_client is whitebox_client
        assert str(step) == "terrain.terrain_metrics"

    def test_unknown_step(self):
        with pytest.raises(ValueError, match="Available steps"):
            get_step('lake_detection')


class TestStepFailures:
    """Steps report failures instead of raising"""

    def test_missing_inputs(self, whitebox_client, workflow_config, tmp_path):
        step = HydrologicConditioningStep(whitebox_client=whitebox_client)

        result = step.execute({'config': workflow_config, 'hydrology_dir': tmp_path})

        assert result['success'] is False
        assert result['error'].startswith("ValueError")
        assert result['step_name'] == 'hydrologic_conditioning'
        metadata = step.get_execution_metadata()
        assert metadata['status'] == 'failed'
        assert metadata['error'] == result['error']

    def test_missing_file(self, whitebox_client, workflow_config, tmp_path):
        step = HydrologicConditioningStep(whitebox_client=whitebox_client)

        result = step.execute({'config': workflow_config, 'hydrology_dir': tmp_path,
                               'dem': tmp_path / "missing.tif"})

        assert result['success'] is False
        assert "FileNotFoundError" in result['error']

    def test_conditioning_outputs(self, whitebox_client, workflow_config, utm_dem, tmp_path):
        step = HydrologicConditioningStep(whitebox_client=whitebox_client)

        result = step.execute({'config': workflow_config, 'hydrology_dir': tmp_path / "hydrology",
                               'dem': utm_dem})

        assert result['success'] is True
        for key in ('hillshade', 'conditioned_dem', 'flow_direction', 'flow_accumulation'):
            assert result[key].exists()
        assert step.status == 'completed'


class TestSiteTerrainWorkflow:
    """Single-site pipeline"""

    def test_unknown_site(self, workflow_config):
        with pytest.raises(KeyError):
            SiteTerrainWorkflow(workflow_config, 'yosemite')

    def test_directories_created(self, workflow_config, whitebox_client):
        workflow = SiteTerrainWorkflow(workflow_config, 'smokies', whitebox_client=whitebox_client,
                                       elevation_client=FakeElevationClient(fail=True))
        workflow.run()

        for name in ('data', 'hydrology', 'terrain', 'plots'):
            assert (workflow.site_dir / name).is_dir()

    def test_full_run(self, workflow_config, whitebox_client, fake_elevation_client):
        workflow = SiteTerrainWorkflow(workflow_config, 'smokies', whitebox_client=whitebox_client,
                                       elevation_client=fake_elevation_client)

        results = workflow.run()

        assert results['success'] is True, results['error']
        assert results['failed_step'] is None
        assert list(results['steps']) == SITE_PIPELINE_STEPS
        assert all(meta['status'] == 'completed' for meta in results['steps'].values())
        assert results['watershed_area_km2'] > 0
        assert set(results['metric_means']) == {'slope', 'aspect', 'ruggedness', 'wetness_index'}

        outputs = results['outputs']
        assert outputs['dem_source'] == 'usgs_3dep'
        assert outputs['crs'] == 'EPSG:32617'
        for key in ('dem', 'conditioned_dem', 'streams', 'watershed_boundary', 'summary_csv'):
            assert outputs[key].exists()
        for plot in outputs['plots'].values():
            assert plot.exists()

        lat, lon, buffer_km, kwargs = fake_elevation_client.requests[0]
        assert (lat, lon, buffer_km) == (35.6632, -83.7085, 0.5)
        assert kwargs['resolution_m'] == workflow_config.dem.resolution_m

        saved = json.loads(results['results_file'].read_text())
        assert saved['success'] is True
        assert saved['watershed_area_km2'] == pytest.approx(results['watershed_area_km2'])

        log_text = workflow.log_file.read_text()
        assert "Starting step: dem_acquisition" in log_text
        assert "Completed step: visualization" in log_text

    def test_halts_at_first_failure(self, workflow_config, whitebox_client, fake_wbt):
        workflow = SiteTerrainWorkflow(workflow_config, 'smokies', whitebox_client=whitebox_client,
                                       elevation_client=FakeElevationClient(fail=True))

        results = workflow.run()

        assert results['success'] is False
        assert results['failed_step'] == 'dem_acquisition'
        assert "DEMDownloadError" in results['error']
        assert list(results['steps']) == ['dem_acquisition']
        assert fake_wbt.calls == []
        assert json.loads(workflow.results_file.read_text())['failed_step'] == 'dem_acquisition'

    def test_toolbox_failure_is_reported(self, workflow_config, tmp_path, fake_elevation_client):
        wbt = WhiteboxTerrainClient(tmp_path / "wbt", wbt=FakeWhiteboxTools(fail_tools={'d8_pointer'}))
        workflow = SiteTerrainWorkflow(workflow_config, 'smokies', whitebox_client=wbt,
                                       elevation_client=fake_elevation_client)

        results = workflow.run()

        assert results['failed_step'] == 'hydrologic_conditioning'
        assert "could not read its input" in results['error']
        assert results['watershed_area_km2'] is None


    def test_toolbox_output_reaches_site_log(self, workflow_config, whitebox_client, fake_elevation_client):
        workflow = SiteTerrainWorkflow(workflow_config, 'smokies', whitebox_client=whitebox_client,
                                       elevation_client=fake_elevation_client)
        package_logger = logging.getLogger('clients')
        level_before = package_logger.level

        workflow.run()

        assert "wbt: ./whitebox_tools --run=hillshade" in workflow.log_file.read_text()
        assert package_logger.level == level_before

    def test_setup_failure_is_recorded(self, workflow_config, fake_elevation_client, monkeypatch):
        monkeypatch.setattr('workflows.terrain_workflow.WhiteboxTerrainClient', _missing_toolbox)
        workflow = SiteTerrainWorkflow(workflow_config, 'smokies', elevation_client=fake_elevation_client)

        results = workflow.run()

        assert results['success'] is False
        assert results['failed_step'] == 'setup'
        assert "could not download WhiteboxTools" in results['error']
        assert fake_elevation_client.requests == []
        saved = json.loads(workflow.results_file.read_text())
        assert saved['failed_step'] == 'setup'


class TestMultiSiteTerrainWorkflow:
    """Multi-site runs and the comparison table"""

    def test_failed_site_does_not_stop_others(self, workflow_config, whitebox_client):
        client = SelectiveElevationClient(failing_latitudes={35.6632})

        summary = MultiSiteTerrainWorkflow(workflow_config, whitebox_client=whitebox_client,
                                           elevation_client=client).run()

        assert summary['success'] is False
        assert summary['failed'] == ['smokies']
        assert summary['succeeded'] == ['smokies_east']

        table = pd.read_csv(summary['comparison_csv'])
        assert list(table.columns) == ['site', 'success', 'failed_step', 'watershed_area_km2', 'metric', 'mean']
        failed_rows = table[table['site'] == 'smokies']
        assert len(failed_rows) == 1
        assert failed_rows['failed_step'].iloc[0] == 'dem_acquisition'
        assert set(table.loc[table['site'] == 'smokies_east', 'metric']) == {
            'slope', 'aspect', 'ruggedness', 'wetness_index'
        }

    def test_site_selection(self, workflow_config, whitebox_client, fake_elevation_client):
        summary = MultiSiteTerrainWorkflow(workflow_config, whitebox_client=whitebox_client,
                                           elevation_client=fake_elevation_client).run(['smokies_east'])

        assert list(summary['sites']) == ['smokies_east']
        assert len(fake_elevation_client.requests) == 1

    def test_unknown_site_selection(self, workflow_config):
        with pytest.raises(KeyError):
            MultiSiteTerrainWorkflow(workflow_config).run(['nowhere'])

    def test_setup_failures_still_write_comparison(self, workflow_config, fake_elevation_client, monkeypatch):
        monkeypatch.setattr('workflows.terrain_workflow.WhiteboxTerrainClient', _missing_toolbox)

        summary = MultiSiteTerrainWorkflow(workflow_config, elevation_client=fake_elevation_client).run()

        assert summary['failed'] == ['smokies', 'smokies_east']
        table = pd.read_csv(summary['comparison_csv'])
        assert list(table['failed_step']) == ['setup', 'setup']

    def test_crashing_site_is_recorded(self, workflow_config, whitebox_client, fake_elevation_client,
                                       monkeypatch):
        original_run = SiteTerrainWorkflow.run

        def run_or_crash(workflow):
            if workflow.site.name == 'smokies':
                raise OSError("disk full")
            return original_run(workflow)

        monkeypatch.setattr(SiteTerrainWorkflow, 'run', run_or_crash)

        summary = MultiSiteTerrainWorkflow(workflow_config, whitebox_client=whitebox_client,
                                           elevation_client=fake_elevation_client).run()

        assert summary['failed'] == ['smokies']
        assert summary['succeeded'] == ['smokies_east']
        assert summary['sites']['smokies']['error'] == "OSError: disk full"
        assert summary['comparison_csv'].exists()


class TestDEMAcquisitionStep:
    """Resolution of the projected analysis DEM"""

    def _run(self, workflow_config, tmp_path, client):
        workflow_config.dem = DEMSettings(resolution_m=5)
        step = DEMAcquisitionStep(elevation_client=client)
        return step.execute({'config': workflow_config, 'site': workflow_config.sites[0],
                             'data_dir': tmp_path / "data"})

    def test_usgs_dem_uses_configured_resolution(self, workflow_config, tmp_path):
        result = self._run(workflow_config, tmp_path, FakeElevationClient())

        assert result['success'] is True
        assert result['cell_size_m'] == pytest.approx(5.0)
        assert result['crs'] == 'EPSG:32617'

    def test_opentopography_dem_keeps_native_spacing(self, workflow_config, tmp_path):
        result = self._run(workflow_config, tmp_path, FakeElevationClient(source='opentopography'))

        assert result['success'] is True
        assert result['dem_source'] == 'opentopography'
        assert 7.0 < result['cell_size_m'] < 13.0


class TestCommandLine:
    """Command line entry point"""

    def test_init_config(self, tmp_path):
        config_path = tmp_path / "config" / "terrain.yaml"

        assert main(['init-config', str(config_path)]) == 0

        manager = ConfigurationManager(AbsolutePathManager(config_path.parent))
        config = manager.load_config(config_path)
        assert [site.name for site in config.sites] == ['mount_rainier_carbon_river', 'great_smoky_little_river']

    def test_run_unknown_site(self, tmp_path):
        config_path = tmp_path / "terrain.yaml"
        main(['init-config', str(config_path)])

        assert main(['run', str(config_path), '--site', 'nowhere']) == 1

    def test_run_missing_config(self, tmp_path):
        assert main(['run', str(tmp_path / "missing.yaml")]) == 1

    def test_run_exit_codes(self, tmp_path, workflow_config, monkeypatch):
        monkeypatch.setattr('workflows.terrain_workflow.WhiteboxTerrainClient', _fake_toolbox)
        config_path = ConfigurationManager(AbsolutePathManager(tmp_path)).save_config(workflow_config, 'terrain.yaml')

        monkeypatch.setattr('workflows.steps.dem_acquisition_step.ElevationDataClient',
                            lambda **kwargs: FakeElevationClient())
        assert main(['run', str(config_path), '--site', 'smokies_east']) == 0

        monkeypatch.setattr('workflows.steps.dem_acquisition_step.ElevationDataClient',
                            lambda **kwargs: SelectiveElevationClient(failing_latitudes={35.6632}))
        assert main(['run', str(config_path)]) == 1

        table = pd.read_csv(tmp_path / "workspace" / "site_comparison.csv")
        assert set(table.loc[~table['success'], 'site']) == {'smokies'}

    def test_point_analysis(self, tmp_path, monkeypatch):
        toolboxes = []

        def recording_toolbox(work_dir, **kwargs):
            toolboxes.append(FakeWhiteboxTools())
            return WhiteboxTerrainClient(work_dir, wbt=toolboxes[-1])

        elevation = FakeElevationClient()
        monkeypatch.setattr('workflows.terrain_workflow.WhiteboxTerrainClient', recording_toolbox)
        monkeypatch.setattr('workflows.steps.dem_acquisition_step.ElevationDataClient',
                            lambda **kwargs: elevation)
        workspace = tmp_path / "point_workspace"

        exit_code = main(['point', '35.6632', '-83.7085', '--name', 'little river', '--buffer-km', '0.5',
                          '--stream-threshold', '800', '--snap-distance-m', '60',
                          '--workspace-dir', str(workspace), '--no-3d'])

        assert exit_code == 0
        assert elevation.requests[0][:3] == (35.6632, -83.7085, 0.5)

        calls = dict(toolboxes[0].calls)
        assert calls['extract_streams']['threshold'] == pytest.approx(800.0)
        assert calls['jenson_snap_pour_points']['snap_dist'] == pytest.approx(60.0)

        plots = workspace / "little_river" / "plots"
        assert (plots / "dem_map.png").exists()
        assert (plots / "watershed_map.html").exists()
        assert not (plots / "scene_3d.html").exists()
        assert json.loads((workspace / "little_river" / "results.json").read_text())['success'] is True

    def test_point_rejects_invalid_coordinates(self, tmp_path):
        assert main(['point', '95.0', '10.0', '--workspace-dir', str(tmp_path)]) == 1
