"""
Watershed Delineation Step

Extracts the stream network, snaps the site's pour points onto it and
delineates the watershed boundary.
"""

from pathlib import Path
from typing import Dict, Any

from clients.watershed_clients.watershed import WatershedAnalyzer
from clients.watershed_clients.whitebox_client import WhiteboxTerrainClient
from processors.outlet_snapping import PourPointProcessor
from workflows.steps.base_step import WorkflowStep


class WatershedDelineationStep(WorkflowStep):
    """Streams, pour point snapping and the watershed boundary"""

    def __init__(self, whitebox_client: WhiteboxTerrainClient = None):
        super().__init__(
            step_name="watershed_delineation",
            step_category="hydrology",
            description="Extract streams, snap pour points and delineate the watershed"
        )
        self.whitebox_client = whitebox_client

    def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self._log_step_start()

        try:
            self.validate_inputs(inputs, ['config', 'site', 'crs', 'flow_accumulation',
                                          'flow_direction', 'hydrology_dir'])
            settings = inputs['config'].hydrology
            site = inputs['site']
            hydrology_dir = Path(inputs['hydrology_dir'])
            flow_files = {
                'flow_accumulation': self.validate_file_exists(inputs['flow_accumulation']),
                'flow_direction': self.validate_file_exists(inputs['flow_direction']),
            }

            wbt = self.whitebox_client or WhiteboxTerrainClient(hydrology_dir)
            analyzer = WatershedAnalyzer(hydrology_dir, wbt, PourPointProcessor(hydrology_dir, wbt))

            streams = analyzer.extract_streams(flow_files['flow_accumulation'], hydrology_dir,
                                               settings.stream_threshold_cells,
                                               settings.flow_accumulation_type)
            watershed = analyzer.delineate_watershed(
                flow_files, streams, site.outlet_coordinates(), inputs['crs'],
                hydrology_dir, settings.snap_distance_m
            )

            outputs = {'success': True, 'streams': streams, **watershed}
            outputs['files_created'] = [
                str(streams),
                str(watershed['snapped_pour_points']),
                str(watershed['watershed_raster']),
                str(watershed['watershed_boundary']),
            ]

            self.logger.info(f"Watershed for '{site.name}': {watershed['area_km2']:.2f} km2, "
                             f"max snap distance {watershed['snapping']['max_snap_distance_m']:.1f} m")
            self._log_step_complete(outputs['files_created'])
            return outputs

        except Exception as e:
            return self._failure(e)
