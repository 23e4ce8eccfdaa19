"""
Terrain Metrics Step

Computes slope, aspect, ruggedness and wetness index rasters, masks them
to the watershed and writes the per-metric summary table.
"""

from pathlib import Path
from typing import Dict, Any

from clients.watershed_clients.whitebox_client import WhiteboxTerrainClient
from processors.terrain_attributes_calculator import TerrainAttributesCalculator
from workflows.steps.base_step import WorkflowStep


class TerrainMetricsStep(WorkflowStep):
    """Terrain metric rasters and their watershed means"""

    def __init__(self, whitebox_client: WhiteboxTerrainClient = None):
        super().__init__(
            step_name="terrain_metrics",
            step_category="terrain",
            description="Compute terrain metrics and summarise them inside the watershed"
        )
        self.whitebox_client = whitebox_client

    def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self._log_step_start()

        try:
            self.validate_inputs(inputs, ['config', 'site', 'conditioned_dem',
                                          'watershed_boundary', 'terrain_dir'])
            settings = inputs['config'].terrain
            site = inputs['site']
            terrain_dir = Path(inputs['terrain_dir'])
            conditioned_dem = self.validate_file_exists(inputs['conditioned_dem'])
            boundary = self.validate_file_exists(inputs['watershed_boundary'])

            wbt = self.whitebox_client or WhiteboxTerrainClient(terrain_dir)
            calculator = TerrainAttributesCalculator(terrain_dir, wbt)

            metric_files = calculator.calculate_metrics(conditioned_dem, terrain_dir, settings)
            summaries = calculator.summarize_within_watershed(metric_files, boundary, terrain_dir / "masked")
            summary_csv = calculator.write_summary_table(summaries, site.name, terrain_dir / "terrain_summary.csv")

            outputs = {
                'success': True,
                'metric_files': metric_files,
                'metric_summaries': {name: s.to_dict() for name, s in summaries.items()},
                'metric_means': {name: s.mean for name, s in summaries.items()},
                'summary_csv': summary_csv,
                'files_created': [str(p) for p in metric_files.values()] + [str(summary_csv)],
            }

            self._log_step_complete(outputs['files_created'])
            return outputs

        except Exception as e:
            return self._failure(e)
