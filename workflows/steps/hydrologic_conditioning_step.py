"""
Hydrologic Conditioning Step

Hillshades, breaches and fills the projected DEM, then computes D8 flow
direction and flow accumulation with WhiteboxTools.
"""

from pathlib import Path
from typing import Dict, Any

from clients.watershed_clients.watershed import WatershedAnalyzer
from clients.watershed_clients.whitebox_client import WhiteboxTerrainClient
from processors.outlet_snapping import PourPointProcessor
from workflows.steps.base_step import WorkflowStep


class HydrologicConditioningStep(WorkflowStep):
    """Condition the DEM and route flow over it"""

    def __init__(self, whitebox_client: WhiteboxTerrainClient = None):
        super().__init__(
            step_name="hydrologic_conditioning",
            step_category="hydrology",
            description="Hillshade, depression breaching/filling and D8 flow routing"
        )
        self.whitebox_client = whitebox_client

    def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self._log_step_start()

        try:
            self.validate_inputs(inputs, ['config', 'dem', 'hydrology_dir'])
            settings = inputs['config'].hydrology
            dem = self.validate_file_exists(inputs['dem'])
            hydrology_dir = Path(inputs['hydrology_dir'])

            wbt = self.whitebox_client or WhiteboxTerrainClient(hydrology_dir)
            analyzer = WatershedAnalyzer(hydrology_dir, wbt, PourPointProcessor(hydrology_dir, wbt))

            conditioned = analyzer.condition_dem(dem, hydrology_dir, settings)
            flow = analyzer.calculate_flow(conditioned['conditioned_dem'], hydrology_dir, settings)

            outputs = {'success': True, **conditioned, **flow}
            outputs['files_created'] = [str(p) for p in {**conditioned, **flow}.values()]

            self._log_step_complete(outputs['files_created'])
            return outputs

        except Exception as e:
            return self._failure(e)
