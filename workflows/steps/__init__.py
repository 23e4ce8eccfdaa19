"""
Terrain Workflow Steps Library

Step Categories:
- dem_acquisition_step: DEM download and reprojection
- hydrologic_conditioning_step: Depression removal and flow routing
- watershed_delineation_step: Streams, pour point snapping and watershed boundary
- terrain_metrics_step: Slope, aspect, ruggedness and wetness index summaries
- visualization_step: Static maps, interactive map and 3D scene
"""

from .base_step import WorkflowStep
from .dem_acquisition_step import DEMAcquisitionStep
from .hydrologic_conditioning_step import HydrologicConditioningStep
from .watershed_delineation_step import WatershedDelineationStep
from .terrain_metrics_step import TerrainMetricsStep
from .visualization_step import VisualizationStep

STEP_REGISTRY = {
    'dem_acquisition': DEMAcquisitionStep,
    'hydrologic_conditioning': HydrologicConditioningStep,
    'watershed_delineation': WatershedDelineationStep,
    'terrain_metrics': TerrainMetricsStep,
    'visualization': VisualizationStep,
}

# Execution order for one site
SITE_PIPELINE_STEPS = [
    'dem_acquisition',
    'hydrologic_conditioning',
    'watershed_delineation',
    'terrain_metrics',
    'visualization',
]


def get_step(step_name: str, **kwargs):
    """
    Get step instance by name

    Parameters:
    -----------
    step_name : str
        Name of the step from STEP_REGISTRY
    **kwargs
        Passed to the step constructor (e.g. whitebox_client)

    Returns:
    --------
    WorkflowStep instance
    """
    if step_name not in STEP_REGISTRY:
        available_steps = list(STEP_REGISTRY.keys())
        raise ValueError(f"Unknown step: {step_name}. Available steps: {available_steps}")

    return STEP_REGISTRY[step_name](**kwargs)


def list_available_steps() -> list:
    """List all available step names"""
    return list(STEP_REGISTRY.keys())


__all__ = [
    'WorkflowStep',
    'DEMAcquisitionStep',
    'HydrologicConditioningStep',
    'WatershedDelineationStep',
    'TerrainMetricsStep',
    'VisualizationStep',
    'get_step',
    'list_available_steps',
    'STEP_REGISTRY',
    'SITE_PIPELINE_STEPS',
]
