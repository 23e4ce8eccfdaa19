"""
Terrain Workflows Package
Sequential terrain and watershed analysis for one or many study sites

Available Workflows:
- SiteTerrainWorkflow: DEM -> hydrology -> watershed -> metrics -> visualization for one site
- MultiSiteTerrainWorkflow: The same pipeline repeated over every configured site
"""

from .terrain_workflow import SiteTerrainWorkflow, MultiSiteTerrainWorkflow, main

__all__ = [
    'SiteTerrainWorkflow',
    'MultiSiteTerrainWorkflow',
    'main',
]
