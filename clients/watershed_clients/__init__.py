"""
Watershed Clients Package

This package provides hydrological conditioning and watershed delineation
on top of WhiteboxTools.
"""

from .whitebox_client import WhiteboxTerrainClient, WhiteboxToolError
from .watershed import WatershedAnalyzer, WatershedDelineationError

__all__ = [
    'WhiteboxTerrainClient',
    'WhiteboxToolError',
    'WatershedAnalyzer',
    'WatershedDelineationError',
]
