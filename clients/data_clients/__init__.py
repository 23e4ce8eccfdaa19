"""
Data Clients Package
Provides client classes for downloading the elevation data the terrain workflow needs

Available Clients:
- ElevationDataClient: DEM downloads (USGS 3DEP, OpenTopography) and point elevations (USGS EPQS)
"""

from .elevation_client import (
    ElevationDataClient,
    DEMDownloadError,
    bbox_from_point,
    download_with_progress,
)

__all__ = [
    'ElevationDataClient',
    'DEMDownloadError',
    'bbox_from_point',
    'download_with_progress',
]
