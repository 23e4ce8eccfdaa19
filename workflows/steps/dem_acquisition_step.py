"""
DEM Acquisition Step

Downloads the DEM around a site and reprojects it into the site's
processing CRS. Uses data clients for the actual DEM download.
"""

from pathlib import Path
from typing import Dict, Any

from pyproj import CRS

from clients.data_clients.elevation_client import ElevationDataClient
from processors.coordinate_system_processor import CoordinateSystemProcessor, get_utm_crs
from workflows.steps.base_step import WorkflowStep


class DEMAcquisitionStep(WorkflowStep):
    """
    Download a WGS84 DEM for the site (data/dem_wgs84.tif) and write the
    projected analysis DEM (data/dem.tif).
    """

    def __init__(self, elevation_client: ElevationDataClient = None,
                 coordinate_processor: CoordinateSystemProcessor = None):
        super().__init__(
            step_name="dem_acquisition",
            step_category="acquisition",
            description="Download DEM and reproject to the site CRS"
        )
        self.elevation_client = elevation_client
        self.coordinate_processor = coordinate_processor

    def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self._log_step_start()

        try:
            self.validate_inputs(inputs, ['config', 'site', 'data_dir'])
            config = inputs['config']
            site = inputs['site']
            data_dir = Path(inputs['data_dir'])
            data_dir.mkdir(parents=True, exist_ok=True)

            client = self.elevation_client or ElevationDataClient(timeout_s=config.dem.timeout_s)
            processor = self.coordinate_processor or CoordinateSystemProcessor(data_dir)

            self.logger.info(f"Site '{site.name}' centre ({site.latitude:.5f}, {site.longitude:.5f}), "
                             f"buffer {site.buffer_km} km")

            dem_wgs84 = data_dir / "dem_wgs84.tif"
            download = client.get_dem_for_point(
                site.latitude, site.longitude, site.buffer_km, dem_wgs84,
                resolution_m=config.dem.resolution_m,
                source=config.dem.source,
                dem_type=config.dem.opentopography_dem_type,
            )

            target_crs = site.target_crs or get_utm_crs(site.longitude, site.latitude)
            projected = CRS.from_user_input(target_crs).is_projected
            if not projected:
                self.logger.warning(f"{target_crs} is not projected; slope and area will be in degrees")

            # OpenTopography global DEMs come at their native spacing (~30 m for SRTMGL1)
            resolution = config.dem.resolution_m
            if not projected or download['source'] == 'opentopography':
                resolution = None

            dem = processor.reproject_raster(
                download['file_path'], target_crs, data_dir / "dem.tif", resolution=resolution
            )
            cell_size_x, cell_size_y = processor.cell_size(dem)

            outputs = {
                'success': True,
                'dem_wgs84': Path(download['file_path']),
                'dem': dem,
                'crs': target_crs,
                'dem_source': download['source'],
                'cell_size_m': cell_size_x,
                'files_created': [str(download['file_path']), str(dem)],
            }

            self.logger.info(f"DEM from {download['source']} reprojected to {target_crs} "
                             f"({cell_size_x:.1f} x {cell_size_y:.1f} m cells)")
            self._log_step_complete(outputs['files_created'])
            return outputs

        except Exception as e:
            return self._failure(e)
