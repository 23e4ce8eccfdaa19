#!/usr/bin/env python3
"""
Coordinate System Processor
Puts DEMs and pour points into a common projected CRS before terrain analysis.

WhiteboxTools computes slope, flow accumulation and snapping distances in map
units, so a geographic (degree) DEM is reprojected to the UTM zone of the
study site unless the site configuration names another CRS.
"""

import shutil
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.warp import calculate_default_transform, reproject, Resampling
from shapely.geometry import Point

logger = logging.getLogger(__name__)

GEOGRAPHIC_CRS = "EPSG:4326"
DEFAULT_NODATA = -32768.0


def get_utm_crs(longitude: float, latitude: float) -> str:
    """WGS84 UTM zone EPSG code for a location"""
    zone = int((longitude + 180) / 6) + 1
    zone = min(max(zone, 1), 60)
    if latitude >= 0:
        return f"EPSG:{32600 + zone}"
    return f"EPSG:{32700 + zone}"


class CoordinateSystemProcessor:
    """
    Reprojects rasters and point locations into the processing CRS.
    """

    def __init__(self, workspace_dir: Optional[Path] = None):
        self.workspace_dir = Path(workspace_dir) if workspace_dir else Path.cwd()
        self.workspace_dir.mkdir(exist_ok=True, parents=True)

    def reproject_raster(self, input_path: Union[str, Path], target_crs: str,
                         output_path: Union[str, Path], resolution: Optional[float] = None,
                         resampling: str = 'bilinear') -> Path:
        """
        Reproject a single-band raster to `target_crs` as float32 GeoTIFF.

        Parameters:
        -----------
        input_path : Path
            Source raster
        target_crs : str
            Target CRS (e.g. 'EPSG:32610')
        output_path : Path
            Destination raster; relative paths go under the workspace
        resolution : float, optional
            Output cell size in target CRS units
        resampling : str
            rasterio resampling method name

        Returns:
        --------
        Path
            Reprojected raster
        """
        input_path = Path(input_path)
        output_path = Path(output_path)
        if not output_path.is_absolute():
            output_path = self.workspace_dir / output_path
        output_path.parent.mkdir(parents=True, exist_ok=True)

        dst_crs = CRS.from_user_input(target_crs)
        resampling_method = Resampling[resampling]

        with rasterio.open(input_path) as src:
            if src.crs is None:
                raise ValueError(f"{input_path.name} has no CRS; cannot reproject")

            if src.crs == dst_crs and resolution is None:
                logger.info(f"{input_path.name} already in {target_crs} - copying")
                shutil.copy2(input_path, output_path)
                return output_path

            logger.info(f"Reprojecting {input_path.name} from {src.crs} to {target_crs}")

            if resolution is not None:
                transform, width, height = calculate_default_transform(
                    src.crs, dst_crs, src.width, src.height, *src.bounds, resolution=resolution
                )
            else:
                transform, width, height = calculate_default_transform(
                    src.crs, dst_crs, src.width, src.height, *src.bounds
                )

            src_nodata = src.nodata
            dst_nodata = DEFAULT_NODATA if src_nodata is None or not np.isfinite(src_nodata) else float(src_nodata)

            profile = src.profile.copy()
            profile.update({
                'driver': 'GTiff',
                'crs': dst_crs,
                'transform': transform,
                'width': width,
                'height': height,
                'count': 1,
                'dtype': 'float32',
                'nodata': dst_nodata,
                'compress': 'lzw',
            })
            for key in ('blockxsize', 'blockysize', 'tiled', 'interleave', 'photometric'):
                profile.pop(key, None)

            destination = np.full((height, width), dst_nodata, dtype='float32')
            source = src.read(1).astype('float32')
            if src_nodata is not None and np.isnan(src_nodata):
                source = np.where(np.isnan(source), dst_nodata, source)
                src_nodata = dst_nodata

            reproject(
                source=source,
                destination=destination,
                src_transform=src.transform,
                src_crs=src.crs,
                src_nodata=src_nodata,
                dst_transform=transform,
                dst_crs=dst_crs,
                dst_nodata=dst_nodata,
                resampling=resampling_method,
            )

        with rasterio.open(output_path, 'w', **profile) as dst:
            dst.write(destination, 1)

        return output_path

    def reproject_points(self, points_latlon: List[Tuple[float, float]],
                         target_crs: str) -> gpd.GeoDataFrame:
        """(lat, lon) pairs to a GeoDataFrame in `target_crs`"""
        if not points_latlon:
            raise ValueError("No points to reproject")

        gdf = gpd.GeoDataFrame(
            {
                'id': list(range(1, len(points_latlon) + 1)),
                'lat': [float(lat) for lat, _ in points_latlon],
                'lon': [float(lon) for _, lon in points_latlon],
            },
            geometry=[Point(lon, lat) for lat, lon in points_latlon],
            crs=GEOGRAPHIC_CRS,
        )
        return gdf.to_crs(target_crs)

    def raster_crs(self, raster_path: Union[str, Path]) -> CRS:
        with rasterio.open(raster_path) as src:
            if src.crs is None:
                raise ValueError(f"{Path(raster_path).name} has no CRS")
            return src.crs

    def is_projected(self, raster_path: Union[str, Path]) -> bool:
        return self.raster_crs(raster_path).is_projected

    def cell_size(self, raster_path: Union[str, Path]) -> Tuple[float, float]:
        """(x, y) cell size in CRS units"""
        with rasterio.open(raster_path) as src:
            return abs(src.transform.a), abs(src.transform.e)
