#!/usr/bin/env python3
"""
Elevation Data Client
Downloads digital elevation models around a point of interest from public
elevation services (USGS 3DEP ImageServer, OpenTopography global DEMs) and
looks up single-point elevations from the USGS Elevation Point Query Service.
"""

import math
import os
import logging
from pathlib import Path
from typing import Dict, List, Tuple, Optional

import numpy as np
import rasterio
import requests
from rasterio.errors import RasterioIOError
from tqdm import tqdm

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111.0
MAX_IMAGE_SIZE = 2000
EPQS_NODATA_THRESHOLD = -1e6

ENDPOINTS = {
    'usgs_3dep': 'https://elevation.nationalmap.gov/arcgis/rest/services/3DEPElevation/ImageServer/exportImage',
    'opentopography': 'https://portal.opentopography.org/API/globaldem',
    'usgs_epqs': 'https://epqs.nationalmap.gov/v1/json',
}

AUTO_SOURCE_ORDER = ['usgs_3dep', 'opentopography']


class DEMDownloadError(Exception):
    """Raised when elevation data cannot be obtained"""


def bbox_from_point(lat: float, lon: float, buffer_km: float) -> Tuple[float, float, float, float]:
    """
    Square-ish WGS84 bounding box of `buffer_km` around a point.

    Returns:
        (minx, miny, maxx, maxy) in degrees
    """
    if buffer_km <= 0:
        raise ValueError("buffer_km must be positive")

    lat_buffer = buffer_km / KM_PER_DEGREE
    # Avoid division by zero at the poles
    cos_lat = max(abs(math.cos(math.radians(lat))), 1e-6)
    lon_buffer = buffer_km / (KM_PER_DEGREE * cos_lat)

    miny = max(lat - lat_buffer, -90.0)
    maxy = min(lat + lat_buffer, 90.0)
    return (lon - lon_buffer, miny, lon + lon_buffer, maxy)


def download_with_progress(session: requests.Session, url: str, output_path: Path,
                           params: Optional[Dict] = None, timeout: int = 120) -> Path:
    """
    Stream a download to disk with a progress bar.

    Raises:
        DEMDownloadError: On HTTP errors or an empty response body
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        response = session.get(url, params=params, stream=True, timeout=timeout)
        response.raise_for_status()

        total_size = int(response.headers.get('content-length', 0))
        written = 0
        with open(output_path, "wb") as f, tqdm(
            total=total_size, unit='iB', unit_scale=True, desc=output_path.name, disable=None
        ) as pbar:
            for chunk in response.iter_content(chunk_size=8192):
                if chunk:
                    f.write(chunk)
                    written += len(chunk)
                    pbar.update(len(chunk))
    except requests.RequestException as e:
        output_path.unlink(missing_ok=True)
        raise DEMDownloadError(f"Download from {url} failed: {e}") from e

    if written == 0:
        output_path.unlink(missing_ok=True)
        raise DEMDownloadError(f"Download from {url} returned an empty body")

    logger.info(f"Data saved to: {output_path} ({written / 1024:.1f} KiB)")
    return output_path


class ElevationDataClient:
    """Client for downloading elevation rasters and point elevations"""

    def __init__(self, session: Optional[requests.Session] = None, timeout_s: int = 120,
                 opentopography_api_key: Optional[str] = None):
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': 'Watershed-Terrain-Analysis-Client/1.0'
        })
        self.timeout_s = timeout_s
        self.opentopography_api_key = opentopography_api_key or os.environ.get('OPENTOPOGRAPHY_API_KEY')
        self.endpoints = dict(ENDPOINTS)

    def get_dem_for_point(self, lat: float, lon: float, buffer_km: float,
                          output_path: Path, **kwargs) -> Dict:
        """Download a DEM covering `buffer_km` around (lat, lon)"""
        bbox = bbox_from_point(lat, lon, buffer_km)
        logger.info(f"DEM request around ({lat:.5f}, {lon:.5f}) with {buffer_km} km buffer")
        return self.get_dem_for_bbox(bbox, output_path, **kwargs)

    def get_dem_for_bbox(self, bbox: Tuple[float, float, float, float], output_path: Path,
                         resolution_m: int = 10, source: str = 'auto',
                         dem_type: str = 'SRTMGL1') -> Dict:
        """
        Download a DEM GeoTIFF for a WGS84 bounding box.

        Parameters:
        -----------
        bbox : Tuple[float, float, float, float]
            (minx, miny, maxx, maxy) in degrees
        output_path : Path
            Destination GeoTIFF
        resolution_m : int
            Requested ground resolution (USGS 3DEP only)
        source : str
            'auto', 'usgs_3dep' or 'opentopography'
        dem_type : str
            OpenTopography global DEM product

        Returns:
        --------
        Dict
            Download result with source, file path and raster shape

        Raises:
        -------
        DEMDownloadError
            If every attempted source fails
        """
        minx, miny, maxx, maxy = bbox
        if minx >= maxx or miny >= maxy:
            raise ValueError(f"Invalid bounding box: {bbox}")

        if source == 'auto':
            sources_to_try = list(AUTO_SOURCE_ORDER)
        elif source in AUTO_SOURCE_ORDER:
            sources_to_try = [source]
        else:
            raise ValueError(f"Unknown DEM source '{source}'. Use 'auto' or one of {AUTO_SOURCE_ORDER}")

        output_path = Path(output_path)
        failures: List[str] = []

        for source_name in sources_to_try:
            logger.info(f"Attempting DEM download from {source_name}...")
            try:
                if source_name == 'usgs_3dep':
                    self._get_usgs_dem(bbox, output_path, resolution_m)
                else:
                    self._get_opentopography_dem(bbox, output_path, dem_type)

                raster_info = self._verify_raster(output_path)
            except DEMDownloadError as e:
                logger.warning(f"{source_name} failed: {e}")
                failures.append(f"{source_name}: {e}")
                continue

            logger.info(f"DEM downloaded from {source_name}: "
                        f"{raster_info['width']}x{raster_info['height']} cells")
            return {
                'success': True,
                'data_type': 'DEM',
                'source': source_name,
                'file_path': str(output_path),
                'bbox': tuple(bbox),
                'resolution_m': resolution_m,
                **raster_info,
            }

        raise DEMDownloadError(
            f"All DEM sources failed for bbox {bbox}: " + " | ".join(failures)
        )

    def get_point_elevation(self, lat: float, lon: float) -> float:
        """
        Elevation in metres at a single point (USGS EPQS).

        Raises:
            DEMDownloadError: If the service fails or has no data for the point
        """
        params = {
            'x': lon,
            'y': lat,
            'wkid': 4326,
            'units': 'Meters',
            'includeDate': 'false',
        }
        try:
            response = self.session.get(self.endpoints['usgs_epqs'], params=params, timeout=self.timeout_s)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise DEMDownloadError(f"Point elevation query failed: {e}") from e

        try:
            value = float(payload['value'])
        except (KeyError, TypeError, ValueError):
            raise DEMDownloadError(f"Point elevation response has no value: {payload}")

        if not math.isfinite(value) or value <= EPQS_NODATA_THRESHOLD:
            raise DEMDownloadError(f"No elevation data at ({lat}, {lon})")

        return value

    def _get_usgs_dem(self, bbox: Tuple[float, float, float, float],
                      output_path: Path, resolution_m: int) -> Path:
        """Download DEM from the USGS 3DEP ImageServer"""
        minx, miny, maxx, maxy = bbox
        mid_lat = (miny + maxy) / 2.0

        width_m = (maxx - minx) * KM_PER_DEGREE * 1000 * abs(math.cos(math.radians(mid_lat)))
        height_m = (maxy - miny) * KM_PER_DEGREE * 1000
        width = max(1, min(MAX_IMAGE_SIZE, int(round(width_m / resolution_m))))
        height = max(1, min(MAX_IMAGE_SIZE, int(round(height_m / resolution_m))))

        params = {
            'f': 'image',
            'bbox': f"{minx},{miny},{maxx},{maxy}",
            'bboxSR': '4326',
            'imageSR': '4326',
            'size': f"{width},{height}",
            'format': 'tiff',
            'pixelType': 'F32',
            'noDataInterpretation': 'esriNoDataMatchAny',
            'interpolation': 'RSP_BilinearInterpolation',
            'renderingRule': '{"rasterFunction":"None"}',
        }
        return download_with_progress(self.session, self.endpoints['usgs_3dep'], output_path,
                                      params=params, timeout=self.timeout_s)

    def _get_opentopography_dem(self, bbox: Tuple[float, float, float, float],
                                output_path: Path, dem_type: str) -> Path:
        """Download a global DEM product from OpenTopography"""
        if not self.opentopography_api_key:
            raise DEMDownloadError("OpenTopography requires an API key (set OPENTOPOGRAPHY_API_KEY)")

        minx, miny, maxx, maxy = bbox
        params = {
            'demtype': dem_type,
            'south': miny,
            'north': maxy,
            'west': minx,
            'east': maxx,
            'outputFormat': 'GTiff',
            'API_Key': self.opentopography_api_key,
        }
        return download_with_progress(self.session, self.endpoints['opentopography'], output_path,
                                      params=params, timeout=self.timeout_s)

    def _verify_raster(self, path: Path) -> Dict:
        """Check that a downloaded file is a usable single-band raster"""
        try:
            with rasterio.open(path) as src:
                data = src.read(1, masked=True)
                info = {
                    'width': src.width,
                    'height': src.height,
                    'crs': str(src.crs) if src.crs else None,
                }
        except RasterioIOError as e:
            Path(path).unlink(missing_ok=True)
            raise DEMDownloadError(f"Downloaded file is not a readable raster: {e}") from e

        valid = np.isfinite(data.astype('float64').filled(np.nan))
        if not valid.any():
            Path(path).unlink(missing_ok=True)
            raise DEMDownloadError("Downloaded raster contains no valid elevation cells")

        info['valid_cells'] = int(valid.sum())
        return info
