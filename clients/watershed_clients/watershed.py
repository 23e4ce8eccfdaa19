#!/usr/bin/env python3
"""
Watershed Analysis Module
Hydrological conditioning, flow routing, stream extraction and watershed
delineation driven through WhiteboxTools.

Primary Libraries:
- whitebox: Toolbox that performs all flow-routing computations (via WhiteboxTerrainClient)
- rasterio: Raster I/O for checking watershed outputs
- geopandas: Boundary dissolving and area calculation
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import geopandas as gpd
import numpy as np
import rasterio

from processors.coordinate_system_processor import get_utm_crs

logger = logging.getLogger(__name__)


class WatershedDelineationError(Exception):
    """Raised when a watershed cannot be delineated from the pour points"""


class WatershedAnalyzer:
    """
    Runs the hydrology sequence for one projected DEM:

    hillshade -> breach -> fill -> D8 pointer -> flow accumulation ->
    streams -> pour point snapping -> watershed -> boundary polygon
    """

    def __init__(self, work_dir: Optional[Path] = None, whitebox_client=None,
                 pour_point_processor=None):
        """
        Parameters:
        -----------
        work_dir : Path, optional
            Default output directory. If None, uses current directory.
        whitebox_client : WhiteboxTerrainClient
            Checked toolbox wrapper
        pour_point_processor : PourPointProcessor
            Creates and snaps pour points
        """
        self.work_dir = Path(work_dir) if work_dir else Path.cwd()
        self.work_dir.mkdir(exist_ok=True, parents=True)
        if whitebox_client is None or pour_point_processor is None:
            raise ValueError("WatershedAnalyzer needs a whitebox client and a pour point processor")
        self.wbt = whitebox_client
        self.pour_points = pour_point_processor

    def condition_dem(self, dem: Path, output_dir: Path, settings) -> Dict[str, Path]:
        """Hillshade the raw DEM, then breach (and optionally fill) depressions"""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Conditioning DEM...")
        hillshade = self.wbt.hillshade(dem, output_dir / "hillshade.tif",
                                       azimuth=settings.hillshade_azimuth,
                                       altitude=settings.hillshade_altitude)

        breached = self.wbt.breach_depressions(dem, output_dir / "dem_breached.tif",
                                               max_distance_cells=settings.breach_distance_cells)

        if settings.fill_depressions:
            conditioned = self.wbt.fill_depressions(breached, output_dir / "dem_conditioned.tif")
        else:
            conditioned = breached

        return {
            'hillshade': hillshade,
            'breached_dem': breached,
            'conditioned_dem': conditioned,
        }

    def calculate_flow(self, conditioned_dem: Path, output_dir: Path, settings) -> Dict[str, Path]:
        """D8 flow direction and flow accumulation on the conditioned DEM"""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Calculating flow routing ({settings.flow_accumulation_type})...")
        flow_direction = self.wbt.d8_pointer(conditioned_dem, output_dir / "flow_direction.tif")
        flow_accumulation = self.wbt.d8_flow_accumulation(
            conditioned_dem, output_dir / "flow_accumulation.tif",
            out_type=settings.flow_accumulation_type
        )

        return {
            'flow_accumulation': flow_accumulation,
            'flow_direction': flow_direction,
        }

    @staticmethod
    def accumulation_threshold(flow_accumulation: Path, threshold_cells: float,
                               accumulation_type: str = 'cells') -> float:
        """
        Express a threshold given in cells in the units of the accumulation raster.

        'catchment area' rasters hold m2 (cells x cell area); 'specific
        contributing area' rasters hold area per unit contour width (cells x
        cell size).
        """
        if accumulation_type == 'cells':
            return float(threshold_cells)

        with rasterio.open(flow_accumulation) as src:
            cell_x, cell_y = abs(src.transform.a), abs(src.transform.e)

        if accumulation_type == 'catchment area':
            return float(threshold_cells) * cell_x * cell_y
        if accumulation_type == 'specific contributing area':
            return float(threshold_cells) * cell_x
        raise ValueError(f"Unknown flow accumulation type: {accumulation_type}")

    def extract_streams(self, flow_accumulation: Path, output_dir: Path, threshold_cells: float,
                        accumulation_type: str = 'cells') -> Path:
        """Stream raster of cells draining more than `threshold_cells` upslope cells"""
        output_dir = Path(output_dir)
        threshold = self.accumulation_threshold(flow_accumulation, threshold_cells, accumulation_type)
        streams = self.wbt.extract_streams(flow_accumulation, output_dir / "streams.tif", threshold)

        with rasterio.open(streams) as src:
            data = src.read(1, masked=True)
            stream_cells = int(np.count_nonzero(data.filled(0) > 0))

        if stream_cells == 0:
            logger.warning(f"No stream cells above threshold {threshold}; snapping will have nothing to snap to")
        else:
            logger.info(f"Extracted {stream_cells} stream cells (threshold {threshold})")

        return streams

    def delineate_watershed(self, flow_files: Dict[str, Path], streams: Path,
                            pour_points_latlon: List[Tuple[float, float]], crs: str,
                            output_dir: Path, snap_distance_m: float) -> Dict:
        """
        Delineate the watershed draining to the snapped pour points.

        Returns:
        --------
        Dict
            File paths, area_km2, cell_count and the snapping report

        Raises:
        -------
        WatershedDelineationError
            If the watershed raster has no valid cells
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        pour_points = self.pour_points.create_pour_points(
            pour_points_latlon, crs, output_dir / "pour_points.shp"
        )

        with rasterio.open(flow_files['flow_direction']) as src:
            cell_size = abs(src.transform.a)

        snapping = self.pour_points.snap_pour_points(
            pour_points, streams, output_dir / "pour_points_snapped.shp",
            snap_distance_m=snap_distance_m, cell_size_m=cell_size
        )

        logger.info("Delineating watershed...")
        watershed_raster = self.wbt.watershed(
            flow_files['flow_direction'], snapping['snapped_pour_points'], output_dir / "watershed.tif"
        )

        with rasterio.open(watershed_raster) as src:
            data = src.read(1, masked=True)
            values = data.astype('float64').filled(np.nan)
            valid = np.isfinite(values) & (values > 0)
            cell_count = int(valid.sum())
            cell_area = abs(src.transform.a * src.transform.e)

        if cell_count == 0:
            raise WatershedDelineationError(
                f"Watershed raster {watershed_raster.name} contains no cells; "
                f"check pour point locations and snap distance"
            )

        polygons = self.wbt.raster_to_polygons(watershed_raster, output_dir / "watershed_polygons.shp")
        boundary_path = output_dir / "watershed_boundary.geojson"
        boundary = self._dissolve_boundary(polygons, crs)
        boundary.to_file(boundary_path, driver='GeoJSON')

        area_km2 = self._area_km2(boundary)
        logger.info(f"Watershed area: {area_km2:.2f} km2 ({cell_count} cells, "
                    f"raster area {cell_count * cell_area / 1e6:.2f} km2)")

        return {
            'pour_points': pour_points,
            'snapped_pour_points': snapping['snapped_pour_points'],
            'watershed_raster': watershed_raster,
            'watershed_polygons': polygons,
            'watershed_boundary': boundary_path,
            'area_km2': area_km2,
            'cell_count': cell_count,
            'snapping': snapping,
        }

    def analyze(self, dem: Path, output_dir: Path, hydrology_settings,
                pour_points_latlon: List[Tuple[float, float]]) -> Dict:
        """Run conditioning, flow routing, stream extraction and delineation"""
        output_dir = Path(output_dir)
        start_time = datetime.now()

        with rasterio.open(dem) as src:
            if src.crs is None:
                raise WatershedDelineationError(f"{Path(dem).name} has no CRS")
            crs = src.crs.to_string()

        conditioned = self.condition_dem(dem, output_dir, hydrology_settings)
        flow_files = self.calculate_flow(conditioned['conditioned_dem'], output_dir, hydrology_settings)
        streams = self.extract_streams(flow_files['flow_accumulation'], output_dir,
                                       hydrology_settings.stream_threshold_cells,
                                       hydrology_settings.flow_accumulation_type)
        watershed = self.delineate_watershed(flow_files, streams, pour_points_latlon, crs,
                                             output_dir, hydrology_settings.snap_distance_m)

        return {
            **conditioned,
            **flow_files,
            'streams': streams,
            **watershed,
            'crs': crs,
            'processing_time_s': (datetime.now() - start_time).total_seconds(),
        }

    @staticmethod
    def _dissolve_boundary(polygons_path: Path, crs: str) -> gpd.GeoDataFrame:
        gdf = gpd.read_file(polygons_path)
        if gdf.empty:
            raise WatershedDelineationError("Watershed vectorisation produced no polygons")
        if gdf.crs is None:
            gdf = gdf.set_crs(crs)

        dissolved = gdf[['geometry']].dissolve()
        dissolved['geometry'] = dissolved.geometry.buffer(0)
        dissolved = dissolved.reset_index(drop=True)
        dissolved['name'] = 'watershed'
        return dissolved

    @staticmethod
    def _area_km2(boundary: gpd.GeoDataFrame) -> float:
        """Polygon area in km2, projecting to UTM first if needed"""
        if not boundary.crs.is_projected:
            minx, miny, maxx, maxy = boundary.to_crs("EPSG:4326").total_bounds
            boundary = boundary.to_crs(get_utm_crs((minx + maxx) / 2, (miny + maxy) / 2))
        return float(boundary.geometry.area.sum() / 1e6)
