#!/usr/bin/env python3
"""
Pour Point Processor

Writes pour points in the DEM's coordinate system and moves them onto the
extracted stream network with WhiteboxTools' Jenson snapping, then reports
how far each point moved.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio

from processors.coordinate_system_processor import CoordinateSystemProcessor

logger = logging.getLogger(__name__)


class PourPointProcessor:
    """
    Pour point creation and stream snapping
    """

    def __init__(self, workspace_dir: Path = None, whitebox_client=None):
        self.workspace_dir = Path(workspace_dir) if workspace_dir else Path.cwd() / "pour_points"
        self.workspace_dir.mkdir(exist_ok=True, parents=True)
        self.whitebox_client = whitebox_client
        self.crs_processor = CoordinateSystemProcessor(self.workspace_dir)

    def create_pour_points(self, points_latlon: List[Tuple[float, float]], target_crs: str,
                           output: Union[str, Path]) -> Path:
        """
        Write (lat, lon) pour points as a point shapefile in `target_crs`.

        The attribute table carries a 1-based `id` plus the original
        `lat`/`lon` so snapped points can be traced back to their inputs.
        """
        if not points_latlon:
            raise ValueError("At least one pour point is required")

        output = Path(output)
        if not output.is_absolute():
            output = self.workspace_dir / output
        output.parent.mkdir(parents=True, exist_ok=True)

        gdf = self.crs_processor.reproject_points(points_latlon, target_crs)
        gdf.to_file(output)

        logger.info(f"Wrote {len(gdf)} pour point(s) to {output.name} in {target_crs}")
        return output

    def snap_pour_points(self, pour_points: Union[str, Path], streams: Union[str, Path],
                         output: Union[str, Path], snap_distance_m: float,
                         cell_size_m: float) -> Dict[str, Any]:
        """
        Snap pour points to the nearest stream cell within `snap_distance_m`.

        Parameters:
        -----------
        pour_points : Path
            Pour point shapefile in the streams raster CRS
        streams : Path
            Stream raster from ExtractStreams
        output : Path
            Snapped pour point shapefile
        snap_distance_m : float
            Search radius in map units
        cell_size_m : float
            DEM cell size, used to flag search radii smaller than one cell

        Returns:
        --------
        Dict with the snapped file, a per-point report and the largest move
        """
        if self.whitebox_client is None:
            raise RuntimeError("PourPointProcessor needs a WhiteboxTerrainClient to snap pour points")
        if snap_distance_m <= 0:
            raise ValueError("snap_distance_m must be positive")

        if snap_distance_m < cell_size_m:
            logger.warning(f"Snap distance {snap_distance_m} m is smaller than one cell "
                           f"({cell_size_m} m); points can only snap within their own cell")

        snapped_path = self.whitebox_client.snap_pour_points(
            pour_points, streams, output, snap_dist=snap_distance_m
        )

        original = gpd.read_file(pour_points)
        snapped = gpd.read_file(snapped_path)
        if len(original) != len(snapped):
            raise RuntimeError(
                f"Snapping returned {len(snapped)} point(s) for {len(original)} input point(s)"
            )

        on_stream = self._on_stream_flags(streams, snapped)

        points = []
        for i, (orig_geom, snap_geom) in enumerate(zip(original.geometry, snapped.geometry)):
            distance = float(orig_geom.distance(snap_geom))
            point_id = int(original['id'].iloc[i]) if 'id' in original.columns else i + 1

            if distance == 0.0 and not on_stream[i]:
                logger.warning(f"Pour point {point_id} did not move and is not on a stream cell; "
                               f"consider a larger snap distance or a lower stream threshold")

            points.append({
                'id': point_id,
                'original_xy': (float(orig_geom.x), float(orig_geom.y)),
                'snapped_xy': (float(snap_geom.x), float(snap_geom.y)),
                'snap_distance_m': distance,
                'on_stream': bool(on_stream[i]),
            })
            logger.info(f"Pour point {point_id} snapped {distance:.1f} m")

        return {
            'snapped_pour_points': Path(snapped_path),
            'points': points,
            'max_snap_distance_m': max(p['snap_distance_m'] for p in points),
        }

    @staticmethod
    def _on_stream_flags(streams: Union[str, Path], points: gpd.GeoDataFrame) -> List[bool]:
        """Whether each point falls on a valid, non-zero stream cell"""
        with rasterio.open(streams) as src:
            data = src.read(1, masked=True)
            flags = []
            for geom in points.geometry:
                row, col = src.index(geom.x, geom.y)
                if not (0 <= row < src.height and 0 <= col < src.width):
                    flags.append(False)
                    continue
                value = data[row, col]
                flags.append(value is not np.ma.masked and np.isfinite(value) and value > 0)
        return flags
