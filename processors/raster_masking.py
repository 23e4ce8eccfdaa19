#!/usr/bin/env python3
"""
Raster Masking
Crops derived rasters to a watershed boundary and reduces them to summary
statistics.
"""

import logging
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union

import geopandas as gpd
import numpy as np
import rasterio
import rasterio.mask

logger = logging.getLogger(__name__)

DEFAULT_NODATA = -32768.0


@dataclass
class RasterSummary:
    """Statistics of the valid cells of one raster"""
    name: str
    mean: float
    minimum: float
    maximum: float
    std: float
    valid_cells: int
    circular_mean: Optional[float] = None

    def to_dict(self):
        return asdict(self)


def load_boundary(boundary: Union[str, Path, gpd.GeoDataFrame], target_crs) -> gpd.GeoDataFrame:
    """Read a boundary (file or GeoDataFrame) and put it in `target_crs`"""
    if isinstance(boundary, gpd.GeoDataFrame):
        gdf = boundary.copy()
    else:
        gdf = gpd.read_file(boundary)

    if gdf.empty or gdf.geometry.is_empty.all():
        raise ValueError("Boundary contains no geometries")

    if gdf.crs is None:
        logger.warning(f"Boundary has no CRS, assuming {target_crs}")
        return gdf.set_crs(target_crs)
    if gdf.crs != target_crs:
        gdf = gdf.to_crs(target_crs)
    return gdf


def mask_raster_to_boundary(raster: Union[str, Path], boundary: Union[str, Path, gpd.GeoDataFrame],
                            output: Union[str, Path]) -> Path:
    """
    Crop `raster` to the boundary's extent and set cells outside it to nodata.

    Returns:
        Path of the float32 masked GeoTIFF
    """
    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)

    with rasterio.open(raster) as src:
        gdf = load_boundary(boundary, src.crs)
        nodata = DEFAULT_NODATA if src.nodata is None or not np.isfinite(src.nodata) else float(src.nodata)

        masked, transform = rasterio.mask.mask(src, list(gdf.geometry), crop=True, filled=False, indexes=1)
        masked = np.ma.masked_invalid(masked.astype('float32'))

        profile = src.profile.copy()
        profile.update({
            'driver': 'GTiff',
            'height': masked.shape[0],
            'width': masked.shape[1],
            'transform': transform,
            'count': 1,
            'dtype': 'float32',
            'nodata': nodata,
            'compress': 'lzw',
        })
        for key in ('blockxsize', 'blockysize', 'tiled', 'interleave', 'photometric'):
            profile.pop(key, None)

    with rasterio.open(output, 'w', **profile) as dst:
        dst.write(masked.filled(nodata).astype('float32'), 1)

    logger.info(f"Masked {Path(raster).name} to boundary: {int(masked.count())} valid cells")
    return output


def summarize_raster(raster: Union[str, Path], name: Optional[str] = None,
                     circular: bool = False) -> RasterSummary:
    """
    Statistics over the valid (non-nodata, finite) cells of band 1.

    With `circular=True` the values are treated as compass bearings in
    degrees and `circular_mean` holds their direction average in [0, 360).
    Negative bearings (flat cells) are left out of the circular mean.
    """
    name = name or Path(raster).stem

    with rasterio.open(raster) as src:
        data = src.read(1, masked=True)

    values = np.ma.masked_invalid(data.astype('float64')).compressed()

    if values.size == 0:
        logger.warning(f"{name}: no valid cells inside the mask; statistics are NaN")
        return RasterSummary(name=name, mean=math.nan, minimum=math.nan, maximum=math.nan,
                             std=math.nan, valid_cells=0,
                             circular_mean=math.nan if circular else None)

    circular_mean = None
    if circular:
        bearings = values[(values >= 0) & (values <= 360)]
        if bearings.size:
            radians = np.deg2rad(bearings)
            angle = math.degrees(math.atan2(np.sin(radians).mean(), np.cos(radians).mean()))
            circular_mean = angle % 360.0
        else:
            circular_mean = math.nan

    return RasterSummary(
        name=name,
        mean=float(values.mean()),
        minimum=float(values.min()),
        maximum=float(values.max()),
        std=float(values.std()),
        valid_cells=int(values.size),
        circular_mean=circular_mean,
    )


def masked_mean(raster: Union[str, Path], boundary: Union[str, Path, gpd.GeoDataFrame],
                output: Union[str, Path]) -> float:
    """Mask `raster` to `boundary` and return the mean of the remaining cells"""
    masked = mask_raster_to_boundary(raster, boundary, output)
    return summarize_raster(masked).mean
