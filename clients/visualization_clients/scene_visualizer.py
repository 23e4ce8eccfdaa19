#!/usr/bin/env python3
"""
3D Scene Visualizer
Interactive 3D terrain scenes with plotly: the DEM becomes a surface, a
terrain metric can be draped over it as surface colour, and the vertical
scale is exaggerated relative to the true horizontal extent.
"""

import logging
import math
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import plotly.graph_objects as go
import rasterio
import rasterio.mask
from rasterio.warp import Resampling, reproject

from processors.raster_masking import load_boundary

logger = logging.getLogger(__name__)


class SceneVisualizer:
    """Builds and renders downsampled DEM surfaces"""

    def __init__(self, max_cells: int = 300, z_exaggeration: float = 2.0):
        if max_cells < 2:
            raise ValueError("max_cells must be at least 2")
        if z_exaggeration <= 0:
            raise ValueError("z_exaggeration must be positive")
        self.max_cells = max_cells
        self.z_exaggeration = z_exaggeration

    def build_surface(self, dem: Union[str, Path], boundary=None,
                      drape: Optional[Union[str, Path]] = None) -> Dict:
        """
        Read the DEM (masked to `boundary` when given) as a strided grid.

        Returns:
            Dict with 1D `x`/`y` cell-centre coordinates, 2D `z` elevations
            (NaN outside the data) and, with `drape`, a 2D `color` grid
            resampled onto the DEM cells.
        """
        with rasterio.open(dem) as src:
            if boundary is not None:
                gdf = load_boundary(boundary, src.crs)
                data, transform = rasterio.mask.mask(src, list(gdf.geometry), crop=True,
                                                     filled=False, indexes=1)
            else:
                data = src.read(1, masked=True)
                transform = src.transform
            dem_crs = src.crs

        z = np.ma.masked_invalid(data.astype('float64')).filled(np.nan)
        if not np.isfinite(z).any():
            raise ValueError(f"{Path(dem).name} has no valid elevation cells to render")

        height, width = z.shape
        step = max(1, math.ceil(max(height, width) / self.max_cells))

        rows = np.arange(0, height, step)
        cols = np.arange(0, width, step)
        x = transform.c + (cols + 0.5) * transform.a
        y = transform.f + (rows + 0.5) * transform.e

        surface = {
            'x': x,
            'y': y,
            'z': z[::step, ::step],
            'color': None,
            'step': step,
            'crs': dem_crs,
        }

        if drape is not None:
            aligned = np.full((height, width), np.nan, dtype='float64')
            with rasterio.open(drape) as src:
                reproject(
                    source=src.read(1, masked=True).astype('float64').filled(np.nan),
                    destination=aligned,
                    src_transform=src.transform,
                    src_crs=src.crs,
                    src_nodata=np.nan,
                    dst_transform=transform,
                    dst_crs=dem_crs,
                    dst_nodata=np.nan,
                    resampling=Resampling.bilinear,
                )
            aligned[~np.isfinite(z)] = np.nan
            surface['color'] = aligned[::step, ::step]

        logger.info(f"Surface grid {surface['z'].shape[1]}x{surface['z'].shape[0]} (stride {step})")
        return surface

    def render_3d_scene(self, dem: Union[str, Path], output_html: Union[str, Path], title: str,
                        boundary=None, drape: Optional[Union[str, Path]] = None,
                        drape_label: Optional[str] = None, colorscale: str = 'Earth') -> Path:
        """Write an interactive 3D scene as standalone HTML"""
        output_html = Path(output_html)
        output_html.parent.mkdir(parents=True, exist_ok=True)

        surface = self.build_surface(dem, boundary=boundary, drape=drape)
        z = surface['z']

        trace_kwargs = dict(
            x=surface['x'],
            y=surface['y'],
            z=z,
            colorscale=colorscale,
            colorbar=dict(title=drape_label or 'Elevation (m)'),
        )
        if surface['color'] is not None:
            trace_kwargs['surfacecolor'] = surface['color']

        fig = go.Figure(data=[go.Surface(**trace_kwargs)])

        x_range = float(np.ptp(surface['x'])) or 1.0
        y_range = float(np.ptp(surface['y'])) or 1.0
        z_range = float(np.nanmax(z) - np.nanmin(z)) or 1.0
        largest = max(x_range, y_range)

        fig.update_layout(
            title=title,
            template='plotly_white',
            scene=dict(
                aspectmode='manual',
                aspectratio=dict(
                    x=x_range / largest,
                    y=y_range / largest,
                    z=z_range * self.z_exaggeration / largest,
                ),
                xaxis_title='Easting',
                yaxis_title='Northing',
                zaxis_title='Elevation (m)',
            ),
            margin=dict(l=0, r=0, t=50, b=0),
        )

        fig.write_html(str(output_html), include_plotlyjs='cdn')
        logger.info(f"3D scene saved to: {output_html}")
        return output_html
