#!/usr/bin/env python3
"""
Plotting Client for Terrain Analysis

Renders static 2D maps of DEM-derived rasters, optionally over a hillshade
with the watershed boundary, stream network and pour points drawn on top.
Plots are saved to the plot directory given at construction.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import rasterio
import seaborn as sns
from rasterio.plot import plotting_extent

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

METRIC_STYLES = {
    'slope': ('YlOrRd', 'Slope'),
    'aspect': ('twilight', 'Aspect (degrees from north)'),
    'ruggedness': ('magma', 'Terrain ruggedness index'),
    'wetness_index': ('Blues', 'Topographic wetness index'),
}


def _read_masked(raster: PathLike):
    """Band 1 as a masked array (nodata and non-finite cells masked) plus plot extent and CRS"""
    with rasterio.open(raster) as src:
        data = src.read(1, masked=True).astype('float64')
        extent = plotting_extent(src)
        crs = src.crs
    return np.ma.masked_invalid(data), extent, crs


class PlottingClient:
    """
    A client for generating and saving static terrain maps.
    """

    def __init__(self, plot_dir: PathLike):
        self.plot_dir = Path(plot_dir)
        self.plot_dir.mkdir(exist_ok=True, parents=True)

        sns.set_theme(style="white")
        logger.info(f"Plots will be saved to: {self.plot_dir.resolve()}")

    def _output(self, output_png: PathLike) -> Path:
        output_png = Path(output_png)
        if not output_png.is_absolute():
            output_png = self.plot_dir / output_png
        output_png.parent.mkdir(parents=True, exist_ok=True)
        return output_png

    @staticmethod
    def _draw_vectors(ax, crs, boundary=None, streams=None, pour_points=None):
        if streams is not None:
            stream_data, stream_extent, _ = _read_masked(streams)
            stream_cells = np.ma.masked_where(stream_data.filled(0) <= 0, stream_data)
            ax.imshow(stream_cells, extent=stream_extent, cmap='winter', interpolation='nearest', zorder=3)

        if boundary is not None:
            gdf = boundary if isinstance(boundary, gpd.GeoDataFrame) else gpd.read_file(boundary)
            if gdf.crs is not None and crs is not None:
                gdf = gdf.to_crs(crs)
            gdf.boundary.plot(ax=ax, color='black', linewidth=1.5, zorder=4)

        if pour_points is not None:
            gdf = pour_points if isinstance(pour_points, gpd.GeoDataFrame) else gpd.read_file(pour_points)
            if gdf.crs is not None and crs is not None:
                gdf = gdf.to_crs(crs)
            gdf.plot(ax=ax, color='red', markersize=40, edgecolor='white', zorder=5)

    def plot_raster_map(self, raster: PathLike, output_png: PathLike, title: str,
                        cmap: str = 'terrain', boundary=None, streams: Optional[PathLike] = None,
                        pour_points=None, hillshade: Optional[PathLike] = None,
                        colorbar_label: Optional[str] = None) -> Path:
        """
        Plot a single raster as a map.

        Parameters:
        -----------
        raster : Path
            Raster to display
        output_png : Path
            PNG file; relative paths go under the plot directory
        title : str
            Figure title
        cmap : str
            Matplotlib colormap name
        boundary, pour_points : Path or GeoDataFrame, optional
            Vector overlays, reprojected to the raster CRS
        streams : Path, optional
            Stream raster drawn over the map
        hillshade : Path, optional
            Grey underlay; the raster is drawn semi-transparent above it

        Returns:
        --------
        Path
            Saved figure
        """
        output_png = self._output(output_png)
        data, extent, crs = _read_masked(raster)

        fig, ax = plt.subplots(1, 1, figsize=(10, 10))

        alpha = 1.0
        if hillshade is not None:
            shade, shade_extent, _ = _read_masked(hillshade)
            ax.imshow(shade, extent=shade_extent, cmap='gray', zorder=1)
            alpha = 0.6

        image = ax.imshow(data, extent=extent, cmap=cmap, alpha=alpha, zorder=2)
        fig.colorbar(image, ax=ax, shrink=0.7, label=colorbar_label or Path(raster).stem)

        self._draw_vectors(ax, crs, boundary=boundary, streams=streams, pour_points=pour_points)

        ax.set_title(title, fontsize=16)
        ax.set_xlabel("Easting (m)" if crs is not None and crs.is_projected else "Longitude")
        ax.set_ylabel("Northing (m)" if crs is not None and crs.is_projected else "Latitude")

        plt.savefig(output_png, dpi=200, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"Saved map to: {output_png}")
        return output_png

    def plot_metric_panels(self, metric_files: Dict[str, PathLike], boundary,
                           output_png: PathLike) -> Path:
        """One subplot per terrain metric with the watershed boundary overlaid"""
        if not metric_files:
            raise ValueError("No metric rasters to plot")

        output_png = self._output(output_png)
        n = len(metric_files)
        ncols = 2 if n > 1 else 1
        nrows = int(np.ceil(n / ncols))

        fig, axes = plt.subplots(nrows, ncols, figsize=(7 * ncols, 6 * nrows), squeeze=False)

        for ax, (metric, raster) in zip(axes.flat, metric_files.items()):
            cmap, label = METRIC_STYLES.get(metric, ('viridis', metric))
            data, extent, crs = _read_masked(raster)
            image = ax.imshow(data, extent=extent, cmap=cmap)
            fig.colorbar(image, ax=ax, shrink=0.8, label=label)
            self._draw_vectors(ax, crs, boundary=boundary)
            ax.set_title(label)

        for ax in list(axes.flat)[n:]:
            ax.set_visible(False)

        fig.tight_layout()
        plt.savefig(output_png, dpi=200, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"Saved metric panels to: {output_png}")
        return output_png
