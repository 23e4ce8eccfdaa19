#!/usr/bin/env python3
"""
Interactive Map Visualizer
Builds folium web maps of a delineated watershed with optional raster
overlays (terrain metrics, stream network) and pour point markers.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import folium
import geopandas as gpd
import matplotlib
import numpy as np
import rasterio
from rasterio.transform import array_bounds
from rasterio.warp import Resampling, calculate_default_transform, reproject

logger = logging.getLogger(__name__)

WEB_CRS = "EPSG:4326"


def raster_to_rgba(raster: Union[str, Path], cmap: str = 'viridis',
                   nonzero_only: bool = False) -> Tuple[np.ndarray, list]:
    """
    Reproject a raster to WGS84 and colourise it.

    Returns:
        (RGBA uint8 array, [[south, west], [north, east]] bounds)
    """
    with rasterio.open(raster) as src:
        transform, width, height = calculate_default_transform(
            src.crs, WEB_CRS, src.width, src.height, *src.bounds
        )
        source = src.read(1, masked=True).astype('float32').filled(np.nan)
        destination = np.full((height, width), np.nan, dtype='float32')
        reproject(
            source=source,
            destination=destination,
            src_transform=src.transform,
            src_crs=src.crs,
            src_nodata=np.nan,
            dst_transform=transform,
            dst_crs=WEB_CRS,
            dst_nodata=np.nan,
            resampling=Resampling.nearest,
        )

    valid = np.isfinite(destination)
    if nonzero_only:
        valid &= destination > 0

    rgba = np.zeros((height, width, 4), dtype='uint8')
    if valid.any():
        values = destination[valid]
        vmin, vmax = float(values.min()), float(values.max())
        scaled = np.zeros_like(destination)
        if vmax > vmin:
            scaled[valid] = (destination[valid] - vmin) / (vmax - vmin)
        colours = matplotlib.colormaps[cmap](scaled)
        rgba[valid] = (colours[valid] * 255).astype('uint8')

    west, south, east, north = array_bounds(height, width, transform)
    return rgba, [[south, west], [north, east]]


class MapVisualizer:
    """Interactive folium maps of watershed results"""

    def __init__(self, tiles: str = 'OpenStreetMap', zoom_start: int = 12):
        self.tiles = tiles
        self.zoom_start = zoom_start

    def create_watershed_map(self, boundary, output_html: Union[str, Path],
                             pour_points=None, streams: Optional[Union[str, Path]] = None,
                             raster_overlay: Optional[Union[str, Path]] = None,
                             overlay_name: Optional[str] = None, cmap: str = 'viridis',
                             opacity: float = 0.6, map_title: Optional[str] = None) -> Path:
        """
        Create an interactive map centred on the watershed boundary.

        Parameters:
        -----------
        boundary : Path or GeoDataFrame
            Watershed boundary polygon
        output_html : Path
            HTML file to write
        pour_points : Path or GeoDataFrame, optional
            Snapped pour points shown as markers
        streams : Path, optional
            Stream raster drawn as a blue overlay
        raster_overlay : Path, optional
            Metric raster drawn as a colourised overlay
        overlay_name : str, optional
            Layer name for the raster overlay
        """
        output_html = Path(output_html)
        output_html.parent.mkdir(parents=True, exist_ok=True)

        watershed_gdf = boundary if isinstance(boundary, gpd.GeoDataFrame) else gpd.read_file(boundary)
        if watershed_gdf.crs is not None:
            watershed_gdf = watershed_gdf.to_crs(WEB_CRS)

        bounds = watershed_gdf.total_bounds
        center_lat = (bounds[1] + bounds[3]) / 2
        center_lon = (bounds[0] + bounds[2]) / 2

        m = folium.Map(
            location=[center_lat, center_lon],
            zoom_start=self.zoom_start,
            tiles=self.tiles
        )

        if raster_overlay is not None:
            image, image_bounds = raster_to_rgba(raster_overlay, cmap=cmap)
            folium.raster_layers.ImageOverlay(
                image=image,
                bounds=image_bounds,
                opacity=opacity,
                name=overlay_name or Path(raster_overlay).stem,
            ).add_to(m)

        if streams is not None:
            image, image_bounds = raster_to_rgba(streams, cmap='winter', nonzero_only=True)
            folium.raster_layers.ImageOverlay(
                image=image,
                bounds=image_bounds,
                opacity=0.9,
                name='Streams',
            ).add_to(m)

        folium.GeoJson(
            watershed_gdf[['geometry']].to_json(),
            name='Watershed Boundary',
            style_function=lambda feature: {
                'fillColor': 'lightblue',
                'color': 'blue',
                'weight': 2,
                'fillOpacity': 0.1
            },
        ).add_to(m)

        if pour_points is not None:
            points_gdf = pour_points if isinstance(pour_points, gpd.GeoDataFrame) else gpd.read_file(pour_points)
            if points_gdf.crs is not None:
                points_gdf = points_gdf.to_crs(WEB_CRS)
            group = folium.FeatureGroup(name='Pour Points')
            for i, point in enumerate(points_gdf.geometry, start=1):
                folium.CircleMarker(
                    [point.y, point.x],
                    radius=6,
                    color='red',
                    fill=True,
                    popup=f"Pour point {i}<br>{point.y:.5f}, {point.x:.5f}",
                ).add_to(group)
            group.add_to(m)

        if map_title:
            title_html = f'''
                <h3 align="center" style="font-size:20px"><b>{map_title}</b></h3>
            '''
            m.get_root().html.add_child(folium.Element(title_html))

        folium.LayerControl().add_to(m)
        m.fit_bounds([[bounds[1], bounds[0]], [bounds[3], bounds[2]]])
        m.save(str(output_html))

        logger.info(f"Interactive watershed map created: {output_html}")
        return output_html
