"""
Shared fixtures: synthetic DEMs and a file-writing stand-in for WhiteboxTools
"""

import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from pyproj import Transformer
from rasterio.features import shapes
from rasterio.transform import from_origin
from shapely.geometry import Point, shape

# Add parent directory to path
sys.path.append(str(Path(__file__).parent.parent))

from infrastructure.configuration_manager import (
    SiteConfiguration,
    TerrainWorkflowConfiguration,
    VisualizationSettings,
)

UTM_CRS = "EPSG:32617"
ORIGIN_X = 300000.0
ORIGIN_Y = 3950000.0
CELL = 10.0
NODATA = -32768.0


def valley_surface(rows: int, cols: int) -> np.ndarray:
    """Surface falling to the south with a V-shaped valley down the centre column"""
    row_idx, col_idx = np.mgrid[0:rows, 0:cols]
    return (500.0 - row_idx * 2.0 + np.abs(col_idx - cols // 2) * 3.0).astype('float32')


def write_raster(path, data, transform, crs, nodata=NODATA, dtype='float32'):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    array = np.asarray(data, dtype='float64')
    array = np.where(np.isfinite(array), array, nodata).astype(dtype)
    with rasterio.open(
        path, 'w', driver='GTiff', height=array.shape[0], width=array.shape[1],
        count=1, dtype=dtype, crs=crs, transform=transform, nodata=nodata
    ) as dst:
        dst.write(array, 1)
    return path


def read_raster(path):
    """(float64 array with NaN for nodata, transform, crs)"""
    with rasterio.open(path) as src:
        data = src.read(1, masked=True).astype('float64').filled(np.nan)
        return data, src.transform, src.crs


class FakeWhiteboxTools:
    """
    Mimics the whitebox.WhiteboxTools call surface used by WhiteboxTerrainClient.

    Each tool writes a plausible output with rasterio/geopandas and returns
    0. Tools named in `fail_tools` return 1; tools in `skip_output` return 0
    without writing anything.
    """

    def __init__(self, fail_tools=(), skip_output=(), empty_watershed=False):
        self.fail_tools = set(fail_tools)
        self.skip_output = set(skip_output)
        self.empty_watershed = empty_watershed
        self.calls = []
        self.work_dir = None
        self.verbose = None

    def set_working_dir(self, path):
        self.work_dir = path

    def set_verbose_mode(self, val=True):
        self.verbose = val

    def version(self):
        return "WhiteboxTools v2.3.0 (fake)\n"

    def _begin(self, tool, callback, kwargs):
        self.calls.append((tool, kwargs))
        if callback is not None:
            callback(f"./whitebox_tools --run={tool}")
            callback("")
        if tool in self.fail_tools:
            if callback is not None:
                callback(f"Error: {tool} could not read its input")
            return False
        return tool not in self.skip_output

    def _result(self, tool):
        return 1 if tool in self.fail_tools else 0

    # ----- terrain -----

    def hillshade(self, dem, output, azimuth=315.0, altitude=30.0, zfactor=None, callback=None):
        if self._begin('hillshade', callback, dict(dem=dem, output=output, azimuth=azimuth, altitude=altitude)):
            data, transform, crs = read_raster(dem)
            span = np.nanmax(data) - np.nanmin(data) or 1.0
            write_raster(output, (data - np.nanmin(data)) / span * 255.0, transform, crs)
        return self._result('hillshade')

    def breach_depressions_least_cost(self, dem, output, dist, max_cost=None, min_dist=True,
                                      flat_increment=None, fill=True, callback=None):
        if self._begin('breach_depressions_least_cost', callback, dict(dem=dem, output=output, dist=dist, fill=fill)):
            data, transform, crs = read_raster(dem)
            write_raster(output, data, transform, crs)
        return self._result('breach_depressions_least_cost')

    def fill_depressions(self, dem, output, fix_flats=True, flat_increment=None, max_depth=None, callback=None):
        if self._begin('fill_depressions', callback, dict(dem=dem, output=output, fix_flats=fix_flats)):
            data, transform, crs = read_raster(dem)
            write_raster(output, data, transform, crs)
        return self._result('fill_depressions')

    def d8_pointer(self, dem, output, esri_pntr=False, callback=None):
        if self._begin('d8_pointer', callback, dict(dem=dem, output=output)):
            data, transform, crs = read_raster(dem)
            write_raster(output, np.where(np.isfinite(data), 4.0, np.nan), transform, crs)
        return self._result('d8_pointer')

    def _accumulation(self, data):
        rows, cols = data.shape
        row_idx, col_idx = np.mgrid[0:rows, 0:cols]
        acc = (row_idx + 1) * (1 + 100 * (col_idx == cols // 2))
        return np.where(np.isfinite(data), acc.astype('float64'), np.nan)

    def d8_flow_accumulation(self, i, output, out_type="cells", log=False, clip=False,
                             pntr=False, esri_pntr=False, callback=None):
        if self._begin('d8_flow_accumulation', callback, dict(i=i, output=output, out_type=out_type)):
            data, transform, crs = read_raster(i)
            write_raster(output, self._accumulation(data), transform, crs)
        return self._result('d8_flow_accumulation')

    def d_inf_flow_accumulation(self, i, output, out_type="Specific Contributing Area", threshold=None,
                                log=False, clip=False, pntr=False, callback=None):
        if self._begin('d_inf_flow_accumulation', callback, dict(i=i, output=output, out_type=out_type)):
            data, transform, crs = read_raster(i)
            write_raster(output, self._accumulation(data) * CELL, transform, crs)
        return self._result('d_inf_flow_accumulation')

    def extract_streams(self, flow_accum, output, threshold, zero_background=False, callback=None):
        if self._begin('extract_streams', callback, dict(flow_accum=flow_accum, output=output, threshold=threshold)):
            data, transform, crs = read_raster(flow_accum)
            write_raster(output, np.where(data >= threshold, 1.0, np.nan), transform, crs)
        return self._result('extract_streams')

    # ----- watershed -----

    def jenson_snap_pour_points(self, pour_pts, streams, output, snap_dist, callback=None):
        kwargs = dict(pour_pts=pour_pts, streams=streams, output=output, snap_dist=snap_dist)
        if self._begin('jenson_snap_pour_points', callback, kwargs):
            points = gpd.read_file(pour_pts)
            with rasterio.open(streams) as src:
                data = src.read(1, masked=True).astype('float64').filled(np.nan)
                rows, cols = np.nonzero(np.isfinite(data) & (data > 0))
                xs, ys = rasterio.transform.xy(src.transform, rows, cols)
            xs, ys = np.asarray(xs), np.asarray(ys)

            snapped = []
            for geom in points.geometry:
                if xs.size == 0:
                    snapped.append(geom)
                    continue
                distances = np.hypot(xs - geom.x, ys - geom.y)
                nearest = int(np.argmin(distances))
                if distances[nearest] <= snap_dist:
                    snapped.append(Point(xs[nearest], ys[nearest]))
                else:
                    snapped.append(geom)

            gpd.GeoDataFrame(points.drop(columns='geometry'), geometry=snapped, crs=points.crs).to_file(output)
        return self._result('jenson_snap_pour_points')

    def watershed(self, d8_pntr, pour_pts, output, esri_pntr=False, callback=None):
        if self._begin('watershed', callback, dict(d8_pntr=d8_pntr, pour_pts=pour_pts, output=output)):
            data, transform, crs = read_raster(d8_pntr)
            basin = np.full(data.shape, np.nan)
            if not self.empty_watershed:
                points = gpd.read_file(pour_pts)
                for value, geom in enumerate(points.geometry, start=1):
                    row, col = rasterio.transform.rowcol(transform, geom.x, geom.y)
                    basin[0:row + 1, max(col - 10, 0):col + 11] = value
                basin[~np.isfinite(data)] = np.nan
            write_raster(output, basin, transform, crs)
        return self._result('watershed')

    def raster_to_vector_polygons(self, i, output, callback=None):
        if self._begin('raster_to_vector_polygons', callback, dict(i=i, output=output)):
            with rasterio.open(i) as src:
                data = src.read(1, masked=True).astype('float32')
                valid = (~np.ma.getmaskarray(data)) & (data.filled(0) > 0)
                geoms, values = [], []
                for geom, value in shapes(data.filled(0), mask=valid, transform=src.transform):
                    geoms.append(shape(geom))
                    values.append(value)
                crs = src.crs
            gpd.GeoDataFrame({'VALUE': values}, geometry=geoms, crs=crs).to_file(output)
        return self._result('raster_to_vector_polygons')

    # ----- metrics -----

    @staticmethod
    def _gradients(dem):
        data, transform, crs = read_raster(dem)
        dzdy, dzdx = np.gradient(data, abs(transform.e), abs(transform.a))
        return data, dzdx, dzdy, transform, crs

    def slope(self, dem, output, zfactor=None, units="degrees", callback=None):
        if self._begin('slope', callback, dict(dem=dem, output=output, units=units)):
            _, dzdx, dzdy, transform, crs = self._gradients(dem)
            rise = np.hypot(dzdx, dzdy)
            if units == 'percent':
                values = rise * 100.0
            elif units == 'radians':
                values = np.arctan(rise)
            else:
                values = np.degrees(np.arctan(rise))
            write_raster(output, values, transform, crs)
        return self._result('slope')

    def aspect(self, dem, output, zfactor=None, callback=None):
        if self._begin('aspect', callback, dict(dem=dem, output=output)):
            _, dzdx, dzdy, transform, crs = self._gradients(dem)
            write_raster(output, np.degrees(np.arctan2(-dzdx, dzdy)) % 360.0, transform, crs)
        return self._result('aspect')

    def ruggedness_index(self, dem, output, callback=None):
        if self._begin('ruggedness_index', callback, dict(dem=dem, output=output)):
            _, dzdx, dzdy, transform, crs = self._gradients(dem)
            write_raster(output, np.hypot(dzdx, dzdy) * CELL, transform, crs)
        return self._result('ruggedness_index')

    def wetness_index(self, sca, slope, output, callback=None):
        if self._begin('wetness_index', callback, dict(sca=sca, slope=slope, output=output)):
            sca_data, transform, crs = read_raster(sca)
            slope_data, _, _ = read_raster(slope)
            tan_slope = np.tan(np.radians(np.maximum(slope_data, 0.01)))
            write_raster(output, np.log(sca_data / tan_slope), transform, crs)
        return self._result('wetness_index')


@pytest.fixture
def fake_wbt():
    return FakeWhiteboxTools()


@pytest.fixture
def whitebox_client(tmp_path, fake_wbt):
    from clients.watershed_clients.whitebox_client import WhiteboxTerrainClient
    return WhiteboxTerrainClient(tmp_path / "wbt", wbt=fake_wbt)


@pytest.fixture
def utm_dem(tmp_path):
    """60 x 60 projected DEM with 10 m cells"""
    transform = from_origin(ORIGIN_X, ORIGIN_Y, CELL, CELL)
    return write_raster(tmp_path / "dem.tif", valley_surface(60, 60), transform, UTM_CRS)


@pytest.fixture
def utm_to_latlon():
    transformer = Transformer.from_crs(UTM_CRS, "EPSG:4326", always_xy=True)

    def convert(x, y):
        lon, lat = transformer.transform(x, y)
        return lat, lon

    return convert


@pytest.fixture
def off_stream_outlet(utm_to_latlon):
    """(lat, lon) one cell east of the valley stream at row 50"""
    x = ORIGIN_X + 31.5 * CELL
    y = ORIGIN_Y - 50.5 * CELL
    return utm_to_latlon(x, y)


class FakeElevationClient:
    """Writes a synthetic WGS84 DEM instead of downloading one"""

    def __init__(self, fail=False, source='usgs_3dep'):
        self.fail = fail
        self.source = source
        self.requests = []

    def get_dem_for_point(self, lat, lon, buffer_km, output_path, **kwargs):
        from clients.data_clients.elevation_client import DEMDownloadError, bbox_from_point

        self.requests.append((lat, lon, buffer_km, kwargs))
        if self.fail:
            raise DEMDownloadError("All DEM sources failed for bbox: usgs_3dep: HTTP 503")

        minx, miny, maxx, maxy = bbox_from_point(lat, lon, buffer_km)
        size = 100
        transform = from_origin(minx, maxy, (maxx - minx) / size, (maxy - miny) / size)
        write_raster(output_path, valley_surface(size, size), transform, "EPSG:4326")
        return {
            'success': True,
            'source': self.source,
            'file_path': str(output_path),
            'bbox': (minx, miny, maxx, maxy),
            'width': size,
            'height': size,
            'crs': 'EPSG:4326',
        }


@pytest.fixture
def fake_elevation_client():
    return FakeElevationClient()


@pytest.fixture
def workflow_config(tmp_path):
    return TerrainWorkflowConfiguration(
        workspace_root=str(tmp_path / "workspace"),
        sites=[
            SiteConfiguration(name='smokies', latitude=35.6632, longitude=-83.7085, buffer_km=0.5),
            SiteConfiguration(name='smokies_east', latitude=35.6700, longitude=-83.6900, buffer_km=0.5),
        ],
        visualization=VisualizationSettings(max_scene_cells=50),
    )
