#!/usr/bin/env python3
"""
WhiteboxTools Terrain Client
Checked wrapper around the WhiteboxTools Python frontend.

Every call passes absolute file paths to the toolbox, turns a non-zero exit
code or a missing output file into a WhiteboxToolError, and routes the
toolbox's progress text to the module logger.

Libraries Used:
- whitebox: Official WhiteboxTools Python wrapper (downloads the binary on first use)
"""

import logging
from pathlib import Path
from typing import Optional, Union

import whitebox

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class WhiteboxToolError(Exception):
    """Raised when a WhiteboxTools tool fails or produces no output"""
    def __init__(self, tool: str, return_code: Optional[int], message: str):
        self.tool = tool
        self.return_code = return_code
        self.message = message
        super().__init__(f"WhiteboxTools '{tool}' failed (return code {return_code}): {message}")


class WhiteboxTerrainClient:
    """
    Thin client over whitebox.WhiteboxTools used by the hydrology and
    terrain-metric processors.
    """

    def __init__(self, work_dir: PathLike, wbt=None, verbose: bool = False):
        """
        Parameters:
        -----------
        work_dir : Path
            WhiteboxTools working directory
        wbt : whitebox.WhiteboxTools, optional
            Pre-built toolbox instance; a new one is created if omitted
        verbose : bool
            Let the toolbox report per-tool progress
        """
        self.work_dir = Path(work_dir).resolve()
        self.work_dir.mkdir(exist_ok=True, parents=True)

        self.wbt = wbt if wbt is not None else whitebox.WhiteboxTools()
        self.wbt.set_working_dir(str(self.work_dir))
        self.wbt.set_verbose_mode(verbose)
        self._last_messages = []

    def version(self) -> str:
        return str(self.wbt.version()).strip()

    def _log_output(self, value: str):
        """Callback receiving toolbox stdout lines"""
        line = str(value).strip()
        if not line:
            return
        self._last_messages.append(line)
        logger.debug(f"wbt: {line}")

    def _run(self, tool: str, output: PathLike, **kwargs) -> Path:
        """Run `tool` with absolute-path arguments and verify its output"""
        output_path = Path(output).resolve()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if output_path.exists():
            output_path.unlink()

        args = {
            key: str(Path(value).resolve()) if isinstance(value, Path) else value
            for key, value in kwargs.items()
        }

        self._last_messages = []
        logger.info(f"Running WhiteboxTools {tool} -> {output_path.name}")
        return_code = getattr(self.wbt, tool)(output=str(output_path), callback=self._log_output, **args)

        if return_code != 0:
            detail = self._last_messages[-1] if self._last_messages else "no output from tool"
            raise WhiteboxToolError(tool, return_code, detail)
        if not output_path.exists():
            raise WhiteboxToolError(tool, return_code, f"expected output not created: {output_path}")

        return output_path

    @staticmethod
    def _input(path: PathLike, label: str) -> Path:
        path = Path(path).resolve()
        if not path.exists():
            raise FileNotFoundError(f"{label} not found: {path}")
        return path

    # ===== Terrain visualisation =====

    def hillshade(self, dem: PathLike, output: PathLike,
                  azimuth: float = 315.0, altitude: float = 30.0) -> Path:
        return self._run('hillshade', output, dem=self._input(dem, 'DEM'),
                         azimuth=azimuth, altitude=altitude)

    # ===== Hydrological conditioning =====

    def breach_depressions(self, dem: PathLike, output: PathLike,
                           max_distance_cells: int = 10, fill: bool = True) -> Path:
        """Least-cost depression breaching; `fill` fills what cannot be breached"""
        return self._run('breach_depressions_least_cost', output,
                         dem=self._input(dem, 'DEM'), dist=int(max_distance_cells), fill=fill)

    def fill_depressions(self, dem: PathLike, output: PathLike, fix_flats: bool = True) -> Path:
        return self._run('fill_depressions', output, dem=self._input(dem, 'DEM'), fix_flats=fix_flats)

    # ===== Flow routing =====

    def d8_pointer(self, dem: PathLike, output: PathLike) -> Path:
        return self._run('d8_pointer', output, dem=self._input(dem, 'DEM'))

    def d8_flow_accumulation(self, dem: PathLike, output: PathLike, out_type: str = 'cells') -> Path:
        return self._run('d8_flow_accumulation', output, i=self._input(dem, 'DEM'), out_type=out_type)

    def specific_contributing_area(self, dem: PathLike, output: PathLike) -> Path:
        """D-infinity specific contributing area, the input to the wetness index"""
        return self._run('d_inf_flow_accumulation', output, i=self._input(dem, 'DEM'),
                         out_type='Specific Contributing Area')

    def extract_streams(self, flow_accum: PathLike, output: PathLike, threshold: float) -> Path:
        return self._run('extract_streams', output, flow_accum=self._input(flow_accum, 'flow accumulation'),
                         threshold=threshold, zero_background=False)

    # ===== Watershed delineation =====

    def snap_pour_points(self, pour_pts: PathLike, streams: PathLike,
                         output: PathLike, snap_dist: float) -> Path:
        """Jenson snapping: move each pour point to the nearest stream cell"""
        return self._run('jenson_snap_pour_points', output,
                         pour_pts=self._input(pour_pts, 'pour points'),
                         streams=self._input(streams, 'streams raster'),
                         snap_dist=snap_dist)

    def watershed(self, d8_pntr: PathLike, pour_pts: PathLike, output: PathLike) -> Path:
        return self._run('watershed', output, d8_pntr=self._input(d8_pntr, 'D8 pointer'),
                         pour_pts=self._input(pour_pts, 'pour points'))

    def raster_to_polygons(self, raster: PathLike, output: PathLike) -> Path:
        return self._run('raster_to_vector_polygons', output, i=self._input(raster, 'raster'))

    # ===== Terrain metrics =====

    def slope(self, dem: PathLike, output: PathLike, units: str = 'degrees') -> Path:
        return self._run('slope', output, dem=self._input(dem, 'DEM'), units=units)

    def aspect(self, dem: PathLike, output: PathLike) -> Path:
        return self._run('aspect', output, dem=self._input(dem, 'DEM'))

    def ruggedness_index(self, dem: PathLike, output: PathLike) -> Path:
        return self._run('ruggedness_index', output, dem=self._input(dem, 'DEM'))

    def wetness_index(self, sca: PathLike, slope: PathLike, output: PathLike) -> Path:
        """TWI = ln(SCA / tan(slope)); slope must be in degrees"""
        return self._run('wetness_index', output, sca=self._input(sca, 'SCA raster'),
                         slope=self._input(slope, 'slope raster'))
