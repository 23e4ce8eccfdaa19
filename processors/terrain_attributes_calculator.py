#!/usr/bin/env python3
"""
Terrain Attributes Calculator
Derives slope, aspect, ruggedness and topographic wetness index rasters from
a conditioned DEM with WhiteboxTools, then summarises them inside the
delineated watershed.
"""

import logging
from pathlib import Path
from typing import Dict, Union

import geopandas as gpd
import pandas as pd

from processors.raster_masking import RasterSummary, mask_raster_to_boundary, summarize_raster

METRIC_FILES = {
    'slope': 'slope.tif',
    'aspect': 'aspect.tif',
    'ruggedness': 'ruggedness.tif',
    'wetness_index': 'wetness_index.tif',
}

SUMMARY_COLUMNS = ['site', 'metric', 'mean', 'min', 'max', 'std', 'valid_cells', 'circular_mean']


class TerrainAttributesCalculator:
    """
    Calculate terrain metric rasters and their within-watershed statistics
    """

    def __init__(self, workspace_dir: Path = None, whitebox_client=None):
        self.workspace_dir = Path(workspace_dir) if workspace_dir else Path.cwd() / "terrain"
        self.workspace_dir.mkdir(exist_ok=True, parents=True)
        self.wbt = whitebox_client
        self.logger = logging.getLogger(__name__)

    def calculate_metrics(self, conditioned_dem: Union[str, Path], output_dir: Union[str, Path],
                          settings) -> Dict[str, Path]:
        """
        Compute the metrics named in `settings.metrics`.

        The wetness index is ln(SCA / tan(slope)) and needs slope in
        degrees, so a degree slope raster is produced for it even when the
        reported slope uses other units.

        Returns:
            Mapping of metric name to raster path
        """
        if self.wbt is None:
            raise RuntimeError("TerrainAttributesCalculator needs a WhiteboxTerrainClient")

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        metrics = list(settings.metrics)
        results: Dict[str, Path] = {}

        slope_degrees = None
        if 'slope' in metrics or 'wetness_index' in metrics:
            if 'slope' in metrics and settings.slope_units == 'degrees':
                slope_degrees = self.wbt.slope(conditioned_dem, output_dir / METRIC_FILES['slope'], units='degrees')
                results['slope'] = slope_degrees
            else:
                if 'slope' in metrics:
                    results['slope'] = self.wbt.slope(conditioned_dem, output_dir / METRIC_FILES['slope'],
                                                      units=settings.slope_units)
                if 'wetness_index' in metrics:
                    slope_degrees = self.wbt.slope(conditioned_dem, output_dir / "slope_degrees.tif",
                                                   units='degrees')

        if 'aspect' in metrics:
            results['aspect'] = self.wbt.aspect(conditioned_dem, output_dir / METRIC_FILES['aspect'])

        if 'ruggedness' in metrics:
            results['ruggedness'] = self.wbt.ruggedness_index(conditioned_dem, output_dir / METRIC_FILES['ruggedness'])

        if 'wetness_index' in metrics:
            sca = self.wbt.specific_contributing_area(conditioned_dem, output_dir / "sca.tif")
            results['wetness_index'] = self.wbt.wetness_index(
                sca, slope_degrees, output_dir / METRIC_FILES['wetness_index']
            )

        self.logger.info(f"Calculated terrain metrics: {', '.join(results)}")
        return results

    def summarize_within_watershed(self, metric_files: Dict[str, Path],
                                   boundary: Union[str, Path, gpd.GeoDataFrame],
                                   output_dir: Union[str, Path]) -> Dict[str, RasterSummary]:
        """Mask each metric raster to the watershed and reduce it to statistics"""
        output_dir = Path(output_dir)
        summaries: Dict[str, RasterSummary] = {}

        for metric, raster in metric_files.items():
            masked = mask_raster_to_boundary(raster, boundary, output_dir / f"{metric}_watershed.tif")
            summary = summarize_raster(masked, name=metric, circular=(metric == 'aspect'))
            summaries[metric] = summary

            self.logger.info(f"  {metric}: mean={summary.mean:.3f} "
                             f"range=[{summary.minimum:.3f}, {summary.maximum:.3f}] "
                             f"cells={summary.valid_cells}")

        return summaries

    def write_summary_table(self, summaries: Dict[str, RasterSummary], site_name: str,
                            output_csv: Union[str, Path]) -> Path:
        """One row per metric with its watershed statistics"""
        output_csv = Path(output_csv)
        output_csv.parent.mkdir(parents=True, exist_ok=True)

        rows = [
            {
                'site': site_name,
                'metric': metric,
                'mean': summary.mean,
                'min': summary.minimum,
                'max': summary.maximum,
                'std': summary.std,
                'valid_cells': summary.valid_cells,
                'circular_mean': summary.circular_mean,
            }
            for metric, summary in summaries.items()
        ]
        pd.DataFrame(rows, columns=SUMMARY_COLUMNS).to_csv(output_csv, index=False)

        self.logger.info(f"Terrain summary saved to: {output_csv}")
        return output_csv
