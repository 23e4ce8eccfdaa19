"""
Terrain Watershed Workflow

Runs the full terrain analysis pipeline for one or more study sites:
DEM acquisition, hydrologic conditioning, watershed delineation, terrain
metrics and visualization. Each site gets its own directory tree, log file
and results.json; a multi-site run adds a site_comparison.csv.
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from clients.watershed_clients.whitebox_client import WhiteboxTerrainClient
from infrastructure.configuration_manager import (
    ConfigurationError,
    ConfigurationManager,
    HydrologySettings,
    SiteConfiguration,
    TerrainWorkflowConfiguration,
    VisualizationSettings,
)
from infrastructure.path_manager import AbsolutePathManager, FileAccessError, PathResolutionError
from workflows.steps import SITE_PIPELINE_STEPS, get_step

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SITE_SUBDIRECTORIES = ('data', 'hydrology', 'terrain', 'plots')

# Loggers captured at DEBUG in the per-site log file
SITE_LOG_PACKAGES = ('clients', 'processors', 'workflows')

# failed_step reported when a site cannot be prepared
SETUP_STAGE = 'setup'

# Context keys copied from step outputs into results.json
RESULT_OUTPUT_KEYS = [
    'dem_wgs84', 'dem', 'crs', 'dem_source', 'cell_size_m',
    'hillshade', 'conditioned_dem', 'flow_accumulation', 'flow_direction',
    'streams', 'pour_points', 'snapped_pour_points', 'watershed_raster', 'watershed_boundary',
    'cell_count', 'snapping', 'metric_files', 'metric_summaries', 'summary_csv', 'plots',
]


def site_result_template(site: SiteConfiguration) -> Dict[str, Any]:
    """Result dict of a site that has not produced anything yet"""
    return {
        'site': site.name,
        'latitude': site.latitude,
        'longitude': site.longitude,
        'success': False,
        'failed_step': None,
        'error': None,
        'steps': {},
        'outputs': {},
        'watershed_area_km2': None,
        'metric_means': {},
    }


class SiteTerrainWorkflow:
    """
    Terrain analysis for a single configured site

    Directory layout:
        <workspace_root>/<site>/data       downloaded and projected DEMs
        <workspace_root>/<site>/hydrology  conditioned DEM, flow, streams, watershed
        <workspace_root>/<site>/terrain    metric rasters and summary table
        <workspace_root>/<site>/plots      maps and 3D scene
    """

    def __init__(self, config: TerrainWorkflowConfiguration, site_name: str,
                 whitebox_client: Optional[WhiteboxTerrainClient] = None,
                 elevation_client=None):
        """
        Parameters:
        -----------
        config : TerrainWorkflowConfiguration
            Validated workflow configuration
        site_name : str
            Name of the site to run
        whitebox_client : WhiteboxTerrainClient, optional
            Shared toolbox client; created on first run if omitted
        elevation_client : ElevationDataClient, optional
            DEM download client; the acquisition step builds one if omitted
        """
        self.config = config
        self.site = self._find_site(config, site_name)
        self.whitebox_client = whitebox_client
        self.elevation_client = elevation_client

        self.site_dir = Path(config.workspace_root) / self.site.name
        self.directories = {name: self.site_dir / name for name in SITE_SUBDIRECTORIES}

        self.log_file = self.site_dir / "terrain_workflow.log"
        self._saved_levels: Dict[str, int] = {}
        self.results_file = self.site_dir / "results.json"
        self.logger = logging.getLogger(f"{__name__}.{self.site.name}")

    @staticmethod
    def _find_site(config: TerrainWorkflowConfiguration, site_name: str) -> SiteConfiguration:
        for site in config.sites:
            if site.name == site_name:
                return site
        available = [site.name for site in config.sites]
        raise KeyError(f"Unknown site '{site_name}'. Available sites: {available}")

    def _attach_log_file(self) -> logging.Handler:
        """
        Send everything logged during the run to the site log file.

        The project loggers are lowered to DEBUG for the run so toolbox
        output reaches the file even when the console shows INFO only.
        """
        handler = logging.FileHandler(self.log_file, encoding='utf-8')
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)

        self._saved_levels = {}
        for name in SITE_LOG_PACKAGES:
            package_logger = logging.getLogger(name)
            self._saved_levels[name] = package_logger.level
            package_logger.setLevel(logging.DEBUG)
        return handler

    def _detach_log_file(self, handler: logging.Handler):
        logging.getLogger().removeHandler(handler)
        handler.close()
        for name, level in self._saved_levels.items():
            logging.getLogger(name).setLevel(level)
        self._saved_levels = {}

    def _build_steps(self) -> List:
        if self.whitebox_client is None:
            self.whitebox_client = WhiteboxTerrainClient(self.directories['hydrology'])

        step_kwargs = {
            'dem_acquisition': {'elevation_client': self.elevation_client},
            'hydrologic_conditioning': {'whitebox_client': self.whitebox_client},
            'watershed_delineation': {'whitebox_client': self.whitebox_client},
            'terrain_metrics': {'whitebox_client': self.whitebox_client},
            'visualization': {},
        }
        return [get_step(name, **step_kwargs[name]) for name in SITE_PIPELINE_STEPS]

    def _run_steps(self, steps: List, context: Dict[str, Any], results: Dict[str, Any]):
        """Execute steps in order; the first unsuccessful one halts the site"""
        for step in steps:
            step_result = step.execute(context)
            results['steps'][step.step_name] = step.get_execution_metadata()

            if not step_result.get('success'):
                results['failed_step'] = step.step_name
                results['error'] = step_result.get('error', 'unknown error')
                self.logger.error(f"Site '{self.site.name}' halted at {step.step_name}: {results['error']}")
                return

            context.update({k: v for k, v in step_result.items() if k not in ('success', 'files_created')})

        results['success'] = True

    def _write_results(self, results: Dict[str, Any]):
        try:
            with open(self.results_file, 'w', encoding='utf-8') as f:
                json.dump(results, f, indent=2, default=str)
        except OSError as e:
            self.logger.error(f"Cannot write {self.results_file}: {e}")
            results['results_file'] = None
        else:
            results['results_file'] = self.results_file

    def run(self) -> Dict[str, Any]:
        """
        Execute the site pipeline, stopping at the first failed step.

        Failures while preparing the site (directories, log file, toolbox
        client) are reported with failed_step 'setup' instead of raising.

        Returns:
        --------
        Dict
            success flag, failed step and error (if any), per-step metadata,
            output paths, watershed area and metric means
        """
        start_time = datetime.now()
        results = site_result_template(self.site)
        results['started'] = start_time.isoformat()
        context: Dict[str, Any] = {}
        handler = None

        try:
            try:
                for directory in self.directories.values():
                    directory.mkdir(parents=True, exist_ok=True)
                handler = self._attach_log_file()
                self.logger.info(f"=== Terrain workflow for site '{self.site.name}' ===")

                context = {
                    'config': self.config,
                    'site': self.site,
                    'site_dir': self.site_dir,
                    **{f"{name}_dir": path for name, path in self.directories.items()},
                }
                steps = self._build_steps()
            except Exception as e:
                results['failed_step'] = SETUP_STAGE
                results['error'] = f"{type(e).__name__}: {e}"
                self.logger.error(f"Site '{self.site.name}' could not be set up: {results['error']}")
            else:
                self._run_steps(steps, context, results)

            results['outputs'] = {k: context[k] for k in RESULT_OUTPUT_KEYS if k in context}
            results['watershed_area_km2'] = context.get('area_km2')
            results['metric_means'] = context.get('metric_means', {})
            results['finished'] = datetime.now().isoformat()
            results['processing_time_s'] = (datetime.now() - start_time).total_seconds()

            self._write_results(results)

            status = "completed" if results['success'] else "FAILED"
            self.logger.info(f"Site '{self.site.name}' {status} in {results['processing_time_s']:.1f}s")
            return results

        finally:
            if handler is not None:
                self._detach_log_file(handler)


class MultiSiteTerrainWorkflow:
    """
    Repeats the site pipeline for every configured site and compares them.
    A failing site is recorded and the remaining sites still run.
    """

    def __init__(self, config: TerrainWorkflowConfiguration,
                 whitebox_client: Optional[WhiteboxTerrainClient] = None,
                 elevation_client=None):
        self.config = config
        self.whitebox_client = whitebox_client
        self.elevation_client = elevation_client
        self.workspace_root = Path(config.workspace_root)
        self.workspace_root.mkdir(parents=True, exist_ok=True)

    def run(self, site_names: Optional[List[str]] = None) -> Dict[str, Any]:
        """Run the selected sites (all by default) in configuration order"""
        configured = [site.name for site in self.config.sites]
        if site_names:
            unknown = [name for name in site_names if name not in configured]
            if unknown:
                raise KeyError(f"Unknown site(s) {unknown}. Available sites: {configured}")
            selected = [name for name in configured if name in site_names]
        else:
            selected = configured

        logger.info(f"Running terrain workflow for {len(selected)} site(s): {selected}")

        site_results = {}
        for name in selected:
            workflow = SiteTerrainWorkflow(self.config, name,
                                           whitebox_client=self.whitebox_client,
                                           elevation_client=self.elevation_client)
            try:
                site_results[name] = workflow.run()
            except Exception as e:
                logger.error(f"Site '{name}' aborted: {type(e).__name__}: {e}")
                result = site_result_template(workflow.site)
                result.update({'failed_step': SETUP_STAGE, 'error': f"{type(e).__name__}: {e}"})
                site_results[name] = result
            # Sites share one toolbox client once it exists
            self.whitebox_client = workflow.whitebox_client

        comparison_csv = self.write_comparison(site_results)
        succeeded = [name for name, r in site_results.items() if r['success']]
        failed = [name for name, r in site_results.items() if not r['success']]

        logger.info(f"Sites succeeded: {len(succeeded)}, failed: {len(failed)}")
        return {
            'success': not failed,
            'sites': site_results,
            'succeeded': succeeded,
            'failed': failed,
            'comparison_csv': comparison_csv,
        }

    def write_comparison(self, site_results: Dict[str, Dict[str, Any]]) -> Path:
        """One row per site and metric with the metric mean and watershed area"""
        rows = []
        for name, result in site_results.items():
            base = {
                'site': name,
                'success': result['success'],
                'failed_step': result['failed_step'],
                'watershed_area_km2': result['watershed_area_km2'],
            }
            means = result.get('metric_means') or {}
            if not means:
                rows.append({**base, 'metric': None, 'mean': None})
            for metric, mean in means.items():
                rows.append({**base, 'metric': metric, 'mean': mean})

        output_csv = self.workspace_root / "site_comparison.csv"
        pd.DataFrame(rows, columns=['site', 'success', 'failed_step', 'watershed_area_km2',
                                    'metric', 'mean']).to_csv(output_csv, index=False)
        logger.info(f"Site comparison saved to: {output_csv}")
        return output_csv


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='terrain-watershed',
        description='DEM download, watershed delineation and terrain metrics with WhiteboxTools'
    )
    parser.add_argument('--verbose', action='store_true', help='Log toolbox output (DEBUG level)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    init_parser = subparsers.add_parser('init-config', help='Write the default configuration file')
    init_parser.add_argument('path', type=str, help='Configuration file (.yaml or .json)')

    run_parser = subparsers.add_parser('run', help='Run the sites in a configuration file')
    run_parser.add_argument('config', type=str, help='Configuration file')
    run_parser.add_argument('--site', action='append', dest='sites', help='Site to run (repeatable)')

    point_parser = subparsers.add_parser('point', help='One-off analysis around a point')
    point_parser.add_argument('latitude', type=float, help='Site latitude')
    point_parser.add_argument('longitude', type=float, help='Site longitude')
    point_parser.add_argument('--name', type=str, help='Site name')
    point_parser.add_argument('--buffer-km', type=float, default=3.0, help='DEM buffer in km (default: 3.0)')
    point_parser.add_argument('--stream-threshold', type=float,
                              default=HydrologySettings.stream_threshold_cells,
                              help='Stream threshold in cells (default: 1000)')
    point_parser.add_argument('--snap-distance-m', type=float,
                              default=HydrologySettings.snap_distance_m,
                              help='Pour point snap distance in metres (default: 100)')
    point_parser.add_argument('--workspace-dir', type=str, help='Workspace directory path')
    point_parser.add_argument('--no-3d', action='store_true', help='Skip the 3D scene')

    return parser


def _init_config(args) -> int:
    config_path = Path(args.path).resolve()
    path_manager = AbsolutePathManager(config_path.parent, create=True)
    manager = ConfigurationManager(path_manager)

    config = manager.create_default_config()
    config.workspace_root = 'terrain_workspace'
    saved = manager.save_config(config, config_path)
    print(f"Configuration written to: {saved}")
    return 0


def _point_config(args) -> TerrainWorkflowConfiguration:
    name = args.name or f"site_{args.latitude:.4f}_{args.longitude:.4f}"
    workspace = Path(args.workspace_dir) if args.workspace_dir else Path.cwd() / "terrain_workspace"

    return TerrainWorkflowConfiguration(
        workspace_root=str(workspace.resolve()),
        sites=[SiteConfiguration(
            name=AbsolutePathManager.sanitize_name(name),
            latitude=args.latitude,
            longitude=args.longitude,
            buffer_km=args.buffer_km,
        )],
        hydrology=HydrologySettings(
            stream_threshold_cells=args.stream_threshold,
            snap_distance_m=args.snap_distance_m,
        ),
        visualization=VisualizationSettings(scene_3d=not args.no_3d),
        metadata={'created_date': datetime.now().isoformat(), 'created_by': 'terrain-watershed point'},
    )


def _print_summary(summary: Dict[str, Any]):
    for name, result in summary['sites'].items():
        if result['success']:
            area = result['watershed_area_km2']
            print(f"[OK] {name}: watershed {area:.2f} km2")
            for metric, mean in result['metric_means'].items():
                print(f"     mean {metric}: {mean:.3f}")
        else:
            print(f"[FAILED] {name} at {result['failed_step']}: {result['error']}")
    print(f"Comparison table: {summary['comparison_csv']}")


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point; returns 0 when every site succeeded"""
    args = _build_parser().parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # Console stays at `level` while site runs log DEBUG to their files
    for handler in logging.getLogger().handlers:
        if type(handler) is logging.StreamHandler:
            handler.setLevel(level)

    try:
        if args.command == 'init-config':
            return _init_config(args)

        if args.command == 'run':
            config_path = Path(args.config).resolve()
            manager = ConfigurationManager(AbsolutePathManager(config_path.parent))
            config = manager.load_config(config_path)
            site_names = args.sites
        else:
            config = _point_config(args)
            errors = config.validate()
            if errors:
                raise ConfigurationError("Invalid point analysis parameters", errors)
            site_names = None

        summary = MultiSiteTerrainWorkflow(config).run(site_names)

    except (ConfigurationError, FileAccessError, PathResolutionError, KeyError, OSError) as e:
        logger.error(str(e))
        return 1

    _print_summary(summary)
    return 0 if summary['success'] else 1


if __name__ == "__main__":
    sys.exit(main())
