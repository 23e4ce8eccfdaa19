"""
Visualization Step

Renders the site results: static maps, an interactive web map and a 3D
terrain scene, each switched on or off in the visualization settings.
"""

from pathlib import Path
from typing import Dict, Any

from clients.visualization_clients.map_visualizer import MapVisualizer
from clients.visualization_clients.plotting_client import PlottingClient
from clients.visualization_clients.scene_visualizer import SceneVisualizer
from workflows.steps.base_step import WorkflowStep


class VisualizationStep(WorkflowStep):
    """Static, interactive and 3D renderings of a site"""

    def __init__(self):
        super().__init__(
            step_name="visualization",
            step_category="visualization",
            description="Render maps and the 3D scene"
        )

    def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self._log_step_start()

        try:
            self.validate_inputs(inputs, ['config', 'site', 'dem', 'watershed_boundary', 'plots_dir'])
            settings = inputs['config'].visualization
            site = inputs['site']
            plots_dir = Path(inputs['plots_dir'])
            dem = self.validate_file_exists(inputs['dem'])
            boundary = self.validate_file_exists(inputs['watershed_boundary'])
            metric_files = inputs.get('metric_files') or {}
            streams = inputs.get('streams')
            pour_points = inputs.get('snapped_pour_points')

            drape_metric = settings.scene_drape_metric
            drape = metric_files.get(drape_metric) if drape_metric else None

            created = {}

            if settings.static_maps:
                plotter = PlottingClient(plots_dir)
                created['dem_map'] = plotter.plot_raster_map(
                    dem, plots_dir / "dem_map.png",
                    title=f"{site.name}: elevation and watershed",
                    cmap=settings.colormap,
                    boundary=boundary,
                    streams=streams,
                    pour_points=pour_points,
                    hillshade=inputs.get('hillshade'),
                    colorbar_label="Elevation (m)",
                )
                if metric_files:
                    created['metric_panels'] = plotter.plot_metric_panels(
                        metric_files, boundary, plots_dir / "terrain_metrics.png"
                    )

            if settings.interactive_map:
                created['interactive_map'] = MapVisualizer().create_watershed_map(
                    boundary, plots_dir / "watershed_map.html",
                    pour_points=pour_points,
                    streams=streams,
                    raster_overlay=drape or dem,
                    overlay_name=drape_metric if drape else "elevation",
                    map_title=site.name,
                )

            if settings.scene_3d:
                scene = SceneVisualizer(max_cells=settings.max_scene_cells,
                                        z_exaggeration=settings.z_exaggeration)
                created['scene_3d'] = scene.render_3d_scene(
                    dem, plots_dir / "scene_3d.html",
                    title=f"{site.name}: 3D terrain",
                    boundary=boundary,
                    drape=drape,
                    drape_label=drape_metric if drape else None,
                )

            if not created:
                self.logger.info("All visualizations disabled; nothing rendered")

            outputs = {
                'success': True,
                'plots': created,
                'files_created': [str(p) for p in created.values()],
            }
            self._log_step_complete(outputs['files_created'])
            return outputs

        except Exception as e:
            return self._failure(e)
