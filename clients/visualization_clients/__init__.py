"""
Visualization clients for terrain analysis results
"""

from .map_visualizer import MapVisualizer
from .plotting_client import PlottingClient
from .scene_visualizer import SceneVisualizer

__all__ = ["MapVisualizer", "PlottingClient", "SceneVisualizer"]
