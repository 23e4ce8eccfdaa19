"""
ConfigurationManager for parameterized and reproducible terrain workflows.
"""

import json
import math
import yaml
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Any, Union, Optional, Tuple
from dataclasses import dataclass, asdict, field, fields
import logging

from .path_manager import AbsolutePathManager, FileAccessError

logger = logging.getLogger(__name__)


DEM_SOURCES = ('auto', 'usgs_3dep', 'opentopography')
FLOW_ACCUMULATION_TYPES = ('cells', 'catchment area', 'specific contributing area')
TERRAIN_METRICS = ('slope', 'aspect', 'ruggedness', 'wetness_index')
SLOPE_UNITS = ('degrees', 'percent', 'radians')


class ConfigurationError(Exception):
    """Raised when a configuration is invalid or cannot be read"""
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        detail = f": {'; '.join(self.errors)}" if self.errors else ""
        super().__init__(f"{message}{detail}")


def _numeric_fields(section_cls, values: Optional[Dict[str, Any]], label: str) -> Dict[str, Any]:
    """Cast the int and float fields of a section read from YAML/JSON"""
    values = dict(values or {})
    for f in fields(section_cls):
        if f.name not in values or f.type not in (int, float):
            continue
        value = values[f.name]
        try:
            values[f.name] = f.type(value)
        except (TypeError, ValueError):
            raise ValueError(f"{label}.{f.name} must be a number, got {value!r}")
    return values


@dataclass
class SiteConfiguration:
    """A study site: DEM centre point and the pour points to delineate"""
    name: str
    latitude: float
    longitude: float
    buffer_km: float = 3.0
    # (lat, lon) pairs; empty means the site centre is the pour point
    pour_points: List[Tuple[float, float]] = field(default_factory=list)
    target_crs: Optional[str] = None

    def outlet_coordinates(self) -> List[Tuple[float, float]]:
        """Pour points as (lat, lon), falling back to the site centre"""
        if self.pour_points:
            return [(float(lat), float(lon)) for lat, lon in self.pour_points]
        return [(self.latitude, self.longitude)]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['pour_points'] = [list(p) for p in self.pour_points]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SiteConfiguration':
        if not isinstance(data, dict):
            raise ValueError(f"site entry must be a mapping, got {data!r}")
        label = f"site '{data.get('name', '<unnamed>')}'"
        data = _numeric_fields(cls, data, label)
        pour_points = []
        for point in data.get('pour_points') or []:
            try:
                pour_points.append(tuple(float(v) for v in point))
            except (TypeError, ValueError):
                raise ValueError(f"{label}: pour point {point!r} must be numeric (lat, lon)")
        data['pour_points'] = pour_points
        return cls(**data)

    def validate(self) -> List[str]:
        errors = []
        label = self.name or '<unnamed>'

        if not self.name or not str(self.name).strip():
            errors.append("site name cannot be empty")
        elif AbsolutePathManager.sanitize_name(self.name) != self.name:
            errors.append(f"site '{label}': name must be usable as a directory name")

        if not (-90.0 <= self.latitude <= 90.0):
            errors.append(f"site '{label}': latitude {self.latitude} outside [-90, 90]")
        if not (-180.0 <= self.longitude <= 180.0):
            errors.append(f"site '{label}': longitude {self.longitude} outside [-180, 180]")
        if self.buffer_km <= 0:
            errors.append(f"site '{label}': buffer_km must be positive")

        for point in self.pour_points:
            if len(point) != 2:
                errors.append(f"site '{label}': pour point {point} must be (lat, lon)")
                continue
            lat, lon = point
            if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lon <= 180.0):
                errors.append(f"site '{label}': pour point {point} outside valid coordinates")

        return errors


@dataclass
class DEMSettings:
    """Elevation data acquisition parameters"""
    source: str = 'auto'
    resolution_m: int = 10
    opentopography_dem_type: str = 'SRTMGL1'
    timeout_s: int = 120

    def validate(self) -> List[str]:
        errors = []
        if self.source not in DEM_SOURCES:
            errors.append(f"dem.source must be one of {list(DEM_SOURCES)}")
        if self.resolution_m <= 0:
            errors.append("dem.resolution_m must be positive")
        if self.timeout_s <= 0:
            errors.append("dem.timeout_s must be positive")
        return errors


@dataclass
class HydrologySettings:
    """Hydrological conditioning, stream extraction and snapping parameters"""
    breach_distance_cells: int = 10
    fill_depressions: bool = True
    flow_accumulation_type: str = 'cells'
    stream_threshold_cells: float = 1000
    snap_distance_m: float = 100.0
    hillshade_azimuth: float = 315.0
    hillshade_altitude: float = 30.0

    def validate(self) -> List[str]:
        errors = []
        if self.breach_distance_cells <= 0:
            errors.append("hydrology.breach_distance_cells must be positive")
        if self.flow_accumulation_type not in FLOW_ACCUMULATION_TYPES:
            errors.append(f"hydrology.flow_accumulation_type must be one of {list(FLOW_ACCUMULATION_TYPES)}")
        if self.stream_threshold_cells <= 0:
            errors.append("hydrology.stream_threshold_cells must be positive")
        if self.snap_distance_m <= 0:
            errors.append("hydrology.snap_distance_m must be positive")
        if not (0.0 <= self.hillshade_azimuth <= 360.0):
            errors.append("hydrology.hillshade_azimuth must be between 0 and 360")
        if not (0.0 < self.hillshade_altitude <= 90.0):
            errors.append("hydrology.hillshade_altitude must be between 0 and 90")
        return errors


@dataclass
class TerrainSettings:
    """Which terrain metrics to derive"""
    metrics: List[str] = field(default_factory=lambda: list(TERRAIN_METRICS))
    slope_units: str = 'degrees'

    def validate(self) -> List[str]:
        errors = []
        unknown = [m for m in self.metrics if m not in TERRAIN_METRICS]
        if unknown:
            errors.append(f"terrain.metrics contains unknown metrics {unknown}; "
                          f"available: {list(TERRAIN_METRICS)}")
        if not self.metrics:
            errors.append("terrain.metrics cannot be empty")
        if self.slope_units not in SLOPE_UNITS:
            errors.append(f"terrain.slope_units must be one of {list(SLOPE_UNITS)}")
        return errors


@dataclass
class VisualizationSettings:
    """Output renderings"""
    static_maps: bool = True
    interactive_map: bool = True
    scene_3d: bool = True
    colormap: str = 'terrain'
    z_exaggeration: float = 2.0
    max_scene_cells: int = 300
    scene_drape_metric: Optional[str] = 'wetness_index'

    def validate(self) -> List[str]:
        errors = []
        if self.z_exaggeration <= 0:
            errors.append("visualization.z_exaggeration must be positive")
        if self.max_scene_cells < 2:
            errors.append("visualization.max_scene_cells must be at least 2")
        if self.scene_drape_metric is not None and self.scene_drape_metric not in TERRAIN_METRICS:
            errors.append(f"visualization.scene_drape_metric must be one of {list(TERRAIN_METRICS)} or null")
        return errors


@dataclass
class TerrainWorkflowConfiguration:
    """Complete workflow configuration"""
    workspace_root: str
    sites: List[SiteConfiguration] = field(default_factory=list)
    dem: DEMSettings = field(default_factory=DEMSettings)
    hydrology: HydrologySettings = field(default_factory=HydrologySettings)
    terrain: TerrainSettings = field(default_factory=TerrainSettings)
    visualization: VisualizationSettings = field(default_factory=VisualizationSettings)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary suitable for YAML/JSON"""
        return {
            'workspace_root': self.workspace_root,
            'sites': [site.to_dict() for site in self.sites],
            'dem': asdict(self.dem),
            'hydrology': asdict(self.hydrology),
            'terrain': asdict(self.terrain),
            'visualization': asdict(self.visualization),
            'metadata': dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TerrainWorkflowConfiguration':
        """Create from dictionary; missing sections take their defaults"""
        if 'workspace_root' not in data:
            raise KeyError('workspace_root')
        return cls(
            workspace_root=str(data['workspace_root']),
            sites=[SiteConfiguration.from_dict(s) for s in data.get('sites') or []],
            dem=DEMSettings(**_numeric_fields(DEMSettings, data.get('dem'), 'dem')),
            hydrology=HydrologySettings(**_numeric_fields(HydrologySettings, data.get('hydrology'), 'hydrology')),
            terrain=TerrainSettings(**(data.get('terrain') or {})),
            visualization=VisualizationSettings(**_numeric_fields(VisualizationSettings, data.get('visualization'),
                                                                   'visualization')),
            metadata=dict(data.get('metadata') or {}),
        )

    def validate(self) -> List[str]:
        """Collect validation errors from every section"""
        errors = []
        if not self.sites:
            errors.append("at least one site must be configured")

        names = [site.name for site in self.sites]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            errors.append(f"duplicate site names: {duplicates}")

        for site in self.sites:
            errors.extend(site.validate())
        for section in (self.dem, self.hydrology, self.terrain, self.visualization):
            errors.extend(section.validate())

        if (self.visualization.scene_drape_metric
                and self.visualization.scene_drape_metric not in self.terrain.metrics):
            errors.append("visualization.scene_drape_metric must be one of terrain.metrics")

        for key, value in asdict(self.hydrology).items():
            if isinstance(value, float) and not math.isfinite(value):
                errors.append(f"hydrology.{key} must be finite")

        return errors


class ConfigurationManager:
    """
    Loads, saves and validates workflow configurations.
    """

    def __init__(self, path_manager: AbsolutePathManager, config_format: str = 'yaml'):
        """
        Args:
            path_manager: AbsolutePathManager instance for path operations
            config_format: Format for configuration files ('yaml' or 'json')
        """
        self.path_manager = path_manager
        self.config_format = config_format.lower()

        if self.config_format not in ['yaml', 'json']:
            raise ValueError("config_format must be 'yaml' or 'json'")

    def create_default_config(self) -> TerrainWorkflowConfiguration:
        """
        Create a default configuration with two example sites.
        """
        return TerrainWorkflowConfiguration(
            workspace_root=str(self.path_manager.workspace_root),
            sites=[
                SiteConfiguration(
                    name='mount_rainier_carbon_river',
                    latitude=46.9946,
                    longitude=-121.9157,
                    buffer_km=4.0,
                    pour_points=[(46.9946, -121.9157)],
                ),
                SiteConfiguration(
                    name='great_smoky_little_river',
                    latitude=35.6632,
                    longitude=-83.7085,
                    buffer_km=3.0,
                ),
            ],
            metadata={
                'created_date': datetime.now().isoformat(),
                'created_by': 'ConfigurationManager',
                'version': '1.0',
                'description': 'Default terrain and watershed analysis configuration',
            },
        )

    def load_config(self, config_file: Union[str, Path]) -> TerrainWorkflowConfiguration:
        """
        Load and validate a configuration file.

        Raises:
            ConfigurationError: If the file cannot be read or fails validation
        """
        try:
            abs_config_path = self.path_manager.require_file(config_file, "configuration")
        except FileAccessError as e:
            raise ConfigurationError(str(e))

        try:
            with open(abs_config_path, 'r', encoding='utf-8') as f:
                if self._format_for(abs_config_path) == 'yaml':
                    config_dict = yaml.safe_load(f)
                else:
                    config_dict = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration {abs_config_path}", [str(e)])

        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration {abs_config_path} is not a mapping")

        try:
            config = TerrainWorkflowConfiguration.from_dict(config_dict)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed configuration {abs_config_path}", [repr(e)])

        config.workspace_root = str(self.path_manager.resolve_path(config.workspace_root))

        errors = config.validate()
        if errors:
            raise ConfigurationError(f"Invalid configuration {abs_config_path}", errors)

        logger.info(f"Loaded configuration with {len(config.sites)} site(s) from: {abs_config_path}")
        return config

    def save_config(self, config: TerrainWorkflowConfiguration, config_file: Union[str, Path]) -> Path:
        """
        Save configuration to file.

        Raises:
            FileAccessError: If the file cannot be written
        """
        abs_config_path = self.path_manager.ensure_file_writable(config_file)
        config.metadata['last_modified'] = datetime.now().isoformat()
        config_dict = config.to_dict()

        try:
            with open(abs_config_path, 'w', encoding='utf-8') as f:
                if self._format_for(abs_config_path) == 'yaml':
                    yaml.safe_dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
                else:
                    json.dump(config_dict, f, indent=2, ensure_ascii=False)
        except (OSError, yaml.YAMLError, TypeError) as e:
            raise FileAccessError(str(abs_config_path), "write configuration", str(e))

        logger.info(f"Saved configuration to: {abs_config_path}")
        return abs_config_path

    def get_site(self, config: TerrainWorkflowConfiguration, site_name: str) -> SiteConfiguration:
        """Look up a site by name"""
        for site in config.sites:
            if site.name == site_name:
                return site
        available = [site.name for site in config.sites]
        raise KeyError(f"Unknown site '{site_name}'. Available sites: {available}")

    def _format_for(self, path: Path) -> str:
        """File extension wins over the manager default"""
        suffix = path.suffix.lower()
        if suffix in ('.yaml', '.yml'):
            return 'yaml'
        if suffix == '.json':
            return 'json'
        return self.config_format
