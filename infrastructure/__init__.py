"""
Infrastructure package for absolute path management and run configuration.
"""

from .path_manager import AbsolutePathManager, PathResolutionError, FileAccessError
from .configuration_manager import ConfigurationManager, ConfigurationError, TerrainWorkflowConfiguration

__all__ = [
    'AbsolutePathManager',
    'PathResolutionError',
    'FileAccessError',
    'ConfigurationManager',
    'ConfigurationError',
    'TerrainWorkflowConfiguration',
]
