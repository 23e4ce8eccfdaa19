"""
AbsolutePathManager for consistent path resolution and validation.

WhiteboxTools resolves relative file names against its own working directory,
so every raster and vector handed to the toolbox goes through this manager
first and leaves as an absolute path.
"""

import os
import re
from pathlib import Path
from typing import Union, Optional
import logging

logger = logging.getLogger(__name__)


class PathResolutionError(Exception):
    """Raised when path cannot be resolved to absolute path"""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot resolve path '{path}': {reason}")


class FileAccessError(Exception):
    """Raised when a file or directory cannot be accessed as required"""
    def __init__(self, path: str, operation: str, reason: str):
        self.path = path
        self.operation = operation
        self.reason = reason
        super().__init__(f"Cannot {operation} file '{path}': {reason}")


class AbsolutePathManager:
    """
    Resolves workspace-relative paths and enforces that pipeline inputs exist
    before a step reads them.
    """

    def __init__(self, workspace_root: Union[str, Path], create: bool = False):
        """
        Initialize the path manager with a workspace root directory.

        Args:
            workspace_root: Root directory for the workspace
            create: Create the root directory if it does not exist yet

        Raises:
            PathResolutionError: If workspace_root cannot be resolved or is missing
        """
        if not workspace_root:
            raise PathResolutionError("", "Empty workspace root provided")

        try:
            root = Path(workspace_root).expanduser().resolve()
            if create:
                root.mkdir(parents=True, exist_ok=True)
        except (OSError, ValueError) as e:
            raise PathResolutionError(str(workspace_root), str(e))

        if not root.exists():
            raise PathResolutionError(str(workspace_root), "Workspace root directory does not exist")
        if not root.is_dir():
            raise PathResolutionError(str(workspace_root), "Workspace root is not a directory")

        self.workspace_root = root
        logger.debug(f"Initialized AbsolutePathManager with workspace: {self.workspace_root}")

    def resolve_path(self, path: Union[str, Path]) -> Path:
        """
        Convert any path to an absolute path.

        Relative paths are taken relative to the workspace root.

        Raises:
            PathResolutionError: If path is empty or cannot be resolved
        """
        if path is None or str(path) == "":
            raise PathResolutionError("", "Empty path provided")

        try:
            path_obj = Path(path).expanduser()
            if path_obj.is_absolute():
                return path_obj.resolve()
            return (self.workspace_root / path_obj).resolve()
        except (OSError, ValueError) as e:
            raise PathResolutionError(str(path), str(e))

    def validate_path(self, path: Union[str, Path], must_exist: bool = False,
                      must_be_file: bool = False, must_be_dir: bool = False) -> bool:
        """
        Validate path existence and type.

        Args:
            path: Path to validate
            must_exist: Whether path must exist
            must_be_file: Whether path must be a file (implies must_exist=True)
            must_be_dir: Whether path must be a directory (implies must_exist=True)

        Returns:
            True if valid

        Raises:
            FileAccessError: If validation fails
        """
        abs_path = self.resolve_path(path)

        if must_be_file or must_be_dir:
            must_exist = True

        if must_exist and not abs_path.exists():
            raise FileAccessError(str(abs_path), "access", "Path does not exist")

        if abs_path.exists():
            if must_be_file and not abs_path.is_file():
                raise FileAccessError(str(abs_path), "access", "Path exists but is not a file")
            if must_be_dir and not abs_path.is_dir():
                raise FileAccessError(str(abs_path), "access", "Path exists but is not a directory")
            if not os.access(abs_path, os.R_OK):
                raise FileAccessError(str(abs_path), "read", "No read permission")

        return True

    def create_path_structure(self, path: Union[str, Path], is_file_path: bool = False) -> Path:
        """
        Create a directory, or the parent directory of a file path.

        Returns:
            Absolute path that was created/validated

        Raises:
            FileAccessError: If directory creation fails
        """
        abs_path = self.resolve_path(path)
        dir_to_create = abs_path.parent if is_file_path else abs_path

        try:
            dir_to_create.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileAccessError(str(dir_to_create), "create directory", str(e))

        return abs_path

    def ensure_file_writable(self, path: Union[str, Path]) -> Path:
        """
        Prepare a file path for writing by creating its parent directories.

        Raises:
            FileAccessError: If the path is a directory or is not writable
        """
        abs_path = self.create_path_structure(path, is_file_path=True)

        if abs_path.is_dir():
            raise FileAccessError(str(abs_path), "write", "Path is a directory")

        target = abs_path if abs_path.exists() else abs_path.parent
        if not os.access(target, os.W_OK):
            raise FileAccessError(str(target), "write", "No write permission")

        return abs_path

    def require_file(self, path: Union[str, Path], label: str = "input") -> Path:
        """
        Return the absolute path of a file the next pipeline step depends on.

        Raises:
            FileAccessError: If the file has not been produced
        """
        abs_path = self.resolve_path(path)
        if not abs_path.is_file():
            raise FileAccessError(str(abs_path), f"read {label}", "File has not been created")
        return abs_path

    def get_relative_path(self, path: Union[str, Path],
                          relative_to: Optional[Union[str, Path]] = None) -> Path:
        """
        Get a path relative to the workspace root (or to `relative_to`).

        Raises:
            PathResolutionError: If the path is not below the base path
        """
        abs_path = self.resolve_path(path)
        base_path = self.workspace_root if relative_to is None else self.resolve_path(relative_to)

        try:
            return abs_path.relative_to(base_path)
        except ValueError as e:
            raise PathResolutionError(str(path), f"Cannot make path relative to {base_path}: {e}")

    @staticmethod
    def sanitize_name(name: str, replacement: str = "_") -> str:
        """Turn a site name into a safe directory name"""
        sanitized = re.sub(r'[\\/<>:"|?*\s]+', replacement, name.strip())
        sanitized = re.sub(r'[\x00-\x1f\x7f]', replacement, sanitized)
        sanitized = sanitized.replace('..', replacement).strip('._ ')
        return sanitized or "site"
