"""Package-manager bottles: persistent shells, cache volumes and adapters."""

from pkg_bottles.bottle import Bottle, cleanup_bottle, create_bottle, get_bottle
from pkg_bottles.environment_detector import detect_environment, get_package_manager_info
from pkg_bottles.errors import BottleError, PackageManagerError, ShellError, VolumeError
from pkg_bottles.package_managers import REGISTRY, AdapterRegistry, PipAdapter, UVAdapter
from pkg_bottles.shells import Shell, ShellPool
from pkg_bottles.types import (
    CommandResult,
    InstallOptions,
    PackageManager,
    ShellOptions,
    VolumeConfig,
)
from pkg_bottles.volumes import VolumeController

__version__ = "0.1.0"

__all__ = [
    # Lifecycle
    "Bottle",
    "create_bottle",
    "cleanup_bottle",
    "get_bottle",

    # Execution
    "Shell",
    "ShellPool",
    "ShellOptions",
    "CommandResult",

    # Volumes
    "VolumeController",
    "VolumeConfig",

    # Adapters
    "AdapterRegistry",
    "REGISTRY",
    "PipAdapter",
    "UVAdapter",
    "InstallOptions",
    "PackageManager",
    "detect_environment",
    "get_package_manager_info",

    # Error types
    "BottleError",
    "ShellError",
    "VolumeError",
    "PackageManagerError",
]
