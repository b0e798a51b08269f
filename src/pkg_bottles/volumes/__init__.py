"""Cache volumes for bottles."""
from pkg_bottles.volumes.cache_paths import (
    detect_package_managers,
    get_bottle_cache_dir,
    get_mount_path,
    get_system_cache_dir,
    validate_cache_dir,
)
from pkg_bottles.volumes.controller import VolumeController

__all__ = [
    "VolumeController",
    "detect_package_managers",
    "get_bottle_cache_dir",
    "get_mount_path",
    "get_system_cache_dir",
    "validate_cache_dir",
]
