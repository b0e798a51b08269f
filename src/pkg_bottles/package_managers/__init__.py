"""Package manager adapters."""
from pkg_bottles.package_managers.base import BasePackageManagerAdapter
from pkg_bottles.package_managers.pip import PipAdapter
from pkg_bottles.package_managers.registry import REGISTRY, AdapterRegistry
from pkg_bottles.package_managers.specs import parse_requirements_file, parse_version_spec
from pkg_bottles.package_managers.timeouts import get_timeout
from pkg_bottles.package_managers.uv import UVAdapter

__all__ = [
    "AdapterRegistry",
    "BasePackageManagerAdapter",
    "PipAdapter",
    "REGISTRY",
    "UVAdapter",
    "get_timeout",
    "parse_requirements_file",
    "parse_version_spec",
]
