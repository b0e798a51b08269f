"""Locate package manager tooling for minimal PATH construction."""

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from pkg_bottles.environ import EnvSnapshot
from pkg_bottles.shells.platform import get_minimal_system_paths, get_system_paths
from pkg_bottles.types import PackageManager

PACKAGE_MANAGER_TOOLS: dict[PackageManager, list[str]] = {
    PackageManager.PIP: ["python", "python3", "pip", "pip3"],
    PackageManager.UV: ["python", "python3", "uv"],
    PackageManager.NPM: ["node", "npm"],
    PackageManager.YARN: ["node", "yarn"],
    PackageManager.PNPM: ["node", "pnpm"],
}

ESSENTIAL_TOOLS = ["sh", "bash", "which", "env"]
COMMON_TOOLS = ["python", "python3", "pip", "pip3", "node", "npm", "uv"]


@dataclass(frozen=True)
class ToolInfo:
    name: str
    path: Path
    directory: Path


def search_path(environ: EnvSnapshot) -> str:
    """PATH to search for tools: the caller's PATH plus system dirs."""
    return os.pathsep.join(p for p in (environ.get("PATH", ""), get_system_paths()) if p)


def detect_tool_location(tool: str, path: str | None = None) -> Path | None:
    location = shutil.which(tool, path=path)
    return Path(location) if location else None


def detect_tools(tools: list[str], path: str | None = None) -> list[ToolInfo]:
    detected = []
    for tool in dict.fromkeys(tools):
        location = detect_tool_location(tool, path)
        if location:
            detected.append(ToolInfo(name=tool, path=location, directory=location.parent))
    return detected


def get_tool_directories(tools: list[str], path: str | None = None) -> list[str]:
    return list(dict.fromkeys(str(info.directory) for info in detect_tools(tools, path)))


def create_minimal_path(
    package_manager: PackageManager,
    environ: EnvSnapshot,
    venv_path: Path | None = None,
) -> str:
    """Build a PATH holding only what ``package_manager`` needs to run."""
    paths: list[str] = []

    if venv_path:
        venv_bin = venv_path / "bin"
        if venv_bin.exists():
            paths.append(str(venv_bin))

    tools = ESSENTIAL_TOOLS + PACKAGE_MANAGER_TOOLS.get(package_manager, [])
    paths.extend(get_tool_directories(tools, search_path(environ)))
    paths.extend(get_minimal_system_paths())

    return os.pathsep.join(dict.fromkeys(paths))
