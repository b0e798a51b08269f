"""Cache directory layout per package manager."""

import os
from pathlib import Path

from pkg_bottles.shells.platform import detect_platform
from pkg_bottles.types import PackageManager

# (win32, darwin, linux) relative to the home directory
SYSTEM_CACHE_DIRS: dict[PackageManager, tuple[str, str, str]] = {
    PackageManager.NPM: ("AppData/Local/npm-cache", "Library/Caches/npm", ".npm"),
    PackageManager.YARN: ("AppData/Local/Yarn/Cache", "Library/Caches/Yarn", ".cache/yarn"),
    PackageManager.PNPM: ("AppData/Local/pnpm-cache", "Library/Caches/pnpm", ".cache/pnpm"),
    PackageManager.BUN: ("AppData/Local/bun", "Library/Caches/bun", ".bun/install/cache"),
    PackageManager.PIP: ("AppData/Local/pip/Cache", "Library/Caches/pip", ".cache/pip"),
    PackageManager.POETRY: (
        "AppData/Local/pypoetry/Cache",
        "Library/Caches/pypoetry",
        ".cache/pypoetry",
    ),
    PackageManager.UV: ("AppData/Local/uv/cache", "Library/Caches/uv", ".cache/uv"),
    PackageManager.PIPENV: ("AppData/Local/pipenv/Cache", ".cache/pipenv", ".cache/pipenv"),
    PackageManager.MAVEN: (".m2/repository",) * 3,
    PackageManager.GRADLE: (".gradle/caches",) * 3,
    PackageManager.CARGO: (".cargo/registry",) * 3,
    PackageManager.GO: ("go/pkg/mod",) * 3,
}

CACHE_SUBDIRECTORIES: dict[PackageManager, list[str]] = {
    PackageManager.PIP: ["wheels", "http", "selfcheck"],
    PackageManager.UV: ["builds", "wheels", "git", "pypi-v1", "simple-v1"],
    PackageManager.NPM: ["_cacache", "_logs", "_locks"],
    PackageManager.YARN: ["v6", "v4", "v1"],
    PackageManager.PNPM: ["v3", "metadata", "tmp"],
    PackageManager.POETRY: ["cache", "virtualenvs", "artifacts"],
    PackageManager.MAVEN: ["repository"],
    PackageManager.GRADLE: ["caches", "wrapper"],
    PackageManager.CARGO: ["registry", "git"],
    PackageManager.GO: ["mod", "build"],
}
DEFAULT_SUBDIRECTORIES = ["cache", "temp"]

# "{path}" is replaced with the mount's cache path
MOUNT_ENV_VARS: dict[PackageManager, dict[str, str]] = {
    PackageManager.NPM: {"npm_config_cache": "{path}"},
    PackageManager.YARN: {"YARN_CACHE_FOLDER": "{path}"},
    PackageManager.PNPM: {"PNPM_HOME": "{path}"},
    PackageManager.BUN: {"BUN_INSTALL_CACHE_DIR": "{path}"},
    PackageManager.PIP: {"PIP_CACHE_DIR": "{path}"},
    PackageManager.POETRY: {"POETRY_CACHE_DIR": "{path}"},
    PackageManager.UV: {"UV_CACHE_DIR": "{path}", "UV_PYTHON_PREFERENCE": "only-system"},
    PackageManager.PIPENV: {"PIPENV_CACHE_DIR": "{path}"},
    PackageManager.MAVEN: {"MAVEN_OPTS": "-Dmaven.repo.local={path}"},
    PackageManager.GRADLE: {"GRADLE_USER_HOME": "{path}"},
    PackageManager.CARGO: {"CARGO_HOME": "{path}"},
    PackageManager.GO: {"GOMODCACHE": "{path}"},
}


def get_system_cache_dir(
    manager: PackageManager, home: Path | None = None, platform: str | None = None
) -> Path:
    """Where ``manager`` keeps its cache outside of any bottle."""
    home = home or Path.home()
    win32, darwin, linux = SYSTEM_CACHE_DIRS[PackageManager(manager)]

    match platform or detect_platform():
        case "win32":
            relative = win32
        case "darwin":
            relative = darwin
        case _:
            relative = linux

    return home.joinpath(*relative.split("/"))


def get_bottle_cache_dir(manager: PackageManager, base: Path) -> Path:
    return Path(base) / PackageManager(manager).value


def get_mount_path(manager: PackageManager) -> str:
    match PackageManager(manager):
        case PackageManager.NPM | PackageManager.YARN | PackageManager.PNPM | PackageManager.BUN:
            return "/bottle/npm-cache"
        case PackageManager.PIP | PackageManager.POETRY | PackageManager.UV | PackageManager.PIPENV:
            return "/bottle/pip-cache"
        case PackageManager.MAVEN:
            return "/bottle/m2"
        case PackageManager.GRADLE:
            return "/bottle/gradle"
        case PackageManager.CARGO:
            return "/bottle/cargo"
        case PackageManager.GO:
            return "/bottle/go-mod"


def get_cache_subdirectories(manager: PackageManager) -> list[str]:
    return CACHE_SUBDIRECTORIES.get(PackageManager(manager), DEFAULT_SUBDIRECTORIES)


def get_mount_env_vars(manager: PackageManager, cache_path: Path) -> dict[str, str]:
    template = MOUNT_ENV_VARS.get(PackageManager(manager), {})
    return {key: value.format(path=cache_path) for key, value in template.items()}


def detect_package_managers(project_dir: Path) -> list[PackageManager]:
    """Guess the managers a project uses from marker files alone."""
    project_dir = Path(project_dir)

    def has(*names: str) -> bool:
        return any((project_dir / name).exists() for name in names)

    managers: list[PackageManager] = []

    if has("package.json"):
        managers.append(PackageManager.NPM)
        if has("yarn.lock"):
            managers.append(PackageManager.YARN)
        if has("pnpm-lock.yaml"):
            managers.append(PackageManager.PNPM)
        if has("bun.lockb"):
            managers.append(PackageManager.BUN)

    if has("requirements.txt", "setup.py", "setup.cfg"):
        managers.append(PackageManager.PIP)
    if has("pyproject.toml"):
        managers.extend([PackageManager.POETRY, PackageManager.UV])
    if has("Pipfile"):
        managers.append(PackageManager.PIPENV)
    if has("pom.xml"):
        managers.append(PackageManager.MAVEN)
    if has("build.gradle", "build.gradle.kts"):
        managers.append(PackageManager.GRADLE)
    if has("Cargo.toml"):
        managers.append(PackageManager.CARGO)
    if has("go.mod"):
        managers.append(PackageManager.GO)

    return managers


def validate_cache_dir(path: Path) -> bool:
    """True when ``path`` is a directory this process can read and enter."""
    path = Path(path)
    return path.is_dir() and os.access(path, os.R_OK | os.W_OK | os.X_OK)
