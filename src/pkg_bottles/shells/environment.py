"""Environment construction for persistent shells.

Two modes: ``clean`` builds a minimal, deterministic variable set while
``standard`` inherits the snapshot minus interactive prompt artifacts.
"""

import os

from pkg_bottles.environ import EnvSnapshot
from pkg_bottles.shells.platform import get_system_paths
from pkg_bottles.shells.tools import (
    COMMON_TOOLS,
    create_minimal_path,
    get_tool_directories,
    search_path,
)
from pkg_bottles.types import PackageManager, ShellOptions

ESSENTIAL_VARS = [
    "HOME",
    "USER",
    "USERNAME",
    "LOGNAME",
    "SHELL",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TZ",
    "TMPDIR",
    "TEMP",
    "TMP",
    "PWD",
    "HOSTNAME",
]

PROMPT_VARS = ["PS1", "PROMPT", "PROMPT_COMMAND"]

QUIET_VARS = {
    "TERM": "dumb",
    "NO_COLOR": "1",
    "CI": "true",
}


def _drop_unset(env: dict[str, str | None]) -> dict[str, str]:
    return {key: value for key, value in env.items() if value is not None}


def create_clean_environment(
    environ: EnvSnapshot,
    custom_env: dict[str, str | None] | None = None,
    preserve_paths: list[str] | None = None,
    package_manager: PackageManager | None = None,
) -> dict[str, str]:
    """Minimal environment with a PATH limited to known tool directories."""
    env: dict[str, str | None] = {key: environ.get(key) for key in ESSENTIAL_VARS}

    path_parts = list(preserve_paths or [])
    if package_manager:
        path_parts.extend(create_minimal_path(package_manager, environ).split(os.pathsep))
    else:
        path_parts.extend(get_tool_directories(COMMON_TOOLS, search_path(environ)))
        path_parts.extend(get_system_paths().split(os.pathsep))

    env["PATH"] = os.pathsep.join(dict.fromkeys(p for p in path_parts if p))
    env.update(QUIET_VARS)
    env["NONINTERACTIVE"] = "1"
    env.update(custom_env or {})

    return _drop_unset(env)


def create_standard_environment(
    environ: EnvSnapshot, custom_env: dict[str, str | None] | None = None
) -> dict[str, str]:
    """Inherited environment without prompt strings or color noise."""
    env: dict[str, str | None] = {**environ, **(custom_env or {}), **QUIET_VARS}
    for key in PROMPT_VARS:
        env.pop(key, None)
    return _drop_unset(env)


def create_shell_environment(options: ShellOptions, environ: EnvSnapshot) -> dict[str, str]:
    if options.clean_env:
        return create_clean_environment(
            environ,
            options.env,
            options.preserve_paths,
            options.package_manager,
        )
    return create_standard_environment(environ, options.env)
