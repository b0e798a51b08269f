"""Detects which package managers the host can run."""

import asyncio
import re

from pkg_bottles.environ import EnvSnapshot, is_truthy, resolve_environ
from pkg_bottles.errors import BottleError
from pkg_bottles.logging import get_logger
from pkg_bottles.package_managers.timeouts import get_timeout
from pkg_bottles.shells.shell import Shell
from pkg_bottles.types import EnvironmentInfo, PackageManager, TimeoutTier, ToolAvailability

logger = get_logger(__name__)

PROBE_COMMANDS = {
    PackageManager.PIP: ["pip", "pip3"],
    PackageManager.UV: ["uv"],
}

PIP_VERSION = re.compile(r"pip\s+(\d+\.\d+(?:\.\d+)?)")

_cached: EnvironmentInfo | None = None
_pending: "asyncio.Task[EnvironmentInfo] | None" = None


def clear_cache() -> None:
    global _cached, _pending
    _cached = None
    _pending = None


def _parse_version(manager: PackageManager, output: str) -> str:
    output = output.strip()
    if manager == PackageManager.PIP:
        match = PIP_VERSION.search(output)
        return match.group(1) if match else output
    return re.sub(r"^uv\s+", "", output)


async def _probe(manager: PackageManager, shell: Shell, environ: EnvSnapshot) -> ToolAvailability:
    commands = PROBE_COMMANDS[manager]

    try:
        path = command = None
        for candidate in commands:
            result = await shell.execute(
                f"which {candidate}", timeout=get_timeout(TimeoutTier.IMMEDIATE, environ)
            )
            if result.exit_code == 0 and not result.timed_out:
                path, command = result.stdout.strip(), candidate
                break

        if command is None:
            return ToolAvailability(
                available=False,
                error=f"{manager.value} not found in PATH (tried: {', '.join(commands)})",
            )

        quick = get_timeout(TimeoutTier.QUICK, environ)
        result = await shell.execute(f"{command} --version", timeout=quick)
        if result.exit_code != 0 or result.timed_out:
            error = (
                f"{manager.value} command timed out after {quick}s"
                if result.timed_out
                else result.stderr or "Command failed"
            )
            return ToolAvailability(available=False, error=error)

        return ToolAvailability(
            available=True,
            version=_parse_version(manager, result.stdout),
            path=path,
            command=command,
        )
    except BottleError as e:
        return ToolAvailability(available=False, error=str(e))


def _from_environ(environ: EnvSnapshot) -> EnvironmentInfo:
    return EnvironmentInfo(
        pip=ToolAvailability(
            available=environ.get("PIP_AVAILABLE") == "true",
            version=environ.get("PIP_VERSION", "unknown"),
            command="pip",
        ),
        uv=ToolAvailability(
            available=environ.get("UV_AVAILABLE") == "true",
            version=environ.get("UV_VERSION", "unknown"),
            command="uv",
        ),
        detected=True,
    )


async def detect_environment(
    shell: Shell | None = None,
    environ: EnvSnapshot | None = None,
    force_refresh: bool = False,
) -> EnvironmentInfo:
    """Probe pip and uv once per process.

    In CI, ``PIP_AVAILABLE`` and ``UV_AVAILABLE`` short-circuit the probes.
    Without a ``shell`` a private one is spawned and cleaned up afterwards.
    Concurrent callers share a detection already in flight.
    """
    global _cached, _pending
    if _cached is not None and not force_refresh:
        return _cached
    if _pending is None:
        _pending = asyncio.create_task(_detect(shell, resolve_environ(environ)))

    pending = _pending
    try:
        info = await asyncio.shield(pending)
    finally:
        if pending.done() and _pending is pending:
            _pending = None

    _cached = info
    return info


async def _detect(shell: Shell | None, environ: EnvSnapshot) -> EnvironmentInfo:
    if is_truthy(environ.get("CI")) and "PIP_AVAILABLE" in environ and "UV_AVAILABLE" in environ:
        info = _from_environ(environ)
        logger.debug(
            {
                "event": "environment_fast_path",
                "pip": info.pip.available,
                "uv": info.uv.available,
            }
        )
        return info

    owned = shell is None
    if owned:
        shell = Shell(environ=environ)

    try:
        pip = await _probe(PackageManager.PIP, shell, environ)
        uv = await _probe(PackageManager.UV, shell, environ)
        info = EnvironmentInfo(pip=pip, uv=uv, detected=True)
    except Exception as e:
        logger.error({"event": "environment_detection_failed", "error": str(e)})
        info = EnvironmentInfo(
            pip=ToolAvailability(available=False, error="Detection failed"),
            uv=ToolAvailability(available=False, error="Detection failed"),
            detected=False,
        )
    finally:
        if owned:
            await shell.cleanup()

    logger.debug(
        {
            "event": "environment_detected",
            "pip": info.pip.available,
            "uv": info.uv.available,
        }
    )
    return info


async def get_package_manager_info(
    manager: PackageManager | str,
    shell: Shell | None = None,
    environ: EnvSnapshot | None = None,
) -> ToolAvailability:
    environment = await detect_environment(shell, environ)
    match PackageManager(manager):
        case PackageManager.PIP:
            return environment.pip
        case PackageManager.UV:
            return environment.uv
        case other:
            return ToolAvailability(available=False, error=f"{other.value} is not probed")
