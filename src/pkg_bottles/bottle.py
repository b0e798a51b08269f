"""Bottle lifecycle management."""
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from fuuid import b58_fuuid

from pkg_bottles.environ import EnvSnapshot, resolve_environ
from pkg_bottles.environment_detector import detect_environment
from pkg_bottles.logging import get_logger
from pkg_bottles.package_managers.base import BasePackageManagerAdapter
from pkg_bottles.package_managers.registry import REGISTRY
from pkg_bottles.shells.pool import ShellPool
from pkg_bottles.shells.shell import Shell
from pkg_bottles.types import (
    EnvironmentInfo,
    PackageManager,
    ProjectDetected,
    ShellOptions,
    VolumeConfig,
    utcnow,
)
from pkg_bottles.volumes.controller import VolumeController

logger = get_logger(__name__)


@dataclass
class Bottle:
    id: str
    project_dir: Path
    shell: Shell
    pool: ShellPool
    volumes: VolumeController
    environment: EnvironmentInfo
    detections: list[tuple[BasePackageManagerAdapter, ProjectDetected]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def adapter(self) -> BasePackageManagerAdapter | None:
        """Most confident adapter for the project, if any matched."""
        return self.detections[0][0] if self.detections else None


# In-memory bottle store
_BOTTLES: Dict[str, Bottle] = {}


def shell_key(project_dir: Path) -> str:
    """Pool key for bottle shells; later bottles for the same project reuse them."""
    return str(Path(project_dir).resolve())


async def create_bottle(
    project_dir: Path,
    environ: EnvSnapshot | None = None,
    pool: ShellPool | None = None,
    managers: list[PackageManager] | None = None,
    shell_options: ShellOptions | None = None,
) -> Bottle:
    """Wire a shell, cache volumes and detected adapters for ``project_dir``."""
    project_dir = Path(project_dir).resolve()
    environ = resolve_environ(environ)
    pool = pool or ShellPool.get_instance()
    bottle_id = b58_fuuid()

    options = shell_options or ShellOptions(cwd=project_dir)
    shell = await pool.acquire(shell_key(project_dir), options, environ)

    try:
        volumes = VolumeController(
            bottle_id,
            VolumeConfig(project_dir=project_dir, detected_managers=managers),
            environ,
        )
        await volumes.initialize()

        environment = await detect_environment(shell, environ)
        detections = await REGISTRY.auto_detect(project_dir, shell, volumes, environment, environ)
    except BaseException:
        await pool.release(shell_key(project_dir), shell)
        raise

    bottle = Bottle(
        id=bottle_id,
        project_dir=project_dir,
        shell=shell,
        pool=pool,
        volumes=volumes,
        environment=environment,
        detections=detections,
    )
    _BOTTLES[bottle_id] = bottle

    logger.info(
        {
            "event": "bottle_created",
            "bottle_id": bottle_id,
            "project_dir": str(project_dir),
            "adapter": bottle.adapter.name.value if bottle.adapter else None,
        }
    )
    return bottle


def get_bottle(bottle_id: str) -> Optional[Bottle]:
    """Get bottle by ID."""
    return _BOTTLES.get(bottle_id)


async def cleanup_bottle(bottle: Bottle) -> None:
    """Return the bottle's shell to the pool and unmount its volumes."""
    _BOTTLES.pop(bottle.id, None)
    await bottle.pool.release(shell_key(bottle.project_dir), bottle.shell)
    await bottle.volumes.cleanup()
    logger.info({"event": "bottle_cleaned_up", "bottle_id": bottle.id})
