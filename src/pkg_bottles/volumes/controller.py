"""Per-bottle cache volumes for package managers."""

import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

from pkg_bottles.environ import EnvSnapshot, resolve_environ
from pkg_bottles.errors import VolumeError
from pkg_bottles.logging import get_logger
from pkg_bottles.paths import get_bottles_dir
from pkg_bottles.types import (
    CacheStats,
    PackageManager,
    VolumeConfig,
    VolumeMount,
    VolumeStats,
    utcnow,
)
from pkg_bottles.volumes.cache_paths import (
    detect_package_managers,
    get_bottle_cache_dir,
    get_cache_subdirectories,
    get_mount_env_vars,
    get_mount_path,
    get_system_cache_dir,
    validate_cache_dir,
)

logger = get_logger(__name__)

INIT_MARKER = ".initialized"
UNMOUNT_MARKER = ".unmount-metadata.json"


class VolumeController:
    """Owns the cache directories of one bottle.

    Each package manager gets at most one mount. Mounting creates the
    directory tree and activates the mount; only active mounts contribute
    environment variables and statistics.
    """

    def __init__(
        self,
        bottle_id: str,
        config: VolumeConfig | None = None,
        environ: EnvSnapshot | None = None,
    ):
        self._bottle_id = bottle_id
        self.config = config or VolumeConfig()
        self._environ = resolve_environ(environ)
        self.base_cache_dir = Path(
            self.config.base_cache_dir or get_bottles_dir(self._environ) / "cache"
        )
        self.project_dir = Path(self.config.project_dir or Path.cwd())
        self._mounts: dict[PackageManager, VolumeMount] = {}
        self._initialized = False

    @property
    def bottle_id(self) -> str:
        return self._bottle_id

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _home(self) -> Path:
        home = self._environ.get("HOME")
        return Path(home) if home else Path.home()

    async def initialize(self) -> None:
        if self._initialized:
            return

        try:
            if self.config.auto_create_dirs:
                self.base_cache_dir.mkdir(parents=True, exist_ok=True)

            if self.config.detected_managers is not None:
                managers = list(self.config.detected_managers)
            elif self.config.skip_auto_detection:
                managers = []
            else:
                managers = detect_package_managers(self.project_dir)

            for manager in managers:
                self._seed_mount(PackageManager(manager))
        except OSError as e:
            raise VolumeError(
                f"Failed to initialize volume controller: {e}",
                code="INIT_FAILED",
                suggestion=f"Check permissions for {self.base_cache_dir}",
                details={"base_cache_dir": str(self.base_cache_dir)},
            ) from e

        self._initialized = True
        logger.debug(
            {
                "event": "volumes_initialized",
                "bottle_id": self._bottle_id,
                "base_cache_dir": str(self.base_cache_dir),
                "managers": [m.value for m in self._mounts],
            }
        )

    def _seed_mount(self, manager: PackageManager) -> None:
        cache_path = get_bottle_cache_dir(manager, self.base_cache_dir)
        if self.config.auto_create_dirs:
            cache_path.mkdir(parents=True, exist_ok=True)

        system_cache = get_system_cache_dir(manager, self._home())
        if system_cache.exists() and not (cache_path / INIT_MARKER).exists():
            self._write_init_marker(manager, system_cache, cache_path)

        self._mounts[manager] = VolumeMount(
            manager=manager,
            cache_path=cache_path,
            mount_path=get_mount_path(manager),
        )

    def _write_init_marker(
        self, manager: PackageManager, system_cache: Path, cache_path: Path
    ) -> None:
        info = {
            "sourceCache": str(system_cache),
            "initTime": utcnow().isoformat(),
            "manager": manager.value,
            "strategy": "isolated",
        }
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
            (cache_path / INIT_MARKER).write_text(json.dumps(info, indent=2))
        except OSError as e:
            logger.warning(
                {
                    "event": "cache_marker_write_failed",
                    "manager": manager.value,
                    "path": str(cache_path),
                    "error": str(e),
                }
            )

    def _create_cache_tree(self, manager: PackageManager, cache_path: Path) -> None:
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise VolumeError(
                f"Failed to create cache directory: {cache_path}: {e}",
                code="CACHE_CREATE_FAILED",
                manager=manager.value,
                suggestion=f"Check permissions for {cache_path.parent}",
            ) from e

        for subdir in get_cache_subdirectories(manager):
            try:
                (cache_path / subdir).mkdir(exist_ok=True)
            except OSError as e:
                logger.warning(
                    {
                        "event": "cache_subdir_create_failed",
                        "manager": manager.value,
                        "subdir": subdir,
                        "error": str(e),
                    }
                )

    async def mount(self, manager: PackageManager, path: Path | None = None) -> VolumeMount:
        """Create (or reuse) and activate the cache mount for ``manager``."""
        await self.initialize()
        manager = PackageManager(manager)
        existing = self._mounts.get(manager)

        if existing is None or path is not None:
            cache_path = Path(
                path or (existing.cache_path if existing else None)
                or get_bottle_cache_dir(manager, self.base_cache_dir)
            )
            if existing is None:
                existing = VolumeMount(
                    manager=manager,
                    cache_path=cache_path,
                    mount_path=get_mount_path(manager),
                )
                self._mounts[manager] = existing
            else:
                existing.cache_path = cache_path
            if self.config.auto_create_dirs:
                self._create_cache_tree(manager, cache_path)

        mount = existing

        if not validate_cache_dir(mount.cache_path):
            if not self.config.auto_create_dirs:
                raise VolumeError(
                    f"Cache directory not accessible: {mount.cache_path}",
                    code="CACHE_NOT_ACCESSIBLE",
                    manager=manager.value,
                    suggestion="Create the directory or enable auto_create_dirs",
                )
            self._create_cache_tree(manager, mount.cache_path)
            if not validate_cache_dir(mount.cache_path):
                raise VolumeError(
                    f"Cache directory not accessible after creation: {mount.cache_path}",
                    code="CACHE_NOT_ACCESSIBLE",
                    manager=manager.value,
                    suggestion=f"Check permissions for {mount.cache_path}",
                )

        mount.active = True
        mount.last_accessed = utcnow()

        logger.debug(
            {
                "event": "volume_mounted",
                "bottle_id": self._bottle_id,
                "manager": manager.value,
                "cache_path": str(mount.cache_path),
            }
        )
        return mount

    async def unmount(self, manager: PackageManager) -> bool:
        mount = self._mounts.get(PackageManager(manager))
        if mount is None:
            return False

        mount.active = False
        metadata = {
            "unmountedAt": utcnow().isoformat(),
            "manager": mount.manager.value,
            "lastAccessed": mount.last_accessed.isoformat(),
        }
        try:
            (mount.cache_path / UNMOUNT_MARKER).write_text(json.dumps(metadata, indent=2))
        except OSError as e:
            logger.warning(
                {
                    "event": "unmount_marker_write_failed",
                    "manager": mount.manager.value,
                    "error": str(e),
                }
            )

        logger.debug({"event": "volume_unmounted", "bottle_id": self._bottle_id, "manager": mount.manager.value})
        return True

    async def clear(self, manager: PackageManager | None = None) -> None:
        """Empty cache directories in place; mounts stay as they are."""
        if manager is not None:
            mount = self._mounts.get(PackageManager(manager))
            mounts = [mount] if mount else []
        else:
            mounts = list(self._mounts.values())

        for mount in mounts:
            if not mount.cache_path.exists():
                continue
            try:
                shutil.rmtree(mount.cache_path)
                mount.cache_path.mkdir(parents=True, exist_ok=True)
                for subdir in get_cache_subdirectories(mount.manager):
                    (mount.cache_path / subdir).mkdir(exist_ok=True)
            except OSError as e:
                logger.error(
                    {
                        "event": "cache_clear_failed",
                        "manager": mount.manager.value,
                        "path": str(mount.cache_path),
                        "error": str(e),
                    }
                )
                continue
            logger.debug({"event": "cache_cleared", "manager": mount.manager.value})

    async def get_stats(self) -> VolumeStats:
        managers: dict[PackageManager, CacheStats] = {}
        for mount in self.get_active_mounts():
            managers[mount.manager] = self._cache_stats(mount.manager, mount.cache_path)

        return VolumeStats(
            total_size=sum(s.size for s in managers.values()),
            total_items=sum(s.item_count for s in managers.values()),
            managers=managers,
            active_mounts=len(managers),
            calculated_at=utcnow(),
        )

    def _cache_stats(self, manager: PackageManager, cache_path: Path) -> CacheStats:
        if not cache_path.exists():
            return CacheStats(manager=manager)

        def skipped(error: OSError) -> None:
            logger.warning(
                {
                    "event": "cache_stats_skipped",
                    "manager": manager.value,
                    "path": error.filename,
                    "error": error.strerror,
                }
            )

        size = 0
        items = 0
        for root, dirs, files in os.walk(cache_path, onerror=skipped):
            items += len(dirs)
            for name in files:
                try:
                    size += os.stat(os.path.join(root, name)).st_size
                except OSError as e:
                    skipped(e)
                    continue
                items += 1

        last_modified = datetime.fromtimestamp(cache_path.stat().st_mtime, tz=timezone.utc)
        return CacheStats(manager=manager, size=size, item_count=items, last_modified=last_modified)

    def get_mount(self, manager: PackageManager) -> VolumeMount | None:
        return self._mounts.get(PackageManager(manager))

    def get_active_mounts(self) -> list[VolumeMount]:
        return [mount for mount in self._mounts.values() if mount.active]

    def get_all_mounts(self) -> list[VolumeMount]:
        return list(self._mounts.values())

    def get_mount_env_vars(self) -> dict[str, str]:
        env: dict[str, str] = {}
        for mount in self.get_active_mounts():
            env.update(get_mount_env_vars(mount.manager, mount.cache_path))
        return env

    async def cleanup(self) -> None:
        for manager in list(self._mounts):
            await self.unmount(manager)
        self._mounts.clear()
        self._initialized = False
        logger.debug({"event": "volumes_cleanup", "bottle_id": self._bottle_id})
