"""Adapter registry and project auto-detection."""

from pathlib import Path

from pkg_bottles.environ import EnvSnapshot
from pkg_bottles.errors import BottleError, PackageManagerError
from pkg_bottles.logging import get_logger
from pkg_bottles.package_managers.base import BasePackageManagerAdapter
from pkg_bottles.package_managers.pip import PipAdapter
from pkg_bottles.package_managers.uv import UVAdapter
from pkg_bottles.shells.shell import Shell
from pkg_bottles.types import EnvironmentInfo, PackageManager, ProjectDetected
from pkg_bottles.volumes.controller import VolumeController

logger = get_logger(__name__)


class AdapterRegistry:
    """Maps package managers to adapter classes."""

    def __init__(self):
        self._adapters: dict[PackageManager, type[BasePackageManagerAdapter]] = {}

    def register(
        self,
        name: PackageManager | str,
        cls: type,
        replace: bool = False,
    ) -> None:
        if not (isinstance(cls, type) and issubclass(cls, BasePackageManagerAdapter)):
            raise PackageManagerError(
                f"Adapter class for {name} must extend BasePackageManagerAdapter",
                code="INVALID_ADAPTER_CLASS",
                details={"class": getattr(cls, "__name__", repr(cls))},
            )

        manager = PackageManager(name)
        if manager in self._adapters and not replace:
            raise PackageManagerError(
                f"Adapter already registered for {manager.value}",
                code="DUPLICATE_ADAPTER",
                suggestion="Pass replace=True to override the existing adapter",
            )

        self._adapters[manager] = cls
        logger.debug({"event": "adapter_registered", "manager": manager.value, "class": cls.__name__})

    def unregister(self, name: PackageManager | str) -> bool:
        return self._adapters.pop(PackageManager(name), None) is not None

    def registered(self) -> list[PackageManager]:
        return list(self._adapters)

    def get(self, name: PackageManager | str) -> type[BasePackageManagerAdapter] | None:
        try:
            return self._adapters.get(PackageManager(name))
        except ValueError:
            return None

    def create(
        self,
        name: PackageManager | str,
        shell: Shell,
        volume_controller: VolumeController,
        environment: EnvironmentInfo,
        project_dir: Path | None = None,
        environ: EnvSnapshot | None = None,
    ) -> BasePackageManagerAdapter:
        cls = self.get(name)
        if cls is None:
            available = ", ".join(m.value for m in self._adapters) or "none"
            raise PackageManagerError(
                f"No adapter registered for package manager: {name}",
                code="ADAPTER_NOT_FOUND",
                suggestion=f"Available adapters: {available}",
            )
        return cls(shell, volume_controller, environment, project_dir=project_dir, environ=environ)

    async def auto_detect(
        self,
        project_dir: Path,
        shell: Shell,
        volume_controller: VolumeController,
        environment: EnvironmentInfo,
        environ: EnvSnapshot | None = None,
    ) -> list[tuple[BasePackageManagerAdapter, ProjectDetected]]:
        """Adapters that recognise ``project_dir``, most confident first."""
        project_dir = Path(project_dir)
        detected = []

        for manager in self._adapters:
            adapter = self.create(
                manager, shell, volume_controller, environment, project_dir=project_dir, environ=environ
            )
            try:
                detection = await adapter.detect_project(project_dir)
            except (BottleError, OSError) as e:
                logger.warning(
                    {"event": "adapter_detection_failed", "manager": manager.value, "error": str(e)}
                )
                continue

            if detection.detected:
                logger.debug(
                    {"event": "adapter_detected", "manager": manager.value, "confidence": detection.confidence}
                )
                detected.append((adapter, detection))

        detected.sort(key=lambda pair: pair[1].confidence, reverse=True)
        return detected


REGISTRY = AdapterRegistry()
REGISTRY.register(PackageManager.PIP, PipAdapter)
REGISTRY.register(PackageManager.UV, UVAdapter)
