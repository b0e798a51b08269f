"""Shared behavior for package manager adapters."""

import re
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, ClassVar

from pkg_bottles.environ import EnvSnapshot, resolve_environ
from pkg_bottles.errors import PackageManagerError, ShellError, VolumeError
from pkg_bottles.logging import get_logger
from pkg_bottles.package_managers.timeouts import get_timeout
from pkg_bottles.shells.shell import Shell
from pkg_bottles.types import (
    CachePaths,
    CommandResult,
    DetectionResult,
    EnvironmentInfo,
    InstallOptions,
    Installed,
    ListResult,
    ManifestResult,
    PackageManager,
    TimeoutReason,
    TimeoutTier,
    Uninstalled,
    ValidationResult,
)
from pkg_bottles.volumes.cache_paths import get_system_cache_dir
from pkg_bottles.volumes.controller import VolumeController

logger = get_logger(__name__)

VENV_CANDIDATES = [".venv", "venv", "env"]
AMBIENT_DENYLIST = {"PS1", "PROMPT", "PROMPT_COMMAND"}
SHELL_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def shell_single_quote(value: str) -> str:
    return "'" + str(value).replace("'", "'\\''") + "'"


def filter_ambient_environ(environ: EnvSnapshot) -> dict[str, str]:
    """Ambient variables that are safe to re-export into a command."""
    return {
        key: value
        for key, value in environ.items()
        if SHELL_IDENTIFIER.match(key)
        and not key.startswith("npm_")
        and key not in AMBIENT_DENYLIST
    }


class BasePackageManagerAdapter(ABC):
    """Drives one package manager through a persistent shell.

    Adapters hold no state of their own beyond the collaborators passed in:
    every call re-reads the project from disk.
    """

    name: ClassVar[PackageManager]
    display_name: ClassVar[str]
    executable: ClassVar[str]
    manifest_files: ClassVar[list[str]]
    lock_files: ClassVar[list[str]]

    def __init__(
        self,
        shell: Shell,
        volume_controller: VolumeController,
        environment: EnvironmentInfo,
        project_dir: Path | None = None,
        environ: EnvSnapshot | None = None,
    ):
        self.shell = shell
        self.volume_controller = volume_controller
        self.environment = environment
        self.project_dir = Path(project_dir or Path.cwd()).resolve()
        self.environ = resolve_environ(environ)

    @abstractmethod
    async def detect_project(self, project_dir: Path) -> DetectionResult:
        ...

    @abstractmethod
    async def parse_manifest(self, project_dir: Path) -> ManifestResult:
        ...

    @abstractmethod
    async def install_packages(
        self, packages: list[str], options: InstallOptions | None = None
    ) -> Installed:
        ...

    @abstractmethod
    async def uninstall_packages(
        self, packages: list[str], options: InstallOptions | None = None
    ) -> Uninstalled:
        ...

    @abstractmethod
    async def get_installed_packages(self, project_dir: Path | None = None) -> ListResult:
        ...

    @abstractmethod
    async def create_environment(
        self, project_dir: Path, python_version: str | None = None
    ) -> None:
        ...

    @abstractmethod
    async def activate_environment(self, project_dir: Path) -> dict[str, str]:
        ...

    def timeout(self, tier: TimeoutTier) -> float:
        return get_timeout(tier, self.environ)

    async def execute_command(
        self,
        command: str,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        suppress_errors: bool = False,
    ) -> CommandResult:
        """Run ``command`` with ``env`` exported, raising on failure."""
        prefix = [f"export {key}={shell_single_quote(value)}; " for key, value in (env or {}).items()]
        # each command runs in a fresh subshell, so the directory never carries over
        prefix.append(f"cd {shlex.quote(str(cwd or self.project_dir))} && ")
        full_command = "".join(prefix) + command

        if timeout is None:
            timeout = self.timeout(TimeoutTier.STANDARD)

        logger.debug({"event": "adapter_cmd_exec", "manager": self.name.value, "cmd": command})

        try:
            result = await self.shell.execute(full_command, timeout=timeout)
        except ShellError as e:
            raise PackageManagerError(
                f"Failed to execute command: {command}",
                code="EXECUTION_ERROR",
                suggestion=f"Ensure {self.display_name} is installed and the project directory is accessible",
                details={"cause": e.code},
            ) from e

        if result.timed_out:
            reason = result.timeout_reason or TimeoutReason.INACTIVITY
            match reason:
                case TimeoutReason.ABSOLUTE_MAXIMUM:
                    message = f"Command exceeded its absolute time limit: {command}"
                case TimeoutReason.ERROR_DETECTED:
                    message = f"Command reported an error and did not exit: {command}"
                case _:
                    message = f"Command timed out after {timeout}s without output: {command}"
            raise PackageManagerError(
                message,
                code="COMMAND_TIMEOUT",
                suggestion="Raise PKG_LOCAL_TIMEOUT_MULTIPLIER for slow networks",
                details={"timeout": timeout, "reason": reason.value, "stdout": result.stdout[-500:]},
            )

        if result.exit_code != 0 and not suppress_errors:
            raise PackageManagerError(
                f"Command failed: {command}",
                code="COMMAND_FAILED",
                suggestion=f"Check that {self.display_name} is installed and accessible. Error: {result.stderr}",
                details={"exit_code": result.exit_code},
            )

        return result

    async def get_environment_variables(self, options: InstallOptions | None = None) -> dict[str, str]:
        mount = self.volume_controller.get_mount(self.name)
        if mount is None or not mount.active:
            try:
                mount = await self.volume_controller.mount(self.name)
            except VolumeError as e:
                raise PackageManagerError(
                    f"Failed to create mount for package manager: {self.name.value}",
                    code="MOUNT_CREATION_FAILED",
                    suggestion=f"Mount error: {e}",
                    details=e.details,
                ) from e

        env = filter_ambient_environ(self.environ)
        env.update(self.volume_controller.get_mount_env_vars())
        env[f"{self.name.value.upper()}_CACHE_DIR"] = str(mount.cache_path)
        env.update(options.env if options else {})
        return env

    def get_cache_paths(self) -> CachePaths:
        mount = self.volume_controller.get_mount(self.name)
        if mount is None:
            home = self.environ.get("HOME")
            return CachePaths(global_dir=get_system_cache_dir(self.name, Path(home) if home else None))

        return CachePaths(
            global_dir=mount.cache_path,
            local=mount.cache_path,
            temp=mount.cache_path / "temp",
        )

    async def validate_installation(self, project_dir: Path | None = None) -> ValidationResult:
        project_dir = self.resolve_project_dir(project_dir)
        issues: list[str] = []
        warnings: list[str] = []

        try:
            result = await self.execute_command(
                f"{self.executable} --version",
                cwd=project_dir,
                timeout=self.timeout(TimeoutTier.QUICK),
                suppress_errors=True,
            )
            if result.exit_code != 0:
                issues.append(f"{self.display_name} is not installed or not accessible")
        except PackageManagerError as e:
            issues.append(f"Failed to validate {self.display_name}: {e}")

        if not self.find_manifest_files(project_dir):
            warnings.append(f"No {self.display_name} manifest files found in {project_dir}")

        return ValidationResult(
            valid=not issues,
            issues=issues,
            warnings=warnings,
            environment=self._validation_environment(project_dir),
        )

    def _validation_environment(self, project_dir: Path) -> dict[str, Any]:
        return {
            "package_manager": self.name.value,
            "project_dir": str(project_dir),
            "executable": self.executable,
        }

    def _existing(self, project_dir: Path, names: list[str]) -> list[Path]:
        return [project_dir / name for name in names if (project_dir / name).is_file()]

    def find_manifest_files(self, project_dir: Path) -> list[Path]:
        return self._existing(Path(project_dir), self.manifest_files)

    def find_lock_files(self, project_dir: Path) -> list[Path]:
        return self._existing(Path(project_dir), self.lock_files)

    def get_venv_path(self, project_dir: Path) -> Path | None:
        for candidate in VENV_CANDIDATES:
            path = Path(project_dir) / candidate
            if path.is_dir():
                return path
        return None

    def get_venv_activation_prefix(self, project_dir: Path) -> str:
        """Shell prefix sourcing the project's venv; empty when there is none."""
        venv = self.get_venv_path(project_dir)
        if venv is None:
            return ""
        return f". {shlex.quote(str(venv / 'bin' / 'activate'))} && "

    def build_command_args(self, options: InstallOptions | None = None) -> list[str]:
        options = options or InstallOptions()
        args: list[str] = []
        if options.force:
            args.append("--force-reinstall")
        if options.index:
            args.extend(["--index-url", shlex.quote(options.index)])
        args.extend(shlex.quote(arg) for arg in options.extra_args)
        return args

    def resolve_project_dir(self, project_dir: Path | None = None) -> Path:
        return Path(project_dir).resolve() if project_dir else self.project_dir

    @staticmethod
    def quote_packages(packages: list[str]) -> list[str]:
        return [shlex.quote(package) for package in packages]
