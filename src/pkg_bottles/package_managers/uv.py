"""uv adapter: pyproject.toml projects with an optional uv.lock."""

import re
import shlex
from pathlib import Path
from typing import Any

import tomli

from pkg_bottles.errors import PackageManagerError
from pkg_bottles.logging import get_logger
from pkg_bottles.package_managers.base import BasePackageManagerAdapter
from pkg_bottles.package_managers.output import expect_list, parse_json_output
from pkg_bottles.package_managers.specs import normalize_package_name, parse_version_spec
from pkg_bottles.types import (
    CachePaths,
    DetectionResult,
    InstallOptions,
    Installed,
    ListResult,
    Manifest,
    ManifestResult,
    NoEnvironment,
    NoManifest,
    PackageInfo,
    PackageList,
    PackageManager,
    ProjectDetected,
    ProjectNotDetected,
    TimeoutTier,
    Uninstalled,
    ValidationResult,
)

logger = get_logger(__name__)

# Detection confidence tiers, ordered:
# competing tool < bare manifest < config sections < lock file < workspace
CONFIDENCE_BASE = 0.5
CONFIDENCE_LOCK_FILE = 0.95
CONFIDENCE_DEPENDENCY_GROUPS = 0.85
CONFIDENCE_TOOL_UV = 0.9
CONFIDENCE_INDEX = 0.9
CONFIDENCE_SOURCES = 0.92
CONFIDENCE_WORKSPACE = 0.98
COMPETING_PENALTY = 0.3
CONFIDENCE_FLOOR = 0.1
DETECTION_THRESHOLD = 0.5

COMPETING_TOOLS = ("poetry", "pdm")
COMPETING_LOCK_FILES = ("poetry.lock", "pdm.lock")
DEV_GROUPS = ("dev", "development", "test", "testing", "lint", "type-check")
VENV_DIR = ".venv"


def _entries(requirements: list[Any]) -> dict[str, str]:
    entries = {}
    for requirement in requirements:
        # dependency groups may hold {include-group = "..."} tables
        if not isinstance(requirement, str):
            continue
        spec = parse_version_spec(requirement)
        entries[spec.name] = spec.constraint or spec.version
    return entries


def load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomli.load(f)


class UVAdapter(BasePackageManagerAdapter):
    name = PackageManager.UV
    display_name = "uv"
    executable = "uv"
    manifest_files = ["pyproject.toml"]
    lock_files = ["uv.lock"]

    async def detect_project(self, project_dir: Path) -> DetectionResult:
        project_dir = Path(project_dir)
        manifests = self.find_manifest_files(project_dir)
        locks = self.find_lock_files(project_dir)

        if not manifests:
            return ProjectNotDetected()

        confidence = CONFIDENCE_BASE
        metadata: dict[str, Any] = {}

        if locks:
            confidence = CONFIDENCE_LOCK_FILE
            metadata["has_lock_file"] = True

        try:
            data = load_toml(manifests[0])
        except (tomli.TOMLDecodeError, OSError) as e:
            logger.warning({"event": "pyproject_unreadable", "path": str(manifests[0]), "error": str(e)})
            confidence = max(confidence * 0.5, CONFIDENCE_FLOOR)
        else:
            tools = data.get("tool", {})
            uv = tools.get("uv")

            signals = [
                ("has_dependency_groups", "dependency-groups" in data, CONFIDENCE_DEPENDENCY_GROUPS),
                ("has_uv_config", uv is not None, CONFIDENCE_TOOL_UV),
                ("has_uv_index", bool(uv) and "index" in uv, CONFIDENCE_INDEX),
                ("has_uv_sources", bool(uv) and "sources" in uv, CONFIDENCE_SOURCES),
                ("is_workspace", bool(uv) and "workspace" in uv, CONFIDENCE_WORKSPACE),
            ]
            for key, present, tier in signals:
                if present:
                    confidence = max(confidence, tier)
                    metadata[key] = True

            if uv and "dev-dependencies" in uv:
                metadata["has_legacy_dev_deps"] = True

            competing = [tool for tool in COMPETING_TOOLS if tool in tools]
            competing += [name for name in COMPETING_LOCK_FILES if (project_dir / name).exists()]
            if competing:
                metadata["competing_tools"] = competing
                if not locks:
                    confidence = max(confidence - COMPETING_PENALTY, CONFIDENCE_FLOOR)

        confidence = round(confidence, 4)
        if confidence < DETECTION_THRESHOLD:
            return ProjectNotDetected(
                confidence=confidence, manifest_files=manifests, lock_files=locks, metadata=metadata
            )
        return ProjectDetected(
            confidence=confidence, manifest_files=manifests, lock_files=locks, metadata=metadata
        )

    def _read_lock(self, project_dir: Path) -> dict[str, Any] | None:
        locks = self.find_lock_files(project_dir)
        if not locks:
            return None
        try:
            return load_toml(locks[0])
        except (tomli.TOMLDecodeError, OSError) as e:
            logger.warning({"event": "lock_parse_failed", "path": str(locks[0]), "error": str(e)})
            return None

    async def parse_manifest(self, project_dir: Path) -> ManifestResult:
        project_dir = Path(project_dir)
        manifests = self.find_manifest_files(project_dir)
        if not manifests:
            return NoManifest(project_dir=project_dir, searched=list(self.manifest_files))

        try:
            data = load_toml(manifests[0])
        except (tomli.TOMLDecodeError, OSError) as e:
            raise PackageManagerError(
                f"Failed to parse pyproject.toml: {e}",
                code="MANIFEST_PARSE_ERROR",
                suggestion="Ensure pyproject.toml is valid TOML",
                details={"path": str(manifests[0])},
            ) from e

        project = data.get("project", {})
        uv = data.get("tool", {}).get("uv") or {}
        groups = data.get("dependency-groups", {})

        dependencies = _entries(project.get("dependencies", []))

        dev_requirements: list[Any] = []
        for group in DEV_GROUPS:
            dev_requirements.extend(groups.get(group, []))
        dev_requirements.extend(uv.get("dev-dependencies", []))
        dev_dependencies = _entries(dev_requirements)

        optional_dependencies = {}
        for group, requirements in project.get("optional-dependencies", {}).items():
            for name, version in _entries(requirements).items():
                optional_dependencies[f"{name}[{group}]"] = version

        lock = self._read_lock(project_dir)
        for package in (lock or {}).get("package", []):
            name = normalize_package_name(package.get("name", ""))
            version = package.get("version")
            if not version:
                continue
            if name in dependencies:
                dependencies[name] = version
            elif name in dev_dependencies:
                dev_dependencies[name] = version

        authors = project.get("authors") or []
        author = None
        if authors:
            author = authors[0].get("name") if isinstance(authors[0], dict) else str(authors[0])

        license_value = project.get("license")
        if isinstance(license_value, dict):
            license_value = license_value.get("text") or license_value.get("file")

        return Manifest(
            name=project.get("name"),
            version=project.get("version"),
            description=project.get("description"),
            dependencies=dependencies,
            dev_dependencies=dev_dependencies,
            optional_dependencies=optional_dependencies,
            python_requires=project.get("requires-python") or (lock or {}).get("requires-python"),
            author=author,
            license=license_value,
            metadata={
                "has_lock_file": bool(self.find_lock_files(project_dir)),
                "lock_version": (lock or {}).get("version"),
                "lock_revision": (lock or {}).get("revision"),
                "requires_python": (lock or {}).get("requires-python"),
                "is_workspace": "workspace" in uv,
                "dependency_groups": sorted(groups),
            },
        )

    def is_project_context(self, project_dir: Path) -> bool:
        """True when ``pyproject.toml`` declares a named ``[project]``."""
        pyproject = Path(project_dir) / "pyproject.toml"
        if not pyproject.is_file():
            return False
        try:
            return bool(load_toml(pyproject).get("project", {}).get("name"))
        except (tomli.TOMLDecodeError, OSError):
            return False

    def build_command_args(self, options: InstallOptions | None = None) -> list[str]:
        options = options or InstallOptions()
        args: list[str] = []
        if options.force:
            args.append("--reinstall")
        if options.index:
            args.extend(["--index-url", shlex.quote(options.index)])
        args.extend(shlex.quote(arg) for arg in options.extra_args)
        return args

    async def install_packages(
        self, packages: list[str], options: InstallOptions | None = None
    ) -> Installed:
        options = options or InstallOptions()
        cwd = Path(options.cwd or self.project_dir)
        env = await self.get_environment_variables(options)
        args = self.build_command_args(options)
        in_project = self.is_project_context(cwd)

        if in_project and packages:
            flags = []
            if options.dev:
                flags.append("--dev")
            elif options.optional:
                flags.extend(["--optional", shlex.quote(options.optional)])
            parts = [self.executable, "add", *flags, *args, *self.quote_packages(packages)]
        elif in_project:
            parts = [self.executable, "sync", *args]
        else:
            if not packages:
                raise PackageManagerError(
                    "No packages specified for installation",
                    code="NO_PACKAGES",
                    suggestion="Provide packages to install or add a [project] table to pyproject.toml",
                )
            if not (cwd / VENV_DIR).is_dir():
                logger.info({"event": "uv_venv_missing", "project_dir": str(cwd)})
                await self.create_environment(cwd)
            parts = [self.executable, "pip", "install", *args, *self.quote_packages(packages)]

        command = " ".join(parts)
        result = await self.execute_command(
            command, cwd=cwd, env=env, timeout=self.timeout(TimeoutTier.STANDARD)
        )
        return Installed(packages=list(packages), command=command, result=result)

    async def uninstall_packages(
        self, packages: list[str], options: InstallOptions | None = None
    ) -> Uninstalled:
        options = options or InstallOptions()
        cwd = Path(options.cwd or self.project_dir)
        env = await self.get_environment_variables(options)
        extra = [shlex.quote(arg) for arg in options.extra_args]

        if self.is_project_context(cwd):
            parts = [self.executable, "remove", *extra, *self.quote_packages(packages)]
        else:
            # uv pip uninstall never prompts
            parts = [self.executable, "pip", "uninstall", *extra, *self.quote_packages(packages)]

        command = " ".join(parts)
        result = await self.execute_command(
            command, cwd=cwd, env=env, timeout=self.timeout(TimeoutTier.STANDARD)
        )
        return Uninstalled(packages=list(packages), command=command, result=result)

    async def get_installed_packages(self, project_dir: Path | None = None) -> ListResult:
        project_dir = self.resolve_project_dir(project_dir)
        if not (project_dir / VENV_DIR).is_dir():
            return NoEnvironment(project_dir=project_dir)

        env = await self.get_environment_variables(InstallOptions(cwd=project_dir))
        result = await self.execute_command(
            f"{self.executable} pip list --format json",
            cwd=project_dir,
            env=env,
            timeout=self.timeout(TimeoutTier.QUICK),
            suppress_errors=True,
        )
        if result.exit_code != 0:
            raise PackageManagerError(
                "Failed to list installed packages",
                code="LIST_FAILED",
                suggestion="Ensure uv is installed and a virtual environment exists",
                details={"stderr": result.stderr},
            )

        items = expect_list(parse_json_output(result.stdout, "uv pip list"), "uv pip list")

        try:
            manifest = await self.parse_manifest(project_dir)
        except PackageManagerError as e:
            logger.warning({"event": "manifest_parse_failed", "project_dir": str(project_dir), "error": str(e)})
            manifest = None
        dev = manifest.dev_dependencies if isinstance(manifest, Manifest) else {}
        optional = manifest.optional_dependencies if isinstance(manifest, Manifest) else {}

        packages = []
        for item in items:
            name = normalize_package_name(item["name"])
            editable_location = item.get("editable_project_location")
            packages.append(
                PackageInfo(
                    name=item["name"],
                    version=item["version"],
                    location=editable_location or item.get("location") or "site-packages",
                    is_dev=name in dev,
                    is_optional=any(key.startswith(f"{name}[") for key in optional),
                    metadata={"editable": bool(editable_location), "manager": self.name.value},
                )
            )
        return PackageList(packages=packages)

    async def create_environment(self, project_dir: Path, python_version: str | None = None) -> None:
        project_dir = Path(project_dir)
        env = await self.get_environment_variables(InstallOptions(cwd=project_dir))
        command = f"{self.executable} venv --clear"
        if python_version:
            command += f" --python={shlex.quote(python_version)}"

        await self.execute_command(
            command, cwd=project_dir, env=env, timeout=self.timeout(TimeoutTier.STANDARD)
        )
        logger.debug({"event": "uv_venv_created", "project_dir": str(project_dir)})

    async def activate_environment(self, project_dir: Path) -> dict[str, str]:
        venv = Path(project_dir) / VENV_DIR
        if not venv.is_dir():
            raise PackageManagerError(
                "Virtual environment not found",
                code="VENV_NOT_FOUND",
                suggestion=f"Run 'uv venv' in {project_dir} to create a virtual environment",
            )

        bin_dir = venv / "bin"
        path = self.environ.get("PATH", "")
        env = {
            "VIRTUAL_ENV": str(venv),
            "PATH": f"{bin_dir}:{path}" if path else str(bin_dir),
            "PYTHON": str(bin_dir / "python"),
        }
        if mirror := self.environ.get("UV_PYTHON_INSTALL_MIRROR"):
            env["UV_PYTHON_INSTALL_MIRROR"] = mirror
        return env

    async def get_environment_variables(self, options: InstallOptions | None = None) -> dict[str, str]:
        env = await super().get_environment_variables(options)
        project_dir = Path(options.cwd) if options and options.cwd else self.project_dir
        venv = project_dir / VENV_DIR
        path = env.get("PATH", "")

        env.update(
            {
                "UV_CACHE_DIR": str(self.get_cache_paths().global_dir),
                "UV_PROJECT_ENVIRONMENT": str(venv),
                "VIRTUAL_ENV": str(venv),
                "PATH": f"{venv / 'bin'}:{path}" if path else str(venv / "bin"),
                "UV_PYTHON_PREFERENCE": "only-system",
                "UV_NO_PROGRESS": "1",
                "UV_NO_COLOR": "1",
                "NO_COLOR": "1",
                "FORCE_COLOR": "0",
            }
        )
        if mirror := self.environ.get("UV_PYTHON_INSTALL_MIRROR"):
            env["UV_PYTHON_INSTALL_MIRROR"] = mirror
        env.update(options.env if options else {})
        return env

    def get_cache_paths(self) -> CachePaths:
        paths = super().get_cache_paths()
        root = paths.global_dir
        return CachePaths(
            global_dir=root,
            local=paths.local or self.project_dir / ".uv-cache",
            temp=paths.temp or root / "temp",
            additional=[root / "builds", root / "wheels", root / "git"],
        )

    async def validate_installation(self, project_dir: Path | None = None) -> ValidationResult:
        project_dir = self.resolve_project_dir(project_dir)
        issues: list[str] = []
        warnings: list[str] = []
        environment = self._validation_environment(project_dir)

        try:
            result = await self.execute_command(
                f"{self.executable} --version",
                cwd=project_dir,
                timeout=self.timeout(TimeoutTier.QUICK),
                suppress_errors=True,
            )
        except PackageManagerError as e:
            issues.append(f"Failed to validate uv installation: {e}")
        else:
            if result.exit_code != 0:
                issues.append("uv is not installed or not accessible")
            else:
                version = re.sub(r"^uv\s+", "", result.stdout.strip())
                environment["uv_version"] = version
                if match := re.match(r"(\d+)\.(\d+)", version):
                    if int(match.group(1)) == 0 and int(match.group(2)) < 1:
                        warnings.append(
                            f"uv version {version} is very early. Consider upgrading to a more stable version."
                        )

        if not self.find_manifest_files(project_dir):
            warnings.append("No pyproject.toml found. Run `uv init` to initialize a uv project.")
        elif not self.find_lock_files(project_dir):
            warnings.append("No uv.lock found. Run `uv lock` to create a lock file for reproducible installs.")
        else:
            environment["has_lock_file"] = True

        if (project_dir / VENV_DIR).is_dir():
            environment["has_venv"] = True
        else:
            warnings.append("No .venv directory found. Run `uv venv` to create a virtual environment.")

        if self.get_cache_paths().global_dir.exists():
            environment["has_cache"] = True
        else:
            warnings.append("uv cache directory not found. This is normal for first-time use.")

        return ValidationResult(valid=not issues, issues=issues, warnings=warnings, environment=environment)
