"""pip adapter: requirements files, setup.py/setup.cfg and PEP 621 projects."""

import configparser
import re
import shlex
from pathlib import Path
from typing import Any

import tomli

from pkg_bottles.errors import PackageManagerError
from pkg_bottles.logging import get_logger
from pkg_bottles.package_managers.base import BasePackageManagerAdapter
from pkg_bottles.package_managers.output import expect_list, parse_json_output
from pkg_bottles.package_managers.specs import (
    normalize_package_name,
    parse_requirements_file,
    parse_version_spec,
)
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

# Detection confidence tiers
CONFIDENCE_ANY_MANIFEST = 0.4
CONFIDENCE_REQUIREMENTS = 0.8
CONFIDENCE_SETUP_FILES = 0.7
CONFIDENCE_PYPROJECT = 0.6
CONFIDENCE_UNREADABLE_PYPROJECT = 0.5
CONFIDENCE_LOCK_FILE = 0.9
CONFIDENCE_VENV = 0.7
CONFIDENCE_COMPETING_CAP = 0.4
DETECTION_THRESHOLD = 0.5

COMPETING_TOOLS = ("uv", "poetry", "pipenv")
MIN_PIP_MAJOR = 21

SETUP_PY_FIELDS = ("name", "version", "description", "author", "license", "python_requires")


def is_requirements_file(path: Path) -> bool:
    return "requirements" in path.name and path.suffix == ".txt"


def is_dev_file(path: Path) -> bool:
    return "dev" in path.name or "test" in path.name


def _spec_entries(requirements: list[str]) -> dict[str, str]:
    entries = {}
    for requirement in requirements:
        spec = parse_version_spec(requirement)
        entries[spec.name] = spec.constraint or spec.version
    return entries


def _quoted_strings(text: str) -> list[str]:
    return re.findall(r"[\"']([^\"']+)[\"']", text)


def parse_setup_py(path: Path) -> dict[str, Any]:
    """Best-effort metadata from ``setup.py`` without executing it."""
    content = path.read_text()
    info: dict[str, Any] = {}

    for key in SETUP_PY_FIELDS:
        if match := re.search(rf"\b{key}\s*=\s*[\"']([^\"']+)[\"']", content):
            info[key] = match.group(1)

    if match := re.search(r"install_requires\s*=\s*\[(.*?)\]", content, re.DOTALL):
        info["install_requires"] = _quoted_strings(match.group(1))

    if match := re.search(r"extras_require\s*=\s*\{(.*?)\}", content, re.DOTALL):
        info["extras_require"] = {
            extra: _quoted_strings(body)
            for extra, body in re.findall(r"[\"']([^\"']+)[\"']\s*:\s*\[(.*?)\]", match.group(1), re.DOTALL)
        }

    return info


def parse_setup_cfg(path: Path) -> dict[str, Any]:
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)
    info: dict[str, Any] = {}

    if parser.has_section("metadata"):
        for key in ("name", "version", "description", "author", "license"):
            if parser.has_option("metadata", key):
                info[key] = parser.get("metadata", key)

    if parser.has_section("options"):
        if parser.has_option("options", "python_requires"):
            info["python_requires"] = parser.get("options", "python_requires")
        if parser.has_option("options", "install_requires"):
            info["install_requires"] = [
                line.strip()
                for line in parser.get("options", "install_requires").splitlines()
                if line.strip() and not line.strip().startswith("#")
            ]

    if parser.has_section("options.extras_require"):
        info["extras_require"] = {
            extra: [line.strip() for line in value.splitlines() if line.strip()]
            for extra, value in parser.items("options.extras_require")
        }

    return info


def parse_pyproject(path: Path) -> dict[str, Any]:
    """PEP 621 ``[project]`` fields from ``pyproject.toml``."""
    with open(path, "rb") as f:
        project = tomli.load(f).get("project", {})

    info: dict[str, Any] = {
        key: project.get(key) for key in ("name", "version", "description")
    }
    info["python_requires"] = project.get("requires-python")

    license_value = project.get("license")
    if isinstance(license_value, dict):
        license_value = license_value.get("text") or license_value.get("file")
    info["license"] = license_value

    authors = project.get("authors") or []
    if authors:
        first = authors[0]
        info["author"] = first.get("name") if isinstance(first, dict) else str(first)

    info["install_requires"] = project.get("dependencies", [])
    info["extras_require"] = project.get("optional-dependencies", {})
    return info


class PipAdapter(BasePackageManagerAdapter):
    name = PackageManager.PIP
    display_name = "pip"
    executable = "pip"
    manifest_files = [
        "requirements.txt",
        "requirements-dev.txt",
        "requirements-test.txt",
        "dev-requirements.txt",
        "setup.py",
        "setup.cfg",
        "pyproject.toml",
    ]
    lock_files = ["requirements-lock.txt", "requirements.lock", "pip-compile.lock"]

    @property
    def pip_command(self) -> str:
        return self.environment.pip.command or "pip3"

    async def detect_project(self, project_dir: Path) -> DetectionResult:
        project_dir = Path(project_dir)
        manifests = self.find_manifest_files(project_dir)
        locks = self.find_lock_files(project_dir)

        if not manifests:
            return ProjectNotDetected()

        confidence = CONFIDENCE_ANY_MANIFEST
        metadata: dict[str, Any] = {}

        requirement_files = [m for m in manifests if is_requirements_file(m)]
        if requirement_files:
            confidence = CONFIDENCE_REQUIREMENTS
            metadata["has_requirements"] = True
            metadata["requirement_files"] = len(requirement_files)

        if any(m.name in ("setup.py", "setup.cfg") for m in manifests):
            confidence = max(confidence, CONFIDENCE_SETUP_FILES)
            metadata["has_setup_files"] = True

        pyproject = project_dir / "pyproject.toml"
        if pyproject in manifests:
            try:
                with open(pyproject, "rb") as f:
                    tools = tomli.load(f).get("tool", {})
            except (tomli.TOMLDecodeError, OSError) as e:
                logger.warning({"event": "pyproject_unreadable", "path": str(pyproject), "error": str(e)})
                confidence = max(confidence, CONFIDENCE_UNREADABLE_PYPROJECT)
            else:
                competing = [tool for tool in COMPETING_TOOLS if tool in tools]
                if competing:
                    confidence = min(confidence, CONFIDENCE_COMPETING_CAP)
                    metadata["competing_tools"] = competing
                else:
                    confidence = max(confidence, CONFIDENCE_PYPROJECT)
                    metadata["has_pyproject_toml"] = True

        if locks:
            confidence = max(confidence, CONFIDENCE_LOCK_FILE)
            metadata["has_lock_files"] = True

        if self.get_venv_path(project_dir):
            confidence = max(confidence, CONFIDENCE_VENV)
            metadata["has_venv"] = True

        if confidence <= DETECTION_THRESHOLD:
            return ProjectNotDetected(
                confidence=confidence, manifest_files=manifests, lock_files=locks, metadata=metadata
            )
        return ProjectDetected(
            confidence=confidence, manifest_files=manifests, lock_files=locks, metadata=metadata
        )

    async def parse_manifest(self, project_dir: Path) -> ManifestResult:
        project_dir = Path(project_dir)
        manifests = self.find_manifest_files(project_dir)
        if not manifests:
            return NoManifest(project_dir=project_dir, searched=list(self.manifest_files))

        dependencies: dict[str, str] = {}
        dev_dependencies: dict[str, str] = {}
        optional_dependencies: dict[str, str] = {}
        constraints: dict[str, str] = {}
        index_urls: list[str] = []
        info: dict[str, Any] = {}

        for manifest in manifests:
            try:
                if is_requirements_file(manifest):
                    parsed = parse_requirements_file(manifest)
                    target = dev_dependencies if is_dev_file(manifest) else dependencies
                    for requirement in parsed.requirements:
                        target[requirement.name] = requirement.version
                    for requirement in parsed.constraints:
                        constraints[requirement.name] = requirement.version
                    index_urls.extend(u for u in parsed.index_urls if u not in index_urls)
                    continue

                match manifest.name:
                    case "setup.py":
                        project = parse_setup_py(manifest)
                    case "setup.cfg":
                        project = parse_setup_cfg(manifest)
                    case _:
                        project = parse_pyproject(manifest)
            except (OSError, ValueError, configparser.Error) as e:
                # tomli.TOMLDecodeError is a ValueError
                logger.warning({"event": "manifest_parse_failed", "path": str(manifest), "error": str(e)})
                continue

            for key in ("name", "version", "description", "author", "license", "python_requires"):
                if project.get(key):
                    info[key] = project[key]
            dependencies.update(_spec_entries(project.get("install_requires", [])))
            for extra, requirements in (project.get("extras_require") or {}).items():
                for name, version in _spec_entries(requirements).items():
                    optional_dependencies[f"{name}[{extra}]"] = version

        pins = self._lock_pins(project_dir)
        for deps in (dependencies, dev_dependencies):
            for name in deps:
                if name in pins:
                    deps[name] = pins[name]

        return Manifest(
            name=info.get("name"),
            version=info.get("version"),
            description=info.get("description"),
            dependencies=dependencies,
            dev_dependencies=dev_dependencies,
            optional_dependencies=optional_dependencies,
            python_requires=info.get("python_requires"),
            author=info.get("author"),
            license=info.get("license"),
            metadata={
                "manifest_files": [m.name for m in manifests],
                "has_requirements": bool(dependencies or dev_dependencies),
                "has_lock_file": bool(pins) or bool(self.find_lock_files(project_dir)),
                "constraints": constraints,
                "index_urls": index_urls,
            },
        )

    def _lock_pins(self, project_dir: Path) -> dict[str, str]:
        pins: dict[str, str] = {}
        for lock_file in self.find_lock_files(project_dir):
            try:
                parsed = parse_requirements_file(lock_file)
            except OSError as e:
                logger.warning({"event": "lock_parse_failed", "path": str(lock_file), "error": str(e)})
                continue
            for requirement in parsed.requirements:
                if requirement.version.startswith("=="):
                    pins[requirement.name] = requirement.version
        return pins

    def find_requirements_files(self, project_dir: Path) -> list[Path]:
        return [m for m in self.find_manifest_files(project_dir) if is_requirements_file(m)]

    async def install_packages(
        self, packages: list[str], options: InstallOptions | None = None
    ) -> Installed:
        options = options or InstallOptions()
        cwd = Path(options.cwd or self.project_dir)
        env = await self.get_environment_variables(options)
        args = self.build_command_args(options)

        if packages:
            targets = self.quote_packages(packages)
        else:
            requirement_files = self.find_requirements_files(cwd)
            if not requirement_files:
                raise PackageManagerError(
                    "No packages specified and no requirements files found",
                    code="NO_REQUIREMENTS",
                    suggestion="Specify packages to install or create a requirements.txt file",
                )
            targets = [f"-r {shlex.quote(str(f))}" for f in requirement_files]

        command = " ".join(
            [f"{self.get_venv_activation_prefix(cwd)}{self.pip_command} install", *args, *targets]
        )
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

        command = " ".join(
            [
                f"{self.get_venv_activation_prefix(cwd)}{self.pip_command} uninstall -y",
                *(shlex.quote(arg) for arg in options.extra_args),
                *self.quote_packages(packages),
            ]
        )
        result = await self.execute_command(
            command, cwd=cwd, env=env, timeout=self.timeout(TimeoutTier.STANDARD)
        )
        return Uninstalled(packages=list(packages), command=command, result=result)

    async def get_installed_packages(self, project_dir: Path | None = None) -> ListResult:
        project_dir = self.resolve_project_dir(project_dir)
        if self.get_venv_path(project_dir) is None:
            return NoEnvironment(project_dir=project_dir)

        env = await self.get_environment_variables()
        result = await self.execute_command(
            f"{self.get_venv_activation_prefix(project_dir)}{self.pip_command} list --format json",
            cwd=project_dir,
            env=env,
            timeout=self.timeout(TimeoutTier.QUICK),
            suppress_errors=True,
        )
        if result.exit_code != 0:
            raise PackageManagerError(
                "Failed to list installed packages",
                code="LIST_FAILED",
                suggestion="Ensure pip is installed and a virtual environment is activated",
                details={"stderr": result.stderr},
            )

        items = expect_list(parse_json_output(result.stdout, "pip list"), "pip list")
        manifest = await self.parse_manifest(project_dir)
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
                    location=editable_location or "site-packages",
                    is_dev=name in dev,
                    is_optional=any(key.startswith(f"{name}[") for key in optional),
                    metadata={
                        "editable": bool(editable_location),
                        "installer": item.get("installer", "pip"),
                        "manager": self.name.value,
                    },
                )
            )
        return PackageList(packages=packages)

    async def _python_command(self, project_dir: Path, python_version: str | None) -> str:
        if python_version:
            return f"python{python_version}"
        for candidate in ("python3", "python"):
            try:
                result = await self.execute_command(
                    f"which {candidate}",
                    cwd=project_dir,
                    timeout=self.timeout(TimeoutTier.IMMEDIATE),
                    suppress_errors=True,
                )
            except PackageManagerError:
                continue
            if result.exit_code == 0:
                return candidate
        return "python"

    async def create_environment(self, project_dir: Path, python_version: str | None = None) -> None:
        project_dir = Path(project_dir)
        env = await self.get_environment_variables()
        python = await self._python_command(project_dir, python_version)
        venv = project_dir / ".venv"

        await self.execute_command(
            f"{python} -m venv --clear {shlex.quote(str(venv))}",
            cwd=project_dir,
            env=env,
            timeout=self.timeout(TimeoutTier.STANDARD),
        )

        try:
            await self.execute_command(
                f"{self.get_venv_activation_prefix(project_dir)}pip install --upgrade pip",
                cwd=project_dir,
                env=env,
                timeout=self.timeout(TimeoutTier.STANDARD),
            )
        except PackageManagerError as e:
            logger.warning({"event": "pip_upgrade_failed", "venv": str(venv), "error": str(e)})

    async def activate_environment(self, project_dir: Path) -> dict[str, str]:
        venv = self.get_venv_path(project_dir)
        if venv is None:
            raise PackageManagerError(
                "Virtual environment not found",
                code="VENV_NOT_FOUND",
                suggestion=f"Run 'python -m venv .venv' in {project_dir} to create a virtual environment",
            )

        bin_dir = venv / "bin"
        path = self.environ.get("PATH", "")
        return {
            "VIRTUAL_ENV": str(venv),
            "PATH": f"{bin_dir}:{path}" if path else str(bin_dir),
            "PYTHON": str(bin_dir / "python"),
            "PIP_REQUIRE_VIRTUALENV": "true",
        }

    async def get_environment_variables(self, options: InstallOptions | None = None) -> dict[str, str]:
        env = await super().get_environment_variables(options)
        env.setdefault("PIP_CACHE_DIR", str(self.get_cache_paths().global_dir))
        env.update(
            {
                "PIP_DISABLE_PIP_VERSION_CHECK": "1",
                "PIP_NO_COLOR": "1",
                "NO_COLOR": "1",
                "PIP_PROGRESS_BAR": "off",
                "FORCE_COLOR": "0",
            }
        )
        env.update(options.env if options else {})
        return env

    def get_cache_paths(self) -> CachePaths:
        paths = super().get_cache_paths()
        return CachePaths(
            global_dir=paths.global_dir,
            local=paths.local or self.project_dir / ".pip-cache",
            temp=paths.temp or paths.global_dir / "temp",
            additional=[paths.global_dir / "wheels", paths.global_dir / "http"],
        )

    async def _probe(self, command: str, project_dir: Path) -> str | None:
        """stdout of ``command`` when it succeeds, else None."""
        try:
            result = await self.execute_command(
                command,
                cwd=project_dir,
                timeout=self.timeout(TimeoutTier.QUICK),
                suppress_errors=True,
            )
        except PackageManagerError:
            return None
        return result.stdout.strip() if result.exit_code == 0 else None

    async def validate_installation(self, project_dir: Path | None = None) -> ValidationResult:
        project_dir = self.resolve_project_dir(project_dir)
        issues: list[str] = []
        warnings: list[str] = []
        environment = self._validation_environment(project_dir)
        environment["executable"] = self.pip_command

        pip_version = await self._probe(f"{self.pip_command} --version", project_dir)
        if pip_version is None:
            issues.append("pip is not installed or not accessible")
        elif match := re.search(r"pip\s+(\d+)((?:\.\d+)*)", pip_version):
            version = match.group(1) + match.group(2)
            environment["pip_version"] = version
            if int(match.group(1)) < MIN_PIP_MAJOR:
                warnings.append(
                    f"pip version {version} is outdated. Consider upgrading with 'pip install --upgrade pip'."
                )

        python = await self._python_command(project_dir, None)
        python_version = await self._probe(f"{python} --version", project_dir)
        if python_version is None:
            issues.append("Python is not installed or not accessible")
        else:
            environment["python_version"] = python_version

        manifests = self.find_manifest_files(project_dir)
        if manifests:
            environment["manifest_files"] = len(manifests)
        else:
            warnings.append("No pip manifest files found. Consider creating a requirements.txt file.")

        if venv := self.get_venv_path(project_dir):
            environment["venv_path"] = venv.name
        else:
            warnings.append(
                "No virtual environment found. Consider running 'python -m venv .venv' to create one."
            )

        if self.get_cache_paths().global_dir.exists():
            environment["has_cache"] = True
        else:
            warnings.append("pip cache directory not found. This is normal for first-time use.")

        if pip_tools := await self._probe("pip-compile --version", project_dir):
            environment["pip_tools_version"] = pip_tools

        return ValidationResult(valid=not issues, issues=issues, warnings=warnings, environment=environment)
