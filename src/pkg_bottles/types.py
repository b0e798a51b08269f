"""Core type definitions"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal


class PackageManager(str, Enum):
    PIP = "pip"
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"
    BUN = "bun"
    POETRY = "poetry"
    UV = "uv"
    PIPENV = "pipenv"
    MAVEN = "maven"
    GRADLE = "gradle"
    CARGO = "cargo"
    GO = "go"


class ShellSignal(str, Enum):
    SIGINT = "SIGINT"
    SIGTERM = "SIGTERM"
    SIGKILL = "SIGKILL"


class TimeoutReason(str, Enum):
    INACTIVITY = "inactivity"
    ABSOLUTE_MAXIMUM = "absolute_maximum"
    ERROR_DETECTED = "error_detected"


class TimeoutTier(Enum):
    """Base timeouts in seconds, before the environment multiplier."""
    IMMEDIATE = 1.0
    QUICK = 5.0
    STANDARD = 30.0
    EXTENDED = 60.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Shell engine


@dataclass(frozen=True)
class ShellOptions:
    """Options for spawning a persistent shell"""
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    shell: str | None = None
    default_timeout: float = 30.0
    clean_env: bool = False
    preserve_paths: list[str] = field(default_factory=list)
    package_manager: PackageManager | None = None
    id: str | None = None


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one shell command"""
    command: str
    stdout: str
    stderr: str
    exit_code: int
    duration: float
    timed_out: bool = False
    timeout_reason: TimeoutReason | None = None


@dataclass(frozen=True)
class SignalResult:
    success: bool
    signal: ShellSignal
    error: str | None = None


# Volumes


@dataclass
class VolumeMount:
    """Binding between a package manager and its cache directory"""
    manager: PackageManager
    cache_path: Path
    mount_path: str
    active: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CacheStats:
    manager: PackageManager
    size: int = 0
    item_count: int = 0
    last_modified: datetime | None = None


@dataclass(frozen=True)
class VolumeStats:
    total_size: int
    total_items: int
    managers: dict[PackageManager, CacheStats]
    active_mounts: int
    calculated_at: datetime


@dataclass(frozen=True)
class VolumeConfig:
    """Volume controller settings.

    ``detected_managers`` bypasses detection entirely and
    ``skip_auto_detection`` mounts nothing automatically.
    """
    base_cache_dir: Path | None = None
    detected_managers: list[PackageManager] | None = None
    skip_auto_detection: bool = False
    project_dir: Path | None = None
    auto_create_dirs: bool = True


# Package manager adapters


@dataclass(frozen=True)
class ToolAvailability:
    available: bool
    version: str | None = None
    path: str | None = None
    command: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class EnvironmentInfo:
    """Which Python package managers are usable on this host"""
    pip: ToolAvailability
    uv: ToolAvailability
    detected: bool
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ProjectDetected:
    confidence: float
    manifest_files: list[Path]
    lock_files: list[Path]
    metadata: dict[str, Any] = field(default_factory=dict)
    detected: Literal[True] = True


@dataclass(frozen=True)
class ProjectNotDetected:
    confidence: float = 0.0
    manifest_files: list[Path] = field(default_factory=list)
    lock_files: list[Path] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    detected: Literal[False] = False


DetectionResult = ProjectDetected | ProjectNotDetected


@dataclass(frozen=True)
class Manifest:
    """Dialect-independent dependency description"""
    name: str | None = None
    version: str | None = None
    description: str | None = None
    dependencies: dict[str, str] = field(default_factory=dict)
    dev_dependencies: dict[str, str] = field(default_factory=dict)
    optional_dependencies: dict[str, str] = field(default_factory=dict)
    python_requires: str | None = None
    author: str | None = None
    license: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NoManifest:
    project_dir: Path
    searched: list[str] = field(default_factory=list)


ManifestResult = Manifest | NoManifest


@dataclass(frozen=True)
class InstallOptions:
    dev: bool = False
    optional: str | None = None
    force: bool = False
    index: str | None = None
    extra_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None


@dataclass(frozen=True)
class Installed:
    packages: list[str]
    command: str
    result: CommandResult


@dataclass(frozen=True)
class Uninstalled:
    packages: list[str]
    command: str
    result: CommandResult


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    location: str
    is_dev: bool = False
    is_optional: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PackageList:
    packages: list[PackageInfo]


@dataclass(frozen=True)
class NoEnvironment:
    project_dir: Path


ListResult = PackageList | NoEnvironment


@dataclass(frozen=True)
class CachePaths:
    global_dir: Path
    local: Path | None = None
    temp: Path | None = None
    additional: list[Path] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    environment: dict[str, Any] = field(default_factory=dict)


# Parsing


@dataclass(frozen=True)
class VersionSpec:
    name: str
    version: str
    constraint: str | None = None


@dataclass(frozen=True)
class Requirement:
    """One dependency line from a requirements file"""
    name: str
    version: str = "*"
    editable: bool = False
    url: str | None = None
    markers: str | None = None
    extras: list[str] = field(default_factory=list)
    hashes: list[str] = field(default_factory=list)
    original_line: str = ""


@dataclass(frozen=True)
class RequirementsFile:
    requirements: list[Requirement] = field(default_factory=list)
    constraints: list[Requirement] = field(default_factory=list)
    index_urls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class JsonOutput:
    """Decoded JSON payload; ``found`` is False when output held none"""
    value: Any
    found: bool
