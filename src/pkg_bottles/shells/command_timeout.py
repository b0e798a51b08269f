"""Command-aware timeouts for the persistent shell.

A command gets an active stage that output keeps alive, one grace period
once the active timer lapses, and an absolute ceiling that no amount of
output can extend. Output matching an error pattern stops all further
extensions, leaving the command only the grace period to finish.
"""

import re
import time
from dataclasses import dataclass, replace
from enum import Enum

from pkg_bottles.types import TimeoutReason

ABSOLUTE_FACTOR = 3.0
GRACE_FACTOR = 0.15
SMALL_TIMEOUT = 1.0
SMALL_GRACE = 0.1


@dataclass(frozen=True)
class TimeoutConfig:
    base_timeout: float
    activity_extension: float
    grace_timeout: float
    absolute_maximum: float
    progress_patterns: tuple[re.Pattern, ...] = ()
    error_patterns: tuple[re.Pattern, ...] = ()


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(pattern) for pattern in patterns)


PIP_INSTALL_PATTERNS = dict(
    progress_patterns=_compile(
        r"Collecting .+",
        r"Downloading .+",
        r"Building wheel",
        r"Installing collected",
        r"Running setup\.py",
        r"Preparing metadata",
        r"Successfully installed",
    ),
    error_patterns=_compile(
        r"ERROR: .+",
        r"Failed building wheel",
        r"No matching distribution",
        r"Could not find a version",
    ),
)

PIP_UNINSTALL_PATTERNS = dict(
    progress_patterns=_compile(
        r"Found existing installation",
        r"Uninstalling .+",
        r"Successfully uninstalled",
    ),
    error_patterns=_compile(r"ERROR: .+", r"Cannot uninstall"),
)

UV_PATTERNS = dict(
    progress_patterns=_compile(
        r"Resolved \d+ packages?",
        r"Downloaded .+",
        r"(?:Installed|Uninstalled|Added|Removed|Updated|Audited) \d+ packages?",
        r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]",
    ),
    error_patterns=_compile(
        r"error: .+",
        r"No solution found",
        r"Because .+ depends on .+",
    ),
)

QUICK_PATTERNS = dict(
    error_patterns=_compile(
        r"command not found",
        r"No such file or directory",
        r"Permission denied",
    ),
)


class CommandCategory(str, Enum):
    PACKAGE_INSTALL = "package_install"
    PACKAGE_UNINSTALL = "package_uninstall"
    PACKAGE_LIST = "package_list"
    PACKAGE_SYNC = "package_sync"
    ENV_CREATE = "env_create"
    VERSION_CHECK = "version_check"
    QUICK_COMMAND = "quick_command"
    UNKNOWN = "unknown"


# adapters prefix exports and a cd, so match at the start of any segment
_SEGMENT = r"(?:^|&&|;|\|\|)\s*"
_PIP = _SEGMENT + r"(?:\S*/)?(?:pip3?|python3?\s+-m\s+pip)\s+"

PIP_INSTALL = re.compile(_PIP + r"install\b")
PIP_UNINSTALL = re.compile(_PIP + r"uninstall\b")
PIP_LIST = re.compile(_PIP + r"(?:list|freeze|show)\b")
PIP_COMPILE = re.compile(_SEGMENT + r"pip-compile\b")
UV_INSTALL = re.compile(_SEGMENT + r"uv\s+(?:add|pip\s+install)\b")
UV_REMOVE = re.compile(_SEGMENT + r"uv\s+(?:remove|pip\s+uninstall)\b")
UV_SYNC = re.compile(_SEGMENT + r"uv\s+(?:sync|lock)\b")
UV_LIST = re.compile(_SEGMENT + r"uv\s+(?:pip\s+)?(?:list|freeze|show)\b")
VENV = re.compile(_SEGMENT + r"(?:uv\s+venv|python3?\s+-m\s+venv)\b")
VERSION = re.compile(r"\s(?:--version|-V|--help|-h)\s*$")
QUICK = re.compile(r"^\s*(?:echo|ls|pwd|cat|which|type|mkdir|rm|cp|mv|cd|export)\b")

LONG_RUNNING = {
    CommandCategory.PACKAGE_INSTALL,
    CommandCategory.PACKAGE_UNINSTALL,
    CommandCategory.PACKAGE_SYNC,
    CommandCategory.ENV_CREATE,
}


def classify_command(command: str) -> CommandCategory:
    command = command.strip()
    if not command:
        return CommandCategory.UNKNOWN

    if PIP_INSTALL.search(command) or UV_INSTALL.search(command):
        return CommandCategory.PACKAGE_INSTALL
    if PIP_UNINSTALL.search(command) or UV_REMOVE.search(command):
        return CommandCategory.PACKAGE_UNINSTALL
    if PIP_LIST.search(command) or UV_LIST.search(command):
        return CommandCategory.PACKAGE_LIST
    if UV_SYNC.search(command) or PIP_COMPILE.search(command):
        return CommandCategory.PACKAGE_SYNC
    if VENV.search(command):
        return CommandCategory.ENV_CREATE
    if VERSION.search(command):
        return CommandCategory.VERSION_CHECK
    if QUICK.match(command):
        return CommandCategory.QUICK_COMMAND
    return CommandCategory.UNKNOWN


def config_for_command(command: str) -> TimeoutConfig:
    """Preset timeout behaviour for what ``command`` looks like it does."""
    uv = bool(UV_INSTALL.search(command) or UV_REMOVE.search(command) or UV_SYNC.search(command))

    match classify_command(command):
        case CommandCategory.PACKAGE_INSTALL if uv:
            return TimeoutConfig(15.0, 5.0, 10.0, 300.0, **UV_PATTERNS)
        case CommandCategory.PACKAGE_INSTALL:
            return TimeoutConfig(30.0, 10.0, 15.0, 600.0, **PIP_INSTALL_PATTERNS)
        case CommandCategory.PACKAGE_UNINSTALL if uv:
            return TimeoutConfig(10.0, 5.0, 10.0, 300.0, **UV_PATTERNS)
        case CommandCategory.PACKAGE_UNINSTALL:
            return TimeoutConfig(15.0, 5.0, 10.0, 120.0, **PIP_UNINSTALL_PATTERNS)
        case CommandCategory.PACKAGE_SYNC:
            return TimeoutConfig(45.0, 5.0, 20.0, 600.0, **UV_PATTERNS)
        case CommandCategory.PACKAGE_LIST | CommandCategory.VERSION_CHECK:
            return TimeoutConfig(5.0, 0.5, 2.0, 15.0, **QUICK_PATTERNS)
        case CommandCategory.ENV_CREATE:
            return TimeoutConfig(15.0, 10.0, 10.0, 60.0)
        case CommandCategory.QUICK_COMMAND:
            return TimeoutConfig(1.0, 0.5, 0.5, 5.0, **QUICK_PATTERNS)
        case _:
            return TimeoutConfig(30.0, 10.0, 15.0, 600.0)


def resolve_timeout_config(command: str, timeout: float | None = None) -> TimeoutConfig:
    """Preset for ``command``, rescaled around an explicit inactivity ``timeout``.

    With an explicit timeout any stdout resets the full countdown, the grace
    period is a fraction of it and the ceiling is a multiple of it. Package
    operations keep their preset ceiling when that is longer.
    """
    preset = config_for_command(command)
    if timeout is None:
        return preset

    ceiling = timeout * ABSOLUTE_FACTOR
    if classify_command(command) in LONG_RUNNING:
        ceiling = max(ceiling, preset.absolute_maximum)

    return replace(
        preset,
        base_timeout=timeout,
        activity_extension=timeout,
        grace_timeout=SMALL_GRACE if timeout < SMALL_TIMEOUT else timeout * GRACE_FACTOR,
        absolute_maximum=ceiling,
    )


class CommandDeadline:
    """Tracks one command's stage against a :class:`TimeoutConfig`."""

    def __init__(self, config: TimeoutConfig, now: float | None = None):
        now = time.monotonic() if now is None else now
        self.config = config
        self.stage = "active"
        self.error_match: str | None = None
        self._reason: TimeoutReason | None = None
        self._absolute = now + config.absolute_maximum
        self._deadline = now + config.base_timeout

    def observe(self, text: str, activity: bool = True, now: float | None = None) -> None:
        """Feed new output; ``activity`` is False for streams that never extend."""
        if self.stage == "expired" or self.error_match is not None or not text:
            return
        now = time.monotonic() if now is None else now

        for pattern in self.config.error_patterns:
            if match := pattern.search(text):
                self.error_match = match.group(0)
                self.stage = "grace"
                self._deadline = min(self._deadline, now + self.config.grace_timeout)
                return

        if not activity:
            return

        progress = any(pattern.search(text) for pattern in self.config.progress_patterns)
        if progress or self.stage == "grace":
            self.stage = "active"
            self._deadline = now + self.config.base_timeout
        else:
            self._deadline = max(self._deadline, now + self.config.activity_extension)

    def check(self, now: float | None = None) -> TimeoutReason | None:
        """Advance the stages; returns the reason once the command must stop."""
        if self.stage == "expired":
            return self._reason
        now = time.monotonic() if now is None else now

        if now >= self._absolute:
            return self._expire(TimeoutReason.ABSOLUTE_MAXIMUM)
        if now < self._deadline:
            return None
        if self.stage == "active":
            self.stage = "grace"
            self._deadline = now + self.config.grace_timeout
            return None
        if self.error_match is not None:
            return self._expire(TimeoutReason.ERROR_DETECTED)
        return self._expire(TimeoutReason.INACTIVITY)

    def remaining(self, now: float | None = None) -> float:
        now = time.monotonic() if now is None else now
        return max(0.0, min(self._deadline, self._absolute) - now)

    def _expire(self, reason: TimeoutReason) -> TimeoutReason:
        self.stage = "expired"
        self._reason = reason
        return reason
