"""Platform detection and shell selection."""

import os
import sys

from pkg_bottles.errors import ShellError


def detect_platform() -> str:
    match sys.platform:
        case "win32" | "cygwin":
            return "win32"
        case "darwin":
            return "darwin"
        case _:
            return "linux"


def get_default_shell() -> str:
    """Pick the most capable POSIX shell available."""
    candidates = ["/bin/bash", "/bin/sh"]
    if detect_platform() == "darwin":
        candidates = ["/bin/bash", "/bin/zsh", "/bin/sh"]

    for candidate in candidates:
        if os.path.exists(candidate):
            return candidate
    return "/bin/sh"


def get_system_paths() -> str:
    """Get essential system binary paths for the current platform."""
    match sys.platform:
        case "darwin":
            return "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"
        case "linux":
            return "/usr/local/bin:/usr/bin:/bin:/usr/local/sbin:/usr/sbin:/sbin"
        case _:
            raise ShellError(
                f"Unsupported platform: {sys.platform}",
                code="UNSUPPORTED_PLATFORM",
                suggestion="Bottles run on Linux and macOS",
            )


def get_minimal_system_paths() -> list[str]:
    """System directories a clean PATH always falls back to."""
    return [p for p in ("/usr/bin", "/bin") if os.path.isdir(p)]
