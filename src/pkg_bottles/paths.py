"""Bottle directory resolution."""
from pathlib import Path

import appdirs

from pkg_bottles.environ import EnvSnapshot, resolve_environ

APP_NAME = "pkg-bottles"
BOTTLES_SUBDIR = "bottles"


def get_bottles_dir(
    environ: EnvSnapshot | None = None, base_path: Path | None = None
) -> Path:
    """Get the root directory for bottles, creating it if needed.

    ``BOTTLE_CACHE_ROOT`` wins when set (relative values resolve against
    ``base_path`` or the current directory); otherwise the per-user cache
    directory is used.
    """
    environ = resolve_environ(environ)
    cache_root = environ.get("BOTTLE_CACHE_ROOT")

    if cache_root:
        root = Path(cache_root).expanduser()
        if not root.is_absolute():
            root = (base_path or Path.cwd()) / root
        bottles_dir = root.resolve() / BOTTLES_SUBDIR
    else:
        bottles_dir = Path(appdirs.user_cache_dir(APP_NAME)) / BOTTLES_SUBDIR

    bottles_dir.mkdir(parents=True, exist_ok=True)
    return bottles_dir
