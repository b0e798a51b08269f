"""Keyed pool of persistent shells."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from pkg_bottles.environ import EnvSnapshot
from pkg_bottles.logging import get_logger
from pkg_bottles.shells.shell import Shell
from pkg_bottles.types import ShellOptions, utcnow

logger = get_logger(__name__)

DEFAULT_MAX_SIZE = 5


@dataclass
class PooledShell:
    shell: Shell
    in_use: bool = False
    last_used: datetime = field(default_factory=utcnow)


class ShellPool:
    """Reuses idle shells per session key.

    A key can hold several shells so that two concurrent holders of the same
    key never share one. Once ``max_size`` shells are pooled, further shells
    are handed out unpooled and must be released explicitly.
    """

    _instance: "ShellPool | None" = None

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        self.max_size = max_size
        self._entries: dict[str, list[PooledShell]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def get_instance(cls) -> "ShellPool":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def size(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def keys(self) -> list[str]:
        return [key for key, entries in self._entries.items() if entries]

    async def acquire(
        self,
        key: str,
        options: ShellOptions | None = None,
        environ: EnvSnapshot | None = None,
    ) -> Shell:
        async with self._lock:
            entries = self._entries.setdefault(key, [])

            for entry in list(entries):
                if entry.in_use:
                    continue
                if entry.shell.is_alive:
                    entry.in_use = True
                    entry.last_used = utcnow()
                    logger.debug({"event": "pool_reuse", "key": key, "shell_id": entry.shell.id})
                    return entry.shell

                entries.remove(entry)
                logger.debug({"event": "pool_discard_dead", "key": key, "shell_id": entry.shell.id})
                await entry.shell.cleanup()

            shell = Shell(options, environ)
            await shell.initialize()

            if self.size < self.max_size:
                entries.append(PooledShell(shell=shell, in_use=True))
                logger.debug({"event": "pool_create", "key": key, "shell_id": shell.id, "size": self.size})
            else:
                logger.warning(
                    {
                        "event": "pool_full",
                        "key": key,
                        "shell_id": shell.id,
                        "max_size": self.max_size,
                    }
                )

            if not entries:
                del self._entries[key]

            return shell

    async def release(self, key: str, shell: Shell | None = None) -> bool:
        """Return a shell to the pool; unpooled shells are cleaned up."""
        async with self._lock:
            entries = self._entries.get(key, [])

            if shell is not None:
                entry = next((e for e in entries if e.shell is shell), None)
            else:
                in_use = [e for e in entries if e.in_use]
                entry = max(in_use, key=lambda e: e.last_used) if in_use else None

            if entry is not None and entry.in_use:
                entry.in_use = False
                entry.last_used = utcnow()
                logger.debug({"event": "pool_release", "key": key, "shell_id": entry.shell.id})
                return True

        if shell is not None and entry is None:
            logger.debug({"event": "pool_release_unpooled", "key": key, "shell_id": shell.id})
            await shell.cleanup()
        return False

    async def clear(self) -> None:
        async with self._lock:
            entries = [entry for group in self._entries.values() for entry in group]
            self._entries.clear()

        for entry in entries:
            entry.shell.force_kill()
            await entry.shell.cleanup()

        logger.debug({"event": "pool_cleared", "count": len(entries)})
