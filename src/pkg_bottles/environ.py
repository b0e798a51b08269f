"""Explicit environment snapshots.

Components take a ``Mapping[str, str]`` instead of reading ``os.environ`` so
that tests and non-interactive callers get deterministic behavior.
"""
import os
from types import MappingProxyType
from typing import Mapping

EnvSnapshot = Mapping[str, str]


def snapshot_environ() -> EnvSnapshot:
    """Capture a read-only copy of the current process environment."""
    return MappingProxyType(dict(os.environ))


def resolve_environ(environ: EnvSnapshot | None) -> EnvSnapshot:
    return snapshot_environ() if environ is None else environ


def is_truthy(value: str | None) -> bool:
    return bool(value) and value.strip().lower() not in ("0", "false", "no", "off")
