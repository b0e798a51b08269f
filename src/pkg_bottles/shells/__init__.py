"""Persistent shell execution."""
from pkg_bottles.shells.pool import PooledShell, ShellPool
from pkg_bottles.shells.shell import Shell

__all__ = ["Shell", "ShellPool", "PooledShell"]
