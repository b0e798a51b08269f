"""Timeout tiers for package manager operations.

Engine timeouts are activity based: stdout output resets the countdown and
stderr output does not. Tiers are scaled by an environment multiplier that
is read on every call.
"""

from pkg_bottles.environ import EnvSnapshot, is_truthy, resolve_environ
from pkg_bottles.logging import get_logger
from pkg_bottles.types import TimeoutTier

logger = get_logger(__name__)

CI_MULTIPLIER = 4.0


def timeout_multiplier(environ: EnvSnapshot | None = None) -> float:
    environ = resolve_environ(environ)

    if raw := environ.get("PKG_LOCAL_TIMEOUT_MULTIPLIER"):
        try:
            value = float(raw)
        except ValueError:
            logger.warning({"event": "invalid_timeout_multiplier", "value": raw})
        else:
            if value > 0:
                return value
            logger.warning({"event": "invalid_timeout_multiplier", "value": raw})

    if is_truthy(environ.get("CI")):
        return CI_MULTIPLIER
    return 1.0


def get_timeout(tier: TimeoutTier, environ: EnvSnapshot | None = None) -> float:
    """Seconds allowed without stdout activity for ``tier``."""
    return tier.value * timeout_multiplier(environ)
