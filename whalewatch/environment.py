"""Runtime switches read from the process environment."""

from __future__ import annotations

import os

UNSAFE_MODE_ENV_VAR = "WHALE_WATCHER_ALLOW_UNSAFE"


def is_unsafe_mode() -> bool:
    """Return True when unsafe mode (e.g. plain-http rule sources) is enabled."""
    return os.environ.get(UNSAFE_MODE_ENV_VAR) == "true"