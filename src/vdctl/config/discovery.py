"""Config file discovery.

Lookup order for vdctl.toml:

1. ``VDCTL_CONFIG`` env var (an explicit path; missing file means no config).
2. Walk up from the working directory, like git finding .git/.
3. The per-user location ``~/.vdctl/vdctl.toml``.

The streaming server launches ``vdctl session connect`` from its own
working directory, so the per-user fallback is what usually matches at
stream time.
"""

from __future__ import annotations

import os
from pathlib import Path

CONFIG_FILENAME = "vdctl.toml"
CONFIG_ENV_VAR = "VDCTL_CONFIG"


def user_config_path() -> Path:
    return Path.home() / ".vdctl" / CONFIG_FILENAME


def find_config(start: Path | None = None) -> Path | None:
    """Return the config file to load, or None to run on defaults."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        p = Path(env_path)
        return p if p.is_file() else None

    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate

    fallback = user_config_path()
    return fallback if fallback.is_file() else None
