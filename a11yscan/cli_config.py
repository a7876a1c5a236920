"""Locate the ``.env`` file for command-line entrypoints and check its keys.

The first existing file wins: ``./.env``, then the user config file
(``~/.config/a11yscan/.env``). When neither exists, the ``.env.example``
shipped next to the package is copied to the user config file. After loading,
``A11Y_*`` variables that match no ``PipelineConfig`` field are reported, since
``PipelineConfig.from_env`` would silently ignore a misspelt limit.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from .config import ENV_PREFIX, PipelineConfig

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "a11yscan"
CONFIG_ENV_FILE = CONFIG_DIR / ".env"


def example_env_file() -> Path:
    return Path(__file__).parent.parent / ".env.example"


def find_env_file(cwd: Path, config_env_file: Path) -> Optional[Path]:
    for candidate in (cwd / ".env", config_env_file):
        if candidate.is_file():
            return candidate
    return None


def bootstrap_env_file(
    config_env_file: Path,
    copy_file: Callable[[Path, Path], object],
) -> Optional[Path]:
    """Seed ``config_env_file`` from ``.env.example``; None when that is not possible."""
    example = example_env_file()
    if not example.is_file():
        return None
    try:
        config_env_file.parent.mkdir(parents=True, exist_ok=True)
        copy_file(example, config_env_file)
    except OSError as exc:
        LOGGER.debug("Could not create %s: %s", config_env_file, exc)
        return None
    LOGGER.info(
        "Created config file at %s from .env.example. Edit it to change the analysis limits.",
        config_env_file,
    )
    return config_env_file


def unknown_settings(environ: Mapping[str, str]) -> List[str]:
    """``A11Y_*`` names in ``environ`` that no pipeline setting reads."""
    known = PipelineConfig.env_names()
    return sorted(key for key in environ if key.startswith(ENV_PREFIX) and key not in known)


def load_config(
    *,
    config_env_file: Path,
    cwd: Path,
    load_env: Callable[[Path], bool],
    copy_file: Callable[[Path, Path], object],
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[Path]:
    """Load the first available ``.env`` file and return its path."""
    env_file = find_env_file(cwd, config_env_file)
    if env_file is None:
        env_file = bootstrap_env_file(config_env_file, copy_file)

    if env_file is not None:
        load_env(env_file)
        LOGGER.debug("Loaded settings from %s", env_file)

    for key in unknown_settings(os.environ if environ is None else environ):
        LOGGER.warning("Ignoring unknown setting %s (known: see .env.example)", key)
    return env_file
