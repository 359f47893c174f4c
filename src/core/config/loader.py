"""
Configuration loader — reads stackforge.yml into a ForgeConfig.

The config file is optional. It is searched for upward from the
target root so a generated project can carry its own settings.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from src.core.errors import ConfigError
from src.core.models.config import ForgeConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "stackforge.yml"

# Default package cache: overridable by env var or config
_DEFAULT_CACHE_DIR = Path.home() / ".cache" / "stackforge" / "packages"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for stackforge.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to stackforge.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_config(path: Path | None) -> ForgeConfig:
    """Load and validate the orchestrator configuration.

    Args:
        path: Path to stackforge.yml, or None for defaults.

    Returns:
        Validated ForgeConfig.

    Raises:
        ConfigError: If the file is unreadable or invalid.
    """
    if path is None:
        logger.debug("No %s — using defaults", CONFIG_FILE)
        return ForgeConfig()

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return ForgeConfig()

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        config = ForgeConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    logger.info("Loaded config %s (%d profiles)", path, len(config.profiles))
    return config


def resolve_steps_dir(config: ForgeConfig, config_path: Path | None, target_root: Path) -> Path:
    """Resolve ``steps_dir`` relative to the config file, else the target root."""
    steps = Path(config.steps_dir).expanduser()
    if steps.is_absolute():
        return steps
    base = config_path.parent.resolve() if config_path else target_root
    return (base / steps).resolve()


def resolve_state_dir(config: ForgeConfig, target_root: Path) -> Path:
    """Resolve ``state_dir`` relative to the target root."""
    state = Path(config.state_dir).expanduser()
    return state if state.is_absolute() else target_root / state


def resolve_cache_dir(config: ForgeConfig) -> Path:
    """Config value, else STACKFORGE_CACHE_DIR, else ~/.cache/stackforge/packages."""
    if config.cache_dir:
        return Path(config.cache_dir).expanduser()
    return Path(os.environ.get("STACKFORGE_CACHE_DIR", str(_DEFAULT_CACHE_DIR)))
