"""
Configuration Manager Module

This module reads and writes the tnmanage configuration file (~/.tnmanage),
a small KEY=VALUE file holding the TrueNAS server URL and API key.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from dotenv import dotenv_values

logger = logging.getLogger('tnmanage.core.config_manager')

CONFIG_FILENAME = '.tnmanage'

URL_KEY = 'TRUENAS_URL'
API_KEY_KEY = 'TRUENAS_API_KEY'
# Order in which keys are written back
KNOWN_KEYS = (URL_KEY, API_KEY_KEY)

CONFIG_HEADER = (
    "# TrueNAS Configuration\n"
    "# This file is automatically managed by tnmanage\n"
    "\n"
)
CONFIG_FILE_MODE = 0o600


class ConfigError(Exception):
    """Exception raised for errors in configuration operations."""
    pass


def get_config_path() -> Path:
    """
    Get the path to the configuration file.

    Returns:
        Path to the configuration file
    """
    return Path.home() / CONFIG_FILENAME


def quote_value(value: str) -> str:
    """Single-quote a value so the dotenv parser reads it back verbatim."""
    escaped = value.replace('\\', '\\\\').replace("'", "\\'")
    return f"'{escaped}'"


def _read_values(config_path: Path) -> Dict[str, str]:
    values = dotenv_values(config_path, interpolate=False)
    return {key: value for key, value in values.items() if key in KNOWN_KEYS and value is not None}


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, str]:
    """
    Load the known keys from the configuration file.

    A missing file is not an error; the user may rely on environment
    variables alone.

    Args:
        config_path: Path to the file, defaults to ~/.tnmanage

    Returns:
        Dictionary of the known keys present in the file
    """
    config_path = Path(config_path) if config_path else get_config_path()

    if not config_path.is_file():
        logger.debug(f"No configuration file at {config_path}")
        return {}

    try:
        values = _read_values(config_path)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read configuration file {config_path}: {e}")
        return {}

    logger.debug(f"Loaded {sorted(values)} from {config_path}")
    return values


def merge_environment(
    file_values: Mapping[str, str],
    environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Combine the process environment with values from the configuration file.

    Variables that are set (and non-empty) in the environment always win.

    Args:
        file_values: Values loaded with load_config()
        environ: Environment to start from, defaults to os.environ

    Returns:
        A new dictionary; the environment itself is not modified
    """
    merged = dict(os.environ if environ is None else environ)
    for key, value in file_values.items():
        if not merged.get(key):
            merged[key] = value
    return merged


def save_config(key: str, value: str, config_path: Optional[Union[str, Path]] = None) -> Path:
    """
    Persist a single key, keeping the other known key untouched.

    The file is rewritten in full with a fixed header; keys other than
    TRUENAS_URL and TRUENAS_API_KEY are dropped.

    Args:
        key: TRUENAS_URL or TRUENAS_API_KEY
        value: Value to store
        config_path: Path to the file, defaults to ~/.tnmanage

    Returns:
        Path of the written file

    Raises:
        ConfigError: If the key is unknown or the file cannot be written
    """
    if key not in KNOWN_KEYS:
        raise ConfigError(f"Unknown configuration key: {key}")

    config_path = Path(config_path) if config_path else get_config_path()

    config: Dict[str, str] = {}
    if config_path.is_file():
        try:
            config = _read_values(config_path)
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file {config_path}: {e}") from e
        except ValueError as e:
            # Undecodable file; rewrite it from scratch so `config` can repair it
            logger.warning(f"Discarding unreadable configuration file {config_path}: {e}")

    config[key] = value

    content = CONFIG_HEADER
    for known_key in KNOWN_KEYS:
        if known_key in config:
            content += f"{known_key}={quote_value(config[known_key])}\n"

    try:
        fd = os.open(config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CONFIG_FILE_MODE)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
        # O_CREAT mode does not apply to an existing file
        os.chmod(config_path, CONFIG_FILE_MODE)
    except OSError as e:
        logger.error(f"Failed to save configuration: {e}")
        raise ConfigError(f"Failed to write configuration file {config_path}: {e}") from e

    logger.info(f"Configuration saved to {config_path}")
    return config_path
