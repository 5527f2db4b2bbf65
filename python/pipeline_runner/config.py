"""
Configuration management for the pipeline runner.
Simple YAML-based configuration with sensible defaults and environment overrides.
"""

import copy
import os
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import yaml

from colored_logger import get_colored_logger

logger = get_colored_logger(__name__)


class ConfigError(Exception):
    """Raised when runner configuration or run inputs are unusable."""


DEFAULT_CONFIG = {
    "global": {
        "workspace": ".",
        "manifest": None,
        "reports_directory": "pipeline-reports",
        "artifacts_directory": "pipeline-artifacts",
        "shell": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
        "default_timeout_minutes": 360,
        "env_file": ".env",
    },
    # Overrides for values declared in the manifest's env block
    "env": {},
    "quality_gate": {
        "timeout": 30,
    },
    "secrets": {
        # Secrets are read from os.environ as <env_prefix><NAME>
        "env_prefix": "",
    },
}

CONFIG_FILE_NAMES = ["pipeline-config.yml", ".pipeline-config.yml"]

ENV_PREFIX = "PIPELINE_"


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load runner configuration from YAML file with fallback to defaults.

    Args:
        config_path: Optional path to config file. When omitted the current
            directory is searched for ``pipeline-config.yml``.

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If an explicitly given file is missing or unreadable.
    """
    config_file = None
    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
    else:
        for name in CONFIG_FILE_NAMES:
            candidate = Path.cwd() / name
            if candidate.exists():
                config_file = candidate
                break

    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_file is not None:
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {config_file}: {e}") from e

        if not isinstance(user_config, dict):
            raise ConfigError(f"Config file {config_file} must contain a mapping")

        config = _deep_merge(config, user_config)
        logger.debug("Loaded config from %s", config_file)

    return _apply_env_overrides(config, os.environ)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overrides(
    config: Dict[str, Any], environ: Dict[str, str]
) -> Dict[str, Any]:
    """
    Apply environment variable overrides to config.

    Environment variables follow pattern: PIPELINE_<SECTION>_<KEY>=value
    Example: PIPELINE_GLOBAL_REPORTS_DIRECTORY=out/reports

    Only existing sections are overridden. Keys of the ``env`` section keep
    their case (PIPELINE_ENV_PROJECT_ID -> env.PROJECT_ID).
    """
    for env_key, env_value in environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue

        remainder = env_key[len(ENV_PREFIX) :]
        section, key = _split_section(remainder, config)
        if not section or not isinstance(config[section], dict):
            continue

        if section == "env":
            # Manifest env values are strings, no type conversion
            config[section][key] = env_value
        else:
            config[section][key.lower()] = _convert_env_value(env_value)

    return config


def _split_section(remainder: str, config: Dict[str, Any]) -> Tuple[Optional[str], str]:
    """
    Split ``QUALITY_GATE_TIMEOUT`` into (``quality_gate``, ``TIMEOUT``).

    The longest matching section wins, so section names may contain underscores.
    """
    lowered = remainder.lower()
    sections = [name for name in config if isinstance(name, str)]
    for section in sorted(sections, key=len, reverse=True):
        prefix = f"{section}_"
        if lowered.startswith(prefix) and len(remainder) > len(prefix):
            return section, remainder[len(prefix) :]
    return None, ""


def _convert_env_value(value: str) -> Any:
    """
    Convert environment variable string to appropriate Python type.

    Args:
        value: Environment variable value

    Returns:
        Converted value
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    elif value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # List conversion (comma-separated)
    if "," in value:
        return [item.strip() for item in value.split(",")]

    return value


def load_env_file(env_path: str) -> Dict[str, str]:
    """
    Parse a .env file of KEY=VALUE lines.

    Empty lines and ``#`` comments are skipped, surrounding quotes removed.
    A missing file yields an empty mapping.
    """
    values: Dict[str, str] = {}
    if not env_path or not os.path.isfile(env_path):
        return values

    with open(env_path, "r", encoding="utf-8") as f:
        for line in f:
            parsed = parse_env_line(line)
            if parsed:
                values[parsed[0]] = parsed[1]

    logger.debug("Loaded %d value(s) from %s", len(values), env_path)
    return values


def parse_env_line(line: str):
    """Parse one ``KEY=VALUE`` line; returns None for blanks and comments."""
    line = line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None

    key, value = line.split("=", 1)  # Split on first = only
    key = key.strip()
    if key.startswith("export "):
        key = key[len("export ") :].strip()
    value = value.strip()

    if (value.startswith('"') and value.endswith('"') and len(value) >= 2) or (
        value.startswith("'") and value.endswith("'") and len(value) >= 2
    ):
        value = value[1:-1]

    if not key:
        return None
    return key, value
