# src/llmfleet/config/loader.py
"""
Fleet configuration loading.

Configuration is loaded and merged in order:
    1. Default values (from Pydantic models)
    2. TOML config file (if provided)
    3. Config dictionary (if provided)
    4. Environment variables (LLMFLEET__<SECTION>__<KEY>)
    5. Runtime overrides (if provided)

Unlike optional feature sections, a broken fleet configuration is never
replaced by defaults: routing over a half-valid instance list is unsafe, so
every problem surfaces as `ConfigError`.

Usage:
    >>> config = load_fleet_config(Path("fleet.toml"))
    >>> config = load_fleet_config(config_dict={"retry": {"max_retries": 1}, "instances": [...]})
"""

from __future__ import annotations

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from ..exceptions import ConfigError
from .models import FleetConfig

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

ENV_PREFIX = "LLMFLEET__"


def load_fleet_config(
    config_path: Optional[Union[str, Path]] = None,
    config_dict: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> FleetConfig:
    """
    Load fleet configuration from a TOML file and/or dictionary.

    Args:
        config_path: Optional path to a TOML config file.
        config_dict: Optional config dictionary (same layout as the TOML file).
        overrides: Optional runtime overrides, applied last.

    Returns:
        A validated FleetConfig.

    Raises:
        ConfigError: If the file cannot be read or parsed, or validation fails.
    """
    merged_config: Dict[str, Any] = {}

    if config_path is not None:
        path = Path(config_path).expanduser()
        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path}")
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}")
        merged_config = _deep_merge(merged_config, file_config)
        logger.debug(f"Loaded fleet config from {path}")

    if config_dict is not None:
        merged_config = _deep_merge(merged_config, config_dict)

    merged_config = _apply_env_overrides(merged_config)

    if overrides is not None:
        merged_config = _deep_merge(merged_config, overrides)

    try:
        config = FleetConfig(**merged_config)
    except ValidationError as e:
        logger.error(f"Invalid fleet configuration: {e}")
        raise ConfigError(f"Invalid fleet configuration: {e}")

    logger.debug(
        f"Fleet config ready: {len(config.enabled_instances)} enabled instance(s) "
        f"of {len(config.instances)} declared"
    )
    return config


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence. Lists are replaced, not merged."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply environment variable overrides.

    Environment variables follow the pattern:
        LLMFLEET__<SECTION>__<KEY>=value

    Examples:
        LLMFLEET__RETRY__MAX_RETRIES=5
        LLMFLEET__RATE_LIMIT__REQUESTS_PER_SECOND=10
        LLMFLEET__AGENTS__DEFINITIONS_PATH=/srv/agents

    Only nested tables can be overridden this way; the instance list is not
    addressable from the environment.
    """
    config = copy.deepcopy(config)
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        path_parts = key[len(ENV_PREFIX):].lower().split("__")
        if len(path_parts) < 2 or path_parts[0] == "instances":
            continue

        current = config
        for part in path_parts[:-1]:
            existing = current.get(part)
            if not isinstance(existing, dict):
                existing = {}
                current[part] = existing
            current = existing

        current[path_parts[-1]] = _convert_env_value(value)

    return config


def _convert_env_value(value: str) -> Any:
    """Convert environment variable string to bool, int, float or string."""
    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value
