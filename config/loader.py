"""
Configuration loading for deployment-sync.

Merges built-in defaults, an optional JSON/YAML config file and environment
variable overrides, then validates the result into ``ControllerSettings``.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union
import logging

import yaml

from core.models.config import ControllerSettings
from .defaults import ENV_VAR_MAPPING, SETTINGS_FIELD_MAPPING, get_default_config

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load controller settings from defaults, file and environment"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    def load(self, config_file: Optional[Union[str, Path]] = None) -> ControllerSettings:
        """
        Build validated settings.

        Raises:
            ValueError: if the file cannot be parsed or a value is invalid
        """
        config_data = get_default_config()

        if config_file is not None:
            file_data = self._load_file(Path(config_file))
            config_data = self._deep_merge(config_data, file_data)

        config_data = self._apply_env_overrides(config_data)
        settings = ControllerSettings(**self._flatten(config_data))

        logger.debug(f"Loaded settings: {settings.to_dict()}")
        return settings

    def _load_file(self, config_file: Path) -> Dict[str, Any]:
        """Load a JSON or YAML configuration file"""
        if not config_file.exists():
            raise ValueError(f"Config file does not exist: {config_file}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                if config_file.suffix.lower() in ('.yaml', '.yml'):
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to parse config file {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")

        logger.info(f"Loaded configuration from {config_file}")
        return data

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge ``override`` into ``base``"""
        merged = dict(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = self._deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        for env_var, config_path in ENV_VAR_MAPPING.items():
            env_value = self.environ.get(env_var)
            if env_value is not None:
                self._set_nested_value(config_data, config_path, env_value)

        return config_data

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: str) -> None:
        """Set nested dictionary value using dot notation path"""
        keys = path.split('.')
        current = data

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        # strings are coerced by pydantic when the settings are validated
        current[keys[-1]] = value

    def _flatten(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Map the nested config layout onto flat settings fields"""
        flat = {}
        for config_path, field_name in SETTINGS_FIELD_MAPPING.items():
            section, _, option = config_path.partition('.')
            value = (config_data.get(section) or {}).get(option)
            if value is not None:
                flat[field_name] = value

        unknown = set(config_data) - {p.partition('.')[0] for p in SETTINGS_FIELD_MAPPING}
        if unknown:
            logger.warning(f"Ignoring unknown config sections: {sorted(unknown)}")
        return flat
