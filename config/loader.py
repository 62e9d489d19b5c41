"""
Configuration loading and management.

Merges defaults, an optional JSON config file and environment overrides into
a validated SyncServiceConfig.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

from core.models.config import SyncServiceConfig, GlobalSettings
from .defaults import get_default_config, ENV_VAR_MAPPING, STRING_CONFIG_PATHS

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load and manage service configuration"""

    def __init__(self, global_settings: Optional[GlobalSettings] = None):
        self.global_settings = global_settings or GlobalSettings()
        self.config_cache: Dict[str, SyncServiceConfig] = {}

    def load_config(self, config_file: Optional[Union[str, Path]] = None) -> SyncServiceConfig:
        """
        Load the service configuration.

        Args:
            config_file: JSON file to read; defaults to the global settings'
                config file. A missing file means defaults plus environment.

        Returns:
            Validated configuration

        Raises:
            ValueError: Config file is not valid JSON or fails validation
        """
        path = Path(config_file) if config_file else self.global_settings.resolve_config_file()
        cache_key = str(path.resolve())
        if cache_key in self.config_cache:
            return self.config_cache[cache_key]

        config_data = get_default_config()
        if path.exists():
            config_data = self._merge(config_data, self._read_config_file(path))
            logger.info(f"Loaded configuration from {path}")
        else:
            logger.debug(f"No config file at {path}, using defaults")

        config_data = self._apply_env_overrides(config_data)
        config = SyncServiceConfig.from_dict(config_data)

        self.config_cache[cache_key] = config
        return config

    def _read_config_file(self, config_file: Path) -> Dict[str, Any]:
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_file}: {e}")
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_file} must contain a JSON object")
        return data

    def _merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override into base"""
        merged = dict(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = self._merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        for env_var, config_path in ENV_VAR_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                logger.debug(f"Overriding {config_path} from {env_var}")
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

        if path in STRING_CONFIG_PATHS:
            current[keys[-1]] = value
        else:
            current[keys[-1]] = self._convert_env_value(value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type"""
        if value.lower() in ('true', 'yes', 'on'):
            return True
        elif value.lower() in ('false', 'no', 'off'):
            return False

        try:
            if '.' in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        return value

    def save_config(self, config: SyncServiceConfig, config_file: Optional[Union[str, Path]] = None) -> Path:
        """
        Write configuration as JSON.

        Returns:
            Path written to
        """
        path = Path(config_file) if config_file else self.global_settings.resolve_config_file()
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)

        self.config_cache[str(path.resolve())] = config
        logger.info(f"Saved configuration to {path}")
        return path

    def clear_cache(self) -> None:
        """Clear configuration cache"""
        self.config_cache.clear()
        logger.info("Configuration cache cleared")
