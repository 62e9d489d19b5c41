"""
Configuration management for catalog-search-sync

Handles loading, environment overrides and validation.
"""

from .loader import ConfigurationLoader
from .defaults import DEFAULT_SETTINGS, ENV_VAR_MAPPING

__all__ = ["ConfigurationLoader", "DEFAULT_SETTINGS", "ENV_VAR_MAPPING"]
