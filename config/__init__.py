"""
Configuration management for deployment-sync

Handles loading, environment overrides and validation of controller settings.
"""

from .loader import ConfigurationLoader
from .defaults import DEFAULT_SETTINGS

__all__ = ["ConfigurationLoader", "DEFAULT_SETTINGS"]
