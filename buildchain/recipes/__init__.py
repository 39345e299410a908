"""Build configuration module.

This module handles:
- Schema validation of build configurations
- Loading configurations from JSON (and YAML) files
"""

from buildchain.recipes.io import (
    DEFAULT_CONFIG_PATH,
    ConfigLoadError,
    load_config,
    parse_config_data,
)
from buildchain.recipes.schema import BuildConfigSchema

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "BuildConfigSchema",
    "ConfigLoadError",
    "load_config",
    "parse_config_data",
]
