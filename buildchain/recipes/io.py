"""Build configuration loading.

Configurations are JSON objects; YAML files (.yaml, .yml) are accepted as
well and validated against the same schema.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from buildchain.recipes.schema import BuildConfigSchema

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "buildchain.json"


class ConfigLoadError(Exception):
    """Raised when a build configuration cannot be loaded."""

    def __init__(self, message: str, code: str = "config_error") -> None:
        """Initialize ConfigLoadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_config_data(data: dict[str, Any]) -> BuildConfigSchema:
    """Validate configuration data against the schema.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return BuildConfigSchema.model_validate(data)


def load_config(path: Path) -> BuildConfigSchema:
    """Load and validate a build configuration file.

    Args:
        path: Path to the configuration (.json, .yaml or .yml).

    Returns:
        Validated BuildConfigSchema instance.

    Raises:
        ConfigLoadError: If the file is missing, unreadable, malformed,
            or does not match the schema.
    """
    suffix = path.suffix.lower()
    loader = load_yaml if suffix in (".yaml", ".yml") else load_json

    try:
        data = loader(path)
    except FileNotFoundError as e:
        raise ConfigLoadError(
            f"Config file not found: {path}", code="config_not_found"
        ) from e
    except (json.JSONDecodeError, yaml.YAMLError, ValueError) as e:
        raise ConfigLoadError(
            f"Failed to parse config {path}: {e}", code="config_parse_error"
        ) from e
    except OSError as e:
        raise ConfigLoadError(
            f"Failed to read config {path}: {e}", code="config_read_error"
        ) from e

    try:
        config = parse_config_data(data)
    except ValidationError as e:
        raise ConfigLoadError(
            f"Invalid config {path}: {e}", code="config_invalid"
        ) from e

    logger.info("Loaded config %s from %s", config.name, path)
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ConfigLoadError",
    "load_config",
    "load_json",
    "load_yaml",
    "parse_config_data",
]
