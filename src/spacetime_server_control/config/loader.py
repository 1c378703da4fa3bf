"""Configuration loading with hierarchy: defaults < file < environment."""

import copy
import json
from pathlib import Path
from typing import Any, Dict, Optional, Type, Union

import structlog
import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings

from .exceptions import ConfigurationError
from .settings import ControlConfig, ControllerPolicy, LoggingConfig, ServerProfile

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / ".spacetime-server-control" / "config.yaml"

_SECTIONS: Dict[str, Type[BaseSettings]] = {
    "logging": LoggingConfig,
    "policy": ControllerPolicy,
    "profile": ServerProfile,
}


def load_config(
    config_file: Optional[Union[str, Path]] = None,
    use_environment: bool = True,
) -> ControlConfig:
    """Load the control configuration.

    Args:
        config_file: YAML or JSON file (default: ~/.spacetime-server-control/config.yaml)
        use_environment: Whether environment variables override file values

    Returns:
        ControlConfig: Immutable configuration snapshot

    Raises:
        ConfigurationError: If the file cannot be parsed or values are invalid
    """
    file_path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
    file_config = _load_config_file(file_path)

    try:
        sections = {}
        for name, section_cls in _SECTIONS.items():
            values = dict(file_config.get(name) or {})
            if use_environment:
                values.update(_environment_values(section_cls))
            sections[name] = section_cls(**values)

        backend_kind = file_config.get("backend_kind")
        if use_environment:
            env_config = ControlConfig()
            if "backend_kind" in env_config.model_fields_set:
                backend_kind = env_config.backend_kind
        if backend_kind is not None:
            sections["backend_kind"] = backend_kind

        config = ControlConfig(**sections)

    except ValidationError as e:
        raise ConfigurationError(
            "Configuration validation failed",
            {"validation_errors": [err["msg"] for err in e.errors()]},
        )

    logger.debug(
        "Configuration loaded",
        config_file=str(file_path),
        backend_kind=config.backend_kind.value,
    )
    return config


def _environment_values(section_cls: Type[BaseSettings]) -> Dict[str, Any]:
    """Collect only the values a settings section read from the environment."""
    env_section = section_cls()
    return {
        key: getattr(env_section, key) for key in env_section.model_fields_set
    }


def _load_config_file(file_path: Path) -> Dict[str, Any]:
    """Load configuration from YAML or JSON file."""
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            content = f.read()

        if file_path.suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content) or {}

    except FileNotFoundError:
        return {}
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            f"Invalid configuration file format: {file_path}",
            {"parse_error": str(e)},
        )
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read configuration file: {file_path}",
            {"error": str(e)},
        )

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file must contain a mapping: {file_path}"
        )
    return copy.deepcopy(data)
