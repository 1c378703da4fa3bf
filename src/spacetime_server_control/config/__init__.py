"""Configuration package for server lifecycle control."""

from .exceptions import ConfigurationError
from .loader import load_config
from .settings import (
    CombinationRule,
    ControlConfig,
    ControllerPolicy,
    LoggingConfig,
    ServerProfile,
)

__all__ = [
    "CombinationRule",
    "ConfigurationError",
    "ControlConfig",
    "ControllerPolicy",
    "LoggingConfig",
    "ServerProfile",
    "load_config",
]
