"""Lifecycle control and health monitoring for a SpacetimeDB server."""

from .__version__ import __version__
from .config import ConfigurationError, ControlConfig, load_config
from .config.logging import configure_logging
from .commands import CommandKind, CommandOutcome, CommandPipeline, CommandReport
from .lifecycle import (
    BackendAdapter,
    BackendCapabilities,
    BackendKind,
    CommandResult,
    EventChannel,
    FlagChangeSignal,
    InMemoryStateStore,
    JsonFileStateStore,
    LifecycleEvent,
    LifecycleState,
    LogSeverity,
)
from .lifecycle.controller import LifecycleController
from .lifecycle.prober import HealthProber, ProbeResult

__all__ = [
    "BackendAdapter",
    "BackendCapabilities",
    "BackendKind",
    "CommandKind",
    "CommandOutcome",
    "CommandPipeline",
    "CommandReport",
    "CommandResult",
    "ConfigurationError",
    "ControlConfig",
    "EventChannel",
    "FlagChangeSignal",
    "HealthProber",
    "InMemoryStateStore",
    "JsonFileStateStore",
    "LifecycleController",
    "LifecycleEvent",
    "LifecycleState",
    "LogSeverity",
    "ProbeResult",
    "__version__",
    "configure_logging",
    "load_config",
]
