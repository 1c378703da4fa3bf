"""Server lifecycle control: state model, backends, probing and persistence."""

from .backend import BackendAdapter, GuardedBackend
from .change_signal import ChangeSignal, FlagChangeSignal
from .events import EventChannel, EventKind, LifecycleEvent, LogSeverity
from .models import (
    BackendCapabilities,
    BackendKind,
    CombinationRule,
    CommandResult,
    HealthSnapshot,
    LifecycleState,
    PersistedSnapshot,
    StartupWindow,
    StopMarker,
)
from .state_store import InMemoryStateStore, JsonFileStateStore, StateStore

__all__ = [
    "BackendAdapter",
    "BackendCapabilities",
    "BackendKind",
    "ChangeSignal",
    "CombinationRule",
    "CommandResult",
    "EventChannel",
    "EventKind",
    "FlagChangeSignal",
    "GuardedBackend",
    "HealthSnapshot",
    "InMemoryStateStore",
    "JsonFileStateStore",
    "LifecycleEvent",
    "LifecycleState",
    "LogSeverity",
    "PersistedSnapshot",
    "StartupWindow",
    "StateStore",
    "StopMarker",
]
