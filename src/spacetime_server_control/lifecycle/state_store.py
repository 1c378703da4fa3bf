"""Durable key/value persistence for controller continuity."""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog

from .models import (
    BackendCapabilities,
    BackendKind,
    LifecycleState,
    PersistedSnapshot,
)

logger = structlog.get_logger(__name__)

Primitive = Union[bool, int, float, str, None]

KEY_PREFIX = "stdb."
SNAPSHOT_STATE = KEY_PREFIX + "lifecycle_state"
SNAPSHOT_BACKEND = KEY_PREFIX + "backend_kind"
SNAPSHOT_STARTED_AT = KEY_PREFIX + "startup_started_at"
SNAPSHOT_GRACE = KEY_PREFIX + "startup_grace_seconds"


class StateStore(ABC):
    """Narrow load/save interface over flat primitive values."""

    @abstractmethod
    def load(self, key: str, default: Primitive = None) -> Primitive:
        """Load a value, returning ``default`` for missing keys."""

    @abstractmethod
    def save(self, key: str, value: Primitive) -> None:
        """Persist a value."""


class InMemoryStateStore(StateStore):
    """State store kept in a dictionary; useful for tests and embedding."""

    def __init__(self, initial: Optional[Dict[str, Primitive]] = None):
        self.values: Dict[str, Primitive] = dict(initial or {})

    def load(self, key: str, default: Primitive = None) -> Primitive:
        return self.values.get(key, default)

    def save(self, key: str, value: Primitive) -> None:
        self.values[key] = value


class JsonFileStateStore(StateStore):
    """State store persisted as one JSON document on disk."""

    def __init__(self, state_dir: Optional[Path] = None):
        """Initialize file-backed store.

        Args:
            state_dir: Directory for the state file (default: ~/.spacetime-server-control)
        """
        self.state_dir = state_dir or (Path.home() / ".spacetime-server-control")
        self.state_file = self.state_dir / "state.json"
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def load(self, key: str, default: Primitive = None) -> Primitive:
        return self._read().get(key, default)

    def save(self, key: str, value: Primitive) -> None:
        values = self._read()
        values[key] = value
        self._write(values)

    def _read(self) -> Dict[str, Primitive]:
        try:
            if self.state_file.exists():
                with open(self.state_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
                logger.warning("Ignoring malformed state file", path=str(self.state_file))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load state file", error=str(e))
        return {}

    def _write(self, values: Dict[str, Primitive]) -> None:
        tmp_file = self.state_file.with_suffix(".tmp")
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(values, f, indent=2, sort_keys=True)
            tmp_file.replace(self.state_file)
        except OSError as e:
            logger.error("Failed to save state file", error=str(e))
            raise


def save_snapshot(store: StateStore, snapshot: PersistedSnapshot) -> None:
    """Write every snapshot field to the store."""
    for key, value in (
        (SNAPSHOT_STATE, snapshot.lifecycle_state.value),
        (SNAPSHOT_BACKEND, snapshot.backend_kind.value),
        (SNAPSHOT_STARTED_AT, snapshot.startup_started_at),
        (SNAPSHOT_GRACE, snapshot.startup_grace_seconds),
    ):
        store.save(key, value)


def load_snapshot(store: StateStore) -> Optional[PersistedSnapshot]:
    """Read a snapshot back; missing or unreadable values yield None."""
    raw_state = store.load(SNAPSHOT_STATE)
    raw_backend = store.load(SNAPSHOT_BACKEND)
    if raw_state is None or raw_backend is None:
        return None

    try:
        state = LifecycleState(raw_state)
        backend = BackendKind(raw_backend)
    except ValueError:
        logger.warning(
            "Discarding unreadable lifecycle snapshot",
            lifecycle_state=raw_state,
            backend_kind=raw_backend,
        )
        return None

    started_at = store.load(SNAPSHOT_STARTED_AT)
    grace = store.load(SNAPSHOT_GRACE)
    return PersistedSnapshot(
        lifecycle_state=state,
        backend_kind=backend,
        startup_started_at=float(started_at) if started_at is not None else None,
        startup_grace_seconds=float(grace) if grace is not None else None,
    )


def _capability_key(kind: BackendKind, field_name: str) -> str:
    return f"{KEY_PREFIX}capabilities.{kind.value}.{field_name}"


def save_capabilities(store: StateStore, capabilities: BackendCapabilities) -> None:
    """Remember the latest prerequisite check of a backend."""
    kind = capabilities.kind
    store.save(_capability_key(kind, "available"), capabilities.available)
    store.save(_capability_key(kind, "supports_shell"), capabilities.supports_shell)
    store.save(_capability_key(kind, "missing"), "\n".join(capabilities.missing))


def load_capabilities(
    store: StateStore, kind: BackendKind
) -> Optional[BackendCapabilities]:
    """Recall a remembered prerequisite check, if one was saved."""
    available = store.load(_capability_key(kind, "available"))
    if available is None:
        return None

    supports_shell = store.load(
        _capability_key(kind, "supports_shell"),
        kind is not BackendKind.MANAGED_CLOUD,
    )
    missing = store.load(_capability_key(kind, "missing"), "") or ""
    return BackendCapabilities(
        kind=kind,
        available=bool(available),
        supports_shell=bool(supports_shell),
        missing=[item for item in str(missing).split("\n") if item],
    )
