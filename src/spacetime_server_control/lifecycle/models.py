"""Data model for the server lifecycle state machine."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class LifecycleState(Enum):
    """Lifecycle states of the managed database server."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class BackendKind(Enum):
    """Execution backends able to host the server process."""

    LOCAL_VM = "local_vm"
    CONTAINER = "container"
    REMOTE_SHELL = "remote_shell"
    MANAGED_CLOUD = "managed_cloud"

    @property
    def label(self) -> str:
        """Human readable backend name used in log messages."""
        return _BACKEND_LABELS[self]


_BACKEND_LABELS = {
    BackendKind.LOCAL_VM: "local VM",
    BackendKind.CONTAINER: "container",
    BackendKind.REMOTE_SHELL: "remote server",
    BackendKind.MANAGED_CLOUD: "managed cloud",
}


class CombinationRule(Enum):
    """How the backend signal and the probe signal combine into one verdict."""

    ANY = "any"
    BACKEND = "backend"
    PROBE = "probe"
    ALL = "all"

    def combine(self, backend_signal: bool, probe_signal: bool) -> bool:
        if self is CombinationRule.ANY:
            return backend_signal or probe_signal
        if self is CombinationRule.BACKEND:
            return backend_signal
        if self is CombinationRule.PROBE:
            return probe_signal
        return backend_signal and probe_signal


@dataclass(frozen=True)
class HealthSnapshot:
    """Signals gathered during one reconciliation pass."""

    backend_signal: bool
    probe_signal: bool
    combined: bool
    rule: CombinationRule = CombinationRule.ANY


@dataclass(frozen=True)
class StartupWindow:
    """Grace window opened when a start was issued but not yet confirmed."""

    started_at: float
    grace_seconds: float

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.started_at)

    def expired(self, now: float) -> bool:
        return self.elapsed(now) >= self.grace_seconds


@dataclass(frozen=True)
class StopMarker:
    """Suppresses recovery detection for a short while after a stop."""

    stopped_at: float
    window_seconds: float = 5.0

    def active(self, now: float) -> bool:
        return now - self.stopped_at < self.window_seconds

    def remaining(self, now: float) -> float:
        return max(0.0, self.window_seconds - (now - self.stopped_at))


@dataclass
class PersistedSnapshot:
    """Lifecycle state written to the state store across controller restarts."""

    lifecycle_state: LifecycleState
    backend_kind: BackendKind
    startup_started_at: Optional[float] = None
    startup_grace_seconds: Optional[float] = None

    @property
    def claims_alive(self) -> bool:
        """Whether the snapshot says the server was up (or coming up)."""
        return self.lifecycle_state in (
            LifecycleState.RUNNING,
            LifecycleState.STARTING,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to flat primitive values for the state store."""
        return {
            "lifecycle_state": self.lifecycle_state.value,
            "backend_kind": self.backend_kind.value,
            "startup_started_at": self.startup_started_at,
            "startup_grace_seconds": self.startup_grace_seconds,
        }


@dataclass
class CommandResult:
    """Raw output returned by a backend after executing a command."""

    stdout: str = ""
    stderr: str = ""
    succeeded: bool = False

    @property
    def has_output(self) -> bool:
        return bool(self.stdout.strip() or self.stderr.strip())

    @classmethod
    def failure(cls, reason: str) -> "CommandResult":
        """Empty failed result carrying the transport failure reason."""
        return cls(stdout="", stderr=reason, succeeded=False)


@dataclass
class BackendCapabilities:
    """Outcome of a backend's own prerequisite check."""

    kind: BackendKind
    available: bool = False
    supports_shell: bool = True
    missing: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unchecked(cls, kind: BackendKind) -> "BackendCapabilities":
        return cls(
            kind=kind,
            available=False,
            supports_shell=kind is not BackendKind.MANAGED_CLOUD,
            missing=["prerequisites have not been checked"],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data
