"""Command identities, outcomes and reports."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..lifecycle.events import LogSeverity
from ..lifecycle.models import CommandResult


class CommandKind(Enum):
    """Explicit identity of an administrative command."""

    PUBLISH = "publish"
    GENERATE = "generate"
    CUSTOM = "custom"

    @property
    def requires_shell(self) -> bool:
        """Whether the command needs a general shell on the backend."""
        return self is CommandKind.CUSTOM


class CommandOutcome(Enum):
    """Actionable classification of a command's output."""

    SUCCESS = "success"
    MIGRATION_REQUIRED = "migration_required"
    REAUTHENTICATE = "reauthenticate"
    PERMISSION_DENIED = "permission_denied"
    UNREACHABLE = "unreachable"
    FAILED = "failed"
    CONFIGURATION_ERROR = "configuration_error"

    @property
    def severity(self) -> LogSeverity:
        if self is CommandOutcome.SUCCESS:
            return LogSeverity.SUCCESS
        if self is CommandOutcome.MIGRATION_REQUIRED:
            return LogSeverity.WARNING
        return LogSeverity.ERROR


@dataclass
class CommandClassification:
    """Verdict derived from a command's stdout and stderr."""

    outcome: CommandOutcome
    message: str
    affected: List[str] = field(default_factory=list)
    note: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is CommandOutcome.SUCCESS


@dataclass
class CommandReport:
    """Everything known about one executed (or refused) command."""

    kind: CommandKind
    text: str
    description: str
    classification: CommandClassification
    result: Optional[CommandResult] = None
    follow_up: Optional["CommandReport"] = None
    duration_ms: float = 0.0

    @property
    def outcome(self) -> CommandOutcome:
        return self.classification.outcome

    @property
    def succeeded(self) -> bool:
        """Overall success, including any follow-up command."""
        if not self.classification.succeeded:
            return False
        if self.follow_up is not None:
            return self.follow_up.succeeded
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "description": self.description,
            "outcome": self.outcome.value,
            "succeeded": self.succeeded,
            "message": self.classification.message,
            "affected": list(self.classification.affected),
            "note": self.classification.note,
            "duration_ms": self.duration_ms,
            "follow_up": self.follow_up.to_dict() if self.follow_up else None,
        }
