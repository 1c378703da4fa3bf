"""Change signal contract consumed for auto-publishing."""

from abc import ABC, abstractmethod


class ChangeSignal(ABC):
    """Reports whether the module changed since the last publish.

    Polled by the controller, never pushed.
    """

    @abstractmethod
    def has_pending_change(self) -> bool:
        """True when a change has not been published yet."""

    @abstractmethod
    def reset(self) -> None:
        """Clear the pending flag after a publish was issued."""


class FlagChangeSignal(ChangeSignal):
    """Change signal driven by an explicit flag, set by an external watcher."""

    def __init__(self, pending: bool = False):
        self.pending = pending
        self.reset_count = 0

    def mark_changed(self) -> None:
        self.pending = True

    def has_pending_change(self) -> bool:
        return self.pending

    def reset(self) -> None:
        self.pending = False
        self.reset_count += 1
