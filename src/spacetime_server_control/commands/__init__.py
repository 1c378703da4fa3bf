"""Administrative commands: building, running and classifying them."""

from .builder import build_generate_command, build_publish_command, relative_client_path
from .classifier import classify_output
from .models import CommandClassification, CommandKind, CommandOutcome, CommandReport
from .pipeline import CommandPipeline

__all__ = [
    "CommandClassification",
    "CommandKind",
    "CommandOutcome",
    "CommandPipeline",
    "CommandReport",
    "build_generate_command",
    "build_publish_command",
    "classify_output",
    "relative_client_path",
]
