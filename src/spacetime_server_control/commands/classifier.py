"""Classification of command output into actionable outcomes.

Adapters only know the exit status of a command. The rules here read the
text it produced and decide what actually happened. All matching is advisory
and tolerant of missing output.
"""

import re
from typing import List, Optional

from ..lifecycle.models import CommandResult
from .models import CommandClassification, CommandOutcome

MIGRATION_MARKER = re.compile(
    r"manual\s+migration|migration\s+(?:is\s+)?required", re.IGNORECASE
)
MIGRATION_SUBJECT = re.compile(
    r"\b(?:table|index|constraint|sequence)\s+[`'\"]?(\w+)[`'\"]?\s+"
    r"(?:requires|needs)\s+a\s+manual\s+migration",
    re.IGNORECASE,
)
MIGRATION_BULLET = re.compile(
    r"^\s*[-*]\s*.*?\b(?:table|index|constraint|sequence)\s+[`'\"]?(\w+)",
    re.IGNORECASE,
)

IDENTITY_MARKER = re.compile(
    r"invalid\s+identity"
    r"|identity\s+(?:is\s+)?(?:not\s+valid|invalid|expired)"
    r"|invalid\s+token"
    r"|token\s+(?:is\s+|has\s+)?(?:invalid|expired)"
    r"|\bunauthori[sz]ed\b"
    r"|not\s+logged\s+in",
    re.IGNORECASE,
)
PERMISSION_MARKER = re.compile(
    r"permission\s+denied"
    r"|insufficient\s+(?:permissions?|privileges|rights)"
    r"|\bforbidden\b"
    r"|not\s+authori[sz]ed\s+to"
    r"|not\s+the\s+owner"
    r"|operation\s+not\s+permitted",
    re.IGNORECASE,
)
UNREACHABLE_MARKER = re.compile(
    r"connection\s+refused"
    r"|could\s*n[o']?t\s+connect"
    r"|(?:failed|unable)\s+to\s+connect"
    r"|network\s+is\s+unreachable"
    r"|no\s+route\s+to\s+host"
    r"|connection\s+(?:timed\s+out|reset)"
    r"|\btimed\s+out\b"
    r"|could\s+not\s+resolve\s+host"
    r"|name\s+or\s+service\s+not\s+known"
    r"|error\s+sending\s+request",
    re.IGNORECASE,
)
MISSING_TOOL_MARKER = re.compile(r"command\s+not\s+found", re.IGNORECASE)

ERROR_WORD = re.compile(r"\berror\b", re.IGNORECASE)
BENIGN_LINE = re.compile(
    r"^\s*(?:Downloading|Downloaded|Compiling|Updating|Fetching|Installing|"
    r"Installed|Finished|Blocking|Locking|Adding|Checking|Unpacking|Resolving|"
    r"Building|Restore|Restored)\b"
    r"|\b(?:0|no)\s+errors?\b",
    re.IGNORECASE,
)

NO_OUTPUT_NOTE = "Command completed with no output."


def classify_output(result: Optional[CommandResult]) -> CommandClassification:
    """Classify a command result.

    Args:
        result: Result returned by the backend (None is treated as no output)

    Returns:
        CommandClassification: Outcome with a remediation-oriented message
    """
    if result is None or not result.has_output:
        if result is not None and result.succeeded:
            return CommandClassification(
                outcome=CommandOutcome.SUCCESS,
                message="Command completed successfully.",
                note=NO_OUTPUT_NOTE,
            )
        return CommandClassification(
            outcome=CommandOutcome.FAILED,
            message="Command failed without producing any output.",
        )

    text = f"{result.stdout}\n{result.stderr}"

    if MIGRATION_MARKER.search(text):
        affected = extract_migration_subjects(text)
        subject = f" for: {', '.join(affected)}" if affected else ""
        return CommandClassification(
            outcome=CommandOutcome.MIGRATION_REQUIRED,
            message=(
                f"Manual migration needed{subject}. Publish with a database "
                "reset or migrate the data by hand."
            ),
            affected=affected,
        )

    if IDENTITY_MARKER.search(text):
        return CommandClassification(
            outcome=CommandOutcome.REAUTHENTICATE,
            message="The server rejected the current identity. Log in again to refresh it.",
        )

    if PERMISSION_MARKER.search(text):
        return CommandClassification(
            outcome=CommandOutcome.PERMISSION_DENIED,
            message=(
                "Insufficient rights for this operation. Check module ownership "
                "and the user or key used to connect."
            ),
        )

    if UNREACHABLE_MARKER.search(text):
        return CommandClassification(
            outcome=CommandOutcome.UNREACHABLE,
            message="The server could not be reached. Check that it is running and reachable.",
        )

    if MISSING_TOOL_MARKER.search(text):
        return CommandClassification(
            outcome=CommandOutcome.FAILED,
            message=(
                "A required command was not found on the backend. Ensure the "
                "server tooling is installed and on the PATH."
            ),
        )

    error_lines = find_error_lines(text)
    if error_lines:
        return CommandClassification(
            outcome=CommandOutcome.FAILED,
            message=f"Command reported an error: {error_lines[0]}",
        )

    if result.succeeded:
        return CommandClassification(
            outcome=CommandOutcome.SUCCESS,
            message="Command completed successfully.",
        )

    first_line = _first_line(result.stderr) or _first_line(result.stdout)
    return CommandClassification(
        outcome=CommandOutcome.FAILED,
        message=f"Command failed: {first_line}" if first_line else "Command failed.",
    )


def extract_migration_subjects(text: str) -> List[str]:
    """Names of tables or constraints reported as needing a manual migration."""
    subjects: List[str] = []

    for match in MIGRATION_SUBJECT.finditer(text):
        _append_unique(subjects, match.group(1))

    in_section = False
    for line in text.splitlines():
        if MIGRATION_MARKER.search(line):
            in_section = True
            continue
        if not in_section:
            continue
        match = MIGRATION_BULLET.match(line)
        if match:
            _append_unique(subjects, match.group(1))
        elif line.strip():
            in_section = False

    return subjects


def find_error_lines(text: str) -> List[str]:
    """Lines mentioning an error, ignoring known benign progress output."""
    return [
        line.strip()
        for line in text.splitlines()
        if ERROR_WORD.search(line) and not BENIGN_LINE.search(line)
    ]


def _append_unique(items: List[str], value: str) -> None:
    if value not in items:
        items.append(value)


def _first_line(text: str) -> str:
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()
    return ""
