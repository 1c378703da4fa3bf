"""Prerequisite validation performed before any backend is touched."""

from typing import List, Optional

from ..config.exceptions import ConfigurationError
from ..config.settings import ServerProfile
from .models import BackendCapabilities, BackendKind


def missing_profile_fields(kind: BackendKind, profile: ServerProfile) -> List[str]:
    """List the profile settings a backend kind needs but does not have."""
    missing = []

    if kind is BackendKind.LOCAL_VM:
        if not profile.local_user:
            missing.append("local_user")
        if not profile.server_directory:
            missing.append("server_directory")
    elif kind is BackendKind.CONTAINER:
        if not profile.server_directory:
            missing.append("server_directory")
    elif kind is BackendKind.REMOTE_SHELL:
        if not profile.ssh_user:
            missing.append("ssh_user")
        if not profile.ssh_host:
            missing.append("ssh_host")
        if not profile.remote_server_url:
            missing.append("remote_server_url")
        elif not profile.remote_server_port:
            missing.append("remote_server_url port")
    elif kind is BackendKind.MANAGED_CLOUD:
        if not profile.module_name:
            missing.append("module_name")

    return missing


def ensure_start_prerequisites(
    kind: BackendKind,
    profile: ServerProfile,
    capabilities: Optional[BackendCapabilities],
) -> None:
    """Reject a start whose prerequisites are unmet.

    Raises:
        ConfigurationError: Listing every missing prerequisite
    """
    missing = missing_profile_fields(kind, profile)

    if capabilities is None:
        missing.append("backend prerequisites have not been checked")
    elif not capabilities.available:
        missing.extend(capabilities.missing or ["backend reported unavailable"])

    if missing:
        raise ConfigurationError(
            f"Cannot start the {kind.label} server: prerequisites are missing",
            {"backend": kind.value, "missing": missing},
        )


def ensure_command_prerequisites(
    kind: BackendKind,
    profile: ServerProfile,
    requires_module: bool = False,
) -> None:
    """Reject a command whose prerequisites are unmet.

    Raises:
        ConfigurationError: Listing every missing prerequisite
    """
    missing = missing_profile_fields(kind, profile)
    if requires_module and not profile.module_name and "module_name" not in missing:
        missing.append("module_name")

    if missing:
        raise ConfigurationError(
            f"Cannot run command on the {kind.label} server: prerequisites are missing",
            {"backend": kind.value, "missing": missing},
        )
