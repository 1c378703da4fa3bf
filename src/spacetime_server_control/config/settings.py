"""Application configuration settings."""

from typing import Dict, Optional
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings

from ..lifecycle.models import BackendKind, CombinationRule


def _default_combination_rules() -> Dict[BackendKind, CombinationRule]:
    return {
        BackendKind.LOCAL_VM: CombinationRule.ANY,
        BackendKind.CONTAINER: CombinationRule.ANY,
        BackendKind.REMOTE_SHELL: CombinationRule.BACKEND,
        BackendKind.MANAGED_CLOUD: CombinationRule.ANY,
    }


class LoggingConfig(BaseSettings):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    file_path: Optional[str] = Field(default=None, description="Log file path")
    json_format: bool = Field(default=True, description="Use JSON log format")

    class Config:
        env_prefix = "LOG_"
        frozen = True


class ControllerPolicy(BaseSettings):
    """Timing and behaviour policy of the lifecycle controller."""

    startup_grace_seconds: float = Field(
        default=10.0, ge=0, description="Grace period after issuing a start"
    )
    failure_threshold: int = Field(
        default=3, ge=1, description="Consecutive failing passes before stopping"
    )
    stop_marker_seconds: float = Field(
        default=5.0, ge=0, description="Recovery suppression after a stop"
    )
    probe_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Hard timeout of one health probe"
    )
    check_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout of a backend liveness check"
    )
    start_timeout_seconds: float = Field(
        default=90.0, gt=0, description="Timeout of a backend start call"
    )
    stop_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout of a backend stop call"
    )
    check_interval_seconds: float = Field(
        default=3.0, gt=0, description="Cadence callers should tick at"
    )
    auto_publish: bool = Field(
        default=False, description="Publish pending module changes automatically"
    )
    publish_and_generate: bool = Field(
        default=True, description="Generate client bindings after publish"
    )
    debug: bool = Field(default=False, description="Verbose diagnostics")
    combination_rules: Dict[BackendKind, CombinationRule] = Field(
        default_factory=_default_combination_rules,
        description="Steady-state signal combination per backend kind",
    )

    class Config:
        env_prefix = "CONTROLLER_"
        frozen = True

    def rule_for(self, kind: BackendKind) -> CombinationRule:
        """Get the steady-state combination rule for a backend kind."""
        return self.combination_rules.get(
            kind, _default_combination_rules()[kind]
        )


class ServerProfile(BaseSettings):
    """Per-backend connection details and module settings."""

    module_name: Optional[str] = Field(default=None, description="Module name")
    server_directory: Optional[str] = Field(
        default=None, description="Module source directory"
    )
    client_directory: Optional[str] = Field(
        default=None, description="Directory receiving generated bindings"
    )
    client_language: str = Field(
        default="csharp", description="Language of generated bindings"
    )
    generate_out_dir: Optional[str] = Field(
        default=None, description="Explicit output directory for generate"
    )
    server_url: str = Field(
        default="http://127.0.0.1:3000", description="Local server endpoint"
    )
    cloud_url: str = Field(
        default="https://maincloud.spacetimedb.com",
        description="Managed cloud endpoint",
    )
    remote_server_url: Optional[str] = Field(
        default=None, description="Server endpoint on the remote host"
    )
    auth_token: Optional[str] = Field(default=None, description="Auth token")
    local_user: Optional[str] = Field(
        default=None, description="User inside the local VM"
    )
    ssh_user: Optional[str] = Field(default=None, description="SSH user")
    ssh_host: Optional[str] = Field(default=None, description="SSH host")
    ssh_key_path: Optional[str] = Field(
        default=None, description="SSH private key path"
    )

    class Config:
        env_prefix = "SERVER_"
        frozen = True

    def probe_url(self, kind: BackendKind) -> str:
        """Get the endpoint the health prober should reach for a backend."""
        if kind is BackendKind.MANAGED_CLOUD:
            url = self.cloud_url
        elif kind is BackendKind.REMOTE_SHELL:
            url = self.remote_server_url or ""
        else:
            url = self.server_url
        return url.rstrip("/")

    @property
    def remote_server_port(self) -> Optional[int]:
        """Port carried by the remote server URL, if any."""
        if not self.remote_server_url:
            return None
        try:
            return urlparse(self.remote_server_url).port
        except ValueError:
            return None


class ControlConfig(BaseSettings):
    """Immutable configuration snapshot handed to the controller."""

    backend_kind: BackendKind = Field(
        default=BackendKind.LOCAL_VM, description="Selected backend"
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    policy: ControllerPolicy = Field(default_factory=ControllerPolicy)
    profile: ServerProfile = Field(default_factory=ServerProfile)

    class Config:
        env_prefix = "STDB_"
        frozen = True

    def with_backend(self, kind: BackendKind) -> "ControlConfig":
        """Copy of this configuration with another backend selected."""
        return self.model_copy(update={"backend_kind": kind})
