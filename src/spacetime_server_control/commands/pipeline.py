"""Command pipeline: execute through the active backend, classify, follow up."""

import asyncio
import time
from typing import Awaitable, Callable, Optional, Set

import structlog

from ..config.exceptions import ConfigurationError
from ..config.logging import log_command_outcome
from ..config.settings import ControlConfig
from ..lifecycle.backend import GuardedBackend
from ..lifecycle.change_signal import ChangeSignal
from ..lifecycle.events import EventChannel, EventKind, LogSeverity
from ..lifecycle.models import BackendCapabilities, BackendKind
from ..lifecycle.prerequisites import ensure_command_prerequisites
from .builder import build_generate_command, build_publish_command, relative_client_path
from .classifier import classify_output
from .models import CommandClassification, CommandKind, CommandOutcome, CommandReport

logger = structlog.get_logger(__name__)

AUTO_GENERATE_DESCRIPTION = "Generating client bindings (auto)"


class CommandPipeline:
    """Runs administrative commands and turns their output into outcomes."""

    def __init__(
        self,
        backend_provider: Callable[[], Optional[GuardedBackend]],
        config_provider: Callable[[], ControlConfig],
        events: EventChannel,
        change_signal: Optional[ChangeSignal] = None,
        capabilities_provider: Optional[
            Callable[[BackendKind], Optional[BackendCapabilities]]
        ] = None,
    ):
        """Initialize command pipeline.

        Args:
            backend_provider: Returns the active (guarded) backend
            config_provider: Returns the current configuration snapshot
            events: Channel receiving output and outcome events
            change_signal: Reset after a successful publish
            capabilities_provider: Returns the last prerequisite check per kind
        """
        self._backend_provider = backend_provider
        self._config_provider = config_provider
        self.events = events
        self.change_signal = change_signal
        self._capabilities_provider = capabilities_provider
        self._pending: Set[asyncio.Task] = set()

    async def run_command(
        self,
        text: str,
        description: str,
        kind: CommandKind = CommandKind.CUSTOM,
    ) -> CommandReport:
        """Execute a command through the active backend and classify it.

        Args:
            text: Command line handed to the backend
            description: Human readable description used in events
            kind: Explicit identity of the command

        Returns:
            CommandReport: Classification plus any follow-up report
        """
        config = self._config_provider()
        backend_kind = config.backend_kind
        backend = self._backend_provider()

        try:
            ensure_command_prerequisites(
                backend_kind,
                config.profile,
                requires_module=kind is CommandKind.PUBLISH,
            )
            if backend is None:
                raise ConfigurationError(
                    f"No backend adapter is registered for the {backend_kind.label} server",
                    {"backend": backend_kind.value},
                )
            if kind.requires_shell and not self._supports_shell(backend_kind):
                raise ConfigurationError(
                    f"The {backend_kind.label} backend only supports publish and generate commands",
                    {"backend": backend_kind.value, "command_kind": kind.value},
                )
        except ConfigurationError as e:
            return self._refuse(kind, text, description, e)

        self.events.emit(f"{description}...", LogSeverity.INFO, command_kind=kind.value)

        start_time = time.time()
        result = await backend.run_command(text)
        duration_ms = (time.time() - start_time) * 1000

        if result.stdout.strip():
            self.events.emit(result.stdout.strip(), LogSeverity.INFO)
        if result.stderr.strip():
            self.events.emit(result.stderr.strip(), LogSeverity.WARNING)

        classification = classify_output(result)
        if classification.note:
            self.events.emit(classification.note, LogSeverity.INFO)
        self.events.emit(
            classification.message,
            classification.outcome.severity,
            EventKind.COMMAND_OUTCOME,
            command_kind=kind.value,
            outcome=classification.outcome.value,
            affected=classification.affected,
        )
        log_command_outcome(
            logger,
            kind.value,
            classification.outcome.value,
            duration_ms,
            backend=backend_kind.value,
        )

        report = CommandReport(
            kind=kind,
            text=text,
            description=description,
            classification=classification,
            result=result,
            duration_ms=duration_ms,
        )

        if kind is CommandKind.PUBLISH:
            await self._after_publish(report, config)

        return report

    def submit(
        self,
        text: str,
        description: str,
        kind: CommandKind = CommandKind.CUSTOM,
    ) -> asyncio.Task:
        """Schedule a command without waiting for it (fire and forget)."""
        return self._track(self.run_command(text, description, kind))

    def submit_publish(self, reset_database: bool = False) -> asyncio.Task:
        """Schedule a publish without waiting for it."""
        return self._track(self.publish(reset_database=reset_database))

    async def publish(self, reset_database: bool = False) -> CommandReport:
        """Publish the configured module to the active backend's server."""
        config = self._config_provider()
        module_name = config.profile.module_name
        if not module_name:
            return self._refuse(
                CommandKind.PUBLISH,
                "",
                "Publishing module",
                ConfigurationError(
                    "Please set the module name before publishing",
                    {"missing": ["module_name"]},
                ),
            )

        kind = config.backend_kind
        text = build_publish_command(module_name, kind, delete_data=reset_database)
        if reset_database:
            description = f"Publishing module '{module_name}' and resetting database"
        elif kind is BackendKind.MANAGED_CLOUD:
            description = f"Publishing module '{module_name}' to Maincloud"
        else:
            description = f"Publishing module '{module_name}' to Local"
        return await self.run_command(text, description, CommandKind.PUBLISH)

    async def generate(self, auto: bool = False) -> CommandReport:
        """Generate client bindings for the configured module."""
        profile = self._config_provider().profile
        out_dir = profile.generate_out_dir or relative_client_path(
            profile.client_directory
        )
        text = build_generate_command(out_dir, profile.client_language)
        description = AUTO_GENERATE_DESCRIPTION if auto else "Generating client bindings"
        return await self.run_command(text, description, CommandKind.GENERATE)

    async def wait_pending(self) -> None:
        """Wait for every submitted command to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _track(self, coro: Awaitable[CommandReport]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _after_publish(self, report: CommandReport, config: ControlConfig) -> None:
        published = report.classification.succeeded

        if published and self.change_signal is not None:
            self.change_signal.reset()

        if not config.policy.publish_and_generate:
            return

        if published:
            self.events.emit(
                "Publish successful, automatically generating client bindings...",
                LogSeverity.INFO,
            )
        else:
            self.events.emit(
                "Publish failed, generating anyway to capture diagnostics...",
                LogSeverity.WARNING,
            )
        report.follow_up = await self.generate(auto=True)

    def _supports_shell(self, kind: BackendKind) -> bool:
        capabilities = None
        if self._capabilities_provider is not None:
            capabilities = self._capabilities_provider(kind)
        if capabilities is None:
            return kind is not BackendKind.MANAGED_CLOUD
        return capabilities.supports_shell

    def _refuse(
        self,
        kind: CommandKind,
        text: str,
        description: str,
        error: ConfigurationError,
    ) -> CommandReport:
        details = {"command_kind": kind.value, **error.details}
        self.events.emit(
            error.message,
            LogSeverity.ERROR,
            EventKind.CONFIGURATION_ERROR,
            **details,
        )
        return CommandReport(
            kind=kind,
            text=text,
            description=description,
            classification=CommandClassification(
                outcome=CommandOutcome.CONFIGURATION_ERROR,
                message=error.message,
                affected=list(error.details.get("missing", [])),
            ),
        )
