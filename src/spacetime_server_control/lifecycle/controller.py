"""Lifecycle controller: start/stop sequencing and status reconciliation."""

import asyncio
import time
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from ..commands.models import CommandKind, CommandReport
from ..commands.pipeline import CommandPipeline
from ..config.exceptions import ConfigurationError
from ..config.logging import log_state_transition
from ..config.settings import ControlConfig
from .backend import BackendAdapter, GuardedBackend
from .change_signal import ChangeSignal
from .events import EventChannel, EventKind, LogSeverity
from .models import (
    BackendCapabilities,
    BackendKind,
    CombinationRule,
    HealthSnapshot,
    LifecycleState,
    PersistedSnapshot,
    StartupWindow,
    StopMarker,
)
from .policy import STARTUP_RULE, consults_probe, evaluate, steady_rule
from .prerequisites import ensure_start_prerequisites
from .prober import HealthProber, ProbeResult
from .state_store import (
    InMemoryStateStore,
    StateStore,
    load_capabilities,
    load_snapshot,
    save_capabilities,
    save_snapshot,
)

logger = structlog.get_logger(__name__)


class LifecycleController:
    """State machine owning the lifecycle of one managed server.

    The controller never schedules itself: callers invoke ``check_status()``
    on a fixed cadence. Every backend call goes through ``GuardedBackend`` and
    every probe is bounded, so no pass can hang indefinitely.
    """

    def __init__(
        self,
        config: ControlConfig,
        backends: Mapping[BackendKind, BackendAdapter],
        prober: Optional[HealthProber] = None,
        state_store: Optional[StateStore] = None,
        change_signal: Optional[ChangeSignal] = None,
        events: Optional[EventChannel] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize lifecycle controller.

        Args:
            config: Immutable configuration snapshot
            backends: Adapter per backend kind
            prober: Health prober (default: HealthProber built from the policy)
            state_store: Persistence for snapshots and capabilities
            change_signal: Module change signal consumed for auto-publish
            events: Event channel (default: a new channel)
            clock: Monotonic time source
        """
        self._config = config
        self._adapters: Dict[BackendKind, BackendAdapter] = dict(backends)
        self._backends: Dict[BackendKind, GuardedBackend] = {}
        self._wrap_backends()

        self._owns_prober = prober is None
        self.prober = prober or HealthProber(
            timeout=config.policy.probe_timeout_seconds,
            auth_token=config.profile.auth_token,
        )
        self.state_store = state_store or InMemoryStateStore()
        self.change_signal = change_signal
        self.events = events or EventChannel()
        self._clock = clock

        self._state = LifecycleState.STOPPED
        self._failure_count = 0
        self._startup_window: Optional[StartupWindow] = None
        self._stop_marker: Optional[StopMarker] = None
        self._last_check_at: Optional[float] = None
        self._last_health: Optional[HealthSnapshot] = None
        self._skipped_ticks = 0

        self._check_in_flight = False
        self._start_in_progress = False
        self._stop_in_progress = False
        # Bumped by start, stop, switch and reconfigure; a pass that sees it
        # change across an await drops its result.
        self._generation = 0
        self._auto_publish_blocked = False

        self._capabilities: Dict[BackendKind, BackendCapabilities] = {}
        for kind in BackendKind:
            remembered = load_capabilities(self.state_store, kind)
            if remembered is not None:
                self._capabilities[kind] = remembered

        self.commands = CommandPipeline(
            backend_provider=self._active_backend,
            config_provider=lambda: self._config,
            events=self.events,
            change_signal=change_signal,
            capabilities_provider=self._capabilities.get,
        )

        self._restored_snapshot = self._load_restorable_snapshot()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    # Read-only accessors

    @property
    def config(self) -> ControlConfig:
        return self._config

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is LifecycleState.RUNNING

    @property
    def is_starting_up(self) -> bool:
        return self._state is LifecycleState.STARTING

    @property
    def current_backend_kind(self) -> BackendKind:
        return self._config.backend_kind

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def startup_window(self) -> Optional[StartupWindow]:
        return self._startup_window

    @property
    def stop_marker(self) -> Optional[StopMarker]:
        return self._stop_marker

    @property
    def last_check_at(self) -> Optional[float]:
        return self._last_check_at

    @property
    def last_health(self) -> Optional[HealthSnapshot]:
        return self._last_health

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    @property
    def restore_pending(self) -> bool:
        return self._restored_snapshot is not None

    def capabilities(self, kind: Optional[BackendKind] = None) -> Optional[BackendCapabilities]:
        """Latest prerequisite check of a backend kind (default: active)."""
        return self._capabilities.get(kind or self.current_backend_kind)

    # Lifecycle operations

    async def start(self) -> bool:
        """Start the server through the active backend.

        Returns:
            True if the start was issued (state is Starting or Running)
        """
        if self._stop_in_progress:
            self.events.emit(
                "Cannot start while a stop is in progress", LogSeverity.WARNING
            )
            return False
        if self._start_in_progress:
            logger.info("Start already in progress, ignoring request")
            return False
        if self._state is LifecycleState.RUNNING:
            self.events.emit("Server is already running", LogSeverity.INFO)
            return True

        kind = self.current_backend_kind
        backend = self._active_backend()
        try:
            if backend is None:
                raise ConfigurationError(
                    f"No backend adapter is registered for the {kind.label} server",
                    {"backend": kind.value},
                )
            ensure_start_prerequisites(
                kind, self._config.profile, self._capabilities.get(kind)
            )
        except ConfigurationError as e:
            self._report_configuration_error(e)
            return False

        self._start_in_progress = True
        self._generation += 1
        # A start re-derives the state from scratch; a stale snapshot no longer matters.
        self._restored_snapshot = None
        try:
            self.events.emit(f"Starting {kind.label} server...", LogSeverity.INFO)
            issued = await backend.start()
            if not issued:
                self._startup_window = None
                self._failure_count = 0
                self._transition(
                    LifecycleState.STOPPED,
                    f"Failed to issue start on the {kind.label} server",
                    LogSeverity.ERROR,
                )
                return False

            if await backend.check_running(instant=True):
                await self._confirm_running("Server started successfully")
                return True

            self._startup_window = StartupWindow(
                started_at=self._clock(),
                grace_seconds=self._config.policy.startup_grace_seconds,
            )
            self._failure_count = 0
            self._transition(
                LifecycleState.STARTING,
                "Server is starting, waiting for confirmation...",
                LogSeverity.INFO,
            )
            return True
        finally:
            self._start_in_progress = False

    async def stop(self) -> bool:
        """Stop the server; the state always ends up Stopped.

        Returns:
            True if the backend accepted the stop request
        """
        if self._stop_in_progress:
            logger.info("Stop already in progress, ignoring request")
            self.events.emit("Stop already in progress", LogSeverity.INFO)
            return False
        if self._start_in_progress:
            self.events.emit(
                "Cannot stop while a start is in progress", LogSeverity.WARNING
            )
            return False

        kind = self.current_backend_kind
        backend = self._active_backend()
        if backend is None:
            self._report_configuration_error(
                ConfigurationError(
                    f"No backend adapter is registered for the {kind.label} server",
                    {"backend": kind.value},
                )
            )
            return False

        self._stop_in_progress = True
        self._generation += 1
        try:
            self._transition(
                LifecycleState.STOPPING,
                f"Stopping {kind.label} server...",
                LogSeverity.INFO,
            )
            issued = await backend.stop()
            if not issued:
                self.events.emit(
                    f"The {kind.label} backend did not confirm the stop request",
                    LogSeverity.WARNING,
                )

            residual = await self._gather_health(
                instant=True, rule=CombinationRule.ANY, record=False
            )

            self._failure_count = 0
            self._startup_window = None
            self._restored_snapshot = None
            self._stop_marker = StopMarker(
                stopped_at=self._clock(),
                window_seconds=self._config.policy.stop_marker_seconds,
            )
            self._transition(
                LifecycleState.STOPPED, "Server stopped", LogSeverity.SUCCESS
            )

            if residual.combined:
                self.events.emit(
                    "Server activity is still detected after stopping; "
                    "it may take a moment to shut down completely",
                    LogSeverity.WARNING,
                    backend_signal=residual.backend_signal,
                    probe_signal=residual.probe_signal,
                )
            return issued
        finally:
            self._stop_in_progress = False

    async def check_status(self) -> LifecycleState:
        """Run one reconciliation pass.

        Ticks arriving while a pass, a start or a stop is in flight are
        skipped and counted, never queued.

        Returns:
            LifecycleState: State after the pass
        """
        if self._check_in_flight or self._start_in_progress or self._stop_in_progress:
            self._skipped_ticks += 1
            logger.debug(
                "Skipping status check, operation in flight",
                skipped_ticks=self._skipped_ticks,
                state=self._state.value,
            )
            return self._state

        self._check_in_flight = True
        generation = self._generation
        try:
            if self._restored_snapshot is not None:
                await self._restore_from_snapshot(generation)
            elif self._state is LifecycleState.STARTING:
                await self._reconcile_starting(generation)
            elif self._state is LifecycleState.RUNNING:
                await self._reconcile_running(generation)
            elif self._state is LifecycleState.STOPPED:
                await self._reconcile_stopped(generation)
            self._last_check_at = self._clock()
        finally:
            self._check_in_flight = False
        return self._state

    async def restore(self) -> LifecycleState:
        """Validate the snapshot left by a previous controller process.

        A snapshot claiming the server was up is only trusted after an
        immediate check confirms it; otherwise the state resets to Stopped.
        """
        if self._restored_snapshot is None:
            return self._state
        if self._check_in_flight or self._start_in_progress or self._stop_in_progress:
            return self._state

        self._check_in_flight = True
        try:
            await self._restore_from_snapshot(self._generation)
            self._last_check_at = self._clock()
        finally:
            self._check_in_flight = False
        return self._state

    async def switch_backend(self, kind: BackendKind) -> bool:
        """Select another backend; resets the lifecycle to Stopped.

        A switch is not a graceful stop: nothing is sent to either backend.
        """
        if kind is self.current_backend_kind:
            return True
        if self._start_in_progress or self._stop_in_progress:
            self.events.emit(
                "Cannot switch backend while a start or stop is in progress",
                LogSeverity.WARNING,
            )
            return False
        if kind not in self._backends:
            self._report_configuration_error(
                ConfigurationError(
                    f"No backend adapter is registered for the {kind.label} server",
                    {"backend": kind.value},
                )
            )
            return False

        self._config = self._config.with_backend(kind)
        self._generation += 1
        self._reset_lifecycle()
        self.events.emit(
            f"Switched to the {kind.label} backend", LogSeverity.INFO, backend=kind.value
        )
        self._persist_snapshot()
        return True

    def reconfigure(self, config: ControlConfig) -> bool:
        """Replace the configuration snapshot atomically.

        A configuration selecting a backend kind without a registered adapter
        is rejected and the previous configuration stays in force.

        Returns:
            True if the new configuration was applied
        """
        if config.backend_kind not in self._adapters:
            self._report_configuration_error(
                ConfigurationError(
                    f"No backend adapter is registered for the "
                    f"{config.backend_kind.label} server",
                    {"backend": config.backend_kind.value},
                )
            )
            return False

        previous = self._config
        self._config = config
        self._generation += 1
        self._auto_publish_blocked = False
        self._wrap_backends()

        if self._owns_prober:
            self.prober.timeout = config.policy.probe_timeout_seconds
            self.prober.auth_token = config.profile.auth_token

        if config.backend_kind is not previous.backend_kind:
            self._reset_lifecycle()
            self.events.emit(
                f"Switched to the {config.backend_kind.label} backend",
                LogSeverity.INFO,
                backend=config.backend_kind.value,
            )
            self._persist_snapshot()
        logger.info("Configuration updated", backend=config.backend_kind.value)
        return True

    async def check_prerequisites(
        self, kind: Optional[BackendKind] = None
    ) -> BackendCapabilities:
        """Ask a backend (default: active) to report its prerequisites."""
        kind = kind or self.current_backend_kind
        backend = self._backends.get(kind)
        if backend is None:
            capabilities = BackendCapabilities(
                kind=kind, available=False, missing=["no backend adapter registered"]
            )
        else:
            capabilities = await backend.check_prerequisites()

        self._capabilities[kind] = capabilities
        try:
            save_capabilities(self.state_store, capabilities)
        except Exception as e:
            logger.warning("Failed to persist backend capabilities", error=str(e))

        if capabilities.available:
            self.events.emit(
                f"All {kind.label} prerequisites are satisfied",
                LogSeverity.SUCCESS,
                backend=kind.value,
            )
        else:
            self.events.emit(
                f"The {kind.label} backend is missing prerequisites: "
                + ", ".join(capabilities.missing),
                LogSeverity.WARNING,
                backend=kind.value,
                missing=capabilities.missing,
            )
        return capabilities

    # Commands

    async def run_command(self, text: str, description: str) -> CommandReport:
        """Run an administrative command through the active backend."""
        return await self.commands.run_command(text, description, CommandKind.CUSTOM)

    async def publish(self, reset_database: bool = False) -> CommandReport:
        return await self.commands.publish(reset_database=reset_database)

    async def generate(self) -> CommandReport:
        return await self.commands.generate()

    def status(self) -> Dict[str, Any]:
        """Plain snapshot of the controller for callers and logs."""
        now = self._clock()
        health = self._last_health
        return {
            "state": self._state.value,
            "backend": self.current_backend_kind.value,
            "is_running": self.is_running,
            "is_starting_up": self.is_starting_up,
            "failure_count": self._failure_count,
            "failure_threshold": self._config.policy.failure_threshold,
            "startup_elapsed_seconds": (
                self._startup_window.elapsed(now) if self._startup_window else None
            ),
            "stop_marker_remaining_seconds": (
                self._stop_marker.remaining(now) if self._stop_marker else None
            ),
            "last_check_at": self._last_check_at,
            "skipped_ticks": self._skipped_ticks,
            "restore_pending": self.restore_pending,
            "last_health": (
                {
                    "backend_signal": health.backend_signal,
                    "probe_signal": health.probe_signal,
                    "combined": health.combined,
                    "rule": health.rule.value,
                }
                if health
                else None
            ),
        }

    async def close(self) -> None:
        """Persist the final snapshot and release owned resources."""
        await self.commands.wait_pending()
        self._persist_snapshot()
        if self._owns_prober:
            await self.prober.close()

    # Reconciliation

    async def _reconcile_starting(self, generation: int) -> None:
        now = self._clock()
        window = self._startup_window
        if window is None:
            window = StartupWindow(
                started_at=now,
                grace_seconds=self._config.policy.startup_grace_seconds,
            )
            self._startup_window = window

        backend = self._active_backend()
        backend_signal = await backend.check_running(instant=True)
        if self._superseded(generation):
            return
        self._last_health = evaluate(STARTUP_RULE, backend_signal, False)

        if backend_signal:
            await self._confirm_running("Server started successfully")
            return

        if not window.expired(self._clock()):
            logger.debug(
                "Waiting for server to start",
                elapsed_seconds=round(window.elapsed(now), 1),
                grace_seconds=window.grace_seconds,
            )
            return

        self._startup_window = None
        self._transition(
            LifecycleState.STOPPED,
            f"Server failed to start within {window.grace_seconds:g} seconds",
            LogSeverity.ERROR,
        )

    async def _reconcile_running(self, generation: int) -> None:
        rule = steady_rule(
            self._config.policy, self.current_backend_kind, self._marker_active()
        )
        health = await self._gather_health(instant=False, rule=rule, record=False)
        if self._superseded(generation):
            return
        self._last_health = health

        if health.combined:
            if self._failure_count:
                logger.debug(
                    "Server check recovered", failures=self._failure_count
                )
            self._failure_count = 0
            await self._maybe_auto_publish()
            return

        self._failure_count += 1
        threshold = self._config.policy.failure_threshold
        logger.debug(
            "Server check failed",
            failures=self._failure_count,
            threshold=threshold,
            backend_signal=health.backend_signal,
            probe_signal=health.probe_signal,
        )
        if self._failure_count < threshold:
            return

        final = await self._gather_health(instant=True, rule=rule, record=False)
        if self._superseded(generation):
            return
        self._last_health = final
        if final.combined:
            logger.debug("Final check succeeded, server is still running")
            self._failure_count = 0
            return

        self._failure_count = 0
        self._stop_marker = None
        self._transition(
            LifecycleState.STOPPED,
            f"Server stopped responding after {threshold} consecutive failed checks",
            LogSeverity.ERROR,
        )

    async def _reconcile_stopped(self, generation: int) -> None:
        if self._stop_marker is not None:
            if self._marker_active():
                logger.debug(
                    "Skipping recovery detection after stop",
                    remaining_seconds=round(
                        self._stop_marker.remaining(self._clock()), 1
                    ),
                )
                return
            self._stop_marker = None

        rule = steady_rule(self._config.policy, self.current_backend_kind)
        health = await self._gather_health(instant=False, rule=rule, record=False)
        if self._superseded(generation):
            return
        self._last_health = health
        if health.combined:
            await self._confirm_running(
                "Server detected running (started outside this controller)"
            )

    async def _restore_from_snapshot(self, generation: int) -> None:
        snapshot = self._restored_snapshot
        self._restored_snapshot = None
        if snapshot is None:
            return

        rule = steady_rule(self._config.policy, self.current_backend_kind)
        health = await self._gather_health(instant=True, rule=rule, record=False)
        if self._superseded(generation):
            return
        self._last_health = health
        if health.combined:
            await self._confirm_running("Server confirmed running after restart")
            return

        self._startup_window = None
        self._failure_count = 0
        self.events.emit(
            f"Previous state '{snapshot.lifecycle_state.value}' could not be "
            "confirmed, server is stopped",
            LogSeverity.INFO,
        )
        self._transition(LifecycleState.STOPPED, "Server stopped", LogSeverity.INFO)

    async def _confirm_running(self, message: str) -> None:
        self._startup_window = None
        self._failure_count = 0
        self._transition(LifecycleState.RUNNING, message, LogSeverity.SUCCESS)
        await self._maybe_auto_publish()

    async def _maybe_auto_publish(self) -> None:
        if not self._config.policy.auto_publish or self.change_signal is None:
            return
        if not self.change_signal.has_pending_change():
            return
        # Reported once per configuration; reconfigure() lifts the block.
        if self._auto_publish_blocked:
            return

        self.events.emit(
            "Module changes detected, publishing automatically...", LogSeverity.INFO
        )
        module_name = self._config.profile.module_name
        if not module_name:
            self._auto_publish_blocked = True
            self._report_configuration_error(
                ConfigurationError(
                    "Please set the module name before publishing",
                    {"missing": ["module_name"]},
                )
            )
            return
        self.commands.submit_publish()
        self.change_signal.reset()

    async def _gather_health(
        self, instant: bool, rule: CombinationRule, record: bool = True
    ) -> HealthSnapshot:
        backend = self._active_backend()
        if backend is None:
            backend_signal = False
            probe = await self._probe()
        elif consults_probe(rule):
            backend_signal, probe = await asyncio.gather(
                backend.check_running(instant=instant), self._probe()
            )
        else:
            backend_signal = await backend.check_running(instant=instant)
            probe = None

        probe_signal = bool(probe and probe.online)
        if probe is not None and probe.auth_error:
            logger.debug("Probe answered with an authentication error", message=probe.message)

        health = evaluate(rule, backend_signal, probe_signal)
        if record:
            self._last_health = health
        return health

    async def _probe(self) -> ProbeResult:
        url = self._config.profile.probe_url(self.current_backend_kind)
        limit = self._config.policy.probe_timeout_seconds
        try:
            return await asyncio.wait_for(self.prober.probe(url, timeout=limit), timeout=limit)
        except asyncio.TimeoutError:
            return ProbeResult(online=False, message=f"Probe timed out after {limit}s")
        except Exception as e:
            logger.debug("Probe raised", url=url, error=str(e))
            return ProbeResult(online=False, message=f"Probe failed: {e}")

    # Internal state helpers

    def _active_backend(self) -> Optional[GuardedBackend]:
        return self._backends.get(self.current_backend_kind)

    def _superseded(self, generation: int) -> bool:
        if generation == self._generation:
            return False
        logger.debug(
            "Discarding status check superseded by a lifecycle operation",
            backend=self.current_backend_kind.value,
            state=self._state.value,
        )
        return True

    def _marker_active(self) -> bool:
        return self._stop_marker is not None and self._stop_marker.active(self._clock())

    def _wrap_backends(self) -> None:
        policy = self._config.policy
        self._backends = {
            kind: GuardedBackend(
                adapter,
                check_timeout=policy.check_timeout_seconds,
                start_timeout=policy.start_timeout_seconds,
                stop_timeout=policy.stop_timeout_seconds,
            )
            for kind, adapter in self._adapters.items()
        }

    def _reset_lifecycle(self) -> None:
        previous = self._state
        self._state = LifecycleState.STOPPED
        self._failure_count = 0
        self._startup_window = None
        self._stop_marker = None
        self._last_health = None
        self._restored_snapshot = None
        if previous is not LifecycleState.STOPPED:
            log_state_transition(
                logger,
                previous.value,
                self._state.value,
                self.current_backend_kind.value,
                reason="backend_switch",
            )

    def _transition(
        self, new_state: LifecycleState, message: str, severity: LogSeverity
    ) -> None:
        previous = self._state
        self._state = new_state
        log_state_transition(
            logger, previous.value, new_state.value, self.current_backend_kind.value
        )
        self.events.emit(
            message,
            severity,
            EventKind.STATE_CHANGED,
            previous_state=previous.value,
            state=new_state.value,
            backend=self.current_backend_kind.value,
        )
        self._persist_snapshot()

    def _persist_snapshot(self) -> None:
        window = self._startup_window
        started_at = None
        if window is not None:
            # Monotonic time is meaningless to another process; store wall time
            started_at = time.time() - window.elapsed(self._clock())
        snapshot = PersistedSnapshot(
            lifecycle_state=self._state,
            backend_kind=self.current_backend_kind,
            startup_started_at=started_at,
            startup_grace_seconds=window.grace_seconds if window else None,
        )
        try:
            save_snapshot(self.state_store, snapshot)
        except Exception as e:
            logger.warning("Failed to persist lifecycle snapshot", error=str(e))

    def _load_restorable_snapshot(self) -> Optional[PersistedSnapshot]:
        snapshot = load_snapshot(self.state_store)
        if snapshot is None or not snapshot.claims_alive:
            return None
        if snapshot.backend_kind is not self.current_backend_kind:
            logger.info(
                "Discarding snapshot of another backend",
                snapshot_backend=snapshot.backend_kind.value,
                backend=self.current_backend_kind.value,
            )
            return None
        logger.info(
            "Snapshot claims the server was up, validating on first check",
            lifecycle_state=snapshot.lifecycle_state.value,
        )
        return snapshot

    def _report_configuration_error(self, error: ConfigurationError) -> None:
        self.events.emit(
            error.message,
            LogSeverity.ERROR,
            EventKind.CONFIGURATION_ERROR,
            **error.details,
        )
