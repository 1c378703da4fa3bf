"""Pytest configuration and shared fixtures."""

import tempfile
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

import pytest

from spacetime_server_control.config.settings import (
    ControlConfig,
    ControllerPolicy,
    ServerProfile,
)
from spacetime_server_control.lifecycle.backend import BackendAdapter
from spacetime_server_control.lifecycle.events import EventChannel, LifecycleEvent
from spacetime_server_control.lifecycle.models import (
    BackendCapabilities,
    BackendKind,
    CommandResult,
)
from spacetime_server_control.lifecycle.prober import ProbeResult


class FakeBackend(BackendAdapter):
    """Backend adapter whose signals are scripted by the test.

    ``running`` is the default answer of ``check_running``; values queued in
    ``running_script`` are consumed first, one per call.
    """

    def __init__(
        self,
        kind: BackendKind = BackendKind.LOCAL_VM,
        running: bool = False,
        start_result: bool = True,
        stop_result: bool = True,
        supports_shell: Optional[bool] = None,
    ):
        self.kind = kind
        self.running = running
        self.running_script: Deque[bool] = deque()
        self.start_result = start_result
        self.stop_result = stop_result
        self.supports_shell = (
            supports_shell
            if supports_shell is not None
            else kind is not BackendKind.MANAGED_CLOUD
        )
        self.available = True
        self.missing: List[str] = []
        self.command_results: Deque[CommandResult] = deque()
        self.commands: List[str] = []
        self.check_calls: List[bool] = []
        self.start_calls = 0
        self.stop_calls = 0

    def script(self, *signals: bool) -> "FakeBackend":
        self.running_script.extend(signals)
        return self

    def queue_result(
        self, stdout: str = "", stderr: str = "", succeeded: bool = True
    ) -> "FakeBackend":
        self.command_results.append(
            CommandResult(stdout=stdout, stderr=stderr, succeeded=succeeded)
        )
        return self

    async def start(self) -> bool:
        self.start_calls += 1
        return self.start_result

    async def stop(self) -> bool:
        self.stop_calls += 1
        return self.stop_result

    async def check_running(self, instant: bool = False) -> bool:
        self.check_calls.append(instant)
        if self.running_script:
            return self.running_script.popleft()
        return self.running

    async def run_command(self, text: str) -> CommandResult:
        self.commands.append(text)
        if self.command_results:
            return self.command_results.popleft()
        return CommandResult(stdout="", stderr="", succeeded=True)

    async def check_prerequisites(self) -> BackendCapabilities:
        return BackendCapabilities(
            kind=self.kind,
            available=self.available,
            supports_shell=self.supports_shell,
            missing=list(self.missing),
        )


class FakeProber:
    """Prober answering with a scripted online flag."""

    def __init__(self, online: bool = False):
        self.online = online
        self.script: Deque[bool] = deque()
        self.urls: List[str] = []
        self.closed = False

    async def probe(self, endpoint_url: str, timeout: Optional[float] = None) -> ProbeResult:
        self.urls.append(endpoint_url)
        online = self.script.popleft() if self.script else self.online
        return ProbeResult(
            online=online, message="online" if online else "offline"
        )

    async def ping(self, endpoint_url: str, timeout: Optional[float] = None) -> bool:
        return (await self.probe(endpoint_url, timeout)).online

    async def close(self) -> None:
        self.closed = True


class ManualClock:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    """Collects every event published on a channel."""

    def __init__(self, channel: EventChannel):
        self.events: List[LifecycleEvent] = []
        channel.subscribe(self.events.append)

    @property
    def messages(self) -> List[str]:
        return [event.message for event in self.events]

    def of_kind(self, kind) -> List[LifecycleEvent]:
        return [event for event in self.events if event.kind is kind]

    def of_severity(self, severity) -> List[LifecycleEvent]:
        return [event for event in self.events if event.severity is severity]


def make_profile(**overrides) -> ServerProfile:
    """Server profile satisfying the prerequisites of every backend kind."""
    values = {
        "module_name": "quickstart",
        "server_directory": "/home/dev/quickstart/server",
        "client_directory": "/home/dev/Game/Assets/Scripts/Server",
        "local_user": "dev",
        "ssh_user": "deploy",
        "ssh_host": "db.example.com",
        "remote_server_url": "http://db.example.com:3000",
    }
    values.update(overrides)
    return ServerProfile(**values)


def make_config(
    backend_kind: BackendKind = BackendKind.LOCAL_VM,
    profile: Optional[ServerProfile] = None,
    **policy_overrides,
) -> ControlConfig:
    return ControlConfig(
        backend_kind=backend_kind,
        policy=ControllerPolicy(**policy_overrides),
        profile=profile or make_profile(),
    )


@pytest.fixture
def temp_dir():
    """Create temporary directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def recorder(events) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def config_factory():
    """Build a ControlConfig with a complete profile."""
    return make_config


@pytest.fixture
def backends():
    """One fake backend per backend kind."""
    return {kind: FakeBackend(kind=kind) for kind in BackendKind}


@pytest.fixture
def controller_factory(backends, prober, events, clock):
    """Build a LifecycleController wired to fakes, with prerequisites checked."""
    from spacetime_server_control.lifecycle.controller import LifecycleController
    from spacetime_server_control.lifecycle.state_store import InMemoryStateStore

    def factory(
        backend_kind: BackendKind = BackendKind.LOCAL_VM,
        state_store=None,
        change_signal=None,
        checked: bool = True,
        profile: Optional[ServerProfile] = None,
        **policy_overrides,
    ):
        config = make_config(backend_kind, profile=profile, **policy_overrides)
        store = state_store if state_store is not None else InMemoryStateStore()
        if checked:
            for kind in BackendKind:
                store.save(f"stdb.capabilities.{kind.value}.available", True)
                store.save(
                    f"stdb.capabilities.{kind.value}.supports_shell",
                    kind is not BackendKind.MANAGED_CLOUD,
                )
        return LifecycleController(
            config,
            backends,
            prober=prober,
            state_store=store,
            change_signal=change_signal,
            events=events,
            clock=clock,
        )

    return factory
