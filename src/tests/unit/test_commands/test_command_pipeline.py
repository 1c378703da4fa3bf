"""Tests for the command pipeline."""

import pytest

from spacetime_server_control.commands.classifier import NO_OUTPUT_NOTE
from spacetime_server_control.commands.models import CommandKind, CommandOutcome
from spacetime_server_control.commands.pipeline import CommandPipeline
from spacetime_server_control.config.settings import ServerProfile
from spacetime_server_control.lifecycle.backend import GuardedBackend
from spacetime_server_control.lifecycle.change_signal import FlagChangeSignal
from spacetime_server_control.lifecycle.events import EventKind, LogSeverity
from spacetime_server_control.lifecycle.models import BackendCapabilities, BackendKind


class TestCommandPipeline:
    """Test cases for CommandPipeline."""

    @pytest.fixture
    def signal(self):
        return FlagChangeSignal(pending=True)

    @pytest.fixture
    def pipeline_factory(self, backends, events, signal, config_factory):
        def factory(kind=BackendKind.LOCAL_VM, profile=None, capabilities=None, **policy):
            config = config_factory(kind, profile=profile, **policy)
            backend = GuardedBackend(backends[kind])
            return CommandPipeline(
                backend_provider=lambda: backend,
                config_provider=lambda: config,
                events=events,
                change_signal=signal,
                capabilities_provider=(
                    (lambda k: capabilities) if capabilities is not None else None
                ),
            )

        return factory

    @pytest.mark.asyncio
    async def test_custom_command_output_is_reported(
        self, pipeline_factory, backends, recorder
    ):
        backend = backends[BackendKind.LOCAL_VM]
        backend.queue_result(
            stdout="quickstart  c200...a4f1", stderr="warning: deprecated flag"
        )
        pipeline = pipeline_factory()

        report = await pipeline.run_command("spacetime list", "Listing databases")

        assert backend.commands == ["spacetime list"]
        assert report.outcome is CommandOutcome.SUCCESS
        assert report.kind is CommandKind.CUSTOM
        assert recorder.messages[0] == "Listing databases..."
        assert recorder.events[1].severity is LogSeverity.INFO
        assert recorder.events[2].severity is LogSeverity.WARNING
        outcome_events = recorder.of_kind(EventKind.COMMAND_OUTCOME)
        assert outcome_events[-1].details["outcome"] == "success"

    @pytest.mark.asyncio
    async def test_empty_success_reports_note(self, pipeline_factory, recorder):
        pipeline = pipeline_factory()

        report = await pipeline.run_command("spacetime server clear", "Clearing")

        assert report.succeeded
        assert report.classification.note == NO_OUTPUT_NOTE
        assert NO_OUTPUT_NOTE in recorder.messages

    @pytest.mark.asyncio
    async def test_missing_prerequisites_abort_before_backend(
        self, pipeline_factory, backends, recorder
    ):
        pipeline = pipeline_factory(profile=ServerProfile(local_user="dev"))

        report = await pipeline.run_command("spacetime list", "Listing databases")

        assert report.outcome is CommandOutcome.CONFIGURATION_ERROR
        assert report.classification.affected == ["server_directory"]
        assert backends[BackendKind.LOCAL_VM].commands == []
        assert len(recorder.of_kind(EventKind.CONFIGURATION_ERROR)) == 1

    @pytest.mark.asyncio
    async def test_managed_cloud_rejects_shell_commands(
        self, pipeline_factory, backends, recorder
    ):
        pipeline = pipeline_factory(BackendKind.MANAGED_CLOUD)

        report = await pipeline.run_command("rm -rf /tmp/cache", "Cleaning cache")

        assert report.outcome is CommandOutcome.CONFIGURATION_ERROR
        assert backends[BackendKind.MANAGED_CLOUD].commands == []
        event = recorder.of_kind(EventKind.CONFIGURATION_ERROR)[0]
        assert event.details["command_kind"] == "custom"

    @pytest.mark.asyncio
    async def test_reported_capabilities_decide_shell_support(
        self, pipeline_factory, backends
    ):
        pipeline = pipeline_factory(
            BackendKind.CONTAINER,
            capabilities=BackendCapabilities(
                kind=BackendKind.CONTAINER, available=True, supports_shell=False
            ),
        )

        report = await pipeline.run_command("ls", "Listing")

        assert report.outcome is CommandOutcome.CONFIGURATION_ERROR
        assert backends[BackendKind.CONTAINER].commands == []

    @pytest.mark.asyncio
    async def test_successful_publish_generates_and_resets_signal(
        self, pipeline_factory, backends, signal, recorder
    ):
        backend = backends[BackendKind.LOCAL_VM]
        backend.queue_result(stdout="Updated database with name: quickstart")
        pipeline = pipeline_factory()

        report = await pipeline.publish()

        assert backend.commands == [
            "spacetime publish --server local quickstart",
            "spacetime generate --out-dir ../Assets/Scripts/Server --lang csharp",
        ]
        assert report.succeeded
        assert report.follow_up.kind is CommandKind.GENERATE
        assert report.follow_up.description == "Generating client bindings (auto)"
        assert signal.has_pending_change() is False

    @pytest.mark.asyncio
    async def test_failed_publish_still_generates(
        self, pipeline_factory, backends, signal, recorder
    ):
        backend = backends[BackendKind.LOCAL_VM]
        backend.queue_result(
            stderr="Error: table foo requires a manual migration", succeeded=False
        )
        pipeline = pipeline_factory()

        report = await pipeline.publish()

        assert len(backend.commands) == 2
        assert report.outcome is CommandOutcome.MIGRATION_REQUIRED
        assert report.classification.affected == ["foo"]
        assert report.follow_up is not None
        assert report.succeeded is False
        assert signal.has_pending_change() is True
        assert any(
            event.severity is LogSeverity.WARNING
            and event.kind is EventKind.COMMAND_OUTCOME
            for event in recorder.events
        )

    @pytest.mark.asyncio
    async def test_publish_without_generate_policy(self, pipeline_factory, backends):
        pipeline = pipeline_factory(publish_and_generate=False)

        report = await pipeline.publish()

        assert len(backends[BackendKind.LOCAL_VM].commands) == 1
        assert report.follow_up is None

    @pytest.mark.asyncio
    async def test_publish_requires_module_name(
        self, pipeline_factory, backends, recorder
    ):
        pipeline = pipeline_factory(
            BackendKind.CONTAINER, profile=ServerProfile(server_directory="/srv/module")
        )

        report = await pipeline.publish()

        assert report.outcome is CommandOutcome.CONFIGURATION_ERROR
        assert backends[BackendKind.CONTAINER].commands == []
        assert recorder.of_kind(EventKind.CONFIGURATION_ERROR)[0].details["missing"] == [
            "module_name"
        ]

    @pytest.mark.asyncio
    async def test_reset_database_publish_on_maincloud(self, pipeline_factory, backends):
        pipeline = pipeline_factory(BackendKind.MANAGED_CLOUD, publish_and_generate=False)

        report = await pipeline.publish(reset_database=True)

        assert backends[BackendKind.MANAGED_CLOUD].commands == [
            "spacetime publish --server maincloud quickstart --delete-data -y"
        ]
        assert report.description == "Publishing module 'quickstart' and resetting database"

    @pytest.mark.asyncio
    async def test_generate_uses_explicit_out_dir(self, pipeline_factory, backends):
        pipeline = pipeline_factory(
            BackendKind.CONTAINER,
            profile=ServerProfile(
                server_directory="/srv/module",
                generate_out_dir="client/bindings",
                client_language="typescript",
            ),
        )

        report = await pipeline.generate()

        assert backends[BackendKind.CONTAINER].commands == [
            "spacetime generate --out-dir client/bindings --lang typescript"
        ]
        assert report.description == "Generating client bindings"

    @pytest.mark.asyncio
    async def test_submit_runs_in_background(self, pipeline_factory, backends):
        pipeline = pipeline_factory()

        task = pipeline.submit("spacetime logs quickstart", "Fetching logs")
        await pipeline.wait_pending()

        assert task.done()
        assert task.result().outcome is CommandOutcome.SUCCESS
        assert backends[BackendKind.LOCAL_VM].commands == ["spacetime logs quickstart"]
