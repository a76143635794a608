"""Scenario tests for the full release pipeline."""

import logging
import os
import time
from unittest.mock import MagicMock

import pytest

from conftest import FakeSupervisor, make_app_bundle
from macrelease import (
    BuildArtifactMissingError,
    BuildTask,
    CommandError,
    MissingCredentialError,
    NotarizationRejectedError,
    NotarizationUnverifiedWarning,
    PollState,
    ReleasePipeline,
    ReleaseSettings,
    SignatureInvalidError,
    StapleExhaustedWarning,
    validate_build_outputs,
)


@pytest.fixture
def settings(temp_dir):
    return ReleaseSettings(
        product="Demo",
        version="1.0.0",
        arch="aarch64",
        command=["builder"],
        cwd=temp_dir / "app",
        env_file=None,
        publish_dir=temp_dir / "public" / "downloads",
    )


@pytest.fixture
def supervisor(settings, clock):
    return FakeSupervisor(
        settings.bundle_path, settings.artifact_path, clock, exit_at=120
    )


@pytest.fixture
def pipeline_factory(settings, supervisor, tools, credentials, clock):
    def factory(**kwargs):
        return ReleasePipeline(
            kwargs.pop("settings", settings),
            credentials=kwargs.pop("credentials", credentials),
            tools=tools,
            supervisor=kwargs.pop("supervisor", supervisor),
            clock=clock,
            sleep=clock.sleep,
            progress=False,
        )

    return factory


def write_outputs(settings):
    make_app_bundle(settings.bundle_path, "demo")
    settings.artifact_path.parent.mkdir(parents=True, exist_ok=True)
    settings.artifact_path.write_bytes(b"d" * 4096)


class TestHappyPath:
    def test_builder_notarizes_and_hangs(
        self, pipeline_factory, settings, supervisor, tools, clock
    ):
        """The builder hangs after notarizing; the poller stops it."""
        clock.at(50, lambda: write_outputs(settings))
        tools.assess_fn = lambda path: clock.now >= 80

        result = pipeline_factory().run()

        assert supervisor.terminate_calls == 1
        assert tools.count("submit_for_notarization") == 0
        assert result.destination_path == (
            settings.publish_path / "Demo_1.0.0_aarch64.dmg"
        )
        assert result.size_bytes == 4096
        assert result.destination_path.exists()

    def test_builder_exits_then_submitter_notarizes(
        self, pipeline_factory, settings, supervisor, tools, clock
    ):
        """The builder only signs; notarization happens out of band."""
        clock.at(30, lambda: write_outputs(settings))
        notarized = []
        tools.on_notarize = lambda: notarized.append(True)
        tools.assess_fn = lambda path: bool(notarized)

        pipeline = pipeline_factory()
        result = pipeline.run()

        assert supervisor.terminate_calls == 0
        assert tools.count("submit_for_notarization") == 1
        assert tools.count("staple") == 1
        assert pipeline.warnings == []
        assert result.destination_path.exists()

    def test_credentials_passed_to_builder(
        self, pipeline_factory, settings, supervisor, credentials, clock
    ):
        clock.at(0, lambda: write_outputs(settings))
        pipeline_factory().run()
        assert supervisor.launched_with is credentials

    def test_non_zero_exit_tolerated_when_outputs_exist(
        self, pipeline_factory, settings, clock, tools, caplog
    ):
        caplog.set_level(logging.WARNING)
        clock.at(10, lambda: write_outputs(settings))
        tools.assess_fn = lambda path: True
        supervisor = FakeSupervisor(
            settings.bundle_path,
            settings.artifact_path,
            clock,
            exit_at=10,
            exit_code=1,
        )

        result = pipeline_factory(supervisor=supervisor).run()

        assert result.destination_path.exists()
        assert any(
            "exited with status 1" in r.getMessage() for r in caplog.records
        )


class HungSupervisor(FakeSupervisor):
    """Builder that never exits and carries a process id."""

    def launch(self, credentials):
        self.launched_with = credentials
        return BuildTask(
            MagicMock(pid=4242), self.bundle_path, self.artifact_path
        )


class TestTimeout:
    def test_running_builder_pid_is_logged(
        self, pipeline_factory, settings, credentials, clock, caplog
    ):
        caplog.set_level(logging.WARNING, logger="ReleasePipeline")
        settings.poll_deadline = 60
        clock.at(10, lambda: write_outputs(settings))
        supervisor = HungSupervisor(
            settings.bundle_path, settings.artifact_path, clock
        )

        ctx = pipeline_factory(settings=settings, supervisor=supervisor).build(
            credentials
        )

        assert ctx.state is PollState.TIMED_OUT
        assert supervisor.terminate_calls == 0
        assert any(
            "still running (pid 4242)" in r.getMessage() for r in caplog.records
        )


class TestFailures:
    def test_missing_credentials_never_launch(
        self, pipeline_factory, supervisor, tools, monkeypatch
    ):
        for key in (
            "APPLE_SIGNING_IDENTITY",
            "APPLE_TEAM_ID",
            "APPLE_ID",
            "APPLE_PASSWORD",
        ):
            monkeypatch.delenv(key, raising=False)

        with pytest.raises(MissingCredentialError):
            pipeline_factory(credentials=None).run()

        assert supervisor.launched_with is None

    def test_build_produced_nothing(
        self, pipeline_factory, settings, tools
    ):
        with pytest.raises(BuildArtifactMissingError) as excinfo:
            pipeline_factory().run()

        assert excinfo.value.kind == "app bundle"
        assert not settings.publish_path.exists()

    def test_disk_image_missing(self, pipeline_factory, settings, clock):
        clock.at(10, lambda: make_app_bundle(settings.bundle_path, "demo"))

        with pytest.raises(BuildArtifactMissingError) as excinfo:
            pipeline_factory().run()

        assert excinfo.value.kind == "disk image"
        assert excinfo.value.path == settings.artifact_path

    def test_notarization_rejected_aborts_before_staple(
        self, pipeline_factory, settings, tools, clock
    ):
        clock.at(10, lambda: write_outputs(settings))
        tools.notarize_error = CommandError("xcrun notarytool submit", 1)

        with pytest.raises(NotarizationRejectedError):
            pipeline_factory().run()

        assert tools.count("staple") == 0
        assert not settings.publish_path.exists()

    def test_staple_exhausted_still_publishes(
        self, pipeline_factory, settings, tools, clock
    ):
        clock.at(10, lambda: write_outputs(settings))
        tools.staple_results = [False] * 6
        tools.assess_fn = lambda path: tools.count("staple") > 0

        pipeline = pipeline_factory()
        result = pipeline.run()

        assert tools.count("staple") == 6
        assert [type(w) for w in pipeline.warnings] == [StapleExhaustedWarning]
        assert result.destination_path.exists()

    def test_signature_invalid_prevents_publish(
        self, pipeline_factory, settings, tools, clock
    ):
        clock.at(10, lambda: write_outputs(settings))
        tools.assess_fn = lambda path: True
        tools.signature_valid = False

        with pytest.raises(SignatureInvalidError):
            pipeline_factory().run()

        assert not settings.publish_path.exists()

    def test_unverified_notarization_is_a_warning(
        self, pipeline_factory, settings, tools, clock
    ):
        clock.at(10, lambda: write_outputs(settings))
        tools.assess_fn = lambda path: False
        tools.staple_results = [True]

        pipeline = pipeline_factory()
        result = pipeline.run()

        assert [type(w) for w in pipeline.warnings] == [
            NotarizationUnverifiedWarning
        ]
        assert result.destination_path.exists()


class TestOptionalSteps:
    def test_package_dmg_when_builder_does_not(
        self, pipeline_factory, settings, tools, clock, temp_dir
    ):
        settings.creates_artifact = False
        clock.at(10, lambda: make_app_bundle(settings.bundle_path, "demo"))
        tools.assess_fn = lambda path: True

        result = pipeline_factory(settings=settings).run()

        assert tools.count("create_dmg") == 1
        assert tools.count("sign") == 1
        assert result.source_path == settings.artifact_path

    def test_notarization_disabled(
        self, pipeline_factory, settings, tools, clock
    ):
        settings.notarize = False
        clock.at(10, lambda: write_outputs(settings))

        pipeline = pipeline_factory(settings=settings)
        pipeline.run()

        assert tools.count("submit_for_notarization") == 0
        assert tools.count("staple") == 0


class TestStaleOutputs:
    def make_stale(self, settings):
        write_outputs(settings)
        old = time.time() - 3600
        for path in (
            settings.artifact_path,
            settings.bundle_path / "Contents" / "Info.plist",
        ):
            os.utime(path, (old, old))

    def test_stale_outputs_rejected(self, pipeline_factory, settings):
        self.make_stale(settings)

        with pytest.raises(BuildArtifactMissingError, match="stale"):
            pipeline_factory().run()

    def test_allow_stale(self, pipeline_factory, settings, tools):
        self.make_stale(settings)
        settings.allow_stale = True
        tools.assess_fn = lambda path: True

        result = pipeline_factory(settings=settings).run()

        assert result.destination_path.exists()


class TestValidateBuildOutputs:
    def test_invalid_bundle(self, supervisor, settings):
        settings.bundle_path.mkdir(parents=True)
        task = supervisor.launch(None)

        with pytest.raises(BuildArtifactMissingError, match="not a valid"):
            validate_build_outputs(task, 0)

    def test_bundle_missing_executable(self, supervisor, settings):
        make_app_bundle(settings.bundle_path, "demo")
        (settings.bundle_path / "Contents" / "MacOS" / "demo").unlink()
        task = supervisor.launch(None)

        with pytest.raises(BuildArtifactMissingError, match="not a valid"):
            validate_build_outputs(task, 0, require_artifact=False)

    def test_bundle_only(self, supervisor, settings):
        make_app_bundle(settings.bundle_path, "demo")
        task = supervisor.launch(None)
        validate_build_outputs(task, 0, require_artifact=False)
