"""Shared fixtures and fakes for macrelease tests."""

import plistlib
import tempfile
from pathlib import Path

import pytest

import macrelease
from macrelease import (
    BuildStatus,
    BuildTask,
    CommandError,
    CredentialSet,
    TerminateOutcome,
)


class FakeClock:
    """Monotonic clock whose sleep() advances time and fires scheduled hooks."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._hooks: list[tuple[float, object]] = []

    def __call__(self) -> float:
        return self.now

    def at(self, when: float, action) -> None:
        self._hooks.append((when, action))
        self._fire()

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        self._fire()

    def _fire(self) -> None:
        due = [hook for hook in self._hooks if hook[0] <= self.now]
        self._hooks = [hook for hook in self._hooks if hook[0] > self.now]
        for _, action in due:
            action()


class FakeSupervisor:
    """Stands in for BuildSupervisor without spawning anything."""

    def __init__(
        self,
        bundle_path: Path,
        artifact_path: Path,
        clock: FakeClock | None = None,
        exit_at: float | None = None,
        exit_code: int = 0,
    ) -> None:
        self.bundle_path = bundle_path
        self.artifact_path = artifact_path
        self.clock = clock
        self.exit_at = exit_at
        self.exit_code = exit_code
        self.launched_with: CredentialSet | None = None
        self.terminate_calls = 0
        self.terminated = False

    def launch(self, credentials: CredentialSet) -> BuildTask:
        self.launched_with = credentials
        return BuildTask(None, self.bundle_path, self.artifact_path)

    def is_alive(self, task: BuildTask) -> bool:
        if self.terminated:
            return False
        if self.exit_at is None or self.clock is None:
            return True
        return self.clock.now < self.exit_at

    def terminate(self, task: BuildTask) -> TerminateOutcome:
        self.terminate_calls += 1
        if not self.is_alive(task):
            task.settle(BuildStatus.COMPLETED, self.exit_code)
            return TerminateOutcome.ALREADY_EXITED
        self.terminated = True
        task.settle(BuildStatus.TERMINATED, -15)
        return TerminateOutcome.TERMINATED

    def join(self, task: BuildTask) -> int | None:
        task.settle(BuildStatus.COMPLETED, self.exit_code)
        return task.exit_code


class FakeTools:
    """Records calls instead of running macOS tools."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.identities: list[str] = []
        self.identities_error: CommandError | None = None
        self.signature_valid = True
        self.assess_fn = lambda path: False
        self.notarize_output = (
            "Conducting pre-submission checks...\n"
            "  id: 2efe2717-52ef-43a5-96dc-0797e4ca1041\n"
            "  status: In Progress\n"
            "Processing complete\n"
            "  id: 2efe2717-52ef-43a5-96dc-0797e4ca1041\n"
            "  status: Accepted\n"
        )
        self.notarize_error: CommandError | None = None
        self.staple_results: list[bool] = []
        self.on_notarize = None

    def find_signing_identities(self) -> list[str]:
        self.calls.append(("find_signing_identities", None))
        if self.identities_error:
            raise self.identities_error
        return list(self.identities)

    def verify_signature(self, path: Path) -> bool:
        self.calls.append(("verify_signature", path))
        return self.signature_valid

    def assess(self, path: Path) -> bool:
        self.calls.append(("assess", path))
        return self.assess_fn(path)

    def submit_for_notarization(self, path: Path, credentials) -> str:
        self.calls.append(("submit_for_notarization", path))
        if self.notarize_error:
            raise self.notarize_error
        if self.on_notarize:
            self.on_notarize()
        return self.notarize_output

    def staple(self, path: Path) -> bool:
        self.calls.append(("staple", path))
        if self.staple_results:
            return self.staple_results.pop(0)
        return True

    def create_dmg(self, source: Path, output: Path, volume_name: str) -> None:
        self.calls.append(("create_dmg", output))
        output.write_bytes(b"fake dmg")

    def sign(self, path: Path, identity: str) -> None:
        self.calls.append(("sign", path))

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)


def make_app_bundle(path: Path, executable: str = "demo") -> Path:
    """Create a minimal .app bundle with an Info.plist and executable."""
    macos = path / "Contents" / "MacOS"
    macos.mkdir(parents=True, exist_ok=True)
    (macos / executable).write_bytes(b"\xcf\xfa\xed\xfe fake binary")
    with open(path / "Contents" / "Info.plist", "wb") as f:
        plistlib.dump({"CFBundleExecutable": executable}, f)
    return path


@pytest.fixture(autouse=True)
def clear_secrets():
    """Secrets are registered module-wide; keep tests independent."""
    macrelease._secrets.clear()
    yield
    macrelease._secrets.clear()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tools():
    return FakeTools()


@pytest.fixture
def credentials():
    return CredentialSet(
        signing_identity="Developer ID Application: Jane Doe (ABCDE12345)",
        account_id="jane@example.com",
        account_secret="xkcd-app-specific-936",
        organization_id="ABCDE12345",
    )
