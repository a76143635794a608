#!/usr/bin/env python3
"""macrelease - build, notarize and publish a macOS release.

This module drives an external application build (for example a Tauri
build), watches for its outputs, gets the final disk image notarized and
stapled, verifies it and copies it to a distribution directory.

The build tools involved are slow and occasionally hang after their real
work is finished, and they only expose progress through side effects:
files appearing on disk, or ``spctl`` starting to accept the disk image.
The orchestrator therefore polls two independent completion conditions
(artifact produced, artifact notarized) next to the build process, and is
allowed to terminate a build that is known to be complete but still alive.

Usage (CLI):
    # Full pipeline: build, notarize, staple, verify, publish
    macrelease run --product "My App" --version 1.2.0

    # Show which credentials were found (masked)
    macrelease credentials

    # Notarize and staple an existing disk image
    macrelease notarize "dist/My App_1.2.0_aarch64.dmg"

    # Verify a disk image and copy it to a downloads folder
    macrelease verify "dist/My App_1.2.0_aarch64.dmg" --publish public/downloads

Usage (API):
    from macrelease import ReleasePipeline, ReleaseSettings

    settings = ReleaseSettings(product="My App", version="1.2.0")
    result = ReleasePipeline(settings).run()
    print(result.destination_path, result.size_human)
"""

import argparse
import datetime
import enum
import itertools
import logging
import os
import platform
import plistlib
import re
import shlex
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Credential environment variables, in the order they are reported
ENV_SIGNING_IDENTITY = "APPLE_SIGNING_IDENTITY"
ENV_TEAM_ID = "APPLE_TEAM_ID"
ENV_APPLE_ID = "APPLE_ID"
ENV_APPLE_PASSWORD = "APPLE_PASSWORD"

CREDENTIAL_VARS = (
    ENV_SIGNING_IDENTITY,
    ENV_TEAM_ID,
    ENV_APPLE_ID,
    ENV_APPLE_PASSWORD,
)

# Class of signing identity picked up by auto-detection
SIGNING_IDENTITY_CLASS = "Developer ID Application"

# Only this many characters of the signing identity are ever displayed
IDENTITY_DISPLAY_LENGTH = 50

# Build defaults (Tauri layout)
DEFAULT_BUILD_COMMAND = "npx @tauri-apps/cli build"
DEFAULT_BUNDLE_DIR = "src-tauri/target/release/bundle"
DEFAULT_VERSION = "1.0.0"
DEFAULT_ENV_FILE = "../.env.local"
DEFAULT_PUBLISH_DIR = "../public/downloads"

# Poll loop timing, in seconds
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_POLL_DEADLINE = 600.0
DEFAULT_HEARTBEAT_INTERVAL = 30.0

# Stapling: wait for the ticket to propagate, then retry
DEFAULT_STAPLE_GRACE = 30.0
DEFAULT_STAPLE_ATTEMPTS = 6
DEFAULT_STAPLE_DELAY = 10.0

# Seconds allowed for a terminated build to exit before it is killed
DEFAULT_TERMINATE_TIMEOUT = 10.0

# Filesystems with coarse timestamps can report an mtime slightly before
# the build start for a file written right after launch
FRESHNESS_SLACK = 2.0

# Marker printed by `notarytool submit --wait` for an accepted submission
NOTARIZATION_ACCEPTED = "Accepted"

# Tauri names disk images by target triple architecture
ARCH_ALIASES = {
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "x86_64": "x64",
    "amd64": "x64",
}

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macrelease.toml in current directory
    3. macrelease.toml in current directory

    Credentials are deliberately not read from here; they belong in the
    env file named by ``[credentials] env_file``, which is kept out of
    version control.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If a config file exists but is not valid TOML

    Example .macrelease.toml:
        [build]
        command = "npx @tauri-apps/cli build"
        product = "My App"
        version = "1.2.0"

        [poll]
        deadline = 900

        [publish]
        dir = "../public/downloads"
    """
    import tomllib

    if config_path is not None:
        paths_to_try = [Path(config_path)]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macrelease.toml",
            cwd / "macrelease.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid configuration file {path}: {e}"
                ) from e
            return data

    return {}


def _get_section_value(
    config: dict[str, object], section: str, key: str
) -> object:
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return None
    return section_config.get(key)


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "build", "publish")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    value = _get_section_value(config, section, key)
    if isinstance(value, str):
        return value
    return default


def get_config_number(
    config: dict[str, object],
    section: str,
    key: str,
    default: float | None = None,
) -> float | None:
    """Get a numeric value from config, ignoring values of other types."""
    value = _get_section_value(config, section, key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    return default


def get_config_flag(
    config: dict[str, object],
    section: str,
    key: str,
    default: bool | None = None,
) -> bool | None:
    """Get a boolean value from config."""
    value = _get_section_value(config, section, key)
    if isinstance(value, bool):
        return value
    return default


# ----------------------------------------------------------------------------
# Error handling


class ReleaseError(Exception):
    """Base exception class for macrelease errors.

    ``fatal`` errors abort the pipeline. Non-fatal ones (see
    ReleaseWarning) are logged and recorded by degrade_to_warning().
    ``remediation`` is an optional manual command or hint shown with the
    error.
    """

    fatal = True

    def __init__(self, message: str, remediation: str | None = None):
        self.remediation = remediation
        super().__init__(message)


class ReleaseWarning(ReleaseError):
    """A failed step that leaves the release usable."""

    fatal = False


class CommandError(ReleaseError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class FileError(ReleaseError):
    """Exception raised when a file operation fails."""


class ConfigurationError(ReleaseError):
    """Exception raised when configuration is invalid."""


class PackagingError(ReleaseError):
    """Exception raised when disk image creation or signing fails."""


class MissingCredentialError(ReleaseError):
    """One or more required credentials could not be resolved."""

    def __init__(self, missing: list[str], env_file: Pathlike | None = None):
        self.missing = list(missing)
        source = f"{env_file}" if env_file else "an env file"
        super().__init__(
            "Missing required environment variables: "
            + ", ".join(self.missing),
            remediation=(
                f"Add these to {source} or export them before running.\n"
                "To find your signing identity:\n"
                "  security find-identity -v -p codesigning"
            ),
        )


class BuildArtifactMissingError(ReleaseError):
    """The build did not leave a usable output at the expected path."""

    def __init__(self, kind: str, path: Path, reason: str = "not found"):
        self.kind = kind
        self.path = path
        self.reason = reason
        super().__init__(
            f"Build failed - {kind} {reason}: {path}",
            remediation=f"ls -la {shlex.quote(str(path.parent))}",
        )


class NotarizationRejectedError(ReleaseError):
    """The notarization service did not accept the artifact."""

    def __init__(
        self,
        path: Path,
        reason: str,
        submission_id: str | None = None,
        output: str | None = None,
    ):
        self.path = path
        self.submission_id = submission_id
        self.output = output
        if submission_id:
            remediation = (
                f"xcrun notarytool log {submission_id} "
                "--apple-id <APPLE_ID> --team-id <APPLE_TEAM_ID>"
            )
        else:
            remediation = "xcrun notarytool history --apple-id <APPLE_ID>"
        super().__init__(
            f"Notarization rejected for {path}: {reason}",
            remediation=remediation,
        )


class SignatureInvalidError(ReleaseError):
    """The final artifact does not carry a valid code signature."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"Code signature invalid: {path}",
            remediation=f"codesign -dv --verbose=4 {shlex.quote(str(path))}",
        )


class StapleExhaustedWarning(ReleaseWarning):
    """Stapling kept failing; the artifact still verifies online."""

    def __init__(self, path: Path, attempts: int):
        self.path = path
        self.attempts = attempts
        super().__init__(
            f"Stapling failed after {attempts} attempts: {path}",
            remediation=f"xcrun stapler staple {shlex.quote(str(path))}",
        )


class NotarizationUnverifiedWarning(ReleaseWarning):
    """Gatekeeper did not (yet) accept the artifact."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"Gatekeeper check failed - artifact may not be notarized: {path}",
            remediation=(
                "spctl -a -t open --context context:primary-signature "
                f"{shlex.quote(str(path))}"
            ),
        )


def degrade_to_warning(
    error: ReleaseError,
    log: logging.Logger,
    warnings: list[ReleaseWarning] | None = None,
) -> None:
    """Apply the degrade policy to an error raised by a pipeline step.

    Fatal errors are re-raised unchanged. Non-fatal ones are logged as
    warnings and appended to ``warnings``.
    """
    if error.fatal or not isinstance(error, ReleaseWarning):
        raise error
    log.warning("%s", error)
    if error.remediation:
        log.warning("  to retry manually: %s", error.remediation)
    if warnings is not None:
        warnings.append(error)


# ----------------------------------------------------------------------------
# Secret redaction

_secrets: set[str] = set()


def register_secret(value: str | None) -> None:
    """Register a value that must never appear in logs or error messages."""
    if value:
        _secrets.add(value)


def register_credentials(credentials: "CredentialSet") -> None:
    """Register the account fields of a credential set for redaction.

    The signing identity is left alone; it is shown truncated instead.
    """
    register_secret(credentials.account_id)
    register_secret(credentials.account_secret)
    register_secret(credentials.organization_id)


def redact(text: str) -> str:
    """Replace every registered secret in text with a placeholder."""
    for secret in sorted(_secrets, key=len, reverse=True):
        text = text.replace(secret, "[redacted]")
    return text


def mask_secret(value: str, keep: int = IDENTITY_DISPLAY_LENGTH) -> str:
    """Truncate a value for display, marking that it was cut."""
    if len(value) <= keep:
        return value
    return value[:keep] + "..."


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """A simple terminal spinner for long-running operations.

    Used while `notarytool submit --wait` blocks, which can take minutes.

    Example:
        with ProgressSpinner("Waiting for notarization"):
            time.sleep(5)
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = ""):
        self.message = message
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.is_set():
            sys.stdout.write(f"\r{self.message} {next(spinner)} ")
            sys.stdout.flush()
            time.sleep(0.1)
        sys.stdout.write(f"\r{self.message} done\n")
        sys.stdout.flush()

    def start(self) -> None:
        """Start the spinner."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the spinner."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        blue = "\x1b[34;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


class SecretFilter(logging.Filter):
    """Scrub registered secrets from log records before they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _secrets:
            record.msg = redact(record.getMessage())
            record.args = None
        return True


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    stream_handler.addFilter(SecretFilter())
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


def _section(*args: str) -> None:
    """Display a section header."""
    print()
    print("-" * 79)
    print(*args)


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Registered secrets are redacted from the logged command line and
    from the resulting CommandError. Uses shell=False.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = redact(shlex.join(command))
    if log:
        log.debug("$ %s", cmd_str)
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        output = e.stderr or e.output
        raise CommandError(
            cmd_str, e.returncode, redact(output) if output else output
        ) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


def check_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> bool:
    """Run a command used as a yes/no probe.

    Exit status 0 means yes. Any other status, or a tool that is not
    installed, means no; neither is an error.
    """
    try:
        run_command(command, log=log)
    except CommandError as e:
        if log:
            log.debug("probe returned %d: %s", e.returncode, e.command)
        return False
    return True


# ----------------------------------------------------------------------------
# External tools


class MacTools:
    """Thin wrappers around the macOS command line tools the pipeline uses.

    Every method maps to one external command. Probe-style commands
    (signature check, Gatekeeper assessment, stapling) return bool;
    the others raise CommandError on failure.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        """Run a command and return its output."""
        return run_command(command, log=self.log)

    def check_command(self, command: list[str]) -> bool:
        """Run a command and report whether it exited with status 0."""
        return check_command(command, log=self.log)

    def find_signing_identities(self) -> list[str]:
        """List valid codesigning identities from the keychain."""
        output = self.run_command(
            ["security", "find-identity", "-v", "-p", "codesigning"]
        )
        return parse_identities(output)

    def verify_signature(self, path: Path) -> bool:
        """Check the code signature of a file or bundle."""
        return self.check_command(["codesign", "-v", str(path)])

    def assess(self, path: Path) -> bool:
        """Ask Gatekeeper whether it would open a disk image."""
        return self.check_command(
            [
                "spctl",
                "-a",
                "-t",
                "open",
                "--context",
                "context:primary-signature",
                str(path),
            ]
        )

    def submit_for_notarization(
        self, path: Path, credentials: "CredentialSet"
    ) -> str:
        """Submit to Apple and block until a verdict is available."""
        register_credentials(credentials)
        return self.run_command(
            [
                "xcrun",
                "notarytool",
                "submit",
                str(path),
                "--apple-id",
                credentials.account_id,
                "--password",
                credentials.account_secret,
                "--team-id",
                credentials.organization_id,
                "--wait",
            ]
        )

    def staple(self, path: Path) -> bool:
        """Attach the notarization ticket to a file."""
        return self.check_command(["xcrun", "stapler", "staple", str(path)])

    def create_dmg(self, source: Path, output: Path, volume_name: str) -> None:
        """Create a compressed disk image from a folder or bundle."""
        self.run_command(
            [
                "hdiutil",
                "create",
                "-volname",
                volume_name,
                "-srcfolder",
                str(source),
                "-ov",
                "-format",
                "UDZO",
                str(output),
            ]
        )

    def sign(self, path: Path, identity: str) -> None:
        """Sign a file with a keychain identity."""
        self.run_command(
            [
                "codesign",
                "--sign",
                identity,
                "--force",
                "--timestamp",
                "--verbose",
                str(path),
            ]
        )


IDENTITY_PATTERN = re.compile(r'^\s*\d+\)\s+[0-9A-Fa-f]+\s+"(?P<name>[^"]+)"')


def parse_identities(output: str) -> list[str]:
    """Extract identity names from `security find-identity` output."""
    identities = []
    for line in output.splitlines():
        match = IDENTITY_PATTERN.match(line)
        if match:
            identities.append(match.group("name"))
    return identities


# ----------------------------------------------------------------------------
# Credential resolution


@dataclass(frozen=True)
class CredentialSet:
    """The four secrets the builder and notarization client need."""

    signing_identity: str
    account_id: str
    account_secret: str
    organization_id: str

    def __repr__(self) -> str:
        return "CredentialSet(" + ", ".join(
            f"{name}={value}" for name, value in self.describe()
        ) + ")"

    def as_environment(self) -> dict[str, str]:
        """Map to the environment variables the builder expects."""
        return {
            ENV_SIGNING_IDENTITY: self.signing_identity,
            ENV_TEAM_ID: self.organization_id,
            ENV_APPLE_ID: self.account_id,
            ENV_APPLE_PASSWORD: self.account_secret,
        }

    def describe(self) -> list[tuple[str, str]]:
        """Masked, display-safe view of the credentials.

        Only a truncated signing identity is shown; the other three are
        reported as present.
        """
        return [
            (ENV_SIGNING_IDENTITY, mask_secret(self.signing_identity)),
            (ENV_TEAM_ID, "[set]"),
            (ENV_APPLE_ID, "[set]"),
            (ENV_APPLE_PASSWORD, "[set]"),
        ]


def load_env_file(path: Pathlike) -> dict[str, str]:
    """Read credential variables from a dotenv-style file.

    Only the credential variables are returned; other keys in the file
    are ignored. Keys without a value map to an empty string.
    """
    values = dotenv_values(path)
    return {
        key: (values.get(key) or "").strip()
        for key in CREDENTIAL_VARS
        if key in values
    }


def discover_signing_identity(tools: MacTools | None = None) -> str | None:
    """Pick the first installed Developer ID Application identity."""
    log = logging.getLogger("credentials")
    tools = tools or MacTools()
    try:
        identities = tools.find_signing_identities()
    except CommandError as e:
        log.warning("Could not list signing identities: %s", e)
        return None
    for identity in identities:
        if SIGNING_IDENTITY_CLASS in identity:
            return identity
    return None


def resolve_credentials(
    env_file: Pathlike | None = None,
    environ: dict[str, str] | None = None,
    discover: bool = True,
    tools: MacTools | None = None,
) -> CredentialSet:
    """Resolve the credential set from the environment and an env file.

    Values already set in the environment win; the env file only fills
    the gaps. If the signing identity is still unknown, the keychain is
    searched for a Developer ID Application identity.

    Args:
        env_file: Optional dotenv-style file with APPLE_* variables
        environ: Environment mapping (defaults to os.environ)
        discover: Whether to search the keychain for a signing identity
        tools: MacTools instance used for the keychain search

    Returns:
        A fully populated CredentialSet

    Raises:
        MissingCredentialError: Listing every variable still empty
    """
    log = logging.getLogger("credentials")
    if environ is None:
        environ = dict(os.environ)

    values = {key: (environ.get(key) or "").strip() for key in CREDENTIAL_VARS}

    if env_file is not None and Path(env_file).is_file():
        log.info("Loading credentials from %s", env_file)
        for key, value in load_env_file(env_file).items():
            if not values[key]:
                values[key] = value

    if not values[ENV_SIGNING_IDENTITY] and discover:
        identity = discover_signing_identity(tools)
        if identity:
            log.info(
                "Auto-detected signing identity: %s", mask_secret(identity)
            )
            values[ENV_SIGNING_IDENTITY] = identity

    missing = [key for key in CREDENTIAL_VARS if not values[key]]
    if missing:
        raise MissingCredentialError(missing, env_file)

    credentials = CredentialSet(
        signing_identity=values[ENV_SIGNING_IDENTITY],
        account_id=values[ENV_APPLE_ID],
        account_secret=values[ENV_APPLE_PASSWORD],
        organization_id=values[ENV_TEAM_ID],
    )
    register_credentials(credentials)
    return credentials


# ----------------------------------------------------------------------------
# Filesystem probes


def stat_with_retry(
    path: Path,
    attempts: int = 3,
    delay: float = 0.2,
    sleep=time.sleep,
) -> os.stat_result | None:
    """Stat a path that another process may still be writing.

    Returns None when the path does not exist. Other I/O errors are
    retried; if they persist the path is reported as absent.
    """
    log = logging.getLogger("filesystem")
    for attempt in range(1, attempts + 1):
        try:
            return path.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            log.debug(
                "stat %s failed (attempt %d/%d): %s", path, attempt, attempts, e
            )
            if attempt < attempts:
                sleep(delay)
    return None


def is_fresh(info: os.stat_result, since: float | None) -> bool:
    """Whether a file was modified after ``since`` (a wall-clock time)."""
    if since is None:
        return True
    return info.st_mtime >= since - FRESHNESS_SLACK


def bundle_marker(path: Path) -> Path:
    """File whose mtime tells when a bundle was last written."""
    return path / "Contents" / "Info.plist"


def is_valid_bundle(path: Path) -> bool:
    """Check that a path looks like a complete .app bundle.

    The bundle must be a directory with a readable Contents/Info.plist;
    if the plist names an executable, it must exist in Contents/MacOS.
    """
    info_plist = bundle_marker(path)
    if not path.is_dir() or not info_plist.is_file():
        return False
    try:
        with open(info_plist, "rb") as f:
            info = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError):
        return False
    executable = info.get("CFBundleExecutable") if isinstance(info, dict) else None
    if executable:
        return (path / "Contents" / "MacOS" / executable).is_file()
    return True


# ----------------------------------------------------------------------------
# Build supervision


class BuildStatus(enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class TerminateOutcome(enum.Enum):
    """Result of a best-effort terminate() call.

    ALREADY_EXITED and FAILED are both tolerated by callers; they are
    kept distinct so logs show which one happened.
    """

    TERMINATED = "terminated"
    ALREADY_EXITED = "already-exited"
    FAILED = "failed"


class BuildTask:
    """A supervised run of the external builder.

    The status leaves RUNNING exactly once, either because the process
    completed on its own or because it was terminated.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        bundle_path: Path,
        artifact_path: Path,
        started_at: float | None = None,
    ):
        self.process: subprocess.Popen | None = process
        self.bundle_path = Path(bundle_path)
        self.artifact_path = Path(artifact_path)
        self.started_at = time.time() if started_at is None else started_at
        self.status = BuildStatus.RUNNING
        self.exit_code: int | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def settle(self, status: BuildStatus, exit_code: int | None) -> bool:
        """Record the end of the task. Returns False if already settled."""
        if self.status is not BuildStatus.RUNNING:
            return False
        self.status = status
        self.exit_code = exit_code
        return True

    def retire(self) -> None:
        """Release the process handle once the task has ended."""
        if self.status is BuildStatus.RUNNING:
            raise RuntimeError("cannot retire a running build task")
        self.process = None


class BuildSupervisor:
    """Launches the builder and owns its lifecycle.

    Args:
        command: Builder command line
        bundle_path: Where the builder writes the .app bundle
        artifact_path: Where the builder (or packager) writes the disk image
        cwd: Working directory for the builder
        terminate_timeout: Seconds to wait after SIGTERM before SIGKILL
    """

    def __init__(
        self,
        command: list[str],
        bundle_path: Pathlike,
        artifact_path: Pathlike,
        cwd: Pathlike | None = None,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
    ) -> None:
        self.command = list(command)
        self.bundle_path = Path(bundle_path)
        self.artifact_path = Path(artifact_path)
        self.cwd = Path(cwd) if cwd else None
        self.terminate_timeout = terminate_timeout
        self.log = logging.getLogger(self.__class__.__name__)

    def launch(self, credentials: CredentialSet) -> BuildTask:
        """Start the builder without waiting for it.

        The credentials are passed only through the child's environment.

        Raises:
            CommandError: If the builder cannot be started
        """
        env = dict(os.environ)
        env.update(credentials.as_environment())
        cmd_str = shlex.join(self.command)
        self.log.info("$ %s", cmd_str)
        started_at = time.time()
        try:
            process = subprocess.Popen(self.command, cwd=self.cwd, env=env)
        except OSError as e:
            raise CommandError(cmd_str, 127, str(e)) from e
        return BuildTask(
            process, self.bundle_path, self.artifact_path, started_at
        )

    def is_alive(self, task: BuildTask) -> bool:
        """Non-blocking liveness check."""
        if task.process is None:
            return False
        return task.process.poll() is None

    def terminate(self, task: BuildTask) -> TerminateOutcome:
        """Stop the builder and reap it. Never raises."""
        process = task.process
        if process is None or process.poll() is not None:
            if process is not None:
                task.settle(BuildStatus.COMPLETED, process.returncode)
            self.log.debug("builder already exited")
            return TerminateOutcome.ALREADY_EXITED
        try:
            process.terminate()
            if process.returncode is not None:
                # exited on its own before the signal could be sent
                task.settle(BuildStatus.COMPLETED, process.returncode)
                self.log.debug("builder exited before SIGTERM")
                return TerminateOutcome.ALREADY_EXITED
            try:
                process.wait(timeout=self.terminate_timeout)
            except subprocess.TimeoutExpired:
                self.log.warning(
                    "builder ignored SIGTERM for %ss, killing it",
                    self.terminate_timeout,
                )
                process.kill()
                process.wait()
        except ProcessLookupError:
            task.settle(BuildStatus.COMPLETED, process.poll())
            return TerminateOutcome.ALREADY_EXITED
        except OSError as e:
            self.log.warning("could not terminate builder: %s", e)
            return TerminateOutcome.FAILED
        task.settle(BuildStatus.TERMINATED, process.returncode)
        self.log.info("builder terminated (pid %d)", process.pid)
        return TerminateOutcome.TERMINATED

    def join(self, task: BuildTask) -> int | None:
        """Block until the builder exits and return its exit status."""
        if task.process is None:
            return task.exit_code
        code = task.process.wait()
        task.settle(BuildStatus.COMPLETED, code)
        return code


# ----------------------------------------------------------------------------
# Dual-condition polling


class ArtifactState:
    """Build outputs observed so far. Flags only ever go from False to True."""

    def __init__(self) -> None:
        self._bundle_present = False
        self._artifact_present = False
        self._notarized = False

    @property
    def bundle_present(self) -> bool:
        return self._bundle_present

    @property
    def artifact_present(self) -> bool:
        return self._artifact_present

    @property
    def notarized(self) -> bool:
        return self._notarized

    def mark_bundle(self) -> None:
        self._bundle_present = True

    def mark_artifact(self) -> None:
        self._artifact_present = True

    def mark_notarized(self) -> None:
        self._notarized = True

    def __repr__(self) -> str:
        return (
            f"ArtifactState(bundle_present={self._bundle_present}, "
            f"artifact_present={self._artifact_present}, "
            f"notarized={self._notarized})"
        )


class PollState(enum.Enum):
    WAITING = "waiting"
    ARTIFACT_SEEN = "artifact-seen"
    NOTARIZED = "notarized"
    DONE = "done"
    TIMED_OUT = "timed-out"
    PROCESS_EXITED = "process-exited"


TERMINAL_STATES = frozenset(
    {PollState.DONE, PollState.TIMED_OUT, PollState.PROCESS_EXITED}
)


class PollContext:
    """Everything the poll loop knows about the build in progress."""

    def __init__(self, heartbeat: float = DEFAULT_HEARTBEAT_INTERVAL):
        self.state = PollState.WAITING
        self.elapsed = 0.0
        self.artifacts = ArtifactState()
        self.exit_code: int | None = None
        self.terminate_outcome: TerminateOutcome | None = None
        self.transitions: list[tuple[PollState, float]] = []
        self.heartbeat = heartbeat
        self.next_heartbeat = heartbeat

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: PollState) -> None:
        self.state = state
        self.transitions.append((state, self.elapsed))


class DualConditionPoller:
    """Watch a running build for completion signals other than its exit.

    On every tick, in order:
    1. if the builder has exited, stop (PROCESS_EXITED);
    2. in WAITING, if a fresh artifact exists, move to ARTIFACT_SEEN;
    3. in ARTIFACT_SEEN, if Gatekeeper accepts the artifact, move to
       NOTARIZED, terminate the builder and stop (DONE).
    The loop stops with TIMED_OUT at the deadline; the builder is left
    running in that case.

    Args:
        supervisor: Supervisor owning the build process
        task: The running build
        oracle: Callable returning True when the artifact is notarized
        interval: Seconds between ticks
        deadline: Seconds before giving up
        heartbeat: Seconds between progress messages
        since: Wall-clock time before which outputs count as stale
            (None disables the check)
        clock: Monotonic clock
        sleep: Sleep function
    """

    def __init__(
        self,
        supervisor: BuildSupervisor,
        task: BuildTask,
        oracle,
        interval: float = DEFAULT_POLL_INTERVAL,
        deadline: float = DEFAULT_POLL_DEADLINE,
        heartbeat: float = DEFAULT_HEARTBEAT_INTERVAL,
        since: float | None = None,
        clock=time.monotonic,
        sleep=time.sleep,
    ) -> None:
        if interval <= 0 or deadline <= 0 or heartbeat <= 0:
            raise ConfigurationError(
                "Poll interval, deadline and heartbeat must be positive"
            )
        self.supervisor = supervisor
        self.task = task
        self.oracle = oracle
        self.interval = interval
        self.deadline = deadline
        self.heartbeat = heartbeat
        self.since = since
        self.clock = clock
        self.sleep = sleep
        self.log = logging.getLogger(self.__class__.__name__)

    def artifact_ready(self) -> bool:
        info = stat_with_retry(self.task.artifact_path, sleep=self.sleep)
        return info is not None and is_fresh(info, self.since)

    def bundle_ready(self) -> bool:
        info = stat_with_retry(
            bundle_marker(self.task.bundle_path), sleep=self.sleep
        )
        return info is not None and is_fresh(info, self.since)

    def step(self, ctx: PollContext) -> PollState:
        """Evaluate one tick and return the resulting state."""
        if ctx.finished:
            return ctx.state

        if not self.supervisor.is_alive(self.task):
            ctx.exit_code = self.supervisor.join(self.task)
            ctx.transition(PollState.PROCESS_EXITED)
            self.log.info(
                "builder exited with status %s after %ds",
                ctx.exit_code,
                ctx.elapsed,
            )
            return ctx.state

        if not ctx.artifacts.bundle_present and self.bundle_ready():
            ctx.artifacts.mark_bundle()
            self.log.info("bundle found: %s", self.task.bundle_path)

        if ctx.state is PollState.WAITING:
            if self.artifact_ready():
                ctx.artifacts.mark_artifact()
                ctx.transition(PollState.ARTIFACT_SEEN)
                self.log.info(
                    "artifact found after %ds: %s",
                    ctx.elapsed,
                    self.task.artifact_path,
                )
        elif ctx.state is PollState.ARTIFACT_SEEN:
            if self.oracle(self.task.artifact_path):
                ctx.artifacts.mark_notarized()
                ctx.transition(PollState.NOTARIZED)
                self.log.info(
                    "artifact notarized after %ds; stopping builder",
                    ctx.elapsed,
                )
                ctx.terminate_outcome = self.supervisor.terminate(self.task)
                ctx.exit_code = self.task.exit_code
                ctx.transition(PollState.DONE)
        return ctx.state

    def beat(self, ctx: PollContext) -> None:
        if ctx.elapsed >= ctx.next_heartbeat:
            self.log.info(
                "still building... %ds elapsed (%s)",
                ctx.elapsed,
                ctx.state.value,
            )
            while ctx.next_heartbeat <= ctx.elapsed:
                ctx.next_heartbeat += ctx.heartbeat

    def run(self) -> PollContext:
        """Poll until a terminal state is reached."""
        ctx = PollContext(self.heartbeat)
        start = self.clock()
        while True:
            ctx.elapsed = self.clock() - start
            if ctx.elapsed >= self.deadline:
                ctx.transition(PollState.TIMED_OUT)
                self.log.warning(
                    "build did not finish within %ds", self.deadline
                )
                break
            self.step(ctx)
            if ctx.finished:
                break
            self.beat(ctx)
            self.sleep(min(self.interval, self.deadline - ctx.elapsed))
        return ctx


def validate_build_outputs(
    task: BuildTask,
    exit_code: int | None,
    require_artifact: bool = True,
    since: float | None = None,
) -> None:
    """Check the build left a valid bundle (and disk image) behind.

    A non-zero exit code is only logged: the builder is known to report
    failure after producing good outputs, so the outputs decide.

    Raises:
        BuildArtifactMissingError: For a missing, stale or invalid output
    """
    log = logging.getLogger("build")
    if exit_code:
        log.warning(
            "builder exited with status %s; checking outputs anyway", exit_code
        )

    if stat_with_retry(task.bundle_path) is None:
        raise BuildArtifactMissingError("app bundle", task.bundle_path)
    if not is_valid_bundle(task.bundle_path):
        raise BuildArtifactMissingError(
            "app bundle", task.bundle_path, "is not a valid bundle"
        )
    marker_info = stat_with_retry(bundle_marker(task.bundle_path))
    if marker_info is None or not is_fresh(marker_info, since):
        raise BuildArtifactMissingError(
            "app bundle", task.bundle_path, "is stale (older than this build)"
        )

    if require_artifact:
        validate_artifact(task.artifact_path, since)


def validate_artifact(path: Path, since: float | None = None) -> None:
    """Check the disk image exists and is not left over from an earlier run."""
    info = stat_with_retry(path)
    if info is None:
        raise BuildArtifactMissingError("disk image", path)
    if not is_fresh(info, since):
        raise BuildArtifactMissingError(
            "disk image", path, "is stale (older than this build)"
        )


# ----------------------------------------------------------------------------
# Disk image creation


class DiskImagePackager:
    """Creates and signs a disk image from the built bundle.

    Only needed when the builder does not produce the disk image itself.
    """

    def __init__(
        self,
        tools: MacTools,
        source: Pathlike,
        output: Pathlike,
        volume_name: str | None = None,
    ) -> None:
        self.tools = tools
        self.source = Path(source)
        self.output = Path(output)
        self.volume_name = volume_name or self.source.stem
        self.log = logging.getLogger(self.__class__.__name__)

    def create_dmg(self) -> Path:
        """Create the disk image with hdiutil.

        Raises:
            PackagingError: If hdiutil fails or leaves no output
        """
        self.log.info("Creating DMG: %s", self.output)
        if self.output.exists():
            self.output.unlink()
        self.output.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.tools.create_dmg(self.source, self.output, self.volume_name)
        except CommandError as e:
            raise PackagingError(
                f"Failed to create DMG {self.output}: {e}"
            ) from e
        if not self.output.exists():
            raise PackagingError(f"Failed to create DMG: {self.output}")
        return self.output

    def sign_dmg(self, identity: str) -> None:
        """Sign the disk image with the release identity."""
        self.log.info("Signing DMG: %s", self.output)
        try:
            self.tools.sign(self.output, identity)
        except CommandError as e:
            raise PackagingError(
                f"Failed to sign DMG {self.output}: {e}"
            ) from e

    def process(self, identity: str) -> Path:
        self.create_dmg()
        self.sign_dmg(identity)
        return self.output


# ----------------------------------------------------------------------------
# Notarization


@dataclass
class NotarizationReceipt:
    """Verdict reported by `notarytool submit --wait`."""

    submission_id: str | None
    status: str | None
    output: str = field(default="", repr=False)

    ID_PATTERN = re.compile(r"^\s*id:\s*(\S+)", re.MULTILINE)
    STATUS_PATTERN = re.compile(r"^\s*status:\s*(.+?)\s*$", re.MULTILINE)

    @property
    def accepted(self) -> bool:
        return self.status == NOTARIZATION_ACCEPTED

    @classmethod
    def parse(cls, output: str) -> "NotarizationReceipt":
        """Read the submission id and final status from client output.

        notarytool prints a status line per poll; the last one is the
        verdict.
        """
        ids = cls.ID_PATTERN.findall(output)
        statuses = cls.STATUS_PATTERN.findall(output)
        return cls(
            submission_id=ids[0] if ids else None,
            status=statuses[-1] if statuses else None,
            output=output,
        )


class NotarizationSubmitter:
    """Submits an artifact for notarization and staples the ticket.

    Submission is skipped when Gatekeeper already accepts the artifact.
    A rejection is fatal and never retried. Stapling is retried, and
    running out of attempts is reported as a StapleExhaustedWarning.

    Args:
        tools: MacTools instance
        credentials: Account credentials for the notarization client
        grace: Seconds to wait before the first staple attempt
        attempts: Number of staple attempts
        delay: Seconds between staple attempts
        progress: Whether to show a spinner while waiting for a verdict
        sleep: Sleep function
    """

    def __init__(
        self,
        tools: MacTools,
        credentials: CredentialSet,
        grace: float = DEFAULT_STAPLE_GRACE,
        attempts: int = DEFAULT_STAPLE_ATTEMPTS,
        delay: float = DEFAULT_STAPLE_DELAY,
        progress: bool = True,
        sleep=time.sleep,
    ) -> None:
        if attempts < 1:
            raise ConfigurationError("Staple attempts must be at least 1")
        if grace < 0 or delay < 0:
            raise ConfigurationError("Staple grace and delay cannot be negative")
        self.tools = tools
        self.credentials = credentials
        self.grace = grace
        self.attempts = int(attempts)
        self.delay = delay
        self.progress = progress
        self.sleep = sleep
        self.log = logging.getLogger(self.__class__.__name__)

    def is_notarized(self, artifact: Path) -> bool:
        return self.tools.assess(artifact)

    def submit(self, artifact: Path) -> NotarizationReceipt:
        """Submit and wait for the verdict.

        Raises:
            NotarizationRejectedError: On a non-zero exit or any verdict
                other than Accepted
        """
        self.log.info("Notarizing: %s", artifact)
        try:
            if self.progress:
                with ProgressSpinner("Waiting for notarization"):
                    output = self.tools.submit_for_notarization(
                        artifact, self.credentials
                    )
            else:
                output = self.tools.submit_for_notarization(
                    artifact, self.credentials
                )
        except CommandError as e:
            receipt = NotarizationReceipt.parse(e.output or "")
            raise NotarizationRejectedError(
                artifact,
                f"notarization client exited with status {e.returncode}",
                submission_id=receipt.submission_id,
                output=e.output,
            ) from e

        receipt = NotarizationReceipt.parse(output)
        if not receipt.accepted:
            raise NotarizationRejectedError(
                artifact,
                f"status {receipt.status or 'unknown'}",
                submission_id=receipt.submission_id,
                output=output,
            )
        self.log.info("Notarization accepted (id %s)", receipt.submission_id)
        return receipt

    def staple(self, artifact: Path) -> int:
        """Staple with retries. Returns the attempt that succeeded.

        Raises:
            StapleExhaustedWarning: If every attempt failed
        """
        self.log.info(
            "Waiting %ds for notarization ticket to propagate", self.grace
        )
        self.sleep(self.grace)
        for attempt in range(1, self.attempts + 1):
            if self.tools.staple(artifact):
                self.log.info("Stapled: %s", artifact)
                return attempt
            if attempt < self.attempts:
                self.log.warning(
                    "Stapling failed (attempt %d/%d), retrying in %ds",
                    attempt,
                    self.attempts,
                    self.delay,
                )
                self.sleep(self.delay)
        raise StapleExhaustedWarning(artifact, self.attempts)

    def process(self, artifact: Path) -> NotarizationReceipt | None:
        """Notarize and staple unless the artifact is already notarized."""
        if self.is_notarized(artifact):
            self.log.info("Already notarized, skipping submission: %s", artifact)
            return None
        receipt = self.submit(artifact)
        self.staple(artifact)
        return receipt


# ----------------------------------------------------------------------------
# Verification and publishing


@dataclass(frozen=True)
class PublishResult:
    source_path: Path
    destination_path: Path
    size_bytes: int

    @property
    def size_human(self) -> str:
        """Size in the style of `du -h`."""
        size = float(self.size_bytes)
        for unit in ("B", "K", "M", "G"):
            if size < 1024 or unit == "G":
                break
            size /= 1024
        if unit == "B":
            return f"{int(size)}B"
        return f"{size:.1f}{unit}"


class Publisher:
    """Verifies the final artifact and copies it to the publish directory.

    The artifact itself is never modified.
    """

    def __init__(self, tools: MacTools, publish_dir: Pathlike) -> None:
        self.tools = tools
        self.publish_dir = Path(publish_dir)
        self.log = logging.getLogger(self.__class__.__name__)

    def verify(self, artifact: Path) -> None:
        """Check signature and notarization.

        Raises:
            SignatureInvalidError: If the code signature does not verify
            NotarizationUnverifiedWarning: If Gatekeeper rejects it
        """
        if not self.tools.verify_signature(artifact):
            raise SignatureInvalidError(artifact)
        self.log.info("Code signature valid")
        if not self.tools.assess(artifact):
            raise NotarizationUnverifiedWarning(artifact)
        self.log.info("Notarization verified (Gatekeeper approved)")

    def publish(self, artifact: Path) -> PublishResult:
        """Copy the artifact into the publish directory.

        Raises:
            FileError: If the copy fails
        """
        destination = self.publish_dir / artifact.name
        self.log.info("Copying to %s", self.publish_dir)
        try:
            self.publish_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(artifact, destination)
        except (OSError, shutil.Error) as e:
            raise FileError(
                f"Cannot copy {artifact} to {self.publish_dir}: {e}"
            ) from e
        info = stat_with_retry(destination)
        if info is None:
            raise FileError(f"Published file disappeared: {destination}")
        return PublishResult(artifact, destination, info.st_size)

    def process(
        self,
        artifact: Path,
        warnings: list[ReleaseWarning] | None = None,
    ) -> PublishResult:
        try:
            self.verify(artifact)
        except ReleaseError as e:
            degrade_to_warning(e, self.log, warnings)
        return self.publish(artifact)


# ----------------------------------------------------------------------------
# Pipeline


def normalize_arch(machine: str | None = None) -> str:
    """Map a machine name to the architecture used in disk image names."""
    machine = machine or platform.machine()
    return ARCH_ALIASES.get(machine.lower(), machine.lower())


@dataclass
class ReleaseSettings:
    """Merged configuration for a release run.

    Relative paths are resolved against ``cwd``.
    """

    product: str
    version: str = DEFAULT_VERSION
    arch: str = field(default_factory=normalize_arch)
    command: list[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_BUILD_COMMAND)
    )
    cwd: Path = field(default_factory=Path.cwd)
    bundle_dir: Path = Path(DEFAULT_BUNDLE_DIR)
    creates_artifact: bool = True
    env_file: Path | None = Path(DEFAULT_ENV_FILE)
    publish_dir: Path = Path(DEFAULT_PUBLISH_DIR)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_deadline: float = DEFAULT_POLL_DEADLINE
    heartbeat: float = DEFAULT_HEARTBEAT_INTERVAL
    staple_grace: float = DEFAULT_STAPLE_GRACE
    staple_attempts: int = DEFAULT_STAPLE_ATTEMPTS
    staple_delay: float = DEFAULT_STAPLE_DELAY
    notarize: bool = True
    allow_stale: bool = False

    def __post_init__(self) -> None:
        if not self.product:
            raise ConfigurationError(
                "Product name required. Pass --product or set "
                "[build] product in .macrelease.toml."
            )
        if not self.command:
            raise ConfigurationError("Build command cannot be empty")
        if self.poll_interval <= 0 or self.poll_deadline <= 0:
            raise ConfigurationError("Poll interval and deadline must be positive")
        if self.heartbeat <= 0:
            raise ConfigurationError("Heartbeat interval must be positive")
        if self.staple_grace < 0 or self.staple_delay < 0:
            raise ConfigurationError("Staple grace and delay cannot be negative")
        if self.staple_attempts < 1:
            raise ConfigurationError("Staple attempts must be at least 1")
        self.cwd = Path(self.cwd)
        self.bundle_dir = Path(self.bundle_dir)
        self.publish_dir = Path(self.publish_dir)
        if self.env_file is not None:
            self.env_file = Path(self.env_file)

    def resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.cwd / path

    @property
    def bundle_path(self) -> Path:
        return self.resolve(self.bundle_dir) / "macos" / f"{self.product}.app"

    @property
    def artifact_path(self) -> Path:
        return (
            self.resolve(self.bundle_dir)
            / "dmg"
            / f"{self.product}_{self.version}_{self.arch}.dmg"
        )

    @property
    def env_file_path(self) -> Path | None:
        return self.resolve(self.env_file) if self.env_file else None

    @property
    def publish_path(self) -> Path:
        return self.resolve(self.publish_dir)

    @classmethod
    def from_config(
        cls, config: dict[str, object], **overrides: object
    ) -> "ReleaseSettings":
        """Build settings from a config dict; non-None overrides win."""
        values: dict[str, object] = {}
        for key, section, name in (
            ("product", "build", "product"),
            ("version", "build", "version"),
            ("arch", "build", "arch"),
            ("cwd", "build", "cwd"),
            ("bundle_dir", "build", "bundle_dir"),
            ("env_file", "credentials", "env_file"),
            ("publish_dir", "publish", "dir"),
        ):
            value = get_config_value(config, section, name)
            if value is not None:
                values[key] = value
        command = get_config_value(config, "build", "command")
        if command is not None:
            values["command"] = shlex.split(command)
        creates_artifact = get_config_flag(config, "build", "creates_artifact")
        if creates_artifact is not None:
            values["creates_artifact"] = creates_artifact
        for key, section, name in (
            ("poll_interval", "poll", "interval"),
            ("poll_deadline", "poll", "deadline"),
            ("heartbeat", "poll", "heartbeat"),
            ("staple_grace", "notarize", "grace"),
            ("staple_attempts", "notarize", "attempts"),
            ("staple_delay", "notarize", "delay"),
        ):
            number = get_config_number(config, section, name)
            if number is not None:
                values[key] = number
        for key, value in overrides.items():
            if value is not None:
                values[key] = value
        for key in ("cwd", "bundle_dir", "env_file", "publish_dir"):
            if isinstance(values.get(key), str):
                values[key] = Path(values[key])
        if "staple_attempts" in values:
            values["staple_attempts"] = int(values["staple_attempts"])
        values.setdefault("product", "")
        return cls(**values)


class ReleasePipeline:
    """Build, notarize, verify and publish one release.

    Steps:
    1. Resolve credentials
    2. Launch the builder and poll for its outputs
    3. Validate the bundle (and disk image, if the builder makes one)
    4. Create and sign the disk image if the builder does not
    5. Notarize and staple, unless already notarized
    6. Verify and publish

    Non-fatal problems end up in ``self.warnings``.
    """

    def __init__(
        self,
        settings: ReleaseSettings,
        credentials: CredentialSet | None = None,
        tools: MacTools | None = None,
        supervisor: BuildSupervisor | None = None,
        clock=time.monotonic,
        sleep=time.sleep,
        progress: bool = True,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.tools = tools or MacTools()
        self.supervisor = supervisor or BuildSupervisor(
            settings.command,
            settings.bundle_path,
            settings.artifact_path,
            cwd=settings.cwd,
        )
        self.clock = clock
        self.sleep = sleep
        self.progress = progress
        self.warnings: list[ReleaseWarning] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def resolve_credentials(self) -> CredentialSet:
        if self.credentials is None:
            self.credentials = resolve_credentials(
                self.settings.env_file_path, tools=self.tools
            )
        register_credentials(self.credentials)
        for name, display in self.credentials.describe():
            self.log.info("  %s: %s", name, display)
        return self.credentials

    def build(self, credentials: CredentialSet) -> PollContext:
        """Run the builder under the poller and validate its outputs."""
        task = self.supervisor.launch(credentials)
        since = None if self.settings.allow_stale else task.started_at
        poller = DualConditionPoller(
            self.supervisor,
            task,
            self.tools.assess,
            interval=self.settings.poll_interval,
            deadline=self.settings.poll_deadline,
            heartbeat=self.settings.heartbeat,
            since=since,
            clock=self.clock,
            sleep=self.sleep,
        )
        ctx = poller.run()
        self.log.debug("poll trace: %s", ctx.transitions)

        exited = ctx.state is PollState.PROCESS_EXITED
        validate_build_outputs(
            task,
            ctx.exit_code if exited else None,
            require_artifact=self.settings.creates_artifact,
            since=since,
        )
        if self.supervisor.is_alive(task):
            self.log.warning(
                "builder is still running (pid %s); leaving it alone", task.pid
            )
        else:
            self.supervisor.join(task)
            task.retire()
        return ctx

    def package(self, credentials: CredentialSet) -> Path:
        """Make sure the signed disk image exists."""
        if self.settings.creates_artifact:
            return self.settings.artifact_path
        packager = DiskImagePackager(
            self.tools,
            self.settings.bundle_path,
            self.settings.artifact_path,
            volume_name=self.settings.product,
        )
        return packager.process(credentials.signing_identity)

    def notarize(
        self, credentials: CredentialSet, artifact: Path
    ) -> NotarizationReceipt | None:
        submitter = NotarizationSubmitter(
            self.tools,
            credentials,
            grace=self.settings.staple_grace,
            attempts=self.settings.staple_attempts,
            delay=self.settings.staple_delay,
            progress=self.progress,
            sleep=self.sleep,
        )
        try:
            return submitter.process(artifact)
        except ReleaseError as e:
            degrade_to_warning(e, self.log, self.warnings)
        return None

    def publish(self, artifact: Path) -> PublishResult:
        publisher = Publisher(self.tools, self.settings.publish_path)
        return publisher.process(artifact, self.warnings)

    def run(self) -> PublishResult:
        """Execute the full release workflow."""
        _section("Checking credentials...")
        credentials = self.resolve_credentials()

        _section("Step 1/4: Building", self.settings.product)
        self.build(credentials)

        _section("Step 2/4: Packaging")
        artifact = self.package(credentials)

        _section("Step 3/4: Notarizing")
        if self.settings.notarize:
            self.notarize(credentials, artifact)
        else:
            self.log.warning("Skipping notarization (disabled)")

        _section("Step 4/4: Verifying and publishing")
        result = self.publish(artifact)
        print_summary(result, self.warnings)
        return result


def print_summary(
    result: PublishResult, warnings: list[ReleaseWarning] | None = None
) -> None:
    _section("Build complete!")
    print()
    print("DMG:", result.destination_path)
    print("Size:", result.size_human)
    if warnings:
        print()
        print("Warnings:")
        for warning in warnings:
            print("  -", warning)
    quoted = shlex.quote(str(result.destination_path))
    print()
    print("Verification commands:")
    print(f"  codesign -dv --verbose=4 {quoted}")
    print(f"  spctl -a -t open --context context:primary-signature {quoted}")


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="configuration file (default: .macrelease.toml)",
    )
    parser.add_argument(
        "--env-file",
        metavar="FILE",
        help=f"credentials env file (default: {DEFAULT_ENV_FILE})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _load_args_config(args: argparse.Namespace) -> dict[str, object]:
    return load_config(Path(args.config) if args.config else None)


def _env_file(args: argparse.Namespace, config: dict[str, object]) -> Path:
    return Path(
        args.env_file
        or get_config_value(config, "credentials", "env_file", DEFAULT_ENV_FILE)
    )


def _cmd_run(args: argparse.Namespace) -> None:
    """Handle 'run' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    config = _load_args_config(args)
    settings = ReleaseSettings.from_config(
        config,
        product=args.product,
        version=args.version,
        arch=args.arch,
        command=shlex.split(args.command) if args.command else None,
        cwd=Path(args.cwd) if args.cwd else None,
        env_file=Path(args.env_file) if args.env_file else None,
        publish_dir=Path(args.publish_dir) if args.publish_dir else None,
        poll_deadline=args.deadline,
        creates_artifact=False if args.package_dmg else None,
        notarize=False if args.no_notarize else None,
        allow_stale=True if args.allow_stale else None,
    )
    ReleasePipeline(settings).run()


def _cmd_credentials(args: argparse.Namespace) -> None:
    """Handle 'credentials' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    config = _load_args_config(args)
    credentials = resolve_credentials(
        _env_file(args, config), discover=not args.no_discover
    )
    _section("Credentials")
    for name, display in credentials.describe():
        print(f"  {name}: {display}")


def _cmd_notarize(args: argparse.Namespace) -> None:
    """Handle 'notarize' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macrelease")
    config = _load_args_config(args)

    artifact = Path(args.artifact)
    if not artifact.exists():
        log.error("Artifact does not exist: %s", artifact)
        sys.exit(1)

    tools = MacTools()
    credentials = resolve_credentials(_env_file(args, config), tools=tools)
    submitter = NotarizationSubmitter(
        tools,
        credentials,
        grace=get_config_number(config, "notarize", "grace", DEFAULT_STAPLE_GRACE),
        attempts=int(
            get_config_number(
                config, "notarize", "attempts", DEFAULT_STAPLE_ATTEMPTS
            )
        ),
        delay=get_config_number(config, "notarize", "delay", DEFAULT_STAPLE_DELAY),
    )
    try:
        submitter.process(artifact)
    except ReleaseError as e:
        degrade_to_warning(e, log)
    log.info("Notarized: %s", artifact)


def _cmd_verify(args: argparse.Namespace) -> None:
    """Handle 'verify' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macrelease")

    artifact = Path(args.artifact)
    if not artifact.exists():
        log.error("Artifact does not exist: %s", artifact)
        sys.exit(1)

    publisher = Publisher(MacTools(), args.publish or ".")
    warnings: list[ReleaseWarning] = []
    try:
        publisher.verify(artifact)
    except ReleaseError as e:
        degrade_to_warning(e, log, warnings)
    if args.publish:
        print_summary(publisher.publish(artifact), warnings)


def main() -> None:
    """Command line interface for macrelease."""
    try:
        parser = argparse.ArgumentParser(
            prog="macrelease",
            description="Build, notarize, verify and publish a macOS release.",
            epilog=(
                "Examples:\n"
                "  macrelease run --product 'My App' --version 1.2.0\n"
                "  macrelease credentials\n"
                "  macrelease notarize 'My App_1.2.0_aarch64.dmg'\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- run subcommand ---
        run_parser = subparsers.add_parser(
            "run",
            help="build, notarize, verify and publish",
            description=(
                "Run the builder, wait for its disk image, notarize and "
                "staple it, verify it and copy it to the publish directory."
            ),
            epilog=(
                "Examples:\n"
                "  macrelease run --product 'My App'\n"
                "  macrelease run --product 'My App' --version 1.2.0 "
                "--publish-dir ../public/downloads\n"
                "  macrelease run --product Tool --package-dmg "
                "--command 'cargo tauri build --bundles app'\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        run_parser.add_argument(
            "-p",
            "--product",
            metavar="NAME",
            help="product name used in bundle and disk image names",
        )
        run_parser.add_argument(
            "-v",
            "--version",
            metavar="VERSION",
            help=f"product version (default: {DEFAULT_VERSION})",
        )
        run_parser.add_argument(
            "-a",
            "--arch",
            metavar="ARCH",
            help="target architecture (default: this machine)",
        )
        run_parser.add_argument(
            "-c",
            "--command",
            metavar="CMD",
            help=f"build command (default: {DEFAULT_BUILD_COMMAND})",
        )
        run_parser.add_argument(
            "--cwd",
            metavar="DIR",
            help="directory to run the build in (default: current directory)",
        )
        run_parser.add_argument(
            "-o",
            "--publish-dir",
            metavar="DIR",
            help=f"where to copy the disk image (default: {DEFAULT_PUBLISH_DIR})",
        )
        run_parser.add_argument(
            "--deadline",
            type=float,
            metavar="SECONDS",
            help=f"give up polling after this long (default: {DEFAULT_POLL_DEADLINE:.0f})",
        )
        run_parser.add_argument(
            "--package-dmg",
            action="store_true",
            help="create and sign the disk image here instead of in the builder",
        )
        run_parser.add_argument(
            "--no-notarize",
            action="store_true",
            help="skip notarization and stapling",
        )
        run_parser.add_argument(
            "--allow-stale",
            action="store_true",
            help="accept outputs older than the build start",
        )
        _add_common_options(run_parser)
        run_parser.set_defaults(func=_cmd_run)

        # --- credentials subcommand ---
        credentials_parser = subparsers.add_parser(
            "credentials",
            help="resolve and show credentials (masked)",
            description="Resolve signing and notarization credentials.",
        )
        credentials_parser.add_argument(
            "--no-discover",
            action="store_true",
            help="do not search the keychain for a signing identity",
        )
        _add_common_options(credentials_parser)
        credentials_parser.set_defaults(func=_cmd_credentials)

        # --- notarize subcommand ---
        notarize_parser = subparsers.add_parser(
            "notarize",
            help="notarize and staple an existing artifact",
            description="Submit an artifact for notarization and staple it.",
        )
        notarize_parser.add_argument(
            "artifact",
            help="path to the disk image",
        )
        _add_common_options(notarize_parser)
        notarize_parser.set_defaults(func=_cmd_notarize)

        # --- verify subcommand ---
        verify_parser = subparsers.add_parser(
            "verify",
            help="verify an artifact and optionally publish it",
            description="Check signature and Gatekeeper status of an artifact.",
        )
        verify_parser.add_argument(
            "artifact",
            help="path to the disk image",
        )
        verify_parser.add_argument(
            "--publish",
            metavar="DIR",
            help="copy the artifact to this directory after verifying",
        )
        _add_common_options(verify_parser)
        verify_parser.set_defaults(func=_cmd_verify)

        args = parser.parse_args()
        args.func(args)

    except ReleaseError as e:
        logging.error(str(e))
        if e.remediation:
            logging.error("%s", e.remediation)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
