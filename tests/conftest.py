"""Pytest fixtures for deployctl tests."""

from __future__ import annotations

import os
import signal
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest
from click.testing import CliRunner

from deployctl.config import DeployCtlConfig, GlobalConfig
from deployctl.core.context import DeployCtlContext
from deployctl.core.exceptions import ActivationError, BuildError, RemoteCommandError, TransferError
from deployctl.core.output import OutputFormat
from deployctl.core.retry import RetryPolicy
from deployctl.deploy.builder import ArtifactBuilder
from deployctl.deploy.executor import CommandResult, RemoteExecutor
from deployctl.deploy.health import HealthProber, TargetHealthCheck
from deployctl.deploy.lock import TargetLock
from deployctl.deploy.models import (
    ArtifactCatalogEntry,
    ArtifactRef,
    DeploymentTarget,
    RuntimeSnapshot,
    utcnow,
)
from deployctl.deploy.orchestrator import DeploymentOrchestrator
from deployctl.deploy.records import RecordLog
from deployctl.deploy.retention import RetentionManager

HEALTH_URL = "http://web.internal:8080/health"


# =============================================================================
# Fakes
# =============================================================================


class FakeExecutor(RemoteExecutor):
    """Executor that records commands and answers from canned responses."""

    def __init__(self, responses: dict[str, CommandResult] | None = None, reachable: bool = True):
        super().__init__()
        self.responses = responses or {}
        self.reachable = reachable
        self.commands: list[str] = []
        self.copies: list[tuple[str, str]] = []

    @property
    def description(self) -> str:
        return "fake"

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        if command == "true" and not self.reachable:
            return CommandResult(command, "", "ssh: connect to host: Connection timed out", 255)
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                return result
        return CommandResult(command, "", "", 0)

    def copy(self, local_path: str | Path, remote_path: str) -> None:
        self.copies.append((str(local_path), remote_path))


class FakeStore:
    """In-memory artifact catalog."""

    def __init__(self, location: str):
        self.location = location
        self.entries: dict[ArtifactRef, ArtifactCatalogEntry] = {}
        self.removed: list[ArtifactRef] = []
        self.fail_remove: set[str] = set()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def add(self, ref: ArtifactRef) -> None:
        if ref in self.entries:
            return
        self._clock += timedelta(minutes=1)
        self.entries[ref] = ArtifactCatalogEntry(ref=ref, created_at=self._clock, location=self.location)

    def list(self, name: str) -> list[ArtifactCatalogEntry]:
        entries = [e for e in self.entries.values() if e.ref.name == name]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def has(self, ref: ArtifactRef) -> bool:
        return ref in self.entries

    def remove(self, ref: ArtifactRef) -> None:
        if ref.revision in self.fail_remove:
            raise RemoteCommandError(f"image {ref.tag} is in use", command=f"docker rmi {ref.tag}", exit_code=1)
        del self.entries[ref]
        self.removed.append(ref)

    def cleanup_archives(self, name: str) -> None:
        pass

    def revisions(self, name: str = "web") -> list[str]:
        return [e.ref.revision for e in self.list(name)]


class FakeBuilder(ArtifactBuilder):
    """Builder producing a fixed revision into a store."""

    def __init__(self, store: FakeStore, name: str = "web", revision: str = "abc123"):
        self.store = store
        self.name = name
        self.revision = revision
        self.available = True
        self.fail = False
        self.builds: list[tuple[str, str]] = []

    def revision_for(self, source_dir: str | Path) -> str:
        return self.revision

    def toolchain_available(self) -> bool:
        return self.available

    def build(self, source_dir: str | Path, platform: str) -> ArtifactRef:
        if self.fail:
            raise BuildError("docker build exited 1")
        ref = ArtifactRef(self.name, self.revision)
        self.builds.append((ref.revision, platform))
        self.store.add(ref)
        return ref


class FakeTransfer:
    """Transfer between two fake stores, optionally failing every attempt."""

    def __init__(self, source: FakeStore, destination: FakeStore):
        self.source = source
        self.destination = destination
        self.fail = False
        self.pushed: list[ArtifactRef] = []

    def push(self, ref: ArtifactRef) -> bool:
        if self.fail:
            raise TransferError(f"Transfer of {ref.tag} failed after 3 attempts: broken pipe", attempts=3)
        if self.destination.has(ref):
            return False
        self.destination.add(ref)
        self.pushed.append(ref)
        return True


class FakeRuntime:
    """Runtime whose running version is a plain attribute."""

    def __init__(self, executor: FakeExecutor):
        self.executor = executor
        self.active_ref: ArtifactRef | None = None
        self.descriptor: str | None = None
        self.calls: list[str] = []
        self.fail_activate = False
        self.fail_restore = False
        self.interrupt_on_activate = False
        self.signal_on_activate = False

    def prepare(self) -> None:
        self.calls.append("prepare")

    def snapshot(self) -> RuntimeSnapshot:
        self.calls.append("snapshot")
        return RuntimeSnapshot(
            target="web",
            captured_at=utcnow(),
            descriptor=self.descriptor,
            active_ref=self.active_ref,
        )

    def activate(self, ref: ArtifactRef, template: str) -> None:
        self.calls.append(f"activate:{ref.revision}")
        if self.signal_on_activate:
            os.kill(os.getpid(), signal.SIGTERM)
        if self.interrupt_on_activate:
            raise KeyboardInterrupt()
        if self.fail_activate:
            raise ActivationError(f"Failed to apply {ref.tag}: compose up exited 1")
        self.active_ref = ref
        self.descriptor = template.replace("${IMAGE}", ref.tag)

    def restore(self, snapshot: RuntimeSnapshot) -> None:
        self.calls.append(f"restore:{snapshot.active_ref.revision}")
        if self.fail_restore:
            raise ActivationError("compose up exited 1")
        self.active_ref = snapshot.active_ref
        self.descriptor = snapshot.descriptor

    def teardown(self) -> None:
        self.calls.append("teardown")
        self.active_ref = None
        self.descriptor = None

    def is_running(self) -> bool:
        return self.active_ref is not None

    def status(self) -> str:
        return f"web running {self.active_ref.tag}" if self.active_ref else "no containers"


class Harness:
    """Wires fakes around a real orchestrator, record log, lock and retention."""

    def __init__(self, tmp_path: Path):
        self.state_dir = tmp_path / "state"
        self.source_dir = tmp_path / "src"
        self.source_dir.mkdir()
        (self.source_dir / "app.py").write_text("print('hello')\n")

        descriptor = tmp_path / "docker-compose.yml"
        descriptor.write_text("services:\n  web:\n    image: ${IMAGE}\n")

        self.target = DeploymentTarget(
            name="web",
            host="10.0.0.5",
            user="deploy",
            port=22,
            credential=None,
            workdir="/srv/web",
            descriptor=str(descriptor),
            health_endpoint=HEALTH_URL,
            artifact_name="web",
            platform="linux/arm64",
        )

        self.local_store = FakeStore("local")
        self.remote_store = FakeStore("deploy@10.0.0.5:22")
        self.builder = FakeBuilder(self.local_store)
        self.transfer = FakeTransfer(self.local_store, self.remote_store)
        self.remote_executor = FakeExecutor()
        self.local_executor = FakeExecutor(responses={"git ": CommandResult("git", "", "not a git repository", 128)})
        self.runtime = FakeRuntime(self.remote_executor)
        self.records = RecordLog(self.state_dir)
        self.healthy_revisions: set[str] = set()
        self.probes = 0
        self.broken_revisions: set[str] = set()

        def handler(request: httpx.Request) -> httpx.Response:
            self.probes += 1
            active = self.runtime.active_ref
            if active is not None and active.revision in self.broken_revisions:
                raise RuntimeError(f"health endpoint crashed on {active.revision}")
            healthy = active is not None and active.revision in self.healthy_revisions
            return httpx.Response(200, json={"healthy": healthy})

        self.prober = HealthProber(client=httpx.Client(transport=httpx.MockTransport(handler)))
        self.health_check = TargetHealthCheck(self.prober, HEALTH_URL, runtime=self.runtime)

    def lock(self) -> TargetLock:
        return TargetLock(self.state_dir, "web")

    def orchestrator(self, revision: str | None = None, keep: int = 3, **kwargs: Any) -> DeploymentOrchestrator:
        if revision:
            self.builder.revision = revision
        options: dict[str, Any] = {
            "target": self.target,
            "builder": self.builder,
            "transfer": self.transfer,
            "runtime": self.runtime,
            "health_check": self.health_check,
            "health_policy": RetryPolicy(attempts=3, interval=0, sleep=lambda s: None),
            "records": self.records,
            "lock": self.lock(),
            "retention": RetentionManager(keep),
            "source_dir": self.source_dir,
            "local_executor": self.local_executor,
        }
        options.update(kwargs)
        return DeploymentOrchestrator(**options)

    def deploy(self, revision: str, healthy: bool = True, **kwargs: Any):
        if healthy:
            self.healthy_revisions.add(revision)
        return self.orchestrator(revision).deploy(**kwargs)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    """Orchestrator harness with in-memory collaborators."""
    return Harness(tmp_path)


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    """Sleep function that records requested delays instead of sleeping."""
    delays: list[float] = []

    def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays  # type: ignore[attr-defined]
    return sleep


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Isolated deployctl state directory."""
    path = tmp_path / "state"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def mock_config(state_dir: Path, tmp_path: Path) -> DeployCtlConfig:
    """Create a configuration with one remote and one local target."""
    descriptor = tmp_path / "docker-compose.yml"
    descriptor.write_text("services:\n  web:\n    image: web:latest\n")
    return DeployCtlConfig(
        global_settings=GlobalConfig(state_dir=str(state_dir)),
        defaults={
            "user": "deploy",
            "workdir": "/srv/web",
            "descriptor": str(descriptor),
            "artifact": {"name": "web", "platform": "linux/arm64"},
            "health": {"attempts": 5, "interval": 1},
        },
        targets={
            "production": {
                "host": "10.0.0.5",
                "health": {"endpoint": "http://10.0.0.5:8080/health"},
            },
            "dev": {
                "local": True,
                "health": {"endpoint": "http://localhost:8080/health"},
            },
        },
    )


@pytest.fixture
def mock_context(mock_config: DeployCtlConfig) -> DeployCtlContext:
    """Create a deployctl context."""
    return DeployCtlContext(
        config=mock_config,
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        color=False,
    )


@pytest.fixture(autouse=True)
def clean_env() -> Generator[None, None, None]:
    """Clean environment variables before each test."""
    env_vars = [
        "DEPLOYCTL_CONFIG",
        "DEPLOYCTL_STATE_DIR",
        "DEPLOYCTL_SSH_KEY",
        "DEPLOYCTL_REMOTE_HOST",
    ]

    original = {k: os.environ.get(k) for k in env_vars}

    for k in env_vars:
        os.environ.pop(k, None)

    yield

    for k, v in original.items():
        if v is not None:
            os.environ[k] = v
        else:
            os.environ.pop(k, None)


@pytest.fixture
def temp_config_file(tmp_path: Path, state_dir: Path) -> str:
    """Create a temporary config file."""
    descriptor = tmp_path / "docker-compose.yml"
    descriptor.write_text("services:\n  web:\n    image: web:latest\n")
    config_content = f"""
version: "1"
global:
  output_format: table
  state_dir: {state_dir}
defaults:
  user: deploy
  workdir: /srv/web
  descriptor: {descriptor}
  artifact:
    name: web
targets:
  production:
    host: 10.0.0.5
    health:
      endpoint: http://10.0.0.5:8080/health
      attempts: 5
  staging:
    host: 10.0.0.6
    port: 2222
"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(config_content)
    return str(config_file)
