"""Runtime managers: apply a declared runtime descriptor on a target.

Activation is always a declarative replace. The full descriptor is written
to the target and re-applied rather than diffed, so drift on the target is
corrected on every deployment.
"""

import shlex
from abc import ABC, abstractmethod
from pathlib import Path

from deployctl.config import RuntimeKind
from deployctl.core.exceptions import ActivationError, DeployCtlError, ValidationError
from deployctl.core.logging import get_logger
from deployctl.deploy.executor import RemoteExecutor
from deployctl.deploy.models import ArtifactRef, DeploymentTarget, RuntimeSnapshot, utcnow

logger = get_logger(__name__)


def render_descriptor(template: str, ref: ArtifactRef) -> str:
    """Pin a descriptor to an artifact.

    ``${IMAGE_TAG}`` becomes the revision, ``${IMAGE}`` the full tag, and
    ``<name>:latest`` references are pinned to ``<name>:<revision>``.
    """
    rendered = template.replace("${IMAGE}", ref.tag).replace("${IMAGE_TAG}", ref.revision)
    return rendered.replace(f"{ref.name}:latest", ref.tag)


class RuntimeManager(ABC):
    """Applies, snapshots and restores the running version on a target."""

    kind: RuntimeKind

    def __init__(self, executor: RemoteExecutor, target: DeploymentTarget):
        self.executor = executor
        self.target = target

    def prepare(self) -> None:
        """Create the working directory and seed the env file if it is absent."""
        workdir = shlex.quote(self.target.workdir or "")
        prefix = "sudo " if self.target.sudo else ""
        self.executor.check(f"{prefix}mkdir -p {workdir}")
        if self.target.sudo:
            self.executor.check(f"sudo chown -R $(id -u):$(id -g) {workdir}")

        if self.target.env_file and Path(self.target.env_file).exists():
            remote_env = f"{self.target.workdir}/{Path(self.target.env_file).name}"
            if not self.executor.run(f"test -f {shlex.quote(remote_env)}").ok:
                self.executor.copy(self.target.env_file, remote_env)
                logger.info("Seeded environment file", path=remote_env)

    def snapshot(self) -> RuntimeSnapshot:
        """Capture the declared state and active ref currently on the target."""
        descriptor = self.executor.read_file(self.target.remote_descriptor)
        marker = self.executor.read_file(self.target.revision_marker)

        active_ref = None
        if marker and marker.strip():
            try:
                active_ref = ArtifactRef.parse(marker.strip())
            except ValidationError:
                logger.warning("Ignoring unreadable revision marker", value=marker.strip())

        return RuntimeSnapshot(
            target=self.target.name,
            captured_at=utcnow(),
            descriptor=descriptor,
            active_ref=active_ref,
        )

    def activate(self, ref: ArtifactRef, template: str) -> None:
        """Make ref the running version by applying the full descriptor."""
        self._apply(ref, render_descriptor(template, ref))

    def restore(self, snapshot: RuntimeSnapshot) -> None:
        """Re-apply a snapshot taken before activation."""
        if snapshot.active_ref is None or snapshot.descriptor is None:
            raise ActivationError("Snapshot has nothing to restore", details={"target": snapshot.target})
        self._apply(snapshot.active_ref, snapshot.descriptor)

    def _apply(self, ref: ArtifactRef, descriptor: str) -> None:
        try:
            self.executor.write_file(descriptor, self.target.remote_descriptor)
            self._up(ref)
            self.executor.write_file(ref.tag + "\n", self.target.revision_marker)
        except DeployCtlError as e:
            raise ActivationError(f"Failed to apply {ref.tag}: {e}")
        logger.info("Applied runtime descriptor", target=self.target.name, ref=ref.tag)

    @abstractmethod
    def _up(self, ref: ArtifactRef) -> None:
        """Apply the descriptor already written to the target."""
        pass

    @abstractmethod
    def teardown(self) -> None:
        """Stop everything the descriptor declares."""
        pass

    @abstractmethod
    def is_running(self) -> bool:
        """Process-liveness signal. Weaker than the HTTP health probe."""
        pass

    @abstractmethod
    def status(self) -> str:
        """Human-readable runtime status."""
        pass


class ComposeRuntime(RuntimeManager):
    """docker compose on a single host."""

    kind = RuntimeKind.COMPOSE

    def _compose(self, args: str) -> str:
        prefix = "sudo " if self.target.sudo else ""
        return (
            f"cd {shlex.quote(self.target.workdir or '.')} && "
            f"{prefix}{self.target.compose_command} -f {shlex.quote(self.target.remote_descriptor)} {args}"
        )

    def _up(self, ref: ArtifactRef) -> None:
        docker = "sudo docker" if self.target.sudo else "docker"
        self.executor.check(f"{docker} tag {shlex.quote(ref.tag)} {shlex.quote(ref.name + ':latest')}")
        self.executor.check(self._compose("up -d --remove-orphans"))

    def teardown(self) -> None:
        self.executor.check(self._compose("down --remove-orphans"))
        self.executor.run(f"rm -f {shlex.quote(self.target.revision_marker)}")

    def is_running(self) -> bool:
        result = self.executor.run(self._compose("ps --status running -q"))
        return result.ok and bool(result.stdout.strip())

    def status(self) -> str:
        result = self.executor.run(self._compose("ps"))
        return result.stdout if result.ok else result.stderr


class KubernetesRuntime(RuntimeManager):
    """kubectl apply of a full manifest, waiting for the rollout."""

    kind = RuntimeKind.KUBERNETES

    def __init__(self, executor: RemoteExecutor, target: DeploymentTarget, rollout_timeout: int = 300):
        super().__init__(executor, target)
        self.rollout_timeout = rollout_timeout

    def _kubectl(self, args: str) -> str:
        return f"kubectl -n {shlex.quote(self.target.namespace)} {args}"

    @property
    def _deployment(self) -> str:
        return f"deployment/{(self.target.artifact_name or '').rsplit('/', 1)[-1]}"

    def _up(self, ref: ArtifactRef) -> None:
        self.executor.check(self._kubectl(f"apply -f {shlex.quote(self.target.remote_descriptor)}"))
        self.executor.check(
            self._kubectl(f"rollout status {self._deployment} --timeout={self.rollout_timeout}s"),
            timeout=self.rollout_timeout + 30,
        )

    def teardown(self) -> None:
        self.executor.check(
            self._kubectl(f"delete -f {shlex.quote(self.target.remote_descriptor)} --ignore-not-found")
        )
        self.executor.run(f"rm -f {shlex.quote(self.target.revision_marker)}")

    def is_running(self) -> bool:
        result = self.executor.run(
            self._kubectl(f"get {self._deployment} -o jsonpath='{{.status.availableReplicas}}'")
        )
        try:
            return result.ok and int(result.stdout.strip() or 0) > 0
        except ValueError:
            return False

    def status(self) -> str:
        result = self.executor.run(self._kubectl(f"get {self._deployment},pods -o wide"))
        return result.stdout if result.ok else result.stderr


def create_runtime(executor: RemoteExecutor, target: DeploymentTarget) -> RuntimeManager:
    """Runtime manager for the target's declared runtime kind."""
    if target.runtime == RuntimeKind.KUBERNETES:
        return KubernetesRuntime(executor, target)
    return ComposeRuntime(executor, target)
