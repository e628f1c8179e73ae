"""Deployment state machine.

One handler per transition. Each handler does the work for its phase and
returns the phase it reached; any error it raises is classified by the
phase it was raised from and routed to either a terminal ``Failed`` or
the rollback path.
"""

import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

from deployctl.config import TargetConfig
from deployctl.core.exceptions import (
    ActivationError,
    BuildError,
    DeployCtlError,
    DeploymentError,
    LockContentionError,
    PreconditionError,
    RollbackVerificationError,
    TransferError,
    VerificationError,
)
from deployctl.core.logging import get_logger
from deployctl.core.retry import PollResult, RetryPolicy
from deployctl.deploy.builder import ArtifactBuilder, DockerBuilder, uncommitted_changes
from deployctl.deploy.executor import LocalExecutor, RemoteExecutor, create_executor
from deployctl.deploy.health import HealthProber, TargetHealthCheck
from deployctl.deploy.lock import TargetLock
from deployctl.deploy.models import (
    ArtifactRef,
    DeploymentMode,
    DeploymentOutcome,
    DeploymentPhase,
    DeploymentRecord,
    DeploymentTarget,
    HealthResult,
    RuntimeSnapshot,
    utcnow,
)
from deployctl.deploy.records import RecordLog
from deployctl.deploy.retention import PruneReport, RetentionManager
from deployctl.deploy.runtime import RuntimeManager, create_runtime
from deployctl.deploy.store import ArtifactTransfer, DockerImageStore

logger = get_logger(__name__)

# Error class for a non-taxonomy failure, by the phase it was raised from
_PHASE_ERRORS: dict[DeploymentPhase, type[DeploymentError]] = {
    DeploymentPhase.IDLE: PreconditionError,
    DeploymentPhase.PRECHECKED: BuildError,
    DeploymentPhase.BUILT: TransferError,
    DeploymentPhase.TRANSFERRED: ActivationError,
    DeploymentPhase.ACTIVATED: VerificationError,
}


@contextmanager
def interrupt_on_sigterm() -> Iterator[None]:
    """Deliver SIGTERM as KeyboardInterrupt for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: Any) -> None:
        raise KeyboardInterrupt(f"received signal {signum}")

    previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


@dataclass
class RunState:
    """Mutable state of one run, threaded through the phase handlers."""

    record: DeploymentRecord
    force: bool = False
    ref: ArtifactRef | None = None
    template: str | None = None
    snapshot: RuntimeSnapshot | None = None
    activation_started: bool = False
    actions: list[str] = field(default_factory=list)


@dataclass
class RunReport:
    """What a run did, for the CLI to render."""

    record: DeploymentRecord
    actions: list[str] = field(default_factory=list)
    guidance: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        if self.record.outcome is None:
            return 0 if self.record.dry_run else 1
        return self.record.outcome.exit_code

    def summary(self) -> dict[str, Any]:
        summary = self.record.summary()
        if self.record.dry_run and self.record.outcome is None:
            summary["outcome"] = "dry_run"
        return summary


class DeploymentOrchestrator:
    """Drives one target through build, transfer, activate, verify and commit.

    Every collaborator is injected, so the same machine runs against docker
    over SSH in production and against in-memory fakes in tests.
    """

    def __init__(
        self,
        target: DeploymentTarget,
        builder: ArtifactBuilder,
        transfer: ArtifactTransfer,
        runtime: RuntimeManager,
        health_check: Callable[[], HealthResult],
        health_policy: RetryPolicy,
        records: RecordLog,
        lock: TargetLock,
        retention: RetentionManager,
        source_dir: str | Path = ".",
        local_executor: RemoteExecutor | None = None,
        confirm: Callable[[str], bool] | None = None,
        on_phase: Callable[[DeploymentPhase, DeploymentRecord], None] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            target: Target being deployed to
            builder: Artifact builder
            transfer: Local to remote artifact transfer (owns both stores)
            runtime: Runtime manager on the target
            health_check: Single probe of the target, never retried itself
            health_policy: Bounded retry policy for verification
            records: Deployment record log
            lock: Per-target lock
            retention: Retention manager run after commit
            source_dir: Source tree to build
            local_executor: Executor for local source inspection
            confirm: Interactive yes/no prompt; None means non-interactive
            on_phase: Called on every phase transition
        """
        self.target = target
        self.builder = builder
        self.transfer = transfer
        self.runtime = runtime
        self.health_check = health_check
        self.health_policy = health_policy
        self.records = records
        self.lock = lock
        self.retention = retention
        self.source_dir = Path(source_dir)
        self.local_executor = local_executor or LocalExecutor()
        self._confirm = confirm
        self._on_phase = on_phase
        self._closeables: list[Any] = []
        self._log = logger.bind(target=target.name)

        self._transitions: dict[DeploymentMode, dict[DeploymentPhase, Callable[[RunState], DeploymentPhase]]] = {
            DeploymentMode.DEPLOY: {
                DeploymentPhase.IDLE: self._precheck,
                DeploymentPhase.PRECHECKED: self._build,
                DeploymentPhase.BUILT: self._transfer,
                DeploymentPhase.TRANSFERRED: self._activate,
                DeploymentPhase.ACTIVATED: self._verify,
                DeploymentPhase.VERIFIED: self._commit,
            },
            DeploymentMode.ROLLBACK: {
                DeploymentPhase.IDLE: self._precheck,
                DeploymentPhase.PRECHECKED: self._activate,
                DeploymentPhase.ACTIVATED: self._verify,
                DeploymentPhase.VERIFIED: self._commit,
            },
        }

    @classmethod
    def from_config(
        cls,
        name: str,
        config: TargetConfig,
        state_dir: str | Path,
        confirm: Callable[[str], bool] | None = None,
        on_phase: Callable[[DeploymentPhase, DeploymentRecord], None] | None = None,
    ) -> "DeploymentOrchestrator":
        """Wire up docker, SSH and HTTP collaborators for a configured target."""
        target = DeploymentTarget.from_config(name, config)

        remote_executor = create_executor(target, config.ssh.connect_timeout, config.ssh.command_timeout)
        if target.local:
            local_executor = remote_executor
        else:
            local_executor = LocalExecutor(config.ssh.connect_timeout, config.ssh.command_timeout)

        local_store = DockerImageStore(local_executor, "local", sudo=target.local and target.sudo)
        if target.local:
            remote_store = local_store
        else:
            remote_store = DockerImageStore(remote_executor, target.address, sudo=target.sudo)

        runtime = create_runtime(remote_executor, target)
        prober = HealthProber(
            timeout=config.health.timeout,
            indicator_field=config.health.indicator_field,
            healthy_values=config.health.healthy_values,
        )

        orchestrator = cls(
            target=target,
            builder=DockerBuilder(
                name=target.artifact_name or "",
                dockerfile=config.artifact.dockerfile,
                context=config.artifact.context,
                exclude=config.artifact.exclude,
            ),
            transfer=ArtifactTransfer(
                local_store,
                remote_store,
                RetryPolicy(attempts=config.transfer.attempts, interval=config.transfer.retry_delay),
            ),
            runtime=runtime,
            health_check=TargetHealthCheck(
                prober,
                target.health_endpoint or "",
                runtime=runtime,
                check_liveness=config.health.check_liveness,
            ),
            health_policy=RetryPolicy(
                attempts=config.health.attempts,
                interval=config.health.interval,
                success_threshold=config.health.success_threshold,
                initial_delay=config.health.initial_delay,
            ),
            records=RecordLog(state_dir),
            lock=TargetLock(state_dir, name, lease_seconds=config.lock.lease_seconds),
            retention=RetentionManager(config.retention.keep),
            source_dir=Path(config.artifact.source_dir).expanduser().resolve(),
            local_executor=local_executor,
            confirm=confirm,
            on_phase=on_phase,
        )
        orchestrator._closeables = [prober, remote_executor, local_executor]
        return orchestrator

    @property
    def artifact_name(self) -> str:
        """Configured image name; commands that read the catalogs cannot run without it."""
        if not self.target.artifact_name:
            raise PreconditionError(f"Target '{self.target.name}' has no artifact.name configured")
        return self.target.artifact_name

    @property
    def stores(self) -> list[DockerImageStore]:
        """Distinct artifact stores, local first."""
        if self.transfer.destination is self.transfer.source:
            return [self.transfer.source]
        return [self.transfer.source, self.transfer.destination]

    def close(self) -> None:
        for resource in self._closeables:
            resource.close()
        self._closeables = []

    def __enter__(self) -> "DeploymentOrchestrator":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # Entry points

    def deploy(self, message: str = "", dry_run: bool = False, force: bool = False) -> RunReport:
        """Build the current source and make it the running version."""
        record = DeploymentRecord(
            target=self.target.name,
            mode=DeploymentMode.DEPLOY,
            message=message,
            dry_run=dry_run,
        )
        return self._execute(RunState(record=record, force=force))

    def rollback(self, ref: ArtifactRef | None = None, message: str = "", dry_run: bool = False) -> RunReport:
        """Re-activate a prior artifact, resolved from the record log unless given."""
        record = DeploymentRecord(
            target=self.target.name,
            mode=DeploymentMode.ROLLBACK,
            message=message,
            dry_run=dry_run,
        )
        return self._execute(RunState(record=record, force=True, ref=ref))

    def prune(self, keep: int | None = None, dry_run: bool = False) -> list[PruneReport]:
        """Apply retention outside of a deployment."""
        retention = RetentionManager(keep) if keep else self.retention
        active = self.records.active_ref(self.target.name)
        name = self.artifact_name

        if dry_run:
            return retention.cleanup(self.stores, name, active, dry_run=True)

        with self.lock:
            return retention.cleanup(self.stores, name, active)

    def resolve_ref(self, value: str) -> ArtifactRef:
        """Accept either a bare revision or a full NAME:REVISION."""
        if ":" in value:
            return ArtifactRef.parse(value)
        return ArtifactRef(name=self.artifact_name, revision=value)

    # Run driver

    def _execute(self, run: RunState) -> RunReport:
        record = run.record
        self._log.info(
            "Run started",
            mode=record.mode.value,
            dry_run=record.dry_run,
        )

        if record.dry_run:
            return self._dry_run(run)

        self.lock.acquire()
        try:
            with interrupt_on_sigterm():
                self.records.start(record)
                try:
                    self._drive(run)
                except KeyboardInterrupt:
                    self._interrupted(run)
                    raise
                except Exception as e:
                    if not record.is_terminal:
                        self._finish(run, DeploymentOutcome.FAILED, f"unexpected error: {type(e).__name__}: {e}")
                    raise
        finally:
            self.lock.release()

        self._log.info(
            "Run finished",
            outcome=record.outcome.value if record.outcome else None,
            phase=record.phase_reached.value,
        )
        return RunReport(record=record, actions=run.actions, guidance=self._guidance(record))

    def _drive(self, run: RunState) -> None:
        transitions = self._transitions[run.record.mode]
        phase = DeploymentPhase.IDLE

        while phase in transitions:
            try:
                next_phase = transitions[phase](run)
                self._enter(run, next_phase)
            except DeployCtlError as e:
                if run.record.is_terminal:
                    self._log.warning("Error after run was finalized", error=e)
                    return
                self._fail(run, self._classify(e, phase))
                return
            except Exception as e:
                if run.record.is_terminal:
                    raise
                self._log.error("Unexpected error", phase=phase.value, error_type=type(e).__name__)
                self._fail(run, self._classify(e, phase))
                return
            phase = next_phase

    def _enter(self, run: RunState, phase: DeploymentPhase) -> None:
        record = run.record
        record.phase_reached = phase
        record.add_event(phase.value, f"Reached {phase.value}", {"ref": run.ref.tag if run.ref else None})
        self._log.info(
            "Phase reached",
            phase=phase.value,
            revision=run.ref.revision if run.ref else None,
        )
        if not record.dry_run:
            self.lock.renew()
        if self._on_phase:
            self._on_phase(phase, record)

    def _classify(self, error: Exception, phase: DeploymentPhase) -> DeploymentError:
        if isinstance(error, DeploymentError):
            if error.phase is None:
                error.phase = phase.value
            return error
        error_class = _PHASE_ERRORS.get(phase, DeploymentError)
        if isinstance(error, DeployCtlError):
            return error_class(str(error), phase=phase.value, details=error.details)
        return error_class(f"{type(error).__name__}: {error}", phase=phase.value)

    def _finish(self, run: RunState, outcome: DeploymentOutcome, reason: str = "") -> None:
        record = run.record
        record.outcome = outcome
        record.reason = reason
        record.finished_at = utcnow()
        record.add_event(outcome.value, reason or outcome.value)
        if not record.dry_run:
            self.records.finish(record)

    # Transition handlers

    def _precheck(self, run: RunState) -> DeploymentPhase:
        record = run.record
        missing = self.target.missing_fields()
        if missing:
            raise PreconditionError(f"Target '{self.target.name}' is missing required settings: {', '.join(missing)}")

        try:
            run.template = Path(self.target.descriptor).read_text()
        except OSError as e:
            raise PreconditionError(f"Cannot read runtime descriptor {self.target.descriptor}: {e}")

        try:
            self.runtime.executor.ping()
        except DeployCtlError as e:
            raise PreconditionError(f"Target {self.target.address} is unreachable: {e}")

        if record.mode == DeploymentMode.ROLLBACK:
            run.ref = self._resolve_rollback_ref(run)
        else:
            if not self.builder.toolchain_available():
                raise PreconditionError("Build toolchain is not available (is docker running?)")
            self._check_source(run)
            run.ref = ArtifactRef(name=self.target.artifact_name, revision=self.builder.revision_for(self.source_dir))

        record.from_ref = self.records.active_ref(self.target.name)
        record.to_ref = run.ref

        if not run.force and not record.dry_run and record.from_ref is not None:
            self._check_current_health()

        return DeploymentPhase.PRECHECKED

    def _check_source(self, run: RunState) -> None:
        changes = uncommitted_changes(self.local_executor, self.source_dir)
        if not changes:
            return

        self._log.warning("Source tree has uncommitted changes", count=len(changes), source_dir=str(self.source_dir))
        if run.force:
            return
        if run.record.dry_run:
            run.actions.append(f"Confirm {len(changes)} uncommitted change(s) in {self.source_dir}")
            return
        if not self._ask(f"{len(changes)} uncommitted change(s) in {self.source_dir}. Deploy anyway?"):
            raise PreconditionError("Aborted: source tree has uncommitted changes (use --force to skip this check)")

    def _check_current_health(self) -> None:
        try:
            result = self.health_check()
        except DeployCtlError as e:
            self._log.warning("Pre-deployment health check errored", error=e)
            return

        self._log.info("Pre-deployment health", status=result.status.value, detail=result.detail)
        if result.healthy:
            return
        if not self._ask(f"Current deployment on {self.target.name} is {result.status.value}. Continue?"):
            raise PreconditionError("Aborted: current deployment is not healthy (use --force to skip this check)")

    def _resolve_rollback_ref(self, run: RunState) -> ArtifactRef:
        ref = run.ref or self.records.resolve_rollback_ref(self.target.name)
        if ref is None:
            raise PreconditionError(f"No previous deployment of '{self.target.name}' to roll back to")
        if not self.transfer.destination.has(ref):
            raise PreconditionError(f"Artifact {ref.tag} is no longer present on {self.transfer.destination.location}")
        return ref

    def _ask(self, question: str) -> bool:
        if self._confirm is None:
            return False
        return self._confirm(question)

    def _build(self, run: RunState) -> DeploymentPhase:
        ref = self.builder.build(self.source_dir, self.target.platform)
        if ref != run.ref:
            self._log.warning("Built revision differs from precheck revision", expected=run.ref.tag, built=ref.tag)
            run.ref = ref
            run.record.to_ref = ref
        return DeploymentPhase.BUILT

    def _transfer(self, run: RunState) -> DeploymentPhase:
        moved = self.transfer.push(run.ref)
        run.record.add_event("transfer", "Artifact transferred" if moved else "Artifact already on target")
        return DeploymentPhase.TRANSFERRED

    def _activate(self, run: RunState) -> DeploymentPhase:
        self.runtime.prepare()
        run.snapshot = self.runtime.snapshot()

        current = run.snapshot.active_ref
        if current != run.record.from_ref:
            self._log.warning(
                "Target revision differs from record log",
                recorded=run.record.from_ref.tag if run.record.from_ref else None,
                actual=current.tag if current else None,
            )
            run.record.from_ref = current

        run.activation_started = True
        self.runtime.activate(run.ref, run.template)
        return DeploymentPhase.ACTIVATED

    def _verify(self, run: RunState) -> DeploymentPhase:
        result = self._poll_health(run)
        if not result.succeeded:
            detail = result.last.detail if result.last else "no probes made"
            raise VerificationError(f"{run.ref.tag} did not become healthy after {result.attempts} probe(s): {detail}")
        return DeploymentPhase.VERIFIED

    def _commit(self, run: RunState) -> DeploymentPhase:
        self._finish(run, DeploymentOutcome.SUCCEEDED)
        self._log.info("Deployment committed", ref=run.ref.tag)

        try:
            self.retention.cleanup(self.stores, run.ref.name, run.ref)
        except DeployCtlError as e:
            self._log.warning("Retention cleanup failed", error=e)
        return DeploymentPhase.COMMITTED

    def _poll_health(self, run: RunState) -> PollResult[HealthResult]:
        def on_attempt(attempt: int, result: HealthResult) -> None:
            run.record.health.append(result)
            log = self._log.info if result.healthy else self._log.warning
            log(
                "Health probe",
                attempt=attempt,
                max_attempts=self.health_policy.attempts,
                status=result.status.value,
                detail=result.detail,
            )

        return self.health_policy.poll(self.health_check, is_success=lambda r: r.healthy, on_attempt=on_attempt)

    # Failure edges

    def _fail(self, run: RunState, error: DeploymentError) -> None:
        self._log.error("Run failed", phase=error.phase, error=error)

        if not run.activation_started:
            self._finish(run, DeploymentOutcome.FAILED, str(error))
            return

        self._roll_back(run, error)

    def _roll_back(self, run: RunState, error: DeploymentError) -> None:
        snapshot = run.snapshot
        if snapshot is None or snapshot.is_empty:
            try:
                self.runtime.teardown()
            except Exception as e:
                self._log.warning("Teardown after failed first deployment failed", error=e)
            self._finish(run, DeploymentOutcome.FAILED, f"{error}; no previous version to restore")
            return

        self._log.warning("Rolling back", to=snapshot.active_ref.tag)
        try:
            self.runtime.restore(snapshot)
            result = self._poll_health(run)
            if not result.succeeded:
                detail = result.last.detail if result.last else "no probes made"
                raise RollbackVerificationError(
                    f"Restored {snapshot.active_ref.tag} did not become healthy: {detail}",
                    phase=DeploymentPhase.ROLLED_BACK.value,
                )
        except Exception as e:
            self._log.error("Rollback failed, target needs manual intervention", error=e)
            run.record.add_event("rollback_verification_failed", str(e))
            self._finish(run, DeploymentOutcome.FAILED, f"{error}; rollback failed: {e}")
            return

        run.record.phase_reached = DeploymentPhase.ROLLED_BACK
        self._finish(run, DeploymentOutcome.ROLLED_BACK, str(error))
        self._log.warning("Rolled back", active=snapshot.active_ref.tag)

    def _interrupted(self, run: RunState) -> None:
        self._log.error("Run interrupted", phase=run.record.phase_reached.value)
        if run.record.is_terminal:
            return
        reason = "interrupted"
        if run.activation_started:
            reason = "interrupted during activation; target may be partially activated"
        self._finish(run, DeploymentOutcome.FAILED, reason)

    def _guidance(self, record: DeploymentRecord) -> list[str]:
        if not any(e.event_type == "rollback_verification_failed" for e in record.events):
            return []
        return [
            "Automatic recovery is exhausted; the target may be serving an unverified version.",
            f"Inspect the runtime: deployctl status {self.target.name}",
            f"Check the health endpoint by hand: {self.target.health_endpoint}",
            f"Re-activate a known-good revision: deployctl deploy {self.target.name} --rollback --to REVISION",
        ]

    # Dry run

    def _dry_run(self, run: RunState) -> RunReport:
        holder = self.lock.holder()
        if holder is not None and not self.lock.is_stale(holder):
            raise LockContentionError(f"Target '{self.target.name}' is locked by another run", holder=holder)

        record = run.record
        try:
            self._enter(run, self._precheck(run))
        except DeployCtlError as e:
            error = self._classify(e, DeploymentPhase.IDLE)
            record.outcome = DeploymentOutcome.FAILED
            record.reason = str(error)
            record.finished_at = utcnow()
            return RunReport(record=record, actions=run.actions)

        run.actions.extend(self._planned_actions(run))
        return RunReport(record=record, actions=run.actions)

    def _planned_actions(self, run: RunState) -> list[str]:
        ref = run.ref
        destination = self.transfer.destination
        actions: list[str] = []

        if run.record.mode == DeploymentMode.DEPLOY:
            actions.append(f"Build {ref.tag} for {self.target.platform} from {self.source_dir}")
            if destination.has(ref):
                actions.append(f"Skip transfer: {ref.tag} already on {destination.location}")
            else:
                actions.append(f"Transfer {ref.tag} to {destination.location}")

        actions.append(f"Snapshot current state in {self.target.workdir}")
        actions.append(
            f"Apply {self.target.descriptor} ({self.target.runtime.value}) pinned to {ref.tag} on {self.target.address}"
        )
        actions.append(
            f"Verify {self.target.health_endpoint}: up to {self.health_policy.attempts} probe(s), "
            f"{self.health_policy.interval:g}s apart, {self.health_policy.success_threshold} consecutive healthy"
        )
        actions.append(f"Keep the {self.retention.keep} newest {ref.name} artifact(s) plus {ref.tag}")
        return actions

