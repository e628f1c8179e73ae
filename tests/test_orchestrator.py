"""Tests for the deployment state machine."""

import dataclasses
import json
import signal

import pytest

from deployctl.core.exceptions import LockContentionError, PreconditionError
from deployctl.deploy.executor import CommandResult
from deployctl.deploy.models import (
    ArtifactRef,
    DeploymentMode,
    DeploymentOutcome,
    DeploymentPhase,
)
from deployctl.deploy.records import RecordLog

ABC = ArtifactRef("web", "abc123")
DEF = ArtifactRef("web", "def456")


class TestDeploy:
    """Happy path deployments."""

    def test_first_deploy_succeeds(self, harness):
        report = harness.deploy("abc123")

        record = report.record
        assert record.outcome == DeploymentOutcome.SUCCEEDED
        assert record.phase_reached == DeploymentPhase.COMMITTED
        assert report.exit_code == 0
        assert record.from_ref is None
        assert record.to_ref == ABC
        assert harness.runtime.active_ref == ABC
        assert harness.records.active_ref("web") == ABC

    def test_builds_for_target_platform(self, harness):
        harness.deploy("abc123")
        assert harness.builder.builds == [("abc123", "linux/arm64")]

    def test_artifact_reaches_remote_store(self, harness):
        harness.deploy("abc123")
        assert harness.remote_store.has(ABC)
        assert harness.transfer.pushed == [ABC]

    def test_second_deploy_records_previous_ref(self, harness):
        harness.deploy("abc123")
        report = harness.deploy("def456")

        assert report.record.outcome == DeploymentOutcome.SUCCEEDED
        assert report.record.from_ref == ABC
        assert report.record.to_ref == DEF
        assert harness.records.active_ref("web") == DEF

    def test_phase_callback_order(self, harness):
        phases = []
        harness.healthy_revisions.add("abc123")
        harness.orchestrator("abc123", on_phase=lambda phase, record: phases.append(phase)).deploy()

        assert phases == [
            DeploymentPhase.PRECHECKED,
            DeploymentPhase.BUILT,
            DeploymentPhase.TRANSFERRED,
            DeploymentPhase.ACTIVATED,
            DeploymentPhase.VERIFIED,
            DeploymentPhase.COMMITTED,
        ]

    def test_lock_released_after_run(self, harness):
        harness.deploy("abc123")
        assert not harness.lock().path.exists()

    def test_record_persisted_as_started_and_finished_lines(self, harness):
        report = harness.deploy("abc123", message="first release")

        lines = RecordLog(harness.state_dir).path("web").read_text().splitlines()
        entries = [json.loads(line) for line in lines]
        assert [e["event"] for e in entries] == ["started", "finished"]
        assert {e["id"] for e in entries} == {report.record.id}
        assert entries[1]["outcome"] == "succeeded"
        assert entries[1]["message"] == "first release"

    def test_drift_on_target_is_reported_as_from_ref(self, harness):
        harness.deploy("abc123")
        harness.runtime.active_ref = ArtifactRef("web", "zzz999")
        harness.healthy_revisions.add("zzz999")

        report = harness.deploy("def456")

        assert report.record.from_ref == ArtifactRef("web", "zzz999")
        assert report.record.outcome == DeploymentOutcome.SUCCEEDED


class TestVerificationFailure:
    """Failures at or after activation go through rollback."""

    def test_unhealthy_deploy_rolls_back(self, harness):
        harness.deploy("abc123")
        report = harness.deploy("def456", healthy=False)

        record = report.record
        assert record.outcome == DeploymentOutcome.ROLLED_BACK
        assert record.phase_reached == DeploymentPhase.ROLLED_BACK
        assert report.exit_code == 2
        assert harness.runtime.active_ref == ABC
        assert harness.records.active_ref("web") == ABC

    def test_rollback_restores_health(self, harness):
        harness.deploy("abc123")
        harness.deploy("def456", healthy=False)

        assert harness.prober.probe("http://web.internal:8080/health").healthy

    def test_probe_attempts_are_bounded(self, harness):
        harness.deploy("abc123")
        report = harness.deploy("def456", healthy=False)

        # three failed probes of def456, one healthy probe of the restored abc123
        assert len(report.record.health) == 4
        assert [h.healthy for h in report.record.health] == [False, False, False, True]

    def test_activation_error_rolls_back(self, harness):
        harness.deploy("abc123")
        harness.runtime.fail_activate = True

        report = harness.deploy("def456")

        assert report.record.outcome == DeploymentOutcome.ROLLED_BACK
        assert "compose up exited 1" in report.record.reason
        assert harness.runtime.calls[-1] == "restore:abc123"
        assert harness.runtime.active_ref == ABC

    def test_first_deploy_failure_tears_down(self, harness):
        report = harness.deploy("abc123", healthy=False)

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert "no previous version to restore" in report.record.reason
        assert harness.runtime.calls[-1] == "teardown"
        assert harness.records.active_ref("web") is None

    def test_rollback_verification_failure_needs_operator(self, harness):
        harness.deploy("abc123")
        harness.healthy_revisions.clear()

        report = harness.deploy("def456", healthy=False, force=True)

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert report.exit_code == 1
        assert "rollback failed" in report.record.reason
        assert report.guidance
        assert any("deployctl status web" in line for line in report.guidance)

    def test_failed_restore_needs_operator(self, harness):
        harness.deploy("abc123")
        harness.runtime.fail_restore = True

        report = harness.deploy("def456", healthy=False)

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert report.guidance

    def test_plain_rollback_has_no_guidance(self, harness):
        harness.deploy("abc123")
        report = harness.deploy("def456", healthy=False)
        assert report.guidance == []


class TestEarlyFailures:
    """Failures before activation never touch the running version."""

    def test_unreachable_target(self, harness):
        harness.remote_executor.reachable = False

        report = harness.deploy("abc123")

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert report.record.phase_reached == DeploymentPhase.IDLE
        assert "unreachable" in report.record.reason
        assert harness.builder.builds == []
        assert harness.runtime.calls == []

    def test_missing_settings(self, harness):
        target = dataclasses.replace(harness.target, health_endpoint=None)

        report = harness.orchestrator("abc123", target=target).deploy()

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert "health.endpoint" in report.record.reason

    def test_missing_toolchain(self, harness):
        harness.builder.available = False

        report = harness.deploy("abc123")

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert "toolchain" in report.record.reason

    def test_build_failure(self, harness):
        harness.builder.fail = True

        report = harness.deploy("abc123")

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert report.record.phase_reached == DeploymentPhase.PRECHECKED
        assert harness.runtime.calls == []

    def test_transfer_failure(self, harness):
        harness.deploy("abc123")
        harness.transfer.fail = True

        report = harness.deploy("def456")

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert report.record.phase_reached == DeploymentPhase.BUILT
        assert "3 attempts" in report.record.reason
        assert harness.runtime.active_ref == ABC
        assert not any(call.startswith("activate:def456") for call in harness.runtime.calls)

    def test_uncommitted_changes_without_confirmation(self, harness):
        harness.local_executor.responses["git "] = CommandResult("git status", " M app.py\n", "", 0)

        report = harness.deploy("abc123")

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert "uncommitted" in report.record.reason
        assert harness.runtime.calls == []

    def test_uncommitted_changes_with_force(self, harness):
        harness.local_executor.responses["git "] = CommandResult("git status", " M app.py\n", "", 0)

        report = harness.deploy("abc123", force=True)

        assert report.record.outcome == DeploymentOutcome.SUCCEEDED

    def test_uncommitted_changes_confirmed(self, harness):
        harness.local_executor.responses["git "] = CommandResult("git status", " M app.py\n", "", 0)
        questions = []

        def confirm(question):
            questions.append(question)
            return True

        harness.healthy_revisions.add("abc123")
        report = harness.orchestrator("abc123", confirm=confirm).deploy()

        assert report.record.outcome == DeploymentOutcome.SUCCEEDED
        assert len(questions) == 1
        assert "uncommitted" in questions[0]

    def test_unhealthy_current_version_declined(self, harness):
        harness.deploy("abc123")
        harness.healthy_revisions.clear()

        report = harness.orchestrator("def456", confirm=lambda question: False).deploy()

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert report.record.phase_reached == DeploymentPhase.IDLE
        assert harness.runtime.active_ref == ABC


class TestRollbackEntryPoint:
    """--rollback skips build and transfer."""

    def test_rollback_after_rolled_back_deploy(self, harness):
        harness.deploy("abc123")
        harness.deploy("def456", healthy=False)
        builds = list(harness.builder.builds)

        report = harness.orchestrator().rollback()

        assert report.record.mode == DeploymentMode.ROLLBACK
        assert report.record.outcome == DeploymentOutcome.SUCCEEDED
        assert report.record.to_ref == ABC
        assert harness.runtime.active_ref == ABC
        assert harness.runtime.calls[-1] == "activate:abc123"
        assert harness.builder.builds == builds

    def test_rollback_reverts_successful_deploy(self, harness):
        harness.deploy("abc123")
        harness.deploy("def456")

        report = harness.orchestrator().rollback(message="bad release")

        assert report.record.outcome == DeploymentOutcome.SUCCEEDED
        assert report.record.from_ref == DEF
        assert harness.runtime.active_ref == ABC
        assert harness.records.active_ref("web") == ABC

    def test_rollback_phases(self, harness):
        harness.deploy("abc123")
        harness.deploy("def456")
        phases = []

        harness.orchestrator(on_phase=lambda phase, record: phases.append(phase)).rollback()

        assert phases == [
            DeploymentPhase.PRECHECKED,
            DeploymentPhase.ACTIVATED,
            DeploymentPhase.VERIFIED,
            DeploymentPhase.COMMITTED,
        ]

    def test_rollback_to_explicit_ref(self, harness):
        harness.deploy("abc123")
        harness.deploy("def456")
        harness.deploy("fed789")

        orchestrator = harness.orchestrator()
        report = orchestrator.rollback(orchestrator.resolve_ref("abc123"))

        assert report.record.outcome == DeploymentOutcome.SUCCEEDED
        assert harness.runtime.active_ref == ABC

    def test_rollback_without_history(self, harness):
        report = harness.orchestrator().rollback()

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert "No previous deployment" in report.record.reason

    def test_rollback_to_pruned_artifact(self, harness):
        harness.deploy("abc123")

        report = harness.orchestrator().rollback(ArtifactRef("web", "gone00"))

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert "no longer present" in report.record.reason

    def test_failed_rollback_restores_snapshot(self, harness):
        harness.deploy("abc123")
        harness.deploy("def456")
        harness.healthy_revisions.discard("abc123")

        report = harness.orchestrator().rollback()

        assert report.record.outcome == DeploymentOutcome.ROLLED_BACK
        assert harness.runtime.active_ref == DEF


class TestLocking:
    """At most one run per target."""

    def test_locked_target_is_rejected(self, harness):
        other = harness.lock()
        other.acquire()
        try:
            with pytest.raises(LockContentionError):
                harness.deploy("abc123")
        finally:
            other.release()

        assert harness.remote_executor.commands == []
        assert harness.runtime.calls == []
        assert harness.records.history("web") == []

    def test_lock_held_during_run(self, harness):
        held = []

        def on_phase(phase, record):
            held.append(harness.lock().holder() is not None)

        harness.healthy_revisions.add("abc123")
        harness.orchestrator("abc123", on_phase=on_phase).deploy()

        assert held and all(held)

    def test_lock_released_after_failure(self, harness):
        harness.builder.fail = True
        harness.deploy("abc123")
        assert not harness.lock().path.exists()


class TestDryRun:
    """--dry-run changes nothing."""

    def test_dry_run_is_pure(self, harness):
        harness.deploy("abc123")
        calls = list(harness.runtime.calls)
        local = harness.local_store.revisions()
        remote = harness.remote_store.revisions()

        report = harness.orchestrator("def456").deploy(dry_run=True)

        assert report.exit_code == 0
        assert report.summary()["outcome"] == "dry_run"
        assert harness.runtime.calls == calls
        assert harness.runtime.active_ref == ABC
        assert harness.local_store.revisions() == local
        assert harness.remote_store.revisions() == remote
        assert len(harness.records.history("web")) == 1
        assert not harness.lock().path.exists()

    def test_dry_run_lists_actions(self, harness):
        report = harness.orchestrator("def456").deploy(dry_run=True)

        text = "\n".join(report.actions)
        assert "Build web:def456 for linux/arm64" in text
        assert "Transfer web:def456" in text
        assert "up to 3 probe(s)" in text

    def test_dry_run_reports_precheck_failure(self, harness):
        harness.remote_executor.reachable = False

        report = harness.orchestrator("def456").deploy(dry_run=True)

        assert report.exit_code == 1
        assert harness.records.history("web") == []

    def test_dry_run_on_locked_target(self, harness):
        other = harness.lock()
        other.acquire()
        try:
            with pytest.raises(LockContentionError):
                harness.orchestrator().deploy(dry_run=True)
        finally:
            other.release()


class TestInterrupt:
    """Interrupts finalize the record and release the lock."""

    def test_interrupt_during_activation(self, harness):
        harness.deploy("abc123")
        harness.runtime.interrupt_on_activate = True

        with pytest.raises(KeyboardInterrupt):
            harness.orchestrator("def456").deploy(force=True)

        latest = harness.records.history("web")[0]
        assert latest.outcome == DeploymentOutcome.FAILED
        assert latest.reason.startswith("interrupted")
        assert latest.phase_reached == DeploymentPhase.TRANSFERRED
        assert harness.records.unterminated("web") == []
        assert not harness.lock().path.exists()

    def test_sigterm_during_activation(self, harness):
        harness.deploy("abc123")
        harness.runtime.signal_on_activate = True
        previous = signal.getsignal(signal.SIGTERM)

        with pytest.raises(KeyboardInterrupt):
            harness.orchestrator("def456").deploy(force=True)

        latest = harness.records.history("web")[0]
        assert latest.outcome == DeploymentOutcome.FAILED
        assert latest.reason.startswith("interrupted")
        assert harness.records.unterminated("web") == []
        assert not harness.lock().path.exists()
        assert signal.getsignal(signal.SIGTERM) is previous


class TestUnexpectedErrors:
    """Errors outside the deployctl hierarchy still fail or roll back the run."""

    def test_health_transport_crash_rolls_back(self, harness):
        harness.deploy("abc123")
        harness.healthy_revisions.add("def456")
        harness.broken_revisions.add("def456")

        report = harness.orchestrator("def456").deploy()

        record = report.record
        assert record.outcome == DeploymentOutcome.ROLLED_BACK
        assert "RuntimeError" in record.reason
        assert report.exit_code == 2
        assert harness.runtime.active_ref == ABC
        assert harness.records.unterminated("web") == []
        assert not harness.lock().path.exists()

    def test_crash_before_activation_fails(self, harness):
        def crash(source_dir, platform):
            raise RuntimeError("docker daemon went away")

        harness.builder.build = crash

        report = harness.orchestrator("abc123").deploy()

        assert report.record.outcome == DeploymentOutcome.FAILED
        assert report.record.reason.startswith("RuntimeError: docker daemon went away")
        assert harness.runtime.calls == []
        assert harness.records.unterminated("web") == []


class TestRetentionAfterCommit:
    """Cleanup runs after commit and is best effort."""

    def test_old_artifacts_pruned(self, harness):
        for revision in ("old001", "old002", "old003", "old004"):
            harness.local_store.add(ArtifactRef("web", revision))
            harness.remote_store.add(ArtifactRef("web", revision))

        harness.healthy_revisions.add("abc123")
        harness.orchestrator("abc123", keep=2).deploy()

        assert harness.local_store.revisions() == ["abc123", "old004"]
        assert harness.remote_store.revisions() == ["abc123", "old004"]

    def test_cleanup_failure_does_not_fail_deploy(self, harness):
        for revision in ("old001", "old002"):
            harness.remote_store.add(ArtifactRef("web", revision))
        harness.remote_store.fail_remove = {"old001"}

        harness.healthy_revisions.add("abc123")
        report = harness.orchestrator("abc123", keep=1).deploy()

        assert report.record.outcome == DeploymentOutcome.SUCCEEDED
        assert "old001" in harness.remote_store.revisions()
        assert "old002" not in harness.remote_store.revisions()

    def test_no_cleanup_after_rollback(self, harness):
        harness.deploy("abc123")
        harness.remote_store.add(ArtifactRef("web", "old001"))

        harness.orchestrator("def456", keep=1).deploy()

        assert "old001" in harness.remote_store.revisions()

    def test_manual_prune(self, harness):
        harness.deploy("abc123")
        for revision in ("new001", "new002"):
            harness.remote_store.add(ArtifactRef("web", revision))

        reports = harness.orchestrator().prune(keep=1)

        remote = [r for r in reports if r.location == harness.remote_store.location][0]
        assert harness.remote_store.revisions() == ["abc123"]
        assert {r.revision for r in remote.removed} == {"new001", "new002"}

    def test_manual_prune_dry_run(self, harness):
        harness.deploy("abc123")
        harness.remote_store.add(ArtifactRef("web", "new001"))

        reports = harness.orchestrator().prune(keep=1, dry_run=True)

        assert "new001" in harness.remote_store.revisions()
        assert any(r.removed for r in reports)

    def test_prune_needs_artifact_name(self, harness):
        target = dataclasses.replace(harness.target, artifact_name=None)

        with pytest.raises(PreconditionError, match="no artifact.name configured"):
            harness.orchestrator(target=target).prune(keep=1)
