"""Deployment data models."""

import posixpath
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from deployctl.config import RuntimeKind, TargetConfig
from deployctl.core.exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DeploymentPhase(str, Enum):
    """States of the deployment state machine, in order."""

    IDLE = "idle"
    PRECHECKED = "prechecked"
    BUILT = "built"
    TRANSFERRED = "transferred"
    ACTIVATED = "activated"
    VERIFIED = "verified"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DONE = "done"


class DeploymentOutcome(str, Enum):
    """Terminal outcome of a run."""

    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        return {
            DeploymentOutcome.SUCCEEDED: 0,
            DeploymentOutcome.FAILED: 1,
            DeploymentOutcome.ROLLED_BACK: 2,
        }[self]


class DeploymentMode(str, Enum):
    """Entry point of a run."""

    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class HealthStatus(str, Enum):
    """Classification of a single probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ArtifactRef:
    """Content-addressed artifact identifier."""

    name: str
    revision: str

    def __post_init__(self) -> None:
        if not self.name or not self.revision:
            raise ValidationError("Artifact name and revision are required")
        if ":" in self.revision or "/" in self.revision:
            raise ValidationError(f"Invalid artifact revision: {self.revision}")

    @property
    def tag(self) -> str:
        return f"{self.name}:{self.revision}"

    def __str__(self) -> str:
        return self.tag

    @classmethod
    def parse(cls, value: str) -> "ArtifactRef":
        """Parse 'name:revision'. The name may contain a registry host with a port."""
        name, sep, revision = value.rpartition(":")
        if not sep or "/" in revision:
            raise ValidationError(f"Expected NAME:REVISION, got '{value}'")
        return cls(name=name, revision=revision)

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "revision": self.revision}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ArtifactRef | None":
        if not data:
            return None
        return cls(name=data["name"], revision=data["revision"])


@dataclass(frozen=True)
class ArtifactCatalogEntry:
    """An artifact version present in a store."""

    ref: ArtifactRef
    created_at: datetime
    location: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref.tag,
            "revision": self.ref.revision,
            "created_at": self.created_at.isoformat(),
            "location": self.location,
        }


@dataclass(frozen=True)
class DeploymentTarget:
    """Where to deploy. Immutable for the duration of a run."""

    name: str
    host: str | None
    user: str
    port: int
    credential: str | None
    workdir: str | None
    descriptor: str | None
    health_endpoint: str | None
    artifact_name: str | None
    platform: str
    runtime: RuntimeKind = RuntimeKind.COMPOSE
    namespace: str = "default"
    env_file: str | None = None
    local: bool = False
    sudo: bool = False
    compose_command: str = "docker compose"

    @classmethod
    def from_config(cls, name: str, config: TargetConfig) -> "DeploymentTarget":
        """Build a target from its merged configuration."""
        return cls(
            name=name,
            host=config.get_host(),
            user=config.user,
            port=config.port,
            credential=config.get_ssh_key(),
            workdir=config.workdir,
            descriptor=config.descriptor,
            health_endpoint=config.health.endpoint,
            artifact_name=config.artifact.name,
            platform=config.artifact.platform,
            runtime=config.runtime,
            namespace=config.namespace,
            env_file=config.env_file,
            local=config.local,
            sudo=config.sudo,
            compose_command=config.compose_command,
        )

    @property
    def address(self) -> str:
        if self.local:
            return "local"
        return f"{self.user}@{self.host}:{self.port}"

    @property
    def remote_descriptor(self) -> str:
        """Path of the runtime descriptor on the target."""
        if not self.workdir or not self.descriptor:
            raise ValidationError("Target has no workdir/descriptor configured")
        return posixpath.join(self.workdir, posixpath.basename(self.descriptor))

    @property
    def revision_marker(self) -> str:
        """Path of the file holding the active revision on the target."""
        if not self.workdir:
            raise ValidationError("Target has no workdir configured")
        return posixpath.join(self.workdir, ".deployctl-revision")

    def missing_fields(self) -> list[str]:
        """Required settings that are not configured."""
        required = {
            "workdir": self.workdir,
            "descriptor": self.descriptor,
            "health.endpoint": self.health_endpoint,
            "artifact.name": self.artifact_name,
        }
        if not self.local:
            required["host"] = self.host
        return [key for key, value in required.items() if not value]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "workdir": self.workdir,
            "descriptor": self.descriptor,
            "runtime": self.runtime.value,
            "health_endpoint": self.health_endpoint,
            "artifact": self.artifact_name,
            "platform": self.platform,
        }


@dataclass
class HealthResult:
    """Result of a single health probe."""

    timestamp: datetime
    status: HealthStatus
    detail: str = ""

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "healthy": self.healthy,
            "status": self.status.value,
            "detail": self.detail,
        }


@dataclass
class RuntimeSnapshot:
    """Point-in-time state of a target, sufficient to restore it."""

    target: str
    captured_at: datetime
    descriptor: str | None = None
    active_ref: ArtifactRef | None = None

    @property
    def is_empty(self) -> bool:
        """True when nothing was running (first deployment)."""
        return self.active_ref is None


@dataclass
class DeploymentEvent:
    """Deployment event for audit trail."""

    timestamp: datetime
    event_type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class DeploymentRecord:
    """Append-only audit and rollback log entry for one run."""

    target: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    mode: DeploymentMode = DeploymentMode.DEPLOY
    from_ref: ArtifactRef | None = None
    to_ref: ArtifactRef | None = None
    message: str = ""
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    outcome: DeploymentOutcome | None = None
    phase_reached: DeploymentPhase = DeploymentPhase.IDLE
    reason: str = ""
    dry_run: bool = False
    health: list[HealthResult] = field(default_factory=list)
    events: list[DeploymentEvent] = field(default_factory=list)

    def add_event(self, event_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Add an event to the record history."""
        self.events.append(
            DeploymentEvent(
                timestamp=utcnow(),
                event_type=event_type,
                message=message,
                details=details or {},
            )
        )

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def summary(self) -> dict[str, Any]:
        """Structured terminal summary."""
        return {
            "target": self.target,
            "from_ref": self.from_ref.tag if self.from_ref else None,
            "to_ref": self.to_ref.tag if self.to_ref else None,
            "outcome": self.outcome.value if self.outcome else "in_progress",
            "phase_reached": self.phase_reached.value,
            "reason": self.reason or None,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "target": self.target,
            "mode": self.mode.value,
            "from_ref": self.from_ref.to_dict() if self.from_ref else None,
            "to_ref": self.to_ref.to_dict() if self.to_ref else None,
            "message": self.message,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "phase_reached": self.phase_reached.value,
            "reason": self.reason,
            "dry_run": self.dry_run,
            "health": [h.to_dict() for h in self.health[-10:]],
            "events": [e.to_dict() for e in self.events[-50:]],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentRecord":
        """Create from dictionary."""
        record = cls(
            target=data["target"],
            id=data["id"],
            mode=DeploymentMode(data.get("mode", "deploy")),
            from_ref=ArtifactRef.from_dict(data.get("from_ref")),
            to_ref=ArtifactRef.from_dict(data.get("to_ref")),
            message=data.get("message", ""),
            outcome=DeploymentOutcome(data["outcome"]) if data.get("outcome") else None,
            phase_reached=DeploymentPhase(data.get("phase_reached", "idle")),
            reason=data.get("reason", ""),
            dry_run=data.get("dry_run", False),
        )
        record.started_at = _parse_time(data.get("started_at")) or record.started_at
        record.finished_at = _parse_time(data.get("finished_at"))

        for h in data.get("health", []):
            record.health.append(
                HealthResult(
                    timestamp=_parse_time(h.get("timestamp")) or record.started_at,
                    status=HealthStatus(h.get("status", "unknown")),
                    detail=h.get("detail", ""),
                )
            )
        for e in data.get("events", []):
            record.events.append(
                DeploymentEvent(
                    timestamp=_parse_time(e.get("timestamp")) or record.started_at,
                    event_type=e.get("event_type", ""),
                    message=e.get("message", ""),
                    details=e.get("details", {}),
                )
            )

        return record
