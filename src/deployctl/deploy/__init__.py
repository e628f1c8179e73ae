"""Deployment orchestration module."""

from deployctl.deploy.models import (
    ArtifactCatalogEntry,
    ArtifactRef,
    DeploymentMode,
    DeploymentOutcome,
    DeploymentPhase,
    DeploymentRecord,
    DeploymentTarget,
    HealthResult,
    HealthStatus,
)
from deployctl.deploy.orchestrator import DeploymentOrchestrator, RunReport
from deployctl.deploy.records import RecordLog

__all__ = [
    "ArtifactCatalogEntry",
    "ArtifactRef",
    "DeploymentMode",
    "DeploymentOrchestrator",
    "DeploymentOutcome",
    "DeploymentPhase",
    "DeploymentRecord",
    "DeploymentTarget",
    "HealthResult",
    "HealthStatus",
    "RecordLog",
    "RunReport",
]
