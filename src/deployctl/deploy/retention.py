"""Retention / cleanup of old artifacts."""

from dataclasses import dataclass, field
from typing import Any

from deployctl.core.exceptions import DeployCtlError, ValidationError
from deployctl.core.logging import get_logger
from deployctl.deploy.models import ArtifactCatalogEntry, ArtifactRef
from deployctl.deploy.store import DockerImageStore

logger = get_logger(__name__)


@dataclass
class PruneReport:
    """What a prune pass did to one store."""

    location: str
    kept: list[ArtifactRef] = field(default_factory=list)
    removed: list[ArtifactRef] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "location": self.location,
            "kept": [r.revision for r in self.kept],
            "removed": [r.revision for r in self.removed],
            "failed": self.failed,
            "error": self.error,
        }


def select_retained(
    entries: list[ArtifactCatalogEntry],
    keep: int,
    active_ref: ArtifactRef | None = None,
) -> tuple[list[ArtifactCatalogEntry], list[ArtifactCatalogEntry]]:
    """Split entries into (retained, pruned).

    Keeps min(keep, len(entries)) entries: the newest ones, except that the
    active ref always survives and takes the place of the oldest of them.
    """
    if keep < 1:
        raise ValidationError("Retention count must be at least 1", {"keep": keep})

    ordered = sorted(entries, key=lambda e: e.created_at, reverse=True)
    active = [e for e in ordered if active_ref is not None and e.ref == active_ref]
    others = [e for e in ordered if e not in active]

    retained = active[:1] + others[: keep - len(active[:1])]
    pruned = [e for e in ordered if e not in retained]
    retained.sort(key=lambda e: e.created_at, reverse=True)
    return retained, pruned


class RetentionManager:
    """Prunes artifact catalogs down to the K most recent plus the active ref.

    Cleanup is best effort: failures are logged and reported, never raised.
    """

    def __init__(self, keep: int = 3):
        if keep < 1:
            raise ValidationError("Retention count must be at least 1", {"keep": keep})
        self.keep = keep

    def prune(
        self,
        store: DockerImageStore,
        name: str,
        active_ref: ArtifactRef | None = None,
        dry_run: bool = False,
    ) -> PruneReport:
        """Prune one store for one artifact name."""
        report = PruneReport(location=store.location)

        try:
            entries = store.list(name)
        except DeployCtlError as e:
            logger.warning("Cannot list artifacts for cleanup", location=store.location, error=e)
            report.error = str(e)
            return report

        retained, pruned = select_retained(entries, self.keep, active_ref)
        report.kept = [e.ref for e in retained]

        for entry in pruned:
            if dry_run:
                report.removed.append(entry.ref)
                continue
            try:
                store.remove(entry.ref)
                report.removed.append(entry.ref)
            except DeployCtlError as e:
                logger.warning("Failed to remove artifact", ref=entry.ref.tag, location=store.location, error=e)
                report.failed[entry.ref.revision] = str(e)

        if not dry_run:
            try:
                store.cleanup_archives(name)
            except DeployCtlError as e:
                logger.warning("Failed to remove transfer archives", location=store.location, error=e)

        logger.info(
            "Retention applied",
            location=store.location,
            kept=len(report.kept),
            removed=len(report.removed),
            dry_run=dry_run,
        )
        return report

    def cleanup(
        self,
        stores: list[DockerImageStore],
        name: str,
        active_ref: ArtifactRef | None,
        dry_run: bool = False,
    ) -> list[PruneReport]:
        """Prune every store independently."""
        return [self.prune(store, name, active_ref, dry_run) for store in stores]
