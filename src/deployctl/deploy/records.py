"""Append-only deployment record log."""

import json
from pathlib import Path
from typing import Any, Iterator

from deployctl.core.exceptions import DeploymentError, ValidationError
from deployctl.core.logging import get_logger
from deployctl.core.utils import sanitize_filename
from deployctl.deploy.models import ArtifactRef, DeploymentOutcome, DeploymentRecord

logger = get_logger(__name__)

# Outcomes whose to_ref may be reverted to by a bare rollback
_ROLLBACK_CANDIDATES = (DeploymentOutcome.SUCCEEDED, DeploymentOutcome.ROLLED_BACK)


class RecordLog:
    """Per-target JSON-lines log of deployment records.

    Each run appends a ``started`` line when it begins and exactly one
    ``finished`` line when it reaches a terminal outcome. Lines are never
    rewritten or removed.
    """

    def __init__(self, state_dir: str | Path):
        """Initialize the record log.

        Args:
            state_dir: deployctl state directory; records live in ``records/``
        """
        self._dir = Path(state_dir) / "records"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._finalized: set[str] = set()

    def path(self, target: str) -> Path:
        return self._dir / f"{sanitize_filename(target)}.jsonl"

    def start(self, record: DeploymentRecord) -> None:
        """Append the opening line for a run."""
        if record.is_terminal:
            raise ValidationError("Cannot start a record that already has an outcome", {"id": record.id})
        self._append(record.target, {"event": "started", **record.to_dict()})
        logger.debug("Record started", id=record.id, target=record.target)

    def finish(self, record: DeploymentRecord) -> None:
        """Append the closing line for a run. Allowed once per record."""
        if not record.is_terminal:
            raise ValidationError("Cannot finish a record without an outcome", {"id": record.id})
        if record.id in self._finalized:
            raise ValidationError("Record already finalized", {"id": record.id})

        self._append(record.target, {"event": "finished", **record.to_dict()})
        self._finalized.add(record.id)
        logger.debug("Record finished", id=record.id, outcome=record.outcome.value)

    def _append(self, target: str, entry: dict[str, Any]) -> None:
        try:
            with open(self.path(target), "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
                f.flush()
        except OSError as e:
            raise DeploymentError(f"Failed to write deployment record: {e}", details={"target": target})

    def _iter_lines(self, target: str) -> Iterator[dict[str, Any]]:
        path = self.path(target)
        if not path.exists():
            return

        with open(path) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning("Skipping malformed record line", path=str(path), line=lineno, error=e)

    def history(self, target: str, limit: int | None = None) -> list[DeploymentRecord]:
        """Records for a target, newest first.

        A run whose ``finished`` line is missing (the process died) is
        returned without an outcome.

        Args:
            target: Target name
            limit: Maximum records to return

        Returns:
            List of DeploymentRecords
        """
        folded: dict[str, dict[str, Any]] = {}
        order: list[str] = []

        for entry in self._iter_lines(target):
            record_id = entry.get("id")
            if not record_id:
                continue
            if record_id not in folded:
                order.append(record_id)
                folded[record_id] = {}
            folded[record_id].update({k: v for k, v in entry.items() if k != "event"})

        records: list[DeploymentRecord] = []
        for record_id in reversed(order):
            try:
                records.append(DeploymentRecord.from_dict(folded[record_id]))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping unreadable record", id=record_id, error=e)

        return records[:limit] if limit else records

    def active_ref(self, target: str) -> ArtifactRef | None:
        """The to_ref of the most recent Succeeded record."""
        for record in self.history(target):
            if record.outcome == DeploymentOutcome.SUCCEEDED and not record.dry_run and record.to_ref:
                return record.to_ref
        return None

    def resolve_rollback_ref(self, target: str) -> ArtifactRef | None:
        """Where a bare rollback goes.

        The newest Succeeded or RolledBack record is the current one; the
        answer is the newest older record of either outcome whose to_ref
        differs from it.
        """
        candidates = [
            r
            for r in self.history(target)
            if r.outcome in _ROLLBACK_CANDIDATES and r.to_ref and not r.dry_run
        ]
        if not candidates:
            return None

        current = candidates[0].to_ref
        for record in candidates[1:]:
            if record.to_ref != current:
                return record.to_ref
        return None

    def unterminated(self, target: str) -> list[DeploymentRecord]:
        """Runs that started but never finished."""
        return [r for r in self.history(target) if not r.is_terminal]
