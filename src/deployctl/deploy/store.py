"""Artifact stores: image catalogs on the local and remote docker daemons."""

import os
import posixpath
import shlex
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from deployctl.core.exceptions import DeployCtlError, TransferError
from deployctl.core.logging import get_logger
from deployctl.core.output import format_bytes
from deployctl.core.retry import RetryPolicy
from deployctl.deploy.executor import RemoteExecutor
from deployctl.deploy.models import ArtifactCatalogEntry, ArtifactRef

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_SKIP_TAGS = {"latest", "<none>", ""}


def parse_docker_timestamp(value: str) -> datetime:
    """Parse docker's CreatedAt, e.g. '2024-01-15 10:30:00 +0000 UTC'."""
    parts = value.strip().split(" ")
    try:
        return datetime.strptime(" ".join(parts[:3]), "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        logger.warning("Unparseable image timestamp", value=value)
        return _EPOCH


class DockerImageStore:
    """Catalog of one image name on one docker daemon.

    The daemon is authoritative; the catalog is derived from it on demand.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        location: str,
        sudo: bool = False,
        temp_dir: str = "/tmp",
    ):
        self.executor = executor
        self.location = location
        self.temp_dir = temp_dir
        self._docker = "sudo docker" if sudo else "docker"

    def list(self, name: str) -> list[ArtifactCatalogEntry]:
        """Entries for an artifact name, newest first."""
        result = self.executor.run(
            f"{self._docker} images {shlex.quote(name)} --format '{{{{.Tag}}}}\t{{{{.CreatedAt}}}}'"
        ).check()

        entries: dict[str, ArtifactCatalogEntry] = {}
        for line in result.stdout.splitlines():
            tag, _, created = line.partition("\t")
            tag = tag.strip()
            if tag in _SKIP_TAGS or tag in entries:
                continue
            entries[tag] = ArtifactCatalogEntry(
                ref=ArtifactRef(name=name, revision=tag),
                created_at=parse_docker_timestamp(created),
                location=self.location,
            )

        return sorted(entries.values(), key=lambda e: e.created_at, reverse=True)

    def has(self, ref: ArtifactRef) -> bool:
        return self.executor.run(f"{self._docker} image inspect {shlex.quote(ref.tag)} --format '{{{{.Id}}}}'").ok

    def remove(self, ref: ArtifactRef) -> None:
        self.executor.check(f"{self._docker} rmi {shlex.quote(ref.tag)}")
        logger.info("Removed artifact", ref=ref.tag, location=self.location)

    def tag_latest(self, ref: ArtifactRef) -> None:
        self.executor.check(f"{self._docker} tag {shlex.quote(ref.tag)} {shlex.quote(ref.name + ':latest')}")

    def archive_path(self, ref: ArtifactRef) -> str:
        return posixpath.join(self.temp_dir, f"{ref.name.replace('/', '_')}-{ref.revision}.tar.gz")

    def export(self, ref: ArtifactRef, path: str) -> None:
        """Save an image to a gzip archive, streamed through the shell."""
        self.executor.check(
            f"set -o pipefail; {self._docker} save {shlex.quote(ref.tag)} | gzip > {shlex.quote(path)}"
        )

    def load(self, path: str) -> None:
        """Load an image from a gzip archive on this store's host."""
        self.executor.check(f"set -o pipefail; gunzip -c {shlex.quote(path)} | {self._docker} load")

    def discard(self, path: str) -> None:
        self.executor.run(f"rm -f {shlex.quote(path)} {shlex.quote(path + '.part')}")

    def cleanup_archives(self, name: str) -> None:
        """Remove leftover transfer archives for an artifact name."""
        pattern = posixpath.join(self.temp_dir, f"{name.replace('/', '_')}-*.tar.gz")
        self.executor.run(f"rm -f {pattern} {pattern}.part")


class ArtifactTransfer:
    """Pushes an artifact from the local store to the remote store.

    A transfer is all or nothing: a failed attempt discards the partial
    archive on both sides and the next attempt starts from scratch.
    """

    def __init__(self, source: DockerImageStore, destination: DockerImageStore, policy: RetryPolicy):
        self.source = source
        self.destination = destination
        self.policy = policy

    def push(self, ref: ArtifactRef) -> bool:
        """Make ref available in the destination store.

        Returns:
            True if bytes were moved, False if the destination already had it
        """
        if self.destination.has(ref):
            logger.info("Artifact already present on target", ref=ref.tag)
            self.destination.tag_latest(ref)
            return False

        attempt_count = 0

        def attempt() -> None:
            nonlocal attempt_count
            attempt_count += 1
            self._push_once(ref)

        def on_retry(attempt_no: int, error: BaseException) -> None:
            logger.warning(
                "Transfer failed, retrying",
                ref=ref.tag,
                attempt=attempt_no,
                max_attempts=self.policy.attempts,
                error=error,
            )

        try:
            self.policy.call(attempt, retry_on=(DeployCtlError,), on_retry=on_retry)
        except DeployCtlError as e:
            raise TransferError(
                f"Transfer of {ref.tag} failed after {attempt_count} attempts: {e}",
                attempts=attempt_count,
            )
        return True

    def _push_once(self, ref: ArtifactRef) -> None:
        fd, local_archive = tempfile.mkstemp(prefix=f"{ref.revision}-", suffix=".tar.gz")
        os.close(fd)
        remote_archive = self.destination.archive_path(ref)

        try:
            self.source.export(ref, local_archive)
            logger.info(
                "Uploading artifact",
                ref=ref.tag,
                size=format_bytes(Path(local_archive).stat().st_size),
                destination=self.destination.executor.description,
            )
            self.destination.executor.copy(local_archive, remote_archive)
            self.destination.load(remote_archive)
            self.destination.tag_latest(ref)
        finally:
            Path(local_archive).unlink(missing_ok=True)
            try:
                self.destination.discard(remote_archive)
            except DeployCtlError as e:
                logger.warning("Could not remove remote archive", path=remote_archive, error=e)
