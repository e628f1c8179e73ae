"""Artifact builder: source tree in, content-addressed image out."""

import fnmatch
import hashlib
import os
import shlex
from abc import ABC, abstractmethod
from pathlib import Path

from deployctl.core.exceptions import BuildError, DeployCtlError
from deployctl.core.logging import get_logger
from deployctl.deploy.executor import LocalExecutor, RemoteExecutor
from deployctl.deploy.models import ArtifactRef

logger = get_logger(__name__)

REVISION_LENGTH = 12


def _excluded(rel_path: str, exclude: list[str]) -> bool:
    parts = rel_path.split("/")
    return any(fnmatch.fnmatch(part, pattern) for part in parts for pattern in exclude)


def compute_revision(
    source_dir: str | Path,
    exclude: list[str] | None = None,
    length: int = REVISION_LENGTH,
) -> str:
    """Short, stable hash of a source tree.

    Covers relative paths, file contents and the executable bit, walked in
    sorted order, so identical trees always hash identically regardless of
    timestamps or filesystem ordering.
    """
    root = Path(source_dir)
    if not root.is_dir():
        raise BuildError(f"Source directory not found: {source_dir}")

    exclude = exclude or []
    digest = hashlib.sha256()

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not _excluded((Path(dirpath) / d).relative_to(root).as_posix(), exclude)
        )
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            rel = path.relative_to(root).as_posix()
            if _excluded(rel, exclude) or path.is_symlink():
                continue

            digest.update(rel.encode() + b"\0")
            digest.update(b"x" if os.access(path, os.X_OK) else b"-")
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    digest.update(chunk)
            digest.update(b"\0")

    return digest.hexdigest()[:length]


def uncommitted_changes(executor: RemoteExecutor, source_dir: str | Path) -> list[str]:
    """Lines of `git status --porcelain` for the source tree; empty outside git."""
    result = executor.run(f"git -C {shlex.quote(str(source_dir))} status --porcelain -- .")
    if not result.ok:
        logger.debug("Not a git checkout, skipping change detection", source_dir=str(source_dir))
        return []
    return [line for line in result.stdout.splitlines() if line.strip()]


class ArtifactBuilder(ABC):
    """Turns a source tree into an immutable artifact."""

    @abstractmethod
    def revision_for(self, source_dir: str | Path) -> str:
        """Revision the given source would build to."""
        pass

    @abstractmethod
    def build(self, source_dir: str | Path, platform: str) -> ArtifactRef:
        """Build the artifact for a target platform."""
        pass

    def toolchain_available(self) -> bool:
        return True


class DockerBuilder(ArtifactBuilder):
    """Builds container images tagged by source revision.

    Cross-building for a platform other than the local one relies on the
    local docker daemon (buildx/QEMU); the platform is always passed
    explicitly.
    """

    def __init__(
        self,
        name: str,
        executor: LocalExecutor | None = None,
        dockerfile: str | None = None,
        context: str | None = None,
        exclude: list[str] | None = None,
        timeout: float = 1800.0,
    ):
        self.name = name
        self._executor = executor or LocalExecutor(command_timeout=timeout)
        self._dockerfile = dockerfile
        self._context = context
        self._exclude = exclude or []
        self._timeout = timeout

    def revision_for(self, source_dir: str | Path) -> str:
        return compute_revision(source_dir, self._exclude)

    def toolchain_available(self) -> bool:
        try:
            return self._executor.run("docker info --format '{{.ServerVersion}}'", timeout=30).ok
        except DeployCtlError:
            return False

    def exists(self, ref: ArtifactRef) -> bool:
        return self._executor.run(f"docker image inspect {shlex.quote(ref.tag)}", timeout=30).ok

    def build(self, source_dir: str | Path, platform: str) -> ArtifactRef:
        ref = ArtifactRef(name=self.name, revision=self.revision_for(source_dir))

        if self.exists(ref):
            logger.info("Artifact already built, reusing", ref=ref.tag)
            return ref

        local_arch = os.uname().machine
        logger.info("Building artifact", ref=ref.tag, platform=platform, local_arch=local_arch)

        context = Path(self._context) if self._context else Path(source_dir)
        dockerfile = Path(self._dockerfile) if self._dockerfile else Path(source_dir) / "Dockerfile"
        command = " ".join(
            [
                "docker build",
                f"--platform {shlex.quote(platform)}",
                f"--label org.opencontainers.image.revision={ref.revision}",
                f"-t {shlex.quote(ref.tag)}",
                f"-f {shlex.quote(str(dockerfile))}",
                shlex.quote(str(context)),
            ]
        )

        try:
            self._executor.run(command, timeout=self._timeout).check()
        except DeployCtlError as e:
            raise BuildError(f"Docker build failed for {ref.tag}: {e}")

        return ref
