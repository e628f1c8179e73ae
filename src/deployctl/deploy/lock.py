"""Per-target mutual exclusion via an expiring file lease."""

import json
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from deployctl.core.exceptions import LockContentionError
from deployctl.core.logging import get_logger
from deployctl.core.utils import sanitize_filename

logger = get_logger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TargetLock:
    """Lease on a target, held from before Prechecked until the run is terminal.

    The lease file is created atomically. A lease whose ``expires_at`` has
    passed, or whose owning process on this host is gone, may be taken over.
    """

    def __init__(
        self,
        state_dir: str | Path,
        target: str,
        lease_seconds: int = 3600,
        owner: str | None = None,
    ):
        self._dir = Path(state_dir) / "locks"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._target = target
        self._lease = timedelta(seconds=lease_seconds)
        self._token = uuid.uuid4().hex
        self._owner = owner or os.environ.get("USER", "unknown")
        self._held = False

    @property
    def path(self) -> Path:
        return self._dir / f"{sanitize_filename(self._target)}.lock"

    @property
    def held(self) -> bool:
        return self._held

    def _lease_data(self) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {
            "target": self._target,
            "token": self._token,
            "owner": self._owner,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": now.isoformat(),
            "expires_at": (now + self._lease).isoformat(),
        }

    def holder(self) -> dict[str, Any] | None:
        """Current lease contents, or None if the target is free."""
        try:
            with open(self.path) as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable lock file", path=str(self.path), error=e)
            return {"target": self._target, "unreadable": True}

    def is_stale(self, holder: dict[str, Any]) -> bool:
        """Whether a lease can be taken over."""
        if holder.get("unreadable"):
            return False

        expires_at = holder.get("expires_at")
        if expires_at and datetime.fromisoformat(expires_at) <= datetime.now(timezone.utc):
            return True

        if holder.get("host") == socket.gethostname() and isinstance(holder.get("pid"), int):
            return not _pid_alive(holder["pid"])

        return False

    def acquire(self) -> None:
        """Take the lease or raise LockContentionError without side effects."""
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.holder()
                if holder is not None and not self.is_stale(holder):
                    raise LockContentionError(
                        f"Target '{self._target}' is locked by another run",
                        holder=holder,
                    )
                logger.warning("Taking over stale lock", target=self._target, holder=holder)
                self.path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w") as f:
                json.dump(self._lease_data(), f)
            self._held = True
            logger.debug("Lock acquired", target=self._target)
            return

        raise LockContentionError(f"Target '{self._target}' lock is contended")

    def renew(self) -> None:
        """Extend the lease expiry. Only the owner may renew."""
        if not self._held:
            return
        holder = self.holder()
        if not holder or holder.get("token") != self._token:
            raise LockContentionError(f"Lost lock on target '{self._target}'", holder=holder)

        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(self._lease_data(), f)
        os.replace(tmp, self.path)

    def release(self) -> None:
        """Drop the lease if this instance still owns it."""
        if not self._held:
            return
        holder = self.holder()
        if holder and holder.get("token") == self._token:
            self.path.unlink(missing_ok=True)
            logger.debug("Lock released", target=self._target)
        self._held = False

    def force_release(self) -> dict[str, Any] | None:
        """Remove whatever lease exists. For operator use on stale locks."""
        holder = self.holder()
        self.path.unlink(missing_ok=True)
        return holder

    def __enter__(self) -> "TargetLock":
        self.acquire()
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()
