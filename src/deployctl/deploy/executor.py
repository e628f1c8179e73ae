"""Remote executor: the only channel through which a run touches a target."""

import os
import shlex
import shutil
import socket
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import paramiko

from deployctl.core.exceptions import RemoteCommandError, TimeoutError
from deployctl.core.logging import get_logger
from deployctl.deploy.models import DeploymentTarget

logger = get_logger(__name__)


@dataclass
class CommandResult:
    """Output of a command run through an executor."""

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def check(self) -> "CommandResult":
        """Raise RemoteCommandError unless the command succeeded."""
        if not self.ok:
            raise RemoteCommandError(
                f"Command failed with exit code {self.exit_code}: {self.stderr.strip() or self.stdout.strip()}",
                command=self.command,
                exit_code=self.exit_code,
                stderr=self.stderr,
            )
        return self


class RemoteExecutor(ABC):
    """Run a command on, and copy a file to, a target."""

    def __init__(self, connect_timeout: float = 10.0, command_timeout: float = 300.0):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable channel description."""
        pass

    @abstractmethod
    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a shell command and return its output. Never raises on non-zero exit."""
        pass

    @abstractmethod
    def copy(self, local_path: str | Path, remote_path: str) -> None:
        """Copy a local file to the target, replacing it wholesale."""
        pass

    def check(self, command: str, timeout: float | None = None) -> str:
        """Run a command, raise on failure, return stdout."""
        return self.run(command, timeout=timeout).check().stdout

    def ping(self) -> None:
        """Run a no-op to prove the target is reachable."""
        self.check("true", timeout=self.connect_timeout)

    def read_file(self, remote_path: str) -> str | None:
        """Contents of a remote file, or None if it does not exist."""
        result = self.run(f"cat {shlex.quote(remote_path)}")
        return result.stdout if result.ok else None

    def write_file(self, content: str, remote_path: str) -> None:
        """Write content to a remote file through copy()."""
        fd, tmp = tempfile.mkstemp(prefix="deployctl-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            self.copy(tmp, remote_path)
        finally:
            os.unlink(tmp)

    def close(self) -> None:
        pass

    def __enter__(self) -> "RemoteExecutor":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class LocalExecutor(RemoteExecutor):
    """Executor for targets on the invoking machine."""

    @property
    def description(self) -> str:
        return "local"

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        timeout = timeout or self.command_timeout
        logger.debug("Running local command", command=command)

        try:
            proc = subprocess.run(
                command,
                shell=True,
                executable="/bin/bash",
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise TimeoutError(f"Command timed out after {timeout}s: {command}", timeout_seconds=timeout)

        return CommandResult(
            command=command,
            stdout=proc.stdout,
            stderr=proc.stderr,
            exit_code=proc.returncode,
        )

    def copy(self, local_path: str | Path, remote_path: str) -> None:
        destination = Path(remote_path)
        if Path(local_path).resolve() == destination.resolve():
            return
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        try:
            shutil.copyfile(local_path, partial)
            os.replace(partial, destination)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise RemoteCommandError(f"Copy to {remote_path} failed: {e}")


class SSHExecutor(RemoteExecutor):
    """Executor over SSH using paramiko.

    The connection timeout bounds TCP connect, banner and auth. The command
    timeout bounds each command separately, so a reachable but hanging
    target still returns control.
    """

    def __init__(
        self,
        host: str,
        user: str,
        port: int = 22,
        key_filename: str | None = None,
        connect_timeout: float = 10.0,
        command_timeout: float = 300.0,
    ):
        super().__init__(connect_timeout, command_timeout)
        self.host = host
        self.user = user
        self.port = port
        self.key_filename = key_filename
        self._client: paramiko.SSHClient | None = None

    @property
    def description(self) -> str:
        return f"ssh://{self.user}@{self.host}:{self.port}"

    @property
    def client(self) -> paramiko.SSHClient:
        """Get or create the SSH connection."""
        transport = self._client.get_transport() if self._client else None
        if self._client is None or transport is None or not transport.is_active():
            self._client = self._connect()
        return self._client

    def _connect(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.user,
                key_filename=self.key_filename,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=self.key_filename is None,
            )
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            client.close()
            raise RemoteCommandError(f"Cannot connect to {self.description}: {e}")

        logger.debug("SSH connection established", host=self.host)
        return client

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        timeout = timeout or self.command_timeout
        logger.debug("Running remote command", host=self.host, command=command)

        try:
            _, stdout, _ = self.client.exec_command(command, timeout=timeout)
        except paramiko.SSHException as e:
            raise RemoteCommandError(f"Cannot run command on {self.description}: {e}", command=command)

        channel = stdout.channel
        deadline = time.monotonic() + timeout
        out: list[bytes] = []
        err: list[bytes] = []

        while True:
            while channel.recv_ready():
                out.append(channel.recv(32768))
            while channel.recv_stderr_ready():
                err.append(channel.recv_stderr(32768))
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if time.monotonic() > deadline:
                channel.close()
                raise TimeoutError(f"Remote command timed out after {timeout}s: {command}", timeout_seconds=timeout)
            time.sleep(0.1)

        return CommandResult(
            command=command,
            stdout=b"".join(out).decode(errors="replace"),
            stderr=b"".join(err).decode(errors="replace"),
            exit_code=channel.recv_exit_status(),
        )

    def copy(self, local_path: str | Path, remote_path: str) -> None:
        partial = remote_path + ".part"
        try:
            sftp = self.client.open_sftp()
        except paramiko.SSHException as e:
            raise RemoteCommandError(f"Cannot open SFTP session on {self.description}: {e}")

        try:
            sftp.get_channel().settimeout(self.command_timeout)
            sftp.put(str(local_path), partial)
            sftp.posix_rename(partial, remote_path)
        except (OSError, paramiko.SSHException) as e:
            try:
                sftp.remove(partial)
            except OSError:
                pass
            raise RemoteCommandError(f"Copy to {self.host}:{remote_path} failed: {e}")
        finally:
            sftp.close()

        logger.debug("Copied file", host=self.host, remote_path=remote_path)

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def create_executor(
    target: DeploymentTarget,
    connect_timeout: float = 10.0,
    command_timeout: float = 300.0,
) -> RemoteExecutor:
    """Executor for a target: local subprocess or SSH."""
    if target.local:
        return LocalExecutor(connect_timeout, command_timeout)
    return SSHExecutor(
        host=target.host or "",
        user=target.user,
        port=target.port,
        key_filename=target.credential,
        connect_timeout=connect_timeout,
        command_timeout=command_timeout,
    )
