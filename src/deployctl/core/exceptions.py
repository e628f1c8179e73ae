"""Custom exceptions for deployctl."""

from typing import Any


class DeployCtlError(Exception):
    """Base exception for all deployctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(DeployCtlError):
    """Configuration-related errors."""

    pass


class ValidationError(DeployCtlError):
    """Input validation errors."""

    pass


class TimeoutError(DeployCtlError):
    """Operation timeout errors."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class RemoteCommandError(DeployCtlError):
    """A command run through an executor exited non-zero."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class DeploymentError(DeployCtlError):
    """Deployment orchestration errors."""

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.phase = phase


class PreconditionError(DeploymentError):
    """Preconditions for a run are not met. Nothing was touched."""

    pass


class BuildError(DeploymentError):
    """The artifact could not be built."""

    pass


class TransferError(DeploymentError):
    """The artifact could not be pushed to the target."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, phase, details)
        self.attempts = attempts


class ActivationError(DeploymentError):
    """Applying the runtime descriptor on the target failed."""

    pass


class VerificationError(DeploymentError):
    """The activated version did not become healthy."""

    pass


class RollbackVerificationError(DeploymentError):
    """The restored version did not become healthy either."""

    pass


class LockContentionError(DeploymentError):
    """Another run holds the target lock."""

    def __init__(
        self,
        message: str,
        holder: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, None, details)
        self.holder = holder or {}
