"""State shared by every deployctl command through Click's context object."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from deployctl.config import DeployCtlConfig, TargetConfig, get_default_config
from deployctl.core.logging import LogLevel, setup_logging
from deployctl.core.output import OutputFormat, OutputFormatter

if TYPE_CHECKING:
    from deployctl.deploy.orchestrator import DeploymentOrchestrator


def resolve_log_level(verbose: int, quiet: bool, configured: LogLevel) -> LogLevel:
    """Command-line flags win over the configured verbosity."""
    if verbose >= 3:
        return LogLevel.DEBUG
    if verbose:
        return LogLevel.INFO
    if quiet:
        return LogLevel.ERROR
    return configured


class DeployCtlContext:
    """Loaded configuration plus the output and logging it selects.

    Commands receive it through ``pass_context`` and use it to resolve
    targets, reach the state directory and build orchestrators.
    """

    def __init__(
        self,
        config: DeployCtlConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        color: bool = True,
    ):
        self.config = config or get_default_config()
        settings = self.config.global_settings

        self.output_format = output_format or settings.output_format
        self.verbose = verbose
        self.color = color and settings.color != "never"
        self.log_level = resolve_log_level(verbose, quiet, settings.verbosity)

        setup_logging(self.log_level, rich_output=self.color)
        self.output = OutputFormatter(format=self.output_format, color=self.color, quiet=quiet)
        self._state_dir: Path | None = None

    @property
    def state_dir(self) -> Path:
        """Records and locks live here; created on first use."""
        if self._state_dir is None:
            self._state_dir = self.config.global_settings.get_state_dir()
        return self._state_dir

    def target(self, name: str) -> TargetConfig:
        return self.config.get_target(name)

    def orchestrator(self, name: str, **kwargs: Any) -> "DeploymentOrchestrator":
        from deployctl.deploy.orchestrator import DeploymentOrchestrator

        return DeploymentOrchestrator.from_config(
            name,
            self.target(name),
            self.state_dir,
            confirm=self.confirm,
            **kwargs,
        )

    def confirm(self, message: str, default: bool = False) -> bool:
        return self.output.confirm(message, default)


pass_context = click.make_pass_decorator(DeployCtlContext, ensure=True)
