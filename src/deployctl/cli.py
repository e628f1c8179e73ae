"""Command-line entry point for deployctl."""

import sys

import click
from rich.console import Console

from deployctl import __version__
from deployctl.commands.deploy import deploy
from deployctl.commands.targets import artifacts, history, prune, status, targets, unlock
from deployctl.config import load_config
from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.exceptions import ConfigError, DeployCtlError
from deployctl.core.output import OutputFormat

EXIT_FAILED = 1
EXIT_INTERRUPTED = 130

_stderr = Console(stderr=True)


def _parse_output_format(ctx: click.Context, param: click.Parameter, value: str | None) -> OutputFormat | None:
    if value is None:
        return None
    try:
        return OutputFormat(value.lower())
    except ValueError:
        choices = ", ".join(f.value for f in OutputFormat)
        raise click.BadParameter(f"Invalid format '{value}'. Choose from: {choices}")


@click.group(context_settings={"help_option_names": ["-h", "--help"], "max_content_width": 120})
@click.option(
    "-o",
    "--output",
    "output_format",
    metavar="FORMAT",
    callback=_parse_output_format,
    help="Output format: table, json, yaml, raw",
)
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v for info, -vvv for debug)")
@click.option("-q", "--quiet", is_flag=True, help="Suppress non-essential output")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    metavar="FILE",
    envvar="DEPLOYCTL_CONFIG",
    help="Path to config file",
)
@click.version_option(__version__, "--version", message="deployctl version %(version)s")
@click.pass_context
def cli(
    ctx: click.Context,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """deployctl - build, ship, verify and roll back a service on one target.

    \b
    Examples:
        deployctl deploy production "fix checkout totals"
        deployctl deploy production --dry-run
        deployctl deploy production --rollback
        deployctl status production
        deployctl history production

    \b
    Configuration:
        ~/.deployctl/config.yaml    User configuration
        ./deployctl.yaml            Project configuration
        DEPLOYCTL_*                 Environment variables
    """
    try:
        config = load_config(config_file)
    except ConfigError as e:
        _stderr.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(EXIT_FAILED)

    ctx.obj = DeployCtlContext(
        config=config,
        output_format=output_format,
        verbose=verbose,
        quiet=quiet,
        color=not no_color,
    )


for command in (deploy, targets, status, history, artifacts, prune, unlock):
    cli.add_command(command)


@cli.command("config")
@pass_context
def show_config(ctx: DeployCtlContext) -> None:
    """Show the effective configuration."""
    ctx.output.print_data(
        {
            "output_format": ctx.output_format.value,
            "log_level": ctx.log_level.value,
            "state_dir": str(ctx.state_dir),
            "confirm_destructive": ctx.config.global_settings.confirm_destructive,
            "targets": ", ".join(ctx.config.target_names()) or "none",
        },
        title="Current Configuration",
    )


def main() -> None:
    """Run the CLI and map the outcome to the process exit code.

    0 committed, 1 failed, 2 rolled back, 130 interrupted.
    """
    try:
        exit_code = cli.main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort as e:
        if isinstance(e.__cause__, KeyboardInterrupt):
            _interrupted()
        _stderr.print("Aborted!")
        sys.exit(EXIT_FAILED)
    except DeployCtlError as e:
        _stderr.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        _interrupted()

    sys.exit(exit_code if isinstance(exit_code, int) else 0)


def _interrupted() -> None:
    _stderr.print("\n[yellow]Interrupted[/yellow]")
    sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
