"""Deploy command."""

import click

from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.exceptions import DeployCtlError, LockContentionError
from deployctl.core.output import format_duration
from deployctl.deploy.models import DeploymentPhase, DeploymentRecord
from deployctl.deploy.orchestrator import RunReport


def render_report(ctx: DeployCtlContext, report: RunReport) -> None:
    """Print the terminal summary of a run."""
    record = report.record
    summary = report.summary()

    if ctx.output.structured:
        ctx.output.print_data(
            {
                "id": record.id,
                "mode": record.mode.value,
                **summary,
                "dry_run": record.dry_run,
                "actions": report.actions,
                "guidance": report.guidance,
            }
        )
        return

    if record.duration_seconds is not None:
        summary["duration"] = format_duration(record.duration_seconds)

    ctx.output.print_actions(report.actions)
    ctx.output.print_summary(summary, title=f"{record.mode.value} {record.id}")
    ctx.output.print_guidance(report.guidance)


@click.command("deploy")
@click.argument("target")
@click.argument("message", required=False, default="")
@click.option("--dry-run", is_flag=True, help="Run prechecks and print intended actions without changing anything")
@click.option("--rollback", is_flag=True, help="Re-activate a previous artifact instead of building")
@click.option("--force", is_flag=True, help="Skip the uncommitted-changes and current-health confirmations")
@click.option("--to", "to_revision", metavar="REV", help="Revision to roll back to (with --rollback)")
@pass_context
def deploy(
    ctx: DeployCtlContext,
    target: str,
    message: str,
    dry_run: bool,
    rollback: bool,
    force: bool,
    to_revision: str | None,
) -> None:
    """Deploy the current source to TARGET.

    MESSAGE is stored in the deployment record.

    \b
    Exit codes:
        0  deployed and verified
        1  failed
        2  failed verification and rolled back to the previous version

    \b
    Examples:
        deployctl deploy production "fix checkout totals"
        deployctl deploy production --dry-run
        deployctl deploy production --rollback
        deployctl deploy production --rollback --to 3f2a9c1d0b7e
    """
    if to_revision and not rollback:
        raise click.UsageError("--to can only be used with --rollback")

    def on_phase(phase: DeploymentPhase, record: DeploymentRecord) -> None:
        ref = record.to_ref.revision if record.to_ref else ""
        ctx.output.print(f"[dim]→ {phase.value} {ref}[/dim]")

    try:
        with ctx.orchestrator(target, on_phase=on_phase) as orchestrator:
            if rollback:
                ref = orchestrator.resolve_ref(to_revision) if to_revision else None
                report = orchestrator.rollback(ref, message=message, dry_run=dry_run)
            else:
                report = orchestrator.deploy(message=message, dry_run=dry_run, force=force)

    except LockContentionError as e:
        holder = e.holder
        ctx.output.print_error(str(e))
        if holder.get("owner"):
            ctx.output.print_info(
                f"Held by {holder.get('owner')} (pid {holder.get('pid')} on {holder.get('host')}) "
                f"until {holder.get('expires_at')}"
            )
        raise click.Abort()
    except DeployCtlError as e:
        ctx.output.print_error(f"Deployment failed: {e}")
        raise click.Abort()

    render_report(ctx, report)
    click.get_current_context().exit(report.exit_code)
