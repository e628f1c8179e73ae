"""Target inspection and maintenance commands."""

from datetime import datetime, timezone

import click

from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.exceptions import ConfigError, DeployCtlError
from deployctl.core.output import OutputFormat, format_duration
from deployctl.core.utils import parse_duration, truncate_string
from deployctl.deploy.lock import TargetLock
from deployctl.deploy.models import DeploymentTarget
from deployctl.deploy.records import RecordLog


@click.command("targets")
@pass_context
def targets(ctx: DeployCtlContext) -> None:
    """List configured targets.

    \b
    Examples:
        deployctl targets
        deployctl -o json targets
    """
    rows = []
    for name in ctx.config.target_names():
        try:
            target = DeploymentTarget.from_config(name, ctx.target(name))
        except ConfigError as e:
            rows.append({"name": name, "address": "", "runtime": "", "artifact": "", "health": f"invalid: {e}"})
            continue
        rows.append(
            {
                "name": name,
                "address": target.address,
                "runtime": target.runtime.value,
                "artifact": target.artifact_name,
                "health": target.health_endpoint,
            }
        )

    if not rows:
        ctx.output.print_info("No targets configured")
        return

    ctx.output.print_table(rows, columns=["name", "address", "runtime", "artifact", "health"], title="Targets")


@click.command("status")
@click.argument("target")
@pass_context
def status(ctx: DeployCtlContext, target: str) -> None:
    """Show the deployment state of TARGET.

    Reports the local source revision, the active artifact, the artifacts in
    each store, the runtime status on the target and the lock holder.

    \b
    Examples:
        deployctl status production
    """
    try:
        with ctx.orchestrator(target) as orchestrator:
            name = orchestrator.artifact_name
            try:
                local_revision = orchestrator.builder.revision_for(orchestrator.source_dir)
            except DeployCtlError as e:
                local_revision = f"unavailable ({e})"

            active = orchestrator.records.active_ref(target)
            crashed = orchestrator.records.unterminated(target)
            holder = orchestrator.lock.holder()

            catalogs = {}
            for store in orchestrator.stores:
                try:
                    catalogs[store.location] = [e.ref.revision for e in store.list(name)]
                except DeployCtlError as e:
                    catalogs[store.location] = [f"unavailable ({e})"]

            try:
                snapshot = orchestrator.runtime.snapshot()
                running = snapshot.active_ref.tag if snapshot.active_ref else None
                runtime_status = orchestrator.runtime.status().strip()
            except DeployCtlError as e:
                running = None
                runtime_status = f"unavailable ({e})"

    except DeployCtlError as e:
        ctx.output.print_error(f"Failed to get status: {e}")
        raise click.Abort()

    data = {
        "target": target,
        "local_revision": local_revision,
        "active_ref": active.tag if active else None,
        "running_ref": running,
        "unterminated_runs": len(crashed),
        "lock": f"{holder.get('owner')} (pid {holder.get('pid')} on {holder.get('host')})" if holder else "free",
        "catalogs": catalogs,
        "runtime_status": runtime_status,
    }

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(data)
        return

    ctx.output.print_header(f"Target: {target}")
    ctx.output.print(f"Local revision: {local_revision}")
    ctx.output.print(f"Active (record log): {data['active_ref'] or 'none'}")
    ctx.output.print(f"Running (target): {running or 'none'}")
    if active and running and active.tag != running:
        ctx.output.print_warning("Target is running a different revision than the record log says")
    ctx.output.print(f"Lock: {data['lock']}")
    if crashed:
        ctx.output.print_warning(f"{len(crashed)} run(s) started but never finished: {', '.join(r.id for r in crashed)}")

    for location, revisions in catalogs.items():
        ctx.output.print(f"\nArtifacts ({location}): {', '.join(revisions) or 'none'}")

    if runtime_status:
        ctx.output.print("\nRuntime:")
        ctx.output.print(runtime_status, style="dim")


@click.command("history")
@click.argument("target")
@click.option("-n", "--limit", type=int, default=20, help="Maximum records to show")
@click.option("--since", metavar="DURATION", help="Only runs started within DURATION (e.g. 7d, 12h)")
@pass_context
def history(ctx: DeployCtlContext, target: str, limit: int, since: str | None) -> None:
    """Show the deployment record log of TARGET, newest first.

    \b
    Examples:
        deployctl history production
        deployctl history production --since 7d
    """
    ctx.target(target)

    try:
        cutoff = datetime.now(timezone.utc) - parse_duration(since) if since else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--since")

    records = RecordLog(ctx.state_dir).history(target)
    if cutoff:
        records = [r for r in records if r.started_at >= cutoff]
    records = records[:limit]

    if not records:
        ctx.output.print_info(f"No deployments recorded for {target}")
        return

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data([r.to_dict() for r in records])
        return

    rows = [
        {
            "id": r.id,
            "started": r.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            "mode": r.mode.value,
            "from": r.from_ref.revision if r.from_ref else "",
            "to": r.to_ref.revision if r.to_ref else "",
            "outcome": r.outcome.value if r.outcome else "unterminated",
            "phase": r.phase_reached.value,
            "duration": format_duration(r.duration_seconds) if r.duration_seconds is not None else "",
            "message": truncate_string(r.message or r.reason, 40),
        }
        for r in records
    ]
    ctx.output.print_table(rows, title=f"Deployments: {target}")


@click.command("artifacts")
@click.argument("target")
@pass_context
def artifacts(ctx: DeployCtlContext, target: str) -> None:
    """List artifacts in the local and remote stores of TARGET.

    \b
    Examples:
        deployctl artifacts production
    """
    try:
        with ctx.orchestrator(target) as orchestrator:
            name = orchestrator.artifact_name
            active = orchestrator.records.active_ref(target)
            rows = []
            for store in orchestrator.stores:
                for entry in store.list(name):
                    row = entry.to_dict()
                    row["active"] = "*" if entry.ref == active else ""
                    rows.append(row)
    except DeployCtlError as e:
        ctx.output.print_error(f"Failed to list artifacts: {e}")
        raise click.Abort()

    if not rows:
        ctx.output.print_info(f"No artifacts found for {target}")
        return

    ctx.output.print_table(rows, columns=["location", "revision", "created_at", "active"], title=f"Artifacts: {target}")


@click.command("prune")
@click.argument("target")
@click.option("-k", "--keep", type=click.IntRange(min=1), help="Artifacts to keep (default: retention.keep)")
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
@pass_context
def prune(ctx: DeployCtlContext, target: str, keep: int | None, dry_run: bool) -> None:
    """Remove old artifacts of TARGET, always keeping the active one.

    \b
    Examples:
        deployctl prune production --dry-run
        deployctl prune production --keep 5
    """
    try:
        with ctx.orchestrator(target) as orchestrator:
            reports = orchestrator.prune(keep=keep, dry_run=dry_run)
    except DeployCtlError as e:
        ctx.output.print_error(f"Prune failed: {e}")
        raise click.Abort()

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data([r.to_dict() for r in reports])
        return

    verb = "Would remove" if dry_run else "Removed"
    for report in reports:
        if report.error:
            ctx.output.print_warning(f"{report.location}: {report.error}")
            continue
        removed = ", ".join(r.revision for r in report.removed) or "nothing"
        ctx.output.print(f"{report.location}: {verb} {removed}; kept {', '.join(r.revision for r in report.kept)}")
        for revision, error in report.failed.items():
            ctx.output.print_warning(f"{report.location}: could not remove {revision}: {error}")


@click.command("unlock")
@click.argument("target")
@click.option("--force", is_flag=True, help="Remove the lock even if its holder looks alive")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def unlock(ctx: DeployCtlContext, target: str, force: bool, yes: bool) -> None:
    """Remove a stale lock on TARGET left behind by a crashed run.

    \b
    Examples:
        deployctl unlock production
        deployctl unlock production --force
    """
    config = ctx.target(target)
    lock = TargetLock(ctx.state_dir, target, lease_seconds=config.lock.lease_seconds)

    holder = lock.holder()
    if holder is None:
        ctx.output.print_info(f"{target} is not locked")
        return

    description = f"{holder.get('owner')} (pid {holder.get('pid')} on {holder.get('host')})"
    if not lock.is_stale(holder) and not force:
        ctx.output.print_error(f"{target} is locked by a live run: {description}. Use --force to remove it anyway")
        raise click.Abort()

    if force and not yes and ctx.config.global_settings.confirm_destructive:
        if not ctx.confirm(f"Remove lock on {target} held by {description}?"):
            ctx.output.print_info("Cancelled")
            return

    lock.force_release()
    ctx.output.print_success(f"Removed lock on {target} held by {description}")
