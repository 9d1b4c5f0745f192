"""CLI entrypoint for pal."""

import asyncio
import sys

import click

from pal import __version__
from pal.config import get_settings
from pal.logging import get_logger, setup_logging
from pal.updater.install_record import InstallRecordStore
from pal.updater.manager import UpdateManager
from pal.updater.models import (
    CheckOutcome,
    CheckResult,
    StartupOutcome,
    StartupReport,
    UpdateOutcome,
    UpdatePlan,
    UpdateResult,
)
from pal.updater.startup import run_startup_check

log = get_logger("pal.cli")

# Outcomes that are not errors for the purpose of the exit status.
_OK_CHECK_OUTCOMES = frozenset(
    {
        CheckOutcome.UPDATE_AVAILABLE,
        CheckOutcome.UP_TO_DATE,
        CheckOutcome.DOWNGRADE_REJECTED,
        CheckOutcome.NO_RELEASE,
    }
)

_CHECK_MESSAGES: dict[CheckOutcome, tuple[str, str]] = {
    CheckOutcome.UPDATE_AVAILABLE: ("Update available: {current} → {latest}", "yellow"),
    CheckOutcome.UP_TO_DATE: ("Already up to date ({current})", "green"),
    CheckOutcome.DOWNGRADE_REJECTED: (
        "Latest published release ({latest}) is older than {current}; not downgrading",
        "yellow",
    ),
    CheckOutcome.NO_RELEASE: ("No published release found ({current})", "yellow"),
    CheckOutcome.NO_TRUSTED_PUBLISHER: ("Cannot check for updates: {error}", "red"),
    CheckOutcome.PUBLISHER_MISMATCH: ("Update refused: {error}", "red"),
    CheckOutcome.NETWORK_UNAVAILABLE: ("Error checking for updates: {error}", "red"),
}

_UPDATE_MESSAGES: dict[UpdateOutcome, tuple[str, str]] = {
    UpdateOutcome.COMMITTED: ("✓ Successfully updated to {target}", "green"),
    UpdateOutcome.ROLLED_BACK: ("✗ Update failed, restored {current}: {error}", "red"),
    UpdateOutcome.MANUAL_INTERVENTION_REQUIRED: ("✗ {error}", "red"),
    UpdateOutcome.INTEGRITY_FAILED: ("✗ {error}", "red"),
    UpdateOutcome.BACKUP_FAILED: ("✗ Backup failed, update aborted: {error}", "red"),
    UpdateOutcome.PUBLISHER_MISMATCH: ("✗ Update refused: {error}", "red"),
    UpdateOutcome.NETWORK_UNAVAILABLE: ("✗ Network unavailable: {error}", "red"),
    UpdateOutcome.NO_TRUSTED_PUBLISHER: ("✗ Cannot update: {error}", "red"),
    UpdateOutcome.NO_RELEASE: ("No update information available ({current})", "yellow"),
    UpdateOutcome.NOTHING_TO_ROLL_BACK: ("Nothing to roll back ({current})", "yellow"),
    UpdateOutcome.LOCKED: ("✗ {error}", "red"),
    UpdateOutcome.ABORTED: ("✗ Update aborted: {error}", "red"),
}


def _shorten(value: str) -> str:
    if len(value) <= 19:
        return value
    return f"{value[:8]}...{value[-8:]}"


def _report_check(result: CheckResult) -> int:
    log.debug("update_check_result", **result.to_dict())
    template, color = _CHECK_MESSAGES[result.outcome]
    message = template.format(
        current=result.current_version,
        latest=result.latest_version,
        error=result.error,
    )
    click.secho(message, fg=color, err=color == "red")
    return 0 if result.outcome in _OK_CHECK_OUTCOMES else 1


def _report_update(result: UpdateResult) -> int:
    log.debug("update_result", **result.to_dict())
    template, color = _UPDATE_MESSAGES[result.outcome]
    message = template.format(
        current=result.current_version,
        target=result.target_version,
        error=result.error,
    )
    click.secho(message, fg=color, err=color == "red")
    if result.recovery_command:
        click.secho(f"To recover manually, run:\n  {result.recovery_command}", err=True)
    return 0 if result.succeeded else 1


def _confirm_update(plan: UpdatePlan) -> bool:
    try:
        return click.confirm(
            f"Update pal from {plan.current_version} to {plan.candidate_version}?",
            default=True,
        )
    except click.Abort:
        return False


async def _run_update(check_only: bool, force: bool, rollback: bool, assume_yes: bool) -> int:
    settings = get_settings()
    store = InstallRecordStore.from_settings(settings)

    async with UpdateManager.from_settings(settings, store=store) as manager:
        if rollback:
            click.secho("Rolling back to the previous version...", fg="cyan")
            return _report_update(await manager.rollback())

        if force:
            click.secho("Force reinstalling the latest release...", fg="cyan")
            return _report_update(await manager.force_reinstall())

        click.secho("Checking for updates...", fg="cyan")
        try:
            check = await manager.check()
        finally:
            store.record_check()

        status = _report_check(check)
        if check_only or check.plan is None:
            return status

        if not assume_yes and not _confirm_update(check.plan):
            click.secho("Update cancelled.", fg="bright_black")
            return 0

        click.secho("Applying update...", fg="cyan")
        return _report_update(await manager.apply(check.plan))


async def _run_startup_check(skip_update_check: bool) -> StartupReport:
    settings = get_settings()
    store = InstallRecordStore.from_settings(settings)
    async with UpdateManager.from_settings(settings, store=store) as manager:
        return await run_startup_check(
            manager, store, settings, confirm=_confirm_update, skip_flag=skip_update_check
        )


def _startup_check(skip_update_check: bool) -> None:
    """Run the startup update check; never prevents pal from starting."""
    try:
        report = asyncio.run(_run_startup_check(skip_update_check))
    except Exception as exc:
        log.warning("startup_check_setup_failed", error=str(exc))
        return

    if report.outcome is StartupOutcome.UPDATED and report.update is not None:
        _report_update(report.update)
    elif report.outcome is StartupOutcome.DECLINED:
        click.secho("Update skipped. Run `pal update` when ready.", fg="bright_black")
    elif report.outcome is StartupOutcome.TIMED_OUT:
        click.secho("Update check timed out; continuing.", fg="bright_black", err=True)


@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="pal")
@click.option(
    "--skip-update-check",
    is_flag=True,
    help="Do not check for updates on startup",
)
@click.pass_context
def cli(ctx: click.Context, skip_update_check: bool) -> None:
    """pal - AI agent harness.

    Updates are published to a permanent-storage ledger by a trusted
    publisher and verified before they are installed.
    """
    setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["skip_update_check"] = skip_update_check

    if ctx.invoked_subcommand is None:
        _startup_check(skip_update_check)
        click.echo(ctx.get_help())


@cli.command()
@click.option("--check", "check_only", is_flag=True, help="Only check for updates")
@click.option("--force", is_flag=True, help="Reinstall the latest release even if not newer")
@click.option("--rollback", is_flag=True, help="Restore the previously installed version")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Apply without prompting")
def update(check_only: bool, force: bool, rollback: bool, assume_yes: bool) -> None:
    """Check for and apply updates."""
    if sum((check_only, force, rollback)) > 1:
        raise click.UsageError("--check, --force and --rollback are mutually exclusive")

    exit_code = asyncio.run(_run_update(check_only, force, rollback, assume_yes))
    sys.exit(exit_code)


@cli.command()
def version() -> None:
    """Display version information."""
    settings = get_settings()
    record = InstallRecordStore.from_settings(settings).load_or_init()

    click.secho("pal version information", fg="cyan")
    click.secho("─" * 40, fg="bright_black")
    click.echo(f"Version:         {click.style(record.version, fg='green')}")
    click.echo(f"Install date:    {record.installed_at.isoformat()}")
    click.echo(f"Last check:      {record.last_check.isoformat()}")
    click.echo(f"Package manager: {record.package_manager.value}")
    if record.publisher:
        click.echo(f"Publisher:       {click.style(_shorten(record.publisher), fg='blue')}")
    if record.content_id:
        click.echo(f"Content ID:      {_shorten(record.content_id)}")
    click.secho("─" * 40, fg="bright_black")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
