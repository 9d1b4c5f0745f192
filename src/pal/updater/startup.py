"""Bounded update check run when pal starts.

A failing, slow or declined check never prevents pal from starting:
every failure is contained here and reported as a ``StartupOutcome``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

from pal.logging import get_logger
from pal.updater.models import StartupOutcome, StartupReport, UpdatePlan

if TYPE_CHECKING:
    from pal.config import Settings
    from pal.updater.install_record import InstallRecordStore
    from pal.updater.manager import UpdateManager

log = get_logger("pal.updater.startup")

Confirm = Callable[[UpdatePlan], bool]


def should_skip_update_check(settings: Settings, skip_flag: bool = False) -> bool:
    """True when a flag, a CI environment or an opt-out disables the check."""
    return skip_flag or settings.in_ci or settings.no_update_check


async def run_startup_check(
    manager: UpdateManager,
    store: InstallRecordStore,
    settings: Settings,
    confirm: Confirm,
    skip_flag: bool = False,
) -> StartupReport:
    """Check for, offer and apply an update within the startup deadline.

    The deadline covers the check and the apply but is suspended while
    *confirm* waits for the user. The last-check time is recorded once
    for every attempted check, whatever its outcome.
    """
    if should_skip_update_check(settings, skip_flag):
        log.debug("startup_check_skipped")
        return StartupReport(outcome=StartupOutcome.SKIPPED)

    if not store.is_check_due(settings.update_check_interval_days):
        log.debug("startup_check_not_due")
        return StartupReport(outcome=StartupOutcome.NOT_DUE)

    try:
        async with asyncio.timeout(settings.startup_check_timeout) as deadline:
            report = await _check_and_offer(manager, confirm, deadline)
    except TimeoutError:
        log.warning("startup_check_timed_out", timeout=settings.startup_check_timeout)
        report = StartupReport(
            outcome=StartupOutcome.TIMED_OUT,
            error=f"Update check timed out after {settings.startup_check_timeout}s",
        )
    except Exception as exc:
        log.warning("startup_check_failed", error=str(exc))
        report = StartupReport(outcome=StartupOutcome.FAILED, error=str(exc))
    finally:
        try:
            store.record_check()
        except OSError as exc:
            log.warning("startup_record_check_failed", error=str(exc))

    return report


async def _check_and_offer(
    manager: UpdateManager,
    confirm: Confirm,
    deadline: asyncio.Timeout,
) -> StartupReport:
    check = await manager.check()
    if check.plan is None:
        return StartupReport(outcome=StartupOutcome.CHECKED, check=check)

    loop = asyncio.get_running_loop()
    expires = deadline.when()
    remaining = expires - loop.time() if expires is not None else None

    deadline.reschedule(None)
    accepted = confirm(check.plan)
    if remaining is not None:
        deadline.reschedule(loop.time() + max(remaining, 0))

    if not accepted:
        log.info("startup_update_declined", version=check.plan.candidate_version)
        return StartupReport(outcome=StartupOutcome.DECLINED, check=check)

    update = await manager.apply(check.plan)
    return StartupReport(outcome=StartupOutcome.UPDATED, check=check, update=update)
