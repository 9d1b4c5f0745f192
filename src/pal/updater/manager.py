"""Update orchestrator.

Sequences check → stage → verify hash → back up → apply → verify install
→ commit, and rolls back through the same installation mechanism when
the apply or its verification fails. Every path ends in an outcome enum
returned to the caller; nothing is kept as ambient status.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from pal import constants
from pal.logging import get_logger
from pal.updater.backup import artifact_filename, backup_path_for, create_backup
from pal.updater.hashing import sha256_hex, verify_hash
from pal.updater.install_record import InstallRecordStore
from pal.updater.installers import PackageInstaller, format_command
from pal.updater.ledger import LedgerClient, LedgerError
from pal.updater.lock import UpdateLockedError, update_lock
from pal.updater.models import (
    BackupError,
    CheckOutcome,
    CheckResult,
    InstallRecord,
    IntegrityError,
    PendingRollback,
    TrustRejection,
    UpdateOutcome,
    UpdatePlan,
    UpdateResult,
    UpdateStage,
    utc_now,
)
from pal.updater.trust import TrustVerifier
from pal.updater.versioning import compare_versions, is_strictly_newer

if TYPE_CHECKING:
    from pal.config import Settings

log = get_logger("pal.updater.manager")

# Check outcomes that stop a force-reinstall before it reaches apply.
_CHECK_TO_UPDATE: dict[CheckOutcome, UpdateOutcome] = {
    CheckOutcome.NO_TRUSTED_PUBLISHER: UpdateOutcome.NO_TRUSTED_PUBLISHER,
    CheckOutcome.PUBLISHER_MISMATCH: UpdateOutcome.PUBLISHER_MISMATCH,
    CheckOutcome.NETWORK_UNAVAILABLE: UpdateOutcome.NETWORK_UNAVAILABLE,
    CheckOutcome.NO_RELEASE: UpdateOutcome.NO_RELEASE,
}


class UpdateManager:
    """Manages the update lifecycle.

    Typical flow:
    1. ``check()``: find the newest trusted release and compare versions
    2. ``apply(plan)``: stage, back up, install, verify, commit
    3. If install or verification fails → automatic rollback from backup
    """

    def __init__(
        self,
        store: InstallRecordStore,
        ledger: LedgerClient,
        staging_dir: Path,
        backup_dir: Path,
        lock_path: Path,
        trust: TrustVerifier | None = None,
        installer: PackageInstaller | None = None,
        backup: Callable[[str, Path], Path] = create_backup,
        require_backup: bool = False,
        executable: str = constants.APP_NAME,
        install_timeout: float = constants.INSTALL_TIMEOUT,
        version_timeout: float = constants.VERSION_CHECK_TIMEOUT,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._staging_dir = staging_dir
        self._backup_dir = backup_dir
        self._lock_path = lock_path
        self._trust = trust or TrustVerifier()
        self._installer = installer
        self._backup = backup
        self._require_backup = require_backup
        self._executable = executable
        self._install_timeout = install_timeout
        self._version_timeout = version_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: InstallRecordStore | None = None,
        ledger: LedgerClient | None = None,
    ) -> UpdateManager:
        return cls(
            store=store or InstallRecordStore.from_settings(settings),
            ledger=ledger or LedgerClient.from_settings(settings),
            staging_dir=settings.staging_dir,
            backup_dir=settings.backup_dir,
            lock_path=settings.lock_path,
            trust=TrustVerifier(manifest_path=settings.manifest_path),
            require_backup=settings.require_backup,
            executable=settings.executable,
            install_timeout=settings.install_timeout,
            version_timeout=settings.version_check_timeout,
        )

    async def close(self) -> None:
        await self._ledger.close()

    async def __aenter__(self) -> UpdateManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Check for updates
    # ------------------------------------------------------------------

    async def check(self) -> CheckResult:
        """Look for a strictly newer release from the trusted publisher.

        Returns ``UPDATE_AVAILABLE`` with a plan, or a terminal outcome
        without one. Never mutates the install record beyond first-run
        creation.
        """
        record = self._store.load_or_init()
        result = await self._find_trusted_release(record)
        if result.plan is None:
            return result

        latest = result.plan.candidate_version
        if is_strictly_newer(latest, record.version):
            log.info("updater_new_release_found", current=record.version, new=latest)
            return result

        if compare_versions(latest, record.version) == 0:
            log.debug("updater_up_to_date", current=record.version)
            outcome = CheckOutcome.UP_TO_DATE
        else:
            log.warning("updater_downgrade_rejected", current=record.version, latest=latest)
            outcome = CheckOutcome.DOWNGRADE_REJECTED
        return CheckResult(
            outcome=outcome,
            current_version=record.version,
            latest_version=latest,
        )

    async def _find_trusted_release(self, record: InstallRecord) -> CheckResult:
        """Query the ledger and verify provenance, without version policy."""
        current = record.version
        if not record.publisher:
            log.error("updater_no_trusted_publisher")
            return CheckResult(
                outcome=CheckOutcome.NO_TRUSTED_PUBLISHER,
                current_version=current,
                error="No trusted publisher address configured; reinstall pal",
            )

        try:
            release = await self._ledger.query_latest_release(record.publisher)
        except LedgerError as exc:
            log.warning("updater_check_failed", error=str(exc))
            return CheckResult(
                outcome=CheckOutcome.NETWORK_UNAVAILABLE,
                current_version=current,
                error=str(exc),
            )

        if release is None:
            return CheckResult(outcome=CheckOutcome.NO_RELEASE, current_version=current)

        decision = self._trust.verify(release.publisher, record)
        if not decision.allowed:
            outcome = (
                CheckOutcome.NO_TRUSTED_PUBLISHER
                if decision.reason is TrustRejection.RECORD_PUBLISHER_MISSING
                else CheckOutcome.PUBLISHER_MISMATCH
            )
            return CheckResult(
                outcome=outcome,
                current_version=current,
                latest_version=release.version,
                error=decision.message,
            )

        return CheckResult(
            outcome=CheckOutcome.UPDATE_AVAILABLE,
            current_version=current,
            latest_version=release.version,
            plan=UpdatePlan.from_release(current, release),
        )

    # ------------------------------------------------------------------
    # Force reinstall
    # ------------------------------------------------------------------

    async def force_reinstall(self) -> UpdateResult:
        """Reapply the ledger's latest trusted release, even if not newer."""
        record = self._store.load_or_init()
        lookup = await self._find_trusted_release(record)
        if lookup.plan is None:
            result = UpdateResult(
                outcome=UpdateOutcome.ABORTED,
                current_version=record.version,
                target_version=lookup.latest_version,
                forced=True,
            )
            return result.finish(_CHECK_TO_UPDATE[lookup.outcome], lookup.error)

        log.info(
            "updater_force_reinstall",
            current=record.version,
            target=lookup.plan.candidate_version,
        )
        return await self.apply(lookup.plan, force=True)

    # ------------------------------------------------------------------
    # Apply update
    # ------------------------------------------------------------------

    async def apply(self, plan: UpdatePlan, force: bool = False) -> UpdateResult:
        """Stage, back up, install and verify *plan*, rolling back on failure."""
        result = UpdateResult(
            outcome=UpdateOutcome.ABORTED,
            current_version=plan.current_version,
            target_version=plan.candidate_version,
            forced=force,
        )
        try:
            with update_lock(self._lock_path):
                return await self._do_apply(plan, result)
        except UpdateLockedError as exc:
            return result.finish(UpdateOutcome.LOCKED, str(exc))

    async def _do_apply(self, plan: UpdatePlan, result: UpdateResult) -> UpdateResult:
        result.enter(UpdateStage.CHECKING)
        record = self._store.load_or_init()
        result.current_version = record.version

        decision = self._trust.verify(plan.publisher, record)
        if not decision.allowed:
            outcome = (
                UpdateOutcome.NO_TRUSTED_PUBLISHER
                if decision.reason is TrustRejection.RECORD_PUBLISHER_MISSING
                else UpdateOutcome.PUBLISHER_MISMATCH
            )
            return result.finish(outcome, decision.message)

        try:
            staged = await self._stage(plan, result)
        except IntegrityError as exc:
            log.error("updater_integrity_failed", content_id=plan.content_id)
            return result.finish(UpdateOutcome.INTEGRITY_FAILED, str(exc))
        except LedgerError as exc:
            log.warning("updater_download_failed", error=str(exc))
            return result.finish(UpdateOutcome.NETWORK_UNAVAILABLE, str(exc))
        except OSError as exc:
            log.error("updater_staging_failed", error=str(exc))
            return result.finish(UpdateOutcome.ABORTED, f"Staging failed: {exc}")

        try:
            result.enter(UpdateStage.BACKING_UP)
            try:
                backup = self._backup(record.version, self._backup_dir)
                result.backup_path = str(backup)
            except BackupError as exc:
                if self._require_backup:
                    log.error("updater_backup_failed", error=str(exc))
                    return result.finish(UpdateOutcome.BACKUP_FAILED, str(exc))
                log.warning(
                    "updater_backup_failed",
                    error=str(exc),
                    detail="rollback may not be available if the update fails",
                )

            mutation = asyncio.ensure_future(
                self._install_and_commit(plan, record, staged, result)
            )
            try:
                return await asyncio.shield(mutation)
            except asyncio.CancelledError:
                # Once started, the install always ends committed or rolled back.
                log.warning("updater_cancel_deferred", stage=result.stages[-1].value)
                await asyncio.wait([mutation])
                log.info("updater_cancel_resumed", outcome=result.outcome.value)
                raise
        finally:
            staged.unlink(missing_ok=True)

    async def _install_and_commit(
        self,
        plan: UpdatePlan,
        record: InstallRecord,
        staged: Path,
        result: UpdateResult,
    ) -> UpdateResult:
        """Install *staged* and commit it, or roll back to the pending pair.

        Runs to completion once started, even if the caller is cancelled.
        """
        record.pending_rollback = PendingRollback(
            version=record.version, content_id=record.content_id
        )
        try:
            self._store.save(record)
        except OSError as exc:
            log.error("updater_record_save_failed", error=str(exc))
            return result.finish(UpdateOutcome.ABORTED, f"Could not save install record: {exc}")

        installer = self._installer_for(record)
        try:
            result.enter(UpdateStage.APPLYING)
            if not await installer.install(staged):
                return await self._rollback_pending(
                    record, installer, result, "Installation command failed"
                )

            result.enter(UpdateStage.VERIFYING_INSTALL)
            reported = await installer.installed_version()
            if reported != plan.candidate_version:
                return await self._rollback_pending(
                    record,
                    installer,
                    result,
                    f"Installed binary reports {reported or 'no version'}, "
                    f"expected {plan.candidate_version}",
                )

            result.enter(UpdateStage.COMMITTING)
            self._commit(record, plan)
        except Exception as exc:
            log.exception("updater_apply_unexpected_error")
            return await self._rollback_pending(
                record, installer, result, f"Unexpected error: {exc}"
            )

        log.info("updater_success", version=plan.candidate_version, forced=result.forced)
        return result.finish(UpdateOutcome.COMMITTED)

    async def _stage(self, plan: UpdatePlan, result: UpdateResult) -> Path:
        """Download the candidate and verify its digest, retrying once."""
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        target = self._staging_dir / artifact_filename(plan.candidate_version)

        for attempt in range(1, constants.HASH_ATTEMPTS + 1):
            result.enter(UpdateStage.STAGING)
            log.info("updater_downloading", version=plan.candidate_version, attempt=attempt)
            data = await self._ledger.download_content(plan.content_id)

            result.enter(UpdateStage.VERIFYING_HASH)
            if verify_hash(data, plan.sha256):
                partial = target.with_suffix(".part")
                partial.write_bytes(data)
                partial.replace(target)
                log.info("updater_staged", path=str(target))
                return target

            log.warning(
                "updater_hash_mismatch",
                attempt=attempt,
                expected=plan.sha256.lower(),
                actual=sha256_hex(data),
            )

        raise IntegrityError("Package verification failed: hash mismatch after retry")

    def _commit(self, record: InstallRecord, plan: UpdatePlan) -> None:
        pending = record.pending_rollback
        if pending is not None:
            record.previous_version = pending.version
            record.previous_content_id = pending.content_id
        record.version = plan.candidate_version
        record.content_id = plan.content_id
        record.installed_at = utc_now()
        record.pending_rollback = None
        self._store.save(record)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self) -> UpdateResult:
        """Restore the previous release from its backup.

        Uses the pending pair left by an interrupted apply if there is
        one, otherwise the committed previous-version pointers.
        """
        result = UpdateResult(outcome=UpdateOutcome.ABORTED, current_version="")
        try:
            with update_lock(self._lock_path):
                record = self._store.load_or_init()
                result.current_version = record.version

                if record.pending_rollback is not None:
                    target = record.pending_rollback
                    from_committed = False
                elif record.previous_version:
                    target = PendingRollback(
                        version=record.previous_version,
                        content_id=record.previous_content_id or "",
                    )
                    from_committed = True
                else:
                    return result.finish(
                        UpdateOutcome.NOTHING_TO_ROLL_BACK, "No previous version to roll back to"
                    )

                result.target_version = target.version
                return await self._restore(
                    record, target, self._installer_for(record), result, from_committed
                )
        except UpdateLockedError as exc:
            return result.finish(UpdateOutcome.LOCKED, str(exc))

    async def _rollback_pending(
        self,
        record: InstallRecord,
        installer: PackageInstaller,
        result: UpdateResult,
        reason: str,
    ) -> UpdateResult:
        log.error("updater_apply_failed", reason=reason)
        result.error = reason
        pending = record.pending_rollback
        if pending is None:
            return result.finish(UpdateOutcome.MANUAL_INTERVENTION_REQUIRED)
        return await self._restore(record, pending, installer, result, from_committed=False)

    async def _restore(
        self,
        record: InstallRecord,
        target: PendingRollback,
        installer: PackageInstaller,
        result: UpdateResult,
        from_committed: bool,
    ) -> UpdateResult:
        result.enter(UpdateStage.ROLLING_BACK)
        backup = backup_path_for(target.version, self._backup_dir)
        result.backup_path = str(backup)
        log.info("updater_rolling_back", version=target.version, backup=str(backup))

        if not backup.exists():
            return self._manual_intervention(
                result, installer, backup, f"backup not found: {backup}"
            )

        if not await installer.install(backup):
            return self._manual_intervention(
                result, installer, backup, f"reinstalling {backup} failed"
            )

        record.version = target.version
        record.content_id = target.content_id
        record.installed_at = utc_now()
        record.pending_rollback = None
        if from_committed:
            record.previous_version = None
            record.previous_content_id = None
        self._store.save(record)

        log.info("updater_rollback_complete", version=target.version)
        return result.finish(UpdateOutcome.ROLLED_BACK)

    def _manual_intervention(
        self,
        result: UpdateResult,
        installer: PackageInstaller,
        backup: Path,
        detail: str,
    ) -> UpdateResult:
        result.recovery_command = format_command(installer.command_for(backup))
        message = f"Rollback failed: {detail}"
        if result.error:
            message = f"{result.error}; {message}"
        log.error(
            "updater_manual_intervention_required",
            detail=detail,
            recovery_command=result.recovery_command,
        )
        return result.finish(UpdateOutcome.MANUAL_INTERVENTION_REQUIRED, message)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _installer_for(self, record: InstallRecord) -> PackageInstaller:
        if self._installer is not None:
            return self._installer
        return PackageInstaller(
            record.package_manager,
            executable=self._executable,
            install_timeout=self._install_timeout,
            version_timeout=self._version_timeout,
        )
