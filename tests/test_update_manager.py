"""Scenario tests for the update orchestrator."""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pal.updater.backup import backup_path_for
from pal.updater.install_record import InstallRecordStore
from pal.updater.installers import PackageInstaller
from pal.updater.ledger import LedgerNetworkError
from pal.updater.lock import update_lock
from pal.updater.manager import UpdateManager
from pal.updater.models import (
    BackupError,
    CheckOutcome,
    InstallerKind,
    InstallRecord,
    PendingRollback,
    ReleaseDescriptor,
    UpdateOutcome,
    UpdatePlan,
    UpdateStage,
)
from pal.updater.trust import TrustVerifier

TRUSTED = "Xq1publisherAddress000000000000000000000001"
FOREIGN = "Zz9attackerAddress0000000000000000000000099"
PAYLOAD = b"PK\x03\x04 pal_cli 1.1.0 wheel"
DIGEST = hashlib.sha256(PAYLOAD).hexdigest()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _release(version: str = "1.1.0", publisher: str = TRUSTED, sha256: str = DIGEST):
    return ReleaseDescriptor(
        content_id=f"tx-{version}",
        version=version,
        publisher=publisher,
        sha256=sha256,
        timestamp=1700000000,
    )


def _make_ledger(release: ReleaseDescriptor | None = None, content: bytes = PAYLOAD) -> MagicMock:
    ledger = MagicMock()
    ledger.query_latest_release = AsyncMock(return_value=release)
    ledger.download_content = AsyncMock(return_value=content)
    ledger.close = AsyncMock()
    return ledger


def _fake_backup(version: str, backup_dir: Path) -> Path:
    path = backup_path_for(version, backup_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"backup of " + version.encode())
    return path


def _failing_backup(version: str, backup_dir: Path) -> Path:
    raise BackupError("pal-cli is not installed as a distribution")


def _make_manager(
    tmp_path: Path,
    ledger: MagicMock | None = None,
    *,
    record_version: str = "1.0.0",
    record_publisher: str = TRUSTED,
    manifest_publisher: str | None = TRUSTED,
    backup=_fake_backup,
    require_backup: bool = False,
    **record_fields,
) -> tuple[UpdateManager, InstallRecordStore, PackageInstaller]:
    """Create a manager over temp paths with a seeded install record."""
    home = tmp_path / "home"
    manifest = tmp_path / "release.json"
    manifest.write_text(
        json.dumps({"publisher": manifest_publisher, "version": record_version}),
        encoding="utf-8",
    )

    store = InstallRecordStore(home / "install.json", manifest_path=manifest)
    now = datetime(2026, 1, 1, tzinfo=UTC)
    store.save(
        InstallRecord(
            version=record_version,
            publisher=record_publisher,
            package_manager=InstallerKind.PIP,
            content_id=f"tx-{record_version}",
            installed_at=now,
            last_check=now,
            **record_fields,
        )
    )

    installer = PackageInstaller(InstallerKind.PIP)
    manager = UpdateManager(
        store=store,
        ledger=ledger or _make_ledger(_release()),
        staging_dir=home / "updates" / "staging",
        backup_dir=home / "backups",
        lock_path=home / "update.lock",
        trust=TrustVerifier(manifest_path=manifest),
        installer=installer,
        backup=backup,
        require_backup=require_backup,
    )
    return manager, store, installer


def _plan(version: str = "1.1.0", publisher: str = TRUSTED, sha256: str = DIGEST) -> UpdatePlan:
    return UpdatePlan.from_release("1.0.0", _release(version, publisher, sha256))


# ---------------------------------------------------------------------------
# check()
# ---------------------------------------------------------------------------


class TestCheck:
    """Tests for UpdateManager.check."""

    @pytest.mark.asyncio
    async def test_update_available(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path)
        result = await manager.check()

        assert result.outcome is CheckOutcome.UPDATE_AVAILABLE
        assert result.update_available is True
        assert result.plan == _plan()

    @pytest.mark.asyncio
    async def test_up_to_date(self, tmp_path: Path) -> None:
        """Installed 1.0.0, ledger latest 1.0.0: no update, record untouched."""
        manager, store, _ = _make_manager(tmp_path, _make_ledger(_release("1.0.0")))
        before = store.path.read_bytes()

        result = await manager.check()

        assert result.outcome is CheckOutcome.UP_TO_DATE
        assert result.plan is None
        assert store.path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_downgrade_rejected(self, tmp_path: Path) -> None:
        """Installed 1.2.0, ledger latest 1.1.0: no plan is ever produced."""
        ledger = _make_ledger(_release("1.1.0"))
        manager, _, _ = _make_manager(tmp_path, ledger, record_version="1.2.0")

        result = await manager.check()

        assert result.outcome is CheckOutcome.DOWNGRADE_REJECTED
        assert result.latest_version == "1.1.0"
        assert result.plan is None
        ledger.download_content.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publisher_mismatch(self, tmp_path: Path) -> None:
        """A newer release signed by another publisher is refused before download."""
        ledger = _make_ledger(_release("9.9.9", publisher=FOREIGN))
        manager, store, _ = _make_manager(tmp_path, ledger)
        before = store.path.read_bytes()

        result = await manager.check()

        assert result.outcome is CheckOutcome.PUBLISHER_MISMATCH
        assert result.plan is None
        assert FOREIGN in result.error
        ledger.download_content.assert_not_awaited()
        assert store.path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_roots_disagree(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path, manifest_publisher=FOREIGN)
        assert (await manager.check()).outcome is CheckOutcome.PUBLISHER_MISMATCH

    @pytest.mark.asyncio
    async def test_no_trusted_publisher(self, tmp_path: Path) -> None:
        ledger = _make_ledger(_release())
        manager, _, _ = _make_manager(tmp_path, ledger, record_publisher="")

        result = await manager.check()

        assert result.outcome is CheckOutcome.NO_TRUSTED_PUBLISHER
        ledger.query_latest_release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_unavailable(self, tmp_path: Path) -> None:
        ledger = _make_ledger()
        ledger.query_latest_release.side_effect = LedgerNetworkError("down", attempts=3)
        manager, store, _ = _make_manager(tmp_path, ledger)
        before = store.path.read_bytes()

        result = await manager.check()

        assert result.outcome is CheckOutcome.NETWORK_UNAVAILABLE
        assert result.error == "down"
        assert store.path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_no_release(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path, _make_ledger(None))
        assert (await manager.check()).outcome is CheckOutcome.NO_RELEASE

    @pytest.mark.asyncio
    async def test_queries_with_recorded_publisher(self, tmp_path: Path) -> None:
        ledger = _make_ledger(_release())
        manager, _, _ = _make_manager(tmp_path, ledger)
        await manager.check()
        ledger.query_latest_release.assert_awaited_once_with(TRUSTED)


# ---------------------------------------------------------------------------
# apply()
# ---------------------------------------------------------------------------


class TestApply:
    """Tests for the stage → backup → apply → verify → commit sequence."""

    @pytest.mark.asyncio
    async def test_commit(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(tmp_path)
        run = AsyncMock(side_effect=["", "pal, version 1.1.0\n"])

        with patch.object(installer, "_run_cmd", run):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.COMMITTED
        assert result.succeeded is True
        assert result.stages == [
            UpdateStage.CHECKING,
            UpdateStage.STAGING,
            UpdateStage.VERIFYING_HASH,
            UpdateStage.BACKING_UP,
            UpdateStage.APPLYING,
            UpdateStage.VERIFYING_INSTALL,
            UpdateStage.COMMITTING,
        ]

        record = store.load()
        assert record.version == "1.1.0"
        assert record.content_id == "tx-1.1.0"
        assert record.previous_version == "1.0.0"
        assert record.previous_content_id == "tx-1.0.0"
        assert record.pending_rollback is None
        assert record.installed_at > datetime(2026, 1, 1, tzinfo=UTC)

        staging = tmp_path / "home" / "updates" / "staging"
        assert list(staging.iterdir()) == []

        installed = Path(run.await_args_list[0].args[0][-1])
        assert installed.name == "pal_cli-1.1.0-py3-none-any.whl"

    @pytest.mark.asyncio
    async def test_hash_mismatch_then_success(self, tmp_path: Path) -> None:
        """First download corrupt, second correct: exactly two downloads, then commit."""
        ledger = _make_ledger(_release())
        ledger.download_content.side_effect = [b"corrupted", PAYLOAD]
        manager, store, installer = _make_manager(tmp_path, ledger)

        with patch.object(
            installer, "_run_cmd", AsyncMock(side_effect=["", "pal, version 1.1.0"])
        ):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.COMMITTED
        assert ledger.download_content.await_count == 2
        assert result.stages.count(UpdateStage.VERIFYING_HASH) == 2
        assert store.load().version == "1.1.0"

    @pytest.mark.asyncio
    async def test_hash_mismatch_twice_aborts_without_mutation(self, tmp_path: Path) -> None:
        ledger = _make_ledger(_release(), content=b"corrupted")
        manager, store, installer = _make_manager(tmp_path, ledger)
        before = store.path.read_bytes()
        run = AsyncMock()

        with patch.object(installer, "_run_cmd", run):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.INTEGRITY_FAILED
        assert "hash mismatch" in result.error
        assert ledger.download_content.await_count == 2
        run.assert_not_awaited()
        assert store.path.read_bytes() == before
        assert not (tmp_path / "home" / "backups").exists()

    @pytest.mark.asyncio
    async def test_download_failure(self, tmp_path: Path) -> None:
        ledger = _make_ledger(_release())
        ledger.download_content.side_effect = LedgerNetworkError("timeout", attempts=3)
        manager, store, _ = _make_manager(tmp_path, ledger)
        before = store.path.read_bytes()

        result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.NETWORK_UNAVAILABLE
        assert store.path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_foreign_plan_rejected(self, tmp_path: Path) -> None:
        ledger = _make_ledger(_release())
        manager, _, _ = _make_manager(tmp_path, ledger)

        result = await manager.apply(_plan(publisher=FOREIGN))

        assert result.outcome is UpdateOutcome.PUBLISHER_MISMATCH
        ledger.download_content.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_verification_failure_rolls_back(self, tmp_path: Path) -> None:
        """Installed binary still reports 1.0.0: restore it, pending pair cleared."""
        manager, store, installer = _make_manager(tmp_path)
        run = AsyncMock(side_effect=["", "pal, version 1.0.0\n", ""])

        with patch.object(installer, "_run_cmd", run):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.ROLLED_BACK
        assert "expected 1.1.0" in result.error
        assert result.stages[-1] is UpdateStage.ROLLING_BACK

        record = store.load()
        assert record.version == "1.0.0"
        assert record.content_id == "tx-1.0.0"
        assert record.pending_rollback is None
        assert record.previous_version is None

        restored = Path(run.await_args_list[2].args[0][-1])
        assert restored == backup_path_for("1.0.0", tmp_path / "home" / "backups")

    @pytest.mark.asyncio
    async def test_version_must_match_exactly(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(tmp_path)
        run = AsyncMock(side_effect=["", "pal, version 1.1.0.1", ""])

        with patch.object(installer, "_run_cmd", run):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.ROLLED_BACK
        assert store.load().version == "1.0.0"

    @pytest.mark.asyncio
    async def test_install_failure_rolls_back(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(tmp_path)
        run = AsyncMock(side_effect=[None, ""])

        with patch.object(installer, "_run_cmd", run):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.ROLLED_BACK
        assert result.error == "Installation command failed"
        assert store.load().pending_rollback is None

    @pytest.mark.asyncio
    async def test_unexpected_error_during_install_rolls_back(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(tmp_path)
        run = AsyncMock(side_effect=[RuntimeError("pip crashed"), ""])

        with patch.object(installer, "_run_cmd", run):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.ROLLED_BACK
        assert "pip crashed" in result.error
        assert store.load().version == "1.0.0"

    @pytest.mark.asyncio
    async def test_missing_backup_requires_manual_intervention(self, tmp_path: Path) -> None:
        """Backup could not be made and the install fails: report path and command."""
        manager, store, installer = _make_manager(tmp_path, backup=_failing_backup)

        with patch.object(installer, "_run_cmd", AsyncMock(return_value=None)):
            result = await manager.apply(_plan())

        expected_backup = backup_path_for("1.0.0", tmp_path / "home" / "backups")
        assert result.outcome is UpdateOutcome.MANUAL_INTERVENTION_REQUIRED
        assert str(expected_backup) in result.error
        assert result.recovery_command is not None
        assert "pip install --force-reinstall" in result.recovery_command
        assert str(expected_backup) in result.recovery_command

        record = store.load()
        assert record.version == "1.0.0"
        assert record.pending_rollback == PendingRollback(version="1.0.0", content_id="tx-1.0.0")

    @pytest.mark.asyncio
    async def test_failed_restore_requires_manual_intervention(self, tmp_path: Path) -> None:
        manager, _, installer = _make_manager(tmp_path)

        with patch.object(installer, "_run_cmd", AsyncMock(side_effect=["", None, None])):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.MANUAL_INTERVENTION_REQUIRED
        assert "Rollback failed" in result.error
        assert result.recovery_command

    @pytest.mark.asyncio
    async def test_backup_failure_warns_and_continues(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(tmp_path, backup=_failing_backup)

        with patch.object(installer, "_run_cmd", AsyncMock(side_effect=["", "pal, version 1.1.0"])):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.COMMITTED
        assert result.backup_path is None
        assert store.load().version == "1.1.0"

    @pytest.mark.asyncio
    async def test_required_backup_failure_aborts(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(
            tmp_path, backup=_failing_backup, require_backup=True
        )
        before = store.path.read_bytes()
        run = AsyncMock()

        with patch.object(installer, "_run_cmd", run):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.BACKUP_FAILED
        run.assert_not_awaited()
        assert store.path.read_bytes() == before
        assert list((tmp_path / "home" / "updates" / "staging").iterdir()) == []

    @pytest.mark.asyncio
    async def test_locked(self, tmp_path: Path) -> None:
        ledger = _make_ledger(_release())
        manager, store, _ = _make_manager(tmp_path, ledger)
        before = store.path.read_bytes()

        with update_lock(tmp_path / "home" / "update.lock"):
            result = await manager.apply(_plan())

        assert result.outcome is UpdateOutcome.LOCKED
        ledger.download_content.assert_not_awaited()
        assert store.path.read_bytes() == before


# ---------------------------------------------------------------------------
# force_reinstall()
# ---------------------------------------------------------------------------


class TestForceReinstall:
    """Tests for UpdateManager.force_reinstall."""

    @pytest.mark.asyncio
    async def test_reinstalls_same_version(self, tmp_path: Path) -> None:
        payload = b"same version wheel"
        release = _release("1.0.0", sha256=hashlib.sha256(payload).hexdigest())
        manager, store, installer = _make_manager(tmp_path, _make_ledger(release, payload))

        with patch.object(installer, "_run_cmd", AsyncMock(side_effect=["", "pal, version 1.0.0"])):
            result = await manager.force_reinstall()

        assert result.outcome is UpdateOutcome.COMMITTED
        assert result.forced is True
        assert store.load().version == "1.0.0"

    @pytest.mark.asyncio
    async def test_still_refuses_foreign_publisher(self, tmp_path: Path) -> None:
        ledger = _make_ledger(_release(publisher=FOREIGN))
        manager, _, _ = _make_manager(tmp_path, ledger)

        result = await manager.force_reinstall()

        assert result.outcome is UpdateOutcome.PUBLISHER_MISMATCH
        assert result.forced is True
        ledger.download_content.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_release(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path, _make_ledger(None))
        assert (await manager.force_reinstall()).outcome is UpdateOutcome.NO_RELEASE


# ---------------------------------------------------------------------------
# rollback()
# ---------------------------------------------------------------------------


class TestManualRollback:
    """Tests for UpdateManager.rollback."""

    @pytest.mark.asyncio
    async def test_nothing_to_roll_back(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path)
        result = await manager.rollback()
        assert result.outcome is UpdateOutcome.NOTHING_TO_ROLL_BACK

    @pytest.mark.asyncio
    async def test_restores_committed_previous_version(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(
            tmp_path,
            record_version="1.1.0",
            previous_version="1.0.0",
            previous_content_id="tx-1.0.0",
        )
        _fake_backup("1.0.0", tmp_path / "home" / "backups")

        with patch.object(installer, "_run_cmd", AsyncMock(return_value="")):
            result = await manager.rollback()

        assert result.outcome is UpdateOutcome.ROLLED_BACK
        assert result.target_version == "1.0.0"
        record = store.load()
        assert record.version == "1.0.0"
        assert record.content_id == "tx-1.0.0"
        assert record.previous_version is None
        assert record.previous_content_id is None

    @pytest.mark.asyncio
    async def test_prefers_pending_pair(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(
            tmp_path,
            record_version="1.1.0",
            previous_version="0.9.0",
            pending_rollback=PendingRollback(version="1.0.0", content_id="tx-1.0.0"),
        )
        _fake_backup("1.0.0", tmp_path / "home" / "backups")

        with patch.object(installer, "_run_cmd", AsyncMock(return_value="")):
            result = await manager.rollback()

        assert result.outcome is UpdateOutcome.ROLLED_BACK
        record = store.load()
        assert record.version == "1.0.0"
        assert record.pending_rollback is None
        assert record.previous_version == "0.9.0"

    @pytest.mark.asyncio
    async def test_missing_backup(self, tmp_path: Path) -> None:
        manager, store, installer = _make_manager(
            tmp_path, record_version="1.1.0", previous_version="1.0.0"
        )
        run = AsyncMock()

        with patch.object(installer, "_run_cmd", run):
            result = await manager.rollback()

        assert result.outcome is UpdateOutcome.MANUAL_INTERVENTION_REQUIRED
        assert "backup not found" in result.error
        assert result.recovery_command
        run.assert_not_awaited()
        assert store.load().previous_version == "1.0.0"


class TestLifecycle:
    """Tests for construction helpers."""

    @pytest.mark.asyncio
    async def test_context_manager_closes_ledger(self, tmp_path: Path) -> None:
        ledger = _make_ledger()
        manager, _, _ = _make_manager(tmp_path, ledger)

        async with manager:
            pass

        ledger.close.assert_awaited_once()

    def test_from_settings(self, tmp_path: Path) -> None:
        from pal.config import Settings

        settings = Settings(_env_file=None, home=tmp_path, require_backup=True)
        manager = UpdateManager.from_settings(settings)

        assert manager._staging_dir == tmp_path / "updates" / "staging"
        assert manager._require_backup is True
