"""Persistence for the local install record.

The record is the only durable state of the update pipeline. It is
always written as a whole file to a temporary path and then moved into
place, so a reader never sees a torn record.
"""

from __future__ import annotations

import json
import sys
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from pal.logging import get_logger
from pal.updater.installers import detect_installer
from pal.updater.manifest import read_installed_manifest
from pal.updater.models import InstallRecord, utc_now
from pal.updater.versioning import is_valid_version

if TYPE_CHECKING:
    from pal.config import Settings

log = get_logger("pal.updater.install_record")

FALLBACK_VERSION = "0.0.0"


class InstallRecordStore:
    """Loads and saves the install record under the pal home directory."""

    def __init__(
        self,
        path: Path,
        manifest_path: Path | None = None,
        package_manager: str | None = None,
    ) -> None:
        self._path = path
        self._manifest_path = manifest_path
        self._package_manager = package_manager

    @classmethod
    def from_settings(cls, settings: Settings) -> InstallRecordStore:
        return cls(
            path=settings.install_record_path,
            manifest_path=settings.manifest_path,
            package_manager=settings.package_manager,
        )

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> InstallRecord | None:
        """Read the persisted record; a missing or corrupt file yields None."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("install record is not a JSON object")
            return InstallRecord.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("install_record_corrupt", path=str(self._path), error=str(exc))
            return None

    def save(self, record: InstallRecord) -> None:
        """Atomically replace the record file with *record*."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(record.to_dict(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        tmp_path.replace(self._path)

    def first_run_init(self) -> InstallRecord:
        """Create the record from the installed package's own manifest.

        This is where the trusted publisher is captured for the first time.
        """
        manifest = read_installed_manifest(self._manifest_path)
        version = manifest.version
        if not is_valid_version(version):
            log.warning("install_record_version_fallback", manifest_version=version)
            version = FALLBACK_VERSION
        if not manifest.publisher:
            log.warning("install_record_no_publisher")

        now = utc_now()
        record = InstallRecord(
            version=version,
            publisher=manifest.publisher or "",
            package_manager=detect_installer(override=self._package_manager),
            installed_at=now,
            last_check=now,
            install_path=sys.prefix,
        )
        self.save(record)
        log.info(
            "install_record_created",
            version=record.version,
            package_manager=record.package_manager.value,
        )
        return record

    def load_or_init(self) -> InstallRecord:
        record = self.load()
        if record is None:
            record = self.first_run_init()
        return record

    def is_check_due(self, interval_days: float) -> bool:
        """Return True if the last check is older than *interval_days*."""
        record = self.load()
        if record is None:
            return True
        return utc_now() - record.last_check > timedelta(days=interval_days)

    def record_check(self) -> None:
        """Stamp the last-check time, whatever the check's outcome was."""
        record = self.load_or_init()
        record.last_check = utc_now()
        self.save(record)
