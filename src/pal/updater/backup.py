"""Backup of the currently installed release.

A plain copy of the installed files cannot be handed back to pip or uv,
so the installed distribution is repacked into a wheel from its own
``RECORD``. Files the installer generates (console scripts, bytecode,
``INSTALLER``, ``REQUESTED``, ``direct_url.json``) are left out and are
recreated when the backup is installed.
"""

from __future__ import annotations

import base64
import csv
import hashlib
import io
import zipfile
from importlib import metadata
from pathlib import Path

from pal import constants
from pal.logging import get_logger
from pal.updater.models import BackupError

log = get_logger("pal.updater.backup")

_INSTALLER_FILES = frozenset(
    {"INSTALLER", "REQUESTED", "RECORD", "RECORD.jws", "RECORD.p7s", "direct_url.json"}
)


def artifact_filename(version: str, dist_name: str = constants.DIST_NAME) -> str:
    """Wheel filename used for both staged and backup artifacts."""
    return f"{dist_name.replace('-', '_')}-{version}-py3-none-any.whl"


def backup_path_for(version: str, backup_dir: Path) -> Path:
    return backup_dir / artifact_filename(version)


def _record_hash(data: bytes) -> str:
    digest = hashlib.sha256(data).digest()
    return "sha256=" + base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _should_archive(file: metadata.PackagePath, dist_info: str) -> bool:
    if ".." in file.parts or "__pycache__" in file.parts:
        return False
    if file.suffix == ".pyc":
        return False
    if file.parent.as_posix() == dist_info and file.name in _INSTALLER_FILES:
        return False
    return True


def create_backup(
    version: str,
    backup_dir: Path,
    distribution: metadata.Distribution | None = None,
) -> Path:
    """Archive the installed distribution as an installable wheel.

    Returns the path of the backup. Raises ``BackupError`` if the
    distribution cannot be found or does not match *version*.
    """
    try:
        dist = distribution or metadata.distribution(constants.DIST_NAME)
    except metadata.PackageNotFoundError as exc:
        raise BackupError(f"{constants.DIST_NAME} is not installed as a distribution") from exc

    if dist.version != version:
        raise BackupError(
            f"Installed distribution is {dist.version}, expected {version}; refusing to back up"
        )

    files = dist.files
    if not files:
        raise BackupError("Installed distribution has no RECORD")

    dist_info = next(
        (
            f.parent.as_posix()
            for f in files
            if f.name == "METADATA" and f.parent.name.endswith(".dist-info")
        ),
        None,
    )
    if dist_info is None:
        raise BackupError("Installed distribution has no .dist-info metadata")

    target = backup_path_for(version, backup_dir)
    tmp_path = target.with_suffix(".tmp")
    rows: list[tuple[str, str, str]] = []

    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise BackupError(f"Failed to write backup {target}: {exc}") from exc

    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as wheel:
            for file in files:
                if not _should_archive(file, dist_info):
                    continue
                data = file.read_binary()
                name = file.as_posix()
                wheel.writestr(name, data)
                rows.append((name, _record_hash(data), str(len(data))))

            record_name = f"{dist_info}/RECORD"
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerows(rows)
            writer.writerow((record_name, "", ""))
            wheel.writestr(record_name, buffer.getvalue())
        tmp_path.replace(target)
    except (OSError, zipfile.BadZipFile) as exc:
        tmp_path.unlink(missing_ok=True)
        raise BackupError(f"Failed to write backup {target}: {exc}") from exc

    log.info("backup_created", version=version, path=str(target), files=len(rows))
    return target
