"""Data models for the self-update pipeline.

Every outcome is a member of a closed enum so callers can branch
exhaustively instead of matching on message text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pal.updater.versioning import is_valid_version


def utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------


class UpdateError(RuntimeError):
    """Base class for update pipeline failures."""


class IntegrityError(UpdateError):
    """Downloaded content did not match its declared SHA-256 digest."""


class BackupError(UpdateError):
    """The currently installed release could not be archived."""


# ------------------------------------------------------------------
# Enums
# ------------------------------------------------------------------


class InstallerKind(Enum):
    """Package manager that installed pal and applies its updates."""

    PIP = "pip"
    UV = "uv"


class UpdateStage(Enum):
    """Non-terminal states of the update state machine."""

    CHECKING = "checking"
    STAGING = "staging"
    VERIFYING_HASH = "verifying_hash"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    VERIFYING_INSTALL = "verifying_install"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"


class CheckOutcome(Enum):
    """Result of querying the ledger for a newer trusted release."""

    UPDATE_AVAILABLE = "update_available"
    UP_TO_DATE = "up_to_date"
    DOWNGRADE_REJECTED = "downgrade_rejected"
    NO_RELEASE = "no_release"
    NO_TRUSTED_PUBLISHER = "no_trusted_publisher"
    PUBLISHER_MISMATCH = "publisher_mismatch"
    NETWORK_UNAVAILABLE = "network_unavailable"


class UpdateOutcome(Enum):
    """Terminal result of an apply, force-reinstall or rollback."""

    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    MANUAL_INTERVENTION_REQUIRED = "manual_intervention_required"
    INTEGRITY_FAILED = "integrity_failed"
    BACKUP_FAILED = "backup_failed"
    PUBLISHER_MISMATCH = "publisher_mismatch"
    NETWORK_UNAVAILABLE = "network_unavailable"
    NO_TRUSTED_PUBLISHER = "no_trusted_publisher"
    NO_RELEASE = "no_release"
    NOTHING_TO_ROLL_BACK = "nothing_to_roll_back"
    LOCKED = "locked"
    ABORTED = "aborted"


class TrustRejection(Enum):
    """Why a candidate publisher was refused."""

    RECORD_PUBLISHER_MISSING = "record_publisher_missing"
    MANIFEST_PUBLISHER_MISSING = "manifest_publisher_missing"
    ROOTS_DISAGREE = "roots_disagree"
    RECORD_MISMATCH = "record_mismatch"
    MANIFEST_MISMATCH = "manifest_mismatch"


class StartupOutcome(Enum):
    """Result of the bounded update check run on program startup."""

    SKIPPED = "skipped"
    NOT_DUE = "not_due"
    CHECKED = "checked"
    DECLINED = "declined"
    UPDATED = "updated"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ReleaseDescriptor:
    """One publishable artifact as tagged on the ledger."""

    content_id: str
    version: str
    publisher: str
    sha256: str
    timestamp: int = 0


# ------------------------------------------------------------------
# Install record
# ------------------------------------------------------------------


@dataclass
class PendingRollback:
    """Release to restore if the in-progress apply fails."""

    version: str
    content_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "content_id": self.content_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingRollback:
        return cls(version=str(data["version"]), content_id=str(data.get("content_id", "")))


@dataclass
class InstallRecord:
    """Durable identity of the local installation."""

    version: str
    publisher: str
    package_manager: InstallerKind
    content_id: str = ""
    installed_at: datetime = field(default_factory=utc_now)
    last_check: datetime = field(default_factory=utc_now)
    install_path: str = ""
    previous_version: str | None = None
    previous_content_id: str | None = None
    pending_rollback: PendingRollback | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "publisher": self.publisher,
            "package_manager": self.package_manager.value,
            "content_id": self.content_id,
            "installed_at": self.installed_at.isoformat(),
            "last_check": self.last_check.isoformat(),
            "install_path": self.install_path,
            "previous_version": self.previous_version,
            "previous_content_id": self.previous_content_id,
            "pending_rollback": (
                self.pending_rollback.to_dict() if self.pending_rollback else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstallRecord:
        """Build a record from its persisted form.

        Raises ``KeyError``/``ValueError``/``TypeError`` on malformed input;
        the store treats any of those as a corrupt record.
        """
        version = str(data["version"])
        if not is_valid_version(version):
            raise ValueError(f"Install record has non-strict version {version!r}")
        pending = data.get("pending_rollback")
        return cls(
            version=version,
            publisher=str(data.get("publisher") or ""),
            package_manager=InstallerKind(data["package_manager"]),
            content_id=str(data.get("content_id") or ""),
            installed_at=_parse_timestamp(data["installed_at"]),
            last_check=_parse_timestamp(data["last_check"]),
            install_path=str(data.get("install_path") or ""),
            previous_version=data.get("previous_version"),
            previous_content_id=data.get("previous_content_id"),
            pending_rollback=PendingRollback.from_dict(pending) if pending else None,
        )


# ------------------------------------------------------------------
# Plans and results
# ------------------------------------------------------------------


@dataclass(frozen=True)
class UpdatePlan:
    """A verified candidate, produced by a check and consumed once by apply."""

    current_version: str
    candidate_version: str
    content_id: str
    sha256: str
    publisher: str

    @classmethod
    def from_release(cls, current_version: str, release: ReleaseDescriptor) -> UpdatePlan:
        return cls(
            current_version=current_version,
            candidate_version=release.version,
            content_id=release.content_id,
            sha256=release.sha256,
            publisher=release.publisher,
        )


@dataclass
class CheckResult:
    """Outcome of a single check against the ledger."""

    outcome: CheckOutcome
    current_version: str
    latest_version: str | None = None
    plan: UpdatePlan | None = None
    error: str | None = None

    @property
    def update_available(self) -> bool:
        return self.outcome is CheckOutcome.UPDATE_AVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "current_version": self.current_version,
            "latest_version": self.latest_version,
            "content_id": self.plan.content_id if self.plan else None,
            "error": self.error,
        }


@dataclass
class UpdateResult:
    """Outcome of an apply, force-reinstall or rollback."""

    outcome: UpdateOutcome
    current_version: str
    target_version: str | None = None
    error: str | None = None
    recovery_command: str | None = None
    backup_path: str | None = None
    forced: bool = False
    stages: list[UpdateStage] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: utc_now().isoformat())
    completed_at: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is UpdateOutcome.COMMITTED

    def enter(self, stage: UpdateStage) -> None:
        self.stages.append(stage)

    def finish(self, outcome: UpdateOutcome, error: str | None = None) -> UpdateResult:
        self.outcome = outcome
        if error is not None:
            self.error = error
        self.completed_at = utc_now().isoformat()
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "current_version": self.current_version,
            "target_version": self.target_version,
            "error": self.error,
            "recovery_command": self.recovery_command,
            "backup_path": self.backup_path,
            "forced": self.forced,
            "stages": [stage.value for stage in self.stages],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class StartupReport:
    """What the startup check did, returned rather than kept as global status."""

    outcome: StartupOutcome
    check: CheckResult | None = None
    update: UpdateResult | None = None
    error: str | None = None
