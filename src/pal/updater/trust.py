"""Publisher trust verification.

A candidate release is accepted only when two independently stored
copies of the trusted publisher agree with it and with each other:

1. the publisher captured in the install record on first run, and
2. the publisher embedded in the currently installed package's manifest,
   re-read on every verification.

Editing the install record alone cannot redirect updates, because the
second root lives inside the previously verified installed artifact.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from pal.logging import get_logger
from pal.updater.manifest import InstalledManifest, read_installed_manifest
from pal.updater.models import InstallRecord, TrustRejection

log = get_logger("pal.updater.trust")


@dataclass(frozen=True)
class TrustDecision:
    """Allow, or reject with a reason."""

    allowed: bool
    reason: TrustRejection | None = None
    message: str = ""

    @classmethod
    def allow(cls) -> TrustDecision:
        return cls(allowed=True)

    @classmethod
    def reject(cls, reason: TrustRejection, message: str) -> TrustDecision:
        return cls(allowed=False, reason=reason, message=message)


class TrustVerifier:
    """Cross-checks a candidate publisher against both trust roots."""

    def __init__(
        self,
        manifest_path: Path | None = None,
        manifest_reader: Callable[[Path | None], InstalledManifest] = read_installed_manifest,
    ) -> None:
        self._manifest_path = manifest_path
        self._read_manifest = manifest_reader

    def verify(self, candidate_publisher: str, record: InstallRecord) -> TrustDecision:
        recorded = record.publisher
        embedded = self._read_manifest(self._manifest_path).publisher

        if not recorded:
            decision = TrustDecision.reject(
                TrustRejection.RECORD_PUBLISHER_MISSING,
                "No trusted publisher in the install record; reinstall pal",
            )
        elif not embedded:
            decision = TrustDecision.reject(
                TrustRejection.MANIFEST_PUBLISHER_MISSING,
                "Installed package carries no publisher; reinstall pal",
            )
        elif recorded != embedded:
            decision = TrustDecision.reject(
                TrustRejection.ROOTS_DISAGREE,
                f"Install record publisher ({recorded}) does not match "
                f"installed package publisher ({embedded})",
            )
        elif candidate_publisher != recorded:
            decision = TrustDecision.reject(
                TrustRejection.RECORD_MISMATCH,
                f"Update rejected: signed by different publisher "
                f"({candidate_publisher} != {recorded})",
            )
        elif candidate_publisher != embedded:
            decision = TrustDecision.reject(
                TrustRejection.MANIFEST_MISMATCH,
                f"Update rejected: publisher mismatch with installed package "
                f"({candidate_publisher} != {embedded})",
            )
        else:
            decision = TrustDecision.allow()

        if not decision.allowed:
            log.warning(
                "trust_rejected",
                reason=decision.reason.value if decision.reason else None,
                candidate=candidate_publisher,
            )
        return decision
