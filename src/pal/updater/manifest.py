"""Reader for the release manifest embedded in the installed package.

The manifest is written by the publish workflow into ``pal/release.json``
before the wheel is built, so it travels inside the verified artifact.
It is read fresh on every call.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from importlib import metadata, resources
from pathlib import Path

from pal import __version__, constants
from pal.logging import get_logger

log = get_logger("pal.updater.manifest")

MANIFEST_NAME = "release.json"


@dataclass(frozen=True)
class InstalledManifest:
    """Identity of the currently installed release."""

    version: str
    publisher: str | None


def _installed_version() -> str:
    try:
        return metadata.version(constants.DIST_NAME)
    except metadata.PackageNotFoundError:
        return __version__


def read_installed_manifest(path: Path | None = None) -> InstalledManifest:
    """Read version and publisher from the installed package's manifest.

    A missing or unreadable manifest yields a manifest with no publisher;
    the version then falls back to the distribution metadata.
    """
    data: dict[str, object] = {}
    try:
        if path is not None:
            raw = path.read_text(encoding="utf-8")
        else:
            raw = resources.files("pal").joinpath(MANIFEST_NAME).read_text(encoding="utf-8")
        loaded = json.loads(raw)
        if isinstance(loaded, dict):
            data = loaded
        else:
            log.warning("manifest_unexpected_payload", path=str(path or MANIFEST_NAME))
    except FileNotFoundError:
        log.debug("manifest_missing", path=str(path or MANIFEST_NAME))
    except (OSError, ValueError) as exc:
        log.warning("manifest_unreadable", path=str(path or MANIFEST_NAME), error=str(exc))

    publisher = data.get("publisher")
    version = data.get("version")
    return InstalledManifest(
        version=str(version) if version else _installed_version(),
        publisher=str(publisher) if publisher else None,
    )
