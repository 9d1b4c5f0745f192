"""Installation mechanisms used to apply and reverse updates.

All subprocess calls of the update pipeline are confined to this module.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import sys
from collections.abc import Mapping
from pathlib import Path, PurePath

from pal import constants
from pal.logging import get_logger
from pal.updater.models import InstallerKind
from pal.updater.versioning import extract_version

log = get_logger("pal.updater.installers")


def detect_installer(
    env: Mapping[str, str] | None = None,
    prefix: str | None = None,
    override: str | None = None,
) -> InstallerKind:
    """Guess which package manager installed the running pal.

    Checks an explicit override, then whether the interpreter lives in a
    uv tool environment, then uv's environment markers. Defaults to pip.
    """
    env = os.environ if env is None else env
    prefix = sys.prefix if prefix is None else prefix

    choice = (override or env.get("PAL_PACKAGE_MANAGER") or "").strip().lower()
    if choice:
        return InstallerKind.UV if choice == "uv" else InstallerKind.PIP

    parts = [part.lower() for part in PurePath(prefix).parts]
    for first, second in zip(parts, parts[1:]):
        if first == "uv" and second == "tools":
            return InstallerKind.UV

    if env.get("UV_TOOL_DIR"):
        return InstallerKind.UV

    return InstallerKind.PIP


def install_command(kind: InstallerKind, artifact: Path) -> list[str]:
    """Global-install command for *artifact* with the given mechanism."""
    if kind is InstallerKind.UV:
        return ["uv", "tool", "install", "--force", "--reinstall", str(artifact)]
    return [sys.executable, "-m", "pip", "install", "--force-reinstall", str(artifact)]


def format_command(args: list[str]) -> str:
    return shlex.join(args)


class PackageInstaller:
    """Runs the detected installation mechanism and the installed binary."""

    def __init__(
        self,
        kind: InstallerKind,
        executable: str = constants.APP_NAME,
        install_timeout: float = constants.INSTALL_TIMEOUT,
        version_timeout: float = constants.VERSION_CHECK_TIMEOUT,
    ) -> None:
        self._kind = kind
        self._executable = executable
        self._install_timeout = install_timeout
        self._version_timeout = version_timeout

    @property
    def kind(self) -> InstallerKind:
        return self._kind

    def command_for(self, artifact: Path) -> list[str]:
        return install_command(self._kind, artifact)

    async def install(self, artifact: Path) -> bool:
        """Install *artifact* globally. Returns True on a zero exit status."""
        args = self.command_for(artifact)
        log.info("installer_running", installer=self._kind.value, artifact=str(artifact))
        return await self._run_cmd(args, timeout=self._install_timeout) is not None

    async def installed_version(self) -> str | None:
        """Ask the installed binary which version it is."""
        output = await self._run_cmd(
            [self._executable, "--version"], timeout=self._version_timeout
        )
        if output is None:
            return None
        return extract_version(output)

    async def _run_cmd(self, args: list[str], timeout: float = 120) -> str | None:
        """Run a command and return stdout, or None on failure."""
        cmd = format_command(args)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            log.warning("installer_cmd_error", cmd=cmd, error=str(exc))
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            log.warning("installer_cmd_timeout", cmd=cmd, timeout=timeout)
            return None
        except asyncio.CancelledError:
            proc.kill()
            raise

        if proc.returncode != 0:
            log.warning(
                "installer_cmd_failed",
                cmd=cmd,
                returncode=proc.returncode,
                stderr=stderr.decode(errors="replace")[:500],
            )
            return None

        return stdout.decode(errors="replace")
