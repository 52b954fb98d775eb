"""
Loan Harness - CLI Availability

Makes sure the loans-borrower CLI binary is present before the loan
steps run. An explicitly configured executable is used as-is; otherwise
the Linux build is downloaded into the install directory and marked
executable.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

import httpx

from engine.config import CliSettings

logger = logging.getLogger("loan_harness.cli_install")


class CliUnavailableError(Exception):
    """Raised when the CLI binary cannot be located or installed."""


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class CliInstaller:
    """Locates or downloads the CLI. Pass `transport` to fake the download."""

    def __init__(
        self,
        settings: CliSettings | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 120.0,
    ):
        self.settings = settings or CliSettings()
        self._transport = transport
        self._timeout = timeout

    def ensure(self) -> Path:
        if self.settings.executable:
            path = Path(self.settings.executable)
            if _is_executable(path):
                logger.info("Using configured CLI at %s", path)
                return path
            raise CliUnavailableError(f"Configured CLI is not executable: {path}")

        install_dir = Path(self.settings.install_dir)
        target = install_dir / self.settings.binary_name
        logger.info("Creating CLI directory at: %s", install_dir)
        try:
            install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CliUnavailableError(f"Failed to create CLI directory: {e}") from e

        self._download(target)

        try:
            mode = target.stat().st_mode
            target.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            raise CliUnavailableError(f"Failed to set CLI file permissions: {e}") from e

        logger.info("CLI downloaded and installed successfully at: %s", target)
        return target

    def _download(self, target: Path):
        url = self.settings.download_url
        logger.info("Downloading CLI from %s to %s", url, target)
        # Write beside the target and swap in, so concurrent runs never
        # execute a half-written binary.
        partial = target.with_name(f"{target.name}.{os.getpid()}.part")
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport,
                              follow_redirects=True) as client:
                with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    with open(partial, "wb") as f:
                        for chunk in resp.iter_bytes():
                            f.write(chunk)
            os.replace(partial, target)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise CliUnavailableError(f"Failed to download CLI: {e}") from e
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise CliUnavailableError(f"Failed to write CLI file: {e}") from e


def ensure_cli(settings: CliSettings | None = None,
               transport: httpx.BaseTransport | None = None) -> Path:
    """Return a runnable CLI path, downloading it when none is configured."""
    return CliInstaller(settings, transport=transport).ensure()
