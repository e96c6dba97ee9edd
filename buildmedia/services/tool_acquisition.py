"""Packaging tool discovery and installation.

On Windows the packaging tool is ``oscdimg.exe`` from the Windows ADK
Deployment Tools. When it is missing, three installers are tried in order:

1. ``winget install Microsoft.OSCDIMG`` (standalone package)
2. ``adksetup.exe`` downloaded from the configured sources, installing
   only the Deployment Tools feature
3. ``winget install Microsoft.WindowsADK``

Other platforms use ``xorriso`` from PATH and cannot install it
automatically. A found tool is cached for the lifetime of the process.
"""

from __future__ import annotations

import glob
import os
import shutil
import sys
import tempfile
import threading
from pathlib import Path
from typing import Callable

from buildmedia.config import settings
from buildmedia.domain.models import ToolAvailability
from buildmedia.logging import LoggerFactory, operation_context
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.services.downloads import download_first_available
from buildmedia.storage.commands import ProgressSink, emit, run_cancellable_command
from buildmedia.storage.exceptions import CommandFailedError, ToolAcquisitionError


log = LoggerFactory.for_tools()

OSCDIMG_EXE = "oscdimg.exe"
WINGET_FLAGS = [
    "--exact",
    "--silent",
    "--scope",
    "machine",
    "--accept-package-agreements",
    "--accept-source-agreements",
]
ADK_ARCHITECTURES = ("amd64", "x86", "arm64")


def _env_path(name: str, default: str = "") -> Path | None:
    value = os.environ.get(name, default)
    return Path(value) if value else None


def oscdimg_candidates() -> list[Path]:
    """Well-known oscdimg.exe locations: ADK install, WinGet links and packages."""
    candidates: list[Path] = []
    for variable in ("ProgramFiles(x86)", "ProgramFiles"):
        base = _env_path(variable)
        if base is None:
            continue
        kit = base / "Windows Kits" / "10" / "Assessment and Deployment Kit" / "Deployment Tools"
        candidates.extend(kit / arch / "Oscdimg" / OSCDIMG_EXE for arch in ADK_ARCHITECTURES)
        candidates.append(base / "WinGet" / "Links" / OSCDIMG_EXE)

    local = _env_path("LOCALAPPDATA")
    if local is not None:
        winget = local / "Microsoft" / "WinGet"
        candidates.append(winget / "Links" / OSCDIMG_EXE)
        pattern = str(winget / "Packages" / "Microsoft.OSCDIMG_*" / "**" / OSCDIMG_EXE)
        candidates.extend(Path(match) for match in sorted(glob.glob(pattern, recursive=True)))
    return candidates


def find_packaging_tool(platform: str | None = None) -> Path | None:
    """Locate the packaging tool without installing anything."""
    platform = platform or sys.platform
    configured = settings.get_setting("packaging_tool_path")
    if configured:
        path = Path(configured)
        if path.is_file():
            return path
        log.warning(f"Configured packaging tool not found: {path}")

    if platform != "win32":
        xorriso = shutil.which("xorriso")
        return Path(xorriso) if xorriso else None

    on_path = shutil.which("oscdimg")
    if on_path:
        return Path(on_path)
    for candidate in oscdimg_candidates():
        if candidate.is_file():
            return candidate
    return None


class ToolAcquisitionService:
    """Ensures the packaging tool exists, installing it on Windows if needed."""

    def __init__(self, platform: str | None = None):
        self.platform = platform or sys.platform
        self._lock = threading.Lock()
        self._availability = ToolAvailability()

    @property
    def availability(self) -> ToolAvailability:
        with self._lock:
            return self._availability

    def is_available(self) -> bool:
        with self._lock:
            if self._availability.is_available:
                return True
        path = find_packaging_tool(self.platform)
        if path is None:
            return False
        with self._lock:
            self._availability = ToolAvailability(is_available=True, path=path)
        log.info(f"Packaging tool found: {path}")
        return True

    def ensure_available(
        self,
        progress: ProgressSink | None = None,
        cancel_scope: CancellationScope | None = None,
    ) -> ToolAvailability:
        """Return the tool, installing it first when it is missing.

        Raises:
            ToolAcquisitionError: every strategy failed; availability stays
                false so the call can be retried.
        """
        if self.is_available():
            return self.availability
        if self.platform != "win32":
            raise ToolAcquisitionError(
                "xorriso was not found. Install it with your package manager "
                "(for example: apt install xorriso) and retry."
            )

        strategies: list[tuple[str, Callable]] = [
            ("winget OSCDIMG", self._install_oscdimg_winget),
            ("ADK Deployment Tools", self._install_adk_deployment_tools),
            ("winget Windows ADK", self._install_adk_winget),
        ]
        errors = []
        with operation_context("tools", tool="oscdimg"):
            for name, strategy in strategies:
                check_cancelled(cancel_scope)
                emit(progress, f"Installing packaging tool ({name})...")
                try:
                    strategy(progress, cancel_scope)
                except (CommandFailedError, ToolAcquisitionError) as error:
                    log.warning(f"{name} failed: {error}")
                    errors.append(f"{name}: {error}")
                    continue
                if self.is_available():
                    emit(progress, "Packaging tool installed")
                    return self.availability
                errors.append(f"{name}: oscdimg.exe not found after install")
            raise ToolAcquisitionError(
                "Unable to install oscdimg. " + "; ".join(errors)
            )

    def _winget(self) -> str:
        winget = shutil.which("winget")
        if not winget:
            raise ToolAcquisitionError("winget is not available")
        return winget

    def _install_oscdimg_winget(self, progress, cancel_scope) -> None:
        run_cancellable_command(
            [self._winget(), "install", "--id", "Microsoft.OSCDIMG", *WINGET_FLAGS],
            "Installing OSCDIMG",
            progress,
            cancel_scope,
        )

    def _install_adk_winget(self, progress, cancel_scope) -> None:
        run_cancellable_command(
            [self._winget(), "install", "--id", "Microsoft.WindowsADK", *WINGET_FLAGS],
            "Installing Windows ADK",
            progress,
            cancel_scope,
        )

    def _install_adk_deployment_tools(self, progress, cancel_scope) -> None:
        sources = settings.get_setting(
            "adk_download_sources", settings.DEFAULT_ADK_DOWNLOAD_SOURCES
        )
        with tempfile.TemporaryDirectory(prefix="buildmedia-adk-") as temp_dir:
            installer = download_first_available(
                list(sources),
                Path(temp_dir) / "adksetup.exe",
                progress,
                cancel_scope,
                title="Downloading ADK setup",
            )
            run_cancellable_command(
                [
                    str(installer),
                    "/quiet",
                    "/norestart",
                    "/features",
                    "OptionId.DeploymentTools",
                    "/ceip",
                    "off",
                    "/log",
                    str(Path(temp_dir) / "adksetup.log"),
                ],
                "Installing ADK Deployment Tools",
                progress,
                cancel_scope,
            )


_default_service: ToolAcquisitionService | None = None
_default_lock = threading.Lock()


def get_tool_service() -> ToolAcquisitionService:
    """Process-wide service so the discovered tool is cached across stages."""
    global _default_service
    with _default_lock:
        if _default_service is None:
            _default_service = ToolAcquisitionService()
        return _default_service
