"""Driver injection into the working directory.

Drivers are copied one folder per ``.inf`` into two locations:

- ``sources/$WinpeDriver$``: storage controllers Windows Setup needs to see
  the target disk (loaded by setup itself).
- ``sources/$OEM$/$$/Drivers``: everything else, installed after setup by
  ``SetupComplete.cmd`` through ``pnputil``.

System export and custom folders are additive; neither clears the other.
"""

from __future__ import annotations

import re
import shutil
import sys
import tempfile
import threading
from pathlib import Path

from buildmedia.domain.models import DriverInjectionState
from buildmedia.logging import LoggerFactory, operation_context
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.storage.commands import ProgressSink, emit, run_cancellable_command
from buildmedia.storage.exceptions import UnexpectedIOError, ValidationError


log = LoggerFactory.for_drivers()

WINPE_DRIVER_DIR = ("$WinpeDriver$",)
OEM_DRIVER_DIR = ("$OEM$", "$$", "Drivers")
SETUP_SCRIPTS_DIR = ("$OEM$", "$$", "Setup", "Scripts")
SETUP_COMPLETE_NAME = "SetupComplete.cmd"
MAX_NAME_SUFFIX = 100

STORAGE_CLASSES = {"scsiadapter", "hdc"}
STORAGE_KEYWORDS = ("iaahci", "iastor", "iastorac", "iastora", "iastorv", "vmd", "irst", "rst")
_CLASS_LINE = re.compile(r"^\s*Class\s*=\s*\"?([^\";\s]+)", re.IGNORECASE | re.MULTILINE)

SETUP_COMPLETE_SCRIPT = (
    "@echo off\r\n"
    "if exist \"%SystemRoot%\\Drivers\" (\r\n"
    "    pnputil /add-driver \"%SystemRoot%\\Drivers\\*.inf\" /subdirs /install "
    ">> \"%SystemRoot%\\Logs\\DriverInstall.log\" 2>&1\r\n"
    ")\r\n"
)


# ==============================================================================
# Categorisation
# ==============================================================================


def _read_inf(inf_path: Path) -> str:
    raw = inf_path.read_bytes()
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16", errors="replace")
    return raw.decode("utf-8", errors="replace")


def is_storage_driver(inf_path: Path) -> bool:
    """True for disk controller drivers Windows Setup must load itself."""
    name = inf_path.stem.lower()
    if any(keyword in name for keyword in STORAGE_KEYWORDS):
        return True
    try:
        match = _CLASS_LINE.search(_read_inf(inf_path))
    except OSError as error:
        log.debug(f"Unable to read {inf_path}: {error}")
        return False
    return bool(match) and match.group(1).lower() in STORAGE_CLASSES


def find_inf_files(folder: Path, exclude: Path | None = None) -> list[Path]:
    """All ``*.inf`` files under ``folder``, skipping anything inside ``exclude``."""
    exclude_resolved = exclude.resolve() if exclude is not None else None
    found = []
    for inf in sorted(Path(folder).rglob("*")):
        if not inf.is_file() or inf.suffix.lower() != ".inf":
            continue
        if exclude_resolved is not None:
            try:
                inf.resolve().relative_to(exclude_resolved)
                continue
            except ValueError:
                pass
        found.append(inf)
    return found


def _unique_destination(parent: Path, name: str) -> Path:
    candidate = parent / name
    if not candidate.exists():
        return candidate
    for index in range(1, MAX_NAME_SUFFIX + 1):
        candidate = parent / f"{name}_{index}"
        if not candidate.exists():
            return candidate
    raise UnexpectedIOError(f"Too many driver folders named {name} in {parent}")


def _sources_dir(work_dir: Path) -> Path:
    for child in Path(work_dir).iterdir():
        if child.is_dir() and child.name.lower() == "sources":
            return child
    raise ValidationError(f"{work_dir} has no sources folder")


def write_setup_complete(work_dir: Path) -> Path:
    """Write the post-setup script that installs the OEM drivers."""
    scripts = _sources_dir(work_dir).joinpath(*SETUP_SCRIPTS_DIR)
    scripts.mkdir(parents=True, exist_ok=True)
    script = scripts / SETUP_COMPLETE_NAME
    script.write_bytes(SETUP_COMPLETE_SCRIPT.encode("ascii"))
    return script


def _copy_driver_folder(folder: Path, destination: Path) -> None:
    """Copy the files directly inside ``folder``; subfolders with their own
    ``.inf`` are separate drivers and get their own destination."""
    destination.mkdir()
    for item in sorted(folder.iterdir()):
        if item.is_file():
            shutil.copy2(item, destination / item.name)


def copy_drivers(
    driver_root: Path,
    work_dir: Path,
    progress: ProgressSink | None = None,
    cancel_scope: CancellationScope | None = None,
) -> tuple[int, int]:
    """Copy every driver folder under ``driver_root`` into the media.

    Returns ``(storage_count, oem_count)``.
    """
    work_dir = Path(work_dir)
    sources = _sources_dir(work_dir)
    winpe = sources.joinpath(*WINPE_DRIVER_DIR)
    oem = sources.joinpath(*OEM_DRIVER_DIR)

    infs = find_inf_files(driver_root, exclude=work_dir)
    copied: set[Path] = set()
    created: list[Path] = []
    storage_count = oem_count = 0
    try:
        for index, inf in enumerate(infs, start=1):
            check_cancelled(cancel_scope)
            folder = inf.parent
            if folder in copied:
                continue
            copied.add(folder)
            storage = is_storage_driver(inf)
            parent = winpe if storage else oem
            parent.mkdir(parents=True, exist_ok=True)
            destination = _unique_destination(parent, folder.name or inf.stem)
            emit(progress, f"Copying driver {index}/{len(infs)}: {folder.name}")
            try:
                _copy_driver_folder(folder, destination)
            except OSError as error:
                raise UnexpectedIOError(f"Unable to copy driver {folder}: {error}") from error
            finally:
                if destination.exists():
                    created.append(destination)
            if storage:
                storage_count += 1
            else:
                oem_count += 1
            kind = "storage" if storage else "OEM"
            log.debug(f"Copied {kind} driver {folder} -> {destination}")
    except Exception:
        for path in created:
            shutil.rmtree(path, ignore_errors=True)
        raise

    if oem_count:
        write_setup_complete(work_dir)
    log.info(f"Copied {storage_count} storage and {oem_count} OEM driver folder(s)")
    return storage_count, oem_count


# ==============================================================================
# Stage
# ==============================================================================


class DriverInjectionStage:
    """Adds system or custom drivers; both flags may end up true."""

    def __init__(self, state: DriverInjectionState | None = None):
        self._lock = threading.Lock()
        self._state = state or DriverInjectionState()

    @property
    def state(self) -> DriverInjectionState:
        with self._lock:
            return self._state

    def export_system_drivers(
        self, destination: Path, cancel_scope: CancellationScope | None = None
    ) -> bool:
        """Export third-party drivers of the running Windows into ``destination``."""
        if sys.platform != "win32":
            log.info("System driver export is only available on Windows")
            return False
        dism = shutil.which("dism") or "dism"
        run_cancellable_command(
            [dism, "/English", "/Online", "/Export-Driver", f"/Destination:{destination}"],
            "Exporting system drivers",
            None,
            cancel_scope,
        )
        return True

    def inject_system_drivers(
        self,
        work_dir: Path,
        progress: ProgressSink | None = None,
        cancel_scope: CancellationScope | None = None,
    ) -> bool:
        """Best effort: False when nothing was exported, which is not an error."""
        with operation_context("drivers", strategy="system"):
            with tempfile.TemporaryDirectory(prefix="buildmedia-drivers-") as temp_dir:
                emit(progress, "Exporting system drivers...")
                if not self.export_system_drivers(Path(temp_dir), cancel_scope):
                    return False
                if not find_inf_files(Path(temp_dir)):
                    log.info("No third-party drivers exported")
                    return False
                storage, oem = copy_drivers(Path(temp_dir), work_dir, progress, cancel_scope)
        if storage + oem == 0:
            return False
        with self._lock:
            self._state = self._state.with_system()
        emit(progress, f"Added {storage + oem} system driver(s)")
        return True

    def inject_custom_drivers(
        self,
        work_dir: Path,
        driver_folder: Path,
        progress: ProgressSink | None = None,
        cancel_scope: CancellationScope | None = None,
    ) -> bool:
        driver_folder = Path(driver_folder)
        if not driver_folder.is_dir():
            raise ValidationError(f"Driver folder does not exist: {driver_folder}")
        if not find_inf_files(driver_folder, exclude=Path(work_dir)):
            raise ValidationError("no drivers found")
        with operation_context("drivers", strategy="custom", folder=str(driver_folder)):
            storage, oem = copy_drivers(driver_folder, work_dir, progress, cancel_scope)
        with self._lock:
            self._state = self._state.with_custom()
        emit(progress, f"Added {storage + oem} custom driver(s)")
        return True
