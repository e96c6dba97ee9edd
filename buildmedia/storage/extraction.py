"""ISO extraction and working directory validation.

A working directory is only handed to later stages after it passed
``validate_pre_extracted``: writable, not a drive root or optical drive, and
holding ``sources/`` and ``boot/``. ``extract_iso`` produces one from a
Windows ISO by copying every file through pycdlib, checking the
cancellation scope between files.
"""

from __future__ import annotations

import os
import shutil
import sys
import uuid
from pathlib import Path

import pycdlib
from pycdlib.pycdlibexception import PyCdlibException

from buildmedia.domain.models import WorkingDirectory
from buildmedia.logging import LoggerFactory, operation_context
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.storage.commands.progress import ProgressSink, emit
from buildmedia.storage.disk_space import check_disk_space, estimate_extraction_bytes
from buildmedia.storage.exceptions import (
    OperationCanceledError,
    UnexpectedIOError,
    ValidationError,
)


log = LoggerFactory.for_extract()

MIN_ISO_SIZE_BYTES = 1024 * 1024
WRITE_TEST_PREFIX = ".buildmedia_write_test_"
REQUIRED_FOLDERS = ("sources", "boot")
DRIVE_CDROM = 5


def _strip_iso_version(name: str) -> str:
    """Remove the ISO 9660 / Joliet version suffix (e.g. ';1') from a filename."""
    idx = name.rfind(";")
    if idx != -1:
        return name[:idx]
    return name


# ==============================================================================
# Validation
# ==============================================================================


def validate_iso_file(iso_path: Path) -> int:
    """Check that ``iso_path`` looks like an ISO image and return its size."""
    iso_path = Path(iso_path)
    if not iso_path.is_file():
        raise ValidationError(f"ISO file not found: {iso_path}")
    if iso_path.suffix.lower() != ".iso":
        raise ValidationError(f"Not an ISO file: {iso_path.name}")
    size = iso_path.stat().st_size
    if size < MIN_ISO_SIZE_BYTES:
        raise ValidationError(
            f"ISO file is too small to be installation media: {iso_path.name} ({size} bytes)"
        )
    return size


def _is_drive_root(path: Path) -> bool:
    resolved = Path(os.path.abspath(path))
    return resolved.parent == resolved


def _is_optical_drive(path: Path) -> bool:
    if sys.platform != "win32":
        return False
    import ctypes

    anchor = Path(os.path.abspath(path)).anchor
    return ctypes.windll.kernel32.GetDriveTypeW(anchor) == DRIVE_CDROM


def _is_writable(path: Path) -> bool:
    marker = path / f"{WRITE_TEST_PREFIX}{uuid.uuid4().hex}.tmp"
    try:
        marker.write_bytes(b"")
    except OSError:
        return False
    try:
        marker.unlink()
    except OSError:
        log.warning(f"Unable to remove write test file {marker}")
    return True


def _find_child_dir(path: Path, name: str) -> Path | None:
    for child in path.iterdir():
        if child.is_dir() and child.name.lower() == name:
            return child
    return None


def validate_pre_extracted(directory: Path) -> WorkingDirectory:
    """Accept an already-extracted installation tree as the working directory.

    Raises:
        ValidationError: the folder is missing, a drive root, read-only or
            optical media, or lacks ``sources``/``boot`` (case-insensitive).
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ValidationError(f"Folder does not exist: {directory}")
    if _is_drive_root(directory):
        raise ValidationError(
            f"{directory} is a drive root. Copy the installation files into a folder first."
        )
    if _is_optical_drive(directory) or not _is_writable(directory):
        raise ValidationError(
            f"{directory} is read-only (optical drive or mounted ISO). "
            "Copy the installation files to a writable folder first."
        )

    found = {name: _find_child_dir(directory, name) for name in REQUIRED_FOLDERS}
    missing = [name for name, child in found.items() if child is None]
    if missing:
        present = sorted(child.name for child in directory.iterdir() if child.is_dir())
        raise ValidationError(
            f"{directory} is not extracted Windows installation media: "
            f"missing {', '.join(missing)}. "
            f"Folders found: {', '.join(present) if present else '(none)'}"
        )

    log.info(f"Validated working directory {directory}")
    return WorkingDirectory(
        path=directory,
        sources_name=found["sources"].name,
        boot_name=found["boot"].name,
    )


# ==============================================================================
# Extraction
# ==============================================================================


def _open_iso(iso_path: Path) -> pycdlib.PyCdlib:
    iso = pycdlib.PyCdlib()
    try:
        iso.open(str(iso_path))
    except PyCdlibException as error:
        raise ValidationError(f"Unable to read ISO {iso_path.name}: {error}") from error
    except OSError as error:
        raise UnexpectedIOError(f"Unable to open ISO {iso_path}: {error}") from error
    return iso


def list_iso_files(iso: pycdlib.PyCdlib) -> list[tuple[str, str, dict[str, str]]]:
    """Return ``(relative_path, iso_lookup_path, facade_kwargs)`` for every file.

    Prefers UDF, then Joliet, then plain ISO 9660 for long file names.
    """
    if iso.has_udf():
        key = "udf_path"
    elif iso.has_joliet():
        key = "joliet_path"
    else:
        key = "iso_path"

    entries = []
    for root, _dirs, files in iso.walk(**{key: "/"}):
        for name in files:
            lookup = f"{root.rstrip('/')}/{name}"
            local_name = _strip_iso_version(name) if key != "udf_path" else name
            relative = f"{root.strip('/')}/{local_name}".lstrip("/")
            entries.append((relative, lookup, {key: lookup}))
    return entries


def _remove_created(work_dir: Path, existed: bool, before: set[str]) -> None:
    """Delete what this extraction run created under ``work_dir``."""
    try:
        if not existed:
            shutil.rmtree(work_dir, ignore_errors=True)
            return
        for child in work_dir.iterdir():
            if child.name in before:
                continue
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink()
    except OSError as error:
        log.warning(f"Unable to remove partial extraction in {work_dir}: {error}")


def extract_iso(
    iso_path: Path,
    work_dir: Path,
    progress: ProgressSink | None = None,
    cancel_scope: CancellationScope | None = None,
    force: bool = False,
) -> WorkingDirectory:
    """Extract every file of ``iso_path`` into ``work_dir``.

    Disk space is checked before anything is written. A non-empty
    ``work_dir`` is refused unless ``force`` is set, in which case it is
    cleared first. On cancellation or failure the files this run created
    are removed again.
    """
    iso_path = Path(iso_path)
    work_dir = Path(work_dir)
    iso_size = validate_iso_file(iso_path)

    if _is_drive_root(work_dir):
        raise ValidationError(f"Cannot extract into a drive root: {work_dir}")
    existed = work_dir.exists()
    if existed and not work_dir.is_dir():
        raise ValidationError(f"Working directory path is a file: {work_dir}")
    if existed and any(work_dir.iterdir()) and not force:
        raise ValidationError(
            f"Working directory {work_dir} is not empty. "
            "Choose an empty folder or pass force to clear it."
        )

    check_disk_space(work_dir, estimate_extraction_bytes(iso_size), "ISO extraction")
    check_cancelled(cancel_scope)

    with operation_context("extract", iso=iso_path.name, work_dir=str(work_dir)) as op_log:
        if existed and force:
            emit(progress, "Clearing working directory...")
            cleanup_working_directory(work_dir)
        before = {child.name for child in work_dir.iterdir()} if existed else set()

        emit(progress, f"Opening {iso_path.name}...")
        iso = _open_iso(iso_path)
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            entries = list_iso_files(iso)
            total = len(entries)
            op_log.info(f"Extracting {total} files from {iso_path.name}")
            for index, (relative, lookup, kwargs) in enumerate(entries, start=1):
                check_cancelled(cancel_scope)
                emit(progress, f"Copying file {index}/{total}: {relative}")
                destination = work_dir / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                with destination.open("wb") as handle:
                    iso.get_file_from_iso_fp(handle, **kwargs)
                op_log.trace(f"Extracted {lookup}")
            check_cancelled(cancel_scope)
            extracted = validate_pre_extracted(work_dir)
        except OperationCanceledError:
            emit(progress, "Extraction cancelled, removing partial files...")
            _remove_created(work_dir, existed, before)
            raise
        except PyCdlibException as error:
            _remove_created(work_dir, existed, before)
            raise UnexpectedIOError(f"Failed to read {iso_path.name}: {error}") from error
        except OSError as error:
            _remove_created(work_dir, existed, before)
            raise UnexpectedIOError(f"Failed to extract {iso_path.name}: {error}") from error
        except Exception:
            _remove_created(work_dir, existed, before)
            raise
        finally:
            iso.close()

        emit(progress, f"Extracted {total} files")
        return extracted


def cleanup_working_directory(work_dir: Path) -> int:
    """Remove every entry inside ``work_dir`` and return how many were removed.

    The directory itself is kept so it can be reused for a new extraction.
    """
    work_dir = Path(work_dir)
    if not work_dir.is_dir():
        return 0
    if _is_drive_root(work_dir):
        raise ValidationError(f"Refusing to clean a drive root: {work_dir}")
    removed = 0
    for child in list(work_dir.iterdir()):
        try:
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        except OSError as error:
            raise UnexpectedIOError(f"Unable to remove {child}: {error}") from error
        removed += 1
    log.info(f"Cleaned working directory {work_dir} ({removed} entries)")
    return removed
