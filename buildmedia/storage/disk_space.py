"""Free-space preflight checks.

Every stage that writes large amounts of data estimates what it needs and
calls ``check_disk_space`` before touching the disk. The estimators are
deliberately generous; the margins come from settings.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from buildmedia.config import settings
from buildmedia.domain.models import DiskSpaceRequirement, ImageFormat, ImageFormatInfo
from buildmedia.logging import LoggerFactory
from buildmedia.storage.exceptions import InsufficientDiskSpaceError, UnexpectedIOError


log = LoggerFactory.for_pipeline()


def _existing_ancestor(path: Path) -> Path:
    """Nearest existing directory at or above ``path``."""
    candidate = Path(os.path.abspath(path))
    while not candidate.exists():
        parent = candidate.parent
        if parent == candidate:
            break
        candidate = parent
    if candidate.is_file():
        candidate = candidate.parent
    return candidate


def drive_name(path: Path) -> str:
    """Drive letter on Windows, mount point elsewhere."""
    resolved = Path(os.path.abspath(path))
    if resolved.drive:
        return resolved.drive + "\\"
    candidate = _existing_ancestor(resolved)
    while not os.path.ismount(candidate) and candidate.parent != candidate:
        candidate = candidate.parent
    return str(candidate)


def get_available_bytes(path: Path) -> int:
    try:
        return shutil.disk_usage(_existing_ancestor(Path(path))).free
    except OSError as error:
        raise UnexpectedIOError(f"Unable to query free space for {path}: {error}") from error


def measure_disk_space(path: Path, required_bytes: int, operation: str = "") -> DiskSpaceRequirement:
    """Compare ``required_bytes`` with the free space of the drive holding ``path``."""
    return DiskSpaceRequirement(
        drive_name=drive_name(Path(path)),
        required_bytes=int(required_bytes),
        available_bytes=get_available_bytes(Path(path)),
        operation=operation,
    )


def check_disk_space(path: Path, required_bytes: int, operation: str = "") -> DiskSpaceRequirement:
    """Raise InsufficientDiskSpaceError when the drive cannot hold ``required_bytes``."""
    requirement = measure_disk_space(path, required_bytes, operation)
    log.debug(
        f"Disk space for {operation or 'operation'} on {requirement.drive_name}: "
        f"required {requirement.required_gb:.2f} GB, "
        f"available {requirement.available_gb:.2f} GB"
    )
    if not requirement.is_sufficient:
        raise InsufficientDiskSpaceError(
            requirement.drive_name,
            round(requirement.required_gb, 2),
            round(requirement.available_gb, 2),
            operation,
        )
    return requirement


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def estimate_extraction_bytes(iso_size_bytes: int) -> int:
    return int(iso_size_bytes) + settings.get_int(
        "extraction_margin_bytes", settings.DEFAULT_SPACE_MARGIN_BYTES
    )


def estimate_conversion_bytes(info: ImageFormatInfo, target: ImageFormat) -> int:
    # Source and exported image coexist until the swap.
    multiplier = settings.get_float("conversion_space_multiplier", 2.0)
    return int(max(info.file_size_bytes, info.estimate_size_bytes(target)) * multiplier)


def estimate_packaging_bytes(work_dir_size_bytes: int) -> int:
    return int(work_dir_size_bytes) + settings.get_int(
        "packaging_margin_bytes", settings.DEFAULT_SPACE_MARGIN_BYTES
    )
