"""Install image detection and WIM/ESD conversion.

The install image lives at ``sources/install.wim`` or ``sources/install.esd``.
Conversion exports every edition into ``install.converting.<ext>`` with DISM
(Windows) or wimlib-imagex, moves the result into place and only then
deletes the source image, so a failed or cancelled export never loses the
original.
"""

from __future__ import annotations

import os
import re
import shutil
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from buildmedia.config import settings
from buildmedia.domain.models import ImageDetectionResult, ImageFormat, ImageFormatInfo
from buildmedia.logging import LoggerFactory, operation_context
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.storage.commands import (
    ProgressSink,
    emit,
    run_cancellable_command,
    run_checked_command,
)
from buildmedia.storage.disk_space import check_disk_space, estimate_conversion_bytes
from buildmedia.storage.exceptions import (
    MediaBuildError,
    ToolAcquisitionError,
    UnexpectedIOError,
    ValidationError,
)


log = LoggerFactory.for_image()

CONVERTING_STEM = "install.converting"
_INFO_LINE = re.compile(r"^\s*(Index|Name)\s*:\s*(.+?)\s*$", re.IGNORECASE)


# ==============================================================================
# Image tools
# ==============================================================================


@dataclass(frozen=True)
class ImageTool(ABC):
    """Command builder for an imaging tool."""

    name: str
    executable: str

    @abstractmethod
    def info_command(self, image: Path) -> list[str]:
        """Command printing the index and name of every image."""

    @abstractmethod
    def export_commands(
        self, source: Path, destination: Path, target: ImageFormat, image_count: int
    ) -> list[list[str]]:
        """Commands exporting all ``image_count`` images into ``destination``."""


class DismImageTool(ImageTool):
    def info_command(self, image: Path) -> list[str]:
        return [self.executable, "/English", "/Get-WimInfo", f"/WimFile:{image}"]

    def export_commands(self, source, destination, target, image_count):
        compression = "recovery" if target == ImageFormat.ESD else "max"
        return [
            [
                self.executable,
                "/English",
                "/Export-Image",
                f"/SourceImageFile:{source}",
                f"/SourceIndex:{index}",
                f"/DestinationImageFile:{destination}",
                f"/Compress:{compression}",
                "/CheckIntegrity",
            ]
            for index in range(1, image_count + 1)
        ]


class WimlibImageTool(ImageTool):
    def info_command(self, image: Path) -> list[str]:
        return [self.executable, "info", str(image)]

    def export_commands(self, source, destination, target, image_count):
        command = [self.executable, "export", str(source), "all", str(destination)]
        if target == ImageFormat.ESD:
            command.append("--solid")
        else:
            command.append("--compress=LZX")
        command.append("--check")
        return [command]


def resolve_image_tool(preference: str | None = None) -> ImageTool:
    """Pick DISM or wimlib-imagex according to the ``image_tool`` setting."""
    preference = (preference or settings.get_setting("image_tool", "auto") or "auto").lower()
    if preference not in ("auto", "dism", "wimlib"):
        raise ValidationError(f"Unknown image tool setting: {preference}")

    if preference in ("auto", "dism") and (preference == "dism" or sys.platform == "win32"):
        dism = shutil.which("dism")
        if dism:
            return DismImageTool("dism", dism)
        if preference == "dism":
            raise ToolAcquisitionError("DISM was not found on PATH")

    wimlib = shutil.which("wimlib-imagex")
    if wimlib:
        return WimlibImageTool("wimlib", wimlib)
    raise ToolAcquisitionError(
        "No imaging tool found. Install wimlib-imagex (or run on Windows with DISM)."
    )


def parse_image_info(output: str) -> list[str]:
    """Edition names in index order from DISM or wimlib info output."""
    editions: dict[int, str] = {}
    current: int | None = None
    for line in output.splitlines():
        match = _INFO_LINE.match(line)
        if not match:
            continue
        key, value = match.group(1).lower(), match.group(2)
        if key == "index":
            try:
                current = int(value)
            except ValueError:
                current = None
        elif key == "name" and current is not None:
            editions.setdefault(current, value)
    return [editions[index] for index in sorted(editions)]


def read_editions(image: Path, tool: ImageTool | None = None) -> list[str]:
    tool = tool or resolve_image_tool()
    output = run_checked_command(tool.info_command(image))
    editions = parse_image_info(output)
    if not editions:
        raise UnexpectedIOError(f"{tool.name} reported no images in {image.name}")
    return editions


# ==============================================================================
# Detection
# ==============================================================================


def _sources_dir(work_dir: Path) -> Path:
    work_dir = Path(work_dir)
    if work_dir.is_dir():
        for child in work_dir.iterdir():
            if child.is_dir() and child.name.lower() == "sources":
                return child
    return work_dir / "sources"


def image_path(work_dir: Path, image_format: ImageFormat) -> Path | None:
    """Existing ``install.<ext>`` under ``sources/``, matched case-insensitively."""
    sources = _sources_dir(work_dir)
    if not sources.is_dir():
        return None
    for child in sources.iterdir():
        if child.is_file() and child.name.lower() == image_format.file_name:
            return child
    return None


def _describe(path: Path, image_format: ImageFormat, tool: ImageTool | None) -> ImageFormatInfo:
    editions: tuple[str, ...] = ()
    try:
        editions = tuple(read_editions(path, tool))
    except MediaBuildError as error:
        log.debug(f"Edition list unavailable for {path.name}: {error}")
    return ImageFormatInfo(
        format=image_format,
        file_path=path,
        file_size_bytes=os.path.getsize(path),
        image_count=len(editions) or 1,
        edition_names=editions,
    )


def detect_all_formats(work_dir: Path, tool: ImageTool | None = None) -> ImageDetectionResult:
    found = {}
    for image_format in ImageFormat:
        path = image_path(work_dir, image_format)
        if path is not None:
            found[image_format] = _describe(path, image_format, tool)
    return ImageDetectionResult(
        wim=found.get(ImageFormat.WIM), esd=found.get(ImageFormat.ESD)
    )


def detect_format(work_dir: Path, tool: ImageTool | None = None) -> ImageFormatInfo | None:
    """Describe the install image, or None when ``sources/`` holds none.

    When both formats exist the WIM is reported; ``detect_all_formats``
    shows both.
    """
    result = detect_all_formats(work_dir, tool)
    info = result.wim or result.esd
    if info is None:
        log.debug(f"No install image found under {work_dir}")
    else:
        log.info(
            f"Detected {info.format.name} image: {info.size_gb:.2f} GB, "
            f"{info.image_count} edition(s)"
        )
    return info


# ==============================================================================
# Deletion and conversion
# ==============================================================================


def _delete_with_retries(path: Path) -> bool:
    attempts = max(1, settings.get_int("delete_retry_attempts", 5))
    delay = settings.get_float("delete_retry_delay_seconds", 2.0)
    for attempt in range(1, attempts + 1):
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return True
        except OSError as error:
            log.debug(f"Delete attempt {attempt}/{attempts} for {path.name} failed: {error}")
            if attempt < attempts:
                time.sleep(delay)
    return False


def delete_image_file(work_dir: Path, image_format: ImageFormat) -> bool:
    """Remove ``install.<ext>``; used when media ships both formats."""
    path = image_path(work_dir, image_format)
    if path is None:
        raise ValidationError(f"No {image_format.file_name} in {work_dir}")
    if not _delete_with_retries(path):
        raise UnexpectedIOError(f"Unable to delete {path}: file is in use")
    log.info(f"Deleted {path}")
    return True


def convert(
    work_dir: Path,
    target: ImageFormat,
    progress: ProgressSink | None = None,
    cancel_scope: CancellationScope | None = None,
    tool: ImageTool | None = None,
) -> ImageFormatInfo:
    """Convert the install image to ``target`` and return the refreshed info."""
    result = detect_all_formats(work_dir, tool)
    if result.both_exist:
        raise ValidationError(
            "Both install.wim and install.esd exist. Delete one before converting."
        )
    info = result.wim or result.esd
    if info is None:
        raise ValidationError(f"No install.wim or install.esd found in {work_dir}")
    if info.format == target:
        log.info(f"Image is already {target.name}, nothing to convert")
        emit(progress, f"Image is already {target.name}")
        return info

    sources = info.file_path.parent
    check_disk_space(sources, estimate_conversion_bytes(info, target), "image conversion")
    check_cancelled(cancel_scope)

    tool = tool or resolve_image_tool()
    temp_path = sources / f"{CONVERTING_STEM}.{target.value}"
    final_path = sources / target.file_name
    title = f"{info.format.name} -> {target.name}"

    with operation_context(
        "convert", source=info.format.name, target=target.name, tool=tool.name
    ) as op_log:
        if temp_path.exists():
            temp_path.unlink()
        try:
            image_count = info.image_count
            if not info.edition_names:
                image_count = len(read_editions(info.file_path, tool))
            commands = tool.export_commands(info.file_path, temp_path, target, image_count)
            for step, command in enumerate(commands, start=1):
                check_cancelled(cancel_scope)
                label = title if len(commands) == 1 else f"{title} ({step}/{len(commands)})"
                if len(commands) > 1:
                    op_log.info(f"Exporting {info.edition_label(step)}")
                run_cancellable_command(command, label, progress, cancel_scope)
            if not temp_path.is_file() or temp_path.stat().st_size == 0:
                raise UnexpectedIOError(f"{tool.name} did not produce {temp_path.name}")
            os.replace(temp_path, final_path)
        except MediaBuildError:
            _discard(temp_path)
            raise
        except OSError as error:
            _discard(temp_path)
            raise UnexpectedIOError(f"Conversion failed: {error}") from error

        emit(progress, f"Removing {info.file_path.name}...")
        if not _delete_with_retries(info.file_path):
            op_log.warning(
                f"{info.file_path.name} is locked and was kept; delete it before packaging"
            )

    after = detect_all_formats(work_dir, tool)
    refreshed = after.esd if target == ImageFormat.ESD else after.wim
    if refreshed is None:
        raise UnexpectedIOError(f"{final_path.name} disappeared after conversion")
    emit(progress, f"Converted to {target.name} ({refreshed.size_gb:.2f} GB)")
    return refreshed


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as error:
        log.warning(f"Unable to remove partial image {path}: {error}")
