"""Bootable ISO creation from the working directory.

The image is written to a hidden temporary file next to ``output_path`` and
renamed over it only after the tool succeeds, so cancellation or failure
leaves an existing file at ``output_path`` exactly as it was.
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path

from buildmedia.logging import LoggerFactory, operation_context
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.services.tool_acquisition import ToolAcquisitionService, get_tool_service
from buildmedia.storage.commands import ProgressSink, emit, run_cancellable_command
from buildmedia.storage.disk_space import (
    check_disk_space,
    directory_size,
    estimate_packaging_bytes,
)
from buildmedia.storage.exceptions import (
    MediaBuildError,
    ToolAcquisitionError,
    UnexpectedIOError,
    ValidationError,
)


log = LoggerFactory.for_packaging()

BIOS_BOOT_FILE = ("boot", "etfsboot.com")
UEFI_BOOT_FILE = ("efi", "microsoft", "boot", "efisys.bin")


def _find_case_insensitive(root: Path, parts: tuple[str, ...]) -> Path | None:
    current = root
    for part in parts:
        if not current.is_dir():
            return None
        match = None
        for child in current.iterdir():
            if child.name.lower() == part.lower():
                match = child
                break
        if match is None:
            return None
        current = match
    return current if current.is_file() else None


def find_boot_files(work_dir: Path) -> tuple[Path, Path]:
    """Return ``(etfsboot.com, efisys.bin)`` or raise ValidationError."""
    bios = _find_case_insensitive(work_dir, BIOS_BOOT_FILE)
    uefi = _find_case_insensitive(work_dir, UEFI_BOOT_FILE)
    missing = []
    if bios is None:
        missing.append("/".join(BIOS_BOOT_FILE))
    if uefi is None:
        missing.append("/".join(UEFI_BOOT_FILE))
    if missing:
        raise ValidationError(
            f"Working directory is missing boot files: {', '.join(missing)}"
        )
    return bios, uefi


def oscdimg_command(tool: Path, work_dir: Path, output: Path, bios: Path, uefi: Path) -> list[str]:
    return [
        str(tool),
        "-m",
        "-o",
        "-u2",
        "-udfver102",
        f"-bootdata:2#p0,e,b{bios}#pEF,e,b{uefi}",
        str(work_dir),
        str(output),
    ]


def xorriso_command(tool: Path, work_dir: Path, output: Path, bios: Path, uefi: Path) -> list[str]:
    bios_rel = bios.relative_to(work_dir).as_posix()
    uefi_rel = uefi.relative_to(work_dir).as_posix()
    return [
        str(tool),
        "-as",
        "mkisofs",
        "-iso-level",
        "3",
        "-full-iso9660-filenames",
        "-J",
        "-joliet-long",
        "-b",
        bios_rel,
        "-no-emul-boot",
        "-boot-load-size",
        "8",
        "-hide",
        "boot.catalog",
        "-eltorito-alt-boot",
        "-e",
        uefi_rel,
        "-no-emul-boot",
        "-o",
        str(output),
        str(work_dir),
    ]


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as error:
        log.warning(f"Unable to remove partial ISO {path}: {error}")


class PackagingStage:
    """Runs oscdimg (or xorriso) to produce the final bootable ISO."""

    def __init__(self, tool_service: ToolAcquisitionService | None = None):
        self.tool_service = tool_service or get_tool_service()

    def build_command(self, work_dir: Path, output: Path) -> list[str]:
        availability = self.tool_service.availability
        bios, uefi = find_boot_files(work_dir)
        if availability.kind == "xorriso":
            return xorriso_command(availability.path, work_dir, output, bios, uefi)
        return oscdimg_command(availability.path, work_dir, output, bios, uefi)

    def create_iso(
        self,
        work_dir: Path,
        output_path: Path | None,
        progress: ProgressSink | None = None,
        cancel_scope: CancellationScope | None = None,
    ) -> Path:
        """Build a dual BIOS/UEFI bootable ISO of ``work_dir`` at ``output_path``.

        Raises:
            ValidationError: no output path, missing boot files, or the
                output would land inside the working directory.
            ToolAcquisitionError: the packaging tool is not available.
            InsufficientDiskSpaceError: the destination drive is too small.
        """
        if not output_path or not str(output_path).strip():
            raise ValidationError("No output path chosen for the ISO")
        work_dir = Path(work_dir)
        output_path = Path(output_path)
        if not work_dir.is_dir():
            raise ValidationError(f"Working directory does not exist: {work_dir}")
        try:
            output_path.resolve().relative_to(work_dir.resolve())
        except ValueError:
            pass
        else:
            raise ValidationError("The output ISO cannot be placed inside the working directory")

        if not self.tool_service.is_available():
            raise ToolAcquisitionError(
                "Packaging tool is not available. Acquire it before creating the ISO."
            )
        find_boot_files(work_dir)

        output_dir = output_path.parent
        if not output_dir.is_dir():
            raise ValidationError(f"Output folder does not exist: {output_dir}")
        check_disk_space(
            output_dir, estimate_packaging_bytes(directory_size(work_dir)), "ISO creation"
        )
        check_cancelled(cancel_scope)

        temp_path = output_dir / f".{output_path.stem}.{uuid.uuid4().hex[:8]}.partial.iso"
        command = self.build_command(work_dir, temp_path)

        with operation_context("package", output=str(output_path)) as op_log:
            op_log.debug(f"Packaging command: {' '.join(command)}")
            try:
                run_cancellable_command(command, "Creating ISO", progress, cancel_scope)
                if not temp_path.is_file() or temp_path.stat().st_size == 0:
                    raise UnexpectedIOError("Packaging tool did not produce an ISO")
                os.replace(temp_path, output_path)
            except MediaBuildError:
                _discard(temp_path)
                raise
            except OSError as error:
                _discard(temp_path)
                raise UnexpectedIOError(f"Unable to write {output_path}: {error}") from error

        size_gb = output_path.stat().st_size / 1024**3
        emit(progress, f"ISO created: {output_path} ({size_gb:.2f} GB)")
        return output_path
