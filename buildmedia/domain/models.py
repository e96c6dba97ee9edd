"""Domain model for the media build pipeline.

Type-safe value objects passed between stages instead of loose paths and
dicts: the working directory, install image metadata, disk-space checks and
per-stage injection state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from buildmedia.storage.exceptions import ValidationError


GIB = 1024**3

ANSWER_FILE_NAME = "autounattend.xml"


# ==============================================================================
# Working Directory Domain
# ==============================================================================


@dataclass(frozen=True)
class WorkingDirectory:
    """Staging tree holding the extracted installation media.

    Only produced by extraction or pre-extracted validation, so holders can
    rely on ``sources/`` and ``boot/`` being present.
    """

    path: Path
    sources_name: str = "sources"
    boot_name: str = "boot"

    @property
    def sources_dir(self) -> Path:
        return self.path / self.sources_name

    @property
    def boot_dir(self) -> Path:
        return self.path / self.boot_name

    @property
    def answer_file_path(self) -> Path:
        """Conventional location Windows Setup reads the answer file from."""
        return self.path / ANSWER_FILE_NAME

    def __str__(self) -> str:
        return str(self.path)


# ==============================================================================
# Install Image Domain
# ==============================================================================


class ImageFormat(Enum):
    """Container format of the install image."""

    WIM = "wim"
    ESD = "esd"

    @property
    def file_name(self) -> str:
        return f"install.{self.value}"

    @property
    def other(self) -> ImageFormat:
        return ImageFormat.ESD if self is ImageFormat.WIM else ImageFormat.WIM

    @classmethod
    def parse(cls, value: str) -> ImageFormat:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown image format: {value!r} (expected wim or esd)"
            ) from None


# Approximate size ratio of a converted image relative to its source.
CONVERSION_SIZE_RATIOS = {
    (ImageFormat.WIM, ImageFormat.ESD): 0.65,
    (ImageFormat.ESD, ImageFormat.WIM): 1.50,
}


@dataclass(frozen=True)
class ImageFormatInfo:
    """Format, size and editions of ``sources/install.{wim,esd}``."""

    format: ImageFormat
    file_path: Path
    file_size_bytes: int
    image_count: int = 1
    edition_names: tuple[str, ...] = ()

    @property
    def size_gb(self) -> float:
        return self.file_size_bytes / GIB

    def estimate_size_bytes(self, target: ImageFormat) -> int:
        """Rough size of this image after conversion to ``target``.

        Only meant for display; the real size depends on the content.
        """
        if target == self.format:
            return self.file_size_bytes
        ratio = CONVERSION_SIZE_RATIOS[(self.format, target)]
        return int(self.file_size_bytes * ratio)

    def edition_label(self, index: int) -> str:
        """Display name of the 1-based edition ``index``."""
        if 0 < index <= len(self.edition_names):
            return self.edition_names[index - 1]
        return f"Index {index}"


@dataclass(frozen=True)
class ImageDetectionResult:
    """Both candidate install images, for media that ships WIM and ESD."""

    wim: ImageFormatInfo | None = None
    esd: ImageFormatInfo | None = None

    @property
    def both_exist(self) -> bool:
        return self.wim is not None and self.esd is not None

    @property
    def neither_exists(self) -> bool:
        return self.wim is None and self.esd is None


# ==============================================================================
# Disk Space Domain
# ==============================================================================


@dataclass(frozen=True)
class DiskSpaceRequirement:
    """Outcome of a free-space check; never persisted."""

    drive_name: str
    required_bytes: int
    available_bytes: int
    operation: str = ""

    @property
    def required_gb(self) -> float:
        return self.required_bytes / GIB

    @property
    def available_gb(self) -> float:
        return self.available_bytes / GIB

    @property
    def is_sufficient(self) -> bool:
        return self.available_bytes >= self.required_bytes


# ==============================================================================
# Answer File Domain
# ==============================================================================


class AnswerFileSource(Enum):
    """Where the active autounattend.xml came from."""

    NONE = "none"
    GENERATED = "generated"
    DOWNLOADED = "downloaded"
    USER_SELECTED = "user_selected"


@dataclass(frozen=True)
class AnswerFileState:
    """At most one source is active; activating one deactivates the rest."""

    active_source: AnswerFileSource = AnswerFileSource.NONE
    path: Path | None = None

    def is_complete(self, source: AnswerFileSource) -> bool:
        return source != AnswerFileSource.NONE and self.active_source == source


@dataclass(frozen=True)
class RegistrySetting:
    """One registry value applied by the generated first-boot script."""

    path: str
    name: str
    value: Any
    value_type: str = "REG_DWORD"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistrySetting:
        return cls(
            path=str(data["path"]),
            name=str(data["name"]),
            value=data.get("value", ""),
            value_type=str(data.get("type", "REG_DWORD")).upper(),
        )


@dataclass(frozen=True)
class AnswerFileConfig:
    """Caller selections serialized into a generated answer file."""

    remove_apps: tuple[str, ...] = ()
    settings: tuple[RegistrySetting, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnswerFileConfig:
        apps = data.get("remove_apps") or []
        settings = data.get("settings") or []
        if not isinstance(apps, list) or not isinstance(settings, list):
            raise ValueError("remove_apps and settings must be lists")
        return cls(
            remove_apps=tuple(str(app) for app in apps),
            settings=tuple(RegistrySetting.from_dict(item) for item in settings),
        )


# ==============================================================================
# Driver Domain
# ==============================================================================


@dataclass(frozen=True)
class DriverInjectionState:
    """Both strategies are additive; neither clears the other."""

    system_drivers_added: bool = False
    custom_drivers_added: bool = False

    def with_system(self) -> DriverInjectionState:
        return replace(self, system_drivers_added=True)

    def with_custom(self) -> DriverInjectionState:
        return replace(self, custom_drivers_added=True)


# ==============================================================================
# Tool Domain
# ==============================================================================


@dataclass(frozen=True)
class ToolAvailability:
    """Packaging tool lookup result."""

    is_available: bool = False
    path: Path | None = None

    @property
    def kind(self) -> str | None:
        """``oscdimg`` or ``xorriso``, judged from the executable name."""
        if self.path is None:
            return None
        stem = self.path.stem.lower()
        if stem.startswith("xorriso"):
            return "xorriso"
        return "oscdimg"


@dataclass
class BuildRequest:
    """Everything the one-shot ``build`` entry point needs."""

    work_dir: Path
    output_path: Path
    iso_path: Path | None = None
    use_existing: bool = False
    force: bool = False
    target_format: ImageFormat | None = None
    answer_file: Path | None = None
    download_answer_file: bool = False
    answer_file_config: AnswerFileConfig | None = None
    add_system_drivers: bool = False
    driver_folders: list[Path] = field(default_factory=list)
