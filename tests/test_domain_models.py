"""Tests for domain models.

These cover the value objects passed between stages; none of them touch the
filesystem beyond building paths.
"""
from __future__ import annotations

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from buildmedia.domain import (
    AnswerFileConfig,
    AnswerFileSource,
    AnswerFileState,
    BuildRequest,
    DiskSpaceRequirement,
    DriverInjectionState,
    ImageDetectionResult,
    ImageFormat,
    ImageFormatInfo,
    RegistrySetting,
    ToolAvailability,
    WorkingDirectory,
)
from buildmedia.storage.exceptions import ValidationError

GIB = 1024**3


# ==============================================================================
# Working Directory Tests
# ==============================================================================


class TestWorkingDirectory:
    """Test WorkingDirectory domain model."""

    def test_default_folder_names(self):
        work = WorkingDirectory(path=Path("/media/work"))

        assert work.sources_dir == Path("/media/work/sources")
        assert work.boot_dir == Path("/media/work/boot")
        assert work.answer_file_path == Path("/media/work/autounattend.xml")

    def test_keeps_actual_folder_case(self):
        work = WorkingDirectory(path=Path("/w"), sources_name="SOURCES", boot_name="Boot")

        assert work.sources_dir.name == "SOURCES"
        assert work.boot_dir.name == "Boot"

    def test_str_is_path(self):
        assert str(WorkingDirectory(path=Path("/w"))) == str(Path("/w"))

    def test_is_immutable(self):
        work = WorkingDirectory(path=Path("/w"))
        with pytest.raises(FrozenInstanceError):
            work.path = Path("/x")  # type: ignore[misc]


# ==============================================================================
# Install Image Tests
# ==============================================================================


class TestImageFormat:
    """Test ImageFormat enum."""

    def test_file_names(self):
        assert ImageFormat.WIM.file_name == "install.wim"
        assert ImageFormat.ESD.file_name == "install.esd"

    def test_other(self):
        assert ImageFormat.WIM.other is ImageFormat.ESD
        assert ImageFormat.ESD.other is ImageFormat.WIM

    @pytest.mark.parametrize("text", ["esd", "ESD", " Esd "])
    def test_parse_is_case_insensitive(self, text):
        assert ImageFormat.parse(text) is ImageFormat.ESD

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValidationError, match="Unknown image format") as exc_info:
            ImageFormat.parse("swm")
        assert exc_info.value.exit_code == 1


class TestImageFormatInfo:
    """Test ImageFormatInfo size estimates and labels."""

    def test_size_gb(self):
        info = ImageFormatInfo(ImageFormat.WIM, Path("install.wim"), 3 * GIB)
        assert info.size_gb == pytest.approx(3.0)

    def test_esd_to_wim_estimate(self):
        info = ImageFormatInfo(ImageFormat.ESD, Path("install.esd"), int(4.5 * GIB))
        assert info.estimate_size_bytes(ImageFormat.WIM) / GIB == pytest.approx(6.75)

    def test_wim_to_esd_estimate(self):
        info = ImageFormatInfo(ImageFormat.WIM, Path("install.wim"), 10 * GIB)
        assert info.estimate_size_bytes(ImageFormat.ESD) / GIB == pytest.approx(6.5)

    def test_same_format_estimate_is_current_size(self):
        info = ImageFormatInfo(ImageFormat.WIM, Path("install.wim"), 1234)
        assert info.estimate_size_bytes(ImageFormat.WIM) == 1234

    def test_edition_label(self):
        info = ImageFormatInfo(
            ImageFormat.WIM, Path("install.wim"), 1, 2, ("Windows 11 Home", "Windows 11 Pro")
        )
        assert info.edition_label(1) == "Windows 11 Home"
        assert info.edition_label(3) == "Index 3"
        assert info.edition_label(0) == "Index 0"


class TestImageDetectionResult:
    def test_empty(self):
        result = ImageDetectionResult()
        assert result.neither_exists
        assert not result.both_exist

    def test_both(self):
        wim = ImageFormatInfo(ImageFormat.WIM, Path("install.wim"), 1)
        esd = ImageFormatInfo(ImageFormat.ESD, Path("install.esd"), 1)
        result = ImageDetectionResult(wim=wim, esd=esd)
        assert result.both_exist
        assert not result.neither_exists


# ==============================================================================
# Disk Space Tests
# ==============================================================================


class TestDiskSpaceRequirement:
    """Test DiskSpaceRequirement domain model."""

    def test_sufficient_when_equal(self):
        requirement = DiskSpaceRequirement("C:", 5 * GIB, 5 * GIB)
        assert requirement.is_sufficient

    def test_insufficient(self):
        requirement = DiskSpaceRequirement("C:", 6 * GIB, 5 * GIB, "ISO extraction")

        assert not requirement.is_sufficient
        assert requirement.required_gb == pytest.approx(6.0)
        assert requirement.available_gb == pytest.approx(5.0)
        assert requirement.operation == "ISO extraction"


# ==============================================================================
# Answer File Tests
# ==============================================================================


class TestAnswerFileState:
    """Test AnswerFileState exclusivity."""

    def test_initially_nothing_complete(self):
        state = AnswerFileState()
        for source in AnswerFileSource:
            assert not state.is_complete(source)

    def test_only_active_source_is_complete(self):
        state = AnswerFileState(AnswerFileSource.DOWNLOADED, Path("autounattend.xml"))

        assert state.is_complete(AnswerFileSource.DOWNLOADED)
        assert not state.is_complete(AnswerFileSource.GENERATED)
        assert not state.is_complete(AnswerFileSource.USER_SELECTED)


class TestAnswerFileConfig:
    """Test parsing of answer file selections."""

    def test_from_dict(self):
        config = AnswerFileConfig.from_dict(
            {
                "remove_apps": ["Microsoft.BingNews", "Microsoft.GetHelp"],
                "settings": [
                    {
                        "path": r"HKLM\SOFTWARE\Policies\Microsoft\Windows\DataCollection",
                        "name": "AllowTelemetry",
                        "value": 0,
                    },
                    {"path": r"HKCU\Control Panel\Desktop", "name": "Wallpaper", "value": "", "type": "reg_sz"},
                ],
            }
        )

        assert config.remove_apps == ("Microsoft.BingNews", "Microsoft.GetHelp")
        assert config.settings[0].value_type == "REG_DWORD"
        assert config.settings[1].value_type == "REG_SZ"

    def test_empty_dict(self):
        assert AnswerFileConfig.from_dict({}) == AnswerFileConfig()

    def test_rejects_non_list(self):
        with pytest.raises(ValueError):
            AnswerFileConfig.from_dict({"remove_apps": "Microsoft.BingNews"})

    def test_registry_setting_requires_path(self):
        with pytest.raises(KeyError):
            RegistrySetting.from_dict({"name": "x", "value": 1})


# ==============================================================================
# Driver and Tool Tests
# ==============================================================================


class TestDriverInjectionState:
    """Both driver flags are independent."""

    def test_additive(self):
        state = DriverInjectionState().with_custom().with_system()
        assert state.system_drivers_added
        assert state.custom_drivers_added

    def test_with_system_keeps_custom(self):
        state = DriverInjectionState(custom_drivers_added=True).with_system()
        assert state.custom_drivers_added


class TestToolAvailability:
    @pytest.mark.parametrize(
        "path, kind",
        [
            (None, None),
            (Path("C:/Kits/oscdimg.exe"), "oscdimg"),
            (Path("/usr/bin/xorriso"), "xorriso"),
        ],
    )
    def test_kind(self, path, kind):
        assert ToolAvailability(is_available=path is not None, path=path).kind == kind


class TestBuildRequest:
    def test_defaults(self):
        request = BuildRequest(work_dir=Path("w"), output_path=Path("out.iso"))

        assert request.driver_folders == []
        assert request.target_format is None
        assert not request.use_existing
