"""Tests for install image detection and WIM/ESD conversion."""

import sys
import threading
from collections import namedtuple
from unittest.mock import Mock, patch

import pytest

from buildmedia.domain.models import ImageFormat
from buildmedia.services.cancellation import CancellationScope
from buildmedia.storage import image_format
from buildmedia.storage.exceptions import (
    CommandFailedError,
    InsufficientDiskSpaceError,
    OperationCanceledError,
    ToolAcquisitionError,
    ValidationError,
)

GIB = 1024**3
PY = sys.executable
Usage = namedtuple("Usage", "total used free")

DISM_INFO = """
Deployment Image Servicing and Management tool
Version: 10.0.22621.1

Details for image : D:\\sources\\install.wim

Index : 1
Name : Windows 11 Home
Description : Windows 11 Home
Size : 16,561,278,412 bytes

Index : 2
Name : Windows 11 Pro
Description : Windows 11 Pro
Size : 16,832,113,420 bytes

The operation completed successfully.
"""

WIMLIB_INFO = """WIM Information:
----------------
Path:           install.esd
Image Count:    2

Available Images:
-----------------
Index:                  1
Name:                   Windows 11 Education
Description:            Windows 11 Education

Index:                  2
Name:                   Windows 11 Enterprise
"""


class PythonImageTool:
    """Image tool whose commands run inline Python programs."""

    name = "python"

    def __init__(self, editions=("Windows 11 Home", "Windows 11 Pro"), export_script=None):
        self.editions = editions
        self.export_script = export_script or (
            "import sys; open(sys.argv[1], 'ab').write(b'EXPORTED'); print('100.0%')"
        )
        self.exports = []

    def info_command(self, image):
        lines = "".join(f"Index : {i}\\nName : {n}\\n" for i, n in enumerate(self.editions, 1))
        return [PY, "-c", f"print('{lines}')"]

    def export_commands(self, source, destination, target, image_count):
        commands = [[PY, "-c", self.export_script, str(destination)] for _ in range(image_count)]
        self.exports.append((source, destination, target, image_count))
        return commands


@pytest.fixture
def plenty_of_space():
    with patch(
        "buildmedia.storage.disk_space.shutil.disk_usage",
        return_value=Usage(100 * GIB, 50 * GIB, 50 * GIB),
    ):
        yield


class TestParseImageInfo:
    """Tests for parse_image_info()."""

    def test_dism_output(self):
        assert image_format.parse_image_info(DISM_INFO) == ["Windows 11 Home", "Windows 11 Pro"]

    def test_wimlib_output(self):
        assert image_format.parse_image_info(WIMLIB_INFO) == [
            "Windows 11 Education",
            "Windows 11 Enterprise",
        ]

    def test_no_images(self):
        assert image_format.parse_image_info("Error: 2\n") == []


class TestDetectFormat:
    """Tests for detect_format() and detect_all_formats()."""

    def test_no_image_returns_none(self, make_media, tmp_path):
        work_dir = make_media(tmp_path / "work", image_name="")
        assert image_format.detect_format(work_dir, PythonImageTool()) is None

    def test_missing_sources_returns_none(self, tmp_path):
        assert image_format.detect_format(tmp_path, PythonImageTool()) is None

    def test_scenario_esd_size_and_wim_estimate(self, make_media, tmp_path):
        """A 4.5 GiB install.esd is reported as ESD; its WIM estimate is ~6.75 GiB."""
        work_dir = make_media(tmp_path / "work", image_name="install.esd")
        size = int(4.5 * 2**30)

        with patch("buildmedia.storage.image_format.os.path.getsize", return_value=size), patch(
            "buildmedia.storage.image_format.resolve_image_tool",
            side_effect=ToolAcquisitionError("no tool"),
        ):
            info = image_format.detect_format(work_dir)

        assert info.format == ImageFormat.ESD
        assert info.file_size_bytes == size
        assert info.image_count == 1
        assert info.estimate_size_bytes(ImageFormat.WIM) / GIB == pytest.approx(6.75)

    def test_wim_to_esd_estimate(self, media_dir):
        with patch("buildmedia.storage.image_format.os.path.getsize", return_value=10 * GIB):
            info = image_format.detect_format(media_dir, PythonImageTool())
        assert info.estimate_size_bytes(ImageFormat.ESD) / GIB == pytest.approx(6.5)

    def test_editions_are_read_from_tool(self, media_dir):
        info = image_format.detect_format(media_dir, PythonImageTool())

        assert info.format == ImageFormat.WIM
        assert info.image_count == 2
        assert info.edition_names == ("Windows 11 Home", "Windows 11 Pro")
        assert info.edition_label(2) == "Windows 11 Pro"
        assert info.edition_label(7) == "Index 7"

    def test_both_formats_detected(self, media_dir):
        (media_dir / "sources" / "install.esd").write_bytes(b"ESD")

        result = image_format.detect_all_formats(media_dir, PythonImageTool())

        assert result.both_exist
        assert image_format.detect_format(media_dir, PythonImageTool()).format == ImageFormat.WIM

    def test_case_insensitive_file_name(self, tmp_path, make_media):
        work_dir = make_media(tmp_path / "work", image_name="INSTALL.ESD")
        info = image_format.detect_format(work_dir, PythonImageTool())
        assert info.format == ImageFormat.ESD
        assert info.file_path.name == "INSTALL.ESD"


class TestConvert:
    """Tests for convert()."""

    def test_wim_to_esd(self, media_dir, plenty_of_space, progress_lines):
        tool = PythonImageTool()

        info = image_format.convert(media_dir, ImageFormat.ESD, progress_lines.append, None, tool)

        sources = media_dir / "sources"
        assert info.format == ImageFormat.ESD
        assert not (sources / "install.wim").exists()
        assert (sources / "install.esd").read_bytes() == b"EXPORTED" * 2
        assert not list(sources.glob("install.converting.*"))
        assert tool.exports[0][3] == 2
        assert progress_lines[-1].startswith("Converted to ESD")

    def test_same_format_is_noop(self, media_dir):
        tool = PythonImageTool()
        info = image_format.convert(media_dir, ImageFormat.WIM, None, None, tool)

        assert info.format == ImageFormat.WIM
        assert tool.exports == []

    def test_no_image_is_validation_error(self, make_media, tmp_path):
        work_dir = make_media(tmp_path / "work", image_name="")
        with pytest.raises(ValidationError, match="No install.wim"):
            image_format.convert(work_dir, ImageFormat.ESD, tool=PythonImageTool())

    def test_both_formats_refused(self, media_dir):
        (media_dir / "sources" / "install.esd").write_bytes(b"ESD")
        with pytest.raises(ValidationError, match="Both"):
            image_format.convert(media_dir, ImageFormat.ESD, tool=PythonImageTool())

    def test_tool_failure_keeps_original(self, media_dir, plenty_of_space):
        tool = PythonImageTool(
            export_script="import sys; open(sys.argv[1], 'wb').write(b'x'); "
            "print('Error: 0x8007000e'); raise SystemExit(14)"
        )

        with pytest.raises(CommandFailedError, match="0x8007000e"):
            image_format.convert(media_dir, ImageFormat.ESD, tool=tool)

        sources = media_dir / "sources"
        assert (sources / "install.wim").read_bytes() == b"WIM"
        assert not (sources / "install.esd").exists()
        assert not list(sources.glob("install.converting.*"))

    def test_cancellation_keeps_original(self, media_dir, plenty_of_space):
        tool = PythonImageTool(
            export_script="import sys, time; open(sys.argv[1], 'wb').write(b'x'); "
            "print('5.0%', flush=True); time.sleep(30)"
        )
        scope = CancellationScope("convert")
        timer = threading.Timer(0.5, scope.cancel)
        timer.start()

        with pytest.raises(OperationCanceledError):
            image_format.convert(media_dir, ImageFormat.ESD, None, scope, tool)
        timer.join()

        sources = media_dir / "sources"
        assert (sources / "install.wim").read_bytes() == b"WIM"
        assert not list(sources.glob("install.converting.*"))

    def test_insufficient_space_before_tool_runs(self, media_dir):
        tool = PythonImageTool()
        with patch(
            "buildmedia.storage.disk_space.shutil.disk_usage",
            return_value=Usage(100 * GIB, 100 * GIB, 0),
        ):
            with pytest.raises(InsufficientDiskSpaceError):
                image_format.convert(media_dir, ImageFormat.ESD, tool=tool)

        assert tool.exports == []

    def test_locked_source_still_succeeds(self, media_dir, plenty_of_space):
        with patch.object(image_format, "_delete_with_retries", return_value=False):
            info = image_format.convert(media_dir, ImageFormat.ESD, tool=PythonImageTool())

        assert info.format == ImageFormat.ESD
        assert (media_dir / "sources" / "install.wim").exists()


class TestDeleteImageFile:
    """Tests for delete_image_file() and delete retries."""

    def test_deletes_requested_format(self, media_dir):
        (media_dir / "sources" / "install.esd").write_bytes(b"ESD")

        assert image_format.delete_image_file(media_dir, ImageFormat.WIM) is True

        assert not (media_dir / "sources" / "install.wim").exists()
        assert (media_dir / "sources" / "install.esd").exists()

    def test_missing_file_is_validation_error(self, media_dir):
        with pytest.raises(ValidationError):
            image_format.delete_image_file(media_dir, ImageFormat.ESD)

    def test_retries_until_unlocked(self):
        path = Mock()
        path.unlink.side_effect = [PermissionError("locked"), PermissionError("locked"), None]

        assert image_format._delete_with_retries(path) is True
        assert path.unlink.call_count == 3

    def test_gives_up_after_configured_attempts(self, default_settings):
        default_settings["delete_retry_attempts"] = 3
        path = Mock()
        path.unlink.side_effect = PermissionError("locked")

        assert image_format._delete_with_retries(path) is False
        assert path.unlink.call_count == 3


class TestImageTools:
    """Tests for tool selection and command building."""

    def test_base_tool_is_abstract(self):
        with pytest.raises(TypeError):
            image_format.ImageTool("base", "base.exe")

    def test_dism_exports_each_index(self, tmp_path):
        tool = image_format.DismImageTool("dism", "dism.exe")
        commands = tool.export_commands(
            tmp_path / "install.wim", tmp_path / "out.esd", ImageFormat.ESD, 3
        )

        assert len(commands) == 3
        assert "/SourceIndex:3" in commands[2]
        assert "/Compress:recovery" in commands[0]
        assert "/CheckIntegrity" in commands[0]

    def test_dism_wim_uses_max_compression(self, tmp_path):
        tool = image_format.DismImageTool("dism", "dism.exe")
        (command,) = tool.export_commands(tmp_path / "a.esd", tmp_path / "b.wim", ImageFormat.WIM, 1)
        assert "/Compress:max" in command

    def test_wimlib_exports_all_at_once(self, tmp_path):
        tool = image_format.WimlibImageTool("wimlib", "wimlib-imagex")
        commands = tool.export_commands(tmp_path / "a.wim", tmp_path / "b.esd", ImageFormat.ESD, 4)

        assert len(commands) == 1
        assert commands[0][1:3] == ["export", str(tmp_path / "a.wim")]
        assert "all" in commands[0]
        assert "--solid" in commands[0]

    def test_resolve_prefers_wimlib_off_windows(self, monkeypatch):
        monkeypatch.setattr(image_format.sys, "platform", "linux")
        with patch("buildmedia.storage.image_format.shutil.which", return_value="/usr/bin/wimlib-imagex"):
            tool = image_format.resolve_image_tool()
        assert isinstance(tool, image_format.WimlibImageTool)

    def test_resolve_dism_on_windows(self, monkeypatch):
        monkeypatch.setattr(image_format.sys, "platform", "win32")
        with patch("buildmedia.storage.image_format.shutil.which", return_value="C:/Windows/System32/dism.exe"):
            tool = image_format.resolve_image_tool()
        assert isinstance(tool, image_format.DismImageTool)

    def test_resolve_without_any_tool(self):
        with patch("buildmedia.storage.image_format.shutil.which", return_value=None):
            with pytest.raises(ToolAcquisitionError):
                image_format.resolve_image_tool("auto")

    def test_resolve_rejects_unknown_setting(self):
        with pytest.raises(ValidationError):
            image_format.resolve_image_tool("imagex")
