"""
Pytest configuration and shared fixtures for buildmedia tests.

This module provides common fixtures and utilities used across all test modules.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import List
from unittest.mock import Mock

import pytest


# Keep settings and logs away from the real user profile
_TEST_HOME = Path(tempfile.mkdtemp(prefix="buildmedia-tests-"))
os.environ.setdefault("BUILDMEDIA_SETTINGS_PATH", str(_TEST_HOME / "settings.json"))
os.environ.setdefault("BUILDMEDIA_LOG_DIR", str(_TEST_HOME / "logs"))

from buildmedia.config import settings  # noqa: E402
from buildmedia.domain.models import ToolAvailability  # noqa: E402


GIB = 1024**3


@pytest.fixture(autouse=True)
def default_settings(tmp_path, monkeypatch):
    """Every test starts from default settings stored in a temp file."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    settings.settings_store.values["delete_retry_delay_seconds"] = 0
    yield settings.settings_store.values
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


# ==============================================================================
# Working Directory Fixtures
# ==============================================================================


def make_media_tree(root: Path, image_name: str = "install.wim", image_bytes: bytes = b"WIM") -> Path:
    """Create a minimal extracted installation tree under ``root``."""
    (root / "sources").mkdir(parents=True, exist_ok=True)
    (root / "boot").mkdir(parents=True, exist_ok=True)
    (root / "boot" / "etfsboot.com").write_bytes(b"\xeb\x00")
    efi_boot = root / "efi" / "microsoft" / "boot"
    efi_boot.mkdir(parents=True, exist_ok=True)
    (efi_boot / "efisys.bin").write_bytes(b"\x00" * 16)
    (root / "setup.exe").write_bytes(b"MZ")
    if image_name:
        (root / "sources" / image_name).write_bytes(image_bytes)
    return root


@pytest.fixture
def media_dir(tmp_path) -> Path:
    """Fixture providing an extracted installation tree with install.wim."""
    return make_media_tree(tmp_path / "work")


@pytest.fixture
def fake_iso(tmp_path) -> Path:
    """Fixture providing a file that passes ISO validation (>= 1 MiB)."""
    iso = tmp_path / "Win11.iso"
    with iso.open("wb") as handle:
        handle.truncate(2 * 1024 * 1024)
    return iso


@pytest.fixture
def progress_lines() -> List[str]:
    """Fixture providing a list that collects progress text."""
    return []


@pytest.fixture
def progress(progress_lines):
    """Progress sink appending to ``progress_lines``."""
    return progress_lines.append


@pytest.fixture
def python_tool() -> List[str]:
    """Command prefix running an inline Python program as the external tool."""
    return [sys.executable, "-c"]


@pytest.fixture
def unavailable_tool_service() -> Mock:
    """Tool service reporting that no packaging tool exists."""
    service = Mock()
    service.is_available.return_value = False
    service.availability = ToolAvailability()
    return service


@pytest.fixture
def oscdimg_tool_service(tmp_path) -> Mock:
    """Tool service reporting an installed oscdimg."""
    tool = tmp_path / "tools" / "oscdimg.exe"
    tool.parent.mkdir(parents=True, exist_ok=True)
    tool.write_bytes(b"MZ")
    service = Mock()
    service.is_available.return_value = True
    service.availability = ToolAvailability(is_available=True, path=tool)
    service.ensure_available.return_value = service.availability
    return service


@pytest.fixture
def make_media():
    """Factory fixture building extracted installation trees."""
    return make_media_tree
