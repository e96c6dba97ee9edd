"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BUILDMEDIA_SETTINGS_PATH",
        Path.home() / ".config" / "buildmedia" / "settings.json",
    )
)

GIB = 1024**3

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_ANSWER_FILE_TEMPLATE_URL = (
    "https://raw.githubusercontent.com/memstechtips/UnattendedWinstall/main/autounattend.xml"
)
DEFAULT_ADK_DOWNLOAD_SOURCES = [
    "https://go.microsoft.com/fwlink/?linkid=2289980",
    "https://download.microsoft.com/download/2/d/9/2d9c8902-3fcd-48a6-a22a-432b08bed61e/ADK/adksetup.exe",
]
DEFAULT_SPACE_MARGIN_BYTES = 2 * GIB

DEFAULT_SETTINGS: dict[str, Any] = {
    "answer_file_template_url": DEFAULT_ANSWER_FILE_TEMPLATE_URL,
    "adk_download_sources": list(DEFAULT_ADK_DOWNLOAD_SOURCES),
    "download_timeout_seconds": 1800,
    "extraction_margin_bytes": DEFAULT_SPACE_MARGIN_BYTES,
    "packaging_margin_bytes": DEFAULT_SPACE_MARGIN_BYTES,
    "conversion_space_multiplier": 2.0,
    "packaging_tool_path": None,
    "image_tool": "auto",
    "delete_retry_attempts": 5,
    "delete_retry_delay_seconds": 2.0,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


load_settings()
