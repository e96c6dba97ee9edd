"""Domain models for the media build pipeline."""

from __future__ import annotations

from .models import (
    ANSWER_FILE_NAME,
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


__all__ = [
    "ANSWER_FILE_NAME",
    "AnswerFileConfig",
    "AnswerFileSource",
    "AnswerFileState",
    "BuildRequest",
    "DiskSpaceRequirement",
    "DriverInjectionState",
    "ImageDetectionResult",
    "ImageFormat",
    "ImageFormatInfo",
    "RegistrySetting",
    "ToolAvailability",
    "WorkingDirectory",
]
