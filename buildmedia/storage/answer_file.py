"""Unattended-setup answer file acquisition and injection.

An answer file comes from exactly one of three sources: generated from the
caller's selections, downloaded from the template URL, or supplied by the
user. Whichever succeeds last becomes active and the other two stop
counting as complete. Injection copies the file to ``autounattend.xml`` at
the root of the working directory, where Windows Setup looks for it.
"""

from __future__ import annotations

import filecmp
import json
import os
import shutil
import threading
import xml.etree.ElementTree as ET
from pathlib import Path

from buildmedia.config import settings
from buildmedia.domain.models import (
    ANSWER_FILE_NAME,
    AnswerFileConfig,
    AnswerFileSource,
    AnswerFileState,
    RegistrySetting,
)
from buildmedia.logging import LoggerFactory, operation_context
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.services.downloads import download_file
from buildmedia.storage.commands.progress import ProgressSink, emit
from buildmedia.storage.exceptions import (
    ToolAcquisitionError,
    UnexpectedIOError,
    ValidationError,
)


log = LoggerFactory.for_answer_file()

UNATTEND_NS = "urn:schemas-microsoft-com:unattend"
WCM_NS = "http://schemas.microsoft.com/WMIConfig/2002/State"
EXTENSIONS_NS = "https://schneegans.de/windows/unattend-generator/"

SCRIPT_PATH = r"C:\Windows\Setup\Scripts\BuildMedia.ps1"
DEFAULT_USER_HIVE = r"HKU\DefaultUser"
REGISTRY_TYPES = {
    "REG_DWORD",
    "REG_QWORD",
    "REG_SZ",
    "REG_EXPAND_SZ",
    "REG_MULTI_SZ",
    "REG_BINARY",
}

# Runs in the specialize pass and writes every Extensions/File to disk.
EXTRACT_SCRIPT = (
    "param([xml] $Document);\n"
    "foreach ($file in $Document.unattend.Extensions.File) {\n"
    "    $path = [System.Environment]::ExpandEnvironmentVariables($file.path);\n"
    "    mkdir -Path ([System.IO.Path]::GetDirectoryName($path)) -ErrorAction SilentlyContinue;\n"
    "    [System.IO.File]::WriteAllBytes($path, "
    "[System.Text.Encoding]::UTF8.GetBytes($file.InnerText.Trim()));\n"
    "}"
)
EXTRACT_COMMAND = (
    'powershell.exe -WindowStyle Hidden -NoProfile -Command "'
    "$xml = [xml]::new(); $xml.Load('C:\\Windows\\Panther\\unattend.xml'); "
    "$sb = [scriptblock]::Create($xml.unattend.Extensions.ExtractScript); "
    'Invoke-Command -ScriptBlock $sb -ArgumentList $xml;"'
)
RUN_SCRIPT_COMMAND = (
    f'powershell.exe -WindowStyle Hidden -NoProfile -ExecutionPolicy Bypass -File "{SCRIPT_PATH}"'
)

_CDATA_PLACEHOLDER = "__BUILDMEDIA_SCRIPT__"

ET.register_namespace("", UNATTEND_NS)
ET.register_namespace("wcm", WCM_NS)


# ==============================================================================
# XML helpers
# ==============================================================================


def _indent_xml(elem: ET.Element, level: int = 0) -> None:
    """Add indentation to XML elements for pretty printing."""
    indent = "\n" + "  " * level
    if len(elem):
        if not elem.text or not elem.text.strip():
            elem.text = indent + "  "
        if not elem.tail or not elem.tail.strip():
            elem.tail = indent
        for child in elem:
            _indent_xml(child, level + 1)
        if not child.tail or not child.tail.strip():
            child.tail = indent
    else:
        if level and (not elem.tail or not elem.tail.strip()):
            elem.tail = indent


def _cdata(text: str) -> str:
    # "]]>" cannot appear inside a CDATA section; split it across two.
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def validate_xml_file(path: Path) -> ET.ElementTree:
    """Parse ``path`` as XML, raising ValidationError when it is malformed."""
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"Answer file not found: {path}")
    try:
        return ET.parse(path)
    except ET.ParseError as error:
        raise ValidationError(f"{path.name} is not well-formed XML: {error}") from error
    except OSError as error:
        raise UnexpectedIOError(f"Unable to read {path}: {error}") from error


def load_answer_file_config(path: Path) -> AnswerFileConfig:
    """Read selections from ``{"remove_apps": [...], "settings": [...]}`` JSON."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as error:
        raise ValidationError(f"Unable to read selections file {path}: {error}") from error
    except json.JSONDecodeError as error:
        raise ValidationError(f"Selections file {path} is not valid JSON: {error}") from error
    if not isinstance(data, dict):
        raise ValidationError("Selections file must contain a JSON object")
    try:
        return AnswerFileConfig.from_dict(data)
    except (KeyError, TypeError, ValueError) as error:
        raise ValidationError(f"Invalid selections: {error}") from error


# ==============================================================================
# Script generation
# ==============================================================================


def _ps_quote(value) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _registry_data(setting: RegistrySetting) -> str:
    if setting.value_type not in REGISTRY_TYPES:
        raise ValidationError(
            f"Unsupported registry type {setting.value_type} for {setting.name}"
        )
    value = setting.value
    if setting.value_type in ("REG_DWORD", "REG_QWORD"):
        if isinstance(value, bool):
            value = int(value)
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValidationError(
                f"{setting.name} requires an integer value, got {setting.value!r}"
            )
    elif setting.value_type == "REG_MULTI_SZ" and isinstance(value, (list, tuple)):
        value = "\\0".join(str(item) for item in value)
    return str(value)


def _registry_command(setting: RegistrySetting) -> str:
    path = setting.path
    if path.upper().startswith("HKCU\\") or path.upper().startswith("HKEY_CURRENT_USER\\"):
        path = DEFAULT_USER_HIVE + path[path.index("\\"):]
    return (
        f"reg.exe add {_ps_quote(path)} /v {_ps_quote(setting.name)} "
        f"/t {setting.value_type} /d {_ps_quote(_registry_data(setting))} /f | Out-Null;"
    )


def build_customization_script(config: AnswerFileConfig) -> str:
    """PowerShell run once during setup to apply the selections."""
    lines = [
        "$ErrorActionPreference = 'Continue';",
        "Start-Transcript -Path \"$env:SystemRoot\\Setup\\Scripts\\BuildMedia.log\" -Append;",
    ]
    if config.remove_apps:
        lines.append("$provisioned = Get-AppxProvisionedPackage -Online;")
        for app in config.remove_apps:
            lines.append(
                f"$provisioned | Where-Object {{ $_.DisplayName -eq {_ps_quote(app)} }} "
                "| Remove-AppxProvisionedPackage -Online -ErrorAction SilentlyContinue | Out-Null;"
            )
    user_settings = [
        s for s in config.settings
        if s.path.upper().startswith(("HKCU\\", "HKEY_CURRENT_USER\\"))
    ]
    machine_settings = [s for s in config.settings if s not in user_settings]
    for setting in machine_settings:
        lines.append(_registry_command(setting))
    if user_settings:
        lines.append(
            f"reg.exe load {_ps_quote(DEFAULT_USER_HIVE)} "
            "\"$env:SystemDrive\\Users\\Default\\NTUSER.DAT\" | Out-Null;"
        )
        for setting in user_settings:
            lines.append(_registry_command(setting))
        lines.append(f"reg.exe unload {_ps_quote(DEFAULT_USER_HIVE)} | Out-Null;")
    lines.append("Stop-Transcript;")
    return "\n".join(lines)


def _component(settings_elem: ET.Element, name: str) -> ET.Element:
    return ET.SubElement(
        settings_elem,
        f"{{{UNATTEND_NS}}}component",
        {
            "name": name,
            "processorArchitecture": "amd64",
            "publicKeyToken": "31bf3856ad364e35",
            "language": "neutral",
            "versionScope": "nonSxS",
        },
    )


def build_answer_file_xml(config: AnswerFileConfig) -> str:
    """Serialize ``config`` to an unattend document, script embedded as CDATA."""
    u = f"{{{UNATTEND_NS}}}"
    root = ET.Element(f"{u}unattend")

    specialize = ET.SubElement(root, f"{u}settings", {"pass": "specialize"})
    deployment = _component(specialize, "Microsoft-Windows-Deployment")
    run_sync = ET.SubElement(deployment, f"{u}RunSynchronous")
    for order, command in enumerate((EXTRACT_COMMAND, RUN_SCRIPT_COMMAND), start=1):
        entry = ET.SubElement(
            run_sync, f"{u}RunSynchronousCommand", {f"{{{WCM_NS}}}action": "add"}
        )
        ET.SubElement(entry, f"{u}Order").text = str(order)
        ET.SubElement(entry, f"{u}Path").text = command

    extensions = ET.SubElement(root, "Extensions", {"xmlns": EXTENSIONS_NS})
    ET.SubElement(extensions, "ExtractScript").text = EXTRACT_SCRIPT
    script_file = ET.SubElement(extensions, "File", {"path": SCRIPT_PATH})
    script_file.text = _CDATA_PLACEHOLDER

    _indent_xml(root)
    xml_str = ET.tostring(root, encoding="unicode")
    xml_str = xml_str.replace(_CDATA_PLACEHOLDER, _cdata(build_customization_script(config)))
    document = '<?xml version="1.0" encoding="utf-8"?>\n' + xml_str + "\n"
    try:
        ET.fromstring(document.encode("utf-8"))
    except ET.ParseError as error:
        raise UnexpectedIOError(f"Generated answer file is malformed: {error}") from error
    return document


# ==============================================================================
# Stage
# ==============================================================================


class AnswerFileStage:
    """Tracks the active answer file source for one working directory."""

    def __init__(self, state: AnswerFileState | None = None):
        self._lock = threading.Lock()
        self._state = state or AnswerFileState()

    @property
    def state(self) -> AnswerFileState:
        with self._lock:
            return self._state

    def is_complete(self, source: AnswerFileSource) -> bool:
        return self.state.is_complete(source)

    def set_active_answer_file(self, source: AnswerFileSource, path: Path | None) -> AnswerFileState:
        with self._lock:
            self._state = AnswerFileState(active_source=source, path=path)
            state = self._state
        log.info(f"Active answer file: {source.value} ({path})")
        return state

    def inject(self, source_path: Path, work_dir: Path) -> bool:
        """Copy ``source_path`` to ``<work_dir>/autounattend.xml``.

        Returns False when the target already holds identical content.
        """
        source_path = Path(source_path)
        target = Path(work_dir) / ANSWER_FILE_NAME
        try:
            if target.exists() and (
                os.path.samefile(source_path, target)
                or filecmp.cmp(source_path, target, shallow=False)
            ):
                log.debug(f"{target} already up to date")
                return False
            temp = target.with_name(target.name + ".tmp")
            shutil.copyfile(source_path, temp)
            os.replace(temp, target)
        except OSError as error:
            raise UnexpectedIOError(f"Unable to inject answer file: {error}") from error
        log.info(f"Injected {source_path.name} as {target}")
        return True

    def generate_from_config(
        self, output_path: Path, selections: AnswerFileConfig, work_dir: Path
    ) -> AnswerFileState:
        output_path = Path(output_path)
        with operation_context("answer-file", source="generated"):
            document = build_answer_file_xml(selections)
            try:
                output_path.parent.mkdir(parents=True, exist_ok=True)
                output_path.write_bytes(document.encode("utf-8"))
            except OSError as error:
                raise UnexpectedIOError(f"Unable to write {output_path}: {error}") from error
            self.inject(output_path, work_dir)
        return self.set_active_answer_file(AnswerFileSource.GENERATED, output_path)

    def download_template(
        self,
        output_path: Path,
        work_dir: Path,
        progress: ProgressSink | None = None,
        cancel_scope: CancellationScope | None = None,
        url: str | None = None,
    ) -> AnswerFileState:
        output_path = Path(output_path)
        url = url or settings.get_setting(
            "answer_file_template_url", settings.DEFAULT_ANSWER_FILE_TEMPLATE_URL
        )
        with operation_context("answer-file", source="downloaded"):
            staged = output_path.with_name(output_path.name + ".download")
            download_file(url, staged, progress, cancel_scope, title="Downloading answer file")
            try:
                validate_xml_file(staged)
                check_cancelled(cancel_scope)
                os.replace(staged, output_path)
            except ValidationError as error:
                raise ToolAcquisitionError(f"Downloaded template is invalid: {error}") from error
            except OSError as error:
                raise UnexpectedIOError(f"Unable to save {output_path}: {error}") from error
            finally:
                staged.unlink(missing_ok=True)
            self.inject(output_path, work_dir)
            emit(progress, "Answer file downloaded")
        return self.set_active_answer_file(AnswerFileSource.DOWNLOADED, output_path)

    def select_user_file(self, path: Path, work_dir: Path) -> AnswerFileState:
        path = Path(path)
        with operation_context("answer-file", source="user", file=path.name):
            validate_xml_file(path)
            self.inject(path, work_dir)
        return self.set_active_answer_file(
            AnswerFileSource.USER_SELECTED, Path(work_dir) / ANSWER_FILE_NAME
        )
