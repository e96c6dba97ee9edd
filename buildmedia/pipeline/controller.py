"""Pipeline controller: runs stage actions against one working directory.

Every action gets a fresh ``CancellationScope``, runs inside the stage state
machine and records its outcome. Failures are recorded on the stage and
re-raised to the caller; they never touch the state of sibling stages, and
the failed stage may simply be retried.

Usage:
    with PipelineController(work_dir, progress=print) as pipeline:
        pipeline.extract(iso_path)
        pipeline.select_answer_file(my_xml)
        pipeline.add_custom_drivers(driver_folder)
        pipeline.ensure_tool()
        pipeline.create_iso(output_path)
"""

from __future__ import annotations

import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from buildmedia.domain.models import (
    AnswerFileConfig,
    BuildRequest,
    ImageDetectionResult,
    ImageFormat,
    ImageFormatInfo,
    WorkingDirectory,
)
from buildmedia.logging import LoggerFactory
from buildmedia.pipeline.state import (
    PipelineState,
    StageEvent,
    StageId,
    StageState,
    project,
    transition,
)
from buildmedia.services.cancellation import CancellationScope
from buildmedia.services.packaging import PackagingStage
from buildmedia.services.tool_acquisition import ToolAcquisitionService, get_tool_service
from buildmedia.storage import extraction, image_format
from buildmedia.storage.answer_file import AnswerFileStage
from buildmedia.storage.commands.progress import ProgressSink, emit
from buildmedia.storage.drivers import DriverInjectionStage
from buildmedia.storage.exceptions import (
    MediaBuildError,
    OperationCanceledError,
    UnexpectedIOError,
)
from buildmedia.storage.workdir_lock import working_directory_lock


log = LoggerFactory.for_pipeline()


@dataclass
class BackgroundTask:
    """Handle for an action running on a worker thread."""

    name: str
    thread: threading.Thread | None = None
    done: threading.Event = field(default_factory=threading.Event)
    result: Any = None
    error: BaseException | None = None

    def wait(self, timeout: float | None = None) -> bool:
        return self.done.wait(timeout)


@dataclass
class BuildOutcome:
    """Per-stage results of ``build_install_media``."""

    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    output_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return not self.failed and self.output_path is not None


class PipelineController:
    """Stage-state machine plus the stage services for one working directory.

    Used as a context manager it holds the working directory lock for its
    whole lifetime.
    """

    def __init__(
        self,
        work_dir: Path,
        progress: ProgressSink | None = None,
        tool_service: ToolAcquisitionService | None = None,
        image_tool: image_format.ImageTool | None = None,
    ):
        self.work_dir = Path(work_dir)
        self.progress = progress
        self.image_tool = image_tool
        self.tools = tool_service or get_tool_service()
        self.answer_files = AnswerFileStage()
        self.drivers = DriverInjectionStage()
        self.packaging = PackagingStage(self.tools)
        self.working_directory: WorkingDirectory | None = None
        self.image_info: ImageFormatInfo | None = None
        self._lock = threading.Lock()
        self._state = PipelineState.initial()
        self._scope: CancellationScope | None = None
        self._exit_stack: ExitStack | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> PipelineController:
        stack = ExitStack()
        stack.enter_context(working_directory_lock(self.work_dir, owner="pipeline"))
        self._exit_stack = stack
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()
        if self._exit_stack is not None:
            self._exit_stack.close()
            self._exit_stack = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    def stages(self) -> list[StageState]:
        return project(self.state)

    def stage(self, stage_id: StageId) -> StageState:
        return self.state.view(stage_id)

    def _apply(self, stage_id: StageId, event: StageEvent, text: str = "") -> None:
        with self._lock:
            self._state = transition(self._state, stage_id, event, text)
        log.debug(f"{stage_id.label}: {event.value} {text}".rstrip())

    def cancel(self) -> bool:
        """Cancel the running action, if any."""
        with self._lock:
            scope = self._scope
        if scope is None:
            return False
        scope.cancel()
        return True

    def _run(
        self,
        stage_id: StageId,
        action: Callable[[CancellationScope], Any],
        done_text: str | Callable[[Any], str] = "Complete",
        is_complete: Callable[[Any], bool] | None = None,
    ) -> Any:
        scope = CancellationScope(stage_id.value)
        with self._lock:
            self._state = transition(
                self._state, stage_id, StageEvent.START, f"{stage_id.label} in progress"
            )
            self._scope = scope
        try:
            result = action(scope)
        except OperationCanceledError:
            self._apply(stage_id, StageEvent.CANCEL, "Cancelled")
            raise
        except MediaBuildError as error:
            self._apply(stage_id, StageEvent.FAIL, str(error))
            raise
        except OSError as error:
            wrapped = UnexpectedIOError(str(error))
            self._apply(stage_id, StageEvent.FAIL, str(wrapped))
            raise wrapped from error
        except BaseException:
            self._apply(stage_id, StageEvent.FAIL, "Unexpected error")
            raise
        finally:
            with self._lock:
                if self._scope is scope:
                    self._scope = None
        text = done_text(result) if callable(done_text) else done_text
        if is_complete is not None and not is_complete(result):
            self._apply(stage_id, StageEvent.SKIP, text)
        else:
            self._apply(stage_id, StageEvent.SUCCEED, text)
        return result

    def submit(self, method: Callable[..., Any], *args, **kwargs) -> BackgroundTask:
        """Run a controller action on a worker thread.

        The returned task records the result or the raised exception; its
        ``done`` event is set when the action finishes.
        """
        task = BackgroundTask(name=getattr(method, "__name__", "action"))

        def _worker() -> None:
            try:
                task.result = method(*args, **kwargs)
            except BaseException as error:
                task.error = error
            finally:
                task.done.set()

        task.thread = threading.Thread(target=_worker, name=f"pipeline-{task.name}", daemon=True)
        task.thread.start()
        return task

    # ------------------------------------------------------------------
    # Step 1: extraction
    # ------------------------------------------------------------------

    def extract(self, iso_path: Path, force: bool = False) -> WorkingDirectory:
        def _action(scope):
            return extraction.extract_iso(iso_path, self.work_dir, self.progress, scope, force)

        working = self._run(StageId.EXTRACTION, _action, "ISO extracted")
        self._on_extracted(working)
        return working

    def use_existing(self) -> WorkingDirectory:
        """Adopt an already-extracted folder as the working directory."""
        working = self._run(
            StageId.EXTRACTION,
            lambda scope: extraction.validate_pre_extracted(self.work_dir),
            "Using existing files",
        )
        self._on_extracted(working)
        return working

    def _on_extracted(self, working: WorkingDirectory) -> None:
        self.working_directory = working
        self.answer_files = AnswerFileStage()
        self.drivers = DriverInjectionStage()
        self.image_info = image_format.detect_format(working.path, self.image_tool)

    def clean(self) -> int:
        """Delete the working directory contents and reset every stage."""
        removed = self._run(
            StageId.EXTRACTION,
            lambda scope: extraction.cleanup_working_directory(self.work_dir),
            lambda count: f"Removed {count} entries",
            is_complete=lambda count: False,
        )
        self._apply(StageId.EXTRACTION, StageEvent.RESET)
        self.working_directory = None
        self.image_info = None
        return removed

    # ------------------------------------------------------------------
    # Image format (auxiliary)
    # ------------------------------------------------------------------

    def detect_format(self) -> ImageFormatInfo | None:
        self.image_info = image_format.detect_format(self.work_dir, self.image_tool)
        return self.image_info

    def detect_all_formats(self) -> ImageDetectionResult:
        return image_format.detect_all_formats(self.work_dir, self.image_tool)

    def convert(self, target: ImageFormat) -> ImageFormatInfo:
        def _action(scope):
            return image_format.convert(
                self.work_dir, target, self.progress, scope, self.image_tool
            )

        self.image_info = self._run(
            StageId.IMAGE_FORMAT,
            _action,
            lambda info: f"{info.format.name}, {info.size_gb:.2f} GB",
        )
        return self.image_info

    def delete_image(self, fmt: ImageFormat) -> bool:
        deleted = self._run(
            StageId.IMAGE_FORMAT,
            lambda scope: image_format.delete_image_file(self.work_dir, fmt),
            f"Deleted {fmt.file_name}",
        )
        self.detect_format()
        return deleted

    # ------------------------------------------------------------------
    # Step 2: answer file
    # ------------------------------------------------------------------

    def _default_answer_path(self) -> Path:
        return self.work_dir / "autounattend.xml"

    def generate_answer_file(
        self, selections: AnswerFileConfig, output_path: Path | None = None
    ):
        return self._run(
            StageId.ANSWER_FILE,
            lambda scope: self.answer_files.generate_from_config(
                output_path or self._default_answer_path(), selections, self.work_dir
            ),
            "Generated answer file added",
        )

    def download_answer_file(self, output_path: Path | None = None):
        return self._run(
            StageId.ANSWER_FILE,
            lambda scope: self.answer_files.download_template(
                output_path or self._default_answer_path(), self.work_dir, self.progress, scope
            ),
            "Downloaded answer file added",
        )

    def select_answer_file(self, path: Path):
        return self._run(
            StageId.ANSWER_FILE,
            lambda scope: self.answer_files.select_user_file(path, self.work_dir),
            f"{Path(path).name} added",
        )

    # ------------------------------------------------------------------
    # Step 3: drivers
    # ------------------------------------------------------------------

    def _drivers_added(self, _result) -> bool:
        state = self.drivers.state
        return state.system_drivers_added or state.custom_drivers_added

    def add_system_drivers(self) -> bool:
        return self._run(
            StageId.DRIVERS,
            lambda scope: self.drivers.inject_system_drivers(self.work_dir, self.progress, scope),
            lambda added: "System drivers added" if added else "No system drivers exported",
            is_complete=self._drivers_added,
        )

    def add_custom_drivers(self, driver_folder: Path) -> bool:
        return self._run(
            StageId.DRIVERS,
            lambda scope: self.drivers.inject_custom_drivers(
                self.work_dir, driver_folder, self.progress, scope
            ),
            "Custom drivers added",
        )

    # ------------------------------------------------------------------
    # Step 4: packaging
    # ------------------------------------------------------------------

    def ensure_tool(self):
        return self._run(
            StageId.TOOLS,
            lambda scope: self.tools.ensure_available(self.progress, scope),
            lambda availability: f"Using {availability.path}",
        )

    def create_iso(self, output_path: Path) -> Path:
        return self._run(
            StageId.PACKAGING,
            lambda scope: self.packaging.create_iso(
                self.work_dir, output_path, self.progress, scope
            ),
            lambda path: f"Created {path}",
        )

    # ------------------------------------------------------------------
    # Whole pipeline
    # ------------------------------------------------------------------

    def build(self, request: BuildRequest) -> BuildOutcome:
        """Run every requested stage in order.

        Answer file and driver failures are recorded and the remaining
        optional stages still run; packaging only runs when nothing failed.
        Cancellation stops the build immediately.
        """
        outcome = BuildOutcome()

        def _step(name: str, func: Callable[[], Any]) -> bool:
            try:
                func()
            except OperationCanceledError:
                raise
            except MediaBuildError as error:
                log.error(f"{name} failed: {error}")
                outcome.failed[name] = str(error)
                return False
            outcome.completed.append(name)
            return True

        if request.use_existing:
            extracted = _step("extract", self.use_existing)
        elif request.iso_path is not None:
            extracted = _step("extract", lambda: self.extract(request.iso_path, request.force))
        else:
            extracted = _step("extract", self.use_existing)
        if not extracted:
            outcome.skipped.extend(["convert", "answer-file", "drivers", "package"])
            return outcome

        if request.target_format is not None:
            _step("convert", lambda: self.convert(request.target_format))
        if request.answer_file is not None:
            _step("answer-file", lambda: self.select_answer_file(request.answer_file))
        elif request.answer_file_config is not None:
            _step("answer-file", lambda: self.generate_answer_file(request.answer_file_config))
        elif request.download_answer_file:
            _step("answer-file", self.download_answer_file)
        if request.add_system_drivers:
            _step("system-drivers", self.add_system_drivers)
        for folder in request.driver_folders:
            _step(f"drivers:{Path(folder).name}", lambda folder=folder: self.add_custom_drivers(folder))

        if outcome.failed:
            outcome.skipped.append("package")
            return outcome
        if not _step("tools", self.ensure_tool):
            outcome.skipped.append("package")
            return outcome
        if _step("package", lambda: self.create_iso(request.output_path)):
            outcome.output_path = Path(request.output_path)
        emit(self.progress, "Build finished" if outcome.succeeded else "Build finished with errors")
        return outcome


def build_install_media(
    request: BuildRequest, progress: ProgressSink | None = None
) -> BuildOutcome:
    """One-shot build holding the working directory lock throughout."""
    with PipelineController(request.work_dir, progress=progress) as pipeline:
        return pipeline.build(request)
