"""Loguru configuration for buildmedia.

Every stage logs through a logger bound with ``source``, ``job_id`` and
``tags``; ``setup_logging`` decides where those records end up.
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

from buildmedia.storage.exceptions import OperationCanceledError

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BUILDMEDIA_LOG_DIR",
        Path.home() / ".local" / "state" / "buildmedia" / "logs",
    )
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level.name[0]}</level> "
    "<cyan>[{extra[source]}]</cyan> {message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <8} "
    "[{extra[source]}/{extra[job_id]}] {message}"
)


def _level_no(name: str) -> int:
    return logger.level(name).no


def _combined_filter(record) -> bool:
    """Raw tool output lines are TRACE-only unless they carry a warning."""
    if "tool-output" not in record["extra"].get("tags", []):
        return True
    level = record["level"].no
    return level <= _level_no("TRACE") or level >= _level_no("WARNING")


def _file_sink(path: Path, level: str, rotation: str, retention: str, **options) -> None:
    options.setdefault("format", FILE_FORMAT)
    logger.add(
        path,
        level=level,
        rotation=rotation,
        retention=retention,
        compression="zip",
        enqueue=True,
        **options,
    )


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    progress_sink: Callable[[str], None] | None = None,
    progress_min_level: str | None = None,
) -> Logger:
    """
    Replace any existing handlers with the buildmedia sinks.

    Sinks:
    - stderr: INFO, DEBUG with ``debug`` or TRACE with ``trace``; raw tool
      output only shows at TRACE
    - operations.log: INFO+ (5 MB rotation, 7 day retention)
    - debug.log: everything down to the console level, only with
      ``debug``/``trace`` (3 day retention)
    - structured.jsonl: INFO+ serialized records for analysis
    - progress_sink: optional callable receiving plain messages, for
      front-ends that mirror the log into a status area

    Args:
        debug: Enable DEBUG output
        trace: Enable TRACE output (every line of DISM/oscdimg output)
        log_dir: Log directory (default ``$BUILDMEDIA_LOG_DIR`` or
            ~/.local/state/buildmedia/logs)
        progress_sink: Callable fed by the progress bridge sink
        progress_min_level: Minimum level forwarded to ``progress_sink``
    """
    level = "TRACE" if trace else "DEBUG" if debug else "INFO"

    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "buildmedia"})
    logger.add(
        sys.stderr,
        level=level,
        enqueue=True,
        colorize=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        format=CONSOLE_FORMAT,
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    _file_sink(log_dir / "operations.log", "INFO", "5 MB", "7 days", filter=_combined_filter)
    if debug or trace:
        _file_sink(
            log_dir / "debug.log",
            level,
            "10 MB",
            "3 days",
            backtrace=True,
            diagnose=True,
            format=FILE_FORMAT + " {extra[tags]}",
        )
    _file_sink(
        log_dir / "structured.jsonl", "INFO", "10 MB", "7 days", serialize=True, format="{message}"
    )

    if progress_sink is not None:
        threshold = _level_no((progress_min_level or level).upper())

        def _forward(message) -> None:
            if message.record["level"].no >= threshold:
                progress_sink(message.record["message"])

        logger.add(_forward, enqueue=True, filter=_combined_filter)

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Logger bound with whichever of ``job_id``, ``tags`` and ``source`` are given."""
    context = {"job_id": job_id, "source": source}
    context = {key: value for key, value in context.items() if value is not None}
    if tags is not None:
        context["tags"] = list(tags)
    return logger.bind(**context)


@contextmanager
def operation_context(operation: str, **details):
    """
    Wrap a stage action in started/completed/failed records with its duration.

    Cancellation ends in a WARNING record instead of an ERROR.

    Example:
        with operation_context("extract", iso="Win11.iso") as log:
            log.debug("Opening ISO")
    """
    title = operation.capitalize()
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    log = logger.bind(source=operation, job_id=job_id, tags=[operation])

    def elapsed() -> float:
        return round(time.monotonic() - started, 2)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        started = time.monotonic()
        log.info(f"{title} started", **details)
        try:
            yield log
        except OperationCanceledError:
            log.warning(f"{title} cancelled", duration_seconds=elapsed())
            raise
        except Exception as error:
            log.error(
                f"{title} failed",
                error=str(error),
                error_type=type(error).__name__,
                duration_seconds=elapsed(),
            )
            raise
        log.success(f"{title} completed", duration_seconds=elapsed())


def _with_job(source: str, tags: list[str], job_id: str | None) -> Logger:
    return logger.bind(
        source=source, tags=tags, job_id=job_id or f"{source}-{uuid.uuid4().hex[:8]}"
    )


class LoggerFactory:
    """Per-stage loggers; ``source`` and ``tags`` drive the sink filters."""

    @staticmethod
    def for_extract(job_id: str | None = None) -> Logger:
        return _with_job("extract", ["extract", "iso"], job_id)

    @staticmethod
    def for_image() -> Logger:
        return logger.bind(source="image", tags=["image", "wim"])

    @staticmethod
    def for_answer_file() -> Logger:
        return logger.bind(source="answer-file", tags=["xml", "answer-file"])

    @staticmethod
    def for_drivers() -> Logger:
        return logger.bind(source="drivers", tags=["drivers"])

    @staticmethod
    def for_tools() -> Logger:
        return logger.bind(source="tools", tags=["tools", "download"])

    @staticmethod
    def for_packaging(job_id: str | None = None) -> Logger:
        return _with_job("package", ["package", "iso"], job_id)

    @staticmethod
    def for_pipeline() -> Logger:
        return logger.bind(source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_tool_output(tool: str) -> Logger:
        """Raw DISM/oscdimg/wimlib lines; only visible at TRACE."""
        return logger.bind(source=tool, tags=["tool-output"])


class ThrottledLogger:
    """Emits at most one record per key every ``interval_seconds``.

    Download and tool progress arrive many times a second; only a sample
    reaches the log.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self._last_emitted: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        self._emit("DEBUG", key, message, kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        self._emit("INFO", key, message, kwargs)

    def _emit(self, level: str, key: str, message: str, kwargs: dict) -> None:
        now = time.monotonic()
        previous = self._last_emitted.get(key)
        if previous is not None and now - previous < self.interval:
            return
        self._last_emitted[key] = now
        self.log.log(level, message, **kwargs)
