"""External process execution with cancellation and progress tracking."""

from __future__ import annotations

import queue
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Sequence

from buildmedia.logging import LoggerFactory, ThrottledLogger
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.storage.exceptions import (
    CommandFailedError,
    OperationCanceledError,
    UnexpectedIOError,
)

from .progress import (
    ProgressSink,
    emit,
    estimate_eta,
    format_eta,
    format_progress_line,
    parse_percent,
)


TERMINATE_GRACE_SECONDS = 5.0
OUTPUT_TAIL_LINES = 50


def _tool_name(command: Sequence[str]) -> str:
    return Path(str(command[0])).stem.lower() if command else "command"


def _start_process(command: Sequence[str], cwd=None) -> subprocess.Popen:
    try:
        return subprocess.Popen(
            [str(part) for part in command],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
        )
    except OSError as error:
        raise UnexpectedIOError(f"Unable to start {command[0]}: {error}") from error


def terminate_process(process: subprocess.Popen, grace_seconds=TERMINATE_GRACE_SECONDS):
    """Terminate ``process``, escalating to kill after ``grace_seconds``."""
    if process.poll() is not None:
        return
    try:
        process.terminate()
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()
    except OSError:
        pass


def run_checked_command(
    command: Sequence[str],
    cancel_scope: CancellationScope | None = None,
    cwd=None,
) -> str:
    """Run a command to completion and return its combined output.

    Raises CommandFailedError on a non-zero exit and OperationCanceledError
    when ``cancel_scope`` is cancelled while the command runs.
    """
    log = LoggerFactory.for_tool_output(_tool_name(command))
    log.debug(f"Running command: {' '.join(str(part) for part in command)}")
    check_cancelled(cancel_scope)
    process = _start_process(command, cwd=cwd)
    unregister = None
    if cancel_scope is not None:
        unregister = cancel_scope.register(lambda: terminate_process(process))
    try:
        output, _ = process.communicate()
    finally:
        if unregister is not None:
            unregister()
    check_cancelled(cancel_scope)
    if process.returncode != 0:
        raise CommandFailedError(command, process.returncode, output or "")
    return output or ""


def run_cancellable_command(
    command: Sequence[str],
    title: str = "Working",
    progress: ProgressSink | None = None,
    cancel_scope: CancellationScope | None = None,
    cwd=None,
) -> str:
    """Run a long command, streaming progress lines to ``progress``.

    Output is read on a background thread so the loop can observe
    cancellation while the tool is silent. Cancelling the scope terminates
    the process and raises OperationCanceledError.
    """
    tool = _tool_name(command)
    log = LoggerFactory.for_tool_output(tool)
    throttled = ThrottledLogger(LoggerFactory.for_pipeline(), interval_seconds=5.0)
    log.debug(f"Starting command: {' '.join(str(part) for part in command)}")

    check_cancelled(cancel_scope)
    process = _start_process(command, cwd=cwd)
    lines: queue.Queue[str | None] = queue.Queue()

    def _reader() -> None:
        try:
            for raw_line in process.stdout:
                lines.put(raw_line)
        finally:
            lines.put(None)

    reader = threading.Thread(target=_reader, name=f"{tool}-output", daemon=True)
    reader.start()

    unregister = None
    if cancel_scope is not None:
        unregister = cancel_scope.register(lambda: terminate_process(process))

    tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
    started = time.time()
    last_percent = None
    emit(progress, format_progress_line(title))
    try:
        while True:
            try:
                line = lines.get(timeout=0.25)
            except queue.Empty:
                if cancel_scope is not None and cancel_scope.is_cancelled:
                    terminate_process(process)
                continue
            if line is None:
                break
            text = line.strip()
            if not text:
                continue
            tail.append(text)
            log.trace(text)
            percent = parse_percent(text)
            if percent is None or percent == last_percent:
                continue
            last_percent = percent
            eta = format_eta(estimate_eta(percent, time.time() - started))
            status = format_progress_line(title, percent, eta)
            throttled.info(tool, status)
            emit(progress, status)
        process.wait()
        reader.join(timeout=1.0)
    finally:
        if unregister is not None:
            unregister()
        terminate_process(process)

    if cancel_scope is not None and cancel_scope.is_cancelled:
        raise OperationCanceledError(f"{title} cancelled")
    output = "\n".join(tail)
    if process.returncode != 0:
        log.warning(f"{tool} exited with code {process.returncode}")
        raise CommandFailedError(command, process.returncode, output)
    emit(progress, format_progress_line(title, 100.0, detail="complete"))
    return output
