"""External process execution for imaging, driver and packaging tools.

Command Execution:
    - run_checked_command(): Run a short command and check its exit status
    - run_cancellable_command(): Run a long command with progress and cancel

Progress Formatting:
    - parse_percent(), format_eta(), format_progress_line()
"""

from .command_runners import (
    run_cancellable_command,
    run_checked_command,
    terminate_process,
)
from .progress import (
    ProgressSink,
    emit,
    estimate_eta,
    format_eta,
    format_progress_line,
    human_size,
    parse_percent,
)


__all__ = [
    # Command runners
    "run_checked_command",
    "run_cancellable_command",
    "terminate_process",
    # Progress formatting
    "ProgressSink",
    "emit",
    "estimate_eta",
    "format_eta",
    "format_progress_line",
    "human_size",
    "parse_percent",
]
