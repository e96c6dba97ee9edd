"""Progress parsing and formatting for external tool output."""

from __future__ import annotations

import re
from typing import Callable


ProgressSink = Callable[[str], None]

# DISM "[==== 45.0% ====]", wimlib "(21%) done", oscdimg "45% complete"
_PERCENT_PATTERN = re.compile(r"(\d{1,3}(?:[.,]\d+)?)\s*%")


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def human_size(size_bytes) -> str:
    if size_bytes is None:
        return "-"
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(size)}{unit}"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def parse_percent(line: str) -> float | None:
    """Return the last percentage in ``line`` (0-100) or None."""
    matches = _PERCENT_PATTERN.findall(line or "")
    if not matches:
        return None
    value = float(matches[-1].replace(",", "."))
    if value < 0 or value > 100:
        return None
    return value


def estimate_eta(percent: float | None, elapsed_seconds: float) -> float | None:
    """Linear ETA from elapsed time and completion percentage."""
    if percent is None or percent <= 0 or elapsed_seconds <= 0:
        return None
    if percent >= 100:
        return 0.0
    return elapsed_seconds * (100.0 - percent) / percent


def format_progress_line(title, percent=None, eta=None, detail=None) -> str:
    """Single status line pushed to the progress sink."""
    parts = [title]
    if percent is not None:
        parts.append(f"{percent:.1f}%")
    if eta:
        parts.append(f"ETA {eta}")
    if detail:
        parts.append(detail)
    return " ".join(str(part) for part in parts if part)


def emit(progress: ProgressSink | None, text: str) -> None:
    """Push ``text`` to ``progress`` when a sink is attached."""
    if progress is not None:
        progress(text)
