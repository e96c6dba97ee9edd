"""HTTP downloads for answer-file templates and tool installers.

Downloads stream into ``<destination>.partial`` and are renamed on success,
so an interrupted download never leaves a truncated file at the destination.
The public helpers are synchronous and drive the aiohttp coroutine with
``asyncio.run``; call them from a worker thread, never from a running loop.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import aiohttp

from buildmedia.config import settings
from buildmedia.logging import LoggerFactory, ThrottledLogger
from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.storage.commands.progress import (
    ProgressSink,
    emit,
    estimate_eta,
    format_eta,
    format_progress_line,
    human_size,
)
from buildmedia.storage.exceptions import OperationCanceledError, ToolAcquisitionError


log = LoggerFactory.for_tools()

CHUNK_SIZE = 256 * 1024
PARTIAL_SUFFIX = ".partial"


def _partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + PARTIAL_SUFFIX)


def _remove_partial(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as error:
        log.warning(f"Unable to remove partial download {path}: {error}")


async def _stream_to_file(
    session: aiohttp.ClientSession,
    url: str,
    partial: Path,
    title: str,
    progress: ProgressSink | None,
    cancel_scope: CancellationScope | None,
) -> int:
    throttled = ThrottledLogger(log, interval_seconds=5.0)
    async with session.get(url) as resp:
        if resp.status != 200:
            raise ToolAcquisitionError(f"Download of {url} failed with status {resp.status}")
        total = resp.content_length
        received = 0
        started = time.time()
        with partial.open("wb") as handle:
            async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                check_cancelled(cancel_scope)
                handle.write(chunk)
                received += len(chunk)
                percent = (received / total * 100.0) if total else None
                eta = format_eta(estimate_eta(percent, time.time() - started))
                status = format_progress_line(title, percent, eta, human_size(received))
                throttled.debug(url, status)
                emit(progress, status)
    return received


async def _download(url, destination, title, progress, cancel_scope, timeout_seconds) -> int:
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    partial = _partial_path(destination)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        try:
            received = await _stream_to_file(
                session, url, partial, title, progress, cancel_scope
            )
        except aiohttp.ClientError as e:
            log.error(f"Network error downloading {url}: {e}")
            raise ToolAcquisitionError(f"Network error: {e}")
        except asyncio.TimeoutError:
            raise ToolAcquisitionError(f"Download of {url} timed out after {timeout_seconds}s")
    return received


def download_file(
    url: str,
    destination: Path,
    progress: ProgressSink | None = None,
    cancel_scope: CancellationScope | None = None,
    title: str = "Downloading",
    timeout_seconds: int | None = None,
) -> Path:
    """Download ``url`` to ``destination`` and return the destination path.

    Raises:
        ToolAcquisitionError: network failure, non-200 status or empty body.
        OperationCanceledError: the scope was cancelled mid-download.
    """
    destination = Path(destination)
    if timeout_seconds is None:
        timeout_seconds = settings.get_int("download_timeout_seconds", 1800)
    partial = _partial_path(destination)
    check_cancelled(cancel_scope)
    log.info(f"Downloading {url} to {destination}")
    emit(progress, f"{title}...")

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        received = asyncio.run(
            _download(url, destination, title, progress, cancel_scope, timeout_seconds)
        )
        if received == 0:
            raise ToolAcquisitionError(f"Download of {url} returned no data")
        os.replace(partial, destination)
    except (ToolAcquisitionError, OperationCanceledError):
        _remove_partial(partial)
        raise
    except OSError as error:
        _remove_partial(partial)
        raise ToolAcquisitionError(f"Unable to save download to {destination}: {error}") from error

    log.info(f"Downloaded {human_size(received)} from {url}")
    emit(progress, f"{title} complete")
    return destination


def download_first_available(
    urls: list[str],
    destination: Path,
    progress: ProgressSink | None = None,
    cancel_scope: CancellationScope | None = None,
    title: str = "Downloading",
) -> Path:
    """Try each mirror in turn and return the first successful download."""
    errors = []
    for url in urls:
        try:
            return download_file(url, destination, progress, cancel_scope, title)
        except ToolAcquisitionError as error:
            log.warning(f"Download source failed: {url}: {error}")
            errors.append(str(error))
    raise ToolAcquisitionError(
        "All download sources failed: " + "; ".join(errors) if errors else "No download sources configured"
    )
