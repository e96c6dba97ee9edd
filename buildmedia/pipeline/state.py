"""Stage state machine for the media build pipeline.

State is an immutable ``PipelineState`` value; ``transition`` returns a new
one or raises when the event is not allowed. Views render ``project()``,
a read-only list of ``StageState`` for the four visible stages.

Rules:
    - Only one stage may be IN_PROGRESS at a time.
    - Every stage except extraction and tool acquisition requires a
      completed extraction; availability is derived, never stored.
    - Cancellation is neutral: the stage returns to its previous outcome
      (extraction always returns to NOT_STARTED since its output is removed).
    - A new successful extraction resets every dependent stage.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from buildmedia.storage.exceptions import StageBusyError, StageUnavailableError


class StageId(Enum):
    EXTRACTION = "extraction"
    IMAGE_FORMAT = "image_format"
    ANSWER_FILE = "answer_file"
    DRIVERS = "drivers"
    TOOLS = "tools"
    PACKAGING = "packaging"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    StageId.EXTRACTION: "Extract ISO",
    StageId.IMAGE_FORMAT: "Image format",
    StageId.ANSWER_FILE: "Answer file",
    StageId.DRIVERS: "Drivers",
    StageId.TOOLS: "Packaging tool",
    StageId.PACKAGING: "Create ISO",
}

VISIBLE_STAGES = (
    StageId.EXTRACTION,
    StageId.ANSWER_FILE,
    StageId.DRIVERS,
    StageId.PACKAGING,
)
INDEPENDENT_STAGES = frozenset({StageId.EXTRACTION, StageId.TOOLS})


class StageStatus(Enum):
    NOT_STARTED = "not_started"
    AVAILABLE = "available"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class StageEvent(Enum):
    START = "start"
    SUCCEED = "succeed"
    FAIL = "fail"
    CANCEL = "cancel"
    SKIP = "skip"
    RESET = "reset"


@dataclass(frozen=True)
class StageRecord:
    """Stored outcome of one stage. AVAILABLE is never stored."""

    status: StageStatus = StageStatus.NOT_STARTED
    status_text: str = ""
    previous: StageStatus = StageStatus.NOT_STARTED


@dataclass(frozen=True)
class StageState:
    """Read-only projection of a stage for views."""

    stage_id: StageId
    status: StageStatus
    is_available: bool
    is_complete: bool
    has_failed: bool
    status_text: str


@dataclass(frozen=True)
class PipelineState:
    records: Mapping[StageId, StageRecord]

    @classmethod
    def initial(cls) -> PipelineState:
        return cls(MappingProxyType({stage: StageRecord() for stage in StageId}))

    def record(self, stage: StageId) -> StageRecord:
        return self.records[stage]

    def is_complete(self, stage: StageId) -> bool:
        return self.records[stage].status == StageStatus.COMPLETE

    def is_available(self, stage: StageId) -> bool:
        if stage in INDEPENDENT_STAGES:
            return True
        return self.is_complete(StageId.EXTRACTION)

    @property
    def running(self) -> StageId | None:
        for stage, record in self.records.items():
            if record.status == StageStatus.IN_PROGRESS:
                return stage
        return None

    def status(self, stage: StageId) -> StageStatus:
        record = self.records[stage]
        if record.status == StageStatus.NOT_STARTED and self.is_available(stage):
            return StageStatus.AVAILABLE
        return record.status

    def view(self, stage: StageId) -> StageState:
        record = self.records[stage]
        return StageState(
            stage_id=stage,
            status=self.status(stage),
            is_available=self.is_available(stage),
            is_complete=record.status == StageStatus.COMPLETE,
            has_failed=record.status == StageStatus.FAILED,
            status_text=record.status_text,
        )

    def _with(self, updates: Mapping[StageId, StageRecord]) -> PipelineState:
        records = dict(self.records)
        records.update(updates)
        return PipelineState(MappingProxyType(records))


def project(state: PipelineState) -> list[StageState]:
    """State of the visible stages, in pipeline order."""
    return [state.view(stage) for stage in VISIBLE_STAGES]


def transition(
    state: PipelineState, stage: StageId, event: StageEvent, text: str = ""
) -> PipelineState:
    """Apply ``event`` to ``stage`` and return the new pipeline state.

    Raises:
        StageBusyError: START while another stage is in progress.
        StageUnavailableError: START before extraction completed, or a
            completion event for a stage that is not running.
    """
    record = state.record(stage)

    if event == StageEvent.START:
        running = state.running
        if running is not None:
            raise StageBusyError(stage.label, running.label)
        if not state.is_available(stage):
            raise StageUnavailableError(stage.label, "extract the ISO first")
        return state._with(
            {stage: StageRecord(StageStatus.IN_PROGRESS, text, previous=record.status)}
        )

    if event == StageEvent.RESET:
        return PipelineState.initial()

    if record.status != StageStatus.IN_PROGRESS:
        raise StageUnavailableError(stage.label, f"cannot {event.value}, it is not running")

    if event == StageEvent.SUCCEED:
        updates = {stage: StageRecord(StageStatus.COMPLETE, text)}
        if stage == StageId.EXTRACTION:
            updates.update(
                {other: StageRecord() for other in StageId if other not in INDEPENDENT_STAGES}
            )
        return state._with(updates)

    if event == StageEvent.FAIL:
        return state._with({stage: StageRecord(StageStatus.FAILED, text)})

    # CANCEL and SKIP are neutral outcomes.
    previous = record.previous
    if previous == StageStatus.FAILED or (
        event == StageEvent.CANCEL and stage == StageId.EXTRACTION
    ):
        previous = StageStatus.NOT_STARTED
    if stage == StageId.EXTRACTION and previous == StageStatus.NOT_STARTED:
        # Later stages lose their prerequisite.
        updates = {other: StageRecord() for other in StageId if other not in INDEPENDENT_STAGES}
        updates[stage] = StageRecord(previous, text)
        return state._with(updates)
    return state._with({stage: replace(record, status=previous, status_text=text)})
