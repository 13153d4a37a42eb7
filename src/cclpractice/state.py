"""In-memory state machine for one practice session."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .blobs import ObjectUrlRegistry
from .errors import InvalidTransitionError
from .models import AudioBlob, DialogueSegment, Recording, ScoringResult

logger = logging.getLogger(__name__)


class SegmentStatus(str, enum.Enum):
    IDLE = "idle"
    PLAYING_REFERENCE = "playing_reference"
    RECORDING = "recording"
    RECORDED = "recorded"
    SUBMITTING = "submitting"
    SCORED = "scored"


REPEATABLE = (SegmentStatus.RECORDED, SegmentStatus.SUBMITTING, SegmentStatus.SCORED)


@dataclass
class SegmentState:
    status: SegmentStatus = SegmentStatus.IDLE
    recording: Optional[Recording] = None
    result: Optional[ScoringResult] = None
    repeat_count: int = 0
    attempt: int = 0
    failed: bool = False


class SegmentSessionState:
    """
    Tracks the current index and per-segment status, recording, score and
    repeat count. Recordings and their object URLs are owned here and revoked
    when replaced, repeated or torn down.
    """

    def __init__(
        self,
        segments: Sequence[DialogueSegment],
        urls: Optional[ObjectUrlRegistry] = None,
    ):
        self.segments: List[DialogueSegment] = sorted(
            segments, key=lambda s: s.segment_order
        )
        self.urls = urls or ObjectUrlRegistry()
        self.index = 0
        self._states: Dict[int, SegmentState] = {
            i: SegmentState() for i in range(len(self.segments))
        }

    def __len__(self) -> int:
        return len(self.segments)

    # ------------------------ lookups ------------------------

    def _check_index(self, index: int) -> int:
        if not 0 <= index < len(self.segments):
            raise IndexError(f"Segment index {index} out of range")
        return index

    def state(self, index: Optional[int] = None) -> SegmentState:
        return self._states[self._check_index(self.index if index is None else index)]

    def status(self, index: Optional[int] = None) -> SegmentStatus:
        return self.state(index).status

    @property
    def current(self) -> DialogueSegment:
        return self.segments[self.index]

    @property
    def progress(self) -> float:
        if not self.segments:
            return 0.0
        return (self.index + 1) / len(self.segments)

    @property
    def is_first(self) -> bool:
        return self.index == 0

    @property
    def is_last(self) -> bool:
        return self.index == len(self.segments) - 1

    def results(self) -> List[ScoringResult]:
        return [
            s.result for _, s in sorted(self._states.items()) if s.result is not None
        ]

    def answer_ids(self) -> List[str]:
        return [r.answer_id for r in self.results() if r.answer_id]

    def unscored(self) -> List[int]:
        return [i for i, s in sorted(self._states.items()) if s.result is None]

    def pending(self) -> List[int]:
        return [
            i
            for i, s in sorted(self._states.items())
            if s.status is SegmentStatus.SUBMITTING
        ]

    def failed(self) -> List[int]:
        return [i for i, s in sorted(self._states.items()) if s.failed]

    @property
    def is_complete(self) -> bool:
        return bool(self.segments) and not self.unscored()

    # ------------------------ transitions ------------------------

    def _move(self, index: int, allowed, target: SegmentStatus) -> SegmentState:
        state = self.state(index)
        if state.status not in allowed:
            raise InvalidTransitionError(
                f"Segment {index + 1}: cannot go from {state.status.value} to {target.value}"
            )
        logger.debug("Segment %s: %s -> %s", index, state.status.value, target.value)
        state.status = target
        return state

    def begin_playback(self, index: int) -> None:
        self._move(
            index,
            (SegmentStatus.IDLE, SegmentStatus.PLAYING_REFERENCE),
            SegmentStatus.PLAYING_REFERENCE,
        )

    def playback_stopped(self, index: int) -> None:
        if self.status(index) is SegmentStatus.PLAYING_REFERENCE:
            self._move(index, (SegmentStatus.PLAYING_REFERENCE,), SegmentStatus.IDLE)

    def begin_recording(self, index: int) -> None:
        self._move(index, (SegmentStatus.PLAYING_REFERENCE,), SegmentStatus.RECORDING)

    def cancel_recording(self, index: int) -> None:
        self._move(index, (SegmentStatus.RECORDING,), SegmentStatus.IDLE)

    def store_recording(self, index: int, blob: AudioBlob) -> Recording:
        state = self._move(index, (SegmentStatus.RECORDING,), SegmentStatus.RECORDED)
        if state.recording is not None:
            self.urls.revoke(state.recording.url)
        state.recording = Recording(
            blob=blob, url=self.urls.create(blob), repeat_count=state.repeat_count
        )
        return state.recording

    def begin_submission(self, index: int) -> int:
        """Mark the segment as submitting; returns the attempt token."""
        state = self._move(index, (SegmentStatus.RECORDED,), SegmentStatus.SUBMITTING)
        state.failed = False
        return state.attempt

    def record_result(self, index: int, attempt: int, result: ScoringResult) -> bool:
        """Store a score; a result for a discarded attempt is dropped."""
        state = self.state(index)
        if attempt != state.attempt or state.status is not SegmentStatus.SUBMITTING:
            logger.info("Dropping stale score for segment %s (attempt %s)", index, attempt)
            return False
        self._move(index, (SegmentStatus.SUBMITTING,), SegmentStatus.SCORED)
        state.result = result
        return True

    def submission_failed(self, index: int, attempt: int) -> bool:
        state = self.state(index)
        if attempt != state.attempt or state.status is not SegmentStatus.SUBMITTING:
            return False
        self._move(index, (SegmentStatus.SUBMITTING,), SegmentStatus.RECORDED)
        state.failed = True
        return True

    def repeat(self, index: int) -> int:
        """Discard the take and score; returns the new repeat count."""
        state = self._move(index, REPEATABLE, SegmentStatus.IDLE)
        if state.recording is not None:
            self.urls.revoke(state.recording.url)
            state.recording = None
        state.result = None
        state.failed = False
        state.repeat_count += 1
        state.attempt += 1
        return state.repeat_count

    # ------------------------ navigation ------------------------

    def go_to(self, index: int) -> bool:
        if not 0 <= index < len(self.segments) or index == self.index:
            return False
        self.index = index
        return True

    def next(self) -> bool:
        return self.go_to(self.index + 1)

    def previous(self) -> bool:
        return self.go_to(self.index - 1)

    def teardown(self) -> None:
        for state in self._states.values():
            state.recording = None
        self.urls.revoke_all()
