"""Practice session controller: play, record, submit, advance."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Tuple

from .backend import BackendClient
from .blobs import ObjectUrlRegistry
from .config import SessionPolicy
from .errors import (
    AudioLoadError,
    BackendError,
    NavigationBlockedError,
    PracticeError,
    RecordingTooShortError,
    ScoringServiceError,
    SessionIncompleteError,
)
from .gateway import ScoreRequest, ScoringGateway
from .models import AudioBlob, Dialogue, DialogueSegment, ScoringResult, SessionResult
from .player import AudioPlayer
from .recorder import Recorder
from .state import REPEATABLE, SegmentSessionState, SegmentStatus

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, str], None]


def log_notifier(level: str, title: str, message: str) -> None:
    log_level = logging.WARNING if level == "error" else logging.INFO
    logger.log(log_level, "%s: %s", title, message)


def _guarded(fn: Callable[[], None]) -> Callable[[], None]:
    def run() -> None:
        try:
            fn()
        except Exception:
            logger.exception("Media event handler failed")

    return run


class SessionController:
    """
    Drives one dialogue practice session over an ordered list of segments.

    Reference playback ending starts the recording. Submissions run on
    ``executor`` and return futures. Every failure is caught here, logged and
    passed to ``notify(level, title, message)``; operations report success
    with their return value and never raise PracticeError.
    """

    def __init__(
        self,
        backend: BackendClient,
        gateway: ScoringGateway,
        player: AudioPlayer,
        recorder: Recorder,
        user_id: str,
        language: Optional[str] = None,
        policy: Optional[SessionPolicy] = None,
        notify: Notifier = log_notifier,
        on_complete: Optional[Callable[[SessionResult], None]] = None,
        executor: Optional[Executor] = None,
        review_player: Optional[AudioPlayer] = None,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
    ):
        self.backend = backend
        self.gateway = gateway
        self.player = player
        self.recorder = recorder
        self.user_id = user_id
        self.language = language
        self.policy = policy or SessionPolicy()
        self.notify = notify
        self.on_complete = on_complete
        self.review_player = review_player
        # audio callbacks must not open streams on the PortAudio thread
        self._media: Optional[ThreadPoolExecutor] = None
        if dispatch is None:
            self._media = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="cclpractice-media"
            )
            dispatch = lambda fn: self._media.submit(_guarded(fn))
        self._dispatch = dispatch

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="cclpractice-score"
        )
        self._lock = threading.RLock()

        self.dialogue: Optional[Dialogue] = None
        self.session: Optional[SegmentSessionState] = None
        self.result: Optional[SessionResult] = None
        self.last_error: Optional[PracticeError] = None
        self._futures: Dict[int, Future] = {}
        self._references: Dict[str, bytes] = {}
        self._playing_index: Optional[int] = None
        self._finishing = False
        self._finish_done = threading.Event()
        self._finish_done.set()

        self.player.on_ended = lambda: self._dispatch(self._on_reference_ended)
        self.player.on_error = lambda exc: self._dispatch(
            lambda: self._on_reference_error(exc)
        )

    # ------------------------ helpers ------------------------

    def _fail(self, error: PracticeError, silent: bool = False) -> None:
        self.last_error = error
        if silent:
            logger.warning("Suppressed %s: %s", type(error).__name__, error)
            return
        logger.warning("%s: %s", type(error).__name__, error)
        self.notify("error", error.title, str(error))

    @property
    def active(self) -> bool:
        return self.session is not None

    @property
    def index(self) -> int:
        return self.session.index if self.session else 0

    @property
    def status(self) -> Optional[SegmentStatus]:
        return self.session.status() if self.session else None

    @property
    def complete(self) -> bool:
        return self.result is not None

    def can_advance(self) -> bool:
        with self._lock:
            return self._advance_blocker() is None and not self.session.is_last

    def _advance_blocker(self) -> Optional[PracticeError]:
        s = self.session
        if s is None:
            return NavigationBlockedError("No practice session is running.")
        if self.policy.strict_advance and s.status() is not SegmentStatus.SCORED:
            return NavigationBlockedError(
                f"Submit segment {s.index + 1} and wait for its score before moving on."
            )
        if self.policy.on_scoring_failure == "block" and s.state().failed:
            return NavigationBlockedError(
                f"Segment {s.index + 1} failed to score. Resubmit it to continue."
            )
        return None

    def _cancel_media(self) -> None:
        s = self.session
        if s is None:
            return
        status = s.status()
        if status is SegmentStatus.PLAYING_REFERENCE:
            self._playing_index = None
            self.player.pause()
            s.playback_stopped(s.index)
        elif status is SegmentStatus.RECORDING:
            s.cancel_recording(s.index)
            try:
                self.recorder.cancel()
            except PracticeError as exc:
                self._fail(exc)
        if self.review_player is not None:
            self.review_player.pause()

    # ------------------------ session lifecycle ------------------------

    def start(self, dialogue: Dialogue) -> bool:
        try:
            segments = self.backend.get_dialogue_segments(dialogue.id)
        except BackendError as exc:
            self._fail(exc)
            return False
        if not segments:
            self._fail(PracticeError(f"Dialogue {dialogue.title!r} has no segments."))
            return False

        with self._lock:
            self._teardown()
            self.dialogue = dialogue
            self.session = SegmentSessionState(segments, urls=ObjectUrlRegistry())
            self.result = None
            self.last_error = None
            self._futures = {}
            self._references = {}
            self._finishing = False
        logger.info("Started %s (%s segments)", dialogue.id, len(segments))
        return True

    def _teardown(self) -> None:
        if self.session is None:
            return
        self._cancel_media()
        self.session.teardown()
        self.session = None

    def close(self) -> None:
        with self._lock:
            self._teardown()
            self.player.close()
            if self.review_player is not None:
                self.review_player.close()
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        if self._media is not None:
            self._media.shutdown(wait=False)

    # ------------------------ playback / recording ------------------------

    def play_current(self) -> bool:
        with self._lock:
            s = self.session
            if s is None:
                return False
            index = s.index
            segment = s.current
            try:
                s.begin_playback(index)
            except PracticeError as exc:
                self._fail(exc)
                return False
            try:
                if self.player.source != segment.audio_url or not self.player.loaded:
                    self._references[segment.id] = self.player.load(segment)
                self._playing_index = index
                self.player.play()
            except PracticeError as exc:
                self._playing_index = None
                s.playback_stopped(index)
                self._fail(exc)
                return False
        self.notify("info", "Playing Audio", f"Segment {index + 1} is now playing")
        return True

    def pause_current(self) -> bool:
        with self._lock:
            s = self.session
            if s is None or s.status() is not SegmentStatus.PLAYING_REFERENCE:
                return False
            self._playing_index = None
            self.player.pause()
            s.playback_stopped(s.index)
            return True

    def _on_reference_ended(self) -> None:
        with self._lock:
            s = self.session
            index = self._playing_index
            self._playing_index = None
            if s is None or index is None or index != s.index:
                return
            if s.status(index) is not SegmentStatus.PLAYING_REFERENCE:
                return
            s.begin_recording(index)
            try:
                self.recorder.start()
            except PracticeError as exc:
                s.cancel_recording(index)
                self._fail(exc)
                return
        self.notify("info", "Recording Started", "Speak your interpretation now")

    def _on_reference_error(self, error: PracticeError) -> None:
        with self._lock:
            s = self.session
            index = self._playing_index
            self._playing_index = None
            if s is not None and index is not None:
                if s.status(index) is SegmentStatus.PLAYING_REFERENCE:
                    s.playback_stopped(index)
        self._fail(error)

    def stop_recording(self) -> bool:
        with self._lock:
            s = self.session
            if s is None or s.status() is not SegmentStatus.RECORDING:
                return False
            minimum = self.policy.min_recording_seconds
            if self.recorder.elapsed_seconds < minimum:
                self._fail(
                    RecordingTooShortError(
                        f"Please record for at least {minimum:g} seconds"
                    )
                )
                return False
            try:
                blob = self.recorder.stop()
            except PracticeError as exc:
                s.cancel_recording(s.index)
                self._fail(exc)
                return False
            if blob is None:
                s.cancel_recording(s.index)
                return False
            s.store_recording(s.index, blob)
        self.notify(
            "info",
            "Recording Saved",
            "You can play it back before submitting.",
        )
        return True

    def play_recording(self) -> bool:
        with self._lock:
            s = self.session
            if s is None:
                return False
            recording = s.state().recording
            if recording is None:
                self._fail(PracticeError("Please record your response first"))
                return False
            if self.review_player is None:
                self.review_player = AudioPlayer(
                    device_name=self.player.device_name, on_error=self._fail
                )
            try:
                if self.review_player.source != recording.url:
                    blob = s.urls.resolve(recording.url)
                    self.review_player.load_bytes(blob.data, source=recording.url)
                self.review_player.play()
            except PracticeError as exc:
                self._fail(exc)
                return False
        return True

    # ------------------------ submission ------------------------

    def _reference_audio(self, segment: DialogueSegment) -> bytes:
        cached = self._references.get(segment.id)
        if cached is not None:
            return cached
        if not segment.audio_url:
            raise AudioLoadError(f"Segment {segment.id} has no reference audio.")
        try:
            url = self.backend.get_signed_audio_url(segment.audio_url)
            raw = self.backend.download(url)
        except BackendError as exc:
            raise ScoringServiceError(f"Failed to get reference audio: {exc}") from exc
        self._references[segment.id] = raw
        return raw

    def submit_current(self) -> Optional[Future]:
        with self._lock:
            s = self.session
            if s is None:
                return None
            index = s.index
            state = s.state(index)
            if state.status is not SegmentStatus.RECORDED or state.recording is None:
                self._fail(PracticeError("Please record your response first"))
                return None
            blob = state.recording.blob
            if blob.duration_seconds < self.policy.min_recording_seconds:
                self._fail(RecordingTooShortError("Recording is too short, please re-record"))
                return None
            attempt = s.begin_submission(index)
            segment = s.current
            repeat_count = state.repeat_count
            future = self._executor.submit(
                self._score,
                s,
                self.dialogue.id,
                index,
                attempt,
                segment,
                blob,
                repeat_count,
            )
            self._futures[index] = future

            if (
                not self.policy.strict_advance
                and self.policy.auto_advance
                and s.index == index
                and not s.is_last
            ):
                s.next()
        logger.info("Submitted segment %s (attempt %s)", index, attempt)
        return future

    def _score(
        self,
        session: SegmentSessionState,
        dialogue_id: str,
        index: int,
        attempt: int,
        segment: DialogueSegment,
        blob: AudioBlob,
        repeat_count: int,
    ) -> Optional[ScoringResult]:
        result: Optional[ScoringResult] = None
        error: Optional[PracticeError] = None
        try:
            request = ScoreRequest(
                user_id=self.user_id,
                dialogue_id=dialogue_id,
                segment_id=segment.id,
                segment_index=index,
                reference_text=segment.text_content,
                reference_audio=self._reference_audio(segment),
                student_audio=blob.data,
                language=self.language,
                repeat_count=repeat_count,
                audio_format=blob.mime_type,
            )
            result = self.gateway.score_segment(request)
        except PracticeError as exc:
            error = exc
        except Exception as exc:
            logger.exception("Unexpected scoring failure for segment %s", index)
            error = ScoringServiceError(str(exc))

        with self._lock:
            s = self.session
            if s is not session:
                return None
            if error is not None:
                if s.submission_failed(index, attempt):
                    self._fail(error, silent=self.policy.on_scoring_failure == "silent")
                result = None
            elif not s.record_result(index, attempt, result):
                result = None
            else:
                self.notify(
                    "success",
                    "Segment Submitted!",
                    f"Segment {index + 1} has been scored.",
                )
                if (
                    self.policy.strict_advance
                    and self.policy.auto_advance
                    and s.index == index
                    and not s.is_last
                ):
                    s.next()
            auto_finish = self._ready_to_auto_finish()
            if auto_finish:
                self._begin_finish()

        if auto_finish:
            self._finish()
        return result

    def _ready_to_auto_finish(self) -> bool:
        s = self.session
        if not self.policy.auto_finish or self._finishing or self.complete:
            return False
        if s.pending():
            return False
        last = s.state(len(s) - 1)
        if last.result is not None:
            return True
        return last.failed and self.policy.on_scoring_failure == "silent"

    # ------------------------ repeat / navigation ------------------------

    def repeat_current(self) -> bool:
        with self._lock:
            s = self.session
            if s is None:
                return False
            if s.status() not in REPEATABLE:
                self._fail(PracticeError("Nothing recorded to repeat yet."))
                return False
            count = s.repeat(s.index)
            self._futures.pop(s.index, None)
            if self.review_player is not None:
                self.review_player.stop()
        self.notify("info", "Repeat", f"Attempt {count + 1}: play the segment again")
        return True

    def next(self) -> bool:
        with self._lock:
            s = self.session
            if s is None or s.is_last:
                return False
            blocker = self._advance_blocker()
            if blocker is not None:
                self._fail(blocker)
                return False
            self._cancel_media()
            return s.next()

    def previous(self) -> bool:
        with self._lock:
            s = self.session
            if s is None or s.is_first:
                return False
            self._cancel_media()
            return s.previous()

    # ------------------------ results ------------------------

    def _finish_inputs(self) -> Tuple[List[str], bool]:
        s = self.session
        if s is None:
            raise SessionIncompleteError("No practice session is running.")
        unscored = s.unscored()
        if self.policy.strict_advance and unscored:
            raise SessionIncompleteError(
                "Complete every segment before getting results "
                f"({len(unscored)} remaining)."
            )
        if self.policy.on_scoring_failure == "block" and s.failed():
            raise NavigationBlockedError("Resubmit the segments that failed to score.")
        answer_ids = s.answer_ids()
        if not answer_ids:
            raise SessionIncompleteError("No submitted answers found.")
        return answer_ids, bool(unscored)

    def finish(self) -> Optional[SessionResult]:
        with self._lock:
            if self.session is None:
                return None
            if self.complete:
                return self.result
            pending = [f for f in self._futures.values() if not f.done()]
        if pending and not self.policy.strict_advance:
            wait(pending)
        with self._lock:
            if self.complete:
                return self.result
            running = self._finishing
            if not running:
                self._begin_finish()
            done = self._finish_done
        if running:
            done.wait()
            return self.result
        return self._finish()

    def _begin_finish(self) -> None:
        self._finishing = True
        self._finish_done = threading.Event()

    def _end_finish(self) -> None:
        with self._lock:
            self._finishing = False
            self._finish_done.set()

    def _finish(self) -> Optional[SessionResult]:
        try:
            with self._lock:
                try:
                    answer_ids, degraded = self._finish_inputs()
                except PracticeError as exc:
                    self._fail(exc)
                    return None
                self._cancel_media()
            if degraded:
                logger.warning("Computing a partial result from %s answers", len(answer_ids))
            try:
                result = self.gateway.compute_session_result(
                    self.user_id, answer_ids, degraded=degraded
                )
            except PracticeError as exc:
                self._fail(exc)
                return None
            with self._lock:
                self.result = result
        finally:
            self._end_finish()
        self.notify("success", "Practice Complete!", "Your practice session has been evaluated.")
        if self.on_complete is not None:
            self.on_complete(result)
        return result
