import threading
from concurrent.futures import ThreadPoolExecutor

from cclpractice.config import SessionPolicy
from cclpractice.errors import NavigationBlockedError, RecordingTooShortError
from cclpractice.models import DialogueSegment
from cclpractice.player import AudioPlayer
from cclpractice.state import SegmentStatus

from conftest import FakeCallbackStop, FakeOutputStream, Harness, StreamLog, fake_decoder


def test_strict_flow_next_enabled_only_after_score():
    executor = ThreadPoolExecutor(max_workers=1)
    h = Harness(count=3, policy=SessionPolicy.strict(auto_advance=False), executor=executor)
    ctrl = h.start()
    gate = threading.Event()
    h.gateway.gates[0] = gate

    assert ctrl.play_current()
    assert ctrl.status is SegmentStatus.PLAYING_REFERENCE
    h.outputs.last.drain()
    assert ctrl.status is SegmentStatus.RECORDING
    h.inputs.last.feed(2.0)
    assert ctrl.stop_recording()
    assert ctrl.status is SegmentStatus.RECORDED

    future = ctrl.submit_current()
    assert ctrl.status is SegmentStatus.SUBMITTING
    assert not ctrl.next()
    assert isinstance(ctrl.last_error, NavigationBlockedError)
    assert ctrl.index == 0

    gate.set()
    result = future.result(timeout=5)
    assert result.segment_id == "seg-0"
    assert ctrl.status is SegmentStatus.SCORED
    assert ctrl.next()
    assert ctrl.index == 1
    executor.shutdown()


def test_strict_flow_auto_advances_after_score(harness):
    ctrl = harness.start()
    harness.record()
    future = ctrl.submit_current()
    assert future.result().answer_id == "ans-seg-0-0"
    assert ctrl.index == 1
    assert ctrl.session.status(0) is SegmentStatus.SCORED


def test_strict_finish_blocked_until_every_segment_scored(harness):
    ctrl = harness.start()
    harness.record()
    ctrl.submit_current()

    assert ctrl.finish() is None
    assert harness.gateway.result_calls == []
    assert harness.errors()[-1][1] == "Session Incomplete"

    harness.record()
    ctrl.submit_current()
    harness.record()
    ctrl.submit_current()

    result = ctrl.finish()
    assert result is not None
    assert len(ctrl.session.results()) == 3
    assert harness.gateway.result_calls == [["ans-seg-0-0", "ans-seg-1-0", "ans-seg-2-0"]]
    assert harness.completed == [result]
    assert not result.degraded


def test_relaxed_flow_advances_and_aggregates_after_both_resolve():
    executor = ThreadPoolExecutor(max_workers=2)
    h = Harness(count=2, policy=SessionPolicy.relaxed(), executor=executor)
    ctrl = h.start()
    gate = threading.Event()
    h.gateway.gates[0] = gate

    h.record()
    first = ctrl.submit_current()
    assert ctrl.index == 1
    assert ctrl.session.status(0) is SegmentStatus.SUBMITTING

    h.record()
    second = ctrl.submit_current()
    second.result(timeout=5)
    assert h.completed == []
    assert h.gateway.result_calls == []

    gate.set()
    first.result(timeout=5)
    assert h.done.wait(5)
    assert h.gateway.result_calls == [["ans-seg-0-0", "ans-seg-1-0"]]
    assert ctrl.result.score == 72.0
    executor.shutdown()


def test_relaxed_flow_degrades_when_a_score_fails_silently():
    h = Harness(count=2, policy=SessionPolicy.relaxed(on_scoring_failure="silent"))
    ctrl = h.start()
    h.gateway.fail_segments.add(0)

    h.record()
    ctrl.submit_current()
    assert ctrl.index == 1
    h.record()
    ctrl.submit_current()

    assert h.errors() == []
    assert len(h.completed) == 1
    assert h.completed[0].degraded
    assert h.gateway.result_calls == [["ans-seg-1-0"]]


def test_relaxed_finish_proceeds_with_partial_answers():
    h = Harness(count=3, policy=SessionPolicy.relaxed(auto_finish=False))
    ctrl = h.start()
    h.record()
    ctrl.submit_current()

    result = ctrl.finish()
    assert result.degraded
    assert h.gateway.result_calls == [["ans-seg-0-0"]]


def test_finish_with_no_answers_is_rejected():
    h = Harness(count=2, policy=SessionPolicy.relaxed())
    h.start()
    assert h.controller.finish() is None
    assert h.gateway.result_calls == []


def test_repeat_count_reaches_scoring_payload(harness):
    ctrl = harness.start()
    harness.record()
    first_url = ctrl.session.state().recording.url
    assert ctrl.repeat_current()
    assert first_url not in ctrl.session.urls.active
    harness.record()
    assert ctrl.repeat_current()
    harness.record()

    ctrl.submit_current().result()
    assert harness.gateway.requests[-1].repeat_count == 2
    assert len(ctrl.session.urls.active) == 1


def test_retry_policy_keeps_recording_for_resubmission(harness):
    ctrl = harness.start()
    harness.gateway.fail_segments.add(0)
    harness.record()
    recording = ctrl.session.state().recording

    ctrl.submit_current()
    assert ctrl.status is SegmentStatus.RECORDED
    assert ctrl.session.state().recording is recording
    assert harness.errors()[-1][1] == "Submission Error"

    harness.gateway.fail_segments.clear()
    assert ctrl.submit_current().result().segment_id == "seg-0"
    assert ctrl.session.status(0) is SegmentStatus.SCORED


def test_block_policy_stops_navigation_after_failure():
    policy = SessionPolicy.relaxed(on_scoring_failure="block", auto_advance=False)
    h = Harness(count=3, policy=policy)
    ctrl = h.start()
    h.gateway.fail_segments.add(0)
    h.record()
    ctrl.submit_current()

    assert not ctrl.next()
    assert isinstance(ctrl.last_error, NavigationBlockedError)

    h.gateway.fail_segments.clear()
    ctrl.submit_current()
    assert ctrl.next()


def test_navigation_is_bounded_and_cancels_recording():
    harness = Harness(count=3, policy=SessionPolicy.relaxed(auto_finish=False))
    ctrl = harness.start()
    assert not ctrl.previous()
    assert harness.errors() == []

    assert ctrl.play_current()
    harness.outputs.last.drain()
    assert ctrl.status is SegmentStatus.RECORDING
    stream = harness.inputs.last

    assert ctrl.next()
    assert stream.closed
    assert not harness.recorder.is_recording
    assert ctrl.session.status(0) is SegmentStatus.IDLE

    assert ctrl.next()
    assert ctrl.index == 2
    assert not ctrl.next()
    assert ctrl.index == 2


def test_navigation_pauses_reference_playback():
    h = Harness(count=2, policy=SessionPolicy.relaxed())
    ctrl = h.start()
    assert ctrl.play_current()
    h.outputs.last.pump()
    assert ctrl.next()
    assert not h.player.playing
    assert ctrl.session.status(0) is SegmentStatus.IDLE
    assert not h.recorder.is_recording


def test_stop_recording_too_short_keeps_recording(harness):
    ctrl = harness.start()
    ctrl.play_current()
    harness.outputs.last.drain()
    harness.inputs.last.feed(0.4)

    assert not ctrl.stop_recording()
    assert isinstance(ctrl.last_error, RecordingTooShortError)
    assert ctrl.status is SegmentStatus.RECORDING

    harness.inputs.last.feed(0.8)
    assert ctrl.stop_recording()


def test_pause_and_stop_are_noops_when_idle(harness):
    ctrl = harness.start()
    assert not ctrl.pause_current()
    assert not ctrl.stop_recording()
    assert ctrl.status is SegmentStatus.IDLE
    assert harness.notes == []


def test_microphone_failure_returns_segment_to_idle(harness):
    def broken(**_kwargs):
        raise OSError("permission denied")

    harness.recorder._stream_factory = broken
    ctrl = harness.start()
    ctrl.play_current()
    harness.outputs.last.drain()

    assert ctrl.status is SegmentStatus.IDLE
    assert harness.errors()[-1][1] == "Microphone Error"


def test_audio_load_failure_is_reported(harness):
    harness.backend.segments[0] = DialogueSegment(
        id="seg-0", dialogue_id="dlg-1", segment_order=0, text_content="Line 0"
    )
    ctrl = harness.start()

    assert not ctrl.play_current()
    assert ctrl.status is SegmentStatus.IDLE
    assert harness.errors()[-1][1] == "Audio Unavailable"


def test_submit_uses_loaded_reference_audio(harness):
    ctrl = harness.start()
    harness.record()
    ctrl.submit_current()

    request = harness.gateway.requests[0]
    assert request.reference_audio.startswith(b"RIFF-reference-")
    assert request.student_audio.startswith(b"RIFF")
    assert request.language == "Punjabi"
    assert len(harness.backend.downloads) == 1


def test_play_recording_is_byte_identical_to_the_take(harness):
    decoded = []

    def capture(raw):
        decoded.append(raw)
        return fake_decoder(raw)

    outputs = StreamLog(FakeOutputStream)
    ctrl = harness.start()
    ctrl.review_player = AudioPlayer(
        stream_factory=outputs, callback_stop=FakeCallbackStop, decoder=capture
    )
    harness.record()

    assert ctrl.play_recording()
    assert decoded == [ctrl.session.state().recording.blob.data]
    assert outputs.last.active


def test_close_revokes_every_object_url(harness):
    ctrl = harness.start()
    harness.record()
    urls = ctrl.session.urls
    assert urls.active
    ctrl.close()
    assert urls.active == []
    assert ctrl.session is None


def _lose_device(stream):
    def stop():
        raise OSError("device lost")

    stream.stop = stop


def test_device_loss_on_stop_is_reported_and_segment_resets(harness):
    ctrl = harness.start()
    ctrl.play_current()
    harness.outputs.last.drain()
    harness.inputs.last.feed(1.5)
    stream = harness.inputs.last
    _lose_device(stream)

    assert not ctrl.stop_recording()
    assert ctrl.status is SegmentStatus.IDLE
    assert harness.errors()[-1][1] == "Microphone Error"
    assert stream.closed
    assert not harness.recorder.is_recording

    harness.record()
    assert ctrl.status is SegmentStatus.RECORDED


def test_device_loss_during_navigation_is_reported():
    h = Harness(count=2, policy=SessionPolicy.relaxed(auto_finish=False))
    ctrl = h.start()
    ctrl.play_current()
    h.outputs.last.drain()
    _lose_device(h.inputs.last)

    assert ctrl.next()
    assert ctrl.index == 1
    assert ctrl.session.status(0) is SegmentStatus.IDLE
    assert h.errors()[-1][1] == "Microphone Error"


def test_reference_stream_dying_early_is_reported_and_replayable(harness):
    ctrl = harness.start()
    assert ctrl.play_current()
    stream = harness.outputs.last
    stream.pump()
    stream.active = False
    stream.finished_callback()

    assert harness.errors()[-1][1] == "Playback Error"
    assert ctrl.status is SegmentStatus.IDLE
    assert not harness.player.playing
    assert not harness.recorder.is_recording

    assert ctrl.play_current()
    assert ctrl.status is SegmentStatus.PLAYING_REFERENCE


def test_block_policy_stops_finish_until_resubmitted():
    policy = SessionPolicy.relaxed(on_scoring_failure="block", auto_finish=False)
    h = Harness(count=1, policy=policy)
    ctrl = h.start()
    h.gateway.fail_segments.add(0)
    h.record()
    ctrl.submit_current()

    assert ctrl.finish() is None
    assert isinstance(ctrl.last_error, NavigationBlockedError)
    assert h.errors()[-1][1] == "Not Yet"
    assert h.gateway.result_calls == []

    h.gateway.fail_segments.clear()
    ctrl.submit_current()
    result = ctrl.finish()
    assert result is not None
    assert not result.degraded
    assert h.gateway.result_calls == [["ans-seg-0-0"]]


def test_reference_end_handled_on_one_media_thread():
    h = Harness(count=2, policy=SessionPolicy.relaxed(auto_finish=False), dispatch=None)
    ctrl = h.start()
    threads = []
    ctrl.notify = lambda level, title, message: (
        threads.append(threading.current_thread().name)
        if title == "Recording Started"
        else None
    )

    for _ in range(2):
        assert ctrl.play_current()
        h.outputs.last.drain()
        ctrl._media.submit(lambda: None).result(timeout=5)
        assert ctrl.status is SegmentStatus.RECORDING
        ctrl.next()

    assert len(threads) == 2
    assert len(set(threads)) == 1
    assert threads[0].startswith("cclpractice-media")
    ctrl.close()
