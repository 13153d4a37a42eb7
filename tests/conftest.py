import threading
from concurrent.futures import Future

import numpy as np
import pytest

from cclpractice.config import SessionPolicy
from cclpractice.controller import SessionController
from cclpractice.errors import ScoringServiceError
from cclpractice.models import Dialogue, DialogueSegment, ScoringResult, SegmentScores, SessionResult
from cclpractice.player import AudioPlayer
from cclpractice.recorder import Recorder


class FakeCallbackStop(Exception):
    pass


class FakeOutputStream:
    blocksize = 512

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.finished_callback = kwargs["finished_callback"]
        self.active = False
        self.closed = False
        self.stop_calls = 0

    def start(self):
        self.active = True

    def stop(self):
        self.stop_calls += 1
        if self.active:
            self.active = False
            self.finished_callback()

    def close(self):
        self.closed = True

    def pump(self, blocks=1):
        for _ in range(blocks):
            out = np.zeros((self.blocksize, 1), dtype=np.float32)
            self.callback(out, self.blocksize, None, None)

    def drain(self):
        while True:
            out = np.zeros((self.blocksize, 1), dtype=np.float32)
            try:
                self.callback(out, self.blocksize, None, None)
            except FakeCallbackStop:
                break
        self.active = False
        self.finished_callback()


class FakeInputStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True

    def feed(self, seconds, value=7):
        frames = int(seconds * self.kwargs["samplerate"])
        indata = np.full((frames, 1), value, dtype=np.int16)
        self.callback(indata, frames, None, None)


class StreamLog:
    def __init__(self, cls):
        self.cls = cls
        self.streams = []

    def __call__(self, **kwargs):
        stream = self.cls(**kwargs)
        self.streams.append(stream)
        return stream

    @property
    def last(self):
        return self.streams[-1]


def fake_decoder(_raw):
    return np.linspace(-0.5, 0.5, 1000, dtype=np.float32), 8000


FAKE_DEVICES = [{"name": "Built-in Mic", "index": 0}, {"name": "USB Headset", "index": 3}]


class SyncExecutor:
    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class FakeBackend:
    def __init__(self, segments):
        self.segments = segments
        self.signed = []
        self.downloads = []

    def get_dialogue_segments(self, dialogue_id):
        return list(self.segments)

    def get_signed_audio_url(self, path, expiry_seconds=None):
        self.signed.append(path)
        return f"https://storage.test/{path}?token=abc"

    def download(self, url):
        self.downloads.append(url)
        return b"RIFF-reference-" + url.encode()


class FakeGateway:
    def __init__(self):
        self.requests = []
        self.result_calls = []
        self.fail_segments = set()
        self.fail_result = False
        self.gates = {}

    def score_segment(self, request):
        self.requests.append(request)
        gate = self.gates.get(request.segment_index)
        if gate is not None:
            gate.wait(5)
        if request.segment_index in self.fail_segments:
            raise ScoringServiceError("scoring backend unavailable")
        return ScoringResult(
            segment_index=request.segment_index,
            segment_id=request.segment_id,
            answer_id=f"ans-{request.segment_id}-{request.repeat_count}",
            scores=SegmentScores.from_payload({"accuracy_score": 8, "final_score": 8}),
            feedback="Good",
            repeat_count=request.repeat_count,
        )

    def compute_session_result(self, user_id, answer_ids, degraded=False):
        self.result_calls.append(list(answer_ids))
        if self.fail_result:
            raise ScoringServiceError("result service down")
        return SessionResult(
            score=72.0,
            overall_feedback="Solid work",
            answer_ids=list(answer_ids),
            degraded=degraded,
        )


def run_now(fn):
    fn()


def make_segments(count):
    return [
        DialogueSegment(
            id=f"seg-{i}",
            dialogue_id="dlg-1",
            segment_order=i,
            text_content=f"Line {i}",
            audio_url=f"dlg-1/seg-{i}.mp3",
        )
        for i in range(count)
    ]


class Harness:
    def __init__(self, count=3, policy=None, executor=None, dispatch=run_now):
        self.backend = FakeBackend(make_segments(count))
        self.gateway = FakeGateway()
        self.outputs = StreamLog(FakeOutputStream)
        self.inputs = StreamLog(FakeInputStream)
        self.notes = []
        self.completed = []
        self.done = threading.Event()
        self.player = AudioPlayer(
            backend=self.backend,
            stream_factory=self.outputs,
            callback_stop=FakeCallbackStop,
            decoder=fake_decoder,
        )
        self.recorder = Recorder(
            sample_rate_hz=8000,
            stream_factory=self.inputs,
            devices=lambda: FAKE_DEVICES,
        )
        self.controller = SessionController(
            backend=self.backend,
            gateway=self.gateway,
            player=self.player,
            recorder=self.recorder,
            user_id="user-1",
            language="Punjabi",
            policy=policy or SessionPolicy.strict(),
            notify=lambda level, title, message: self.notes.append((level, title, message)),
            on_complete=self._complete,
            executor=executor or SyncExecutor(),
            dispatch=dispatch,
        )
        self.dialogue = Dialogue(id="dlg-1", title="At the clinic")

    def _complete(self, result):
        self.completed.append(result)
        self.done.set()

    def start(self):
        assert self.controller.start(self.dialogue)
        return self.controller

    def record(self, seconds=1.5):
        """Play the reference to its end and speak for ``seconds``."""
        assert self.controller.play_current()
        self.outputs.last.drain()
        self.inputs.last.feed(seconds)
        assert self.controller.stop_recording()

    def errors(self):
        return [n for n in self.notes if n[0] == "error"]


@pytest.fixture
def harness():
    return Harness()
