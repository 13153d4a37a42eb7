"""Reference audio playback."""

from __future__ import annotations

import io
import logging
import threading
from typing import Any, Callable, Optional, Tuple

import numpy as np

from .backend import BackendClient
from .errors import AudioLoadError, AudioPlaybackError, BackendError
from .models import DialogueSegment

logger = logging.getLogger(__name__)


def decode_audio(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode an encoded clip to mono float32 samples."""
    try:
        import soundfile as sf
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise AudioLoadError("soundfile is required for playback.") from exc

    try:
        samples, sr = sf.read(io.BytesIO(data), dtype="float32", always_2d=False)
    except Exception as exc:
        raise AudioLoadError(f"Could not decode audio: {exc}") from exc
    if samples.ndim > 1:
        samples = samples.mean(axis=1)
    return np.ascontiguousarray(samples, dtype=np.float32), int(sr)


def _default_stream_factory(**kwargs):
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise AudioPlaybackError("sounddevice is required for playback.") from exc
    return sd.OutputStream(**kwargs)


def _default_callback_stop():
    import sounddevice as sd

    return sd.CallbackStop


class AudioPlayer:
    """
    A single-clip player. ``load()`` fetches a segment's reference audio,
    ``play()`` streams it from the current position and ``on_ended`` fires
    once when the end is reached. Pausing never counts as ending.
    """

    def __init__(
        self,
        backend: Optional[BackendClient] = None,
        expiry_seconds: Optional[int] = None,
        device_name: Optional[str] = None,
        on_ended: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[AudioPlaybackError], None]] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        callback_stop: Optional[type] = None,
        decoder: Callable[[bytes], Tuple[np.ndarray, int]] = decode_audio,
    ):
        self.backend = backend
        self.expiry_seconds = expiry_seconds
        self.device_name = device_name
        self.on_ended = on_ended
        self.on_error = on_error
        self._stream_factory = stream_factory or _default_stream_factory
        self._callback_stop = callback_stop
        self._decoder = decoder

        self.data = np.zeros((0,), dtype=np.float32)
        self.sr = 0
        self.idx = 0
        self.source: Optional[str] = None
        self._stream = None
        self._playing = False
        self._play_token = 0
        self._lock = threading.RLock()

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def loaded(self) -> bool:
        return self.data.size > 0

    @property
    def position_seconds(self) -> float:
        return self.idx / float(self.sr) if self.sr else 0.0

    # ------------------------ loading ------------------------

    def load(self, segment: DialogueSegment) -> bytes:
        """Fetch and decode the segment's reference clip; returns the raw bytes."""
        if not segment.audio_url:
            raise AudioLoadError(f"Segment {segment.id} has no reference audio.")
        if self.backend is None:
            raise AudioLoadError("No backend configured for audio loading.")
        try:
            url = self.backend.get_signed_audio_url(segment.audio_url, self.expiry_seconds)
            raw = self.backend.download(url)
        except BackendError as exc:
            raise AudioLoadError(f"Failed to load audio for segment {segment.id}: {exc}") from exc
        self.load_bytes(raw, source=segment.audio_url)
        return raw

    def load_bytes(self, raw: bytes, source: Optional[str] = None) -> None:
        samples, sr = self._decoder(raw)
        if samples.size == 0:
            raise AudioLoadError("Audio clip is empty.")
        self.stop()
        with self._lock:
            self.data = samples
            self.sr = sr
            self.idx = 0
            self.source = source
        logger.debug("Loaded %s (%.2fs)", source or "clip", samples.size / float(sr))

    # ------------------------ transport ------------------------

    def _fill(self, outdata, frames, _time, status) -> None:
        if status:
            logger.debug("Output status: %s", status)
        end = self.idx + frames
        chunk = self.data[self.idx:end]
        n = chunk.shape[0]
        outdata[:n, 0] = chunk
        if n < frames:
            outdata[n:frames, 0] = 0
            self.idx = self.data.size
            raise self._stop_exception()
        self.idx = end

    def _stop_exception(self) -> type:
        if self._callback_stop is None:
            self._callback_stop = _default_callback_stop()
        return self._callback_stop

    def _finished(self, token: int) -> None:
        with self._lock:
            if token != self._play_token or not self._playing:
                return
            self._playing = False
            reached_end = self.idx >= self.data.size
        if reached_end:
            logger.debug("Playback ended")
            if self.on_ended is not None:
                self.on_ended()
            return
        error = AudioPlaybackError(
            f"Playback stopped unexpectedly at {self.position_seconds:.1f}s"
        )
        logger.warning("%s", error)
        if self.on_error is not None:
            self.on_error(error)

    def play(self) -> None:
        if not self.loaded:
            raise AudioPlaybackError("Nothing loaded to play.")
        self.pause()
        with self._lock:
            if self.idx >= self.data.size:
                self.idx = 0
            self._play_token += 1
            token = self._play_token
            self._stop_exception()
            try:
                stream = self._stream_factory(
                    samplerate=self.sr,
                    channels=1,
                    dtype="float32",
                    device=self.device_name,
                    callback=self._fill,
                    finished_callback=lambda: self._finished(token),
                )
                self._close_stream()
                self._stream = stream
                self._playing = True
                stream.start()
            except AudioPlaybackError:
                self._playing = False
                raise
            except Exception as exc:
                self._playing = False
                raise AudioPlaybackError(f"Failed to play audio: {exc}") from exc
        logger.info("Playing %s from %.2fs", self.source or "clip", self.position_seconds)

    def pause(self) -> None:
        with self._lock:
            if not self._playing:
                return
            self._playing = False
            self._play_token += 1
            stream = self._stream
        if stream is not None:
            try:
                stream.stop()
            except Exception as exc:
                self._report(AudioPlaybackError(f"Failed to pause audio: {exc}"))

    def stop(self) -> None:
        self.pause()
        self.idx = 0

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    def close(self) -> None:
        self.pause()
        with self._lock:
            self._close_stream()

    def _report(self, error: AudioPlaybackError) -> None:
        self._playing = False
        logger.warning("%s", error)
        if self.on_error is not None:
            self.on_error(error)
        else:
            raise error
