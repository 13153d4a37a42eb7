"""Microphone capture into a single encoded blob."""

from __future__ import annotations

import io
import logging
import threading
import wave
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .errors import MicrophoneAccessError, RecorderBusyError
from .models import AudioBlob

logger = logging.getLogger(__name__)

CHANNELS = 1
SAMPLE_WIDTH = 2


def list_input_devices() -> List[Dict[str, Any]]:
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise MicrophoneAccessError("sounddevice is required for recording.") from exc

    try:
        devices = sd.query_devices()
    except sd.PortAudioError as exc:  # pragma: no cover - environment-dependent
        raise MicrophoneAccessError(f"Audio devices unavailable: {exc}") from exc
    result = []
    for index, device in enumerate(devices):
        if device.get("max_input_channels", 0) > 0:
            info = dict(device)
            info.setdefault("index", index)
            result.append(info)
    return result


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise MicrophoneAccessError("No input devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]
        logger.warning("Input device %r not found, using default", prefer_name)
    return candidates[0]


def encode_wav(samples: np.ndarray, sample_rate_hz: int) -> bytes:
    if samples.dtype != np.int16:
        samples = samples.astype(np.int16)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(CHANNELS)
        handle.setsampwidth(SAMPLE_WIDTH)
        handle.setframerate(sample_rate_hz)
        handle.writeframes(samples.tobytes())
    return buffer.getvalue()


def _default_stream_factory(**kwargs):
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise MicrophoneAccessError("sounddevice is required for recording.") from exc
    return sd.InputStream(**kwargs)


class Recorder:
    """
    One microphone capture at a time. ``start()`` opens a mono int16 input
    stream and buffers a chunk every ``chunk_interval_ms``; ``stop()`` releases
    the device and returns the take as a WAV AudioBlob.
    """

    def __init__(
        self,
        sample_rate_hz: int = 24000,
        chunk_interval_ms: int = 100,
        device_name: Optional[str] = None,
        echo_cancellation: bool = True,
        noise_suppression: bool = True,
        on_stop: Optional[Callable[[AudioBlob], None]] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        devices: Optional[Callable[[], List[Dict[str, Any]]]] = None,
    ):
        self.sample_rate_hz = sample_rate_hz
        self.chunk_interval_ms = chunk_interval_ms
        self.device_name = device_name
        self.constraints = {
            "channels": CHANNELS,
            "echo_cancellation": echo_cancellation,
            "noise_suppression": noise_suppression,
        }
        self.on_stop = on_stop
        self._stream_factory = stream_factory or _default_stream_factory
        self._devices = devices or list_input_devices
        self._stream = None
        self._chunks: List[np.ndarray] = []
        self._frames = 0
        self._lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        return self._stream is not None

    @property
    def elapsed_seconds(self) -> float:
        return self._frames / float(self.sample_rate_hz)

    @property
    def blocksize(self) -> int:
        return max(1, int(self.sample_rate_hz * self.chunk_interval_ms / 1000))

    def _callback(self, indata, frames, _time, status) -> None:
        if status:
            logger.debug("Input status: %s", status)
        with self._lock:
            self._chunks.append(np.array(indata, dtype=np.int16, copy=True).reshape(-1))
            self._frames += frames

    def start(self) -> None:
        if self._stream is not None:
            raise RecorderBusyError("A recording is already in progress.")

        device = select_preferred_device(self._devices(), prefer_name=self.device_name)
        with self._lock:
            self._chunks = []
            self._frames = 0
        try:
            stream = self._stream_factory(
                samplerate=self.sample_rate_hz,
                channels=CHANNELS,
                dtype="int16",
                device=device.get("index"),
                blocksize=self.blocksize,
                callback=self._callback,
            )
        except MicrophoneAccessError:
            raise
        except Exception as exc:
            raise MicrophoneAccessError(
                f"Failed to open microphone {device.get('name', '')!r}: {exc}"
            ) from exc
        try:
            stream.start()
        except Exception as exc:
            stream.close()
            raise MicrophoneAccessError(f"Failed to start recording: {exc}") from exc

        self._stream = stream
        logger.info(
            "Recording started on %s (%s Hz, constraints=%s)",
            device.get("name", "?"),
            self.sample_rate_hz,
            self.constraints,
        )

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        try:
            try:
                stream.stop()
            finally:
                stream.close()
        except Exception as exc:
            with self._lock:
                self._chunks = []
                self._frames = 0
            raise MicrophoneAccessError(f"Microphone stream failed: {exc}") from exc

    def stop(self) -> Optional[AudioBlob]:
        if self._stream is None:
            return None
        self._release()

        with self._lock:
            chunks, self._chunks = self._chunks, []
            frames = self._frames
        samples = np.concatenate(chunks) if chunks else np.zeros((0,), dtype=np.int16)
        blob = AudioBlob(
            data=encode_wav(samples, self.sample_rate_hz),
            mime_type="audio/wav",
            duration_seconds=frames / float(self.sample_rate_hz),
        )
        logger.info("Recording stopped: %.2fs, %s bytes", blob.duration_seconds, blob.size)
        if self.on_stop is not None:
            self.on_stop(blob)
        return blob

    def cancel(self) -> None:
        """Stop capturing and discard the take."""
        if self._stream is None:
            return
        self._release()
        with self._lock:
            self._chunks = []
            self._frames = 0
        logger.info("Recording cancelled")
