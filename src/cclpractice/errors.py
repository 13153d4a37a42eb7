"""Error types raised by the practice client."""

from __future__ import annotations


class PracticeError(Exception):
    """Base class for every error the controller turns into a notification."""

    title = "Error"


class ConfigError(PracticeError):
    title = "Configuration Error"


class BackendError(PracticeError):
    title = "Backend Error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AudioLoadError(PracticeError):
    title = "Audio Unavailable"


class AudioPlaybackError(PracticeError):
    title = "Playback Error"


class MicrophoneAccessError(PracticeError):
    title = "Microphone Error"


class RecorderBusyError(PracticeError):
    title = "Already Recording"


class RecordingTooShortError(PracticeError):
    title = "Recording Too Short"


class ScoringServiceError(PracticeError):
    title = "Submission Error"


class InvalidTransitionError(PracticeError):
    title = "Not Allowed"


class NavigationBlockedError(PracticeError):
    title = "Not Yet"


class SessionIncompleteError(PracticeError):
    title = "Session Incomplete"
