"""Contracts for native capture, speech-to-text and host collaborators."""

from typing import Callable, Protocol

from .models import MicDevice, TranscriptionRequest

SPEECH_DETECTED_EVENT = "mic-speech-detected"
CAPTURE_STARTED_EVENT = "mic-capture-started"
CAPTURE_STOPPED_EVENT = "mic-capture-stopped"


class NativeCapture(Protocol):
    """Microphone capture owned by the native audio layer."""

    def start_mic_capture(self, device_name: str | None) -> int:
        """Start streaming capture on ``device_name`` (system default when ``None``); return the sample rate."""

    def stop_mic_capture(self) -> None:
        """Stop capture; calling it while stopped is allowed."""

    def list_mic_devices(self) -> list[MicDevice]:
        """Enumerate input devices."""

    def is_mic_capturing(self) -> bool:
        """Return whether a capture stream is currently open."""

    def listen(self, event: str, handler: Callable[[object], None]) -> Callable[[], None]:
        """Register ``handler`` for a native event and return its unlisten function."""


class SpeechToText(Protocol):
    """Converts one canonical audio clip into text."""

    def fetch_stt(self, request: TranscriptionRequest) -> str:
        """Return recognized text, raising on provider failure."""


class ListeningIndicator(Protocol):
    """Push-only sink for the listening state."""

    def update(self, listening: bool) -> None:
        """Reflect the current listening state."""


class Conversation(Protocol):
    """Conversation the transcriptions are submitted into."""

    def has_existing_chat(self) -> bool:
        """Return whether a conversation with prior messages is open."""

    def reset(self) -> None:
        """Start a fresh, empty conversation."""

    def submit(self, text: str) -> None:
        """Submit transcribed user input."""
