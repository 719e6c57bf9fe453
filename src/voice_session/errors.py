"""Error kinds surfaced by capture and transcription orchestration."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classified failures reported to the host application."""

    DEVICE_UNAVAILABLE = "device_unavailable"
    ALREADY_ACTIVE = "already_active"
    NO_PROVIDER_CONFIGURED = "no_provider_configured"
    MALFORMED_AUDIO = "malformed_audio"
    TRANSCRIPTION_FAILED = "transcription_failed"


class VoiceSessionError(RuntimeError):
    """Base error carrying a classified kind and a human-readable message."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class CaptureError(VoiceSessionError):
    """Raised when native capture cannot be started."""


class TranscriptionError(VoiceSessionError):
    """Raised when one speech segment cannot be turned into text."""
