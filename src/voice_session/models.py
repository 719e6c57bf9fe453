from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import ErrorKind

DEFAULT_DEVICE_SENTINEL = "default"


class SessionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    STOPPED = "stopped"


class ConversationDecision(str, Enum):
    CONTINUE = "continue"
    NEW = "new"
    PENDING = "pending"


@dataclass(slots=True)
class CaptureSession:
    device_id: str | None
    generation: int
    state: SessionState = SessionState.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class SpeechSegment:
    payload: str | bytes
    sequence: int
    generation: int = 0


@dataclass(frozen=True, slots=True)
class STTProviderConfig:
    id: str
    endpoint: str | None = None
    api_key: str | None = None
    model: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProviderSelection:
    """Externally owned view of which STT provider should handle audio."""

    selected_provider: str | None = None
    providers: tuple[STTProviderConfig, ...] = ()
    managed_backend_enabled: bool = False

    def find(self, provider_id: str) -> STTProviderConfig | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None


@dataclass(frozen=True, slots=True)
class AudioClip:
    wav: bytes
    sample_rate: int
    channels: int
    frames: int

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frames / self.sample_rate


@dataclass(frozen=True, slots=True)
class TranscriptionRequest:
    audio: AudioClip
    provider: STTProviderConfig | None
    selected_provider: str | None = None


@dataclass(frozen=True, slots=True)
class TranscriptionOutcome:
    sequence: int
    text: str | None = None
    error: ErrorKind | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class MicDevice:
    id: str
    name: str
    is_default: bool = False


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    state: SessionState
    listening: bool
    transcribing: bool
    elapsed_seconds: float
    device_id: str | None = None


def normalize_device_id(device_id: str | None) -> str | None:
    """Map the ``"default"`` sentinel and blank ids to the system default (``None``)."""
    if device_id is None:
        return None
    cleaned = device_id.strip()
    if not cleaned or cleaned == DEFAULT_DEVICE_SENTINEL:
        return None
    return cleaned
