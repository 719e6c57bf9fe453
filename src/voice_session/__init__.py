"""Voice capture sessions: native microphone capture, transcription and conversation hand-off."""

from .channel import SpeechEventChannel, SubscriptionHandle
from .controller import CaptureMode, CaptureSessionController, SessionConfig
from .conversation import ConversationGate, GateState, InMemoryConversation
from .duration import DurationGuard, format_elapsed
from .errors import CaptureError, ErrorKind, TranscriptionError, VoiceSessionError
from .interfaces import Conversation, ListeningIndicator, NativeCapture, SpeechToText
from .models import (
    AudioClip,
    CaptureSession,
    ConversationDecision,
    MicDevice,
    ProviderSelection,
    SessionSnapshot,
    SessionState,
    SpeechSegment,
    STTProviderConfig,
    TranscriptionOutcome,
    TranscriptionRequest,
)
from .pipeline import SegmentPolicy, TranscriptionPipeline
from .response_gate import ResponseWaitGate, ResponseWaitPolicy
from .session import StartOutcome, VoiceSession

__all__ = [
    "AudioClip",
    "CaptureError",
    "CaptureMode",
    "CaptureSession",
    "CaptureSessionController",
    "Conversation",
    "ConversationDecision",
    "ConversationGate",
    "DurationGuard",
    "ErrorKind",
    "GateState",
    "InMemoryConversation",
    "ListeningIndicator",
    "MicDevice",
    "NativeCapture",
    "ProviderSelection",
    "ResponseWaitGate",
    "ResponseWaitPolicy",
    "STTProviderConfig",
    "SegmentPolicy",
    "SessionConfig",
    "SessionSnapshot",
    "SessionState",
    "SpeechEventChannel",
    "SpeechSegment",
    "SpeechToText",
    "StartOutcome",
    "SubscriptionHandle",
    "TranscriptionError",
    "TranscriptionOutcome",
    "TranscriptionPipeline",
    "TranscriptionRequest",
    "VoiceSession",
    "VoiceSessionError",
    "format_elapsed",
]
