"""Caller-facing voice session: conversation gate, capture and transcription wiring."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .controller import CaptureSessionController, SessionConfig
from .conversation import ConversationGate
from .errors import CaptureError, ErrorKind
from .interfaces import Conversation, ListeningIndicator, NativeCapture, SpeechToText
from .models import CaptureSession, ConversationDecision, ProviderSelection, SessionSnapshot
from .pipeline import SegmentPolicy, TranscriptionPipeline


@dataclass(slots=True)
class StartOutcome:
    """Result of a start request as seen by the host application."""

    started: bool
    awaiting_choice: bool = False
    error: ErrorKind | None = None
    detail: str | None = None
    session: CaptureSession | None = None


class VoiceSession:
    """Coordinates one microphone, one STT capability and one conversation."""

    def __init__(
        self,
        capture: NativeCapture,
        stt: SpeechToText,
        selection: ProviderSelection | Callable[[], ProviderSelection],
        conversation: Conversation,
        *,
        config: SessionConfig | None = None,
        segment_policy: SegmentPolicy = SegmentPolicy.QUEUE,
        stt_timeout_seconds: float = 30.0,
        indicator: ListeningIndicator | None = None,
        on_transcription: Callable[[str], None] | None = None,
        on_error: Callable[[ErrorKind, str], None] | None = None,
        on_cancel: Callable[[], None] | None = None,
        on_tick: Callable[[float], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._capture = capture
        self._conversation = conversation
        self._on_transcription_callback = on_transcription
        self._on_error = on_error
        self._logger = logger or logging.getLogger("voice_session.session")

        self._gate = ConversationGate(conversation)
        self._pending_device_id: str | None = None
        self._pipeline = TranscriptionPipeline(
            stt,
            selection,
            policy=segment_policy,
            timeout_seconds=stt_timeout_seconds,
        )
        self._controller = CaptureSessionController(
            capture,
            self._pipeline,
            config=config,
            indicator=indicator,
            on_transcription=self._on_transcription,
            on_error=on_error,
            on_cancel=on_cancel,
            on_tick=on_tick,
        )

    @property
    def controller(self) -> CaptureSessionController:
        return self._controller

    @property
    def gate(self) -> ConversationGate:
        return self._gate

    @property
    def listening(self) -> bool:
        return self._controller.listening

    @property
    def transcribing(self) -> bool:
        return self._controller.transcribing

    @property
    def elapsed(self) -> float:
        return self._controller.elapsed_seconds

    def snapshot(self) -> SessionSnapshot:
        return self._controller.snapshot()

    async def start_session(self, device_id: str | None = None) -> StartOutcome:
        """Start capture, or wait for a continue/new choice when a chat exists."""
        if self._controller.listening:
            return StartOutcome(started=False, error=ErrorKind.ALREADY_ACTIVE, detail="Mic capture already running")

        if self._gate.begin() == ConversationDecision.PENDING:
            self._pending_device_id = device_id
            return StartOutcome(started=False, awaiting_choice=True)
        return await self._start_capture(device_id)

    async def choose(self, decision: ConversationDecision) -> StartOutcome:
        """Resolve a pending conversation choice and start capture."""
        self._gate.resolve(decision)
        device_id, self._pending_device_id = self._pending_device_id, None
        return await self._start_capture(device_id)

    async def stop_session(self) -> None:
        self._gate.cancel()
        self._pending_device_id = None
        await self._controller.stop()

    async def send(self) -> None:
        """Finalize the recording now, as the duration ceiling would."""
        await self._controller.finalize()

    async def change_device(self, device_id: str | None) -> StartOutcome:
        try:
            session = await self._controller.change_device(device_id)
        except CaptureError as exc:
            return self._start_failed(exc)
        return StartOutcome(started=True, session=session)

    def response_started(self) -> None:
        self._controller.response_started()

    def response_finished(self) -> None:
        self._controller.response_finished()

    async def join(self) -> None:
        await self._controller.join()

    async def aclose(self) -> None:
        self._gate.cancel()
        await self._controller.aclose()

    async def _start_capture(self, device_id: str | None) -> StartOutcome:
        try:
            session = await self._controller.start(device_id)
        except CaptureError as exc:
            return self._start_failed(exc)
        return StartOutcome(started=True, session=session)

    def _start_failed(self, exc: CaptureError) -> StartOutcome:
        if exc.kind == ErrorKind.ALREADY_ACTIVE:
            self._logger.debug("start_already_active")
        else:
            self._logger.warning("start_failed", extra={"kind": exc.kind.value, "detail": exc.message})
            self._notify_error(exc.kind, exc.message)
        return StartOutcome(started=False, error=exc.kind, detail=exc.message)

    def _notify_error(self, kind: ErrorKind, detail: str) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(kind, detail)
        except Exception:  # noqa: BLE001 - host callbacks must not break the session.
            self._logger.exception("callback_failed")

    def _on_transcription(self, text: str) -> None:
        self._conversation.submit(text)
        if self._on_transcription_callback is not None:
            self._on_transcription_callback(text)
