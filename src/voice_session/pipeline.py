"""Speech segment to text conversion with a single in-flight slot."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable

from .audio import decode_payload
from .errors import ErrorKind, TranscriptionError
from .interfaces import SpeechToText
from .models import (
    ProviderSelection,
    SpeechSegment,
    STTProviderConfig,
    TranscriptionOutcome,
    TranscriptionRequest,
)

OutcomeHandler = Callable[[SpeechSegment, TranscriptionOutcome], None]


class SegmentPolicy(str, Enum):
    """What happens to a segment that arrives while a transcription is in flight."""

    QUEUE = "queue"
    DROP = "drop"


def resolve_provider(selection: ProviderSelection) -> STTProviderConfig | None:
    """Return the provider config to use, or ``None`` for the managed backend."""
    if selection.managed_backend_enabled:
        return None

    if not selection.selected_provider:
        raise TranscriptionError(
            ErrorKind.NO_PROVIDER_CONFIGURED,
            "No speech provider selected. Please select one in settings.",
        )

    provider = selection.find(selection.selected_provider)
    if provider is None:
        raise TranscriptionError(
            ErrorKind.NO_PROVIDER_CONFIGURED,
            "Speech provider configuration not found. Please check your settings.",
        )
    return provider


class TranscriptionPipeline:
    """Turns speech segments into text through the configured STT capability.

    STT calls run on a single worker thread owned by the pipeline, so a call
    abandoned on timeout still blocks the next one from reaching the backend.
    """

    def __init__(
        self,
        stt: SpeechToText,
        selection: ProviderSelection | Callable[[], ProviderSelection],
        *,
        policy: SegmentPolicy = SegmentPolicy.QUEUE,
        timeout_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._stt = stt
        self._selection = selection
        self._policy = policy
        self._timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger("voice_session.pipeline")

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stt")
        self._task: asyncio.Task[None] | None = None
        self._pending: tuple[SpeechSegment, OutcomeHandler] | None = None

    @property
    def policy(self) -> SegmentPolicy:
        return self._policy

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def current_selection(self) -> ProviderSelection:
        if callable(self._selection):
            return self._selection()
        return self._selection

    async def transcribe(self, segment: SpeechSegment, selection: ProviderSelection | None = None) -> str:
        """Transcribe one segment and return trimmed text (empty means no speech)."""
        provider = resolve_provider(selection or self.current_selection())
        audio = decode_payload(segment.payload)
        request = TranscriptionRequest(
            audio=audio,
            provider=provider,
            selected_provider=None if provider is None else provider.id,
        )

        self._logger.info(
            "transcription_started",
            extra={
                "sequence": segment.sequence,
                "provider": request.selected_provider or "managed",
                "audio_seconds": round(audio.duration_seconds, 3),
            },
        )
        try:
            loop = asyncio.get_running_loop()
            text = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._stt.fetch_stt, request),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TranscriptionError(
                ErrorKind.TRANSCRIPTION_FAILED,
                f"Transcription timed out after {self._timeout_seconds}s",
            ) from exc
        except TranscriptionError:
            raise
        except Exception as exc:  # noqa: BLE001 - provider failures are classified, not propagated raw.
            raise TranscriptionError(ErrorKind.TRANSCRIPTION_FAILED, f"{type(exc).__name__}: {exc}") from exc

        return (text or "").strip()

    async def outcome_for(self, segment: SpeechSegment) -> TranscriptionOutcome:
        """Run :meth:`transcribe` and fold any failure into an outcome."""
        try:
            text = await self.transcribe(segment)
        except TranscriptionError as exc:
            self._logger.warning(
                "transcription_failed",
                extra={"sequence": segment.sequence, "kind": exc.kind.value, "detail": exc.message},
            )
            return TranscriptionOutcome(sequence=segment.sequence, error=exc.kind, detail=exc.message)

        self._logger.info("transcription_succeeded", extra={"sequence": segment.sequence, "chars": len(text)})
        return TranscriptionOutcome(sequence=segment.sequence, text=text)

    def submit(self, segment: SpeechSegment, on_outcome: OutcomeHandler) -> bool:
        """Dispatch ``segment`` into the in-flight slot; return ``False`` when it was dropped."""
        if not self.busy:
            self._task = asyncio.create_task(self._run(segment, on_outcome), name="transcription-slot")
            return True

        if self._policy == SegmentPolicy.QUEUE and self._pending is None:
            self._pending = (segment, on_outcome)
            self._logger.debug("segment_queued", extra={"sequence": segment.sequence})
            return True

        self._logger.info(
            "segment_dropped_busy",
            extra={"sequence": segment.sequence, "policy": self._policy.value},
        )
        return False

    def discard_pending(self) -> None:
        if self._pending is not None:
            self._logger.debug("pending_segment_discarded", extra={"sequence": self._pending[0].sequence})
        self._pending = None

    async def drain(self) -> None:
        """Wait until the slot and any pending segment are processed."""
        while self.busy and self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self, segment: SpeechSegment, on_outcome: OutcomeHandler) -> None:
        current: tuple[SpeechSegment, OutcomeHandler] | None = (segment, on_outcome)
        while current is not None:
            item, handler = current
            outcome = await self.outcome_for(item)
            try:
                handler(item, outcome)
            except Exception:  # noqa: BLE001 - a broken handler must not wedge the slot.
                self._logger.exception("outcome_handler_failed", extra={"sequence": item.sequence})
            current, self._pending = self._pending, None

    async def aclose(self) -> None:
        """Cancel the in-flight slot, drop the pending segment and release the STT thread."""
        self.discard_pending()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._executor.shutdown(wait=False, cancel_futures=True)
