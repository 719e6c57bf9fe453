"""Single-owner state machine for native microphone capture sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .channel import SpeechEventChannel, SubscriptionHandle
from .duration import DEFAULT_MAX_DURATION_SECONDS, DEFAULT_TICK_INTERVAL_SECONDS, DurationGuard
from .errors import CaptureError, ErrorKind, VoiceSessionError
from .interfaces import ListeningIndicator, NativeCapture
from .models import (
    CaptureSession,
    SessionSnapshot,
    SessionState,
    SpeechSegment,
    TranscriptionOutcome,
    normalize_device_id,
)
from .pipeline import TranscriptionPipeline
from .response_gate import ResponseWaitGate, ResponseWaitPolicy


class CaptureMode(str, Enum):
    """How captured segments turn into submissions."""

    CONTINUOUS = "continuous"
    ONE_SHOT = "one_shot"


@dataclass(slots=True)
class SessionConfig:
    """Deployment policy for a capture session controller."""

    mode: CaptureMode = CaptureMode.CONTINUOUS
    max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS
    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    response_wait_policy: ResponseWaitPolicy = ResponseWaitPolicy.STOP_IMMEDIATELY


class _CommandKind(str, Enum):
    START = "start"
    STOP = "stop"
    CHANGE_DEVICE = "change_device"
    FINALIZE = "finalize"
    EXPIRED = "expired"
    SEGMENT = "segment"
    OUTCOME = "outcome"
    RESPONSE_STARTED = "response_started"
    RESPONSE_FINISHED = "response_finished"


@dataclass(slots=True)
class _Command:
    kind: _CommandKind
    generation: int = 0
    device_id: str | None = None
    epoch: int = 0
    segment: SpeechSegment | None = None
    outcome: TranscriptionOutcome | None = None
    done: asyncio.Future[Any] | None = None


class CaptureSessionController:
    """Owns start/stop of native capture and the single ``LISTENING`` session.

    Every transition runs on one worker task that drains a command queue, so
    start, stop, segment arrival, watchdog expiry and transcription outcomes
    are applied one at a time in arrival order. Outcomes carry the epoch of the
    caller-started session they were dispatched in and are discarded once the
    caller starts a newer one. Resuming after a response wait keeps the epoch.
    """

    def __init__(
        self,
        capture: NativeCapture,
        pipeline: TranscriptionPipeline,
        *,
        config: SessionConfig | None = None,
        indicator: ListeningIndicator | None = None,
        on_transcription: Callable[[str], None] | None = None,
        on_error: Callable[[ErrorKind, str], None] | None = None,
        on_cancel: Callable[[], None] | None = None,
        on_tick: Callable[[float], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._capture = capture
        self._pipeline = pipeline
        self._config = config or SessionConfig()
        self._indicator = indicator
        self._on_transcription = on_transcription
        self._on_error = on_error
        self._on_cancel = on_cancel
        self._logger = logger or logging.getLogger("voice_session.controller")

        self._channel = SpeechEventChannel(capture, logger=self._logger.getChild("channel"))
        self._guard = DurationGuard(
            self._on_duration_expired,
            max_duration_seconds=self._config.max_duration_seconds,
            tick_interval_seconds=self._config.tick_interval_seconds,
            on_tick=on_tick,
        )
        self._response_gate = ResponseWaitGate(self._config.response_wait_policy)

        self._session: CaptureSession | None = None
        self._subscription: SubscriptionHandle | None = None
        self._generation = 0
        self._epoch = 0
        self._last_device_id: str | None = None
        self._latest_segment: SpeechSegment | None = None
        self._closed = False

        self._queue: asyncio.Queue[_Command] = asyncio.Queue()
        self._worker_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> SessionState:
        if self._session is None or self._session.state == SessionState.STOPPED:
            return SessionState.IDLE
        return self._session.state

    @property
    def listening(self) -> bool:
        return self.state == SessionState.LISTENING

    @property
    def transcribing(self) -> bool:
        return self._pipeline.busy or self.state == SessionState.TRANSCRIBING

    @property
    def elapsed_seconds(self) -> float:
        return self._guard.elapsed_seconds

    @property
    def resume_pending(self) -> bool:
        return self._response_gate.resume_pending

    @property
    def buffered_segment(self) -> SpeechSegment | None:
        return self._latest_segment

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.state,
            listening=self.listening,
            transcribing=self.transcribing,
            elapsed_seconds=self.elapsed_seconds,
            device_id=None if self._session is None else self._session.device_id,
        )

    async def start(self, device_id: str | None = None) -> CaptureSession:
        """Start capture on ``device_id``; raises :class:`CaptureError` on failure."""
        return await self._call(_Command(_CommandKind.START, device_id=device_id))

    async def stop(self) -> None:
        """Detach the listener and stop native capture; safe from any state."""
        await self._call(_Command(_CommandKind.STOP))

    async def finalize(self) -> None:
        """The user "send" action: flush, transcribe and stop."""
        await self._call(_Command(_CommandKind.FINALIZE))

    async def change_device(self, device_id: str | None) -> CaptureSession:
        """Tear down the current session and recreate it on ``device_id``."""
        return await self._call(_Command(_CommandKind.CHANGE_DEVICE, device_id=device_id))

    def response_started(self) -> None:
        self._post(_Command(_CommandKind.RESPONSE_STARTED))

    def response_finished(self) -> None:
        self._post(_Command(_CommandKind.RESPONSE_FINISHED))

    async def join(self) -> None:
        """Wait until every queued command and transcription has been applied."""
        while True:
            await self._queue.join()
            await self._pipeline.drain()
            if self._queue.empty() and not self._pipeline.busy:
                return

    async def aclose(self) -> None:
        """Stop any live session, abandon in-flight transcriptions and shut the worker down.

        Commands posted after close, including late transcription outcomes, are dropped.
        """
        if self._closed:
            return

        if self._worker_task is not None:
            await self.stop()
        self._closed = True
        await self._pipeline.aclose()

        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            finally:
                self._worker_task = None

        self._logger.info("controller_closed")

    async def _call(self, command: _Command) -> Any:
        if self._closed:
            if command.kind == _CommandKind.STOP:
                return None
            raise CaptureError(ErrorKind.DEVICE_UNAVAILABLE, "Capture session controller is closed")
        command.done = asyncio.get_running_loop().create_future()
        self._post(command)
        return await command.done

    def _post(self, command: _Command) -> None:
        if self._closed:
            self._logger.debug("command_dropped_closed", extra={"command": command.kind.value})
            return
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker_loop(), name="capture-session-worker")
        self._queue.put_nowait(command)

    async def _worker_loop(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                await self._apply(command)
            finally:
                self._queue.task_done()

    async def _apply(self, command: _Command) -> None:
        handlers = {
            _CommandKind.START: self._handle_start,
            _CommandKind.STOP: self._handle_stop,
            _CommandKind.CHANGE_DEVICE: self._handle_change_device,
            _CommandKind.FINALIZE: self._handle_finalize,
            _CommandKind.EXPIRED: self._handle_finalize,
            _CommandKind.SEGMENT: self._handle_segment,
            _CommandKind.OUTCOME: self._handle_outcome,
            _CommandKind.RESPONSE_STARTED: self._handle_response_started,
            _CommandKind.RESPONSE_FINISHED: self._handle_response_finished,
        }
        try:
            result = await handlers[command.kind](command)
        except Exception as exc:  # noqa: BLE001 - the worker must survive every command.
            if command.done is not None and not command.done.done():
                command.done.set_exception(exc)
            elif not isinstance(exc, VoiceSessionError):
                self._logger.exception("command_failed", extra={"command": command.kind.value})
            return

        if command.done is not None and not command.done.done():
            command.done.set_result(result)

    async def _handle_start(self, command: _Command) -> CaptureSession:
        if self.listening:
            self._logger.debug("capture_start_rejected", extra={"generation": self._generation})
            raise CaptureError(ErrorKind.ALREADY_ACTIVE, "Mic capture already running")

        self._response_gate.reset()
        session = await self._open_session(normalize_device_id(command.device_id))
        self._epoch += 1
        return session

    async def _handle_stop(self, command: _Command) -> None:
        self._response_gate.reset()
        self._pipeline.discard_pending()
        self._latest_segment = None
        await self._teardown("stop")

    async def _handle_change_device(self, command: _Command) -> CaptureSession:
        self._response_gate.reset()
        self._pipeline.discard_pending()
        self._latest_segment = None
        await self._teardown("device_change")
        session = await self._open_session(normalize_device_id(command.device_id))
        self._epoch += 1
        return session

    async def _handle_finalize(self, command: _Command) -> None:
        if command.kind == _CommandKind.EXPIRED and command.generation != self._generation:
            return
        if not self.listening:
            return

        if self._config.mode == CaptureMode.CONTINUOUS:
            self._response_gate.reset()
            await self._teardown("finalize")
            return

        last, self._latest_segment = self._latest_segment, None
        await self._teardown(
            "finalize",
            next_state=SessionState.TRANSCRIBING if last is not None else SessionState.STOPPED,
        )
        if last is None:
            self._logger.info("finalize_without_speech", extra={"generation": self._generation})
            self._invoke(self._on_cancel)
            return
        self._dispatch(last)

    async def _handle_segment(self, command: _Command) -> None:
        segment = command.segment
        if segment is None or command.generation != self._generation or not self.listening:
            self._logger.debug(
                "segment_dropped_stale",
                extra={"generation": command.generation, "current_generation": self._generation},
            )
            return

        if self._config.mode == CaptureMode.ONE_SHOT:
            self._latest_segment = segment
            self._logger.debug("segment_buffered", extra={"sequence": segment.sequence})
            return

        if self._response_gate.on_segment_dispatched():
            await self._teardown("response_wait")
        if not self._dispatch(segment) and self._response_gate.on_no_response():
            await self._resume()

    async def _handle_outcome(self, command: _Command) -> None:
        outcome = command.outcome
        if outcome is None:
            return
        if command.epoch != self._epoch:
            self._logger.info(
                "transcription_discarded_stale",
                extra={"sequence": outcome.sequence, "epoch": command.epoch},
            )
            return

        finishing_one_shot = self._session is not None and self._session.state == SessionState.TRANSCRIBING
        if finishing_one_shot:
            self._session.state = SessionState.STOPPED

        if not outcome.ok:
            self._report_error(outcome.error or ErrorKind.TRANSCRIPTION_FAILED, outcome.detail or "")
        elif outcome.text:
            self._invoke(self._on_transcription, outcome.text)
            return
        else:
            self._logger.info("transcription_empty", extra={"sequence": outcome.sequence})

        if finishing_one_shot:
            self._invoke(self._on_cancel)
        elif self._response_gate.on_no_response():
            await self._resume()

    async def _handle_response_started(self, command: _Command) -> None:
        if self._response_gate.on_response_started():
            await self._teardown("response_started")

    async def _handle_response_finished(self, command: _Command) -> None:
        if self._response_gate.on_response_finished():
            await self._resume()

    async def _open_session(self, device_id: str | None) -> CaptureSession:
        try:
            sample_rate = await asyncio.to_thread(self._capture.start_mic_capture, device_id)
        except Exception as exc:  # noqa: BLE001 - any native failure means the device is unusable.
            self._logger.warning(
                "capture_start_failed",
                extra={"device_id": device_id, "error": f"{type(exc).__name__}: {exc}"},
            )
            # release a partially opened stream
            await self._native_stop()
            raise CaptureError(ErrorKind.DEVICE_UNAVAILABLE, f"Mic capture failed: {exc}") from exc

        generation = self._generation + 1
        try:
            subscription = self._channel.subscribe(
                lambda segment: self._post(_Command(_CommandKind.SEGMENT, generation=generation, segment=segment)),
                generation=generation,
            )
        except Exception as exc:  # noqa: BLE001 - a start that cannot listen must release the device.
            self._logger.warning(
                "capture_subscribe_failed",
                extra={"device_id": device_id, "error": f"{type(exc).__name__}: {exc}"},
            )
            await self._native_stop()
            raise CaptureError(ErrorKind.DEVICE_UNAVAILABLE, f"Mic capture failed: {exc}") from exc

        self._generation = generation
        self._session = CaptureSession(device_id=device_id, generation=generation, state=SessionState.LISTENING)
        self._subscription = subscription
        self._last_device_id = device_id
        self._latest_segment = None
        self._guard.arm(generation)
        self._notify_indicator(True)
        self._logger.info(
            "capture_started",
            extra={"device_id": device_id, "generation": generation, "sample_rate": sample_rate},
        )
        return self._session

    async def _teardown(self, reason: str, *, next_state: SessionState = SessionState.STOPPED) -> bool:
        session = self._session
        if session is None or session.state != SessionState.LISTENING:
            return False

        subscription, self._subscription = self._subscription, None
        self._channel.unsubscribe(subscription)
        await self._native_stop()
        self._guard.cancel()
        session.state = next_state
        self._notify_indicator(False)
        self._logger.info(
            "capture_stopped",
            extra={"generation": session.generation, "reason": reason, "elapsed_seconds": self.elapsed_seconds},
        )
        return True

    async def _resume(self) -> None:
        if self.listening:
            return
        try:
            await self._open_session(self._last_device_id)
        except CaptureError as exc:
            self._report_error(exc.kind, exc.message)

    async def _native_stop(self) -> None:
        try:
            await asyncio.to_thread(self._capture.stop_mic_capture)
        except Exception:  # noqa: BLE001 - stop is best-effort on every cleanup path.
            self._logger.exception("capture_stop_failed")

    def _dispatch(self, segment: SpeechSegment) -> bool:
        epoch = self._epoch

        def _on_outcome(item: SpeechSegment, outcome: TranscriptionOutcome) -> None:
            self._post(_Command(_CommandKind.OUTCOME, epoch=epoch, segment=item, outcome=outcome))

        return self._pipeline.submit(segment, _on_outcome)

    def _on_duration_expired(self, generation: int) -> None:
        self._post(_Command(_CommandKind.EXPIRED, generation=generation))

    def _report_error(self, kind: ErrorKind, detail: str) -> None:
        self._logger.warning("session_error", extra={"kind": kind.value, "detail": detail})
        self._invoke(self._on_error, kind, detail)

    def _notify_indicator(self, listening: bool) -> None:
        if self._indicator is not None:
            self._invoke(self._indicator.update, listening)

    def _invoke(self, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001 - host callbacks must not break the session.
            self._logger.exception("callback_failed")
