from __future__ import annotations

import asyncio

import pytest

from voice_session.audio import decode_payload
from voice_session.controller import CaptureMode, CaptureSessionController, SessionConfig
from voice_session.errors import CaptureError, ErrorKind
from voice_session.models import ProviderSelection, SessionState
from voice_session.pipeline import SegmentPolicy, TranscriptionPipeline
from voice_session.response_gate import ResponseWaitPolicy

from fakes import FakeCapture, RecordingIndicator, RecordingSTT, make_payload, wait_until

MANAGED = ProviderSelection(managed_backend_enabled=True)
CONTINUOUS = SessionConfig(mode=CaptureMode.CONTINUOUS, response_wait_policy=ResponseWaitPolicy.NONE)


class Harness:
    def __init__(
        self,
        *,
        config: SessionConfig = CONTINUOUS,
        stt: RecordingSTT | None = None,
        selection: ProviderSelection = MANAGED,
        capture: FakeCapture | None = None,
        policy: SegmentPolicy = SegmentPolicy.QUEUE,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.capture = capture or FakeCapture()
        self.stt = stt or RecordingSTT()
        self.indicator = RecordingIndicator()
        self.heard: list[str] = []
        self.errors: list[tuple[ErrorKind, str]] = []
        self.cancels = 0
        self.controller = CaptureSessionController(
            self.capture,
            TranscriptionPipeline(self.stt, selection, policy=policy, timeout_seconds=timeout_seconds),
            config=config,
            indicator=self.indicator,
            on_transcription=self.heard.append,
            on_error=lambda kind, detail: self.errors.append((kind, detail)),
            on_cancel=self._cancelled,
        )

    def _cancelled(self) -> None:
        self.cancels += 1

    async def settle(self) -> None:
        await asyncio.sleep(0.01)
        await self.controller.join()


def test_second_start_is_rejected_and_keeps_one_capture_handle() -> None:
    async def _run() -> tuple[Harness, list[object]]:
        h = Harness()
        results = await asyncio.gather(
            h.controller.start(None),
            h.controller.start(None),
            return_exceptions=True,
        )
        await h.controller.aclose()
        return h, results

    h, results = asyncio.run(_run())

    errors = [result for result in results if isinstance(result, CaptureError)]
    assert len(errors) == 1
    assert errors[0].kind == ErrorKind.ALREADY_ACTIVE
    assert h.capture.start_calls == [None]
    assert h.errors == []


def test_stop_is_idempotent_and_issues_one_native_stop_per_start() -> None:
    async def _run() -> tuple[Harness, SessionState, int]:
        h = Harness()
        await h.controller.stop()
        stops_before_start = h.capture.stop_calls
        await h.controller.start("default")
        listeners = h.capture.speech_listeners
        assert listeners == 1
        for _ in range(3):
            await h.controller.stop()
        return h, h.controller.state, stops_before_start

    h, state, stops_before_start = asyncio.run(_run())

    assert stops_before_start == 0
    assert h.capture.start_calls == [None]
    assert h.capture.stop_calls == 1
    assert h.capture.speech_listeners == 0
    assert h.indicator.updates == [True, False]
    assert state == SessionState.IDLE


def test_unsubscribe_happens_before_native_stop() -> None:
    async def _run() -> list[int]:
        h = Harness()
        listeners_at_stop: list[int] = []
        native_stop = h.capture.stop_mic_capture

        def _stop() -> None:
            listeners_at_stop.append(h.capture.speech_listeners)
            native_stop()

        h.capture.stop_mic_capture = _stop
        await h.controller.start(None)
        await h.controller.stop()
        return listeners_at_stop

    assert asyncio.run(_run()) == [0]


def test_segments_are_transcribed_in_emission_order_one_at_a_time() -> None:
    async def _run() -> Harness:
        h = Harness(stt=RecordingSTT(delay=0.03))
        await h.controller.start(None)
        for index, frames in enumerate((100, 200, 300), start=1):
            h.capture.emit_speech(make_payload(frames=frames))
            await wait_until(lambda: len(h.stt.requests) >= index)
        await h.settle()
        await h.controller.aclose()
        return h

    h = asyncio.run(_run())

    assert [request.audio.frames for request in h.stt.requests] == [100, 200, 300]
    assert h.heard == ["frames=100", "frames=200", "frames=300"]
    assert h.stt.max_in_flight == 1


def test_two_quick_segments_produce_two_sequential_stt_calls() -> None:
    async def _run() -> Harness:
        h = Harness(stt=RecordingSTT(["first", "second"], delay=0.03))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload(frames=100))
        h.capture.emit_speech(make_payload(frames=200))
        await h.settle()
        await h.controller.aclose()
        return h

    h = asyncio.run(_run())

    assert len(h.stt.requests) == 2
    assert h.stt.max_in_flight == 1
    assert h.heard == ["first", "second"]


def test_missing_provider_reports_error_without_calling_stt() -> None:
    async def _run() -> tuple[Harness, bool]:
        h = Harness(selection=ProviderSelection(managed_backend_enabled=False))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await h.settle()
        listening = h.controller.listening
        await h.controller.aclose()
        return h, listening

    h, listening = asyncio.run(_run())

    assert h.stt.requests == []
    assert [kind for kind, _ in h.errors] == [ErrorKind.NO_PROVIDER_CONFIGURED]
    assert listening is True


def test_malformed_segment_is_dropped_and_session_continues() -> None:
    async def _run() -> tuple[Harness, bool]:
        h = Harness()
        await h.controller.start(None)
        h.capture.emit_speech("definitely-not-wav")
        h.capture.emit_speech(make_payload(frames=64))
        await h.settle()
        listening = h.controller.listening
        await h.controller.aclose()
        return h, listening

    h, listening = asyncio.run(_run())

    assert [kind for kind, _ in h.errors] == [ErrorKind.MALFORMED_AUDIO]
    assert h.heard == ["frames=64"]
    assert listening is True


def test_empty_transcription_is_not_submitted() -> None:
    async def _run() -> Harness:
        h = Harness(stt=RecordingSTT(["   "]))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await h.settle()
        await h.controller.aclose()
        return h

    h = asyncio.run(_run())

    assert len(h.stt.requests) == 1
    assert h.heard == []
    assert h.errors == []


def test_device_unavailable_leaves_controller_idle() -> None:
    async def _run() -> tuple[Harness, SessionState]:
        h = Harness(capture=FakeCapture(fail_start=True))
        with pytest.raises(CaptureError) as exc_info:
            await h.controller.start("mic-7")
        assert exc_info.value.kind == ErrorKind.DEVICE_UNAVAILABLE
        return h, h.controller.state

    h, state = asyncio.run(_run())

    assert state == SessionState.IDLE
    assert h.capture.speech_listeners == 0
    assert h.indicator.updates == []


def test_native_stop_failure_is_swallowed() -> None:
    async def _run() -> SessionState:
        h = Harness(capture=FakeCapture(fail_stop=True))
        await h.controller.start(None)
        await h.controller.stop()
        return h.controller.state

    assert asyncio.run(_run()) == SessionState.IDLE


def test_stop_before_delivery_drops_segment() -> None:
    async def _run() -> Harness:
        h = Harness()
        await h.controller.start("mic-7")
        h.capture.emit_speech(make_payload())
        await h.controller.stop()
        await h.settle()
        return h

    h = asyncio.run(_run())

    assert h.capture.start_calls == ["mic-7"]
    assert h.capture.stop_calls == 1
    assert h.stt.requests == []
    assert h.heard == []


def test_outcome_from_previous_session_is_discarded() -> None:
    async def _run() -> tuple[Harness, int]:
        h = Harness(stt=RecordingSTT(["stale"], delay=0.05))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await wait_until(lambda: len(h.stt.requests) == 1)
        await h.controller.stop()
        await h.controller.start(None)
        await h.settle()
        generation = h.controller.generation
        await h.controller.aclose()
        return h, generation

    h, generation = asyncio.run(_run())

    assert generation == 2
    assert len(h.stt.requests) == 1
    assert h.heard == []


def test_stop_does_not_cancel_dispatched_transcription() -> None:
    async def _run() -> Harness:
        h = Harness(stt=RecordingSTT(["kept"], delay=0.05))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await wait_until(lambda: len(h.stt.requests) == 1)
        await h.controller.stop()
        await h.settle()
        return h

    h = asyncio.run(_run())

    assert h.heard == ["kept"]


def test_change_device_tears_down_and_recreates_session() -> None:
    async def _run() -> tuple[Harness, str | None, int]:
        h = Harness()
        await h.controller.start("usb-a")
        session = await h.controller.change_device("usb-b")
        listeners = h.capture.speech_listeners
        await h.controller.aclose()
        return h, session.device_id, listeners

    h, device_id, listeners = asyncio.run(_run())

    assert h.capture.start_calls == ["usb-a", "usb-b"]
    assert device_id == "usb-b"
    assert listeners == 1
    assert h.capture.stop_calls == 2


def test_duration_ceiling_finalizes_one_shot_session_once() -> None:
    async def _run() -> Harness:
        config = SessionConfig(mode=CaptureMode.ONE_SHOT, max_duration_seconds=0.05, tick_interval_seconds=0)
        h = Harness(config=config, stt=RecordingSTT(["ceiling reached"]))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await asyncio.sleep(0.15)
        await h.settle()
        await asyncio.sleep(0.15)
        await h.settle()
        return h

    h = asyncio.run(_run())

    assert h.heard == ["ceiling reached"]
    assert len(h.stt.requests) == 1
    assert h.capture.stop_calls == 1
    assert h.indicator.updates == [True, False]


def test_duration_ceiling_stops_continuous_session() -> None:
    async def _run() -> tuple[Harness, SessionState]:
        config = SessionConfig(
            mode=CaptureMode.CONTINUOUS,
            max_duration_seconds=0.03,
            tick_interval_seconds=0,
            response_wait_policy=ResponseWaitPolicy.NONE,
        )
        h = Harness(config=config)
        await h.controller.start(None)
        await asyncio.sleep(0.1)
        await h.settle()
        return h, h.controller.state

    h, state = asyncio.run(_run())

    assert state == SessionState.IDLE
    assert h.capture.stop_calls == 1


def test_one_shot_send_transcribes_last_segment_only() -> None:
    async def _run() -> Harness:
        h = Harness(config=SessionConfig(mode=CaptureMode.ONE_SHOT, tick_interval_seconds=0))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload(frames=111))
        h.capture.emit_speech(make_payload(frames=222))
        await h.settle()
        assert decode_payload(h.controller.buffered_segment.payload).frames == 222
        await h.controller.finalize()
        await h.controller.finalize()
        await h.settle()
        return h

    h = asyncio.run(_run())

    assert [request.audio.frames for request in h.stt.requests] == [222]
    assert h.heard == ["frames=222"]
    assert h.controller.state == SessionState.IDLE
    assert h.capture.stop_calls == 1


def test_one_shot_send_without_speech_cancels() -> None:
    async def _run() -> Harness:
        h = Harness(config=SessionConfig(mode=CaptureMode.ONE_SHOT, tick_interval_seconds=0))
        await h.controller.start(None)
        await h.controller.finalize()
        await h.settle()
        return h

    h = asyncio.run(_run())

    assert h.cancels == 1
    assert h.stt.requests == []


def test_one_shot_failure_reports_error_and_stays_stopped() -> None:
    async def _run() -> tuple[Harness, SessionState]:
        h = Harness(
            config=SessionConfig(mode=CaptureMode.ONE_SHOT, tick_interval_seconds=0),
            stt=RecordingSTT(error=RuntimeError("provider down")),
        )
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await h.settle()
        await h.controller.finalize()
        await h.settle()
        return h, h.controller.state

    h, state = asyncio.run(_run())

    assert [kind for kind, _ in h.errors] == [ErrorKind.TRANSCRIPTION_FAILED]
    assert "provider down" in h.errors[0][1]
    assert h.cancels == 1
    assert state == SessionState.IDLE
    assert h.capture.start_calls == [None]


def test_stop_immediately_policy_closes_mic_until_response_finishes() -> None:
    async def _run() -> tuple[Harness, list[bool]]:
        config = SessionConfig(response_wait_policy=ResponseWaitPolicy.STOP_IMMEDIATELY, tick_interval_seconds=0)
        h = Harness(config=config, stt=RecordingSTT(["what time is it"]))
        states: list[bool] = []
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await h.settle()
        states.append(h.controller.listening)
        h.controller.response_started()
        await h.settle()
        states.append(h.controller.listening)
        h.controller.response_finished()
        await h.settle()
        states.append(h.controller.listening)
        await h.controller.aclose()
        return h, states

    h, states = asyncio.run(_run())

    assert h.heard == ["what time is it"]
    assert states == [False, False, True]
    assert h.capture.start_calls == [None, None]
    assert h.capture.log[:3] == ["start", "stop", "start"]


def test_stop_immediately_resumes_right_away_when_transcription_fails() -> None:
    async def _run() -> tuple[Harness, bool]:
        config = SessionConfig(response_wait_policy=ResponseWaitPolicy.STOP_IMMEDIATELY, tick_interval_seconds=0)
        h = Harness(config=config, stt=RecordingSTT(error=RuntimeError("boom")))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await h.settle()
        listening = h.controller.listening
        await h.controller.aclose()
        return h, listening

    h, listening = asyncio.run(_run())

    assert listening is True
    assert len(h.capture.start_calls) == 2
    assert [kind for kind, _ in h.errors] == [ErrorKind.TRANSCRIPTION_FAILED]


def test_wait_then_stop_policy_keeps_listening_until_response_begins() -> None:
    async def _run() -> tuple[Harness, list[bool]]:
        config = SessionConfig(response_wait_policy=ResponseWaitPolicy.WAIT_THEN_STOP, tick_interval_seconds=0)
        h = Harness(config=config, stt=RecordingSTT(["hello"]))
        states: list[bool] = []
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await h.settle()
        states.append(h.controller.listening)
        h.controller.response_started()
        await h.settle()
        states.append(h.controller.listening)
        h.controller.response_finished()
        await h.settle()
        states.append(h.controller.listening)
        await h.controller.aclose()
        return h, states

    h, states = asyncio.run(_run())

    assert states == [True, False, True]
    assert h.capture.stop_calls == 2


def test_explicit_stop_cancels_pending_resume() -> None:
    async def _run() -> Harness:
        config = SessionConfig(response_wait_policy=ResponseWaitPolicy.STOP_IMMEDIATELY, tick_interval_seconds=0)
        h = Harness(config=config, stt=RecordingSTT(["hi"]))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await h.settle()
        await h.controller.stop()
        h.controller.response_finished()
        await h.settle()
        return h

    h = asyncio.run(_run())

    assert h.capture.start_calls == [None]
    assert h.controller.listening is False


def test_failing_host_callback_does_not_break_the_session() -> None:
    async def _run() -> tuple[list[str], bool]:
        capture = FakeCapture()
        seen: list[str] = []

        def _explode(text: str) -> None:
            seen.append(text)
            raise ValueError("host bug")

        controller = CaptureSessionController(
            capture,
            TranscriptionPipeline(RecordingSTT(), MANAGED),
            config=CONTINUOUS,
            on_transcription=_explode,
        )
        await controller.start(None)
        capture.emit_speech(make_payload(frames=10))
        await asyncio.sleep(0.01)
        await controller.join()
        capture.emit_speech(make_payload(frames=20))
        await asyncio.sleep(0.01)
        await controller.join()
        listening = controller.listening
        await controller.aclose()
        return seen, listening

    seen, listening = asyncio.run(_run())

    assert seen == ["frames=10", "frames=20"]
    assert listening is True


def test_listener_failure_after_native_start_releases_the_device() -> None:
    async def _run() -> tuple[Harness, SessionState, bool, SessionState]:
        h = Harness(capture=FakeCapture(fail_listen=True))
        with pytest.raises(CaptureError) as exc_info:
            await h.controller.start("mic-7")
        assert exc_info.value.kind == ErrorKind.DEVICE_UNAVAILABLE
        state_after_failure = h.controller.state
        capturing = h.capture.capturing

        h.capture.fail_listen = False
        await h.controller.start("mic-7")
        state_after_retry = h.controller.state
        await h.controller.aclose()
        return h, state_after_failure, capturing, state_after_retry

    h, state_after_failure, capturing, state_after_retry = asyncio.run(_run())

    assert state_after_failure == SessionState.IDLE
    assert capturing is False
    assert h.capture.start_calls == ["mic-7", "mic-7"]
    assert h.capture.stop_calls == 2
    assert h.indicator.updates == [True, False]
    assert state_after_retry == SessionState.LISTENING


def test_timed_out_transcription_still_blocks_the_next_stt_call() -> None:
    async def _run() -> Harness:
        h = Harness(stt=RecordingSTT(["slow"], delay=0.3), timeout_seconds=0.05)
        await h.controller.start(None)
        h.capture.emit_speech(make_payload(frames=100))
        h.capture.emit_speech(make_payload(frames=200))
        await h.settle()
        await asyncio.sleep(0.35)
        await h.controller.aclose()
        return h

    h = asyncio.run(_run())

    assert h.stt.max_in_flight == 1
    assert [kind for kind, _ in h.errors] == [ErrorKind.TRANSCRIPTION_FAILED, ErrorKind.TRANSCRIPTION_FAILED]
    assert h.heard == []


def test_nothing_is_delivered_after_close() -> None:
    async def _run() -> tuple[Harness, object]:
        h = Harness(stt=RecordingSTT(["late"], delay=0.1))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload())
        await wait_until(lambda: len(h.stt.requests) == 1)
        await h.controller.aclose()
        await asyncio.sleep(0.2)
        await h.controller.stop()
        try:
            await h.controller.start(None)
        except CaptureError as exc:
            return h, exc
        return h, None

    h, error = asyncio.run(_run())

    assert h.heard == []
    assert h.errors == []
    assert isinstance(error, CaptureError)
    assert h.capture.start_calls == [None]
    assert h.capture.stop_calls == 1


def test_wait_then_stop_delivers_segments_queued_before_the_response() -> None:
    async def _run() -> tuple[Harness, bool]:
        config = SessionConfig(response_wait_policy=ResponseWaitPolicy.WAIT_THEN_STOP, tick_interval_seconds=0)
        h = Harness(config=config, stt=RecordingSTT(["one", "two"], delay=0.05))
        await h.controller.start(None)
        h.capture.emit_speech(make_payload(frames=100))
        h.capture.emit_speech(make_payload(frames=200))
        await wait_until(lambda: len(h.stt.requests) >= 1)
        await asyncio.sleep(0.01)
        h.controller.response_started()
        h.controller.response_finished()
        await h.settle()
        listening = h.controller.listening
        await h.controller.aclose()
        return h, listening

    h, listening = asyncio.run(_run())

    assert len(h.stt.requests) == 2
    assert h.heard == ["one", "two"]
    assert listening is True
    assert h.capture.start_calls == [None, None]
