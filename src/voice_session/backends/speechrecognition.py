"""Native capture and managed STT backends powered by ``speech_recognition``."""

from __future__ import annotations

import base64
import io
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable

from voice_session.interfaces import (
    CAPTURE_STARTED_EVENT,
    CAPTURE_STOPPED_EVENT,
    SPEECH_DETECTED_EVENT,
    NativeCapture,
    SpeechToText,
)
from voice_session.models import DEFAULT_DEVICE_SENTINEL, MicDevice, TranscriptionRequest


def _import_speech_recognition(purpose: str):
    try:
        import speech_recognition as sr
    except ImportError as exc:  # pragma: no cover - import guard
        raise RuntimeError(
            f"{purpose} unavailable. Install extras with: pip install 'voice-session[voice]'"
        ) from exc
    return sr


@dataclass
class SpeechRecognitionTranscriber(SpeechToText):
    """Managed STT backend: WAV clips in, Google Web Speech transcripts out."""

    language: str = "en-US"

    def __post_init__(self) -> None:
        self._sr = _import_speech_recognition("Voice STT backend")
        self._recognizer = self._sr.Recognizer()

    def fetch_stt(self, request: TranscriptionRequest) -> str:
        if request.provider is not None:
            raise RuntimeError(
                f"Provider '{request.provider.id}' is not served by the managed speech_recognition backend"
            )

        with self._sr.AudioFile(io.BytesIO(request.audio.wav)) as source:
            audio = self._recognizer.record(source)
        try:
            return self._recognizer.recognize_google(audio, language=self.language)
        except self._sr.UnknownValueError:
            return ""
        except self._sr.RequestError as exc:
            raise RuntimeError(
                "Speech recognition service request failed. Check internet access or switch STT backend."
            ) from exc


class SpeechRecognitionCapture(NativeCapture):
    """Microphone capture emitting one base64 WAV event per detected utterance.

    Utterance boundaries come from ``Recognizer.listen_in_background``, which
    runs on its own thread; events are published from that thread.
    """

    def __init__(
        self,
        *,
        phrase_time_limit: float | None = 30.0,
        sample_rate: int = 16_000,
        chunk_size: int = 1024,
        adjust_noise_seconds: float = 0.2,
        logger: logging.Logger | None = None,
    ) -> None:
        self._sr = _import_speech_recognition("Microphone backend")
        self._recognizer = self._sr.Recognizer()
        self._phrase_time_limit = phrase_time_limit
        self._sample_rate = sample_rate
        self._chunk_size = chunk_size
        self._adjust_noise_seconds = max(0.0, adjust_noise_seconds)
        self._logger = logger or logging.getLogger("voice_session.backends.speechrecognition")

        self._lock = threading.Lock()
        self._listeners: dict[str, list[Callable[[object], None]]] = defaultdict(list)
        self._stopper: Callable[..., None] | None = None

    def start_mic_capture(self, device_name: str | None) -> int:
        with self._lock:
            if self._stopper is not None:
                raise RuntimeError("Mic capture already running")

            microphone = self._sr.Microphone(
                device_index=self._resolve_device_index(device_name),
                sample_rate=self._sample_rate,
                chunk_size=self._chunk_size,
            )
            if self._adjust_noise_seconds > 0:
                with microphone as source:
                    self._recognizer.adjust_for_ambient_noise(source, duration=self._adjust_noise_seconds)
            self._stopper = self._recognizer.listen_in_background(
                microphone,
                self._on_phrase,
                phrase_time_limit=self._phrase_time_limit,
            )

        self._emit(CAPTURE_STARTED_EVENT, self._sample_rate)
        return self._sample_rate

    def stop_mic_capture(self) -> None:
        with self._lock:
            stopper, self._stopper = self._stopper, None
        if stopper is not None:
            stopper(wait_for_stop=False)
        self._emit(CAPTURE_STOPPED_EVENT, None)

    def is_mic_capturing(self) -> bool:
        return self._stopper is not None

    def list_mic_devices(self) -> list[MicDevice]:
        names = self._sr.Microphone.list_microphone_names()
        devices = [MicDevice(id=DEFAULT_DEVICE_SENTINEL, name="Default", is_default=True)]
        seen: set[str] = set()
        for name in names:
            if not name or name in seen:
                continue
            seen.add(name)
            devices.append(MicDevice(id=name, name=name))
        return devices

    def listen(self, event: str, handler: Callable[[object], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners[event].append(handler)

        def _unlisten() -> None:
            with self._lock:
                if handler in self._listeners[event]:
                    self._listeners[event].remove(handler)

        return _unlisten

    def _on_phrase(self, recognizer, audio) -> None:
        payload = base64.b64encode(audio.get_wav_data(convert_rate=self._sample_rate)).decode("ascii")
        self._emit(SPEECH_DETECTED_EVENT, payload)

    def _emit(self, event: str, payload: object) -> None:
        with self._lock:
            handlers = list(self._listeners[event])
        for handler in handlers:
            try:
                handler(payload)
            except Exception:  # noqa: BLE001 - one listener must not starve the others.
                self._logger.exception("native_listener_failed", extra={"event": event})

    def _resolve_device_index(self, device_name: str | None) -> int | None:
        if device_name is None or device_name == DEFAULT_DEVICE_SENTINEL:
            return None
        names = self._sr.Microphone.list_microphone_names()
        if device_name in names:
            return names.index(device_name)
        self._logger.warning("mic_device_not_found_using_default", extra={"device_name": device_name})
        return None
