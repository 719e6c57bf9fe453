"""CLI entrypoint for voice sessions."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import asdict

import typer
from rich import print

from voice_session.config import settings
from voice_session.controller import CaptureMode
from voice_session.conversation import InMemoryConversation
from voice_session.duration import format_elapsed
from voice_session.errors import ErrorKind
from voice_session.pipeline import SegmentPolicy
from voice_session.response_gate import ResponseWaitPolicy
from voice_session.session import VoiceSession
from voice_session.telemetry import configure_logging

app = typer.Typer(help="Voice capture and transcription sessions")

STOP_PHRASE = "stop listening"


def _build_backends():
    from voice_session.backends.speechrecognition import SpeechRecognitionCapture, SpeechRecognitionTranscriber

    try:
        capture = SpeechRecognitionCapture()
        stt = SpeechRecognitionTranscriber(language=settings.stt_language)
    except RuntimeError as exc:
        print({"error": str(exc)})
        raise typer.Exit(code=1)
    return capture, stt


def _report_error(kind: ErrorKind, detail: str) -> None:
    print({"error": kind.value, "detail": detail})


@app.command()
def config() -> None:
    """Show runtime session configuration."""
    print(
        {
            "app_name": settings.app_name,
            "microphone_device": settings.microphone_device,
            "capture_mode": settings.capture_mode.value,
            "max_duration": format_elapsed(settings.max_duration_seconds),
            "response_wait_policy": settings.response_wait_policy.value,
            "segment_policy": settings.segment_policy.value,
            "managed_stt_enabled": settings.managed_stt_enabled,
            "selected_stt_provider": settings.selected_stt_provider,
        }
    )


@app.command()
def devices() -> None:
    """List microphones known to the native capture backend."""
    capture, _ = _build_backends()
    print({"microphones": [asdict(device) for device in capture.list_mic_devices()]})


@app.command()
def listen(
    device: str = typer.Option(None, help="Microphone name; defaults to the configured device"),
    response_wait: ResponseWaitPolicy = typer.Option(None, help="Override the response-wait policy"),
    segment_policy: SegmentPolicy = typer.Option(None, help="Queue or drop segments while transcribing"),
) -> None:
    """Listen hands-free and print each transcription; say 'stop listening' to exit."""
    configure_logging(settings.log_level)
    capture, stt = _build_backends()
    session_config = settings.build_session_config(mode=CaptureMode.CONTINUOUS)
    if response_wait is not None:
        session_config.response_wait_policy = response_wait

    async def _run() -> int:
        stop_requested = asyncio.Event()
        session: VoiceSession

        def _on_transcription(text: str) -> None:
            print({"heard": text})
            if STOP_PHRASE in text.lower():
                stop_requested.set()
                return
            # no assistant reply is produced here, so the response is over at once
            session.response_started()
            session.response_finished()

        session = VoiceSession(
            capture,
            stt,
            settings.build_provider_selection(),
            InMemoryConversation(),
            config=session_config,
            segment_policy=segment_policy or settings.segment_policy,
            stt_timeout_seconds=settings.stt_timeout_seconds,
            on_transcription=_on_transcription,
            on_error=_report_error,
        )
        outcome = await session.start_session(device or settings.microphone_device)
        if not outcome.started:
            print({"voice_session": "not_started", "error": outcome.error, "detail": outcome.detail})
            return 1

        print({"voice_session": "listening", "policy": session_config.response_wait_policy.value})
        try:
            while not stop_requested.is_set():
                await asyncio.sleep(0.25)
                await session.join()
                if not session.listening and not session.controller.resume_pending:
                    break
        finally:
            await session.aclose()
        print({"voice_session": "stopped", "elapsed": format_elapsed(session.elapsed)})
        return 0

    code = asyncio.run(_run())
    if code:
        raise typer.Exit(code=code)


@app.command()
def record(device: str = typer.Option(None, help="Microphone name; defaults to the configured device")) -> None:
    """Record one utterance; press Enter to send, or wait for the duration ceiling."""
    configure_logging(settings.log_level)
    capture, stt = _build_backends()
    result: dict[str, str | None] = {"text": None}

    def _on_transcription(text: str) -> None:
        result["text"] = text

    async def _run() -> int:
        loop = asyncio.get_running_loop()
        send_requested = asyncio.Event()
        session = VoiceSession(
            capture,
            stt,
            settings.build_provider_selection(),
            InMemoryConversation(),
            config=settings.build_session_config(mode=CaptureMode.ONE_SHOT),
            stt_timeout_seconds=settings.stt_timeout_seconds,
            on_transcription=_on_transcription,
            on_error=_report_error,
            on_cancel=lambda: print({"record": "cancelled"}),
        )
        outcome = await session.start_session(device or settings.microphone_device)
        if not outcome.started:
            print({"record": "not_started", "error": outcome.error, "detail": outcome.detail})
            return 1

        ceiling = format_elapsed(session.controller.config.max_duration_seconds)
        print({"record": "recording", "hint": f"Press Enter to send (auto-send at {ceiling})."})
        threading.Thread(
            target=lambda: (input(), loop.call_soon_threadsafe(send_requested.set)),
            daemon=True,
        ).start()

        try:
            while session.listening:
                if send_requested.is_set():
                    await session.send()
                    break
                await asyncio.sleep(0.1)
            await session.join()
        finally:
            await session.aclose()

        print({"heard": result["text"], "elapsed": f"{format_elapsed(session.elapsed)} / {ceiling}"})
        return 0 if result["text"] else 1

    code = asyncio.run(_run())
    if code:
        raise typer.Exit(code=code)


if __name__ == "__main__":
    app()
