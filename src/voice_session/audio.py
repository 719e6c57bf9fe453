"""Decoding of native speech payloads into canonical WAV clips."""

from __future__ import annotations

import base64
import binascii
import io
import wave

from .errors import ErrorKind, TranscriptionError
from .models import AudioClip


def decode_payload(payload: str | bytes) -> AudioClip:
    """Decode a base64 (or raw) WAV payload and validate its container."""
    if isinstance(payload, str):
        try:
            raw = base64.b64decode(payload.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise TranscriptionError(ErrorKind.MALFORMED_AUDIO, f"Speech payload is not valid base64: {exc}") from exc
    else:
        raw = bytes(payload)

    if not raw:
        raise TranscriptionError(ErrorKind.MALFORMED_AUDIO, "Speech payload is empty")

    try:
        with wave.open(io.BytesIO(raw), "rb") as wf:
            sample_rate = wf.getframerate()
            channels = wf.getnchannels()
            frames = wf.getnframes()
    except (wave.Error, EOFError) as exc:
        raise TranscriptionError(ErrorKind.MALFORMED_AUDIO, f"Speech payload is not a WAV container: {exc}") from exc

    if frames <= 0:
        raise TranscriptionError(ErrorKind.MALFORMED_AUDIO, "Speech payload contains no audio frames")

    return AudioClip(wav=raw, sample_rate=sample_rate, channels=channels, frames=frames)


def encode_wav(pcm16: bytes, *, sample_rate: int = 16_000, channels: int = 1) -> bytes:
    """Wrap 16-bit PCM samples in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)
    return buffer.getvalue()


def encode_payload(wav: bytes) -> str:
    """Encode WAV bytes the way the native layer emits them."""
    return base64.b64encode(wav).decode("ascii")
