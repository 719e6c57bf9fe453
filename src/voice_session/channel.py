"""Ordered, at-most-once delivery of native speech segments."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Callable

from .interfaces import SPEECH_DETECTED_EVENT, NativeCapture
from .models import SpeechSegment

SegmentHandler = Callable[[SpeechSegment], None]


class SubscriptionHandle:
    """Owned handle for one live channel subscription."""

    def __init__(self, channel: SpeechEventChannel, generation: int, on_segment: SegmentHandler) -> None:
        self._channel = channel
        self.generation = generation
        self.on_segment = on_segment
        self.active = True
        self.unlisten: Callable[[], None] | None = None

    def unsubscribe(self) -> None:
        self._channel.unsubscribe(self)


class SpeechEventChannel:
    """Bridges the native ``mic-speech-detected`` event into the session loop.

    Native handlers may run on a capture thread, so every event is marshalled
    onto the event loop that owns the subscription and checked against the
    handle again there. Segments arriving after ``unsubscribe`` are dropped.
    """

    def __init__(self, capture: NativeCapture, *, logger: logging.Logger | None = None) -> None:
        self._capture = capture
        self._sequence = itertools.count(1)
        self._handle: SubscriptionHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._logger = logger or logging.getLogger("voice_session.channel")

    @property
    def subscribed(self) -> bool:
        return self._handle is not None and self._handle.active

    def subscribe(self, on_segment: SegmentHandler, *, generation: int = 0) -> SubscriptionHandle:
        """Open the single live subscription; must be called from the event loop."""
        if self.subscribed:
            raise RuntimeError("Speech event channel already has a live subscription")

        self._loop = asyncio.get_running_loop()
        handle = SubscriptionHandle(self, generation, on_segment)
        handle.unlisten = self._capture.listen(
            SPEECH_DETECTED_EVENT,
            lambda payload: self._on_native_event(handle, payload),
        )
        self._handle = handle
        self._logger.debug("channel_subscribed", extra={"generation": generation})
        return handle

    def unsubscribe(self, handle: SubscriptionHandle | None) -> None:
        """Detach ``handle``; repeated calls are no-ops."""
        if handle is None or not handle.active:
            return

        handle.active = False
        unlisten, handle.unlisten = handle.unlisten, None
        if self._handle is handle:
            self._handle = None
        if unlisten is not None:
            try:
                unlisten()
            except Exception:  # noqa: BLE001 - detaching must never fail a stop.
                self._logger.exception("channel_unlisten_failed", extra={"generation": handle.generation})
        self._logger.debug("channel_unsubscribed", extra={"generation": handle.generation})

    def _on_native_event(self, handle: SubscriptionHandle, payload: object) -> None:
        if not handle.active or self._loop is None:
            self._logger.debug("segment_dropped_after_unsubscribe", extra={"generation": handle.generation})
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, handle, payload)
        except RuntimeError:
            self._logger.debug("segment_dropped_loop_closed", extra={"generation": handle.generation})

    def _deliver(self, handle: SubscriptionHandle, payload: object) -> None:
        if not handle.active:
            self._logger.debug("segment_dropped_after_unsubscribe", extra={"generation": handle.generation})
            return

        segment = SpeechSegment(
            payload=payload if isinstance(payload, (str, bytes)) else str(payload),
            sequence=next(self._sequence),
            generation=handle.generation,
        )
        self._logger.debug(
            "segment_received",
            extra={"generation": handle.generation, "sequence": segment.sequence},
        )
        handle.on_segment(segment)
