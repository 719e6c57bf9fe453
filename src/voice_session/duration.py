"""Maximum-duration watchdog for capture sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

DEFAULT_MAX_DURATION_SECONDS = 180.0
DEFAULT_TICK_INTERVAL_SECONDS = 0.1


def format_elapsed(seconds: float) -> str:
    """Render elapsed time as ``m:ss``."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


class DurationGuard:
    """Fires ``on_expire(generation)`` once when a session reaches its ceiling."""

    def __init__(
        self,
        on_expire: Callable[[int], None],
        *,
        max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        on_tick: Callable[[float], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._on_expire = on_expire
        self._max_duration_seconds = max_duration_seconds
        self._tick_interval_seconds = tick_interval_seconds
        self._on_tick = on_tick
        self._logger = logger or logging.getLogger("voice_session.duration")

        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._tick_task: asyncio.Task[None] | None = None
        self._generation: int | None = None
        self._started_at: float | None = None
        self._stopped_at: float | None = None
        self._fired = False

    @property
    def max_duration_seconds(self) -> float:
        return self._max_duration_seconds

    @property
    def armed(self) -> bool:
        return self._timer is not None

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def elapsed_seconds(self) -> float:
        if self._started_at is None or self._loop is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._loop.time()
        return max(0.0, end - self._started_at)

    def arm(self, generation: int) -> None:
        """Start the ceiling timer for ``generation``, replacing any previous one."""
        self.cancel()
        self._loop = asyncio.get_running_loop()
        self._generation = generation
        self._started_at = self._loop.time()
        self._stopped_at = None
        self._fired = False
        self._timer = self._loop.call_later(self._max_duration_seconds, self._expire, generation)
        if self._on_tick is not None and self._tick_interval_seconds > 0:
            self._tick_task = self._loop.create_task(self._tick_loop(), name="duration-tick")

    def cancel(self) -> None:
        """Disarm the timer; a callback already queued will be ignored."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None
        if self._started_at is not None and self._stopped_at is None and self._loop is not None:
            self._stopped_at = self._loop.time()
        self._generation = None

    def _expire(self, generation: int) -> None:
        if self._fired or self._generation != generation:
            return
        self._fired = True
        self._timer = None
        self._logger.info(
            "duration_ceiling_reached",
            extra={"generation": generation, "max_duration_seconds": self._max_duration_seconds},
        )
        self._on_expire(generation)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval_seconds)
            if self._on_tick is not None:
                self._on_tick(self.elapsed_seconds)
