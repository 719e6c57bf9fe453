"""Keeps the microphone closed while a downstream response is being produced."""

from __future__ import annotations

import logging
from enum import Enum


class ResponseWaitPolicy(str, Enum):
    """When auto-restarting capture, how to avoid re-capturing the assistant."""

    WAIT_THEN_STOP = "wait_then_stop"
    STOP_IMMEDIATELY = "stop_immediately"
    NONE = "none"


class ResponseWaitGate:
    """Decides when capture stops and resumes around a conversational response.

    Each ``on_*`` method returns ``True`` when the controller should act:
    stop capture for the dispatch/response-start hooks, resume capture for the
    response-finished/no-response hooks.
    """

    def __init__(
        self,
        policy: ResponseWaitPolicy = ResponseWaitPolicy.STOP_IMMEDIATELY,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._policy = policy
        self._awaiting_response = False
        self._resume_pending = False
        self._logger = logger or logging.getLogger("voice_session.response_gate")

    @property
    def policy(self) -> ResponseWaitPolicy:
        return self._policy

    @property
    def awaiting_response(self) -> bool:
        return self._awaiting_response

    @property
    def resume_pending(self) -> bool:
        return self._resume_pending

    def on_segment_dispatched(self) -> bool:
        if self._policy == ResponseWaitPolicy.STOP_IMMEDIATELY:
            self._resume_pending = True
            return True
        if self._policy == ResponseWaitPolicy.WAIT_THEN_STOP:
            self._awaiting_response = True
        return False

    def on_response_started(self) -> bool:
        if self._policy != ResponseWaitPolicy.WAIT_THEN_STOP or not self._awaiting_response:
            return False
        self._awaiting_response = False
        self._resume_pending = True
        self._logger.debug("response_started_stopping_capture")
        return True

    def on_response_finished(self) -> bool:
        self._awaiting_response = False
        if not self._resume_pending:
            return False
        self._resume_pending = False
        return True

    def on_no_response(self) -> bool:
        """A dispatched segment produced no submission, so no response will follow."""
        self._awaiting_response = False
        if not self._resume_pending:
            return False
        self._resume_pending = False
        return True

    def reset(self) -> None:
        self._awaiting_response = False
        self._resume_pending = False
