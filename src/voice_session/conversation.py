"""Start-side gate deciding between continuing and resetting the conversation."""

from __future__ import annotations

import logging
from enum import Enum

from .interfaces import Conversation
from .models import ConversationDecision


class GateState(str, Enum):
    NO_CHOICE_NEEDED = "no_choice_needed"
    AWAITING_CHOICE = "awaiting_choice"
    RESOLVED = "resolved"


class ConversationGate:
    """Holds capture start until the user picks continue or new.

    The gate only prompts when the conversation already has messages. With no
    prior chat it resolves to ``CONTINUE`` on its own, which starts into the
    fresh, empty context.
    """

    def __init__(self, conversation: Conversation, *, logger: logging.Logger | None = None) -> None:
        self._conversation = conversation
        self._state = GateState.NO_CHOICE_NEEDED
        self._decision: ConversationDecision | None = None
        self._logger = logger or logging.getLogger("voice_session.conversation")

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def decision(self) -> ConversationDecision | None:
        return self._decision

    @property
    def awaiting_choice(self) -> bool:
        return self._state == GateState.AWAITING_CHOICE

    def begin(self) -> ConversationDecision:
        """Open the gate for a new capture request."""
        if self._state == GateState.AWAITING_CHOICE:
            return ConversationDecision.PENDING

        if not self._conversation.has_existing_chat():
            self._state = GateState.RESOLVED
            self._decision = ConversationDecision.CONTINUE
            return self._decision

        self._state = GateState.AWAITING_CHOICE
        self._decision = ConversationDecision.PENDING
        self._logger.info("conversation_choice_requested")
        return self._decision

    def resolve(self, decision: ConversationDecision) -> ConversationDecision:
        """Apply the user's choice; ``NEW`` resets the conversation once."""
        if decision == ConversationDecision.PENDING:
            raise ValueError("A conversation choice must be CONTINUE or NEW")
        if self._state != GateState.AWAITING_CHOICE:
            raise ValueError(f"No conversation choice is pending (gate is {self._state.value})")

        if decision == ConversationDecision.NEW:
            self._conversation.reset()
        self._state = GateState.RESOLVED
        self._decision = decision
        self._logger.info("conversation_choice_resolved", extra={"decision": decision.value})
        return decision

    def cancel(self) -> None:
        """Abandon an outstanding choice without starting capture."""
        if self._state == GateState.AWAITING_CHOICE:
            self._logger.info("conversation_choice_cancelled")
        self._state = GateState.NO_CHOICE_NEEDED
        self._decision = None


class InMemoryConversation:
    """Minimal conversation used by the CLI and tests."""

    def __init__(self, messages: list[str] | None = None) -> None:
        self.messages: list[str] = list(messages or [])
        self.resets = 0

    def has_existing_chat(self) -> bool:
        return bool(self.messages)

    def reset(self) -> None:
        self.messages = []
        self.resets += 1

    def submit(self, text: str) -> None:
        self.messages.append(text)
