"""Pydantic model tracking one phone call through the session state machine."""

from __future__ import annotations

import enum
import logging
import time
from typing import Optional

from pydantic import BaseModel, Field

from receptionist.errors import InvalidTransition

log = logging.getLogger("receptionist.models.call")


class CallState(str, enum.Enum):
    START = "start"
    LISTENING = "listening"
    INTENT_RESOLVED = "intent_resolved"
    SCHEDULING = "awaiting_datetime"
    BOOKED = "booked"
    OUT_OF_HOURS = "out_of_hours"
    BOOKING_FAILED = "booking_failed"
    TRANSFERRED = "transferred"
    VOICEMAIL = "voicemail"
    END = "end"


_S = CallState

TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    _S.START: frozenset({_S.LISTENING, _S.END}),
    _S.LISTENING: frozenset({_S.LISTENING, _S.INTENT_RESOLVED, _S.END}),
    _S.INTENT_RESOLVED: frozenset({
        _S.LISTENING, _S.SCHEDULING, _S.TRANSFERRED, _S.VOICEMAIL, _S.END,
    }),
    _S.SCHEDULING: frozenset({
        _S.SCHEDULING, _S.BOOKED, _S.OUT_OF_HOURS, _S.BOOKING_FAILED, _S.END,
    }),
    # Rejections re-prompt the caller for another time
    _S.OUT_OF_HOURS: frozenset({_S.SCHEDULING, _S.END}),
    _S.BOOKING_FAILED: frozenset({_S.SCHEDULING, _S.END}),
    _S.BOOKED: frozenset({_S.LISTENING, _S.END}),
    # An unanswered transfer falls through to voicemail
    _S.TRANSFERRED: frozenset({_S.VOICEMAIL, _S.END}),
    _S.VOICEMAIL: frozenset({_S.END}),
    _S.END: frozenset(),
}


class CallSession(BaseModel):
    """Mutable state for a single inbound call.

    Created by the call-answer webhook and discarded when the call ends.
    Only mutate it inside ``SessionStore.transaction()`` for its call id.
    """

    call_sid: str
    state: CallState = CallState.START
    caller: str = ""
    business: str = ""
    scheduled_event_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    history: list[str] = Field(default_factory=list)

    @property
    def is_ended(self) -> bool:
        return self.state is CallState.END

    @property
    def is_scheduling(self) -> bool:
        return self.state in (
            CallState.SCHEDULING,
            CallState.OUT_OF_HOURS,
            CallState.BOOKING_FAILED,
        )

    def can_advance(self, new_state: CallState) -> bool:
        return new_state in TRANSITIONS[self.state]

    def advance(self, new_state: CallState) -> None:
        """Move to ``new_state``; raises InvalidTransition if not allowed."""
        if not self.can_advance(new_state):
            raise InvalidTransition(
                f"{self.call_sid}: {self.state.value} -> {new_state.value} not allowed"
            )
        log.info("Call %s: %s → %s", self.call_sid, self.state.value, new_state.value)
        self.history.append(new_state.value)
        self.state = new_state
        self.updated_at = time.time()

    def attach_event(self, event_id: str) -> None:
        self.scheduled_event_id = event_id
        self.updated_at = time.time()
