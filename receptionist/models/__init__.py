"""Data models for the call-session engine."""

from .booking import (
    AppointmentRequest,
    BookingFailure,
    BookingFailureKind,
    BookingResult,
    ResolvedInstant,
)
from .call import CallSession, CallState
from .intent import IntentResult

__all__ = [
    "AppointmentRequest",
    "BookingFailure",
    "BookingFailureKind",
    "BookingResult",
    "CallSession",
    "CallState",
    "IntentResult",
    "ResolvedInstant",
]
