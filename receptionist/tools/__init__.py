"""Agent tool calls: router, registry and the booking tool."""

from .booking import BookAppointmentParams, book_appointment_tool
from .router import (
    ToolCallEnvelope,
    ToolCallRouter,
    ToolDefinition,
    ToolErrorKind,
    ToolRegistry,
)

__all__ = [
    "BookAppointmentParams",
    "ToolCallEnvelope",
    "ToolCallRouter",
    "ToolDefinition",
    "ToolErrorKind",
    "ToolRegistry",
    "book_appointment_tool",
]
