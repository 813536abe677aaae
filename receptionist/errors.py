"""Error taxonomy for the call-session engine.

Parse / ambiguity / business-hours errors are recovered locally by
re-prompting the caller.  Upstream errors become a spoken apology or a
tool-level fallback string.  ConfigurationError is fatal at startup.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class ReceptionistError(Exception):
    """Base class for all engine errors."""


class ParseError(ReceptionistError):
    """Speech or a date/time phrase could not be understood."""


class ValidationError(ReceptionistError):
    """Tool parameters are malformed or violate the tool's schema."""


class UpstreamFailure(ReceptionistError):
    """An external call (calendar, LLM, telephony) returned an error."""


class UpstreamTimeout(UpstreamFailure):
    """An external call exceeded its time bound."""


class OutsideBusinessHours(ReceptionistError):
    """A requested instant falls outside the configured opening window."""


class Ambiguous(ReceptionistError):
    """A required booking detail is missing."""


class UnsupportedTool(ReceptionistError):
    """The agent asked for a tool that is not registered."""


class ConfigurationError(ReceptionistError):
    """Required startup configuration is missing."""


class InvalidTransition(ReceptionistError):
    """A call-session state change that the state machine does not allow."""


async def call_with_timeout(aw: Awaitable[T], seconds: float, what: str) -> T:
    """Await ``aw`` within ``seconds``.

    Timeouts surface as UpstreamTimeout. ReceptionistError passes through
    unchanged; anything else becomes UpstreamFailure chained to the original.
    """
    try:
        return await asyncio.wait_for(aw, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeout(f"{what} timed out after {seconds:g}s") from e
    except ReceptionistError:
        raise
    except Exception as e:
        raise UpstreamFailure(f"{what} failed: {e}") from e
