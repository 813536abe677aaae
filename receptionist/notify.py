"""Out-of-band booking confirmations over SMS."""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from twilio.rest import Client

from receptionist.errors import call_with_timeout
from receptionist.models.booking import BookingResult
from receptionist.session import redact_pii

log = logging.getLogger("receptionist.notify")


def spoken_time(start) -> str:
    """e.g. "Wednesday, June 11 at 3:00 PM"."""
    suffix = "AM" if start.hour < 12 else "PM"
    return f"{start:%A, %B} {start.day} at {start.hour % 12 or 12}:{start:%M} {suffix}"


class SmsConfirmer:
    """Texts the caller after a booking.  Awaitable as ``confirmer(to, result)``."""

    def __init__(
        self,
        client: Client,
        from_number: str,
        business_name: str = "our office",
        timeout: float = 8.0,
    ) -> None:
        self._client = client
        self._from = from_number
        self._business = business_name
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "SmsConfirmer":
        return cls(
            Client(settings.twilio_account_sid, settings.twilio_auth_token),
            settings.twilio_phone_number,
            business_name=settings.business_name,
            timeout=settings.upstream_timeout_seconds,
        )

    def body_for(self, result: BookingResult) -> str:
        return (
            f"Your appointment with {self._business} is confirmed for "
            f"{spoken_time(result.start)}. Reply or call us to make changes."
        )

    async def __call__(self, to: str, result: BookingResult) -> str:
        loop = asyncio.get_running_loop()
        send = partial(
            self._client.messages.create,
            to=to,
            from_=self._from,
            body=self.body_for(result),
        )
        message = await call_with_timeout(
            loop.run_in_executor(None, send), self._timeout, "Twilio SMS"
        )
        log.info("Confirmation SMS %s sent to %s", message.sid, redact_pii(to))
        return message.sid
