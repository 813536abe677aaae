"""Telephony media-stream transport and audio conversion."""

from .twilio_stream import TwilioMediaStream

__all__ = ["TwilioMediaStream"]
