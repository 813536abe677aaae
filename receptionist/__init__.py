"""Inbound call receptionist: answers calls, talks with a voice agent and books appointments."""

__version__ = "0.1.0"
