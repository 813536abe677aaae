"""TwilioMediaStream — the telephony leg of the bridge.

Twilio Media Streams deliver audio over a WebSocket as base64-encoded
µ-law (G.711 u-law) at 8kHz mono.  Payloads are handed on untouched;
any transcoding happens in the bridge.

Protocol reference:
  https://www.twilio.com/docs/voice/media-streams/websocket-messages

WebSocket message flow:
  ← {"event":"connected", "protocol":"Call", "version":"1.0.0"}
  ← {"event":"start",     "start":{"streamSid":"...","callSid":"...","customParameters":{...}}}
  ← {"event":"media",     "media":{"payload":"<base64 mulaw>","timestamp":"..."}}
  ← {"event":"stop"}

  → {"event":"media", "streamSid":"...", "media":{"payload":"<base64 mulaw>"}}
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

from fastapi import WebSocket, WebSocketDisconnect

log = logging.getLogger("receptionist.twilio_stream")


def _decode_frame(raw: str) -> Optional[dict[str, Any]]:
    """Parse one text frame; None (and a warning) if it is not a JSON object."""
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("Skipping malformed Twilio frame: %.80r", raw)
        return None
    if not isinstance(msg, dict):
        log.warning("Skipping non-object Twilio frame: %.80r", raw)
        return None
    return msg


class TwilioMediaStream:
    """Usage::

        @app.websocket("/twilio/stream")
        async def twilio_stream(ws: WebSocket):
            await ws.accept()
            stream = TwilioMediaStream(ws)
            if await stream.initialize():
                async for payload in stream.media():
                    ...
    """

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._stream_sid: str = ""
        self._call_sid: str = ""
        self._caller_number: str = ""
        self._start_metadata: dict[str, Any] = {}
        self._stopped = False
        self._closed = False

    @property
    def stream_sid(self) -> str:
        return self._stream_sid

    @property
    def call_sid(self) -> str:
        return self._call_sid

    @property
    def caller_number(self) -> str:
        return self._caller_number

    async def initialize(self) -> bool:
        """Wait for the 'start' event; False if the stream ends first."""
        while not self._stream_sid:
            try:
                raw = await self._ws.receive_text()
            except WebSocketDisconnect:
                log.info("Twilio WebSocket closed before stream start")
                return False

            msg = _decode_frame(raw)
            if msg is None:
                continue
            event = msg.get("event")

            if event == "connected":
                log.info(
                    "Twilio connected: protocol=%s version=%s",
                    msg.get("protocol"),
                    msg.get("version"),
                )

            elif event == "start":
                start = msg.get("start", {})
                params = start.get("customParameters") or {}
                self._stream_sid = start.get("streamSid") or msg.get("streamSid", "")
                self._call_sid = start.get("callSid") or params.get("callSid", "")
                self._caller_number = start.get("from") or params.get("from", "")
                self._start_metadata = start
                log.info(
                    "Twilio stream started: stream_sid=%s call_sid=%s",
                    self._stream_sid,
                    self._call_sid,
                )

            elif event == "stop":
                log.info("Twilio stream stopped before start")
                self._stopped = True
                return False

        return True

    async def media(self) -> AsyncIterator[str]:
        """Yield base64 µ-law payloads in arrival order until 'stop' or disconnect."""
        while not self._stopped:
            try:
                raw = await self._ws.receive_text()
            except WebSocketDisconnect:
                log.info("Twilio WebSocket closed (call_sid=%s)", self._call_sid)
                break

            msg = _decode_frame(raw)
            if msg is None:
                continue
            event = msg.get("event")

            if event == "media":
                payload = (msg.get("media") or {}).get("payload")
                if payload:
                    yield payload

            elif event == "stop":
                log.info("Twilio stream stopped (call_sid=%s)", self._call_sid)
                self._stopped = True

            # Ignore other events (mark, dtmf, etc.)

    async def send_media(self, payload_b64: str) -> None:
        """Play one base64 µ-law chunk to the caller."""
        if not self._stream_sid:
            log.warning("Cannot send audio: stream not initialized")
            return
        await self._ws.send_text(json.dumps({
            "event": "media",
            "streamSid": self._stream_sid,
            "media": {"payload": payload_b64},
        }))

    async def close(self) -> None:
        """Close the Twilio Media Stream WebSocket.  Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._stopped = True
        try:
            await self._ws.close()
        except RuntimeError:
            pass  # Already closed
        log.info("Twilio stream closed (call_sid=%s)", self._call_sid)
