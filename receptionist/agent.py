"""Conversational-agent leg of the bridge (Hume EVI chat socket).

Messages are JSON text frames::

    → {"type": "session_settings", "audio": {...}}
    → {"type": "audio_input", "data": "<base64>"}
    ← {"type": "audio_output", "data": "<base64 wav>"}
    ← {"type": "tool_call", "name": ..., "toolCallId": ..., "parameters": "<json>"}
    → {"type": "tool_response" | "tool_error", ...}

Both bridge pumps and every in-flight tool call write to the same socket,
so sends go through one lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from receptionist.channels.codec import TWILIO_SAMPLE_RATE
from receptionist.errors import call_with_timeout

log = logging.getLogger("receptionist.agent")

LINEAR16_SETTINGS = {
    "type": "session_settings",
    "audio": {"encoding": "linear16", "sample_rate": TWILIO_SAMPLE_RATE, "channels": 1},
}


class AgentConnection:
    def __init__(self, websocket) -> None:
        self._ws = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def connect(
        cls,
        url: str,
        api_key: str,
        config_id: str = "",
        timeout: float = 10.0,
        linear16: bool = True,
    ) -> "AgentConnection":
        """Open the chat socket; raises UpstreamFailure/UpstreamTimeout."""
        query = {"api_key": api_key}
        if config_id:
            query["config_id"] = config_id
        ws = await call_with_timeout(
            websockets.connect(
                f"{url}?{urlencode(query)}",
                ping_interval=20,
                ping_timeout=10,
                close_timeout=10,
            ),
            timeout,
            "Agent connect",
        )
        log.info("Connected to agent at %s", url)
        conn = cls(ws)
        if linear16:
            await conn.send(LINEAR16_SETTINGS)
        return conn

    async def send(self, message: dict) -> None:
        async with self._send_lock:
            await self._ws.send(json.dumps(message))

    async def send_audio(self, data_b64: str) -> None:
        await self.send({"type": "audio_input", "data": data_b64})

    async def messages(self) -> AsyncIterator[dict]:
        """Yield decoded messages until the socket closes."""
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    log.warning("Ignoring non-JSON agent frame: %.80s", raw)
                    continue
                if isinstance(message, dict):
                    yield message
        except ConnectionClosed as e:
            log.info("Agent connection closed: code=%s reason=%s", e.rcvd.code if e.rcvd else None, e.rcvd.reason if e.rcvd else "")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except Exception as e:
            log.warning("Error closing agent connection: %s", e)
