"""Telephony–Agent Bridge — one duplex relay per bridged call.

Two pump tasks run for the life of the call:

  caller → agent   Twilio ``media`` payloads become ``audio_input``
  agent → caller   ``audio_output`` becomes Twilio ``media``;
                   ``tool_call`` is handed to the Tool Call Router

Frames in each direction are forwarded in arrival order with no buffering.
Tool calls run as their own tasks so audio keeps flowing while the
calendar is busy; they are tracked in ``PendingToolCalls``.  When either
pump finishes (hang-up, agent close, transport error) the other pump and
every pending tool call are cancelled and both sockets are closed.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from typing import Coroutine

from receptionist.agent import AgentConnection
from receptionist.channels.codec import DECODE_ERRORS, agent_audio_to_mulaw, mulaw_to_linear16
from receptionist.channels.twilio_stream import TwilioMediaStream
from receptionist.tools.router import ToolCallEnvelope, ToolCallRouter

log = logging.getLogger("receptionist.bridge")

_anonymous_ids = itertools.count(1)


class PendingToolCalls:
    """Tool-call tasks in flight for one call.

    Keyed by task; tool call ids from the agent are not assumed unique.
    """

    def __init__(self) -> None:
        self._tasks: dict[asyncio.Task, str] = {}
        self._lock = asyncio.Lock()

    async def spawn(self, key: str, coro: Coroutine) -> asyncio.Task:
        async with self._lock:
            task = asyncio.create_task(coro, name=f"tool-call-{key}")
            self._tasks[task] = key
            return task

    async def discard(self, task: asyncio.Task) -> None:
        async with self._lock:
            self._tasks.pop(task, None)

    async def cancel_all(self) -> int:
        async with self._lock:
            tasks = list(self._tasks)
            self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    def __len__(self) -> int:
        return len(self._tasks)


class CallBridge:
    def __init__(
        self,
        stream: TwilioMediaStream,
        agent: AgentConnection,
        router: ToolCallRouter,
        transcode: bool = True,
    ) -> None:
        self._stream = stream
        self._agent = agent
        self._router = router
        self._transcode = transcode
        self.pending = PendingToolCalls()
        self.frames_to_agent = 0
        self.frames_to_caller = 0
        self.tool_calls = 0

    async def run(self) -> None:
        """Relay until either side closes, then tear both down."""
        call_sid = self._stream.call_sid
        log.info("Bridge started: call_sid=%s transcode=%s", call_sid, self._transcode)

        to_agent = asyncio.create_task(self._pump_caller_to_agent(), name="caller-to-agent")
        to_caller = asyncio.create_task(self._pump_agent_to_caller(), name="agent-to-caller")
        try:
            done, _ = await asyncio.wait(
                {to_agent, to_caller}, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log.error(
                        "Bridge %s pump failed: %s", task.get_name(), task.exception(),
                    )
                else:
                    log.info("Bridge %s pump finished", task.get_name())
        finally:
            for task in (to_agent, to_caller):
                if not task.done():
                    task.cancel()
            await asyncio.gather(to_agent, to_caller, return_exceptions=True)
            cancelled = await self.pending.cancel_all()
            await self._agent.close()
            await self._stream.close()
            log.info(
                "Bridge closed: call_sid=%s frames_in=%d frames_out=%d tool_calls=%d cancelled=%d",
                call_sid, self.frames_to_agent, self.frames_to_caller,
                self.tool_calls, cancelled,
            )

    # ── Pumps ──────────────────────────────────────────────────

    async def _pump_caller_to_agent(self) -> None:
        async for payload in self._stream.media():
            if self._transcode:
                try:
                    pcm = mulaw_to_linear16(base64.b64decode(payload))
                except DECODE_ERRORS as e:
                    log.warning("Skipping bad caller frame on %s: %s", self._stream.call_sid, e)
                    continue
                payload = base64.b64encode(pcm).decode("ascii")
            await self._agent.send_audio(payload)
            self.frames_to_agent += 1

    async def _pump_agent_to_caller(self) -> None:
        async for message in self._agent.messages():
            kind = message.get("type")

            if kind == "audio_output":
                await self._forward_audio(message.get("data") or "")

            elif kind == "tool_call":
                await self._start_tool_call(message)

            elif kind == "error":
                log.error("Agent error on %s: %s", self._stream.call_sid, message)

            else:
                log.debug("Agent message: %s", kind)

    async def _forward_audio(self, data: str) -> None:
        if not data:
            return
        if not self._stream.stream_sid:
            log.debug("Dropping agent audio: telephony stream not started")
            return
        if self._transcode:
            try:
                mulaw = agent_audio_to_mulaw(base64.b64decode(data))
            except DECODE_ERRORS as e:
                log.warning("Skipping bad agent audio on %s: %s", self._stream.call_sid, e)
                return
            data = base64.b64encode(mulaw).decode("ascii")
        await self._stream.send_media(data)
        self.frames_to_caller += 1

    # ── Tool calls ─────────────────────────────────────────────

    async def _start_tool_call(self, message: dict) -> None:
        envelope = ToolCallEnvelope.from_message(
            message, self._agent.send, call_sid=self._stream.call_sid,
        )
        key = envelope.tool_call_id or f"anonymous-{next(_anonymous_ids)}"
        self.tool_calls += 1
        await self.pending.spawn(key, self._run_tool_call(envelope))

    async def _run_tool_call(self, envelope: ToolCallEnvelope) -> None:
        try:
            await self._router.route(envelope)
        finally:
            await self.pending.discard(asyncio.current_task())
