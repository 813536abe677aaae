"""Tests for the telephony ⇄ agent bridge."""

import asyncio
import base64
import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from pydantic import BaseModel

from receptionist.bridge import CallBridge, PendingToolCalls
from receptionist.tools.router import ToolCallRouter, ToolDefinition, ToolRegistry


class FakeStream:
    """Telephony leg: yields queued payloads until None is queued."""

    def __init__(self, stream_sid="MZ1", call_sid="CA1"):
        self.stream_sid = stream_sid
        self.call_sid = call_sid
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def media(self):
        while True:
            payload = await self.incoming.get()
            if payload is None:
                return
            yield payload

    async def send_media(self, payload):
        self.sent.append(payload)

    async def close(self):
        self.closed = True


class FakeAgent:
    """Agent leg: yields queued messages until None is queued."""

    def __init__(self):
        self.outgoing: asyncio.Queue = asyncio.Queue()
        self.audio = []
        self.messages_sent = []
        self.closed = False

    async def messages(self):
        while True:
            message = await self.outgoing.get()
            if message is None:
                return
            yield message

    async def send_audio(self, data):
        self.audio.append(data)

    async def send(self, message):
        self.messages_sent.append(message)

    async def close(self):
        self.closed = True


class LookupParams(BaseModel):
    q: str = ""


def router_with(handler):
    return ToolCallRouter(
        ToolRegistry([ToolDefinition(name="lookup", params_model=LookupParams, handler=handler)]),
        timeout=2.0,
    )


async def echo(params, envelope):
    return {"q": params.q}


async def wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestPassthrough:
    @pytest.mark.asyncio
    async def test_frames_forwarded_in_order_both_ways(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=False)
        task = asyncio.create_task(bridge.run())

        for i in range(5):
            await stream.incoming.put(f"in-{i}")
            await agent.outgoing.put({"type": "audio_output", "data": f"out-{i}"})
        await wait_for(lambda: len(agent.audio) == 5 and len(stream.sent) == 5)
        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

        assert agent.audio == [f"in-{i}" for i in range(5)]
        assert stream.sent == [f"out-{i}" for i in range(5)]
        assert bridge.frames_to_agent == 5
        assert bridge.frames_to_caller == 5

    @pytest.mark.asyncio
    async def test_caller_hangup_closes_agent(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=False)
        task = asyncio.create_task(bridge.run())

        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

        assert agent.closed
        assert stream.closed

    @pytest.mark.asyncio
    async def test_agent_close_closes_telephony(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=False)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put(None)
        await asyncio.wait_for(task, 1.0)

        assert stream.closed
        assert agent.closed

    @pytest.mark.asyncio
    async def test_audio_dropped_before_stream_start(self):
        stream, agent = FakeStream(stream_sid=""), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=False)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put({"type": "audio_output", "data": "early"})
        await agent.outgoing.put(None)
        await asyncio.wait_for(task, 1.0)

        assert stream.sent == []

    @pytest.mark.asyncio
    async def test_transcodes_caller_audio(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=True)
        task = asyncio.create_task(bridge.run())

        mulaw = bytes([0xFF] * 160)  # µ-law silence, 20ms at 8kHz
        await stream.incoming.put(base64.b64encode(mulaw).decode())
        await wait_for(lambda: len(agent.audio) == 1)
        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

        pcm = base64.b64decode(agent.audio[0])
        assert len(pcm) == 320


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_tool_call_gets_single_response(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=False)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put({
            "type": "tool_call", "name": "lookup", "toolCallId": "tc-1",
            "parameters": json.dumps({"q": "hours"}),
        })
        await wait_for(lambda: len(agent.messages_sent) == 1)
        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

        assert agent.messages_sent == [
            {"type": "tool_response", "toolCallId": "tc-1", "content": '{"q": "hours"}'},
        ]
        assert bridge.tool_calls == 1
        assert len(bridge.pending) == 0

    @pytest.mark.asyncio
    async def test_audio_keeps_flowing_during_slow_tool_call(self):
        release = asyncio.Event()

        async def slow(params, envelope):
            await release.wait()
            return "done"

        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(slow), transcode=False)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put({"type": "tool_call", "name": "lookup", "toolCallId": "tc-1", "parameters": "{}"})
        await agent.outgoing.put({"type": "audio_output", "data": "while-waiting"})
        await stream.incoming.put("caller-speaks")
        await wait_for(lambda: stream.sent == ["while-waiting"] and agent.audio == ["caller-speaks"])
        assert agent.messages_sent == []

        release.set()
        await wait_for(lambda: len(agent.messages_sent) == 1)
        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_hangup_cancels_pending_tool_calls(self):
        started = asyncio.Event()

        async def never(params, envelope):
            started.set()
            await asyncio.sleep(10)

        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(never), transcode=False)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put({"type": "tool_call", "name": "lookup", "toolCallId": "tc-1", "parameters": "{}"})
        await asyncio.wait_for(started.wait(), 1.0)
        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

        assert len(bridge.pending) == 0
        assert agent.closed

    @pytest.mark.asyncio
    async def test_unknown_tool_replies_with_error(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=False)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put({"type": "tool_call", "name": "nope", "tool_call_id": "x", "parameters": "{}"})
        await wait_for(lambda: len(agent.messages_sent) == 1)
        await agent.outgoing.put(None)
        await asyncio.wait_for(task, 1.0)

        assert agent.messages_sent[0]["code"] == "UnsupportedTool"
        assert agent.messages_sent[0]["tool_call_id"] == "x"


class TestPendingToolCalls:
    @pytest.mark.asyncio
    async def test_spawn_and_discard(self):
        pending = PendingToolCalls()
        task = await pending.spawn("a", asyncio.sleep(0))
        assert len(pending) == 1
        await task
        await pending.discard(task)
        assert len(pending) == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        pending = PendingToolCalls()
        t1 = await pending.spawn("a", asyncio.sleep(10))
        t2 = await pending.spawn("b", asyncio.sleep(10))
        assert await pending.cancel_all() == 2
        assert t1.cancelled() and t2.cancelled()
        assert len(pending) == 0

    @pytest.mark.asyncio
    async def test_repeated_id_keeps_later_call_cancellable(self):
        pending = PendingToolCalls()
        first = await pending.spawn("tc-1", asyncio.sleep(0))
        second = await pending.spawn("tc-1", asyncio.sleep(10))
        await first
        await pending.discard(first)

        assert len(pending) == 1
        assert await pending.cancel_all() == 1
        assert second.cancelled()


class TestBadFrames:
    @pytest.mark.asyncio
    async def test_corrupt_caller_frame_is_skipped(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=True)
        task = asyncio.create_task(bridge.run())

        await stream.incoming.put("A")  # not valid base64
        await stream.incoming.put(base64.b64encode(bytes([0xFF] * 160)).decode())
        await wait_for(lambda: len(agent.audio) == 1)
        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

        assert bridge.frames_to_agent == 1
        assert len(base64.b64decode(agent.audio[0])) == 320

    @pytest.mark.asyncio
    async def test_corrupt_agent_audio_is_skipped(self):
        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(echo), transcode=True)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put({"type": "audio_output", "data": "A"})
        await agent.outgoing.put({
            "type": "audio_output", "data": base64.b64encode(b"\x00\x00" * 160).decode(),
        })
        await wait_for(lambda: len(stream.sent) == 1)
        await agent.outgoing.put(None)
        await asyncio.wait_for(task, 1.0)

        assert bridge.frames_to_caller == 1
        assert len(base64.b64decode(stream.sent[0])) == 160

    @pytest.mark.asyncio
    async def test_repeated_tool_call_id_is_cancelled_on_hangup(self):
        release = asyncio.Event()

        async def handler(params, envelope):
            if params.q == "slow":
                await asyncio.sleep(10)
            release.set()
            return params.q

        stream, agent = FakeStream(), FakeAgent()
        bridge = CallBridge(stream, agent, router_with(handler), transcode=False)
        task = asyncio.create_task(bridge.run())

        await agent.outgoing.put({
            "type": "tool_call", "name": "lookup", "toolCallId": "tc-1",
            "parameters": json.dumps({"q": "slow"}),
        })
        await agent.outgoing.put({
            "type": "tool_call", "name": "lookup", "toolCallId": "tc-1",
            "parameters": json.dumps({"q": "fast"}),
        })
        await asyncio.wait_for(release.wait(), 1.0)
        await wait_for(lambda: len(bridge.pending) == 1)
        await stream.incoming.put(None)
        await asyncio.wait_for(task, 1.0)

        assert len(bridge.pending) == 0
        assert bridge.tool_calls == 2
